from __future__ import annotations

import asyncio
import io
import threading
from pathlib import Path

import pytest
from PIL import Image
from saq import Worker
from saq.job import Status

from backend.files_manager.file_handlers import dispatchers
from backend.files_manager.file_handlers.conftest import drain
from backend.files_manager.file_handlers.dispatchers import (
    enqueue_thumbnail_job,
    enqueue_welcome_job,
    generate_thumbnails,
    send_welcome,
)
from backend.files_manager.file_handlers.errors import PipelineError, StorageError
from backend.files_manager.file_handlers.metadata_store import RecordStore
from backend.files_manager.file_handlers.models import FileDraft, FileKind, FileRecord
from backend.files_manager.file_handlers.storage import BlobStore
from backend.files_manager.file_handlers.thumbnails import THUMBNAIL_WIDTHS, inspect_image
from backend.files_manager.file_handlers.worker import JobQueue


def _image_record(store: RecordStore, blobs: BlobStore, content: bytes, owner: str = "u1") -> FileRecord:
    locator = blobs.write(content)
    return store.create(FileDraft(owner_id=owner, name="cat.png", kind=FileKind.IMAGE, content_location=locator))


def _ctx(store: RecordStore, blobs: BlobStore) -> dict:
    return {"store": store, "blobs": blobs}


def test_writes_three_variants_with_expected_widths(store, blobs, png_bytes):
    record = _image_record(store, blobs, png_bytes)
    variants = asyncio.run(generate_thumbnails(_ctx(store, blobs), file_id=record.id, owner_id="u1"))

    assert sorted(variants) == sorted(str(w) for w in THUMBNAIL_WIDTHS)
    for width in THUMBNAIL_WIDTHS:
        data = blobs.read_variant(record.content_location, str(width))
        with Image.open(io.BytesIO(data)) as image:
            assert image.format == "PNG"
            assert image.size == (width, round(600 * width / 800))


def test_rerun_is_byte_identical_and_leaves_record_untouched(store, blobs, png_bytes):
    record = _image_record(store, blobs, png_bytes)
    ctx = _ctx(store, blobs)

    asyncio.run(generate_thumbnails(ctx, file_id=record.id, owner_id="u1"))
    first = {w: blobs.read_variant(record.content_location, str(w)) for w in THUMBNAIL_WIDTHS}
    asyncio.run(generate_thumbnails(ctx, file_id=record.id, owner_id="u1"))
    second = {w: blobs.read_variant(record.content_location, str(w)) for w in THUMBNAIL_WIDTHS}

    assert first == second
    assert store.get(record.id) == record
    assert blobs.read(record.content_location) == png_bytes


@pytest.mark.parametrize(
    "payload, reason",
    [
        ({"owner_id": "u1"}, "Missing fileId"),
        ({"file_id": "a" * 32}, "Missing userId"),
        ({"file_id": "a" * 32, "owner_id": "u1"}, "File not found"),
        ({"file_id": "garbage", "owner_id": "u1"}, "File not found"),
    ],
)
def test_validation_and_lookup_failures_are_terminal(store, blobs, payload, reason):
    with pytest.raises(PipelineError) as info:
        asyncio.run(generate_thumbnails(_ctx(store, blobs), **payload))
    assert info.value.terminal
    assert info.value.reason == reason


def test_missing_source_bytes_are_terminal(store, blobs, png_bytes):
    record = _image_record(store, blobs, png_bytes)
    Path(record.content_location).unlink()
    with pytest.raises(PipelineError) as info:
        asyncio.run(generate_thumbnails(_ctx(store, blobs), file_id=record.id, owner_id="u1"))
    assert info.value.terminal


def test_undecodable_source_is_terminal(store, blobs):
    record = _image_record(store, blobs, b"definitely not an image")
    with pytest.raises(PipelineError) as info:
        asyncio.run(generate_thumbnails(_ctx(store, blobs), file_id=record.id, owner_id="u1"))
    assert info.value.terminal


class _FailingVariantStore(BlobStore):
    def __init__(self, base_dir: Path, failing_tag: str) -> None:
        super().__init__(base_dir)
        self.failing_tag = failing_tag

    def write_variant(self, locator: str, size_tag: str, content: bytes) -> str:
        if size_tag == self.failing_tag:
            raise StorageError("disk full", operation="write_variant")
        return super().write_variant(locator, size_tag, content)


def test_one_failed_variant_fails_the_job_and_keeps_the_others(store, tmp_path, png_bytes):
    blobs = _FailingVariantStore(tmp_path / "files", failing_tag="250")
    record = _image_record(store, blobs, png_bytes)

    with pytest.raises(PipelineError) as info:
        asyncio.run(generate_thumbnails(_ctx(store, blobs), file_id=record.id, owner_id="u1"))
    assert not info.value.terminal

    assert blobs.read_variant(record.content_location, "500")
    assert blobs.read_variant(record.content_location, "100")
    assert not Path(f"{record.content_location}_250").exists()


def test_queued_thumbnail_job_runs_through_worker(store, blobs, png_bytes, job_queue: JobQueue, worker: Worker):
    record = _image_record(store, blobs, png_bytes)

    async def run() -> None:
        key = await enqueue_thumbnail_job(job_queue, record.id, "u1")
        assert await worker.process()
        stored = await job_queue.get(key)
        assert stored.status is Status.COMPLETE
        assert sorted(stored.result) == ["100", "250", "500"]

    asyncio.run(run())
    assert blobs.read_variant(record.content_location, "100")


def test_source_is_decoded_off_the_event_loop(store, blobs, png_bytes, monkeypatch):
    record = _image_record(store, blobs, png_bytes)
    decode_threads = []

    def recording_inspect(source: bytes):
        decode_threads.append(threading.current_thread())
        return inspect_image(source)

    monkeypatch.setattr(dispatchers, "inspect_image", recording_inspect)
    asyncio.run(generate_thumbnails(_ctx(store, blobs), file_id=record.id, owner_id="u1"))

    assert decode_threads and decode_threads[0] is not threading.main_thread()


def test_welcome_job(job_queue: JobQueue, worker: Worker):
    async def run() -> None:
        welcomed = await enqueue_welcome_job(job_queue, "user-owner")
        unknown = await enqueue_welcome_job(job_queue, "nobody")
        assert await drain(worker) == 2

        first = await job_queue.get(welcomed)
        assert first.status is Status.COMPLETE
        assert first.result == {"user_id": "user-owner", "email": "owner@example.com"}
        second = await job_queue.get(unknown)
        assert second.status is Status.FAILED
        assert "User not found" in second.error

    asyncio.run(run())


def test_welcome_requires_user_id(auth):
    with pytest.raises(PipelineError):
        asyncio.run(send_welcome({"users": auth}))
