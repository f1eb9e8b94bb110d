from __future__ import annotations

import asyncio
import io
import sqlite3

import pytest
from PIL import Image
from saq import Worker
from saq.job import Status

from backend.files_manager.file_handlers.conftest import OTHER_TOKEN, OWNER, OWNER_TOKEN, b64
from backend.files_manager.file_handlers.controller import FilesController
from backend.files_manager.file_handlers.errors import StorageError
from backend.files_manager.file_handlers.models import JobType
from backend.files_manager.file_handlers.worker import JobQueue


def _upload(controller: FilesController, body: dict, token: str = OWNER_TOKEN):
    return asyncio.run(controller.post_upload(token, body))


def _text_file(controller: FilesController, name: str = "notes.txt", **extra):
    body = {"name": name, "type": "file", "data": b64(b"hello"), **extra}
    response = _upload(controller, body)
    assert response.status_code == 201
    return response.body


def test_image_upload_queues_thumbnails_then_serves_variant(
    controller: FilesController, job_queue: JobQueue, worker: Worker, png_bytes
):
    folder = _upload(controller, {"name": "Photos", "type": "folder"})
    assert folder.status_code == 201
    assert folder.body["parentId"] == 0

    image = _upload(
        controller,
        {"name": "cat.png", "type": "image", "data": b64(png_bytes), "parentId": folder.body["id"]},
    )
    assert image.status_code == 201
    assert image.body == {
        "id": image.body["id"],
        "userId": OWNER,
        "name": "cat.png",
        "type": "image",
        "isPublic": False,
        "parentId": folder.body["id"],
    }

    async def run():
        [job] = [job async for job in job_queue.backend.iter_jobs()]
        assert job.function == JobType.THUMBNAIL.value
        assert job.kwargs == {"file_id": image.body["id"], "owner_id": OWNER}
        assert await worker.process()
        return await job_queue.get(job.key)

    finished = asyncio.run(run())
    assert finished.status is Status.COMPLETE

    original = controller.get_file(OWNER_TOKEN, image.body["id"])
    assert original.status_code == 200
    assert original.content == png_bytes
    assert original.content_type == "image/png"

    small = controller.get_file(OWNER_TOKEN, image.body["id"], size="250")
    assert small.status_code == 200
    with Image.open(io.BytesIO(small.content)) as thumb:
        assert thumb.width == 250


def test_folder_upload_stores_no_content(controller: FilesController, service):
    folder = _upload(controller, {"name": "Empty", "type": "folder", "data": b64(b"ignored")})
    assert folder.status_code == 201
    assert service.store.get(folder.body["id"]).content_location is None
    assert controller.get_file(OWNER_TOKEN, folder.body["id"]).status_code == 404


def test_plain_file_queues_no_job(controller: FilesController, job_queue: JobQueue):
    _text_file(controller)
    assert asyncio.run(job_queue.pending()) == 0


@pytest.mark.parametrize(
    "body, message",
    [
        ({}, "Missing name"),
        ({"name": "a"}, "Missing type"),
        ({"name": "a", "type": "video"}, "Missing type"),
        ({"name": "a", "type": "file"}, "Missing data"),
        ({"name": "a", "type": "folder", "parentId": "c" * 32}, "Parent not found"),
    ],
)
def test_upload_validation_errors(controller: FilesController, body, message):
    response = _upload(controller, body)
    assert response.status_code == 400
    assert response.body == {"error": message}


def test_upload_into_non_folder_parent(controller: FilesController):
    plain = _text_file(controller)
    response = _upload(controller, {"name": "b", "type": "file", "data": b64(b"x"), "parentId": plain["id"]})
    assert response.status_code == 400
    assert response.body == {"error": "Parent is not a folder"}


def test_requests_without_valid_token_are_unauthorized(controller: FilesController):
    assert _upload(controller, {"name": "a", "type": "folder"}, token=None).status_code == 401
    assert controller.get_show("bogus", "a" * 32).status_code == 401
    assert controller.get_index(None).status_code == 401
    assert controller.put_publish(None, "a" * 32).status_code == 401
    assert controller.put_unpublish(None, "a" * 32).status_code == 401


def test_show_is_owner_scoped(controller: FilesController):
    created = _text_file(controller)
    assert controller.get_show(OWNER_TOKEN, created["id"]).body == created

    foreign = controller.get_show(OTHER_TOKEN, created["id"])
    missing = controller.get_show(OWNER_TOKEN, "d" * 32)
    assert foreign.status_code == missing.status_code == 404
    assert foreign.body == missing.body == {"error": "Not found"}


def test_index_lists_root_and_rejects_bad_page(controller: FilesController):
    first = _text_file(controller, "a.txt")
    second = _text_file(controller, "b.txt")

    listed = controller.get_index(OWNER_TOKEN)
    assert listed.status_code == 200
    assert listed.body == [first, second]
    assert controller.get_index(OWNER_TOKEN, parent_id="0", page="1").body == []
    assert controller.get_index(OWNER_TOKEN, page="abc").body == []
    assert controller.get_index(OTHER_TOKEN).body == []


def test_publish_then_unpublish(controller: FilesController):
    created = _text_file(controller)
    file_id = created["id"]

    assert controller.get_file(None, file_id).status_code == 404

    published = controller.put_publish(OWNER_TOKEN, file_id)
    assert published.status_code == 200
    assert published.body == {**created, "isPublic": True}
    assert controller.get_file(None, file_id).content == b"hello"

    unpublished = controller.put_unpublish(OWNER_TOKEN, file_id)
    assert unpublished.body == created
    assert controller.get_file(None, file_id).status_code == 404


def test_publish_by_non_owner_is_not_found(controller: FilesController):
    created = _text_file(controller)
    assert controller.put_publish(OTHER_TOKEN, created["id"]).status_code == 404
    assert controller.get_show(OWNER_TOKEN, created["id"]).body["isPublic"] is False


def test_content_visibility(controller: FilesController):
    public = _text_file(controller, "public.txt", isPublic=True)
    private = _text_file(controller, "private.txt")

    assert controller.get_file(None, public["id"]).content == b"hello"
    assert controller.get_file(OTHER_TOKEN, public["id"]).content_type == "text/plain"

    hidden = controller.get_file(OTHER_TOKEN, private["id"])
    missing = controller.get_file(OTHER_TOKEN, "e" * 32)
    assert hidden.status_code == missing.status_code == 404
    assert hidden.body == missing.body
    assert controller.get_file(OWNER_TOKEN, private["id"]).content == b"hello"


def test_unknown_variant_size_is_not_found(controller: FilesController):
    created = _text_file(controller, isPublic=True)
    assert controller.get_file(None, created["id"], size="42").status_code == 404
    assert controller.get_file(None, created["id"], size="250").status_code == 404


def test_huge_page_lists_nothing(controller: FilesController):
    _text_file(controller)
    response = controller.get_index(OWNER_TOKEN, None, str(10**20))
    assert response.status_code == 200
    assert response.body == []


def test_image_upload_with_unavailable_queue_is_internal_error(controller: FilesController, job_queue: JobQueue, png_bytes):
    asyncio.run(job_queue.close())

    response = _upload(controller, {"name": "cat.png", "type": "image", "data": b64(png_bytes)})

    assert response.status_code == 500
    assert response.body == {"error": "Internal error"}


def test_queue_write_failure_is_storage_error(job_queue: JobQueue, monkeypatch):
    async def broken_enqueue(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(job_queue.backend, "enqueue", broken_enqueue)
    with pytest.raises(StorageError) as info:
        asyncio.run(job_queue.enqueue(JobType.THUMBNAIL, file_id="f1", owner_id="u1"))
    assert info.value.operation == "enqueue"
