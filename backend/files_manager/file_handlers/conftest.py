from __future__ import annotations

import asyncio
import base64
import io
from pathlib import Path

import pytest
from PIL import Image
from saq import Worker

from backend.files_manager.config_handler.config import QueueSettings
from backend.files_manager.file_handlers.auth import InMemoryAuthService
from backend.files_manager.file_handlers.controller import FilesController
from backend.files_manager.file_handlers.dispatchers import default_handlers
from backend.files_manager.file_handlers.metadata_store import RecordStore
from backend.files_manager.file_handlers.service import FileService
from backend.files_manager.file_handlers.sqlite_queue import SQLiteQueue
from backend.files_manager.file_handlers.storage import BlobStore
from backend.files_manager.file_handlers.worker import JobQueue, create_worker

OWNER = "user-owner"
OTHER = "user-other"
OWNER_TOKEN = "token-owner"
OTHER_TOKEN = "token-other"


def make_png(width: int = 800, height: int = 600) -> bytes:
    image = Image.new("RGB", (width, height))
    for x in range(0, width, 10):
        for y in range(0, height, 10):
            image.putpixel((x, y), (x % 256, y % 256, (x + y) % 256))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def b64(content: bytes) -> str:
    return base64.b64encode(content).decode("ascii")


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def store(tmp_path: Path):
    record_store = RecordStore(tmp_path / "metadata")
    yield record_store
    record_store.close()


@pytest.fixture
def blobs(tmp_path: Path) -> BlobStore:
    return BlobStore(tmp_path / "files")


@pytest.fixture
def queue_settings() -> QueueSettings:
    return QueueSettings(thumbnail_timeout=30, thumbnail_retries=2, retry_delay=0, sweep_interval=60, shutdown_grace=0, poll_interval=0.01)


@pytest.fixture
def job_queue(tmp_path: Path, queue_settings: QueueSettings):
    queue = JobQueue(SQLiteQueue(tmp_path / "jobs.db", name="test_queue"), queue_settings)
    yield queue
    asyncio.run(queue.close())


@pytest.fixture
def auth() -> InMemoryAuthService:
    registry = InMemoryAuthService()
    registry.register_user(OWNER, "owner@example.com")
    registry.register_user(OTHER, "other@example.com")
    registry.grant(OWNER_TOKEN, OWNER)
    registry.grant(OTHER_TOKEN, OTHER)
    return registry


@pytest.fixture
def service(store: RecordStore, blobs: BlobStore, job_queue: JobQueue) -> FileService:
    return FileService(store, blobs, job_queue)


@pytest.fixture
def controller(service: FileService, auth: InMemoryAuthService) -> FilesController:
    return FilesController(service, auth)


@pytest.fixture
def worker(job_queue: JobQueue, store: RecordStore, blobs: BlobStore, auth: InMemoryAuthService) -> Worker:
    return create_worker(
        job_queue,
        default_handlers(),
        context={"store": store, "blobs": blobs, "users": auth},
        dequeue_timeout=0.05,
    )


async def drain(worker: Worker) -> int:
    """Process jobs one at a time until none is runnable within the dequeue timeout."""
    processed = 0
    while await worker.process():
        processed += 1
    return processed
