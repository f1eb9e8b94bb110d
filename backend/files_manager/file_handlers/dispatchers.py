from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Tuple

from saq.job import Job

from backend.files_manager.file_handlers.auth import UserDirectory
from backend.files_manager.file_handlers.errors import (
    NotFoundError,
    PipelineError,
    RecordNotFoundError,
    StorageError,
)
from backend.files_manager.file_handlers.metadata_store import RecordStore
from backend.files_manager.file_handlers.models import JobType
from backend.files_manager.file_handlers.storage import BlobStore
from backend.files_manager.file_handlers.thumbnails import THUMBNAIL_WIDTHS, ThumbnailError, inspect_image, render_thumbnail
from backend.files_manager.file_handlers.worker import Handler, JobQueue
from backend.files_manager.logging import LoggingInterceptor

logger = LoggingInterceptor("file_handlers_dispatchers")

WELCOME_TIMEOUT = 30


def _job_id_from_ctx(ctx: Dict[str, Any], fallback: str) -> str:
    job = ctx.get("job")
    if isinstance(job, Job):
        return job.key
    if isinstance(job, dict) and "id" in job:
        return str(job["id"])
    return fallback


async def enqueue_thumbnail_job(queue: JobQueue, file_id: str, owner_id: str) -> str:
    job = await queue.enqueue(JobType.THUMBNAIL, file_id=file_id, owner_id=owner_id)
    logger.info("Thumbnail job queued", job_id=job.key, file_id=file_id, owner_id=owner_id)
    return job.key


async def enqueue_welcome_job(queue: JobQueue, user_id: str) -> str:
    job = await queue.enqueue(JobType.WELCOME, timeout=WELCOME_TIMEOUT, retries=1, retry_delay=0, user_id=user_id)
    logger.info("Welcome job queued", job_id=job.key, user_id=user_id)
    return job.key


def _load_source(store: RecordStore, blobs: BlobStore, file_id: str) -> Tuple[str, bytes, str, int, int]:
    """Fetch and inspect the original image. Blocking; handlers run it in a thread."""
    try:
        record = store.get(file_id)
    except RecordNotFoundError as exc:
        raise PipelineError("File not found", operation="generate_thumbnails") from exc
    if record.content_location is None:
        raise PipelineError("File not found", operation="generate_thumbnails")

    try:
        source = blobs.read(record.content_location)
    except NotFoundError as exc:
        raise PipelineError("Source content not found", operation="generate_thumbnails") from exc
    except StorageError as exc:
        raise PipelineError(f"Source content unreadable: {exc.reason}", operation="generate_thumbnails") from exc
    try:
        source_format, width, height = inspect_image(source)
    except ThumbnailError as exc:
        raise PipelineError(str(exc), operation="generate_thumbnails") from exc
    return record.content_location, source, source_format, width, height


async def generate_thumbnails(
    ctx: Dict[str, Any],
    *,
    file_id: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> Dict[str, str]:
    """Write the 500/250/100 px variants of an image record next to its original.

    Missing payload fields, a vanished record and unreadable source bytes are
    terminal. A failed variant write fails the whole job; variants already
    written are left in place. The record itself is never modified.
    """
    job_id = _job_id_from_ctx(ctx, fallback=f"thumbnails:{file_id}")
    store: RecordStore = ctx["store"]
    blobs: BlobStore = ctx["blobs"]
    log = logger.bind(job_id=job_id, file_id=file_id)
    log.info("Thumbnail job received", owner_id=owner_id)

    if not file_id:
        raise PipelineError("Missing fileId", operation="generate_thumbnails")
    if not owner_id:
        raise PipelineError("Missing userId", operation="generate_thumbnails")
    log.debug("Thumbnail job validated")

    locator, source, source_format, width, height = await asyncio.to_thread(_load_source, store, blobs, file_id)
    log.info("Thumbnail source loaded", format=source_format, width=width, height=height)

    def render_and_write(target_width: int) -> str:
        return blobs.write_variant(locator, str(target_width), render_thumbnail(source, target_width))

    results = await asyncio.gather(
        *(asyncio.to_thread(render_and_write, target_width) for target_width in THUMBNAIL_WIDTHS),
        return_exceptions=True,
    )
    variants: Dict[str, str] = {}
    failures = []
    for target_width, result in zip(THUMBNAIL_WIDTHS, results):
        if isinstance(result, BaseException):
            failures.append((target_width, result))
        else:
            variants[str(target_width)] = result

    if failures:
        target_width, first = failures[0]
        log.error(
            "Thumbnail variants failed",
            failed=[w for w, _ in failures],
            written=sorted(variants),
        )
        if isinstance(first, ThumbnailError):
            raise PipelineError(str(first), operation="generate_thumbnails") from first
        if isinstance(first, StorageError):
            raise PipelineError(
                f"Variant {target_width} write failed: {first.reason}",
                terminal=False,
                operation="generate_thumbnails",
            ) from first
        raise first

    log.info("Thumbnail variants written", variants=sorted(variants))
    return variants


async def send_welcome(ctx: Dict[str, Any], *, user_id: Optional[str] = None) -> Dict[str, str]:
    """Best-effort welcome notification for a newly created account."""
    job_id = _job_id_from_ctx(ctx, fallback=f"welcome:{user_id}")
    users: UserDirectory = ctx["users"]
    if not user_id:
        raise PipelineError("Missing userId", operation="send_welcome")
    email = users.get_email(user_id)
    if not email:
        raise PipelineError("User not found", operation="send_welcome")
    logger.info(f"Welcome {email}", job_id=job_id, user_id=user_id)
    return {"user_id": user_id, "email": email}


def default_handlers() -> Dict[str, Handler]:
    return {
        JobType.THUMBNAIL.value: generate_thumbnails,
        JobType.WELCOME.value: send_welcome,
    }


__all__ = [
    "default_handlers",
    "enqueue_thumbnail_job",
    "enqueue_welcome_job",
    "generate_thumbnails",
    "send_welcome",
]
