from __future__ import annotations

import asyncio
import functools
import sqlite3
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from saq import Worker
from saq.job import Job, Status

from backend.files_manager.config_handler import Settings, settings
from backend.files_manager.config_handler.config import QueueSettings
from backend.files_manager.file_handlers.auth import InMemoryAuthService, UserDirectory
from backend.files_manager.file_handlers.errors import PipelineError, StorageError
from backend.files_manager.file_handlers.metadata_store import create_record_store
from backend.files_manager.file_handlers.models import JobType
from backend.files_manager.file_handlers.sqlite_queue import SQLiteQueue
from backend.files_manager.file_handlers.storage import BlobStore, ensure_directory
from backend.files_manager.logging import LoggingInterceptor

logger = LoggingInterceptor("file_handlers_worker")

Handler = Callable[..., Awaitable[Any]]


class JobQueue:
    """Explicitly owned producer side of the SQLite-backed SAQ queue.

    Open it at startup, hand the same instance to the upload path and to the
    worker, and close it on shutdown.
    """

    def __init__(self, backend: SQLiteQueue, queue_settings: Optional[QueueSettings] = None) -> None:
        self.backend = backend
        self.settings = queue_settings or QueueSettings()
        self._closed = False

    @classmethod
    def open(cls, app_settings: Settings = settings) -> "JobQueue":
        jobs_db = app_settings.storage.jobs_db
        ensure_directory(jobs_db.parent)
        backend = SQLiteQueue(jobs_db, name=app_settings.queue.name)
        logger.info("Job queue opened", path=str(jobs_db))
        return cls(backend, app_settings.queue)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.backend.disconnect()
        logger.info("Job queue closed")

    async def __aenter__(self) -> "JobQueue":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def enqueue(
        self,
        job_type: JobType,
        *,
        timeout: Optional[int] = None,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        **payload: Any,
    ) -> Job:
        """Durably accept a job. Returns once the row is committed, not once processed."""
        if self._closed:
            raise StorageError("Job queue is closed", operation="enqueue")
        try:
            job = await self.backend.enqueue(
                job_type.value,
                timeout=timeout if timeout is not None else self.settings.thumbnail_timeout,
                retries=retries if retries is not None else self.settings.thumbnail_retries,
                retry_delay=retry_delay if retry_delay is not None else self.settings.retry_delay,
                **payload,
            )
        except sqlite3.Error as exc:
            raise StorageError(f"Job queue write failed: {exc}", operation="enqueue") from exc
        if job is None:
            raise StorageError(f"Job queue refused {job_type.value}", operation="enqueue")
        return job

    async def consume(self, timeout: float = 0.0) -> Optional[Job]:
        """Claim the next job directly, bypassing a worker; blocks when ``timeout`` is 0."""
        return await self.backend.dequeue(timeout=timeout, poll_interval=self.settings.poll_interval)

    async def get(self, job_key: str) -> Optional[Job]:
        return await self.backend.job(job_key)

    async def pending(self) -> int:
        return await self.backend.count("incomplete")

    async def dead_letters(self) -> List[Job]:
        """Jobs that ran out of attempts, failed terminally or were swept without retries left."""
        return [job async for job in self.backend.iter_jobs(statuses=[Status.FAILED, Status.ABORTED])]

    async def recover(self, grace: float = 5.0) -> List[str]:
        """Re-queue jobs abandoned by crashed workers ``grace`` seconds past their timeout."""
        return await self.backend.sweep(abort=grace)

    async def wait_for(self, job_keys: Iterable[str], timeout: Optional[float] = 10) -> Dict[str, Status]:
        keys = list(job_keys)
        finished: Dict[str, Status] = {}

        def on_done(key: str, status: Status) -> bool:
            finished[key] = status
            return len(finished) == len(keys)

        await self.backend.listen(keys, on_done, timeout=timeout, poll_interval=self.settings.poll_interval)
        return finished


def fail_terminally(handler: Handler) -> Handler:
    """Let a terminal ``PipelineError`` fail the job at once instead of using up its retries."""

    @functools.wraps(handler)
    async def wrapped(ctx: Dict[str, Any], **kwargs: Any) -> Any:
        try:
            return await handler(ctx, **kwargs)
        except PipelineError as exc:
            job = ctx.get("job")
            if exc.terminal and isinstance(job, Job):
                job.retries = job.attempts
            log = logger.bind(job_id=job.key) if isinstance(job, Job) else logger
            log.error("Job handler failed", reason=exc.reason, terminal=exc.terminal)
            raise

    return wrapped


def create_worker(
    queue: JobQueue,
    handlers: Mapping[str, Handler],
    *,
    context: Optional[Dict[str, Any]] = None,
    concurrency: Optional[int] = None,
    dequeue_timeout: float = 1.0,
    burst: bool = False,
) -> Worker:
    """Build a SAQ worker over ``queue`` with ``handlers`` registered under their job names.

    ``context`` entries are visible to every handler through ``ctx``.
    """
    queue_settings = queue.settings
    worker = Worker(
        queue.backend,
        functions=[(name, fail_terminally(handler)) for name, handler in handlers.items()],
        concurrency=concurrency or queue_settings.concurrency,
        timers={"sweep": queue_settings.sweep_interval},
        dequeue_timeout=dequeue_timeout,
        burst=burst,
        shutdown_grace_period_s=queue_settings.shutdown_grace,
        poll_interval=queue_settings.poll_interval,
    )
    worker.context.update(context or {})
    return worker


def worker_context(app_settings: Settings = settings, users: Optional[UserDirectory] = None) -> Dict[str, Any]:
    """Shared handler context: record store, blob store and user directory."""
    if users is None:
        logger.warning("No user directory configured; welcome jobs will fail with 'User not found'")
        users = InMemoryAuthService()
    store = create_record_store(app_settings.storage.data_root, snapshots=app_settings.storage.metadata_snapshots)
    return {
        "store": store,
        "blobs": BlobStore(app_settings.storage.blobs_dir),
        "users": users,
    }


async def run_worker(app_settings: Settings = settings, *, users: Optional[UserDirectory] = None) -> None:
    """Run the thumbnail and welcome handlers until SIGINT or SIGTERM."""
    from backend.files_manager.file_handlers.dispatchers import default_handlers

    queue = JobQueue.open(app_settings)
    context = worker_context(app_settings, users)
    worker = create_worker(queue, default_handlers(), context=context)
    logger.info("Worker started", concurrency=worker.concurrency, functions=sorted(worker.functions))
    try:
        await worker.start()
    finally:
        await queue.close()
        context["store"].close()
        logger.info("Worker stopped")


__all__ = ["Handler", "JobQueue", "create_worker", "fail_terminally", "run_worker", "worker_context"]


if __name__ == "__main__":
    asyncio.run(run_worker())
