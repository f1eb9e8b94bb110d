from __future__ import annotations

import asyncio
import inspect
import json
import sqlite3
import typing as t
from pathlib import Path
from time import time

from saq.job import TERMINAL_STATUSES, Job, Status
from saq.queue.base import JobError, Queue
from saq.types import CountKind, QueueInfo, WorkerInfo
from saq.utils import now, seconds

from backend.files_manager.logging import LoggingInterceptor

logger = LoggingInterceptor("file_handlers_sqlite_queue")


class SQLiteQueue(Queue):
    """
    SQLite-backed SAQ queue.
    Stores serialized Job payloads with the status columns needed for claiming,
    delayed retries and crash recovery. Jobs are committed before ``enqueue``
    returns.
    """

    def __init__(self, db_path: Path, *, name: str = "files_manager") -> None:
        self.db_path = db_path
        self._lock = asyncio.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()
        super().__init__(name=name, dump=json.dumps, load=json.loads)
        logger.info("SQLite queue initialized", path=str(self.db_path), name=name)

    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                key TEXT PRIMARY KEY,
                function TEXT NOT NULL,
                payload TEXT NOT NULL,
                status TEXT NOT NULL,
                queued REAL DEFAULT 0,
                scheduled REAL DEFAULT 0,
                started REAL DEFAULT 0,
                completed REAL DEFAULT 0
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, queued)")
        self._conn.commit()

    async def _run(self, fn: t.Callable[[], t.Any]) -> t.Any:
        async with self._lock:
            return await asyncio.to_thread(fn)

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        payload = self.deserialize(row["payload"])
        assert payload is not None
        job = t.cast(Job, payload)
        job.queue = self
        # JSON round-trips the status as its plain string value.
        job.status = Status(job.status)
        return job

    def _write_row(self, cur: sqlite3.Cursor, job: Job) -> None:
        cur.execute(
            """
            INSERT INTO jobs (key, function, payload, status, queued, scheduled, started, completed)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                payload = excluded.payload,
                status = excluded.status,
                queued = excluded.queued,
                scheduled = excluded.scheduled,
                started = excluded.started,
                completed = excluded.completed
            """,
            (
                job.key,
                job.function,
                self.serialize(job),
                job.status.value,
                job.queued,
                job.scheduled,
                job.started,
                job.completed,
            ),
        )

    async def _enqueue(self, job: Job) -> Job | None:
        if not job.queued:
            job.queued = now()
        job.status = Status.QUEUED

        def op() -> Job:
            cur = self._conn.cursor()
            self._write_row(cur, job)
            self._conn.commit()
            return job

        result = await self._run(op)
        logger.info("Job enqueued", key=job.key, function=job.function)
        return result

    async def dequeue(self, timeout: float = 0.0, poll_interval: float = 0.0) -> Job | None:
        """Claim the oldest runnable job, waiting up to ``timeout`` seconds (0 waits forever)."""
        deadline = time() + timeout if timeout else None

        async def fetch_one() -> Job | None:
            def op() -> Job | None:
                cur = self._conn.cursor()
                cur.execute(
                    """
                    SELECT payload FROM jobs
                    WHERE status IN (?, ?) AND scheduled <= ?
                    ORDER BY queued ASC, rowid ASC
                    LIMIT 1
                    """,
                    (Status.NEW.value, Status.QUEUED.value, time()),
                )
                row = cur.fetchone()
                if not row:
                    return None
                job = self._row_to_job(row)
                job.status = Status.ACTIVE
                job.started = now()
                # Conditional update so a concurrent consumer cannot claim the same row.
                cur.execute(
                    "UPDATE jobs SET payload = ?, status = ?, started = ? WHERE key = ? AND status IN (?, ?)",
                    (
                        self.serialize(job),
                        job.status.value,
                        job.started,
                        job.key,
                        Status.NEW.value,
                        Status.QUEUED.value,
                    ),
                )
                claimed = cur.rowcount == 1
                self._conn.commit()
                return job if claimed else None

            return await self._run(op)

        while True:
            job = await fetch_one()
            if job:
                return job
            if deadline and time() > deadline:
                return None
            await asyncio.sleep(poll_interval or 0.25)

    async def _update(self, job: Job, status: Status | None = None, **kwargs: t.Any) -> None:
        if status:
            job.status = status
        for key, value in kwargs.items():
            if hasattr(job, key):
                setattr(job, key, value)
        await self._persist(job)

    async def job(self, job_key: str) -> Job | None:
        def op() -> Job | None:
            cur = self._conn.cursor()
            cur.execute("SELECT payload FROM jobs WHERE key = ?", (job_key,))
            row = cur.fetchone()
            if not row:
                return None
            return self._row_to_job(row)

        return await self._run(op)

    async def jobs(self, job_keys: t.Iterable[str]) -> list[Job | None]:
        return [await self.job(key) for key in job_keys]

    def iter_jobs(
        self,
        statuses: list[Status] = list(Status),
        batch_size: int = 100,
    ) -> t.AsyncIterator[Job]:
        status_values = [s.value for s in statuses]

        async def generator() -> t.AsyncIterator[Job]:
            offset = 0
            while True:
                def op() -> list[sqlite3.Row]:
                    cur = self._conn.cursor()
                    cur.execute(
                        """
                        SELECT payload FROM jobs
                        WHERE status IN ({placeholders})
                        ORDER BY queued ASC, rowid ASC
                        LIMIT ? OFFSET ?
                        """.format(
                            placeholders=",".join("?" for _ in status_values)
                        ),
                        (*status_values, batch_size, offset),
                    )
                    return cur.fetchall()

                rows = await self._run(op)
                if not rows:
                    break
                for row in rows:
                    yield self._row_to_job(row)
                offset += batch_size

        return generator()

    async def abort(self, job: Job, error: str, ttl: float = 5) -> None:
        job.status = Status.ABORTED
        job.error = error
        await self._persist(job)

    async def finish_abort(self, job: Job) -> None:
        await self.finish(job, Status.ABORTED, error=job.error)

    async def _finish(
        self,
        job: Job,
        status: Status,
        *,
        result: t.Any = None,
        error: str | None = None,
    ) -> None:
        job.status = status
        job.result = result
        job.error = error
        if not job.completed:
            job.completed = now()
        await self._persist(job)
        logger.info("Job finished", key=job.key, function=job.function, status=status.value, error=error)

    async def _retry(self, job: Job, error: str | None) -> None:
        job.status = Status.QUEUED
        job.error = error
        job.started = 0
        delay = job.next_retry_delay()
        job.scheduled = time() + delay if delay else 0
        await self._persist(job)
        logger.warning("Job scheduled for retry", key=job.key, attempts=job.attempts, error=error)

    async def _persist(self, job: Job) -> None:
        def op() -> None:
            cur = self._conn.cursor()
            self._write_row(cur, job)
            self._conn.commit()

        await self._run(op)

    async def count(self, kind: CountKind) -> int:
        status_filter = {
            "queued": [Status.QUEUED.value, Status.NEW.value],
            "active": [Status.ACTIVE.value],
            "incomplete": [Status.NEW.value, Status.QUEUED.value, Status.ACTIVE.value],
        }[kind]

        def op() -> int:
            cur = self._conn.cursor()
            placeholders = ",".join("?" for _ in status_filter)
            cur.execute(f"SELECT COUNT(*) as c FROM jobs WHERE status IN ({placeholders})", status_filter)
            row = cur.fetchone()
            return int(row["c"] if row else 0)

        return await self._run(op)

    async def info(self, jobs: bool = False, offset: int = 0, limit: int = 10) -> QueueInfo:
        queued = await self.count("queued")
        active = await self.count("active")
        jobs_list: list[dict[str, t.Any]] = []

        if jobs:
            def op() -> list[dict[str, t.Any]]:
                cur = self._conn.cursor()
                cur.execute(
                    """
                    SELECT payload FROM jobs
                    WHERE status IN (?, ?)
                    ORDER BY queued ASC, rowid ASC
                    LIMIT ? OFFSET ?
                    """,
                    (Status.QUEUED.value, Status.NEW.value, limit, offset),
                )
                rows = cur.fetchall()
                return [json.loads(row["payload"]) for row in rows]

            jobs_list = await self._run(op)

        return {
            "workers": {},  # type: ignore[return-value]
            "name": self.name,
            "queued": queued,
            "active": active,
            "scheduled": 0,
            "jobs": jobs_list,  # type: ignore[return-value]
        }

    async def schedule(self, lock: int = 1) -> list[str]:
        # Cron jobs are not used; delayed retries are filtered in dequeue.
        return []

    async def sweep(self, lock: int = 60, abort: float = 5.0) -> list[str]:
        """Re-queue jobs whose worker died mid-run.

        A job counts as abandoned once it has been active ``abort`` seconds past
        its own timeout; live workers cancel and retry it at the timeout itself.
        Abandoned jobs with no attempts left are finished as aborted.
        """

        def op() -> list[Job]:
            cur = self._conn.cursor()
            cur.execute("SELECT payload FROM jobs WHERE status = ?", (Status.ACTIVE.value,))
            return [self._row_to_job(row) for row in cur.fetchall()]

        current = now()
        swept: list[str] = []
        for job in await self._run(op):
            if not job.timeout or seconds(current - job.started) <= job.timeout + abort:
                continue
            swept.append(job.key)
            if job.retryable:
                await self.retry(job, error=self.swept_error_message)
            else:
                await self.finish(job, Status.ABORTED, error=self.swept_error_message)

        if swept:
            logger.warning("Swept abandoned jobs", keys=swept)
        return swept

    async def listen(
        self,
        job_keys: t.Iterable[str],
        callback: t.Callable[[str, Status], t.Any],
        timeout: float | None = 10,
        poll_interval: float = 0.1,
    ) -> None:
        """Poll until ``callback`` returns truthy for a job reaching a terminal status."""
        deadline = time() + timeout if timeout else None
        pending = set(job_keys)
        while pending:
            for key in list(pending):
                job = await self.job(key)
                if job is None or job.status not in TERMINAL_STATUSES:
                    continue
                pending.discard(key)
                outcome = callback(key, job.status)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
                if outcome:
                    return
            if deadline and time() > deadline:
                return
            await asyncio.sleep(poll_interval)

    async def disconnect(self) -> None:
        def op() -> None:
            self._conn.close()

        await self._run(op)
        logger.info("SQLite queue closed", path=str(self.db_path))

    async def notify(self, job: Job) -> None:
        # Single logical queue; consumers poll.
        return None

    async def write_worker_info(self, worker_id: str, info: WorkerInfo, ttl: int) -> None:
        return None

    async def write_stats(self, stats: t.Any, ttl: int) -> None:
        return None

    def __repr__(self) -> str:
        return f"SQLiteQueue<{self.name}>({self.db_path})"


__all__ = ["SQLiteQueue", "JobError"]
