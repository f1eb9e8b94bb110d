from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, MetaData, String, Table, create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.files_manager.file_handlers.errors import RecordNotFoundError, StorageError
from backend.files_manager.file_handlers.models import (
    FileDraft,
    FileKind,
    FileRecord,
    ParentRef,
    is_valid_identifier,
)
from backend.files_manager.file_handlers.storage import atomic_write_text, ensure_directory
from backend.files_manager.logging import LoggingInterceptor

logger = LoggingInterceptor("file_handlers_metadata_store")

MUTABLE_FIELDS = frozenset({"is_public"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        return _coerce_datetime(datetime.fromisoformat(value))
    raise ValueError(f"Cannot coerce {value!r} to datetime")


@dataclass
class _Tables:
    metadata: MetaData
    files: Table


class RecordStore:
    """SQLite-backed store for file records, keyed by store-generated ids.

    Insertion order is kept in an autoincrement ``seq`` column and is the
    ordering used by ``find``. Each call is a single statement, so reads and
    writes are atomic per record.
    """

    def __init__(self, base_dir: Path, *, snapshots: bool = False) -> None:
        self.base_dir = ensure_directory(base_dir)
        self.db_path = self.base_dir / "metadata.db"
        self.engine: Engine = create_engine(f"sqlite:///{self.db_path}", future=True)
        self.tables = self._build_tables()
        self._ensure_schema()
        self._snapshot_path = self.base_dir / "files.json" if snapshots else None
        logger.info("Record store initialized", db=str(self.db_path), snapshots=snapshots)

    def _build_tables(self) -> _Tables:
        metadata = MetaData()
        files = Table(
            "files",
            metadata,
            Column("seq", Integer, primary_key=True, autoincrement=True),
            Column("file_id", String(32), unique=True, nullable=False),
            Column("owner_id", String, nullable=False, index=True),
            Column("name", String, nullable=False),
            Column("kind", String, nullable=False),
            Column("is_public", Boolean, nullable=False, default=False),
            Column("parent_id", String, nullable=False, index=True),
            Column("content_location", String, nullable=True),
            Column("created_at", DateTime(timezone=True), nullable=False),
        )
        return _Tables(metadata=metadata, files=files)

    def _ensure_schema(self) -> None:
        self.tables.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def _row_to_record(self, row: Dict[str, Any]) -> FileRecord:
        return FileRecord(
            id=row["file_id"],
            owner_id=row["owner_id"],
            name=row["name"],
            kind=FileKind(row["kind"]),
            is_public=bool(row["is_public"]),
            parent=ParentRef.from_storage(row["parent_id"]),
            content_location=row["content_location"],
            created_at=_coerce_datetime(row["created_at"]),
        )

    def create(self, draft: FileDraft) -> FileRecord:
        """Persist a draft, assigning its id. Returns the materialized record."""
        payload = {
            "file_id": uuid4().hex,
            "owner_id": draft.owner_id,
            "name": draft.name,
            "kind": draft.kind.value,
            "is_public": draft.is_public,
            "parent_id": draft.parent.to_storage(),
            "content_location": draft.content_location,
            "created_at": _utc_now(),
        }
        try:
            with self.engine.begin() as conn:
                conn.execute(self.tables.files.insert().values(payload))
        except SQLAlchemyError as exc:
            logger.error("Record insert failed", owner_id=draft.owner_id, error=str(exc))
            raise StorageError(str(exc), operation="create") from exc
        self._snapshot()
        record = self._row_to_record(payload)
        logger.info(
            "Record created",
            file_id=record.id,
            owner_id=record.owner_id,
            kind=record.kind.value,
            parent=str(record.parent),
        )
        return record

    def get(self, file_id: str) -> FileRecord:
        if not is_valid_identifier(file_id):
            raise RecordNotFoundError(operation="get")
        stmt = select(self.tables.files).where(self.tables.files.c.file_id == file_id)
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise StorageError(str(exc), operation="get") from exc
        if not row:
            raise RecordNotFoundError(operation="get")
        return self._row_to_record(dict(row))

    def find(
        self,
        *,
        owner_id: Optional[str] = None,
        parent: Optional[ParentRef] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[FileRecord]:
        files = self.tables.files
        stmt = select(files).order_by(files.c.seq.asc())
        if owner_id is not None:
            stmt = stmt.where(files.c.owner_id == owner_id)
        if parent is not None:
            stmt = stmt.where(files.c.parent_id == parent.to_storage())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            raise StorageError(str(exc), operation="find") from exc
        return [self._row_to_record(dict(row)) for row in rows]

    def update(self, file_id: str, **patch: Any) -> FileRecord:
        unknown = set(patch) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Immutable record fields: {sorted(unknown)}")
        if not is_valid_identifier(file_id):
            raise RecordNotFoundError(operation="update")
        files = self.tables.files
        stmt = update(files).where(files.c.file_id == file_id).values(**patch)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageError(str(exc), operation="update") from exc
        if result.rowcount == 0:
            raise RecordNotFoundError(operation="update")
        self._snapshot()
        logger.info("Record updated", file_id=file_id, **patch)
        return self.get(file_id)

    def _fetch_rows(self) -> Iterable[Dict[str, Any]]:
        with self.engine.begin() as conn:
            result = conn.execute(select(self.tables.files).order_by(self.tables.files.c.seq)).mappings().all()
        return [dict(row) for row in result]

    def _snapshot(self) -> None:
        if self._snapshot_path is None:
            return
        data: Dict[str, Dict[str, Any]] = {}
        for row in self._fetch_rows():
            row.pop("seq", None)
            data[row.pop("file_id")] = row
        atomic_write_text(self._snapshot_path, json.dumps(data, default=str, indent=2))


def create_record_store(data_root: Path, *, snapshots: bool = False) -> RecordStore:
    return RecordStore(base_dir=data_root / "metadata", snapshots=snapshots)


__all__ = ["RecordStore", "create_record_store", "MUTABLE_FIELDS"]
