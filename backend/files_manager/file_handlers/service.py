from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict

from backend.files_manager.config_handler import Settings, settings
from backend.files_manager.file_handlers import listing
from backend.files_manager.file_handlers.dispatchers import enqueue_thumbnail_job
from backend.files_manager.file_handlers.errors import NotFoundError, RecordNotFoundError, StorageError
from backend.files_manager.file_handlers.metadata_store import RecordStore, create_record_store
from backend.files_manager.file_handlers.models import FileDraft, FileKind, FileRecord
from backend.files_manager.file_handlers.storage import BlobStore, infer_content_type
from backend.files_manager.file_handlers.validators import UploadRequest, validate_parent
from backend.files_manager.file_handlers.visibility import can_read
from backend.files_manager.file_handlers.worker import JobQueue
from backend.files_manager.logging import LoggingInterceptor

logger = LoggingInterceptor("file_handlers_service")


class FileContent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data: bytes
    content_type: str


class FileService:
    """Record operations for an already authenticated caller."""

    def __init__(self, store: RecordStore, blobs: BlobStore, queue: JobQueue) -> None:
        self.store = store
        self.blobs = blobs
        self.queue = queue

    @classmethod
    def from_settings(cls, queue: JobQueue, app_settings: Settings = settings) -> "FileService":
        store = create_record_store(app_settings.storage.data_root, snapshots=app_settings.storage.metadata_snapshots)
        blobs = BlobStore(app_settings.storage.blobs_dir)
        return cls(store, blobs, queue)

    async def create_record(self, owner_id: str, request: UploadRequest) -> FileRecord:
        parent = validate_parent(self.store, request.parent, owner_id)

        content_location: Optional[str] = None
        if request.kind is not FileKind.FOLDER:
            content_location = self.blobs.write(request.content or b"")

        record = self.store.create(
            FileDraft(
                owner_id=owner_id,
                name=request.name,
                kind=request.kind,
                is_public=request.is_public,
                parent=parent,
                content_location=content_location,
            )
        )

        if record.kind is FileKind.IMAGE:
            try:
                await enqueue_thumbnail_job(self.queue, record.id, owner_id)
            except StorageError as exc:
                logger.error("Thumbnail job not queued", file_id=record.id, owner_id=owner_id, reason=exc.reason)
                raise
        return record

    def get_record(self, owner_id: str, file_id: str) -> FileRecord:
        """Owner-scoped lookup; other users' records read as missing."""
        record = self.store.get(file_id)
        if record.owner_id != owner_id:
            raise RecordNotFoundError(operation="get_record")
        return record

    def list_records(self, owner_id: str, parent: Any = None, page: Any = 0) -> List[FileRecord]:
        return listing.list_records(self.store, owner_id, parent, page)

    def set_public(self, owner_id: str, file_id: str, is_public: bool) -> FileRecord:
        self.get_record(owner_id, file_id)
        record = self.store.update(file_id, is_public=is_public)
        logger.info("Visibility changed", file_id=file_id, owner_id=owner_id, is_public=is_public)
        return record

    def publish(self, owner_id: str, file_id: str) -> FileRecord:
        return self.set_public(owner_id, file_id, True)

    def unpublish(self, owner_id: str, file_id: str) -> FileRecord:
        return self.set_public(owner_id, file_id, False)

    def read_content(self, requester_id: Optional[str], file_id: str, size: Optional[str] = None) -> FileContent:
        """Raw bytes of a file or one of its variants.

        Missing records, folders, records hidden from the requester and missing
        blobs all raise the same ``NotFoundError``.
        """
        try:
            record = self.store.get(file_id)
        except RecordNotFoundError:
            raise NotFoundError(operation="read_content") from None
        if not can_read(record, requester_id) or record.content_location is None:
            raise NotFoundError(operation="read_content")

        try:
            if size:
                data = self.blobs.read_variant(record.content_location, str(size))
            else:
                data = self.blobs.read(record.content_location)
        except NotFoundError:
            raise NotFoundError(operation="read_content") from None
        return FileContent(data=data, content_type=infer_content_type(record.name))


__all__ = ["FileContent", "FileService"]
