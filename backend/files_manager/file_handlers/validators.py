from __future__ import annotations

import base64
import binascii
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from backend.files_manager.file_handlers.errors import (
    InvalidFieldError,
    InvalidParentError,
    MissingFieldError,
    ParentNotFolderError,
    RecordNotFoundError,
)
from backend.files_manager.file_handlers.metadata_store import RecordStore
from backend.files_manager.file_handlers.models import ROOT_MARKER, FileKind, ParentRef, is_valid_identifier
from backend.files_manager.logging import LoggingInterceptor

logger = LoggingInterceptor("file_handlers_validators")


def parse_parent_ref(raw: Any) -> ParentRef:
    """Interpret a client-supplied parent value.

    ``None``, ``""``, ``0`` and ``"0"`` all denote the root. Anything else must
    look like a record id.
    """
    if raw is None or raw in ("", ROOT_MARKER):
        return ParentRef.root()
    if isinstance(raw, int) and not isinstance(raw, bool) and raw == 0:
        return ParentRef.root()
    if not is_valid_identifier(raw):
        raise InvalidParentError(operation="parse_parent")
    return ParentRef.to(raw)


def validate_parent(store: RecordStore, parent: ParentRef, owner_id: Optional[str] = None) -> ParentRef:
    """Confirm that ``parent`` is the root or an existing folder.

    Ownership of the parent folder is not checked here; any existing folder
    is an acceptable target.
    """
    if parent.is_root:
        return parent
    try:
        candidate = store.get(parent.folder_id)
    except RecordNotFoundError as exc:
        logger.info("Parent not found", parent=str(parent), owner_id=owner_id)
        raise InvalidParentError(operation="validate_parent") from exc
    if not candidate.is_folder:
        logger.info("Parent is not a folder", parent=str(parent), kind=candidate.kind.value, owner_id=owner_id)
        raise ParentNotFolderError(operation="validate_parent")
    return parent


def _decode_payload(data: Any) -> bytes:
    if isinstance(data, bytes):
        data = data.decode("ascii", errors="strict")
    if not isinstance(data, str):
        raise InvalidFieldError("data", operation="upload")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidFieldError("data", operation="upload") from exc


class UploadRequest(BaseModel):
    """Validated upload body. Build with ``from_body`` to get per-field errors."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    kind: FileKind
    is_public: bool = False
    parent: ParentRef = Field(default_factory=ParentRef.root)
    content: Optional[bytes] = None

    @model_validator(mode="after")
    def _validate_content(self) -> "UploadRequest":
        if self.kind is FileKind.FOLDER:
            self.content = None
        elif self.content is None:
            raise ValueError("content is required for non-folder uploads")
        return self

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> "UploadRequest":
        """Check fields in the order name, type, data, parentId."""
        name = body.get("name")
        if not name or not isinstance(name, str):
            raise MissingFieldError("name", operation="upload")

        raw_type = body.get("type")
        try:
            kind = FileKind(raw_type)
        except ValueError as exc:
            raise MissingFieldError("type", operation="upload") from exc

        content: Optional[bytes] = None
        if kind is not FileKind.FOLDER:
            data = body.get("data")
            if not data:
                raise MissingFieldError("data", operation="upload")
            content = _decode_payload(data)

        parent = parse_parent_ref(body.get("parentId"))

        return cls(
            name=name,
            kind=kind,
            is_public=body.get("isPublic") is True,
            parent=parent,
            content=content,
        )


__all__ = ["UploadRequest", "parse_parent_ref", "validate_parent"]
