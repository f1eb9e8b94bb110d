from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

ROOT_MARKER = "0"
_IDENTIFIER_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def is_valid_identifier(value: Any) -> bool:
    """True when ``value`` has the syntax of a store-generated record id."""
    return isinstance(value, str) and bool(_IDENTIFIER_PATTERN.match(value))


class FileKind(str, Enum):
    FOLDER = "folder"
    FILE = "file"
    IMAGE = "image"


@dataclass(frozen=True)
class ParentRef:
    """Either the root sentinel (``folder_id is None``) or a reference to a folder record.

    This is the only parent representation used in code. The persisted form is
    ``"0"`` for root, the wire form is the integer ``0``.
    """

    folder_id: Optional[str] = None

    @classmethod
    def root(cls) -> "ParentRef":
        return cls(None)

    @classmethod
    def to(cls, folder_id: str) -> "ParentRef":
        if not folder_id:
            raise ValueError("folder reference requires an id")
        return cls(folder_id)

    @property
    def is_root(self) -> bool:
        return self.folder_id is None

    def to_storage(self) -> str:
        return ROOT_MARKER if self.folder_id is None else self.folder_id

    @classmethod
    def from_storage(cls, value: str) -> "ParentRef":
        return cls.root() if value == ROOT_MARKER else cls.to(value)

    def to_wire(self) -> Union[int, str]:
        return 0 if self.folder_id is None else self.folder_id

    def __str__(self) -> str:
        return "root" if self.folder_id is None else self.folder_id


class FileDraft(BaseModel):
    """A record before the store has assigned its id."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    owner_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    kind: FileKind
    is_public: bool = False
    parent: ParentRef = Field(default_factory=ParentRef.root)
    content_location: Optional[str] = None

    @model_validator(mode="after")
    def _check_content_location(self) -> "FileDraft":
        _ensure_content_location(self.kind, self.content_location)
        return self


class FileRecord(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    owner_id: str
    name: str = Field(min_length=1)
    kind: FileKind
    is_public: bool = False
    parent: ParentRef
    content_location: Optional[str] = None
    created_at: datetime

    @model_validator(mode="after")
    def _check_content_location(self) -> "FileRecord":
        _ensure_content_location(self.kind, self.content_location)
        return self

    @property
    def is_folder(self) -> bool:
        return self.kind is FileKind.FOLDER

    def to_response(self) -> Dict[str, Any]:
        """Wire shape shared by every record-returning operation."""
        return {
            "id": self.id,
            "userId": self.owner_id,
            "name": self.name,
            "type": self.kind.value,
            "isPublic": self.is_public,
            "parentId": self.parent.to_wire(),
        }


def _ensure_content_location(kind: FileKind, content_location: Optional[str]) -> None:
    if kind is FileKind.FOLDER and content_location is not None:
        raise ValueError("folders cannot carry a content location")
    if kind is not FileKind.FOLDER and not content_location:
        raise ValueError(f"{kind.value} records require a content location")


class JobType(str, Enum):
    THUMBNAIL = "generate_thumbnails"
    WELCOME = "send_welcome"


__all__ = [
    "ROOT_MARKER",
    "FileKind",
    "ParentRef",
    "FileDraft",
    "FileRecord",
    "JobType",
    "is_valid_identifier",
]
