from __future__ import annotations

from typing import Optional


class FilesManagerError(Exception):
    """Base exception carrying the failing operation and a caller-facing reason."""

    def __init__(self, reason: str, *, operation: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.operation = operation

    def __str__(self) -> str:
        if self.operation:
            return f"{self.operation}: {self.reason}"
        return self.reason


class ValidationError(FilesManagerError):
    """Missing or malformed request fields."""


class MissingFieldError(ValidationError):
    """A required request field is absent."""

    def __init__(self, field: str, *, operation: Optional[str] = None) -> None:
        super().__init__(f"Missing {field}", operation=operation)
        self.field = field


class InvalidFieldError(ValidationError):
    """A request field is present but cannot be interpreted."""

    def __init__(self, field: str, *, operation: Optional[str] = None) -> None:
        super().__init__(f"Invalid {field}", operation=operation)
        self.field = field


class ParentReferenceError(FilesManagerError):
    """Dangling or wrong-kind parent reference."""


class InvalidParentError(ParentReferenceError):
    def __init__(self, *, operation: Optional[str] = None) -> None:
        super().__init__("Parent not found", operation=operation)


class ParentNotFolderError(ParentReferenceError):
    def __init__(self, *, operation: Optional[str] = None) -> None:
        super().__init__("Parent is not a folder", operation=operation)


class NotFoundError(FilesManagerError):
    """Absent, invisible or content-less target. Callers cannot tell these apart."""

    def __init__(self, *, operation: Optional[str] = None) -> None:
        super().__init__("Not found", operation=operation)


class RecordNotFoundError(NotFoundError):
    pass


class BlobNotFoundError(NotFoundError):
    pass


class StorageError(FilesManagerError):
    """Backing store or blob I/O failure."""


class PipelineError(FilesManagerError):
    """Job handler failure. Terminal errors are never retried."""

    def __init__(self, reason: str, *, terminal: bool = True, operation: Optional[str] = None) -> None:
        super().__init__(reason, operation=operation)
        self.terminal = terminal


__all__ = [
    "FilesManagerError",
    "ValidationError",
    "MissingFieldError",
    "InvalidFieldError",
    "ParentReferenceError",
    "InvalidParentError",
    "ParentNotFolderError",
    "NotFoundError",
    "RecordNotFoundError",
    "BlobNotFoundError",
    "StorageError",
    "PipelineError",
]
