from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Callable
from uuid import uuid4

from backend.files_manager.file_handlers.errors import BlobNotFoundError, StorageError
from backend.files_manager.logging import LoggingInterceptor

logger = LoggingInterceptor("file_handlers_storage")

VARIANT_SIZES = ("500", "250", "100")
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def ensure_directory(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def _atomic_write(target: Path, writer: Callable[[Path], None]) -> Path:
    ensure_directory(target.parent)
    temp_path = target.with_name(f".{target.name}.tmp-{uuid4().hex}")
    try:
        writer(temp_path)
        temp_path.replace(target)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    return target


def atomic_write_bytes(target: Path, content: bytes) -> Path:
    """Write bytes atomically to target path."""
    logger.debug("Atomic write bytes", target=str(target), size=len(content))
    return _atomic_write(target, lambda tmp: tmp.write_bytes(content))


def atomic_write_text(target: Path, content: str, *, encoding: str = "utf-8") -> Path:
    """Write text atomically to target path."""
    logger.debug("Atomic write text", target=str(target))
    return _atomic_write(target, lambda tmp: tmp.write_text(content, encoding=encoding))


def variant_locator(locator: str, size_tag: str) -> str:
    """Deterministic sidecar locator for a resized variant."""
    return f"{locator}_{size_tag}"


def infer_content_type(name: str) -> str:
    content_type, _ = mimetypes.guess_type(name)
    return content_type or DEFAULT_CONTENT_TYPE


class BlobStore:
    """Raw payloads stored as one file per locator under a base directory.

    Locators are absolute paths. Every write creates the base directory if
    needed, so the store survives the directory being removed at runtime.
    """

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir.expanduser().resolve()

    def _resolve(self, locator: str) -> Path:
        target = Path(locator).resolve()
        if not target.is_relative_to(self.base_dir):
            raise ValueError(f"Unsafe locator outside blob root: {target}")
        return target

    def write(self, content: bytes) -> str:
        target = self.base_dir / uuid4().hex
        try:
            ensure_directory(self.base_dir)
            atomic_write_bytes(target, content)
        except OSError as exc:
            logger.error("Blob write failed", target=str(target), error=str(exc))
            raise StorageError(str(exc), operation="write") from exc
        logger.info("Blob written", locator=str(target), size=len(content))
        return str(target)

    def write_variant(self, locator: str, size_tag: str, content: bytes) -> str:
        if size_tag not in VARIANT_SIZES:
            raise ValueError(f"Unsupported variant size '{size_tag}'; allowed: {VARIANT_SIZES}")
        target = self._resolve(variant_locator(locator, size_tag))
        try:
            atomic_write_bytes(target, content)
        except OSError as exc:
            logger.error("Variant write failed", target=str(target), error=str(exc))
            raise StorageError(str(exc), operation="write_variant") from exc
        logger.info("Variant written", locator=str(target), size_tag=size_tag, size=len(content))
        return str(target)

    def _read_path(self, target: Path, operation: str) -> bytes:
        try:
            return target.read_bytes()
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise BlobNotFoundError(operation=operation) from exc
        except OSError as exc:
            logger.error("Blob read failed", target=str(target), error=str(exc))
            raise StorageError(str(exc), operation=operation) from exc

    def read(self, locator: str) -> bytes:
        try:
            target = self._resolve(locator)
        except ValueError as exc:
            raise BlobNotFoundError(operation="read") from exc
        return self._read_path(target, "read")

    def read_variant(self, locator: str, size_tag: str) -> bytes:
        if size_tag not in VARIANT_SIZES:
            raise BlobNotFoundError(operation="read_variant")
        try:
            target = self._resolve(variant_locator(locator, size_tag))
        except ValueError as exc:
            raise BlobNotFoundError(operation="read_variant") from exc
        return self._read_path(target, "read_variant")


__all__ = [
    "BlobStore",
    "VARIANT_SIZES",
    "atomic_write_bytes",
    "atomic_write_text",
    "ensure_directory",
    "infer_content_type",
    "variant_locator",
]
