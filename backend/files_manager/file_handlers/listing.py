from __future__ import annotations

from typing import Any, List, Optional

from backend.files_manager.file_handlers.errors import ParentReferenceError, RecordNotFoundError
from backend.files_manager.file_handlers.metadata_store import RecordStore
from backend.files_manager.file_handlers.models import FileRecord, ParentRef
from backend.files_manager.file_handlers.validators import parse_parent_ref
from backend.files_manager.logging import LoggingInterceptor

logger = LoggingInterceptor("file_handlers_listing")

PAGE_SIZE = 20
# Largest page whose offset still binds as a signed 64-bit SQLite integer.
MAX_PAGE = (2**63 - 1) // PAGE_SIZE - 1


def parse_page(raw: Any) -> Optional[int]:
    """Zero-based page number, ``None`` when the value is unusable. Missing means 0."""
    if raw is None or raw == "":
        return 0
    if isinstance(raw, bool) or not isinstance(raw, (int, str)):
        return None
    if isinstance(raw, str) and not raw.isascii():
        return None
    try:
        page = int(raw)
    except (TypeError, ValueError):
        return None
    return page if 0 <= page <= MAX_PAGE else None


def list_records(store: RecordStore, owner_id: str, parent: Any, page: Any = 0) -> List[FileRecord]:
    """One page of ``owner_id``'s records directly under ``parent``, in creation order.

    Reads fail soft: a bad page, a malformed parent, or a parent that is not
    one of the owner's folders all produce an empty list.
    """
    page_number = parse_page(page)
    if page_number is None:
        logger.info("Listing with unusable page", owner_id=owner_id, page=str(page))
        return []

    if not isinstance(parent, ParentRef):
        try:
            parent = parse_parent_ref(parent)
        except ParentReferenceError:
            return []

    if not parent.is_root:
        try:
            folder = store.get(parent.folder_id)
        except RecordNotFoundError:
            return []
        if not folder.is_folder or folder.owner_id != owner_id:
            return []

    records = store.find(owner_id=owner_id, parent=parent, offset=page_number * PAGE_SIZE, limit=PAGE_SIZE)
    logger.debug("Listed records", owner_id=owner_id, parent=str(parent), page=page_number, count=len(records))
    return records


__all__ = ["PAGE_SIZE", "list_records", "parse_page"]
