from __future__ import annotations

from typing import Optional

from backend.files_manager.file_handlers.models import FileRecord


def can_read(record: FileRecord, requester_id: Optional[str]) -> bool:
    """Public records are readable by anyone, private ones only by their owner."""
    if record.is_public:
        return True
    return requester_id is not None and requester_id == record.owner_id


__all__ = ["can_read"]
