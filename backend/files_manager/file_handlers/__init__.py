from __future__ import annotations

"""File handlers package providing records, blob storage, validation, listing, and the thumbnail job queue."""

__all__ = [
    "auth",
    "controller",
    "dispatchers",
    "errors",
    "listing",
    "metadata_store",
    "models",
    "service",
    "sqlite_queue",
    "storage",
    "thumbnails",
    "validators",
    "visibility",
    "worker",
]
