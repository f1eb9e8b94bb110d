from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, TypeVar

from pydantic import BaseModel, ConfigDict

from backend.files_manager.file_handlers.auth import AuthService
from backend.files_manager.file_handlers.errors import (
    FilesManagerError,
    NotFoundError,
    ParentReferenceError,
    StorageError,
    ValidationError,
)
from backend.files_manager.file_handlers.service import FileService
from backend.files_manager.file_handlers.validators import UploadRequest
from backend.files_manager.logging import LoggingInterceptor

logger = LoggingInterceptor("file_handlers_controller")

T = TypeVar("T")

UNAUTHORIZED = 401


class ApiResponse(BaseModel):
    """Transport-neutral response: JSON ``body`` or raw ``content``."""

    model_config = ConfigDict(extra="forbid")

    status_code: int
    body: Any = None
    content: Optional[bytes] = None
    content_type: str = "application/json"


def _error(status_code: int, message: str) -> ApiResponse:
    return ApiResponse(status_code=status_code, body={"error": message})


def _error_response(exc: FilesManagerError) -> ApiResponse:
    if isinstance(exc, (ValidationError, ParentReferenceError)):
        return _error(400, exc.reason)
    if isinstance(exc, NotFoundError):
        return _error(404, "Not found")
    if isinstance(exc, StorageError):
        logger.error("Storage failure", operation=exc.operation, reason=exc.reason)
        return _error(500, "Internal error")
    logger.error("Unhandled files manager error", operation=exc.operation, reason=exc.reason)
    return _error(500, "Internal error")


class FilesController:
    """Resolves the caller from a token, runs a ``FileService`` operation and shapes the response."""

    def __init__(self, service: FileService, auth: AuthService) -> None:
        self.service = service
        self.auth = auth

    def _call(self, fn: Callable[[], T], on_success: Callable[[T], ApiResponse]) -> ApiResponse:
        try:
            return on_success(fn())
        except FilesManagerError as exc:
            return _error_response(exc)

    async def post_upload(self, token: Optional[str], body: Mapping[str, Any]) -> ApiResponse:
        user_id = self.auth.resolve_user(token)
        if not user_id:
            return _error(UNAUTHORIZED, "Unauthorized")
        try:
            request = UploadRequest.from_body(body)
            record = await self.service.create_record(user_id, request)
        except FilesManagerError as exc:
            return _error_response(exc)
        return ApiResponse(status_code=201, body=record.to_response())

    def get_show(self, token: Optional[str], file_id: str) -> ApiResponse:
        user_id = self.auth.resolve_user(token)
        if not user_id:
            return _error(UNAUTHORIZED, "Unauthorized")
        return self._call(
            lambda: self.service.get_record(user_id, file_id),
            lambda record: ApiResponse(status_code=200, body=record.to_response()),
        )

    def get_index(self, token: Optional[str], parent_id: Any = None, page: Any = None) -> ApiResponse:
        user_id = self.auth.resolve_user(token)
        if not user_id:
            return _error(UNAUTHORIZED, "Unauthorized")
        return self._call(
            lambda: self.service.list_records(user_id, parent_id, page),
            lambda records: ApiResponse(status_code=200, body=[record.to_response() for record in records]),
        )

    def put_publish(self, token: Optional[str], file_id: str) -> ApiResponse:
        return self._set_public(token, file_id, True)

    def put_unpublish(self, token: Optional[str], file_id: str) -> ApiResponse:
        return self._set_public(token, file_id, False)

    def _set_public(self, token: Optional[str], file_id: str, is_public: bool) -> ApiResponse:
        user_id = self.auth.resolve_user(token)
        if not user_id:
            return _error(UNAUTHORIZED, "Unauthorized")
        return self._call(
            lambda: self.service.set_public(user_id, file_id, is_public),
            lambda record: ApiResponse(status_code=200, body=record.to_response()),
        )

    def get_file(self, token: Optional[str], file_id: str, size: Optional[str] = None) -> ApiResponse:
        """Content reads do not require a token; anonymous callers see public files only."""
        requester_id = self.auth.resolve_user(token)
        return self._call(
            lambda: self.service.read_content(requester_id, file_id, size),
            lambda content: ApiResponse(status_code=200, content=content.data, content_type=content.content_type),
        )


__all__ = ["ApiResponse", "FilesController"]
