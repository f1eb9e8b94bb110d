from __future__ import annotations

from typing import Dict, Optional, Protocol


class AuthService(Protocol):
    def resolve_user(self, token: Optional[str]) -> Optional[str]:
        """Return the user id owning ``token`` or ``None``."""


class UserDirectory(Protocol):
    def get_email(self, user_id: str) -> Optional[str]:
        """Return the user's email or ``None`` for unknown users."""


class InMemoryAuthService:
    """Token and user registry kept in process memory, for local runs and tests."""

    def __init__(self) -> None:
        self._tokens: Dict[str, str] = {}
        self._emails: Dict[str, str] = {}

    def register_user(self, user_id: str, email: str) -> None:
        self._emails[user_id] = email

    def grant(self, token: str, user_id: str) -> None:
        self._tokens[token] = user_id

    def revoke(self, token: str) -> None:
        self._tokens.pop(token, None)

    def resolve_user(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        return self._tokens.get(token)

    def get_email(self, user_id: str) -> Optional[str]:
        return self._emails.get(user_id)


__all__ = ["AuthService", "UserDirectory", "InMemoryAuthService"]
