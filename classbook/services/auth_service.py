"""Admin bearer-token check for the administrative routes."""

from __future__ import annotations

import secrets
from typing import Optional

from classbook.utils.config import Settings, get_settings


class AuthenticationError(Exception):
    """Base authentication failure."""


class MissingAdminTokenError(AuthenticationError):
    """Raised when an admin route is called without a bearer token."""


class InvalidAdminTokenError(AuthenticationError):
    """Raised when provided token is invalid."""


class AuthService:
    """Validates bearer tokens against the configured ADMIN_TOKEN.

    With no ADMIN_TOKEN configured every admin call is accepted, which is the
    local development setup.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    @property
    def auth_enabled(self) -> bool:
        return bool(self._settings.admin_token)

    def validate_bearer_token(self, bearer_token: Optional[str]) -> None:
        if not self.auth_enabled:
            return
        if not bearer_token:
            raise MissingAdminTokenError("Authorization header with Bearer token is required")
        if not secrets.compare_digest(bearer_token, str(self._settings.admin_token)):
            raise InvalidAdminTokenError("Invalid bearer token")
