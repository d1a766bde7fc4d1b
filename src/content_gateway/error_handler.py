# src/content_gateway/error_handler.py

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx

lib_logger = logging.getLogger("content_gateway")

# Substrings (lowercase) that mark an error message as an authentication failure
AUTH_ERROR_MARKERS = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "invalid access token",
    "token expired",
    "authentication",
    "access denied",
)


class TokenError(str, Enum):
    """Failure categories raised by the SharedTokenManager."""

    REFRESH_FAILED = "REFRESH_FAILED"
    NO_REFRESH_TOKEN = "NO_REFRESH_TOKEN"
    NETWORK_ERROR = "NETWORK_ERROR"
    FILE_ACCESS_ERROR = "FILE_ACCESS_ERROR"


class TokenManagerError(Exception):
    """
    Raised when the token manager cannot hand out valid credentials.

    Attributes:
        type: The TokenError category
        message: Human-readable message about the error
        original_error: The underlying exception, if any
    """

    def __init__(
        self,
        type: TokenError,
        message: str,
        original_error: Optional[BaseException] = None,
    ):
        self.type = type
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class CredentialsClearRequiredError(Exception):
    """
    Raised when the refresh endpoint rejects the refresh token (HTTP 400) or
    no refresh token exists. The stored credentials are unusable and the user
    has to authenticate again.
    """

    def __init__(self, message: str, original_error: Any = None):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class DeviceAuthorizationError(Exception):
    """Raised when the device-authorization endpoint refuses to start a flow."""

    def __init__(
        self,
        message: str,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        super().__init__(message)


class CredentialCacheError(Exception):
    """
    Raised when OAuth credentials cannot be written to the credential file.

    Attributes:
        path: The credential file path
        permission_denied: True when the failure was a permission problem
    """

    def __init__(self, path: str, message: str, permission_denied: bool = False):
        self.path = path
        self.permission_denied = permission_denied
        super().__init__(message)


class DeviceFlowError(Exception):
    """
    Raised when the device-code login does not produce credentials.

    Attributes:
        reason: One of "timeout", "cancelled", "rate_limit", "error"
    """

    def __init__(self, reason: str, message: str):
        self.reason = reason
        super().__init__(message)


class ContentGeneratorError(Exception):
    """Raised when a content generator cannot be constructed."""

    pass


class ModelFetchErrorCode(str, Enum):
    NETWORK_ERROR = "NETWORK_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    NO_TOKEN = "NO_TOKEN"


@dataclass
class ModelFetchError:
    code: ModelFetchErrorCode
    message: str


def _status_of(error: BaseException) -> Optional[Any]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if value is not None:
            return value
    return None


def is_auth_error(error: Optional[BaseException]) -> bool:
    """
    Decide whether an error means the current access token was rejected.

    An error is an auth error when its status/code is 401 or 403, or when its
    message contains one of AUTH_ERROR_MARKERS (case-insensitive), or both
    "token" and "expired".
    """
    if error is None:
        return False

    status = _status_of(error)
    if status in (401, 403, "401", "403"):
        return True

    message = str(error).lower()
    if any(marker in message for marker in AUTH_ERROR_MARKERS):
        return True
    return "token" in message and "expired" in message


def mask_token(token: Optional[str]) -> str:
    """Mask a token for safe logging."""
    if not token:
        return "<none>"
    if len(token) <= 10:
        return "***"
    return f"...{token[-6:]}"
