# src/content_gateway/auth_events.py
"""
Message channel between the device-flow authenticator and whatever renders
its progress.

The authenticator publishes AuthUriEvent / AuthProgressEvent objects onto an
asyncio.Queue; the presentation layer consumes them. Cancellation travels the
other way through an asyncio.Event that the authenticator checks before each
poll. No in-flight HTTP call is ever aborted by a cancel.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class AuthStatus(str, Enum):
    POLLING = "polling"
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"


@dataclass(frozen=True)
class AuthUriEvent:
    """The verification URI is ready to be shown to the user."""

    device_authorization: Dict[str, Any]

    @property
    def verification_uri_complete(self) -> Optional[str]:
        return self.device_authorization.get("verification_uri_complete")

    @property
    def user_code(self) -> Optional[str]:
        return self.device_authorization.get("user_code")


@dataclass(frozen=True)
class AuthProgressEvent:
    status: AuthStatus
    message: Optional[str] = None


AuthEvent = Union[AuthUriEvent, AuthProgressEvent]


class AuthEventChannel:
    """Progress stream plus cancellation token for one login attempt."""

    def __init__(self):
        self.events: "asyncio.Queue[AuthEvent]" = asyncio.Queue()
        self._cancel = asyncio.Event()

    def emit_auth_uri(self, device_authorization: Dict[str, Any]) -> None:
        self.events.put_nowait(AuthUriEvent(dict(device_authorization)))

    def emit_progress(self, status: AuthStatus, message: Optional[str] = None) -> None:
        self.events.put_nowait(AuthProgressEvent(AuthStatus(status), message))

    def cancel(self) -> None:
        """Request cancellation; observed before the next poll."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def reset(self) -> None:
        """Clear a previous cancel so the channel can serve a new attempt."""
        self._cancel.clear()

    def drain(self) -> List[AuthEvent]:
        """Return every queued event without waiting."""
        drained = []
        while True:
            try:
                drained.append(self.events.get_nowait())
            except asyncio.QueueEmpty:
                return drained
