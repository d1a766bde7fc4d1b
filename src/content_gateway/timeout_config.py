# src/content_gateway/timeout_config.py
"""
HTTP timeouts for the gateway, handed out as httpx.Timeout objects.

Values are seconds and are re-read from the environment on every call:

    TIMEOUT_CONNECT             30
    TIMEOUT_WRITE               30
    TIMEOUT_POOL                60
    TIMEOUT_READ_STREAMING      180   longest gap between two SSE chunks
    TIMEOUT_READ_NON_STREAMING  600   wait for a whole completion body
    TIMEOUT_OAUTH               30    device code, token poll and refresh calls
"""

import os
import logging
from typing import Optional

import httpx

lib_logger = logging.getLogger("content_gateway")

_DEFAULTS = {
    "TIMEOUT_CONNECT": 30.0,
    "TIMEOUT_WRITE": 30.0,
    "TIMEOUT_POOL": 60.0,
    "TIMEOUT_READ_STREAMING": 180.0,
    "TIMEOUT_READ_NON_STREAMING": 600.0,
    "TIMEOUT_OAUTH": 30.0,
}


def _seconds(key: str) -> float:
    default = _DEFAULTS[key]
    raw = os.environ.get(key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        lib_logger.warning(f"Ignoring {key}={raw!r}, falling back to {default}s")
        return default


class TimeoutConfig:
    """Timeout factories for the three kinds of outbound call."""

    @staticmethod
    def _generation(read: float) -> httpx.Timeout:
        return httpx.Timeout(
            connect=_seconds("TIMEOUT_CONNECT"),
            read=read,
            write=_seconds("TIMEOUT_WRITE"),
            pool=_seconds("TIMEOUT_POOL"),
        )

    @classmethod
    def oauth(cls) -> httpx.Timeout:
        return httpx.Timeout(_seconds("TIMEOUT_OAUTH"))

    @classmethod
    def streaming(cls, read_override: Optional[float] = None) -> httpx.Timeout:
        """Streamed completions: a connection silent for the read gap counts as stalled."""
        return cls._generation(read_override or _seconds("TIMEOUT_READ_STREAMING"))

    @classmethod
    def non_streaming(cls, read_override: Optional[float] = None) -> httpx.Timeout:
        """Whole-response calls (completions, embeddings, model discovery)."""
        return cls._generation(read_override or _seconds("TIMEOUT_READ_NON_STREAMING"))
