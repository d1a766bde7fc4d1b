"""
Pytest configuration and fixtures for the test suite.
"""
import asyncio
import json
import os
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from content_gateway.token_manager import SharedTokenManager  # noqa: E402


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "asyncio: mark test as an async test")


class FakeClock:
    """Clock plus sleep; sleeping advances the clock instead of waiting."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeOAuthClient:
    """Stands in for DingtalkOAuth2Client where only refresh matters."""

    def __init__(self, token_manager: Optional[SharedTokenManager] = None, refresh_result=None):
        self.credentials: Dict[str, Any] = {}
        self.token_manager = token_manager
        self.refresh_calls = 0
        self.refresh_result = refresh_result or {
            "access_token": "refreshed-token",
            "refresh_token": "refreshed-refresh",
            "token_type": "Bearer",
            "expires_in": 3600,
        }
        self.refresh_delay = 0.0
        self.refresh_tokens_sent: List[Optional[str]] = []

    def get_credentials(self) -> Dict[str, Any]:
        return self.credentials

    def set_credentials(self, credentials: Dict[str, Any]) -> None:
        self.credentials = dict(credentials)

    async def refresh_access_token(self) -> Dict[str, Any]:
        self.refresh_calls += 1
        self.refresh_tokens_sent.append(self.credentials.get("refresh_token"))
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if isinstance(self.refresh_result, BaseException):
            raise self.refresh_result
        return self.refresh_result


@pytest.fixture(autouse=True)
def isolated_config_dir(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.qwen."""
    config_dir = tmp_path / "config"
    monkeypatch.setenv("DINGTALK_CONFIG_DIR", str(config_dir))
    return config_dir


@pytest.fixture
def credential_path(isolated_config_dir) -> Path:
    return isolated_config_dir / "dingtalk_oauth_creds.json"


@pytest.fixture
def write_credentials(credential_path):
    """Write a credential file; expiry defaults to one hour from now."""

    def _write(path: Optional[Path] = None, **overrides) -> Dict[str, Any]:
        credentials = {
            "access_token": "cached-token",
            "refresh_token": "cached-refresh",
            "token_type": "Bearer",
            "resource_url": "http://gateway.test/v1",
            "expiry_date": (time.time() + 3600) * 1000,
        }
        credentials.update(overrides)
        credentials = {k: v for k, v in credentials.items() if v is not None}
        target = path or credential_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(credentials), encoding="utf-8")
        return credentials

    return _write


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def token_manager(credential_path) -> SharedTokenManager:
    return SharedTokenManager(credential_path=credential_path)


@pytest.fixture
def fake_oauth_client(token_manager) -> FakeOAuthClient:
    return FakeOAuthClient(token_manager)


@pytest.fixture
def mock_http():
    """
    Build an httpx.AsyncClient backed by a MockTransport handler.
    Every request seen is appended to ``requests`` on the returned client.
    """
    clients = []

    def _build(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        seen: List[httpx.Request] = []

        def _recording(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return handler(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(_recording))
        client.requests = seen
        clients.append(client)
        return client

    return _build
