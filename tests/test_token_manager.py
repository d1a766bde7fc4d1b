"""
Tests for SharedTokenManager: caching, file sync, single-flight refresh and
the error taxonomy it raises.
"""

import asyncio
import json
import os
import time

import httpx
import pytest

from content_gateway.error_handler import (
    CredentialCacheError,
    CredentialsClearRequiredError,
    TokenError,
    TokenManagerError,
)
from content_gateway.token_manager import (
    TOKEN_REFRESH_BUFFER_MS,
    SharedTokenManager,
    cache_credentials,
)


def _expired_ms():
    return (time.time() - 60) * 1000


class TestValidCredentials:
    @pytest.mark.asyncio
    async def test_returns_cached_file_credentials_without_refresh(
        self, token_manager, fake_oauth_client, write_credentials
    ):
        written = write_credentials()

        credentials = await token_manager.get_valid_credentials(fake_oauth_client)

        assert credentials["access_token"] == written["access_token"]
        assert fake_oauth_client.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_and_persisted(
        self, token_manager, fake_oauth_client, write_credentials, credential_path
    ):
        write_credentials(expiry_date=_expired_ms())

        credentials = await token_manager.get_valid_credentials(fake_oauth_client)

        assert credentials["access_token"] == "refreshed-token"
        assert credentials["refresh_token"] == "refreshed-refresh"
        assert credentials["resource_url"] == "http://gateway.test/v1"
        assert fake_oauth_client.refresh_calls == 1
        assert fake_oauth_client.get_credentials()["access_token"] == "refreshed-token"
        on_disk = json.loads(credential_path.read_text())
        assert on_disk["access_token"] == "refreshed-token"
        assert token_manager.is_token_valid(on_disk)

    @pytest.mark.asyncio
    async def test_force_refresh_ignores_valid_cache(
        self, token_manager, fake_oauth_client, write_credentials
    ):
        write_credentials()

        credentials = await token_manager.get_valid_credentials(
            fake_oauth_client, force_refresh=True
        )

        assert credentials["access_token"] == "refreshed-token"
        assert fake_oauth_client.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_refresh_token_when_not_rotated(
        self, token_manager, fake_oauth_client, write_credentials
    ):
        write_credentials(expiry_date=_expired_ms())
        fake_oauth_client.refresh_result = {"access_token": "new", "expires_in": 60}

        credentials = await token_manager.get_valid_credentials(fake_oauth_client)

        assert credentials["refresh_token"] == "cached-refresh"


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(
        self, token_manager, fake_oauth_client, write_credentials
    ):
        write_credentials(expiry_date=_expired_ms())
        fake_oauth_client.refresh_delay = 0.01

        results = await asyncio.gather(
            *(token_manager.get_valid_credentials(fake_oauth_client) for _ in range(5))
        )

        assert fake_oauth_client.refresh_calls == 1
        assert all(r["access_token"] == "refreshed-token" for r in results)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_the_failure(
        self, token_manager, fake_oauth_client, write_credentials
    ):
        write_credentials(expiry_date=_expired_ms())
        fake_oauth_client.refresh_delay = 0.01
        fake_oauth_client.refresh_result = httpx.ConnectError("boom")

        results = await asyncio.gather(
            *(token_manager.get_valid_credentials(fake_oauth_client) for _ in range(3)),
            return_exceptions=True,
        )

        assert fake_oauth_client.refresh_calls == 1
        assert all(isinstance(r, TokenManagerError) for r in results)
        assert {r.type for r in results} == {TokenError.NETWORK_ERROR}

    @pytest.mark.asyncio
    async def test_new_refresh_starts_after_previous_finished(
        self, token_manager, fake_oauth_client, write_credentials
    ):
        write_credentials()

        await token_manager.get_valid_credentials(fake_oauth_client, force_refresh=True)
        await token_manager.get_valid_credentials(fake_oauth_client, force_refresh=True)

        assert fake_oauth_client.refresh_calls == 2


class TestRefreshFailures:
    @pytest.mark.asyncio
    async def test_no_refresh_token(self, token_manager, fake_oauth_client):
        with pytest.raises(TokenManagerError) as exc_info:
            await token_manager.get_valid_credentials(fake_oauth_client)

        assert exc_info.value.type == TokenError.NO_REFRESH_TOKEN
        assert fake_oauth_client.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_rejected_refresh_token_is_refresh_failed(
        self, token_manager, fake_oauth_client, write_credentials
    ):
        write_credentials(expiry_date=_expired_ms())
        fake_oauth_client.refresh_result = CredentialsClearRequiredError(
            "Refresh token invalid or expired. Please re-authenticate."
        )

        with pytest.raises(TokenManagerError) as exc_info:
            await token_manager.get_valid_credentials(fake_oauth_client)

        assert exc_info.value.type == TokenError.REFRESH_FAILED
        assert isinstance(exc_info.value.original_error, CredentialsClearRequiredError)

    @pytest.mark.asyncio
    async def test_transport_failure_is_network_error(
        self, token_manager, fake_oauth_client, write_credentials
    ):
        write_credentials(expiry_date=_expired_ms())
        fake_oauth_client.refresh_result = httpx.ConnectTimeout("timed out")

        with pytest.raises(TokenManagerError) as exc_info:
            await token_manager.get_valid_credentials(fake_oauth_client)

        assert exc_info.value.type == TokenError.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_response_without_access_token_is_refresh_failed(
        self, token_manager, fake_oauth_client, write_credentials
    ):
        write_credentials(expiry_date=_expired_ms())
        fake_oauth_client.refresh_result = {"token_type": "Bearer"}

        with pytest.raises(TokenManagerError) as exc_info:
            await token_manager.get_valid_credentials(fake_oauth_client)

        assert exc_info.value.type == TokenError.REFRESH_FAILED

    @pytest.mark.asyncio
    async def test_unwritable_file_is_file_access_error(
        self, token_manager, fake_oauth_client, write_credentials, monkeypatch
    ):
        write_credentials(expiry_date=_expired_ms())

        def _deny(*args, **kwargs):
            raise PermissionError("denied")

        monkeypatch.setattr("content_gateway.token_manager.atomic_write_json", _deny)

        with pytest.raises(TokenManagerError) as exc_info:
            await token_manager.get_valid_credentials(fake_oauth_client)

        assert exc_info.value.type == TokenError.FILE_ACCESS_ERROR


class TestCacheAndFileSync:
    def test_token_inside_buffer_is_invalid(self):
        manager = SharedTokenManager(clock=lambda: 1000.0)
        expiry = 1000.0 * 1000 + TOKEN_REFRESH_BUFFER_MS - 1

        assert not manager.is_token_valid({"access_token": "t", "expiry_date": expiry})
        assert manager.is_token_valid(
            {"access_token": "t", "expiry_date": expiry + TOKEN_REFRESH_BUFFER_MS}
        )

    def test_credentials_without_access_token_are_invalid(self, token_manager):
        assert not token_manager.is_token_valid({"expiry_date": time.time() * 2000})
        assert not token_manager.is_token_valid(None)

    @pytest.mark.asyncio
    async def test_clear_cache_keeps_file(
        self, token_manager, fake_oauth_client, write_credentials, credential_path
    ):
        write_credentials()
        await token_manager.get_valid_credentials(fake_oauth_client)

        token_manager.clear_cache()

        assert token_manager.get_current_credentials() is None
        assert credential_path.exists()

    @pytest.mark.asyncio
    async def test_reloads_when_another_process_rewrites_file(
        self, token_manager, fake_oauth_client, write_credentials, credential_path
    ):
        write_credentials()
        await token_manager.get_valid_credentials(fake_oauth_client)

        write_credentials(access_token="rotated-elsewhere")
        stat = credential_path.stat()
        os.utime(credential_path, (stat.st_atime, stat.st_mtime + 10))

        credentials = await token_manager.get_valid_credentials(fake_oauth_client)

        assert credentials["access_token"] == "rotated-elsewhere"
        assert fake_oauth_client.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_forced_refresh_uses_refresh_token_rotated_on_disk(
        self, token_manager, fake_oauth_client, write_credentials, credential_path
    ):
        write_credentials(refresh_token="refresh-A")
        await token_manager.get_valid_credentials(fake_oauth_client)
        assert fake_oauth_client.get_credentials()["refresh_token"] == "refresh-A"

        write_credentials(access_token="rotated-elsewhere", refresh_token="refresh-B")
        stat = credential_path.stat()
        os.utime(credential_path, (stat.st_atime, stat.st_mtime + 10))

        token_manager.clear_cache()
        credentials = await token_manager.get_valid_credentials(
            fake_oauth_client, force_refresh=True
        )

        assert fake_oauth_client.refresh_tokens_sent == ["refresh-B"]
        assert credentials["access_token"] == "refreshed-token"

    @pytest.mark.asyncio
    async def test_cached_fast_path_hands_credentials_to_client(
        self, token_manager, fake_oauth_client, write_credentials
    ):
        fake_oauth_client.set_credentials({"refresh_token": "stale"})
        write_credentials(refresh_token="fresh")

        await token_manager.get_valid_credentials(fake_oauth_client)

        assert fake_oauth_client.get_credentials()["refresh_token"] == "fresh"

    def test_get_current_credentials_does_no_io(self, token_manager, write_credentials):
        write_credentials()

        assert token_manager.get_current_credentials() is None


class TestCacheCredentials:
    def test_writes_file_with_private_permissions(self, tmp_path):
        path = tmp_path / "nested" / "creds.json"

        cache_credentials({"access_token": "a"}, path)

        assert json.loads(path.read_text()) == {"access_token": "a"}
        if os.name == "posix":
            assert (path.stat().st_mode & 0o777) == 0o600

    def test_permission_denied_has_distinct_message(self, tmp_path, monkeypatch):
        def _deny(*args, **kwargs):
            raise PermissionError("denied")

        monkeypatch.setattr("content_gateway.token_manager.atomic_write_json", _deny)

        with pytest.raises(CredentialCacheError) as exc_info:
            cache_credentials({"access_token": "a"}, tmp_path / "creds.json")

        assert exc_info.value.permission_denied
        assert "Permission denied" in str(exc_info.value)

    def test_other_os_errors_mention_folder(self, tmp_path, monkeypatch):
        def _fail(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("content_gateway.token_manager.atomic_write_json", _fail)

        with pytest.raises(CredentialCacheError) as exc_info:
            cache_credentials({"access_token": "a"}, tmp_path / "creds.json")

        assert not exc_info.value.permission_denied
        assert "error when creating folder" in str(exc_info.value)
