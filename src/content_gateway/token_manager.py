# src/content_gateway/token_manager.py

import asyncio
import json
import time
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Union

import httpx

from .error_handler import (
    CredentialCacheError,
    CredentialsClearRequiredError,
    TokenError,
    TokenManagerError,
)
from .utils.paths import get_dingtalk_credential_path
from .utils.resilient_io import atomic_write_json

lib_logger = logging.getLogger("content_gateway")

# Refresh this long before the server-side expiry
TOKEN_REFRESH_BUFFER_MS = 30 * 1000


class OAuthClient(Protocol):
    """What the token manager needs from an OAuth client."""

    def get_credentials(self) -> Dict[str, Any]: ...

    def set_credentials(self, credentials: Dict[str, Any]) -> None: ...

    async def refresh_access_token(self) -> Dict[str, Any]: ...


def cache_credentials(
    credentials: Dict[str, Any], path: Optional[Union[str, Path]] = None
) -> Path:
    """
    Persist OAuth credentials, overwriting the credential file atomically.

    Raises:
        CredentialCacheError: the directory or file could not be written
    """
    file_path = Path(path) if path else get_dingtalk_credential_path()
    try:
        atomic_write_json(file_path, credentials, secure_permissions=True)
    except PermissionError as e:
        raise CredentialCacheError(
            str(file_path),
            f"Failed to cache credentials: Permission denied. Current user has no "
            f"permission to access `{file_path}`. Please check permissions.",
            permission_denied=True,
        ) from e
    except OSError as e:
        raise CredentialCacheError(
            str(file_path),
            f"Failed to cache credentials: error when creating folder "
            f"`{file_path.parent}` and writing to `{file_path}`. {e}. "
            f"Please check permissions.",
        ) from e
    lib_logger.debug(f"Saved OAuth credentials to '{file_path.name}'.")
    return file_path


class SharedTokenManager:
    """
    Owns the OAuth credentials for one identity and keeps them valid.

    One instance is created per process identity and passed to everything
    that needs a token. Refreshes are single-flight: concurrent callers that
    need a refresh await the same task and observe the same outcome.
    The in-memory cache follows the credential file, reloading when another
    process rewrites it.
    """

    def __init__(
        self,
        credential_path: Optional[Union[str, Path]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._credential_path = Path(credential_path) if credential_path else None
        self._clock = clock
        self._credentials: Optional[Dict[str, Any]] = None
        self._file_mtime: Optional[float] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def credential_path(self) -> Path:
        return self._credential_path or get_dingtalk_credential_path()

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def is_token_valid(self, credentials: Optional[Dict[str, Any]]) -> bool:
        """A token is valid when present and not within the refresh buffer of expiry."""
        if not credentials or not credentials.get("access_token"):
            return False
        expiry_date = credentials.get("expiry_date")
        if not expiry_date:
            return False
        return self._now_ms() < float(expiry_date) - TOKEN_REFRESH_BUFFER_MS

    def _reload_if_file_changed(self) -> None:
        """Sync the memory cache with the credential file when its mtime moved."""
        path = self.credential_path
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            if self._file_mtime is not None:
                lib_logger.debug(
                    f"Credential file '{path.name}' disappeared, dropping cached credentials"
                )
                self._credentials = None
                self._file_mtime = None
            return
        except OSError as e:
            lib_logger.warning(f"Cannot stat credential file '{path}': {e}")
            return

        if self._file_mtime == mtime and self._credentials is not None:
            return

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            lib_logger.warning(f"Failed to read credential file '{path}': {e}")
            return

        if not isinstance(data, dict) or not data.get("access_token"):
            lib_logger.warning(
                f"Credential file '{path.name}' has no access_token, ignoring it"
            )
            self._file_mtime = mtime
            return

        lib_logger.debug(f"Loaded OAuth credentials from '{path.name}'")
        self._credentials = data
        self._file_mtime = mtime

    async def get_valid_credentials(
        self, client: OAuthClient, force_refresh: bool = False
    ) -> Dict[str, Any]:
        """
        Return credentials that are safe to use right now, refreshing if needed.

        Args:
            client: OAuth client used for the refresh call
            force_refresh: Refresh even if the cached token still looks valid

        Raises:
            TokenManagerError: NO_REFRESH_TOKEN, REFRESH_FAILED, NETWORK_ERROR
                or FILE_ACCESS_ERROR
        """
        if not force_refresh:
            self._reload_if_file_changed()
            if self.is_token_valid(self._credentials):
                client.set_credentials(self._credentials)
                return self._credentials

        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.ensure_future(
                self._perform_token_refresh(client, force_refresh)
            )
            task.add_done_callback(self._clear_refresh_task)
            self._refresh_task = task
        else:
            lib_logger.debug("Token refresh already in flight, waiting for it")

        # Shield so one caller being cancelled does not cancel everyone's refresh
        return await asyncio.shield(task)

    def _clear_refresh_task(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark the exception retrieved; awaiting callers already received it
            task.exception()

    async def _perform_token_refresh(
        self, client: OAuthClient, force_refresh: bool
    ) -> Dict[str, Any]:
        async with self._refresh_lock:
            # Another process may have refreshed while we were waiting
            self._reload_if_file_changed()
            if not force_refresh and self.is_token_valid(self._credentials):
                client.set_credentials(self._credentials)
                return self._credentials

            # The file wins over the client: another process may have rotated
            # the refresh token since the client was handed its copy
            if self._credentials and self._credentials.get("refresh_token"):
                current = self._credentials
                client.set_credentials(current)
            else:
                current = client.get_credentials() or {}

            if not current.get("refresh_token"):
                raise TokenManagerError(
                    TokenError.NO_REFRESH_TOKEN,
                    "No refresh token available for token refresh",
                )

            lib_logger.info("Refreshing OAuth access token...")
            try:
                token_data = await client.refresh_access_token()
            except CredentialsClearRequiredError as e:
                raise TokenManagerError(TokenError.REFRESH_FAILED, e.message, e)
            except httpx.TransportError as e:
                raise TokenManagerError(
                    TokenError.NETWORK_ERROR,
                    f"Network error during token refresh: {e}",
                    e,
                )
            except Exception as e:
                raise TokenManagerError(
                    TokenError.REFRESH_FAILED,
                    f"Unexpected error during token refresh: {e}",
                    e,
                )

            if not token_data or not token_data.get("access_token"):
                raise TokenManagerError(
                    TokenError.REFRESH_FAILED,
                    "Failed to refresh access token: no access_token in response",
                )

            new_credentials = {
                "access_token": token_data["access_token"],
                "token_type": token_data.get("token_type") or current.get("token_type"),
                "refresh_token": token_data.get("refresh_token")
                or current.get("refresh_token"),
                "id_token": current.get("id_token"),
                "resource_url": token_data.get("resource_url")
                or current.get("resource_url"),
            }
            expires_in = token_data.get("expires_in")
            if expires_in:
                new_credentials["expiry_date"] = self._now_ms() + float(expires_in) * 1000
            new_credentials = {k: v for k, v in new_credentials.items() if v is not None}

            self._save_credentials(new_credentials)
            client.set_credentials(new_credentials)
            lib_logger.info("Successfully refreshed OAuth access token")
            return new_credentials

    def _save_credentials(self, credentials: Dict[str, Any]) -> None:
        try:
            path = cache_credentials(credentials, self.credential_path)
        except CredentialCacheError as e:
            raise TokenManagerError(TokenError.FILE_ACCESS_ERROR, str(e), e)
        self._credentials = credentials
        try:
            self._file_mtime = path.stat().st_mtime
        except OSError:
            self._file_mtime = None

    def get_current_credentials(self) -> Optional[Dict[str, Any]]:
        """Whatever is cached right now; no validation and no I/O."""
        return self._credentials

    def clear_cache(self) -> None:
        """Drop the in-memory credentials. The credential file is left alone."""
        self._credentials = None
        self._file_mtime = None
