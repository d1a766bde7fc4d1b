# src/content_gateway/providers/dingtalk_oauth.py

import asyncio
import base64
import hashlib
import json
import logging
import os
import secrets
import time
import uuid
import webbrowser
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

import httpx
from rich.console import Console
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.text import Text

from ..auth_events import AuthEventChannel, AuthStatus
from ..config import GatewayConfig
from ..error_handler import (
    CredentialCacheError,
    CredentialsClearRequiredError,
    DeviceAuthorizationError,
    DeviceFlowError,
    TokenError,
    TokenManagerError,
)
from ..timeout_config import TimeoutConfig
from ..token_manager import SharedTokenManager, cache_credentials
from ..utils.headless_detection import is_headless_environment
from ..utils.http import http_session

lib_logger = logging.getLogger("content_gateway")

DINGTALK_OAUTH_BASE_URL = os.getenv("DINGTALK_OAUTH_BASE_URL", "http://localhost:8080")
DEVICE_CODE_PATH = "/api/v1/oauth2/device/code"
TOKEN_PATH = "/api/v1/oauth2/token"

CLIENT_ID = "tmcli"
SCOPE = "openid profile email"
DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

DEFAULT_POLL_INTERVAL = 2.0  # seconds
SLOW_DOWN_INCREMENT = 2.0
MAX_POLL_INTERVAL = 10.0

PENDING_ERRORS = ("authorization_pending", "slow_down")

console = Console()


def generate_pkce_pair() -> Tuple[str, str]:
    """Return (code_verifier, code_challenge) for the S256 method."""
    code_verifier = (
        base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("utf-8").rstrip("=")
    )
    code_challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(code_verifier.encode("utf-8")).digest())
        .decode("utf-8")
        .rstrip("=")
    )
    return code_verifier, code_challenge


def is_error_response(response: Any) -> bool:
    return isinstance(response, dict) and "error" in response


def is_device_authorization_success(response: Any) -> bool:
    return (
        isinstance(response, dict)
        and "device_code" in response
        and "user_code" in response
    )


def is_device_token_success(response: Any) -> bool:
    return isinstance(response, dict) and response.get("access_token") is not None


def is_device_token_pending(response: Any) -> bool:
    return isinstance(response, dict) and response.get("error") in PENDING_ERRORS


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        return {}
    return body if isinstance(body, dict) else {}


class DingtalkOAuth2Client:
    """
    HTTP client for the device-code OAuth endpoints.

    Holds the credentials it was last given; the SharedTokenManager reads and
    replaces them around refreshes.
    """

    def __init__(
        self,
        token_manager: Optional[SharedTokenManager] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
    ):
        self._credentials: Dict[str, Any] = {}
        self._token_manager = token_manager or SharedTokenManager()
        self._http_client = http_client
        self._base_url = (base_url or DINGTALK_OAUTH_BASE_URL).rstrip("/")

    @property
    def token_manager(self) -> SharedTokenManager:
        return self._token_manager

    @property
    def device_code_endpoint(self) -> str:
        return f"{self._base_url}{DEVICE_CODE_PATH}"

    @property
    def token_endpoint(self) -> str:
        return f"{self._base_url}{TOKEN_PATH}"

    def set_credentials(self, credentials: Dict[str, Any]) -> None:
        self._credentials = dict(credentials or {})

    def get_credentials(self) -> Dict[str, Any]:
        return self._credentials

    async def get_access_token(self) -> Optional[str]:
        """Ask the token manager for a valid token. None when it cannot provide one."""
        try:
            credentials = await self._token_manager.get_valid_credentials(self)
        except TokenManagerError as e:
            lib_logger.warning(f"Failed to get access token from token manager: {e}")
            return None
        self.set_credentials(credentials)
        return credentials.get("access_token")

    async def request_device_authorization(
        self,
        scope: str,
        code_challenge: str,
        code_challenge_method: str = "S256",
    ) -> Dict[str, Any]:
        """
        Start a device flow.

        Raises:
            DeviceAuthorizationError: the endpoint answered with a non-2xx status
        """
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
            "x-request-id": str(uuid.uuid4()),
        }
        data = {
            "client_id": CLIENT_ID,
            "scope": scope,
            "code_challenge": code_challenge,
            "code_challenge_method": code_challenge_method,
        }
        async with http_session(self._http_client, TimeoutConfig.oauth()) as client:
            response = await client.post(
                self.device_code_endpoint, headers=headers, data=data
            )
        result = _json_body(response)
        lib_logger.debug(f"Device authorization response: HTTP {response.status_code}")

        if not response.is_success:
            if is_error_response(result):
                detail = (
                    f"{result['error']}: "
                    f"{result.get('error_description') or 'No details provided'}"
                )
            else:
                detail = f"{response.status_code} {response.reason_phrase}"
            raise DeviceAuthorizationError(
                f"Device authorization failed: {detail}",
                error=result.get("error"),
                error_description=result.get("error_description"),
                status_code=response.status_code,
            )
        return result

    async def poll_device_token(
        self, device_code: str, code_verifier: str
    ) -> Dict[str, Any]:
        """
        Poll the token endpoint once.

        OAuth error bodies are returned as data so the polling loop can act on
        them; a bare HTTP 429 is reported as {"error": "rate_limit"}.
        """
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        data = {
            "grant_type": DEVICE_CODE_GRANT_TYPE,
            "client_id": CLIENT_ID,
            "device_code": device_code,
            "code_verifier": code_verifier,
        }
        async with http_session(self._http_client, TimeoutConfig.oauth()) as client:
            response = await client.post(self.token_endpoint, headers=headers, data=data)
        result = _json_body(response)

        if not response.is_success:
            if is_error_response(result):
                return result
            if response.status_code == 429:
                return {
                    "error": "rate_limit",
                    "error_description": "Too many requests. Please try again later.",
                }
            raise DeviceAuthorizationError(
                f"Device token poll failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        return result

    async def refresh_access_token(self) -> Dict[str, Any]:
        """
        Exchange the refresh token for a new access token.

        Raises:
            CredentialsClearRequiredError: no refresh token, or HTTP 400
            httpx.HTTPStatusError: any other non-2xx answer
        """
        refresh_token = self._credentials.get("refresh_token")
        if not refresh_token:
            raise CredentialsClearRequiredError(
                "No refresh token available. Please re-authenticate."
            )

        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        data = {
            "grant_type": "refresh_token",
            "client_id": CLIENT_ID,
            "refresh_token": refresh_token,
        }
        async with http_session(self._http_client, TimeoutConfig.oauth()) as client:
            response = await client.post(self.token_endpoint, headers=headers, data=data)

        if response.status_code == 400:
            raise CredentialsClearRequiredError(
                "Refresh token invalid or expired. Please re-authenticate.",
                _json_body(response) or response.text,
            )
        if not response.is_success:
            lib_logger.error(
                f"Token refresh failed with HTTP {response.status_code}: {response.text}"
            )
            response.raise_for_status()
        return _json_body(response)


class DeviceFlowState(str, Enum):
    IDLE = "idle"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    AWAITING_USER_ACTION = "awaiting_user_action"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


@dataclass
class AuthResult:
    success: bool
    reason: Optional[str] = None  # timeout, cancelled, rate_limit, error
    message: Optional[str] = None


class DeviceFlowAuthenticator:
    """
    Runs one device-authorization-grant login from request to resolution.

    Progress goes out through the AuthEventChannel; cancellation comes in
    through it and is checked before every poll. Sleep, clock and browser
    launcher are injectable so the loop can be driven without real time.
    """

    def __init__(
        self,
        client: DingtalkOAuth2Client,
        config: GatewayConfig,
        channel: Optional[AuthEventChannel] = None,
        credential_path: Optional[Union[str, Path]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        open_browser: Callable[[str], Any] = webbrowser.open,
        show_fallback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.client = client
        self.config = config
        self.channel = channel or AuthEventChannel()
        self.credential_path = (
            Path(credential_path)
            if credential_path
            else client.token_manager.credential_path
        )
        self.state = DeviceFlowState.IDLE
        self._sleep = sleep
        self._clock = clock
        self._open_browser = open_browser
        # Callers that render AuthUriEvent themselves pass a no-op here
        self._show_fallback = show_fallback or self._show_fallback_message

    def _transition(self, state: DeviceFlowState) -> None:
        lib_logger.debug(f"Device flow: {self.state.value} -> {state.value}")
        self.state = state

    def _browser_suppressed(self) -> bool:
        return self.config.is_browser_launch_suppressed() or is_headless_environment()

    def _show_fallback_message(self, device_auth: Dict[str, Any]) -> None:
        url = device_auth.get("verification_uri_complete") or device_auth.get(
            "verification_uri", ""
        )
        body = Text.from_markup(
            "Please visit the following URL in your browser to authorize.\n"
            f"Your code: [bold yellow]{rich_escape(str(device_auth.get('user_code', '')))}[/bold yellow]"
        )
        console.print(Panel(body, title="Dingtalk OAuth Device Authorization", style="bold blue"))
        console.print(f"[bold]URL:[/bold] [link={url}]{rich_escape(url)}[/link]\n")
        console.print("Waiting for authorization to complete...\n")

    def _launch_browser(self, device_auth: Dict[str, Any]) -> None:
        if self._browser_suppressed():
            self._show_fallback(device_auth)
            return
        url = device_auth["verification_uri_complete"]
        try:
            opened = self._open_browser(url)
        except Exception as e:
            lib_logger.warning(
                f"Failed to open browser automatically: {e}. Please open the URL manually."
            )
            opened = False
        if opened is False:
            self._show_fallback(device_auth)
        else:
            lib_logger.info("Browser opened for Dingtalk OAuth flow")

    def _fail(self, state: DeviceFlowState, reason: str, message: Optional[str]) -> AuthResult:
        self._transition(state)
        return AuthResult(success=False, reason=reason, message=message)

    async def authenticate(self) -> AuthResult:
        """
        Run the flow. Never raises for protocol failures; inspect the result.

        A cancel already set on the channel is honoured at the first poll.
        """
        try:
            return await self._run()
        except (
            httpx.HTTPError,
            DeviceAuthorizationError,
            CredentialCacheError,
            KeyError,
            ValueError,
        ) as e:
            message = f"Device authorization flow failed: {e}"
            lib_logger.error(message)
            return self._fail(DeviceFlowState.FAILED, "error", message)

    async def _run(self) -> AuthResult:
        code_verifier, code_challenge = generate_pkce_pair()

        self._transition(DeviceFlowState.AUTHORIZATION_REQUESTED)
        device_auth = await self.client.request_device_authorization(
            scope=SCOPE, code_challenge=code_challenge, code_challenge_method="S256"
        )
        if not is_device_authorization_success(device_auth):
            raise DeviceAuthorizationError(
                f"Device authorization failed: "
                f"{device_auth.get('error') or 'Unknown error'} - "
                f"{device_auth.get('error_description') or 'No details provided'}",
                error=device_auth.get("error"),
                error_description=device_auth.get("error_description"),
            )

        self._transition(DeviceFlowState.AWAITING_USER_ACTION)
        self.channel.emit_auth_uri(device_auth)
        self._launch_browser(device_auth)

        interval = float(device_auth.get("interval") or DEFAULT_POLL_INTERVAL)
        expires_in = float(device_auth["expires_in"])
        start = self._clock()

        self._transition(DeviceFlowState.POLLING)
        while self._clock() - start < expires_in:
            if self.channel.cancelled:
                message = "Authentication cancelled by user."
                self.channel.emit_progress(AuthStatus.ERROR, message)
                return self._fail(DeviceFlowState.CANCELLED, "cancelled", message)

            self.channel.emit_progress(AuthStatus.POLLING, "Waiting for authorization...")
            token_response = await self.client.poll_device_token(
                device_code=device_auth["device_code"], code_verifier=code_verifier
            )

            if is_device_token_success(token_response):
                self._store_credentials(token_response)
                self.channel.emit_progress(
                    AuthStatus.SUCCESS, "Authentication successful! Access token obtained."
                )
                self._transition(DeviceFlowState.SUCCEEDED)
                return AuthResult(success=True)

            if is_device_token_pending(token_response):
                if token_response["error"] == "slow_down":
                    interval = min(interval + SLOW_DOWN_INCREMENT, MAX_POLL_INTERVAL)
                    lib_logger.debug(f"Server asked to slow down, polling every {interval}s")
                await self._sleep(interval)
                continue

            if is_error_response(token_response):
                error = token_response["error"]
                if error == "access_denied":
                    message = "User denied access. Please start authentication again."
                else:
                    message = (
                        token_response.get("error_description")
                        or f"Authentication failed: {error}"
                    )
                if error == "rate_limit":
                    self.channel.emit_progress(AuthStatus.RATE_LIMIT, message)
                    return self._fail(DeviceFlowState.FAILED, "rate_limit", message)
                self.channel.emit_progress(AuthStatus.ERROR, message)
                return self._fail(DeviceFlowState.FAILED, "error", message)

            await self._sleep(interval)

        message = "Authentication timed out. Please try again."
        self.channel.emit_progress(AuthStatus.TIMEOUT, message)
        return self._fail(DeviceFlowState.TIMED_OUT, "timeout", message)

    def _store_credentials(self, token_data: Dict[str, Any]) -> None:
        expires_in = token_data.get("expires_in")
        credentials = {
            "access_token": token_data["access_token"],
            "refresh_token": token_data.get("refresh_token"),
            "token_type": token_data.get("token_type"),
            "resource_url": token_data.get("resource_url"),
            "expiry_date": time.time() * 1000 + float(expires_in) * 1000
            if expires_in
            else None,
        }
        credentials = {k: v for k, v in credentials.items() if v is not None}
        self.client.set_credentials(credentials)
        cache_credentials(credentials, self.credential_path)


_FAILURE_MESSAGES = {
    "timeout": "Dingtalk OAuth authentication timed out",
    "cancelled": "Dingtalk OAuth authentication was cancelled by user",
    "rate_limit": "Too many requests for Dingtalk OAuth authentication, please try again later.",
    "error": "Dingtalk OAuth authentication failed",
}


async def _run_device_flow(
    client: DingtalkOAuth2Client,
    config: GatewayConfig,
    channel: Optional[AuthEventChannel],
    **authenticator_kwargs: Any,
) -> None:
    result = await DeviceFlowAuthenticator(
        client, config, channel, **authenticator_kwargs
    ).authenticate()
    if not result.success:
        reason = result.reason or "error"
        raise DeviceFlowError(reason, result.message or _FAILURE_MESSAGES[reason])
    client.token_manager.clear_cache()


async def get_dingtalk_oauth_client(
    config: GatewayConfig,
    token_manager: SharedTokenManager,
    channel: Optional[AuthEventChannel] = None,
    require_cached_credentials: bool = False,
    http_client: Optional[httpx.AsyncClient] = None,
    **authenticator_kwargs: Any,
) -> DingtalkOAuth2Client:
    """
    Return an OAuth client holding usable credentials.

    Uses cached credentials when the token manager can validate or refresh
    them, otherwise runs the device flow.

    Raises:
        DeviceFlowError: the device flow failed, or no cached credentials
            exist and require_cached_credentials is set
    """
    client = DingtalkOAuth2Client(token_manager, http_client=http_client)
    try:
        credentials = await token_manager.get_valid_credentials(client)
        client.set_credentials(credentials)
        return client
    except TokenManagerError as e:
        if e.type == TokenError.NO_REFRESH_TOKEN:
            lib_logger.debug("No refresh token available, proceeding with device flow")
        elif e.type == TokenError.REFRESH_FAILED:
            lib_logger.debug("Token refresh failed, proceeding with device flow")
        elif e.type == TokenError.NETWORK_ERROR:
            lib_logger.warning("Network error during token refresh, trying device flow")
        else:
            lib_logger.warning(f"Token manager error: {e.message}")

    if not token_manager.credential_path.exists() and require_cached_credentials:
        raise DeviceFlowError(
            "error", "No cached Dingtalk-OAuth credentials found. Please re-authenticate."
        )

    await _run_device_flow(client, config, channel, **authenticator_kwargs)
    return client


def clear_dingtalk_credentials(
    token_manager: Optional[SharedTokenManager] = None,
    credential_path: Optional[Union[str, Path]] = None,
) -> bool:
    """
    Delete the cached credential file (logout). A missing file is not an error.

    Returns:
        True if the file is gone afterwards
    """
    if credential_path:
        path = Path(credential_path)
    elif token_manager is not None:
        path = token_manager.credential_path
    else:
        path = SharedTokenManager().credential_path

    if token_manager is not None:
        token_manager.clear_cache()

    try:
        path.unlink()
        lib_logger.debug("Cached Dingtalk credentials cleared successfully.")
    except FileNotFoundError:
        pass
    except OSError as e:
        lib_logger.warning(f"Failed to clear cached Dingtalk credentials: {e}")
        return False
    return True
