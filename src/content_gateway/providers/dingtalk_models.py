# src/content_gateway/providers/dingtalk_models.py

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

import httpx

from ..config import AuthType, GatewayConfig
from ..error_handler import ModelFetchError, ModelFetchErrorCode
from ..timeout_config import TimeoutConfig
from ..utils.http import http_session
from ..token_manager import SharedTokenManager
from .dingtalk_oauth import DingtalkOAuth2Client

lib_logger = logging.getLogger("content_gateway")

DEFAULT_RESOURCE_ROOT = "https://tmcli.buguk12.com"
MODELS_PATH = "/api/v1/models"
MAX_RETRIES = 2
RETRY_DELAY_SECONDS = 1.0


@dataclass
class ModelFetchResult:
    success: bool
    models: List[str] = field(default_factory=list)
    error: Optional[ModelFetchError] = None


def normalize_resource_root(resource_url: Optional[str]) -> str:
    """API root for a token's resource URL: no trailing /v1, no trailing slash."""
    if not resource_url:
        return DEFAULT_RESOURCE_ROOT
    if resource_url.endswith("/v1"):
        return resource_url[: -len("/v1")]
    return resource_url.rstrip("/")


def _failure(code: ModelFetchErrorCode, message: str) -> ModelFetchResult:
    return ModelFetchResult(success=False, error=ModelFetchError(code, message))


async def fetch_dingtalk_models(
    client: DingtalkOAuth2Client,
    token_manager: Optional[SharedTokenManager] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> ModelFetchResult:
    """
    Fetch the model names available to the authenticated identity.

    Transport failures and non-auth HTTP errors are retried MAX_RETRIES times
    with linear backoff. 401/403 is not retried: it clears the token
    manager's cache and reports AUTH_ERROR. Entries flagged
    ``"available": false`` are dropped.
    """
    token = await client.get_access_token()
    if not token:
        return _failure(ModelFetchErrorCode.NO_TOKEN, "No access token available")

    token_manager = token_manager or client.token_manager
    credentials = client.get_credentials() or {}
    endpoint = f"{normalize_resource_root(credentials.get('resource_url'))}{MODELS_PATH}"
    headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    last_error: Optional[ModelFetchError] = None
    async with http_session(http_client, TimeoutConfig.non_streaming()) as session:
        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await session.get(endpoint, headers=headers)
            except httpx.TransportError as e:
                last_error = ModelFetchError(
                    ModelFetchErrorCode.NETWORK_ERROR,
                    str(e) or "Network error during model fetch",
                )
                lib_logger.warning(
                    f"Model fetch attempt {attempt + 1}/{MAX_RETRIES + 1} failed: {e}"
                )
            else:
                if response.status_code in (401, 403):
                    lib_logger.error(
                        f"Dingtalk model fetch failed: AUTH_ERROR (HTTP {response.status_code}) from {endpoint}"
                    )
                    token_manager.clear_cache()
                    return _failure(
                        ModelFetchErrorCode.AUTH_ERROR,
                        f"HTTP {response.status_code}: {response.reason_phrase}",
                    )

                if response.is_success:
                    try:
                        body = response.json()
                    except ValueError as e:
                        last_error = ModelFetchError(
                            ModelFetchErrorCode.NETWORK_ERROR,
                            f"Invalid JSON from {endpoint}: {e}",
                        )
                        lib_logger.warning(
                            f"Model fetch attempt {attempt + 1}/{MAX_RETRIES + 1} returned invalid JSON"
                        )
                    else:
                        return _parse_models(body, endpoint)
                else:
                    last_error = ModelFetchError(
                        ModelFetchErrorCode.NETWORK_ERROR,
                        f"HTTP {response.status_code}: {response.reason_phrase}",
                    )
                    lib_logger.error(
                        f"Dingtalk model fetch failed: NETWORK_ERROR (HTTP {response.status_code}) from {endpoint}"
                    )

            if attempt < MAX_RETRIES:
                await sleep(RETRY_DELAY_SECONDS * (attempt + 1))

    return ModelFetchResult(success=False, error=last_error)


def _parse_models(body: Any, endpoint: str) -> ModelFetchResult:
    entries = body.get("data") if isinstance(body, dict) else None
    models = [
        entry.get("name")
        for entry in entries or []
        if isinstance(entry, dict) and entry.get("available") is not False
    ]
    models = [name for name in models if name]

    if not models:
        lib_logger.error(f"Dingtalk model fetch failed: EMPTY_RESPONSE from {endpoint}")
        return _failure(
            ModelFetchErrorCode.EMPTY_RESPONSE, "No available models returned by server."
        )
    lib_logger.info(f"Discovered {len(models)} Dingtalk models")
    return ModelFetchResult(success=True, models=models)


async def refresh_available_models(
    config: GatewayConfig,
    client: DingtalkOAuth2Client,
    token_manager: Optional[SharedTokenManager] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> ModelFetchResult:
    """Run discovery and record models or the error in the process-wide config."""
    result = await fetch_dingtalk_models(
        client, token_manager=token_manager, http_client=http_client, sleep=sleep
    )
    if result.success:
        config.set_available_models_for_auth(AuthType.DINGTALK_OAUTH, result.models)
        config.set_model_fetch_error(AuthType.DINGTALK_OAUTH, None)
    else:
        config.set_model_fetch_error(AuthType.DINGTALK_OAUTH, result.error)
    return result
