# src/content_gateway/providers/dingtalk_content_generator.py

import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import httpx

from ..config import ContentGeneratorConfig
from ..error_handler import TokenError, TokenManagerError, is_auth_error, mask_token
from ..token_manager import OAuthClient, SharedTokenManager
from .content_generator_interface import ContentGenerator
from .openai_content_generator import OpenAIContentGenerator

lib_logger = logging.getLogger("content_gateway")

T = TypeVar("T")

DEFAULT_DINGTALK_ENDPOINT = "http://localhost:8080/v1"

# Request parameters mirrored between the top level and request["config"]
SYNCED_PARAMS = ("stream", "reasoning_effort", "thinking_type")
REASONING_MODEL_PREFIXES = ("doubao-seed-1.6",)


def get_current_endpoint(resource_url: Optional[str]) -> str:
    """Chat endpoint for a token's resource URL: https:// when no scheme, always ending in /v1."""
    endpoint = resource_url or DEFAULT_DINGTALK_ENDPOINT
    if not endpoint.startswith("http"):
        endpoint = f"https://{endpoint}"
    return endpoint if endpoint.endswith("/v1") else f"{endpoint}/v1"


def apply_dingtalk_defaults(request: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a copy of the request with provider defaults filled in.

    ``stream`` defaults to True. ``reasoning_effort`` defaults to "high" for
    reasoning-capable models. Each parameter in SYNCED_PARAMS is mirrored into
    ``request["config"]``; the top-level value wins when both are set.
    """
    patched = dict(request)
    config = patched.get("config")
    config = dict(config) if isinstance(config, dict) else {}

    for key in SYNCED_PARAMS:
        if patched.get(key) is None and config.get(key) is not None:
            patched[key] = config[key]

    if patched.get("stream") is None:
        patched["stream"] = True

    model = str(patched.get("model") or "")
    if patched.get("reasoning_effort") is None and model.startswith(REASONING_MODEL_PREFIXES):
        patched["reasoning_effort"] = "high"

    for key in SYNCED_PARAMS:
        if patched.get(key) is not None:
            config[key] = patched[key]

    patched["config"] = config
    return patched


class DingtalkContentGenerator(ContentGenerator):
    """
    Runs every outbound call of a wrapped OpenAI-compatible generator with
    OAuth credentials from the SharedTokenManager.

    Before each call the current token and endpoint are installed on the
    wrapped generator. An auth failure clears the manager's cache, forces
    one refresh and retries the call once; anything else propagates.
    """

    def __init__(
        self,
        oauth_client: OAuthClient,
        config: ContentGeneratorConfig,
        token_manager: SharedTokenManager,
        delegate: Optional[OpenAIContentGenerator] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.oauth_client = oauth_client
        self.config = config
        self.token_manager = token_manager
        self.delegate = delegate or OpenAIContentGenerator(config, http_client=http_client)
        self._current_token: Optional[str] = None

    async def _get_valid_token(self, force_refresh: bool = False) -> Tuple[str, str]:
        try:
            credentials = await self.token_manager.get_valid_credentials(
                self.oauth_client, force_refresh=force_refresh
            )
        except TokenManagerError as e:
            lib_logger.warning(f"Failed to get token from token manager: {e}")
            raise TokenManagerError(
                e.type,
                "Failed to obtain valid Dingtalk access token. Please re-authenticate.",
                e,
            ) from e
        if not credentials.get("access_token"):
            raise TokenManagerError(TokenError.REFRESH_FAILED, "No access token available")
        return credentials["access_token"], get_current_endpoint(
            credentials.get("resource_url")
        )

    async def _install_credentials(self, force_refresh: bool = False) -> None:
        token, endpoint = await self._get_valid_token(force_refresh)
        self._current_token = token
        self.delegate.api_key = token
        self.delegate.base_url = endpoint
        self.config.api_key = token
        self.config.base_url = endpoint
        lib_logger.debug(f"Installed Dingtalk token {mask_token(token)} for {endpoint}")

    async def execute_with_credential_management(
        self, operation: Callable[[], Awaitable[T]]
    ) -> T:
        """Run ``operation`` with fresh credentials, retrying once after an auth failure."""
        await self._install_credentials()
        try:
            return await operation()
        except Exception as e:
            if not is_auth_error(e):
                raise
            lib_logger.warning(
                f"Auth error from provider ({e}); refreshing credentials and retrying once"
            )
            self.token_manager.clear_cache()
            await self._install_credentials(force_refresh=True)
            return await operation()

    async def generate_content(
        self, request: Dict[str, Any], prompt_id: Optional[str] = None
    ) -> Dict[str, Any]:
        patched = apply_dingtalk_defaults(request)
        return await self.execute_with_credential_management(
            lambda: self.delegate.generate_content(patched, prompt_id)
        )

    async def generate_content_stream(
        self, request: Dict[str, Any], prompt_id: Optional[str] = None
    ) -> AsyncGenerator[Dict[str, Any], None]:
        patched = apply_dingtalk_defaults(request)
        return await self.execute_with_credential_management(
            lambda: self.delegate.generate_content_stream(patched, prompt_id)
        )

    async def embed_content(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return await self.execute_with_credential_management(
            lambda: self.delegate.embed_content(request)
        )

    async def count_tokens(self, request: Dict[str, Any]) -> Dict[str, int]:
        return await self.delegate.count_tokens(request)

    async def aclose(self) -> None:
        await self.delegate.aclose()

    def get_current_token(self) -> Optional[str]:
        if self._current_token:
            return self._current_token
        credentials = self.token_manager.get_current_credentials()
        return (credentials or {}).get("access_token")

    def clear_token(self) -> None:
        self._current_token = None
        self.token_manager.clear_cache()
