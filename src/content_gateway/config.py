# src/content_gateway/config.py

import os
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from .error_handler import ContentGeneratorError, ModelFetchError

lib_logger = logging.getLogger("content_gateway")

DEFAULT_MODEL = "coder-model"
DEFAULT_OPENAI_MODEL = "qwen3-coder-plus"
DEFAULT_DINGTALK_BASE_URL = "https://tmcli.buguk12.com/v1"
DINGTALK_OAUTH_DYNAMIC_TOKEN = "DINGTALK_OAUTH_DYNAMIC_TOKEN"

# Model names the factory treats as "not chosen by the user"
PLACEHOLDER_MODELS = frozenset({DEFAULT_MODEL})


class AuthType(str, Enum):
    USE_OPENAI = "openai"
    DINGTALK_OAUTH = "dingtalk-oauth"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["AuthType"]:
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ContentGeneratorError(
                f"Error creating contentGenerator: Unsupported authType: {value}"
            )


@dataclass
class ContentGeneratorConfig:
    """
    Per-generator settings. Built once by create_content_generator_config();
    only model/api_key/base_url change afterwards, and only when the
    credentialed generator installs rotated credentials.
    """

    model: str
    auth_type: Optional[AuthType] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout: Optional[float] = None  # seconds
    max_retries: Optional[int] = None
    sampling_params: Dict[str, Any] = field(default_factory=dict)
    proxy: Optional[str] = None
    user_agent: Optional[str] = None


def _env_float(key: str) -> Optional[float]:
    value = os.getenv(key)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        lib_logger.warning(f"Ignoring invalid {key}={value!r}")
        return None


def _env_int(key: str) -> Optional[int]:
    value = _env_float(key)
    return int(value) if value is not None else None


class GatewayConfig:
    """
    Process-wide configuration state shared by the generator factory and the
    presentation layer. Holds the selected model and auth type plus the
    per-auth-type model discovery results.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        auth_type: Optional[AuthType] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        proxy: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        sampling_params: Optional[Dict[str, Any]] = None,
        browser_launch_suppressed: bool = False,
    ):
        self.model = model
        self.auth_type = auth_type
        self.api_key = api_key
        self.base_url = base_url
        self.proxy = proxy
        self.timeout = timeout
        self.max_retries = max_retries
        self.sampling_params = dict(sampling_params or {})
        self.browser_launch_suppressed = browser_launch_suppressed
        self._available_models: Dict[AuthType, List[str]] = {}
        self._model_fetch_errors: Dict[AuthType, ModelFetchError] = {}

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Build configuration from environment variables (load .env first)."""
        sampling = {}
        temperature = _env_float("GATEWAY_TEMPERATURE")
        if temperature is not None:
            sampling["temperature"] = temperature
        max_tokens = _env_int("GATEWAY_MAX_TOKENS")
        if max_tokens is not None:
            sampling["max_tokens"] = max_tokens

        return cls(
            model=os.getenv("GATEWAY_MODEL") or None,
            auth_type=AuthType.parse(os.getenv("GATEWAY_AUTH_TYPE")),
            api_key=os.getenv("OPENAI_API_KEY") or None,
            base_url=os.getenv("OPENAI_BASE_URL") or None,
            proxy=os.getenv("GATEWAY_PROXY") or None,
            timeout=_env_float("GATEWAY_TIMEOUT"),
            max_retries=_env_int("GATEWAY_MAX_RETRIES"),
            sampling_params=sampling,
            browser_launch_suppressed=os.getenv("NO_BROWSER", "").lower()
            in ("1", "true", "yes"),
        )

    def get_model(self) -> Optional[str]:
        return self.model

    def set_model(self, model: str) -> None:
        lib_logger.info(f"Model switched to '{model}'")
        self.model = model

    def get_auth_type(self) -> Optional[AuthType]:
        return self.auth_type

    def get_proxy(self) -> Optional[str]:
        return self.proxy

    def is_browser_launch_suppressed(self) -> bool:
        return self.browser_launch_suppressed

    def get_available_models_for_auth(self, auth_type: AuthType) -> List[str]:
        return list(self._available_models.get(auth_type, []))

    def set_available_models_for_auth(
        self, auth_type: AuthType, models: List[str]
    ) -> None:
        self._available_models[auth_type] = list(models)

    def get_model_fetch_error(self, auth_type: AuthType) -> Optional[ModelFetchError]:
        return self._model_fetch_errors.get(auth_type)

    def set_model_fetch_error(
        self, auth_type: AuthType, error: Optional[ModelFetchError]
    ) -> None:
        if error is None:
            self._model_fetch_errors.pop(auth_type, None)
        else:
            self._model_fetch_errors[auth_type] = error


def create_content_generator_config(
    config: GatewayConfig,
    auth_type: Optional[AuthType],
    generation_config: Optional[ContentGeneratorConfig] = None,
) -> ContentGeneratorConfig:
    """
    Build the ContentGeneratorConfig for an auth type from process
    configuration plus the auth type's defaults.

    Raises:
        ContentGeneratorError: openai auth without an API key
    """
    if generation_config is not None:
        base = replace(generation_config, auth_type=auth_type, proxy=config.get_proxy())
    else:
        base = ContentGeneratorConfig(
            model=config.get_model() or "",
            auth_type=auth_type,
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
            sampling_params=dict(config.sampling_params),
            proxy=config.get_proxy(),
        )

    if auth_type == AuthType.DINGTALK_OAUTH:
        # The real token is installed per call by the credentialed generator
        return replace(
            base,
            model=base.model or DEFAULT_MODEL,
            api_key=DINGTALK_OAUTH_DYNAMIC_TOKEN,
            base_url=base.base_url or DEFAULT_DINGTALK_BASE_URL,
        )

    if auth_type == AuthType.USE_OPENAI:
        if not base.api_key:
            raise ContentGeneratorError("OpenAI API key is required")
        return replace(base, model=base.model or DEFAULT_OPENAI_MODEL)

    return replace(base, model=base.model or DEFAULT_MODEL)
