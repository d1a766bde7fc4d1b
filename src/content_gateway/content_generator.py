# src/content_gateway/content_generator.py

import logging
from typing import Any, Optional

import httpx

from .auth_events import AuthEventChannel
from .config import (
    PLACEHOLDER_MODELS,
    AuthType,
    ContentGeneratorConfig,
    GatewayConfig,
)
from .error_handler import ContentGeneratorError
from .providers.content_generator_interface import ContentGenerator
from .providers.dingtalk_content_generator import DingtalkContentGenerator
from .providers.dingtalk_models import refresh_available_models
from .providers.dingtalk_oauth import get_dingtalk_oauth_client
from .providers.openai_content_generator import OpenAIContentGenerator
from .token_manager import SharedTokenManager

lib_logger = logging.getLogger("content_gateway")


async def create_content_generator(
    config: ContentGeneratorConfig,
    gateway_config: GatewayConfig,
    token_manager: Optional[SharedTokenManager] = None,
    channel: Optional[AuthEventChannel] = None,
    is_initial_auth: bool = False,
    http_client: Optional[httpx.AsyncClient] = None,
    **oauth_kwargs: Any,
) -> ContentGenerator:
    """
    Build the generator for ``config.auth_type``.

    Static-key identities get an OpenAIContentGenerator. Device-flow
    identities are authenticated (running the device flow if needed), their
    models are discovered and the result recorded on ``gateway_config``, and
    the client is wrapped in a DingtalkContentGenerator.

    Raises:
        ContentGeneratorError: missing API key, unsupported auth type, or
            discovery failed while no usable model is configured
    """
    if config.auth_type == AuthType.USE_OPENAI:
        if not config.api_key:
            raise ContentGeneratorError("OpenAI API key is required")
        lib_logger.info(f"Using OpenAI-compatible generator for model '{config.model}'")
        return OpenAIContentGenerator(config, http_client=http_client)

    if config.auth_type == AuthType.DINGTALK_OAUTH:
        token_manager = token_manager or SharedTokenManager()
        client = await get_dingtalk_oauth_client(
            gateway_config,
            token_manager,
            channel,
            require_cached_credentials=is_initial_auth,
            http_client=http_client,
            **oauth_kwargs,
        )

        result = await refresh_available_models(
            gateway_config, client, token_manager, http_client=http_client
        )
        if result.success:
            if not config.model or config.model in PLACEHOLDER_MODELS:
                config.model = result.models[0]
                lib_logger.info(f"Selected first available model '{config.model}'")
        else:
            message = result.error.message if result.error else "unknown error"
            if not config.model or config.model in PLACEHOLDER_MODELS:
                raise ContentGeneratorError(f"Failed to fetch DingTalk models: {message}")
            lib_logger.warning(
                f"Using configured model '{config.model}' despite fetch error: {message}"
            )

        return DingtalkContentGenerator(
            client, config, token_manager, http_client=http_client
        )

    raise ContentGeneratorError(
        f"Error creating contentGenerator: Unsupported authType: {config.auth_type}"
    )
