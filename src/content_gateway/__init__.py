from typing import TYPE_CHECKING

from .config import AuthType, ContentGeneratorConfig, GatewayConfig, create_content_generator_config
from .token_manager import SharedTokenManager

# The factory pulls in every provider; load it on first use
if TYPE_CHECKING:
    from .content_generator import create_content_generator

__all__ = [
    "AuthType",
    "ContentGeneratorConfig",
    "GatewayConfig",
    "SharedTokenManager",
    "create_content_generator",
    "create_content_generator_config",
]


def __getattr__(name):
    """Lazy-load the generator factory to speed up module import."""
    if name == "create_content_generator":
        from .content_generator import create_content_generator

        return create_content_generator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
