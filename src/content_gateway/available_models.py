# src/content_gateway/available_models.py

from dataclasses import dataclass
from typing import List, Optional, Sequence

from .config import DEFAULT_MODEL, AuthType


@dataclass(frozen=True)
class AvailableModel:
    id: str
    label: str
    description: Optional[str] = None


MAINLINE_CODER = AvailableModel(
    id=DEFAULT_MODEL,
    label=DEFAULT_MODEL,
    description="The latest coder model, tuned for agentic coding",
)


def get_available_models_for_auth_type(
    auth_type: Optional[AuthType],
    dynamic_models: Optional[Sequence[str]] = None,
) -> List[AvailableModel]:
    """
    Picker entries for an auth type. Device-flow identities only offer what
    discovery returned; everything else gets the mainline coder model.
    """
    if auth_type == AuthType.DINGTALK_OAUTH:
        return [AvailableModel(id=name, label=name) for name in dynamic_models or []]
    return [MAINLINE_CODER]
