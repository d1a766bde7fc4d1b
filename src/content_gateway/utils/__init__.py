# src/content_gateway/utils/__init__.py

from .headless_detection import is_headless_environment
from .paths import (
    get_default_root,
    get_logs_dir,
    get_config_dir,
    get_dingtalk_credential_path,
)
from .resilient_io import atomic_write_json

__all__ = [
    "is_headless_environment",
    "get_default_root",
    "get_logs_dir",
    "get_config_dir",
    "get_dingtalk_credential_path",
    "atomic_write_json",
]
