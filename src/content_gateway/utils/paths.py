# src/content_gateway/utils/paths.py
"""
Where the gateway keeps its files.

Logs and `.env` resolve against the application root: the executable's
directory for a frozen build, the working directory otherwise.

OAuth credentials live in the user's configuration directory, ~/.qwen unless
DINGTALK_CONFIG_DIR points elsewhere.
"""

import os
import sys
from pathlib import Path
from typing import Optional, Union

CONFIG_DIR_ENV = "DINGTALK_CONFIG_DIR"
DEFAULT_CONFIG_DIRNAME = ".qwen"
DINGTALK_CREDENTIAL_FILENAME = "dingtalk_oauth_creds.json"


def get_default_root() -> Path:
    """Application root: the frozen executable's folder, or the working directory."""
    if getattr(sys, "frozen", False):
        return Path(sys.executable).parent
    return Path.cwd()


def get_logs_dir(root: Optional[Union[Path, str]] = None) -> Path:
    """``<root>/logs``, created on first use."""
    logs_dir = Path(root or get_default_root()) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def get_config_dir() -> Path:
    """
    The user's configuration directory. Not created here; the credential
    writer creates it on first save.
    """
    override = os.getenv(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / DEFAULT_CONFIG_DIRNAME


def get_dingtalk_credential_path() -> Path:
    return get_config_dir() / DINGTALK_CREDENTIAL_FILENAME
