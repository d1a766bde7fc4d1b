# src/content_gateway/utils/headless_detection.py

import os
import sys
import logging
from typing import List

lib_logger = logging.getLogger("content_gateway")

# First match is enough to call the session non-interactive
_CI_MARKERS = (
    "CI",
    "GITHUB_ACTIONS",
    "GITLAB_CI",
    "JENKINS_URL",
    "CIRCLECI",
    "BUILDKITE",
    "TF_BUILD",
    "CODEBUILD_BUILD_ID",
)
_SSH_MARKERS = ("SSH_CONNECTION", "SSH_CLIENT", "SSH_TTY")
_CONTAINER_MARKERS = ("/.dockerenv", "/run/.containerenv")


def headless_reasons() -> List[str]:
    """Why a browser could not be shown to the user here; empty when one can."""
    reasons = []

    # macOS and Windows have a desktop without X11/Wayland variables
    if os.name != "nt" and sys.platform != "darwin":
        if not (os.getenv("DISPLAY") or "").strip() and not os.getenv("WAYLAND_DISPLAY"):
            reasons.append("no DISPLAY or WAYLAND_DISPLAY")

    if any(os.getenv(name) for name in _SSH_MARKERS):
        reasons.append("SSH session")

    ci = next((name for name in _CI_MARKERS if os.getenv(name)), None)
    if ci:
        reasons.append(f"CI ({ci})")

    if os.name == "nt" and os.getenv("SESSIONNAME", "").lower() in ("services", "rdp-tcp"):
        reasons.append(f"Windows session {os.getenv('SESSIONNAME')}")

    if any(os.path.exists(marker) for marker in _CONTAINER_MARKERS):
        reasons.append("container")

    return reasons


def is_headless_environment() -> bool:
    """True when the device-flow login should print the URL instead of opening a browser."""
    reasons = headless_reasons()
    if reasons:
        lib_logger.info(f"Headless environment detected: {'; '.join(reasons)}")
        return True
    lib_logger.debug("Desktop session detected, will try to open a browser")
    return False
