# src/content_gateway/utils/resilient_io.py
"""
File I/O helpers for credential persistence.

- atomic_write_json: tempfile + move so readers never see a half-written
  credential file. Raises on failure; callers decide how to surface it.
"""

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Union


def atomic_write_json(
    path: Union[str, Path],
    data: Dict[str, Any],
    indent: int = 2,
    secure_permissions: bool = True,
) -> None:
    """
    Write JSON data to file atomically, creating parent directories.

    Args:
        path: File path to write to
        data: JSON-serializable data
        indent: JSON indentation level (default: 2)
        secure_permissions: Set file permissions to 0o600 (default: True)

    Raises:
        OSError: Directory creation or the write itself failed
            (PermissionError for permission problems)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(data, indent=indent)

    tmp_fd = None
    tmp_path = None
    try:
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=path.parent, prefix=".tmp_", suffix=".json", text=True
        )
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            f.write(content)
            tmp_fd = None

        # Set permissions before the move so the final file is never world-readable
        if secure_permissions:
            try:
                os.chmod(tmp_path, 0o600)
            except (OSError, AttributeError):
                # Windows may not support chmod, ignore
                pass

        shutil.move(tmp_path, path)
        tmp_path = None
    finally:
        if tmp_fd is not None:
            try:
                os.close(tmp_fd)
            except OSError:
                pass
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
