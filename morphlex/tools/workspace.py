"""Filesystem helpers for plan execution.

- read_target: capture the target artifact as raw bytes
- write_script: materialize a generated transform script in the work dir
- overwrite_file: replace a file's content (script correction, baseline restore)
"""

from __future__ import annotations

import os
from uuid import uuid4

from morphlex.errors import WorkspaceUnavailableError


# Maximum target size to capture (1MB)
MAX_FILE_SIZE = 1024 * 1024


def _is_within(root: str, path: str) -> bool:
    """Check if path is safely within root."""
    root_abs = os.path.abspath(root)
    path_abs = os.path.abspath(path)
    return os.path.commonpath([root_abs, path_abs]) == root_abs


async def read_target(target_path: str) -> bytes:
    """Read the full content of the target artifact.

    Raises:
        WorkspaceUnavailableError: if the file is missing, too large or unreadable
    """
    if not os.path.isfile(target_path):
        raise WorkspaceUnavailableError(f"Cannot read target: file not found: {target_path}")

    file_size = os.path.getsize(target_path)
    if file_size > MAX_FILE_SIZE:
        raise WorkspaceUnavailableError(
            f"Cannot read target: file too large ({file_size} bytes, max {MAX_FILE_SIZE})"
        )

    try:
        with open(target_path, "rb") as f:
            return f.read()
    except OSError as e:
        raise WorkspaceUnavailableError(f"Cannot read target: {e}") from e


async def ensure_directory(path: str) -> None:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise WorkspaceUnavailableError(f"Cannot create working directory {path}: {e}") from e


async def write_script(work_dir: str, content: str, suffix: str = ".js") -> str:
    """Write a generated script to a freshly named file in ``work_dir``.

    Returns:
        Absolute path of the new script
    """
    script_path = os.path.abspath(os.path.join(work_dir, f"transform-{uuid4().hex[:12]}{suffix}"))
    if not _is_within(work_dir, script_path):
        raise WorkspaceUnavailableError(f"Script path escapes working directory: {script_path}")

    await overwrite_file(script_path, content.encode("utf-8"))
    return script_path


async def overwrite_file(path: str, content: bytes) -> None:
    """Replace the content of ``path`` byte-for-byte."""
    try:
        with open(path, "wb") as f:
            f.write(content)
    except OSError as e:
        raise WorkspaceUnavailableError(f"Cannot write {path}: {e}") from e
