"""Path resolution confined to the analysis directory."""

from __future__ import annotations

import os
from pathlib import Path

# Everything the assistant writes lands under this subdirectory
OUTPUT_DIR_NAME = "ai_chat_output"


class PathEscapeError(OSError):
    """A path resolved to a location outside the allowed directory."""


def _is_inside(root: str, candidate: str) -> bool:
    try:
        return os.path.commonpath([root, candidate]) == root
    except ValueError:
        # Different drives on Windows
        return False


def resolve_path(allowed_dir: str | Path, file_path: str | Path) -> Path:
    """Resolve *file_path* against *allowed_dir* and reject escapes.

    The lexical path must stay inside the root, and so must its real path
    once symlinks are followed. A path that does not exist yet is checked
    through its parent's real path.

    Raises:
        PathEscapeError: the path (or a symlink on it) leaves the root.
        FileNotFoundError: the parent of a missing path does not exist.
    """
    message = f'Path "{file_path}" is outside the allowed directory'
    root = os.path.abspath(allowed_dir)
    resolved = os.path.abspath(os.path.join(root, file_path))
    if not _is_inside(root, resolved):
        raise PathEscapeError(message)

    root_real = os.path.realpath(root)
    if not os.path.lexists(resolved):
        parent = os.path.dirname(resolved)
        if not os.path.exists(parent):
            raise FileNotFoundError(f"No such directory: {parent}")
        if not _is_inside(root_real, os.path.realpath(parent)):
            raise PathEscapeError(message)
        return Path(resolved)

    candidate_real = os.path.realpath(resolved)
    if not _is_inside(root_real, candidate_real):
        raise PathEscapeError(message)
    return Path(candidate_real)


def ensure_output_dir(allowed_dir: str | Path) -> Path:
    """Create the output subdirectory if needed and return its checked path."""
    (Path(allowed_dir) / OUTPUT_DIR_NAME).mkdir(parents=True, exist_ok=True)
    return resolve_path(allowed_dir, OUTPUT_DIR_NAME)
