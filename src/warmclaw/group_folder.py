"""Group folder name validation and on-disk path resolution."""

from __future__ import annotations

import re
from pathlib import Path

_FOLDER_PATTERN: re.Pattern[str] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
RESERVED_FOLDERS = frozenset({"global"})


def is_valid_group_folder(folder: str) -> bool:
    """Check that a folder name is safe to use as a directory name.

    Args:
        folder: Candidate folder name.

    Returns:
        True if the name is 1-64 characters of letters, digits, '_' or '-',
        starts with a letter or digit, and is not reserved.
    """
    if not folder or folder != folder.strip():
        return False
    if folder.lower() in RESERVED_FOLDERS:
        return False
    return bool(_FOLDER_PATTERN.match(folder))


def resolve_group_folder_path(groups_dir: Path, folder: str) -> Path:
    """Resolve the absolute workspace path for a group folder.

    Args:
        groups_dir: Root directory holding every group's workspace.
        folder: The group's folder name.

    Returns:
        The resolved path of the group's workspace.

    Raises:
        ValueError: If the folder name is invalid or resolves outside groups_dir.
    """
    if not is_valid_group_folder(folder):
        raise ValueError(f"Invalid group folder: {folder!r}")
    base = groups_dir.resolve()
    path = (base / folder).resolve()
    if not path.is_relative_to(base):
        raise ValueError(f"Group folder escapes groups directory: {folder!r}")
    return path
