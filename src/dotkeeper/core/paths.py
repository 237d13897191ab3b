"""Path mapping between manifest entries, the repository and the live tree."""

from __future__ import annotations

import os
from pathlib import Path, PurePosixPath

from .errors import ConfigError

# Repository subdirectory holding entries that live outside the home directory
OUTSIDE_ROOT_DIR = "__root__"

ENCRYPTED_SUFFIX = ".age"


def normalize_entry_path(path: str | Path, home: Path) -> str:
    """Normalize a tracked path to its manifest key.

    Paths inside ``home`` (given as ``~/x``, ``x`` or ``/home/user/x``) become
    home-relative POSIX strings; absolute paths elsewhere stay absolute.

    Raises:
        ValueError: If the path is empty.
        ConfigError: If a relative path climbs out of ``home``.
    """
    raw = str(path).strip()
    if not raw:
        raise ValueError("Empty path")
    if raw == "~" or raw.startswith("~/"):
        raw = raw[2:]
    candidate = Path(raw)
    if candidate.is_absolute():
        normalized = Path(os.path.normpath(candidate))
        try:
            return normalized.relative_to(home).as_posix()
        except ValueError:
            return normalized.as_posix()
    relative = PurePosixPath(os.path.normpath(raw))
    if relative.parts[:1] == ("..",):
        raise ConfigError(f"Path escapes the home directory: {path}")
    return relative.as_posix()


def is_absolute_entry(entry_path: str) -> bool:
    return entry_path.startswith("/")


def repo_location(entry_path: str, repo_root: Path) -> Path:
    """Location of an entry's canonical copy inside the repository."""
    if is_absolute_entry(entry_path):
        return repo_root / OUTSIDE_ROOT_DIR / entry_path.lstrip("/")
    return repo_root / entry_path


def live_location(entry_path: str, live_root: Path) -> Path:
    """Location where an entry is applied, with any ``.age`` suffix removed."""
    if entry_path.endswith(ENCRYPTED_SUFFIX):
        entry_path = entry_path[: -len(ENCRYPTED_SUFFIX)]
    if is_absolute_entry(entry_path):
        return Path(entry_path)
    return live_root / entry_path


def resolve_destination(path: Path) -> Path:
    """Resolve every component of ``path`` except the last one.

    The final component is not followed because it is the thing being
    replaced; an existing symlink there must not redirect the boundary check.
    """
    parent = Path(os.path.realpath(path.parent))
    return parent / path.name


def is_within(path: Path, root: Path) -> bool:
    """Whether ``path`` (after resolving parents) lies within ``root``."""
    resolved_root = Path(os.path.realpath(root))
    resolved = resolve_destination(Path(os.path.abspath(path)))
    return resolved == resolved_root or resolved_root in resolved.parents
