"""Tests for path mapping."""

from pathlib import Path

import pytest

from dotkeeper.core.errors import ConfigError
from dotkeeper.core.paths import (
    is_within,
    live_location,
    normalize_entry_path,
    repo_location,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("~/.zshrc", ".zshrc"),
        (".config/nvim/init.lua", ".config/nvim/init.lua"),
        ("~/.config//git/../git/config", ".config/git/config"),
        ("/etc/hosts", "/etc/hosts"),
    ],
)
def test_normalize_entry_path(home: Path, raw: str, expected: str) -> None:
    """Test tracked paths normalize to manifest keys."""
    assert normalize_entry_path(raw, home) == expected


def test_normalize_absolute_path_inside_home(home: Path) -> None:
    """Test absolute paths under home become home-relative."""
    assert normalize_entry_path(str(home / ".vimrc"), home) == ".vimrc"


def test_normalize_empty_path(home: Path) -> None:
    """Test empty paths are rejected."""
    with pytest.raises(ValueError):
        normalize_entry_path("  ", home)


@pytest.mark.parametrize("raw", ["../outside/.bashrc", "~/../other/.zshrc", ".config/../../.ssh/config"])
def test_normalize_rejects_paths_leaving_home(home: Path, raw: str) -> None:
    """Test relative paths that climb out of home are rejected."""
    with pytest.raises(ConfigError, match="escapes the home directory"):
        normalize_entry_path(raw, home)


def test_locations(home: Path, tmp_path: Path) -> None:
    """Test repository and live locations of plain, encrypted and absolute entries."""
    repo = tmp_path / "repo"
    assert repo_location(".zshrc", repo) == repo / ".zshrc"
    assert repo_location("/etc/hosts", repo) == repo / "__root__" / "etc" / "hosts"
    assert live_location(".zshrc", home) == home / ".zshrc"
    assert live_location(".ssh/config.age", home) == home / ".ssh" / "config"
    assert live_location("/etc/hosts", home) == Path("/etc/hosts")


def test_is_within(home: Path, tmp_path: Path) -> None:
    """Test the root boundary check."""
    assert is_within(home / ".zshrc", home)
    assert is_within(home / "a" / "b" / "c", home)
    assert not is_within(tmp_path / "elsewhere", home)
    assert not is_within(home / ".." / "escape", home)


def test_is_within_resolves_parent_symlinks(home: Path, tmp_path: Path) -> None:
    """Test a symlinked parent directory pointing outside home is caught."""
    outside = tmp_path / "outside"
    outside.mkdir()
    (home / ".config").symlink_to(outside)
    assert not is_within(home / ".config" / "app.conf", home)


def test_is_within_does_not_follow_final_component(home: Path, tmp_path: Path) -> None:
    """Test an existing symlink at the destination does not move the boundary."""
    (home / ".zshrc").symlink_to(tmp_path / "elsewhere")
    assert is_within(home / ".zshrc", home)
