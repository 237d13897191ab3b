"""Tests for profile management."""

from pathlib import Path

import pytest
import yaml

from conftest import write_config
from dotkeeper.core.config import Config, RestoreMode
from dotkeeper.core.errors import ProfileError
from dotkeeper.core.profiles import ProfileManager


def test_list_includes_default(config: Config) -> None:
    """Test the default profile always exists."""
    manager = ProfileManager(config)
    assert [p.name for p in manager.list()] == ["default"]
    assert manager.active() == "default"
    assert manager.get("default").repo_dir == config.repo_dir


def test_create_profile(config: Config) -> None:
    """Test creating a profile lays out its directory."""
    manager = ProfileManager(config)
    profile = manager.create("work")

    assert profile.root == config.base_dir / "profiles" / "work"
    assert profile.repo_dir.is_dir()
    with open(profile.config_path) as f:
        assert yaml.safe_load(f) == {"tracked_files": []}
    assert [p.name for p in manager.list()] == ["default", "work"]


@pytest.mark.parametrize("name", ["", "../escape", "has space", "-dash"])
def test_create_invalid_name(config: Config, name: str) -> None:
    """Test profile names are validated."""
    with pytest.raises(ProfileError, match="Invalid profile name"):
        ProfileManager(config).create(name)


def test_create_duplicate(config: Config) -> None:
    """Test existing profiles cannot be recreated."""
    manager = ProfileManager(config)
    manager.create("work")
    with pytest.raises(ProfileError, match="already exists"):
        manager.create("work")
    with pytest.raises(ProfileError, match="already exists"):
        manager.create("default")


def test_switch(config: Config) -> None:
    """Test switching changes the active profile."""
    manager = ProfileManager(config)
    manager.create("work")

    manager.switch("work")
    assert manager.active() == "work"
    manager.switch("default")
    assert manager.active() == "default"

    with pytest.raises(ProfileError, match="does not exist"):
        manager.switch("personal")


def test_activate_layers_profile_config(home: Path) -> None:
    """Test the active profile's config and paths replace the base ones."""
    write_config(
        home,
        {"tracked_files": ["~/.zshrc"], "general": {"default_mode": "symlink", "backup": False}},
    )
    config = Config(home=home)
    manager = ProfileManager(config)
    profile = manager.create("work")
    with open(profile.config_path, "w") as f:
        yaml.safe_dump(
            {"tracked_files": ["~/.gitconfig"], "general": {"default_mode": "copy"}}, f
        )
    manager.switch("work")

    config = manager.activate(Config(home=home))

    assert config.profile == "work"
    assert config.tracked_files == [".gitconfig"]
    assert config.default_mode == RestoreMode.COPY
    assert config.backup is False
    assert config.repo_dir == profile.repo_dir
    assert config.manifest_path == profile.manifest_path


def test_activate_missing_profile(config: Config) -> None:
    """Test activating a deleted profile fails."""
    manager = ProfileManager(config)
    manager.active_file.parent.mkdir(parents=True, exist_ok=True)
    manager.active_file.write_text("ghost\n")
    with pytest.raises(ProfileError, match="does not exist"):
        manager.activate(config)
