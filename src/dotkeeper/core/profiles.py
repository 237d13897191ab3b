"""Profiles: named repositories sharing one base configuration.

The ``default`` profile uses the repository and manifest named in the base
config. Every other profile lives in ``~/.dotkeeper/profiles/<name>/`` with
its own ``config.yaml`` (layered over the base config), ``manifest.lock``
and ``compiled/`` repository.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List

import yaml

from .config import DEFAULT_PROFILE, Config
from .errors import ConfigError, ProfileError

logger = logging.getLogger(__name__)

PROFILES_DIR = "profiles"
ACTIVE_PROFILE_FILE = "active_profile"

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(frozen=True)
class Profile:
    """Locations owned by one profile."""

    name: str
    root: Path
    config_path: Path
    manifest_path: Path
    repo_dir: Path


class ProfileManager:
    """Lists, creates and switches profiles."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.profiles_dir = config.base_dir / PROFILES_DIR
        self.active_file = config.base_dir / ACTIVE_PROFILE_FILE

    def get(self, name: str) -> Profile:
        if name == DEFAULT_PROFILE:
            return Profile(
                name=name,
                root=self.config.base_dir,
                config_path=self.config.config_file or self.config.default_config_file,
                manifest_path=self.config.manifest_path,
                repo_dir=self.config.repo_dir,
            )
        root = self.profiles_dir / name
        return Profile(
            name=name,
            root=root,
            config_path=root / "config.yaml",
            manifest_path=root / "manifest.lock",
            repo_dir=root / "compiled",
        )

    def exists(self, name: str) -> bool:
        return name == DEFAULT_PROFILE or (self.profiles_dir / name).is_dir()

    def list(self) -> List[Profile]:
        """All profiles sorted by name, ``default`` included."""
        names = {DEFAULT_PROFILE}
        if self.profiles_dir.is_dir():
            names.update(p.name for p in self.profiles_dir.iterdir() if p.is_dir())
        return [self.get(name) for name in sorted(names)]

    def create(self, name: str) -> Profile:
        """Create an empty profile.

        Raises:
            ProfileError: If the name is invalid or already taken.
        """
        if not _NAME_RE.match(name):
            raise ProfileError(f"Invalid profile name '{name}'")
        if self.exists(name):
            raise ProfileError(f"Profile '{name}' already exists")

        profile = self.get(name)
        profile.repo_dir.mkdir(parents=True)
        with open(profile.config_path, "w") as f:
            yaml.safe_dump({"tracked_files": []}, f, sort_keys=False)
        logger.info("Created profile %s", name)
        return profile

    def active(self) -> str:
        """Name of the active profile."""
        if self.active_file.exists():
            name = self.active_file.read_text().strip()
            if name:
                return name
        return DEFAULT_PROFILE

    def switch(self, name: str) -> Profile:
        """Make ``name`` the active profile.

        Raises:
            ProfileError: If the profile does not exist.
        """
        if not self.exists(name):
            raise ProfileError(f"Profile '{name}' does not exist")
        self.active_file.parent.mkdir(parents=True, exist_ok=True)
        self.active_file.write_text(name + "\n")
        logger.info("Switched to profile %s", name)
        return self.get(name)

    def activate(self, config: Config) -> Config:
        """Layer the active profile over ``config`` and point it at the profile's paths."""
        name = self.active()
        config.profile = name
        if name == DEFAULT_PROFILE:
            return config
        if not self.exists(name):
            raise ProfileError(f"Active profile '{name}' does not exist")

        profile = self.get(name)
        if profile.config_path.exists():
            try:
                with open(profile.config_path) as f:
                    overlay = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML: {e}", profile.config_path) from e
            config.merge(overlay)
        config.repo_dir = profile.repo_dir
        config.manifest_path = profile.manifest_path
        return config
