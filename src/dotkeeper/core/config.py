"""Configuration management for dotkeeper."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError
from .paths import normalize_entry_path

CONFIG_DIR_NAME = ".dotkeeper"
CONFIG_FILE_NAME = "config.yaml"
DEFAULT_PROFILE = "default"

HOOK_SETS = ("pre_apply", "post_apply", "pre_snapshot", "post_snapshot")

DEFAULT_CONFIG: Dict[str, Any] = {
    "general": {
        "default_mode": "symlink",
        "backup": True,
        "allow_outside_home": False,
        "repo_dir": "~/.dotkeeper/compiled",
        "manifest_path": "~/.dotkeeper/manifest.lock",
    },
    "tracked_files": [],
    "files": {},
    "hooks": {
        "pre_apply": [],
        "post_apply": [],
        "pre_snapshot": [],
        "post_snapshot": [],
        "timeout": 300,
    },
    "secrets": {
        "provider": "age",
        "key_path": "~/.config/age/keys.txt",
        "timeout": 30,
    },
    "snapshots": {
        "dir": "~/.dotkeeper/snapshots",
        "auto_prune": {
            "enabled": False,
            "keep_count": None,
            "keep_age": None,
            "keep_size": None,
        },
    },
    "daemon": {
        "enabled": False,
        "mode": "ask",
        "debounce_ms": 1500,
        "poll_interval_ms": 500,
    },
    "remote": None,
}


class RestoreMode(str, Enum):
    """How an entry is materialized on the live filesystem."""

    SYMLINK = "symlink"
    COPY = "copy"

    @classmethod
    def parse(cls, value: Any) -> "RestoreMode":
        if isinstance(value, RestoreMode):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigError(f"Unknown mode '{value}' (expected 'symlink' or 'copy')")


@dataclass(frozen=True)
class FileOverride:
    """Per-path override layered on top of the global defaults."""

    mode: Optional[RestoreMode] = None
    exclude: bool = False

    @classmethod
    def from_dict(cls, path: str, data: Any) -> "FileOverride":
        if not isinstance(data, dict):
            raise ConfigError(f"Override for {path} must be a dictionary")
        unknown = set(data) - {"mode", "exclude"}
        if unknown:
            raise ConfigError(f"Unknown override keys for {path}: {', '.join(sorted(unknown))}")
        mode = data.get("mode")
        exclude = data.get("exclude", False)
        if not isinstance(exclude, bool):
            raise ConfigError(f"Override 'exclude' for {path} must be a boolean")
        return cls(mode=RestoreMode.parse(mode) if mode is not None else None, exclude=exclude)


class Config:
    """Configuration class for dotkeeper.

    Values start from ``DEFAULT_CONFIG`` and are overlaid by the YAML config
    file, if any. Paths beginning with ``~`` are expanded against ``home``,
    which defaults to the current user's home directory.
    """

    def __init__(self, home: Optional[Path] = None, config_file: Optional[Path] = None) -> None:
        """Initialize configuration."""
        self.home = Path(home) if home is not None else Path.home()
        self.config: Dict[str, Any] = {}
        self.config_file: Optional[Path] = None
        self.default_mode = RestoreMode.SYMLINK
        self.backup: bool = True
        self.allow_outside_home: bool = False
        self.repo_dir: Path = self.base_dir / "compiled"
        self.manifest_path: Path = self.base_dir / "manifest.lock"
        self.tracked_files: List[str] = []
        self.overrides: Dict[str, FileOverride] = {}
        self.hooks: Dict[str, List[str]] = {name: [] for name in HOOK_SETS}
        self.hook_timeout: float = 300
        self.secrets: Dict[str, Any] = {}
        self.snapshots_dir: Path = self.base_dir / "snapshots"
        self.auto_prune: Dict[str, Any] = {}
        self.daemon: Dict[str, Any] = {}
        self.remote: Optional[Dict[str, Any]] = None
        self.profile: str = DEFAULT_PROFILE
        self.load_config(config_file)

    @property
    def base_dir(self) -> Path:
        return self.home / CONFIG_DIR_NAME

    @property
    def default_config_file(self) -> Path:
        return self.base_dir / CONFIG_FILE_NAME

    def expand(self, value: str | Path) -> Path:
        """Expand a leading ``~`` against the configured home directory."""
        raw = str(value)
        if raw == "~":
            return self.home
        if raw.startswith("~/"):
            return self.home / raw[2:]
        return Path(raw)

    def load_config(self, config_file: Optional[Path] = None, required: bool = False) -> None:
        """Load configuration from file.

        Args:
            config_file: YAML file to merge over the defaults. When omitted the
                default location under the home directory is used if present.
            required: Raise if the file does not exist.

        Raises:
            ConfigError: If the file is missing (and required), unreadable or
                malformed.
        """
        # Start with default configuration
        self._merge_config(copy.deepcopy(DEFAULT_CONFIG))

        path = Path(config_file) if config_file is not None else self.default_config_file
        if not path.exists():
            if required or config_file is not None:
                raise ConfigError("Config file not found", path)
            return

        try:
            with open(path, "r") as f:
                user_config = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read config file: {e}", path) from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", path) from e

        self.config_file = path
        if user_config:
            self._merge_config(user_config)

    def merge(self, overlay: Dict[str, Any]) -> None:
        """Layer another configuration mapping (e.g. a profile) over this one."""
        self._merge_config(overlay)

    def _merge_config(self, config: Dict[str, Any]) -> None:
        """Merge configuration with current configuration."""
        if not isinstance(config, dict):
            raise ConfigError("Configuration must be a dictionary")

        for key, value in config.items():
            if isinstance(value, dict) and isinstance(self.config.get(key), dict):
                self.config[key] = _deep_merge(self.config[key], value)
            else:
                self.config[key] = copy.deepcopy(value)

        # Update general settings
        if "general" in config:
            general = config["general"]
            if not isinstance(general, dict):
                raise ConfigError("general must be a dictionary")
            if "default_mode" in general:
                self.default_mode = RestoreMode.parse(general["default_mode"])
            if "backup" in general:
                if not isinstance(general["backup"], bool):
                    raise ConfigError("general.backup must be a boolean")
                self.backup = general["backup"]
            if "allow_outside_home" in general:
                if not isinstance(general["allow_outside_home"], bool):
                    raise ConfigError("general.allow_outside_home must be a boolean")
                self.allow_outside_home = general["allow_outside_home"]
            if "repo_dir" in general:
                self.repo_dir = self.expand(general["repo_dir"])
            if "manifest_path" in general:
                self.manifest_path = self.expand(general["manifest_path"])

        # Update tracked files
        if "tracked_files" in config:
            tracked = config["tracked_files"]
            if not isinstance(tracked, list):
                raise ConfigError("tracked_files must be a list")
            for path in tracked:
                if not isinstance(path, str):
                    raise ConfigError(f"tracked file {path!r} must be a string")
            self.tracked_files = sorted({normalize_entry_path(p, self.home) for p in tracked})

        # Update per-path overrides
        if "files" in config:
            files = config["files"]
            if not isinstance(files, dict):
                raise ConfigError("files must be a dictionary")
            for path, override in files.items():
                key = normalize_entry_path(path, self.home)
                self.overrides[key] = FileOverride.from_dict(path, override)

        # Update hooks
        if "hooks" in config:
            hooks = config["hooks"]
            if not isinstance(hooks, dict):
                raise ConfigError("hooks must be a dictionary")
            for name in HOOK_SETS:
                if name in hooks:
                    commands = hooks[name] or []
                    if not isinstance(commands, list) or not all(
                        isinstance(c, str) for c in commands
                    ):
                        raise ConfigError(f"hooks.{name} must be a list of strings")
                    self.hooks[name] = list(commands)
            if "timeout" in hooks:
                self.hook_timeout = _positive_number(hooks["timeout"], "hooks.timeout")

        if "secrets" in config:
            if not isinstance(config["secrets"], dict):
                raise ConfigError("secrets must be a dictionary")
            self.secrets.update(config["secrets"])

        if "snapshots" in config:
            snapshots = config["snapshots"]
            if not isinstance(snapshots, dict):
                raise ConfigError("snapshots must be a dictionary")
            if "dir" in snapshots:
                self.snapshots_dir = self.expand(snapshots["dir"])
            if "auto_prune" in snapshots:
                if not isinstance(snapshots["auto_prune"], dict):
                    raise ConfigError("snapshots.auto_prune must be a dictionary")
                self.auto_prune.update(snapshots["auto_prune"])

        if "daemon" in config:
            daemon = config["daemon"]
            if not isinstance(daemon, dict):
                raise ConfigError("daemon must be a dictionary")
            if "mode" in daemon and daemon["mode"] not in ("ask", "auto"):
                raise ConfigError("daemon.mode must be 'ask' or 'auto'")
            self.daemon.update(daemon)

        if "remote" in config:
            remote = config["remote"]
            if remote is not None:
                if not isinstance(remote, dict):
                    raise ConfigError("remote must be a dictionary")
                if "kind" not in remote:
                    raise ConfigError("remote configuration must have a kind")
            self.remote = remote

    def validate(self) -> List[str]:
        """Validate configuration."""
        errors = []

        for path in self.tracked_files:
            if path in self.overrides and self.overrides[path].exclude:
                continue
            if path.startswith("/") and not self.allow_outside_home:
                errors.append(f"tracked file {path} is outside the home directory")

        for path in self.overrides:
            if not any(path == t or path.startswith(t + "/") for t in self.tracked_files):
                errors.append(f"override for {path} does not match a tracked file")

        if self.secrets.get("provider", "age") != "age":
            errors.append(f"unsupported secrets provider {self.secrets.get('provider')}")

        for key in ("debounce_ms", "poll_interval_ms"):
            value = self.daemon.get(key)
            if not isinstance(value, int) or value <= 0:
                errors.append(f"daemon.{key} must be a positive integer")

        return errors

    def override_for(self, entry_path: str) -> FileOverride:
        """Get the override for a manifest path, or an empty override."""
        return self.overrides.get(entry_path, FileOverride())

    def hook_commands(self, name: str) -> List[str]:
        """Get the commands of a hook set."""
        return self.hooks.get(name, [])

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            key: The configuration key to get.
            default: The default value to return if the key is not found.

        Returns:
            The configuration value, or the default if not found.
        """
        return self.config.get(key, default)

    def save(self, path: Optional[Path] = None) -> Path:
        """Write the merged configuration as YAML."""
        target = Path(path) if path is not None else (self.config_file or self.default_config_file)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w") as f:
            yaml.safe_dump(self.config, f, sort_keys=False, default_flow_style=False)
        self.config_file = target
        return target


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _positive_number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{name} must be a positive number")
    return float(value)
