"""Capture functionality for dotkeeper.

Capture is the inverse of apply: it copies the live versions of the tracked
files into the repository and rebuilds the manifest from the result. Tracked
directories are expanded to the files inside them. Entries ending in ``.age``
are read from their plain live location and encrypted on the way in.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from rich.console import Console

from . import hasher
from .config import Config
from .errors import DotkeeperError, IoError, SecretsError
from .manifest import Manifest
from .paths import ENCRYPTED_SUFFIX, live_location, normalize_entry_path, repo_location
from .secrets import SecretsProvider

logger = logging.getLogger(__name__)

# Files never captured from tracked directories
EXCLUDED_FILES = [".DS_Store", "Thumbs.db", "desktop.ini", "__pycache__"]


@dataclass
class CaptureResult:
    """Outcome of a capture run."""

    copied: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    manifest: Optional[Manifest] = None

    @property
    def ok(self) -> bool:
        return not self.failed


def expand_tracked(config: Config) -> List[str]:
    """Tracked entry paths with directories expanded to the files they hold.

    Excluded paths are dropped; paths that do not exist on the live system
    are kept as given so they show up as missing.
    """
    expanded = set()
    for path in config.tracked_files:
        if config.override_for(path).exclude:
            continue
        live = live_location(path, config.home)
        if live.is_dir() and not live.is_symlink():
            for file_path in sorted(live.rglob("*")):
                if file_path.name in EXCLUDED_FILES or any(
                    part in EXCLUDED_FILES for part in file_path.parts
                ):
                    continue
                if file_path.is_file() or file_path.is_symlink():
                    key = normalize_entry_path(file_path, config.home)
                    if not config.override_for(key).exclude:
                        expanded.add(key)
        else:
            expanded.add(path)
    return sorted(expanded)


def scan_live_paths(config: Config) -> List[str]:
    """Tracked paths that currently exist on the live system."""
    return [p for p in expand_tracked(config) if os.path.lexists(live_location(p, config.home))]


class CaptureManager:
    """Copies tracked files from the live system into the repository.

    Attributes:
        config (Config): Configuration object with tracked files and paths.
        console (Console): Rich console for output formatting.
        secrets (Optional[SecretsProvider]): Encrypts ``.age`` entries.
    """

    def __init__(
        self,
        config: Config,
        console: Optional[Console] = None,
        secrets: Optional[SecretsProvider] = None,
    ) -> None:
        self.config = config
        self.console = console or Console()
        self.secrets = secrets

    def capture(
        self,
        paths: Optional[Iterable[str]] = None,
        dry_run: bool = False,
        generated_at: Optional[datetime] = None,
    ) -> CaptureResult:
        """Capture tracked files and rebuild the manifest.

        Args:
            paths: Limit the copy to these entry paths. The manifest still
                covers every tracked path.
            dry_run: Report what would be copied without touching the repository.
            generated_at: Timestamp for the rebuilt manifest.

        Returns:
            CaptureResult describing each path; ``manifest`` is set unless
            ``dry_run`` is used.
        """
        tracked = expand_tracked(self.config)
        selected = (
            set(normalize_entry_path(p, self.config.home) for p in paths) if paths else None
        )
        result = CaptureResult()

        for path in tracked:
            if selected is not None and path not in selected:
                continue
            live = live_location(path, self.config.home)
            if not os.path.lexists(live):
                result.missing.append(path)
                continue

            if dry_run:
                self.console.print(f"[blue]Would capture: {live}")
                result.copied.append(path)
                continue

            try:
                if self._capture_one(path, live):
                    result.copied.append(path)
                    logger.info("Captured %s", live)
                else:
                    result.unchanged.append(path)
            except DotkeeperError as e:
                logger.error("Error capturing %s: %s", live, e)
                result.failed[path] = e.cause

        if dry_run:
            return result

        manifest = Manifest.build(
            self.config.repo_dir,
            tracked,
            overrides=self.config.overrides,
            default_mode=self.config.default_mode,
            home=self.config.home,
            generated_at=generated_at,
        )
        manifest.save(self.config.manifest_path)
        result.manifest = manifest
        return result

    def _capture_one(self, path: str, live: Path) -> bool:
        """Copy one live file into the repository. Returns False if unchanged."""
        dest = repo_location(path, self.config.repo_dir)

        # Already applied as a symlink into the repository
        if live.is_symlink() and os.path.realpath(live) == os.path.realpath(dest):
            return False

        if path.endswith(ENCRYPTED_SUFFIX):
            return self._capture_encrypted(live, dest)

        if os.path.lexists(dest) and hasher.digest(dest) == hasher.digest(live):
            return False

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            if os.path.lexists(dest):
                dest.unlink()
            shutil.copy2(live, dest, follow_symlinks=False)
        except OSError as e:
            raise IoError(e.strerror or str(e), live) from e
        return True

    def _capture_encrypted(self, live: Path, dest: Path) -> bool:
        if self.secrets is None:
            raise SecretsError("no secrets provider configured", live)
        try:
            plaintext = live.read_bytes()
        except OSError as e:
            raise IoError(e.strerror or str(e), live) from e

        if os.path.lexists(dest):
            try:
                current = self.secrets.decrypt(dest.read_bytes())
            except (SecretsError, OSError):
                current = None
            if current is not None and hasher.digest_bytes(current) == hasher.digest_bytes(plaintext):
                return False

        ciphertext = self.secrets.encrypt(plaintext)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(ciphertext)
            os.chmod(dest, 0o600)
        except OSError as e:
            raise IoError(e.strerror or str(e), dest) from e
        return True
