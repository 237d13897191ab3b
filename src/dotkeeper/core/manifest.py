"""Canonical, path-sorted inventory of tracked files.

The manifest is the durable "what should be applied" record, analogous to a
lockfile. Its serialized form is byte-for-byte reproducible: entries are
sorted by path, keys are emitted in a fixed order, and ``generated_at`` is an
explicit build input rather than an ambient clock read during serialization.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

import yaml

from . import hasher
from .config import FileOverride, RestoreMode
from .errors import IoError, ManifestError
from .paths import ENCRYPTED_SUFFIX, normalize_entry_path, repo_location

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1


@dataclass(frozen=True)
class ManifestEntry:
    """One tracked path and its expected content."""

    path: str
    digest: str
    mode: RestoreMode
    permission_bits: int
    is_encrypted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "digest": self.digest,
            "mode": self.mode.value,
            "permissions": f"{self.permission_bits:04o}",
            "encrypted": self.is_encrypted,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ManifestEntry":
        try:
            return cls(
                path=str(data["path"]),
                digest=str(data["digest"]),
                mode=RestoreMode.parse(data["mode"]),
                permission_bits=int(str(data["permissions"]), 8),
                is_encrypted=bool(data.get("encrypted", False)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ManifestError(f"Malformed manifest entry {dict(data)!r}: {e}") from e


@dataclass(frozen=True)
class SkippedPath:
    """A tracked path that was left out of a manifest build."""

    path: str
    reason: str


@dataclass
class Manifest:
    """Sorted, duplicate-free collection of :class:`ManifestEntry`."""

    entries: List[ManifestEntry] = field(default_factory=list)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = MANIFEST_VERSION
    skipped: List[SkippedPath] = field(default_factory=list, compare=False)

    def __post_init__(self) -> None:
        by_path: Dict[str, ManifestEntry] = {}
        for entry in self.entries:
            by_path[entry.path] = entry
        self.entries = [by_path[p] for p in sorted(by_path)]
        self.generated_at = _as_utc(self.generated_at)

    @classmethod
    def build(
        cls,
        repo_root: Path,
        tracked_paths: Iterable[str],
        overrides: Optional[Mapping[str, FileOverride]] = None,
        default_mode: RestoreMode = RestoreMode.SYMLINK,
        home: Optional[Path] = None,
        generated_at: Optional[datetime] = None,
    ) -> "Manifest":
        """Build a manifest from the repository copies of the tracked paths.

        Args:
            repo_root: Repository directory holding the canonical copies.
            tracked_paths: Paths to track (``~/x``, home-relative or absolute).
            overrides: Per-path overrides keyed by normalized manifest path.
            default_mode: Mode used when no override sets one.
            home: Home directory used to normalize paths.
            generated_at: Timestamp recorded in the manifest (defaults to now).

        Returns:
            The manifest. Paths that are excluded or whose repository copy is
            unreadable are listed in ``skipped`` instead of failing the build.
        """
        overrides = overrides or {}
        home = home if home is not None else Path.home()
        entries: List[ManifestEntry] = []
        skipped: List[SkippedPath] = []

        for raw in sorted({normalize_entry_path(p, home) for p in tracked_paths}):
            override = overrides.get(raw, FileOverride())
            if override.exclude:
                skipped.append(SkippedPath(raw, "excluded"))
                continue

            source = repo_location(raw, repo_root)
            try:
                digest = hasher.digest(source)
                permission_bits = os.lstat(source).st_mode & 0o7777
            except IoError as e:
                logger.debug("Skipping %s: %s", raw, e.cause)
                skipped.append(SkippedPath(raw, e.cause))
                continue
            except OSError as e:
                skipped.append(SkippedPath(raw, e.strerror or str(e)))
                continue

            entries.append(
                ManifestEntry(
                    path=raw,
                    digest=digest,
                    mode=override.mode or default_mode,
                    permission_bits=permission_bits,
                    is_encrypted=raw.endswith(ENCRYPTED_SUFFIX),
                )
            )

        if skipped:
            logger.info("Skipped %d tracked path(s) while building manifest", len(skipped))

        return cls(
            entries=entries,
            generated_at=generated_at or datetime.now(timezone.utc),
            skipped=skipped,
        )

    def get(self, path: str) -> Optional[ManifestEntry]:
        for entry in self.entries:
            if entry.path == path:
                return entry
        return None

    def paths(self) -> List[str]:
        return [entry.path for entry in self.entries]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "generated_at": self.generated_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "entries": [entry.to_dict() for entry in self.entries],
        }

    def serialize(self) -> str:
        """Serialize to the canonical lockfile text."""
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)

    @classmethod
    def parse(cls, text: str, source: Optional[Path] = None) -> "Manifest":
        """Parse lockfile text produced by :meth:`serialize`.

        Raises:
            ManifestError: If the text is not a valid manifest.
        """
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ManifestError(f"Invalid manifest YAML: {e}", source) from e
        if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
            raise ManifestError("Manifest must be a mapping with an 'entries' list", source)

        version = data.get("version")
        if version != MANIFEST_VERSION:
            raise ManifestError(f"Unsupported manifest version {version!r}", source)

        entries = [ManifestEntry.from_dict(item) for item in data["entries"]]
        paths = [entry.path for entry in entries]
        if len(paths) != len(set(paths)):
            raise ManifestError("Manifest contains duplicate paths", source)

        generated_at = data.get("generated_at")
        if isinstance(generated_at, str):
            try:
                generated_at = datetime.strptime(generated_at, "%Y-%m-%dT%H:%M:%SZ")
            except ValueError as e:
                raise ManifestError(f"Invalid generated_at: {generated_at}", source) from e
        if not isinstance(generated_at, datetime):
            raise ManifestError("Manifest is missing generated_at", source)

        return cls(entries=entries, generated_at=generated_at, version=version)

    @classmethod
    def load(cls, path: Path) -> "Manifest":
        """Load a manifest file.

        Raises:
            ManifestError: If the file is missing or malformed.
        """
        try:
            text = Path(path).read_text()
        except FileNotFoundError as e:
            raise ManifestError("Manifest not found; run 'dotkeeper capture' first", path) from e
        except OSError as e:
            raise ManifestError(f"Cannot read manifest: {e}", path) from e
        return cls.parse(text, source=Path(path))

    def save(self, path: Path) -> Path:
        """Atomically write the manifest.

        If a manifest with the same entries already exists at ``path`` its
        ``generated_at`` is kept so unchanged inventories produce no churn.
        """
        path = Path(path)
        manifest = self
        if path.exists():
            try:
                previous = Manifest.load(path)
            except ManifestError:
                previous = None
            if previous is not None and previous.entries == self.entries:
                manifest = replace(self, generated_at=previous.generated_at)

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(manifest.serialize())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return path


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)
