"""Point-in-time snapshots of the repository.

Layout under the snapshots directory::

    blobs/<2 hex>/<digest>        one read-only copy per distinct digest
    <id>/files/<entry path>       hardlinks into blobs/
    <id>/manifest.lock            manifest at snapshot time
    <id>/snapshot.yaml            message, created_at, file_count, total_bytes

A blob is garbage once its link count drops back to one, i.e. no snapshot
references it any more.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import yaml

from . import hasher
from .config import Config
from .errors import (
    ConfigError,
    DotkeeperError,
    HookFailure,
    IoError,
    ManifestError,
    SnapshotError,
)
from .hooks import HookRunner
from .manifest import Manifest, ManifestEntry
from .paths import OUTSIDE_ROOT_DIR, repo_location

logger = logging.getLogger(__name__)

SNAPSHOT_ID_FORMAT = "%Y%m%d-%H%M%S"
BLOBS_DIR = "blobs"
FILES_DIR = "files"
MANIFEST_FILE = "manifest.lock"
META_FILE = "snapshot.yaml"
BLOB_MODE = 0o444

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([hdwm])\s*$")
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]i?b|b)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "m": timedelta(days=30),
}
_SIZE_UNITS = {
    "b": 1,
    "kb": 1000,
    "mb": 1000**2,
    "gb": 1000**3,
    "tb": 1000**4,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
}


def parse_duration(text: str) -> timedelta:
    """Parse a retention age such as ``30d``, ``2w``, ``12h`` or ``1m`` (30 days).

    Raises:
        ConfigError: If the text is not a valid duration.
    """
    match = _DURATION_RE.match(str(text))
    if not match:
        raise ConfigError(f"Invalid duration '{text}' (expected e.g. 30d, 2w, 12h, 1m)")
    return int(match.group(1)) * _DURATION_UNITS[match.group(2)]


def parse_size(text: str) -> int:
    """Parse a byte size such as ``500MB`` or ``1GiB``. A bare number is bytes.

    Raises:
        ConfigError: If the text is not a valid size.
    """
    match = _SIZE_RE.match(str(text))
    if not match:
        raise ConfigError(f"Invalid size '{text}' (expected e.g. 500MB, 1GiB)")
    unit = (match.group(2) or "b").lower()
    return int(float(match.group(1)) * _SIZE_UNITS[unit])


@dataclass(frozen=True)
class PruneCriteria:
    """Retention rules. A snapshot survives if ANY rule retains it."""

    keep_count: Optional[int] = None
    keep_age: Optional[timedelta] = None
    keep_size: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.keep_count is None and self.keep_age is None and self.keep_size is None

    @classmethod
    def parse(
        cls,
        keep_count: Optional[int] = None,
        keep_age: Optional[str] = None,
        keep_size: Optional[str] = None,
    ) -> "PruneCriteria":
        if keep_count is not None and (isinstance(keep_count, bool) or int(keep_count) < 0):
            raise ConfigError("keep_count must be a non-negative integer")
        return cls(
            keep_count=int(keep_count) if keep_count is not None else None,
            keep_age=parse_duration(keep_age) if keep_age else None,
            keep_size=parse_size(keep_size) if keep_size else None,
        )

    @classmethod
    def from_config(cls, auto_prune: Mapping[str, Any]) -> Optional["PruneCriteria"]:
        """Criteria for auto-pruning, or ``None`` when it is disabled."""
        if not auto_prune.get("enabled"):
            return None
        criteria = cls.parse(
            auto_prune.get("keep_count"), auto_prune.get("keep_age"), auto_prune.get("keep_size")
        )
        return None if criteria.is_empty else criteria


@dataclass(frozen=True)
class Snapshot:
    """An immutable point-in-time copy of the repository."""

    id: str
    message: str
    created_at: datetime
    manifest: Manifest
    file_count: int
    total_bytes: int
    path: Path
    content_store: Dict[str, Path] = field(default_factory=dict, compare=False)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotStore:
    """Creates, lists, restores and prunes snapshots.

    Attributes:
        root (Path): Snapshots directory.
        repo_root (Path): Repository directory snapshots are taken from.
        manifest_path (Path): Repository manifest written by rollback.
        auto_prune (Optional[PruneCriteria]): Applied after every create.
        clock (Callable[[], datetime]): Source of the current UTC time.
    """

    def __init__(
        self,
        root: Path,
        repo_root: Path,
        manifest_path: Path,
        auto_prune: Optional[PruneCriteria] = None,
        hooks: Optional[HookRunner] = None,
        pre_snapshot: Sequence[str] = (),
        post_snapshot: Sequence[str] = (),
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.root = Path(root)
        self.repo_root = Path(repo_root)
        self.manifest_path = Path(manifest_path)
        self.auto_prune = auto_prune
        self.hooks = hooks or HookRunner()
        self.pre_snapshot = list(pre_snapshot)
        self.post_snapshot = list(post_snapshot)
        self.clock = clock

    @classmethod
    def from_config(cls, config: Config) -> "SnapshotStore":
        return cls(
            root=config.snapshots_dir,
            repo_root=config.repo_dir,
            manifest_path=config.manifest_path,
            auto_prune=PruneCriteria.from_config(config.auto_prune),
            hooks=HookRunner(timeout=config.hook_timeout),
            pre_snapshot=config.hook_commands("pre_snapshot"),
            post_snapshot=config.hook_commands("post_snapshot"),
        )

    @property
    def blobs_dir(self) -> Path:
        return self.root / BLOBS_DIR

    def blob_path(self, digest: str) -> Path:
        return self.blobs_dir / digest[:2] / digest

    def create(self, manifest: Manifest, message: str = "", prune: bool = True) -> Snapshot:
        """Snapshot the repository content described by ``manifest``.

        Args:
            manifest: Manifest of the repository.
            message: Free-form description.
            prune: Apply the auto-prune rules afterwards.

        Returns:
            The new snapshot.

        Raises:
            HookFailure: If a ``pre_snapshot`` hook fails.
            SnapshotError: If a repository copy is missing or no longer
                matches its manifest digest. Nothing is left behind.
        """
        if self.pre_snapshot:
            self.hooks.run_or_raise("pre_snapshot", self.pre_snapshot)

        created_at = self.clock().astimezone(timezone.utc).replace(microsecond=0)
        snapshot_id = self._next_id(created_at)
        self.root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(dir=self.root, prefix=f".{snapshot_id}."))

        total_bytes = 0
        try:
            files_dir = staging / FILES_DIR
            for entry in manifest:
                blob = self._store_blob(entry)
                link = repo_location(entry.path, files_dir)
                link.parent.mkdir(parents=True, exist_ok=True)
                os.link(blob, link)
                total_bytes += blob.stat().st_size

            manifest.save(staging / MANIFEST_FILE)
            meta = {
                "id": snapshot_id,
                "message": message,
                "created_at": created_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "file_count": len(manifest),
                "total_bytes": total_bytes,
            }
            with open(staging / META_FILE, "w") as f:
                yaml.safe_dump(meta, f, sort_keys=False)
            os.rename(staging, self.root / snapshot_id)
        except (OSError, IoError, SnapshotError) as e:
            shutil.rmtree(staging, ignore_errors=True)
            self._collect_garbage()
            if isinstance(e, SnapshotError):
                raise
            raise SnapshotError(f"Failed to create snapshot: {e}") from e

        logger.info("Created snapshot %s (%d files)", snapshot_id, len(manifest))
        snapshot = self.get(snapshot_id)

        if self.post_snapshot:
            try:
                self.hooks.run_or_raise("post_snapshot", self.post_snapshot)
            except HookFailure as e:
                logger.error("%s", e)

        if prune:
            self._auto_prune()
        return snapshot

    def list(self) -> List[Snapshot]:
        """All snapshots, newest first."""
        return [self.get(snapshot_id) for snapshot_id in reversed(self._ids())]

    def get(self, snapshot_id: str) -> Snapshot:
        """Load one snapshot.

        Raises:
            SnapshotError: If it does not exist or is damaged.
        """
        snapshot_dir = self.root / snapshot_id
        if snapshot_id.startswith(".") or snapshot_id == BLOBS_DIR or not snapshot_dir.is_dir():
            raise SnapshotError("Snapshot not found", snapshot_id)
        try:
            with open(snapshot_dir / META_FILE) as f:
                meta = yaml.safe_load(f) or {}
            manifest = Manifest.load(snapshot_dir / MANIFEST_FILE)
            created_at = datetime.strptime(meta["created_at"], "%Y-%m-%dT%H:%M:%SZ")
        except (OSError, yaml.YAMLError, ManifestError, KeyError, ValueError) as e:
            raise SnapshotError(f"Damaged snapshot: {e}", snapshot_id) from e

        return Snapshot(
            id=snapshot_id,
            message=meta.get("message") or "",
            created_at=created_at.replace(tzinfo=timezone.utc),
            manifest=manifest,
            file_count=int(meta.get("file_count", len(manifest))),
            total_bytes=int(meta.get("total_bytes", 0)),
            path=snapshot_dir,
            content_store={entry.digest: self.blob_path(entry.digest) for entry in manifest},
        )

    def rollback(self, snapshot_id: str, current: Optional[Manifest] = None) -> Manifest:
        """Restore the repository to a snapshot.

        A safety snapshot of ``current`` (or of the repository manifest on
        disk) is taken first, so a rollback can itself be undone.

        Returns:
            The restored manifest, also written to ``manifest_path``.
        """
        snapshot = self.get(snapshot_id)

        if current is None and self.manifest_path.exists():
            current = Manifest.load(self.manifest_path)
        if current is not None and len(current):
            self.create(current, f"Before rollback to {snapshot_id}", prune=False)

        try:
            for entry in snapshot.manifest:
                self._restore_entry(entry, snapshot.content_store[entry.digest])

            keep = set(snapshot.manifest.paths())
            for path in self._repo_entry_paths():
                if path not in keep:
                    repo_location(path, self.repo_root).unlink()
                    logger.debug("Removed %s from repository", path)
        except OSError as e:
            raise SnapshotError(f"Rollback failed: {e}", snapshot_id) from e

        snapshot.manifest.save(self.manifest_path)
        logger.info("Rolled back repository to snapshot %s", snapshot_id)
        self._auto_prune()
        return snapshot.manifest

    def _auto_prune(self) -> None:
        """Apply the configured retention policy, logging any failure."""
        if self.auto_prune is None:
            return
        try:
            self.prune(self.auto_prune)
        except (DotkeeperError, OSError) as e:
            logger.warning("Auto-pruning failed: %s", e)

    def delete(self, snapshot_id: str) -> None:
        """Delete a snapshot and any blobs only it referenced."""
        snapshot = self.get(snapshot_id)
        shutil.rmtree(snapshot.path)
        removed = self._collect_garbage()
        logger.info("Deleted snapshot %s (%d blob(s) freed)", snapshot_id, removed)

    def select_for_prune(self, criteria: PruneCriteria) -> List[Snapshot]:
        """Snapshots that no retention rule keeps, newest first."""
        snapshots = self.list()
        if criteria.is_empty:
            return []

        now = self.clock()
        keep = set()
        if criteria.keep_count is not None:
            keep.update(s.id for s in snapshots[: criteria.keep_count])
        if criteria.keep_age is not None:
            cutoff = now - criteria.keep_age
            keep.update(s.id for s in snapshots if s.created_at >= cutoff)
        if criteria.keep_size is not None:
            used = 0
            for snapshot in snapshots:
                used += snapshot.total_bytes
                if used > criteria.keep_size:
                    break
                keep.add(snapshot.id)

        return [s for s in snapshots if s.id not in keep]

    def prune(self, criteria: PruneCriteria, dry_run: bool = False) -> List[str]:
        """Delete snapshots no retention rule keeps.

        Returns:
            IDs of the deleted (or, with ``dry_run``, deletable) snapshots.
        """
        doomed = [s.id for s in self.select_for_prune(criteria)]
        if not dry_run:
            for snapshot_id in doomed:
                self.delete(snapshot_id)
            if doomed:
                logger.info("Pruned %d snapshot(s)", len(doomed))
        return doomed

    def _ids(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            p.name
            for p in self.root.iterdir()
            if p.is_dir() and p.name != BLOBS_DIR and not p.name.startswith(".")
        )

    def _next_id(self, created_at: datetime) -> str:
        """Unique ID strictly greater than every existing one."""
        candidate = created_at.strftime(SNAPSHOT_ID_FORMAT)
        ids = self._ids()
        if not ids or candidate > ids[-1]:
            return candidate
        base, _, seq = ids[-1].partition(".")
        return f"{base}.{(int(seq) if seq else 0) + 1:03d}"

    def _store_blob(self, entry: ManifestEntry) -> Path:
        """Ensure a blob exists for ``entry`` and return its path."""
        blob = self.blob_path(entry.digest)
        if blob.exists():
            return blob

        source = repo_location(entry.path, self.repo_root)
        if not os.path.lexists(source):
            raise SnapshotError("Repository copy is missing", source)
        if hasher.digest(source) != entry.digest:
            raise SnapshotError("Repository copy changed since the manifest was built", source)

        blob.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=blob.parent, prefix=".blob.")
        try:
            with os.fdopen(fd, "wb") as f:
                if source.is_symlink():
                    f.write(os.fsencode(os.readlink(source)))
                else:
                    with open(source, "rb") as src:
                        shutil.copyfileobj(src, f)
            os.chmod(tmp_name, BLOB_MODE)
            os.replace(tmp_name, blob)
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        return blob

    def _restore_entry(self, entry: ManifestEntry, blob: Path) -> None:
        dest = repo_location(entry.path, self.repo_root)
        dest.parent.mkdir(parents=True, exist_ok=True)
        content = blob.read_bytes()
        if os.path.lexists(dest) or dest.is_symlink():
            dest.unlink()

        # Blobs of symlinks hold the link target rather than file content
        if hasher.digest_bytes(content) != entry.digest:
            target = os.fsdecode(content)
            if hasher.digest_link_target(target) != entry.digest:
                raise SnapshotError("Blob does not match its digest", blob)
            os.symlink(target, dest)
            return

        shutil.copyfile(blob, dest)
        os.chmod(dest, entry.permission_bits)

    def _repo_entry_paths(self) -> List[str]:
        """Manifest-style paths of every file currently in the repository."""
        paths = []
        if not self.repo_root.is_dir():
            return paths
        for dirpath, _, filenames in os.walk(self.repo_root):
            for name in filenames:
                rel = (Path(dirpath) / name).relative_to(self.repo_root).as_posix()
                if rel.startswith(OUTSIDE_ROOT_DIR + "/"):
                    rel = rel[len(OUTSIDE_ROOT_DIR) :]
                paths.append(rel)
        return sorted(paths)

    def _collect_garbage(self) -> int:
        """Remove blobs no snapshot links to."""
        removed = 0
        if not self.blobs_dir.is_dir():
            return removed
        for fanout in self.blobs_dir.iterdir():
            if not fanout.is_dir():
                continue
            for blob in fanout.iterdir():
                if blob.name.startswith("."):
                    continue
                if blob.stat().st_nlink <= 1:
                    blob.unlink()
                    removed += 1
            if not any(fanout.iterdir()):
                fanout.rmdir()
        return removed
