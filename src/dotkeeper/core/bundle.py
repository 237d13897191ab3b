"""Zip bundles of the repository for remote storage.

A bundle holds the repository under ``compiled/``, the ``manifest.lock`` it
was built with and a ``meta.yaml`` describing where it came from. Symlinks
are stored as links and file permission bits are preserved.
"""

from __future__ import annotations

import os
import shutil
import socket
import stat
import zipfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import List, Optional

import yaml
from rich.progress import Progress, TaskID

from .errors import RemoteError

COMPILED_PREFIX = "compiled"
MANIFEST_NAME = "manifest.lock"
META_NAME = "meta.yaml"
BUNDLE_SUFFIX = ".zip"


@dataclass(frozen=True)
class BundleMeta:
    """Provenance recorded inside a bundle."""

    profile_name: str
    timestamp: str
    hostname: str
    file_count: int
    size_bytes: int


def bundle_name(profile_name: str, when: Optional[datetime] = None) -> str:
    """File name for a new bundle, sortable by creation time."""
    when = when or datetime.now(timezone.utc)
    return f"dotkeeper-{profile_name}-{when.strftime('%Y%m%d-%H%M%S')}{BUNDLE_SUFFIX}"


class BundleWriter:
    """Packs a repository and its manifest into a zip archive."""

    def __init__(self, repo_root: Path, manifest_path: Path, output_path: Path):
        self.repo_root = Path(repo_root)
        self.manifest_path = Path(manifest_path)
        self.output_path = Path(output_path)

    def pack(self, profile_name: str = "default", progress: Optional[Progress] = None) -> BundleMeta:
        """Write the bundle.

        Args:
            profile_name: Profile recorded in the bundle metadata.
            progress: Optional Progress instance for progress tracking.

        Returns:
            The metadata stored in the bundle.

        Raises:
            RemoteError: If the repository or manifest is missing, or the
                archive cannot be written.
        """
        if not self.repo_root.is_dir():
            raise RemoteError("Repository directory does not exist", self.repo_root)
        if not self.manifest_path.exists():
            raise RemoteError("Manifest does not exist; run 'dotkeeper capture'", self.manifest_path)

        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        files = self._files_to_pack()
        meta = BundleMeta(
            profile_name=profile_name,
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            hostname=socket.gethostname(),
            file_count=len(files),
            size_bytes=sum(os.lstat(f).st_size for f in files),
        )

        task_id: Optional[TaskID] = None
        if progress:
            task_id = progress.add_task(f"Creating bundle: {self.output_path.name}", total=len(files))

        try:
            with zipfile.ZipFile(self.output_path, "w", zipfile.ZIP_DEFLATED) as zf:
                for file_path in files:
                    rel_path = file_path.relative_to(self.repo_root).as_posix()
                    self._add(zf, file_path, f"{COMPILED_PREFIX}/{rel_path}")
                    if progress and task_id is not None:
                        progress.advance(task_id)
                zf.write(self.manifest_path, MANIFEST_NAME)
                zf.writestr(META_NAME, yaml.safe_dump(asdict(meta), sort_keys=False))
        except OSError as e:
            if self.output_path.exists():
                self.output_path.unlink()
            raise RemoteError(f"Failed to create bundle: {e}", self.output_path) from e

        return meta

    @staticmethod
    def _add(zf: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        if file_path.is_symlink():
            info = zipfile.ZipInfo(arcname)
            info.external_attr = (stat.S_IFLNK | 0o777) << 16
            zf.writestr(info, os.readlink(file_path))
        else:
            zf.write(file_path, arcname)

    def _files_to_pack(self) -> List[Path]:
        files = []
        for root, _, filenames in os.walk(self.repo_root):
            root_path = Path(root)
            for filename in filenames:
                files.append(root_path / filename)
        return sorted(files)


def read_meta(bundle_path: Path) -> BundleMeta:
    """Read the metadata of a bundle without unpacking it."""
    try:
        with zipfile.ZipFile(bundle_path) as zf:
            data = yaml.safe_load(zf.read(META_NAME))
        return BundleMeta(**data)
    except (OSError, KeyError, TypeError, zipfile.BadZipFile, yaml.YAMLError) as e:
        raise RemoteError(f"Invalid bundle: {e}", bundle_path) from e


def unpack(bundle_path: Path, repo_root: Path, manifest_path: Path) -> BundleMeta:
    """Replace the repository and manifest with the bundle's contents.

    The existing repository is moved aside to ``<repo>.backup`` first.

    Raises:
        RemoteError: If the bundle is invalid or contains unsafe paths.
    """
    bundle_path = Path(bundle_path)
    repo_root = Path(repo_root)
    meta = read_meta(bundle_path)
    staging = repo_root.with_name(repo_root.name + ".incoming")
    if staging.exists():
        shutil.rmtree(staging)

    try:
        with zipfile.ZipFile(bundle_path) as zf:
            for info in zf.infolist():
                name = PurePosixPath(info.filename)
                if name.is_absolute() or ".." in name.parts:
                    raise RemoteError(f"Unsafe path in bundle: {info.filename}", bundle_path)
                if not name.parts or name.parts[0] != COMPILED_PREFIX or info.is_dir():
                    continue
                dest = staging.joinpath(*name.parts[1:])
                dest.parent.mkdir(parents=True, exist_ok=True)
                mode = info.external_attr >> 16
                if stat.S_ISLNK(mode):
                    os.symlink(zf.read(info).decode("utf-8"), dest)
                    continue
                dest.write_bytes(zf.read(info))
                if mode:
                    os.chmod(dest, stat.S_IMODE(mode))
            manifest_text = zf.read(MANIFEST_NAME)
    except (OSError, KeyError, zipfile.BadZipFile) as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise RemoteError(f"Failed to unpack bundle: {e}", bundle_path) from e
    except RemoteError:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    staging.mkdir(parents=True, exist_ok=True)
    if repo_root.exists():
        backup = repo_root.with_name(repo_root.name + ".backup")
        if backup.exists():
            shutil.rmtree(backup)
        os.rename(repo_root, backup)
    os.rename(staging, repo_root)

    manifest_path = Path(manifest_path)
    manifest_path.parent.mkdir(parents=True, exist_ok=True)
    manifest_path.write_bytes(manifest_text)
    return meta
