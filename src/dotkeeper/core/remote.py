"""Remote backends for pushing and pulling repository bundles.

Backends are chosen by the ``remote.kind`` configuration key through
:data:`REMOTE_BACKENDS`. Only the local filesystem backend moves data; the
object store and WebDAV backends validate their configuration and refuse
transfers.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from .bundle import BUNDLE_SUFFIX
from .config import Config
from .errors import RemoteError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteObject:
    """A bundle stored on a remote."""

    etag_or_rev: str
    size_bytes: int


class RemoteBackend(Protocol):
    """Capability interface shared by all remotes."""

    name: str

    def push(self, bundle: Path) -> RemoteObject: ...

    def pull(self, dest: Path) -> RemoteObject: ...


class LocalFilesystemRemote:
    """Stores bundles in a local (or mounted) directory."""

    name = "localfs"

    def __init__(self, storage_dir: Path) -> None:
        self.storage_dir = Path(storage_dir)

    @classmethod
    def from_config(cls, options: Mapping[str, Any], config: Config) -> "LocalFilesystemRemote":
        endpoint = options.get("endpoint")
        if not endpoint:
            raise RemoteError("localfs remote requires an 'endpoint' directory")
        return cls(config.expand(endpoint))

    def push(self, bundle: Path) -> RemoteObject:
        bundle = Path(bundle)
        dest = self.storage_dir / bundle.name
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(bundle, dest)
        except OSError as e:
            raise RemoteError(f"Failed to copy bundle: {e}", dest) from e
        logger.info("Pushed %s to %s", bundle.name, self.storage_dir)
        return RemoteObject(f"local:{dest}", dest.stat().st_size)

    def pull(self, dest: Path) -> RemoteObject:
        """Copy the newest bundle to ``dest``."""
        bundles = sorted(self.storage_dir.glob(f"*{BUNDLE_SUFFIX}")) if self.storage_dir.is_dir() else []
        if not bundles:
            raise RemoteError("No bundles found", self.storage_dir)
        latest = bundles[-1]
        try:
            Path(dest).parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(latest, dest)
        except OSError as e:
            raise RemoteError(f"Failed to copy bundle: {e}", latest) from e
        logger.info("Pulled %s from %s", latest.name, self.storage_dir)
        return RemoteObject(f"local:{latest}", latest.stat().st_size)


class ObjectStoreRemote:
    """S3-compatible object storage. Transfers are not supported."""

    name = "s3"

    def __init__(self, bucket: str, prefix: str = "", region: Optional[str] = None) -> None:
        self.bucket = bucket
        self.prefix = prefix
        self.region = region

    @classmethod
    def from_config(cls, options: Mapping[str, Any], config: Config) -> "ObjectStoreRemote":
        if not options.get("bucket"):
            raise RemoteError("s3 remote requires a 'bucket'")
        return cls(options["bucket"], options.get("prefix") or "", options.get("region"))

    def push(self, bundle: Path) -> RemoteObject:
        raise RemoteError(f"Object store transfers are not supported (bucket {self.bucket})")

    def pull(self, dest: Path) -> RemoteObject:
        raise RemoteError(f"Object store transfers are not supported (bucket {self.bucket})")


class WebDAVRemote:
    """WebDAV server. Transfers are not supported."""

    name = "webdav"

    def __init__(self, endpoint: str) -> None:
        self.endpoint = endpoint

    @classmethod
    def from_config(cls, options: Mapping[str, Any], config: Config) -> "WebDAVRemote":
        if not options.get("endpoint"):
            raise RemoteError("webdav remote requires an 'endpoint' URL")
        return cls(options["endpoint"])

    def push(self, bundle: Path) -> RemoteObject:
        raise RemoteError(f"WebDAV transfers are not supported ({self.endpoint})")

    def pull(self, dest: Path) -> RemoteObject:
        raise RemoteError(f"WebDAV transfers are not supported ({self.endpoint})")


REMOTE_BACKENDS: Dict[str, Callable[[Mapping[str, Any], Config], RemoteBackend]] = {
    "localfs": LocalFilesystemRemote.from_config,
    "local": LocalFilesystemRemote.from_config,
    "s3": ObjectStoreRemote.from_config,
    "webdav": WebDAVRemote.from_config,
}


def create_remote(config: Config) -> RemoteBackend:
    """Build the backend named by ``remote.kind``.

    Raises:
        RemoteError: If no remote is configured or the kind is unknown.
    """
    if not config.remote:
        raise RemoteError("No remote configured; add a 'remote' section to the config")
    kind = str(config.remote.get("kind", "")).lower()
    factory = REMOTE_BACKENDS.get(kind)
    if factory is None:
        raise RemoteError(f"Unknown remote kind '{kind}'")
    return factory(config.remote, config)
