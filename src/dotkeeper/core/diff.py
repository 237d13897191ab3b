"""Drift detection between the repository and the live filesystem.

Classification is strictly digest based. For each manifest entry the live
digest is taken at the applied location (``.age`` suffix removed) and
compared against the expected digest: the repository copy's digest, or the
digest of the decrypted content for encrypted entries. Output is always
sorted by path so repeated runs over an unchanged system are identical.
"""

from __future__ import annotations

import difflib
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from . import hasher
from .config import RestoreMode
from .errors import IoError, SecretsError
from .manifest import Manifest, ManifestEntry
from .paths import ENCRYPTED_SUFFIX, live_location, normalize_entry_path, repo_location
from .secrets import SecretsProvider, scoped_plaintext

logger = logging.getLogger(__name__)

BINARY_SNIFF_SIZE = 8192


class DiffStatus(str, Enum):
    """Classification of one tracked path."""

    MODIFIED = "modified"
    NEW = "new"
    MISSING = "missing"
    IDENTICAL = "identical"
    DECRYPT_FAILED = "decrypt_failed"

    @property
    def symbol(self) -> str:
        return _SYMBOLS[self]

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_SYMBOLS = {
    DiffStatus.MODIFIED: "M",
    DiffStatus.NEW: "A",
    DiffStatus.MISSING: "D",
    DiffStatus.IDENTICAL: "=",
    DiffStatus.DECRYPT_FAILED: "!",
}

_DESCRIPTIONS = {
    DiffStatus.MODIFIED: "modified",
    DiffStatus.NEW: "new (not in manifest)",
    DiffStatus.MISSING: "missing from system",
    DiffStatus.IDENTICAL: "identical",
    DiffStatus.DECRYPT_FAILED: "could not decrypt",
}


@dataclass(frozen=True)
class DiffEntry:
    """Classification of one path."""

    path: str
    status: DiffStatus
    repo_digest: Optional[str] = None
    live_digest: Optional[str] = None
    note: Optional[str] = None

    @property
    def is_changed(self) -> bool:
        return self.status != DiffStatus.IDENTICAL


class DiffEngine:
    """Compares manifest entries against the live filesystem.

    Attributes:
        repo_root (Path): Repository directory holding the canonical copies.
        live_root (Path): Root that home-relative entries are applied under.
        secrets (Optional[SecretsProvider]): Used to compare encrypted entries.
    """

    def __init__(
        self,
        repo_root: Path,
        live_root: Path,
        secrets: Optional[SecretsProvider] = None,
    ) -> None:
        self.repo_root = Path(repo_root)
        self.live_root = Path(live_root)
        self.secrets = secrets

    def diff(self, manifest: Manifest, live_paths: Optional[Iterable[str]] = None) -> List[DiffEntry]:
        """Classify every manifest entry, plus untracked live paths.

        Args:
            manifest: The repository manifest.
            live_paths: Paths reported by a live scan. Those absent from the
                manifest are classified as ``New``.

        Returns:
            Diff entries sorted by path.
        """
        entries = [self.classify(entry) for entry in manifest]

        if live_paths is not None:
            known = set(manifest.paths())
            for raw in live_paths:
                path = normalize_entry_path(raw, self.live_root)
                if path in known or path + ENCRYPTED_SUFFIX in known:
                    continue
                known.add(path)
                live = live_location(path, self.live_root)
                if not os.path.lexists(live):
                    continue
                try:
                    live_digest: Optional[str] = hasher.digest(live)
                    note = None
                except IoError as e:
                    live_digest, note = None, e.cause
                entries.append(DiffEntry(path, DiffStatus.NEW, None, live_digest, note))

        entries.sort(key=lambda e: e.path)
        logger.debug("Diff computed for %d path(s)", len(entries))
        return entries

    def classify(self, entry: ManifestEntry) -> DiffEntry:
        """Classify a single manifest entry."""
        target = live_location(entry.path, self.live_root)
        source = repo_location(entry.path, self.repo_root)

        if not os.path.lexists(target):
            return DiffEntry(entry.path, DiffStatus.MISSING, repo_digest=entry.digest)

        if (
            entry.mode == RestoreMode.SYMLINK
            and not entry.is_encrypted
            and target.is_symlink()
            and os.path.realpath(target) == os.path.realpath(source)
        ):
            return DiffEntry(entry.path, DiffStatus.IDENTICAL, entry.digest, entry.digest)

        try:
            live_digest = hasher.digest(target)
        except IoError as e:
            return DiffEntry(
                entry.path, DiffStatus.MODIFIED, entry.digest, None, f"unreadable: {e.cause}"
            )

        if entry.is_encrypted:
            try:
                expected = self.expected_digest(entry)
            except (SecretsError, IoError) as e:
                return DiffEntry(
                    entry.path, DiffStatus.DECRYPT_FAILED, None, live_digest, e.cause
                )
        else:
            expected = entry.digest

        status = DiffStatus.IDENTICAL if live_digest == expected else DiffStatus.MODIFIED
        return DiffEntry(entry.path, status, expected, live_digest)

    def expected_digest(self, entry: ManifestEntry) -> str:
        """Digest the applied location should have.

        Raises:
            SecretsError: If an encrypted entry cannot be decrypted.
            IoError: If the repository copy is unreadable.
        """
        if not entry.is_encrypted:
            return entry.digest
        if self.secrets is None:
            raise SecretsError("no secrets provider configured", entry.path)
        ciphertext = self._read_repo(entry)
        with scoped_plaintext(self.secrets, ciphertext) as plaintext:
            return hasher.digest_bytes(plaintext)

    def detail(self, entry: DiffEntry, manifest: Manifest) -> List[str]:
        """Render a unified text diff (live to repository) for display.

        Binary content is summarized by size only.
        """
        manifest_entry = manifest.get(entry.path)
        target = live_location(entry.path, self.live_root)
        if manifest_entry is None:
            return ["(not tracked)"]
        if entry.status == DiffStatus.MISSING:
            return ["(file missing from system)"]
        if entry.status == DiffStatus.DECRYPT_FAILED:
            return [f"(cannot decrypt: {entry.note})"]
        if target.is_symlink():
            return [f"(symlink -> {os.readlink(target)})"]

        try:
            repo_bytes = self._read_repo(manifest_entry)
            if manifest_entry.is_encrypted and self.secrets is not None:
                with scoped_plaintext(self.secrets, repo_bytes) as plaintext:
                    repo_bytes = bytes(plaintext)
            live_bytes = target.read_bytes()
        except (IoError, SecretsError, OSError) as e:
            return [f"(cannot compare: {e})"]

        if _is_binary(repo_bytes) or _is_binary(live_bytes):
            return [f"(binary file) repo: {len(repo_bytes)} bytes, live: {len(live_bytes)} bytes"]

        return list(
            difflib.unified_diff(
                live_bytes.decode("utf-8", "replace").splitlines(),
                repo_bytes.decode("utf-8", "replace").splitlines(),
                fromfile=f"live/{entry.path}",
                tofile=f"repo/{entry.path}",
                lineterm="",
            )
        )

    def _read_repo(self, entry: ManifestEntry) -> bytes:
        source = repo_location(entry.path, self.repo_root)
        try:
            return source.read_bytes()
        except OSError as e:
            raise IoError(e.strerror or str(e), source) from e


def filter_by_paths(
    entries: Sequence[DiffEntry], only: Sequence[str], home: Path
) -> List[DiffEntry]:
    """Keep entries matching any of ``only`` (exact path or directory prefix)."""
    if not only:
        return list(entries)
    filters = [normalize_entry_path(p, home) for p in only]

    def matches(path: str) -> bool:
        plain = path[: -len(ENCRYPTED_SUFFIX)] if path.endswith(ENCRYPTED_SUFFIX) else path
        return any(
            candidate == f or candidate.startswith(f.rstrip("/") + "/")
            for f in filters
            for candidate in (path, plain)
        )

    return [entry for entry in entries if matches(entry.path)]


def summarize(entries: Iterable[DiffEntry]) -> Dict[DiffStatus, int]:
    """Count entries per status."""
    counts = {status: 0 for status in DiffStatus}
    for entry in entries:
        counts[entry.status] += 1
    return counts


def _is_binary(data: bytes) -> bool:
    return b"\0" in data[:BINARY_SNIFF_SIZE]
