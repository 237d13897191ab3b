"""Apply functionality for dotkeeper.

Each planned entry moves through a fixed sequence of states::

    Planned -> SafetyChecked -> Decrypted -> Backed-up -> Written -> Verified -> Applied

Decryption only happens for encrypted entries and backup only when the
destination exists with a different digest. A failure at any step halts that
entry alone; the run continues with the next entry and the failure is
recorded in the :class:`ApplyReport`. Nothing is rolled back across entries.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, Union

from . import hasher
from .config import Config, FileOverride, RestoreMode
from .diff import DiffEntry, DiffStatus
from .errors import (
    DotkeeperError,
    HookFailure,
    IoError,
    ManifestError,
    SafetyViolation,
    SecretsError,
    VerifyError,
)
from .hooks import HookResult, HookRunner
from .manifest import Manifest, ManifestEntry
from .paths import is_within, live_location, repo_location
from .secrets import SecretsProvider, scoped_plaintext

logger = logging.getLogger(__name__)

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
TEMP_SUFFIX = ".dk-tmp"


class PlanAction(str, Enum):
    """What apply does with one entry."""

    SKIP = "skip"
    BACKUP_WRITE = "backup+write"
    WRITE = "write"


class Outcome(str, Enum):
    """Final state of one entry."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class PlanEntry:
    """Per-entry decision derived from a :class:`DiffEntry`."""

    path: str
    action: PlanAction
    needs_decrypt: bool
    status: DiffStatus
    note: Optional[str] = None


@dataclass
class EntryResult:
    """Outcome of applying one plan entry."""

    path: str
    action: PlanAction
    outcome: Outcome
    error: Optional[DotkeeperError] = None
    backup_path: Optional[Path] = None
    note: Optional[str] = None


@dataclass
class ApplyOptions:
    """Options controlling an apply run.

    Attributes:
        backup: Rename differing destinations to ``<path>.bak.<timestamp>``.
        allow_outside_root: Permit destinations outside the live root.
        dry_run: Check safety and report, but mutate nothing and run no hooks.
    """

    backup: bool = True
    allow_outside_root: bool = False
    dry_run: bool = False


@dataclass
class ApplyReport:
    """Summary of an apply run."""

    results: List[EntryResult] = field(default_factory=list)
    hook_results: List[HookResult] = field(default_factory=list)
    hook_error: Optional[HookFailure] = None

    def _with(self, outcome: Outcome) -> List[EntryResult]:
        return [r for r in self.results if r.outcome == outcome]

    @property
    def applied(self) -> List[EntryResult]:
        return self._with(Outcome.APPLIED)

    @property
    def skipped(self) -> List[EntryResult]:
        return self._with(Outcome.SKIPPED)

    @property
    def failed(self) -> List[EntryResult]:
        return self._with(Outcome.FAILED)

    @property
    def errors(self) -> List[DotkeeperError]:
        errors: List[DotkeeperError] = [r.error for r in self.failed if r.error is not None]
        if self.hook_error is not None:
            errors.append(self.hook_error)
        return errors

    @property
    def ok(self) -> bool:
        return not self.failed and self.hook_error is None

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


def build_plan(
    entries: Iterable[DiffEntry],
    manifest: Manifest,
    overrides: Optional[Mapping[str, FileOverride]] = None,
) -> List[PlanEntry]:
    """Derive the apply plan from diff entries.

    ``Identical`` entries are left out, so an already-applied tree yields an
    empty plan. ``New`` and ``DecryptFailed`` entries are kept as ``Skip`` so
    they show up in the report.
    """
    overrides = overrides or {}
    plan: List[PlanEntry] = []
    for entry in entries:
        if entry.status == DiffStatus.IDENTICAL:
            continue

        manifest_entry = manifest.get(entry.path)
        needs_decrypt = bool(manifest_entry and manifest_entry.is_encrypted)
        note = entry.note

        if entry.status == DiffStatus.MISSING:
            action = PlanAction.WRITE
        elif entry.status == DiffStatus.MODIFIED:
            action = PlanAction.BACKUP_WRITE
        else:
            action = PlanAction.SKIP
            note = note or entry.status.description

        override = overrides.get(entry.path)
        if override is not None and override.exclude:
            action, note = PlanAction.SKIP, "excluded"

        plan.append(PlanEntry(entry.path, action, needs_decrypt, entry.status, note))
    return plan


class ApplyEngine:
    """Materializes manifest entries onto the live filesystem.

    Attributes:
        manifest (Manifest): Manifest the plan was built from.
        repo_root (Path): Repository directory holding the canonical copies.
        live_root (Path): Root boundary; destinations must lie inside it.
        secrets (Optional[SecretsProvider]): Decrypts encrypted entries.
        hooks (HookRunner): Runs the ``pre_apply`` and ``post_apply`` sets.
    """

    def __init__(
        self,
        manifest: Manifest,
        repo_root: Path,
        live_root: Path,
        secrets: Optional[SecretsProvider] = None,
        hooks: Optional[HookRunner] = None,
        pre_apply: Sequence[str] = (),
        post_apply: Sequence[str] = (),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.manifest = manifest
        self.repo_root = Path(repo_root)
        self.live_root = Path(live_root)
        self.secrets = secrets
        self.hooks = hooks or HookRunner()
        self.pre_apply = list(pre_apply)
        self.post_apply = list(post_apply)
        self.clock = clock or datetime.now

    @classmethod
    def from_config(
        cls, config: Config, manifest: Manifest, secrets: Optional[SecretsProvider] = None
    ) -> "ApplyEngine":
        return cls(
            manifest,
            repo_root=config.repo_dir,
            live_root=config.home,
            secrets=secrets,
            hooks=HookRunner(timeout=config.hook_timeout),
            pre_apply=config.hook_commands("pre_apply"),
            post_apply=config.hook_commands("post_apply"),
        )

    def apply(self, plan: Sequence[PlanEntry], options: Optional[ApplyOptions] = None) -> ApplyReport:
        """Apply a plan.

        Args:
            plan: Selected plan entries, in manifest order.
            options: Run options.

        Returns:
            Report with one result per plan entry.

        Raises:
            HookFailure: If a ``pre_apply`` hook fails. No entry is touched.
        """
        options = options or ApplyOptions()
        report = ApplyReport()

        if self.pre_apply and not options.dry_run:
            results = self.hooks.run("pre_apply", self.pre_apply)
            report.hook_results.extend(results)
            failed = next((r for r in results if not r.success), None)
            if failed is not None:
                raise HookFailure(f"pre_apply hook '{failed.command}' failed: {failed.error}")

        for item in plan:
            result = self._apply_entry(item, options)
            report.results.append(result)

        if self.post_apply and not options.dry_run:
            results = self.hooks.run("post_apply", self.post_apply)
            report.hook_results.extend(results)
            failed = next((r for r in results if not r.success), None)
            if failed is not None:
                report.hook_error = HookFailure(
                    f"post_apply hook '{failed.command}' failed: {failed.error}"
                )

        logger.info(
            "Apply finished: %d applied, %d skipped, %d failed",
            len(report.applied),
            len(report.skipped),
            len(report.failed),
        )
        return report

    def _apply_entry(self, item: PlanEntry, options: ApplyOptions) -> EntryResult:
        if item.action == PlanAction.SKIP:
            if item.status == DiffStatus.DECRYPT_FAILED:
                error = SecretsError(item.note or item.status.description, item.path)
                logger.error("Failed to apply %s: %s", item.path, error)
                return EntryResult(item.path, item.action, Outcome.FAILED, error=error)
            return EntryResult(item.path, item.action, Outcome.SKIPPED, note=item.note)

        entry = self.manifest.get(item.path)
        if entry is None:
            error = ManifestError("not present in manifest", item.path)
            return EntryResult(item.path, item.action, Outcome.FAILED, error=error)

        target = live_location(entry.path, self.live_root)
        try:
            self._check_safety(target, options)
            if options.dry_run:
                return EntryResult(item.path, item.action, Outcome.SKIPPED, note="dry run")

            if entry.is_encrypted:
                if self.secrets is None:
                    raise SecretsError("no secrets provider configured", entry.path)
                ciphertext = self._read_source(entry)
                with scoped_plaintext(self.secrets, ciphertext) as plaintext:
                    return self._materialize(item, entry, target, options, plaintext)
            return self._materialize(item, entry, target, options, None)
        except DotkeeperError as e:
            logger.error("Failed to apply %s: %s", item.path, e)
            return EntryResult(item.path, item.action, Outcome.FAILED, error=e)

    def _check_safety(self, target: Path, options: ApplyOptions) -> None:
        if options.allow_outside_root:
            return
        if not is_within(target, self.live_root):
            raise SafetyViolation(f"destination is outside {self.live_root}", target)

    def _materialize(
        self,
        item: PlanEntry,
        entry: ManifestEntry,
        target: Path,
        options: ApplyOptions,
        plaintext: Optional[bytearray],
    ) -> EntryResult:
        source = repo_location(entry.path, self.repo_root)
        as_symlink = entry.mode == RestoreMode.SYMLINK and plaintext is None
        # Copy mode recreates a tracked symlink with its own target
        link_target = None
        if plaintext is None and not as_symlink and source.is_symlink():
            link_target = os.readlink(source)

        if plaintext is not None:
            expected = hasher.digest_bytes(plaintext)
        elif link_target is not None:
            expected = hasher.digest_link_target(link_target)
        elif as_symlink:
            if not os.path.lexists(source):
                raise IoError("repository copy is missing", source)
            expected = hasher.digest_link_target(source)
        else:
            expected = entry.digest

        current = hasher.digest(target) if os.path.lexists(target) else None
        if current == expected:
            return EntryResult(item.path, item.action, Outcome.SKIPPED, note="already applied")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IoError(f"cannot create parent directory: {e.strerror or e}", target.parent) from e

        backup_path = None
        if current is not None and options.backup:
            backup_path = self._backup(target)

        try:
            if as_symlink:
                _atomic_symlink(source, target)
            elif link_target is not None:
                _atomic_symlink(link_target, target)
            else:
                content: Union[bytearray, Path] = plaintext if plaintext is not None else source
                _atomic_copy(content, target, entry.permission_bits)
        except IoError:
            if backup_path is not None and not os.path.lexists(target):
                os.rename(backup_path, target)
                backup_path = None
            raise

        actual = hasher.digest(target)
        if actual != expected:
            raise VerifyError(
                f"digest mismatch after write (expected {expected[:12]}, found {actual[:12]})",
                target,
            )

        logger.info("Applied %s", target)
        return EntryResult(item.path, item.action, Outcome.APPLIED, backup_path=backup_path)

    def _backup(self, target: Path) -> Path:
        """Rename ``target`` to a unique ``<path>.bak.<timestamp>``."""
        stamp = self.clock().strftime(BACKUP_TIMESTAMP_FORMAT)
        backup = target.with_name(f"{target.name}.bak.{stamp}")
        counter = 1
        while os.path.lexists(backup):
            backup = target.with_name(f"{target.name}.bak.{stamp}.{counter}")
            counter += 1
        try:
            os.rename(target, backup)
        except OSError as e:
            raise IoError(f"cannot back up: {e.strerror or e}", target) from e
        logger.info("Backed up %s to %s", target, backup)
        return backup

    def _read_source(self, entry: ManifestEntry) -> bytes:
        source = repo_location(entry.path, self.repo_root)
        try:
            return source.read_bytes()
        except OSError as e:
            raise IoError(e.strerror or str(e), source) from e


def _temp_name(target: Path) -> Path:
    return target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}{TEMP_SUFFIX}")


def _atomic_symlink(source: Union[str, Path], target: Path) -> None:
    tmp = _temp_name(target)
    try:
        os.symlink(source, tmp)
        os.replace(tmp, target)
    except OSError as e:
        if os.path.lexists(tmp):
            os.unlink(tmp)
        raise IoError(f"cannot create symlink: {e.strerror or e}", target) from e


def _atomic_copy(content: Union[bytearray, Path], target: Path, permission_bits: int) -> None:
    """Write ``content`` (bytes or a file to copy) to ``target`` via a temporary file."""
    try:
        fd, tmp_name = tempfile.mkstemp(
            dir=target.parent, prefix=f".{target.name}.", suffix=TEMP_SUFFIX
        )
    except OSError as e:
        raise IoError(f"cannot create temporary file: {e.strerror or e}", target) from e
    try:
        with os.fdopen(fd, "wb") as f:
            if isinstance(content, Path):
                with open(content, "rb") as src:
                    shutil.copyfileobj(src, f)
            else:
                f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, permission_bits)
        os.replace(tmp_name, target)
    except OSError as e:
        raise IoError(f"cannot write: {e.strerror or e}", target) from e
    finally:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
