"""Error taxonomy for dotkeeper.

Entry-level errors (``IoError``, ``SafetyViolation``, ``SecretsError``,
``VerifyError``) are collected into an apply report and never abort sibling
entries. Run-level errors (``HookFailure``, ``ConfigError``, ``ManifestError``)
abort an operation before any filesystem mutation begins.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

PathLike = Union[str, Path]


class DotkeeperError(Exception):
    """Base class for all dotkeeper errors.

    Attributes:
        path: The offending path, if the error concerns a specific path.
        cause: Human-readable description of what went wrong.
    """

    kind = "error"

    def __init__(self, cause: str, path: Optional[PathLike] = None) -> None:
        self.cause = cause
        self.path = str(path) if path is not None else None
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.path:
            return f"{self.path}: {self.cause}"
        return self.cause


class IoError(DotkeeperError):
    """A path could not be read or written."""

    kind = "io"


class SafetyViolation(DotkeeperError):
    """A destination resolves outside the permitted root."""

    kind = "safety"


class SecretsError(DotkeeperError):
    """Encryption or decryption failed (missing key, missing binary, corrupt input)."""

    kind = "secrets"


class VerifyError(DotkeeperError):
    """The written destination does not hash to the expected digest."""

    kind = "verify"


class HookFailure(DotkeeperError):
    """A configured hook command exited unsuccessfully."""

    kind = "hook"


class ConfigError(DotkeeperError):
    """The configuration is malformed."""

    kind = "config"


class ManifestError(DotkeeperError):
    """The manifest is missing or malformed."""

    kind = "manifest"


class SnapshotError(DotkeeperError):
    """A snapshot does not exist or could not be stored."""

    kind = "snapshot"


class RemoteError(DotkeeperError):
    """A remote backend operation failed."""

    kind = "remote"


class ProfileError(DotkeeperError):
    """A profile operation failed."""

    kind = "profile"


class DaemonError(DotkeeperError):
    """The watcher daemon could not start or stop."""

    kind = "daemon"
