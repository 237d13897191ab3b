"""Test configuration."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import pytest
import yaml

from dotkeeper.core.config import Config
from dotkeeper.core.errors import SecretsError
from dotkeeper.core.manifest import Manifest

GENERATED_AT = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeSecretsProvider:
    """Reversible stand-in for age: prefixes and reverses the bytes."""

    PREFIX = b"FAKE-AGE:"

    def __init__(self) -> None:
        self.decrypt_calls = 0

    def encrypt(self, plaintext: bytes) -> bytes:
        return self.PREFIX + bytes(plaintext)[::-1]

    def decrypt(self, ciphertext: bytes) -> bytes:
        self.decrypt_calls += 1
        if not ciphertext.startswith(self.PREFIX):
            raise SecretsError("no identity matched any of the recipients")
        return ciphertext[len(self.PREFIX) :][::-1]


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Create a temporary home directory."""
    home = tmp_path / "home"
    home.mkdir()
    return home


def write_config(home: Path, data: Dict[str, Any]) -> Path:
    """Write ~/.dotkeeper/config.yaml under ``home``."""
    path = home / ".dotkeeper" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(data, f)
    return path


@pytest.fixture
def config(home: Path) -> Config:
    """Create a default configuration rooted at the temporary home."""
    config = Config(home=home)
    config.repo_dir.mkdir(parents=True)
    return config


@pytest.fixture
def fake_secrets() -> FakeSecretsProvider:
    """Create a fake secrets provider."""
    return FakeSecretsProvider()


def write_repo_file(config: Config, path: str, content: str, mode: int = 0o644) -> Path:
    """Write a canonical copy into the repository."""
    target = config.repo_dir / path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    target.chmod(mode)
    return target


def build_manifest(
    config: Config, paths: Iterable[str], generated_at: Optional[datetime] = None
) -> Manifest:
    """Build a manifest of ``paths`` from the repository."""
    return Manifest.build(
        config.repo_dir,
        paths,
        overrides=config.overrides,
        default_mode=config.default_mode,
        home=config.home,
        generated_at=generated_at or GENERATED_AT,
    )
