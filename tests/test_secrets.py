"""Tests for secrets handling."""

import shutil
from pathlib import Path

import pytest

from conftest import FakeSecretsProvider, write_config
from dotkeeper.core.config import Config
from dotkeeper.core.errors import SecretsError
from dotkeeper.core.secrets import (
    AgeSecretsProvider,
    decrypt_file,
    encrypt_file,
    load_provider,
    scoped_plaintext,
)

needs_age = pytest.mark.skipif(
    shutil.which("age") is None or shutil.which("age-keygen") is None,
    reason="age is not installed",
)


def test_scoped_plaintext_zeroes_buffer(fake_secrets: FakeSecretsProvider) -> None:
    """Test the plaintext buffer is wiped after use."""
    ciphertext = fake_secrets.encrypt(b"hunter2")
    with scoped_plaintext(fake_secrets, ciphertext) as plaintext:
        assert bytes(plaintext) == b"hunter2"
        kept = plaintext
    assert kept == bytearray(len(b"hunter2"))


def test_scoped_plaintext_zeroes_on_error(fake_secrets: FakeSecretsProvider) -> None:
    """Test the buffer is wiped when the block raises."""
    ciphertext = fake_secrets.encrypt(b"hunter2")
    with pytest.raises(RuntimeError):
        with scoped_plaintext(fake_secrets, ciphertext) as plaintext:
            kept = plaintext
            raise RuntimeError("boom")
    assert not any(kept)


def test_scoped_plaintext_decrypt_failure(fake_secrets: FakeSecretsProvider) -> None:
    """Test decryption failures propagate as SecretsError."""
    with pytest.raises(SecretsError, match="no identity matched"):
        with scoped_plaintext(fake_secrets, b"not encrypted"):
            pass


def test_encrypt_decrypt_file(tmp_path: Path, fake_secrets: FakeSecretsProvider) -> None:
    """Test file encryption writes private .age files and decrypts back."""
    source = tmp_path / "netrc"
    source.write_text("machine example.com password hunter2\n")

    encrypted = encrypt_file(fake_secrets, source)
    assert encrypted == tmp_path / "netrc.age"
    assert encrypted.read_bytes().startswith(FakeSecretsProvider.PREFIX)
    assert encrypted.stat().st_mode & 0o777 == 0o600

    source.unlink()
    decrypted = decrypt_file(fake_secrets, encrypted)
    assert decrypted == source
    assert decrypted.read_text() == "machine example.com password hunter2\n"
    assert decrypted.stat().st_mode & 0o777 == 0o600


def test_decrypt_file_output_names(tmp_path: Path, fake_secrets: FakeSecretsProvider) -> None:
    """Test decrypt output naming for non-.age inputs and explicit outputs."""
    blob = tmp_path / "blob.bin"
    blob.write_bytes(fake_secrets.encrypt(b"x"))

    assert decrypt_file(fake_secrets, blob) == tmp_path / "blob.bin.decrypted"
    out = decrypt_file(fake_secrets, blob, tmp_path / "out" / "plain")
    assert out.read_bytes() == b"x"


def test_encrypt_missing_input(tmp_path: Path, fake_secrets: FakeSecretsProvider) -> None:
    """Test encrypting a missing file raises SecretsError."""
    with pytest.raises(SecretsError, match="Cannot read input"):
        encrypt_file(fake_secrets, tmp_path / "missing")


def test_age_missing_key(tmp_path: Path) -> None:
    """Test decrypting without an identity file fails clearly."""
    provider = AgeSecretsProvider(tmp_path / "keys.txt")
    with pytest.raises(SecretsError, match="Age key not found"):
        provider.decrypt(b"ciphertext")
    with pytest.raises(SecretsError, match="Age key not found"):
        provider.public_key()


def test_age_missing_binary(tmp_path: Path) -> None:
    """Test a missing age binary raises SecretsError."""
    key = tmp_path / "keys.txt"
    key.write_text("# public key: age1example\nAGE-SECRET-KEY-1EXAMPLE\n")
    provider = AgeSecretsProvider(key, binary="nonexistent-age")
    with pytest.raises(SecretsError, match="not found in PATH"):
        provider.encrypt(b"data")


def test_public_key_missing_line(tmp_path: Path) -> None:
    """Test a key file without a public key comment is rejected."""
    key = tmp_path / "keys.txt"
    key.write_text("AGE-SECRET-KEY-1EXAMPLE\n")
    with pytest.raises(SecretsError, match="No public key"):
        AgeSecretsProvider(key).public_key()


def test_provider_from_config(home: Path) -> None:
    """Test the provider reads its key path from the config."""
    write_config(home, {"secrets": {"provider": "age", "key_path": "~/keys/age.txt"}})
    provider = AgeSecretsProvider.from_config(Config(home=home))
    assert provider.key_path == home / "keys" / "age.txt"


def test_load_provider_unsupported(home: Path) -> None:
    """Test an unsupported provider yields no provider."""
    write_config(home, {"secrets": {"provider": "gpg"}})
    assert load_provider(Config(home=home)) is None


@needs_age
def test_age_round_trip(tmp_path: Path) -> None:
    """Test encrypting and decrypting with the real age binary."""
    provider = AgeSecretsProvider(tmp_path / "age" / "keys.txt")
    public_key = provider.init_key()
    assert public_key.startswith("age1")
    assert provider.init_key() == public_key

    ciphertext = provider.encrypt(b"top secret")
    assert ciphertext != b"top secret"
    assert provider.decrypt(ciphertext) == b"top secret"
