"""Secrets encryption for dotkeeper.

Encrypted entries are stored in the repository with an ``.age`` suffix and
decrypted in memory when diffed or applied. Plaintext never touches
persistent storage on the way: :func:`scoped_plaintext` hands callers a
mutable buffer that is zeroed on every exit path.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Protocol, Union

from .config import Config
from .errors import SecretsError

logger = logging.getLogger(__name__)

PUBLIC_KEY_PREFIX = "# public key: "
SECRET_KEY_PREFIX = "AGE-SECRET-KEY-"


class SecretsProvider(Protocol):
    """Encrypts and decrypts byte strings.

    Both operations raise :class:`SecretsError` on failure.
    """

    def encrypt(self, plaintext: bytes) -> bytes: ...

    def decrypt(self, ciphertext: bytes) -> bytes: ...


class AgeSecretsProvider:
    """Secrets provider backed by the ``age`` command line tool.

    Attributes:
        key_path (Path): Identity file produced by ``age-keygen``.
        timeout (float): Seconds to wait for each ``age`` invocation.
    """

    def __init__(self, key_path: Path, timeout: float = 30, binary: str = "age") -> None:
        self.key_path = Path(key_path)
        self.timeout = timeout
        self.binary = binary

    @classmethod
    def from_config(cls, config: Config) -> "AgeSecretsProvider":
        provider = config.secrets.get("provider", "age")
        if provider != "age":
            raise SecretsError(f"Unsupported secrets provider: {provider}")
        return cls(
            key_path=config.expand(config.secrets.get("key_path", "~/.config/age/keys.txt")),
            timeout=float(config.secrets.get("timeout", 30)),
        )

    def __repr__(self) -> str:
        return f"AgeSecretsProvider({self.key_path})"

    def _run(self, args: List[str], data: bytes) -> bytes:
        """Run ``age`` with ``data`` on stdin and return stdout."""
        if shutil.which(self.binary) is None:
            raise SecretsError(f"'{self.binary}' not found in PATH")
        try:
            result = subprocess.run(
                [self.binary, *args],
                input=data,
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise SecretsError(f"'{self.binary}' timed out after {self.timeout}s") from e
        except OSError as e:
            raise SecretsError(f"Failed to run '{self.binary}': {e}") from e
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", "replace").strip()
            raise SecretsError(stderr or f"'{self.binary}' exited with {result.returncode}")
        return result.stdout

    def public_key(self) -> str:
        """Read the recipient public key from the identity file."""
        try:
            content = self.key_path.read_text()
        except FileNotFoundError as e:
            raise SecretsError("Age key not found; run 'dotkeeper secrets init'", self.key_path) from e
        except OSError as e:
            raise SecretsError(f"Cannot read age key: {e}", self.key_path) from e
        for line in content.splitlines():
            if line.startswith(PUBLIC_KEY_PREFIX):
                return line[len(PUBLIC_KEY_PREFIX) :].strip()
        raise SecretsError("No public key found in age key file", self.key_path)

    def encrypt(self, plaintext: bytes) -> bytes:
        return self._run(["--encrypt", "--recipient", self.public_key()], bytes(plaintext))

    def decrypt(self, ciphertext: bytes) -> bytes:
        if not self.key_path.exists():
            raise SecretsError("Age key not found; run 'dotkeeper secrets init'", self.key_path)
        return self._run(["--decrypt", "--identity", str(self.key_path)], ciphertext)

    def init_key(self) -> str:
        """Generate an identity with ``age-keygen`` unless one already exists.

        Returns:
            The public key.
        """
        if self.key_path.exists():
            if SECRET_KEY_PREFIX not in self.key_path.read_text():
                raise SecretsError("Invalid age key file", self.key_path)
            logger.info("Age key already exists at %s", self.key_path)
            return self.public_key()

        if shutil.which("age-keygen") is None:
            raise SecretsError("'age-keygen' not found in PATH")
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            subprocess.run(
                ["age-keygen", "-o", str(self.key_path)],
                capture_output=True,
                timeout=self.timeout,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise SecretsError(
                f"age-keygen failed: {e.stderr.decode('utf-8', 'replace').strip()}"
            ) from e
        except (subprocess.TimeoutExpired, OSError) as e:
            raise SecretsError(f"age-keygen failed: {e}") from e
        self.key_path.chmod(0o600)
        logger.info("Age key generated at %s", self.key_path)
        return self.public_key()


def load_provider(config: Config) -> Optional[SecretsProvider]:
    """Build the configured provider, or ``None`` if it cannot be built."""
    try:
        return AgeSecretsProvider.from_config(config)
    except SecretsError as e:
        logger.warning("Secrets provider unavailable: %s", e)
        return None


@contextmanager
def scoped_plaintext(provider: SecretsProvider, ciphertext: bytes) -> Iterator[bytearray]:
    """Decrypt ``ciphertext`` into a buffer that is zeroed when the block exits.

    Raises:
        SecretsError: If decryption fails.
    """
    buffer = bytearray(provider.decrypt(ciphertext))
    try:
        yield buffer
    finally:
        for i in range(len(buffer)):
            buffer[i] = 0


def encrypt_file(
    provider: SecretsProvider, input_path: Path, output_path: Optional[Path] = None
) -> Path:
    """Encrypt a file to ``<name>.age`` (or ``output_path``)."""
    input_path = Path(input_path)
    out = Path(output_path) if output_path else input_path.with_name(input_path.name + ".age")
    try:
        data = input_path.read_bytes()
    except OSError as e:
        raise SecretsError(f"Cannot read input: {e}", input_path) from e
    _write_private(out, provider.encrypt(data))
    return out


def decrypt_file(
    provider: SecretsProvider, input_path: Path, output_path: Optional[Path] = None
) -> Path:
    """Decrypt an ``.age`` file next to it (or to ``output_path``)."""
    input_path = Path(input_path)
    if output_path:
        out = Path(output_path)
    elif input_path.name.endswith(".age"):
        out = input_path.with_name(input_path.name[: -len(".age")])
    else:
        out = input_path.with_name(input_path.name + ".decrypted")
    try:
        data = input_path.read_bytes()
    except OSError as e:
        raise SecretsError(f"Cannot read input: {e}", input_path) from e
    with scoped_plaintext(provider, data) as plaintext:
        _write_private(out, plaintext)
    return out


def _write_private(path: Path, data: Union[bytes, bytearray]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(mode=0o600, exist_ok=True)
        path.write_bytes(bytes(data))
    except OSError as e:
        raise SecretsError(f"Cannot write output: {e}", path) from e
