"""Content-addressed digests for files and symlinks.

Digests are 256-bit BLAKE2b hashes rendered as lowercase hex. A regular file
is hashed over its full byte stream, read in fixed-size chunks so large files
never sit in memory at once. A symlink is hashed over its UTF-8 target string
and never over the pointee, so retargeting a link counts as a content change.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Any, Union

from .errors import IoError

DIGEST_SIZE = 32
CHUNK_SIZE = 64 * 1024

# Personalization keeps a link target from colliding with a file of the same bytes
_LINK_PERSON = b"dotkeeper-link"


def _new_hash(person: bytes = b"") -> Any:
    return hashlib.blake2b(digest_size=DIGEST_SIZE, person=person)


def digest_bytes(data: Union[bytes, bytearray, memoryview]) -> str:
    """Digest an in-memory buffer as if it were a regular file's content."""
    hasher = _new_hash()
    hasher.update(data)
    return hasher.hexdigest()


def digest_link_target(target: Union[str, Path]) -> str:
    """Digest a symlink target string."""
    hasher = _new_hash(_LINK_PERSON)
    hasher.update(os.fsencode(str(target)))
    return hasher.hexdigest()


def digest(path: Union[str, Path]) -> str:
    """Compute the digest of a file or symlink.

    Args:
        path: File or symlink to hash. Symlinks are not followed.

    Returns:
        Hex digest string.

    Raises:
        IoError: If the path does not exist, is a directory, or is unreadable.
    """
    path = Path(path)
    try:
        if path.is_symlink():
            return digest_link_target(os.readlink(path))
        if path.is_dir():
            raise IoError("is a directory", path)
        hasher = _new_hash()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                hasher.update(chunk)
        return hasher.hexdigest()
    except OSError as e:
        raise IoError(e.strerror or str(e), path) from e
