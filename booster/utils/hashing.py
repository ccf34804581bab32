"""Booster Transfer - Hashing utilities.

All hash functions return HEX DIGEST ONLY (no prefix).
Chunk and file checksums on the wire are SHA256 hex digests.
"""

import hashlib
import re
from pathlib import Path

_HEX_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


def sha256_file(path: str | Path) -> str:
    """Compute SHA256 hash of a file.

    Args:
        path: Path to the file to hash.

    Returns:
        SHA256 hex digest (64 lowercase hex characters, no prefix).

    Raises:
        FileNotFoundError: If the file does not exist.
        IOError: If the file cannot be read.
    """
    path = Path(path)
    hasher = hashlib.sha256()

    # Read in chunks for memory efficiency with large files
    with open(path, "rb") as f:
        while chunk := f.read(65536):  # 64KB chunks
            hasher.update(chunk)

    return hasher.hexdigest()


def sha256_bytes(data: bytes) -> str:
    """Compute SHA256 hash of bytes.

    Args:
        data: Bytes to hash.

    Returns:
        SHA256 hex digest (64 lowercase hex characters, no prefix).
    """
    return hashlib.sha256(data).hexdigest()


def normalize_hex_digest(value: str) -> str | None:
    """Normalize a client-supplied SHA256 hex digest.

    Strips whitespace, lowercases, and drops an optional "sha256:" prefix.

    Args:
        value: Digest as sent by the client.

    Returns:
        64-char lowercase hex digest, or None if the value is not a SHA256 digest.
    """
    digest = value.strip().lower()
    if digest.startswith("sha256:"):
        digest = digest[len("sha256:") :]
    if not _HEX_DIGEST_RE.match(digest):
        return None
    return digest
