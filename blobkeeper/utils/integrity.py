"""Content hashing and verification helpers"""

import hashlib
import re
from typing import Optional

from blobkeeper.exceptions import HashMismatchError

SHA256_HEX_PATTERN = re.compile(r"^[a-fA-F0-9]{64}$")


def sha256_hex(data: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of data"""
    return hashlib.sha256(data).hexdigest()


def is_sha256_hex(value: Optional[str]) -> bool:
    """Check that value looks like a hex SHA-256 digest"""
    return bool(value) and SHA256_HEX_PATTERN.match(value) is not None


def verify_hash(data: bytes, expected: str, subject: str) -> str:
    """
    Verify that data hashes to the expected digest.

    Args:
        data: Bytes to hash
        expected: Declared hex digest (case-insensitive)
        subject: Human readable name used in the error

    Returns:
        The computed digest

    Raises:
        HashMismatchError: If the digests differ
    """
    actual = sha256_hex(data)
    if actual != expected.lower():
        raise HashMismatchError(subject, expected.lower(), actual)
    return actual


class StreamingHasher:
    """Incremental SHA-256 over a sequence of byte slices"""

    def __init__(self):
        self._hash = hashlib.sha256()
        self.size = 0

    def update(self, data: bytes) -> None:
        self._hash.update(data)
        self.size += len(data)

    def hexdigest(self) -> str:
        return self._hash.hexdigest()

    def matches(self, expected: str) -> bool:
        return self.hexdigest() == expected.lower()
