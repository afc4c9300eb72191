"""Hashing helpers for artifact identity and secret fingerprints."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable


def sha1_hex(data: bytes) -> str:
    """Return the SHA-1 hex digest of raw bytes.

    SHA-1 is used for artifact identity only: the inputs are already
    content-addressed store paths, so the digest is a change detector and
    must stay stable across releases of persisted state.
    """
    return hashlib.sha1(data).hexdigest()


def sha256_digest(data: bytes | bytearray | memoryview) -> bytes:
    """Return the raw SHA-256 digest of a bytes-like object."""
    return hashlib.sha256(data).digest()


def artifact_hash(path: str) -> str:
    """Identity of a single artifact: SHA-1 of its derivation path."""
    return sha1_hex(path.encode("utf-8"))


def artifact_set_hash(member_hashes: Iterable[str]) -> str:
    """Order-sensitive hash over the concatenation of member hashes."""
    h = hashlib.sha1()
    for member in member_hashes:
        h.update(member.encode("ascii"))
    return h.hexdigest()
