from __future__ import annotations

import hashlib
from pathlib import Path

from .constants import DEFAULT_CHUNK_SIZE


def new_hasher():
    return hashlib.sha256()


def digest_bytes(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def digest_file(path: str | Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bytes:
    h = new_hasher()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.digest()
