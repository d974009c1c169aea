from __future__ import annotations

import codecs
import hashlib
from pathlib import Path
from typing import BinaryIO, Callable


DEFAULT_CHUNK_SIZE = 1024 * 1024
IDENTITY_LENGTH = 64
_HEX_DIGITS = frozenset("0123456789abcdef")


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_stream(
    fh: BinaryIO,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    *,
    on_chunk: Callable[[int], None] | None = None,
) -> str:
    """Digest a binary stream chunk by chunk.

    The content identity depends on the bytes alone, never on the path or
    timestamps of the file they came from. SHA-256 collisions are assumed not
    to occur.
    """
    digest = hashlib.sha256()
    while True:
        chunk = fh.read(chunk_size)
        if not chunk:
            break
        digest.update(chunk)
        if on_chunk is not None:
            on_chunk(len(chunk))
    return digest.hexdigest()


def hash_file(
    path: Path,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    *,
    on_chunk: Callable[[int], None] | None = None,
) -> str:
    with path.open("rb") as fh:
        return hash_stream(fh, chunk_size, on_chunk=on_chunk)


def is_identity(value: str) -> bool:
    return len(value) == IDENTITY_LENGTH and all(char in _HEX_DIGITS for char in value)


def is_utf8_file(path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bool:
    decoder = codecs.getincrementaldecoder("utf-8")()
    with path.open("rb") as fh:
        try:
            while True:
                chunk = fh.read(chunk_size)
                if not chunk:
                    break
                decoder.decode(chunk)
            decoder.decode(b"", final=True)
        except UnicodeDecodeError:
            return False
    return True
