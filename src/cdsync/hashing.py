"""Streaming content hashing."""

import hashlib
from typing import BinaryIO

CHUNK_SIZE = 1024 * 1024


def sha256_stream(reader: BinaryIO, chunk_size: int = CHUNK_SIZE) -> str:
    """Hash a stream without buffering it, returning ``sha256:<hex>``."""
    digest = hashlib.sha256()
    while True:
        chunk = reader.read(chunk_size)
        if not chunk:
            break
        digest.update(chunk)
    return f"sha256:{digest.hexdigest()}"


class HashingReader:
    """File-like wrapper that hashes and counts everything read through it."""

    def __init__(self, reader: BinaryIO):
        self._reader = reader
        self._digest = hashlib.sha256()
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._reader.read(size)
        if chunk:
            self._digest.update(chunk)
            self.bytes_read += len(chunk)
        return chunk

    @property
    def content_hash(self) -> str:
        return f"sha256:{self._digest.hexdigest()}"

    def close(self) -> None:
        close = getattr(self._reader, 'close', None)
        if close:
            close()
