"""
Checksum computation and verification for fetched files.

Digests are always computed over a stream of chunks, never over a fully
materialized file. Cryptographic algorithms come from ``hashlib``; the legacy
``cksum`` (POSIX CRC) and ``crc32`` algorithms are supported for providers
that still declare them.
"""

from __future__ import annotations

import hashlib
import zlib
from pathlib import Path
from typing import Iterable, Protocol

import aiofiles

from granule_ingest.exceptions import UnsupportedChecksumError
from granule_ingest.models import Checksum
from granule_ingest.utils.logging import get_logger

logger = get_logger("granule_ingest.checksum")

CHUNK_SIZE = 1024 * 1024


class _Digest(Protocol):
    def update(self, data: bytes) -> None: ...

    def hexdigest(self) -> str: ...


def _build_cksum_table() -> list[int]:
    table = []
    for i in range(256):
        crc = i << 24
        for _ in range(8):
            crc = ((crc << 1) ^ 0x04C11DB7) if crc & 0x80000000 else (crc << 1)
        table.append(crc & 0xFFFFFFFF)
    return table


_CKSUM_TABLE = _build_cksum_table()


class CksumDigest:
    """
    POSIX ``cksum`` CRC.

    The CRC runs over the data followed by the byte length (least significant
    byte first, no trailing zeros) and is then complemented. ``hexdigest``
    returns the decimal value ``cksum`` prints.
    """

    def __init__(self) -> None:
        self._crc = 0
        self._length = 0

    def update(self, data: bytes) -> None:
        crc = self._crc
        table = _CKSUM_TABLE
        for byte in data:
            crc = ((crc << 8) & 0xFFFFFFFF) ^ table[(crc >> 24) ^ byte]
        self._crc = crc
        self._length += len(data)

    def hexdigest(self) -> str:
        crc = self._crc
        length = self._length
        while length:
            crc = ((crc << 8) & 0xFFFFFFFF) ^ _CKSUM_TABLE[(crc >> 24) ^ (length & 0xFF)]
            length >>= 8
        return str(~crc & 0xFFFFFFFF)


class Crc32Digest:
    """zlib CRC-32, rendered as 8 hex digits."""

    def __init__(self) -> None:
        self._crc = 0

    def update(self, data: bytes) -> None:
        self._crc = zlib.crc32(data, self._crc)

    def hexdigest(self) -> str:
        return f"{self._crc & 0xFFFFFFFF:08x}"


_HASHLIB_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")

SUPPORTED_ALGORITHMS = frozenset((*_HASHLIB_ALGORITHMS, "cksum", "crc32"))


def new_digest(algorithm: str) -> _Digest:
    """Create an incremental digest for ``algorithm`` (case-insensitive)."""
    name = algorithm.strip().lower().replace("-", "")
    if name in _HASHLIB_ALGORITHMS:
        return hashlib.new(name)
    if name == "cksum":
        return CksumDigest()
    if name == "crc32":
        return Crc32Digest()
    raise UnsupportedChecksumError(algorithm)


def checksum_chunks(chunks: Iterable[bytes], algorithm: str) -> str:
    """Digest an iterable of byte chunks (e.g. an object-store body stream)."""
    digest = new_digest(algorithm)
    for chunk in chunks:
        digest.update(chunk)
    return digest.hexdigest()


def compute_checksum(file_path: str | Path, algorithm: str, chunk_size: int = CHUNK_SIZE) -> str:
    """
    Calculate the checksum of a local file (synchronous, streaming).

    Args:
        file_path: Path to file
        algorithm: Checksum algorithm name
        chunk_size: Read size in bytes

    Returns:
        Checksum string (hex, or decimal for cksum)
    """
    digest = new_digest(algorithm)
    with open(file_path, "rb") as f:
        for block in iter(lambda: f.read(chunk_size), b""):
            digest.update(block)
    return digest.hexdigest()


async def compute_checksum_async(file_path: str | Path, algorithm: str, chunk_size: int = CHUNK_SIZE) -> str:
    """
    Calculate the checksum of a local file (async).

    Uses aiofiles so reading large files does not block the event loop.
    """
    digest = new_digest(algorithm)
    async with aiofiles.open(file_path, "rb") as f:
        while True:
            chunk = await f.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def _same(expected: str, actual: str) -> bool:
    return expected.strip().lower() == actual.strip().lower()


def verify_chunks(chunks: Iterable[bytes], declared: Checksum | None, *, name: str = "object") -> tuple[bool, Checksum | None]:
    """
    Check a stream of bytes against a provider-declared checksum.

    Returns ``(match, observed)``. When nothing is declared the bytes are
    treated as unverified: this is logged, nothing is read, and
    ``(True, None)`` is returned.
    """
    if declared is None:
        logger.info(f"No checksum declared for {name}; file is unverified")
        return True, None
    actual = checksum_chunks(chunks, declared.algorithm)
    return _same(declared.value, actual), Checksum(declared.algorithm, actual)


async def verify_file_async(file_path: str | Path, declared: Checksum | None) -> tuple[bool, Checksum | None]:
    """
    Check a local file against a provider-declared checksum.

    Returns ``(match, observed)`` where ``observed`` is the computed checksum
    (``None`` when nothing was declared, in which case the file is logged as
    unverified and counts as a match).
    """
    if declared is None:
        logger.info(f"No checksum declared for {Path(file_path).name}; file is unverified")
        return True, None
    actual = await compute_checksum_async(file_path, declared.algorithm)
    return _same(declared.value, actual), Checksum(declared.algorithm, actual)
