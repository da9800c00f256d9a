"""
Object storage interface for the staging area.

Storage backends are addressed by (bucket, key). Staged objects carry the
checksum they were verified with as object metadata so later duplicate checks
can compare against it without re-reading the object.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterator, Protocol, runtime_checkable

from granule_ingest.models import Checksum, StoredObject

CHECKSUM_TYPE_META = "checksumtype"
CHECKSUM_META = "checksum"


def checksum_metadata(checksum: Checksum | None) -> dict[str, str]:
    """Object metadata recording a verified checksum."""
    if checksum is None:
        return {}
    return {CHECKSUM_TYPE_META: checksum.algorithm, CHECKSUM_META: checksum.value}


def checksum_from_metadata(metadata: dict[str, str] | None) -> Checksum | None:
    metadata = {k.lower(): v for k, v in (metadata or {}).items()}
    return Checksum.from_fields(metadata.get(CHECKSUM_TYPE_META), metadata.get(CHECKSUM_META))


@runtime_checkable
class ObjectStore(Protocol):
    """
    Put/get/head/server-side-copy operations on the staging area.

    All methods are blocking; the orchestrator runs them in worker threads.
    """

    name: str

    def head(self, bucket: str, key: str) -> StoredObject | None:
        """Return object info, or None when the object does not exist."""
        ...

    def exists(self, bucket: str, key: str) -> bool: ...

    def put_file(self, local_path: str | Path, bucket: str, key: str, *, checksum: Checksum | None = None) -> int:
        """Upload a local file, returning the stored size."""
        ...

    def copy(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        *,
        checksum: Checksum | None = None,
    ) -> int:
        """Server-side copy, returning the stored size."""
        ...

    def move(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        *,
        checksum: Checksum | None = None,
    ) -> int: ...

    def delete(self, bucket: str, key: str) -> None: ...

    def iter_chunks(self, bucket: str, key: str, chunk_size: int = 1024 * 1024) -> Iterator[bytes]: ...
