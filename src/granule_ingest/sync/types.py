"""
Type definitions for granule sync runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from granule_ingest.duplicates import UnverifiableMatch
from granule_ingest.locking import LockCoordinator
from granule_ingest.models import Collection, ProviderProtocol
from granule_ingest.protocols.registry import AdapterFactory
from granule_ingest.storage.base import ObjectStore

DEFAULT_STAGING_PREFIX = "file-staging"

# Digest recorded on staged objects when the provider declares none
DEFAULT_CHECKSUM_ALGORITHM = "md5"


@dataclass(frozen=True)
class IngestContext:
    """
    Everything an ingest run needs besides the granule itself.

    Built once per invocation from settings; nothing is read from the process
    environment while ingesting.
    """

    stack: str
    staging_bucket: str
    store: ObjectStore
    work_dir: Path = Path("/tmp/granule-ingest")
    staging_prefix: str = DEFAULT_STAGING_PREFIX
    locks: LockCoordinator = field(default_factory=LockCoordinator.disabled)
    unverifiable_match: UnverifiableMatch = UnverifiableMatch.DIFFERENT
    adapter_registry: dict[ProviderProtocol, AdapterFactory] | None = None
    timeout_s: float | None = None
    checksum_algorithm: str = DEFAULT_CHECKSUM_ALGORITHM

    def staging_dir(self, collection: Collection) -> str:
        return staging_dir(self.staging_prefix, self.stack, collection)


def staging_dir(prefix: str, stack: str, collection: Collection) -> str:
    """``<prefix>/<stack>/<name>___<version>``, the key prefix a collection stages under."""
    parts = [p.strip("/") for p in (prefix, stack, collection.collection_id) if p and p.strip("/")]
    return "/".join(parts)


def destination_key(directory: str, file_name: str) -> str:
    """Deterministic key a file is staged at."""
    return f"{directory.rstrip('/')}/{file_name}" if directory else file_name


__all__ = [
    "DEFAULT_CHECKSUM_ALGORITHM",
    "DEFAULT_STAGING_PREFIX",
    "IngestContext",
    "destination_key",
    "staging_dir",
]
