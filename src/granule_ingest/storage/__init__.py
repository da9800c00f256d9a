"""
Staging-area object storage.

``build_object_store`` picks the backend from the ``storage`` config section.
"""

from typing import Any

from granule_ingest.exceptions import ConfigurationError
from granule_ingest.storage.base import ObjectStore, checksum_from_metadata, checksum_metadata
from granule_ingest.storage.filesystem import FilesystemObjectStore
from granule_ingest.storage.s3 import S3ObjectStore


def build_object_store(config: dict[str, Any] | None) -> ObjectStore:
    """Create the object store described by a ``storage`` config section."""
    config = config or {}
    store_type = config.get("type", "s3")
    if store_type == "s3":
        return S3ObjectStore("s3", config)
    if store_type == "filesystem":
        return FilesystemObjectStore("filesystem", config)
    raise ConfigurationError(f"Unsupported storage type: {store_type}. Must be 's3' or 'filesystem'")


__all__ = [
    "ObjectStore",
    "S3ObjectStore",
    "FilesystemObjectStore",
    "build_object_store",
    "checksum_metadata",
    "checksum_from_metadata",
]
