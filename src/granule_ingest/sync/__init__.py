"""
Granule sync: fetch granule files from providers into the staging area.
"""

from granule_ingest.sync.granule import ingest_granule, ingest_granules, list_provider_files
from granule_ingest.sync.types import (
    DEFAULT_CHECKSUM_ALGORITHM,
    DEFAULT_STAGING_PREFIX,
    IngestContext,
    destination_key,
    staging_dir,
)

__all__ = [
    "DEFAULT_CHECKSUM_ALGORITHM",
    "DEFAULT_STAGING_PREFIX",
    "IngestContext",
    "destination_key",
    "ingest_granule",
    "ingest_granules",
    "list_provider_files",
    "staging_dir",
]
