"""
Granule ingest - stage remote science data files into a managed staging area.

Fetches granule files over FTP, SFTP, HTTP(S) or S3, verifies checksums,
applies the collection's duplicate handling policy and serializes concurrent
ingest of the same granule with locks.
"""

__version__ = "0.1.0"

# Models
from granule_ingest.models import (
    Checksum,
    Collection,
    DuplicateHandling,
    Granule,
    GranuleFile,
    Provider,
    ProviderProtocol,
)

# Exceptions
from granule_ingest.exceptions import (
    ChecksumMismatchError,
    ConfigurationError,
    ConnectionRefused,
    ConnectionTimeout,
    DuplicateFileError,
    GranuleIngestError,
    ProviderNotFoundError,
    RemoteFileNotFound,
    RemoteResourceError,
    ResourcesLockedError,
    StagingError,
    TransientIOError,
    UnsupportedChecksumError,
    UnsupportedProtocolError,
)

# Engine
from granule_ingest.duplicates import Decision, DecisionAction, evaluate
from granule_ingest.locking import LockCoordinator, LockKey
from granule_ingest.protocols import resolve_adapter
from granule_ingest.sync import IngestContext, ingest_granule, ingest_granules

# Task entry point
from granule_ingest.task import handler, sync_granule

# Logging utilities
from granule_ingest.utils.logging import get_logger, setup_logging

__all__ = [
    "__version__",
    # Models
    "Checksum",
    "Collection",
    "DuplicateHandling",
    "Granule",
    "GranuleFile",
    "Provider",
    "ProviderProtocol",
    # Exceptions
    "GranuleIngestError",
    "ConfigurationError",
    "ProviderNotFoundError",
    "UnsupportedProtocolError",
    "UnsupportedChecksumError",
    "RemoteResourceError",
    "ConnectionRefused",
    "ConnectionTimeout",
    "RemoteFileNotFound",
    "TransientIOError",
    "DuplicateFileError",
    "ChecksumMismatchError",
    "StagingError",
    "ResourcesLockedError",
    # Engine
    "Decision",
    "DecisionAction",
    "evaluate",
    "LockCoordinator",
    "LockKey",
    "resolve_adapter",
    "IngestContext",
    "ingest_granule",
    "ingest_granules",
    # Task
    "handler",
    "sync_granule",
    # Logging
    "get_logger",
    "setup_logging",
]
