"""
Granule ingest exception hierarchy.

All domain-specific exceptions inherit from GranuleIngestError, making it easy
to catch any engine error with a single base class while still allowing
fine-grained handling when needed.

Hierarchy::

    GranuleIngestError
    ├── ConfigurationError          - config loading, parsing, validation
    │   ├── ProviderNotFoundError   - no provider in the workflow message
    │   ├── UnsupportedProtocolError - provider protocol has no adapter
    │   └── UnsupportedChecksumError - checksum algorithm not implemented
    ├── RemoteResourceError         - normalized transport failures
    │   ├── ConnectionRefused
    │   ├── ConnectionTimeout
    │   ├── RemoteFileNotFound
    │   └── TransientIOError
    ├── DuplicateFileError          - duplicate policy rejected a file
    ├── ChecksumMismatchError       - fetched bytes do not match declared checksum
    ├── StagingError                - staging object store read or write failed
    └── ResourcesLockedError        - granule lock stayed held past the max wait
"""

from __future__ import annotations

from typing import Any


class GranuleIngestError(Exception):
    """Base exception for all granule ingest errors."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# --- Configuration -----------------------------------------------------------


class ConfigurationError(GranuleIngestError):
    """Raised when configuration loading, parsing, or validation fails."""


class ProviderNotFoundError(ConfigurationError):
    """Raised when the workflow message carries no provider."""


class UnsupportedProtocolError(ConfigurationError):
    """Raised when a provider protocol tag has no registered adapter."""

    def __init__(self, protocol: str) -> None:
        super().__init__(f"Unsupported provider protocol: {protocol}", details={"protocol": protocol})
        self.protocol = protocol


class UnsupportedChecksumError(ConfigurationError):
    """Raised when a declared checksum algorithm is not implemented."""

    def __init__(self, algorithm: str) -> None:
        super().__init__(f"Unsupported checksum algorithm: {algorithm}", details={"algorithm": algorithm})
        self.algorithm = algorithm


# --- Transport ---------------------------------------------------------------


class RemoteResourceError(GranuleIngestError):
    """Raised when a remote provider cannot be reached or read.

    Adapters normalize library-specific errors into one of the subclasses
    below so callers can decide on retries without per-protocol knowledge.
    """


class ConnectionRefused(RemoteResourceError):
    """Raised when the provider refuses the connection or rejects credentials."""


class ConnectionTimeout(RemoteResourceError):
    """Raised when connecting to or reading from the provider timed out."""


class RemoteFileNotFound(RemoteResourceError):
    """Raised when a remote path does not exist on the provider."""


class TransientIOError(RemoteResourceError):
    """Raised for interrupted transfers and other retryable I/O failures."""


# --- Policy ------------------------------------------------------------------


class DuplicateFileError(GranuleIngestError):
    """Raised when a destination object exists and duplicate handling is ``error``."""

    def __init__(self, message: str, *, bucket: str, key: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details={"bucket": bucket, "key": key, **(details or {})})
        self.bucket = bucket
        self.key = key


class ChecksumMismatchError(GranuleIngestError):
    """Raised when fetched bytes do not match the provider-declared checksum."""

    def __init__(self, file_name: str, algorithm: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Checksum mismatch for {file_name}: expected {algorithm} {expected}, got {actual}",
            details={"file": file_name, "algorithm": algorithm, "expected": expected, "actual": actual},
        )
        self.file_name = file_name
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual


# --- Staging -----------------------------------------------------------------


class StagingError(GranuleIngestError):
    """Raised when the staging object store cannot be read or written.

    The underlying store error (botocore, OSError) is chained as ``__cause__``.
    """

    def __init__(self, message: str, *, bucket: str, key: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details={"bucket": bucket, "key": key, **(details or {})})
        self.bucket = bucket
        self.key = key


# --- Locking -----------------------------------------------------------------


class ResourcesLockedError(GranuleIngestError):
    """Raised when a granule lock remained in place after the maximum wait."""
