"""
Granule locks: at most one worker transfers a given granule from a given
provider at a time.
"""

from typing import Any

from granule_ingest.exceptions import ConfigurationError
from granule_ingest.locking.backoff import DEFAULT_BACKOFF_POLICY, BackoffPolicy
from granule_ingest.locking.coordinator import LockCoordinator, LockKey, LockToken
from granule_ingest.locking.tables import DynamoDBLockTable, FileLockTable, InMemoryLockTable, LockTable

LOCK_BACKENDS = ("dynamodb", "file", "memory")


def build_lock_table(config: dict[str, Any]) -> LockTable:
    """Create the lock table described by a ``locking`` config section."""
    backend = config.get("backend", "dynamodb")
    if backend == "dynamodb":
        if not config.get("table"):
            raise ConfigurationError("locking.table is required for the dynamodb lock backend")
        return DynamoDBLockTable(config["table"], config)
    if backend == "file":
        return FileLockTable(config.get("directory", ".granule-locks"))
    if backend == "memory":
        return InMemoryLockTable()
    raise ConfigurationError(f"Unsupported lock backend: {backend}. Must be one of: {', '.join(LOCK_BACKENDS)}")


def build_lock_coordinator(config: dict[str, Any] | None) -> LockCoordinator:
    """Create a coordinator from a ``locking`` config section; disabled by default."""
    config = config or {}
    if not config.get("enabled", False):
        return LockCoordinator.disabled()
    return LockCoordinator(
        build_lock_table(config),
        ttl_s=float(config.get("ttl_s", 300)),
        max_wait_ms=int(config.get("max_wait_ms", 5000)),
    )


__all__ = [
    "BackoffPolicy",
    "DEFAULT_BACKOFF_POLICY",
    "LockCoordinator",
    "LockKey",
    "LockToken",
    "LockTable",
    "InMemoryLockTable",
    "FileLockTable",
    "DynamoDBLockTable",
    "LOCK_BACKENDS",
    "build_lock_table",
    "build_lock_coordinator",
]
