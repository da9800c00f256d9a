"""
Typed ingest settings built from a loaded :class:`Config`.

Example ``granule-ingest.yaml``::

    stack: ${STACK_NAME}
    staging_bucket: "{stack}-private"
    staging_prefix: file-staging
    work_dir: /tmp/granule-ingest
    storage:
      type: s3               # s3 | filesystem
    locking:
      enabled: true
      backend: dynamodb      # dynamodb | file | memory
      table: "{stack}-granule-locks"
      ttl_s: 300
      max_wait_ms: 5000
    duplicates:
      unverifiable_match: different   # different | size
    concurrency: 4
    timeout_s: 900
    logging:
      level: INFO
      file: logs/ingest.log
      json: false
"""

from __future__ import annotations

import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from granule_ingest.checksum import SUPPORTED_ALGORITHMS
from granule_ingest.config.loader import Config
from granule_ingest.duplicates import UnverifiableMatch
from granule_ingest.exceptions import ConfigurationError
from granule_ingest.locking import LOCK_BACKENDS
from granule_ingest.sync.types import DEFAULT_CHECKSUM_ALGORITHM, DEFAULT_STAGING_PREFIX

STORAGE_TYPES = ("s3", "filesystem")


@dataclass
class LockingSettings:
    enabled: bool = False
    backend: str = "dynamodb"
    table: str | None = None
    directory: str | None = None
    ttl_s: float = 300.0
    max_wait_ms: int = 5000
    region: str | None = None
    endpoint_url: str | None = None

    def as_config(self) -> dict[str, Any]:
        """Section shape accepted by ``build_lock_coordinator``."""
        return {k: v for k, v in vars(self).items() if v is not None}


@dataclass
class IngestSettings:
    stack: str = ""
    staging_bucket: str = ""
    staging_prefix: str = DEFAULT_STAGING_PREFIX
    work_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "granule-ingest")
    storage: dict[str, Any] = field(default_factory=lambda: {"type": "s3"})
    locking: LockingSettings = field(default_factory=LockingSettings)
    unverifiable_match: UnverifiableMatch = UnverifiableMatch.DIFFERENT
    checksum_algorithm: str = DEFAULT_CHECKSUM_ALGORITHM
    concurrency: int = 1
    timeout_s: float | None = None
    log_level: str = "INFO"
    log_file: str | None = None
    log_json: bool = False

    @classmethod
    def from_config(cls, config: Config) -> "IngestSettings":
        """
        Build settings from a loaded config and validate them.

        Raises:
            ConfigurationError: listing every invalid value at once
        """
        errors: list[str] = []

        locking_cfg = config.section("locking")
        locking = LockingSettings(
            enabled=_as_bool(locking_cfg.get("enabled", False)),
            backend=str(locking_cfg.get("backend", "dynamodb")),
            table=locking_cfg.get("table"),
            directory=locking_cfg.get("directory"),
            ttl_s=_as_number(locking_cfg.get("ttl_s", 300), float, "locking.ttl_s", errors),
            max_wait_ms=_as_number(locking_cfg.get("max_wait_ms", 5000), int, "locking.max_wait_ms", errors),
            region=locking_cfg.get("region"),
            endpoint_url=locking_cfg.get("endpoint_url"),
        )

        match_value = config.get("duplicates.unverifiable_match", UnverifiableMatch.DIFFERENT.value)
        try:
            unverifiable_match = UnverifiableMatch(str(match_value).lower())
        except ValueError:
            errors.append(
                f"duplicates.unverifiable_match must be one of: {', '.join(m.value for m in UnverifiableMatch)}"
                f" (got '{match_value}')"
            )
            unverifiable_match = UnverifiableMatch.DIFFERENT

        timeout = config.get("timeout_s")
        settings = cls(
            stack=str(config.get("stack", "") or ""),
            staging_bucket=str(config.get("staging_bucket", "") or ""),
            staging_prefix=str(config.get("staging_prefix", DEFAULT_STAGING_PREFIX)),
            storage=dict(config.section("storage")) or {"type": "s3"},
            locking=locking,
            unverifiable_match=unverifiable_match,
            checksum_algorithm=str(config.get("checksum_algorithm", DEFAULT_CHECKSUM_ALGORITHM)).lower(),
            concurrency=_as_number(config.get("concurrency", 1), int, "concurrency", errors),
            timeout_s=_as_number(timeout, float, "timeout_s", errors) if timeout is not None else None,
            log_level=str(config.get("logging.level", "INFO")),
            log_file=config.get("logging.file"),
            log_json=_as_bool(config.get("logging.json", False)),
        )
        if config.get("work_dir"):
            settings.work_dir = Path(config.get("work_dir"))

        settings.validate(errors)
        return settings

    def validate(self, errors: list[str] | None = None) -> None:
        errors = list(errors or [])
        if self.storage.get("type", "s3") not in STORAGE_TYPES:
            errors.append(f"storage.type must be one of: {', '.join(STORAGE_TYPES)} (got '{self.storage.get('type')}')")
        if self.storage.get("type") == "filesystem" and not self.storage.get("root_path"):
            errors.append("storage.root_path is required for filesystem storage")
        if self.locking.backend not in LOCK_BACKENDS:
            errors.append(f"locking.backend must be one of: {', '.join(LOCK_BACKENDS)} (got '{self.locking.backend}')")
        if self.locking.enabled and self.locking.backend == "dynamodb" and not self.locking.table:
            errors.append("locking.table is required when dynamodb locking is enabled")
        if self.locking.ttl_s <= 0:
            errors.append("locking.ttl_s must be > 0")
        if self.locking.max_wait_ms < 0:
            errors.append("locking.max_wait_ms must be >= 0")
        if self.concurrency < 1:
            errors.append("concurrency must be >= 1")
        if self.timeout_s is not None and self.timeout_s <= 0:
            errors.append("timeout_s must be > 0")
        if self.checksum_algorithm not in SUPPORTED_ALGORITHMS:
            errors.append(
                f"checksum_algorithm must be one of: {', '.join(sorted(SUPPORTED_ALGORITHMS))} (got '{self.checksum_algorithm}')"
            )
        if errors:
            raise ConfigurationError(
                "Invalid configuration:\n  " + "\n  ".join(errors), details={"errors": errors}
            )


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_number(value: Any, kind: type, name: str, errors: list[str]) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError):
        errors.append(f"{name} must be a number (got '{value}')")
        return kind(0)
