"""
Lock tables: the shared records behind granule locks.

A table needs three primitives. ``try_put`` is a conditional insert that
succeeds when no unexpired record exists for the key. ``delete`` removes the
record and ``renew`` extends its expiry, both only if it still belongs to the
caller. Whoever wins the conditional write holds the lock.

Config example:
    locking:
      enabled: true
      backend: dynamodb       # dynamodb | file | memory
      table: my-stack-granule-locks
      region: us-east-1
"""

from __future__ import annotations

import hashlib
import json
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Protocol

import boto3
from botocore.exceptions import ClientError

from granule_ingest.utils.logging import get_logger

logger = get_logger("granule_ingest.locking.tables")

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


class LockTable(Protocol):
    """Conditional insert/delete over lock records. Methods are blocking."""

    def try_put(self, key: str, owner: str, ttl_s: float) -> bool:
        """Insert ``key`` for ``owner`` if absent or expired; True on success."""
        ...

    def delete(self, key: str, owner: str) -> None:
        """Remove ``key`` if ``owner`` still holds it."""
        ...

    def renew(self, key: str, owner: str, ttl_s: float) -> bool:
        """Push the expiry of ``key`` to now + ``ttl_s`` if ``owner`` still holds it."""
        ...


class InMemoryLockTable:
    """Thread-safe lock table for a single process (tests, local runs)."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._records: dict[str, tuple[str, float]] = {}
        self._mutex = threading.Lock()

    def try_put(self, key: str, owner: str, ttl_s: float) -> bool:
        now = self._clock()
        with self._mutex:
            current = self._records.get(key)
            if current is not None and current[1] >= now:
                return False
            self._records[key] = (owner, now + ttl_s)
            return True

    def delete(self, key: str, owner: str) -> None:
        with self._mutex:
            current = self._records.get(key)
            if current is not None and current[0] == owner:
                del self._records[key]

    def renew(self, key: str, owner: str, ttl_s: float) -> bool:
        now = self._clock()
        with self._mutex:
            current = self._records.get(key)
            if current is None or current[0] != owner or current[1] < now:
                return False
            self._records[key] = (owner, now + ttl_s)
            return True

    def holder(self, key: str) -> str | None:
        """Current unexpired owner of ``key``, if any."""
        with self._mutex:
            current = self._records.get(key)
        if current is None or current[1] < self._clock():
            return None
        return current[0]


class FileLockTable:
    """
    Lock files in a shared directory, for several processes on one host.

    Each key is a file created with ``O_CREAT | O_EXCL`` holding the owner and
    expiry. An expired file is renamed aside before the insert is retried, so
    only one contender can take over a stale lock.
    """

    def __init__(self, directory: str | Path, clock: Callable[[], float] = time.time):
        self.directory = Path(directory)
        self._clock = clock

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode()).hexdigest()[:32]
        return self.directory / f"{digest}.lock"

    @staticmethod
    def _read(path: Path) -> dict[str, Any] | None:
        try:
            return json.loads(path.read_text())
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            # Half-written by a creator that has not finished; treat as held
            return {"owner": None, "expiresAt": float("inf")}

    def _create(self, path: Path, key: str, owner: str, ttl_s: float) -> bool:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            json.dump({"key": key, "owner": owner, "expiresAt": self._clock() + ttl_s}, f)
        return True

    def try_put(self, key: str, owner: str, ttl_s: float) -> bool:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        if self._create(path, key, owner, ttl_s):
            return True

        record = self._read(path)
        if record is not None and record.get("expiresAt", 0) >= self._clock():
            return False

        stale = path.with_name(f"{path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(path, stale)
        except FileNotFoundError:
            # Released or taken over by someone else in the meantime
            return self._create(path, key, owner, ttl_s)

        moved = self._read(stale)
        if moved is not None and moved.get("expiresAt", 0) >= self._clock():
            # Renamed a lock another contender had just taken; put it back
            try:
                os.link(stale, path)
            except FileExistsError:
                pass
            stale.unlink(missing_ok=True)
            return False

        stale.unlink(missing_ok=True)
        return self._create(path, key, owner, ttl_s)

    def delete(self, key: str, owner: str) -> None:
        path = self._path(key)
        record = self._read(path)
        if record is not None and record.get("owner") == owner:
            path.unlink(missing_ok=True)

    def renew(self, key: str, owner: str, ttl_s: float) -> bool:
        path = self._path(key)
        record = self._read(path)
        if record is None or record.get("owner") != owner or record.get("expiresAt", 0) < self._clock():
            return False
        # Written aside and swapped in so readers never see a half-written record
        fresh = path.with_name(f"{path.name}.{uuid.uuid4().hex}.renew")
        fresh.write_text(json.dumps({"key": key, "owner": owner, "expiresAt": self._clock() + ttl_s}))
        os.replace(fresh, path)
        return True


class DynamoDBLockTable:
    """
    DynamoDB-backed lock table shared by every worker of a deployment.

    The table's partition key is the string attribute ``lockKey``; ``expiresAt``
    (epoch seconds) can double as the table's TTL attribute.
    """

    def __init__(self, table_name: str, config: dict[str, Any] | None = None, *, client: Any = None):
        self.table_name = table_name
        self.config = config or {}
        self._client = client

    def _get_client_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.config.get("region"):
            kwargs["region_name"] = self.config["region"]
        if self.config.get("endpoint_url"):
            kwargs["endpoint_url"] = self.config["endpoint_url"]
        return kwargs

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("dynamodb", **self._get_client_kwargs())
        return self._client

    def try_put(self, key: str, owner: str, ttl_s: float) -> bool:
        now = time.time()
        try:
            self.client.put_item(
                TableName=self.table_name,
                Item={
                    "lockKey": {"S": key},
                    "lockOwner": {"S": owner},
                    "expiresAt": {"N": f"{now + ttl_s:.3f}"},
                },
                ConditionExpression="attribute_not_exists(lockKey) OR expiresAt < :now",
                ExpressionAttributeValues={":now": {"N": f"{now:.3f}"}},
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED:
                return False
            raise
        return True

    def delete(self, key: str, owner: str) -> None:
        try:
            self.client.delete_item(
                TableName=self.table_name,
                Key={"lockKey": {"S": key}},
                ConditionExpression="lockOwner = :owner",
                ExpressionAttributeValues={":owner": {"S": owner}},
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != CONDITIONAL_CHECK_FAILED:
                raise
            logger.debug(f"Lock {key} no longer held by {owner}, nothing to release")

    def renew(self, key: str, owner: str, ttl_s: float) -> bool:
        now = time.time()
        try:
            self.client.update_item(
                TableName=self.table_name,
                Key={"lockKey": {"S": key}},
                UpdateExpression="SET expiresAt = :expires",
                ConditionExpression="lockOwner = :owner AND expiresAt >= :now",
                ExpressionAttributeValues={
                    ":owner": {"S": owner},
                    ":now": {"N": f"{now:.3f}"},
                    ":expires": {"N": f"{now + ttl_s:.3f}"},
                },
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED:
                return False
            raise
        return True
