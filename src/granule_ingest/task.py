"""
Workflow task entry point: workflow message in, workflow message out.

The incoming message looks like::

    {
      "meta": {"stack": ..., "buckets": {"private": {"name": ...}},
               "provider": {...}, "collection": {...}},
      "config": {"stack": ..., "downloadBucket": ..., "fileStagingDir": ...,
                 "duplicateHandling": ...},
      "payload": {"granules": [...]}
    }

Task config values override the message meta, which overrides settings.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Any

from granule_ingest.config import IngestSettings, load_config
from granule_ingest.exceptions import (
    ConfigurationError,
    ConnectionRefused,
    ConnectionTimeout,
    GranuleIngestError,
    ProviderNotFoundError,
)
from granule_ingest.locking import LockCoordinator, build_lock_coordinator
from granule_ingest.models import Collection, DuplicateHandling, Granule, Provider
from granule_ingest.storage import ObjectStore, build_object_store
from granule_ingest.sync import IngestContext, ingest_granules
from granule_ingest.utils.logging import get_logger

logger = get_logger("granule_ingest.task")


def build_context(
    settings: IngestSettings,
    *,
    stack: str | None = None,
    staging_bucket: str | None = None,
    staging_prefix: str | None = None,
    store: ObjectStore | None = None,
    locks: LockCoordinator | None = None,
    adapter_registry: dict | None = None,
) -> IngestContext:
    """Assemble an :class:`IngestContext`; keyword arguments override settings."""
    stack = stack or settings.stack
    staging_bucket = staging_bucket or settings.staging_bucket
    if not stack:
        raise ConfigurationError("No stack name in task config, message meta or settings")
    if not staging_bucket:
        raise ConfigurationError("No staging bucket in task config, message meta or settings")
    return IngestContext(
        stack=stack,
        staging_bucket=staging_bucket,
        store=store if store is not None else build_object_store(settings.storage),
        work_dir=settings.work_dir,
        staging_prefix=staging_prefix if staging_prefix is not None else settings.staging_prefix,
        locks=locks if locks is not None else build_lock_coordinator(settings.locking.as_config()),
        unverifiable_match=settings.unverifiable_match,
        adapter_registry=adapter_registry,
        timeout_s=settings.timeout_s,
        checksum_algorithm=settings.checksum_algorithm,
    )


def normalize_task_error(error: BaseException) -> BaseException:
    """
    Map leftover errors to the engine taxonomy.

    Refused connections and timeouts that escaped adapter normalization are
    recognized by type or message; anything else is returned unchanged.
    """
    if isinstance(error, GranuleIngestError):
        return error
    if isinstance(error, ConnectionRefusedError) or "ECONNREFUSED" in str(error) or "Connection refused" in str(error):
        return ConnectionRefused("Connection Refused", details={"cause": type(error).__name__})
    if isinstance(error, TimeoutError) or getattr(error, "details", {}).get("status") == "timeout":
        return ConnectionTimeout("connection Timed out", details={"cause": type(error).__name__})
    return error


def _private_bucket(buckets: dict[str, Any] | None) -> str | None:
    private = (buckets or {}).get("private")
    if isinstance(private, dict):
        return private.get("name")
    return private


async def sync_granule(
    event: dict[str, Any],
    settings: IngestSettings | None = None,
    *,
    store: ObjectStore | None = None,
    locks: LockCoordinator | None = None,
    adapter_registry: dict | None = None,
) -> dict[str, Any]:
    """
    Ingest the granules of a workflow message.

    Returns ``{"granules": [...]}``, plus ``process`` when the collection
    defines one.

    Raises:
        ProviderNotFoundError: the message carries no provider
        GranuleIngestError: any ingest failure, normalized
    """
    settings = settings or IngestSettings()
    meta = event.get("meta") or {}
    task_config = event.get("config") or {}

    provider_data = task_config.get("provider") or meta.get("provider")
    if not provider_data:
        err = ProviderNotFoundError("Provider info not provided")
        logger.error(str(err))
        raise err

    provider = Provider.from_dict(provider_data)
    collection = Collection.from_dict(task_config.get("collection") or meta.get("collection"))
    if task_config.get("duplicateHandling"):
        collection = replace(collection, duplicate_handling=DuplicateHandling.parse(task_config["duplicateHandling"]))

    context = build_context(
        settings,
        stack=task_config.get("stack") or meta.get("stack"),
        staging_bucket=task_config.get("downloadBucket") or _private_bucket(meta.get("buckets")),
        staging_prefix=task_config.get("fileStagingDir"),
        store=store,
        locks=locks,
        adapter_registry=adapter_registry,
    )
    granules = [Granule.from_dict(g) for g in (event.get("payload") or {}).get("granules", [])]
    logger.debug(f"Start sync of {len(granules)} granules for collection {collection.collection_id}")

    try:
        results = await ingest_granules(
            granules, provider, collection, context=context, concurrency=settings.concurrency
        )
    except Exception as e:
        normalized = normalize_task_error(e)
        logger.error(f"SyncGranule errored: {normalized}")
        if normalized is e:
            raise
        raise normalized from e

    output: dict[str, Any] = {"granules": [g.to_dict() for g in results]}
    if collection.process:
        output["process"] = collection.process
    logger.debug(f"SyncGranule complete, {len(results)} granules staged")
    return output


def handler(event: dict[str, Any], context: Any = None, *, settings: IngestSettings | None = None) -> dict[str, Any]:
    """
    Run the task and return the outgoing workflow message.

    The payload is merged with the task output; ``meta`` gains
    ``sync_granule_duration`` and ``sync_granule_end_time`` (milliseconds).
    """
    start_time = int(time.time() * 1000)
    if settings is None:
        settings = IngestSettings.from_config(load_config())
    data = asyncio.run(sync_granule(event, settings))
    end_time = int(time.time() * 1000)

    meta = {
        **(event.get("meta") or {}),
        "sync_granule_duration": end_time - start_time,
        "sync_granule_end_time": end_time,
    }
    payload = {**(event.get("payload") or {}), **data}
    return {**event, "meta": meta, "payload": payload}
