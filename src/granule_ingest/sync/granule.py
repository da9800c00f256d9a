"""
Granule sync orchestrator.

Fetches every file of a granule from its provider into the staging area:

    connect -> for each file: lock -> fetch -> verify -> decide -> stage or skip -> unlock
            -> teardown

Files of one granule run one after another over a single provider session.
Distinct granules may run in parallel through ``ingest_granules``.
"""

from __future__ import annotations

import asyncio
import shutil
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, TypeVar

from granule_ingest.checksum import checksum_chunks, compute_checksum_async, verify_chunks, verify_file_async
from granule_ingest.duplicates import DecisionAction, Incoming, evaluate, version_key
from granule_ingest.exceptions import ChecksumMismatchError, GranuleIngestError, StagingError
from granule_ingest.locking import LockKey
from granule_ingest.models import (
    Checksum,
    Collection,
    FetchedFile,
    FileState,
    Granule,
    GranuleFile,
    GranuleStatus,
    Provider,
    RemoteFile,
    StoredObject,
)
from granule_ingest.protocols.base import ProtocolAdapter, StagingTarget
from granule_ingest.protocols.registry import resolve_adapter
from granule_ingest.storage.base import ObjectStore
from granule_ingest.sync.types import IngestContext, destination_key
from granule_ingest.utils.async_utils import gather_ordered
from granule_ingest.utils.logging import get_logger, granule_context

logger = get_logger("granule_ingest.sync")

T = TypeVar("T")


def _set_state(file: GranuleFile, state: FileState) -> None:
    logger.debug(f"{file.name}: {file.state.value} -> {state.value}")
    file.state = state


async def _store_call(action: str, bucket: str, key: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run a blocking object-store call in a worker thread.

    Store failures surface as ``StagingError`` naming the bucket and key.
    """
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except GranuleIngestError:
        raise
    except Exception as e:
        raise StagingError(f"Failed to {action} s3://{bucket}/{key}: {e}", bucket=bucket, key=key) from e


def _stream_checksum(store: ObjectStore, bucket: str, key: str, algorithm: str) -> str:
    return checksum_chunks(store.iter_chunks(bucket, key), algorithm)


def _verify_staged(store: ObjectStore, bucket: str, key: str, declared: Checksum | None, algorithm: str) -> tuple[bool, Checksum]:
    match, observed = verify_chunks(store.iter_chunks(bucket, key), declared, name=key)
    if observed is None:
        observed = Checksum(algorithm, _stream_checksum(store, bucket, key, algorithm))
    return match, observed


async def _verify_incoming(fetched: FetchedFile, declared: Checksum | None, context: IngestContext) -> tuple[bool, Checksum]:
    """
    Verify the fetched bytes against the declared checksum.

    Returns ``(match, observed)``. Undeclared files count as a match and are
    digested with the default algorithm so they can still be compared with
    existing objects.
    """
    if fetched.local_path is None:
        return await _store_call(
            "read",
            fetched.staged_bucket,
            fetched.staged_key,
            _verify_staged,
            context.store,
            fetched.staged_bucket,
            fetched.staged_key,
            declared,
            context.checksum_algorithm,
        )
    match, observed = await verify_file_async(fetched.local_path, declared)
    if observed is None:
        algorithm = context.checksum_algorithm
        observed = Checksum(algorithm, await compute_checksum_async(fetched.local_path, algorithm))
    return match, observed


async def _existing_object(store: ObjectStore, bucket: str, key: str, algorithm: str) -> StoredObject | None:
    """
    Look up the object at a destination key.

    Objects staged without checksum metadata (or with a different algorithm)
    are streamed once to compute a comparable digest.
    """
    existing = await _store_call("look up", bucket, key, store.head, bucket, key)
    if existing is None:
        return None
    if existing.checksum is not None and existing.checksum.algorithm == algorithm:
        return existing
    logger.debug(f"No stored {algorithm} checksum for s3://{bucket}/{key}, computing it")
    value = await _store_call("read", bucket, key, _stream_checksum, store, bucket, key, algorithm)
    return replace(existing, checksum=Checksum(algorithm, value))


async def _stage(store: ObjectStore, fetched: FetchedFile, bucket: str, key: str, checksum: Checksum) -> int:
    if fetched.local_path is not None:
        return await _store_call("write", bucket, key, store.put_file, fetched.local_path, bucket, key, checksum=checksum)
    return await _store_call(
        "write", bucket, key, store.move, fetched.staged_bucket, fetched.staged_key, bucket, key, checksum=checksum
    )


async def _cleanup(store: ObjectStore, scratch: Path, fetched: FetchedFile | None) -> None:
    """Remove the local scratch directory and any temporary staging object."""
    try:
        await asyncio.to_thread(shutil.rmtree, scratch, True)
        if fetched is not None and fetched.staged_key is not None:
            await asyncio.to_thread(store.delete, fetched.staged_bucket, fetched.staged_key)
    except Exception as e:
        logger.warning(f"Failed to clean up temporary data for {scratch.name}: {e}")


async def _sync_file(
    adapter: ProtocolAdapter,
    session: Any,
    file: GranuleFile,
    collection: Collection,
    context: IngestContext,
    directory: str,
) -> None:
    bucket = context.staging_bucket
    key = destination_key(directory, file.name)
    scratch = context.work_dir / uuid.uuid4().hex
    target = StagingTarget(
        local_path=scratch / file.name,
        bucket=bucket,
        temp_key=f"{key}.{scratch.name}.tmp",
        store=context.store,
    )
    fetched: FetchedFile | None = None

    try:
        _set_state(file, FileState.FETCHING)
        fetched = await adapter.fetch(session, file.remote, target)

        _set_state(file, FileState.VERIFYING)
        verified, incoming = await _verify_incoming(fetched, file.checksum, context)
        mismatch = not verified

        existing = await _existing_object(context.store, bucket, key, incoming.algorithm)
        decision = evaluate(
            existing,
            Incoming(bucket=bucket, key=key, size=fetched.size, checksum=incoming),
            collection.duplicate_handling,
            unverifiable_match=context.unverifiable_match,
        )
        _set_state(file, FileState.DECIDED)
        logger.info(f"{file.name}: {decision.action.value} ({decision.reason})")

        if mismatch and decision.action.writes_incoming:
            raise ChecksumMismatchError(file.name, incoming.algorithm, file.checksum.value, incoming.value)
        if mismatch:
            logger.warning(
                f"{file.name}: fetched bytes do not match declared {incoming.algorithm} checksum, discarding them"
            )
        if decision.action == DecisionAction.REJECT:
            raise decision.error

        file.bucket = bucket
        file.file_staging_dir = directory
        if decision.action == DecisionAction.SKIP:
            file.key = key
            file.staged_size = existing.size
            file.staged_checksum = existing.checksum
        else:
            staged_key = version_key(key) if decision.action == DecisionAction.VERSION else key
            file.staged_size = await _stage(context.store, fetched, bucket, staged_key, incoming)
            file.key = staged_key
            file.staged_checksum = incoming
        file.duplicate_found = decision.duplicate_found
        _set_state(file, FileState.FINALIZED)
    except BaseException as e:
        _set_state(file, FileState.ABORTED)
        if isinstance(e, GranuleIngestError):
            e.details.setdefault("file", file.name)
            e.details.setdefault("bucket", bucket)
            e.details.setdefault("key", key)
        raise
    finally:
        await _cleanup(context.store, scratch, fetched)


async def ingest_granule(
    granule: Granule,
    provider: Provider,
    collection: Collection,
    *,
    context: IngestContext,
) -> Granule:
    """
    Stage every file of ``granule`` and return an updated copy.

    The input granule is not mutated. On failure the raised engine error
    carries the files finalized so far in ``details["staged_files"]``; the
    provider session is torn down on every exit path.

    Raises:
        UnsupportedProtocolError: before any network activity
        RemoteResourceError: connect or transfer failures
        DuplicateFileError: an existing object rejected under ``error`` handling
        ChecksumMismatchError: fetched bytes contradict the declared checksum
        ResourcesLockedError: the granule lock stayed held past the maximum wait
    """
    adapter = resolve_adapter(provider, registry=context.adapter_registry)
    result = granule.copy()
    result.status = GranuleStatus.STAGING
    directory = context.staging_dir(collection)
    lock_key = LockKey(provider.id, granule.granule_id)
    finalized: list[GranuleFile] = []

    with granule_context(granule.granule_id):
        logger.info(
            f"Syncing granule {granule.granule_id} ({len(result.files)} files) "
            f"from {provider.protocol.value}://{provider.host} to s3://{context.staging_bucket}/{directory}"
        )
        session = None
        try:
            session = await adapter.connect(provider)
            for file in result.files:
                async with context.locks.hold(lock_key):
                    await _sync_file(adapter, session, file, collection, context, directory)
                finalized.append(file)
        except BaseException as e:
            result.status = GranuleStatus.FAILED
            for file in result.files:
                if file.state != FileState.FINALIZED:
                    file.state = FileState.ABORTED
            if isinstance(e, GranuleIngestError):
                e.details.setdefault("granule_id", granule.granule_id)
                e.details["staged_files"] = [f.to_dict() for f in finalized]
            raise
        finally:
            try:
                await adapter.teardown(session)
            except Exception as e:
                logger.warning(f"Teardown of {provider.protocol.value} session failed: {e}")

        result.status = GranuleStatus.STAGED
        logger.info(f"Granule {granule.granule_id} staged")
    return result


async def ingest_granules(
    granules: list[Granule],
    provider: Provider,
    collection: Collection,
    *,
    context: IngestContext,
    concurrency: int = 1,
) -> list[Granule]:
    """
    Ingest several granules, at most ``concurrency`` at a time.

    Results keep the input order. The provider's global connection limit
    further bounds parallelism since every granule holds one session. The
    first failure cancels the remaining granules and propagates; the whole
    run is bounded by ``context.timeout_s`` when set.
    """
    limit = concurrency
    if provider.global_connection_limit:
        limit = min(limit, provider.global_connection_limit)

    run = gather_ordered(
        [ingest_granule(g, provider, collection, context=context) for g in granules],
        limit=limit,
    )
    if context.timeout_s:
        return await asyncio.wait_for(run, context.timeout_s)
    return await run


async def list_provider_files(
    provider: Provider,
    path: str,
    *,
    registry: dict | None = None,
) -> list[RemoteFile]:
    """List the files directly under ``path`` on a provider."""
    adapter = resolve_adapter(provider, registry=registry)
    session = None
    try:
        session = await adapter.connect(provider)
        return [remote async for remote in adapter.list(session, path)]
    finally:
        await adapter.teardown(session)
