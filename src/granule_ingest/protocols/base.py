"""
Uniform transfer contract implemented by every protocol adapter.

An adapter exposes four capabilities over one provider session:

    session = await adapter.connect(provider)
    async for remote in adapter.list(session, "/data"):
        ...
    fetched = await adapter.fetch(session, remote, target)
    await adapter.teardown(session)

Adapters do not share a base class; each satisfies :class:`ProtocolAdapter`
and is picked from the registry by the provider's protocol tag. Errors raised
by client libraries are normalized into the ``RemoteResourceError`` family
before they leave an adapter.
"""

from __future__ import annotations

import asyncio
import errno
import os
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterator, Protocol

from granule_ingest.exceptions import (
    ConnectionRefused,
    ConnectionTimeout,
    GranuleIngestError,
    RemoteFileNotFound,
    RemoteResourceError,
    TransientIOError,
)
from granule_ingest.models import FetchedFile, Provider, ProviderProtocol, RemoteFile
from granule_ingest.storage.base import ObjectStore

CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class StagingTarget:
    """
    Where a fetch may put incoming bytes.

    Adapters that download write to ``local_path``; adapters that can copy
    server-side into ``store`` write to ``bucket``/``temp_key`` instead.
    """

    local_path: Path
    bucket: str
    temp_key: str
    store: ObjectStore


class ProtocolAdapter(Protocol):
    """Capability set every source protocol implements."""

    protocol: ProviderProtocol

    async def connect(self, provider: Provider) -> Any:
        """Open a session; raises a RemoteResourceError on auth/network failure."""
        ...

    def list(self, session: Any, path: str) -> AsyncIterator[RemoteFile]:
        """Lazily yield the files directly under ``path``."""
        ...

    async def fetch(self, session: Any, remote: RemoteFile, target: StagingTarget) -> FetchedFile:
        """Stream one remote file to the staging target."""
        ...

    async def teardown(self, session: Any) -> None:
        """Close the session. Idempotent; accepts None after a failed connect."""
        ...


def normalize_transport_error(error: BaseException, *, context: str = "") -> RemoteResourceError:
    """
    Map a generic transport exception to the engine's error taxonomy.

    Adapters handle their library-specific exceptions first and fall back to
    this for socket/OS level errors.
    """
    if isinstance(error, RemoteResourceError):
        return error

    message = f"{context}: {error}" if context else str(error)
    details = {"cause": type(error).__name__}

    if isinstance(error, ConnectionRefusedError) or "ECONNREFUSED" in str(error):
        return ConnectionRefused(message, details=details)
    if isinstance(error, (TimeoutError, socket.timeout, asyncio.TimeoutError)):
        return ConnectionTimeout(message, details=details)
    if isinstance(error, FileNotFoundError) or getattr(error, "errno", None) == errno.ENOENT:
        return RemoteFileNotFound(message, details=details)
    if isinstance(error, socket.gaierror):
        return ConnectionRefused(message, details=details)
    if isinstance(error, (ConnectionError, OSError, EOFError)):
        return TransientIOError(message, details=details)
    return TransientIOError(message, details=details)


@contextmanager
def transport_errors(
    context: str,
    normalize: Callable[..., RemoteResourceError] = normalize_transport_error,
) -> Iterator[None]:
    """
    Normalize exceptions raised inside the block.

    Engine errors pass through unchanged; cancellation is never caught.
    """
    try:
        yield
    except GranuleIngestError:
        raise
    except Exception as e:
        raise normalize(e, context=context) from e


def part_path(local_path: Path) -> Path:
    """Temporary path a download is written to before being renamed."""
    return local_path.with_name(local_path.name + ".part")


def finish_download(local_path: Path) -> int:
    """Atomically move a completed ``.part`` download into place."""
    os.replace(part_path(local_path), local_path)
    return local_path.stat().st_size


def discard_partial(local_path: Path) -> None:
    part_path(local_path).unlink(missing_ok=True)
