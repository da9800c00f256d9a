"""
SFTP adapter.

Wraps a ``paramiko`` transport + SFTP client per provider session. paramiko
is blocking, so calls run in worker threads; the transfer progress callback
checks the cancel flag.
"""

from __future__ import annotations

import stat
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import paramiko

from granule_ingest.exceptions import ConnectionRefused, RemoteResourceError, TransientIOError
from granule_ingest.models import FetchedFile, Provider, ProviderProtocol, RemoteFile
from granule_ingest.protocols.base import (
    StagingTarget,
    discard_partial,
    finish_download,
    normalize_transport_error,
    part_path,
    transport_errors,
)
from granule_ingest.utils.async_utils import CancelFlag, run_blocking
from granule_ingest.utils.logging import get_logger

logger = get_logger("granule_ingest.protocols.sftp")

DEFAULT_PORT = 22


def normalize_sftp_error(error: BaseException, *, context: str = "") -> RemoteResourceError:
    message = f"{context}: {error}" if context else str(error)
    if isinstance(error, paramiko.AuthenticationException):
        return ConnectionRefused(message, details={"cause": type(error).__name__})
    if isinstance(error, paramiko.SSHException):
        return TransientIOError(message, details={"cause": type(error).__name__})
    return normalize_transport_error(error, context=context)


def _load_private_key(path: str, passphrase: str | None) -> paramiko.PKey:
    # paramiko raises if the key type does not match; try the common types
    try:
        return paramiko.RSAKey.from_private_key_file(path, password=passphrase)
    except paramiko.SSHException:
        return paramiko.Ed25519Key.from_private_key_file(path, password=passphrase)


@dataclass
class SFTPSession:
    provider: Provider
    transport: paramiko.Transport
    client: paramiko.SFTPClient
    closed: bool = False


class SFTPAdapter:
    """Fetch files from an SFTP provider."""

    protocol = ProviderProtocol.SFTP

    def _connect(self, provider: Provider, *, cancel: CancelFlag) -> tuple[paramiko.Transport, paramiko.SFTPClient]:
        pkey = None
        if provider.private_key_path:
            pkey = _load_private_key(provider.private_key_path, provider.private_key_passphrase)

        transport = paramiko.Transport((provider.host, provider.port or DEFAULT_PORT))
        transport.banner_timeout = provider.connect_timeout_s
        transport.auth_timeout = provider.connect_timeout_s
        try:
            transport.connect(username=provider.username, password=provider.password, pkey=pkey)
            client = paramiko.SFTPClient.from_transport(transport)
        except Exception:
            transport.close()
            raise
        if client is None:
            transport.close()
            raise paramiko.SSHException(f"Could not open SFTP channel to {provider.host}")
        return transport, client

    async def connect(self, provider: Provider) -> SFTPSession:
        with transport_errors(f"SFTP connect to {provider.host}", normalize_sftp_error):
            transport, client = await run_blocking(self._connect, provider)
        logger.debug(f"Connected to sftp://{provider.host}")
        return SFTPSession(provider=provider, transport=transport, client=client)

    def _list(self, client: paramiko.SFTPClient, directory: str, path: str, *, cancel: CancelFlag) -> list[RemoteFile]:
        files = []
        for attr in client.listdir_attr(directory):
            if stat.S_ISDIR(attr.st_mode or 0):
                continue
            files.append(
                RemoteFile(
                    path=path,
                    name=attr.filename,
                    size=int(attr.st_size or 0),
                    mtime=int(attr.st_mtime or 0),
                )
            )
        return files

    async def list(self, session: SFTPSession, path: str) -> AsyncIterator[RemoteFile]:
        directory = session.provider.remote_path(path, "").rstrip("/") or "/"
        with transport_errors(f"SFTP list {directory}", normalize_sftp_error):
            files = await run_blocking(self._list, session.client, directory, path)
        for remote in files:
            yield remote

    def _download(self, client: paramiko.SFTPClient, remote_path: str, local_path: Path, *, cancel: CancelFlag) -> int:
        local_path.parent.mkdir(parents=True, exist_ok=True)

        def progress(transferred: int, total: int) -> None:
            cancel.check()

        try:
            client.get(remote_path, str(part_path(local_path)), callback=progress)
        except BaseException:
            discard_partial(local_path)
            raise
        return finish_download(local_path)

    async def fetch(self, session: SFTPSession, remote: RemoteFile, target: StagingTarget) -> FetchedFile:
        remote_path = session.provider.remote_path(remote.path, remote.name)
        with transport_errors(f"SFTP fetch {remote_path}", normalize_sftp_error):
            size = await run_blocking(self._download, session.client, remote_path, target.local_path)
        return FetchedFile(name=remote.name, size=size, local_path=target.local_path)

    async def teardown(self, session: SFTPSession | None) -> None:
        """Close SFTP client + underlying transport."""
        if session is None or session.closed:
            return
        session.closed = True
        try:
            session.client.close()
        finally:
            session.transport.close()
