"""
FTP adapter.

``ftplib`` is blocking, so every operation runs in a worker thread. Transfers
check a cancel flag from the per-block callback so cancelling the awaiting
task stops the download.
"""

from __future__ import annotations

import ftplib
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

from granule_ingest.exceptions import ConnectionRefused, RemoteFileNotFound, RemoteResourceError, TransientIOError
from granule_ingest.models import FetchedFile, Provider, ProviderProtocol, RemoteFile
from granule_ingest.protocols.base import (
    CHUNK_SIZE,
    StagingTarget,
    discard_partial,
    finish_download,
    normalize_transport_error,
    part_path,
    transport_errors,
)
from granule_ingest.utils.async_utils import CancelFlag, run_blocking
from granule_ingest.utils.logging import get_logger

logger = get_logger("granule_ingest.protocols.ftp")

DEFAULT_PORT = 21


def normalize_ftp_error(error: BaseException, *, context: str = "") -> RemoteResourceError:
    """FTP reply codes: 530 = not logged in, 550 = file unavailable, 4xx = transient."""
    message = f"{context}: {error}" if context else str(error)
    if isinstance(error, ftplib.error_perm):
        code = str(error)[:3]
        if code == "530":
            return ConnectionRefused(message, details={"reply": code})
        if code == "550":
            return RemoteFileNotFound(message, details={"reply": code})
        return RemoteResourceError(message, details={"reply": code})
    if isinstance(error, (ftplib.error_temp, ftplib.error_reply, ftplib.error_proto)):
        return TransientIOError(message, details={"reply": str(error)[:3]})
    return normalize_transport_error(error, context=context)


@dataclass
class FTPSession:
    provider: Provider
    client: ftplib.FTP
    closed: bool = False


class FTPAdapter:
    """Fetch files from an FTP provider."""

    protocol = ProviderProtocol.FTP

    def _connect(self, provider: Provider, *, cancel: CancelFlag) -> ftplib.FTP:
        client = ftplib.FTP(timeout=provider.connect_timeout_s)
        try:
            client.connect(provider.host, provider.port or DEFAULT_PORT)
            client.login(provider.username or "anonymous", provider.password or "")
            client.voidcmd("TYPE I")
        except Exception:
            client.close()
            raise
        return client

    async def connect(self, provider: Provider) -> FTPSession:
        with transport_errors(f"FTP connect to {provider.host}", normalize_ftp_error):
            client = await run_blocking(self._connect, provider)
        logger.debug(f"Connected to ftp://{provider.host}")
        return FTPSession(provider=provider, client=client)

    def _list(self, client: ftplib.FTP, directory: str, path: str, *, cancel: CancelFlag) -> list[RemoteFile]:
        files: list[RemoteFile] = []
        try:
            for name, facts in client.mlsd(directory, facts=["type", "size", "modify"]):
                if facts.get("type") != "file":
                    continue
                files.append(RemoteFile(path=path, name=name, size=int(facts.get("size", 0) or 0)))
        except ftplib.error_perm as e:
            # 500/502: server has no MLSD; fall back to bare names
            if not str(e).startswith(("500", "502")):
                raise
            for entry in client.nlst(directory):
                files.append(RemoteFile(path=path, name=entry.rsplit("/", 1)[-1]))
        return files

    async def list(self, session: FTPSession, path: str) -> AsyncIterator[RemoteFile]:
        directory = session.provider.remote_path(path, "").rstrip("/") or "/"
        with transport_errors(f"FTP list {directory}", normalize_ftp_error):
            files = await run_blocking(self._list, session.client, directory, path)
        for remote in files:
            yield remote

    def _download(self, client: ftplib.FTP, remote_path: str, local_path: Path, *, cancel: CancelFlag) -> int:
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(part_path(local_path), "wb") as f:

                def write(block: bytes) -> None:
                    cancel.check()
                    f.write(block)

                client.retrbinary(f"RETR {remote_path}", write, blocksize=CHUNK_SIZE)
        except BaseException:
            discard_partial(local_path)
            raise
        return finish_download(local_path)

    async def fetch(self, session: FTPSession, remote: RemoteFile, target: StagingTarget) -> FetchedFile:
        remote_path = session.provider.remote_path(remote.path, remote.name)
        with transport_errors(f"FTP fetch {remote_path}", normalize_ftp_error):
            size = await run_blocking(self._download, session.client, remote_path, target.local_path)
        return FetchedFile(name=remote.name, size=size, local_path=target.local_path)

    def _quit(self, session: FTPSession, *, cancel: CancelFlag) -> None:
        try:
            session.client.quit()
        except (ftplib.Error, OSError, EOFError) as e:
            logger.debug(f"FTP quit failed for {session.provider.host}, closing socket: {e}")
            session.client.close()

    async def teardown(self, session: FTPSession | None) -> None:
        if session is None or session.closed:
            return
        session.closed = True
        await run_blocking(self._quit, session)
