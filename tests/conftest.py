"""
Shared fixtures: a local staging store and an in-process provider adapter.
"""

import asyncio
import hashlib

import pytest

from granule_ingest.exceptions import RemoteFileNotFound
from granule_ingest.locking import InMemoryLockTable, LockCoordinator
from granule_ingest.models import Collection, DuplicateHandling, FetchedFile, Granule, Provider, ProviderProtocol, RemoteFile
from granule_ingest.storage import FilesystemObjectStore
from granule_ingest.sync import IngestContext


def md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


class FakeAdapter:
    """
    Serves files from a dict keyed by remote path and counts session use.

    ``fail_on`` maps file names to exceptions raised by ``fetch``;
    ``block_on`` names a file whose fetch waits until cancelled.
    """

    protocol = ProviderProtocol.FTP

    def __init__(self, files=None, *, fail_on=None, block_on=None, fail_connect=None):
        self.files = dict(files or {})
        self.fail_on = dict(fail_on or {})
        self.block_on = block_on
        self.fail_connect = fail_connect
        self.connects = 0
        self.teardowns = 0
        self.fetched = []
        self.blocked = asyncio.Event()

    async def connect(self, provider):
        if self.fail_connect is not None:
            raise self.fail_connect
        self.connects += 1
        return {"provider": provider}

    async def list(self, session, path):
        prefix = session["provider"].remote_path(path, "")
        for full_path in sorted(self.files):
            if full_path.startswith(prefix) and "/" not in full_path[len(prefix):]:
                yield RemoteFile(path=path, name=full_path[len(prefix):], size=len(self.files[full_path]))

    async def fetch(self, session, remote, target):
        full_path = session["provider"].remote_path(remote.path, remote.name)
        self.fetched.append(full_path)
        if remote.name in self.fail_on:
            raise self.fail_on[remote.name]
        if remote.name == self.block_on:
            self.blocked.set()
            await asyncio.Event().wait()
        if full_path not in self.files:
            raise RemoteFileNotFound(f"{full_path} not found")
        target.local_path.parent.mkdir(parents=True, exist_ok=True)
        target.local_path.write_bytes(self.files[full_path])
        return FetchedFile(name=remote.name, size=len(self.files[full_path]), local_path=target.local_path)

    async def teardown(self, session):
        if session is None:
            return
        self.teardowns += 1


@pytest.fixture
def provider():
    return Provider(id="prov", protocol=ProviderProtocol.FTP, host="ftp.example.com")


@pytest.fixture
def store(tmp_path):
    return FilesystemObjectStore("filesystem", {"root_path": str(tmp_path / "staging")})


@pytest.fixture
def lock_table():
    return InMemoryLockTable()


@pytest.fixture
def make_context(store, tmp_path, lock_table):
    """Build an IngestContext serving ``adapter`` for the FTP protocol."""

    def _make(adapter, *, locking=False, max_wait_ms=5000, timeout_s=None, **kwargs):
        locks = LockCoordinator(lock_table, max_wait_ms=max_wait_ms) if locking else LockCoordinator.disabled()
        return IngestContext(
            stack="test-stack",
            staging_bucket="private",
            store=store,
            work_dir=tmp_path / "work",
            locks=locks,
            adapter_registry={ProviderProtocol.FTP: lambda: adapter},
            timeout_s=timeout_s,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_collection():
    def _make(mode=DuplicateHandling.ERROR):
        return Collection(name="MOD09GQ", version="006", duplicate_handling=mode)

    return _make


def make_granule(granule_id="G1", files=None, *, declare_checksums=True):
    """Granule whose files live under /data on the provider. ``files`` maps name -> bytes."""
    files = files or {}
    return Granule.from_dict(
        {
            "granuleId": granule_id,
            "dataType": "MOD09GQ",
            "version": "006",
            "files": [
                {
                    "name": name,
                    "path": "/data",
                    "fileSize": len(data),
                    **({"checksumType": "md5", "checksum": md5(data)} if declare_checksums else {}),
                }
                for name, data in files.items()
            ],
        }
    )


@pytest.fixture
def granule_factory():
    return make_granule


@pytest.fixture
def fake_adapter():
    """The FakeAdapter class, for tests to configure per case."""
    return FakeAdapter
