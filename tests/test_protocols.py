"""
Tests for protocol adapters, error normalization and the adapter registry.
"""

import asyncio
import ftplib
import socket
import stat
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import aiohttp
import paramiko
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer as AiohttpTestServer
from botocore.exceptions import ClientError, EndpointConnectionError

from granule_ingest.exceptions import (
    ConfigurationError,
    ConnectionRefused,
    ConnectionTimeout,
    RemoteFileNotFound,
    TransientIOError,
    UnsupportedProtocolError,
)
from granule_ingest.models import Provider, ProviderProtocol, RemoteFile
from granule_ingest.protocols import (
    FTPAdapter,
    HTTPAdapter,
    S3Adapter,
    SFTPAdapter,
    StagingTarget,
    build_default_adapter_registry,
    normalize_transport_error,
    resolve_adapter,
)
from granule_ingest.protocols.base import part_path, transport_errors
from granule_ingest.protocols.ftp import normalize_ftp_error
from granule_ingest.protocols.http import normalize_http_error, parse_index_links
from granule_ingest.protocols.s3 import normalize_s3_error
from granule_ingest.protocols.sftp import normalize_sftp_error
from granule_ingest.storage import S3ObjectStore


def make_provider(protocol, host="example.com", **kwargs):
    return Provider(id="prov", protocol=protocol, host=host, **kwargs)


def make_target(tmp_path, name="a.hdf", store=None):
    return StagingTarget(
        local_path=tmp_path / "work" / name,
        bucket="private",
        temp_key=f"staging/{name}.tmp",
        store=store or MagicMock(),
    )


class TestNormalizeTransportError:
    """Tests for mapping generic errors to the engine taxonomy."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (ConnectionRefusedError(), ConnectionRefused),
            (OSError("connect ECONNREFUSED 127.0.0.1:21"), ConnectionRefused),
            (TimeoutError(), ConnectionTimeout),
            (socket.timeout(), ConnectionTimeout),
            (FileNotFoundError(), RemoteFileNotFound),
            (socket.gaierror(), ConnectionRefused),
            (ConnectionResetError(), TransientIOError),
            (EOFError(), TransientIOError),
        ],
    )
    def test_mapping(self, error, expected):
        assert isinstance(normalize_transport_error(error), expected)

    def test_context_in_message(self):
        error = normalize_transport_error(TimeoutError("slow"), context="FTP fetch /a")
        assert str(error) == "FTP fetch /a: slow"
        assert error.details["cause"] == "TimeoutError"

    def test_engine_errors_pass_through(self):
        original = RemoteFileNotFound("gone")
        assert normalize_transport_error(original) is original

    def test_transport_errors_context(self):
        with pytest.raises(ConnectionRefused) as exc_info:
            with transport_errors("connect"):
                raise ConnectionRefusedError("refused")
        assert isinstance(exc_info.value.__cause__, ConnectionRefusedError)

    def test_transport_errors_leaves_engine_errors(self):
        with pytest.raises(ConfigurationError):
            with transport_errors("connect"):
                raise ConfigurationError("bad")


class TestFTPAdapter:
    """Tests for FTPAdapter against a mocked ftplib client."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (ftplib.error_perm("530 Login incorrect."), ConnectionRefused),
            (ftplib.error_perm("550 No such file or directory."), RemoteFileNotFound),
            (ftplib.error_temp("421 Too many users"), TransientIOError),
            (ConnectionRefusedError(), ConnectionRefused),
        ],
    )
    def test_normalize(self, error, expected):
        assert isinstance(normalize_ftp_error(error), expected)

    @pytest.mark.asyncio
    async def test_connect_and_teardown(self):
        provider = make_provider(ProviderProtocol.FTP, username="user", password="pw", port=2121)
        with patch("granule_ingest.protocols.ftp.ftplib.FTP") as ftp_cls:
            client = ftp_cls.return_value
            adapter = FTPAdapter()
            session = await adapter.connect(provider)
            client.connect.assert_called_once_with("example.com", 2121)
            client.login.assert_called_once_with("user", "pw")

            await adapter.teardown(session)
            await adapter.teardown(session)
            client.quit.assert_called_once()

    @pytest.mark.asyncio
    async def test_anonymous_login(self):
        with patch("granule_ingest.protocols.ftp.ftplib.FTP") as ftp_cls:
            await FTPAdapter().connect(make_provider(ProviderProtocol.FTP))
            ftp_cls.return_value.login.assert_called_once_with("anonymous", "")

    @pytest.mark.asyncio
    async def test_login_refused(self):
        with patch("granule_ingest.protocols.ftp.ftplib.FTP") as ftp_cls:
            ftp_cls.return_value.login.side_effect = ftplib.error_perm("530 Login incorrect.")
            with pytest.raises(ConnectionRefused):
                await FTPAdapter().connect(make_provider(ProviderProtocol.FTP))
            ftp_cls.return_value.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_teardown_none(self):
        await FTPAdapter().teardown(None)

    @pytest.mark.asyncio
    async def test_list_skips_directories(self):
        provider = make_provider(ProviderProtocol.FTP, path_prefix="/pub")
        with patch("granule_ingest.protocols.ftp.ftplib.FTP") as ftp_cls:
            client = ftp_cls.return_value
            client.mlsd.return_value = iter(
                [
                    ("a.hdf", {"type": "file", "size": "10"}),
                    ("sub", {"type": "dir"}),
                    ("a.hdf.met", {"type": "file", "size": "2"}),
                ]
            )
            adapter = FTPAdapter()
            session = await adapter.connect(provider)
            files = [f async for f in adapter.list(session, "data")]

        assert client.mlsd.call_args.args[0] == "/pub/data"
        assert files == [RemoteFile(path="data", name="a.hdf", size=10), RemoteFile(path="data", name="a.hdf.met", size=2)]

    @pytest.mark.asyncio
    async def test_list_falls_back_to_nlst(self):
        with patch("granule_ingest.protocols.ftp.ftplib.FTP") as ftp_cls:
            client = ftp_cls.return_value
            client.mlsd.side_effect = ftplib.error_perm("500 Unknown command")
            client.nlst.return_value = ["/data/a.hdf"]
            adapter = FTPAdapter()
            session = await adapter.connect(make_provider(ProviderProtocol.FTP))
            files = [f async for f in adapter.list(session, "/data")]

        assert [f.name for f in files] == ["a.hdf"]

    @pytest.mark.asyncio
    async def test_fetch(self, tmp_path):
        def retrbinary(cmd, callback, blocksize):
            assert cmd == "RETR /data/a.hdf"
            callback(b"abc")
            callback(b"def")

        with patch("granule_ingest.protocols.ftp.ftplib.FTP") as ftp_cls:
            ftp_cls.return_value.retrbinary.side_effect = retrbinary
            adapter = FTPAdapter()
            session = await adapter.connect(make_provider(ProviderProtocol.FTP))
            target = make_target(tmp_path)
            fetched = await adapter.fetch(session, RemoteFile(path="/data", name="a.hdf"), target)

        assert fetched.size == 6
        assert fetched.local_path.read_bytes() == b"abcdef"
        assert not part_path(target.local_path).exists()

    @pytest.mark.asyncio
    async def test_fetch_missing_discards_partial(self, tmp_path):
        def retrbinary(cmd, callback, blocksize):
            callback(b"abc")
            raise ftplib.error_perm("550 No such file")

        with patch("granule_ingest.protocols.ftp.ftplib.FTP") as ftp_cls:
            ftp_cls.return_value.retrbinary.side_effect = retrbinary
            adapter = FTPAdapter()
            session = await adapter.connect(make_provider(ProviderProtocol.FTP))
            target = make_target(tmp_path)
            with pytest.raises(RemoteFileNotFound):
                await adapter.fetch(session, RemoteFile(path="/data", name="a.hdf"), target)

        assert not part_path(target.local_path).exists()
        assert not target.local_path.exists()


def sftp_attr(name, mode, size=0):
    attr = paramiko.SFTPAttributes()
    attr.filename = name
    attr.st_mode = mode
    attr.st_size = size
    attr.st_mtime = 1700000000
    return attr


class TestSFTPAdapter:
    """Tests for SFTPAdapter against mocked paramiko objects."""

    def test_normalize(self):
        assert isinstance(normalize_sftp_error(paramiko.AuthenticationException("denied")), ConnectionRefused)
        assert isinstance(normalize_sftp_error(paramiko.SSHException("reset")), TransientIOError)
        assert isinstance(normalize_sftp_error(FileNotFoundError(2, "missing")), RemoteFileNotFound)

    @pytest.mark.asyncio
    async def test_session_lifecycle(self, tmp_path):
        provider = make_provider(ProviderProtocol.SFTP, username="user", password="pw", path_prefix="/pub")
        with patch("granule_ingest.protocols.sftp.paramiko.Transport") as transport_cls, patch(
            "granule_ingest.protocols.sftp.paramiko.SFTPClient.from_transport"
        ) as from_transport:
            client = from_transport.return_value
            client.listdir_attr.return_value = [
                sftp_attr("a.hdf", stat.S_IFREG | 0o644, 10),
                sftp_attr("browse", stat.S_IFDIR | 0o755),
            ]

            def get(remote_path, local_path, callback):
                assert remote_path == "/pub/data/a.hdf"
                Path(local_path).write_bytes(b"0123456789")
                callback(10, 10)

            client.get.side_effect = get

            adapter = SFTPAdapter()
            session = await adapter.connect(provider)
            transport_cls.assert_called_once_with(("example.com", 22))
            transport_cls.return_value.connect.assert_called_once_with(username="user", password="pw", pkey=None)

            files = [f async for f in adapter.list(session, "data")]
            assert [f.name for f in files] == ["a.hdf"]
            assert client.listdir_attr.call_args.args[0] == "/pub/data"

            fetched = await adapter.fetch(session, files[0], make_target(tmp_path))
            assert fetched.size == 10

            await adapter.teardown(session)
            await adapter.teardown(session)
            client.close.assert_called_once()
            transport_cls.return_value.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancelled_fetch_finishes_before_teardown(self, tmp_path):
        """Test a cancelled transfer thread stops before the client is closed under it."""
        events = []
        started = threading.Event()
        with patch("granule_ingest.protocols.sftp.paramiko.Transport"), patch(
            "granule_ingest.protocols.sftp.paramiko.SFTPClient.from_transport"
        ) as from_transport:
            client = from_transport.return_value

            def get(remote_path, local_path, callback):
                events.append("get-start")
                started.set()
                try:
                    for transferred in range(1, 500):
                        Path(local_path).write_bytes(b"x" * transferred)
                        callback(transferred, 500)
                        time.sleep(0.01)
                finally:
                    events.append("get-end")

            client.get.side_effect = get
            client.close.side_effect = lambda: events.append("client-close")

            adapter = SFTPAdapter()
            session = await adapter.connect(make_provider(ProviderProtocol.SFTP))
            target = make_target(tmp_path)
            task = asyncio.create_task(adapter.fetch(session, RemoteFile(path="data", name="a.hdf"), target))
            await asyncio.to_thread(started.wait, 5)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            await adapter.teardown(session)

        assert events == ["get-start", "get-end", "client-close"]
        assert not list(tmp_path.rglob("*.part"))

    @pytest.mark.asyncio
    async def test_auth_failure(self):
        with patch("granule_ingest.protocols.sftp.paramiko.Transport") as transport_cls:
            transport_cls.return_value.connect.side_effect = paramiko.AuthenticationException("denied")
            with pytest.raises(ConnectionRefused):
                await SFTPAdapter().connect(make_provider(ProviderProtocol.SFTP))
            transport_cls.return_value.close.assert_called_once()


class TestParseIndexLinks:
    """Tests for reading file names from an HTML index page."""

    def test_apache_style_index(self):
        html = """
        <html><body>
          <a href="?C=N;O=D">Name</a>
          <a href="/pub/">Parent Directory</a>
          <a href="a.hdf">a.hdf</a>
          <a href="a.hdf.met">a.hdf.met</a>
          <a href="browse/">browse/</a>
          <a href="http://other.example.com/x.hdf">elsewhere</a>
          <a href="/pub/data/b%20c.jpg">b c.jpg</a>
          <a href="a.hdf">duplicate</a>
        </body></html>
        """
        names = parse_index_links(html, "http://example.com/pub/data")
        assert names == ["a.hdf", "a.hdf.met", "b c.jpg"]

    def test_empty_page(self):
        assert parse_index_links("<html></html>", "http://example.com/") == []


class TestHTTPAdapter:
    """Tests for HTTPAdapter against a local aiohttp server."""

    @pytest.fixture
    def app(self):
        async def index(request):
            return web.Response(text='<a href="a.hdf">a.hdf</a><a href="sub/">sub/</a>', content_type="text/html")

        async def granule(request):
            return web.Response(body=b"x" * 5000)

        async def private(request):
            raise web.HTTPForbidden()

        async def secure(request):
            if request.headers.get("Authorization") != aiohttp.BasicAuth("user", "pw").encode():
                raise web.HTTPUnauthorized()
            return web.Response(text="ok")

        application = web.Application()
        application.router.add_get("/pub/data/", index)
        application.router.add_get("/pub/data/a.hdf", granule)
        application.router.add_get("/pub/private/a.hdf", private)
        application.router.add_get("/secure", secure)
        return application

    def test_normalize(self):
        def response_error(status):
            return aiohttp.ClientResponseError(MagicMock(), (), status=status, message="")

        assert isinstance(normalize_http_error(response_error(404)), RemoteFileNotFound)
        assert isinstance(normalize_http_error(response_error(401)), ConnectionRefused)
        assert isinstance(normalize_http_error(response_error(408)), ConnectionTimeout)
        assert isinstance(normalize_http_error(response_error(503)), TransientIOError)
        assert normalize_http_error(response_error(404)).details == {"status": 404}

    def test_base_url(self):
        adapter = HTTPAdapter(ProviderProtocol.HTTPS)
        assert adapter.base_url(make_provider(ProviderProtocol.HTTPS, host="https://data.example.com")) == "https://data.example.com"
        assert adapter.base_url(make_provider(ProviderProtocol.HTTPS, port=8443)) == "https://example.com:8443"

    @pytest.mark.asyncio
    async def test_list_and_fetch(self, app, tmp_path):
        async with AiohttpTestServer(app, host="127.0.0.1") as server:
            provider = make_provider(ProviderProtocol.HTTP, host="127.0.0.1", port=server.port, path_prefix="/pub")
            adapter = HTTPAdapter(ProviderProtocol.HTTP, chunk_size=1024)
            session = await adapter.connect(provider)
            try:
                files = [f async for f in adapter.list(session, "data")]
                assert files == [RemoteFile(path="data", name="a.hdf")]

                fetched = await adapter.fetch(session, files[0], make_target(tmp_path))
                assert fetched.size == 5000
                assert fetched.local_path.read_bytes() == b"x" * 5000
            finally:
                await adapter.teardown(session)
            assert session.closed

    @pytest.mark.asyncio
    async def test_connect_checks_credentials(self, app):
        """Test bad credentials fail at connect rather than on the first transfer."""
        async with AiohttpTestServer(app, host="127.0.0.1") as server:
            adapter = HTTPAdapter(ProviderProtocol.HTTP)
            rejected = make_provider(
                ProviderProtocol.HTTP, host="127.0.0.1", port=server.port, path_prefix="/secure", username="user", password="bad"
            )
            with pytest.raises(ConnectionRefused) as exc_info:
                await adapter.connect(rejected)
            assert exc_info.value.details["status"] == 401

            accepted = make_provider(
                ProviderProtocol.HTTP, host="127.0.0.1", port=server.port, path_prefix="/secure", username="user", password="pw"
            )
            session = await adapter.connect(accepted)
            await adapter.teardown(session)

    @pytest.mark.asyncio
    async def test_connect_unreachable_host(self):
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        provider = make_provider(ProviderProtocol.HTTP, host="127.0.0.1", port=port)

        with pytest.raises(ConnectionRefused):
            await HTTPAdapter(ProviderProtocol.HTTP).connect(provider)

        session = await HTTPAdapter(ProviderProtocol.HTTP, check_reachable=False).connect(provider)
        await HTTPAdapter(ProviderProtocol.HTTP).teardown(session)
        assert session.closed

    @pytest.mark.asyncio
    async def test_fetch_errors(self, app, tmp_path):
        async with AiohttpTestServer(app, host="127.0.0.1") as server:
            provider = make_provider(ProviderProtocol.HTTP, host="127.0.0.1", port=server.port, path_prefix="/pub")
            adapter = HTTPAdapter(ProviderProtocol.HTTP)
            session = await adapter.connect(provider)
            try:
                target = make_target(tmp_path)
                with pytest.raises(RemoteFileNotFound):
                    await adapter.fetch(session, RemoteFile(path="data", name="missing.hdf"), target)
                assert not part_path(target.local_path).exists()
                with pytest.raises(ConnectionRefused):
                    await adapter.fetch(session, RemoteFile(path="private", name="a.hdf"), target)
            finally:
                await adapter.teardown(session)


class TestS3Adapter:
    """Tests for S3Adapter against a mocked boto3 client."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject"), RemoteFileNotFound),
            (ClientError({"Error": {"Code": "NoSuchBucket"}}, "HeadBucket"), RemoteFileNotFound),
            (ClientError({"Error": {"Code": "AccessDenied"}}, "GetObject"), ConnectionRefused),
            (ClientError({"Error": {"Code": "SlowDown"}}, "GetObject"), TransientIOError),
            (EndpointConnectionError(endpoint_url="http://localhost:1"), ConnectionRefused),
        ],
    )
    def test_normalize(self, error, expected):
        assert isinstance(normalize_s3_error(error), expected)

    def make_adapter(self, client):
        factory = MagicMock(return_value=client)
        return S3Adapter(client_factory=factory), factory

    @pytest.mark.asyncio
    async def test_connect_checks_bucket(self):
        client = MagicMock()
        adapter, factory = self.make_adapter(client)
        provider = make_provider(ProviderProtocol.S3, host="source-bucket", region="us-west-2")

        await adapter.connect(provider)

        factory.assert_called_once_with("s3", region_name="us-west-2")
        client.head_bucket.assert_called_once_with(Bucket="source-bucket")

    @pytest.mark.asyncio
    async def test_connect_missing_bucket(self):
        client = MagicMock()
        client.head_bucket.side_effect = ClientError({"Error": {"Code": "NoSuchBucket"}}, "HeadBucket")
        adapter, _ = self.make_adapter(client)
        with pytest.raises(RemoteFileNotFound):
            await adapter.connect(make_provider(ProviderProtocol.S3, host="missing"))

    @pytest.mark.asyncio
    async def test_list_pages(self):
        client = MagicMock()
        client.get_paginator.return_value.paginate.return_value = [
            {"Contents": [{"Key": "data/a.hdf", "Size": 10}, {"Key": "data/", "Size": 0}]},
            {"Contents": [{"Key": "data/b.hdf", "Size": 20}]},
        ]
        adapter, _ = self.make_adapter(client)
        session = await adapter.connect(make_provider(ProviderProtocol.S3, host="source-bucket"))

        files = [f async for f in adapter.list(session, "data")]

        client.get_paginator.return_value.paginate.assert_called_once_with(
            Bucket="source-bucket", Prefix="data/", Delimiter="/"
        )
        assert [(f.name, f.size) for f in files] == [("a.hdf", 10), ("b.hdf", 20)]

    @pytest.mark.asyncio
    async def test_fetch_downloads_for_other_stores(self, tmp_path):
        client = MagicMock()

        def download_file(bucket, key, path, Callback):
            assert (bucket, key) == ("source-bucket", "data/a.hdf")
            Path(path).write_bytes(b"abc")
            Callback(3)

        client.download_file.side_effect = download_file
        adapter, _ = self.make_adapter(client)
        session = await adapter.connect(make_provider(ProviderProtocol.S3, host="source-bucket"))

        fetched = await adapter.fetch(session, RemoteFile(path="data", name="a.hdf"), make_target(tmp_path))

        assert fetched.local_path.read_bytes() == b"abc"
        assert fetched.staged_key is None

    @pytest.mark.asyncio
    async def test_fetch_server_side_copy(self, tmp_path):
        """Test a fetch into an S3 staging store copies without downloading."""
        source_client = MagicMock()
        adapter, _ = self.make_adapter(source_client)
        session = await adapter.connect(make_provider(ProviderProtocol.S3, host="source-bucket"))

        staging_client = MagicMock()
        staging_client.head_object.return_value = {"ContentLength": 42, "Metadata": {}}
        store = S3ObjectStore(client=staging_client)
        target = make_target(tmp_path, store=store)

        fetched = await adapter.fetch(session, RemoteFile(path="data", name="a.hdf"), target)

        assert fetched.local_path is None
        assert (fetched.staged_bucket, fetched.staged_key, fetched.size) == ("private", "staging/a.hdf.tmp", 42)
        assert staging_client.copy_object.call_args.kwargs["CopySource"] == {"Bucket": "source-bucket", "Key": "data/a.hdf"}
        source_client.download_file.assert_not_called()

    @pytest.mark.asyncio
    async def test_teardown_closes_client(self):
        client = MagicMock()
        adapter, _ = self.make_adapter(client)
        session = await adapter.connect(make_provider(ProviderProtocol.S3, host="b"))
        await adapter.teardown(session)
        await adapter.teardown(session)
        client.close.assert_called_once()


class TestAdapterRegistry:
    """Tests for selecting adapters by protocol."""

    def test_default_registry_covers_all_protocols(self):
        assert set(build_default_adapter_registry()) == set(ProviderProtocol)

    @pytest.mark.parametrize(
        "protocol,adapter_class",
        [
            (ProviderProtocol.FTP, FTPAdapter),
            (ProviderProtocol.SFTP, SFTPAdapter),
            (ProviderProtocol.HTTP, HTTPAdapter),
            (ProviderProtocol.HTTPS, HTTPAdapter),
            (ProviderProtocol.S3, S3Adapter),
        ],
    )
    def test_resolve(self, protocol, adapter_class):
        adapter = resolve_adapter(make_provider(protocol))
        assert isinstance(adapter, adapter_class)
        assert adapter.protocol == protocol

    def test_unregistered_protocol(self):
        with pytest.raises(UnsupportedProtocolError):
            resolve_adapter(make_provider(ProviderProtocol.FTP), registry={})
