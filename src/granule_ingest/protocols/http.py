"""
HTTP/HTTPS adapter.

Downloads stream through ``aiohttp`` into ``aiofiles`` chunk by chunk.
Directory listings are read from the anchor links of an HTML index page.
"""

from __future__ import annotations

import asyncio
import posixpath
from dataclasses import dataclass
from html.parser import HTMLParser
from typing import AsyncIterator
from urllib.parse import unquote, urljoin, urlparse

import aiofiles
import aiohttp

from granule_ingest.exceptions import (
    ConnectionRefused,
    ConnectionTimeout,
    RemoteFileNotFound,
    RemoteResourceError,
    TransientIOError,
)
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
from granule_ingest.utils.logging import get_logger

logger = get_logger("granule_ingest.protocols.http")

# Statuses meaning the provider rejected our credentials
REFUSED_STATUSES = frozenset({401, 403, 407})


def normalize_http_error(error: BaseException, *, context: str = "") -> RemoteResourceError:
    message = f"{context}: {error}" if context else str(error)
    if isinstance(error, aiohttp.ClientResponseError):
        details = {"status": error.status}
        if error.status == 404:
            return RemoteFileNotFound(message, details=details)
        if error.status in REFUSED_STATUSES:
            return ConnectionRefused(message, details=details)
        if error.status == 408:
            return ConnectionTimeout(message, details=details)
        return TransientIOError(message, details=details)
    if isinstance(error, aiohttp.ClientConnectorError):
        if isinstance(error.os_error, (TimeoutError, asyncio.TimeoutError)):
            return ConnectionTimeout(message, details={"cause": type(error).__name__})
        return ConnectionRefused(message, details={"cause": type(error).__name__})
    if isinstance(error, (aiohttp.ServerTimeoutError, asyncio.TimeoutError)):
        return ConnectionTimeout(message, details={"cause": type(error).__name__})
    if isinstance(error, aiohttp.ClientError):
        return TransientIOError(message, details={"cause": type(error).__name__})
    return normalize_transport_error(error, context=context)


class _LinkParser(HTMLParser):
    """Collect href targets of <a> tags."""

    def __init__(self) -> None:
        super().__init__()
        self.links: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag.lower() != "a":
            return
        for name, value in attrs:
            if name.lower() == "href" and value:
                self.links.append(value)


def parse_index_links(html: str, base_url: str) -> list[str]:
    """
    Return the file names linked from an index page at ``base_url``.

    Sub-directories, parent links, query/sort links and links leaving the
    directory are dropped.
    """
    parser = _LinkParser()
    parser.feed(html)
    base = urlparse(base_url if base_url.endswith("/") else base_url + "/")

    names: list[str] = []
    for href in parser.links:
        if href.startswith(("?", "#", "mailto:")):
            continue
        target = urlparse(urljoin(base.geturl(), href))
        if target.netloc != base.netloc or not target.path.startswith(base.path):
            continue
        relative = target.path[len(base.path):]
        if not relative or "/" in relative:
            continue
        name = unquote(relative)
        if name not in names:
            names.append(name)
    return names


@dataclass
class HTTPSession:
    provider: Provider
    base_url: str
    client: aiohttp.ClientSession

    @property
    def closed(self) -> bool:
        return self.client.closed

    def url_for(self, path: str) -> str:
        return self.base_url + posixpath.normpath("/" + path.lstrip("/"))


class HTTPAdapter:
    """
    Fetch files from an HTTP or HTTPS provider.

    ``connect`` sends a HEAD request to the provider root (or its path
    prefix) so DNS, connection and credential failures surface there rather
    than on the first transfer. Any other status, 404 and 405 included, counts
    as reachable. Pass ``check_reachable=False`` to skip the request.
    """

    def __init__(self, protocol: ProviderProtocol = ProviderProtocol.HTTP, *, chunk_size: int = CHUNK_SIZE, check_reachable: bool = True):
        self.protocol = protocol
        self.chunk_size = chunk_size
        self.check_reachable = check_reachable

    def base_url(self, provider: Provider) -> str:
        host = provider.host
        if "://" in host:
            host = urlparse(host).netloc
        port = f":{provider.port}" if provider.port else ""
        return f"{self.protocol.value}://{host}{port}"

    async def connect(self, provider: Provider) -> HTTPSession:
        auth = None
        if provider.username:
            auth = aiohttp.BasicAuth(provider.username, provider.password or "")
        timeout = aiohttp.ClientTimeout(total=None, connect=provider.connect_timeout_s, sock_read=provider.connect_timeout_s)
        client = aiohttp.ClientSession(auth=auth, timeout=timeout, raise_for_status=True)
        session = HTTPSession(provider=provider, base_url=self.base_url(provider), client=client)
        if self.check_reachable:
            try:
                await self._head_root(session)
            except BaseException:
                await client.close()
                raise
        return session

    async def _head_root(self, session: HTTPSession) -> None:
        url = session.url_for(session.provider.path_prefix or "/")
        with transport_errors(f"HTTP connect to {url}", normalize_http_error):
            async with session.client.head(url, raise_for_status=False) as response:
                if response.status in REFUSED_STATUSES:
                    response.raise_for_status()
        logger.debug(f"Connected to {url} (HTTP {response.status})")

    async def list(self, session: HTTPSession, path: str) -> AsyncIterator[RemoteFile]:
        directory = "/".join(p.strip("/") for p in (session.provider.path_prefix, path) if p and p.strip("/"))
        url = session.url_for(directory).rstrip("/") + "/"
        with transport_errors(f"HTTP list {url}", normalize_http_error):
            async with session.client.get(url) as response:
                html = await response.text()
        for name in parse_index_links(html, url):
            yield RemoteFile(path=path, name=name)

    async def fetch(self, session: HTTPSession, remote: RemoteFile, target: StagingTarget) -> FetchedFile:
        url = session.url_for(session.provider.remote_path(remote.path, remote.name))
        local_path = target.local_path
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with transport_errors(f"HTTP fetch {url}", normalize_http_error):
                async with session.client.get(url) as response:
                    async with aiofiles.open(part_path(local_path), "wb") as f:
                        async for chunk in response.content.iter_chunked(self.chunk_size):
                            await f.write(chunk)
        except BaseException:
            discard_partial(local_path)
            raise
        size = finish_download(local_path)
        logger.debug(f"Downloaded {url} ({size} bytes)")
        return FetchedFile(name=remote.name, size=size, local_path=local_path)

    async def teardown(self, session: HTTPSession | None) -> None:
        if session is None or session.closed:
            return
        await session.client.close()
