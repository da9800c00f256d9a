"""
S3 adapter.

The provider's ``host`` is the source bucket. When the staging area is the
same S3 endpoint, a fetch is a server-side copy into a temporary key of the
staging bucket and no bytes pass through this process; otherwise the object
is downloaded to the local work directory.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator

import boto3
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from granule_ingest.exceptions import (
    ConnectionRefused,
    ConnectionTimeout,
    RemoteFileNotFound,
    RemoteResourceError,
    TransientIOError,
)
from granule_ingest.models import FetchedFile, Provider, ProviderProtocol, RemoteFile
from granule_ingest.protocols.base import (
    StagingTarget,
    discard_partial,
    finish_download,
    normalize_transport_error,
    part_path,
    transport_errors,
)
from granule_ingest.storage.s3 import NOT_FOUND_CODES, S3ObjectStore
from granule_ingest.utils.async_utils import CancelFlag, run_blocking
from granule_ingest.utils.logging import get_logger

logger = get_logger("granule_ingest.protocols.s3")

DENIED_CODES = ("AccessDenied", "403", "InvalidAccessKeyId", "SignatureDoesNotMatch", "ExpiredToken")


def normalize_s3_error(error: BaseException, *, context: str = "") -> RemoteResourceError:
    message = f"{context}: {error}" if context else str(error)
    details = {"cause": type(error).__name__}
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code")
        details["code"] = code
        if code in NOT_FOUND_CODES or code == "NoSuchBucket":
            return RemoteFileNotFound(message, details=details)
        if code in DENIED_CODES:
            return ConnectionRefused(message, details=details)
        return TransientIOError(message, details=details)
    if isinstance(error, (EndpointConnectionError, NoCredentialsError)):
        return ConnectionRefused(message, details=details)
    if isinstance(error, (ConnectTimeoutError, ReadTimeoutError)):
        return ConnectionTimeout(message, details=details)
    return normalize_transport_error(error, context=context)


@dataclass
class S3Session:
    provider: Provider
    client: Any
    closed: bool = False

    @property
    def bucket(self) -> str:
        return self.provider.host

    def key_for(self, remote: RemoteFile) -> str:
        return self.provider.remote_path(remote.path, remote.name).lstrip("/")


class S3Adapter:
    """Fetch objects from an S3 provider."""

    protocol = ProviderProtocol.S3

    def __init__(self, client_factory: Any = None):
        self._client_factory = client_factory or boto3.client

    def _connect(self, provider: Provider, *, cancel: CancelFlag) -> Any:
        kwargs: dict[str, Any] = {}
        if provider.region:
            kwargs["region_name"] = provider.region
        if provider.endpoint_url:
            kwargs["endpoint_url"] = provider.endpoint_url
        if provider.username and provider.password:
            kwargs["aws_access_key_id"] = provider.username
            kwargs["aws_secret_access_key"] = provider.password
        client = self._client_factory("s3", **kwargs)
        client.head_bucket(Bucket=provider.host)
        return client

    async def connect(self, provider: Provider) -> S3Session:
        with transport_errors(f"S3 connect to bucket {provider.host}", normalize_s3_error):
            client = await run_blocking(self._connect, provider)
        return S3Session(provider=provider, client=client)

    async def list(self, session: S3Session, path: str) -> AsyncIterator[RemoteFile]:
        prefix = session.provider.remote_path(path, "").lstrip("/")
        paginator = session.client.get_paginator("list_objects_v2")
        pages = paginator.paginate(Bucket=session.bucket, Prefix=prefix, Delimiter="/")

        def next_page(*, cancel: CancelFlag) -> dict[str, Any] | None:
            return next(iterator, None)

        with transport_errors(f"S3 list s3://{session.bucket}/{prefix}", normalize_s3_error):
            iterator = iter(pages)
            while True:
                page = await run_blocking(next_page)
                if page is None:
                    break
                for obj in page.get("Contents", []):
                    name = obj["Key"][len(prefix):]
                    if not name:
                        continue
                    yield RemoteFile(path=path, name=name, size=int(obj.get("Size", 0)))

    def same_storage(self, session: S3Session, store: Any) -> bool:
        """Whether the staging store can server-side copy from this provider."""
        return isinstance(store, S3ObjectStore) and store.endpoint_url == session.provider.endpoint_url

    def _download(self, client: Any, bucket: str, key: str, local_path: Path, *, cancel: CancelFlag) -> int:
        local_path.parent.mkdir(parents=True, exist_ok=True)

        def progress(transferred: int) -> None:
            cancel.check()

        try:
            client.download_file(bucket, key, str(part_path(local_path)), Callback=progress)
        except BaseException:
            discard_partial(local_path)
            raise
        return finish_download(local_path)

    def _server_side_copy(self, store: S3ObjectStore, src_bucket: str, src_key: str, target: StagingTarget, *, cancel: CancelFlag) -> int:
        return store.copy(src_bucket, src_key, target.bucket, target.temp_key)

    async def fetch(self, session: S3Session, remote: RemoteFile, target: StagingTarget) -> FetchedFile:
        key = session.key_for(remote)
        source = f"s3://{session.bucket}/{key}"
        if self.same_storage(session, target.store):
            with transport_errors(f"S3 copy {source}", normalize_s3_error):
                size = await run_blocking(self._server_side_copy, target.store, session.bucket, key, target)
            logger.debug(f"Server-side copied {source} to s3://{target.bucket}/{target.temp_key}")
            return FetchedFile(name=remote.name, size=size, staged_bucket=target.bucket, staged_key=target.temp_key)

        with transport_errors(f"S3 fetch {source}", normalize_s3_error):
            size = await run_blocking(self._download, session.client, session.bucket, key, target.local_path)
        return FetchedFile(name=remote.name, size=size, local_path=target.local_path)

    async def teardown(self, session: S3Session | None) -> None:
        if session is None or session.closed:
            return
        session.closed = True
        close = getattr(session.client, "close", None)
        if close is not None:
            close()
