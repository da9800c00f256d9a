"""
S3 object store for the staging area.

Provides a lazily-created boto3 client with credential management.
Supports AWS credentials from config, environment, or IAM role.

Config example:
    storage:
      type: s3
      region: us-east-1
      access_key_id: AKIA...   # Optional, uses env/IAM if not set
      secret_access_key: ...   # Optional
      session_token: ...       # Optional (for temp creds)
      endpoint_url: ...        # Optional (for S3-compatible services)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator, Optional

import boto3
from botocore.exceptions import ClientError

from granule_ingest.models import Checksum, StoredObject
from granule_ingest.storage.base import checksum_from_metadata, checksum_metadata
from granule_ingest.utils.logging import get_logger

logger = get_logger("granule_ingest.storage.s3")

NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")

# Objects above this size are copied with the managed (multipart) copy
SINGLE_COPY_LIMIT = 5 * 1024**3


def is_not_found(error: Exception) -> bool:
    """Whether a botocore error means the object or bucket does not exist."""
    if not isinstance(error, ClientError):
        return False
    code = error.response.get("Error", {}).get("Code")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code in NOT_FOUND_CODES or status == 404


class S3ObjectStore:
    """S3-backed staging area."""

    def __init__(self, name: str = "s3", config: dict[str, Any] | None = None, *, client: Any = None):
        self.name = name
        self.config = config or {}
        self._client = client

    @property
    def region(self) -> Optional[str]:
        return self.config.get("region")

    @property
    def endpoint_url(self) -> Optional[str]:
        """Custom endpoint URL (for S3-compatible services like MinIO)."""
        return self.config.get("endpoint_url")

    def client_kwargs(self) -> dict[str, Any]:
        """Build kwargs for boto3 client initialization."""
        kwargs: dict[str, Any] = {}
        if self.region:
            kwargs["region_name"] = self.region
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url

        # Explicit credentials from config (override env/IAM)
        access_key = self.config.get("access_key_id")
        secret_key = self.config.get("secret_access_key")
        session_token = self.config.get("session_token")
        if access_key and secret_key:
            kwargs["aws_access_key_id"] = access_key
            kwargs["aws_secret_access_key"] = secret_key
            if session_token:
                kwargs["aws_session_token"] = session_token
        return kwargs

    @property
    def client(self) -> Any:
        """boto3 S3 client (lazy initialization)."""
        if self._client is None:
            self._client = boto3.client("s3", **self.client_kwargs())
        return self._client

    def head(self, bucket: str, key: str) -> StoredObject | None:
        try:
            response = self.client.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return StoredObject(
            bucket=bucket,
            key=key,
            size=int(response.get("ContentLength", 0)),
            checksum=checksum_from_metadata(response.get("Metadata")),
        )

    def exists(self, bucket: str, key: str) -> bool:
        return self.head(bucket, key) is not None

    def put_file(self, local_path: str | Path, bucket: str, key: str, *, checksum: Checksum | None = None) -> int:
        extra_args = {"Metadata": checksum_metadata(checksum)} if checksum else None
        self.client.upload_file(str(local_path), bucket, key, ExtraArgs=extra_args)
        return Path(local_path).stat().st_size

    def copy(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        *,
        checksum: Checksum | None = None,
    ) -> int:
        source = {"Bucket": src_bucket, "Key": src_key}
        head = self.client.head_object(**source)
        size = int(head.get("ContentLength", 0))
        metadata = checksum_metadata(checksum) if checksum else head.get("Metadata", {})

        if size > SINGLE_COPY_LIMIT:
            self.client.copy(
                source,
                dst_bucket,
                dst_key,
                ExtraArgs={"Metadata": metadata, "MetadataDirective": "REPLACE"},
            )
        else:
            self.client.copy_object(
                Bucket=dst_bucket,
                Key=dst_key,
                CopySource=source,
                Metadata=metadata,
                MetadataDirective="REPLACE",
            )
        return size

    def move(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        *,
        checksum: Checksum | None = None,
    ) -> int:
        size = self.copy(src_bucket, src_key, dst_bucket, dst_key, checksum=checksum)
        self.delete(src_bucket, src_key)
        return size

    def delete(self, bucket: str, key: str) -> None:
        self.client.delete_object(Bucket=bucket, Key=key)

    def iter_chunks(self, bucket: str, key: str, chunk_size: int = 1024 * 1024) -> Iterator[bytes]:
        response = self.client.get_object(Bucket=bucket, Key=key)
        body = response["Body"]
        try:
            yield from body.iter_chunks(chunk_size)
        finally:
            body.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"
