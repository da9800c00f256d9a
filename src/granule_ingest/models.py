"""
Granule, file, provider and collection records.

Records are read from and written back to the workflow message shape, which
uses camelCase keys. Keys the engine does not interpret are kept in ``extra``
and round-tripped unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import Any

from granule_ingest.exceptions import ConfigurationError, UnsupportedProtocolError

COLLECTION_ID_SEPARATOR = "___"


class ProviderProtocol(StrEnum):
    """Source protocols with a registered adapter."""

    FTP = "ftp"
    SFTP = "sftp"
    HTTP = "http"
    HTTPS = "https"
    S3 = "s3"

    @classmethod
    def parse(cls, value: str | None) -> "ProviderProtocol":
        """Parse a protocol tag case-insensitively; unknown tags fail fast."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnsupportedProtocolError(str(value)) from None


class DuplicateHandling(StrEnum):
    """What to do when a file's destination object already exists."""

    ERROR = "error"
    SKIP = "skip"
    REPLACE = "replace"
    VERSION = "version"

    @classmethod
    def parse(cls, value: str | None) -> "DuplicateHandling":
        """Unspecified values resolve to ``error``."""
        if value is None or value == "":
            return cls.ERROR
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Invalid duplicateHandling '{value}'. Must be one of: {', '.join(m.value for m in cls)}"
            ) from None


class GranuleStatus(StrEnum):
    PENDING = "pending"
    STAGING = "staging"
    STAGED = "staged"
    FAILED = "failed"


class FileState(StrEnum):
    """Per-file progress through the orchestrator."""

    PENDING = "pending"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    DECIDED = "decided"
    FINALIZED = "finalized"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Checksum:
    """An algorithm-tagged digest, e.g. ``Checksum("md5", "9e107d...")``."""

    algorithm: str
    value: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "algorithm", self.algorithm.strip().lower().replace("-", ""))
        object.__setattr__(self, "value", str(self.value).strip())

    @classmethod
    def from_fields(cls, algorithm: str | None, value: Any) -> "Checksum | None":
        if not algorithm or value is None or value == "":
            return None
        return cls(algorithm, str(value))

    def matches(self, other: "Checksum | None") -> bool | None:
        """True/False when comparable, None when algorithms differ or other is missing."""
        if other is None or other.algorithm != self.algorithm:
            return None
        return self.value.lower() == other.value.lower()


@dataclass(frozen=True)
class Provider:
    """
    A remote endpoint files are fetched from.

    For the ``s3`` protocol ``host`` is the source bucket.
    """

    id: str
    protocol: ProviderProtocol
    host: str
    port: int | None = None
    username: str | None = None
    password: str | None = None
    private_key_path: str | None = None
    private_key_passphrase: str | None = None
    path_prefix: str = ""
    global_connection_limit: int | None = None
    connect_timeout_s: float = 30.0
    region: str | None = None
    endpoint_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Provider":
        if not data.get("host"):
            raise ConfigurationError(f"Provider '{data.get('id', '?')}' missing host")
        port = data.get("port")
        limit = data.get("globalConnectionLimit")
        return cls(
            id=str(data.get("id") or data["host"]),
            protocol=ProviderProtocol.parse(data.get("protocol")),
            host=data["host"],
            port=int(port) if port not in (None, "") else None,
            username=data.get("username"),
            password=data.get("password"),
            private_key_path=data.get("privateKey") or data.get("private_key_path"),
            private_key_passphrase=data.get("privateKeyPassphrase"),
            path_prefix=data.get("pathPrefix", "") or "",
            global_connection_limit=int(limit) if limit not in (None, "") else None,
            connect_timeout_s=float(data.get("connectTimeout", 30.0)),
            region=data.get("region"),
            endpoint_url=data.get("endpoint"),
        )

    def remote_path(self, path: str, name: str) -> str:
        """Join the provider prefix, the file's directory and its name."""
        parts = [p.strip("/") for p in (self.path_prefix, path) if p and p.strip("/")]
        directory = "/".join(parts)
        return f"/{directory}/{name}" if directory else f"/{name}"


@dataclass(frozen=True)
class Collection:
    name: str
    version: str
    duplicate_handling: DuplicateHandling = DuplicateHandling.ERROR
    url_path: str | None = None
    process: str | None = None

    @property
    def collection_id(self) -> str:
        return collection_id(self.name, self.version)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Collection":
        data = data or {}
        return cls(
            name=str(data.get("name", "")),
            version=str(data.get("version", "")),
            duplicate_handling=DuplicateHandling.parse(data.get("duplicateHandling")),
            url_path=data.get("url_path"),
            process=data.get("process"),
        )


def collection_id(name: str, version: str) -> str:
    """Build the ``<name>___<version>`` identifier used in staging paths."""
    return f"{name}{COLLECTION_ID_SEPARATOR}{version}"


def build_s3_uri(bucket: str, key: str) -> str:
    return f"s3://{bucket}/{key.lstrip('/')}"


def parse_s3_uri(uri: str) -> tuple[str, str]:
    if not uri.startswith("s3://"):
        raise ValueError(f"Not an s3 URI: {uri}")
    bucket, _, key = uri[len("s3://"):].partition("/")
    return bucket, key


@dataclass(frozen=True)
class RemoteFile:
    """A file as seen on the provider (listed or declared by the granule)."""

    path: str
    name: str
    size: int | None = None
    mtime: int | None = None


@dataclass
class FetchedFile:
    """
    Incoming bytes after a fetch, not yet at their destination.

    Exactly one of ``local_path`` (downloaded to the work directory) or
    ``staged_key`` (server-side copied to a temporary key in the staging
    bucket) is set.
    """

    name: str
    size: int
    local_path: Path | None = None
    staged_bucket: str | None = None
    staged_key: str | None = None
    checksum: Checksum | None = None


@dataclass(frozen=True)
class StoredObject:
    """An object already present in the staging area."""

    bucket: str
    key: str
    size: int | None = None
    checksum: Checksum | None = None


@dataclass
class GranuleFile:
    name: str
    path: str = ""
    size: int | None = None
    checksum: Checksum | None = None
    bucket: str | None = None
    key: str | None = None
    file_staging_dir: str | None = None
    staged_size: int | None = None
    staged_checksum: Checksum | None = None
    duplicate_found: bool = False
    state: FileState = FileState.PENDING
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = frozenset(
        {"name", "path", "fileSize", "size", "checksumType", "checksum", "bucket", "filename",
         "fileStagingDir", "duplicate_found"}
    )

    @property
    def filename(self) -> str | None:
        if self.bucket and self.key:
            return build_s3_uri(self.bucket, self.key)
        return None

    @property
    def remote(self) -> RemoteFile:
        return RemoteFile(path=self.path, name=self.name, size=self.size)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GranuleFile":
        if not data.get("name"):
            raise ConfigurationError("Granule file is missing 'name'")
        size = data.get("fileSize", data.get("size"))
        bucket = data.get("bucket")
        key = None
        if (data.get("filename") or "").startswith("s3://"):
            bucket, key = parse_s3_uri(data["filename"])
        return cls(
            name=data["name"],
            path=data.get("path", "") or "",
            size=int(size) if size is not None else None,
            checksum=Checksum.from_fields(data.get("checksumType"), data.get("checksum")),
            bucket=bucket,
            key=key,
            file_staging_dir=data.get("fileStagingDir"),
            duplicate_found=bool(data.get("duplicate_found", False)),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = dict(self.extra)
        result["name"] = self.name
        result["path"] = self.path
        size = self.staged_size if self.staged_size is not None else self.size
        if size is not None:
            result["fileSize"] = size
        checksum = self.staged_checksum or self.checksum
        if checksum is not None:
            result["checksumType"] = checksum.algorithm
            result["checksum"] = checksum.value
        if self.bucket:
            result["bucket"] = self.bucket
        if self.filename:
            result["filename"] = self.filename
        if self.file_staging_dir:
            result["fileStagingDir"] = self.file_staging_dir
        if self.duplicate_found:
            result["duplicate_found"] = True
        return result


@dataclass
class Granule:
    granule_id: str
    files: list[GranuleFile] = field(default_factory=list)
    data_type: str | None = None
    version: str | None = None
    status: GranuleStatus = GranuleStatus.PENDING
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = frozenset({"granuleId", "dataType", "version", "files", "status"})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Granule":
        if not data.get("granuleId"):
            raise ConfigurationError("Granule is missing 'granuleId'")
        return cls(
            granule_id=data["granuleId"],
            files=[GranuleFile.from_dict(f) for f in data.get("files", [])],
            data_type=data.get("dataType"),
            version=data.get("version"),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = dict(self.extra)
        result["granuleId"] = self.granule_id
        if self.data_type is not None:
            result["dataType"] = self.data_type
        if self.version is not None:
            result["version"] = self.version
        result["files"] = [f.to_dict() for f in self.files]
        return result

    def copy(self) -> "Granule":
        """Copy with independent file records so the input is never mutated."""
        return replace(self, files=[replace(f, extra=dict(f.extra)) for f in self.files], extra=dict(self.extra))
