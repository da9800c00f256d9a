"""
Protocol adapters: one uniform fetch contract over FTP, SFTP, HTTP/HTTPS and S3.
"""

from granule_ingest.protocols.base import ProtocolAdapter, StagingTarget, normalize_transport_error
from granule_ingest.protocols.ftp import FTPAdapter
from granule_ingest.protocols.http import HTTPAdapter
from granule_ingest.protocols.registry import build_default_adapter_registry, resolve_adapter
from granule_ingest.protocols.s3 import S3Adapter
from granule_ingest.protocols.sftp import SFTPAdapter

__all__ = [
    "ProtocolAdapter",
    "StagingTarget",
    "normalize_transport_error",
    "FTPAdapter",
    "SFTPAdapter",
    "HTTPAdapter",
    "S3Adapter",
    "build_default_adapter_registry",
    "resolve_adapter",
]
