"""
Adapter registry: protocol tag -> adapter.

Selection happens once per provider, before any network activity.
"""

from __future__ import annotations

from typing import Callable

from granule_ingest.exceptions import UnsupportedProtocolError
from granule_ingest.models import Provider, ProviderProtocol
from granule_ingest.protocols.base import ProtocolAdapter
from granule_ingest.protocols.ftp import FTPAdapter
from granule_ingest.protocols.http import HTTPAdapter
from granule_ingest.protocols.s3 import S3Adapter
from granule_ingest.protocols.sftp import SFTPAdapter

AdapterFactory = Callable[[], ProtocolAdapter]


def build_default_adapter_registry() -> dict[ProviderProtocol, AdapterFactory]:
    """Built-in adapters for every supported protocol."""
    return {
        ProviderProtocol.FTP: FTPAdapter,
        ProviderProtocol.SFTP: SFTPAdapter,
        ProviderProtocol.HTTP: lambda: HTTPAdapter(ProviderProtocol.HTTP),
        ProviderProtocol.HTTPS: lambda: HTTPAdapter(ProviderProtocol.HTTPS),
        ProviderProtocol.S3: S3Adapter,
    }


def resolve_adapter(
    provider: Provider,
    *,
    registry: dict[ProviderProtocol, AdapterFactory] | None = None,
) -> ProtocolAdapter:
    """
    Create the adapter for ``provider.protocol``.

    Raises:
        UnsupportedProtocolError: no adapter is registered for the protocol
    """
    registry = registry if registry is not None else build_default_adapter_registry()
    factory = registry.get(provider.protocol)
    if factory is None:
        raise UnsupportedProtocolError(str(provider.protocol.value))
    return factory()
