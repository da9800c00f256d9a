"""
Configuration management: YAML loading, placeholder resolution, typed settings.
"""

from granule_ingest.config.loader import Config, load_config
from granule_ingest.config.resolver import resolve_config
from granule_ingest.config.settings import IngestSettings, LockingSettings

__all__ = [
    "load_config",
    "Config",
    "resolve_config",
    "IngestSettings",
    "LockingSettings",
]
