"""Metadata store backends."""

from ..config import AppConfig
from ..exceptions import ConfigurationError
from .base import MetadataStore
from .document import DocumentMetadataStore
from .sql import SqlMetadataStore


def get_store(config: AppConfig) -> MetadataStore:
    """Build the metadata store selected by the configuration."""
    if config.store_type == "sql":
        if not config.store_url:
            raise ConfigurationError("store_url is required for the sql store")
        return SqlMetadataStore(config.store_url)
    return DocumentMetadataStore(config.store_path)


__all__ = [
    "MetadataStore",
    "DocumentMetadataStore",
    "SqlMetadataStore",
    "get_store",
]
