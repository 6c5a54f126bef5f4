"""
Metadata store integration.

Repositories translate between domain records and database rows.
"""

from .credentials import CredentialProvider
from .store import InMemoryMetadataStore, MetadataStore, MetadataStoreError, SnowflakeMetadataStore

__all__ = [
    "CredentialProvider",
    "InMemoryMetadataStore",
    "MetadataStore",
    "MetadataStoreError",
    "SnowflakeMetadataStore",
]
