"""
FastAPI dependency injection.

Dependencies provide instances of services, clients, and configuration
to route handlers. Using dependency injection means:
- Routes don't instantiate their own dependencies (easier to test)
- Dependencies can be mocked for testing
- Resource lifecycle (connections, clients) is managed properly

In mock mode the metadata store, object storage and legacy storage are
shared in-memory instances, so data persists across requests and jobs
for the lifetime of the process.
"""

import logging
from contextlib import contextmanager
from typing import Annotated, AsyncGenerator, Generator, Iterator, Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings, get_settings
from ..core.jobs.models import ConfigurationError, Credentials
from ..infrastructure.metadata.client import SnowflakeConfig, get_snowflake_connection
from ..infrastructure.metadata.credentials import CredentialProvider
from ..infrastructure.metadata.store import (
    InMemoryMetadataStore,
    MetadataStore,
    SnowflakeMetadataStore,
)
from ..infrastructure.storage.client import MockStorageClient, StorageClient, create_storage_client
from ..infrastructure.storage.legacy import InMemoryLegacyStorage
from .job_runner import JobRegistry, JobRunner

logger = logging.getLogger(__name__)

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Global instances (shared across requests)
_mock_metadata_store: Optional[InMemoryMetadataStore] = None
_mock_storage_client: Optional[MockStorageClient] = None
_mock_legacy_storage: Optional[InMemoryLegacyStorage] = None
_job_registry = JobRegistry()


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_api_key(
    settings: Annotated[Settings, Depends(get_settings)],
    api_key: str = Security(api_key_header),
) -> str:
    """
    Validate API key from request header.

    Raises 403 if key is invalid or missing.
    """
    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key required. Provide X-API-Key header.",
        )

    if api_key not in settings.api_keys_list:
        logger.warning(
            "Invalid API key attempt",
            extra={"key_prefix": api_key[:8]}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


# ---------------------------------------------------------------------------
# Shared mock instances
# ---------------------------------------------------------------------------

def get_mock_metadata_store() -> InMemoryMetadataStore:
    global _mock_metadata_store
    if _mock_metadata_store is None:
        _mock_metadata_store = InMemoryMetadataStore()
        logger.info("Created shared in-memory metadata store")
    return _mock_metadata_store


def get_mock_storage_client(settings: Settings) -> MockStorageClient:
    global _mock_storage_client
    if _mock_storage_client is None:
        _mock_storage_client = MockStorageClient(public_url_base=settings.storage_public_url_base)
        logger.info("Created shared mock storage client")
    return _mock_storage_client


def get_mock_legacy_storage() -> InMemoryLegacyStorage:
    global _mock_legacy_storage
    if _mock_legacy_storage is None:
        _mock_legacy_storage = InMemoryLegacyStorage()
        logger.info("Created shared in-memory legacy storage")
    return _mock_legacy_storage


# ---------------------------------------------------------------------------
# Service Dependencies
# ---------------------------------------------------------------------------

@contextmanager
def metadata_store_scope(settings: Settings) -> Iterator[MetadataStore]:
    """
    Open the metadata store for one unit of work.

    Mock mode hands out the shared in-memory store; otherwise a Snowflake
    connection is opened and closed around the block.
    """
    if settings.snowflake_mock_mode:
        yield get_mock_metadata_store()
        return

    config = SnowflakeConfig(
        account=settings.snowflake_account,
        user=settings.snowflake_user,
        password=settings.snowflake_password or None,
        private_key_path=settings.snowflake_private_key_path,
        database=settings.snowflake_database,
        schema=settings.snowflake_schema,
        warehouse=settings.snowflake_warehouse,
        role=settings.snowflake_role,
        timeout_seconds=settings.http_timeout_seconds,
    )
    with get_snowflake_connection(config) as conn:
        yield SnowflakeMetadataStore(conn, query_timeout=settings.http_timeout_seconds)


def get_metadata_store(
    settings: Annotated[Settings, Depends(get_settings)],
) -> Generator[MetadataStore, None, None]:
    """Provide the metadata store for the duration of a request."""
    with metadata_store_scope(settings) as store:
        yield store


def get_storage_credentials(
    store: Annotated[MetadataStore, Depends(get_metadata_store)],
) -> Credentials:
    """
    Read storage credentials for a request.

    Missing credentials are the operator's to fix, so they map to 400
    with the message naming the missing settings.
    """
    try:
        return CredentialProvider(store).load()
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


async def get_storage_client(
    settings: Annotated[Settings, Depends(get_settings)],
    store: Annotated[MetadataStore, Depends(get_metadata_store)],
) -> AsyncGenerator[StorageClient, None]:
    """
    Provide the object storage client for a request.

    Mock mode reuses the shared in-memory client; otherwise the client is
    built from the credentials in the settings record and closed after
    the request.
    """
    if settings.storage_mock_mode:
        yield get_mock_storage_client(settings)
        return

    credentials = get_storage_credentials(store)
    client = create_storage_client(
        credentials,
        bucket_name=settings.storage_bucket_name,
        public_url_base=settings.storage_public_url_base,
        region=settings.storage_region,
        timeout_seconds=settings.http_timeout_seconds,
    )
    try:
        yield client
    finally:
        await client.aclose()


def get_job_runner(
    settings: Annotated[Settings, Depends(get_settings)],
) -> JobRunner:
    """
    Provide a JobRunner.

    The runner opens its own metadata store per run rather than using the
    request's, since background jobs outlive the request.
    """
    storage = get_mock_storage_client(settings) if settings.storage_mock_mode else None
    legacy = get_mock_legacy_storage() if settings.storage_mock_mode else None
    return JobRunner(
        settings,
        store_scope=lambda: metadata_store_scope(settings),
        storage=storage,
        legacy=legacy,
    )


def get_job_registry() -> JobRegistry:
    return _job_registry


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

AuthenticatedUser = Annotated[str, Depends(verify_api_key)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
MetadataStoreDep = Annotated[MetadataStore, Depends(get_metadata_store)]
StorageCredentialsDep = Annotated[Credentials, Depends(get_storage_credentials)]
StorageClientDep = Annotated[StorageClient, Depends(get_storage_client)]
JobRunnerDep = Annotated[JobRunner, Depends(get_job_runner)]
JobRegistryDep = Annotated[JobRegistry, Depends(get_job_registry)]
