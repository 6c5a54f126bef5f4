"""
Client for the legacy storage backend.

Files uploaded before the move to S3-compatible storage live in the old
backend's buckets (internal-documents, picks-images). The migration job
only needs two operations against it: download a file and remove it.

The old backend exposes a plain HTTP object API authenticated with a
service key:
    GET    {base}/storage/v1/object/{bucket}/{path}
    DELETE {base}/storage/v1/object/{bucket}   body: {"prefixes": [paths]}
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)


class LegacyStorageError(Exception):
    """Raised when the legacy backend can't serve or remove a file."""
    pass


@dataclass(frozen=True)
class LegacyFile:
    """Bytes downloaded from legacy storage and the content type it reported."""
    content: bytes
    content_type: Optional[str] = None


class LegacyStorage(Protocol):
    """Protocol for the legacy backend, so tests can fake failures."""

    async def download(self, bucket: str, path: str) -> LegacyFile:
        ...

    async def remove(self, bucket: str, paths: list[str]) -> None:
        ...

    async def aclose(self) -> None:
        ...


class HttpLegacyStorage:
    """Legacy storage over its HTTP object API."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url or not service_key:
            raise ValueError("base_url and service_key are required for legacy storage")

        self._base = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
            headers={
                "Authorization": f"Bearer {service_key}",
                "apikey": service_key,
            },
        )

    def _object_url(self, bucket: str, path: str = "") -> str:
        url = f"{self._base}/storage/v1/object/{bucket}"
        if path:
            url += "/" + quote(path.lstrip("/"), safe="/")
        return url

    async def download(self, bucket: str, path: str) -> LegacyFile:
        try:
            response = await self._http.get(self._object_url(bucket, path))
        except httpx.HTTPError as e:
            raise LegacyStorageError(f"GET {path} failed: {e}")

        if not response.is_success:
            raise LegacyStorageError(
                f"GET {path} returned HTTP {response.status_code}: {response.text[:200]}"
            )
        if not response.content:
            raise LegacyStorageError(f"GET {path} returned no data")

        content_type = response.headers.get("content-type")
        if content_type:
            content_type = content_type.split(";")[0].strip()

        logger.debug(
            "Downloaded legacy file",
            extra={"bucket": bucket, "path": path, "size_bytes": len(response.content)}
        )
        return LegacyFile(content=response.content, content_type=content_type)

    async def remove(self, bucket: str, paths: list[str]) -> None:
        try:
            response = await self._http.request(
                "DELETE",
                self._object_url(bucket),
                json={"prefixes": paths},
            )
        except httpx.HTTPError as e:
            raise LegacyStorageError(f"remove from {bucket} failed: {e}")

        if not response.is_success:
            raise LegacyStorageError(
                f"remove from {bucket} returned HTTP {response.status_code}: {response.text[:200]}"
            )

    async def aclose(self) -> None:
        await self._http.aclose()


class InMemoryLegacyStorage:
    """
    Legacy storage kept in a dict of {(bucket, path): LegacyFile}.

    Used in mock mode and tests. Paths listed in failing_downloads or
    failing_removals raise, so tests can exercise partial failures.
    """

    def __init__(self) -> None:
        self.files: dict[tuple[str, str], LegacyFile] = {}
        self.failing_downloads: set[str] = set()
        self.failing_removals: set[str] = set()
        self.removed: list[tuple[str, str]] = []

    def add(self, bucket: str, path: str, content: bytes, content_type: Optional[str] = None) -> None:
        self.files[(bucket, path)] = LegacyFile(content=content, content_type=content_type)

    async def download(self, bucket: str, path: str) -> LegacyFile:
        if path in self.failing_downloads:
            raise LegacyStorageError("connection reset")
        try:
            return self.files[(bucket, path)]
        except KeyError:
            raise LegacyStorageError(f"object not found: {bucket}/{path}")

    async def remove(self, bucket: str, paths: list[str]) -> None:
        for path in paths:
            if path in self.failing_removals:
                raise LegacyStorageError(f"{path} is locked")
            self.files.pop((bucket, path), None)
            self.removed.append((bucket, path))

    async def aclose(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_legacy_storage(
    base_url: str = "",
    service_key: str = "",
    timeout_seconds: float = 30.0,
    mock_mode: bool = False,
) -> LegacyStorage:
    """
    Create the legacy storage client.

    In mock mode an empty InMemoryLegacyStorage is returned; tests and
    local development seed it with add().
    """
    if mock_mode:
        return InMemoryLegacyStorage()

    return HttpLegacyStorage(base_url, service_key, timeout_seconds=timeout_seconds)
