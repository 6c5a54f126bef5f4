"""
Object storage client for uploads, migrated files and image derivatives.

Talks to an S3-compatible endpoint (Cloudflare R2 in production) with
self-signed SigV4 requests over httpx. Only the operations the jobs need
are supported: PUT, GET and DELETE of single objects.

Mock mode stores objects in memory, enabling API testing without
provisioning actual object storage.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol
from urllib.parse import urlsplit

import httpx

from ...core.jobs.models import Credentials
from .signer import sign_request

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class StorageError(Exception):
    """
    Raised when storage operations fail.

    Carries the HTTP status code and response text (when there was a
    response) so failures can be diagnosed from the job output.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class UploadedObject:
    """Where an upload ended up."""
    key: str
    public_url: str
    size: int


# ---------------------------------------------------------------------------
# Key naming
# ---------------------------------------------------------------------------

def sanitize_filename(file_name: str) -> str:
    """Map every character outside [A-Za-z0-9._-] to '_'."""
    return _UNSAFE_KEY_CHARS.sub("_", file_name)


class ObjectKeyGenerator:
    """
    Builds keys of the form folder/<unixMillis>-<sanitized-filename>.

    Millisecond stamps from one generator strictly increase, so two
    uploads in the same batch can never collide even when they start
    within the same millisecond.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last_millis = 0
        self._lock = threading.Lock()

    def _next_millis(self) -> int:
        with self._lock:
            millis = int(self._clock() * 1000)
            if millis <= self._last_millis:
                millis = self._last_millis + 1
            self._last_millis = millis
            return millis

    def build(self, folder: str, file_name: str) -> str:
        folder = folder.strip("/")
        return f"{folder}/{self._next_millis()}-{sanitize_filename(file_name)}"


# One generator per process: clients are built per request, and two
# requests for the same file name in one millisecond must not share a key.
shared_key_generator = ObjectKeyGenerator()


def object_url(endpoint: str, bucket: str, key: str) -> str:
    """Path-style object URL: endpoint/bucket/key."""
    return f"{endpoint.rstrip('/')}/{bucket}/{key}"


class StorageClient(Protocol):
    """
    Protocol for object storage operations.

    Using a protocol means tests can provide mocks and the jobs don't
    care whether they talk to R2, S3 or memory.
    """

    public_url_base: str

    async def put_object(self, key: str, data: bytes, content_type: str) -> UploadedObject:
        """Upload bytes under key. Overwrites an existing object."""
        ...

    async def upload_file(
        self,
        folder: str,
        file_name: str,
        data: bytes,
        content_type: str,
    ) -> UploadedObject:
        """Generate a collision-free key in folder and upload."""
        ...

    async def get_object(self, key: str) -> bytes:
        """Download an object by key."""
        ...

    async def fetch_url(self, url: str) -> bytes:
        """Plain GET of a public URL."""
        ...

    async def delete_objects(self, keys: Iterable[str]) -> int:
        """Best-effort delete. Returns count deleted."""
        ...

    def public_url_for(self, key: str) -> str:
        ...

    def key_from_public_url(self, url: str) -> Optional[str]:
        ...

    async def aclose(self) -> None:
        ...


class _PublicUrlMixin:
    """Translation between keys and public URLs, shared by real and mock clients."""

    public_url_base: str

    def public_url_for(self, key: str) -> str:
        return f"{self.public_url_base.rstrip('/')}/{key}"

    def key_from_public_url(self, url: str) -> Optional[str]:
        """Return the object key for a URL on our public base, else None."""
        if not url:
            return None
        base = self.public_url_base.rstrip("/") + "/"
        if not url.startswith(base):
            return None
        key = urlsplit(url).path.lstrip("/")
        base_path = urlsplit(base).path.strip("/")
        if base_path:
            key = key[len(base_path) + 1:]
        return key or None


class S3StorageClient(_PublicUrlMixin):
    """
    S3-compatible object storage client with hand-rolled SigV4 signing.

    Requests are path-style: endpoint/bucket/key. Every request uses the
    configured timeout; a timeout is reported as a StorageError like any
    other transport failure.
    """

    def __init__(
        self,
        credentials: Credentials,
        bucket_name: str,
        public_url_base: str,
        region: str = "auto",
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        key_generator: Optional[ObjectKeyGenerator] = None,
    ) -> None:
        self._credentials = credentials.validate()
        self._bucket = bucket_name
        self._region = region
        self.public_url_base = public_url_base
        self._keys = key_generator or shared_key_generator
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

        logger.info(
            "Initialized S3 storage client",
            extra={
                "bucket": bucket_name,
                "endpoint": credentials.endpoint,
            }
        )

    def _object_url(self, key: str) -> str:
        return object_url(self._credentials.endpoint, self._bucket, key)

    async def _send(
        self,
        method: str,
        key: str,
        body: bytes = b"",
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        url = self._object_url(key)
        request_headers = {"Host": urlsplit(url).netloc, **(headers or {})}
        signed = sign_request(
            method,
            url,
            request_headers,
            body,
            self._credentials,
            region=self._region,
            service="s3",
        )
        try:
            return await self._http.request(method, url, content=body or None, headers=signed)
        except httpx.TimeoutException as e:
            raise StorageError(f"{method} {key} timed out: {e}")
        except httpx.HTTPError as e:
            raise StorageError(f"{method} {key} failed: {e}")

    async def put_object(self, key: str, data: bytes, content_type: str) -> UploadedObject:
        """
        Upload an object.

        Any non-2xx response is a hard error carrying the status code and
        the response body text.
        """
        response = await self._send(
            "PUT",
            key,
            body=data,
            headers={
                "Content-Type": content_type,
                "Content-Length": str(len(data)),
            },
        )

        if not response.is_success:
            logger.error(
                "Failed to upload object",
                extra={"key": key, "status": response.status_code}
            )
            raise StorageError(
                f"PUT {key} returned HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        logger.debug(
            "Uploaded object",
            extra={"key": key, "size_bytes": len(data), "content_type": content_type}
        )

        return UploadedObject(key=key, public_url=self.public_url_for(key), size=len(data))

    async def upload_file(
        self,
        folder: str,
        file_name: str,
        data: bytes,
        content_type: str,
    ) -> UploadedObject:
        return await self.put_object(self._keys.build(folder, file_name), data, content_type)

    async def get_object(self, key: str) -> bytes:
        """Download an object with a signed GET."""
        response = await self._send("GET", key)
        if not response.is_success:
            raise StorageError(
                f"GET {key} returned HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.content

    async def fetch_url(self, url: str) -> bytes:
        """
        Plain GET of a public object.

        Public objects need no signature, so this also works for files that
        live on any other public host.
        """
        try:
            response = await self._http.get(url)
        except httpx.TimeoutException as e:
            raise StorageError(f"GET {url} timed out: {e}")
        except httpx.HTTPError as e:
            raise StorageError(f"GET {url} failed: {e}")

        if not response.is_success:
            raise StorageError(
                f"GET {url} returned HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.content

    async def delete_objects(self, keys: Iterable[str]) -> int:
        """
        Delete objects one by one.

        Best effort: 2xx and 404 (already gone) count as deleted, anything
        else is logged and skipped. Never raises.
        """
        deleted = 0
        for key in keys:
            try:
                response = await self._send("DELETE", key)
            except StorageError as e:
                logger.warning("Failed to delete object", extra={"key": key, "error": str(e)})
                continue

            if response.is_success or response.status_code == 404:
                deleted += 1
            else:
                logger.warning(
                    "Failed to delete object",
                    extra={"key": key, "status": response.status_code, "body": response.text[:200]}
                )

        logger.info("Deleted objects", extra={"count": deleted})
        return deleted

    async def aclose(self) -> None:
        await self._http.aclose()


# ---------------------------------------------------------------------------
# Mock Storage for Local Development
# ---------------------------------------------------------------------------

class MockStorageClient(_PublicUrlMixin):
    """
    In-memory storage for local development and tests.

    Objects are kept in a dictionary keyed by object key; public URLs use
    the configured base so the jobs behave exactly as with real storage.
    Call counters let tests assert how much I/O a job issued.
    """

    def __init__(
        self,
        public_url_base: str = "https://storage.example.test",
        key_generator: Optional[ObjectKeyGenerator] = None,
    ) -> None:
        self.public_url_base = public_url_base
        self._keys = key_generator or shared_key_generator
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.public_files: dict[str, bytes] = {}
        self.put_calls = 0
        self.get_calls = 0
        self.deleted_keys: list[str] = []
        logger.info("Initialized mock storage client (in-memory)")

    @property
    def call_count(self) -> int:
        return self.put_calls + self.get_calls + len(self.deleted_keys)

    async def put_object(self, key: str, data: bytes, content_type: str) -> UploadedObject:
        self.put_calls += 1
        self.objects[key] = (data, content_type)
        return UploadedObject(key=key, public_url=self.public_url_for(key), size=len(data))

    async def upload_file(
        self,
        folder: str,
        file_name: str,
        data: bytes,
        content_type: str,
    ) -> UploadedObject:
        return await self.put_object(self._keys.build(folder, file_name), data, content_type)

    async def get_object(self, key: str) -> bytes:
        self.get_calls += 1
        if key not in self.objects:
            raise StorageError(f"Object not found: {key}", status_code=404)
        return self.objects[key][0]

    async def fetch_url(self, url: str) -> bytes:
        self.get_calls += 1
        key = self.key_from_public_url(url)
        if key is not None and key in self.objects:
            return self.objects[key][0]
        if url in self.public_files:
            return self.public_files[url]
        raise StorageError(f"Object not found: {url}", status_code=404)

    async def delete_objects(self, keys: Iterable[str]) -> int:
        deleted = 0
        for key in keys:
            self.deleted_keys.append(key)
            self.objects.pop(key, None)
            deleted += 1
        return deleted

    async def aclose(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_storage_client(
    credentials: Optional[Credentials] = None,
    bucket_name: str = "",
    public_url_base: str = "",
    region: str = "auto",
    timeout_seconds: float = 30.0,
    mock_mode: bool = False,
) -> StorageClient:
    """
    Create storage client based on configuration.

    Args:
        credentials: Endpoint and keys (required if not mock_mode)
        mock_mode: If True, return in-memory client for testing

    Returns:
        StorageClient implementation (S3-compatible or Mock)
    """
    if mock_mode:
        return MockStorageClient(public_url_base=public_url_base or "https://storage.example.test")

    if credentials is None:
        raise ValueError("credentials are required when not in mock mode")

    return S3StorageClient(
        credentials,
        bucket_name=bucket_name,
        public_url_base=public_url_base,
        region=region,
        timeout_seconds=timeout_seconds,
    )
