"""
Interfaces the jobs need from the outside world.

The orchestrators only know these protocols. Concrete implementations
(S3-compatible storage, the legacy HTTP backend, Snowflake, Pillow) live
in the infrastructure package and are wired together by the API layer,
so the job logic can be tested with in-memory fakes.
"""

from typing import Iterable, Optional, Protocol

from .models import FileRecord, ImageRecord, RecordKind


class StoredObject(Protocol):
    key: str
    public_url: str


class ObjectStore(Protocol):
    """The new S3-compatible backend, as seen by the jobs."""

    async def upload_file(
        self,
        folder: str,
        file_name: str,
        data: bytes,
        content_type: str,
    ) -> StoredObject:
        ...

    async def fetch_url(self, url: str) -> bytes:
        ...

    async def delete_objects(self, keys: Iterable[str]) -> int:
        """Best effort. Returns how many keys are gone afterwards."""
        ...

    def key_from_public_url(self, url: str) -> Optional[str]:
        """None when the URL is not on this backend's public base."""
        ...


class DownloadedFile(Protocol):
    content: bytes
    content_type: Optional[str]


class LegacySource(Protocol):
    """The old backend files are moved away from."""

    async def download(self, bucket: str, path: str) -> DownloadedFile:
        ...

    async def remove(self, bucket: str, paths: list[str]) -> None:
        ...


class RecordStore(Protocol):
    """Metadata rows the jobs read and rewrite."""

    def list_records(self, kind: RecordKind) -> list[FileRecord]:
        ...

    def list_images(self) -> list[ImageRecord]:
        ...

    def update_file_path(self, kind: RecordKind, record_id: str, file_path: str) -> None:
        ...

    def update_derivatives(
        self,
        record_id: str,
        thumbnail_url: Optional[str] = None,
        preview_url: Optional[str] = None,
    ) -> None:
        ...


class Resizer(Protocol):
    content_type: str

    async def resize(self, data: bytes, max_dimension: int, quality: float) -> bytes:
        ...
