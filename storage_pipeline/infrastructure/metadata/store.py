"""
Metadata store for file, image and settings records.

This module implements the repository pattern for the three tables the
storage jobs touch:
- internal_documents: generic file records
- images: file records with thumbnail/preview derivative URLs
- admin_settings: key/value settings, including storage credentials

The jobs never write SQL directly - they ask the store for what they need
in domain terms. SnowflakeMetadataStore talks to the real database;
InMemoryMetadataStore backs mock mode and the tests.
"""

import logging
from typing import Iterable, Optional, Protocol

from ...core.jobs.models import FileRecord, ImageRecord, RecordKind
from .client import SnowflakeConnection

logger = logging.getLogger(__name__)

TABLES = {
    RecordKind.DOCUMENT: "internal_documents",
    RecordKind.IMAGE: "images",
}


class MetadataStoreError(Exception):
    """Raised when reading or writing metadata fails."""
    pass


class RecordNotFoundError(MetadataStoreError):
    """Raised when an update targets a row that doesn't exist."""
    pass


class MetadataStore(Protocol):
    """
    Interface the jobs need from the metadata store.

    Only select and update - rows are created and deleted by the
    dashboard, never by the jobs.
    """

    def list_records(self, kind: RecordKind) -> list[FileRecord]:
        """All rows of one record family."""
        ...

    def list_images(self) -> list[ImageRecord]:
        """All image rows including derivative URLs."""
        ...

    def update_file_path(self, kind: RecordKind, record_id: str, file_path: str) -> None:
        ...

    def update_derivatives(
        self,
        record_id: str,
        thumbnail_url: Optional[str] = None,
        preview_url: Optional[str] = None,
    ) -> None:
        """Set whichever derivative URLs are given. Fields left as None are untouched."""
        ...

    def get_settings(self, keys: Iterable[str]) -> dict[str, str]:
        ...

    def ping(self) -> None:
        """Raise if the store is unreachable."""
        ...


class SnowflakeMetadataStore:
    """
    Metadata store backed by Snowflake.

    Each method runs one statement on a fresh cursor and commits writes
    immediately, so a failed item never leaves an open transaction behind.
    """

    def __init__(self, connection: SnowflakeConnection, query_timeout: Optional[float] = None) -> None:
        self._conn = connection
        self._query_timeout = query_timeout

    def _run(self, cursor, query: str, params: Optional[tuple]) -> None:
        if self._query_timeout is None:
            cursor.execute(query, params)
        else:
            cursor.execute(query, params, timeout=max(1, int(self._query_timeout)))

    def list_records(self, kind: RecordKind) -> list[FileRecord]:
        if kind is RecordKind.IMAGE:
            return list(self.list_images())

        rows = self._fetch(
            f"""
                SELECT id, file_path, file_name, content_type, file_size
                FROM {TABLES[kind]}
                ORDER BY id
            """,
        )
        return [
            FileRecord(
                id=str(row[0]),
                file_path=row[1] or "",
                file_name=row[2] or "",
                kind=kind,
                content_type=row[3],
                size=row[4],
            )
            for row in rows
        ]

    def list_images(self) -> list[ImageRecord]:
        rows = self._fetch(
            """
                SELECT id, file_path, file_name, content_type, file_size,
                       thumbnail_url, preview_url
                FROM images
                ORDER BY id
            """,
        )
        return [
            ImageRecord(
                id=str(row[0]),
                file_path=row[1] or "",
                file_name=row[2] or "",
                content_type=row[3],
                size=row[4],
                thumbnail_url=row[5],
                preview_url=row[6],
            )
            for row in rows
        ]

    def update_file_path(self, kind: RecordKind, record_id: str, file_path: str) -> None:
        self._execute_update(
            f"UPDATE {TABLES[kind]} SET file_path = %s WHERE id = %s",
            (file_path, record_id),
            record_id,
        )

    def update_derivatives(
        self,
        record_id: str,
        thumbnail_url: Optional[str] = None,
        preview_url: Optional[str] = None,
    ) -> None:
        assignments = []
        params: list[str] = []
        if thumbnail_url is not None:
            assignments.append("thumbnail_url = %s")
            params.append(thumbnail_url)
        if preview_url is not None:
            assignments.append("preview_url = %s")
            params.append(preview_url)
        if not assignments:
            return

        self._execute_update(
            f"UPDATE images SET {', '.join(assignments)} WHERE id = %s",
            (*params, record_id),
            record_id,
        )

    def get_settings(self, keys: Iterable[str]) -> dict[str, str]:
        keys = list(keys)
        if not keys:
            return {}
        placeholders = ", ".join(["%s"] * len(keys))
        rows = self._fetch(
            f"""
                SELECT setting_key, setting_value
                FROM admin_settings
                WHERE setting_key IN ({placeholders})
            """,
            tuple(keys),
        )
        return {row[0]: row[1] for row in rows if row[1] is not None}

    def ping(self) -> None:
        self._fetch("SELECT 1")

    def _fetch(self, query: str, params: Optional[tuple] = None) -> list[tuple]:
        cursor = self._conn.cursor()
        try:
            self._run(cursor, query, params)
            return list(cursor.fetchall())
        except Exception as e:
            logger.error("Metadata query failed", extra={"error": str(e)})
            raise MetadataStoreError(f"Query failed: {e}")
        finally:
            cursor.close()

    def _execute_update(self, query: str, params: tuple, record_id: str) -> None:
        cursor = self._conn.cursor()
        try:
            self._run(cursor, query, params)
            rowcount = cursor.rowcount
            self._conn.commit()
        except Exception as e:
            logger.error(
                "Metadata update failed",
                extra={"record_id": record_id, "error": str(e)}
            )
            raise MetadataStoreError(f"update of record {record_id} failed: {e}")
        finally:
            cursor.close()

        if rowcount == 0:
            raise RecordNotFoundError(f"record {record_id} not found")


class InMemoryMetadataStore:
    """
    In-memory metadata store for local development and tests.

    Holds records in dictionaries keyed by id. Not suitable for production,
    but the jobs can't tell the difference.
    """

    def __init__(
        self,
        documents: Iterable[FileRecord] = (),
        images: Iterable[ImageRecord] = (),
        settings: Optional[dict[str, str]] = None,
    ) -> None:
        self.documents: dict[str, FileRecord] = {d.id: d for d in documents}
        self.images: dict[str, ImageRecord] = {i.id: i for i in images}
        self.settings: dict[str, str] = dict(settings or {})
        self.update_calls = 0
        logger.info("Initialized in-memory metadata store")

    def _table(self, kind: RecordKind) -> dict:
        return self.images if kind is RecordKind.IMAGE else self.documents

    def list_records(self, kind: RecordKind) -> list[FileRecord]:
        return list(self._table(kind).values())

    def list_images(self) -> list[ImageRecord]:
        return list(self.images.values())

    def update_file_path(self, kind: RecordKind, record_id: str, file_path: str) -> None:
        self.update_calls += 1
        record = self._table(kind).get(record_id)
        if record is None:
            raise RecordNotFoundError(f"record {record_id} not found")
        record.file_path = file_path

    def update_derivatives(
        self,
        record_id: str,
        thumbnail_url: Optional[str] = None,
        preview_url: Optional[str] = None,
    ) -> None:
        self.update_calls += 1
        record = self.images.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"record {record_id} not found")
        if thumbnail_url is not None:
            record.thumbnail_url = thumbnail_url
        if preview_url is not None:
            record.preview_url = preview_url

    def get_settings(self, keys: Iterable[str]) -> dict[str, str]:
        return {key: self.settings[key] for key in keys if key in self.settings}

    def ping(self) -> None:
        pass
