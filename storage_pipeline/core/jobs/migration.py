"""
Legacy migration: move files off the old storage backend.

For every document and image record that still points at the legacy
backend, the job downloads the bytes, uploads them to the new
S3-compatible backend, rewrites the record's file_path to the public URL
and finally removes the legacy copy.

The order matters. The pointer is only rewritten after the upload
succeeded, and the legacy copy is only removed after the pointer was
rewritten, so at every point in time the record points at bytes that
exist. The worst case is a duplicate copy, never a dangling pointer.

Items are processed one at a time. A failing item is recorded and the
job moves on; only a failure to list the records aborts the run.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .models import (
    CancellationToken,
    FileRecord,
    ItemOutcome,
    ItemStatus,
    MigrationResult,
    MigrationStage,
    NullProgressReporter,
    ProgressEvent,
    ProgressReporter,
    RecordKind,
    publish_progress,
)
from .ports import LegacySource, ObjectStore, RecordStore

logger = logging.getLogger(__name__)

JOB_NAME = "migration"


@dataclass(frozen=True)
class MigrationTarget:
    """Where one record family comes from and goes to."""
    kind: RecordKind
    legacy_bucket: str
    folder: str
    default_content_type: str


DOCUMENT_TARGET = MigrationTarget(
    kind=RecordKind.DOCUMENT,
    legacy_bucket="internal-documents",
    folder="documents",
    default_content_type="application/octet-stream",
)

IMAGE_TARGET = MigrationTarget(
    kind=RecordKind.IMAGE,
    legacy_bucket="picks-images",
    folder="picks",
    default_content_type="image/jpeg",
)

DEFAULT_TARGETS = (DOCUMENT_TARGET, IMAGE_TARGET)


class LegacyMigrationOrchestrator:
    """
    Runs the legacy migration over all record families.

    A record counts as migrated once its file_path contains the new
    backend's public domain; those are skipped without any I/O, which
    makes re-running the job safe.
    """

    def __init__(
        self,
        store: RecordStore,
        storage: ObjectStore,
        legacy: LegacySource,
        public_domain: str,
        targets: Sequence[MigrationTarget] = DEFAULT_TARGETS,
        reporter: Optional[ProgressReporter] = None,
    ) -> None:
        if not public_domain:
            raise ValueError("public_domain is required to recognise migrated records")

        self._store = store
        self._storage = storage
        self._legacy = legacy
        self._public_domain = public_domain
        self._targets = tuple(targets)
        self._reporter = reporter or NullProgressReporter()

    def is_migrated(self, record: FileRecord) -> bool:
        return self._public_domain in record.file_path

    async def run(self, cancel: Optional[CancellationToken] = None) -> MigrationResult:
        """
        Migrate every record that still lives on the legacy backend.

        Raises whatever the store raises if the records can't be listed;
        per-item failures end up in result.errors instead.
        """
        work = self._collect_work()
        result = MigrationResult()

        logger.info(
            "Starting legacy migration",
            extra={"candidates": len(work)}
        )

        for position, (target, record) in enumerate(work, start=1):
            if cancel is not None and cancel.is_cancelled():
                result.cancelled = True
                logger.info(
                    "Legacy migration cancelled",
                    extra={"position": position, "candidates": len(work)}
                )
                break

            result.total += 1
            outcome = await self._migrate_record(target, record, result)

            publish_progress(
                self._reporter,
                ProgressEvent(
                    job=JOB_NAME,
                    position=position,
                    candidates=len(work),
                    record_id=record.id,
                    file_name=record.file_name,
                    status=outcome.status,
                    counts=result.counts(),
                ),
            )

        logger.info("Legacy migration finished", extra=result.counts())
        return result

    def _collect_work(self) -> list[tuple[MigrationTarget, FileRecord]]:
        work = []
        for target in self._targets:
            records = self._store.list_records(target.kind)
            work.extend((target, record) for record in records)
        return work

    async def _migrate_record(
        self,
        target: MigrationTarget,
        record: FileRecord,
        result: MigrationResult,
    ) -> ItemOutcome:
        if self.is_migrated(record):
            outcome = ItemOutcome(
                kind=target.kind,
                record_id=record.id,
                file_name=record.file_name,
                status=ItemStatus.SKIPPED,
                message="Already migrated",
            )
            result.record_skip(outcome)
            return outcome

        if not record.file_path:
            return self._fail(result, target, record, MigrationStage.PENDING, "No file path")

        stage = MigrationStage.DOWNLOADING
        try:
            legacy_file = await self._legacy.download(target.legacy_bucket, record.file_path)
        except Exception as e:
            return self._fail(result, target, record, stage, f"Download failed: {e}")

        stage = MigrationStage.UPLOADING
        content_type = (
            legacy_file.content_type
            or record.content_type
            or target.default_content_type
        )
        try:
            uploaded = await self._storage.upload_file(
                target.folder,
                record.file_name or record.file_path.rsplit("/", 1)[-1],
                legacy_file.content,
                content_type,
            )
        except Exception as e:
            return self._fail(result, target, record, stage, f"Upload failed: {e}")

        try:
            self._store.update_file_path(target.kind, record.id, uploaded.public_url)
        except Exception as e:
            # Bytes are on the new backend but nothing points at them
            logger.error(
                "Pointer rewrite failed after upload",
                extra={"record_id": record.id, "key": uploaded.key, "error": str(e)}
            )
            return self._fail(
                result,
                target,
                record,
                stage,
                f"Database update failed after upload to {uploaded.key}: {e}",
            )
        stage = MigrationStage.METADATA_UPDATED

        try:
            await self._legacy.remove(target.legacy_bucket, [record.file_path])
            stage = MigrationStage.LEGACY_DELETED
        except Exception as e:
            logger.warning(
                "Could not remove legacy copy",
                extra={"record_id": record.id, "path": record.file_path, "error": str(e)}
            )
            result.warnings.append(
                f"{record.file_name}: legacy copy {target.legacy_bucket}/{record.file_path} "
                f"not removed: {e}"
            )

        outcome = ItemOutcome(
            kind=target.kind,
            record_id=record.id,
            file_name=record.file_name,
            status=ItemStatus.MIGRATED,
            message=f"Migrated to {uploaded.key}",
            stage=stage,
        )
        result.record_migrated(outcome)

        logger.info(
            "Migrated record",
            extra={"kind": target.kind.value, "record_id": record.id, "key": uploaded.key}
        )
        return outcome

    def _fail(
        self,
        result: MigrationResult,
        target: MigrationTarget,
        record: FileRecord,
        stage: MigrationStage,
        message: str,
    ) -> ItemOutcome:
        logger.warning(
            "Migration of record failed",
            extra={
                "kind": target.kind.value,
                "record_id": record.id,
                "stage": stage.value,
                "error": message,
            }
        )
        outcome = ItemOutcome(
            kind=target.kind,
            record_id=record.id,
            file_name=record.file_name,
            status=ItemStatus.ERROR,
            message=message,
            stage=MigrationStage.ERROR,
        )
        result.record_error(outcome)
        return outcome
