"""
Domain models for the storage jobs.

These models describe what the jobs work on (file and image records),
what they need (credentials) and what they report (results and progress).
They have no dependencies on HTTP, databases or storage SDKs.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when a job cannot start because configuration is incomplete."""
    pass


class RecordKind(Enum):
    """The two record families whose files live in object storage."""
    DOCUMENT = "document"
    IMAGE = "image"


class ItemStatus(Enum):
    """Terminal outcome of a single item within a job run."""
    MIGRATED = "migrated"
    PROCESSED = "processed"
    SKIPPED = "skipped"
    ERROR = "error"


class MigrationStage(Enum):
    """
    Where a record is in its move from legacy storage to the new backend.

    The happy path runs top to bottom. ERROR is reachable from
    DOWNLOADING, UPLOADING and the metadata rewrite.
    """
    PENDING = "pending"
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"
    METADATA_UPDATED = "metadata-updated"
    LEGACY_DELETED = "legacy-deleted"
    ERROR = "error"


@dataclass(frozen=True)
class Credentials:
    """
    Access to the S3-compatible backend.

    Frozen because a job reads credentials once and must not mutate them.
    The secret is kept out of repr() so it never ends up in logs or
    job output by accident.
    """
    endpoint: str
    access_key_id: str
    secret_access_key: str = field(repr=False)

    def missing_fields(self) -> list[str]:
        """Names of the fields that are empty."""
        return [
            name
            for name in ("endpoint", "access_key_id", "secret_access_key")
            if not getattr(self, name)
        ]

    def validate(self) -> "Credentials":
        """Refuse to operate unless all three fields are present."""
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(
                f"Storage credentials incomplete: missing {', '.join(missing)}"
            )
        return self


@dataclass
class FileRecord:
    """
    A metadata-store row that points at a stored file.

    file_path is either a legacy storage path (before migration) or a
    fully-qualified public URL on the new backend (after migration).
    """
    id: str
    file_path: str
    file_name: str
    kind: RecordKind = RecordKind.DOCUMENT
    content_type: Optional[str] = None
    size: Optional[int] = None

    @property
    def is_url(self) -> bool:
        return self.file_path.startswith(("http://", "https://"))


@dataclass
class ImageRecord(FileRecord):
    """An image row with its optional thumbnail and preview derivatives."""
    kind: RecordKind = RecordKind.IMAGE
    thumbnail_url: Optional[str] = None
    preview_url: Optional[str] = None


@dataclass
class ItemOutcome:
    """What happened to one record during a job run."""
    kind: RecordKind
    record_id: str
    file_name: str
    status: ItemStatus
    message: str = ""
    stage: Optional[MigrationStage] = None


@dataclass
class JobResult:
    """
    Accumulator for one job run.

    Not persisted - reported back to the caller and discarded.
    Every visited item increments total and lands in exactly one terminal
    bucket: success, skipped or errors.
    """
    total: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    details: list[ItemOutcome] = field(default_factory=list)
    cancelled: bool = False

    def record_skip(self, outcome: ItemOutcome) -> None:
        self.skipped += 1
        self.details.append(outcome)

    def record_error(self, outcome: ItemOutcome) -> None:
        self.errors.append(f"{outcome.file_name}: {outcome.message}")
        self.details.append(outcome)

    def counts(self) -> dict[str, int]:
        """Counter snapshot for progress reporting."""
        return {
            "total": self.total,
            "skipped": self.skipped,
            "errors": len(self.errors),
            "warnings": len(self.warnings),
        }

    def to_dict(self) -> dict:
        """JSON-friendly view for the job status endpoint."""
        return {
            **self.counts(),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "cancelled": self.cancelled,
            "details": [
                {
                    "kind": d.kind.value,
                    "record_id": d.record_id,
                    "file_name": d.file_name,
                    "status": d.status.value,
                    "message": d.message,
                    "stage": d.stage.value if d.stage else None,
                }
                for d in self.details
            ],
        }


@dataclass
class MigrationResult(JobResult):
    """Result of a legacy migration run."""
    migrated: int = 0

    def record_migrated(self, outcome: ItemOutcome) -> None:
        self.migrated += 1
        self.details.append(outcome)

    def counts(self) -> dict[str, int]:
        return {**super().counts(), "migrated": self.migrated}


@dataclass
class RetrofitResult(JobResult):
    """
    Result of a derivative retrofit run.

    processed is the terminal success bucket; thumbnails_created and
    previews_created are tallied independently because one image can
    contribute to both.
    """
    processed: int = 0
    thumbnails_created: int = 0
    previews_created: int = 0

    def record_processed(self, outcome: ItemOutcome) -> None:
        self.processed += 1
        self.details.append(outcome)

    def counts(self) -> dict[str, int]:
        return {
            **super().counts(),
            "processed": self.processed,
            "thumbnails_created": self.thumbnails_created,
            "previews_created": self.previews_created,
        }


# ---------------------------------------------------------------------------
# Progress reporting
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProgressEvent:
    """Emitted after every item so a caller can render a live counter."""
    job: str
    position: int
    candidates: int
    record_id: str
    file_name: str
    status: ItemStatus
    counts: dict[str, int]


class ProgressReporter(Protocol):
    """
    Receiver for progress events.

    publish() is called synchronously from the processing loop and is not
    awaited, so implementations must return quickly.
    """

    def publish(self, event: ProgressEvent) -> None:
        ...


class NullProgressReporter:
    """Drops every event. Used when nobody is watching."""

    def publish(self, event: ProgressEvent) -> None:
        pass


class CollectingProgressReporter:
    """Keeps every event in order. Handy for tests and inline runs."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    def publish(self, event: ProgressEvent) -> None:
        self.events.append(event)

    @property
    def latest(self) -> Optional[ProgressEvent]:
        return self.events[-1] if self.events else None


def publish_progress(reporter: ProgressReporter, event: ProgressEvent) -> None:
    """Fire-and-continue: a failing reporter never stops the job."""
    try:
        reporter.publish(event)
    except Exception as e:
        logger.warning(
            "Progress reporter failed",
            extra={"job": event.job, "error": str(e)}
        )


class CancellationToken:
    """
    Cooperative cancellation for job runs.

    Jobs check the token once per loop iteration, so a stop request takes
    effect between items and never interrupts an upload.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()
