"""
Job entry points and the in-process job registry.

JobRunner wires the collaborators for one run: it reads the storage
credentials once, opens the storage clients, runs an orchestrator and
closes everything again. Nothing outlives the run, including the
credentials.

JobRegistry tracks runs started through the API so the dashboard can
poll progress and request cancellation. State is in-process only;
results are reported and discarded, never persisted.
"""

import asyncio
import logging
import threading
import uuid
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from ..config.settings import Settings
from ..core.jobs.migration import LegacyMigrationOrchestrator, MigrationTarget
from ..core.jobs.models import (
    CancellationToken,
    Credentials,
    JobResult,
    MigrationResult,
    ProgressEvent,
    ProgressReporter,
    RecordKind,
    RetrofitResult,
)
from ..core.jobs.retrofit import (
    PREVIEW,
    THUMBNAIL,
    DerivativeRetrofitOrchestrator,
    DerivativeSpec,
)
from ..infrastructure.images.resizer import ImageResizer, PillowImageResizer
from ..infrastructure.metadata.credentials import CredentialProvider
from ..infrastructure.metadata.store import MetadataStore
from ..infrastructure.storage.client import StorageClient, create_storage_client
from ..infrastructure.storage.legacy import LegacyStorage, create_legacy_storage

logger = logging.getLogger(__name__)


class JobKind(str, Enum):
    MIGRATION = "migration"
    RETROFIT = "retrofit"


class JobState(str, Enum):
    RUNNING = "running"
    CANCELLING = "cancelling"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


class JobConflictError(Exception):
    """Raised when a job of the same kind is already running."""
    pass


class JobNotFoundError(Exception):
    """Raised when a job id is unknown to the registry."""
    pass


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class JobRunner:
    """
    Builds everything one job run needs, runs it and cleans up.

    store_scope opens the metadata store for the duration of a run. A
    background job can't borrow the request's connection because it keeps
    running after the response went out.

    storage and legacy can be injected (mock mode, tests); injected
    clients are shared and therefore not closed by the runner.
    """

    def __init__(
        self,
        settings: Settings,
        store_scope: Callable[[], AbstractContextManager[MetadataStore]],
        storage: Optional[StorageClient] = None,
        legacy: Optional[LegacyStorage] = None,
        resizer: Optional[ImageResizer] = None,
    ) -> None:
        self._settings = settings
        self._store_scope = store_scope
        self._storage = storage
        self._legacy = legacy
        self._resizer = resizer or PillowImageResizer()

    def _load_credentials(self, store: MetadataStore) -> Optional[Credentials]:
        if self._storage is not None or self._settings.storage_mock_mode:
            return None
        return CredentialProvider(store).load()

    def _open_storage(self, credentials: Optional[Credentials]) -> StorageClient:
        if self._storage is not None:
            return self._storage
        return create_storage_client(
            credentials,
            bucket_name=self._settings.storage_bucket_name,
            public_url_base=self._settings.storage_public_url_base,
            region=self._settings.storage_region,
            timeout_seconds=self._settings.http_timeout_seconds,
            mock_mode=self._settings.storage_mock_mode,
        )

    def _open_legacy(self) -> LegacyStorage:
        if self._legacy is not None:
            return self._legacy
        return create_legacy_storage(
            self._settings.legacy_storage_url,
            self._settings.legacy_storage_service_key,
            timeout_seconds=self._settings.http_timeout_seconds,
            mock_mode=self._settings.storage_mock_mode,
        )

    async def _close(self, storage: StorageClient, legacy: Optional[LegacyStorage]) -> None:
        if storage is not self._storage:
            await storage.aclose()
        if legacy is not None and legacy is not self._legacy:
            await legacy.aclose()

    def _migration_targets(self) -> tuple[MigrationTarget, ...]:
        return (
            MigrationTarget(
                kind=RecordKind.DOCUMENT,
                legacy_bucket=self._settings.legacy_documents_bucket,
                folder="documents",
                default_content_type="application/octet-stream",
            ),
            MigrationTarget(
                kind=RecordKind.IMAGE,
                legacy_bucket=self._settings.legacy_images_bucket,
                folder="picks",
                default_content_type="image/jpeg",
            ),
        )

    def _derivative_specs(self) -> tuple[DerivativeSpec, ...]:
        return (
            DerivativeSpec(
                slot=THUMBNAIL.slot,
                folder=THUMBNAIL.folder,
                max_dimension=self._settings.thumbnail_max_dimension,
                quality=self._settings.thumbnail_quality,
            ),
            DerivativeSpec(
                slot=PREVIEW.slot,
                folder=PREVIEW.folder,
                max_dimension=self._settings.preview_max_dimension,
                quality=self._settings.preview_quality,
            ),
        )

    async def run_migration(
        self,
        reporter: Optional[ProgressReporter] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> MigrationResult:
        """
        Run the legacy migration once.

        Raises ConfigurationError before touching any record when the
        storage credentials are missing.
        """
        with self._store_scope() as store:
            credentials = self._load_credentials(store)
            storage = self._open_storage(credentials)
            legacy = None
            try:
                legacy = self._open_legacy()
                orchestrator = LegacyMigrationOrchestrator(
                    store,
                    storage,
                    legacy,
                    public_domain=self._settings.storage_public_domain,
                    targets=self._migration_targets(),
                    reporter=reporter,
                )
                return await orchestrator.run(cancel)
            finally:
                await self._close(storage, legacy)

    async def run_retrofit(
        self,
        reporter: Optional[ProgressReporter] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RetrofitResult:
        """
        Run the derivative retrofit once.

        The legacy backend is only opened when it is configured (or in
        mock mode); without it, originals still on legacy storage are
        reported as per-image errors.
        """
        with self._store_scope() as store:
            credentials = self._load_credentials(store)
            storage = self._open_storage(credentials)
            legacy = None
            try:
                if (
                    self._legacy is not None
                    or self._settings.storage_mock_mode
                    or (self._settings.legacy_storage_url and self._settings.legacy_storage_service_key)
                ):
                    legacy = self._open_legacy()
                orchestrator = DerivativeRetrofitOrchestrator(
                    store,
                    storage,
                    self._resizer,
                    reporter=reporter,
                    legacy=legacy,
                    legacy_images_bucket=self._settings.legacy_images_bucket,
                    specs=self._derivative_specs(),
                )
                return await orchestrator.run(cancel)
            finally:
                await self._close(storage, legacy)

    def entry_point(self, kind: JobKind) -> Callable[..., Awaitable[JobResult]]:
        if kind is JobKind.MIGRATION:
            return self.run_migration
        return self.run_retrofit


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobStatus:
    """
    One tracked run.

    Doubles as the run's progress reporter: publish() only stores the
    latest event, so it is cheap enough to call from the job loop.
    """
    id: str
    kind: JobKind
    state: JobState = JobState.RUNNING
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    progress: Optional[ProgressEvent] = None
    result: Optional[JobResult] = None
    error: Optional[str] = None
    exception: Optional[Exception] = field(default=None, repr=False)
    cancel_token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def publish(self, event: ProgressEvent) -> None:
        self.progress = event

    @property
    def is_active(self) -> bool:
        return self.state in (JobState.RUNNING, JobState.CANCELLING)


JobFunction = Callable[[JobStatus], Awaitable[JobResult]]


class JobRegistry:
    """
    Tracks job runs by id.

    Only one job of each kind may be active at a time: two concurrent
    migrations would race on the same records. Finished jobs beyond
    `history_limit` are forgotten, oldest first; active jobs are always kept.
    """

    def __init__(self, history_limit: int = 50) -> None:
        self._jobs: dict[str, JobStatus] = {}
        self._lock = threading.Lock()
        self._history_limit = history_limit

    def register(self, kind: JobKind) -> JobStatus:
        with self._lock:
            for job in self._jobs.values():
                if job.kind is kind and job.is_active:
                    raise JobConflictError(f"A {kind.value} job is already running ({job.id})")
            job = JobStatus(id=uuid.uuid4().hex, kind=kind)
            self._jobs[job.id] = job
            self._prune()

        logger.info("Registered job", extra={"job_id": job.id, "kind": kind.value})
        return job

    def _prune(self) -> None:
        finished = [job for job in self._jobs.values() if not job.is_active]
        excess = len(finished) - self._history_limit
        if excess <= 0:
            return
        finished.sort(key=lambda job: job.finished_at or job.started_at)
        for job in finished[:excess]:
            del self._jobs[job.id]

    def get(self, job_id: str) -> JobStatus:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise JobNotFoundError(f"Job {job_id} not found")

    def recent(self) -> list[JobStatus]:
        return sorted(self._jobs.values(), key=lambda job: job.started_at, reverse=True)

    def cancel(self, job_id: str) -> JobStatus:
        """Request a stop. The job halts before its next item."""
        job = self.get(job_id)
        if job.is_active:
            job.cancel_token.cancel()
            job.state = JobState.CANCELLING
            logger.info("Cancellation requested", extra={"job_id": job_id})
        return job

    async def execute(self, job: JobStatus, run: JobFunction) -> JobStatus:
        """
        Run a registered job to completion and record how it ended.

        Failures are recorded on the job rather than raised, so this is
        safe to use as a background task.
        """
        try:
            result = await run(job)
        except asyncio.CancelledError:
            job.state = JobState.CANCELLED
            job.error = "Job task was cancelled"
            logger.warning(
                "Job task cancelled",
                extra={"job_id": job.id, "kind": job.kind.value}
            )
            raise
        except Exception as e:
            job.exception = e
            job.error = str(e)
            job.state = JobState.FAILED
            logger.error(
                "Job failed",
                extra={"job_id": job.id, "kind": job.kind.value, "error": str(e)},
                exc_info=e,
            )
        else:
            job.result = result
            job.state = JobState.CANCELLED if result.cancelled else JobState.SUCCEEDED
            logger.info(
                "Job finished",
                extra={"job_id": job.id, "kind": job.kind.value, "state": job.state.value}
            )
        finally:
            job.finished_at = _utcnow()
            with self._lock:
                self._prune()
        return job

    def launch(self, job: JobStatus, run: JobFunction) -> JobStatus:
        """Run a registered job in the background on the current event loop."""
        job.task = asyncio.get_running_loop().create_task(self.execute(job, run))
        return job


def run_job(runner: JobRunner, kind: JobKind) -> JobFunction:
    """Bind a runner entry point to a tracked job's reporter and cancel token."""
    entry_point = runner.entry_point(kind)

    async def run(job: JobStatus) -> JobResult:
        return await entry_point(reporter=job, cancel=job.cancel_token)

    return run
