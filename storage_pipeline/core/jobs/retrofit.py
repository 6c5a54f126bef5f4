"""
Derivative retrofit: backfill WebP thumbnails and previews.

Older images either have no derivatives at all or have JPEG/PNG ones
generated before the switch to WebP. This job brings every image record
up to date:

1. Classify each derivative slot as CURRENT, MISSING or LEGACY.
2. Images with both slots CURRENT are skipped without any I/O.
3. Otherwise fetch the original once, generate only the missing or
   legacy derivatives, upload them and write only the changed fields.
4. After the write, delete the superseded legacy derivatives.

Cleanup runs strictly after the metadata write. If the write fails, the
old derivatives stay in place and keep the record displayable.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Optional, Sequence
from urllib.parse import urlsplit

from .models import (
    CancellationToken,
    ImageRecord,
    ItemOutcome,
    ItemStatus,
    NullProgressReporter,
    ProgressEvent,
    ProgressReporter,
    RetrofitResult,
    publish_progress,
)
from .ports import LegacySource, ObjectStore, RecordStore, Resizer

logger = logging.getLogger(__name__)

JOB_NAME = "retrofit"

CURRENT_EXTENSION = ".webp"


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

class DerivativeState(Enum):
    """State of one derivative slot on an image record."""
    CURRENT = "current"
    MISSING = "missing"
    LEGACY = "legacy"


def classify_derivative(url: Optional[str]) -> DerivativeState:
    """
    CURRENT iff the URL path ends in .webp (case-insensitive).

    The query string and fragment are ignored, so a cache-busting
    ?v=2 doesn't turn a WebP derivative into a legacy one.
    """
    if not url or not url.strip():
        return DerivativeState.MISSING
    path = urlsplit(url.strip()).path
    if path.lower().endswith(CURRENT_EXTENSION):
        return DerivativeState.CURRENT
    return DerivativeState.LEGACY


@dataclass(frozen=True)
class DerivativeSpec:
    """How one derivative slot is produced."""
    slot: str
    folder: str
    max_dimension: int
    quality: float


THUMBNAIL = DerivativeSpec(slot="thumbnail", folder="picks/thumbnails", max_dimension=400, quality=0.75)
PREVIEW = DerivativeSpec(slot="preview", folder="picks/previews", max_dimension=1600, quality=0.8)


@dataclass(frozen=True)
class DerivativePlan:
    """Classification of both slots, computed once per image."""
    thumbnail: DerivativeState
    preview: DerivativeState

    @classmethod
    def for_image(cls, image: ImageRecord) -> "DerivativePlan":
        return cls(
            thumbnail=classify_derivative(image.thumbnail_url),
            preview=classify_derivative(image.preview_url),
        )

    def state_of(self, slot: str) -> DerivativeState:
        return getattr(self, slot)

    @property
    def is_current(self) -> bool:
        return (
            self.thumbnail is DerivativeState.CURRENT
            and self.preview is DerivativeState.CURRENT
        )


def derivative_file_name(file_name: str) -> str:
    """photo.final.JPG -> photo.final.webp"""
    stem = PurePosixPath(file_name).stem if file_name else ""
    return f"{stem or 'image'}{CURRENT_EXTENSION}"


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class DerivativeRetrofitOrchestrator:
    """
    Runs the derivative retrofit over all image records.

    Originals that are still on the legacy backend are read from the
    legacy images bucket when a legacy source is configured.
    """

    def __init__(
        self,
        store: RecordStore,
        storage: ObjectStore,
        resizer: Resizer,
        reporter: Optional[ProgressReporter] = None,
        legacy: Optional[LegacySource] = None,
        legacy_images_bucket: str = "picks-images",
        specs: Sequence[DerivativeSpec] = (THUMBNAIL, PREVIEW),
    ) -> None:
        self._store = store
        self._storage = storage
        self._resizer = resizer
        self._reporter = reporter or NullProgressReporter()
        self._legacy = legacy
        self._legacy_images_bucket = legacy_images_bucket
        self._specs = tuple(specs)

    async def run(self, cancel: Optional[CancellationToken] = None) -> RetrofitResult:
        """
        Retrofit every image record.

        Raises whatever the store raises if the images can't be listed;
        per-image failures end up in result.errors instead.
        """
        images = self._store.list_images()
        result = RetrofitResult()

        logger.info("Starting derivative retrofit", extra={"candidates": len(images)})

        for position, image in enumerate(images, start=1):
            if cancel is not None and cancel.is_cancelled():
                result.cancelled = True
                logger.info(
                    "Derivative retrofit cancelled",
                    extra={"position": position, "candidates": len(images)}
                )
                break

            result.total += 1
            outcome = await self._retrofit_image(image, result)

            publish_progress(
                self._reporter,
                ProgressEvent(
                    job=JOB_NAME,
                    position=position,
                    candidates=len(images),
                    record_id=image.id,
                    file_name=image.file_name,
                    status=outcome.status,
                    counts=result.counts(),
                ),
            )

        logger.info("Derivative retrofit finished", extra=result.counts())
        return result

    async def _retrofit_image(self, image: ImageRecord, result: RetrofitResult) -> ItemOutcome:
        plan = DerivativePlan.for_image(image)

        if plan.is_current:
            outcome = self._outcome(image, ItemStatus.SKIPPED, "Derivatives already current")
            result.record_skip(outcome)
            return outcome

        try:
            original = await self._fetch_original(image)
        except Exception as e:
            return self._fail(result, image, f"Fetch failed: {e}")

        new_urls: dict[str, str] = {}
        new_keys: list[str] = []
        superseded: list[str] = []

        for spec in self._specs:
            state = plan.state_of(spec.slot)
            if state is DerivativeState.CURRENT:
                continue

            try:
                data = await self._resizer.resize(original, spec.max_dimension, spec.quality)
                uploaded = await self._storage.upload_file(
                    spec.folder,
                    derivative_file_name(image.file_name),
                    data,
                    self._resizer.content_type,
                )
            except Exception as e:
                await self._discard(new_keys)
                return self._fail(result, image, f"{spec.slot.capitalize()} generation failed: {e}")

            new_urls[spec.slot] = uploaded.public_url
            new_keys.append(uploaded.key)
            if state is DerivativeState.LEGACY:
                superseded.append(getattr(image, f"{spec.slot}_url"))

        try:
            self._store.update_derivatives(
                image.id,
                thumbnail_url=new_urls.get(THUMBNAIL.slot),
                preview_url=new_urls.get(PREVIEW.slot),
            )
        except Exception as e:
            logger.error(
                "Derivative update failed after upload",
                extra={"record_id": image.id, "keys": new_keys, "error": str(e)}
            )
            return self._fail(
                result,
                image,
                f"Database update failed after upload to {', '.join(new_keys)}: {e}",
            )

        if THUMBNAIL.slot in new_urls:
            result.thumbnails_created += 1
        if PREVIEW.slot in new_urls:
            result.previews_created += 1

        await self._cleanup(image, superseded, result)

        outcome = self._outcome(
            image,
            ItemStatus.PROCESSED,
            f"Created {' and '.join(sorted(new_urls))}",
        )
        result.record_processed(outcome)

        logger.info(
            "Retrofitted image",
            extra={"record_id": image.id, "slots": sorted(new_urls)}
        )
        return outcome

    async def _fetch_original(self, image: ImageRecord) -> bytes:
        if not image.file_path:
            raise ValueError("no file path")
        if image.is_url:
            return await self._storage.fetch_url(image.file_path)
        if self._legacy is None:
            raise ValueError(f"original {image.file_path} is on legacy storage")
        legacy_file = await self._legacy.download(self._legacy_images_bucket, image.file_path)
        return legacy_file.content

    async def _discard(self, keys: list[str]) -> None:
        """Drop derivatives uploaded for an image that then failed."""
        if not keys:
            return
        try:
            await self._storage.delete_objects(keys)
        except Exception as e:
            logger.warning("Could not discard derivatives", extra={"keys": keys, "error": str(e)})

    async def _cleanup(self, image: ImageRecord, superseded: list[str], result: RetrofitResult) -> None:
        """Best-effort delete of legacy derivatives the record no longer points at."""
        keys = []
        for url in superseded:
            key = self._storage.key_from_public_url(url)
            if key is None:
                result.warnings.append(f"{image.file_name}: {url} is not on object storage, left in place")
                continue
            keys.append(key)

        if not keys:
            return

        try:
            deleted = await self._storage.delete_objects(keys)
        except Exception as e:
            deleted = 0
            logger.warning(
                "Superseded derivative cleanup failed",
                extra={"record_id": image.id, "error": str(e)}
            )

        if deleted < len(keys):
            result.warnings.append(
                f"{image.file_name}: {len(keys) - deleted} of {len(keys)} superseded "
                f"derivatives not deleted ({', '.join(keys)})"
            )

    @staticmethod
    def _outcome(image: ImageRecord, status: ItemStatus, message: str) -> ItemOutcome:
        return ItemOutcome(
            kind=image.kind,
            record_id=image.id,
            file_name=image.file_name,
            status=status,
            message=message,
        )

    def _fail(self, result: RetrofitResult, image: ImageRecord, message: str) -> ItemOutcome:
        logger.warning(
            "Retrofit of image failed",
            extra={"record_id": image.id, "error": message}
        )
        outcome = self._outcome(image, ItemStatus.ERROR, message)
        result.record_error(outcome)
        return outcome
