"""Batch jobs: legacy migration and derivative retrofit."""

from .migration import LegacyMigrationOrchestrator, MigrationTarget
from .models import (
    CancellationToken,
    ConfigurationError,
    Credentials,
    FileRecord,
    ImageRecord,
    MigrationResult,
    ProgressEvent,
    RecordKind,
    RetrofitResult,
)
from .retrofit import (
    DerivativePlan,
    DerivativeRetrofitOrchestrator,
    DerivativeSpec,
    DerivativeState,
    classify_derivative,
)

__all__ = [
    "CancellationToken",
    "ConfigurationError",
    "Credentials",
    "DerivativePlan",
    "DerivativeRetrofitOrchestrator",
    "DerivativeSpec",
    "DerivativeState",
    "FileRecord",
    "ImageRecord",
    "LegacyMigrationOrchestrator",
    "MigrationResult",
    "MigrationTarget",
    "ProgressEvent",
    "RecordKind",
    "RetrofitResult",
    "classify_derivative",
]
