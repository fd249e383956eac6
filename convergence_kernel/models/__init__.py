"""Convergence Kernel data models."""

from convergence_kernel.models.activity import ActivityEntry, ActivityKind
from convergence_kernel.models.config import (
    BackoffPolicy,
    KernelConfig,
    ReconcilerSettings,
    SubmissionConfig,
    ValidationMode,
)
from convergence_kernel.models.operation import (
    ALLOWED_TRANSITIONS,
    DeliveryOutcome,
    DeliveryStatus,
    FaultClass,
    Operation,
    OperationStatus,
)
from convergence_kernel.models.snapshot import (
    ApplyResult,
    EntityEvent,
    EntitySnapshot,
    EventKind,
    SnapshotReplaced,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ActivityEntry",
    "ActivityKind",
    "ApplyResult",
    "BackoffPolicy",
    "DeliveryOutcome",
    "DeliveryStatus",
    "EntityEvent",
    "EntitySnapshot",
    "EventKind",
    "FaultClass",
    "KernelConfig",
    "Operation",
    "OperationStatus",
    "ReconcilerSettings",
    "SnapshotReplaced",
    "SubmissionConfig",
    "ValidationMode",
]
