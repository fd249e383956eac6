"""Operation — one logical write request and the outcomes of delivering it."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class OperationStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (OperationStatus.CONFIRMED, OperationStatus.FAILED)


# No transition ever leaves a terminal state.
ALLOWED_TRANSITIONS = {
    OperationStatus.PENDING: {
        OperationStatus.RETRYING,
        OperationStatus.CONFIRMED,
        OperationStatus.FAILED,
    },
    OperationStatus.RETRYING: {
        OperationStatus.RETRYING,
        OperationStatus.CONFIRMED,
        OperationStatus.FAILED,
    },
    OperationStatus.CONFIRMED: set(),
    OperationStatus.FAILED: set(),
}


class Operation(BaseModel):
    """A logical write, keyed by its idempotency token."""

    token: str                              # Never reused
    payload: dict                           # Immutable after creation
    status: OperationStatus = OperationStatus.PENDING
    attempt_count: int = Field(ge=0, default=0)
    created_at: datetime                    # Display/ordering only
    updated_at: Optional[datetime] = None
    last_error: Optional[str] = None
    resubmitted_from: Optional[str] = None  # Token of the failed operation this replaces

    @property
    def terminal(self) -> bool:
        return self.status.terminal


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    TERMINAL_FAILURE = "terminal_failure"
    DUPLICATE_CONFIRMED = "duplicate_confirmed"


class DeliveryOutcome(BaseModel):
    """What a transport reports back for a single send."""

    status: DeliveryStatus
    status_code: Optional[int] = None       # HTTP status, when there is one
    detail: Optional[str] = None


class FaultClass(str, Enum):
    SUCCESS = "success"
    DUPLICATE_CONFIRMED = "duplicate_confirmed"
    TRANSIENT = "transient"
    TERMINAL = "terminal"
