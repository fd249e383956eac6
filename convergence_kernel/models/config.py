"""Configuration for the submission engine, reconciler and kernel."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class BackoffPolicy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class ValidationMode(str, Enum):
    RELAXED = "relaxed"
    STRICT = "strict"


class SubmissionConfig(BaseModel):
    """Configuration for the Idempotent Submission Engine."""

    max_attempts: int = Field(ge=1, default=5)
    retry_delay_seconds: float = Field(ge=0, default=2.0)
    backoff: BackoffPolicy = BackoffPolicy.FIXED
    backoff_multiplier: float = Field(ge=1, default=2.0)
    max_retry_delay_seconds: float = Field(ge=0, default=60.0)
    endpoint: str = "/api/transactions"
    request_timeout_seconds: float = Field(gt=0, default=10.0)


class ReconcilerSettings(BaseModel):
    """Configuration for the Out-of-Order Event Reconciler."""

    activity_feed_size: int = Field(ge=1, default=50)


class KernelConfig(BaseModel):
    db_path: str = ":memory:"
    backend_url: Optional[str] = None      # Deliver over HTTP instead of in-process
    log_level: str = "INFO"
    validation_mode: ValidationMode = ValidationMode.RELAXED
    submission: SubmissionConfig = SubmissionConfig()
    reconciler: ReconcilerSettings = ReconcilerSettings()
