"""
Simulated idempotency backend.

Stands in for the remote service the engine writes to. It keys accepted
transactions by idempotency token and, on a replay, returns the original
success instead of reprocessing. Rejections are never remembered, so a token
that was rejected would be processed afresh if it came back.

Failures are injected according to a FaultProfile:
  - transient_failure_rate: answer 503 without processing
  - delayed_success_rate: process, but only after a delay
Everything else is processed immediately.
"""

import random
import threading
import time
from datetime import datetime
from typing import Callable, Dict, Optional

from pydantic import BaseModel, Field

from convergence_kernel.logs import get_logger

logger = get_logger("backend")

REQUIRED_FIELDS = ("email", "amount")


class FaultProfile(BaseModel):
    """How often the simulated backend misbehaves."""

    transient_failure_rate: float = Field(ge=0, le=1, default=0.3)
    delayed_success_rate: float = Field(ge=0, le=1, default=0.2)
    min_delay_seconds: float = Field(ge=0, default=5.0)
    max_delay_seconds: float = Field(ge=0, default=10.0)


NO_FAULTS = FaultProfile(transient_failure_rate=0.0, delayed_success_rate=0.0)


class BackendResponse(BaseModel):
    status_code: int
    body: dict


class StoredTransaction(BaseModel):
    token: str
    email: str
    amount: float
    accepted_at: datetime


class IdempotentBackend:
    """
    In-memory idempotency backend with fault injection.
    `rng` and `sleep` are injectable so tests can make it deterministic.
    """

    def __init__(
        self,
        fault_profile: Optional[FaultProfile] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.fault_profile = fault_profile or FaultProfile()
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._accepted: Dict[str, StoredTransaction] = {}
        self._lock = threading.Lock()
        self.request_count = 0

    @property
    def accepted(self) -> Dict[str, StoredTransaction]:
        with self._lock:
            return dict(self._accepted)

    @property
    def accepted_count(self) -> int:
        with self._lock:
            return len(self._accepted)

    def process(self, token: str, body: dict) -> BackendResponse:
        """Handle one delivery of the transaction identified by `token`."""
        with self._lock:
            self.request_count += 1

        missing = [f for f in REQUIRED_FIELDS if not body.get(f)]
        if not token or missing:
            return BackendResponse(
                status_code=400,
                body={"error": f"Missing required fields: {', '.join(missing) or 'idempotency_key'}"},
            )

        with self._lock:
            if token in self._accepted:
                logger.info("Idempotent replay for %s", token)
                return self._success(token, replayed=True)

        roll = self._rng.random()
        profile = self.fault_profile

        if roll < profile.transient_failure_rate:
            logger.info("Simulating 503 for %s", token)
            return BackendResponse(
                status_code=503,
                body={"error": "Service temporarily unavailable"},
            )

        if roll < profile.transient_failure_rate + profile.delayed_success_rate:
            delay = self._rng.uniform(profile.min_delay_seconds, profile.max_delay_seconds)
            logger.info("Simulating delayed success for %s (%.1fs)", token, delay)
            self._sleep(delay)

        try:
            amount = float(body["amount"])
        except (TypeError, ValueError):
            return BackendResponse(status_code=400, body={"error": "amount must be a number"})

        with self._lock:
            # A concurrent delivery of the same token may have landed during the delay.
            if token in self._accepted:
                return self._success(token, replayed=True)
            self._accepted[token] = StoredTransaction(
                token=token,
                email=str(body["email"]),
                amount=amount,
                accepted_at=datetime.utcnow(),
            )

        logger.info("Accepted transaction %s", token)
        return self._success(token, replayed=False)

    @staticmethod
    def _success(token: str, replayed: bool) -> BackendResponse:
        return BackendResponse(
            status_code=200,
            body={
                "message": (
                    "Transaction already processed" if replayed
                    else "Transaction recorded successfully"
                ),
                "status": "success",
                "id": token,
                "replayed": replayed,
            },
        )
