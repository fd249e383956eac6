"""
Idempotent Submission Engine — delivers a ledgered operation effectively once.

Behavioral Contract:
- `submit(token)` issues exactly one send per invocation, with the same
  idempotency token every time, so a backend that keys on the token applies
  the operation once no matter how often it is delivered.
- success / duplicate-confirmed → confirmed; terminal → failed at once;
  transient → retrying and re-armed after the scheduler's delay, until
  attempt_count reaches max_attempts, then failed.
- At most one attempt per token is outstanding. A second `submit` while an
  attempt is in flight or a retry is armed is a no-op that returns the
  current record. A `submit` on a terminal operation returns it unchanged.
- Transient failures never surface to the caller; only the final status does.
- Discarding an operation cancels its armed retry before removing it, so a
  stale timer cannot bring it back.
"""

import threading
from datetime import datetime
from typing import Callable, Optional, Set, Tuple
from uuid import uuid4

from convergence_kernel.activity.feed import ActivityFeed
from convergence_kernel.errors import NotResubmittable, UnknownOperation
from convergence_kernel.logs import get_logger
from convergence_kernel.models.config import SubmissionConfig
from convergence_kernel.models.operation import FaultClass, Operation, OperationStatus
from convergence_kernel.submission.classifier import FaultClassifier
from convergence_kernel.submission.ledger import SubmissionLedger
from convergence_kernel.submission.scheduler import RetryScheduler
from convergence_kernel.submission.transport import Transport

logger = get_logger("submission.engine")


def _new_token() -> str:
    return str(uuid4())


class SubmissionEngine:
    """Drives operations through the ledger state machine."""

    def __init__(
        self,
        ledger: SubmissionLedger,
        transport: Transport,
        scheduler: Optional[RetryScheduler] = None,
        classifier: Optional[FaultClassifier] = None,
        activity: Optional[ActivityFeed] = None,
        config: Optional[SubmissionConfig] = None,
        token_factory: Callable[[], str] = _new_token,
    ):
        self.ledger = ledger
        self.transport = transport
        if scheduler is None:
            scheduler = RetryScheduler(config)
        elif config is not None:
            scheduler.config = config
        self.scheduler = scheduler
        self.classifier = classifier or FaultClassifier()
        self.activity = activity
        self._token_factory = token_factory

        self._in_flight: Set[str] = set()
        self._in_flight_lock = threading.Lock()

    @property
    def config(self) -> SubmissionConfig:
        return self.scheduler.config

    @config.setter
    def config(self, value: SubmissionConfig) -> None:
        self.scheduler.config = value

    @property
    def in_flight(self) -> Set[str]:
        with self._in_flight_lock:
            return set(self._in_flight)

    # --- Creation ---

    def create(self, payload: dict, token: Optional[str] = None) -> Operation:
        """Record a new pending operation. Mints a token when none is given."""
        operation = Operation(
            token=token or self._token_factory(),
            payload=payload,
            created_at=datetime.utcnow(),
        )
        operation = self.ledger.create(operation)
        self._record(operation, "created")
        return operation

    def create_and_submit(self, payload: dict, token: Optional[str] = None) -> Operation:
        operation = self.create(payload, token)
        return self.submit(operation.token)

    def resubmit(self, token: str) -> Operation:
        """
        Retry a failed operation by hand. The failed record stays as it is;
        the payload goes out again under a freshly minted token.
        """
        original = self.ledger.get(token)
        if original is None:
            raise UnknownOperation(f"No operation recorded for token {token}")
        if original.status != OperationStatus.FAILED:
            raise NotResubmittable(
                f"Operation {token} is {original.status.value}; only failed operations can be resubmitted"
            )

        replacement = Operation(
            token=self._token_factory(),
            payload=original.payload,
            created_at=datetime.utcnow(),
            resubmitted_from=token,
        )
        replacement = self.ledger.create(replacement)
        self._record(replacement, f"resubmitted from {token}")
        return self.submit(replacement.token)

    # --- Delivery ---

    def submit(self, token: str) -> Operation:
        """Make one delivery attempt for `token`, unless one is already outstanding."""
        return self._submit(token, from_timer=False)

    def _submit(self, token: str, from_timer: bool) -> Operation:
        with self._in_flight_lock:
            outstanding = token in self._in_flight or (
                not from_timer and self.scheduler.is_armed(token)
            )
            if not outstanding:
                self._in_flight.add(token)

        if outstanding:
            logger.debug("Submit for %s ignored; an attempt is already outstanding", token)
            return self._require(token)

        retry_delay = None
        try:
            operation, retry_delay = self._attempt(token)
        finally:
            # Leaving the in-flight set and arming the retry happen together;
            # a due timer never finds this attempt outstanding.
            with self._in_flight_lock:
                self._in_flight.discard(token)
                if retry_delay is not None:
                    self.scheduler.arm(token, retry_delay, lambda: self._on_retry_due(token))

        if retry_delay is not None and self.ledger.get(token) is None:
            # Discarded between the transition and arming the timer.
            self.scheduler.cancel(token)
        return operation

    def _attempt(self, token: str) -> Tuple[Operation, Optional[float]]:
        """One delivery attempt. Returns the record and the delay before the next one, if any."""
        operation = self._require(token)
        if operation.terminal:
            return operation, None

        # Budget spent before a restart interrupted the final transition.
        if not self.scheduler.should_retry(operation.attempt_count):
            return self._finish(
                token,
                OperationStatus.FAILED,
                f"retry budget exhausted after {operation.attempt_count} attempts",
            ), None

        operation = self.ledger.record_attempt(token)

        try:
            outcome = self.transport.send(self.config.endpoint, operation.payload, token)
        except Exception as e:
            outcome = e

        try:
            return self._settle(operation, outcome)
        except UnknownOperation:
            logger.info(
                "Operation %s was discarded while attempt %d was in flight",
                token, operation.attempt_count,
                extra={"structured": {"token": token, "attempt": operation.attempt_count}},
            )
            return operation, None

    def _settle(self, operation: Operation, outcome) -> Tuple[Operation, Optional[float]]:
        token = operation.token
        fault = self.classifier.classify(outcome)
        reason = self.classifier.describe(outcome)
        logger.info(
            "Attempt %d for %s: %s", operation.attempt_count, token, fault.value,
            extra={"structured": {
                "token": token,
                "attempt": operation.attempt_count,
                "fault": fault.value,
                "reason": reason,
            }},
        )

        if fault in (FaultClass.SUCCESS, FaultClass.DUPLICATE_CONFIRMED):
            return self._finish(token, OperationStatus.CONFIRMED), None

        if fault == FaultClass.TERMINAL:
            return self._finish(token, OperationStatus.FAILED, reason), None

        delay = self.scheduler.next_delay(operation.attempt_count)
        if delay is None:
            return self._finish(
                token,
                OperationStatus.FAILED,
                f"retries exhausted after {operation.attempt_count} attempts ({reason})",
            ), None

        updated = self.ledger.transition(token, OperationStatus.RETRYING, reason)
        self._record(updated, f"attempt {updated.attempt_count} failed; retrying in {delay:.1f}s")
        return updated, delay

    def _on_retry_due(self, token: str) -> None:
        """Timer callback. Nothing raised here may escape into the timer thread."""
        try:
            self._submit(token, from_timer=True)
        except UnknownOperation:
            logger.info("Retry for %s skipped; operation was discarded", token)
        except Exception:
            logger.exception(
                "Retry for %s failed unexpectedly; left for resumption", token,
                extra={"structured": {"token": token}},
            )

    def _finish(
        self, token: str, status: OperationStatus, error: Optional[str] = None
    ) -> Operation:
        operation = self.ledger.transition(token, status, error)
        if status == OperationStatus.FAILED:
            logger.warning(
                "Operation %s failed: %s", token, error,
                extra={"structured": {"token": token, "attempts": operation.attempt_count}},
            )
        self._record(operation, status.value)
        return operation

    # --- Removal ---

    def discard(self, token: str) -> bool:
        """Cancel any pending retry, then purge the operation."""
        self.scheduler.cancel(token)
        removed = self.ledger.purge(token)
        if removed and self.activity is not None:
            self.activity.record_note(token, "discarded")
        return removed

    def clear(self) -> int:
        """Discard every operation."""
        return sum(1 for op in self.ledger.all() if self.discard(op.token))

    def purge_terminal(self) -> int:
        return self.ledger.purge_terminal()

    def shutdown(self) -> None:
        self.scheduler.shutdown()

    # --- Internals ---

    def _require(self, token: str) -> Operation:
        operation = self.ledger.get(token)
        if operation is None:
            raise UnknownOperation(f"No operation recorded for token {token}")
        return operation

    def _record(self, operation: Operation, summary: str) -> None:
        if self.activity is not None:
            self.activity.record_operation(operation, summary)
