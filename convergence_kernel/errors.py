"""
Error taxonomy for the convergence kernel.

Transient failures are absorbed by the submission engine and only surface as a
final `failed` status once retries are exhausted. Stale events and duplicate
confirmations are not errors at all; they exist as exceptions so the code
paths that produce them can signal them without inventing sentinel values.
"""

from typing import Any, Optional


class ConvergenceError(Exception):
    """Base class for everything raised by the kernel."""
    pass


class DeliveryFailure(ConvergenceError):
    """A send did not result in the remote side accepting the operation."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryFailure(DeliveryFailure):
    """Retryable: timeout, dropped connection, 503 and friends."""
    pass


class TerminalDeliveryFailure(DeliveryFailure):
    """Not retryable: the remote side rejected the operation outright."""
    pass


class DuplicateConfirmed(ConvergenceError):
    """The remote side had already applied this token. Idempotent success."""
    pass


class ReconciliationStaleEvent(ConvergenceError):
    """An event was not newer than the stored snapshot and was discarded."""

    def __init__(
        self,
        entity_id: str,
        stored_version: int,
        incoming_version: int,
        stored: Optional[Any] = None,
    ):
        super().__init__(
            f"Stale event for {entity_id}: version {incoming_version} "
            f"<= stored {stored_version}"
        )
        self.entity_id = entity_id
        self.stored_version = stored_version
        self.incoming_version = incoming_version
        self.stored = stored        # The snapshot that won


class PersistenceCorrupt(ConvergenceError):
    """A persisted record (or the whole store) could not be read back."""
    pass


class UnknownOperation(ConvergenceError, LookupError):
    """No ledger entry exists for the token."""
    pass


class InvalidTransition(ConvergenceError):
    """The requested status change is not allowed by the ledger state machine."""
    pass


class TokenConflict(ConvergenceError):
    """A token was reused for a different payload."""
    pass


class NotResubmittable(ConvergenceError):
    """Only failed operations can be resubmitted, and only under a new token."""
    pass
