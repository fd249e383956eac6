"""
Fault Classifier — maps a transport outcome onto the engine's fault classes.

Transports either return a DeliveryOutcome or raise. Both are accepted:

    DeliveryOutcome(success)              → SUCCESS
    DeliveryOutcome(duplicate_confirmed)  → DUPLICATE_CONFIRMED
    DeliveryOutcome(transient_failure)    → TRANSIENT
    DeliveryOutcome(terminal_failure)     → TERMINAL
    DuplicateConfirmed                    → DUPLICATE_CONFIRMED
    TerminalDeliveryFailure               → TERMINAL
    anything else raised                  → TRANSIENT

Unrecognised exceptions are treated as transient: the retry bound keeps that
from looping forever, and a dropped connection looks no different from one.
"""

from typing import Union

from convergence_kernel.errors import DuplicateConfirmed, TerminalDeliveryFailure
from convergence_kernel.models.operation import DeliveryOutcome, DeliveryStatus, FaultClass

_BY_STATUS = {
    DeliveryStatus.SUCCESS: FaultClass.SUCCESS,
    DeliveryStatus.DUPLICATE_CONFIRMED: FaultClass.DUPLICATE_CONFIRMED,
    DeliveryStatus.TRANSIENT_FAILURE: FaultClass.TRANSIENT,
    DeliveryStatus.TERMINAL_FAILURE: FaultClass.TERMINAL,
}


class FaultClassifier:
    """Stateless; one instance can be shared freely."""

    def classify(self, outcome: Union[DeliveryOutcome, BaseException]) -> FaultClass:
        if isinstance(outcome, DeliveryOutcome):
            return _BY_STATUS[outcome.status]
        if isinstance(outcome, DuplicateConfirmed):
            return FaultClass.DUPLICATE_CONFIRMED
        if isinstance(outcome, TerminalDeliveryFailure):
            return FaultClass.TERMINAL
        return FaultClass.TRANSIENT

    @staticmethod
    def describe(outcome: Union[DeliveryOutcome, BaseException]) -> str:
        """Short human-readable reason, stored as the operation's last_error."""
        if isinstance(outcome, DeliveryOutcome):
            parts = [outcome.status.value]
            if outcome.status_code is not None:
                parts.append(f"HTTP {outcome.status_code}")
            if outcome.detail:
                parts.append(outcome.detail)
            return ": ".join(parts)
        return f"{type(outcome).__name__}: {outcome}"
