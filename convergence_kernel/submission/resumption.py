"""
Resumption Manager — re-enters interrupted operations after a restart.

Operations found pending or retrying keep their attempt_count, so a restart
never grants extra retry budget.
"""

from typing import List

from convergence_kernel.errors import ConvergenceError
from convergence_kernel.logs import get_logger
from convergence_kernel.models.operation import Operation
from convergence_kernel.submission.engine import SubmissionEngine
from convergence_kernel.submission.ledger import SubmissionLedger

logger = get_logger("submission.resumption")


class ResumptionManager:

    def __init__(self, ledger: SubmissionLedger, engine: SubmissionEngine):
        self.ledger = ledger
        self.engine = engine

    def resume(self) -> List[Operation]:
        """Submit every incomplete operation once. Returns their records afterwards."""
        resumed = []
        for operation in self.ledger.incomplete():
            logger.info(
                "Resuming %s (%s, %d attempts so far)",
                operation.token, operation.status.value, operation.attempt_count,
                extra={"structured": {
                    "token": operation.token,
                    "attempt_count": operation.attempt_count,
                }},
            )
            try:
                resumed.append(self.engine.submit(operation.token))
            except ConvergenceError as e:
                logger.warning("Could not resume %s: %s", operation.token, e)
        return resumed
