"""
Retry Scheduler — decides whether and when an operation is retried, and owns
the timers that carry out the retry.

Each token has at most one armed timer. Arming again replaces the old one;
cancelling by token guarantees the callback will not run afterwards, which is
what keeps a purged operation from being resurrected by a stale retry.

Timer backends:
  ThreadingTimers — wall-clock timers on daemon threads (production)
  VirtualTimers   — a manually advanced clock (tests, simulations)
"""

import heapq
import itertools
import threading
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from convergence_kernel.logs import get_logger
from convergence_kernel.models.config import BackoffPolicy, SubmissionConfig

logger = get_logger("submission.scheduler")


class Timers(Protocol):
    """Minimal timer facility: schedule a callback, get back a cancel handle."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> Callable[[], None]: ...


class ThreadingTimers:
    """Real timers backed by threading.Timer."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> Callable[[], None]:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer.cancel


class VirtualTimers:
    """
    Deterministic timers driven by `advance()`.
    Callbacks run synchronously on the caller's thread, in due-time order.
    """

    def __init__(self, start: float = 0.0):
        self.now = start
        self._queue: List[Tuple[float, int, Callable[[], None]]] = []
        self._cancelled = set()
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def call_later(self, delay: float, callback: Callable[[], None]) -> Callable[[], None]:
        with self._lock:
            seq = next(self._seq)
            heapq.heappush(self._queue, (self.now + delay, seq, callback))

        def cancel() -> None:
            with self._lock:
                self._cancelled.add(seq)

        return cancel

    def advance(self, seconds: float) -> int:
        """Move the clock forward and run everything that fell due. Returns callbacks run."""
        target = self.now + seconds
        fired = 0
        while True:
            with self._lock:
                if not self._queue or self._queue[0][0] > target:
                    break
                due, seq, callback = heapq.heappop(self._queue)
                self.now = max(self.now, due)
                if seq in self._cancelled:
                    self._cancelled.discard(seq)
                    continue
            callback()
            fired += 1
        self.now = target
        return fired

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for _, seq, _ in self._queue if seq not in self._cancelled)


class RetryScheduler:
    """Retry policy plus per-token timer ownership."""

    def __init__(
        self,
        config: Optional[SubmissionConfig] = None,
        timers: Optional[Timers] = None,
    ):
        self.config = config or SubmissionConfig()
        self.timers = timers or ThreadingTimers()
        self._armed: Dict[str, Tuple[int, Callable[[], None]]] = {}
        self._generation = itertools.count()
        self._lock = threading.Lock()

    # --- Policy ---

    def should_retry(self, attempt_count: int) -> bool:
        return attempt_count < self.config.max_attempts

    def next_delay(self, attempt_count: int) -> Optional[float]:
        """
        Delay before the attempt following `attempt_count` completed attempts,
        or None once the budget is spent.
        """
        if not self.should_retry(attempt_count):
            return None

        base = self.config.retry_delay_seconds
        if self.config.backoff == BackoffPolicy.EXPONENTIAL:
            delay = base * (self.config.backoff_multiplier ** max(0, attempt_count - 1))
            return min(delay, self.config.max_retry_delay_seconds)
        return base

    # --- Timers ---

    def arm(self, token: str, delay: float, callback: Callable[[], None]) -> None:
        """Schedule `callback` for `token`, replacing any timer already armed."""
        generation = next(self._generation)

        def fire() -> None:
            with self._lock:
                current = self._armed.get(token)
                if current is None or current[0] != generation:
                    return  # Cancelled or superseded
                del self._armed[token]
            callback()

        with self._lock:
            previous = self._armed.pop(token, None)
            if previous is not None:
                previous[1]()
            cancel = self.timers.call_later(delay, fire)
            self._armed[token] = (generation, cancel)

        logger.info(
            "Retry armed for %s in %.2fs", token, delay,
            extra={"structured": {"token": token, "delay_seconds": delay}},
        )

    def cancel(self, token: str) -> bool:
        """Cancel the armed timer for `token`. True if one was armed."""
        with self._lock:
            armed = self._armed.pop(token, None)
        if armed is None:
            return False
        armed[1]()
        logger.info("Retry cancelled for %s", token, extra={"structured": {"token": token}})
        return True

    def is_armed(self, token: str) -> bool:
        with self._lock:
            return token in self._armed

    def armed_tokens(self) -> List[str]:
        with self._lock:
            return sorted(self._armed)

    def shutdown(self) -> None:
        """Cancel every armed timer."""
        with self._lock:
            armed = list(self._armed.values())
            self._armed.clear()
        for _, cancel in armed:
            cancel()
