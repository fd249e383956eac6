"""Tests for the Idempotent Submission Engine, Fault Classifier and Retry Scheduler."""

import threading
import time

import pytest

from convergence_kernel.backend.idempotent import NO_FAULTS, IdempotentBackend
from convergence_kernel.errors import (
    DuplicateConfirmed,
    NotResubmittable,
    TerminalDeliveryFailure,
    TransientDeliveryFailure,
    UnknownOperation,
)
from convergence_kernel.models.config import BackoffPolicy, SubmissionConfig
from convergence_kernel.models.operation import (
    DeliveryOutcome,
    DeliveryStatus,
    FaultClass,
    OperationStatus,
)
from convergence_kernel.submission.classifier import FaultClassifier
from convergence_kernel.submission.engine import SubmissionEngine
from convergence_kernel.submission.ledger import SubmissionLedger
from convergence_kernel.submission.scheduler import RetryScheduler, ThreadingTimers, VirtualTimers
from convergence_kernel.submission.transport import InProcessTransport

PAYLOAD = {"email": "buyer@example.com", "amount": 42.5}

SUCCESS = DeliveryStatus.SUCCESS
TRANSIENT = DeliveryStatus.TRANSIENT_FAILURE
TERMINAL = DeliveryStatus.TERMINAL_FAILURE
DUPLICATE = DeliveryStatus.DUPLICATE_CONFIRMED


class _ScriptedTransport:
    """Replays a fixed script of outcomes; the last one repeats forever."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = []

    def send(self, endpoint, body, token):
        self.calls.append((endpoint, token))
        step = self.script[min(len(self.calls), len(self.script)) - 1]
        if isinstance(step, BaseException):
            raise step
        return DeliveryOutcome(status=step)


class _LostResponseTransport:
    """Delivers to the backend but reports the first response as lost."""

    def __init__(self, backend):
        self.inner = InProcessTransport(backend)
        self.calls = 0

    def send(self, endpoint, body, token):
        self.calls += 1
        outcome = self.inner.send(endpoint, body, token)
        if self.calls == 1:
            return DeliveryOutcome(status=TRANSIENT, detail="response lost")
        return outcome


class _BlockingTransport:
    """Holds the first send open until released."""

    def __init__(self, backend):
        self.inner = InProcessTransport(backend)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def send(self, endpoint, body, token):
        self.calls += 1
        self.entered.set()
        self.release.wait(timeout=5)
        return self.inner.send(endpoint, body, token)


class _DiscardingTransport:
    """Discards the operation through the engine while its send is outstanding."""

    def __init__(self, status):
        self.status = status
        self.engine = None

    def send(self, endpoint, body, token):
        assert self.engine.discard(token) is True
        return DeliveryOutcome(status=self.status)


class _SlowReadLedger(SubmissionLedger):
    """Stretches reads made on the submitting thread so timers get a chance to fire."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.submitter = threading.current_thread()

    def get(self, token):
        if threading.current_thread() is self.submitter:
            time.sleep(0.02)
        return super().get(token)


def _make_engine(transport, config=None):
    timers = VirtualTimers()
    ledger = SubmissionLedger(db_path=":memory:")
    scheduler = RetryScheduler(config or SubmissionConfig(), timers)
    engine = SubmissionEngine(ledger, transport, scheduler)
    return engine, ledger, timers


class TestFaultClassifier:
    def setup_method(self):
        self.classifier = FaultClassifier()

    def test_classifies_outcomes(self):
        assert self.classifier.classify(DeliveryOutcome(status=SUCCESS)) == FaultClass.SUCCESS
        assert self.classifier.classify(DeliveryOutcome(status=DUPLICATE)) == FaultClass.DUPLICATE_CONFIRMED
        assert self.classifier.classify(DeliveryOutcome(status=TRANSIENT)) == FaultClass.TRANSIENT
        assert self.classifier.classify(DeliveryOutcome(status=TERMINAL)) == FaultClass.TERMINAL

    def test_classifies_exceptions(self):
        assert self.classifier.classify(DuplicateConfirmed("seen")) == FaultClass.DUPLICATE_CONFIRMED
        assert self.classifier.classify(TerminalDeliveryFailure("400")) == FaultClass.TERMINAL
        assert self.classifier.classify(TransientDeliveryFailure("503")) == FaultClass.TRANSIENT
        assert self.classifier.classify(TimeoutError()) == FaultClass.TRANSIENT
        assert self.classifier.classify(ConnectionResetError()) == FaultClass.TRANSIENT

    def test_unknown_exception_is_transient(self):
        assert self.classifier.classify(RuntimeError("boom")) == FaultClass.TRANSIENT

    def test_describe(self):
        outcome = DeliveryOutcome(status=TRANSIENT, status_code=503, detail="unavailable")
        assert FaultClassifier.describe(outcome) == "transient_failure: HTTP 503: unavailable"
        assert FaultClassifier.describe(TimeoutError("slow")) == "TimeoutError: slow"


class TestRetryScheduler:
    def test_fixed_delay(self):
        scheduler = RetryScheduler(SubmissionConfig(), VirtualTimers())
        assert [scheduler.next_delay(n) for n in range(1, 5)] == [2.0, 2.0, 2.0, 2.0]
        assert scheduler.next_delay(5) is None

    def test_exponential_backoff_is_capped(self):
        config = SubmissionConfig(
            max_attempts=10,
            retry_delay_seconds=1.0,
            backoff=BackoffPolicy.EXPONENTIAL,
            backoff_multiplier=2.0,
            max_retry_delay_seconds=5.0,
        )
        scheduler = RetryScheduler(config, VirtualTimers())
        assert [scheduler.next_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]
        assert scheduler.next_delay(10) is None

    def test_arm_fires_once_when_due(self):
        timers = VirtualTimers()
        scheduler = RetryScheduler(SubmissionConfig(), timers)
        fired = []
        scheduler.arm("t1", 2.0, lambda: fired.append("t1"))

        assert scheduler.is_armed("t1")
        assert timers.advance(1.0) == 0
        assert timers.advance(1.0) == 1
        assert fired == ["t1"]
        assert not scheduler.is_armed("t1")

    def test_cancel_prevents_callback(self):
        timers = VirtualTimers()
        scheduler = RetryScheduler(SubmissionConfig(), timers)
        fired = []
        scheduler.arm("t1", 2.0, lambda: fired.append("t1"))

        assert scheduler.cancel("t1") is True
        assert scheduler.cancel("t1") is False
        timers.advance(10)
        assert fired == []

    def test_rearm_replaces_previous_timer(self):
        timers = VirtualTimers()
        scheduler = RetryScheduler(SubmissionConfig(), timers)
        fired = []
        scheduler.arm("t1", 1.0, lambda: fired.append("first"))
        scheduler.arm("t1", 3.0, lambda: fired.append("second"))

        timers.advance(10)
        assert fired == ["second"]

    def test_shutdown_cancels_everything(self):
        timers = VirtualTimers()
        scheduler = RetryScheduler(SubmissionConfig(), timers)
        fired = []
        scheduler.arm("a", 1.0, lambda: fired.append("a"))
        scheduler.arm("b", 1.0, lambda: fired.append("b"))

        scheduler.shutdown()
        timers.advance(5)
        assert fired == []
        assert scheduler.armed_tokens() == []


class TestSubmissionEngine:
    def test_transient_then_success(self):
        """Two transient failures then success: attempt_count=3, confirmed, later submits are no-ops."""
        transport = _ScriptedTransport([TRANSIENT, TRANSIENT, SUCCESS])
        engine, ledger, timers = _make_engine(transport)
        engine.create(PAYLOAD, token="K1")

        first = engine.submit("K1")
        assert first.status == OperationStatus.RETRYING
        assert first.attempt_count == 1
        assert engine.scheduler.is_armed("K1")

        timers.advance(2.0)
        assert ledger.get("K1").attempt_count == 2
        assert ledger.get("K1").status == OperationStatus.RETRYING

        timers.advance(2.0)
        confirmed = ledger.get("K1")
        assert confirmed.status == OperationStatus.CONFIRMED
        assert confirmed.attempt_count == 3

        again = engine.submit("K1")
        assert again.status == OperationStatus.CONFIRMED
        assert again.attempt_count == 3
        assert len(transport.calls) == 3

    def test_same_token_sent_every_attempt(self):
        transport = _ScriptedTransport([TRANSIENT, SUCCESS])
        engine, _, timers = _make_engine(transport)
        engine.create(PAYLOAD, token="K2")

        engine.submit("K2")
        timers.advance(2.0)
        assert transport.calls == [("/api/transactions", "K2"), ("/api/transactions", "K2")]

    def test_retry_bound(self):
        """Every attempt transient: failed after exactly max_attempts attempts."""
        transport = _ScriptedTransport([TRANSIENT])
        engine, ledger, timers = _make_engine(transport)
        engine.create(PAYLOAD, token="K3")

        engine.submit("K3")
        timers.advance(1000)

        final = ledger.get("K3")
        assert final.status == OperationStatus.FAILED
        assert final.attempt_count == 5
        assert len(transport.calls) == 5
        assert "retries exhausted" in final.last_error
        assert not engine.scheduler.is_armed("K3")

    def test_retry_bound_respects_config(self):
        transport = _ScriptedTransport([TRANSIENT])
        engine, ledger, timers = _make_engine(transport, SubmissionConfig(max_attempts=2))
        engine.create(PAYLOAD, token="K4")

        engine.submit("K4")
        timers.advance(1000)
        assert ledger.get("K4").attempt_count == 2
        assert len(transport.calls) == 2

    def test_terminal_failure_is_not_retried(self):
        transport = _ScriptedTransport([TERMINAL, SUCCESS])
        engine, ledger, timers = _make_engine(transport)
        engine.create(PAYLOAD, token="K5")

        result = engine.submit("K5")
        assert result.status == OperationStatus.FAILED
        assert result.attempt_count == 1
        assert not engine.scheduler.is_armed("K5")

        timers.advance(1000)
        assert len(transport.calls) == 1

    def test_duplicate_confirmed_counts_as_success(self):
        transport = _ScriptedTransport([DUPLICATE])
        engine, _, _ = _make_engine(transport)
        engine.create(PAYLOAD, token="K6")

        assert engine.submit("K6").status == OperationStatus.CONFIRMED

    def test_transport_exceptions_are_classified(self):
        transport = _ScriptedTransport([ConnectionError("reset"), TerminalDeliveryFailure("rejected")])
        engine, ledger, timers = _make_engine(transport)
        engine.create(PAYLOAD, token="K7")

        assert engine.submit("K7").status == OperationStatus.RETRYING
        timers.advance(2.0)

        final = ledger.get("K7")
        assert final.status == OperationStatus.FAILED
        assert "TerminalDeliveryFailure" in final.last_error

    def test_lost_response_is_applied_once(self):
        """The backend applies the first delivery; the replay confirms it without a second effect."""
        backend = IdempotentBackend(NO_FAULTS)
        transport = _LostResponseTransport(backend)
        engine, ledger, timers = _make_engine(transport)
        engine.create(PAYLOAD, token="K8")

        engine.submit("K8")
        timers.advance(2.0)

        assert ledger.get("K8").status == OperationStatus.CONFIRMED
        assert backend.accepted_count == 1
        assert backend.request_count == 2

    def test_sequential_duplicate_submission(self):
        backend = IdempotentBackend(NO_FAULTS)
        engine, ledger, _ = _make_engine(InProcessTransport(backend))

        first = engine.create_and_submit(PAYLOAD, token="K9")
        second = engine.create_and_submit(PAYLOAD, token="K9")

        assert first.status == second.status == OperationStatus.CONFIRMED
        assert ledger.count() == 1
        assert backend.accepted_count == 1
        assert backend.request_count == 1

    def test_concurrent_submit_is_noop(self):
        """A second submit while the first is in flight sends nothing."""
        backend = IdempotentBackend(NO_FAULTS)
        transport = _BlockingTransport(backend)
        engine, ledger, _ = _make_engine(transport)
        engine.create(PAYLOAD, token="K10")

        worker = threading.Thread(target=engine.submit, args=("K10",))
        worker.start()
        assert transport.entered.wait(timeout=5)

        concurrent = engine.submit("K10")
        assert concurrent.status == OperationStatus.PENDING
        assert "K10" in engine.in_flight

        transport.release.set()
        worker.join(timeout=5)

        assert ledger.get("K10").status == OperationStatus.CONFIRMED
        assert transport.calls == 1
        assert backend.accepted_count == 1

    def test_submit_while_retry_armed_is_noop(self):
        transport = _ScriptedTransport([TRANSIENT, SUCCESS])
        engine, ledger, timers = _make_engine(transport)
        engine.create(PAYLOAD, token="K11")

        engine.submit("K11")
        waiting = engine.submit("K11")
        assert waiting.status == OperationStatus.RETRYING
        assert len(transport.calls) == 1

        timers.advance(2.0)
        assert ledger.get("K11").status == OperationStatus.CONFIRMED
        assert len(transport.calls) == 2

    def test_retry_due_immediately_is_not_lost(self):
        """A timer that fires as soon as it is armed still gets its attempt."""
        transport = _ScriptedTransport([TRANSIENT, SUCCESS])
        ledger = _SlowReadLedger(db_path=":memory:")
        scheduler = RetryScheduler(SubmissionConfig(retry_delay_seconds=0.005), ThreadingTimers())
        engine = SubmissionEngine(ledger, transport, scheduler)
        engine.create(PAYLOAD, token="K16")

        engine.submit("K16")

        deadline = time.monotonic() + 5
        while not ledger.get("K16").terminal and time.monotonic() < deadline:
            time.sleep(0.01)

        assert ledger.get("K16").status == OperationStatus.CONFIRMED
        assert len(transport.calls) == 2
        engine.shutdown()

    def test_discard_during_send(self):
        transport = _DiscardingTransport(SUCCESS)
        engine, ledger, timers = _make_engine(transport)
        transport.engine = engine
        engine.create(PAYLOAD, token="K17")

        result = engine.submit("K17")

        assert result.token == "K17"
        assert result.attempt_count == 1
        assert ledger.get("K17") is None
        assert "K17" not in engine.in_flight

    def test_discard_during_failing_send_arms_nothing(self):
        transport = _DiscardingTransport(TRANSIENT)
        engine, ledger, timers = _make_engine(transport)
        transport.engine = engine
        engine.create(PAYLOAD, token="K18")

        engine.submit("K18")

        assert not engine.scheduler.is_armed("K18")
        assert timers.pending == 0
        assert ledger.get("K18") is None

    def test_submit_unknown_token(self):
        engine, _, _ = _make_engine(_ScriptedTransport([SUCCESS]))
        with pytest.raises(UnknownOperation):
            engine.submit("missing")

    def test_spent_budget_fails_without_sending(self):
        transport = _ScriptedTransport([SUCCESS])
        engine, ledger, _ = _make_engine(transport)
        engine.create(PAYLOAD, token="K12")
        for _ in range(5):
            ledger.record_attempt("K12")
        ledger.transition("K12", OperationStatus.RETRYING)

        result = engine.submit("K12")
        assert result.status == OperationStatus.FAILED
        assert result.attempt_count == 5
        assert transport.calls == []

    def test_discard_cancels_pending_retry(self):
        transport = _ScriptedTransport([TRANSIENT, SUCCESS])
        engine, ledger, timers = _make_engine(transport)
        engine.create(PAYLOAD, token="K13")
        engine.submit("K13")

        assert engine.discard("K13") is True
        assert not engine.scheduler.is_armed("K13")

        assert timers.advance(100) == 0
        assert ledger.get("K13") is None
        assert len(transport.calls) == 1

    def test_clear_discards_everything(self):
        engine, ledger, timers = _make_engine(_ScriptedTransport([TRANSIENT]))
        engine.create(PAYLOAD, token="a")
        engine.create(PAYLOAD, token="b")
        engine.submit("a")

        assert engine.clear() == 2
        assert ledger.count() == 0
        assert timers.pending == 0

    def test_mints_tokens(self):
        engine, _, _ = _make_engine(_ScriptedTransport([SUCCESS]))
        first = engine.create(PAYLOAD)
        second = engine.create(PAYLOAD)
        assert first.token != second.token

    def test_resubmit_failed_uses_new_token(self):
        transport = _ScriptedTransport([TERMINAL, SUCCESS])
        engine, ledger, _ = _make_engine(transport)
        engine.create(PAYLOAD, token="K14")
        engine.submit("K14")

        replacement = engine.resubmit("K14")
        assert replacement.token != "K14"
        assert replacement.resubmitted_from == "K14"
        assert replacement.payload == PAYLOAD
        assert replacement.status == OperationStatus.CONFIRMED
        assert ledger.get("K14").status == OperationStatus.FAILED

    def test_resubmit_requires_failed(self):
        engine, _, _ = _make_engine(_ScriptedTransport([SUCCESS]))
        engine.create_and_submit(PAYLOAD, token="K15")

        with pytest.raises(NotResubmittable):
            engine.resubmit("K15")
        with pytest.raises(UnknownOperation):
            engine.resubmit("missing")

    def test_activity_is_recorded(self):
        from convergence_kernel.activity.feed import ActivityFeed

        activity = ActivityFeed(max_entries=10)
        transport = _ScriptedTransport([TRANSIENT, SUCCESS])
        timers = VirtualTimers()
        engine = SubmissionEngine(
            SubmissionLedger(),
            transport,
            RetryScheduler(SubmissionConfig(), timers),
            activity=activity,
        )
        engine.create(PAYLOAD, token="K16")
        engine.submit("K16")
        timers.advance(2.0)

        summaries = [e.summary for e in activity.recent()]
        assert summaries[0] == "confirmed"
        assert summaries[-1] == "created"
        assert any("retrying" in s for s in summaries)
