"""
Convergence Kernel API — FastAPI endpoints.

Exposes the kernel's functionality via a REST API for:
- Operation submission, inspection, resubmission and discard
- Event ingestion and the reconciled entity views
- Recent-activity diagnostics
- Payload validation rules
- The simulated idempotency backend the engine delivers to
"""

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from convergence_kernel.activity.feed import ActivityFeed
from convergence_kernel.backend.idempotent import IdempotentBackend
from convergence_kernel.config import load_config
from convergence_kernel.errors import NotResubmittable, TokenConflict, UnknownOperation
from convergence_kernel.logs import configure_logging
from convergence_kernel.models.config import KernelConfig, SubmissionConfig, ValidationMode
from convergence_kernel.models.snapshot import EntityEvent
from convergence_kernel.reconciliation.reconciler import OutOfOrderReconciler
from convergence_kernel.reconciliation.snapshot_map import ReconciliationMap
from convergence_kernel.submission.engine import SubmissionEngine
from convergence_kernel.submission.ledger import SubmissionLedger
from convergence_kernel.submission.resumption import ResumptionManager
from convergence_kernel.submission.scheduler import RetryScheduler, Timers
from convergence_kernel.submission.transport import HttpTransport, InProcessTransport, Transport
from convergence_kernel.validation.rules import rules_for, validate_payload


# --- Request/Response Models ---

class OperationCreateRequest(BaseModel):
    payload: dict
    token: Optional[str] = None
    submit: bool = True


class ValidationModeRequest(BaseModel):
    mode: ValidationMode


class ValidationCheckRequest(BaseModel):
    payload: dict
    mode: Optional[ValidationMode] = None


# --- Application Factory ---

def create_app(
    config: Optional[KernelConfig] = None,
    ledger: Optional[SubmissionLedger] = None,
    snapshot_map: Optional[ReconciliationMap] = None,
    transport: Optional[Transport] = None,
    backend: Optional[IdempotentBackend] = None,
    timers: Optional[Timers] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    cfg = config or KernelConfig()

    # Initialize components; only close what we opened ourselves.
    owned = []
    if ledger is None:
        ledger = SubmissionLedger(cfg.db_path)
        owned.append(ledger)
    if snapshot_map is None:
        snapshot_map = ReconciliationMap(cfg.db_path)
        owned.append(snapshot_map)

    be = backend or IdempotentBackend()
    if transport is None:
        if cfg.backend_url:
            transport = HttpTransport.for_base_url(
                cfg.backend_url, cfg.submission.request_timeout_seconds
            )
            owned.append(transport)
        else:
            transport = InProcessTransport(be)

    activity = ActivityFeed(cfg.reconciler.activity_feed_size)
    scheduler = RetryScheduler(cfg.submission, timers)
    engine = SubmissionEngine(
        ledger=ledger,
        transport=transport,
        scheduler=scheduler,
        activity=activity,
    )
    reconciler = OutOfOrderReconciler(snapshot_map, activity, cfg.reconciler)
    resumption = ResumptionManager(ledger, engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(cfg.log_level)
        app.state.resumed = [op.token for op in resumption.resume()]
        yield
        engine.shutdown()
        for resource in owned:
            resource.close()

    app = FastAPI(
        title="Convergence Kernel API",
        description="Idempotent submission and out-of-order event reconciliation",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store components on app state for access in endpoints
    app.state.config = cfg
    app.state.ledger = ledger
    app.state.snapshot_map = snapshot_map
    app.state.backend = be
    app.state.activity = activity
    app.state.engine = engine
    app.state.reconciler = reconciler
    app.state.resumption = resumption
    app.state.validation_mode = cfg.validation_mode
    app.state.resumed = []

    # === OPERATIONS ===

    @app.post("/operations")
    def create_operation(req: OperationCreateRequest):
        """Validate, record and (by default) submit a new operation."""
        errors = validate_payload(rules_for(app.state.validation_mode), req.payload)
        if errors:
            raise HTTPException(422, {"errors": errors})
        try:
            if req.submit:
                operation = engine.create_and_submit(req.payload, req.token)
            else:
                operation = engine.create(req.payload, req.token)
        except TokenConflict as e:
            raise HTTPException(409, str(e))
        except UnknownOperation:
            # Discarded before its first attempt started.
            raise HTTPException(404, "Operation not found")
        return operation.model_dump(mode="json")

    @app.get("/operations")
    def list_operations():
        """All operations, newest first."""
        return [op.model_dump(mode="json") for op in ledger.all()]

    @app.delete("/operations")
    def clear_operations():
        """Discard every operation, cancelling pending retries."""
        return {"discarded": engine.clear()}

    @app.post("/operations/purge")
    def purge_operations():
        """Remove confirmed and failed operations."""
        return {"purged": engine.purge_terminal()}

    @app.get("/operations/{token}")
    def get_operation(token: str):
        operation = ledger.get(token)
        if not operation:
            raise HTTPException(404, "Operation not found")
        return operation.model_dump(mode="json")

    @app.post("/operations/{token}/submit")
    def submit_operation(token: str):
        """Attempt delivery now. A no-op for terminal or outstanding operations."""
        try:
            return engine.submit(token).model_dump(mode="json")
        except UnknownOperation:
            raise HTTPException(404, "Operation not found")

    @app.post("/operations/{token}/resubmit")
    def resubmit_operation(token: str):
        """Send a failed operation's payload again under a new token."""
        try:
            return engine.resubmit(token).model_dump(mode="json")
        except UnknownOperation:
            raise HTTPException(404, "Operation not found")
        except NotResubmittable as e:
            raise HTTPException(409, str(e))

    @app.delete("/operations/{token}")
    def discard_operation(token: str):
        if not engine.discard(token):
            raise HTTPException(404, "Operation not found")
        return {"status": "discarded", "token": token}

    # === EVENTS & ENTITIES ===

    @app.post("/events")
    def apply_event(event: EntityEvent):
        """Merge one notification into the reconciliation map."""
        return reconciler.apply(event).model_dump(mode="json")

    @app.post("/events/batch")
    def apply_events(events: List[EntityEvent]):
        """Merge notifications in the order given."""
        return [r.model_dump(mode="json") for r in reconciler.apply_many(events)]

    @app.get("/entities/active")
    def active_entities():
        """Current entities, tombstones excluded."""
        return [s.model_dump(mode="json") for s in reconciler.active_entities()]

    @app.get("/entities/history")
    def entity_history():
        """Every snapshot, tombstones included, newest first."""
        return [s.model_dump(mode="json") for s in reconciler.full_history()]

    @app.get("/entities/{entity_id}")
    def get_entity(entity_id: str):
        snapshot = reconciler.get(entity_id)
        if not snapshot:
            raise HTTPException(404, "Entity not found")
        return snapshot.model_dump(mode="json")

    # === DIAGNOSTICS ===

    @app.get("/activity")
    def recent_activity(limit: int = Query(20, ge=1)):
        """Most recent events and operation changes, newest first."""
        return [e.model_dump(mode="json") for e in activity.recent(limit)]

    @app.get("/status")
    def status():
        return {
            "operations": ledger.count_by_status(),
            "armed_retries": scheduler.armed_tokens(),
            "in_flight": sorted(engine.in_flight),
            "snapshots": snapshot_map.count(),
            "active_entities": len(reconciler.active_entities()),
        }

    @app.get("/config")
    def get_config():
        return {
            **cfg.model_dump(mode="json"),
            "submission": engine.config.model_dump(mode="json"),
            "validation_mode": app.state.validation_mode.value,
        }

    @app.put("/config/submission")
    def update_submission_config(config: SubmissionConfig):
        """Update retry policy. Applies to attempts made from now on."""
        engine.config = config
        return config.model_dump(mode="json")

    # === VALIDATION ===

    @app.get("/validation/mode")
    def get_validation_mode():
        mode = app.state.validation_mode
        return {"mode": mode.value, "rules": rules_for(mode).model_dump()}

    @app.put("/validation/mode")
    def set_validation_mode(req: ValidationModeRequest):
        app.state.validation_mode = req.mode
        return {"mode": req.mode.value, "rules": rules_for(req.mode).model_dump()}

    @app.post("/validation/check")
    def check_payload(req: ValidationCheckRequest):
        """Validate a payload without creating anything."""
        mode = req.mode or app.state.validation_mode
        errors = validate_payload(rules_for(mode), req.payload)
        return {"mode": mode.value, "valid": not errors, "errors": errors}

    # === SIMULATED BACKEND ===

    @app.post("/api/transactions")
    def receive_transaction(
        body: dict,
        idempotency_key: Optional[str] = Header(default=None),
    ):
        """Idempotent write endpoint with fault injection."""
        token = body.get("idempotency_key") or idempotency_key or ""
        response = be.process(token, body)
        return JSONResponse(status_code=response.status_code, content=response.body)

    return app


# Default application instance
app = create_app(load_config())
