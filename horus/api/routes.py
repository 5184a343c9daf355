"""
FastAPI endpoints for the clinical analysis pipeline.

Sessions are stored first, then a pipeline run is triggered for them;
status is polled by session id.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from horus import __version__
from horus.core.metrics.registry import METRIC_REGISTRY
from horus.core.metrics.session import SessionMetrics
from horus.core.pipeline import PipelineOrchestrator, PipelineStatus
from horus.core.visualization import (
    EvaluationContext,
    block_from_dict,
    evaluate_block,
    evaluate_formula,
    validate_formula,
)
from horus.models import (
    CancelResponse,
    EvaluatedValueResponse,
    FormulaEvaluateRequest,
    FormulaValidateRequest,
    FormulaValidateResponse,
    HealthResponse,
    MetricDefinitionResponse,
    MetricsListResponse,
    RenderResponse,
    SessionMetricsRequest,
    SessionStoredResponse,
    TriggerResponse,
)
from horus.utils import get_logger

logger = get_logger(__name__)

START_TIME = datetime.now()

health_router = APIRouter(tags=["Health"])
router = APIRouter(prefix="/api/v1")


def _orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def _require_session(orchestrator: PipelineOrchestrator, session_id: str) -> SessionMetrics:
    metrics = orchestrator.store.get_session(session_id)
    if metrics is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return metrics


def _context_for(orchestrator: PipelineOrchestrator, metrics: SessionMetrics) -> EvaluationContext:
    history = [
        s for s in orchestrator.store.get_history(metrics.patient_id, before=metrics.recorded_at)
        if s.session_id != metrics.session_id
    ]
    return EvaluationContext(
        current=metrics,
        previous=history[-1] if history else None,
        baseline=history[0] if history else None,
        history=history,
    )


# ---- Health ----

@health_router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    orchestrator = _orchestrator(request)
    cache = orchestrator.cache
    invoker = orchestrator.invoker
    return HealthResponse(
        status="healthy",
        version=__version__,
        timestamp=datetime.now().isoformat(),
        uptime_seconds=(datetime.now() - START_TIME).total_seconds(),
        model_available=bool(getattr(invoker, "is_available", True)),
        cache_entries=len(cache) if cache is not None else 0,
    )


# ---- Reference ----

@router.get("/metrics", response_model=MetricsListResponse, tags=["Reference"])
async def list_metrics():
    """List every registered metric with its benchmark thresholds."""
    metrics = [MetricDefinitionResponse(**m.to_dict()) for m in METRIC_REGISTRY.values()]
    return MetricsListResponse(metrics=metrics, count=len(metrics))


# ---- Sessions ----

@router.post("/sessions", response_model=SessionStoredResponse, tags=["Sessions"])
async def store_session(payload: SessionMetricsRequest, request: Request):
    """Store computed metrics for a session so a pipeline run can be triggered."""
    try:
        metrics = SessionMetrics.from_dict(payload.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    _orchestrator(request).store.save_session(metrics)
    logger.info(f"Stored metrics for session {metrics.session_id}")
    return SessionStoredResponse(session_id=metrics.session_id, patient_id=metrics.patient_id)


# ---- Pipeline ----

def _trigger_response(orchestrator: PipelineOrchestrator, session_id: str, accepted: bool) -> TriggerResponse:
    state = orchestrator.status(session_id)
    status = state.status.value if state else PipelineStatus.PENDING.value
    if accepted:
        message = "Pipeline started"
    elif orchestrator.is_running(session_id):
        message = "Pipeline already running"
    else:
        message = "Pipeline already complete"
    return TriggerResponse(session_id=session_id, accepted=accepted, status=status, message=message)


@router.post("/pipeline/{session_id}/trigger", response_model=TriggerResponse, tags=["Pipeline"])
async def trigger_pipeline(session_id: str, request: Request):
    """Start a run. Ignored while one is in flight or once the session has completed."""
    orchestrator = _orchestrator(request)
    _require_session(orchestrator, session_id)
    future = orchestrator.trigger(session_id)
    return _trigger_response(orchestrator, session_id, future is not None)


@router.post("/pipeline/{session_id}/retrigger", response_model=TriggerResponse, tags=["Pipeline"])
async def retrigger_pipeline(session_id: str, request: Request):
    """Start a fresh run regardless of the previous outcome."""
    orchestrator = _orchestrator(request)
    _require_session(orchestrator, session_id)
    future = orchestrator.retrigger(session_id)
    return _trigger_response(orchestrator, session_id, future is not None)


@router.post("/pipeline/{session_id}/cancel", response_model=CancelResponse, tags=["Pipeline"])
async def cancel_pipeline(session_id: str, request: Request):
    orchestrator = _orchestrator(request)
    _require_session(orchestrator, session_id)
    return CancelResponse(session_id=session_id, cancelled=orchestrator.cancel(session_id))


@router.get("/pipeline/{session_id}", tags=["Pipeline"])
async def get_pipeline_status(session_id: str, request: Request):
    """Current pipeline state, including every stage output produced so far."""
    orchestrator = _orchestrator(request)
    state = orchestrator.status(session_id)
    if state is None:
        _require_session(orchestrator, session_id)
        raise HTTPException(status_code=404, detail=f"No pipeline run for session: {session_id}")
    return state.to_dict()


@router.get("/pipeline/{session_id}/render", response_model=RenderResponse, tags=["Pipeline"])
async def render_blocks(session_id: str, request: Request):
    """Evaluate the stored visualization blocks against the session's live metrics."""
    orchestrator = _orchestrator(request)
    metrics = _require_session(orchestrator, session_id)
    state = orchestrator.status(session_id)
    if state is None or not state.analysis:
        raise HTTPException(status_code=404, detail=f"No analysis available for session: {session_id}")

    context = _context_for(orchestrator, metrics)
    visualization = state.analysis.get("visualization", {})
    rendered = {}
    for mode in ("overall_blocks", "session_blocks"):
        rendered[mode] = [
            evaluate_block(block_from_dict(raw), context).to_dict()
            for raw in visualization.get(mode, [])
        ]
    return RenderResponse(session_id=session_id, **rendered)


# ---- Formulas ----

@router.post("/formulas/validate", response_model=FormulaValidateResponse, tags=["Formulas"])
async def validate_formula_endpoint(payload: FormulaValidateRequest):
    result = validate_formula(payload.formula, payload.target_metric)
    return FormulaValidateResponse(valid=result["valid"], errors=result["errors"])


@router.post("/formulas/evaluate", response_model=EvaluatedValueResponse, tags=["Formulas"])
async def evaluate_formula_endpoint(payload: FormulaEvaluateRequest, request: Request):
    """Evaluate a formula against a stored session and its patient history."""
    orchestrator = _orchestrator(request)
    metrics = _require_session(orchestrator, payload.session_id)
    result = evaluate_formula(
        payload.formula,
        _context_for(orchestrator, metrics),
        target_metric=payload.target_metric,
        unit=payload.unit,
    )
    return EvaluatedValueResponse(**result.to_dict())


# ---- Evidence ----

@router.get("/evidence/stats", tags=["Evidence"])
async def evidence_stats(request: Request, detail: Optional[bool] = False):
    cache = _orchestrator(request).cache
    if cache is None:
        raise HTTPException(status_code=503, detail="Evidence cache not configured")
    stats = cache.stats()
    if detail:
        stats["entries"] = [e.to_dict() for e in cache.entries]
    return stats
