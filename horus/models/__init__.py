from .pipeline import (
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

__all__ = [
    "CancelResponse",
    "EvaluatedValueResponse",
    "FormulaEvaluateRequest",
    "FormulaValidateRequest",
    "FormulaValidateResponse",
    "HealthResponse",
    "MetricDefinitionResponse",
    "MetricsListResponse",
    "RenderResponse",
    "SessionMetricsRequest",
    "SessionStoredResponse",
    "TriggerResponse",
]
