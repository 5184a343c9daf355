"""
API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SessionMetricsRequest(BaseModel):
    """Computed metrics for one recorded session."""
    session_id: str = Field(..., min_length=1)
    patient_id: Optional[str] = None
    left_leg: Dict[str, float] = Field(default_factory=dict)
    right_leg: Dict[str, float] = Field(default_factory=dict)
    bilateral: Dict[str, float] = Field(default_factory=dict)
    recorded_at: int = Field(..., ge=0, description="Epoch milliseconds")
    movement_type: str = "unknown"
    opi_score: Optional[float] = Field(None, ge=0, le=100)
    opi_grade: Optional[str] = None
    title: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    activity_profile: Optional[str] = None
    sets: Optional[int] = Field(None, ge=0)
    reps: Optional[int] = Field(None, ge=0)


class SessionStoredResponse(BaseModel):
    session_id: str
    patient_id: Optional[str] = None
    stored: bool = True


class TriggerResponse(BaseModel):
    session_id: str
    accepted: bool
    status: str
    message: str = ""


class CancelResponse(BaseModel):
    session_id: str
    cancelled: bool


class FormulaValidateRequest(BaseModel):
    formula: str = Field(..., min_length=1)
    target_metric: Optional[str] = None


class FormulaValidateResponse(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class FormulaEvaluateRequest(BaseModel):
    formula: str = Field(..., min_length=1)
    session_id: str
    target_metric: Optional[str] = None
    unit: str = ""


class EvaluatedValueResponse(BaseModel):
    value: float
    formatted: str
    success: bool
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    uptime_seconds: float
    model_available: bool
    cache_entries: int


class MetricDefinitionResponse(BaseModel):
    name: str
    display_name: str
    domain: str
    direction: str
    scope: str
    unit: str
    good: float
    poor: float
    icc: float
    citation: str = ""
    active_in_opi: bool = False
    meaningful: bool = True


class MetricsListResponse(BaseModel):
    metrics: List[MetricDefinitionResponse]
    count: int


class RenderResponse(BaseModel):
    session_id: str
    overall_blocks: List[Dict[str, Any]] = Field(default_factory=list)
    session_blocks: List[Dict[str, Any]] = Field(default_factory=list)
