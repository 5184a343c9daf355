"""
Pipeline State

One PipelineState per session, owned and mutated only by the
orchestrator driving that session.

    pending -> decomposition -> research -> analysis -> validation
            -> (analysis again on failed validation, at most 3 times)
            -> progress -> complete
    any stage -> error
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from horus.utils import HorusError


class PipelineStatus(str, Enum):
    PENDING       = "pending"
    DECOMPOSITION = "decomposition"
    RESEARCH      = "research"
    ANALYSIS      = "analysis"
    VALIDATION    = "validation"
    PROGRESS      = "progress"
    COMPLETE      = "complete"
    ERROR         = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStatus.COMPLETE, PipelineStatus.ERROR)


@dataclass
class PipelineError:
    stage: str
    message: str
    retryable: bool
    code: str = "unknown-error"
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, stage: str, exc: Exception) -> "PipelineError":
        if isinstance(exc, HorusError):
            return cls(stage=stage, message=exc.message, retryable=exc.retryable,
                       code=exc.code, details=dict(exc.details))
        return cls(stage=stage, message=str(exc) or type(exc).__name__, retryable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "message": self.message,
            "retryable": self.retryable,
            "code": self.code,
            "details": self.details,
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PipelineState:
    session_id: str
    status: PipelineStatus = PipelineStatus.PENDING
    current_stage: Optional[str] = None
    decomposition: Optional[Dict[str, Any]] = None
    research: Optional[Dict[str, Any]] = None
    analysis: Optional[Dict[str, Any]] = None
    validation: Optional[Dict[str, Any]] = None
    progress: Optional[Dict[str, Any]] = None
    progress_error: Optional[PipelineError] = None
    revision_count: int = 0
    error: Optional[PipelineError] = None
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    cancel_requested: bool = False

    def transition(self, status: PipelineStatus) -> None:
        self.status = status
        if not status.is_terminal:
            self.current_stage = status.value
        else:
            self.completed_at = _now_ms()

    def fail(self, stage: str, exc: Exception) -> None:
        self.error = PipelineError.from_exception(stage, exc)
        self.transition(PipelineStatus.ERROR)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "current_stage": self.current_stage,
            "decomposition": self.decomposition,
            "research": self.research,
            "analysis": self.analysis,
            "validation": self.validation,
            "progress": self.progress,
            "progress_error": self.progress_error.to_dict() if self.progress_error else None,
            "revision_count": self.revision_count,
            "error": self.error.to_dict() if self.error else None,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "cancel_requested": self.cancel_requested,
        }
