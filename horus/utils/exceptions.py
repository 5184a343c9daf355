"""
Custom Exception Hierarchy

Error categories raised inside the pipeline. Each carries a stable code
(surfaced in PipelineState.error) and a ``retryable`` hint the
orchestrator uses when deciding whether a failure is worth another attempt.
"""
from typing import Optional, Dict, Any, List


class HorusError(Exception):
    """Base exception for all pipeline errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str = "unknown-error",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details
        }


class StageInputError(HorusError):
    """A stage was started without the input it needs (no metrics, no prior output)."""

    def __init__(
        self,
        message: str,
        stage: str = "unknown",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code="stage-input-missing",
            details={"stage": stage, **(details or {})}
        )
        self.stage = stage


class GenerativeCallError(HorusError):
    """The generative-text collaborator failed or timed out."""

    retryable = True

    def __init__(
        self,
        message: str,
        agent: str = "unknown",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code="generative-call-failed",
            details={"agent": agent, **(details or {})}
        )
        self.agent = agent


class ParseError(HorusError):
    """Generative output could not be turned into the expected structure."""

    def __init__(
        self,
        message: str,
        agent: str = "unknown",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code="malformed-output",
            details={"agent": agent, **(details or {})}
        )
        self.agent = agent


class ValidationExhaustedError(HorusError):
    """Analysis still failed validation after the revision cap."""

    def __init__(
        self,
        message: str,
        issues: Optional[List[Dict[str, Any]]] = None,
        revisions: int = 0
    ):
        super().__init__(
            message=message,
            code="validation-exhausted",
            details={"revisions": revisions, "issues": issues or []}
        )
        self.issues = issues or []
        self.revisions = revisions


class CacheUnavailableError(HorusError):
    """Evidence cache or embedding backend could not be reached."""

    retryable = True

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code="cache-unavailable",
            details=details
        )


class EmbeddingError(HorusError):
    """Embedding request rejected (oversized batch, malformed vector)."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code="embedding-failed",
            details=details
        )


class PipelineCancelledError(HorusError):
    """The caller cancelled the run between stages."""

    def __init__(self, session_id: str, stage: str = "unknown"):
        super().__init__(
            message=f"Pipeline for session {session_id} was cancelled",
            code="pipeline-cancelled",
            details={"session_id": session_id, "stage": stage}
        )
        self.stage = stage
