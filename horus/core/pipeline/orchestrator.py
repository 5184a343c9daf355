"""
Pipeline Orchestrator

Drives one session's metrics through the five stages and owns the
PipelineState for that session.

    decomposition -> research -> analysis <-> validation -> progress

Error policy:
    stage-input-missing     fatal, not retried
    generative-call-failed  retried with exponential backoff, then fatal
    malformed-output        fatal for the stage, never guessed
    validation-exhausted    fatal after MAX_REVISIONS failed validations
    cache-unavailable       non-fatal, research falls back to search
    progress failures       recorded on the state, pipeline still completes

A session is never run twice concurrently: trigger()/retrigger() for a
session that is already in flight is a no-op.
"""
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from horus.config import Settings, settings as default_settings
from horus.core.agents import (
    AnalysisAgent,
    DecompositionAgent,
    ProgressAgent,
    ResearchAgent,
    ValidatorAgent,
)
from horus.core.agents.base import ValidationIssue
from horus.core.agents.validator import ValidationResult
from horus.core.evidence.cache import EvidenceCache
from horus.core.evidence.search import PubMedSearch
from horus.utils import (
    get_logger,
    GenerativeCallError,
    HorusError,
    PipelineCancelledError,
    StageInputError,
    ValidationExhaustedError,
)
from horus.utils.timeouts import CallTimeout, call_with_timeout
from .state import PipelineError, PipelineState, PipelineStatus
from .store import InMemorySessionStore

logger = get_logger(__name__)

MAX_REVISIONS = 3


class GuardedInvoker:
    """
    Wraps the raw generative invoker with the orchestrator's call policy:
    per-call timeout, bounded retries with ``base * 2**attempt`` backoff,
    and a cancellation check before every attempt.
    """

    def __init__(
        self,
        invoker,
        config: Settings,
        session_id: str,
        stage: str,
        cancel_event: Optional[threading.Event] = None,
    ):
        self._invoker = invoker
        self.config = config
        self.session_id = session_id
        self.stage = stage
        self._cancel = cancel_event or threading.Event()
        self.attempts = 0

    def invoke(self, system_prompt: str, user_prompt: str) -> str:
        max_attempts = self.config.max_llm_attempts
        last_error: Optional[GenerativeCallError] = None

        for attempt in range(max_attempts):
            if self._cancel.is_set():
                raise PipelineCancelledError(self.session_id, self.stage)
            self.attempts += 1
            try:
                return call_with_timeout(
                    self._invoker.invoke, self.config.llm_timeout_seconds, system_prompt, user_prompt
                )
            except CallTimeout as e:
                last_error = GenerativeCallError(str(e), agent=self.stage)
            except GenerativeCallError as e:
                last_error = e
            except HorusError:
                raise
            except Exception as e:
                last_error = GenerativeCallError(f"Generative call failed: {e}", agent=self.stage)

            extra = {"session_id": self.session_id, "stage": self.stage, "attempt": attempt + 1}
            if attempt + 1 < max_attempts:
                delay = self.config.retry_base_delay_seconds * (2 ** attempt)
                logger.warning(f"{last_error.message}; retrying in {delay:.1f}s", extra=extra)
                if self._cancel.wait(delay):
                    raise PipelineCancelledError(self.session_id, self.stage)
            else:
                logger.error(f"{last_error.message}; giving up after {max_attempts} attempt(s)", extra=extra)

        raise last_error


class PipelineOrchestrator:
    """Runs sessions through the pipeline and reports their state."""

    def __init__(
        self,
        invoker,
        cache: Optional[EvidenceCache] = None,
        session_store: Optional[InMemorySessionStore] = None,
        search: Optional[PubMedSearch] = None,
        config: Optional[Settings] = None,
        on_status: Optional[Callable[[PipelineState], None]] = None,
        max_concurrent_runs: int = 4,
    ):
        self.invoker = invoker
        self.cache = cache
        self.store = session_store or InMemorySessionStore()
        self.search = search
        self.config = config or default_settings
        self.on_status = on_status

        self._states: Dict[str, PipelineState] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._futures: Dict[str, Future] = {}
        self._in_flight = set()
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent_runs, thread_name_prefix="horus-pipeline")

    # ── Public API ──────────────────────────────────────────────────────────

    def status(self, session_id: str) -> Optional[PipelineState]:
        return self._states.get(session_id)

    def run(self, session_id: str) -> PipelineState:
        """Run synchronously. If the session is already in flight, return its live state."""
        if not self._claim(session_id):
            return self._states[session_id]
        return self._execute(session_id)

    def trigger(self, session_id: str) -> Optional[Future]:
        """
        Start a background run. No-op (returns None) while the session is in
        flight or once it has completed.
        """
        existing = self._states.get(session_id)
        if existing is not None and existing.status == PipelineStatus.COMPLETE:
            logger.info(f"Session {session_id} already complete; trigger ignored")
            return None
        return self._submit(session_id)

    def retrigger(self, session_id: str) -> Optional[Future]:
        """Start a fresh background run regardless of the last outcome, unless in flight."""
        return self._submit(session_id)

    def cancel(self, session_id: str) -> bool:
        """Request cancellation. Returns False when nothing is running for the session."""
        with self._lock:
            if session_id not in self._in_flight:
                return False
            self._cancel_events[session_id].set()
            self._states[session_id].cancel_requested = True
        logger.info(f"Cancellation requested for session {session_id}")
        return True

    def is_running(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._in_flight

    def wait(self, session_id: str, timeout: Optional[float] = None) -> Optional[PipelineState]:
        future = self._futures.get(session_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.status(session_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            for event in self._cancel_events.values():
                event.set()
        self._executor.shutdown(wait=wait)

    # ── Run bookkeeping ─────────────────────────────────────────────────────

    def _claim(self, session_id: str) -> bool:
        with self._lock:
            if session_id in self._in_flight:
                logger.info(f"Session {session_id} already in flight; request ignored")
                return False
            self._in_flight.add(session_id)
            self._cancel_events[session_id] = threading.Event()
            self._states[session_id] = PipelineState(session_id=session_id)
        self._emit(self._states[session_id])
        return True

    def _release(self, session_id: str) -> None:
        with self._lock:
            self._in_flight.discard(session_id)

    def _submit(self, session_id: str) -> Optional[Future]:
        if not self._claim(session_id):
            return None
        future = self._executor.submit(self._execute, session_id)
        self._futures[session_id] = future
        return future

    def _emit(self, state: PipelineState) -> None:
        if self.on_status is None:
            return
        try:
            self.on_status(state)
        except Exception as e:
            logger.error(f"Status callback failed for session {state.session_id}: {e}")

    def _advance(self, state: PipelineState, status: PipelineStatus, deadline: float) -> None:
        """Stage boundary: honour cancellation and the overall deadline, then transition."""
        if self._cancel_events[state.session_id].is_set():
            raise PipelineCancelledError(state.session_id, status.value)
        if time.monotonic() > deadline:
            raise HorusError(
                f"Pipeline exceeded {self.config.pipeline_timeout_seconds:.0f}s before {status.value}",
                code="pipeline-timeout",
                details={"stage": status.value},
            )
        state.transition(status)
        logger.info(f"Stage {status.value} started", extra={"session_id": state.session_id, "stage": status.value})
        self._emit(state)

    def _guarded(self, state: PipelineState, stage: str) -> GuardedInvoker:
        return GuardedInvoker(
            self.invoker, self.config, state.session_id, stage, self._cancel_events[state.session_id]
        )

    # ── Execution ───────────────────────────────────────────────────────────

    def _execute(self, session_id: str) -> PipelineState:
        state = self._states[session_id]
        state.started_at = int(time.time() * 1000)
        try:
            self._run_stages(state)
        except Exception as e:
            stage = state.current_stage or PipelineStatus.PENDING.value
            state.fail(stage, e)
            logger.error(f"Pipeline failed in {stage}: {state.error.message}",
                         extra={"session_id": session_id, "stage": stage})
        finally:
            self._release(session_id)
            self._emit(state)
        return state

    def _run_stages(self, state: PipelineState) -> None:
        session_id = state.session_id
        deadline = time.monotonic() + self.config.pipeline_timeout_seconds

        metrics = self.store.get_session(session_id)
        if metrics is None:
            raise StageInputError(f"No metrics stored for session {session_id}", stage="decomposition")
        history = [
            s for s in self.store.get_history(metrics.patient_id, before=metrics.recorded_at)
            if s.session_id != session_id
        ]
        previous = history[-1] if history else None

        # 1. Decomposition
        self._advance(state, PipelineStatus.DECOMPOSITION, deadline)
        decomposition = DecompositionAgent(self._guarded(state, "decomposition")).run(metrics, previous)
        state.decomposition = decomposition.to_dict()

        # 2. Research
        self._advance(state, PipelineStatus.RESEARCH, deadline)
        research = ResearchAgent(
            self._guarded(state, "research"),
            cache=self.cache,
            search=self.search,
            max_workers=self.config.research_workers,
        ).run(decomposition.patterns, metrics.movement_type)
        state.research = research.to_dict()

        # 3-4. Analysis <-> validation, bounded
        analysis_agent = AnalysisAgent(self._guarded(state, "analysis"))
        validator = ValidatorAgent(self._guarded(state, "validation"))
        citations = research.citations
        issues: List[ValidationIssue] = []
        validation: Optional[ValidationResult] = None

        for attempt in range(1, MAX_REVISIONS + 1):
            self._advance(state, PipelineStatus.ANALYSIS, deadline)
            analysis = analysis_agent.run(metrics, decomposition.patterns, research.evidence_by_pattern, issues)
            state.analysis = analysis.to_dict()

            self._advance(state, PipelineStatus.VALIDATION, deadline)
            validation = validator.run(analysis, metrics, decomposition.patterns, citations, revision=attempt)
            state.validation = validation.to_dict()
            if validation.passed:
                break

            state.revision_count = attempt
            issues = validation.errors + validation.warnings
            logger.warning(
                f"Validation failed with {len(validation.errors)} error(s)",
                extra={"session_id": session_id, "stage": "validation", "revision": attempt},
            )
        else:
            raise ValidationExhaustedError(
                f"Analysis failed validation {MAX_REVISIONS} times",
                issues=[i.to_dict() for i in validation.issues],
                revisions=MAX_REVISIONS,
            )

        # 5. Progress (non-fatal)
        self._advance(state, PipelineStatus.PROGRESS, deadline)
        try:
            progress = ProgressAgent(self._guarded(state, "progress")).run(metrics, history, metrics.patient_id)
            state.progress = progress.to_dict()
        except PipelineCancelledError:
            raise
        except Exception as e:
            state.progress_error = PipelineError.from_exception(PipelineStatus.PROGRESS.value, e)
            logger.warning(f"Progress stage failed (non-fatal): {state.progress_error.message}",
                           extra={"session_id": session_id, "stage": "progress"})

        state.transition(PipelineStatus.COMPLETE)
        logger.info(f"Pipeline complete after {state.revision_count} revision(s)",
                    extra={"session_id": session_id})
