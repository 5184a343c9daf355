"""
Pipeline Orchestration

Usage:
    from horus.core.pipeline import PipelineOrchestrator, InMemorySessionStore

    store = InMemorySessionStore()
    store.save_session(metrics)
    orchestrator = PipelineOrchestrator(invoker, cache=cache, session_store=store)
    state = orchestrator.run(metrics.session_id)
"""
from .orchestrator import GuardedInvoker, MAX_REVISIONS, PipelineOrchestrator
from .state import PipelineError, PipelineState, PipelineStatus
from .store import InMemorySessionStore

__all__ = [
    "GuardedInvoker",
    "MAX_REVISIONS",
    "PipelineOrchestrator",
    "PipelineError",
    "PipelineState",
    "PipelineStatus",
    "InMemorySessionStore",
]
