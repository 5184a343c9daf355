"""
In-memory session store.

Read side of the external session/patient store the pipeline consumes.
The orchestrator only ever reads from it; the API layer writes.
"""
import threading
from typing import Dict, List, Optional

from horus.core.metrics.session import SessionMetrics, sort_by_recorded


class InMemorySessionStore:
    """Thread-safe dict-backed store keyed by session id."""

    def __init__(self):
        self._sessions: Dict[str, SessionMetrics] = {}
        self._lock = threading.Lock()

    def save_session(self, metrics: SessionMetrics) -> None:
        with self._lock:
            self._sessions[metrics.session_id] = metrics

    def get_session(self, session_id: str) -> Optional[SessionMetrics]:
        with self._lock:
            return self._sessions.get(session_id)

    def patient_for(self, session_id: str) -> Optional[str]:
        session = self.get_session(session_id)
        return session.patient_id if session else None

    def get_history(self, patient_id: Optional[str], before: Optional[int] = None) -> List[SessionMetrics]:
        """Sessions for a patient, oldest first, optionally recorded strictly before ``before``."""
        if not patient_id:
            return []
        with self._lock:
            sessions = [s for s in self._sessions.values() if s.patient_id == patient_id]
        if before is not None:
            sessions = [s for s in sessions if s.recorded_at < before]
        return sort_by_recorded(sessions)

    def __len__(self) -> int:
        return len(self._sessions)
