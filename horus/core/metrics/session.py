"""
Session Metrics Snapshot

Already-computed metrics for one recorded session. Produced upstream,
consumed read-only by every pipeline stage.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

# Flat path prefixes understood by get_path() and the expression evaluator
PATH_PREFIXES = ("leftLeg", "rightLeg", "bilateral")
SCALAR_PATHS = ("opiScore", "opiGrade", "movementType")


def _pick(data: Dict[str, Any], *keys: str, default=None):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _numeric_map(raw: Optional[Dict[str, Any]]) -> Mapping[str, float]:
    out = {}
    for key, value in (raw or {}).items():
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (int, float)):
            out[key] = float(value)
    return MappingProxyType(out)


@dataclass(frozen=True)
class SessionMetrics:
    """Immutable per-session metrics (left/right per-leg maps + bilateral map)."""
    session_id: str
    left_leg: Mapping[str, float]
    right_leg: Mapping[str, float]
    bilateral: Mapping[str, float]
    recorded_at: int                       # epoch milliseconds
    movement_type: str = "unknown"
    opi_score: Optional[float] = None
    opi_grade: Optional[str] = None

    # ── Optional descriptive metadata ────────────────────────────────────────
    patient_id: Optional[str] = None
    title: Optional[str] = None
    notes: Optional[str] = None
    tags: tuple = ()
    activity_profile: Optional[str] = None
    sets: Optional[int] = None
    reps: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionMetrics":
        """Build from a camelCase or snake_case payload."""
        session_id = _pick(data, "session_id", "sessionId")
        if not session_id:
            raise ValueError("SessionMetrics requires a session id")
        opi = _pick(data, "opi_score", "opiScore")
        return cls(
            session_id=str(session_id),
            left_leg=_numeric_map(_pick(data, "left_leg", "leftLeg", default={})),
            right_leg=_numeric_map(_pick(data, "right_leg", "rightLeg", default={})),
            bilateral=_numeric_map(_pick(data, "bilateral", default={})),
            recorded_at=int(_pick(data, "recorded_at", "recordedAt", default=0)),
            movement_type=str(_pick(data, "movement_type", "movementType", default="unknown")),
            opi_score=float(opi) if opi is not None else None,
            opi_grade=_pick(data, "opi_grade", "opiGrade"),
            patient_id=_pick(data, "patient_id", "patientId"),
            title=data.get("title"),
            notes=data.get("notes"),
            tags=tuple(data.get("tags") or ()),
            activity_profile=_pick(data, "activity_profile", "activityProfile"),
            sets=data.get("sets"),
            reps=data.get("reps"),
        )

    def section(self, prefix: str) -> Mapping[str, float]:
        return {
            "leftLeg": self.left_leg,
            "rightLeg": self.right_leg,
            "bilateral": self.bilateral,
        }[prefix]

    def get_path(self, path: str) -> Optional[Any]:
        """Resolve ``prefix.metric`` or a scalar path; None if absent."""
        if path == "opiScore":
            return self.opi_score
        if path == "opiGrade":
            return self.opi_grade
        if path == "movementType":
            return self.movement_type
        prefix, _, metric = path.partition(".")
        if prefix not in PATH_PREFIXES or not metric:
            return None
        return self.section(prefix).get(metric)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "patient_id": self.patient_id,
            "left_leg": dict(self.left_leg),
            "right_leg": dict(self.right_leg),
            "bilateral": dict(self.bilateral),
            "recorded_at": self.recorded_at,
            "movement_type": self.movement_type,
            "opi_score": self.opi_score,
            "opi_grade": self.opi_grade,
            "title": self.title,
            "notes": self.notes,
            "tags": list(self.tags),
            "activity_profile": self.activity_profile,
            "sets": self.sets,
            "reps": self.reps,
        }


def sort_by_recorded(sessions: List[SessionMetrics]) -> List[SessionMetrics]:
    return sorted(sessions, key=lambda s: s.recorded_at)
