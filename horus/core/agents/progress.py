"""
Progress Agent

Longitudinal analysis of one patient's sessions. Almost everything is
computed here without the model:

    trends          per metric and limb, judged against the metric's MCID
    milestones      threshold achieved, personal best, MCID improvement,
                    streaks, symmetry restored, limb caught up, cross-metric gain
    regressions     meaningful declines of >= 10%
    projections     least-squares line 30 days ahead (>= 4 sessions only)
    asymmetry       per-metric left/right gap over time
    correlations    metrics in the same domain moving together

The model is only asked for a narrative summary (and may add milestones);
if that call fails a programmatic summary is used instead.
"""
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Optional

from scipy import stats

from horus.core.llm.parser import parse_json, as_str, as_list, as_str_list, as_choice
from horus.core.metrics.benchmarking import BenchmarkCategory, asymmetry, category
from horus.core.metrics.registry import (
    ASYMMETRY_LOW,
    Limb,
    MCID,
    METRIC_REGISTRY,
    MetricDirection,
    bilateral_metrics,
    per_leg_metrics,
)
from horus.core.metrics.session import SessionMetrics, sort_by_recorded
from horus.utils import get_logger, HorusError, PipelineCancelledError

logger = get_logger(__name__)

PROGRESS_CONFIG = MappingProxyType({
    "min_sessions_for_trend": 2,
    "min_sessions_for_projection": 4,
    "projection_horizon_days": 30,
    "streak_threshold": 3,
    "regression_threshold_percentage": 10.0,
    "personal_best_percentage": 20.0,
    "major_personal_best_percentage": 30.0,
    "cross_metric_gain_count": 3,
})

INSUFFICIENT_HISTORY_SUMMARY = (
    "Insufficient session history for progress analysis. Continue tracking to build baseline."
)

DAY_MS = 24 * 60 * 60 * 1000

MILESTONE_TYPES = (
    "threshold_achieved", "mcid_improvement", "streak", "personal_best",
    "symmetry_restored", "limb_caught_up", "cross_metric_gain",
)

_REGRESSION_REASONS = {
    "range": ["Joint stiffness or swelling", "Reduced effort or guarding during the movement"],
    "power": ["Fatigue from recent training load", "Reduced confidence in explosive movement"],
    "control": ["Fatigue affecting movement smoothness", "Change in movement strategy"],
    "symmetry": ["Compensation favouring one limb", "Recent load increase on one side"],
    "timing": ["Coordination changes under fatigue", "Altered movement strategy"],
}


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    STABLE    = "stable"
    DECLINING = "declining"


# ── Data ─────────────────────────────────────────────────────────────────────

@dataclass
class MetricTrend:
    metric_name: str
    display_name: str
    domain: str
    direction: MetricDirection
    limb: Optional[Limb]
    trend: TrendDirection
    current_value: float
    previous_value: float
    baseline_value: float
    change_from_previous: float
    change_from_baseline: float
    is_clinically_meaningful: bool
    mcid: float
    history: List[Dict[str, float]] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.metric_name}:{self.limb.value if self.limb else 'bilateral'}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric_name": self.metric_name,
            "display_name": self.display_name,
            "domain": self.domain,
            "direction": self.direction.value,
            "limb": self.limb.value if self.limb else None,
            "trend": self.trend.value,
            "current_value": self.current_value,
            "previous_value": self.previous_value,
            "baseline_value": self.baseline_value,
            "change_from_previous": round(self.change_from_previous, 2),
            "change_from_baseline": round(self.change_from_baseline, 2),
            "is_clinically_meaningful": self.is_clinically_meaningful,
            "mcid": self.mcid,
            "history": list(self.history),
        }


@dataclass
class Milestone:
    id: str
    type: str
    title: str
    description: str
    achieved_at: int
    metrics: List[str] = field(default_factory=list)
    celebration_level: str = "minor"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "achieved_at": self.achieved_at,
            "metrics": list(self.metrics),
            "celebration_level": self.celebration_level,
        }


@dataclass
class Regression:
    id: str
    metric_name: str
    decline_percentage: float
    is_clinically_significant: bool
    possible_reasons: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    limb: Optional[Limb] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "metric_name": self.metric_name,
            "decline_percentage": round(self.decline_percentage, 2),
            "is_clinically_significant": self.is_clinically_significant,
            "possible_reasons": list(self.possible_reasons),
            "recommendations": list(self.recommendations),
            "limb": self.limb.value if self.limb else None,
        }


@dataclass
class Projection:
    metric_name: str
    projected_value: float
    target_date: int
    confidence: float
    assumptions: List[str] = field(default_factory=list)
    limb: Optional[Limb] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric_name": self.metric_name,
            "limb": self.limb.value if self.limb else None,
            "projected_value": round(self.projected_value, 2),
            "target_date": self.target_date,
            "confidence": round(self.confidence, 1),
            "assumptions": list(self.assumptions),
        }


@dataclass
class ProgressCorrelation:
    id: str
    type: str                     # co_improving | co_declining
    metrics: List[str]
    explanation: str
    significance: str = "moderate"
    limb: Optional[Limb] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "metrics": list(self.metrics),
            "explanation": self.explanation,
            "significance": self.significance,
            "limb": self.limb.value if self.limb else None,
        }


@dataclass
class AsymmetryTrend:
    metric_name: str
    display_name: str
    current_asymmetry: float
    previous_asymmetry: float
    baseline_asymmetry: float
    change_from_previous: float
    change_from_baseline: float
    is_resolving: bool
    deficit_limb: Optional[Limb]
    is_deficit_catching_up: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric_name": self.metric_name,
            "display_name": self.display_name,
            "current_asymmetry": round(self.current_asymmetry, 2),
            "previous_asymmetry": round(self.previous_asymmetry, 2),
            "baseline_asymmetry": round(self.baseline_asymmetry, 2),
            "change_from_previous": round(self.change_from_previous, 2),
            "change_from_baseline": round(self.change_from_baseline, 2),
            "is_resolving": self.is_resolving,
            "deficit_limb": self.deficit_limb.value if self.deficit_limb else None,
            "is_deficit_catching_up": self.is_deficit_catching_up,
        }


@dataclass
class ProgressResult:
    session_id: str
    patient_id: Optional[str] = None
    trends: List[MetricTrend] = field(default_factory=list)
    milestones: List[Milestone] = field(default_factory=list)
    regressions: List[Regression] = field(default_factory=list)
    projections: List[Projection] = field(default_factory=list)
    asymmetry_trends: List[AsymmetryTrend] = field(default_factory=list)
    correlations: List[ProgressCorrelation] = field(default_factory=list)
    summary: str = ""
    sessions_analyzed: int = 1
    date_range: Dict[str, int] = field(default_factory=dict)
    analyzed_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "patient_id": self.patient_id,
            "trends": [t.to_dict() for t in self.trends],
            "milestones": [m.to_dict() for m in self.milestones],
            "regressions": [r.to_dict() for r in self.regressions],
            "projections": [p.to_dict() for p in self.projections],
            "asymmetry_trends": [a.to_dict() for a in self.asymmetry_trends],
            "correlations": [c.to_dict() for c in self.correlations],
            "summary": self.summary,
            "sessions_analyzed": self.sessions_analyzed,
            "date_range": dict(self.date_range),
            "analyzed_at": self.analyzed_at,
        }


# ── Trends ───────────────────────────────────────────────────────────────────

def mcid_for(metric_name: str) -> float:
    """Clinically meaningful difference for a metric, chosen by its name."""
    if "Rom" in metric_name or "Flexion" in metric_name or "Extension" in metric_name:
        return MCID["rom"]
    if "Velocity" in metric_name or "velocity" in metric_name:
        return MCID["velocity_percentage"]
    if "symmetry" in metric_name or "Asymmetry" in metric_name:
        return MCID["asymmetry"]
    if "Jerk" in metric_name or "jerk" in metric_name:
        return MCID["jerk"]
    if "Correlation" in metric_name or "correlation" in metric_name:
        return MCID["cross_correlation"] * 100
    return 10.0


def _pct_change(current: float, reference: float) -> float:
    return (current - reference) / abs(reference) * 100 if reference != 0 else 0.0


def _is_better(new: float, old: float, direction: MetricDirection) -> bool:
    return new > old if direction == MetricDirection.HIGHER_BETTER else new < old


def calculate_trend(
    current: float,
    previous: float,
    baseline: float,
    direction: MetricDirection,
    metric_name: str,
) -> Dict[str, Any]:
    change_prev = _pct_change(current, previous)
    mcid = mcid_for(metric_name)
    meaningful = abs(change_prev) >= mcid or abs(current - previous) >= mcid

    if not meaningful:
        trend = TrendDirection.STABLE
    elif _is_better(current, previous, direction):
        trend = TrendDirection.IMPROVING
    else:
        trend = TrendDirection.DECLINING

    return {
        "trend": trend,
        "current_value": current,
        "previous_value": previous,
        "baseline_value": baseline,
        "change_from_previous": change_prev,
        "change_from_baseline": _pct_change(current, baseline),
        "is_clinically_meaningful": meaningful,
        "mcid": mcid,
    }


def pre_compute_trends(current: SessionMetrics, history: List[SessionMetrics]) -> List[MetricTrend]:
    """Trends for every metric present in the current and previous sessions."""
    if not history:
        return []
    ordered = sort_by_recorded(history)
    baseline, previous = ordered[0], ordered[-1]

    series = []
    for name in per_leg_metrics():
        series.append((name, Limb.LEFT, "leftLeg"))
        series.append((name, Limb.RIGHT, "rightLeg"))
    for name in bilateral_metrics():
        series.append((name, None, "bilateral"))

    trends = []
    for name, limb, prefix in series:
        d = METRIC_REGISTRY[name]
        cur = current.section(prefix).get(name)
        prev = previous.section(prefix).get(name)
        if cur is None or prev is None:
            continue
        base = baseline.section(prefix).get(name, prev)

        points = [
            {"date": s.recorded_at, "value": s.section(prefix)[name]}
            for s in ordered if name in s.section(prefix)
        ]
        points.append({"date": current.recorded_at, "value": cur})

        trends.append(MetricTrend(
            metric_name=name,
            display_name=d.display_name,
            domain=d.domain.value,
            direction=d.direction,
            limb=limb,
            history=points,
            **calculate_trend(cur, prev, base, d.direction, name),
        ))
    return trends


# ── Milestones ───────────────────────────────────────────────────────────────

def _consecutive_improvements(trend: MetricTrend) -> int:
    values = [p["value"] for p in trend.history]
    count = 0
    for i in range(len(values) - 1, 0, -1):
        if not _is_better(values[i], values[i - 1], trend.direction):
            break
        count += 1
    return count


def detect_milestones(
    trends: List[MetricTrend],
    asymmetry_trends: List["AsymmetryTrend"],
    current: SessionMetrics,
) -> List[Milestone]:
    milestones: List[Milestone] = []
    at = current.recorded_at

    def add(mtype: str, title: str, description: str, metrics: List[str], level: str = "minor"):
        milestones.append(Milestone(
            id=f"auto-milestone-{len(milestones) + 1}",
            type=mtype,
            title=title,
            description=description,
            achieved_at=at,
            metrics=metrics,
            celebration_level=level,
        ))

    for t in trends:
        prefix = f"{t.limb.value}: " if t.limb else ""
        d = METRIC_REGISTRY[t.metric_name]

        if (category(t.current_value, d) == BenchmarkCategory.OPTIMAL
                and category(t.previous_value, d) != BenchmarkCategory.OPTIMAL):
            add("threshold_achieved", f"{t.display_name} Reached Optimal Range",
                f"{prefix}{t.display_name} moved into the optimal range at {t.current_value:.1f}{d.unit}.",
                [t.metric_name], "major")

        improving = t.trend == TrendDirection.IMPROVING and t.is_clinically_meaningful
        if improving and _is_better(t.current_value, t.baseline_value, t.direction):
            improvement = abs(t.change_from_baseline)
            if improvement >= PROGRESS_CONFIG["personal_best_percentage"]:
                level = "major" if improvement >= PROGRESS_CONFIG["major_personal_best_percentage"] else "minor"
                add("personal_best", f"{t.display_name} Personal Best",
                    f"{prefix}{t.display_name} reached {t.current_value:.1f}, "
                    f"a {improvement:.0f}% improvement from baseline.",
                    [t.metric_name], level)

        if improving:
            add("mcid_improvement", f"Clinically Meaningful {t.display_name} Improvement",
                f"{prefix}{t.display_name} showed clinically significant improvement of "
                f"{abs(t.change_from_previous):.1f}%.",
                [t.metric_name])

        streak = _consecutive_improvements(t)
        if streak >= PROGRESS_CONFIG["streak_threshold"]:
            add("streak", f"{t.display_name} Improvement Streak",
                f"{prefix}{t.display_name} improved for {streak} consecutive sessions.",
                [t.metric_name], "major" if streak >= 5 else "minor")

        if (t.limb is None and "symmetry" in t.metric_name.lower()
                and t.previous_value >= ASYMMETRY_LOW > t.current_value):
            add("symmetry_restored", f"{t.display_name} Restored",
                f"{t.display_name} dropped below {ASYMMETRY_LOW:g} to {t.current_value:.1f}.",
                [t.metric_name], "major")

    for a in asymmetry_trends:
        if a.previous_asymmetry >= ASYMMETRY_LOW > a.current_asymmetry:
            add("limb_caught_up", f"{a.display_name} Limbs Balanced",
                f"Left/right {a.display_name} gap closed from {a.previous_asymmetry:.1f}% "
                f"to {a.current_asymmetry:.1f}%.",
                [a.metric_name], "major")

    gaining = sorted({t.metric_name for t in trends
                      if t.trend == TrendDirection.IMPROVING and t.is_clinically_meaningful})
    if len(gaining) >= PROGRESS_CONFIG["cross_metric_gain_count"]:
        add("cross_metric_gain", "Broad Improvement",
            f"{len(gaining)} metrics improved meaningfully since the previous session.",
            gaining, "major")

    return milestones


def merge_milestones(auto: List[Milestone], generated: List[Milestone]) -> List[Milestone]:
    """Auto-detected first, deduped by type and metrics, major celebrations first."""
    merged = []
    seen = set()
    for m in list(auto) + list(generated):
        key = f"{m.type}:{','.join(sorted(m.metrics))}"
        if key in seen:
            continue
        seen.add(key)
        merged.append(m)
    return sorted(merged, key=lambda m: 0 if m.celebration_level == "major" else 1)


# ── Regressions / projections / asymmetry / correlations ─────────────────────

def detect_regressions(trends: List[MetricTrend]) -> List[Regression]:
    threshold = PROGRESS_CONFIG["regression_threshold_percentage"]
    regressions = []
    for t in trends:
        if t.trend != TrendDirection.DECLINING or abs(t.change_from_previous) < threshold:
            continue
        regressions.append(Regression(
            id=f"regression-{len(regressions) + 1}",
            metric_name=t.metric_name,
            decline_percentage=abs(t.change_from_previous),
            is_clinically_significant=abs(t.current_value - t.previous_value) >= 2 * t.mcid,
            possible_reasons=list(_REGRESSION_REASONS.get(t.domain, [])),
            recommendations=[
                f"Re-test {t.display_name} next session to confirm the change",
                "Review recent training load with the clinician",
            ],
            limb=t.limb,
        ))
    return regressions


def project_trends(trends: List[MetricTrend], current: SessionMetrics, total_sessions: int) -> List[Projection]:
    if total_sessions < PROGRESS_CONFIG["min_sessions_for_projection"]:
        return []
    horizon = PROGRESS_CONFIG["projection_horizon_days"]
    projections = []
    for t in trends:
        if t.trend == TrendDirection.STABLE or len(t.history) < PROGRESS_CONFIG["min_sessions_for_projection"]:
            continue
        origin = t.history[0]["date"]
        days = [(p["date"] - origin) / DAY_MS for p in t.history]
        values = [p["value"] for p in t.history]
        if len(set(days)) < 2:
            continue
        fit = stats.linregress(days, values)
        target_day = (current.recorded_at - origin) / DAY_MS + horizon
        projections.append(Projection(
            metric_name=t.metric_name,
            limb=t.limb,
            projected_value=float(fit.intercept + fit.slope * target_day),
            target_date=current.recorded_at + horizon * DAY_MS,
            confidence=min(100.0, max(0.0, float(fit.rvalue) ** 2 * 100)),
            assumptions=[
                f"Linear trend over {len(values)} sessions continues",
                f"Training frequency stays similar for the next {horizon} days",
            ],
        ))
    return projections


def compute_asymmetry_trends(current: SessionMetrics, history: List[SessionMetrics]) -> List[AsymmetryTrend]:
    if not history:
        return []
    ordered = sort_by_recorded(history)
    baseline, previous = ordered[0], ordered[-1]

    def gap(session: SessionMetrics, name: str):
        left, right = session.left_leg.get(name), session.right_leg.get(name)
        if left is None or right is None:
            return None
        return asymmetry(left, right, METRIC_REGISTRY[name].direction)

    results = []
    for name in per_leg_metrics():
        cur, prev = gap(current, name), gap(previous, name)
        if cur is None or prev is None:
            continue
        base = gap(baseline, name) or prev
        resolving = cur.percentage < prev.percentage
        results.append(AsymmetryTrend(
            metric_name=name,
            display_name=METRIC_REGISTRY[name].display_name,
            current_asymmetry=cur.percentage,
            previous_asymmetry=prev.percentage,
            baseline_asymmetry=base.percentage,
            change_from_previous=cur.percentage - prev.percentage,
            change_from_baseline=cur.percentage - base.percentage,
            is_resolving=resolving,
            deficit_limb=cur.deficit_limb,
            is_deficit_catching_up=resolving and cur.deficit_limb is not None
            and cur.deficit_limb == prev.deficit_limb,
        ))
    return results


def detect_correlations(trends: List[MetricTrend]) -> List[ProgressCorrelation]:
    groups: Dict[tuple, List[MetricTrend]] = {}
    for t in trends:
        if not t.is_clinically_meaningful or t.trend == TrendDirection.STABLE:
            continue
        groups.setdefault((t.domain, t.trend), []).append(t)

    correlations = []
    for (domain, trend), members in groups.items():
        names = list(dict.fromkeys(t.metric_name for t in members))
        if len(names) < 2:
            continue
        limbs = {t.limb for t in members}
        kind = "co_improving" if trend == TrendDirection.IMPROVING else "co_declining"
        correlations.append(ProgressCorrelation(
            id=f"progress-corr-{len(correlations) + 1}",
            type=kind,
            metrics=names,
            explanation=f"{len(names)} {domain} metrics are {trend.value} together",
            significance="high" if len(names) >= 3 else "moderate",
            limb=limbs.pop() if len(limbs) == 1 else None,
        ))
    return correlations


def programmatic_summary(trends: List[MetricTrend], milestones: List[Milestone],
                         regressions: List[Regression], sessions: int) -> str:
    counts = {d: 0 for d in TrendDirection}
    for t in trends:
        counts[t.trend] += 1
    summary = (
        f"Across {sessions} sessions: {counts[TrendDirection.IMPROVING]} improving, "
        f"{counts[TrendDirection.STABLE]} stable and {counts[TrendDirection.DECLINING]} declining metric trends."
    )
    if milestones:
        summary += f" {len(milestones)} milestone(s) reached."
    if regressions:
        summary += f" {len(regressions)} regression(s) flagged for review."
    return summary


def parse_milestones(raw: Any, achieved_at: int) -> List[Milestone]:
    out = []
    for i, item in enumerate(as_list(raw), start=1):
        if not isinstance(item, dict):
            continue
        mtype = as_choice(item.get("type"), MILESTONE_TYPES)
        title = as_str(item.get("title"))
        if mtype is None or not title:
            continue
        out.append(Milestone(
            id=as_str(item.get("id")) or f"llm-milestone-{i}",
            type=mtype,
            title=title,
            description=as_str(item.get("description")),
            achieved_at=achieved_at,
            metrics=as_str_list(item.get("metrics")),
            celebration_level=as_choice(item.get("celebrationLevel"), ("major", "minor"), "minor"),
        ))
    return out


class ProgressAgent:
    """Longitudinal tracker. Runs after validation; failures never fail the pipeline."""

    NAME = "progress"

    SYSTEM_PROMPT = """You are a longitudinal progress analyst for knee rehabilitation.
Trends, milestones and regressions have already been computed; write a short,
encouraging 2-3 sentence summary for the patient and their clinician.

CRITICAL CONSTRAINTS:
1. Use only the numbers provided
2. Limbs are written exactly "Left Leg" or "Right Leg"
3. No diagnosis and no prescriptions

Respond with JSON only:
{"summary": "...", "milestones": [{"type": "...", "title": "...", "description": "...",
  "metrics": ["..."], "celebrationLevel": "minor"}]}"""

    def __init__(self, invoker=None):
        self.invoker = invoker

    def run(
        self,
        current: SessionMetrics,
        history: List[SessionMetrics],
        patient_id: Optional[str] = None,
    ) -> ProgressResult:
        history = [s for s in history if s.session_id != current.session_id]
        now = int(time.time() * 1000)
        if len(history) + 1 < PROGRESS_CONFIG["min_sessions_for_trend"]:
            return ProgressResult(
                session_id=current.session_id,
                patient_id=patient_id,
                summary=INSUFFICIENT_HISTORY_SUMMARY,
                sessions_analyzed=1,
                date_range={"start": current.recorded_at, "end": current.recorded_at},
                analyzed_at=now,
            )

        ordered = sort_by_recorded(history)
        sessions = len(ordered) + 1
        trends = pre_compute_trends(current, ordered)
        asymmetry_trends = compute_asymmetry_trends(current, ordered)
        milestones = detect_milestones(trends, asymmetry_trends, current)
        regressions = detect_regressions(trends)

        result = ProgressResult(
            session_id=current.session_id,
            patient_id=patient_id,
            trends=trends,
            regressions=regressions,
            projections=project_trends(trends, current, sessions),
            asymmetry_trends=asymmetry_trends,
            correlations=detect_correlations(trends),
            sessions_analyzed=sessions,
            date_range={"start": ordered[0].recorded_at, "end": current.recorded_at},
            analyzed_at=now,
        )

        generated: List[Milestone] = []
        summary = ""
        if self.invoker is not None:
            try:
                data = parse_json(
                    self.invoker.invoke(self.SYSTEM_PROMPT, self._build_prompt(result, milestones)),
                    agent=self.NAME,
                )
                summary = as_str(data.get("summary"))
                generated = parse_milestones(data.get("milestones"), current.recorded_at)
            except PipelineCancelledError:
                raise
            except HorusError as e:
                logger.warning(f"Progress summary generation failed, using programmatic summary: {e.message}")

        result.milestones = merge_milestones(milestones, generated)
        result.summary = summary or programmatic_summary(trends, result.milestones, regressions, sessions)
        return result

    def _build_prompt(self, result: ProgressResult, milestones: List[Milestone]) -> str:
        notable = [t.to_dict() for t in result.trends if t.trend != TrendDirection.STABLE]
        for t in notable:
            t.pop("history", None)
        return f"""Summarise progress over {result.sessions_analyzed} sessions.

NOTABLE TRENDS:
{json.dumps(notable, indent=2)}

MILESTONES:
{json.dumps([m.to_dict() for m in milestones], indent=2)}

REGRESSIONS:
{json.dumps([r.to_dict() for r in result.regressions], indent=2)}

Return the summary as JSON."""
