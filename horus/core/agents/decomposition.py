"""
Decomposition Agent

Turns a SessionMetrics snapshot into structured DetectedPatterns.
NO interpretation happens here - only "what is out of range, by how much,
on which limb".

Two passes:
1. pre_detect_patterns(): registry-driven, pure. Threshold violations,
   per-metric asymmetries and (with a previous session) composite-score
   swings are always found, even if the model misbehaves.
2. The generative pass adds cross-metric correlations and quality flags;
   its patterns are validated field by field and merged behind the
   pre-detected ones.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from horus.core.llm.parser import parse_json, as_str, as_float, as_list, as_str_list, as_choice
from horus.core.metrics.benchmarking import BenchmarkCategory, asymmetry, category
from horus.core.metrics.registry import (
    ASYMMETRY_HIGH,
    ASYMMETRY_LOW,
    ASYMMETRY_MODERATE,
    Limb,
    METRIC_REGISTRY,
    bilateral_metrics,
    per_leg_metrics,
)
from horus.core.metrics.session import SessionMetrics
from horus.utils import get_logger
from .base import DetectedPattern, PatternType, Severity, parse_limbs

logger = get_logger(__name__)

# Composite-score swing worth reporting as a temporal pattern
OPI_CHANGE_THRESHOLD = 5.0

_PATTERN_TYPES = tuple(t.value for t in PatternType)
_SEVERITIES = tuple(s.value for s in Severity)


@dataclass
class DecompositionResult:
    patterns: List[DetectedPattern] = field(default_factory=list)
    pattern_counts: Dict[str, int] = field(default_factory=dict)
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patterns": [p.to_dict() for p in self.patterns],
            "pattern_counts": dict(self.pattern_counts),
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DecompositionResult":
        return cls(
            patterns=[DetectedPattern.from_dict(p) for p in data.get("patterns", [])],
            pattern_counts=dict(data.get("pattern_counts", {})),
            summary=data.get("summary", ""),
        )


def _asymmetry_severity(pct: float) -> Severity:
    if pct >= ASYMMETRY_HIGH:
        return Severity.HIGH
    if pct >= ASYMMETRY_MODERATE:
        return Severity.MODERATE
    return Severity.LOW


def pre_detect_patterns(
    metrics: SessionMetrics,
    previous: Optional[SessionMetrics] = None,
) -> List[DetectedPattern]:
    """Registry-driven patterns that never depend on model output."""
    patterns: List[DetectedPattern] = []

    def next_id() -> str:
        return f"pre-{len(patterns) + 1}"

    for name in per_leg_metrics():
        d = METRIC_REGISTRY[name]
        left = metrics.left_leg.get(name)
        right = metrics.right_leg.get(name)

        for limb, value in ((Limb.LEFT, left), (Limb.RIGHT, right)):
            if value is None or category(value, d) != BenchmarkCategory.DEFICIENT:
                continue
            patterns.append(DetectedPattern(
                id=next_id(),
                type=PatternType.THRESHOLD_VIOLATION,
                severity=Severity.HIGH,
                metrics=[name],
                description=f"{limb.value} {d.display_name} is {value:g}{d.unit}, below deficient threshold",
                values={name: value},
                limbs=[limb],
                search_terms=[f"{d.display_name} deficit", "knee rehabilitation", f"{d.domain.value} impairment"],
            ))

        if left is None or right is None:
            continue
        asym = asymmetry(left, right, d.direction)
        if asym.percentage < ASYMMETRY_LOW or asym.deficit_limb is None:
            continue
        patterns.append(DetectedPattern(
            id=next_id(),
            type=PatternType.ASYMMETRY,
            severity=_asymmetry_severity(asym.percentage),
            metrics=[name],
            description=(
                f"{d.display_name} asymmetry of {asym.percentage:.1f}% "
                f"with {asym.deficit_limb.value} as the deficit limb"
            ),
            values={
                "leftValue": left,
                "rightValue": right,
                "asymmetryPercent": round(asym.percentage, 1),
            },
            limbs=[asym.deficit_limb],
            search_terms=[f"{d.display_name} asymmetry", "bilateral knee asymmetry", "limb symmetry index"],
        ))

    for name in bilateral_metrics():
        value = metrics.bilateral.get(name)
        d = METRIC_REGISTRY[name]
        if value is None or category(value, d) != BenchmarkCategory.DEFICIENT:
            continue
        patterns.append(DetectedPattern(
            id=next_id(),
            type=PatternType.THRESHOLD_VIOLATION,
            severity=Severity.HIGH,
            metrics=[name],
            description=f"{d.display_name} is {value:g}{d.unit}, beyond deficient threshold",
            values={name: value},
            search_terms=[f"{d.display_name} deficit", "bilateral coordination", f"{d.domain.value} impairment"],
        ))

    if previous is not None and metrics.opi_score is not None and previous.opi_score is not None:
        change = metrics.opi_score - previous.opi_score
        if abs(change) >= OPI_CHANGE_THRESHOLD:
            improved = change > 0
            patterns.append(DetectedPattern(
                id=next_id(),
                type=PatternType.TEMPORAL_PATTERN,
                severity=Severity.LOW if improved else Severity.HIGH,
                metrics=["opiScore"],
                description=(
                    f"Overall performance score {'improved' if improved else 'declined'} "
                    f"by {abs(change):.1f} points since the previous session"
                ),
                values={"current": metrics.opi_score, "previous": previous.opi_score, "change": change},
                search_terms=["knee function recovery trajectory", "rehabilitation progress tracking"],
            ))

    return patterns


def parse_patterns(raw: Any, prefix: str = "gen") -> List[DetectedPattern]:
    """Validate generative patterns one field at a time; malformed ones are dropped."""
    patterns = []
    for i, item in enumerate(as_list(raw)):
        if not isinstance(item, dict):
            continue
        ptype = as_choice(item.get("type"), _PATTERN_TYPES)
        severity = as_choice(item.get("severity"), _SEVERITIES)
        metrics = as_str_list(item.get("metrics"))
        if ptype is None or severity is None or not metrics:
            logger.debug(f"Dropping malformed pattern at index {i}")
            continue
        values = {}
        raw_values = item.get("values")
        if isinstance(raw_values, dict):
            values = {k: as_float(v) for k, v in raw_values.items() if isinstance(k, str)}
        patterns.append(DetectedPattern(
            id=as_str(item.get("id")) or f"{prefix}-{i + 1}",
            type=PatternType(ptype),
            severity=Severity(severity),
            metrics=metrics,
            description=as_str(item.get("description")),
            values=values,
            limbs=parse_limbs(item.get("limbs", [])),
            search_terms=as_str_list(item.get("searchTerms", item.get("search_terms"))),
        ))
    return patterns


def merge_patterns(pre_detected: List[DetectedPattern], generated: List[DetectedPattern]) -> List[DetectedPattern]:
    """Pre-detected first; later duplicates (same type, metrics, limbs) are dropped."""
    merged: List[DetectedPattern] = []
    seen = set()
    taken_ids = set()
    for pattern in list(pre_detected) + list(generated):
        if pattern.dedup_key in seen:
            continue
        if pattern.id in taken_ids:
            pattern.id = f"{pattern.id}-{len(merged) + 1}"
        seen.add(pattern.dedup_key)
        taken_ids.add(pattern.id)
        merged.append(pattern)
    return merged


def count_patterns(patterns: List[DetectedPattern]) -> Dict[str, int]:
    counts = {t.value: 0 for t in PatternType}
    for p in patterns:
        counts[p.type.value] += 1
    return counts


def _metrics_block(metrics: SessionMetrics) -> str:
    lines = []
    for label, section in (("LEFT LEG", metrics.left_leg), ("RIGHT LEG", metrics.right_leg),
                           ("BILATERAL", metrics.bilateral)):
        lines.append(f"{label}:")
        for name, value in section.items():
            d = METRIC_REGISTRY.get(name)
            if d is None:
                lines.append(f"- {name}: {value:g}")
            else:
                lines.append(
                    f"- {name} ({d.display_name}): {value:g}{d.unit} "
                    f"[good {d.good:g}, poor {d.poor:g}, {d.direction.value}]"
                )
    if metrics.opi_score is not None:
        lines.append(f"OVERALL SCORE: {metrics.opi_score:g} ({metrics.opi_grade or 'ungraded'})")
    return "\n".join(lines)


class DecompositionAgent:
    """
    Pattern detector.

    NON-INTERPRETIVE: reports which metrics are abnormal and how,
    never what it means clinically.
    """

    NAME = "decomposition"

    SYSTEM_PROMPT = """You are a biomechanics pattern detector for knee rehabilitation data.

CRITICAL CONSTRAINTS:
1. Report patterns ONLY - do not interpret, diagnose or recommend
2. Limb tags must be exactly "Left Leg" or "Right Leg" - never abbreviations
3. Use only metric names that appear in the input
4. Prefer cross_metric_correlation and quality_flag patterns; threshold and asymmetry patterns are already detected

Pattern types: threshold_violation, asymmetry, cross_metric_correlation, temporal_pattern, quality_flag
Severities: high, moderate, low

Respond with JSON only:
{"patterns": [{"id": "...", "type": "...", "severity": "...", "metrics": ["..."],
  "description": "...", "values": {"metric": 0}, "limbs": ["Left Leg"], "searchTerms": ["..."]}],
 "summary": "..."}"""

    def __init__(self, invoker):
        self.invoker = invoker

    def run(self, metrics: SessionMetrics, previous: Optional[SessionMetrics] = None) -> DecompositionResult:
        pre = pre_detect_patterns(metrics, previous)
        logger.info(f"Pre-detected {len(pre)} pattern(s) for session {metrics.session_id}")

        response = self.invoker.invoke(self.SYSTEM_PROMPT, self._build_prompt(metrics, previous, pre))
        data = parse_json(response, agent=self.NAME)

        patterns = merge_patterns(pre, parse_patterns(data.get("patterns")))
        summary = as_str(data.get("summary")) or f"{len(patterns)} pattern(s) detected"
        return DecompositionResult(
            patterns=patterns,
            pattern_counts=count_patterns(patterns),
            summary=summary,
        )

    def _build_prompt(
        self,
        metrics: SessionMetrics,
        previous: Optional[SessionMetrics],
        pre: List[DetectedPattern],
    ) -> str:
        prompt = f"""Detect patterns in the following {metrics.movement_type.replace('_', ' ')} session.

METRICS:
{_metrics_block(metrics)}
"""
        if previous is not None:
            prompt += f"\nPREVIOUS SESSION:\n{_metrics_block(previous)}\n"

        prompt += "\nALREADY DETECTED (do not repeat):\n"
        prompt += json.dumps([p.to_dict() for p in pre], indent=2) if pre else "none"
        prompt += "\n\nReturn additional patterns as JSON."
        return prompt
