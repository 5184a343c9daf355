"""
Benchmarking & Classification Engine

Pure functions over the metric registry:

    percentile(value, definition)          -> 0..100
    category(value, definition)            -> optimal | average | deficient
    force_classification(category, pct)    -> strength | weakness
    asymmetry(left, right, direction)      -> AsymmetryResult

These run before any generative step so that benchmark numbers and
strength/weakness labels never depend on model output.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union

from .registry import (
    Limb,
    MetricDefinition,
    MetricDirection,
    STRENGTH_PERCENTILE,
    get_metric,
    per_leg_metrics,
    bilateral_metrics,
)


class BenchmarkCategory(str, Enum):
    OPTIMAL   = "optimal"
    AVERAGE   = "average"
    DEFICIENT = "deficient"


class Classification(str, Enum):
    """Forced binary label. There is deliberately no neutral member."""
    STRENGTH = "strength"
    WEAKNESS = "weakness"


MetricRef = Union[str, MetricDefinition]


def _resolve(metric: MetricRef) -> MetricDefinition:
    if isinstance(metric, MetricDefinition):
        return metric
    definition = get_metric(metric)
    if definition is None:
        raise KeyError(f"Unknown metric: {metric}")
    return definition


def percentile(value: float, metric: MetricRef) -> float:
    """
    Estimate a population percentile from the good/poor thresholds.

    At/beyond good -> 90..100, at/beyond poor -> 0..10,
    in between -> linear 10..90. Degenerate thresholds -> 50.
    """
    d = _resolve(metric)
    good, poor = d.good, d.poor
    span = abs(good - poor)
    if span == 0:
        return 50.0

    if d.direction == MetricDirection.HIGHER_BETTER:
        if value >= good:
            return min(100.0, 90.0 + ((value - good) / good) * 10.0) if good else 100.0
        if value <= poor:
            return max(0.0, (value / max(poor, 1.0)) * 10.0)
        return 10.0 + ((value - poor) / span) * 80.0

    if value <= good:
        return min(100.0, 90.0 + ((good - value) / max(good, 1.0)) * 10.0)
    if value >= poor:
        return max(0.0, ((poor - value) / max(poor, 1.0)) * 10.0 + 10.0)
    return 10.0 + ((poor - value) / span) * 80.0


def category(value: float, metric: MetricRef) -> BenchmarkCategory:
    """Bucket a value against the thresholds (independent of percentile)."""
    d = _resolve(metric)
    if d.direction == MetricDirection.HIGHER_BETTER:
        if value >= d.good:
            return BenchmarkCategory.OPTIMAL
        if value <= d.poor:
            return BenchmarkCategory.DEFICIENT
        return BenchmarkCategory.AVERAGE

    if value <= d.good:
        return BenchmarkCategory.OPTIMAL
    if value >= d.poor:
        return BenchmarkCategory.DEFICIENT
    return BenchmarkCategory.AVERAGE


def force_classification(cat: BenchmarkCategory, pct: float) -> Classification:
    """optimal -> strength, deficient -> weakness, average split at the 55th percentile."""
    cat = BenchmarkCategory(cat)
    if cat == BenchmarkCategory.OPTIMAL:
        return Classification.STRENGTH
    if cat == BenchmarkCategory.DEFICIENT:
        return Classification.WEAKNESS
    return Classification.STRENGTH if pct >= STRENGTH_PERCENTILE else Classification.WEAKNESS


@dataclass(frozen=True)
class AsymmetryResult:
    percentage: float
    absolute_diff: float
    deficit_limb: Optional[Limb]

    def to_dict(self) -> dict:
        return {
            "percentage": self.percentage,
            "absolute_diff": self.absolute_diff,
            "deficit_limb": self.deficit_limb.value if self.deficit_limb else None,
        }


def asymmetry(
    left: float,
    right: float,
    direction: Union[MetricDirection, str] = MetricDirection.HIGHER_BETTER,
) -> AsymmetryResult:
    """
    Symmetric percentage difference 200*|l-r|/(l+r) with the deficit limb.

    higherBetter: the lower side is the deficit.
    lowerBetter:  the higher side is the deficit.
    Equal values (or l+r == 0) have no deficit limb.
    """
    direction = MetricDirection(direction)
    total = left + right
    diff = abs(left - right)
    if total == 0:
        return AsymmetryResult(percentage=0.0, absolute_diff=diff, deficit_limb=None)

    pct = abs(200.0 * diff / total)

    if left == right:
        deficit = None
    elif direction == MetricDirection.HIGHER_BETTER:
        deficit = Limb.LEFT if left < right else Limb.RIGHT
    else:
        deficit = Limb.LEFT if left > right else Limb.RIGHT

    return AsymmetryResult(percentage=pct, absolute_diff=diff, deficit_limb=deficit)


# ── Pre-computed benchmarks ──────────────────────────────────────────────────

@dataclass
class Benchmark:
    """Registry-derived facts for one metric on one limb (or bilateral)."""
    metric_name: str
    display_name: str
    value: float
    percentile: float
    category: BenchmarkCategory
    classification: Classification
    limb: Optional[Limb] = None

    @property
    def key(self) -> str:
        return f"{self.metric_name}:{self.limb.value if self.limb else 'bilateral'}"

    def to_dict(self) -> dict:
        return {
            "metric_name": self.metric_name,
            "display_name": self.display_name,
            "limb": self.limb.value if self.limb else None,
            "value": self.value,
            "percentile": self.percentile,
            "category": self.category.value,
            "classification": self.classification.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Benchmark":
        limb = data.get("limb")
        return cls(
            metric_name=data["metric_name"],
            display_name=data.get("display_name", data["metric_name"]),
            value=float(data["value"]),
            percentile=float(data["percentile"]),
            category=BenchmarkCategory(data["category"]),
            classification=Classification(data["classification"]),
            limb=Limb(limb) if limb else None,
        )


def benchmark(metric: MetricRef, value: float, limb: Optional[Limb] = None) -> Benchmark:
    d = _resolve(metric)
    pct = round(percentile(value, d))
    cat = category(value, d)
    return Benchmark(
        metric_name=d.name,
        display_name=d.display_name,
        value=value,
        percentile=pct,
        category=cat,
        classification=force_classification(cat, pct),
        limb=limb,
    )


def pre_compute_benchmarks(metrics) -> List[Benchmark]:
    """Benchmark every registered metric present in a SessionMetrics snapshot."""
    results: List[Benchmark] = []
    for name in per_leg_metrics():
        for limb, values in ((Limb.LEFT, metrics.left_leg), (Limb.RIGHT, metrics.right_leg)):
            if name in values and values[name] is not None:
                results.append(benchmark(name, float(values[name]), limb))
    for name in bilateral_metrics():
        value = metrics.bilateral.get(name)
        if value is not None:
            results.append(benchmark(name, float(value)))
    return results
