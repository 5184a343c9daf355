"""
Metric Registry & Benchmarking

Usage:
    from horus.core.metrics import percentile, category, asymmetry, get_metric

    d = get_metric("peakFlexion")
    pct = percentile(98, d)          # ~18
    cat = category(98, d)            # BenchmarkCategory.AVERAGE
"""
from .registry import (
    METRIC_REGISTRY,
    MCID,
    Limb,
    MetricDefinition,
    MetricDirection,
    MetricDomain,
    MetricScope,
    QualityTier,
    QUALITY_TIER_VALUES,
    bilateral_metrics,
    get_metric,
    metrics_by_domain,
    per_leg_metrics,
    tier_at_least,
)
from .benchmarking import (
    AsymmetryResult,
    Benchmark,
    BenchmarkCategory,
    Classification,
    asymmetry,
    benchmark,
    category,
    force_classification,
    percentile,
    pre_compute_benchmarks,
)
from .session import SessionMetrics

__all__ = [
    "METRIC_REGISTRY",
    "MCID",
    "Limb",
    "MetricDefinition",
    "MetricDirection",
    "MetricDomain",
    "MetricScope",
    "QualityTier",
    "QUALITY_TIER_VALUES",
    "bilateral_metrics",
    "get_metric",
    "metrics_by_domain",
    "per_leg_metrics",
    "tier_at_least",
    "AsymmetryResult",
    "Benchmark",
    "BenchmarkCategory",
    "Classification",
    "asymmetry",
    "benchmark",
    "category",
    "force_classification",
    "percentile",
    "pre_compute_benchmarks",
    "SessionMetrics",
]
