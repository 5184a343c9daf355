"""
Metric Registry

Static table of every biomechanical metric the pipeline knows about:
domain, direction, scope, unit, good/poor thresholds and test-retest
reliability (ICC). Loaded once at import and never mutated.

Thresholds with good == poor are legal; percentile() returns the 50
midpoint for them instead of raising.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional


class MetricDomain(str, Enum):
    RANGE    = "range"
    SYMMETRY = "symmetry"
    POWER    = "power"
    CONTROL  = "control"
    TIMING   = "timing"


class MetricDirection(str, Enum):
    HIGHER_BETTER = "higherBetter"
    LOWER_BETTER  = "lowerBetter"


class MetricScope(str, Enum):
    PER_LEG   = "perLeg"
    BILATERAL = "bilateral"


class Limb(str, Enum):
    """The only two limb labels allowed anywhere in pipeline output."""
    LEFT  = "Left Leg"
    RIGHT = "Right Leg"


class QualityTier(str, Enum):
    """
    Evidence quality ranking, best first.

    S – systematic review / meta-analysis
    A – peer-reviewed RCT or major sports-medicine journal
    B – peer-reviewed study, indexed database
    C – institutional or educational source
    D – unverified or general web content
    """
    S = "S"
    A = "A"
    B = "B"
    C = "C"
    D = "D"


QUALITY_TIER_VALUES: Dict[QualityTier, int] = {
    QualityTier.S: 5,
    QualityTier.A: 4,
    QualityTier.B: 3,
    QualityTier.C: 2,
    QualityTier.D: 1,
}


def tier_at_least(tier: QualityTier, minimum: QualityTier) -> bool:
    """True if ``tier`` ranks at or above ``minimum``."""
    return QUALITY_TIER_VALUES[QualityTier(tier)] >= QUALITY_TIER_VALUES[QualityTier(minimum)]


# ── Clinical constants ───────────────────────────────────────────────────────

ASYMMETRY_HIGH = 15.0             # % – high severity
ASYMMETRY_MODERATE = 10.0         # % – moderate severity
ASYMMETRY_LOW = 5.0               # % – reportable at all
BILATERAL_CORRELATION_MIN = 0.7   # cross-correlation below this = poor coordination

# Minimal clinically important differences
MCID = MappingProxyType({
    "rom": 10.0,                 # degrees
    "velocity": 50.0,            # deg/s
    "velocity_percentage": 15.0, # %
    "asymmetry": 5.0,            # percentage points
    "jerk": 100.0,               # deg/s^3
    "opi_score": 5.0,            # composite score points
    "cross_correlation": 0.05,
})

# Classification cut-off for "average" metrics
STRENGTH_PERCENTILE = 55.0


@dataclass(frozen=True)
class MetricDefinition:
    """One registry row."""
    name: str
    display_name: str
    domain: MetricDomain
    direction: MetricDirection
    scope: MetricScope
    unit: str
    good: float              # goodThreshold
    poor: float              # poorThreshold
    icc: float               # test-retest reliability
    citation: str = ""
    active_in_opi: bool = False
    meaningful: bool = True

    @property
    def higher_is_better(self) -> bool:
        return self.direction == MetricDirection.HIGHER_BETTER

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "domain": self.domain.value,
            "direction": self.direction.value,
            "scope": self.scope.value,
            "unit": self.unit,
            "good": self.good,
            "poor": self.poor,
            "icc": self.icc,
            "citation": self.citation,
            "active_in_opi": self.active_in_opi,
            "meaningful": self.meaningful,
        }


_H = MetricDirection.HIGHER_BETTER
_L = MetricDirection.LOWER_BETTER
_LEG = MetricScope.PER_LEG
_BI = MetricScope.BILATERAL

_DEFINITIONS: List[MetricDefinition] = [
    # ── Range of motion ──────────────────────────────────────────────────────
    MetricDefinition("overallMaxRom", "Maximum ROM", MetricDomain.RANGE, _H, _LEG, "°",
                     120, 90, 0.92, "Knee flexion norms"),
    MetricDefinition("averageRom", "Average ROM", MetricDomain.RANGE, _H, _LEG, "°",
                     100, 70, 0.90),
    MetricDefinition("peakFlexion", "Peak Flexion", MetricDomain.RANGE, _H, _LEG, "°",
                     125, 95, 0.91),
    MetricDefinition("peakExtension", "Peak Extension", MetricDomain.RANGE, _L, _LEG, "°",
                     5, 15, 0.88, "Full extension = 0°"),

    # ── Power ────────────────────────────────────────────────────────────────
    MetricDefinition("peakAngularVelocity", "Peak Velocity", MetricDomain.POWER, _H, _LEG, "°/s",
                     400, 200, 0.87, active_in_opi=True),
    MetricDefinition("explosivenessConcentric", "Concentric Power", MetricDomain.POWER, _H, _LEG, "°/s²",
                     500, 200, 0.83, active_in_opi=True),
    MetricDefinition("explosivenessLoading", "Loading Power", MetricDomain.POWER, _H, _LEG, "°/s²",
                     500, 200, 0.83),

    # ── Control ──────────────────────────────────────────────────────────────
    MetricDefinition("rmsJerk", "Movement Smoothness", MetricDomain.CONTROL, _L, _LEG, "°/s³",
                     300, 800, 0.80, "Flash & Hogan 1985", active_in_opi=True),
    MetricDefinition("romCoV", "Movement Consistency", MetricDomain.CONTROL, _L, _LEG, "%",
                     8, 20, 0.80, active_in_opi=True, meaningful=False),

    # ── Symmetry ─────────────────────────────────────────────────────────────
    MetricDefinition("romAsymmetry", "ROM Asymmetry", MetricDomain.SYMMETRY, _L, _BI, "%",
                     5, 15, 0.82, "Sadeghi et al. Gait Posture 2000", active_in_opi=True),
    MetricDefinition("velocityAsymmetry", "Velocity Asymmetry", MetricDomain.SYMMETRY, _L, _BI, "%",
                     8, 20, 0.80, active_in_opi=True),
    MetricDefinition("crossCorrelation", "Movement Synchronization", MetricDomain.SYMMETRY, _H, _BI, "",
                     0.95, 0.75, 0.88, active_in_opi=True),
    MetricDefinition("realAsymmetryAvg", "True Asymmetry", MetricDomain.SYMMETRY, _L, _BI, "°",
                     5, 20, 0.82, active_in_opi=True),
    MetricDefinition("netGlobalAsymmetry", "Net Global Asymmetry", MetricDomain.SYMMETRY, _L, _BI, "%",
                     8, 20, 0.85),

    # ── Timing ───────────────────────────────────────────────────────────────
    MetricDefinition("phaseShift", "Phase Offset", MetricDomain.TIMING, _L, _BI, "°",
                     10, 30, 0.85, active_in_opi=True),
    MetricDefinition("temporalLag", "Timing Delay", MetricDomain.TIMING, _L, _BI, "ms",
                     30, 80, 0.85, active_in_opi=True),
    MetricDefinition("maxFlexionTimingDiff", "Peak Timing Difference", MetricDomain.TIMING, _L, _BI, "ms",
                     50, 150, 0.82),
]

METRIC_REGISTRY: Mapping[str, MetricDefinition] = MappingProxyType(
    {d.name: d for d in _DEFINITIONS}
)


def get_metric(name: str) -> Optional[MetricDefinition]:
    """Look up a metric definition by name (None if unknown)."""
    return METRIC_REGISTRY.get(name)


def per_leg_metrics() -> List[str]:
    return [d.name for d in _DEFINITIONS if d.scope == MetricScope.PER_LEG]


def bilateral_metrics() -> List[str]:
    return [d.name for d in _DEFINITIONS if d.scope == MetricScope.BILATERAL]


def metrics_by_domain(domain: MetricDomain) -> List[MetricDefinition]:
    return [d for d in _DEFINITIONS if d.domain == MetricDomain(domain)]
