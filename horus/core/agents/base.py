"""
Pipeline Agents — Shared Types

Data contracts passed between stages: detected patterns, research
evidence, insights, and validation issues. Everything here is plain
data with to_dict()/from_dict() so stage outputs can be stored on
PipelineState and returned over the API unchanged.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from horus.core.metrics.registry import Limb, QualityTier


class PatternType(str, Enum):
    THRESHOLD_VIOLATION      = "threshold_violation"
    ASYMMETRY                = "asymmetry"
    CROSS_METRIC_CORRELATION = "cross_metric_correlation"
    TEMPORAL_PATTERN         = "temporal_pattern"
    QUALITY_FLAG             = "quality_flag"


class Severity(str, Enum):
    HIGH     = "high"
    MODERATE = "moderate"
    LOW      = "low"


class SourceType(str, Enum):
    CACHE              = "cache"
    WEB_SEARCH         = "web_search"
    EMBEDDED_KNOWLEDGE = "embedded_knowledge"


class IssueSeverity(str, Enum):
    ERROR   = "error"     # blocks acceptance
    WARNING = "warning"   # reported only


class RuleType(str, Enum):
    METRIC_ACCURACY      = "metric_accuracy"
    HALLUCINATION        = "hallucination"
    CLINICAL_SAFETY      = "clinical_safety"
    INTERNAL_CONSISTENCY = "internal_consistency"


LIMB_VALUES = tuple(l.value for l in Limb)


def parse_limbs(raw: Any) -> List[Limb]:
    """Keep only the literal limb labels; anything else is dropped."""
    if isinstance(raw, str):
        raw = [raw]
    limbs = []
    for item in raw if isinstance(raw, list) else []:
        if item in LIMB_VALUES and Limb(item) not in limbs:
            limbs.append(Limb(item))
    return limbs


def invalid_limb_tags(raw: Any) -> List[str]:
    """Limb tags that are not one of the literal labels, as given."""
    if isinstance(raw, str):
        raw = [raw]
    return [str(item) for item in (raw if isinstance(raw, list) else []) if item not in LIMB_VALUES]


@dataclass
class DetectedPattern:
    """One structured observation from decomposition (no interpretation)."""
    id: str
    type: PatternType
    severity: Severity
    metrics: List[str]
    description: str = ""
    values: Dict[str, float] = field(default_factory=dict)
    limbs: List[Limb] = field(default_factory=list)
    search_terms: List[str] = field(default_factory=list)

    @property
    def dedup_key(self) -> str:
        limbs = ",".join(sorted(l.value for l in self.limbs))
        return f"{self.type.value}:{','.join(sorted(self.metrics))}:{limbs}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "metrics": list(self.metrics),
            "description": self.description,
            "values": dict(self.values),
            "limbs": [l.value for l in self.limbs],
            "search_terms": list(self.search_terms),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectedPattern":
        return cls(
            id=data["id"],
            type=PatternType(data["type"]),
            severity=Severity(data["severity"]),
            metrics=list(data.get("metrics", [])),
            description=data.get("description", ""),
            values=dict(data.get("values", {})),
            limbs=parse_limbs(data.get("limbs", [])),
            search_terms=list(data.get("search_terms", [])),
        )


@dataclass
class ResearchEvidence:
    """A finding supporting (or contextualising) one pattern."""
    id: str
    pattern_id: str
    tier: QualityTier
    source_type: SourceType
    citation: str
    findings: List[str] = field(default_factory=list)
    relevance_score: float = 50.0
    url: Optional[str] = None
    search_terms: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pattern_id": self.pattern_id,
            "tier": self.tier.value,
            "source_type": self.source_type.value,
            "citation": self.citation,
            "findings": list(self.findings),
            "relevance_score": self.relevance_score,
            "url": self.url,
            "search_terms": list(self.search_terms),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResearchEvidence":
        return cls(
            id=data["id"],
            pattern_id=data["pattern_id"],
            tier=QualityTier(data["tier"]),
            source_type=SourceType(data["source_type"]),
            citation=data["citation"],
            findings=list(data.get("findings", [])),
            relevance_score=float(data.get("relevance_score", 50.0)),
            url=data.get("url"),
            search_terms=list(data.get("search_terms", [])),
        )


@dataclass
class ValidationIssue:
    rule_type: RuleType
    severity: IssueSeverity
    description: str
    insight_ids: List[str] = field(default_factory=list)
    suggested_fix: str = ""

    @property
    def dedup_key(self) -> str:
        return f"{self.rule_type.value}:{','.join(self.insight_ids)}:{self.description[:50]}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_type": self.rule_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "insight_ids": list(self.insight_ids),
            "suggested_fix": self.suggested_fix,
        }
