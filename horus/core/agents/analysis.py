"""
Analysis Agent

Synthesises insights from patterns + evidence + registry benchmarks.

Benchmarks are computed from the registry BEFORE the model is called and
always win over model-supplied numbers. Every insight tied to a
benchmarked metric gets its classification and percentile overwritten
from the benchmark, so strength/weakness never depends on the model.

Output bounds:
    insights               <= 6
    correlative insights   <= 3   (topped up to 2 when possible)
    benchmarks             <= 8
    blocks per mode        <= 5
"""
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from horus.core.llm.parser import parse_json, as_str, as_float, as_list, as_str_list, as_choice
from horus.core.metrics.benchmarking import (
    Benchmark,
    Classification,
    benchmark,
    pre_compute_benchmarks,
)
from horus.core.metrics.registry import Limb, MetricDomain, get_metric
from horus.core.metrics.session import SessionMetrics
from horus.core.visualization.blocks import MAX_BLOCKS_PER_MODE, VisualizationBlock, block_from_dict, parse_blocks
from horus.utils import get_logger
from .base import DetectedPattern, ResearchEvidence, ValidationIssue, invalid_limb_tags, parse_limbs, LIMB_VALUES

logger = get_logger(__name__)

MAX_INSIGHTS = 6
MAX_CORRELATIVE = 3
MIN_CORRELATIVE = 2
MAX_BENCHMARKS = 8

_DOMAINS = tuple(d.value for d in MetricDomain)
_CLASSIFICATIONS = tuple(c.value for c in Classification)
_SIGNIFICANCE = ("high", "moderate", "low")

# Domain pairs that usually move together, used to top up correlative insights
CORRELATED_DOMAINS = (
    ("power", "range", "Power output typically correlates with range of motion capability"),
    ("symmetry", "power", "Asymmetry often affects power generation differently between limbs"),
    ("control", "power", "Movement control quality influences power efficiency"),
    ("range", "symmetry", "ROM differences between limbs contribute to asymmetry patterns"),
    ("timing", "symmetry", "Temporal coordination affects bilateral symmetry"),
)


@dataclass
class Insight:
    id: str
    domain: MetricDomain
    classification: Classification
    title: str
    content: str
    limbs: List[Limb] = field(default_factory=list)
    evidence: List[str] = field(default_factory=list)
    pattern_ids: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    percentile: Optional[float] = None
    metric_name: Optional[str] = None      # benchmarked metric this insight is about
    value: Optional[float] = None          # value the insight cites for that metric
    invalid_limbs: List[str] = field(default_factory=list)

    @property
    def benchmark_key(self) -> Optional[str]:
        if not self.metric_name:
            return None
        limb = self.limbs[0].value if len(self.limbs) == 1 else "bilateral"
        return f"{self.metric_name}:{limb}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "domain": self.domain.value,
            "classification": self.classification.value,
            "title": self.title,
            "content": self.content,
            "limbs": [l.value for l in self.limbs],
            "evidence": list(self.evidence),
            "pattern_ids": list(self.pattern_ids),
            "recommendations": list(self.recommendations),
            "percentile": self.percentile,
            "metric_name": self.metric_name,
            "value": self.value,
            "invalid_limbs": list(self.invalid_limbs),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Insight":
        return cls(
            id=data["id"],
            domain=MetricDomain(data["domain"]),
            classification=Classification(data["classification"]),
            title=data.get("title", ""),
            content=data.get("content", ""),
            limbs=parse_limbs(data.get("limbs", [])),
            evidence=list(data.get("evidence", [])),
            pattern_ids=list(data.get("pattern_ids", [])),
            recommendations=list(data.get("recommendations", [])),
            percentile=data.get("percentile"),
            metric_name=data.get("metric_name"),
            value=data.get("value"),
            invalid_limbs=list(data.get("invalid_limbs", [])),
        )


@dataclass
class CorrelativeInsight:
    id: str
    primary_insight_id: str
    related_insight_ids: List[str]
    explanation: str
    significance: str = "moderate"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "primary_insight_id": self.primary_insight_id,
            "related_insight_ids": list(self.related_insight_ids),
            "explanation": self.explanation,
            "significance": self.significance,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CorrelativeInsight":
        return cls(
            id=data["id"],
            primary_insight_id=data["primary_insight_id"],
            related_insight_ids=list(data.get("related_insight_ids", [])),
            explanation=data.get("explanation", ""),
            significance=data.get("significance", "moderate"),
        )


@dataclass
class AnalysisResult:
    insights: List[Insight] = field(default_factory=list)
    correlative_insights: List[CorrelativeInsight] = field(default_factory=list)
    benchmarks: List[Benchmark] = field(default_factory=list)
    summary: str = ""
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    overall_blocks: List[VisualizationBlock] = field(default_factory=list)
    session_blocks: List[VisualizationBlock] = field(default_factory=list)
    analyzed_at: int = 0

    @property
    def blocks(self) -> List[VisualizationBlock]:
        return self.overall_blocks + self.session_blocks

    def to_dict(self) -> Dict[str, Any]:
        return {
            "insights": [i.to_dict() for i in self.insights],
            "correlative_insights": [c.to_dict() for c in self.correlative_insights],
            "benchmarks": [b.to_dict() for b in self.benchmarks],
            "summary": self.summary,
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
            "visualization": {
                "overall_blocks": [b.to_dict() for b in self.overall_blocks],
                "session_blocks": [b.to_dict() for b in self.session_blocks],
            },
            "analyzed_at": self.analyzed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        visualization = data.get("visualization") or {}
        return cls(
            insights=[Insight.from_dict(i) for i in data.get("insights", [])],
            correlative_insights=[CorrelativeInsight.from_dict(c) for c in data.get("correlative_insights", [])],
            benchmarks=[Benchmark.from_dict(b) for b in data.get("benchmarks", [])],
            summary=data.get("summary", ""),
            strengths=list(data.get("strengths", [])),
            weaknesses=list(data.get("weaknesses", [])),
            overall_blocks=[block_from_dict(b) for b in visualization.get("overall_blocks", [])],
            session_blocks=[block_from_dict(b) for b in visualization.get("session_blocks", [])],
            analyzed_at=int(data.get("analyzed_at", 0)),
        )


# ── Field-by-field ingest ─────────────────────────────────────────────────────

def parse_insights(raw: Any) -> List[Insight]:
    """Invalid domain/classification -> dropped. Never more than MAX_INSIGHTS."""
    insights = []
    for i, item in enumerate(as_list(raw), start=1):
        if not isinstance(item, dict):
            continue
        domain = as_choice(item.get("domain"), _DOMAINS)
        classification = as_choice(item.get("classification"), _CLASSIFICATIONS)
        if domain is None or classification is None:
            logger.debug(f"Dropping insight {i}: invalid domain or classification")
            continue
        metric_name = as_str(item.get("metricName", item.get("metric_name"))) or None
        value = item.get("value")
        percentile = item.get("percentile")
        insights.append(Insight(
            id=as_str(item.get("id")) or f"insight-{i}",
            domain=MetricDomain(domain),
            classification=Classification(classification),
            title=as_str(item.get("title")),
            content=as_str(item.get("content")),
            limbs=parse_limbs(item.get("limbs", [])),
            evidence=as_str_list(item.get("evidence")),
            pattern_ids=as_str_list(item.get("patternIds", item.get("pattern_ids"))),
            recommendations=as_str_list(item.get("recommendations")),
            percentile=as_float(percentile) if percentile is not None else None,
            metric_name=metric_name if metric_name and get_metric(metric_name) else None,
            value=as_float(value) if value is not None else None,
            invalid_limbs=invalid_limb_tags(item.get("limbs", [])),
        ))
        if len(insights) >= MAX_INSIGHTS:
            break
    return insights


def parse_correlative(raw: Any) -> List[CorrelativeInsight]:
    out = []
    for i, item in enumerate(as_list(raw), start=1):
        if not isinstance(item, dict):
            continue
        primary = as_str(item.get("primaryInsightId", item.get("primary_insight_id")))
        if not primary:
            continue
        out.append(CorrelativeInsight(
            id=as_str(item.get("id")) or f"corr-{i}",
            primary_insight_id=primary,
            related_insight_ids=as_str_list(item.get("relatedInsightIds", item.get("related_insight_ids"))),
            explanation=as_str(item.get("explanation")),
            significance=as_choice(item.get("significance"), _SIGNIFICANCE, "moderate"),
        ))
    return out


def parse_benchmarks(raw: Any) -> List[Benchmark]:
    """Model benchmarks are re-scored from the registry; unknown metrics are dropped."""
    out = []
    for item in as_list(raw):
        if not isinstance(item, dict):
            continue
        name = as_str(item.get("metricName", item.get("metric_name")))
        if get_metric(name) is None or item.get("value") is None:
            continue
        limb = item.get("limb")
        out.append(benchmark(name, as_float(item.get("value")), Limb(limb) if limb in LIMB_VALUES else None))
    return out


def merge_benchmarks(pre_computed: List[Benchmark], generated: List[Benchmark]) -> List[Benchmark]:
    """Pre-computed first; a generated benchmark for a key already present is discarded."""
    merged = []
    seen = set()
    for b in list(pre_computed) + list(generated):
        if b.key in seen:
            continue
        seen.add(b.key)
        merged.append(b)
    return merged


def prioritise_benchmarks(benchmarks: List[Benchmark], patterns: List[DetectedPattern]) -> List[Benchmark]:
    """Metrics that feature in a pattern first, then the rest in registry order."""
    flagged = {m for p in patterns for m in p.metrics}
    return sorted(benchmarks, key=lambda b: 0 if b.metric_name in flagged else 1)


def apply_forced_classification(insights: List[Insight], benchmarks: List[Benchmark]) -> int:
    """Overwrite classification/percentile from the benchmark table. Returns number changed."""
    table = {b.key: b for b in benchmarks}
    changed = 0
    for insight in insights:
        bench = table.get(insight.benchmark_key) if insight.benchmark_key else None
        if bench is None:
            continue
        if insight.classification != bench.classification:
            changed += 1
        insight.classification = bench.classification
        insight.percentile = bench.percentile
    return changed


def ensure_min_correlative(
    insights: List[Insight],
    existing: List[CorrelativeInsight],
) -> List[CorrelativeInsight]:
    """Top up to MIN_CORRELATIVE using domain pairs that usually co-vary."""
    if len(existing) >= MIN_CORRELATIVE or len(insights) < 2:
        return existing

    result = list(existing)
    by_domain: Dict[str, List[str]] = {}
    for insight in insights:
        by_domain.setdefault(insight.domain.value, []).append(insight.id)

    auto_id = 0
    for first, second, explanation in CORRELATED_DOMAINS:
        if len(result) >= MIN_CORRELATIVE:
            break
        ids1 = by_domain.get(first)
        ids2 = by_domain.get(second)
        if not ids1 or not ids2:
            continue
        exists = any(
            (c.primary_insight_id == ids1[0] and ids2[0] in c.related_insight_ids)
            or (c.primary_insight_id == ids2[0] and ids1[0] in c.related_insight_ids)
            for c in result
        )
        if exists:
            continue
        auto_id += 1
        result.append(CorrelativeInsight(
            id=f"auto-corr-{auto_id}",
            primary_insight_id=ids1[0],
            related_insight_ids=[ids2[0]],
            explanation=explanation,
            significance="moderate",
        ))
    return result


class AnalysisAgent:
    """
    Insight synthesiser.

    Runs once per revision. ``issues`` from a failed validation are fed
    back as corrective context.
    """

    NAME = "analysis"

    SYSTEM_PROMPT = """You are a clinical biomechanics analyst writing insights for a knee
rehabilitation report.

CRITICAL CONSTRAINTS:
1. Every insight is classified "strength" or "weakness" - there is no neutral
2. Use the PRE-COMPUTED BENCHMARKS exactly; never invent percentiles or values
3. Limbs must be written exactly "Left Leg" or "Right Leg" - never abbreviations or
   words like "affected" or "involved"
4. Every insight cites at least one evidence item from the list provided
5. Do NOT diagnose or prescribe; describe movement, not disease
6. Produce at least 2 correlative insights linking insight ids
7. Visualization blocks reference metrics by path (leftLeg.x, rightLeg.x, bilateral.x, opiScore)
   and formulas - NEVER literal numbers for metric values

Domains: range, symmetry, power, control, timing

Respond with JSON only:
{"insights": [{"id": "...", "domain": "...", "classification": "...", "title": "...", "content": "...",
   "limbs": ["Left Leg"], "evidence": ["citation"], "patternIds": ["..."], "recommendations": ["..."],
   "metricName": "...", "value": 0, "percentile": 0}],
 "correlativeInsights": [{"id": "...", "primaryInsightId": "...", "relatedInsightIds": ["..."],
   "explanation": "...", "significance": "moderate"}],
 "benchmarks": [], "summary": "...", "strengths": ["..."], "weaknesses": ["..."],
 "visualization": {"overallBlocks": [], "sessionBlocks": []}}"""

    def __init__(self, invoker):
        self.invoker = invoker

    def run(
        self,
        metrics: SessionMetrics,
        patterns: List[DetectedPattern],
        evidence_by_pattern: Dict[str, List[ResearchEvidence]],
        issues: Optional[List[ValidationIssue]] = None,
    ) -> AnalysisResult:
        pre_computed = pre_compute_benchmarks(metrics)
        prompt = self._build_prompt(metrics, patterns, evidence_by_pattern, pre_computed, issues or [])
        data = parse_json(self.invoker.invoke(self.SYSTEM_PROMPT, prompt), agent=self.NAME)

        benchmarks = merge_benchmarks(pre_computed, parse_benchmarks(data.get("benchmarks")))
        insights = parse_insights(data.get("insights"))
        forced = apply_forced_classification(insights, benchmarks)
        if forced:
            logger.info(f"Forced classification overrode {forced} insight label(s)")

        correlative = ensure_min_correlative(insights, parse_correlative(data.get("correlativeInsights")))

        visualization = data.get("visualization") if isinstance(data.get("visualization"), dict) else {}
        return AnalysisResult(
            insights=insights,
            correlative_insights=correlative[:MAX_CORRELATIVE],
            benchmarks=prioritise_benchmarks(benchmarks, patterns)[:MAX_BENCHMARKS],
            summary=as_str(data.get("summary")),
            strengths=as_str_list(data.get("strengths"))[:3],
            weaknesses=as_str_list(data.get("weaknesses"))[:3],
            overall_blocks=parse_blocks(visualization.get("overallBlocks"), MAX_BLOCKS_PER_MODE),
            session_blocks=parse_blocks(visualization.get("sessionBlocks"), MAX_BLOCKS_PER_MODE),
            analyzed_at=int(time.time() * 1000),
        )

    def _build_prompt(
        self,
        metrics: SessionMetrics,
        patterns: List[DetectedPattern],
        evidence_by_pattern: Dict[str, List[ResearchEvidence]],
        benchmarks: List[Benchmark],
        issues: List[ValidationIssue],
    ) -> str:
        evidence = {
            pid: [{"citation": e.citation, "tier": e.tier.value, "findings": e.findings[:2]} for e in items]
            for pid, items in evidence_by_pattern.items()
        }
        prompt = f"""Write insights for session {metrics.session_id} ({metrics.movement_type.replace('_', ' ')}).

PATTERNS:
{json.dumps([p.to_dict() for p in patterns], indent=2)}

EVIDENCE BY PATTERN:
{json.dumps(evidence, indent=2)}

PRE-COMPUTED BENCHMARKS (authoritative):
{json.dumps([b.to_dict() for b in benchmarks], indent=2)}
"""
        if metrics.opi_score is not None:
            prompt += f"\nOVERALL SCORE: {metrics.opi_score:g} ({metrics.opi_grade or 'ungraded'})\n"

        if issues:
            prompt += "\nPREVIOUS ATTEMPT FAILED VALIDATION. Fix every issue below:\n"
            for issue in issues:
                ids = ", ".join(issue.insight_ids) or "general"
                prompt += f"- [{issue.severity.value}] {issue.rule_type.value} ({ids}): {issue.description}"
                if issue.suggested_fix:
                    prompt += f" -> {issue.suggested_fix}"
                prompt += "\n"

        prompt += "\nReturn the analysis as JSON."
        return prompt
