"""
Validator Agent

Checks analysis output before it is accepted. Deterministic checks run
first; if any of them produce an error the model is never consulted and
the analysis goes straight back for revision.

Rule types:
    metric_accuracy       cited values / block paths vs. benchmarks and registry
    hallucination         references to patterns or insights that do not exist
    clinical_safety       unsupported claims, diagnostic or prescriptive language
    internal_consistency  limb wording, forced classification, correlative count
"""
import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from horus.core.llm.parser import parse_json, as_str, as_list, as_str_list, as_choice
from horus.core.metrics.benchmarking import pre_compute_benchmarks
from horus.core.metrics.session import SessionMetrics
from horus.core.visualization.blocks import validate_blocks
from horus.utils import get_logger
from .analysis import AnalysisResult, MIN_CORRELATIVE
from .base import DetectedPattern, IssueSeverity, RuleType, ValidationIssue

logger = get_logger(__name__)

NUMERICAL_TOLERANCE = 0.5
FORBIDDEN_LIMB_TERMS = ("left", "right", "L", "R", "affected", "involved", "weak side")
_LIMB_LITERALS = re.compile(r"\b(?:Left|Right) Leg\b")

UNSAFE_PATTERNS = (
    (re.compile(r"\bdiagnos(e|is|ed)\b", re.IGNORECASE), "Diagnostic language"),
    (re.compile(r"\bprescrib(e|ed|ing)\b", re.IGNORECASE), "Prescriptive language"),
    (re.compile(r"\btreat(ment)?\b", re.IGNORECASE), "Treatment language"),
    (re.compile(r"\b(must|should) (see|visit|consult) (a )?(doctor|physician|specialist)\b", re.IGNORECASE),
     "Referral directive"),
)

# Older or free-form rule names the model sometimes emits
_RULE_ALIASES = {
    "numerical_accuracy": RuleType.METRIC_ACCURACY,
    "side_specificity": RuleType.INTERNAL_CONSISTENCY,
    "classification_completeness": RuleType.INTERNAL_CONSISTENCY,
    "evidence_support": RuleType.CLINICAL_SAFETY,
}
_RULE_TYPES = tuple(r.value for r in RuleType)
_ISSUE_SEVERITIES = tuple(s.value for s in IssueSeverity)


@dataclass
class ValidationResult:
    passed: bool
    issues: List[ValidationIssue] = field(default_factory=list)
    revision: int = 1
    used_model: bool = False

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == IssueSeverity.ERROR]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == IssueSeverity.WARNING]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "issues": [i.to_dict() for i in self.issues],
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
            "revision": self.revision,
            "used_model": self.used_model,
        }


def _error(rule: RuleType, description: str, ids: Iterable[str] = (), fix: str = "") -> ValidationIssue:
    return ValidationIssue(rule, IssueSeverity.ERROR, description, list(ids), fix)


def _warning(rule: RuleType, description: str, ids: Iterable[str] = (), fix: str = "") -> ValidationIssue:
    return ValidationIssue(rule, IssueSeverity.WARNING, description, list(ids), fix)


def find_forbidden_limb_terms(text: str) -> List[str]:
    """Limb words other than the literal "Left Leg" / "Right Leg"."""
    stripped = _LIMB_LITERALS.sub(" ", text)
    return [
        term for term in FORBIDDEN_LIMB_TERMS
        if re.search(rf"\b{re.escape(term)}\b", stripped, re.IGNORECASE)
    ]


def programmatic_validation(
    analysis: AnalysisResult,
    metrics: SessionMetrics,
    patterns: List[DetectedPattern],
    citations: Optional[Iterable[str]] = None,
) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    benchmarks = {b.key: b for b in pre_compute_benchmarks(metrics)}
    pattern_ids = {p.id for p in patterns}
    insight_ids = {i.id for i in analysis.insights}
    known_citations = {c.strip().lower() for c in citations} if citations is not None else None

    for insight in analysis.insights:
        text = " ".join([insight.title, insight.content, *insight.recommendations])

        for term in find_forbidden_limb_terms(text):
            issues.append(_error(
                RuleType.INTERNAL_CONSISTENCY,
                f'Found forbidden limb term "{term}" in insight. Use "Left Leg" or "Right Leg" instead.',
                [insight.id],
                f'Replace "{term}" with "Left Leg" or "Right Leg"',
            ))

        for tag in insight.invalid_limbs:
            issues.append(_error(
                RuleType.INTERNAL_CONSISTENCY,
                f'Invalid limb tag "{tag}" on insight. Use "Left Leg" or "Right Leg" instead.',
                [insight.id],
                'Tag limbs as "Left Leg" or "Right Leg"',
            ))

        bench = benchmarks.get(insight.benchmark_key) if insight.benchmark_key else None
        if bench is not None:
            if insight.classification != bench.classification:
                issues.append(_error(
                    RuleType.INTERNAL_CONSISTENCY,
                    f"Classification '{insight.classification.value}' contradicts benchmark "
                    f"({bench.category.value}, {bench.percentile:g}th percentile)",
                    [insight.id],
                    f"Classify as {bench.classification.value}",
                ))
            if insight.value is not None and (
                not math.isfinite(insight.value) or abs(insight.value - bench.value) > NUMERICAL_TOLERANCE
            ):
                issues.append(_error(
                    RuleType.METRIC_ACCURACY,
                    f"Cited {bench.display_name} value {insight.value:g} does not match measured {bench.value:g}",
                    [insight.id],
                    f"Use {bench.value:g}",
                ))

        if not insight.evidence:
            issues.append(_error(
                RuleType.CLINICAL_SAFETY,
                "Insight has no supporting evidence",
                [insight.id],
                "Cite at least one evidence item from research",
            ))
        elif known_citations is not None:
            for citation in insight.evidence:
                if citation.strip().lower() not in known_citations:
                    issues.append(_warning(
                        RuleType.HALLUCINATION,
                        f"Evidence '{citation[:60]}' was not produced by research",
                        [insight.id],
                    ))

        for pid in insight.pattern_ids:
            if pid not in pattern_ids:
                issues.append(_error(
                    RuleType.HALLUCINATION,
                    f"Insight references unknown pattern '{pid}'",
                    [insight.id],
                    "Reference only detected pattern ids",
                ))

        for regex, label in UNSAFE_PATTERNS:
            if regex.search(text):
                issues.append(_warning(
                    RuleType.CLINICAL_SAFETY,
                    f"{label} found in insight",
                    [insight.id],
                    "Describe movement findings; leave diagnosis and treatment to the clinician",
                ))

    if len(analysis.correlative_insights) < MIN_CORRELATIVE:
        issues.append(_error(
            RuleType.INTERNAL_CONSISTENCY,
            f"Only {len(analysis.correlative_insights)} correlative insight(s); at least {MIN_CORRELATIVE} required",
            fix="Link related insights across domains",
        ))

    for corr in analysis.correlative_insights:
        if corr.primary_insight_id not in insight_ids:
            issues.append(_error(
                RuleType.HALLUCINATION,
                f"Correlative insight references unknown primary insight '{corr.primary_insight_id}'",
                [corr.id],
            ))
        for related in corr.related_insight_ids:
            if related not in insight_ids:
                issues.append(_warning(
                    RuleType.HALLUCINATION,
                    f"Correlative insight references unknown related insight '{related}'",
                    [corr.id],
                ))

    for mode, blocks in (("overall", analysis.overall_blocks), ("session", analysis.session_blocks)):
        for block_issue in validate_blocks(blocks):
            issues.append(_error(
                RuleType.METRIC_ACCURACY,
                f"{mode} block {block_issue.block_index} ({block_issue.block_type}) "
                f"{block_issue.field}: {block_issue.message}",
                fix=f"Use {block_issue.suggestion}" if block_issue.suggestion else "",
            ))

    return issues


def merge_issues(*groups: List[ValidationIssue]) -> List[ValidationIssue]:
    """Dedup on rule/insights/description prefix, errors first."""
    merged = []
    seen = set()
    for group in groups:
        for issue in group:
            if issue.dedup_key in seen:
                continue
            seen.add(issue.dedup_key)
            merged.append(issue)
    return sorted(merged, key=lambda i: 0 if i.severity == IssueSeverity.ERROR else 1)


def parse_issues(raw: Any) -> List[ValidationIssue]:
    issues = []
    for item in as_list(raw):
        if not isinstance(item, dict):
            continue
        rule_raw = as_str(item.get("ruleType", item.get("rule_type")))
        rule = _RULE_ALIASES.get(rule_raw) or (RuleType(rule_raw) if rule_raw in _RULE_TYPES else None)
        description = as_str(item.get("description"))
        if rule is None or not description:
            continue
        issues.append(ValidationIssue(
            rule_type=rule,
            severity=IssueSeverity(as_choice(item.get("severity"), _ISSUE_SEVERITIES, "warning")),
            description=description,
            insight_ids=as_str_list(item.get("insightIds", item.get("insight_ids"))),
            suggested_fix=as_str(item.get("suggestedFix", item.get("suggested_fix"))),
        ))
    return issues


class ValidatorAgent:
    """Quality gate between analysis and persistence."""

    NAME = "validator"

    SYSTEM_PROMPT = """You are a quality assurance validator for a biomechanics analysis pipeline.
Verify the analysis output is accurate, complete and safe.

Rules:
1. metric_accuracy - values and percentiles must match the source benchmarks (tolerance 0.5)
2. hallucination - every referenced pattern, insight or study must exist in the input
3. clinical_safety - no diagnosis, no prescriptions, claims must be supported by the cited evidence
4. internal_consistency - only "Left Leg"/"Right Leg"; classification must follow the benchmark
   (optimal = strength, deficient = weakness, average split at the 55th percentile)

Respond with JSON only:
{"passed": true, "issues": [{"ruleType": "...", "severity": "error|warning",
  "insightIds": ["..."], "description": "...", "suggestedFix": "..."}]}"""

    def __init__(self, invoker):
        self.invoker = invoker

    def run(
        self,
        analysis: AnalysisResult,
        metrics: SessionMetrics,
        patterns: List[DetectedPattern],
        citations: Optional[Iterable[str]] = None,
        revision: int = 1,
    ) -> ValidationResult:
        programmatic = programmatic_validation(analysis, metrics, patterns, citations)
        if any(i.severity == IssueSeverity.ERROR for i in programmatic):
            issues = merge_issues(programmatic)
            logger.info(f"Programmatic validation failed with {len(issues)} issue(s); skipping model review")
            return ValidationResult(passed=False, issues=issues, revision=revision)

        prompt = self._build_prompt(analysis, metrics, patterns, revision)
        data = parse_json(self.invoker.invoke(self.SYSTEM_PROMPT, prompt), agent=self.NAME)
        issues = merge_issues(programmatic, parse_issues(data.get("issues")))
        passed = not any(i.severity == IssueSeverity.ERROR for i in issues)
        return ValidationResult(passed=passed, issues=issues, revision=revision, used_model=True)

    def _build_prompt(
        self,
        analysis: AnalysisResult,
        metrics: SessionMetrics,
        patterns: List[DetectedPattern],
        revision: int,
    ) -> str:
        output = analysis.to_dict()
        output.pop("visualization", None)
        return f"""Validate the following analysis output (revision {revision}).

ANALYSIS:
{json.dumps(output, indent=2)}

SOURCE METRICS:
{json.dumps(metrics.to_dict(), indent=2)}

DETECTED PATTERN IDS: {", ".join(p.id for p in patterns) or "none"}

Return the validation verdict as JSON."""
