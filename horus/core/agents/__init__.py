"""
Pipeline Agents

One agent per stage. Each takes a generative-text invoker (anything with
``invoke(system_prompt, user_prompt) -> str``) and does as much as it can
without it: pre-detected patterns, registry benchmarks, programmatic
validation and computed trends bound what model output is accepted.
"""
from .base import (
    DetectedPattern,
    IssueSeverity,
    PatternType,
    ResearchEvidence,
    RuleType,
    Severity,
    SourceType,
    ValidationIssue,
)
from .decomposition import DecompositionAgent, DecompositionResult, merge_patterns, pre_detect_patterns
from .research import ResearchAgent, ResearchResult
from .analysis import (
    AnalysisAgent,
    AnalysisResult,
    CorrelativeInsight,
    Insight,
    apply_forced_classification,
    ensure_min_correlative,
    merge_benchmarks,
)
from .validator import ValidatorAgent, ValidationResult, merge_issues, programmatic_validation
from .progress import ProgressAgent, ProgressResult, TrendDirection, calculate_trend, mcid_for

__all__ = [
    "DetectedPattern",
    "IssueSeverity",
    "PatternType",
    "ResearchEvidence",
    "RuleType",
    "Severity",
    "SourceType",
    "ValidationIssue",
    "DecompositionAgent",
    "DecompositionResult",
    "merge_patterns",
    "pre_detect_patterns",
    "ResearchAgent",
    "ResearchResult",
    "AnalysisAgent",
    "AnalysisResult",
    "CorrelativeInsight",
    "Insight",
    "apply_forced_classification",
    "ensure_min_correlative",
    "merge_benchmarks",
    "ValidatorAgent",
    "ValidationResult",
    "merge_issues",
    "programmatic_validation",
    "ProgressAgent",
    "ProgressResult",
    "TrendDirection",
    "calculate_trend",
    "mcid_for",
]
