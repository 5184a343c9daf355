"""
Visualization Blocks

Declarative display blocks emitted by the analysis stage. Numeric fields
hold metric paths or formulas, never baked-in numbers; values are filled
in at render time by the evaluator.

On ingest, unknown block types are rejected, missing optional
fields get defaults, and every metric expression can be enumerated with
metric_fields() for validation.
"""
from __future__ import annotations

import difflib
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from horus.core.metrics.registry import METRIC_REGISTRY
from horus.core.metrics.session import PATH_PREFIXES
from .evaluator import (
    EvaluatedValue,
    EvaluationContext,
    evaluate_formula,
    evaluate_metric,
    is_valid_metric_path,
    validate_formula,
)

MAX_BLOCKS_PER_MODE = 5

ALERT_SEVERITIES = ("info", "warning", "error", "success")
STAT_VARIANTS = ("default", "success", "warning", "danger")
QUOTE_VARIANTS = ("info", "evidence", "recommendation")
CHART_TYPES = (
    "line", "bar", "area", "pie", "radar", "radialBar",
    "scatter", "composed", "funnel", "treemap",
)


class BlockError(ValueError):
    """A block payload could not be ingested."""


def _str(data: Dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key, default)
    return value if isinstance(value, str) else default


def _choice(data: Dict[str, Any], key: str, allowed: Tuple[str, ...], default: str) -> str:
    value = data.get(key)
    return value if value in allowed else default


def _items(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


# A metric field is (json field name, expression, is_formula)
MetricField = Tuple[str, Any, bool]


@dataclass
class VisualizationBlock:
    """Base class; subclasses set ``type``."""
    type: ClassVar[str] = ""
    title: str = ""

    def metric_fields(self) -> List[MetricField]:
        return []

    def to_dict(self) -> Dict[str, Any]:
        out = {"type": self.type}
        for name, value in self.__dict__.items():
            out[_camel(name)] = value
        return out


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.title() for p in rest)


@dataclass
class ExecutiveSummaryBlock(VisualizationBlock):
    type: ClassVar[str] = "executive_summary"
    content: str = ""

    @classmethod
    def from_dict(cls, data):
        return cls(title=_str(data, "title", "Summary"), content=_str(data, "content"))


@dataclass
class StatCardBlock(VisualizationBlock):
    type: ClassVar[str] = "stat_card"
    metric: Any = None
    unit: Optional[str] = None
    comparison: Optional[Dict[str, Any]] = None
    icon: Optional[str] = None
    variant: str = "default"

    @classmethod
    def from_dict(cls, data):
        comparison = data.get("comparison") if isinstance(data.get("comparison"), dict) else None
        return cls(
            title=_str(data, "title"),
            metric=data.get("metric"),
            unit=data.get("unit"),
            comparison=comparison,
            icon=data.get("icon"),
            variant=_choice(data, "variant", STAT_VARIANTS, "default"),
        )

    def metric_fields(self):
        fields = [("metric", self.metric, False)]
        if self.comparison and self.comparison.get("formula"):
            fields.append(("comparison.formula", self.comparison["formula"], True))
        return fields


@dataclass
class AlertCardBlock(VisualizationBlock):
    type: ClassVar[str] = "alert_card"
    description: str = ""
    severity: str = "info"
    icon: Optional[str] = None
    related_metrics: List[Any] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data):
        related = data.get("relatedMetrics") or data.get("related_metrics")
        return cls(
            title=_str(data, "title"),
            description=_str(data, "description"),
            severity=_choice(data, "severity", ALERT_SEVERITIES, "info"),
            icon=data.get("icon"),
            related_metrics=list(_items(related)),
        )

    def metric_fields(self):
        return [(f"relatedMetrics[{i}]", m, False) for i, m in enumerate(self.related_metrics)]


@dataclass
class NextStepsBlock(VisualizationBlock):
    type: ClassVar[str] = "next_steps"
    items: List[Dict[str, Any]] = field(default_factory=list)
    collapsible: bool = True
    default_collapsed: bool = False

    @classmethod
    def from_dict(cls, data):
        items = []
        for item in _items(data.get("items")):
            if isinstance(item, str):
                items.append({"text": item})
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                entry = {"text": item["text"]}
                if item.get("priority") in ("high", "medium", "low"):
                    entry["priority"] = item["priority"]
                items.append(entry)
        return cls(
            title=_str(data, "title", "Next Steps"),
            items=items,
            collapsible=bool(data.get("collapsible", True)),
            default_collapsed=bool(data.get("defaultCollapsed", False)),
        )


@dataclass
class ComparisonCardBlock(VisualizationBlock):
    type: ClassVar[str] = "comparison_card"
    left_label: str = "Left Leg"
    right_label: str = "Right Leg"
    left_metric: Any = None
    right_metric: Any = None
    unit: Optional[str] = None
    show_difference: bool = True
    highlight_better: bool = True

    @classmethod
    def from_dict(cls, data):
        return cls(
            title=_str(data, "title"),
            left_label=_str(data, "leftLabel", "Left Leg"),
            right_label=_str(data, "rightLabel", "Right Leg"),
            left_metric=data.get("leftMetric"),
            right_metric=data.get("rightMetric"),
            unit=data.get("unit"),
            show_difference=bool(data.get("showDifference", True)),
            highlight_better=bool(data.get("highlightBetter", True)),
        )

    def metric_fields(self):
        return [("leftMetric", self.left_metric, False), ("rightMetric", self.right_metric, False)]


@dataclass
class ProgressCardBlock(VisualizationBlock):
    type: ClassVar[str] = "progress_card"
    description: str = ""
    metric: Any = None
    target: Any = None
    icon: Optional[str] = None
    celebration_level: Optional[str] = None

    @classmethod
    def from_dict(cls, data):
        level = data.get("celebrationLevel")
        return cls(
            title=_str(data, "title"),
            description=_str(data, "description"),
            metric=data.get("metric"),
            target=data.get("target"),
            icon=data.get("icon"),
            celebration_level=level if level in ("major", "minor") else None,
        )

    def metric_fields(self):
        fields = [("metric", self.metric, False)]
        if isinstance(self.target, str):
            fields.append(("target", self.target, False))
        return fields


@dataclass
class MetricGridBlock(VisualizationBlock):
    type: ClassVar[str] = "metric_grid"
    columns: int = 2
    metrics: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data):
        try:
            columns = int(data.get("columns", 2))
        except (TypeError, ValueError):
            columns = 2
        metrics = [m for m in _items(data.get("metrics")) if isinstance(m, dict)]
        return cls(
            title=_str(data, "title"),
            columns=columns if columns in (2, 3, 4) else 2,
            metrics=metrics,
        )

    def metric_fields(self):
        return [(f"metrics[{i}].metric", m.get("metric"), False) for i, m in enumerate(self.metrics)]


@dataclass
class QuoteCardBlock(VisualizationBlock):
    type: ClassVar[str] = "quote_card"
    content: str = ""
    citation: Optional[str] = None
    icon: Optional[str] = None
    variant: str = "info"

    @classmethod
    def from_dict(cls, data):
        return cls(
            title=_str(data, "title"),
            content=_str(data, "content"),
            citation=data.get("citation"),
            icon=data.get("icon"),
            variant=_choice(data, "variant", QUOTE_VARIANTS, "info"),
        )


@dataclass
class ChartBlock(VisualizationBlock):
    type: ClassVar[str] = "chart"
    chart_type: str = "bar"
    data_spec: Dict[str, Any] = field(default_factory=dict)
    config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data):
        spec = data.get("dataSpec") if isinstance(data.get("dataSpec"), dict) else {}
        config = data.get("config") if isinstance(data.get("config"), dict) else {}
        return cls(
            title=_str(data, "title"),
            chart_type=_choice(data, "chartType", CHART_TYPES, "bar"),
            data_spec=spec,
            config=config,
        )

    def metric_fields(self):
        fields: List[MetricField] = []
        for key in ("series", "radarMetrics", "pieSegments"):
            for i, item in enumerate(_items(self.data_spec.get(key))):
                if isinstance(item, dict):
                    fields.append((f"dataSpec.{key}[{i}].metric", item.get("metric"), False))
        for i, item in enumerate(_items(self.data_spec.get("comparisons"))):
            if isinstance(item, dict):
                fields.append((f"dataSpec.comparisons[{i}].leftMetric", item.get("leftMetric"), False))
                fields.append((f"dataSpec.comparisons[{i}].rightMetric", item.get("rightMetric"), False))
        time_series = self.data_spec.get("timeSeries")
        if not isinstance(time_series, dict):
            time_series = {}
        for i, metric in enumerate(_items(time_series.get("metrics"))):
            fields.append((f"dataSpec.timeSeries.metrics[{i}]", metric, False))
        for i, item in enumerate(_items(self.data_spec.get("references"))):
            if isinstance(item, dict) and isinstance(item.get("value"), str):
                fields.append((f"dataSpec.references[{i}].value", item["value"], False))
        return fields


BLOCK_TYPES: Dict[str, type] = {
    cls.type: cls
    for cls in (
        ExecutiveSummaryBlock, StatCardBlock, AlertCardBlock, NextStepsBlock,
        ComparisonCardBlock, ProgressCardBlock, MetricGridBlock, QuoteCardBlock,
        ChartBlock,
    )
}


def block_from_dict(data: Dict[str, Any]) -> VisualizationBlock:
    """Build a typed block from a raw dict; unknown types raise BlockError."""
    if not isinstance(data, dict):
        raise BlockError("Block must be an object")
    block_type = data.get("type")
    block_cls = BLOCK_TYPES.get(block_type) if isinstance(block_type, str) else None
    if block_cls is None:
        raise BlockError(f"Unknown block type: {data.get('type')!r}")
    try:
        return block_cls.from_dict(data)
    except (TypeError, AttributeError, ValueError) as e:
        raise BlockError(f"Malformed {block_cls.type} block: {e}") from e


def parse_blocks(raw: Any, limit: int = MAX_BLOCKS_PER_MODE) -> List[VisualizationBlock]:
    """Ingest a list of raw blocks, dropping unknown/malformed ones, capped at ``limit``."""
    blocks: List[VisualizationBlock] = []
    for item in raw if isinstance(raw, list) else []:
        try:
            blocks.append(block_from_dict(item))
        except BlockError:
            continue
        if len(blocks) >= limit:
            break
    return blocks


# ── Validation ───────────────────────────────────────────────────────────────

_ALL_PATHS = ["opiScore"] + [f"{p}.{m}" for p in PATH_PREFIXES for m in METRIC_REGISTRY]


def suggest_metric_path(invalid: str) -> Optional[str]:
    """Closest valid metric path for a near-miss (case/typo)."""
    lowered = {p.lower(): p for p in _ALL_PATHS}
    if invalid.lower() in lowered:
        return lowered[invalid.lower()]
    matches = difflib.get_close_matches(invalid, _ALL_PATHS, n=1, cutoff=0.75)
    return matches[0] if matches else None


@dataclass
class BlockIssue:
    block_index: int
    block_type: str
    field: str
    issue: str                  # invalid_path | missing_required | type_error | invalid_formula
    message: str
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "block_index": self.block_index,
            "block_type": self.block_type,
            "field": self.field,
            "issue": self.issue,
            "message": self.message,
            "suggestion": self.suggestion,
        }


def _target(block: VisualizationBlock) -> Optional[str]:
    metric = getattr(block, "metric", None)
    return metric if isinstance(metric, str) else None


def _check_field(index: int, block: VisualizationBlock, name: str, value: Any, is_formula: bool) -> List[BlockIssue]:
    if value is None:
        return [BlockIssue(index, block.type, name, "missing_required", f"Missing required metric field '{name}'")]
    if not isinstance(value, str):
        return [BlockIssue(index, block.type, name, "type_error",
                           f"Field '{name}' must be a metric expression, got {type(value).__name__}")]
    if is_formula:
        report = validate_formula(value, target_metric=_target(block))
        return [
            BlockIssue(index, block.type, name, "invalid_formula", err)
            for err in report["errors"]
        ]
    if not is_valid_metric_path(value):
        return [BlockIssue(index, block.type, name, "invalid_path",
                           f"Invalid metric path '{value}'", suggest_metric_path(value))]
    return []


def validate_blocks(blocks: List[VisualizationBlock]) -> List[BlockIssue]:
    issues: List[BlockIssue] = []
    for index, block in enumerate(blocks):
        for name, value, is_formula in block.metric_fields():
            issues.extend(_check_field(index, block, name, value, is_formula))
    return issues


# ── Rendering ────────────────────────────────────────────────────────────────

@dataclass
class EvaluatedBlock:
    block: VisualizationBlock
    values: Dict[str, EvaluatedValue] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "block": self.block.to_dict(),
            "values": {k: v.to_dict() for k, v in self.values.items()},
            "errors": list(self.errors),
        }


def evaluate_block(block: VisualizationBlock, context: EvaluationContext) -> EvaluatedBlock:
    """Resolve every metric expression in a block against live metrics."""
    result = EvaluatedBlock(block=block)
    for name, value, is_formula in block.metric_fields():
        if not isinstance(value, str):
            result.errors.append(f"{name}: missing metric expression")
            continue
        if is_formula:
            evaluated = evaluate_formula(value, context, target_metric=_target(block))
        else:
            evaluated = evaluate_metric(value, context)
        result.values[value] = evaluated
        if not evaluated.success:
            result.errors.append(f"{name}: {evaluated.error}")
    return result
