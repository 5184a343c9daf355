"""
Visualization Layer

Declarative blocks produced by analysis, and the safe evaluator that
turns their metric expressions into display values.
"""
from .evaluator import (
    EvaluatedValue,
    EvaluationContext,
    evaluate_formula,
    evaluate_metric,
    extract_metric_paths,
    format_value,
    get_metric_unit,
    is_valid_metric_path,
    validate_formula,
)
from .blocks import (
    BLOCK_TYPES,
    BlockError,
    BlockIssue,
    EvaluatedBlock,
    VisualizationBlock,
    block_from_dict,
    evaluate_block,
    parse_blocks,
    validate_blocks,
)

__all__ = [
    "EvaluatedValue",
    "EvaluationContext",
    "evaluate_formula",
    "evaluate_metric",
    "extract_metric_paths",
    "format_value",
    "get_metric_unit",
    "is_valid_metric_path",
    "validate_formula",
    "BLOCK_TYPES",
    "BlockError",
    "BlockIssue",
    "EvaluatedBlock",
    "VisualizationBlock",
    "block_from_dict",
    "evaluate_block",
    "parse_blocks",
    "validate_blocks",
]
