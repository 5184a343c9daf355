"""
Unit Tests for Visualization Blocks
"""
import pytest

from horus.core.visualization import (
    BLOCK_TYPES,
    BlockError,
    EvaluationContext,
    block_from_dict,
    evaluate_block,
    parse_blocks,
    validate_blocks,
)
from horus.core.visualization.blocks import (
    ChartBlock,
    ComparisonCardBlock,
    NextStepsBlock,
    StatCardBlock,
    suggest_metric_path,
)


class TestIngest:
    """Tests for block ingest and defaulting."""

    def test_all_block_types_registered(self):
        assert set(BLOCK_TYPES) == {
            "executive_summary", "stat_card", "alert_card", "next_steps", "comparison_card",
            "progress_card", "metric_grid", "quote_card", "chart",
        }

    def test_unknown_type_rejected(self):
        with pytest.raises(BlockError):
            block_from_dict({"type": "hologram"})
        with pytest.raises(BlockError):
            block_from_dict("stat_card")

    def test_defaults_applied(self):
        block = block_from_dict({"type": "comparison_card", "leftMetric": "leftLeg.peakFlexion"})
        assert isinstance(block, ComparisonCardBlock)
        assert block.left_label == "Left Leg"
        assert block.right_label == "Right Leg"
        assert block.show_difference is True
        assert block.right_metric is None

    def test_invalid_enum_values_fall_back(self):
        block = block_from_dict({"type": "stat_card", "metric": "opiScore", "variant": "neon"})
        assert isinstance(block, StatCardBlock)
        assert block.variant == "default"

        chart = block_from_dict({"type": "chart", "chartType": "hologram"})
        assert isinstance(chart, ChartBlock)
        assert chart.chart_type == "bar"

    def test_next_steps_items_normalised(self):
        block = block_from_dict({
            "type": "next_steps",
            "items": ["Keep tracking", {"text": "Retest", "priority": "high"}, {"text": "x", "priority": "urgent"}, 5],
        })
        assert isinstance(block, NextStepsBlock)
        assert block.items == [{"text": "Keep tracking"}, {"text": "Retest", "priority": "high"}, {"text": "x"}]

    def test_to_dict_uses_camel_case(self):
        block = block_from_dict({"type": "comparison_card", "title": "Flexion",
                                 "leftMetric": "leftLeg.peakFlexion", "rightMetric": "rightLeg.peakFlexion"})
        data = block.to_dict()
        assert data["type"] == "comparison_card"
        assert data["leftMetric"] == "leftLeg.peakFlexion"
        assert block_from_dict(data) == block

    def test_malformed_collections_default_to_empty(self):
        grid = block_from_dict({"type": "metric_grid", "metrics": 5})
        steps = block_from_dict({"type": "next_steps", "items": {"text": "Retest"}})
        alert = block_from_dict({"type": "alert_card", "relatedMetrics": "leftLeg.peakFlexion"})

        assert grid.metrics == []
        assert steps.items == []
        assert alert.related_metrics == []

    def test_unhashable_type_rejected(self):
        with pytest.raises(BlockError):
            block_from_dict({"type": ["stat_card"]})

    def test_parse_blocks_survives_malformed_fields(self):
        blocks = parse_blocks([
            {"type": "metric_grid", "metrics": 5, "columns": [3]},
            {"type": "chart", "dataSpec": {"series": "leftLeg.peakFlexion", "timeSeries": ["opiScore"]}},
            {"type": "stat_card", "metric": "opiScore", "comparison": ["current"]},
        ])
        assert [b.type for b in blocks] == ["metric_grid", "chart", "stat_card"]

    def test_parse_blocks_drops_bad_and_caps(self):
        raw = [{"type": "nope"}] + [{"type": "executive_summary", "content": str(i)} for i in range(8)]
        blocks = parse_blocks(raw, limit=5)
        assert len(blocks) == 5
        assert parse_blocks(None) == []


class TestValidation:
    """Tests for metric-expression validation."""

    def test_valid_blocks(self):
        blocks = parse_blocks([
            {"type": "stat_card", "metric": "leftLeg.peakFlexion",
             "comparison": {"formula": "current - previous"}},
            {"type": "metric_grid", "metrics": [{"metric": "bilateral.romAsymmetry"}]},
        ])
        assert validate_blocks(blocks) == []

    def test_invalid_path_with_suggestion(self):
        blocks = parse_blocks([{"type": "stat_card", "metric": "leftleg.peakflexion"}])
        issues = validate_blocks(blocks)
        assert len(issues) == 1
        assert issues[0].issue == "invalid_path"
        assert issues[0].suggestion == "leftLeg.peakFlexion"
        assert issues[0].block_index == 0

    def test_literal_number_rejected(self):
        blocks = parse_blocks([{"type": "stat_card", "metric": 98}])
        issues = validate_blocks(blocks)
        assert [i.issue for i in issues] == ["type_error"]

    def test_missing_required(self):
        blocks = parse_blocks([{"type": "comparison_card", "leftMetric": "leftLeg.peakFlexion"}])
        issues = validate_blocks(blocks)
        assert [(i.field, i.issue) for i in issues] == [("rightMetric", "missing_required")]

    def test_invalid_formula(self):
        blocks = parse_blocks([{"type": "stat_card", "metric": "leftLeg.peakFlexion",
                                "comparison": {"formula": "abs(leftLeg.peakFlexion"}}])
        issues = validate_blocks(blocks)
        assert [i.issue for i in issues] == ["invalid_formula"]

    def test_chart_fields_enumerated(self):
        block = block_from_dict({
            "type": "chart",
            "chartType": "radar",
            "dataSpec": {
                "radarMetrics": [{"metric": "leftLeg.peakFlexion"}],
                "comparisons": [{"leftMetric": "leftLeg.rmsJerk", "rightMetric": "rightLeg.rmsJerk"}],
                "timeSeries": {"metrics": ["opiScore"]},
            },
        })
        names = [name for name, _, _ in block.metric_fields()]
        assert names == [
            "dataSpec.radarMetrics[0].metric",
            "dataSpec.comparisons[0].leftMetric",
            "dataSpec.comparisons[0].rightMetric",
            "dataSpec.timeSeries.metrics[0]",
        ]

    def test_malformed_chart_spec_is_not_fatal(self):
        block = block_from_dict({
            "type": "chart",
            "dataSpec": {
                "series": {"metric": "leftLeg.peakFlexion"},
                "comparisons": "none",
                "timeSeries": ["opiScore"],
                "references": 42,
            },
        })
        assert block.metric_fields() == []
        assert validate_blocks([block]) == []

        nested = block_from_dict({"type": "chart", "dataSpec": {"timeSeries": {"metrics": "opiScore"}}})
        assert nested.metric_fields() == []

    def test_suggestion_for_nonsense(self):
        assert suggest_metric_path("zzz.qqq") is None


class TestEvaluateBlock:
    """Tests for render-time evaluation."""

    def test_values_resolved(self, session_metrics):
        block = block_from_dict({
            "type": "stat_card",
            "metric": "leftLeg.peakFlexion",
            "comparison": {"formula": "abs(leftLeg.peakFlexion - rightLeg.peakFlexion)"},
        })
        result = evaluate_block(block, EvaluationContext(current=session_metrics))
        assert result.errors == []
        assert result.values["leftLeg.peakFlexion"].formatted == "98.0°"
        assert result.values["abs(leftLeg.peakFlexion - rightLeg.peakFlexion)"].value == 21

    def test_errors_collected(self, session_metrics):
        block = block_from_dict({"type": "comparison_card", "leftMetric": "leftLeg.rmsJerk"})
        result = evaluate_block(block, EvaluationContext(current=session_metrics))
        assert len(result.errors) == 2
        assert not result.values["leftLeg.rmsJerk"].success
        assert result.to_dict()["block"]["type"] == "comparison_card"
