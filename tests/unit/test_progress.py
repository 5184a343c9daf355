"""
Unit Tests for the Progress Agent

Trends, milestones, regressions and projections are computed without the
model; the model only writes the narrative summary.
"""
import pytest

from conftest import DAY_MS, T0, FakeInvoker, make_session
from horus.core.agents import ProgressAgent, TrendDirection, calculate_trend, mcid_for
from horus.core.agents.progress import (
    INSUFFICIENT_HISTORY_SUMMARY,
    compute_asymmetry_trends,
    detect_correlations,
    detect_milestones,
    detect_regressions,
    pre_compute_trends,
)
from horus.core.metrics import Limb, MetricDirection
from horus.utils import GenerativeCallError, PipelineCancelledError


def leg_session(session_id, days_before, left=None, right=None, bilateral=None):
    return make_session(
        session_id,
        T0 - days_before * DAY_MS,
        left_leg=left or {},
        right_leg=right or {},
        bilateral=bilateral or {},
    )


# Fixtures
@pytest.fixture
def recovery_history():
    """Left Leg flexion climbing 80 -> 90 -> 100 while the Right Leg holds near 124."""
    return [
        leg_session("s-1", 21, {"peakFlexion": 80.0}, {"peakFlexion": 124.0}),
        leg_session("s-2", 14, {"peakFlexion": 90.0}, {"peakFlexion": 124.0}),
        leg_session("s-3", 7, {"peakFlexion": 100.0}, {"peakFlexion": 125.0}),
    ]


@pytest.fixture
def recovered_session():
    return leg_session("s-4", 0, {"peakFlexion": 126.0}, {"peakFlexion": 127.0})


class TestTrendMath:
    """Tests for MCID lookup and trend classification."""

    @pytest.mark.parametrize("name,expected", [
        ("peakFlexion", 10.0),
        ("overallMaxRom", 10.0),
        ("romAsymmetry", 5.0),
        ("velocityAsymmetry", 15.0),
        ("rmsJerk", 100.0),
        ("crossCorrelation", 5.0),
        ("somethingElse", 10.0),
    ])
    def test_mcid_for(self, name, expected):
        assert mcid_for(name) == pytest.approx(expected)

    def test_meaningful_improvement(self):
        trend = calculate_trend(110, 100, 90, MetricDirection.HIGHER_BETTER, "peakFlexion")
        assert trend["trend"] == TrendDirection.IMPROVING
        assert trend["is_clinically_meaningful"]
        assert trend["change_from_previous"] == pytest.approx(10.0)
        assert trend["change_from_baseline"] == pytest.approx(22.22, abs=0.01)

    def test_small_change_is_stable(self):
        trend = calculate_trend(100, 98, 98, MetricDirection.HIGHER_BETTER, "peakFlexion")
        assert trend["trend"] == TrendDirection.STABLE
        assert not trend["is_clinically_meaningful"]

    def test_lower_better_drop_is_improvement(self):
        trend = calculate_trend(400, 600, 600, MetricDirection.LOWER_BETTER, "rmsJerk")
        assert trend["trend"] == TrendDirection.IMPROVING

    def test_zero_reference(self):
        trend = calculate_trend(6, 0, 0, MetricDirection.LOWER_BETTER, "romAsymmetry")
        assert trend["change_from_previous"] == 0.0
        assert trend["trend"] == TrendDirection.DECLINING


class TestLongitudinalAnalysis:
    """Tests for trends, asymmetry and milestones over a recovery history."""

    def test_trends_per_limb(self, recovered_session, recovery_history):
        trends = {t.key: t for t in pre_compute_trends(recovered_session, recovery_history)}

        left = trends["peakFlexion:Left Leg"]
        assert left.trend == TrendDirection.IMPROVING
        assert left.previous_value == 100
        assert left.baseline_value == 80
        assert [p["value"] for p in left.history] == [80, 90, 100, 126]
        assert trends["peakFlexion:Right Leg"].trend == TrendDirection.STABLE

    def test_history_order_does_not_matter(self, recovered_session, recovery_history):
        forward = pre_compute_trends(recovered_session, recovery_history)
        backward = pre_compute_trends(recovered_session, list(reversed(recovery_history)))
        assert [t.to_dict() for t in forward] == [t.to_dict() for t in backward]

    def test_asymmetry_catching_up(self, recovered_session, recovery_history):
        [trend] = compute_asymmetry_trends(recovered_session, recovery_history)
        assert trend.metric_name == "peakFlexion"
        assert trend.previous_asymmetry == pytest.approx(22.22, abs=0.01)
        assert trend.current_asymmetry < 1.0
        assert trend.is_resolving
        assert trend.deficit_limb == Limb.LEFT
        assert trend.is_deficit_catching_up

    def test_milestones(self, recovered_session, recovery_history):
        trends = pre_compute_trends(recovered_session, recovery_history)
        asym = compute_asymmetry_trends(recovered_session, recovery_history)
        milestones = detect_milestones(trends, asym, recovered_session)

        types = [m.type for m in milestones]
        assert sorted(types) == sorted([
            "threshold_achieved", "personal_best", "mcid_improvement", "streak", "limb_caught_up",
        ])
        by_type = {m.type: m for m in milestones}
        assert by_type["personal_best"].celebration_level == "major"
        assert by_type["streak"].celebration_level == "minor"
        assert "Left Leg" in by_type["threshold_achieved"].description
        assert all(m.achieved_at == recovered_session.recorded_at for m in milestones)

    def test_symmetry_restored(self):
        previous = leg_session("s-1", 7, bilateral={"romAsymmetry": 8.0})
        current = leg_session("s-2", 0, bilateral={"romAsymmetry": 4.0})
        trends = pre_compute_trends(current, [previous])

        milestones = detect_milestones(trends, [], current)
        assert "symmetry_restored" in [m.type for m in milestones]

    def test_cross_metric_gain_and_correlation(self):
        previous = leg_session("s-1", 7, {"peakFlexion": 95.0, "overallMaxRom": 100.0, "averageRom": 80.0})
        current = leg_session("s-2", 0, {"peakFlexion": 110.0, "overallMaxRom": 115.0, "averageRom": 95.0})
        trends = pre_compute_trends(current, [previous])

        milestones = detect_milestones(trends, [], current)
        [gain] = [m for m in milestones if m.type == "cross_metric_gain"]
        assert gain.metrics == ["averageRom", "overallMaxRom", "peakFlexion"]

        [corr] = detect_correlations(trends)
        assert corr.type == "co_improving"
        assert corr.significance == "high"
        assert corr.limb == Limb.LEFT

    def test_regression(self):
        previous = leg_session("s-1", 7, {"peakFlexion": 100.0})
        current = leg_session("s-2", 0, {"peakFlexion": 80.0})

        [regression] = detect_regressions(pre_compute_trends(current, [previous]))
        assert regression.metric_name == "peakFlexion"
        assert regression.decline_percentage == pytest.approx(20.0)
        assert regression.is_clinically_significant
        assert regression.limb == Limb.LEFT
        assert regression.possible_reasons


class TestProgressAgent:
    """Tests for the agent entry point."""

    def test_no_history(self, session_metrics):
        result = ProgressAgent(FakeInvoker()).run(session_metrics, [session_metrics], "patient-1")
        assert result.summary == INSUFFICIENT_HISTORY_SUMMARY
        assert result.sessions_analyzed == 1
        assert result.trends == []
        assert result.date_range == {"start": T0, "end": T0}

    def test_full_run_with_projection(self, recovered_session, recovery_history):
        invoker = FakeInvoker({"progress": [{
            "summary": "Left Leg flexion has caught up with the Right Leg.",
            "milestones": [
                {"type": "streak", "title": "Four sessions in a row", "metrics": ["opiScore"]},
                {"type": "bogus", "title": "Dropped"},
            ],
        }]})
        result = ProgressAgent(invoker).run(recovered_session, recovery_history, "patient-1")

        assert result.sessions_analyzed == 4
        assert result.summary == "Left Leg flexion has caught up with the Right Leg."
        assert result.date_range == {"start": T0 - 21 * DAY_MS, "end": T0}
        assert "llm-milestone-1" in [m.id for m in result.milestones]
        assert result.milestones[0].celebration_level == "major"

        [projection] = result.projections
        assert projection.limb == Limb.LEFT
        assert projection.projected_value > 126
        assert projection.target_date == T0 + 30 * DAY_MS
        assert 0 <= projection.confidence <= 100

        data = result.to_dict()
        assert data["projections"][0]["limb"] == "Left Leg"
        assert len(invoker.calls_for("progress")) == 1

    def test_no_projection_below_four_sessions(self, recovered_session, recovery_history):
        result = ProgressAgent().run(recovered_session, recovery_history[1:])
        assert result.projections == []
        assert result.summary.startswith("Across 3 sessions")

    def test_model_failure_uses_programmatic_summary(self):
        previous = leg_session("s-1", 7, {"peakFlexion": 100.0})
        current = leg_session("s-2", 0, {"peakFlexion": 80.0})
        invoker = FakeInvoker({"progress": [GenerativeCallError("quota exceeded")]})

        result = ProgressAgent(invoker).run(current, [previous])
        assert result.summary.startswith("Across 2 sessions: 0 improving, 0 stable and 1 declining")
        assert "1 regression(s) flagged for review" in result.summary

    def test_malformed_summary_uses_programmatic_summary(self, recovered_session, recovery_history):
        result = ProgressAgent(FakeInvoker({"progress": ["no json here"]})).run(recovered_session, recovery_history)
        assert result.summary.startswith("Across 4 sessions")

    def test_cancellation_propagates(self, recovered_session, recovery_history):
        invoker = FakeInvoker({"progress": [PipelineCancelledError("s-4", "progress")]})
        with pytest.raises(PipelineCancelledError):
            ProgressAgent(invoker).run(recovered_session, recovery_history)
