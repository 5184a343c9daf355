"""
Unit Tests for the Pipeline Agents

Decomposition, research, analysis and validation. Verifies that
registry-derived facts always win over model output.
"""
import json
import math
import threading
import time
from typing import List
from unittest.mock import Mock

import pytest

from conftest import (
    CITATION,
    FakeInvoker,
    analysis_reply,
    decomposition_reply,
    make_session,
    research_reply,
    validator_reply,
)
from horus.core.agents import (
    AnalysisAgent,
    AnalysisResult,
    CorrelativeInsight,
    DecompositionAgent,
    DetectedPattern,
    Insight,
    IssueSeverity,
    PatternType,
    ResearchAgent,
    ResearchEvidence,
    RuleType,
    Severity,
    SourceType,
    ValidationIssue,
    ValidatorAgent,
    apply_forced_classification,
    ensure_min_correlative,
    merge_issues,
    merge_patterns,
    pre_detect_patterns,
    programmatic_validation,
)
from horus.core.agents.analysis import MAX_INSIGHTS, parse_benchmarks, parse_insights
from horus.core.agents.decomposition import parse_patterns
from horus.core.agents.research import dedupe_by_citation, is_insufficient
from horus.core.agents.validator import find_forbidden_limb_terms, parse_issues
from horus.core.evidence import EmbeddingClient, EvidenceCache, PubMedSearch, SearchResult, TaskType
from horus.core.metrics import Classification, Limb, MetricDomain, QualityTier, pre_compute_benchmarks
from horus.core.visualization import parse_blocks
from horus.utils import GenerativeCallError, ParseError


# Fixtures
@pytest.fixture
def patterns(session_metrics) -> List[DetectedPattern]:
    return pre_detect_patterns(session_metrics)


@pytest.fixture
def embedder(test_settings, hash_embeddings) -> EmbeddingClient:
    return EmbeddingClient(test_settings, embeddings=hash_embeddings)


class FakeSearch:
    """Literature search returning canned PubMed-style results."""

    def __init__(self, results=None):
        self.results = results if results is not None else [
            SearchResult(
                title="Flexion deficits after knee surgery",
                url="https://pubmed.ncbi.nlm.nih.gov/111/",
                abstract="Flexion deficits above 10 degrees were common at six months.",
                tier=QualityTier.B,
                authors=["Lee"],
                year="2021",
            )
        ]
        self.queries = []

    def search(self, query, max_results=3):
        self.queries.append(query)
        return list(self.results)[:max_results]


class SlowSearch:
    """Search whose latency depends on the query's leading metric name."""

    METRICS = ("Maximum ROM", "Peak Flexion")

    def __init__(self, delays):
        self.delays = delays
        self.completed = []
        self._lock = threading.Lock()

    def search(self, query, max_results=3):
        metric = next(m for m in self.METRICS if query.startswith(m))
        time.sleep(self.delays.get(metric, 0.0))
        with self._lock:
            self.completed.append(metric)
        return [SearchResult(
            title=f"{metric} study",
            url=f"https://pubmed.ncbi.nlm.nih.gov/{self.METRICS.index(metric) + 1}/",
            abstract=f"{metric} asymmetry findings.",
            tier=QualityTier.B,
            authors=["Lee"],
            year="2021",
        )]


def make_insight(**overrides) -> Insight:
    data = dict(
        id="insight-1",
        domain=MetricDomain.RANGE,
        classification=Classification.WEAKNESS,
        title="Left Leg flexion below Right Leg",
        content="Left Leg peak flexion of 98 degrees trails the Right Leg.",
        limbs=[Limb.LEFT],
        evidence=[CITATION],
        pattern_ids=["pre-2"],
        metric_name="peakFlexion",
        value=98.0,
    )
    data.update(overrides)
    return Insight(**data)


def make_analysis(insights=None, correlative=None, blocks=None) -> AnalysisResult:
    insights = insights if insights is not None else [
        make_insight(),
        make_insight(id="insight-2", domain=MetricDomain.SYMMETRY, title="ROM asymmetry",
                     content="ROM asymmetry of 12% is above target.", limbs=[],
                     pattern_ids=["pre-1"], metric_name="romAsymmetry", value=12.0),
    ]
    if correlative is None:
        correlative = [
            CorrelativeInsight("corr-1", "insight-1", ["insight-2"], "linked"),
            CorrelativeInsight("corr-2", "insight-2", ["insight-1"], "linked"),
        ]
    return AnalysisResult(insights=insights, correlative_insights=correlative,
                          session_blocks=blocks or [])


# ── Decomposition ────────────────────────────────────────────────────────────

class TestPreDetection:
    """Tests for registry-driven pattern detection."""

    def test_reference_asymmetry(self, patterns):
        by_metric = {p.metrics[0]: p for p in patterns}
        flexion = by_metric["peakFlexion"]

        assert flexion.type == PatternType.ASYMMETRY
        assert flexion.severity == Severity.HIGH
        assert flexion.limbs == [Limb.LEFT]
        assert flexion.values["leftValue"] == 98
        assert flexion.values["rightValue"] == 119
        assert flexion.values["asymmetryPercent"] == pytest.approx(19.4)

    def test_ids_are_sequential(self, patterns):
        assert [p.id for p in patterns] == ["pre-1", "pre-2"]
        assert [p.metrics for p in patterns] == [["overallMaxRom"], ["peakFlexion"]]

    def test_deficient_leg_value(self):
        metrics = make_session(left_leg={"peakFlexion": 90.0}, right_leg={})
        [pattern] = pre_detect_patterns(metrics)
        assert pattern.type == PatternType.THRESHOLD_VIOLATION
        assert pattern.severity == Severity.HIGH
        assert pattern.limbs == [Limb.LEFT]
        assert pattern.search_terms[0] == "Peak Flexion deficit"

    def test_deficient_bilateral_value(self):
        metrics = make_session(left_leg={}, right_leg={}, bilateral={"romAsymmetry": 18.0})
        [pattern] = pre_detect_patterns(metrics)
        assert pattern.type == PatternType.THRESHOLD_VIOLATION
        assert pattern.metrics == ["romAsymmetry"]
        assert pattern.limbs == []

    def test_small_asymmetry_ignored(self):
        metrics = make_session(left_leg={"peakFlexion": 110.0}, right_leg={"peakFlexion": 112.0},
                               bilateral={})
        assert pre_detect_patterns(metrics) == []

    def test_opi_change(self):
        previous = make_session("s-0", opi_score=50.0, left_leg={}, right_leg={}, bilateral={})
        improved = make_session(opi_score=62.0, left_leg={}, right_leg={}, bilateral={})
        declined = make_session(opi_score=40.0, left_leg={}, right_leg={}, bilateral={})

        [up] = pre_detect_patterns(improved, previous)
        [down] = pre_detect_patterns(declined, previous)
        assert up.type == PatternType.TEMPORAL_PATTERN
        assert up.severity == Severity.LOW
        assert down.severity == Severity.HIGH
        assert down.values["change"] == -10


class TestPatternMerge:
    """Tests for generative pattern ingest and merging."""

    def test_parse_drops_malformed(self):
        parsed = parse_patterns([
            {"type": "cross_metric_correlation", "severity": "moderate", "metrics": ["rmsJerk", "romCoV"]},
            {"type": "made_up", "severity": "high", "metrics": ["x"]},
            {"type": "quality_flag", "severity": "low", "metrics": []},
            "junk",
        ])
        assert len(parsed) == 1
        assert parsed[0].id == "gen-1"

    def test_duplicates_of_pre_detected_dropped(self, patterns):
        generated = parse_patterns([
            {"id": "pre-1", "type": "asymmetry", "severity": "low", "metrics": ["peakFlexion"],
             "limbs": ["Left Leg"]},
            {"id": "pre-1", "type": "quality_flag", "severity": "low", "metrics": ["romCoV"]},
        ])
        merged = merge_patterns(patterns, generated)

        assert len(merged) == 3
        assert merged[1].severity == Severity.HIGH
        assert len({p.id for p in merged}) == 3

    def test_agent_run(self, session_metrics):
        invoker = FakeInvoker({"decomposition": [decomposition_reply([
            {"type": "quality_flag", "severity": "low", "metrics": ["romCoV"], "description": "Few reps"},
        ])]})
        result = DecompositionAgent(invoker).run(session_metrics)

        assert [p.id for p in result.patterns] == ["pre-1", "pre-2", "gen-1"]
        assert result.pattern_counts["asymmetry"] == 2
        assert result.pattern_counts["quality_flag"] == 1
        assert "ALREADY DETECTED" in invoker.calls_for("decomposition")[0]

    def test_agent_malformed_output(self, session_metrics):
        invoker = FakeInvoker({"decomposition": ["I could not find anything"]})
        with pytest.raises(ParseError):
            DecompositionAgent(invoker).run(session_metrics)


# ── Research ─────────────────────────────────────────────────────────────────

class TestResearch:
    """Tests for tiered evidence gathering."""

    def _seed(self, cache, embedder, pattern, tier, citation="Cached review"):
        vector = embedder.embed(" ".join(pattern.search_terms), TaskType.RETRIEVAL_QUERY)
        cache.insert(vector, tier, citation, ["Asymmetry persists"], 90, pattern.search_terms)

    def test_cache_hit_skips_search_and_model(self, patterns, embedder):
        cache = EvidenceCache(embedder)
        for p in patterns:
            self._seed(cache, embedder, p, QualityTier.A, citation=f"Review {p.id}")
        search = FakeSearch()
        invoker = FakeInvoker()

        result = ResearchAgent(invoker, cache=cache, search=search).run(patterns)

        assert search.queries == []
        assert invoker.calls == []
        evidence = result.evidence_by_pattern["pre-2"]
        assert evidence[0].source_type == SourceType.CACHE
        assert evidence[0].id.startswith("cache-ev-")
        assert evidence[0].relevance_score == pytest.approx(100.0)
        assert result.new_cache_entries == []
        assert result.insufficient_evidence == []

    def test_empty_cache_falls_back_to_search(self, patterns, embedder):
        cache = EvidenceCache(embedder)
        search = FakeSearch()
        result = ResearchAgent(FakeInvoker(), cache=cache, search=search).run(patterns, "bilateral_squat")

        assert len(search.queries) == 2
        assert all(q.endswith("bilateral squat") for q in search.queries)
        evidence = result.evidence_by_pattern["pre-1"]
        assert evidence[0].source_type == SourceType.WEB_SEARCH
        assert evidence[0].id == "web-pre-1-1"
        assert evidence[0].tier == QualityTier.B
        # written back once: both patterns share the same article
        assert len(result.new_cache_entries) == 2
        assert len(cache) == 1

    def test_model_knowledge_for_uncovered_patterns(self, patterns):
        invoker = FakeInvoker({"research": [research_reply()]})
        result = ResearchAgent(invoker, search=FakeSearch(results=[])).run(patterns)

        evidence = result.evidence_by_pattern["pre-2"]
        assert evidence[0].source_type == SourceType.EMBEDDED_KNOWLEDGE
        assert evidence[0].citation == CITATION
        assert set(result.citations) == {CITATION}
        assert len(invoker.calls_for("research")) == 1

    def test_model_evidence_defaults_to_tier_c(self, patterns):
        reply = {"evidence": [{"patternId": "pre-1", "citation": "Textbook of knee rehab"},
                              {"patternId": "unknown", "citation": "Ignored"}]}
        result = ResearchAgent(FakeInvoker({"research": [reply]})).run(patterns)

        assert result.evidence_by_pattern["pre-1"][0].tier == QualityTier.C
        assert result.evidence_by_pattern["pre-2"] == []
        assert result.insufficient_evidence == ["pre-2"]

    def test_unavailable_cache_is_not_fatal(self, patterns):
        result = ResearchAgent(FakeInvoker(), cache=EvidenceCache(), search=FakeSearch()).run(patterns)
        assert all(result.evidence_by_pattern[p.id] for p in patterns)

    def test_model_failure_without_evidence_raises(self, patterns):
        invoker = FakeInvoker({"research": [GenerativeCallError("down")]})
        with pytest.raises(GenerativeCallError):
            ResearchAgent(invoker).run(patterns)

    def test_model_failure_with_partial_evidence(self, embedder):
        patterns = pre_detect_patterns(make_session(
            left_leg={"peakFlexion": 90.0}, right_leg={}, bilateral={"romAsymmetry": 18.0},
        ))
        cache = EvidenceCache(embedder)
        self._seed(cache, embedder, patterns[0], QualityTier.S)
        invoker = FakeInvoker({"research": [GenerativeCallError("down")]})

        result = ResearchAgent(invoker, cache=cache).run(patterns)
        assert result.evidence_by_pattern["pre-1"]
        assert result.insufficient_evidence == ["pre-2"]

    def test_helpers(self):
        a = ResearchEvidence("1", "p", QualityTier.D, SourceType.WEB_SEARCH, "Same Study")
        b = ResearchEvidence("2", "p", QualityTier.B, SourceType.WEB_SEARCH, "same study ")
        assert dedupe_by_citation([a, b]) == [a]
        assert is_insufficient([a])
        assert not is_insufficient([b])
        assert is_insufficient([])

    def test_unreadable_search_response_is_not_fatal(self, patterns, test_settings):
        search_resp = Mock()
        search_resp.json.return_value = {"esearchresult": {"idlist": ["31234567"]}}
        fetch_resp = Mock()
        fetch_resp.text = "<html><body>Service unavailable"
        session = Mock()
        session.get.side_effect = lambda url, **kwargs: search_resp if "esearch" in url else fetch_resp

        invoker = FakeInvoker({"research": [research_reply()]})
        search = PubMedSearch(test_settings, session=session)
        result = ResearchAgent(invoker, search=search).run(patterns)

        assert result.evidence_by_pattern["pre-2"][0].source_type == SourceType.EMBEDDED_KNOWLEDGE
        assert len(invoker.calls_for("research")) == 1

    def test_invalid_embedding_falls_back_to_search(self, patterns, test_settings):
        backend = Mock()
        backend.embed_query.return_value = []
        backend.embed_documents.return_value = [[]]
        cache = EvidenceCache(EmbeddingClient(test_settings, embeddings=backend))
        search = FakeSearch()

        result = ResearchAgent(FakeInvoker(), cache=cache, search=search).run(patterns)

        assert len(search.queries) == 2
        assert all(result.evidence_by_pattern[p.id][0].source_type == SourceType.WEB_SEARCH for p in patterns)
        assert len(cache) == 0

    def test_merge_independent_of_completion_order(self, patterns):
        slow = SlowSearch({"Maximum ROM": 0.3})
        concurrent = ResearchAgent(FakeInvoker(), search=slow, max_workers=2).run(patterns)
        serial = ResearchAgent(FakeInvoker(), search=SlowSearch({}), max_workers=1).run(patterns)

        assert slow.completed == ["Peak Flexion", "Maximum ROM"]
        assert list(concurrent.evidence_by_pattern) == ["pre-1", "pre-2"]
        assert concurrent.to_dict() == serial.to_dict()
        assert concurrent.evidence_by_pattern["pre-1"][0].citation.endswith("Maximum ROM study")
        assert [e.pattern_id for e in concurrent.new_cache_entries] == ["pre-1", "pre-2"]


# ── Analysis ─────────────────────────────────────────────────────────────────

class TestAnalysis:
    """Tests for insight synthesis guard-rails."""

    def test_parse_insights_caps_and_filters(self):
        raw = [{"domain": "range", "classification": "strength"} for _ in range(MAX_INSIGHTS + 3)]
        raw.insert(0, {"domain": "mood", "classification": "strength"})
        raw.insert(1, {"domain": "range", "classification": "neutral"})
        insights = parse_insights(raw)
        assert len(insights) == MAX_INSIGHTS

    def test_unknown_metric_name_discarded(self):
        [insight] = parse_insights([{"domain": "range", "classification": "strength", "metricName": "vibes"}])
        assert insight.metric_name is None

    def test_forced_classification(self, session_metrics):
        insight = make_insight(classification=Classification.STRENGTH, percentile=90.0)
        changed = apply_forced_classification([insight], pre_compute_benchmarks(session_metrics))

        assert changed == 1
        assert insight.classification == Classification.WEAKNESS
        assert insight.percentile == 18

    def test_generated_benchmarks_rescored(self):
        [b] = parse_benchmarks([{"metricName": "peakFlexion", "value": 119, "limb": "Right Leg",
                                 "percentile": 99, "classification": "weakness"}])
        assert b.percentile == 74
        assert b.classification == Classification.STRENGTH

    def test_min_correlative_topped_up(self):
        insights = [
            make_insight(id="r", domain=MetricDomain.RANGE),
            make_insight(id="s", domain=MetricDomain.SYMMETRY),
            make_insight(id="p", domain=MetricDomain.POWER),
        ]
        result = ensure_min_correlative(insights, [])
        assert [c.id for c in result] == ["auto-corr-1", "auto-corr-2"]
        assert (result[0].primary_insight_id, result[0].related_insight_ids) == ("p", ["r"])

    def test_existing_correlative_untouched(self):
        existing = [CorrelativeInsight("c1", "a", ["b"], "x"), CorrelativeInsight("c2", "b", ["a"], "y")]
        assert ensure_min_correlative([make_insight(id="a"), make_insight(id="b")], existing) == existing

    def test_agent_run(self, session_metrics, patterns):
        invoker = FakeInvoker({"analysis": [analysis_reply()]})
        evidence = {p.id: [] for p in patterns}
        result = AnalysisAgent(invoker).run(session_metrics, patterns, evidence)

        by_id = {i.id: i for i in result.insights}
        assert by_id["insight-1"].classification == Classification.WEAKNESS
        assert by_id["insight-1"].percentile == 18
        assert len(result.correlative_insights) == 2
        assert result.benchmarks[0].metric_name in ("overallMaxRom", "peakFlexion")
        assert len(result.session_blocks) == 2
        assert len(result.overall_blocks) == 1

        restored = AnalysisResult.from_dict(result.to_dict())
        assert restored.to_dict() == result.to_dict()

    def test_issues_fed_back(self, session_metrics, patterns):
        invoker = FakeInvoker({"analysis": [analysis_reply()]})
        issue = ValidationIssue(RuleType.CLINICAL_SAFETY, IssueSeverity.ERROR, "Insight has no supporting evidence",
                                ["insight-1"], "Cite research")
        AnalysisAgent(invoker).run(session_metrics, patterns, {}, [issue])

        prompt = invoker.calls_for("analysis")[0]
        assert "PREVIOUS ATTEMPT FAILED VALIDATION" in prompt
        assert "Insight has no supporting evidence" in prompt


# ── Validation ───────────────────────────────────────────────────────────────

class TestLimbTerms:
    """Tests for the limb terminology rule."""

    def test_literal_labels_allowed(self):
        assert find_forbidden_limb_terms("Left Leg flexion trails the Right Leg") == []

    @pytest.mark.parametrize("text,term", [
        ("the left knee lags", "left"),
        ("R side weaker", "R"),
        ("the affected limb", "affected"),
        ("favouring the weak side", "weak side"),
        ("right leg", "right"),
    ])
    def test_forbidden_terms(self, text, term):
        assert term in find_forbidden_limb_terms(text)


class TestProgrammaticValidation:
    """Tests for rule checks that never need the model."""

    def _rules(self, issues):
        return [(i.rule_type, i.severity) for i in issues]

    def test_clean_analysis(self, session_metrics, patterns):
        assert programmatic_validation(make_analysis(), session_metrics, patterns, [CITATION]) == []

    def test_classification_mismatch(self, session_metrics, patterns):
        analysis = make_analysis(insights=[make_insight(classification=Classification.STRENGTH)],
                                 correlative=[CorrelativeInsight("c", "insight-1", [], "x")] * 2)
        issues = programmatic_validation(analysis, session_metrics, patterns)
        assert (RuleType.INTERNAL_CONSISTENCY, IssueSeverity.ERROR) in self._rules(issues)

    def test_value_tolerance(self, session_metrics, patterns):
        close = make_analysis(insights=[make_insight(value=98.4)],
                              correlative=[CorrelativeInsight("c", "insight-1", [], "x")] * 2)
        far = make_analysis(insights=[make_insight(value=99.0)],
                            correlative=[CorrelativeInsight("c", "insight-1", [], "x")] * 2)
        assert programmatic_validation(close, session_metrics, patterns) == []
        assert self._rules(programmatic_validation(far, session_metrics, patterns)) == [
            (RuleType.METRIC_ACCURACY, IssueSeverity.ERROR)
        ]

    def test_missing_evidence(self, session_metrics, patterns):
        analysis = make_analysis()
        analysis.insights[0].evidence = []
        issues = programmatic_validation(analysis, session_metrics, patterns)
        assert self._rules(issues) == [(RuleType.CLINICAL_SAFETY, IssueSeverity.ERROR)]
        assert issues[0].insight_ids == ["insight-1"]

    def test_unknown_citation_is_warning(self, session_metrics, patterns):
        issues = programmatic_validation(make_analysis(), session_metrics, patterns, ["Something else"])
        assert {(i.rule_type, i.severity) for i in issues} == {(RuleType.HALLUCINATION, IssueSeverity.WARNING)}

    def test_unknown_pattern(self, session_metrics, patterns):
        analysis = make_analysis()
        analysis.insights[0].pattern_ids = ["pre-99"]
        issues = programmatic_validation(analysis, session_metrics, patterns)
        assert self._rules(issues) == [(RuleType.HALLUCINATION, IssueSeverity.ERROR)]

    def test_unsafe_language_is_warning(self, session_metrics, patterns):
        analysis = make_analysis()
        analysis.insights[0].recommendations = ["Treatment with bracing is needed"]
        issues = programmatic_validation(analysis, session_metrics, patterns)
        assert self._rules(issues) == [(RuleType.CLINICAL_SAFETY, IssueSeverity.WARNING)]

    def test_forbidden_limb_term(self, session_metrics, patterns):
        analysis = make_analysis()
        analysis.insights[1].content = "The involved side shows a gap."
        issues = programmatic_validation(analysis, session_metrics, patterns)
        assert self._rules(issues) == [(RuleType.INTERNAL_CONSISTENCY, IssueSeverity.ERROR)]
        assert issues[0].insight_ids == ["insight-2"]

    def test_invalid_limb_tag(self, session_metrics, patterns):
        [tagged] = parse_insights([{
            "id": "insight-1",
            "domain": "range",
            "classification": "weakness",
            "title": "Flexion deficit",
            "content": "Peak flexion of 98 degrees is below target.",
            "limbs": ["L"],
            "evidence": [CITATION],
            "patternIds": ["pre-2"],
        }])
        assert tagged.limbs == []
        assert tagged.invalid_limbs == ["L"]

        analysis = make_analysis(insights=[tagged, make_analysis().insights[1]])
        issues = programmatic_validation(analysis, session_metrics, patterns, [CITATION])
        assert self._rules(issues) == [(RuleType.INTERNAL_CONSISTENCY, IssueSeverity.ERROR)]
        assert issues[0].insight_ids == ["insight-1"]
        assert '"L"' in issues[0].description

    def test_invalid_limb_tag_survives_round_trip(self):
        insight = make_insight(invalid_limbs=["left knee"])
        assert Insight.from_dict(insight.to_dict()).invalid_limbs == ["left knee"]

    def test_non_finite_value(self, session_metrics, patterns):
        [insight] = parse_insights(json.loads(
            '[{"id": "insight-1", "domain": "range", "classification": "weakness",'
            ' "limbs": ["Left Leg"], "metricName": "peakFlexion", "value": NaN}]'
        ))
        assert math.isnan(insight.value)

        analysis = make_analysis(insights=[make_insight(value=float("nan")), make_analysis().insights[1]])
        issues = programmatic_validation(analysis, session_metrics, patterns)
        assert self._rules(issues) == [(RuleType.METRIC_ACCURACY, IssueSeverity.ERROR)]

    def test_too_few_correlative(self, session_metrics, patterns):
        analysis = make_analysis(correlative=[CorrelativeInsight("c", "insight-1", ["insight-2"], "x")])
        issues = programmatic_validation(analysis, session_metrics, patterns)
        assert self._rules(issues) == [(RuleType.INTERNAL_CONSISTENCY, IssueSeverity.ERROR)]

    def test_dangling_correlative_references(self, session_metrics, patterns):
        analysis = make_analysis(correlative=[
            CorrelativeInsight("c1", "ghost", ["insight-2"], "x"),
            CorrelativeInsight("c2", "insight-1", ["phantom"], "y"),
        ])
        issues = programmatic_validation(analysis, session_metrics, patterns)
        assert self._rules(issues) == [
            (RuleType.HALLUCINATION, IssueSeverity.ERROR),
            (RuleType.HALLUCINATION, IssueSeverity.WARNING),
        ]

    def test_invalid_block_path(self, session_metrics, patterns):
        blocks = parse_blocks([{"type": "stat_card", "metric": "leftLeg.peakFlex"}])
        issues = programmatic_validation(make_analysis(blocks=blocks), session_metrics, patterns)
        assert self._rules(issues) == [(RuleType.METRIC_ACCURACY, IssueSeverity.ERROR)]
        assert "leftLeg.peakFlexion" in issues[0].suggested_fix


class TestValidatorAgent:
    """Tests for the combined programmatic + model validator."""

    def test_programmatic_errors_skip_model(self, session_metrics, patterns):
        analysis = make_analysis(correlative=[])
        invoker = FakeInvoker()
        result = ValidatorAgent(invoker).run(analysis, session_metrics, patterns, revision=2)

        assert not result.passed
        assert not result.used_model
        assert result.revision == 2
        assert invoker.calls == []

    def test_model_pass(self, session_metrics, patterns):
        invoker = FakeInvoker({"validator": [validator_reply()]})
        result = ValidatorAgent(invoker).run(make_analysis(), session_metrics, patterns, [CITATION])
        assert result.passed
        assert result.used_model
        assert result.to_dict()["error_count"] == 0

    def test_model_error_fails(self, session_metrics, patterns):
        invoker = FakeInvoker({"validator": [validator_reply([
            {"ruleType": "numerical_accuracy", "severity": "error", "insightIds": ["insight-1"],
             "description": "Percentile misquoted"},
            {"ruleType": "clinical_safety", "severity": "warning", "description": "Tone is strong"},
        ])]})
        result = ValidatorAgent(invoker).run(make_analysis(), session_metrics, patterns, [CITATION])

        assert not result.passed
        assert result.errors[0].rule_type == RuleType.METRIC_ACCURACY
        assert len(result.warnings) == 1

    def test_model_warnings_only_pass(self, session_metrics, patterns):
        invoker = FakeInvoker({"validator": [validator_reply([
            {"ruleType": "hallucination", "severity": "warning", "description": "Vague citation"},
        ])]})
        result = ValidatorAgent(invoker).run(make_analysis(), session_metrics, patterns)
        assert result.passed

    def test_parse_issues_drops_unknown_rules(self):
        issues = parse_issues([
            {"ruleType": "vibes", "description": "x"},
            {"ruleType": "hallucination", "description": ""},
            {"ruleType": "side_specificity", "description": "Uses 'left'"},
        ])
        assert [i.rule_type for i in issues] == [RuleType.INTERNAL_CONSISTENCY]
        assert issues[0].severity == IssueSeverity.WARNING

    def test_merge_issues_dedups_and_orders(self):
        warning = ValidationIssue(RuleType.HALLUCINATION, IssueSeverity.WARNING, "w", ["a"])
        error = ValidationIssue(RuleType.METRIC_ACCURACY, IssueSeverity.ERROR, "e", ["a"])
        merged = merge_issues([warning, error], [error])
        assert merged == [error, warning]
