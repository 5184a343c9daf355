"""
Pytest Configuration and Fixtures

Shared fixtures for Horus pipeline tests: session snapshots, a scripted
generative invoker and deterministic embeddings.
"""
import json
import threading
import zlib
from pathlib import Path
import sys
from typing import Any, Dict, List

import pytest
from langchain_core.embeddings import Embeddings

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from horus.config import Settings
from horus.core.agents import (
    AnalysisAgent,
    DecompositionAgent,
    ProgressAgent,
    ResearchAgent,
    ValidatorAgent,
)
from horus.core.metrics.session import SessionMetrics

DAY_MS = 24 * 60 * 60 * 1000
T0 = 1_700_000_000_000

CITATION = "Smith et al. (2019) Knee flexion asymmetry after ACL reconstruction"

_AGENT_BY_PROMPT = {
    DecompositionAgent.SYSTEM_PROMPT: DecompositionAgent.NAME,
    ResearchAgent.SYSTEM_PROMPT: ResearchAgent.NAME,
    AnalysisAgent.SYSTEM_PROMPT: AnalysisAgent.NAME,
    ValidatorAgent.SYSTEM_PROMPT: ValidatorAgent.NAME,
    ProgressAgent.SYSTEM_PROMPT: ProgressAgent.NAME,
}


class FakeInvoker:
    """
    Scripted stand-in for the Gemini invoker.

    ``responses`` maps an agent name to a list of replies consumed in
    order; the last reply repeats. A reply may be a dict (sent as JSON),
    a string, an exception instance (raised) or a callable taking the
    user prompt.
    """

    is_available = True

    def __init__(self, responses: Dict[str, List[Any]] = None):
        self.responses = {k: list(v) for k, v in (responses or {}).items()}
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def invoke(self, system_prompt: str, user_prompt: str) -> str:
        agent = _AGENT_BY_PROMPT.get(system_prompt, "unknown")
        with self._lock:
            self.calls.append((agent, user_prompt))
            queue = self.responses.get(agent)
            if not queue:
                raise AssertionError(f"Unexpected generative call for {agent}")
            reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(user_prompt)
        if isinstance(reply, dict):
            reply = json.dumps(reply)
        return reply

    def calls_for(self, agent: str) -> List[str]:
        return [prompt for name, prompt in self.calls if name == agent]


class HashEmbeddings(Embeddings):
    """Bag-of-words vectors: texts sharing words are similar, identical texts identical."""

    def __init__(self, dimensions: int = 64):
        self.dimensions = dimensions
        self.document_calls = 0
        self.query_calls = 0

    def _vector(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for word in text.lower().split():
            vector[zlib.crc32(word.encode()) % self.dimensions] += 1.0
        return vector

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        self.document_calls += 1
        return [self._vector(t) for t in texts]

    def embed_query(self, text: str) -> List[float]:
        self.query_calls += 1
        return self._vector(text)


# ── Session snapshots ─────────────────────────────────────────────────────────

def make_session(session_id: str = "session-1", recorded_at: int = T0, **overrides) -> SessionMetrics:
    data = {
        "session_id": session_id,
        "patient_id": "patient-1",
        "left_leg": {"peakFlexion": 98.0, "overallMaxRom": 102.0},
        "right_leg": {"peakFlexion": 119.0, "overallMaxRom": 123.0},
        "bilateral": {"romAsymmetry": 12.0, "crossCorrelation": 0.91},
        "recorded_at": recorded_at,
        "movement_type": "bilateral_squat",
        "opi_score": 62.0,
        "opi_grade": "C",
    }
    data.update(overrides)
    return SessionMetrics.from_dict(data)


@pytest.fixture
def session_metrics() -> SessionMetrics:
    """Left peak flexion 98°, right 119° (the reference asymmetry case)."""
    return make_session()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        api_key=None,
        max_llm_attempts=3,
        retry_base_delay_seconds=0.0,
        llm_timeout_seconds=5.0,
        embed_timeout_seconds=5.0,
        search_timeout_seconds=5.0,
        pipeline_timeout_seconds=30.0,
        research_workers=2,
    )


@pytest.fixture
def hash_embeddings() -> HashEmbeddings:
    return HashEmbeddings()


# ── Scripted generative replies ──────────────────────────────────────────────

def decomposition_reply(patterns=None) -> Dict[str, Any]:
    return {"patterns": patterns or [], "summary": "Bilateral flexion asymmetry"}


def research_reply(pattern_ids=("pre-1", "pre-2")) -> Dict[str, Any]:
    return {
        "evidence": [
            {
                "patternId": pid,
                "citation": CITATION,
                "url": None,
                "tier": "B",
                "findings": ["Flexion asymmetry above 10% persists in the first post-operative year"],
                "relevanceScore": 80,
            }
            for pid in pattern_ids
        ]
    }


def analysis_reply(evidence=(CITATION,), classification: str = "strength") -> Dict[str, Any]:
    return {
        "insights": [
            {
                "id": "insight-1",
                "domain": "range",
                "classification": classification,
                "title": "Left Leg flexion below Right Leg",
                "content": "Left Leg peak flexion of 98 degrees trails the Right Leg by 21 degrees.",
                "limbs": ["Left Leg"],
                "evidence": list(evidence),
                "patternIds": ["pre-2"],
                "recommendations": ["Continue progressive flexion work for the Left Leg"],
                "metricName": "peakFlexion",
                "value": 98,
            },
            {
                "id": "insight-2",
                "domain": "symmetry",
                "classification": "weakness",
                "title": "ROM asymmetry above target",
                "content": "ROM asymmetry of 12% sits between the good and poor thresholds.",
                "limbs": [],
                "evidence": list(evidence),
                "patternIds": ["pre-1"],
                "metricName": "romAsymmetry",
                "value": 12,
            },
        ],
        "correlativeInsights": [
            {"id": "corr-1", "primaryInsightId": "insight-1", "relatedInsightIds": ["insight-2"],
             "explanation": "Flexion deficit drives the ROM gap", "significance": "high"},
            {"id": "corr-2", "primaryInsightId": "insight-2", "relatedInsightIds": ["insight-1"],
             "explanation": "Asymmetry reflects the flexion deficit", "significance": "moderate"},
        ],
        "summary": "Flexion asymmetry favouring the Right Leg.",
        "strengths": ["Right Leg flexion"],
        "weaknesses": ["Left Leg flexion"],
        "visualization": {
            "overallBlocks": [
                {"type": "executive_summary", "title": "Summary", "content": "Flexion gap narrowing."},
            ],
            "sessionBlocks": [
                {
                    "type": "stat_card",
                    "title": "Flexion Gap",
                    "metric": "leftLeg.peakFlexion",
                    "comparison": {"formula": "abs(leftLeg.peakFlexion - rightLeg.peakFlexion)"},
                },
                {
                    "type": "comparison_card",
                    "title": "Peak Flexion",
                    "leftMetric": "leftLeg.peakFlexion",
                    "rightMetric": "rightLeg.peakFlexion",
                },
            ],
        },
    }


def validator_reply(issues=None) -> Dict[str, Any]:
    return {"passed": not issues, "issues": issues or []}


@pytest.fixture
def happy_invoker() -> FakeInvoker:
    return FakeInvoker({
        "decomposition": [decomposition_reply()],
        "research": [research_reply()],
        "analysis": [analysis_reply()],
        "validator": [validator_reply()],
        "progress": [{"summary": "Steady gains across sessions."}],
    })
