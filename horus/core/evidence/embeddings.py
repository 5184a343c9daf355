"""
Embedding Generation

Thin wrapper around LangChain's Google Generative AI embeddings
(text-embedding-004) plus the vector math the cache needs.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np
from langchain_core.embeddings import Embeddings
from langchain_google_genai import GoogleGenerativeAIEmbeddings

from horus.config import Settings, settings as default_settings
from horus.utils import get_logger, CacheUnavailableError, EmbeddingError
from horus.utils.timeouts import CallTimeout, call_with_timeout

logger = get_logger(__name__)

MAX_BATCH_SIZE = 250
EMBEDDING_DIMENSIONS = 768


class TaskType(str, Enum):
    RETRIEVAL_DOCUMENT = "RETRIEVAL_DOCUMENT"
    RETRIEVAL_QUERY = "RETRIEVAL_QUERY"
    SEMANTIC_SIMILARITY = "SEMANTIC_SIMILARITY"
    CLASSIFICATION = "CLASSIFICATION"


_WS = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, trim and collapse whitespace before embedding."""
    return _WS.sub(" ", text.lower().strip())


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| |b|); 0 when either vector has zero norm."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise EmbeddingError(
            "Embeddings must have the same dimensions",
            details={"left": int(va.size), "right": int(vb.size)},
        )
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def cosine_similarities(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Row-wise cosine similarity of ``matrix`` against ``query`` (zero-norm rows -> 0)."""
    q = np.asarray(query, dtype=float)
    if matrix.size == 0:
        return np.zeros(0)
    if matrix.shape[1] != q.size:
        raise EmbeddingError("Embeddings must have the same dimensions")
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    dots = matrix @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return sims


class EmbeddingClient:
    """
    Embedding generator used by the evidence cache.

    Pass ``embeddings`` to supply any LangChain Embeddings implementation;
    otherwise a GoogleGenerativeAIEmbeddings model is built from settings.
    """

    def __init__(self, config: Optional[Settings] = None, embeddings: Optional[Embeddings] = None):
        self.config = config or default_settings
        self._embeddings = embeddings
        if self._embeddings is None and self.config.api_key:
            self._embeddings = GoogleGenerativeAIEmbeddings(
                model=self.config.embedding_model,
                google_api_key=self.config.api_key,
            )
            logger.info(f"Embedding client initialized with model: {self.config.embedding_model}")
        elif self._embeddings is None:
            logger.warning("No Gemini API key provided - embeddings disabled")

    @property
    def is_available(self) -> bool:
        return self._embeddings is not None

    def _require(self) -> Embeddings:
        if self._embeddings is None:
            raise CacheUnavailableError("Embedding backend not configured")
        return self._embeddings

    def _check_vector(self, vector) -> List[float]:
        if not vector or not all(isinstance(x, (int, float)) for x in vector):
            raise EmbeddingError("Invalid embedding response")
        return [float(x) for x in vector]

    def embed(self, text: str, task_type: TaskType = TaskType.RETRIEVAL_DOCUMENT) -> List[float]:
        """Embed one text."""
        model = self._require()
        # embed_query uses RETRIEVAL_QUERY, embed_documents RETRIEVAL_DOCUMENT
        try:
            if TaskType(task_type) == TaskType.RETRIEVAL_QUERY:
                vector = call_with_timeout(model.embed_query, self.config.embed_timeout_seconds, text)
            else:
                vector = call_with_timeout(
                    model.embed_documents, self.config.embed_timeout_seconds, [text]
                )[0]
        except CallTimeout as e:
            raise CacheUnavailableError(str(e), details={"operation": "embed"}) from e
        except (EmbeddingError, CacheUnavailableError):
            raise
        except Exception as e:
            raise CacheUnavailableError(f"Embedding request failed: {e}", details={"operation": "embed"}) from e
        return self._check_vector(vector)

    def embed_batch(
        self,
        texts: List[str],
        task_type: TaskType = TaskType.RETRIEVAL_DOCUMENT,
    ) -> List[List[float]]:
        """Embed several texts at once; more than MAX_BATCH_SIZE fails immediately."""
        if not texts:
            return []
        if len(texts) > MAX_BATCH_SIZE:
            raise EmbeddingError(
                f"Batch size exceeds maximum of {MAX_BATCH_SIZE}",
                details={"batch_size": len(texts)},
            )
        model = self._require()
        try:
            vectors = call_with_timeout(model.embed_documents, self.config.embed_timeout_seconds, texts)
        except CallTimeout as e:
            raise CacheUnavailableError(str(e), details={"operation": "embed_batch"}) from e
        except Exception as e:
            raise CacheUnavailableError(
                f"Embedding request failed: {e}", details={"operation": "embed_batch"}
            ) from e
        if len(vectors) != len(texts):
            raise EmbeddingError("Embedding count does not match input count")
        return [self._check_vector(v) for v in vectors]
