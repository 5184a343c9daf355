"""
Horus Pipeline — Configuration
==============================
Runtime settings (API keys, model names, timeouts, worker counts) read
from the environment after loading the project-level .env file.
Clinical constants live next to the code that uses them, not here.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# ── Paths ───────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# ── Load .env ───────────────────────────────────────────────────────────
load_dotenv(PROJECT_ROOT / ".env")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


@dataclass
class Settings:
    """Runtime settings for the pipeline and its collaborators."""
    api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
    )
    model: str = field(default_factory=lambda: os.getenv("HORUS_MODEL", "gemini-2.5-flash"))
    embedding_model: str = field(
        default_factory=lambda: os.getenv("HORUS_EMBEDDING_MODEL", "models/text-embedding-004")
    )
    ncbi_api_key: str = field(default_factory=lambda: os.getenv("NCBI_API_KEY", ""))

    # Timeouts (seconds)
    llm_timeout_seconds: float = field(default_factory=lambda: _env_float("HORUS_LLM_TIMEOUT_SECONDS", 60.0))
    embed_timeout_seconds: float = field(default_factory=lambda: _env_float("HORUS_EMBED_TIMEOUT_SECONDS", 20.0))
    search_timeout_seconds: float = field(default_factory=lambda: _env_float("HORUS_SEARCH_TIMEOUT_SECONDS", 15.0))
    pipeline_timeout_seconds: float = field(
        default_factory=lambda: _env_float("HORUS_PIPELINE_TIMEOUT_SECONDS", 300.0)
    )

    # Retry / fan-out
    max_llm_attempts: int = field(default_factory=lambda: _env_int("HORUS_MAX_LLM_ATTEMPTS", 3))
    retry_base_delay_seconds: float = field(
        default_factory=lambda: _env_float("HORUS_RETRY_BASE_DELAY_SECONDS", 1.0)
    )
    research_workers: int = field(default_factory=lambda: _env_int("HORUS_RESEARCH_WORKERS", 4))

    def __post_init__(self):
        if self.max_llm_attempts < 1:
            self.max_llm_attempts = 1
        if self.research_workers < 1:
            self.research_workers = 1


settings = Settings()
