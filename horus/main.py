"""
Horus Pipeline - FastAPI Application

Main application entry point with API endpoints for:
- Session metrics intake
- Pipeline trigger / retrigger / cancel / status
- Visualization block rendering and formula evaluation
- Evidence cache statistics
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from horus import __version__
from horus.api import health_router, router
from horus.config import Settings, settings as default_settings
from horus.core.evidence import EmbeddingClient, EvidenceCache, PubMedSearch
from horus.core.llm import GeminiConfig, GeminiInvoker
from horus.core.pipeline import InMemorySessionStore, PipelineOrchestrator
from horus.utils import get_logger

logger = get_logger(__name__)


def build_orchestrator(config: Optional[Settings] = None) -> PipelineOrchestrator:
    """Wire the production collaborators: Gemini, embeddings cache, PubMed."""
    config = config or default_settings
    return PipelineOrchestrator(
        invoker=GeminiInvoker(GeminiConfig.from_settings(config)),
        cache=EvidenceCache(EmbeddingClient(config)),
        session_store=InMemorySessionStore(),
        search=PubMedSearch(config),
        config=config,
    )


# ---- Application Lifespan ----

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup -> yield -> cancel in-flight runs and stop the worker pool."""
    logger.info("Horus API ready to accept requests")
    yield
    app.state.orchestrator.shutdown(wait=False)
    logger.info("Horus API shut down.")


def create_app(orchestrator: Optional[PipelineOrchestrator] = None) -> FastAPI:
    app = FastAPI(
        title="Horus Clinical Analysis API",
        description="Evidence-backed clinical insights for knee-movement sessions",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.orchestrator = orchestrator or build_orchestrator()
    app.include_router(health_router)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("horus.main:app", host="0.0.0.0", port=8000)
