"""Document Generation API.

Accepts documentation-generation jobs, runs them in the background against
a chain of LLM backends, and serves their status for polling.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src import __version__
from src.api.routes import generation
from src.executor.job_manager import GenerationOrchestrator
from src.executor.rate_limiter import FixedWindowRateLimiter
from src.executor.result_store import create_result_store
from src.llm.catalog import get_model_catalog

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Loading model catalog...")
    catalog = get_model_catalog()
    logger.info(f"Loaded {len(catalog.backends())} backends")

    logger.info("Opening result store...")
    store = create_result_store()
    app.state.result_store = store
    app.state.orchestrator = GenerationOrchestrator(
        store,
        rate_limiter=FixedWindowRateLimiter(),
        catalog=catalog,
    )

    logger.info("Document Generation API ready")
    yield
    # Shutdown
    logger.info("Shutting down Document Generation API")
    await app.state.orchestrator.shutdown()


# Create FastAPI app
app = FastAPI(
    title="Document Generation API",
    description="""
## Asynchronous documentation generation

Submit a project description, get a request id back immediately, then poll
until the job is completed or failed.

### Key Endpoints

- `POST /v1/generate` - Start a job (202)
- `GET /v1/status/{request_id}` - Poll a job
- `GET /v1/models` - Available backends and models
""",
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers with /v1 prefix
app.include_router(generation.router, prefix="/v1")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Document Generation API",
        "version": __version__,
        "docs": "/docs",
        "endpoints": {
            "generate": "/v1/generate",
            "status": "/v1/status/{request_id}",
            "models": "/v1/models",
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    orchestrator = getattr(app.state, "orchestrator", None)
    return {
        "status": "healthy",
        "result_store": type(getattr(app.state, "result_store", None)).__name__,
        "outstanding_jobs": orchestrator.outstanding if orchestrator else 0,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.api.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8001")),
        reload=True,
    )
