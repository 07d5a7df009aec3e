"""FastAPI application wiring for Switchboard.

- Configures logging and Prometheus metrics.
- Mounts the conversation, queue and assignment routers.
- Exposes health and version endpoints.

The engine itself (session factory, state machines, orchestrator and agent
dispatcher) is built lazily by :func:`switchboard.container.get_container`
on the first request that needs it.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .container import reset_container
from .routers import assignments, conversations, queues

load_dotenv()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    reset_container()


app = FastAPI(title="Switchboard", version=__version__, lifespan=lifespan)
init_logging(app)
app.include_router(conversations.router)
app.include_router(queues.router)
app.include_router(assignments.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.get("/api/health")
async def health():
    """Liveness/readiness probe with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }
