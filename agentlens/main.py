"""AgentLens FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentlens import config
from agentlens.routers.analytics import analytics_router
from agentlens.routers.batch_runs import batch_runs_router
from agentlens.routers.events import events_router
from agentlens.routers.sessions import sessions_router

from agentlens.db import connection, migrations
from agentlens.db.ingest_engine import IngestEngine
from agentlens.observability import initialize as initialize_observability, shutdown as shutdown_observability

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("agentlens")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("AgentLens backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Ingestion engine shared by all requests
    app.state.ingest_engine = IngestEngine(db)
    if not config.METRICS_ENABLED:
        logger.info("Agent metrics disabled (AGENTLENS_METRICS_ENABLED=false); routes answer 404")

    yield

    logger.info("AgentLens backend shutting down")
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="AgentLens API",
    description="Ingestion and aggregation backend for agent runtime telemetry",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow the dashboard dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(events_router)
app.include_router(sessions_router)
app.include_router(analytics_router)
app.include_router(batch_runs_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "metrics": "enabled" if config.METRICS_ENABLED else "disabled",
    }
