"""
Revenue Intelligence Agent - Main Application Entry Point
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from revenue_agent import __version__
from revenue_agent.api import agent_router
from revenue_agent.config import settings
from revenue_agent.db import init_db, async_session_maker

logger = logging.getLogger(__name__)

# Global start time for uptime tracking
_app_start_time = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    global _app_start_time
    _app_start_time = time.time()

    logger.info("[STARTUP] Revenue Intelligence Agent starting up")
    await init_db()
    logger.info("[STARTUP] Database initialized")

    if settings.enable_scheduler:
        try:
            from revenue_agent.scripts.scheduled_tasks import start_scheduler
            start_scheduler()
        except Exception as e:
            logger.warning(f"[STARTUP] Could not start scheduler: {e}")

    yield

    if settings.enable_scheduler:
        from revenue_agent.scripts.scheduled_tasks import stop_scheduler
        stop_scheduler()
    logger.info("[SHUTDOWN] Revenue Intelligence Agent shutdown complete")


app = FastAPI(
    title=settings.app_name,
    description="Agentic orchestration layer for the sales-intelligence dashboard",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(agent_router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    """Health check with a database probe and uptime."""
    db_status = "connected"
    try:
        async with async_session_maker() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"error: {e}"

    uptime = time.time() - _app_start_time if _app_start_time else 0

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": __version__,
        "uptime_seconds": round(uptime, 1),
        "database": db_status,
        "reasoning_model": settings.reasoning_model,
        "embedding_model": settings.embedding_model,
        "scheduler": "enabled" if settings.enable_scheduler else "disabled",
        "email": "enabled" if settings.resend_api_key else "disabled",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("revenue_agent.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
