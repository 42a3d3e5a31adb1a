"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import settings
from backend.database import create_db_and_tables
from backend.utils.logging import setup_logging
from backend.api import system, trading


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()
    from backend.engine.scheduler import start_scheduler, stop_scheduler
    if settings.scheduler_enabled:
        start_scheduler()

    yield

    stop_scheduler()


app = FastAPI(
    title="Vibe Trader",
    description="Autonomous futures tick engine with LLM fallback and risk guardrails",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(trading.router)
app.include_router(system.router)
