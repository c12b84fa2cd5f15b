"""FastAPI application entrypoint."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from correlation_engine.config import get_settings
from correlation_engine.db.session import SessionLocal
from correlation_engine.routers import correlation_audit, correlation_cases, correlation_jobs, correlation_rules

settings = get_settings()
logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


def _warm_backend_state() -> None:
    """Prime the DB connection pool at process start."""

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Backend warm-up failed; continuing without startup pre-warm.")


@asynccontextmanager
async def lifespan(_: FastAPI):
    _warm_backend_state()
    yield


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(correlation_rules.router, tags=["correlation-rules"])
app.include_router(correlation_jobs.router, tags=["correlation-jobs"])
app.include_router(correlation_audit.router, tags=["correlation-audit"])
app.include_router(correlation_audit.global_router, tags=["correlation-audit"])
app.include_router(correlation_cases.router, tags=["correlation-cases"])


@app.get("/health")
def health() -> dict[str, str]:
    """Simple health check endpoint."""

    return {"status": "ok"}
