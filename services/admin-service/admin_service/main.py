"""FastAPI application wiring for the admin account service."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .config import get_settings
from .domain.credentials import LockoutPolicy
from .domain.service import AccountService
from .repository import InMemoryAccountRepository, PostgresAccountRepository

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise the account store and service for the app lifecycle."""
    policy = LockoutPolicy.from_settings(settings)
    if settings.account_store_backend != "postgres":
        logger.info("account store using in-memory backend")
        app.state.account_service = AccountService(InMemoryAccountRepository(), policy=policy)
        yield
        return

    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    repository = PostgresAccountRepository(pool)
    repository.create_schema()
    app.state.pool = pool
    app.state.account_service = AccountService(repository, policy=policy)
    logger.info("account store using postgres backend")
    try:
        yield
    finally:
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

# CORS for local admin dashboard dev
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", tags=["health"])
def metrics() -> Response:
    """Expose Prometheus counters for lockouts, sessions and write conflicts."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)
