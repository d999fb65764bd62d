"""
rallia.api.main — FastAPI application entry point
===================================================

Run with::

    uvicorn rallia.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from rallia.api.deps import get_cache, get_engine  # noqa: E402
from rallia.api.routes.notifications import router as notifications_router  # noqa: E402
from rallia.api.routes.reputation import router as reputation_router  # noqa: E402
from rallia.database.engine import init_db  # noqa: E402
from rallia.errors import ValidationError  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Allowed CORS origins from ``CORS_ALLOW_ORIGINS`` (comma-separated)."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]
    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — verify schema and warm the config cache."""
    engine = get_engine()
    init_db(engine)
    cache = get_cache(engine)
    logger.info(
        "Rallia API started — engine ready (%s), %d reputation rules cached",
        engine.url.database, len(cache.load_reputation_config()),
    )
    yield
    logger.info("Rallia API shutting down")


app = FastAPI(
    title="Rallia Engine API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc)},
    )


app.include_router(reputation_router, prefix="/api")
app.include_router(notifications_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
