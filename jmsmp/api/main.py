"""
jmsmp.api.main — FastAPI application entry point
================================================

Run with::

    uvicorn jmsmp.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.staticfiles import StaticFiles

load_dotenv()

from jmsmp.api.auth import router as auth_router  # noqa: E402
from jmsmp.api.deps import get_engine, get_hub  # noqa: E402
from jmsmp.api.realtime import router as realtime_router  # noqa: E402
from jmsmp.api.routes.admin import router as admin_router  # noqa: E402
from jmsmp.api.routes.applications import router as applications_router  # noqa: E402
from jmsmp.api.routes.gallery import router as gallery_router  # noqa: E402
from jmsmp.api.routes.notifications import router as notifications_router  # noqa: E402
from jmsmp.api.routes.public import router as public_router  # noqa: E402
from jmsmp.database.engine import init_db  # noqa: E402
from jmsmp.engine.realtime import PostgresHub, RealtimeHub  # noqa: E402
from jmsmp.errors import JmsmpError  # noqa: E402
from jmsmp.services.upload_service import UPLOAD_DIR, ensure_upload_dir  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — schema, main admin, realtime hub."""
    ensure_upload_dir()

    engine = get_engine()
    init_db(engine)
    hub = get_hub()
    logger.info(
        "JMSMP API started — engine ready (%s), realtime: %s",
        engine.url.database, type(hub).__name__,
    )
    yield
    if isinstance(hub, PostgresHub):
        hub.stop_listener()
    logger.info("JMSMP API shutting down")


app = FastAPI(
    title="JMSMP Community API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(JmsmpError)
async def jmsmp_error_handler(request: Request, exc: JmsmpError) -> JSONResponse:
    """Map domain errors to ``{"detail": ..., "code": ...}`` responses."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s", exc.code, request.method, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Внутренняя ошибка сервера", "code": "INTERNAL_ERROR"},
    )


# Mount routers
app.include_router(auth_router, prefix="/api")
app.include_router(public_router, prefix="/api")
app.include_router(applications_router, prefix="/api")
app.include_router(notifications_router, prefix="/api")
app.include_router(gallery_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(realtime_router, prefix="/api")


@app.get("/api/health")
def health(hub: RealtimeHub = Depends(get_hub)):
    realtime = "ok"
    if isinstance(hub, PostgresHub) and not hub.listener_healthy:
        realtime = "degraded"
    return {"status": "ok", "realtime": realtime}


# Serve uploaded files; the directory may be created later by the lifespan
app.mount(
    "/api/uploads",
    StaticFiles(directory=str(UPLOAD_DIR), check_dir=False),
    name="uploads",
)
