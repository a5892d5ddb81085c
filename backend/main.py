# main.py — Kanban Portal API: app wiring, request middleware, error mapping

import os
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

import mailer
import storage
from database import init_db, close_db, engine
from telemetry import setup_telemetry

APP_VERSION = "1.0.0"

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("kanban-portal")


def _check_startup_config():
    """Warn about settings that leave sign-in or uploads half working."""
    warnings = []
    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("JWT_SECRET_KEY is not set or too short; sessions will not survive a restart")
    if not mailer.smtp_configured():
        warnings.append("SMTP_HOST not set; magic links are written to the log instead of emailed")
    if not storage.storage_is_writable():
        warnings.append(f"FILE_STORAGE_ROOT {storage.STORAGE_ROOT} is not writable; uploads will fail")

    for w in warnings:
        logger.warning(f"⚠️  {w}")
    return not warnings


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting Kanban Portal v{APP_VERSION}...")
    await init_db()
    _check_startup_config()
    setup_telemetry(app, engine)
    yield
    logger.info("🛑 Shutting down Kanban Portal...")
    await close_db()


app = FastAPI(
    title="Kanban Portal",
    description="Multi-tenant kanban boards with a customer status portal",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Correlation IDs, timing and security headers on every response"""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = correlation_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"
    response.headers.update(SECURITY_HEADERS)

    logger.info(f"{request.method} {request.url.path} → {response.status_code} ({duration:.3f}s) [rid={request_id[:8]}]")
    return response


def _error(request: Request, status_code: int, detail) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "request_id": getattr(request.state, "request_id", None)},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"type": err.get("type", "unknown"), "loc": list(err.get("loc", [])), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return _error(request, 422, jsonable_encoder(errors))


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    # A concurrent write beat the pre-check to a unique or foreign key constraint
    logger.warning(f"Constraint violation on {request.url.path}: {exc.orig}")
    return _error(request, 409, "Conflicts with existing data")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error(request, 500, "Internal server error")


from routers import (
    auth, organisations, invites, users, kanban, attachments,
    activity, customers, portal, websocket_router,
)

for module in (auth, organisations, invites, users, kanban, attachments,
               activity, customers, portal, websocket_router):
    app.include_router(module.router)


@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": APP_VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
        "storage": "writable" if storage.storage_is_writable() else "read-only",
        "mail": "smtp" if mailer.smtp_configured() else "log",
    }


@app.get("/")
async def root():
    return {"name": "Kanban Portal", "version": APP_VERSION, "docs": "/docs", "health": "/health"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
