# main.py — ITSM Change Management API
# Features:
# - Request correlation IDs
# - Security headers
# - Domain error mapping (400/403/404/500 JSON)
# - Health check with DB verification
# - Local upload serving in development

import os
import json
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text

from database import init_db, close_db, get_db_session, engine
from exceptions import ITSMError
from storage import STORAGE_BACKEND, FILE_UPLOAD_PATH, PUBLIC_UPLOAD_PREFIX
from telemetry import setup_telemetry

APP_VERSION = "1.0.0"

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("itsm")


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []
    environment = os.getenv("ENVIRONMENT", "development")

    # JWT Secret
    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("JWT_SECRET_KEY is not set or shorter than 32 characters")

    # Mail
    provider = os.getenv("EMAIL_PROVIDER", "console").lower()
    if provider == "console" and environment == "production":
        warnings.append("EMAIL_PROVIDER=console in production: notification emails are only logged")
    if provider in ("smtp", "microsoft365", "gmail") and not os.getenv("EMAIL_USERNAME"):
        warnings.append(f"EMAIL_PROVIDER={provider} but EMAIL_USERNAME is not set")
    if provider == "http" and not os.getenv("EMAIL_API_URL"):
        warnings.append("EMAIL_PROVIDER=http but EMAIL_API_URL is not set")

    # Storage
    if STORAGE_BACKEND == "s3" and not os.getenv("AWS_BUCKET_NAME"):
        warnings.append("STORAGE_BACKEND=s3 but AWS_BUCKET_NAME is not set: attachment uploads will fail")
    else:
        logger.info(f"Attachment storage: {STORAGE_BACKEND}")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting ITSM Change Management API v{APP_VERSION}...")
    await init_db()
    _check_startup_config()
    # Initialise OpenTelemetry (no-op if OTEL_EXPORTER_OTLP_ENDPOINT not set)
    setup_telemetry(app, engine)
    yield
    logger.info("Shutting down ITSM Change Management API...")
    await close_db()


app = FastAPI(
    title="ITSM Change Management",
    description="Change request lifecycle, review workflow and notifications",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = correlation_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} → {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

@app.exception_handler(ITSMError)
async def itsm_error_handler(request: Request, exc: ITSMError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error": exc.error,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Sanitise errors to ensure JSON serialisability
    errors = []
    for err in exc.errors():
        clean_err = {
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
        }
        if "input" in err:
            try:
                json.dumps(err["input"])
                clean_err["input"] = err["input"]
            except (TypeError, ValueError):
                clean_err["input"] = str(err["input"])
        errors.append(clean_err)

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "request_id": getattr(request.state, "request_id", None),
        },
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import auth, users, changes, notifications, settings, permissions, upload  # noqa: E402

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(changes.router)
app.include_router(notifications.router)
app.include_router(settings.router)
app.include_router(permissions.router)
app.include_router(upload.router)

if STORAGE_BACKEND == "local":
    app.mount(PUBLIC_UPLOAD_PREFIX, StaticFiles(directory=FILE_UPLOAD_PATH, check_dir=False), name="uploads")


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": APP_VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
        "services": {
            "api": "operational",
            "storage": STORAGE_BACKEND,
            "mail": os.getenv("EMAIL_PROVIDER", "console").lower(),
        },
    }


@app.get("/")
async def root():
    return {
        "name": "ITSM Change Management",
        "version": APP_VERSION,
        "docs": "/docs",
        "health": "/health",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
        workers=int(os.getenv("WORKERS", 1)),
    )
