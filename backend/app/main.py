"""FastAPI application entry point."""

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy import text

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.routes import api_router
from app.core.config import settings
from app.core.errors import ConfigurationMissing, DeliveryIntegrationError
from app.core.rate_limit import limiter
from app.db.base import Base
from app.db.session import SessionLocal, engine
from app.services.delivery.container import DeliveryServices

# Configure logging - use JSON format in production, human-readable in dev
root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, settings.log_level))
root_logger.handlers.clear()

if settings.debug:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
else:
    import json as _json
    import sys

    class JSONFormatter(logging.Formatter):
        def format(self, record):
            return _json.dumps({
                "ts": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "module": record.module,
                "line": record.lineno,
            })

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

root_logger.addHandler(handler)
logger = logging.getLogger(__name__)
request_logger = logging.getLogger("requests")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every API call with its outcome and duration.

    Webhook deliveries also log whether they carried a signature header, so
    rejected deliveries can be told apart from misconfigured senders.
    """

    QUIET_PATHS = {"/health", "/health/ready", "/", "/docs", "/openapi.json"}

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self.QUIET_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        label = f"{request.method} {path}"
        if "/webhooks/" in path:
            signed = "signed" if request.headers.get("X-Uber-Signature") else "unsigned"
            label = f"{label} ({signed})"

        try:
            response = await call_next(request)
        except Exception as e:
            request_logger.error(
                f"{label} raised {type(e).__name__}: {e} after {time.perf_counter() - started:.3f}s - Client: {client_ip}"
            )
            raise

        elapsed = time.perf_counter() - started
        log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
        request_logger.log(log_level, f"{label} -> {response.status_code} in {elapsed:.3f}s - Client: {client_ip}")
        return response


def _ensure_sqlite_directory(database_url: str):
    path = database_url.split("sqlite:///", 1)[-1]
    if path and path != ":memory:":
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(f"Starting delivery gateway ({settings.environment})")

    # SQLite databases get their tables created on startup
    if settings.database_url.startswith("sqlite"):
        _ensure_sqlite_directory(settings.database_url)
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created (SQLite mode)")

    services = DeliveryServices(settings, SessionLocal)
    app.state.delivery = services
    try:
        yield
    finally:
        await services.aclose()
        logger.info("Delivery gateway stopped")


app = FastAPI(
    title="Delivery Gateway API",
    description="Delivery platform integration: webhooks, tokens and menu/inventory sync",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(DeliveryIntegrationError)
async def delivery_error_handler(request: Request, exc: DeliveryIntegrationError):
    if isinstance(exc, ConfigurationMissing):
        logger.error(f"Configuration missing on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)

# CORS middleware - added last so it runs first (Starlette LIFO order)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Requested-With"],
    max_age=600,
)

app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    """Basic liveness check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


@app.get("/health/ready")
def readiness_check(request: Request):
    """Readiness probe: database connectivity and delivery configuration."""
    checks = {}

    db = None
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = "unhealthy"
    finally:
        if db:
            db.close()

    services = getattr(request.app.state, "delivery", None)
    if services is None:
        checks["delivery"] = "not started"
    else:
        checks["ubereats_webhook_secret"] = "configured" if services.ubereats_verifier.configured else "missing"
        checks["dedup_cache"] = f"{services.replay_guard.stats()['size']} entries"

    return {
        "status": "ready" if checks.get("database") == "healthy" and services is not None else "degraded",
        "version": "1.0.0",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "message": "Delivery Gateway API",
        "docs": "/docs",
        "health": "/health",
    }
