# main.py - CTMS milestone sync API
# Features:
# - Request correlation IDs bound into the structured diagnostic log
# - Permissive CORS (browser dashboard calls from any origin)
# - CtmsError -> {"success": false, "error": ...} envelope
# - Health check with DB verification

import os
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from database import init_db, close_db, get_db_session
from errors import CtmsError
from logging_system import RequestContext, set_current_context, reset_current_context
from telemetry import setup_telemetry

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("trial-sync")

VERSION = "1.0.0"
CTMS_PREFIX = "/api/v1/ctms"


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("JWT_SECRET_KEY is not set or shorter than 32 characters; caller tokens will not survive a restart")

    if os.getenv("DATABASE_URL", "").startswith("sqlite") and os.getenv("ENVIRONMENT") == "production":
        warnings.append("DATABASE_URL points at SQLite in production")

    ttl = os.getenv("CTMS_SESSION_TTL_HOURS")
    if ttl and (not ttl.isdigit() or int(ttl) <= 0):
        warnings.append(f"CTMS_SESSION_TTL_HOURS={ttl!r} is not a positive integer")

    logger.info(
        f"CTMS API version {os.getenv('CTMS_API_VERSION', 'v24.3')}, "
        f"timeout {os.getenv('CTMS_TIMEOUT_SECONDS', '30')}s"
    )

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting trial-sync v{VERSION}")
    await init_db()
    _check_startup_config()
    # no-op unless OTEL_EXPORTER_OTLP_ENDPOINT is set
    setup_telemetry(app)
    yield
    logger.info("Shutting down trial-sync")
    await close_db()


app = FastAPI(
    title="Trial Sync",
    description="Mirrors CTMS studies and milestones into a local store",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    # wildcard origins cannot be combined with credentials
    allow_credentials="*" not in ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type", "x-request-id", "x-correlation-id"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    context = RequestContext.create(
        request.headers.get("X-Request-ID"),
        request.headers.get("X-Correlation-ID"),
    )
    request.state.request_id = context.request_id
    request.state.correlation_id = context.correlation_id
    token = set_current_context(context)

    try:
        response = await call_next(request)
    finally:
        reset_current_context(token)
    duration = context.elapsed_ms / 1000

    response.headers["X-Request-ID"] = context.request_id
    response.headers["X-Correlation-ID"] = context.correlation_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code} "
        f"({duration:.3f}s) [rid={context.request_id[:8]}]"
    )
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

@app.exception_handler(CtmsError)
async def ctms_error_handler(request: Request, exc: CtmsError):
    logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
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

    if request.url.path.startswith(CTMS_PREFIX):
        summary = "; ".join(
            f"{'.'.join(str(part) for part in e['loc'] if part != 'body')}: {e['msg']}" for e in errors
        )
        return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid request: {summary}"})

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


def _cors_headers(request: Request) -> dict:
    """CORS headers for responses built outside CORSMiddleware"""
    if "*" in ALLOWED_ORIGINS:
        return {"Access-Control-Allow-Origin": "*"}
    origin = request.headers.get("origin")
    if origin in ALLOWED_ORIGINS:
        return {"Access-Control-Allow-Origin": origin, "Access-Control-Allow-Credentials": "true", "Vary": "Origin"}
    return {}


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    if request.url.path.startswith(CTMS_PREFIX):
        return JSONResponse(
            status_code=500, content={"success": False, "error": "Internal server error"}, headers=_cors_headers(request),
        )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "request_id": getattr(request.state, "request_id", None),
        },
        headers=_cors_headers(request),
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import auth, ctms, configurations, profiles, diagnostics  # noqa: E402

app.include_router(auth.router)
app.include_router(ctms.router)
app.include_router(configurations.router)
app.include_router(profiles.router)
app.include_router(diagnostics.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            from sqlalchemy import text
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
        "ctms_api_version": os.getenv("CTMS_API_VERSION", "v24.3"),
    }


@app.get("/")
async def root():
    return {
        "name": "Trial Sync",
        "version": VERSION,
        "description": "CTMS study and milestone synchronization",
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
