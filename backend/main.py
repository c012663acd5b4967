# main.py — Resource Registry API
# Features:
# - Request correlation IDs and timing
# - Registry errors mapped to stable JSON error bodies
# - Health check reporting the event log head and payment routing

import os
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import init_db, close_db, get_db_session
from errors import RegistryError
from models import RegistryEvent
from subscription_ledger import SUBSCRIPTION_PERIOD
from treasury import TREASURY_COLLECTOR, TREASURY_URL

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("resource-registry")

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting Resource Registry v{VERSION}")
    await init_db()
    if not TREASURY_URL:
        logger.info("TREASURY_URL not set; payments are recorded in the local treasury ledger")
    yield
    logger.info("Shutting down Resource Registry")
    await close_db()


app = FastAPI(
    title="Resource Registry",
    description="Permissioned multi-tenant registry of workspaces, documents, tasks and storage subscriptions",
    version=VERSION,
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
        "http://localhost:3000,http://localhost:5173,http://localhost:8080"
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
        f"{request.method} {request.url.path} -> {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _error_response(request: Request, status_code: int, code: str, detail: str, context: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": code,
            "detail": detail,
            "context": context,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(RegistryError)
async def registry_exception_handler(request: Request, exc: RegistryError):
    if exc.http_status >= 500:
        logger.warning(f"{request.method} {request.url.path} failed with {exc.code}: {exc.detail}")
    return _error_response(request, exc.http_status, exc.code, exc.detail, exc.context)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Report offending fields only; request values are never echoed back
    fields = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "problem": str(err.get("msg", "")),
        }
        for err in exc.errors()
    ]
    return _error_response(request, 422, "validation_error", "Request failed validation", {"fields": fields})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path} "
        f"[rid={getattr(request.state, 'request_id', '-')}]",
        exc_info=True,
    )
    return _error_response(request, 500, "internal_error", "Internal server error", {})


# ============================================================
# ROUTERS
# ============================================================

from routers import auth, workspaces, documents, projects, tasks, subscriptions, events

app.include_router(auth.router)
app.include_router(workspaces.router)
app.include_router(documents.router)
app.include_router(projects.router)
app.include_router(tasks.router)
app.include_router(subscriptions.router)
app.include_router(events.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db_session)):
    """Registry health: database reachability, event log head and payment routing"""
    database, last_event_id = "connected", None
    try:
        last_event_id = (await db.execute(select(func.max(RegistryEvent.id)))).scalar()
    except SQLAlchemyError as e:
        logger.error(f"Health check could not reach the database: {e}")
        database = "unreachable"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "version": VERSION,
        "database": database,
        "last_event_id": last_event_id,
        "treasury": "http" if TREASURY_URL else "ledger",
        "treasury_collector": TREASURY_COLLECTOR,
        "subscription_period_days": SUBSCRIPTION_PERIOD.days,
    }


@app.get("/")
async def root():
    return {
        "name": "Resource Registry",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn
    # Mutations are serialized per process; run a single worker
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
    )
