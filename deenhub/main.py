"""DeenHub Sync Engine - Main Application."""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool

from deenhub.api.routes import (
    finance_router,
    jobs_router,
    monitoring_router,
    sync_router,
    translations_router,
)
from deenhub.api.services.api_monitoring_service import (
    RequestLogEntry,
    drain_pending_writes,
    schedule_log_request,
)
from deenhub.api.services.ip_blocking_service import IpBlockingService
from deenhub.api.services.upstream_client import breaker_registry
from deenhub.core.cache import cache_manager
from deenhub.core.config import get_settings
from deenhub.core.database import SessionLocal, get_db_context, get_db_stats, init_db
from deenhub.core.queue import JobQueue
from deenhub.core.rate_limit import (
    rate_limit_headers,
    rate_limiter,
    rate_limiting_enabled,
    too_many_requests_response,
)
from deenhub.core.scheduler import get_scheduler, init_scheduler

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Paths kept out of the request log
TELEMETRY_EXCLUDED_PREFIXES = ("/health", "/docs", "/redoc", "/openapi.json")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, pick the store backend and start the scheduler."""
    logger.info(f"Starting {settings.app_name} in {settings.environment}")
    init_db()
    await cache_manager.initialize()
    scheduler = init_scheduler()
    scheduler.start()
    logger.info(f"Ready: store={cache_manager.backend}, jobs={len(scheduler.get_jobs())}")

    yield

    logger.info("Stopping scheduler and flushing request log")
    scheduler.shutdown(wait=False)
    await drain_pending_writes()
    await cache_manager.close()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Sync and job orchestration for Quran, prayer time, hadith, "
                "recitation audio and gold price data.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync_router)
app.include_router(jobs_router)
app.include_router(translations_router)
app.include_router(monitoring_router)
app.include_router(finance_router)


def client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _is_blocked(ip: str) -> bool:
    with get_db_context() as db:
        return IpBlockingService(db).is_blocked(ip)


@app.middleware("http")
async def protect_and_record(request: Request, call_next):
    """Blocklist, rate limit, then telemetry for every request."""
    started = time.perf_counter()
    ip = client_ip(request)
    path = request.url.path
    method = request.method

    if await run_in_threadpool(_is_blocked, ip):
        logger.info(f"Rejected blocked IP {ip} for {method} {path}")
        response = JSONResponse(status_code=403, content={"detail": "Access denied"})
        _record(request, response, ip, path, started)
        return response

    result = None
    if rate_limiting_enabled():
        result = await rate_limiter.check(ip, path, method)
        if not result.allowed:
            response = too_many_requests_response(result)
            _record(request, response, ip, path, started)
            return response

    response = await call_next(request)
    if result is not None:
        response.headers.update(rate_limit_headers(result))
    _record(request, response, ip, path, started)
    return response


def _record(request: Request, response, ip: str, path: str, started: float) -> None:
    if not settings.telemetry_enabled or path.startswith(TELEMETRY_EXCLUDED_PREFIXES):
        return
    # Aggregate by route template so /jobs/{job_id} is one endpoint
    route = request.scope.get("route")
    endpoint = getattr(route, "path", None) or path
    schedule_log_request(
        RequestLogEntry(
            endpoint=endpoint,
            method=request.method,
            status_code=response.status_code,
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
            request_ip=ip,
            user_agent=request.headers.get("User-Agent"),
            user_id=request.headers.get("X-Admin-User"),
            metadata={"path": path} if endpoint != path else {},
        )
    )


@app.get("/health")
async def health_check():
    """Liveness check; no dependencies are touched."""
    return {"status": "healthy", "version": settings.app_version}


@app.get("/health/detailed")
async def detailed_health_check():
    """Database, scheduler, queue depth, breakers and store metrics.

    Reports ``degraded`` when the database or scheduler is down or any
    upstream breaker is not closed.
    """
    components = {
        "database": "unknown",
        "scheduler": "unknown",
        "cache": cache_manager.get_metrics().get("backend", "unknown"),
    }
    queue: dict = {}
    database_stats: dict = {}

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            database_stats = get_db_stats(db)
            queue = JobQueue(db).stats()
        finally:
            db.close()
        components["database"] = "healthy"
    except Exception as e:
        components["database"] = f"unhealthy: {e}"

    scheduler = get_scheduler()
    components["scheduler"] = "running" if scheduler and scheduler.running else "not_running"

    breakers = breaker_registry.snapshot()
    degraded = (
        components["database"] != "healthy"
        or components["scheduler"] != "running"
        or any(state != "closed" for state in breakers.values())
    )
    return {
        "status": "degraded" if degraded else "healthy",
        "version": settings.app_version,
        "components": components,
        "queue": queue,
        "circuit_breakers": breakers,
        "database_stats": database_stats,
        "cache_metrics": cache_manager.get_metrics(),
    }


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Last-resort 500; the message is only exposed with DEBUG on."""
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "deenhub.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
