"""
ICCT cache and query-optimization service.
FastAPI application exposing cache and performance status, with one
CacheService and one PerformanceMonitor per process.
"""
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse

from caching.cache_service import CacheService
from config import Settings, get_settings
from middleware.performance_tracking_middleware import PerformanceTrackingMiddleware
from monitoring.performance_monitor import PerformanceMonitor
from repositories.school_repository import SchoolDataRepository
from routers import system_status
from services.optimized_query_service import OptimizedQueryService
from utils.exceptions import ErrorCategory, IcctError
from utils.logging_config import setup_logging

settings = get_settings()
setup_logging(settings.log_level, settings.log_format, structured=settings.is_production)
logger = logging.getLogger(__name__)

STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.DATABASE: 503,
}


def create_app(
    app_settings: Optional[Settings] = None,
    *,
    cache_service: Optional[CacheService] = None,
    performance_monitor: Optional[PerformanceMonitor] = None,
    repository: Optional[SchoolDataRepository] = None,
) -> FastAPI:
    """
    Build the application.

    Services not passed in are constructed at startup from ``app_settings``.
    A query service is only wired when a repository is supplied.
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🚀 [STARTUP] Starting {app_settings.app_name} v{app_settings.app_version} ({app_settings.environment})")

        cache = cache_service or CacheService(settings=app_settings)
        monitor = performance_monitor or PerformanceMonitor(cache, settings=app_settings)
        app.state.cache_service = cache
        app.state.performance_monitor = monitor
        if repository is not None:
            app.state.query_service = OptimizedQueryService(repository, cache, monitor)

        health = await cache.health_check()
        if health.healthy:
            logger.info(f"✅ [STARTUP] Redis reachable in {health.latency_ms:.2f}ms")
        else:
            logger.warning(f"⚠️ [STARTUP] Redis unavailable, serving uncached: {health.error}")

        yield

        logger.info("👋 [SHUTDOWN] Beginning graceful shutdown...")
        await cache.close()

    app = FastAPI(
        title=app_settings.app_name,
        version=app_settings.app_version,
        description="ICCT caching and query-optimization layer",
        lifespan=lifespan,
        docs_url=None if app_settings.is_production else "/docs",
        redoc_url=None if app_settings.is_production else "/redoc",
    )

    app.add_middleware(PerformanceTrackingMiddleware, exclude_paths=["/health"])
    app.include_router(system_status.router)

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": app_settings.app_name,
            "version": app_settings.app_version,
            "timestamp": time.time(),
        }

    @app.exception_handler(IcctError)
    async def icct_error_handler(request: Request, exc: IcctError):
        status_code = STATUS_BY_CATEGORY.get(exc.category, 500)
        logger.error(f"❌ [{exc.category.value.upper()}] {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "status_code": exc.status_code},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
