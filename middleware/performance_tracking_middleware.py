"""
Performance tracking middleware.

Records one performance sample per HTTP request into the PerformanceMonitor
held on ``app.state`` and adds an ``X-Response-Time`` header. Tracking
failures are logged and never affect the response.
"""

import time
import logging
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)


class PerformanceTrackingMiddleware(BaseHTTPMiddleware):
    """
    Times every request and feeds the result to the performance monitor.

    Requests that end in a 5xx response or an exception are recorded with an
    error rate of 100, all others with 0, so the monitor's rolling error
    rate is the share of failed requests in its recent window.
    """

    def __init__(self, app: ASGIApp, exclude_paths: Optional[list] = None):
        super().__init__(app)
        self.exclude_paths = set(exclude_paths or [])

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        monitor = getattr(request.app.state, "performance_monitor", None)
        if monitor is None or request.url.path in self.exclude_paths:
            return await call_next(request)

        start_time = time.perf_counter()
        monitor.request_started()
        try:
            response = await call_next(request)
        except Exception:
            self._record(request, monitor, (time.perf_counter() - start_time) * 1000, failed=True)
            raise
        finally:
            monitor.request_finished()

        duration_ms = (time.perf_counter() - start_time) * 1000
        self._record(request, monitor, duration_ms, failed=response.status_code >= 500)
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response

    def _record(self, request: Request, monitor, duration_ms: float, failed: bool) -> None:
        try:
            cache_service = getattr(request.app.state, "cache_service", None)
            monitor.record_metric(
                response_time=duration_ms,
                cache_hit_rate=round(cache_service.hit_rate, 2) if cache_service is not None else 0.0,
                error_rate=100.0 if failed else 0.0,
            )
            logger.debug(
                f"{request.method} {request.url.path} took {duration_ms:.2f}ms",
                extra={"request_path": request.url.path, "duration_ms": round(duration_ms, 2)},
            )
        except Exception as e:
            logger.error(f"Error tracking request performance: {e}")
