"""
Cache and performance status endpoints for administrators.
"""
from fastapi import APIRouter, HTTPException, Query, Request
from typing import Dict, Any
import logging
import time

from caching.cache_service import CacheService
from monitoring.performance_monitor import PerformanceMonitor

router = APIRouter(prefix="/api/v1/system-status", tags=["System Status"])
logger = logging.getLogger(__name__)


def _cache(request: Request) -> CacheService:
    return request.app.state.cache_service


def _monitor(request: Request) -> PerformanceMonitor:
    return request.app.state.performance_monitor


@router.get("/cache")
async def cache_status(request: Request) -> Dict[str, Any]:
    """Cache statistics plus a live ping of the store."""
    cache_service = _cache(request)
    try:
        health = await cache_service.health_check()
        stats = await cache_service.get_stats()

        if not health.healthy:
            status = "unhealthy"
        elif stats.memory_usage == "Error":
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "timestamp": time.time(),
            "stats": stats.to_dict(),
            "health": health.to_dict(),
        }
    except Exception as e:
        logger.error(f"❌ [SYSTEM-STATUS] Cache status failed: {e}")
        raise HTTPException(status_code=500, detail=f"Cache status failed: {str(e)}")


@router.get("/performance")
async def performance_status(request: Request) -> Dict[str, Any]:
    """Current metrics with alerts, recommendations and query timings."""
    monitor = _monitor(request)
    try:
        current = await monitor.get_current_metrics()
        summary = monitor.get_query_performance_summary()
        summary["top_slow_queries"] = [q.to_dict() for q in summary["top_slow_queries"]]

        return {
            "timestamp": time.time(),
            "current": current.to_dict(),
            "alerts": [alert.to_dict() for alert in monitor.get_performance_alerts()],
            "recommendations": [rec.to_dict() for rec in monitor.get_performance_recommendations()],
            "slow_queries": [q.to_dict() for q in monitor.get_slow_queries()],
            "query_summary": summary,
        }
    except Exception as e:
        logger.error(f"❌ [SYSTEM-STATUS] Performance status failed: {e}")
        raise HTTPException(status_code=500, detail=f"Performance status failed: {str(e)}")


@router.get("/performance/trends")
async def performance_trends(
    request: Request,
    hours: float = Query(24, gt=0, le=24 * 30, description="Look-back window in hours"),
) -> Dict[str, Any]:
    """Samples recorded in the last ``hours`` hours."""
    samples = _monitor(request).get_performance_trends(hours)
    return {
        "hours": hours,
        "count": len(samples),
        "samples": [sample.to_dict() for sample in samples],
    }


@router.post("/cache/reset-stats")
async def reset_cache_stats(request: Request) -> Dict[str, Any]:
    _cache(request).reset_stats()
    logger.info("🔄 [SYSTEM-STATUS] Cache statistics reset")
    return {"success": True, "message": "Cache statistics reset"}


@router.post("/performance/clear")
async def clear_performance_metrics(request: Request) -> Dict[str, Any]:
    _monitor(request).clear_metrics()
    return {"success": True, "message": "Performance metrics cleared"}
