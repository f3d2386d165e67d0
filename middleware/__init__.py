"""
Middleware package for FastAPI application.
"""
from .performance_tracking_middleware import PerformanceTrackingMiddleware

__all__ = ["PerformanceTrackingMiddleware"]
