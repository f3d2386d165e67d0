"""
Performance monitoring for the ICCT query layer.
"""

from .performance_monitor import (
    AlertSeverity,
    AlertThresholds,
    PerformanceAlert,
    PerformanceMetrics,
    PerformanceMonitor,
    PerformanceRecommendation,
    QueryPerformance,
)

__all__ = [
    'AlertSeverity',
    'AlertThresholds',
    'PerformanceAlert',
    'PerformanceMetrics',
    'PerformanceMonitor',
    'PerformanceRecommendation',
    'QueryPerformance',
]
