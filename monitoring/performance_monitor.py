"""
Performance monitor for the ICCT query layer.

Passive collection of request and query timings plus their interpretation:
rolling averages, slow-query detection, two-tier threshold alerts and a
static table of tuning recommendations. Observation only; nothing here
changes how a request is handled.
"""

import logging
import threading
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Mapping, Optional, Tuple

import psutil

from config import Settings, get_settings

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


class AlertSeverity(Enum):
    """Alert severity levels."""
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RecommendationLevel(Enum):
    """Impact / effort grades for recommendations."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class PerformanceMetrics:
    """One timestamped performance sample. Missing figures default to 0."""
    timestamp: datetime
    response_time: float = 0.0       # ms
    memory_usage: float = 0.0        # MB
    cpu_usage: float = 0.0           # user CPU seconds
    cache_hit_rate: float = 0.0      # percent
    active_connections: int = 0
    slow_queries: int = 0
    error_rate: float = 0.0          # percent

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class QueryPerformance:
    """Running timing figures for one query key."""
    query: str
    average_time: float
    max_time: float
    min_time: float
    call_count: int
    last_called: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "average_time": round(self.average_time, 2),
            "max_time": self.max_time,
            "min_time": self.min_time,
            "call_count": self.call_count,
            "last_called": self.last_called.isoformat(),
        }


@dataclass
class PerformanceAlert:
    """Threshold breach on the latest sample."""
    type: AlertSeverity
    message: str
    value: float
    threshold: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "value": self.value,
            "threshold": self.threshold,
        }


@dataclass(frozen=True)
class PerformanceRecommendation:
    """Qualitative tuning suggestion."""
    category: str
    recommendation: str
    impact: RecommendationLevel
    effort: RecommendationLevel

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "recommendation": self.recommendation,
            "impact": self.impact.value,
            "effort": self.effort.value,
        }


@dataclass
class AlertThresholds:
    """Warning / critical thresholds evaluated against the latest sample."""
    response_time_warning_ms: float = 2000.0
    response_time_critical_ms: float = 5000.0
    memory_warning_mb: float = 200.0
    memory_critical_mb: float = 500.0
    cache_hit_rate_warning: float = 50.0
    error_rate_warning: float = 5.0
    error_rate_critical: float = 10.0
    recommendation_cache_hit_rate: float = 70.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlertThresholds":
        return cls(
            response_time_warning_ms=settings.alert_response_time_warning_ms,
            response_time_critical_ms=settings.alert_response_time_critical_ms,
            memory_warning_mb=settings.alert_memory_warning_mb,
            memory_critical_mb=settings.alert_memory_critical_mb,
            cache_hit_rate_warning=settings.alert_cache_hit_rate_warning,
            error_rate_warning=settings.alert_error_rate_warning,
            error_rate_critical=settings.alert_error_rate_critical,
            recommendation_cache_hit_rate=settings.recommendation_cache_hit_rate,
        )


H = RecommendationLevel.HIGH
M = RecommendationLevel.MEDIUM
L = RecommendationLevel.LOW

# (metric, direction, threshold attribute, recommendations)
RECOMMENDATION_RULES: Tuple[Tuple[str, str, str, Tuple[PerformanceRecommendation, ...]], ...] = (
    ("response_time", "above", "response_time_warning_ms", (
        PerformanceRecommendation("Database", "Add database indexes for frequently queried fields", H, M),
        PerformanceRecommendation("Caching", "Cache frequently accessed data in Redis", H, M),
    )),
    ("memory_usage", "above", "memory_warning_mb", (
        PerformanceRecommendation("Memory", "Implement pagination for large data sets", M, L),
        PerformanceRecommendation("Memory", "Optimize data fetching to reduce memory usage", M, M),
    )),
    ("cache_hit_rate", "below", "recommendation_cache_hit_rate", (
        PerformanceRecommendation("Caching", "Increase cache TTL for stable data", M, L),
        PerformanceRecommendation("Caching", "Implement cache warming strategies", M, M),
    )),
)


class PerformanceMonitor:
    """
    Collects performance samples and per-query timings.

    Samples live in a bounded history (oldest evicted first). Query records
    keep a cumulative mean and running extrema per query key until
    ``clear_metrics`` is called.
    """

    def __init__(
        self,
        cache_service: Optional[Any] = None,
        *,
        settings: Optional[Settings] = None,
        thresholds: Optional[AlertThresholds] = None,
        max_history: Optional[int] = None,
        recent_window: Optional[int] = None,
        slow_query_threshold_ms: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = settings or get_settings()
        self.cache_service = cache_service
        self.thresholds = thresholds or AlertThresholds.from_settings(settings)
        self.max_history = max_history or settings.performance_history_size
        self.recent_window = recent_window or settings.performance_recent_window
        self.slow_query_threshold_ms = (
            slow_query_threshold_ms if slow_query_threshold_ms is not None else settings.slow_query_threshold_ms
        )
        self._clock = clock

        self._metrics: Deque[PerformanceMetrics] = deque(maxlen=self.max_history)
        self._query_performance: Dict[str, QueryPerformance] = {}
        self._active_requests = 0
        self._lock = threading.RLock()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    def record_metric(self, sample: Optional[Mapping[str, Any]] = None, **fields: Any) -> PerformanceMetrics:
        """Append a sample built from the given fields, defaulting the rest."""
        values = dict(sample or {})
        values.update(fields)
        timestamp = values.get("timestamp")
        if timestamp is None:
            values["timestamp"] = self._now()
        elif timestamp.tzinfo is None:
            # Naive timestamps are taken as UTC
            values["timestamp"] = timestamp.replace(tzinfo=timezone.utc)

        metric = PerformanceMetrics(**values)
        with self._lock:
            self._metrics.append(metric)
        return metric

    def record_query(self, query: str, execution_time_ms: float) -> QueryPerformance:
        """Fold one timing into the running record for ``query``."""
        now = self._now()
        with self._lock:
            existing = self._query_performance.get(query)
            if existing is None:
                record = QueryPerformance(
                    query=query,
                    average_time=execution_time_ms,
                    max_time=execution_time_ms,
                    min_time=execution_time_ms,
                    call_count=1,
                    last_called=now,
                )
            else:
                call_count = existing.call_count + 1
                record = QueryPerformance(
                    query=query,
                    average_time=(existing.average_time * existing.call_count + execution_time_ms) / call_count,
                    max_time=max(existing.max_time, execution_time_ms),
                    min_time=min(existing.min_time, execution_time_ms),
                    call_count=call_count,
                    last_called=now,
                )
            self._query_performance[query] = record

        if execution_time_ms > self.slow_query_threshold_ms:
            logger.warning(
                f"🐢 [PERF] Slow query '{query}' took {execution_time_ms:.2f}ms "
                f"(threshold: {self.slow_query_threshold_ms:.0f}ms)",
                extra={"query_key": query, "duration_ms": round(execution_time_ms, 2)},
            )
        return record

    @asynccontextmanager
    async def track_query(self, query: str) -> AsyncIterator[None]:
        """Time the enclosed block and record it under ``query``."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_query(query, (time.perf_counter() - start) * 1000)

    def request_started(self) -> None:
        with self._lock:
            self._active_requests += 1

    def request_finished(self) -> None:
        with self._lock:
            self._active_requests = max(0, self._active_requests - 1)

    # ------------------------------------------------------------------
    # Interpretation
    # ------------------------------------------------------------------

    def _recent(self) -> List[PerformanceMetrics]:
        with self._lock:
            return list(self._metrics)[-self.recent_window:]

    def _latest(self) -> Optional[PerformanceMetrics]:
        with self._lock:
            return self._metrics[-1] if self._metrics else None

    def _average_response_time(self) -> float:
        recent = self._recent()
        if not recent:
            return 0.0
        return round(sum(m.response_time for m in recent) / len(recent), 2)

    def _error_rate(self) -> float:
        recent = self._recent()
        if not recent:
            return 0.0
        return round(sum(m.error_rate for m in recent) / len(recent), 2)

    def _slow_query_count(self) -> int:
        with self._lock:
            return sum(1 for q in self._query_performance.values() if q.average_time > self.slow_query_threshold_ms)

    @staticmethod
    def _process_figures() -> Tuple[float, float]:
        """Resident memory in MB and user CPU seconds for this process."""
        process = psutil.Process()
        return process.memory_info().rss / BYTES_PER_MB, process.cpu_times().user

    async def get_current_metrics(self) -> PerformanceMetrics:
        """Live sample synthesized from process figures and recent history. Not recorded."""
        memory_mb, cpu_seconds = self._process_figures()

        cache_hit_rate = 0.0
        if self.cache_service is not None:
            try:
                cache_stats = await self.cache_service.get_stats()
                cache_hit_rate = round(cache_stats.hit_rate, 2)
            except Exception as e:
                logger.error(f"Error getting cache statistics for current metrics: {e}")

        with self._lock:
            active = self._active_requests

        return PerformanceMetrics(
            timestamp=self._now(),
            response_time=self._average_response_time(),
            memory_usage=memory_mb,
            cpu_usage=cpu_seconds,
            cache_hit_rate=cache_hit_rate,
            active_connections=active,
            slow_queries=self._slow_query_count(),
            error_rate=self._error_rate(),
        )

    def get_performance_trends(self, hours: float = 24) -> List[PerformanceMetrics]:
        """Samples recorded within the last ``hours`` hours, oldest first."""
        cutoff = self._now() - timedelta(hours=hours)
        with self._lock:
            return [m for m in self._metrics if m.timestamp >= cutoff]

    def get_slow_queries(self, threshold_ms: Optional[float] = None) -> List[QueryPerformance]:
        """Query records whose average exceeds the threshold, slowest first."""
        threshold = self.slow_query_threshold_ms if threshold_ms is None else threshold_ms
        with self._lock:
            slow = [q for q in self._query_performance.values() if q.average_time > threshold]
        return sorted(slow, key=lambda q: q.average_time, reverse=True)

    def get_query_performance(self, query: str) -> Optional[QueryPerformance]:
        with self._lock:
            return self._query_performance.get(query)

    def get_query_performance_summary(self, top: int = 10) -> Dict[str, Any]:
        """Totals across every tracked query plus the slowest ``top`` records."""
        with self._lock:
            queries = list(self._query_performance.values())

        total_calls = sum(q.call_count for q in queries)
        average_time = sum(q.average_time for q in queries) / len(queries) if queries else 0.0
        ranked = sorted(queries, key=lambda q: q.average_time, reverse=True)

        return {
            "total_queries": total_calls,
            "average_time": round(average_time, 2),
            "slow_queries": sum(1 for q in queries if q.average_time > self.slow_query_threshold_ms),
            "top_slow_queries": ranked[:top],
        }

    def get_performance_alerts(self) -> List[PerformanceAlert]:
        """Evaluate the latest sample against the warning / critical thresholds."""
        current = self._latest()
        if current is None:
            return []

        t = self.thresholds
        alerts: List[PerformanceAlert] = []

        if current.response_time > t.response_time_critical_ms:
            alerts.append(PerformanceAlert(
                AlertSeverity.CRITICAL, "Response time is critically high",
                current.response_time, t.response_time_critical_ms,
            ))
        elif current.response_time > t.response_time_warning_ms:
            alerts.append(PerformanceAlert(
                AlertSeverity.WARNING, "Response time is high",
                current.response_time, t.response_time_warning_ms,
            ))

        if current.memory_usage > t.memory_critical_mb:
            alerts.append(PerformanceAlert(
                AlertSeverity.CRITICAL, "Memory usage is critically high",
                current.memory_usage, t.memory_critical_mb,
            ))
        elif current.memory_usage > t.memory_warning_mb:
            alerts.append(PerformanceAlert(
                AlertSeverity.WARNING, "Memory usage is high",
                current.memory_usage, t.memory_warning_mb,
            ))

        if current.cache_hit_rate < t.cache_hit_rate_warning:
            alerts.append(PerformanceAlert(
                AlertSeverity.WARNING, "Cache hit rate is low",
                current.cache_hit_rate, t.cache_hit_rate_warning,
            ))

        if current.error_rate > t.error_rate_critical:
            alerts.append(PerformanceAlert(
                AlertSeverity.CRITICAL, "Error rate is critically high",
                current.error_rate, t.error_rate_critical,
            ))
        elif current.error_rate > t.error_rate_warning:
            alerts.append(PerformanceAlert(
                AlertSeverity.WARNING, "Error rate is high",
                current.error_rate, t.error_rate_warning,
            ))

        return alerts

    def get_performance_recommendations(self) -> List[PerformanceRecommendation]:
        """Suggestions for every rule the latest sample trips."""
        current = self._latest()
        if current is None:
            return []

        recommendations: List[PerformanceRecommendation] = []
        for metric_name, direction, threshold_name, suggestions in RECOMMENDATION_RULES:
            value = getattr(current, metric_name)
            threshold = getattr(self.thresholds, threshold_name)
            tripped = value > threshold if direction == "above" else value < threshold
            if tripped:
                recommendations.extend(suggestions)
        return recommendations

    def get_history(self) -> List[PerformanceMetrics]:
        with self._lock:
            return list(self._metrics)

    def clear_metrics(self) -> None:
        """Drop the sample history and every query record."""
        with self._lock:
            self._metrics.clear()
            self._query_performance.clear()
        logger.info("🧹 [PERF] Performance metrics cleared")
