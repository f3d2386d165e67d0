"""
Cache-aside read operations for students, attendance, sections, schedules
and analytics, plus the invalidation hooks write paths must call.

Every read builds its key from CacheKeys with all result-shaping filters,
then goes through ``CacheService.get_or_set``, which returns the JSON shape a
cache round-trip produces on cold and warm reads alike. The slow path is
timed into the PerformanceMonitor. Repository failures surface as
``DataAccessError`` with the original exception chained.
"""

import asyncio
import logging
from collections import OrderedDict, defaultdict
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from caching.cache_keys import CacheKeys, CacheTTL
from caching.cache_service import CacheOptions, CacheService, to_jsonable
from monitoring.performance_monitor import PerformanceMonitor
from repositories.school_repository import Record, SchoolDataRepository
from utils.exceptions import DataAccessError, IcctError, UnknownAnalyticsTypeError

logger = logging.getLogger(__name__)

DateLike = Union[str, date, datetime]

ANALYTICS_WINDOW_DAYS = 30
RECENT_ATTENDANCE_HOURS = 24

PRESENT = "PRESENT"
ABSENT = "ABSENT"
LATE = "LATE"


@dataclass
class QueryCacheOptions:
    """Caller controls for one read."""
    use_cache: bool = True
    cache_ttl: Optional[int] = None


# Key families each write path can leave stale, relative to the cache prefix.
# ``{name}`` placeholders are filled from the hook arguments; a missing value
# widens that segment to ``*``.
INVALIDATION_MAP: Dict[str, Tuple[str, ...]] = {
    # Student records are embedded in rosters, attendance rows and analytics
    "student": (
        "student:{student_id}",
        "student:{student_id}:*",
        "students:*",
        "attendance:student:{student_id}",
        "attendance:student:{student_id}:*",
        "attendance:stats:{student_id}",
        "attendance:section:*",
        "attendance:query:*",
        "section:*",
        "sections:*",
        "analytics:*",
        "system:stats",
    ),
    "attendance": (
        "attendance:student:{student_id}",
        "attendance:student:{student_id}:*",
        "attendance:stats:{student_id}",
        "attendance:section:{section_id}",
        "attendance:section:{section_id}:*",
        "attendance:query:*",
        "analytics:*",
        "system:stats",
    ),
    # Sections are embedded in student memberships, schedules and attendance rows
    "section": (
        "section:{section_id}",
        "section:{section_id}:*",
        "sections:*",
        "attendance:section:{section_id}",
        "attendance:section:{section_id}:*",
        "attendance:student:*",
        "attendance:query:*",
        "student:*",
        "students:*",
        "schedule:*",
        "schedules:*",
        "system:stats",
    ),
    # Schedules are embedded in sections and attendance rows
    "schedule": (
        "schedule:{schedule_id}",
        "schedule:{schedule_id}:*",
        "schedules:*",
        "section:*",
        "sections:*",
        "attendance:student:*",
        "attendance:section:*",
        "attendance:query:*",
    ),
    "system": (
        "system:*",
        "analytics:*",
    ),
}


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, dt_time.min)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _rate(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total > 0 else 0.0


def _status_counts(rows: List[Record]) -> Dict[str, int]:
    total = len(rows)
    present = sum(1 for row in rows if row.get("status") == PRESENT)
    absent = sum(1 for row in rows if row.get("status") == ABSENT)
    late = sum(1 for row in rows if row.get("status") == LATE)
    return {"total": total, "present": present, "absent": absent, "late": late}


class OptimizedQueryService:
    """
    Domain reads wrapped in the cache-aside pattern.

    Concurrent cold reads of one key are not deduplicated: each caller runs
    the slow path and the last write wins, which is safe because the fetches
    are idempotent reads.
    """

    def __init__(
        self,
        repository: SchoolDataRepository,
        cache_service: CacheService,
        performance_monitor: Optional[PerformanceMonitor] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repository = repository
        self.cache_service = cache_service
        self.performance_monitor = performance_monitor
        self._clock = clock

        self._analytics_routines: Dict[str, Callable[[Mapping[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "attendance_trends": self._attendance_trends,
            "department_stats": self._department_stats,
            "student_performance": self._student_performance,
        }

    # ------------------------------------------------------------------
    # Cache-aside plumbing
    # ------------------------------------------------------------------

    def _track(self, query_name: str):
        if self.performance_monitor is None:
            return nullcontext()
        return self.performance_monitor.track_query(query_name)

    async def _cached(
        self,
        query_name: str,
        key: str,
        default_ttl: int,
        fetch: Callable[[], Awaitable[Any]],
        cache_options: Optional[QueryCacheOptions],
    ) -> Any:
        options = cache_options or QueryCacheOptions()

        async def slow_path() -> Any:
            async with self._track(query_name):
                try:
                    return await fetch()
                except IcctError:
                    raise
                except Exception as e:
                    raise DataAccessError(f"{query_name} failed: {e}", query=query_name) from e

        if not options.use_cache:
            # Same shape a cache round-trip would produce
            return to_jsonable(await slow_path())

        ttl = options.cache_ttl if options.cache_ttl is not None else default_ttl
        return await self.cache_service.get_or_set(key, slow_path, CacheOptions(ttl=ttl))

    def _since(self, **delta: float) -> datetime:
        return self._clock() - timedelta(**delta)

    # ------------------------------------------------------------------
    # Students
    # ------------------------------------------------------------------

    async def get_student(self, student_id: int, cache_options: Optional[QueryCacheOptions] = None) -> Optional[Record]:
        return await self._cached(
            "get_student",
            CacheKeys.student(student_id),
            CacheTTL.MEDIUM,
            lambda: self.repository.find_student(student_id),
            cache_options,
        )

    async def get_students(
        self,
        department_id: Optional[int] = None,
        course_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        cache_options: Optional[QueryCacheOptions] = None,
    ) -> List[Record]:
        return await self._cached(
            "get_students",
            CacheKeys.students_query(department_id, course_id, status, limit, offset),
            CacheTTL.MEDIUM,
            lambda: self.repository.find_students(
                department_id=department_id, course_id=course_id, status=status, limit=limit, offset=offset
            ),
            cache_options,
        )

    # ------------------------------------------------------------------
    # Attendance
    # ------------------------------------------------------------------

    async def get_attendance(
        self,
        student_id: Optional[int] = None,
        section_id: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        cache_options: Optional[QueryCacheOptions] = None,
    ) -> List[Record]:
        """Attendance rows, newest first. The date range applies only when both ends are given."""
        if start_date is None or end_date is None:
            start_date = end_date = None

        key = CacheKeys.attendance_query({
            "student_id": student_id,
            "section_id": section_id,
            "start_date": start_date,
            "end_date": end_date,
            "status": status,
            "limit": limit,
            "offset": offset,
        })
        return await self._cached(
            "get_attendance",
            key,
            CacheTTL.SHORT,
            lambda: self.repository.find_attendance(
                student_id=student_id,
                section_id=section_id,
                start_date=start_date,
                end_date=end_date,
                status=status,
                limit=limit,
                offset=offset,
            ),
            cache_options,
        )

    def _day_bounds(self, on_date: Optional[DateLike]) -> Tuple[Optional[date], Optional[datetime], Optional[datetime]]:
        if on_date is None:
            return None, None, None
        day = _as_date(on_date)
        start = datetime.combine(day, dt_time.min, tzinfo=timezone.utc)
        return day, start, start + timedelta(days=1) - timedelta(microseconds=1)

    async def get_student_attendance(
        self,
        student_id: int,
        on_date: Optional[DateLike] = None,
        cache_options: Optional[QueryCacheOptions] = None,
    ) -> List[Record]:
        """One student's attendance, optionally restricted to a single day."""
        day, start, end = self._day_bounds(on_date)
        return await self._cached(
            "get_student_attendance",
            CacheKeys.attendance_by_student(student_id, day),
            CacheTTL.SHORT,
            lambda: self.repository.find_attendance(student_id=student_id, start_date=start, end_date=end),
            cache_options,
        )

    async def get_section_attendance(
        self,
        section_id: int,
        on_date: Optional[DateLike] = None,
        cache_options: Optional[QueryCacheOptions] = None,
    ) -> List[Record]:
        """One section's attendance, optionally restricted to a single day."""
        day, start, end = self._day_bounds(on_date)
        return await self._cached(
            "get_section_attendance",
            CacheKeys.attendance_by_section(section_id, day),
            CacheTTL.SHORT,
            lambda: self.repository.find_attendance(section_id=section_id, start_date=start, end_date=end),
            cache_options,
        )

    async def get_attendance_stats(
        self, student_id: int, cache_options: Optional[QueryCacheOptions] = None
    ) -> Dict[str, Any]:
        """Present / absent / late totals and attendance rate over the last 30 days."""

        async def fetch() -> Dict[str, Any]:
            rows = await self.repository.find_attendance_since(
                self._since(days=ANALYTICS_WINDOW_DAYS), student_id=student_id
            )
            stats: Dict[str, Any] = _status_counts(rows)
            stats["attendance_rate"] = _rate(stats["present"], stats["total"])
            stats["period"] = f"{ANALYTICS_WINDOW_DAYS} days"
            return stats

        return await self._cached(
            "get_attendance_stats",
            CacheKeys.attendance_stats(student_id),
            CacheTTL.MEDIUM,
            fetch,
            cache_options,
        )

    # ------------------------------------------------------------------
    # Sections and schedules
    # ------------------------------------------------------------------

    async def get_section(self, section_id: int, cache_options: Optional[QueryCacheOptions] = None) -> Optional[Record]:
        return await self._cached(
            "get_section",
            CacheKeys.section(section_id),
            CacheTTL.LONG,
            lambda: self.repository.find_section(section_id),
            cache_options,
        )

    async def get_sections(
        self,
        course_id: Optional[int] = None,
        year_level: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        cache_options: Optional[QueryCacheOptions] = None,
    ) -> List[Record]:
        return await self._cached(
            "get_sections",
            CacheKeys.sections_query(course_id, year_level, status, limit, offset),
            CacheTTL.LONG,
            lambda: self.repository.find_sections(
                course_id=course_id, year_level=year_level, status=status, limit=limit, offset=offset
            ),
            cache_options,
        )

    async def get_schedule(self, schedule_id: int, cache_options: Optional[QueryCacheOptions] = None) -> Optional[Record]:
        return await self._cached(
            "get_schedule",
            CacheKeys.schedule(schedule_id),
            CacheTTL.VERY_LONG,
            lambda: self.repository.find_schedule(schedule_id),
            cache_options,
        )

    async def get_schedules_by_instructor(
        self, instructor_id: int, cache_options: Optional[QueryCacheOptions] = None
    ) -> List[Record]:
        return await self._cached(
            "get_schedules_by_instructor",
            CacheKeys.schedules_by_instructor(instructor_id),
            CacheTTL.VERY_LONG,
            lambda: self.repository.find_schedules(instructor_id=instructor_id),
            cache_options,
        )

    async def get_schedules_by_room(
        self, room_id: int, cache_options: Optional[QueryCacheOptions] = None
    ) -> List[Record]:
        return await self._cached(
            "get_schedules_by_room",
            CacheKeys.schedules_by_room(room_id),
            CacheTTL.VERY_LONG,
            lambda: self.repository.find_schedules(room_id=room_id),
            cache_options,
        )

    # ------------------------------------------------------------------
    # System and analytics
    # ------------------------------------------------------------------

    async def get_system_stats(self, cache_options: Optional[QueryCacheOptions] = None) -> Dict[str, Any]:
        """Entity totals plus attendance recorded in the last 24 hours."""

        async def fetch() -> Dict[str, Any]:
            students, instructors, sections, attendance, recent = await asyncio.gather(
                self.repository.count("student"),
                self.repository.count("instructor"),
                self.repository.count("section"),
                self.repository.count("attendance"),
                self.repository.count("attendance", since=self._since(hours=RECENT_ATTENDANCE_HOURS)),
            )
            return {
                "total_students": students,
                "total_instructors": instructors,
                "total_sections": sections,
                "total_attendance": attendance,
                "recent_attendance": recent,
                "last_updated": self._clock().isoformat(),
            }

        return await self._cached(
            "get_system_stats",
            CacheKeys.system_stats(),
            CacheTTL.SHORT,
            fetch,
            cache_options,
        )

    @property
    def analytics_types(self) -> List[str]:
        return list(self._analytics_routines)

    async def get_analytics(
        self,
        analytics_type: str,
        filters: Optional[Mapping[str, Any]] = None,
        cache_options: Optional[QueryCacheOptions] = None,
    ) -> Dict[str, Any]:
        """
        Dispatch to one aggregation routine, cached per type and filters.

        Raises:
            UnknownAnalyticsTypeError: ``analytics_type`` has no routine.
        """
        routine = self._analytics_routines.get(analytics_type)
        if routine is None:
            raise UnknownAnalyticsTypeError(analytics_type, supported=self.analytics_types)

        filters = dict(filters or {})
        return await self._cached(
            f"analytics:{analytics_type}",
            CacheKeys.analytics(analytics_type, filters),
            CacheTTL.MEDIUM,
            lambda: routine(filters),
            cache_options,
        )

    async def _attendance_trends(self, filters: Mapping[str, Any]) -> Dict[str, Any]:
        rows = await self.repository.find_attendance_since(
            self._since(days=ANALYTICS_WINDOW_DAYS),
            student_id=filters.get("student_id"),
            section_id=filters.get("section_id"),
        )

        by_day: Dict[str, List[Record]] = defaultdict(list)
        for row in rows:
            stamp = _as_datetime(row.get("timestamp"))
            if stamp is not None:
                by_day[stamp.date().isoformat()].append(row)

        data = []
        for day in sorted(by_day):
            counts = _status_counts(by_day[day])
            data.append({"date": day, "count": counts.pop("total"), **counts})

        return {"type": "attendance_trends", "data": data, "period": f"{ANALYTICS_WINDOW_DAYS} days"}

    async def _department_stats(self, filters: Mapping[str, Any]) -> Dict[str, Any]:
        departments, students = await asyncio.gather(
            self.repository.find_departments(),
            self.repository.find_students_with_attendance(self._since(days=ANALYTICS_WINDOW_DAYS)),
        )

        rollup: "OrderedDict[Any, Dict[str, Any]]" = OrderedDict(
            (dept["departmentId"], {
                "department_id": dept["departmentId"],
                "department_name": dept.get("departmentName"),
                "student_count": 0,
                "total_attendance": 0,
            })
            for dept in departments
        )
        for student in students:
            entry = rollup.get(student.get("departmentId"))
            if entry is None:
                continue
            entry["student_count"] += 1
            entry["total_attendance"] += len(student.get("attendance") or [])

        return {"type": "department_stats", "data": list(rollup.values())}

    async def _student_performance(self, filters: Mapping[str, Any]) -> Dict[str, Any]:
        students = await self.repository.find_students_with_attendance(
            self._since(days=ANALYTICS_WINDOW_DAYS),
            department_id=filters.get("department_id"),
            course_id=filters.get("course_id"),
        )

        data = []
        for student in students:
            rows = student.get("attendance") or []
            present = sum(1 for row in rows if row.get("status") == PRESENT)
            data.append({
                "student_id": student.get("studentId"),
                "student_name": f"{student.get('firstName', '')} {student.get('lastName', '')}".strip(),
                "total_attendance": len(rows),
                "present_count": present,
                "attendance_rate": _rate(present, len(rows)),
            })

        return {"type": "student_performance", "data": data}

    # ------------------------------------------------------------------
    # Invalidation hooks
    # ------------------------------------------------------------------

    async def _invalidate(self, write_path: str, **ids: Optional[int]) -> int:
        patterns = []
        for template in INVALIDATION_MAP[write_path]:
            filled = template.format(**{name: "*" if value is None else value for name, value in ids.items()})
            patterns.append(filled)

        removed = 0
        for pattern in dict.fromkeys(patterns):
            removed += await self.cache_service.invalidate_pattern(pattern)

        logger.info(f"🗑️ [QUERY-CACHE] {write_path} write invalidated {removed} entries ({ids or 'global'})")
        return removed

    async def invalidate_student_cache(self, student_id: int) -> int:
        """Call after creating, updating or deleting a student."""
        return await self._invalidate("student", student_id=student_id)

    async def invalidate_attendance_cache(self, student_id: int, section_id: Optional[int] = None) -> int:
        """Call after recording or correcting attendance. Unknown section widens to all sections."""
        return await self._invalidate("attendance", student_id=student_id, section_id=section_id)

    async def invalidate_section_cache(self, section_id: int) -> int:
        """Call after changing a section or its roster."""
        return await self._invalidate("section", section_id=section_id)

    async def invalidate_schedule_cache(self, schedule_id: int) -> int:
        """Call after changing a subject schedule."""
        return await self._invalidate("schedule", schedule_id=schedule_id)

    async def invalidate_system_cache(self) -> int:
        """Call after bulk imports or other writes that move global counters."""
        return await self._invalidate("system")
