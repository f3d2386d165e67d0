"""
Cache key registry and TTL tiers.

Each generator maps one logical resource shape to a deterministic key. Keys
carry every identifying parameter and nothing time- or run-dependent, so the
same query always lands on the same key. Prefixing is left to CacheService.
"""

import json
from datetime import date, datetime
from typing import Any, Mapping, Optional, Union

from caching.cache_service import json_default

DateLike = Union[str, date, datetime]

# Placeholder for an absent filter in positional key segments
ANY = "all"


def stable_json(value: Any) -> str:
    """Encode ``value`` with sorted keys and no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=json_default)


def _date_segment(value: Optional[DateLike]) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return f":{value.isoformat()}"
    return f":{value}"


def _segment(value: Any) -> str:
    return ANY if value is None else str(value)


class CacheTTL:
    """Cache TTL tiers in seconds."""
    SHORT = 300          # 5 minutes, live attendance and counters
    MEDIUM = 1800        # 30 minutes, aggregated analytics and rosters
    LONG = 3600          # 1 hour, sections and other reference data
    VERY_LONG = 86400    # 24 hours, schedules


class CacheKeys:
    """Deterministic cache key generators."""

    # Students
    @staticmethod
    def student(student_id: int) -> str:
        return f"student:{student_id}"

    @staticmethod
    def students_by_department(department_id: int) -> str:
        return f"students:department:{department_id}"

    @staticmethod
    def students_by_course(course_id: int) -> str:
        return f"students:course:{course_id}"

    @staticmethod
    def students_query(
        department_id: Optional[int] = None,
        course_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> str:
        return (
            f"students:query:department:{_segment(department_id)}:course:{_segment(course_id)}"
            f":status:{_segment(status)}:limit:{limit}:offset:{offset}"
        )

    # Attendance
    @staticmethod
    def attendance_by_student(student_id: int, on_date: Optional[DateLike] = None) -> str:
        return f"attendance:student:{student_id}{_date_segment(on_date)}"

    @staticmethod
    def attendance_by_section(section_id: int, on_date: Optional[DateLike] = None) -> str:
        return f"attendance:section:{section_id}{_date_segment(on_date)}"

    @staticmethod
    def attendance_stats(student_id: int) -> str:
        return f"attendance:stats:{student_id}"

    @staticmethod
    def attendance_query(filters: Mapping[str, Any]) -> str:
        active = {name: value for name, value in filters.items() if value is not None}
        return f"attendance:query:{stable_json(active)}"

    # Sections
    @staticmethod
    def section(section_id: int) -> str:
        return f"section:{section_id}"

    @staticmethod
    def sections_by_course(course_id: int) -> str:
        return f"sections:course:{course_id}"

    @staticmethod
    def sections_query(
        course_id: Optional[int] = None,
        year_level: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> str:
        return (
            f"sections:query:course:{_segment(course_id)}:year:{_segment(year_level)}"
            f":status:{_segment(status)}:limit:{limit}:offset:{offset}"
        )

    # Subject schedules
    @staticmethod
    def schedule(schedule_id: int) -> str:
        return f"schedule:{schedule_id}"

    @staticmethod
    def schedules_by_instructor(instructor_id: int) -> str:
        return f"schedules:instructor:{instructor_id}"

    @staticmethod
    def schedules_by_room(room_id: int) -> str:
        return f"schedules:room:{room_id}"

    # Analytics
    @staticmethod
    def analytics(analytics_type: str, filters: Optional[Mapping[str, Any]] = None) -> str:
        return f"analytics:{analytics_type}:{stable_json(dict(filters or {}))}"

    # System
    @staticmethod
    def system_stats() -> str:
        return "system:stats"

    @staticmethod
    def user_permissions(user_id: int) -> str:
        return f"user:permissions:{user_id}"

    # Email
    @staticmethod
    def emails_by_user(user_id: int) -> str:
        return f"emails:user:{user_id}"

    @staticmethod
    def email_stats() -> str:
        return "emails:stats"
