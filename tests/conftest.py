"""
Pytest configuration and fixtures for the ICCT cache and query layer.
Provides an in-memory async Redis double with a controllable clock and an
in-memory school repository that counts slow-path calls.
"""
import os
import fnmatch
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

# Set testing environment variables before importing application modules
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "DEBUG"

from caching.cache_service import CacheService
from config import Settings
from monitoring.performance_monitor import PerformanceMonitor
from repositories.school_repository import Record, SchoolDataRepository
from services.optimized_query_service import OptimizedQueryService

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic-style clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryRedis:
    """
    Async stand-in for the subset of ``redis.asyncio.Redis`` the cache uses.
    Values are stored as strings; expiry follows the injected clock.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.store: Dict[str, str] = {}
        self.expires_at: Dict[str, float] = {}
        self.ttls: Dict[str, int] = {}
        self.closed = False
        self.commands: Counter = Counter()

    def _purge(self) -> None:
        now = self.clock()
        for key in [k for k, deadline in self.expires_at.items() if deadline <= now]:
            self.store.pop(key, None)
            self.expires_at.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        self.commands["get"] += 1
        self._purge()
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self.commands["setex"] += 1
        self.store[key] = value
        self.ttls[key] = ttl
        self.expires_at[key] = self.clock() + ttl
        return True

    async def delete(self, *keys: str) -> int:
        self.commands["delete"] += 1
        self._purge()
        removed = 0
        for key in keys:
            if key in self.store:
                del self.store[key]
                self.expires_at.pop(key, None)
                removed += 1
        return removed

    async def exists(self, *keys: str) -> int:
        self._purge()
        return sum(1 for key in keys if key in self.store)

    async def scan_iter(self, match: str = "*", count: Optional[int] = None):
        self._purge()
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def dbsize(self) -> int:
        self._purge()
        return len(self.store)

    async def info(self, section: Optional[str] = None) -> Dict[str, Any]:
        return {"used_memory_human": "1.00M"}

    async def ping(self) -> bool:
        self.commands["ping"] += 1
        return True

    async def flushdb(self) -> bool:
        self.store.clear()
        self.expires_at.clear()
        return True

    async def aclose(self) -> None:
        self.closed = True


class InMemorySchoolRepository(SchoolDataRepository):
    """Small school dataset; ``calls`` counts each slow-path method."""

    def __init__(self):
        self.calls: Counter = Counter()
        self.students: Dict[int, Record] = {
            1: {"studentId": 1, "firstName": "Ana", "lastName": "Cruz", "departmentId": 10, "courseId": 100, "status": "ACTIVE"},
            2: {"studentId": 2, "firstName": "Ben", "lastName": "Reyes", "departmentId": 10, "courseId": 100, "status": "ACTIVE"},
            3: {"studentId": 3, "firstName": "Cara", "lastName": "Santos", "departmentId": 20, "courseId": 200, "status": "INACTIVE"},
        }
        self.departments: List[Record] = [
            {"departmentId": 10, "departmentName": "Computer Science"},
            {"departmentId": 20, "departmentName": "Engineering"},
        ]
        self.sections: Dict[int, Record] = {
            7: {"sectionId": 7, "sectionName": "BSCS-1A", "courseId": 100, "yearLevel": 1, "status": "ACTIVE"},
            8: {"sectionId": 8, "sectionName": "BSCE-2B", "courseId": 200, "yearLevel": 2, "status": "ACTIVE"},
        }
        self.schedules: Dict[int, Record] = {
            5: {"scheduleId": 5, "sectionId": 7, "instructorId": 40, "roomId": 300, "subject": "Programming 1"},
            6: {"scheduleId": 6, "sectionId": 8, "instructorId": 41, "roomId": 300, "subject": "Statics"},
        }
        self.attendance: List[Record] = [
            {"attendanceId": 1, "studentId": 1, "sectionId": 7, "status": "PRESENT", "timestamp": NOW - timedelta(days=1)},
            {"attendanceId": 2, "studentId": 1, "sectionId": 7, "status": "PRESENT", "timestamp": NOW - timedelta(days=2)},
            {"attendanceId": 3, "studentId": 1, "sectionId": 7, "status": "ABSENT", "timestamp": NOW - timedelta(days=2, hours=1)},
            {"attendanceId": 4, "studentId": 1, "sectionId": 7, "status": "LATE", "timestamp": NOW - timedelta(days=3)},
            {"attendanceId": 5, "studentId": 2, "sectionId": 7, "status": "PRESENT", "timestamp": NOW - timedelta(hours=2)},
            {"attendanceId": 6, "studentId": 3, "sectionId": 8, "status": "ABSENT", "timestamp": NOW - timedelta(days=45)},
        ]

    async def find_student(self, student_id):
        self.calls["find_student"] += 1
        return self.students.get(student_id)

    async def find_students(self, department_id=None, course_id=None, status=None, limit=50, offset=0):
        self.calls["find_students"] += 1
        rows = [
            s for s in self.students.values()
            if (department_id is None or s["departmentId"] == department_id)
            and (course_id is None or s["courseId"] == course_id)
            and (status is None or s["status"] == status)
        ]
        return rows[offset:offset + limit]

    async def find_students_with_attendance(self, since, department_id=None, course_id=None):
        self.calls["find_students_with_attendance"] += 1
        students = await self.find_students(department_id=department_id, course_id=course_id)
        return [
            {**s, "attendance": [a for a in self.attendance if a["studentId"] == s["studentId"] and a["timestamp"] >= since]}
            for s in students
        ]

    async def find_attendance(self, student_id=None, section_id=None, start_date=None, end_date=None,
                              status=None, limit=100, offset=0):
        self.calls["find_attendance"] += 1
        rows = [
            a for a in self.attendance
            if (student_id is None or a["studentId"] == student_id)
            and (section_id is None or a["sectionId"] == section_id)
            and (status is None or a["status"] == status)
            and (start_date is None or a["timestamp"] >= start_date)
            and (end_date is None or a["timestamp"] <= end_date)
        ]
        rows.sort(key=lambda a: a["timestamp"], reverse=True)
        return rows[offset:offset + limit]

    async def find_attendance_since(self, since, student_id=None, section_id=None):
        self.calls["find_attendance_since"] += 1
        return [
            a for a in self.attendance
            if a["timestamp"] >= since
            and (student_id is None or a["studentId"] == student_id)
            and (section_id is None or a["sectionId"] == section_id)
        ]

    async def find_section(self, section_id):
        self.calls["find_section"] += 1
        return self.sections.get(section_id)

    async def find_sections(self, course_id=None, year_level=None, status=None, limit=50, offset=0):
        self.calls["find_sections"] += 1
        rows = [
            s for s in self.sections.values()
            if (course_id is None or s["courseId"] == course_id)
            and (year_level is None or s["yearLevel"] == year_level)
            and (status is None or s["status"] == status)
        ]
        return rows[offset:offset + limit]

    async def find_schedule(self, schedule_id):
        self.calls["find_schedule"] += 1
        return self.schedules.get(schedule_id)

    async def find_schedules(self, instructor_id=None, room_id=None):
        self.calls["find_schedules"] += 1
        return [
            s for s in self.schedules.values()
            if (instructor_id is None or s["instructorId"] == instructor_id)
            and (room_id is None or s["roomId"] == room_id)
        ]

    async def find_departments(self):
        self.calls["find_departments"] += 1
        return list(self.departments)

    async def count(self, entity, since=None):
        self.calls[f"count:{entity}"] += 1
        if entity == "student":
            return len(self.students)
        if entity == "instructor":
            return len({s["instructorId"] for s in self.schedules.values()})
        if entity == "section":
            return len(self.sections)
        if entity == "attendance":
            return sum(1 for a in self.attendance if since is None or a["timestamp"] >= since)
        raise ValueError(f"Unknown entity: {entity}")


@pytest.fixture
def test_settings():
    """Settings isolated from any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return InMemoryRedis(clock)


@pytest.fixture
def cache_service(fake_redis, clock, test_settings):
    return CacheService(fake_redis, settings=test_settings, clock=clock)


@pytest.fixture
def performance_monitor(cache_service, test_settings):
    return PerformanceMonitor(cache_service, settings=test_settings)


@pytest.fixture
def repository():
    return InMemorySchoolRepository()


@pytest.fixture
def query_service(repository, cache_service, performance_monitor):
    return OptimizedQueryService(repository, cache_service, performance_monitor, clock=lambda: NOW)
