"""
Data-access contract for the slow path behind the query cache.

Implementations talk to the relational database and return plain dict
records (JSON-compatible apart from dates, which the cache layer encodes).
Failures should be raised as ``DataAccessError``; they are never masked by
the cache.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

Record = Dict[str, Any]


class SchoolDataRepository(ABC):
    """
    Read queries consumed by OptimizedQueryService.

    Raises:
        DataAccessError: when the database query fails. Other exceptions are
            wrapped into DataAccessError by the query service.
    """

    # Students
    @abstractmethod
    async def find_student(self, student_id: int) -> Optional[Record]:
        """Student with department, course and section memberships, or None."""

    @abstractmethod
    async def find_students(
        self,
        department_id: Optional[int] = None,
        course_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Record]:
        """Students with department, course and section memberships."""

    @abstractmethod
    async def find_students_with_attendance(
        self,
        since: datetime,
        department_id: Optional[int] = None,
        course_id: Optional[int] = None,
    ) -> List[Record]:
        """
        Students carrying ``studentId``, ``firstName``, ``lastName``,
        ``departmentId`` and an ``attendance`` list of records newer than ``since``.
        """

    # Attendance
    @abstractmethod
    async def find_attendance(
        self,
        student_id: Optional[int] = None,
        section_id: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Record]:
        """Attendance rows, newest first, with student and schedule details."""

    @abstractmethod
    async def find_attendance_since(
        self,
        since: datetime,
        student_id: Optional[int] = None,
        section_id: Optional[int] = None,
    ) -> List[Record]:
        """Attendance rows (at least ``status`` and ``timestamp``) newer than ``since``."""

    # Sections
    @abstractmethod
    async def find_section(self, section_id: int) -> Optional[Record]:
        """Section with course, roster and schedules, or None."""

    @abstractmethod
    async def find_sections(
        self,
        course_id: Optional[int] = None,
        year_level: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Record]:
        """Sections with course, roster and schedules."""

    # Schedules
    @abstractmethod
    async def find_schedule(self, schedule_id: int) -> Optional[Record]:
        """Subject schedule with subject, section, instructor and room, or None."""

    @abstractmethod
    async def find_schedules(
        self,
        instructor_id: Optional[int] = None,
        room_id: Optional[int] = None,
    ) -> List[Record]:
        """Subject schedules filtered by instructor and/or room."""

    # Departments and counters
    @abstractmethod
    async def find_departments(self) -> List[Record]:
        """Departments carrying ``departmentId`` and ``departmentName``."""

    @abstractmethod
    async def count(self, entity: str, since: Optional[datetime] = None) -> int:
        """
        Row count for ``entity`` (``student``, ``instructor``, ``section``,
        ``attendance``). ``since`` restricts attendance to newer rows.
        """
