"""
Data-access contracts behind the query cache.
"""

from .school_repository import Record, SchoolDataRepository

__all__ = ["Record", "SchoolDataRepository"]
