"""
API endpoints and request handling.
Can import from: caching, monitoring, services
"""

from . import system_status

__all__ = ["system_status"]
