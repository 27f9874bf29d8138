"""API routers for FixFlow Core."""

from . import notifications, requests, technicians

__all__ = ["notifications", "requests", "technicians"]
