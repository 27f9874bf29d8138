"""FastAPI dependencies: acting user and the lifecycle engine."""
import logging
from typing import Optional
from uuid import UUID

from fastapi import Header

from ..config import get_settings
from ..database import SessionLocal
from ..engine import RequestLifecycleEngine
from ..exceptions import UnauthorizedError
from ..models import UserRole
from ..notifications import NotificationDispatcher, build_dispatcher
from ..state_machine import Actor

logger = logging.getLogger("fixflow-core.api.dependencies")

_dispatcher: Optional[NotificationDispatcher] = None
_engine: Optional[RequestLifecycleEngine] = None


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
) -> Actor:
    """
    Identify the acting user from ``X-Actor-Id`` / ``X-Actor-Role``.

    Authentication happens upstream; this service trusts the headers.

    Raises:
        UnauthorizedError: If either header is missing or malformed
    """
    if not x_actor_id or not x_actor_role:
        raise UnauthorizedError("X-Actor-Id and X-Actor-Role headers are required")
    try:
        user_id = UUID(x_actor_id)
    except ValueError:
        raise UnauthorizedError(f"Invalid X-Actor-Id: {x_actor_id}") from None
    try:
        role = UserRole(x_actor_role.lower())
    except ValueError:
        raise UnauthorizedError(f"Invalid X-Actor-Role: {x_actor_role}") from None
    return Actor(user_id=user_id, role=role)


def get_dispatcher() -> NotificationDispatcher:
    """Process-wide dispatcher, created on first use."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher(get_settings(), SessionLocal)
    return _dispatcher


def get_engine() -> RequestLifecycleEngine:
    """Process-wide lifecycle engine bound to the configured database."""
    global _engine
    if _engine is None:
        _engine = RequestLifecycleEngine(SessionLocal, get_dispatcher(), settings=get_settings())
    return _engine


def shutdown_dispatcher() -> None:
    """Drain pending notifications (called on application shutdown)."""
    global _dispatcher, _engine
    if _dispatcher is not None and hasattr(_dispatcher, "shutdown"):
        logger.info("Waiting for pending notifications")
        _dispatcher.shutdown(wait=True)
    _dispatcher = None
    _engine = None
