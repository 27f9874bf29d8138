"""In-app notifications API router."""
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ... import crud
from ...database import get_db
from ...exceptions import NotFoundError
from ...schemas import Envelope, NotificationResponse, ok
from ...state_machine import Actor
from ..dependencies import get_actor

logger = logging.getLogger("fixflow-core.notifications")

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/", response_model=Envelope[list[NotificationResponse]])
def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Notifications addressed to the acting user, newest first."""
    notifications = crud.get_notifications(db, actor.user_id, unread_only=unread_only, limit=limit)
    return ok([NotificationResponse.model_validate(n) for n in notifications])


@router.get("/unread-count", response_model=Envelope[dict])
def get_unread_count(
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    return ok({"count": crud.count_unread_notifications(db, actor.user_id)})


@router.post("/read-all", response_model=Envelope[dict])
def mark_all_notifications_read(
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Mark every unread notification of the acting user as read."""
    updated = crud.mark_all_notifications_read(db, actor.user_id)
    logger.debug(f"Marked {updated} notifications read for {actor.user_id}")
    return ok({"updated": updated})


@router.post("/{notification_id}/read", response_model=Envelope[dict])
def mark_notification_read(
    notification_id: UUID,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    if not crud.mark_notification_read(db, notification_id, actor.user_id):
        raise NotFoundError(f"Notification not found: {notification_id}")
    logger.debug(f"Notification {notification_id} marked read by {actor.user_id}")
    return ok({"id": str(notification_id), "is_read": True})
