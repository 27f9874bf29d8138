"""Read-side queries for requests. All writes go through the lifecycle engine."""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import case
from sqlalchemy.orm import Session, joinedload

from . import models
from .state_machine import STATUS_SORT_ORDER

logger = logging.getLogger("fixflow-core.crud")


def _status_sort_expression():
    """Build SQLAlchemy CASE expression for status-based sorting.

    Returns a CASE expression that maps status to sort order,
    with requests needing an assignee first.
    """
    return case(
        *[(models.Request.status == status, order)
          for status, order in STATUS_SORT_ORDER.items()],
        else_=99
    )


def _with_relations(query):
    return query.options(
        joinedload(models.Request.category),
        joinedload(models.Request.location),
        joinedload(models.Request.requester),
        joinedload(models.Request.technician).joinedload(models.Technician.user),
    )


def get_active_request(db: Session, request_id: UUID) -> Optional[models.Request]:
    """
    Get a request that has not been cancelled (soft-deleted).

    Args:
        db: Database session
        request_id: Request UUID

    Returns:
        Request with category, location, requester and technician loaded,
        or None if missing or soft-deleted
    """
    return (
        _with_relations(db.query(models.Request))
        .filter(models.Request.id == request_id, models.Request.deleted_at.is_(None))
        .first()
    )


def get_active_requests(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    status_filter: Optional[models.RequestStatus] = None,
    requester_id: Optional[UUID] = None,
    technician_id: Optional[UUID] = None,
) -> tuple[list[models.Request], int]:
    """
    List requests that have not been cancelled.

    Args:
        db: Database session
        skip: Number of records to skip
        limit: Maximum number of records to return
        status_filter: Filter by status
        requester_id: Only requests filed by this user
        technician_id: Only requests assigned to this technician

    Returns:
        Tuple of (requests list, total count)
    """
    query = db.query(models.Request).filter(models.Request.deleted_at.is_(None))

    if status_filter:
        query = query.filter(models.Request.status == status_filter)
    if requester_id:
        query = query.filter(models.Request.requester_id == requester_id)
    if technician_id:
        query = query.filter(models.Request.technician_id == technician_id)

    total = query.count()
    requests = (
        _with_relations(query)
        .order_by(_status_sort_expression(), models.Request.created_at.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )
    logger.debug(f"Listed {len(requests)} of {total} active requests")
    return requests, total


def get_request_history(db: Session, request_id: UUID) -> list[models.RequestLog]:
    """
    Get the audit log for a request, oldest first.

    Cancelled requests keep their history, so soft-deleted requests are included.
    """
    return (
        db.query(models.RequestLog)
        .options(joinedload(models.RequestLog.actor))
        .filter(models.RequestLog.request_id == request_id)
        .order_by(models.RequestLog.created_at, models.RequestLog.id)
        .all()
    )


def get_available_technicians(db: Session) -> list[models.Technician]:
    """Technicians that can currently receive assignments."""
    return (
        db.query(models.Technician)
        .join(models.User, models.Technician.user_id == models.User.id)
        .options(joinedload(models.Technician.user))
        .filter(models.Technician.is_available.is_(True), models.User.is_active.is_(True))
        .order_by(models.User.name)
        .all()
    )


def get_notifications(
    db: Session, user_id: UUID, unread_only: bool = False, limit: int = 50
) -> list[models.Notification]:
    """
    Get in-app notifications for a user, newest first.

    Args:
        db: Database session
        user_id: Recipient
        unread_only: Skip notifications already read
        limit: Maximum number of notifications

    Returns:
        List of notifications
    """
    query = db.query(models.Notification).filter(models.Notification.user_id == user_id)
    if unread_only:
        query = query.filter(models.Notification.is_read.is_(False))
    return query.order_by(models.Notification.created_at.desc()).limit(limit).all()


def mark_notification_read(db: Session, notification_id: UUID, user_id: UUID) -> bool:
    """
    Mark one of the user's notifications as read.

    Returns:
        True if updated, False if no such notification for this user
    """
    notification = (
        db.query(models.Notification)
        .filter(models.Notification.id == notification_id, models.Notification.user_id == user_id)
        .first()
    )
    if not notification:
        return False
    notification.is_read = True
    db.commit()
    return True


def count_unread_notifications(db: Session, user_id: UUID) -> int:
    return (
        db.query(models.Notification)
        .filter(models.Notification.user_id == user_id, models.Notification.is_read.is_(False))
        .count()
    )


def mark_all_notifications_read(db: Session, user_id: UUID) -> int:
    """
    Mark every unread notification of a user as read.

    Returns:
        Number of notifications updated
    """
    updated = (
        db.query(models.Notification)
        .filter(models.Notification.user_id == user_id, models.Notification.is_read.is_(False))
        .update({models.Notification.is_read: True}, synchronize_session=False)
    )
    db.commit()
    return updated
