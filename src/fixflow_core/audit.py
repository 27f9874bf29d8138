"""Append-only audit log for request transitions."""
import logging
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import RequestAction, RequestLog, RequestStatus, utcnow

logger = logging.getLogger("fixflow-core.audit")


class AuditReplayError(ValueError):
    """Raised when log entries do not chain into a valid status sequence."""


class AuditLogWriter:
    """
    Writes one ``RequestLog`` row per transition.

    The writer works inside the caller's session and never commits, so the
    entry lands in the same transaction as the status update: a committed
    transition always has exactly one entry and a rolled-back one has none.
    No update or delete method is exposed.
    """

    def __init__(self, session: Session, clock=utcnow):
        self._session = session
        self._clock = clock

    def append(
        self,
        request_id: UUID,
        action: RequestAction,
        old_status: Optional[RequestStatus],
        new_status: RequestStatus,
        actor_id: Optional[UUID],
        note: Optional[str] = None,
    ) -> RequestLog:
        """
        Add an audit entry to the current transaction.

        Args:
            request_id: Request the transition applied to
            action: Transition name
            old_status: Status before the transition (None for create)
            new_status: Status after the transition
            actor_id: User who performed the action
            note: Optional free text (reason, completion note)

        Returns:
            The flushed RequestLog entry
        """
        entry = RequestLog(
            request_id=request_id,
            action=action,
            old_status=old_status,
            new_status=new_status,
            note=note,
            actor_id=actor_id,
            created_at=self._clock(),
        )
        self._session.add(entry)
        self._session.flush()
        logger.debug(
            f"Audit entry for {request_id}: {action.value} "
            f"{old_status.value if old_status else '-'} -> {new_status.value}"
        )
        return entry

    def history(self, request_id: UUID) -> list[RequestLog]:
        """Return all entries for a request in replay order."""
        return list(
            self._session.execute(
                select(RequestLog)
                .where(RequestLog.request_id == request_id)
                .order_by(RequestLog.created_at, RequestLog.id)
            ).scalars()
        )

    def count(self, request_id: UUID) -> int:
        return len(self.history(request_id))


def replay_states(entries: Iterable[RequestLog]) -> list[RequestStatus]:
    """
    Reconstruct the statuses a request went through from its log.

    Args:
        entries: Log entries in (created_at, id) order

    Returns:
        Statuses visited, starting with the status produced by the first entry

    Raises:
        AuditReplayError: If an entry's old_status does not match the
            previous entry's new_status
    """
    states: list[RequestStatus] = []
    for entry in entries:
        if states and entry.old_status != states[-1]:
            raise AuditReplayError(
                f"Log entry {entry.id} ({entry.action.value}) starts from "
                f"{entry.old_status.value if entry.old_status else None}, "
                f"expected {states[-1].value}"
            )
        if not states and entry.old_status is not None:
            # History that starts mid-lifecycle still replays from its first known status
            states.append(entry.old_status)
        if entry.new_status != entry.old_status or not states:
            states.append(entry.new_status)
    return states
