"""
Request lifecycle engine.

Every action runs as one transaction:

1. load the active request (``REQUEST_NOT_FOUND``)
2. check the action against ``state_machine.TRANSITIONS`` (``CANNOT_<ACTION>``)
3. check the actor against the action's actor rule (``FORBIDDEN``)
4. validate the action payload (``VALIDATION_ERROR`` / ``TECHNICIAN_NOT_FOUND``)
5. compare-and-set the status and lifecycle fields
6. append one audit entry
7. commit

The ``NotificationTask`` is built from the written state inside the
transaction; only after the commit is it handed to the dispatcher, and
nothing is read back from the database once the transaction has committed.
"""
import logging
import threading
from datetime import date, datetime
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import crud
from .audit import AuditLogWriter
from .config import Settings, get_settings
from .exceptions import (
    ForbiddenError,
    IllegalTransitionError,
    RequestNotFoundError,
    SequenceAllocationError,
    StaleStateError,
    TechnicianNotFoundError,
    TransitionCancelledError,
    ValidationError,
)
from .models import Priority, Request, RequestAction, RequestStatus, utcnow
from .notifications import NotificationDispatcher, NotificationTask, build_task
from .repository import RequestRepository, SqlAlchemyRequestRepository
from .sequences import RequestNumberAllocator
from .state_machine import (
    STATUS_SORT_ORDER,
    Actor,
    Transition,
    get_allowed_actions,
    get_transition,
    is_actor_authorized,
    validate_transition,
)

logger = logging.getLogger("fixflow-core.engine")

# Fields a requester may change through ``update``
UPDATABLE_FIELDS = (
    "title",
    "description",
    "priority",
    "preferred_date",
    "preferred_time",
    "category_id",
    "location_id",
)

# Validates the action payload; returns extra columns for the compare-and-set
PayloadCheck = Callable[[RequestRepository, Request], dict]


def _blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


# Unique violations meaning another create took the number first
_NUMBER_COLLISION_MARKERS = (
    "request_number",
    "uq_request_sequences_prefix",
    "request_sequences.prefix",
)


def _is_number_collision(error: IntegrityError) -> bool:
    message = str(error.orig)
    return any(marker in message for marker in _NUMBER_COLLISION_MARKERS)


def _require_text(value: Optional[str], field_name: str) -> PayloadCheck:
    def check(repository: RequestRepository, request: Request) -> dict:
        if _blank(value):
            raise ValidationError(f"{field_name} is required")
        return {}

    return check


class RequestLifecycleEngine:
    """
    Drives maintenance requests through their lifecycle.

    Args:
        session_factory: Creates one session per operation
        dispatcher: Receives one task per committed transition
        clock: Source of naive UTC timestamps (and the request-number day)
        settings: Defaults to ``get_settings()``
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
        settings: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._clock = clock
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def create(
        self,
        actor: Actor,
        title: Optional[str],
        category_id: Optional[UUID],
        location_id: Optional[UUID],
        description: Optional[str] = None,
        priority: Optional[Priority] = None,
        preferred_date: Optional[date] = None,
        preferred_time: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Request:
        """
        File a new request in ``pending`` with the next request number for today.

        Number allocation collisions roll the attempt back and retry, up to
        ``request_number_max_attempts``.
        Any other integrity error is re-raised at once.

        Raises:
            ForbiddenError: Actor is not an active user
            ValidationError: Missing title or unknown/inactive category or location
            SequenceAllocationError: No number could be allocated
            TransitionCancelledError: ``cancel_event`` was set before commit
        """
        max_attempts = self._settings.request_number_max_attempts

        for attempt in range(1, max_attempts + 1):
            with self._session_factory(expire_on_commit=False) as session:
                try:
                    repository = SqlAlchemyRequestRepository(session)
                    self._validate_create(repository, actor, title, category_id, location_id)

                    now = self._clock()
                    request_number = RequestNumberAllocator(session, repository).next_number(now.date())
                    request = repository.add(Request(
                        request_number=request_number,
                        status=RequestStatus.PENDING,
                        requester_id=actor.user_id,
                        category_id=category_id,
                        location_id=location_id,
                        title=title.strip(),
                        description=_clean(description),
                        priority=priority or Priority.NORMAL,
                        preferred_date=preferred_date,
                        preferred_time=_clean(preferred_time),
                        created_at=now,
                        updated_at=now,
                    ))
                    new_request_id = request.id
                    AuditLogWriter(session, self._clock).append(
                        request.id,
                        RequestAction.CREATE,
                        None,
                        RequestStatus.PENDING,
                        actor.user_id,
                    )
                    request, task = self._load_result(
                        repository, new_request_id, RequestAction.CREATE, actor, None
                    )
                    self._raise_if_cancelled(cancel_event, RequestAction.CREATE, request_number)
                    session.commit()
                except IntegrityError as e:
                    session.rollback()
                    if not _is_number_collision(e):
                        logger.error(f"Integrity error creating request: {e.orig}", exc_info=True)
                        raise
                    logger.warning(
                        f"Request number collision (attempt {attempt}/{max_attempts}): {e.orig}"
                    )
                    continue
                except SQLAlchemyError as e:
                    logger.error(f"Database error creating request: {e}", exc_info=True)
                    session.rollback()
                    raise
                except Exception:
                    session.rollback()
                    raise

                logger.info(f"Created request {request_number} by {actor.user_id}")

            self._dispatch(task)
            return request

        logger.error(f"Gave up allocating a request number after {max_attempts} attempts")
        raise SequenceAllocationError(
            f"Could not allocate a request number after {max_attempts} attempts"
        )

    def assign(
        self,
        request_id: UUID,
        actor: Actor,
        technician_id: Optional[UUID],
        note: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Request:
        """Assign a pending or rejected request to an available technician (admin only)."""

        def check(repository: RequestRepository, request: Request) -> dict:
            if technician_id is None:
                raise ValidationError("technician_id is required")
            technician = repository.get_technician(technician_id)
            if technician is None or not technician.is_available:
                raise TechnicianNotFoundError(technician_id)
            if technician.user is None or not technician.user.is_active:
                raise TechnicianNotFoundError(technician_id)
            return {"technician_id": technician.id}

        return self._transition(
            RequestAction.ASSIGN, request_id, actor,
            note=_clean(note), check=check, cancel_event=cancel_event,
        )

    def accept(
        self,
        request_id: UUID,
        actor: Actor,
        cancel_event: Optional[threading.Event] = None,
    ) -> Request:
        """Assigned technician accepts the job."""
        return self._transition(
            RequestAction.ACCEPT, request_id, actor, cancel_event=cancel_event
        )

    def reject(
        self,
        request_id: UUID,
        actor: Actor,
        reason: Optional[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> Request:
        """
        Assigned technician declines the job.

        Clears the technician and ``assigned_at``; the request can be
        assigned again from ``rejected``.
        """
        return self._transition(
            RequestAction.REJECT, request_id, actor,
            note=_clean(reason), check=_require_text(reason, "reason"),
            cancel_event=cancel_event,
        )

    def start(
        self,
        request_id: UUID,
        actor: Actor,
        cancel_event: Optional[threading.Event] = None,
    ) -> Request:
        return self._transition(
            RequestAction.START, request_id, actor, cancel_event=cancel_event
        )

    def hold(
        self,
        request_id: UUID,
        actor: Actor,
        reason: Optional[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> Request:
        """Pause work in progress (waiting for parts, access, ...)."""
        return self._transition(
            RequestAction.HOLD, request_id, actor,
            note=_clean(reason), check=_require_text(reason, "reason"),
            cancel_event=cancel_event,
        )

    def resume(
        self,
        request_id: UUID,
        actor: Actor,
        cancel_event: Optional[threading.Event] = None,
    ) -> Request:
        return self._transition(
            RequestAction.RESUME, request_id, actor, cancel_event=cancel_event
        )

    def complete(
        self,
        request_id: UUID,
        actor: Actor,
        note: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Request:
        """Finish the job; the note is optional."""
        return self._transition(
            RequestAction.COMPLETE, request_id, actor,
            note=_clean(note), cancel_event=cancel_event,
        )

    def cancel(
        self,
        request_id: UUID,
        actor: Actor,
        reason: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Request:
        """Requester withdraws the request. Soft-deletes it (terminal)."""
        return self._transition(
            RequestAction.CANCEL, request_id, actor,
            note=_clean(reason), cancel_event=cancel_event,
        )

    def update(
        self,
        request_id: UUID,
        actor: Actor,
        changes: dict,
        cancel_event: Optional[threading.Event] = None,
    ) -> Request:
        """
        Edit the request details while it is still pending or assigned.

        Args:
            request_id: Request to edit
            actor: Owning requester
            changes: Subset of ``UPDATABLE_FIELDS``; other keys are rejected

        The status is unchanged, but the write is still conditioned on it so a
        concurrent transition out of pending/assigned wins.
        """
        changed_names = sorted(changes)

        def check(repository: RequestRepository, request: Request) -> dict:
            unknown = set(changes) - set(UPDATABLE_FIELDS)
            if unknown:
                raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
            if not changes:
                raise ValidationError("No fields to update")

            values = dict(changes)
            if "title" in values:
                if _blank(values["title"]):
                    raise ValidationError("title must not be empty")
                values["title"] = values["title"].strip()
            if "description" in values:
                values["description"] = _clean(values["description"])
            if "preferred_time" in values:
                values["preferred_time"] = _clean(values["preferred_time"])
            if "priority" in values:
                if values["priority"] is None:
                    raise ValidationError("priority must not be empty")
                try:
                    values["priority"] = Priority(values["priority"])
                except ValueError:
                    raise ValidationError(f"Unknown priority: {values['priority']}") from None
            if "category_id" in values:
                self._require_category(repository, values["category_id"])
            if "location_id" in values:
                self._require_location(repository, values["location_id"])
            return values

        return self._transition(
            RequestAction.UPDATE, request_id, actor,
            note=f"Updated: {', '.join(changed_names)}" if changed_names else None,
            check=check, cancel_event=cancel_event,
        )

    def allowed_actions(self, request_id: UUID, actor: Actor) -> list[RequestAction]:
        """Actions this actor may perform on the request right now."""
        with self._session_factory() as session:
            request = crud.get_active_request(session, request_id)
            if request is None:
                raise RequestNotFoundError(request_id)
            actions = [
                action for action in get_allowed_actions(request.status)
                if is_actor_authorized(get_transition(action), request, actor)
            ]
        return actions

    # ------------------------------------------------------------------
    # Transition pipeline
    # ------------------------------------------------------------------

    def _transition(
        self,
        action: RequestAction,
        request_id: UUID,
        actor: Actor,
        note: Optional[str] = None,
        check: Optional[PayloadCheck] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Request:
        with self._session_factory(expire_on_commit=False) as session:
            try:
                repository = SqlAlchemyRequestRepository(session)
                request = repository.load_for_update(request_id)
                old_status = request.status
                request_number = request.request_number

                transition = validate_transition(action, old_status)
                self._authorize(transition, request, actor)
                fields = check(repository, request) if check else {}

                # Reject clears the reference; keep the name for the notification
                technician_name = None
                if request.technician is not None and request.technician.user is not None:
                    technician_name = request.technician.user.name

                now = self._clock()
                new_status = transition.result or old_status
                fields.update(self._lifecycle_fields(transition, now))
                fields["updated_at"] = now

                try:
                    repository.compare_and_set_status(request_id, old_status, **fields)
                except StaleStateError as e:
                    logger.warning(
                        f"Stale {action.value} on {request_number}: "
                        f"status changed to {e.actual_status.value if e.actual_status else 'unknown'}"
                    )
                    raise IllegalTransitionError(
                        action,
                        e.actual_status,
                        sorted(transition.allowed_from, key=lambda s: STATUS_SORT_ORDER[s]),
                        stale=True,
                    ) from e

                AuditLogWriter(session, self._clock).append(
                    request_id, action, old_status, new_status, actor.user_id, note
                )
                result, task = self._load_result(
                    repository, request_id, action, actor, old_status,
                    note=note, technician_name=technician_name,
                )
                self._raise_if_cancelled(cancel_event, action, request_number)
                session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Database error during {action.value} on {request_id}: {e}", exc_info=True)
                session.rollback()
                raise
            except Exception:
                session.rollback()
                raise

            logger.info(
                f"{action.value}: {request_number} "
                f"{old_status.value} -> {new_status.value} by {actor.user_id}"
            )

        self._dispatch(task)
        return result

    @staticmethod
    def _lifecycle_fields(transition: Transition, now: datetime) -> dict:
        """Status, timestamp and cleared columns owned by a transition."""
        fields: dict = {}
        if transition.result is not None:
            fields["status"] = transition.result
        if transition.sets_timestamp:
            fields[transition.sets_timestamp] = now
        for column in transition.clears:
            fields[column] = None
        return fields

    @staticmethod
    def _authorize(transition: Transition, request: Request, actor: Actor) -> None:
        if not is_actor_authorized(transition, request, actor):
            logger.warning(
                f"Forbidden: {actor.role.value} {actor.user_id} tried to "
                f"{transition.action.value} {request.request_number}"
            )
            raise ForbiddenError(
                f"Not allowed to {transition.action.value} request {request.request_number}"
            )

    @staticmethod
    def _raise_if_cancelled(
        cancel_event: Optional[threading.Event], action: RequestAction, label: str
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"{action.value} on {label} cancelled before commit")
            raise TransitionCancelledError(f"{action.value} was cancelled before commit")

    def _validate_create(
        self,
        repository: RequestRepository,
        actor: Actor,
        title: Optional[str],
        category_id: Optional[UUID],
        location_id: Optional[UUID],
    ) -> None:
        user = repository.get_user(actor.user_id)
        if user is None or not user.is_active:
            raise ForbiddenError("Only active users can file requests")
        if _blank(title):
            raise ValidationError("title is required")
        self._require_category(repository, category_id)
        self._require_location(repository, location_id)

    @staticmethod
    def _require_category(repository: RequestRepository, category_id: Optional[UUID]) -> None:
        category = repository.get_category(category_id) if category_id else None
        if category is None or not category.is_active:
            raise ValidationError(f"Category not found: {category_id}")

    @staticmethod
    def _require_location(repository: RequestRepository, location_id: Optional[UUID]) -> None:
        location = repository.get_location(location_id) if location_id else None
        if location is None or not location.is_active:
            raise ValidationError(f"Location not found: {location_id}")

    # ------------------------------------------------------------------
    # Result and notification task
    # ------------------------------------------------------------------

    def _load_result(
        self,
        repository: RequestRepository,
        request_id: UUID,
        action: RequestAction,
        actor: Actor,
        old_status: Optional[RequestStatus],
        note: Optional[str] = None,
        technician_name: Optional[str] = None,
    ) -> tuple[Request, NotificationTask]:
        """
        Reload the written request with its relations and build its task.

        Runs inside the transaction, so a failed read rolls the action back.
        Sessions are opened with ``expire_on_commit=False``; the loaded request
        stays readable after commit without another query.
        """
        request = repository.get_with_relations(request_id)
        actor_user = repository.get_user(actor.user_id)
        task = build_task(
            request, action, actor_user, old_status,
            note=note, technician_name=technician_name,
        )
        return request, task

    def _dispatch(self, task: NotificationTask) -> None:
        try:
            self._dispatcher.dispatch(task)
        except Exception as e:
            logger.warning(
                f"Dispatcher rejected {task.event_type.value} for {task.payload.request_number}: {e}"
            )

