"""State machine for maintenance request lifecycle transitions.

All transition rules live in ``TRANSITIONS``: which statuses an action may
start from, which status it produces, who may perform it and which
lifecycle fields it writes. Every engine operation consults this table, so
adding or auditing a transition touches this module only.

Lifecycle:
    pending -> assigned -> accepted -> in_progress <-> on_hold -> completed

    assigned -> rejected -> assigned   (technician declines, admin reassigns)
    pending/assigned -> cancelled      (requester withdraws, soft delete)

Terminal states: completed, cancelled
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import NamedTuple, Optional
from uuid import UUID

from .exceptions import IllegalTransitionError
from .models import Request, RequestAction, RequestStatus, UserRole

logger = logging.getLogger("fixflow-core.state_machine")


class Actor(NamedTuple):
    """Identity invoking an action."""

    user_id: UUID
    role: UserRole


class ActorRule(str, enum.Enum):
    """Who may perform an action on a given request."""

    ANY_USER = "any_user"                # create: any active user files their own request
    ADMIN = "admin"                      # role == admin
    ASSIGNED_TECHNICIAN = "technician"   # user behind request.technician
    OWNER = "owner"                      # request.requester_id


@dataclass(frozen=True)
class Transition:
    """One row of the transition table."""

    action: RequestAction
    allowed_from: frozenset
    result: Optional[RequestStatus]      # None: status unchanged (update)
    actor_rule: ActorRule
    requires_reason: bool = False
    sets_timestamp: Optional[str] = None
    clears: tuple = field(default_factory=tuple)


TRANSITIONS: dict[RequestAction, Transition] = {
    RequestAction.CREATE: Transition(
        action=RequestAction.CREATE,
        allowed_from=frozenset(),
        result=RequestStatus.PENDING,
        actor_rule=ActorRule.ANY_USER,
    ),
    RequestAction.ASSIGN: Transition(
        action=RequestAction.ASSIGN,
        allowed_from=frozenset({RequestStatus.PENDING, RequestStatus.REJECTED}),
        result=RequestStatus.ASSIGNED,
        actor_rule=ActorRule.ADMIN,
        sets_timestamp="assigned_at",
    ),
    RequestAction.ACCEPT: Transition(
        action=RequestAction.ACCEPT,
        allowed_from=frozenset({RequestStatus.ASSIGNED}),
        result=RequestStatus.ACCEPTED,
        actor_rule=ActorRule.ASSIGNED_TECHNICIAN,
    ),
    RequestAction.REJECT: Transition(
        action=RequestAction.REJECT,
        allowed_from=frozenset({RequestStatus.ASSIGNED}),
        result=RequestStatus.REJECTED,
        actor_rule=ActorRule.ASSIGNED_TECHNICIAN,
        requires_reason=True,
        clears=("technician_id", "assigned_at"),
    ),
    RequestAction.START: Transition(
        action=RequestAction.START,
        allowed_from=frozenset({RequestStatus.ACCEPTED}),
        result=RequestStatus.IN_PROGRESS,
        actor_rule=ActorRule.ASSIGNED_TECHNICIAN,
        sets_timestamp="started_at",
    ),
    RequestAction.HOLD: Transition(
        action=RequestAction.HOLD,
        allowed_from=frozenset({RequestStatus.IN_PROGRESS}),
        result=RequestStatus.ON_HOLD,
        actor_rule=ActorRule.ASSIGNED_TECHNICIAN,
        requires_reason=True,
    ),
    RequestAction.RESUME: Transition(
        action=RequestAction.RESUME,
        allowed_from=frozenset({RequestStatus.ON_HOLD}),
        result=RequestStatus.IN_PROGRESS,
        actor_rule=ActorRule.ASSIGNED_TECHNICIAN,
    ),
    RequestAction.COMPLETE: Transition(
        action=RequestAction.COMPLETE,
        allowed_from=frozenset({RequestStatus.IN_PROGRESS, RequestStatus.ON_HOLD}),
        result=RequestStatus.COMPLETED,
        actor_rule=ActorRule.ASSIGNED_TECHNICIAN,
        sets_timestamp="completed_at",
    ),
    RequestAction.CANCEL: Transition(
        action=RequestAction.CANCEL,
        allowed_from=frozenset({RequestStatus.PENDING, RequestStatus.ASSIGNED}),
        result=RequestStatus.CANCELLED,
        actor_rule=ActorRule.OWNER,
        sets_timestamp="deleted_at",
    ),
    RequestAction.UPDATE: Transition(
        action=RequestAction.UPDATE,
        allowed_from=frozenset({RequestStatus.PENDING, RequestStatus.ASSIGNED}),
        result=None,
        actor_rule=ActorRule.OWNER,
    ),
}

TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED})


def get_transition(action: RequestAction) -> Transition:
    """Look up the table row for an action."""
    return TRANSITIONS[action]


def is_action_allowed(action: RequestAction, current_status: RequestStatus) -> bool:
    """
    Check whether an action may start from the given status.

    Args:
        action: Lifecycle action
        current_status: Current request status

    Returns:
        True if the status is in the action's allowed-from set
    """
    return current_status in TRANSITIONS[action].allowed_from


def validate_transition(action: RequestAction, current_status: RequestStatus) -> Transition:
    """
    Validate that an action may start from the current status.

    Args:
        action: Lifecycle action
        current_status: Current request status

    Returns:
        The matching Transition row

    Raises:
        IllegalTransitionError: If the status is not in the allowed-from set
    """
    transition = TRANSITIONS[action]
    if current_status not in transition.allowed_from:
        allowed_from = sorted(transition.allowed_from, key=lambda s: STATUS_SORT_ORDER[s])
        allowed_names = [s.value for s in allowed_from]

        error_msg = (
            f"Cannot {action.value} a request in status '{current_status.value}'. "
            f"Allowed from: {', '.join(allowed_names) or 'none'}."
        )

        # Add helpful guidance based on the attempted transition
        if current_status in TERMINAL_STATUSES:
            error_msg += f" Requests in '{current_status.value}' are final."
        elif action == RequestAction.START and current_status == RequestStatus.ASSIGNED:
            error_msg += " The technician must accept the assignment first."
        elif action == RequestAction.COMPLETE and current_status == RequestStatus.ACCEPTED:
            error_msg += " Work must be started before it can be completed."

        logger.warning(f"Blocked transition: {error_msg}")
        raise IllegalTransitionError(action, current_status, allowed_from, message=error_msg)

    logger.debug(f"Valid transition: {action.value} from {current_status.value}")
    return transition


def get_allowed_actions(current_status: RequestStatus) -> list[RequestAction]:
    """
    Get the actions whose allowed-from set contains the current status.

    Args:
        current_status: Current request status

    Returns:
        Actions in table order (create is never included)
    """
    return [
        action for action, transition in TRANSITIONS.items()
        if current_status in transition.allowed_from
    ]


def is_terminal_status(status: RequestStatus) -> bool:
    """Check if a status is terminal (no further transitions)."""
    return status in TERMINAL_STATUSES


def is_actor_authorized(transition: Transition, request: Request, actor: Actor) -> bool:
    """
    Apply the transition's actor rule to a loaded request.

    The assigned-technician rule compares the acting user with the user
    behind ``request.technician``; roles are not consulted for it.
    """
    rule = transition.actor_rule
    if rule == ActorRule.ANY_USER:
        return True
    if rule == ActorRule.ADMIN:
        return actor.role == UserRole.ADMIN
    if rule == ActorRule.OWNER:
        return request.requester_id == actor.user_id
    if rule == ActorRule.ASSIGNED_TECHNICIAN:
        technician = request.technician
        return technician is not None and technician.user_id == actor.user_id
    return False


def check_consistency(request: Request) -> list[str]:
    """
    Check that status agrees with the technician reference and timestamps.

    Returns:
        List of violation descriptions (empty when consistent)
    """
    status = request.status
    violations: list[str] = []

    def expect(condition: bool, description: str) -> None:
        if not condition:
            violations.append(f"{status.value}: {description}")

    if status == RequestStatus.CANCELLED:
        expect(request.deleted_at is not None, "deleted_at must be set")
        expect(request.started_at is None, "started_at must be empty")
        expect(request.completed_at is None, "completed_at must be empty")
        return violations

    expect(request.deleted_at is None, "deleted_at must be empty")

    assigned = status in (
        RequestStatus.ASSIGNED,
        RequestStatus.ACCEPTED,
        RequestStatus.IN_PROGRESS,
        RequestStatus.ON_HOLD,
        RequestStatus.COMPLETED,
    )
    started = status in (RequestStatus.IN_PROGRESS, RequestStatus.ON_HOLD, RequestStatus.COMPLETED)
    completed = status == RequestStatus.COMPLETED

    expect((request.technician_id is not None) == assigned, "technician_id presence")
    expect((request.assigned_at is not None) == assigned, "assigned_at presence")
    expect((request.started_at is not None) == started, "started_at presence")
    expect((request.completed_at is not None) == completed, "completed_at presence")

    if request.assigned_at and request.started_at:
        expect(request.assigned_at <= request.started_at, "assigned_at <= started_at")
    if request.started_at and request.completed_at:
        expect(request.started_at <= request.completed_at, "started_at <= completed_at")

    return violations


# Status sort order for list queries
# Lower number = higher priority (shown first)
STATUS_SORT_ORDER: dict[RequestStatus, int] = {
    RequestStatus.PENDING: 1,       # Needs an assignee
    RequestStatus.REJECTED: 2,      # Needs a new assignee
    RequestStatus.ASSIGNED: 3,      # Waiting for technician
    RequestStatus.ACCEPTED: 4,
    RequestStatus.IN_PROGRESS: 5,
    RequestStatus.ON_HOLD: 6,
    RequestStatus.COMPLETED: 7,     # Done
    RequestStatus.CANCELLED: 8,     # Excluded from active queries
}
