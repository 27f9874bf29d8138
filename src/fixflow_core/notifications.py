"""Notification dispatch for request transitions.

The lifecycle engine hands one ``NotificationTask`` per committed transition
to a ``NotificationDispatcher`` and moves on. Delivery to external channels
(outbound webhooks, in-app notifications) happens off the caller's path:

- every channel is attempted independently; one failing never skips another
- failures are retried per ``RetryPolicy`` (one attempt by default), then
  logged as warnings and dropped
- nothing here ever raises into the engine or rolls back a transition
"""
import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, Optional
from uuid import UUID

import httpx
from pydantic import BaseModel, Field
from sqlalchemy.orm import sessionmaker

from .config import Settings
from .exceptions import DispatchFailure
from .models import Notification, Request, RequestAction, RequestStatus, User, utcnow

logger = logging.getLogger("fixflow-core.notifications")


# =============================================================================
# Task model
# =============================================================================


class RequestSummary(BaseModel):
    """Channel-independent description of a transition, built once per event."""

    request_id: UUID
    request_number: str
    title: str
    category: Optional[str] = None
    location: Optional[str] = None
    priority: Optional[str] = None
    requester_name: Optional[str] = None
    technician_name: Optional[str] = None
    actor_name: Optional[str] = None
    old_status: Optional[RequestStatus] = None
    new_status: RequestStatus
    note: Optional[str] = None


class NotificationTask(BaseModel):
    """Unit of delivery work; carries everything needed to retry it."""

    request_id: UUID
    event_type: RequestAction
    payload: RequestSummary
    recipients: list[UUID] = Field(default_factory=list)
    attempt_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class DispatchResult(BaseModel):
    """Per-channel outcome of delivering one task."""

    request_id: UUID
    event_type: RequestAction
    channels: dict[str, bool] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)

    @property
    def all_delivered(self) -> bool:
        return all(self.channels.values())


def _display_name(user: Optional[User]) -> Optional[str]:
    return user.name if user is not None else None


def _recipients_for(action: RequestAction, request: Request) -> list[UUID]:
    """Users who get an in-app notification for this event."""
    technician_user_id = request.technician.user_id if request.technician else None

    if action == RequestAction.ASSIGN:
        return [technician_user_id] if technician_user_id else []
    if action == RequestAction.CANCEL:
        return [technician_user_id] if technician_user_id else []
    if action in (
        RequestAction.ACCEPT,
        RequestAction.REJECT,
        RequestAction.START,
        RequestAction.HOLD,
        RequestAction.RESUME,
        RequestAction.COMPLETE,
    ):
        return [request.requester_id]
    return []


def build_task(
    request: Request,
    action: RequestAction,
    actor: Optional[User],
    old_status: Optional[RequestStatus],
    note: Optional[str] = None,
    technician_name: Optional[str] = None,
) -> NotificationTask:
    """
    Build the notification task for a committed transition.

    Args:
        request: Request reloaded with its relations after commit
        action: Transition that was applied
        actor: User who performed it
        old_status: Status before the transition
        note: Reason or note given with the action
        technician_name: Name override (reject clears the technician from the request)

    Returns:
        NotificationTask ready for dispatch
    """
    technician_user = request.technician.user if request.technician else None
    summary = RequestSummary(
        request_id=request.id,
        request_number=request.request_number,
        title=request.title,
        category=request.category.label if request.category else None,
        location=request.location.label if request.location else None,
        priority=request.priority.value if request.priority else None,
        requester_name=_display_name(request.requester),
        technician_name=technician_name or _display_name(technician_user),
        actor_name=_display_name(actor),
        old_status=old_status,
        new_status=request.status,
        note=note,
    )
    return NotificationTask(
        request_id=request.id,
        event_type=action,
        payload=summary,
        recipients=_recipients_for(action, request),
    )


# =============================================================================
# Channels
# =============================================================================


class NotificationChannel(ABC):
    """One outbound delivery target."""

    name: str = "channel"

    @abstractmethod
    def send(self, task: NotificationTask) -> bool:
        """Deliver a task. Return False or raise on failure."""

    def close(self) -> None:
        """Release resources held by the channel."""


class WebhookChannel(NotificationChannel):
    """
    Posts the transition event as JSON to a configured URL.

    Chat-specific layouts (embeds, flex messages) belong to whatever sits
    behind the webhook; this channel sends the structured event only.
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        source: str = "FixFlow",
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.source = source
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, task: NotificationTask) -> bool:
        body = {
            "source": self.source,
            "event_type": task.event_type.value,
            "request": task.payload.model_dump(mode="json"),
            "attempt": task.attempt_count,
            "created_at": task.created_at.isoformat(),
        }
        response = self._client.post(self.url, json=body)
        if response.is_error:
            raise DispatchFailure(
                self.name, f"HTTP {response.status_code}: {response.text[:200]}"
            )
        return True

    def close(self) -> None:
        self._client.close()


# Title and message per event for in-app notifications
IN_APP_TEMPLATES: dict[RequestAction, tuple[str, str]] = {
    RequestAction.ASSIGN: ("New job", "You have been assigned {number}"),
    RequestAction.ACCEPT: ("Technician accepted", "Request {number} was accepted by {technician}"),
    RequestAction.REJECT: ("Assignment declined", "Request {number} was declined and awaits reassignment"),
    RequestAction.START: ("Work started", "Work on request {number} has started"),
    RequestAction.HOLD: ("Work on hold", "Request {number} is on hold"),
    RequestAction.RESUME: ("Work resumed", "Work on request {number} has resumed"),
    RequestAction.COMPLETE: ("Work completed", "Request {number} is complete. Please rate the service"),
    RequestAction.CANCEL: ("Request cancelled", "Request {number} was cancelled by the requester"),
}


class InAppChannel(NotificationChannel):
    """Stores one ``Notification`` row per recipient, in its own transaction."""

    name = "in_app"

    def __init__(self, session_factory: sessionmaker, app_url: str = ""):
        self._session_factory = session_factory
        self._app_url = app_url.rstrip("/")

    def send(self, task: NotificationTask) -> bool:
        template = IN_APP_TEMPLATES.get(task.event_type)
        if template is None or not task.recipients:
            return True

        title, message = template
        text = message.format(
            number=task.payload.request_number,
            technician=task.payload.technician_name or "technician",
        )
        with self._session_factory() as session:
            for user_id in task.recipients:
                session.add(Notification(
                    user_id=user_id,
                    request_id=task.request_id,
                    type=f"request_{task.event_type.value}",
                    title=title,
                    message=text,
                    link=f"{self._app_url}/requests/{task.request_id}",
                ))
            session.commit()
        return True


# =============================================================================
# Delivery
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded best-effort retry: ``max_attempts`` sends per channel per event."""

    max_attempts: int = 1
    backoff_seconds: float = 0.5
    backoff_multiplier: float = 2.0

    def delays(self) -> Iterator[float]:
        """Sleep before each retry (``max_attempts - 1`` values)."""
        delay = self.backoff_seconds
        for _ in range(self.max_attempts - 1):
            yield delay
            delay *= self.backoff_multiplier


class ChannelFanout:
    """Delivers a task to every channel, isolating failures per channel."""

    def __init__(
        self,
        channels: list[NotificationChannel],
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.channels = list(channels)
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def deliver(self, task: NotificationTask) -> DispatchResult:
        result = DispatchResult(request_id=task.request_id, event_type=task.event_type)
        for channel in self.channels:
            delivered, error = self._deliver_one(channel, task)
            result.channels[channel.name] = delivered
            if error is not None:
                result.errors[channel.name] = str(error)
        return result

    def _deliver_one(
        self, channel: NotificationChannel, task: NotificationTask
    ) -> tuple[bool, Optional[Exception]]:
        delays = self.retry_policy.delays()
        attempt = 0
        last_error: Optional[Exception] = None

        while True:
            attempt += 1
            attempt_task = task.model_copy(update={"attempt_count": attempt})
            try:
                if channel.send(attempt_task):
                    logger.info(
                        f"Notified {task.event_type.value} for {task.payload.request_number} "
                        f"via {channel.name} (attempt {attempt})"
                    )
                    return True, None
                last_error = DispatchFailure(channel.name, "channel reported failure")
            except Exception as e:  # channel is an external collaborator
                last_error = e if isinstance(e, DispatchFailure) else DispatchFailure(channel.name, repr(e))

            delay = next(delays, None)
            if delay is None:
                break
            logger.debug(f"Retrying {channel.name} for {task.payload.request_number} in {delay}s")
            self._sleep(delay)

        logger.warning(
            f"Notification {task.event_type.value} for {task.payload.request_number} "
            f"failed on {channel.name} after {attempt} attempt(s): {last_error}"
        )
        return False, last_error

    def close(self) -> None:
        for channel in self.channels:
            try:
                channel.close()
            except Exception as e:
                logger.warning(f"Failed to close {channel.name} channel: {e}")


class NotificationDispatcher(ABC):
    """Interface the lifecycle engine depends on."""

    @abstractmethod
    def dispatch(self, task: NotificationTask) -> None:
        """Hand off a task. Must not raise and must not block on delivery."""


class NullDispatcher(NotificationDispatcher):
    """Drops every task (notifications disabled)."""

    def dispatch(self, task: NotificationTask) -> None:
        logger.debug(f"Notifications disabled; dropped {task.event_type.value} for {task.request_id}")


class InlineDispatcher(NotificationDispatcher):
    """Delivers on the calling thread. For scripts and tests."""

    def __init__(self, fanout: ChannelFanout):
        self.fanout = fanout
        self.results: list[DispatchResult] = []

    def dispatch(self, task: NotificationTask) -> None:
        self.results.append(self.fanout.deliver(task))


class BackgroundDispatcher(NotificationDispatcher):
    """Fire-and-forget delivery on a thread pool."""

    def __init__(self, fanout: ChannelFanout, max_workers: int = 4):
        self.fanout = fanout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="fixflow-notify"
        )

    def dispatch(self, task: NotificationTask) -> None:
        try:
            future = self._executor.submit(self.fanout.deliver, task)
        except RuntimeError as e:
            # Executor already shut down
            logger.warning(f"Dropped {task.event_type.value} for {task.request_id}: {e}")
            return
        future.add_done_callback(self._log_crash)

    @staticmethod
    def _log_crash(future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.warning(f"Notification delivery crashed: {error!r}")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self.fanout.close()


def build_dispatcher(settings: Settings, session_factory: sessionmaker) -> NotificationDispatcher:
    """Create the dispatcher and channels described by settings."""
    if not settings.notifications_enabled:
        logger.info("Notifications disabled")
        return NullDispatcher()

    channels: list[NotificationChannel] = []
    if settings.notify_webhook_url:
        channels.append(WebhookChannel(
            settings.notify_webhook_url,
            timeout=settings.notify_timeout_seconds,
            source=settings.site_name,
        ))
    if settings.in_app_notifications_enabled:
        channels.append(InAppChannel(session_factory, settings.app_url))

    logger.info(f"Notification channels: {', '.join(c.name for c in channels) or 'none'}")
    fanout = ChannelFanout(
        channels,
        RetryPolicy(
            max_attempts=settings.notify_max_attempts,
            backoff_seconds=settings.notify_backoff_seconds,
        ),
    )
    return BackgroundDispatcher(fanout, max_workers=settings.notify_workers)
