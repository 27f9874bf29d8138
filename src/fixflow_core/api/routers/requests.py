"""Maintenance requests API router.

Lifecycle: pending -> assigned -> accepted -> in_progress <-> on_hold -> completed
Side branches: assigned -> rejected -> assigned, pending/assigned -> cancelled

Every write goes through ``RequestLifecycleEngine``; lifecycle errors are
turned into the error envelope by the handlers in ``api.main``.
"""
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ... import crud
from ...database import get_db
from ...engine import RequestLifecycleEngine
from ...exceptions import RequestNotFoundError
from ...models import Request, RequestStatus
from ...schemas import (
    AllowedActionsResponse,
    AssignPayload,
    Envelope,
    NotePayload,
    ReasonPayload,
    RequestCreate,
    RequestListResponse,
    RequestLogResponse,
    RequestResponse,
    RequestUpdate,
    ok,
)
from ...state_machine import Actor
from ..dependencies import get_actor, get_engine

logger = logging.getLogger("fixflow-core.requests")

router = APIRouter(prefix="/requests", tags=["requests"])


def _respond(request: Request) -> dict:
    return ok(RequestResponse.model_validate(request))


@router.post("/", response_model=Envelope[RequestResponse], status_code=status.HTTP_201_CREATED)
def create_request(
    data: RequestCreate,
    actor: Actor = Depends(get_actor),
    engine: RequestLifecycleEngine = Depends(get_engine),
):
    """File a new maintenance request."""
    request = engine.create(
        actor,
        title=data.title,
        category_id=data.category_id,
        location_id=data.location_id,
        description=data.description,
        priority=data.priority,
        preferred_date=data.preferred_date,
        preferred_time=data.preferred_time,
    )
    return _respond(request)


@router.get("/", response_model=Envelope[RequestListResponse])
def list_requests(
    status_filter: Optional[RequestStatus] = Query(None, alias="status"),
    mine: bool = Query(False, description="Only requests filed by the acting user"),
    technician_id: Optional[UUID] = Query(None, description="Only requests assigned to this technician"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """List active (not cancelled) requests."""
    requests, total = crud.get_active_requests(
        db,
        skip=skip,
        limit=limit,
        status_filter=status_filter,
        requester_id=actor.user_id if mine else None,
        technician_id=technician_id,
    )
    return ok(RequestListResponse(
        items=[RequestResponse.model_validate(r) for r in requests],
        total=total,
        skip=skip,
        limit=limit,
    ))


@router.get("/{request_id}", response_model=Envelope[RequestResponse])
def get_request(
    request_id: UUID,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    request = crud.get_active_request(db, request_id)
    if not request:
        raise RequestNotFoundError(request_id)
    return _respond(request)


@router.patch("/{request_id}", response_model=Envelope[RequestResponse])
def update_request(
    request_id: UUID,
    data: RequestUpdate,
    actor: Actor = Depends(get_actor),
    engine: RequestLifecycleEngine = Depends(get_engine),
):
    """Edit details of a pending or assigned request (owner only)."""
    changes = data.model_dump(exclude_unset=True)
    changes.update(data.model_extra or {})
    return _respond(engine.update(request_id, actor, changes))


@router.post("/{request_id}/assign", response_model=Envelope[RequestResponse])
def assign_request(
    request_id: UUID,
    data: AssignPayload,
    actor: Actor = Depends(get_actor),
    engine: RequestLifecycleEngine = Depends(get_engine),
):
    return _respond(engine.assign(request_id, actor, data.technician_id, note=data.note))


@router.post("/{request_id}/accept", response_model=Envelope[RequestResponse])
def accept_request(
    request_id: UUID,
    actor: Actor = Depends(get_actor),
    engine: RequestLifecycleEngine = Depends(get_engine),
):
    return _respond(engine.accept(request_id, actor))


@router.post("/{request_id}/reject", response_model=Envelope[RequestResponse])
def reject_request(
    request_id: UUID,
    data: ReasonPayload,
    actor: Actor = Depends(get_actor),
    engine: RequestLifecycleEngine = Depends(get_engine),
):
    return _respond(engine.reject(request_id, actor, data.reason))


@router.post("/{request_id}/start", response_model=Envelope[RequestResponse])
def start_request(
    request_id: UUID,
    actor: Actor = Depends(get_actor),
    engine: RequestLifecycleEngine = Depends(get_engine),
):
    return _respond(engine.start(request_id, actor))


@router.post("/{request_id}/hold", response_model=Envelope[RequestResponse])
def hold_request(
    request_id: UUID,
    data: ReasonPayload,
    actor: Actor = Depends(get_actor),
    engine: RequestLifecycleEngine = Depends(get_engine),
):
    return _respond(engine.hold(request_id, actor, data.reason))


@router.post("/{request_id}/resume", response_model=Envelope[RequestResponse])
def resume_request(
    request_id: UUID,
    actor: Actor = Depends(get_actor),
    engine: RequestLifecycleEngine = Depends(get_engine),
):
    return _respond(engine.resume(request_id, actor))


@router.post("/{request_id}/complete", response_model=Envelope[RequestResponse])
def complete_request(
    request_id: UUID,
    data: Optional[NotePayload] = None,
    actor: Actor = Depends(get_actor),
    engine: RequestLifecycleEngine = Depends(get_engine),
):
    note = data.note if data else None
    return _respond(engine.complete(request_id, actor, note=note))


@router.post("/{request_id}/cancel", response_model=Envelope[RequestResponse])
def cancel_request(
    request_id: UUID,
    data: Optional[ReasonPayload] = None,
    actor: Actor = Depends(get_actor),
    engine: RequestLifecycleEngine = Depends(get_engine),
):
    reason = data.reason if data else None
    return _respond(engine.cancel(request_id, actor, reason=reason))


@router.get("/{request_id}/history", response_model=Envelope[list[RequestLogResponse]])
def get_request_history(
    request_id: UUID,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Audit log of a request, oldest first (cancelled requests included)."""
    entries = crud.get_request_history(db, request_id)
    if not entries:
        raise RequestNotFoundError(request_id)
    return ok([RequestLogResponse.model_validate(e) for e in entries])


@router.get("/{request_id}/actions", response_model=Envelope[AllowedActionsResponse])
def get_allowed_actions(
    request_id: UUID,
    actor: Actor = Depends(get_actor),
    engine: RequestLifecycleEngine = Depends(get_engine),
    db: Session = Depends(get_db),
):
    """Actions the acting user may perform on the request now."""
    actions = engine.allowed_actions(request_id, actor)
    request = crud.get_active_request(db, request_id)
    if not request:
        raise RequestNotFoundError(request_id)
    return ok(AllowedActionsResponse(request_id=request.id, status=request.status, actions=actions))
