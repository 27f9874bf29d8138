"""Pydantic schemas for request/response validation.

Action payloads keep their fields optional: required-field checks run in the
lifecycle engine, after the not-found, state and actor checks.
"""
from datetime import date, datetime
from typing import Any, Generic, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .models import Priority, RequestAction, RequestStatus, UserRole


# Action payloads

class RequestCreate(BaseModel):
    """Body of POST /requests."""

    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    category_id: Optional[UUID] = None
    location_id: Optional[UUID] = None
    priority: Optional[Priority] = None
    preferred_date: Optional[date] = None
    preferred_time: Optional[str] = Field(None, max_length=50)


class RequestUpdate(BaseModel):
    """Body of PATCH /requests/{id}. Only fields present in the body are changed.

    Unknown fields are kept and passed on, so the engine rejects them after
    its not-found, state and actor checks.
    """

    model_config = ConfigDict(extra="allow")

    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    category_id: Optional[UUID] = None
    location_id: Optional[UUID] = None
    priority: Optional[Priority] = None
    preferred_date: Optional[date] = None
    preferred_time: Optional[str] = Field(None, max_length=50)


class AssignPayload(BaseModel):
    technician_id: Optional[UUID] = None
    note: Optional[str] = None


class ReasonPayload(BaseModel):
    """Reject, hold and cancel."""

    reason: Optional[str] = None


class NotePayload(BaseModel):
    """Complete."""

    note: Optional[str] = None


# Nested read models

class UserSummary(BaseModel):
    id: UUID
    name: str
    email: str
    role: UserRole

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class TechnicianResponse(BaseModel):
    id: UUID
    user_id: UUID
    specialty: Optional[str] = None
    is_available: bool
    user: Optional[UserSummary] = None

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class CategoryResponse(BaseModel):
    id: UUID
    name: str
    name_th: Optional[str] = None
    label: str

    model_config = ConfigDict(from_attributes=True)


class LocationResponse(BaseModel):
    id: UUID
    building: str
    floor: Optional[str] = None
    room: Optional[str] = None
    label: str

    model_config = ConfigDict(from_attributes=True)


# Request Schemas

class RequestResponse(BaseModel):
    """Request with its relations, as returned by every action."""

    id: UUID
    request_number: str
    status: RequestStatus
    title: str
    description: Optional[str] = None
    priority: Priority
    preferred_date: Optional[date] = None
    preferred_time: Optional[str] = None
    requester_id: UUID
    technician_id: Optional[UUID] = None
    category_id: UUID
    location_id: UUID
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    requester: Optional[UserSummary] = None
    technician: Optional[TechnicianResponse] = None
    category: Optional[CategoryResponse] = None
    location: Optional[LocationResponse] = None

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class RequestListResponse(BaseModel):
    """Paginated list of requests."""

    items: list[RequestResponse]
    total: int
    skip: int
    limit: int


class RequestLogResponse(BaseModel):
    """One audit entry."""

    id: int
    request_id: UUID
    action: RequestAction
    old_status: Optional[RequestStatus] = None
    new_status: RequestStatus
    note: Optional[str] = None
    actor_id: Optional[UUID] = None
    actor: Optional[UserSummary] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class AllowedActionsResponse(BaseModel):
    request_id: UUID
    status: RequestStatus
    actions: list[RequestAction]

    model_config = ConfigDict(use_enum_values=True)


class NotificationResponse(BaseModel):
    id: UUID
    request_id: Optional[UUID] = None
    type: str
    title: str
    message: str
    link: Optional[str] = None
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Envelope

DataT = TypeVar("DataT")


class ErrorBody(BaseModel):
    code: str
    message: str


class Envelope(BaseModel, Generic[DataT]):
    """``{"success": true, "data": ...}`` or ``{"success": false, "error": {...}}``."""

    success: bool = True
    data: Optional[DataT] = None
    error: Optional[ErrorBody] = None


def ok(data: Any) -> dict:
    """Wrap a response payload in the success envelope."""
    return {"success": True, "data": data}


def failure(code: str, message: str) -> dict:
    return {"success": False, "error": {"code": code, "message": message}}
