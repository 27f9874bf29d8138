"""Technicians API router (assignment picker)."""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ... import crud
from ...database import get_db
from ...schemas import Envelope, TechnicianResponse, ok
from ...state_machine import Actor
from ..dependencies import get_actor

logger = logging.getLogger("fixflow-core.technicians")

router = APIRouter(prefix="/technicians", tags=["technicians"])


@router.get("/", response_model=Envelope[list[TechnicianResponse]])
def list_available_technicians(
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Technicians that can receive an assignment right now."""
    technicians = crud.get_available_technicians(db)
    return ok([TechnicianResponse.model_validate(t) for t in technicians])
