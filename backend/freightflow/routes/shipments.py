from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import Optional
from pydantic import BaseModel

from ..database import get_db
from ..models import Shipment, WorkflowTransition
from ..schemas import ClassificationOutput
from ..services.state_store import ShipmentNotFoundError, ShipmentStateStore, TransitionPersistenceError
from ..services.workflow_engine import (
    attempt_transition,
    get_workflow_status,
    preview_transition,
    replay_workflow_state,
)

router = APIRouter(prefix="/api/shipments", tags=["shipments"])


class ShipmentCreateRequest(BaseModel):
    reference: str
    carrier: Optional[str] = None


class TransitionRequest(BaseModel):
    classification: ClassificationOutput
    subject: Optional[str] = None
    email_id: Optional[int] = None
    force: bool = False


def _transition_to_dict(t: WorkflowTransition) -> dict:
    return {
        "id": t.id,
        "from_state": t.from_state,
        "to_state": t.to_state,
        "track": t.track,
        "rule_order": t.rule_order,
        "trigger_type": t.trigger_type,
        "triggered_by_document_type": t.triggered_by_document_type,
        "triggered_by_email_type": t.triggered_by_email_type,
        "triggered_by_email_id": t.triggered_by_email_id,
        "sender_category": t.sender_category,
        "direction": t.direction,
        "transition_notes": t.transition_notes,
        "created_at": t.created_at.isoformat() if t.created_at else None,
    }


@router.post("/")
async def create_shipment(payload: ShipmentCreateRequest, db: Session = Depends(get_db)):
    existing = db.query(Shipment).filter(Shipment.reference == payload.reference).first()
    if existing:
        raise HTTPException(status_code=409, detail=f"Shipment {payload.reference} already exists")

    shipment = Shipment(reference=payload.reference, carrier=payload.carrier)
    db.add(shipment)
    db.commit()
    db.refresh(shipment)
    return {"id": shipment.id, "reference": shipment.reference, "carrier": shipment.carrier, "status": shipment.status}


@router.get("/{shipment_id}/status")
async def status(shipment_id: int, db: Session = Depends(get_db)):
    """
    Current workflow position of a shipment.

    Returns:
        dict: Current state and phase, side-track states, progress and
        the states that could come next
    """
    try:
        return get_workflow_status(shipment_id, ShipmentStateStore(db))
    except ShipmentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{shipment_id}/history")
async def history(
    shipment_id: int,
    track: Optional[str] = Query(default=None, description="Filter by track (main, origin, destination)"),
    db: Session = Depends(get_db)
):
    store = ShipmentStateStore(db)
    try:
        records = store.history(shipment_id, track=track)
        replayed = replay_workflow_state(store.history(shipment_id))
    except ShipmentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "shipment_id": shipment_id,
        "transitions": [_transition_to_dict(t) for t in records],
        "replayed_state": replayed,
    }


@router.post("/{shipment_id}/transition")
def transition(shipment_id: int, payload: TransitionRequest, db: Session = Depends(get_db)):
    """
    Apply a classification to the shipment's workflow.

    A classification that does not move the shipment returns success=false
    with a reason code; that is not an error.
    """
    try:
        result = attempt_transition(
            shipment_id,
            payload.classification,
            ShipmentStateStore(db),
            subject=payload.subject,
            email_id=payload.email_id,
            force=payload.force,
        )
    except ShipmentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TransitionPersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Transition not saved, retry: {str(e)}")
    return result.model_dump()


@router.post("/{shipment_id}/preview")
async def preview(shipment_id: int, payload: TransitionRequest, db: Session = Depends(get_db)):
    """Dry run of /transition. Nothing is written."""
    try:
        result = preview_transition(
            shipment_id,
            payload.classification,
            ShipmentStateStore(db),
            subject=payload.subject,
            force=payload.force,
        )
    except ShipmentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return result.model_dump()
