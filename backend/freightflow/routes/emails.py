from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel
import json

from ..database import get_db
from ..models import Email
from ..services.pipeline import (
    EmailNotFoundError,
    classify_stored_email,
    get_email,
    ingest_email,
    process_email,
    run_pipeline,
)
from ..services.state_store import ShipmentNotFoundError, TransitionPersistenceError

router = APIRouter(prefix="/api/emails", tags=["emails"])


class AttachmentIn(BaseModel):
    filename: str
    mime_type: Optional[str] = None
    extracted_text: Optional[str] = None


class EmailIngestRequest(BaseModel):
    message_id: str
    thread_id: Optional[str] = None
    from_address: str
    from_name: Optional[str] = None
    true_sender: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    headers: dict = {}
    received_at: Optional[datetime] = None
    is_response: bool = False
    shipment_id: Optional[int] = None
    shipment_reference: Optional[str] = None
    attachments: List[AttachmentIn] = []


def _email_to_dict(email: Email) -> dict:
    classification = None
    if email.classification:
        c = email.classification
        classification = {
            "document_type": c.document_type,
            "document_sub_type": c.document_sub_type,
            "document_confidence": c.document_confidence,
            "document_source": c.document_source,
            "matched_markers": json.loads(c.matched_markers) if c.matched_markers else [],
            "email_type": c.email_type,
            "email_category": c.email_category,
            "email_type_confidence": c.email_type_confidence,
            "sender_category": c.sender_category,
            "direction": c.direction,
            "suggested_workflow_state": c.suggested_workflow_state,
            "needs_manual_review": c.needs_manual_review,
            "no_document_evidence": c.no_document_evidence,
            "used_ai_fallback": c.used_ai_fallback,
            "fallback_reason": c.fallback_reason,
            "classified_at": c.classified_at.isoformat() if c.classified_at else None,
        }

    return {
        "id": email.id,
        "message_id": email.message_id,
        "thread_id": email.thread_id,
        "from_address": email.from_address,
        "subject": email.subject,
        "received_at": email.received_at.isoformat() if email.received_at else None,
        "is_response": email.is_response,
        "shipment_id": email.shipment_id,
        "status": email.status,
        "attachments": [a.filename for a in email.attachments],
        "classification": classification,
    }


@router.post("/")
async def ingest(payload: EmailIngestRequest, db: Session = Depends(get_db)):
    """
    Store an email and its attachment metadata.

    Returns:
        dict: Stored email (existing row if message_id was already ingested)
    """
    try:
        email = ingest_email(db, payload.model_dump())
    except IntegrityError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=f"Could not store email: {str(e.orig)}")
    return _email_to_dict(email)


@router.get("/")
async def list_emails(
    limit: int = Query(default=20, ge=1, le=100, description="Number of emails to return"),
    offset: int = Query(default=0, ge=0, description="Number of emails to skip"),
    status: Optional[str] = Query(default=None, description="Filter by status (unprocessed, transition_pending, classified, review)"),
    db: Session = Depends(get_db)
):
    query = db.query(Email)
    if status:
        query = query.filter(Email.status == status)

    total = query.count()
    emails = query.order_by(Email.received_at.desc(), Email.id.desc()).offset(offset).limit(limit).all()
    return {"emails": [_email_to_dict(e) for e in emails], "total": total, "limit": limit, "offset": offset}


@router.get("/{email_id}")
async def get_email_detail(email_id: int, db: Session = Depends(get_db)):
    try:
        return _email_to_dict(get_email(db, email_id))
    except EmailNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{email_id}/classify")
def classify(
    email_id: int,
    use_ai: bool = Query(default=True, description="Allow the AI fallback"),
    db: Session = Depends(get_db)
):
    """
    Classify a stored email. An email that already has a classification
    is returned as-is; use /reclassify to run the classifiers again.
    """
    try:
        email = get_email(db, email_id)
        if email.classification:
            return {"email": _email_to_dict(email), "reclassified": False}
        classify_stored_email(db, email_id, use_ai=use_ai)
    except EmailNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    db.refresh(email)
    return {"email": _email_to_dict(email), "reclassified": True}


@router.post("/{email_id}/reclassify")
def reclassify(
    email_id: int,
    use_ai: bool = Query(default=True, description="Allow the AI fallback"),
    db: Session = Depends(get_db)
):
    """Run the classifiers again and overwrite the stored result."""
    try:
        output = classify_stored_email(db, email_id, use_ai=use_ai)
    except EmailNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return output.model_dump()


@router.post("/{email_id}/process")
def process(
    email_id: int,
    use_ai: bool = Query(default=True, description="Allow the AI fallback"),
    db: Session = Depends(get_db)
):
    """Classify an email and apply it to its shipment's workflow."""
    try:
        return process_email(db, email_id, use_ai=use_ai)
    except (EmailNotFoundError, ShipmentNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TransitionPersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Transition not saved, retry: {str(e)}")


@router.post("/pipeline/run")
async def run(
    limit: int = Query(default=100, ge=1, le=1000, description="Maximum emails to process"),
    use_ai: bool = Query(default=True, description="Allow the AI fallback"),
    db: Session = Depends(get_db)
):
    """
    Classify all unprocessed emails and apply them to shipments.

    Returns:
        dict: Per-phase counts and timing
    """
    return await run_pipeline(db, limit=limit, use_ai=use_ai)
