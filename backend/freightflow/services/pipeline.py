"""
Email processing pipeline orchestration.

Coordinates the path from a stored email to a shipment workflow change:
1. Ingest emails (and attachment metadata) into the database
2. Classify unprocessed emails (deterministic, AI fallback when unsure)
3. Store the classification, overwriting any earlier one
4. Apply the classification to the linked shipment's workflow

A linked email stays in TRANSITION_PENDING until step 4 has answered, so a
failed write is retried on the next run.

Classification may call the AI fallback, so it runs in worker threads.
Emails in the same thread are classified in arrival order because each one
sees the document types its predecessors produced.
"""

import json
import time
import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ..models import Email, EmailAttachment, EmailClassification, Shipment
from ..schemas import ClassificationInput, ClassificationOutput
from .attachments import fetch_attachment_context
from .classification import classify_email
from .classifier_deterministic import GENERAL_CORRESPONDENCE, UNKNOWN_DOCUMENT_TYPE
from .state_store import ShipmentNotFoundError, ShipmentStateStore, TransitionPersistenceError
from .workflow_engine import attempt_transition

logger = logging.getLogger(__name__)

# Linked emails wait here until the transition engine has answered for them
TRANSITION_PENDING = "transition_pending"

# ClassificationOutput fields with no column in email_classifications
UNSTORED_FIELDS = {"is_thread_reply", "clean_subject"}


class EmailNotFoundError(Exception):
    """No email with the requested id."""


# ============================================================================
# INGESTION
# ============================================================================

def ingest_email(db: Session, payload: Dict) -> Email:
    """
    Store one email with its attachment rows.

    Emails are unique by message_id; ingesting the same message again
    returns the stored row unchanged.
    """
    existing = db.query(Email).filter(Email.message_id == payload["message_id"]).first()
    if existing:
        logger.debug(f"Email {payload['message_id']} already ingested")
        return existing

    shipment_id = payload.get("shipment_id")
    reference = payload.get("shipment_reference")
    if shipment_id is None and reference:
        shipment = db.query(Shipment).filter(Shipment.reference == reference).first()
        shipment_id = shipment.id if shipment else None

    headers = payload.get("headers") or {}
    email = Email(
        message_id=payload["message_id"],
        thread_id=payload.get("thread_id"),
        from_address=payload.get("from_address") or "",
        from_name=payload.get("from_name"),
        true_sender=payload.get("true_sender"),
        subject=payload.get("subject"),
        body=payload.get("body"),
        headers=json.dumps(headers) if headers else None,
        received_at=payload.get("received_at") or datetime.utcnow(),
        is_response=bool(payload.get("is_response")),
        shipment_id=shipment_id,
        status="unprocessed",
    )
    for attachment in payload.get("attachments") or []:
        email.attachments.append(EmailAttachment(
            filename=attachment["filename"],
            mime_type=attachment.get("mime_type"),
            extracted_text=attachment.get("extracted_text"),
        ))

    db.add(email)
    db.commit()
    db.refresh(email)
    logger.info(f"Ingested email {email.id}: {email.subject}")
    return email


# ============================================================================
# CLASSIFICATION
# ============================================================================

def _load_headers(email: Email) -> Dict:
    if not email.headers:
        return {}
    try:
        headers = json.loads(email.headers)
    except json.JSONDecodeError:
        logger.warning(f"Email {email.id} has malformed headers JSON, ignoring")
        return {}
    return {str(k): str(v) for k, v in headers.items()} if isinstance(headers, dict) else {}


def thread_document_types(db: Session, email: Email) -> List[str]:
    """Document types already classified on earlier emails of the same thread."""
    if not email.thread_id:
        return []

    rows = (
        db.query(EmailClassification.document_type)
        .join(Email, Email.id == EmailClassification.email_id)
        .filter(Email.thread_id == email.thread_id)
        # Same-timestamp siblings count only if stored first
        .filter(or_(
            Email.received_at < email.received_at,
            and_(Email.received_at == email.received_at, Email.id < email.id),
        ))
        .order_by(Email.received_at, Email.id)
        .all()
    )
    types = []
    for (document_type,) in rows:
        if document_type in (UNKNOWN_DOCUMENT_TYPE, GENERAL_CORRESPONDENCE) or document_type in types:
            continue
        types.append(document_type)
    return types


def build_classification_input(db: Session, email: Email) -> ClassificationInput:
    attachments = fetch_attachment_context(db, email.id)
    return ClassificationInput(
        subject=email.subject,
        sender_email=email.from_address,
        true_sender_email=email.true_sender,
        sender_name=email.from_name,
        body_text=email.body,
        attachment_filenames=attachments.filenames,
        attachment_text=attachments.extracted_text,
        is_response=bool(email.is_response),
        existing_doc_types_in_thread=thread_document_types(db, email),
        headers=_load_headers(email),
    )


def store_classification(db: Session, email: Email, output: ClassificationOutput) -> EmailClassification:
    """
    Write the output for an email, replacing every column of any earlier result.

    An email linked to a shipment is left in TRANSITION_PENDING; its final
    status is set once apply_to_workflow has run.
    """
    values = output.model_dump(exclude=UNSTORED_FIELDS)
    values["matched_markers"] = json.dumps(values["matched_markers"])
    values["classified_at"] = datetime.utcnow()

    record = db.query(EmailClassification).filter(EmailClassification.email_id == email.id).first()
    if record:
        for key, value in values.items():
            setattr(record, key, value)
    else:
        record = EmailClassification(email_id=email.id, **values)
        db.add(record)

    email.status = TRANSITION_PENDING if email.shipment_id else review_status(output)
    db.commit()
    db.refresh(record)
    return record


def review_status(output: ClassificationOutput) -> str:
    return "review" if output.needs_manual_review else "classified"


def stored_classification(email: Email) -> Optional[ClassificationOutput]:
    """Rebuild the ClassificationOutput saved for an email, if any."""
    record = email.classification
    if record is None:
        return None
    values = {
        field: getattr(record, field)
        for field in ClassificationOutput.model_fields
        if field not in UNSTORED_FIELDS
    }
    values["matched_markers"] = json.loads(record.matched_markers) if record.matched_markers else []
    return ClassificationOutput(**values)


def get_email(db: Session, email_id: int) -> Email:
    email = db.query(Email).filter(Email.id == email_id).first()
    if not email:
        raise EmailNotFoundError(f"Email {email_id} not found")
    return email


def classify_stored_email(db: Session, email_id: int, use_ai: bool = True) -> ClassificationOutput:
    """Classify (or reclassify) a stored email and persist the result."""
    email = get_email(db, email_id)
    output = classify_email(build_classification_input(db, email), use_ai=use_ai)
    store_classification(db, email, output)
    logger.info(
        f"Email {email.id} classified: {output.document_type}({output.document_confidence}) "
        f"/ {output.email_type} [{output.sender_category}, {output.direction}]"
    )
    return output


def apply_to_workflow(db: Session, email: Email, output: ClassificationOutput) -> Optional[Dict]:
    """
    Run the transition engine for an email linked to a shipment.

    The email keeps TRANSITION_PENDING if the engine raises, so the next
    pipeline run retries it.
    """
    if not email.shipment_id:
        return None
    result = attempt_transition(
        email.shipment_id,
        output,
        ShipmentStateStore(db),
        subject=email.subject,
        email_id=email.id,
    )
    email.status = review_status(output)
    db.commit()
    return result.model_dump()


def process_email(db: Session, email_id: int, use_ai: bool = True) -> Dict:
    """Classify one email and apply it to its shipment."""
    output = classify_stored_email(db, email_id, use_ai=use_ai)
    email = get_email(db, email_id)
    return {
        "email_id": email_id,
        "classification": output.model_dump(),
        "transition": apply_to_workflow(db, email, output),
    }


# ============================================================================
# BATCH PIPELINE
# ============================================================================

async def _classify_thread(db: Session, emails: List[Email], use_ai: bool, report: Dict) -> List:
    classified = []
    for email in emails:
        try:
            classification_input = build_classification_input(db, email)
            output = await asyncio.to_thread(classify_email, classification_input, use_ai=use_ai)
            store_classification(db, email, output)
        except Exception as e:
            logger.error(f"Classification failed for email {email.id}: {str(e)}")
            db.rollback()
            report["errors"].append({"email_id": email.id, "stage": "classify", "error": str(e)})
            continue

        breakdown = report["phase_1_classify"]["breakdown"]
        breakdown[output.document_type] = breakdown.get(output.document_type, 0) + 1
        report["phase_1_classify"]["classified"] += 1
        if output.needs_manual_review:
            report["phase_1_classify"]["manual_review"] += 1
        if output.used_ai_fallback:
            report["phase_1_classify"]["ai_fallback"] += 1
        classified.append((email, output))
    return classified


async def run_pipeline(db: Session, limit: int = 100, use_ai: bool = True) -> Dict:
    """
    Classify every unprocessed email and apply the results to shipments.

    Emails whose transition failed on an earlier run (TRANSITION_PENDING)
    are applied again from their stored classification.

    Args:
        db: Database session
        limit: Maximum number of emails to process in this run
        use_ai: Allow the AI fallback for low-confidence emails

    Returns:
        Report with per-phase counts and timing
    """
    pipeline_start_time = time.time()

    report = {
        "phase_1_classify": {"classified": 0, "manual_review": 0, "ai_fallback": 0, "breakdown": {}, "time_seconds": 0},
        "phase_2_transitions": {"attempted": 0, "transitioned": 0, "no_op": {}, "time_seconds": 0},
        "errors": [],
        "summary": {"total_emails": 0, "retried_transitions": 0, "total_pipeline_time_seconds": 0},
    }

    # Select before phase 1, which parks newly classified linked emails in the same status
    pending = (
        db.query(Email)
        .filter(Email.status == TRANSITION_PENDING)
        .order_by(Email.received_at, Email.id)
        .limit(limit)
        .all()
    )
    retries = []
    for email in pending:
        output = stored_classification(email)
        if output is not None:
            retries.append((email, output))
    report["summary"]["retried_transitions"] = len(retries)

    # ========================================================================
    # PHASE 1: CLASSIFICATION
    # ========================================================================
    phase_start = time.time()

    emails = (
        db.query(Email)
        .filter(Email.status == "unprocessed")
        .order_by(Email.received_at, Email.id)
        .limit(limit)
        .all()
    )
    report["summary"]["total_emails"] = len(emails)

    threads: "OrderedDict[str, List[Email]]" = OrderedDict()
    for email in emails:
        threads.setdefault(email.thread_id or f"email:{email.id}", []).append(email)

    results = await asyncio.gather(*[
        _classify_thread(db, thread_emails, use_ai, report) for thread_emails in threads.values()
    ])
    classified = sorted(
        retries + [item for thread_results in results for item in thread_results],
        key=lambda item: (item[0].received_at, item[0].id),
    )

    report["phase_1_classify"]["time_seconds"] = round(time.time() - phase_start, 2)

    # ========================================================================
    # PHASE 2: WORKFLOW TRANSITIONS
    # ========================================================================
    phase_start = time.time()

    for email, output in classified:
        if not email.shipment_id:
            continue
        report["phase_2_transitions"]["attempted"] += 1
        try:
            transition = apply_to_workflow(db, email, output)
        except (ShipmentNotFoundError, TransitionPersistenceError) as e:
            logger.error(f"Transition failed for email {email.id}: {str(e)}")
            report["errors"].append({"email_id": email.id, "stage": "transition", "error": str(e)})
            continue

        if transition["success"]:
            report["phase_2_transitions"]["transitioned"] += 1
        else:
            no_op = report["phase_2_transitions"]["no_op"]
            no_op[transition["reason"]] = no_op.get(transition["reason"], 0) + 1

    report["phase_2_transitions"]["time_seconds"] = round(time.time() - phase_start, 2)
    report["summary"]["total_pipeline_time_seconds"] = round(time.time() - pipeline_start_time, 2)

    logger.info(
        f"Pipeline processed {len(emails)} emails: "
        f"{report['phase_1_classify']['classified']} classified, "
        f"{report['phase_2_transitions']['transitioned']} transitions"
    )
    return report
