"""
Read-only access to attachment metadata and extracted text.
"""

import logging
from typing import List, NamedTuple, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models import EmailAttachment

logger = logging.getLogger(__name__)

PDF_MIME_TYPES = ("application/pdf", "application/x-pdf")


class AttachmentContext(NamedTuple):
    filenames: List[str]
    extracted_text: Optional[str]


def is_pdf(attachment: EmailAttachment) -> bool:
    if attachment.mime_type and attachment.mime_type.lower() in PDF_MIME_TYPES:
        return True
    return (attachment.filename or "").lower().endswith(".pdf")


def fetch_attachment_context(db: Session, email_id: int) -> AttachmentContext:
    """
    Filenames and concatenated PDF text for one email.

    A store failure is logged and treated as "no attachments" so
    classification can carry on with subject and body evidence only.
    """
    try:
        attachments = (
            db.query(EmailAttachment)
            .filter(EmailAttachment.email_id == email_id)
            .order_by(EmailAttachment.id)
            .all()
        )
    except SQLAlchemyError as e:
        logger.warning(f"Attachment lookup failed for email {email_id}: {str(e)}")
        db.rollback()
        return AttachmentContext(filenames=[], extracted_text=None)

    filenames = [a.filename for a in attachments if a.filename]
    texts = [a.extracted_text.strip() for a in attachments if is_pdf(a) and a.extracted_text and a.extracted_text.strip()]

    return AttachmentContext(filenames=filenames, extracted_text="\n\n".join(texts) if texts else None)
