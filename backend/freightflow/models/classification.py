from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text
from sqlalchemy.orm import relationship
from datetime import datetime
from ..database import Base


class EmailClassification(Base):
    """
    Latest classification output for an email.

    One row per email. Reclassification overwrites every column.
    """
    __tablename__ = "email_classifications"

    id = Column(Integer, primary_key=True, index=True)
    email_id = Column(Integer, ForeignKey("emails.id"), unique=True, nullable=False, index=True)

    document_type = Column(String, nullable=False)
    document_sub_type = Column(String, nullable=True)
    document_confidence = Column(Integer, nullable=False)  # 0 to 100
    document_source = Column(String, nullable=False)  # subject, attachment_filename, body, attachment_content, ai_fallback, none
    matched_markers = Column(Text)  # JSON list

    email_type = Column(String, nullable=False)
    email_category = Column(String, nullable=False)
    email_type_confidence = Column(Integer, nullable=False)

    sender_category = Column(String, nullable=False)
    direction = Column(String, nullable=False)  # inbound, outbound
    true_sender = Column(String, nullable=True)
    sentiment = Column(String, default="neutral")
    sentiment_score = Column(Integer, default=0)
    is_urgent = Column(Boolean, default=False)

    suggested_workflow_state = Column(String, nullable=True)
    needs_manual_review = Column(Boolean, default=False)
    no_document_evidence = Column(Boolean, default=False)
    used_ai_fallback = Column(Boolean, default=False)
    fallback_reason = Column(String, nullable=True)
    ai_reasoning = Column(Text, nullable=True)

    classified_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    email = relationship("Email", back_populates="classification")

    def __repr__(self):
        return f"<EmailClassification(email_id={self.email_id}, document_type='{self.document_type}', email_type='{self.email_type}')>"
