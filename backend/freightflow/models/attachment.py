from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship
from datetime import datetime
from ..database import Base


class EmailAttachment(Base):
    """
    Attachment metadata plus any text already extracted from it.

    Extraction itself happens upstream; this table is only read here.
    """
    __tablename__ = "email_attachments"

    id = Column(Integer, primary_key=True, index=True)
    email_id = Column(Integer, ForeignKey("emails.id"), nullable=False, index=True)
    filename = Column(String, nullable=False)
    mime_type = Column(String, nullable=True)
    extracted_text = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    email = relationship("Email", back_populates="attachments")

    def __repr__(self):
        return f"<EmailAttachment(email_id={self.email_id}, filename='{self.filename}')>"
