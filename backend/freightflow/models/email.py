from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text
from sqlalchemy.orm import relationship
from datetime import datetime
from ..database import Base


class Email(Base):
    __tablename__ = "emails"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(String, unique=True, index=True, nullable=False)
    thread_id = Column(String, index=True, nullable=True)
    from_address = Column(String, nullable=False)
    from_name = Column(String)
    true_sender = Column(String, nullable=True)  # Real sender when relayed through a group alias
    subject = Column(String)
    body = Column(Text)
    headers = Column(Text)  # JSON string of selected headers
    received_at = Column(DateTime, default=datetime.utcnow)
    is_response = Column(Boolean, default=False)

    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=True, index=True)
    shipment = relationship("Shipment", back_populates="emails")

    attachments = relationship("EmailAttachment", back_populates="email", cascade="all, delete-orphan")
    classification = relationship(
        "EmailClassification", back_populates="email", uselist=False, cascade="all, delete-orphan"
    )

    status = Column(String, default="unprocessed")  # unprocessed, transition_pending, classified, review

    def __repr__(self):
        return f"<Email(id={self.id}, subject='{self.subject}', from='{self.from_address}')>"
