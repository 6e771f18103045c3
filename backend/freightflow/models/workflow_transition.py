from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship
from datetime import datetime
from ..database import Base


class WorkflowTransition(Base):
    """
    Append-only audit log of workflow state changes.

    Rows are never updated or deleted. Replaying the main-track rows of a
    shipment in id order ends at its current workflow_state.
    """
    __tablename__ = "workflow_transitions"

    id = Column(Integer, primary_key=True, index=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=False, index=True)
    from_state = Column(String, nullable=True)
    to_state = Column(String, nullable=False)
    track = Column(String, default="main", nullable=False)  # main, origin, destination
    rule_order = Column(Integer, nullable=False)

    triggered_by_document_type = Column(String, nullable=True)
    triggered_by_email_type = Column(String, nullable=True)
    triggered_by_email_id = Column(Integer, ForeignKey("emails.id"), nullable=True)
    sender_category = Column(String, nullable=True)
    trigger_type = Column(String, nullable=False)  # document, email, both
    direction = Column(String, nullable=True)
    transition_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    shipment = relationship("Shipment", back_populates="transitions")

    def __repr__(self):
        return f"<WorkflowTransition(shipment_id={self.shipment_id}, {self.from_state} -> {self.to_state})>"
