from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime
from ..database import Base


class Shipment(Base):
    __tablename__ = "shipments"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String, unique=True, index=True, nullable=False)  # Booking number or internal ref
    carrier = Column(String, nullable=True)

    # Workflow snapshot, written only by the transition engine
    workflow_state = Column(String, nullable=True)
    workflow_phase = Column(String, nullable=True)
    origin_workflow_state = Column(String, nullable=True)  # Parallel track: stuffing, gate-in, handover
    destination_workflow_state = Column(String, nullable=True)
    workflow_updated_at = Column(DateTime, nullable=True)
    state_version = Column(Integer, default=0, nullable=False)  # Bumped on every transition (compare-and-set)

    status = Column(String, default="active")  # active, cancelled, delivered

    created_at = Column(DateTime, default=datetime.utcnow)

    emails = relationship("Email", back_populates="shipment")
    transitions = relationship(
        "WorkflowTransition",
        back_populates="shipment",
        order_by="WorkflowTransition.id",
    )

    def __repr__(self):
        return f"<Shipment(id={self.id}, reference='{self.reference}', state='{self.workflow_state}')>"
