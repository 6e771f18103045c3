"""
Shipment workflow state persistence.

The transition engine reads a snapshot of the shipment's workflow fields plus
its transition history, decides, then writes the new snapshot and one audit
row in a single database transaction. The write is a compare-and-set on
state_version: if another writer got there first, StaleStateError is raised
and nothing is changed.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Set
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models import Shipment, WorkflowTransition

logger = logging.getLogger(__name__)

TRACK_FIELDS = {
    "main": "workflow_state",
    "origin": "origin_workflow_state",
    "destination": "destination_workflow_state",
}


class ShipmentNotFoundError(Exception):
    """No shipment with the requested id."""


class StaleStateError(Exception):
    """The shipment changed between read and write."""


class TransitionPersistenceError(Exception):
    """Writing the transition failed; shipment state is unchanged."""


class ShipmentSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    shipment_id: int
    reference: str
    workflow_state: Optional[str] = None
    workflow_phase: Optional[str] = None
    origin_workflow_state: Optional[str] = None
    destination_workflow_state: Optional[str] = None
    state_version: int = 0
    status: str = "active"

    def state_for_track(self, track: str) -> Optional[str]:
        return getattr(self, TRACK_FIELDS[track])


class ShipmentStateStore:
    def __init__(self, db: Session):
        self.db = db

    def _get_shipment(self, shipment_id: int) -> Shipment:
        shipment = self.db.query(Shipment).filter(Shipment.id == shipment_id).first()
        if not shipment:
            raise ShipmentNotFoundError(f"Shipment {shipment_id} not found")
        return shipment

    def load_snapshot(self, shipment_id: int) -> ShipmentSnapshot:
        shipment = self._get_shipment(shipment_id)
        # Pick up writes committed by other sessions since this one last looked
        self.db.refresh(shipment)
        return ShipmentSnapshot(
            shipment_id=shipment.id,
            reference=shipment.reference,
            workflow_state=shipment.workflow_state,
            workflow_phase=shipment.workflow_phase,
            origin_workflow_state=shipment.origin_workflow_state,
            destination_workflow_state=shipment.destination_workflow_state,
            state_version=shipment.state_version or 0,
            status=shipment.status or "active",
        )

    def history(self, shipment_id: int, track: Optional[str] = None) -> List[WorkflowTransition]:
        """Transition records in the order they were written."""
        self._get_shipment(shipment_id)
        query = self.db.query(WorkflowTransition).filter(WorkflowTransition.shipment_id == shipment_id)
        if track:
            query = query.filter(WorkflowTransition.track == track)
        return query.order_by(WorkflowTransition.id).all()

    def reached_states(self, shipment_id: int) -> Set[str]:
        rows = (
            self.db.query(WorkflowTransition.to_state)
            .filter(WorkflowTransition.shipment_id == shipment_id)
            .all()
        )
        return {row[0] for row in rows}

    def commit_transition(self, snapshot: ShipmentSnapshot, record: Dict, updates: Dict) -> WorkflowTransition:
        """
        Apply `updates` to the shipment and append `record` atomically.

        Args:
            snapshot: State the decision was made against
            record: WorkflowTransition column values (shipment_id is filled in)
            updates: Shipment column values to write

        Raises:
            StaleStateError: state_version moved since the snapshot was taken
            TransitionPersistenceError: the database rejected the write
        """
        values = dict(updates)
        values["state_version"] = snapshot.state_version + 1
        values["workflow_updated_at"] = datetime.utcnow()

        try:
            matched = (
                self.db.query(Shipment)
                .filter(
                    Shipment.id == snapshot.shipment_id,
                    Shipment.state_version == snapshot.state_version,
                )
                .update(values, synchronize_session=False)
            )
            if matched == 0:
                self.db.rollback()
                raise StaleStateError(
                    f"Shipment {snapshot.shipment_id} moved past version {snapshot.state_version}"
                )

            transition = WorkflowTransition(shipment_id=snapshot.shipment_id, **record)
            self.db.add(transition)
            self.db.commit()
            self.db.refresh(transition)
            return transition

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to persist transition for shipment {snapshot.shipment_id}: {str(e)}")
            raise TransitionPersistenceError(str(e)) from e
