"""
Workflow transition engine.

Given a shipment and a classification result, decides whether the email moves
the shipment forward and records the move. Candidate rules are matched on
direction plus document type or email intent, filtered by sender authority,
forward-only order and prerequisites, then the highest-order survivor wins.
Delivered and cancelled shipments only move on a forced transition.

Most emails legitimately do not move a shipment; those calls return a
TransitionResult with success=False and a reason code instead of raising.
"""

import os
import logging
import threading
from typing import Dict, Iterable, List, Optional, Set
from dotenv import load_dotenv
from pydantic import BaseModel

from ..schemas import ClassificationOutput
from .state_store import ShipmentSnapshot, ShipmentStateStore, StaleStateError, TransitionPersistenceError
from .workflow_rules import (
    TERMINAL_STATUSES,
    WORKFLOW_TRANSITION_RULES,
    WorkflowTransitionRule,
    get_rule,
    get_state_order,
    is_sender_authorized,
    terminal_status_for,
    track_for_rule,
)

load_dotenv()
logger = logging.getLogger(__name__)

MAX_TRANSITION_ATTEMPTS = int(os.getenv("MAX_TRANSITION_ATTEMPTS", "3"))
LOCK_STRIPES = int(os.getenv("TRANSITION_LOCK_STRIPES", "64"))

# Reason codes for no-op results
NO_MATCHING_RULE = "no_matching_rule"
SENDER_UNAUTHORIZED = "sender_unauthorized"
NO_FORWARD_PROGRESSION = "no_forward_progression"
PREREQUISITES_UNMET = "prerequisites_unmet"
SHIPMENT_CLOSED = "shipment_closed"

REASON_MESSAGES = {
    NO_MATCHING_RULE: "No workflow rule matches this email's direction, document type or intent",
    SENDER_UNAUTHORIZED: "Sender category is not allowed to trigger any matching rule",
    NO_FORWARD_PROGRESSION: "No forward progression: every matching rule is at or behind the current state",
    PREREQUISITES_UNMET: "Prerequisite states have not been reached yet",
    SHIPMENT_CLOSED: "Shipment is delivered or cancelled; only a forced transition can move it",
}


class TransitionResult(BaseModel):
    success: bool
    shipment_id: int
    previous_state: Optional[str] = None
    new_state: Optional[str] = None
    new_phase: Optional[str] = None
    track: Optional[str] = None
    rule_order: Optional[int] = None
    trigger_type: Optional[str] = None
    reason: Optional[str] = None
    message: str = ""
    transition_id: Optional[int] = None
    dry_run: bool = False


class ShipmentLockRegistry:
    """
    Fixed stripe of locks keyed by shipment id.

    Two shipments may share a stripe; that only serializes them. Memory does
    not grow with the number of shipments seen.
    """

    def __init__(self, stripes: int = LOCK_STRIPES):
        if stripes < 1:
            raise ValueError("stripes must be at least 1")
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]

    @property
    def size(self) -> int:
        return len(self._locks)

    def lock_for(self, shipment_id: int) -> threading.Lock:
        return self._locks[shipment_id % len(self._locks)]


shipment_locks = ShipmentLockRegistry()


# ============================================================================
# RULE SELECTION
# ============================================================================

def match_rule(rule: WorkflowTransitionRule, classification: ClassificationOutput, subject: str) -> Dict:
    """Which trigger paths of `rule` this classification satisfies."""
    triggers = rule.triggers
    if triggers.direction != classification.direction:
        return {"document": False, "email": False}

    document_match = (
        not classification.no_document_evidence
        and classification.document_type in triggers.document_types
    )

    email_match = classification.email_type in triggers.email_types
    if email_match and triggers.email_subject_patterns:
        subject_lower = (subject or "").lower()
        email_match = any(pattern in subject_lower for pattern in triggers.email_subject_patterns)

    return {"document": document_match, "email": email_match}


def trigger_type_for(match: Dict) -> str:
    if match["document"] and match["email"]:
        return "both"
    return "document" if match["document"] else "email"


def select_transition(
    snapshot: ShipmentSnapshot,
    reached: Set[str],
    classification: ClassificationOutput,
    subject: Optional[str] = None,
    force: bool = False,
    rules: Iterable[WorkflowTransitionRule] = WORKFLOW_TRANSITION_RULES,
) -> Dict:
    """
    Pick the rule this classification would apply to the shipment.

    Pure: reads only its arguments.

    Returns:
        {"rule", "match", "track"} for a winner, or {"reason", "message"}
        naming the stage at which every candidate was dropped.
    """
    rules = tuple(rules)
    subject = classification.clean_subject if subject is None else subject

    if not force and snapshot.status != "active":
        return _no_op(SHIPMENT_CLOSED)

    candidates = []
    for rule in rules:
        match = match_rule(rule, classification, subject)
        if match["document"] or match["email"]:
            candidates.append((rule, match))
    if not candidates:
        return _no_op(NO_MATCHING_RULE)

    candidates = [(rule, match) for rule, match in candidates
                  if is_sender_authorized(rule, classification.sender_category)]
    if not candidates:
        return _no_op(SENDER_UNAUTHORIZED)

    if not force:
        forward = []
        for rule, match in candidates:
            track = track_for_rule(rule)
            current_order = get_state_order(snapshot.state_for_track(track), rules)
            if rule.order > current_order:
                forward.append((rule, match))
        if not forward:
            return _no_op(NO_FORWARD_PROGRESSION)

        # Side tracks may race ahead of the main line, so only main rules check prerequisites
        candidates = [(rule, match) for rule, match in forward
                      if rule.is_parallel or set(rule.prerequisites) <= reached]
        if not candidates:
            return _no_op(PREREQUISITES_UNMET)

    # max() keeps the first of equal orders
    rule, match = max(candidates, key=lambda item: item[0].order)
    return {"rule": rule, "match": match, "track": track_for_rule(rule)}


def _no_op(reason: str) -> Dict:
    return {"reason": reason, "message": REASON_MESSAGES[reason]}


def build_transition_notes(rule: WorkflowTransitionRule, classification: ClassificationOutput,
                           match: Dict, force: bool = False) -> str:
    parts = []
    if match["document"]:
        parts.append(f"doc:{classification.document_type}")
    if match["email"]:
        parts.append(f"email:{classification.email_type}")
    prefix = "Forced transition" if force else "Auto-transitioned"
    return f"{prefix} to {rule.label} via {' + '.join(parts)} ({classification.direction})"


def build_updates(rule: WorkflowTransitionRule, track: str) -> Dict:
    """Shipment columns to write. Side-track rules touch only their own field."""
    if track == "origin":
        return {"origin_workflow_state": rule.state}
    if track == "destination":
        return {"destination_workflow_state": rule.state}

    updates = {"workflow_state": rule.state, "workflow_phase": rule.phase}
    status = terminal_status_for(rule.state)
    if status:
        updates["status"] = status
    return updates


# ============================================================================
# ENGINE
# ============================================================================

def preview_transition(
    shipment_id: int,
    classification: ClassificationOutput,
    store: ShipmentStateStore,
    *,
    subject: Optional[str] = None,
    force: bool = False,
    rules: Iterable[WorkflowTransitionRule] = WORKFLOW_TRANSITION_RULES,
) -> TransitionResult:
    """What attempt_transition would do right now, without writing anything."""
    snapshot = store.load_snapshot(shipment_id)
    reached = store.reached_states(shipment_id)
    decision = select_transition(snapshot, reached, classification, subject, force, rules)

    if "rule" not in decision:
        return TransitionResult(
            success=False,
            shipment_id=shipment_id,
            previous_state=snapshot.workflow_state,
            reason=decision["reason"],
            message=decision["message"],
            dry_run=True,
        )

    rule = decision["rule"]
    return TransitionResult(
        success=True,
        shipment_id=shipment_id,
        previous_state=snapshot.state_for_track(decision["track"]),
        new_state=rule.state,
        new_phase=rule.phase,
        track=decision["track"],
        rule_order=rule.order,
        trigger_type=trigger_type_for(decision["match"]),
        message=build_transition_notes(rule, classification, decision["match"], force),
        dry_run=True,
    )


def attempt_transition(
    shipment_id: int,
    classification: ClassificationOutput,
    store: ShipmentStateStore,
    *,
    subject: Optional[str] = None,
    email_id: Optional[int] = None,
    force: bool = False,
    rules: Iterable[WorkflowTransitionRule] = WORKFLOW_TRANSITION_RULES,
    locks: Optional[ShipmentLockRegistry] = None,
) -> TransitionResult:
    """
    Apply a classification to a shipment's workflow.

    Args:
        shipment_id: Shipment to move
        classification: Output of classify_email for the triggering email
        store: State store bound to a database session
        subject: Subject matched against email-path subject patterns.
            Defaults to the classification's clean subject.
        email_id: Email recorded on the transition row
        force: Skip forward-only and prerequisite checks
        rules: Rule table

    Returns:
        TransitionResult. success=False with a reason code when nothing
        applies.

    Raises:
        ShipmentNotFoundError: unknown shipment
        TransitionPersistenceError: the write failed, or the shipment kept
            changing underneath for MAX_TRANSITION_ATTEMPTS attempts
    """
    rules = tuple(rules)
    lock = (locks or shipment_locks).lock_for(shipment_id)

    with lock:
        for attempt in range(1, MAX_TRANSITION_ATTEMPTS + 1):
            snapshot = store.load_snapshot(shipment_id)
            reached = store.reached_states(shipment_id)
            decision = select_transition(snapshot, reached, classification, subject, force, rules)

            if "rule" not in decision:
                logger.debug(f"Shipment {shipment_id}: no transition ({decision['reason']})")
                return TransitionResult(
                    success=False,
                    shipment_id=shipment_id,
                    previous_state=snapshot.workflow_state,
                    reason=decision["reason"],
                    message=decision["message"],
                )

            rule = decision["rule"]
            track = decision["track"]
            match = decision["match"]
            trigger_type = trigger_type_for(match)
            previous_state = snapshot.state_for_track(track)

            record = {
                "from_state": previous_state,
                "to_state": rule.state,
                "track": track,
                "rule_order": rule.order,
                "triggered_by_document_type": classification.document_type if match["document"] else None,
                "triggered_by_email_type": classification.email_type if match["email"] else None,
                "triggered_by_email_id": email_id,
                "sender_category": classification.sender_category,
                "trigger_type": trigger_type,
                "direction": classification.direction,
                "transition_notes": build_transition_notes(rule, classification, match, force),
            }

            try:
                transition = store.commit_transition(snapshot, record, build_updates(rule, track))
            except StaleStateError as e:
                logger.warning(f"Shipment {shipment_id}: {str(e)}, retrying ({attempt}/{MAX_TRANSITION_ATTEMPTS})")
                continue

            logger.info(
                f"Shipment {shipment_id}: {previous_state} -> {rule.state} "
                f"[{track}] via {trigger_type} ({classification.sender_category})"
            )
            return TransitionResult(
                success=True,
                shipment_id=shipment_id,
                previous_state=previous_state,
                new_state=rule.state,
                new_phase=rule.phase,
                track=track,
                rule_order=rule.order,
                trigger_type=trigger_type,
                message=record["transition_notes"],
                transition_id=transition.id,
            )

    raise TransitionPersistenceError(
        f"Shipment {shipment_id} changed concurrently on {MAX_TRANSITION_ATTEMPTS} attempts"
    )


# ============================================================================
# STATUS AND REPLAY
# ============================================================================

def replay_workflow_state(records: Iterable) -> Dict[str, Optional[str]]:
    """
    Rebuild each track's state from transition records in write order.

    The main track result must equal the shipment's workflow_state.
    """
    states = {"main": None, "origin": None, "destination": None}
    for record in records:
        track = record.track or "main"
        states[track] = record.to_state
    return states


def _progress_percent(reached: Set[str], rules) -> int:
    main_rules = [rule for rule in rules if not rule.is_parallel]
    final_orders = [rule.order for rule in main_rules if TERMINAL_STATUSES.get(rule.state) == "delivered"]
    final_order = max(final_orders) if final_orders else max((rule.order for rule in main_rules), default=0)
    if not final_order:
        return 0

    progress_orders = [
        rule.order for rule in main_rules
        if rule.state in reached and TERMINAL_STATUSES.get(rule.state) != "cancelled"
    ]
    if not progress_orders:
        return 0
    return min(100, round(100 * max(progress_orders) / final_order))


def next_possible_states(snapshot: ShipmentSnapshot, reached: Set[str],
                         rules=WORKFLOW_TRANSITION_RULES) -> List[Dict]:
    """Rules that could apply next given order and prerequisites (ignores triggers)."""
    if snapshot.status != "active":
        return []

    possible = []
    for rule in rules:
        track = track_for_rule(rule)
        if rule.order <= get_state_order(snapshot.state_for_track(track), rules):
            continue
        if not rule.is_parallel and not set(rule.prerequisites) <= reached:
            continue
        possible.append({"state": rule.state, "label": rule.label, "order": rule.order, "track": track})
    return possible


def get_workflow_status(shipment_id: int, store: ShipmentStateStore,
                        rules=WORKFLOW_TRANSITION_RULES) -> Dict:
    snapshot = store.load_snapshot(shipment_id)
    reached = store.reached_states(shipment_id)
    current_rule = get_rule(snapshot.workflow_state, rules)

    return {
        "shipment_id": shipment_id,
        "reference": snapshot.reference,
        "current_state": snapshot.workflow_state,
        "current_label": current_rule.label if current_rule else None,
        "phase": snapshot.workflow_phase,
        "origin_state": snapshot.origin_workflow_state,
        "destination_state": snapshot.destination_workflow_state,
        "status": snapshot.status,
        "state_version": snapshot.state_version,
        "progress_percent": _progress_percent(reached, rules),
        "next_possible_states": next_possible_states(snapshot, reached, rules),
        "is_complete": snapshot.status != "active",
    }
