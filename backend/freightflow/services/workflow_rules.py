"""
Workflow transition rules.

The complete shipment state machine as static data. Every rule can be reached
through two trigger paths:

    - document type: a classified shipping document (booking confirmation, BL, ...)
    - email type: an intent with no document needed (approvals, status updates)

Direction is required on every rule. Sender authority restricts who may move a
shipment into a state (only carriers confirm SOB, only US brokers clear
customs). Prerequisites name other rules' states that must already appear in
the shipment's history.

Rules are validated once when this module is imported and never change.
"""

from typing import Iterable, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, field_validator


PHASES = ("pre_shipment", "pre_departure", "in_transit", "arrival", "delivered")
DIRECTIONS = ("inbound", "outbound")
ORIGIN_PHASES = ("pre_shipment", "pre_departure")

# Reaching these states also sets the coarse shipment status
TERMINAL_STATUSES = {
    "delivered": "delivered",
    "booking_cancelled": "cancelled",
}


# ============================================================================
# TYPES
# ============================================================================

class TransitionTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    direction: str
    document_types: Tuple[str, ...] = ()
    email_types: Tuple[str, ...] = ()
    # Only apply to the email path; matched against the lower-cased subject
    email_subject_patterns: Tuple[str, ...] = ()
    # Empty means any sender may trigger
    allowed_sender_categories: Tuple[str, ...] = ()

    @field_validator("email_subject_patterns")
    @classmethod
    def _lower_patterns(cls, value):
        return tuple(pattern.lower() for pattern in value)


class WorkflowTransitionRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: str
    label: str
    order: int
    phase: str
    triggers: TransitionTrigger
    prerequisites: Tuple[str, ...] = ()
    is_parallel: bool = False
    description: str = ""

    @property
    def track(self) -> str:
        return track_for_rule(self)


def _rule(state, label, order, phase, direction, documents=(), emails=(), subjects=(),
          senders=(), prerequisites=(), parallel=False, description=""):
    return WorkflowTransitionRule(
        state=state,
        label=label,
        order=order,
        phase=phase,
        triggers=TransitionTrigger(
            direction=direction,
            document_types=tuple(documents),
            email_types=tuple(emails),
            email_subject_patterns=tuple(subjects),
            allowed_sender_categories=tuple(senders),
        ),
        prerequisites=tuple(prerequisites),
        is_parallel=parallel,
        description=description,
    )


# ============================================================================
# WORKFLOW TRANSITION RULES
# ============================================================================

WORKFLOW_TRANSITION_RULES: Tuple[WorkflowTransitionRule, ...] = (
    # --- PRE-SHIPMENT: booking ---
    _rule("booking_confirmation_received", "Booking Confirmed", 10, "pre_shipment", "inbound",
          documents=["booking_confirmation"],
          senders=["carrier"],
          description="Carrier confirms booking"),
    _rule("booking_confirmation_shared", "Booking Shared", 15, "pre_shipment", "outbound",
          documents=["booking_confirmation"], emails=["document_share"],
          senders=["intoglo"],
          prerequisites=["booking_confirmation_received"],
          description="Booking shared with shipper"),

    # --- PRE-DEPARTURE: origin track (email only, parallel) ---
    _rule("stuffing_started", "Stuffing Started", 20, "pre_departure", "inbound",
          emails=["stuffing_update"], subjects=["start", "begin", "schedule", "planning"],
          senders=["cha_india", "shipper", "intoglo"],
          prerequisites=["booking_confirmation_received"], parallel=True,
          description="Factory stuffing has started"),
    _rule("stuffing_complete", "Stuffing Complete", 25, "pre_departure", "inbound",
          emails=["stuffing_update"], subjects=["complete", "done", "finished", "stuffed"],
          senders=["cha_india", "shipper"],
          prerequisites=["stuffing_started"], parallel=True,
          description="Container stuffing completed at factory"),
    _rule("gate_in_complete", "Gate In Complete", 30, "pre_departure", "inbound",
          emails=["gate_in_update"],
          senders=["cha_india"],
          prerequisites=["stuffing_complete"], parallel=True,
          description="Container gated in at port or ICD"),
    _rule("handover_complete", "Handover Complete", 35, "pre_departure", "inbound",
          emails=["handover_update"],
          senders=["cha_india"],
          prerequisites=["gate_in_complete"], parallel=True,
          description="CHA handover or rail-out completed"),

    # --- PRE-DEPARTURE: shipping instructions ---
    _rule("si_draft_sent", "SI Draft Sent", 40, "pre_departure", "outbound",
          documents=["si_draft", "shipping_instruction"], emails=["approval_request"],
          senders=["intoglo"],
          prerequisites=["booking_confirmation_received"],
          description="SI draft sent to customer for approval"),
    _rule("checklist_received", "Checklist Received", 42, "pre_departure", "inbound",
          documents=["checklist"],
          senders=["cha_india", "shipper"],
          prerequisites=["booking_confirmation_received"],
          description="Export checklist received from CHA or shipper"),
    _rule("checklist_shared", "Checklist Shared", 44, "pre_departure", "outbound",
          documents=["checklist"], emails=["document_share", "approval_request"],
          senders=["intoglo"],
          prerequisites=["checklist_received"],
          description="Checklist shared with customer for approval"),
    _rule("si_approved", "SI Approved", 45, "pre_departure", "inbound",
          documents=["si_confirmation"], emails=["approval_granted"],
          subjects=["si", "shipping instruction", "s.i", "s/i"],
          senders=["shipper", "carrier", "intoglo"],
          prerequisites=["si_draft_sent"],
          description="Customer approved SI draft"),
    _rule("checklist_approved", "Checklist Approved", 46, "pre_departure", "inbound",
          emails=["approval_granted"], subjects=["checklist", "check list"],
          senders=["shipper", "intoglo"],
          prerequisites=["checklist_shared"],
          description="Customer approved checklist"),
    _rule("si_submitted", "SI Submitted", 50, "pre_departure", "inbound",
          documents=["si_confirmation"],
          senders=["carrier"],
          prerequisites=["si_approved"],
          description="SI submitted to and confirmed by carrier"),
    _rule("shipping_bill_received", "LEO/SB Received", 55, "pre_departure", "inbound",
          documents=["shipping_bill", "leo_copy"],
          senders=["cha_india"],
          prerequisites=["checklist_approved"],
          description="LEO or shipping bill received from CHA"),
    _rule("vgm_submitted", "VGM Submitted", 60, "pre_departure", "inbound",
          documents=["vgm_confirmation"],
          senders=["carrier", "cha_india"],
          prerequisites=["gate_in_complete"],
          description="VGM submitted and confirmed"),
    _rule("sob_received", "SOB Received", 70, "pre_departure", "inbound",
          documents=["sob_confirmation"], emails=["departure_update"],
          subjects=["sob", "shipped on board", "on board"],
          senders=["carrier"],
          prerequisites=["vgm_submitted"],
          description="Shipped-on-board confirmation from carrier"),
    _rule("departed", "Vessel Departed", 75, "pre_departure", "inbound",
          emails=["departure_update"], subjects=["sailed", "departed", "departure", "sailing"],
          senders=["carrier"],
          prerequisites=["sob_received"],
          description="Vessel sailed from origin port"),

    # --- IN TRANSIT ---
    _rule("in_transit", "In Transit", 80, "in_transit", "inbound",
          emails=["transit_update"],
          senders=["carrier"],
          prerequisites=["departed"],
          description="Vessel in transit"),
    _rule("bl_received", "BL Received", 85, "in_transit", "inbound",
          documents=["bill_of_lading"],
          senders=["carrier"],
          prerequisites=["departed"],
          description="Master BL received from carrier"),
    _rule("bl_shared", "BL Shared", 87, "in_transit", "outbound",
          documents=["bill_of_lading"], emails=["document_share"],
          senders=["intoglo"],
          prerequisites=["bl_received"],
          description="MBL shared with destination agent or broker"),
    _rule("hbl_draft_sent", "HBL Draft Sent", 90, "in_transit", "outbound",
          documents=["hbl_draft", "house_bl"], emails=["approval_request"],
          senders=["intoglo"],
          prerequisites=["departed"],
          description="HBL draft sent to customer for approval"),
    _rule("hbl_approved", "HBL Approved", 95, "in_transit", "inbound",
          emails=["approval_granted"], subjects=["hbl", "house bl", "bl draft", "draft bl", "b/l"],
          senders=["shipper", "consignee"],
          prerequisites=["hbl_draft_sent"],
          description="Customer approved HBL draft"),
    _rule("hbl_shared", "HBL Shared", 100, "in_transit", "outbound",
          documents=["house_bl"], emails=["document_share"],
          senders=["intoglo"],
          prerequisites=["hbl_approved"],
          description="Final HBL shared with customer"),
    _rule("invoice_sent", "Invoice Sent", 105, "in_transit", "outbound",
          documents=["invoice", "freight_invoice"], emails=["payment_request"],
          senders=["intoglo"],
          prerequisites=["hbl_shared"],
          description="Freight invoice sent to customer"),

    # --- ARRIVAL & CUSTOMS ---
    _rule("pre_alert_sent", "Pre-Alert Sent", 110, "arrival", "outbound",
          emails=["pre_alert"],
          senders=["intoglo"],
          prerequisites=["departed"],
          description="Pre-arrival alert sent to US customs broker"),
    _rule("arrival_notice_received", "AN Received", 115, "arrival", "inbound",
          documents=["arrival_notice"], emails=["arrival_update"],
          senders=["carrier"],
          prerequisites=["in_transit"],
          description="Arrival notice received from carrier"),
    _rule("arrival_notice_shared", "AN Shared", 117, "arrival", "outbound",
          documents=["arrival_notice"], emails=["document_share"],
          senders=["intoglo"],
          prerequisites=["arrival_notice_received"],
          description="Arrival notice shared with consignee"),
    _rule("entry_draft_received", "Entry Draft Received", 120, "arrival", "inbound",
          documents=["draft_entry"], emails=["approval_request"],
          senders=["customs_broker_us"],
          prerequisites=["pre_alert_sent"],
          description="Draft entry (7501) received from US broker"),
    _rule("entry_draft_shared", "Entry Draft Shared", 122, "arrival", "outbound",
          documents=["draft_entry"], emails=["document_share", "approval_request"],
          senders=["intoglo"],
          prerequisites=["entry_draft_received"],
          description="Entry draft shared with customer for approval"),
    _rule("entry_approved", "Entry Approved", 125, "arrival", "inbound",
          emails=["approval_granted"], subjects=["entry", "7501", "customs", "draft entry"],
          senders=["shipper", "consignee", "intoglo"],
          prerequisites=["entry_draft_shared"],
          description="Customer approved customs entry"),
    _rule("clearance_started", "Clearance Started", 130, "arrival", "inbound",
          emails=["clearance_initiation"],
          senders=["customs_broker_us"],
          prerequisites=["entry_approved"],
          description="Customs clearance started"),
    _rule("customs_cleared", "Customs Cleared", 135, "arrival", "inbound",
          documents=["entry_summary", "customs_clearance"], emails=["clearance_complete"],
          senders=["customs_broker_us", "platform"],
          prerequisites=["clearance_started"],
          description="Customs cleared, cargo released by CBP"),

    # --- DELIVERY ---
    _rule("cargo_released", "Cargo Released", 140, "delivered", "inbound",
          documents=["container_release", "delivery_order"],
          senders=["carrier", "customs_broker_us"],
          prerequisites=["customs_cleared"],
          description="Container released for pickup"),
    _rule("duty_invoice_received", "Duty Invoice Received", 145, "delivered", "inbound",
          documents=["duty_invoice"], emails=["payment_request"],
          senders=["customs_broker_us"],
          prerequisites=["customs_cleared"],
          description="Duty invoice received from broker"),
    _rule("duty_invoice_shared", "Duty Invoice Shared", 147, "delivered", "outbound",
          documents=["duty_invoice"], emails=["document_share"],
          senders=["intoglo"],
          prerequisites=["duty_invoice_received"],
          description="Duty invoice shared with customer"),
    _rule("delivery_scheduled", "Delivery Scheduled", 150, "delivered", "inbound",
          emails=["delivery_scheduling", "pickup_scheduling"],
          senders=["trucker", "consignee", "customs_broker_us", "warehouse"],
          prerequisites=["cargo_released"],
          description="Delivery appointment scheduled"),
    _rule("delivered", "Delivered", 155, "delivered", "inbound",
          documents=["proof_of_delivery"], emails=["delivery_complete"],
          senders=["trucker", "customs_broker_us", "consignee", "warehouse"],
          prerequisites=["delivery_scheduled"],
          description="Cargo delivered, POD received"),

    # --- CANCELLATION ---
    _rule("booking_cancelled", "Booking Cancelled", 200, "pre_shipment", "inbound",
          documents=["booking_cancellation"], emails=["cancellation_notice"],
          senders=["carrier"],
          prerequisites=["booking_confirmation_received"],
          description="Carrier cancelled the booking"),
)


# ============================================================================
# VALIDATION
# ============================================================================

def validate_rules(rules: Iterable[WorkflowTransitionRule]) -> None:
    """Raise ValueError if the rule table is internally inconsistent."""
    rules = list(rules)
    states = [rule.state for rule in rules]
    duplicates = {state for state in states if states.count(state) > 1}
    if duplicates:
        raise ValueError(f"Duplicate workflow states: {sorted(duplicates)}")

    known = set(states)
    for rule in rules:
        if rule.phase not in PHASES:
            raise ValueError(f"{rule.state}: unknown phase '{rule.phase}'")
        if rule.triggers.direction not in DIRECTIONS:
            raise ValueError(f"{rule.state}: direction must be one of {DIRECTIONS}")
        if not rule.triggers.document_types and not rule.triggers.email_types:
            raise ValueError(f"{rule.state}: rule has no trigger types")
        if rule.triggers.email_subject_patterns and not rule.triggers.email_types:
            raise ValueError(f"{rule.state}: subject patterns need an email trigger")
        missing = set(rule.prerequisites) - known
        if missing:
            raise ValueError(f"{rule.state}: unknown prerequisites {sorted(missing)}")
        if rule.state in rule.prerequisites:
            raise ValueError(f"{rule.state}: rule lists itself as a prerequisite")


validate_rules(WORKFLOW_TRANSITION_RULES)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def track_for_rule(rule: WorkflowTransitionRule) -> str:
    """main for the forward-only line; origin or destination for side tracks."""
    if not rule.is_parallel:
        return "main"
    return "origin" if rule.phase in ORIGIN_PHASES else "destination"


def get_rule(state: Optional[str], rules=WORKFLOW_TRANSITION_RULES) -> Optional[WorkflowTransitionRule]:
    if not state:
        return None
    for rule in rules:
        if rule.state == state:
            return rule
    return None


def get_state_order(state: Optional[str], rules=WORKFLOW_TRANSITION_RULES) -> int:
    """Order of a state; 0 for no state or a state not in the table."""
    rule = get_rule(state, rules)
    return rule.order if rule else 0


def is_state_after(state_a: str, state_b: str, rules=WORKFLOW_TRANSITION_RULES) -> bool:
    return get_state_order(state_b, rules) > get_state_order(state_a, rules)


def rules_for_phase(phase: str, rules=WORKFLOW_TRANSITION_RULES) -> List[WorkflowTransitionRule]:
    return [rule for rule in rules if rule.phase == phase]


def rules_for_document_type(document_type: str, direction: str, rules=WORKFLOW_TRANSITION_RULES) -> List[WorkflowTransitionRule]:
    return [
        rule for rule in rules
        if rule.triggers.direction == direction and document_type in rule.triggers.document_types
    ]


def rules_for_email_type(email_type: str, direction: str, rules=WORKFLOW_TRANSITION_RULES) -> List[WorkflowTransitionRule]:
    return [
        rule for rule in rules
        if rule.triggers.direction == direction and email_type in rule.triggers.email_types
    ]


def is_sender_authorized(rule: WorkflowTransitionRule, sender_category: Optional[str]) -> bool:
    """Unrestricted rules accept anyone; restricted rules never accept 'unknown'."""
    allowed = rule.triggers.allowed_sender_categories
    if not allowed:
        return True
    if not sender_category or sender_category == "unknown":
        return False
    return sender_category in allowed


def suggest_workflow_state(document_type: str, direction: str, rules=WORKFLOW_TRANSITION_RULES) -> Optional[str]:
    """First declared state this document type leads to in this direction."""
    matches = rules_for_document_type(document_type, direction, rules)
    return matches[0].state if matches else None


def terminal_status_for(state: str) -> Optional[str]:
    return TERMINAL_STATUSES.get(state)
