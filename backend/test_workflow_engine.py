"""
Tests for the workflow transition engine and the shipment state store.

Run with: pytest test_workflow_engine.py
"""

import pytest

from freightflow.models import Shipment, WorkflowTransition
from freightflow.schemas import ClassificationOutput
from freightflow.services.state_store import (
    ShipmentNotFoundError,
    ShipmentStateStore,
    StaleStateError,
    TransitionPersistenceError,
)
from freightflow.services.workflow_engine import (
    MAX_TRANSITION_ATTEMPTS,
    ShipmentLockRegistry,
    attempt_transition,
    get_workflow_status,
    preview_transition,
    replay_workflow_state,
)
from freightflow.services.workflow_rules import (
    TransitionTrigger,
    WorkflowTransitionRule,
    get_rule,
    is_sender_authorized,
)


CARRIER_BOOKING = ClassificationOutput(
    document_type="booking_confirmation",
    document_confidence=90,
    document_source="subject",
    email_type="document_share",
    email_category="communication",
    email_type_confidence=88,
    sender_category="carrier",
    direction="inbound",
    clean_subject="Booking Confirmation : 263522431",
)

INTERNAL_BOOKING_SHARE = ClassificationOutput(
    document_type="booking_confirmation",
    document_confidence=90,
    document_source="subject",
    email_type="document_share",
    email_category="communication",
    email_type_confidence=88,
    sender_category="intoglo",
    direction="outbound",
    clean_subject="Booking Confirmation - MSKU1234567",
)


def classification(**fields):
    return ClassificationOutput(**fields)


def history_of(db, shipment_id, track=None):
    return ShipmentStateStore(db).history(shipment_id, track=track)


# ============================================================================
# BASIC TRANSITIONS
# ============================================================================

def test_carrier_booking_confirmation_moves_shipment(db, shipment):
    result = attempt_transition(shipment.id, CARRIER_BOOKING, ShipmentStateStore(db), email_id=None)

    assert result.success is True
    assert result.previous_state is None
    assert result.new_state == "booking_confirmation_received"
    assert result.new_phase == "pre_shipment"
    assert result.track == "main"
    assert result.trigger_type == "document"
    assert result.transition_id is not None

    db.refresh(shipment)
    assert shipment.workflow_state == "booking_confirmation_received"
    assert shipment.workflow_phase == "pre_shipment"
    assert shipment.state_version == 1
    assert shipment.workflow_updated_at is not None

    records = history_of(db, shipment.id)
    assert len(records) == 1
    assert records[0].from_state is None
    assert records[0].to_state == "booking_confirmation_received"
    assert records[0].sender_category == "carrier"
    assert records[0].triggered_by_document_type == "booking_confirmation"
    assert records[0].triggered_by_email_type is None
    assert records[0].transition_notes == (
        "Auto-transitioned to Booking Confirmed via doc:booking_confirmation (inbound)"
    )


def test_repeated_transition_is_a_no_op(db, shipment):
    store = ShipmentStateStore(db)
    first = attempt_transition(shipment.id, CARRIER_BOOKING, store)
    second = attempt_transition(shipment.id, CARRIER_BOOKING, store)

    assert first.success is True
    assert second.success is False
    assert second.reason == "no_forward_progression"
    assert len(history_of(db, shipment.id)) == 1
    db.refresh(shipment)
    assert shipment.state_version == 1


def test_internal_share_needs_carrier_confirmation_first(db, shipment):
    store = ShipmentStateStore(db)

    early = attempt_transition(shipment.id, INTERNAL_BOOKING_SHARE, store)
    assert early.success is False
    assert early.reason == "prerequisites_unmet"

    attempt_transition(shipment.id, CARRIER_BOOKING, store)
    shared = attempt_transition(shipment.id, INTERNAL_BOOKING_SHARE, store)

    assert shared.success is True
    assert shared.previous_state == "booking_confirmation_received"
    assert shared.new_state == "booking_confirmation_shared"
    assert shared.trigger_type == "both"


@pytest.mark.parametrize("output,reason", [
    (classification(document_type="booking_confirmation", sender_category="shipper", direction="inbound"),
     "sender_unauthorized"),
    (classification(document_type="booking_confirmation", sender_category="unknown", direction="inbound"),
     "sender_unauthorized"),
    (classification(document_type="general_correspondence", email_type="general_correspondence",
                    sender_category="carrier", direction="inbound"),
     "no_matching_rule"),
    (classification(document_type="unknown", sender_category="unknown", direction="inbound"),
     "no_matching_rule"),
])
def test_no_op_reasons(db, shipment, output, reason):
    result = attempt_transition(shipment.id, output, ShipmentStateStore(db))

    assert result.success is False
    assert result.reason == reason
    assert result.message
    assert history_of(db, shipment.id) == []


def test_reply_without_document_evidence_does_not_transition(db, shipment):
    reply = CARRIER_BOOKING.model_copy(update={
        "no_document_evidence": True,
        "document_confidence": 45,
        "email_type": "general_correspondence",
        "email_type_confidence": 0,
    })
    result = attempt_transition(shipment.id, reply, ShipmentStateStore(db))

    assert result.success is False
    assert result.reason == "no_matching_rule"


def test_email_path_requires_subject_pattern(db, shipment):
    store = ShipmentStateStore(db)
    for step in [
        CARRIER_BOOKING,
        classification(document_type="si_draft", sender_category="intoglo", direction="outbound"),
    ]:
        assert attempt_transition(shipment.id, step, store).success is True

    approval = classification(email_type="approval_granted", sender_category="shipper", direction="inbound")

    unrelated = attempt_transition(shipment.id, approval, store, subject="RE: Invoice 4411 approved")
    assert unrelated.success is False

    approved = attempt_transition(shipment.id, approval, store, subject="RE: SI draft approved")
    assert approved.success is True
    assert approved.new_state == "si_approved"
    assert approved.trigger_type == "email"


def test_unknown_shipment(db):
    with pytest.raises(ShipmentNotFoundError):
        attempt_transition(999, CARRIER_BOOKING, ShipmentStateStore(db))


# ============================================================================
# ORDERING
# ============================================================================

def _rule(state, order, document_type):
    return WorkflowTransitionRule(
        state=state,
        label=state,
        order=order,
        phase="pre_shipment",
        triggers=TransitionTrigger(direction="inbound", document_types=(document_type,)),
    )


SMALL_TABLE = (
    _rule("quoted", 3, "rate_quote"),
    _rule("scheduled", 5, "vessel_schedule"),
)


def test_backward_rule_is_no_forward_progression(db, shipment):
    store = ShipmentStateStore(db)
    to_five = attempt_transition(
        shipment.id, classification(document_type="vessel_schedule"), store, rules=SMALL_TABLE
    )
    assert to_five.success is True
    assert to_five.rule_order == 5

    back = attempt_transition(
        shipment.id, classification(document_type="rate_quote"), store, rules=SMALL_TABLE
    )
    assert back.success is False
    assert back.reason == "no_forward_progression"


def test_highest_order_candidate_wins(db, shipment):
    table = (
        _rule("first", 3, "rate_quote"),
        _rule("second", 8, "rate_quote"),
        _rule("third", 8, "rate_quote"),
    )
    result = attempt_transition(shipment.id, classification(document_type="rate_quote"), ShipmentStateStore(db), rules=table)
    assert result.new_state == "second"


def test_force_skips_order_and_prerequisites(db, shipment):
    delivered = classification(email_type="delivery_complete", sender_category="trucker", direction="inbound")
    store = ShipmentStateStore(db)

    blocked = attempt_transition(shipment.id, delivered, store)
    assert blocked.reason == "prerequisites_unmet"

    forced = attempt_transition(shipment.id, delivered, store, force=True)
    assert forced.success is True
    assert forced.new_state == "delivered"
    assert history_of(db, shipment.id)[0].transition_notes.startswith("Forced transition")

    db.refresh(shipment)
    assert shipment.status == "delivered"


def test_force_still_checks_authority(db, shipment):
    result = attempt_transition(
        shipment.id,
        classification(email_type="delivery_complete", sender_category="carrier", direction="inbound"),
        ShipmentStateStore(db),
        force=True,
    )
    assert result.reason == "sender_unauthorized"


# ============================================================================
# PARALLEL TRACKS
# ============================================================================

STUFFING_STARTED = classification(email_type="stuffing_update", sender_category="cha_india", direction="inbound")


def test_parallel_rule_updates_only_its_track(db, shipment):
    store = ShipmentStateStore(db)
    attempt_transition(shipment.id, CARRIER_BOOKING, store)

    result = attempt_transition(shipment.id, STUFFING_STARTED, store, subject="Stuffing started at factory")

    assert result.success is True
    assert result.track == "origin"
    assert result.new_state == "stuffing_started"
    assert result.previous_state is None

    db.refresh(shipment)
    assert shipment.workflow_state == "booking_confirmation_received"
    assert shipment.workflow_phase == "pre_shipment"
    assert shipment.origin_workflow_state == "stuffing_started"
    assert history_of(db, shipment.id, track="origin")[0].to_state == "stuffing_started"


def test_parallel_rule_skips_prerequisites(db, shipment):
    result = attempt_transition(shipment.id, STUFFING_STARTED, ShipmentStateStore(db), subject="Stuffing started")
    assert result.success is True
    db.refresh(shipment)
    assert shipment.workflow_state is None


def test_parallel_rule_is_forward_only_on_its_track(db, shipment):
    store = ShipmentStateStore(db)
    attempt_transition(shipment.id, STUFFING_STARTED, store, subject="Stuffing started")
    again = attempt_transition(shipment.id, STUFFING_STARTED, store, subject="Stuffing started")

    assert again.success is False
    assert again.reason == "no_forward_progression"


def test_main_track_keeps_moving_past_side_track(db, shipment):
    store = ShipmentStateStore(db)
    steps = [
        (CARRIER_BOOKING, None),
        (STUFFING_STARTED, "Stuffing started"),
        (classification(email_type="stuffing_update", sender_category="cha_india"), "Stuffing complete"),
        (classification(document_type="si_draft", sender_category="intoglo", direction="outbound"), None),
        (classification(email_type="approval_granted", sender_category="shipper"), "SI approved"),
    ]
    for output, subject in steps:
        assert attempt_transition(shipment.id, output, store, subject=subject).success is True

    db.refresh(shipment)
    assert shipment.workflow_state == "si_approved"
    assert shipment.origin_workflow_state == "stuffing_complete"

    main_orders = [r.rule_order for r in history_of(db, shipment.id, track="main")]
    assert main_orders == [10, 40, 45]
    assert main_orders == sorted(set(main_orders))


# ============================================================================
# TERMINAL STATES, REPLAY, AUTHORITY
# ============================================================================

def test_cancellation_sets_status_and_blocks_progress(db, shipment):
    store = ShipmentStateStore(db)
    attempt_transition(shipment.id, CARRIER_BOOKING, store)
    cancelled = attempt_transition(
        shipment.id,
        classification(document_type="booking_cancellation", email_type="cancellation_notice",
                       sender_category="carrier", direction="inbound"),
        store,
    )

    assert cancelled.success is True
    assert cancelled.new_state == "booking_cancelled"
    assert cancelled.trigger_type == "both"

    db.refresh(shipment)
    assert shipment.status == "cancelled"

    later = attempt_transition(
        shipment.id, classification(document_type="si_draft", sender_category="intoglo", direction="outbound"), store
    )
    assert later.reason == "shipment_closed"


CARRIER_CANCELLATION = classification(
    document_type="booking_cancellation",
    email_type="cancellation_notice",
    sender_category="carrier",
    direction="inbound",
)

DELIVERY_COMPLETE = classification(email_type="delivery_complete", sender_category="trucker", direction="inbound")


def test_delivered_shipment_ignores_late_cancellation(db, shipment):
    store = ShipmentStateStore(db)
    attempt_transition(shipment.id, CARRIER_BOOKING, store)
    assert attempt_transition(shipment.id, DELIVERY_COMPLETE, store, force=True).success is True

    late = attempt_transition(shipment.id, CARRIER_CANCELLATION, store)

    assert late.success is False
    assert late.reason == "shipment_closed"
    db.refresh(shipment)
    assert shipment.workflow_state == "delivered"
    assert shipment.status == "delivered"


def test_cancelled_shipment_ignores_side_track_updates(db, shipment):
    store = ShipmentStateStore(db)
    attempt_transition(shipment.id, CARRIER_BOOKING, store)
    attempt_transition(shipment.id, CARRIER_CANCELLATION, store)

    stuffing = attempt_transition(shipment.id, STUFFING_STARTED, store, subject="Stuffing started")

    assert stuffing.success is False
    assert stuffing.reason == "shipment_closed"
    db.refresh(shipment)
    assert shipment.origin_workflow_state is None


def test_closed_shipment_preview_and_status_agree(db, shipment):
    store = ShipmentStateStore(db)
    attempt_transition(shipment.id, CARRIER_BOOKING, store)
    attempt_transition(shipment.id, CARRIER_CANCELLATION, store)

    preview = preview_transition(shipment.id, STUFFING_STARTED, store, subject="Stuffing started")
    assert preview.reason == "shipment_closed"
    assert get_workflow_status(shipment.id, store)["next_possible_states"] == []


def test_closed_shipment_moves_only_when_forced(db, shipment):
    store = ShipmentStateStore(db)
    attempt_transition(shipment.id, CARRIER_BOOKING, store)
    attempt_transition(shipment.id, CARRIER_CANCELLATION, store)

    forced = attempt_transition(shipment.id, DELIVERY_COMPLETE, store, force=True)

    assert forced.success is True
    db.refresh(shipment)
    assert shipment.status == "delivered"


def test_main_track_orders_strictly_increase(db, shipment):
    store = ShipmentStateStore(db)
    steps = [
        (CARRIER_BOOKING, None, True),
        (STUFFING_STARTED, "Stuffing started", True),
        (INTERNAL_BOOKING_SHARE, None, True),
        (classification(email_type="stuffing_update", sender_category="cha_india"), "Stuffing complete", True),
        (CARRIER_BOOKING, None, False),
        (classification(email_type="gate_in_update", sender_category="cha_india"), "Gate in done", True),
        (classification(document_type="si_draft", sender_category="intoglo", direction="outbound"), None, True),
        (classification(email_type="approval_granted", sender_category="shipper"), "SI approved", True),
        (classification(document_type="checklist", sender_category="cha_india"), None, False),
        (classification(document_type="vgm_confirmation", sender_category="carrier"), None, True),
    ]
    for output, subject, expected in steps:
        result = attempt_transition(shipment.id, output, store, subject=subject)
        assert result.success is expected, result.reason
        if not expected:
            assert result.reason == "no_forward_progression"

    records = store.history(shipment.id)
    main = [r for r in records if r.track == "main"]
    side = [r for r in records if r.track != "main"]

    main_orders = [r.rule_order for r in main]
    assert main_orders == [10, 15, 40, 45, 60]
    assert all(a < b for a, b in zip(main_orders, main_orders[1:]))
    assert all(not get_rule(r.to_state).is_parallel for r in main)

    assert [r.to_state for r in side] == ["stuffing_started", "stuffing_complete", "gate_in_complete"]
    assert all(get_rule(r.to_state).is_parallel for r in side)

    snapshot = store.load_snapshot(shipment.id)
    replayed = replay_workflow_state(records)
    assert replayed["main"] == snapshot.workflow_state == "vgm_submitted"
    assert replayed["origin"] == snapshot.origin_workflow_state == "gate_in_complete"


def test_replay_matches_current_state(db, shipment):
    store = ShipmentStateStore(db)
    for output, subject in [
        (CARRIER_BOOKING, None),
        (INTERNAL_BOOKING_SHARE, None),
        (STUFFING_STARTED, "Stuffing started"),
        (classification(document_type="si_draft", sender_category="intoglo", direction="outbound"), None),
    ]:
        attempt_transition(shipment.id, output, store, subject=subject)

    snapshot = store.load_snapshot(shipment.id)
    replayed = replay_workflow_state(store.history(shipment.id))

    assert replayed["main"] == snapshot.workflow_state == "si_draft_sent"
    assert replayed["origin"] == snapshot.origin_workflow_state == "stuffing_started"
    assert replayed["destination"] is None


def test_every_record_respects_sender_authority(db, shipment):
    store = ShipmentStateStore(db)
    attempts = [
        CARRIER_BOOKING,
        classification(document_type="booking_confirmation", sender_category="shipper"),
        INTERNAL_BOOKING_SHARE,
        classification(document_type="si_draft", sender_category="carrier", direction="outbound"),
        classification(document_type="si_draft", sender_category="intoglo", direction="outbound"),
    ]
    for output in attempts:
        attempt_transition(shipment.id, output, store)

    records = store.history(shipment.id)
    assert len(records) == 3
    for record in records:
        assert is_sender_authorized(get_rule(record.to_state), record.sender_category)


# ============================================================================
# CONCURRENCY AND PERSISTENCE
# ============================================================================

class FlakyStore(ShipmentStateStore):
    """Loses the compare-and-set race a fixed number of times."""

    def __init__(self, db, stale_times):
        super().__init__(db)
        self.stale_times = stale_times
        self.commit_calls = 0

    def commit_transition(self, snapshot, record, updates):
        self.commit_calls += 1
        if self.commit_calls <= self.stale_times:
            raise StaleStateError("lost race")
        return super().commit_transition(snapshot, record, updates)


def test_stale_write_is_retried(db, shipment):
    store = FlakyStore(db, stale_times=1)
    result = attempt_transition(shipment.id, CARRIER_BOOKING, store)

    assert result.success is True
    assert store.commit_calls == 2
    assert len(history_of(db, shipment.id)) == 1


def test_persistent_staleness_is_a_persistence_error(db, shipment):
    store = FlakyStore(db, stale_times=MAX_TRANSITION_ATTEMPTS)
    with pytest.raises(TransitionPersistenceError):
        attempt_transition(shipment.id, CARRIER_BOOKING, store)
    assert history_of(db, shipment.id) == []


def test_compare_and_set_rejects_old_snapshot(db, shipment):
    store = ShipmentStateStore(db)
    old_snapshot = store.load_snapshot(shipment.id)
    attempt_transition(shipment.id, CARRIER_BOOKING, store)

    with pytest.raises(StaleStateError):
        store.commit_transition(
            old_snapshot,
            {"from_state": None, "to_state": "booking_confirmation_received", "track": "main",
             "rule_order": 10, "trigger_type": "document"},
            {"workflow_state": "booking_confirmation_received"},
        )

    assert db.query(WorkflowTransition).count() == 1
    assert store.load_snapshot(shipment.id).state_version == 1


def test_lock_registry_is_bounded():
    registry = ShipmentLockRegistry(stripes=4)

    assert registry.lock_for(1) is registry.lock_for(1)
    assert registry.lock_for(1) is registry.lock_for(5)
    assert registry.lock_for(1) is not registry.lock_for(2)

    for shipment_id in range(1000):
        registry.lock_for(shipment_id)
    assert registry.size == 4

    with pytest.raises(ValueError):
        ShipmentLockRegistry(stripes=0)


# ============================================================================
# PREVIEW AND STATUS
# ============================================================================

def test_preview_does_not_write(db, shipment):
    store = ShipmentStateStore(db)
    result = preview_transition(shipment.id, CARRIER_BOOKING, store)

    assert result.success is True
    assert result.dry_run is True
    assert result.new_state == "booking_confirmation_received"
    assert store.history(shipment.id) == []
    assert store.load_snapshot(shipment.id).state_version == 0


def test_workflow_status(db, shipment):
    store = ShipmentStateStore(db)
    attempt_transition(shipment.id, CARRIER_BOOKING, store)
    status = get_workflow_status(shipment.id, store)

    assert status["current_state"] == "booking_confirmation_received"
    assert status["current_label"] == "Booking Confirmed"
    assert status["phase"] == "pre_shipment"
    assert status["progress_percent"] == 6
    assert status["is_complete"] is False

    next_states = {s["state"] for s in status["next_possible_states"]}
    assert {"booking_confirmation_shared", "stuffing_started", "si_draft_sent", "booking_cancelled"} <= next_states
    assert "stuffing_complete" in next_states
    assert "bl_received" not in next_states


def test_workflow_status_of_finished_shipment(db):
    shipment = Shipment(reference="DONE-1", workflow_state="delivered", status="delivered")
    db.add(shipment)
    db.commit()

    status = get_workflow_status(shipment.id, ShipmentStateStore(db))
    assert status["is_complete"] is True
    assert status["next_possible_states"] == []
