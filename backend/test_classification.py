"""
Tests for end-to-end email classification: document evidence, precedence,
reply handling, thread dedup and the AI fallback gate.

Run with: pytest test_classification.py
"""

import math
import time

import pytest

from freightflow.schemas import AIClassification, ClassificationInput, clamp_confidence
from freightflow.services.classification import classify_email
from freightflow.services.classifier_ai import AIClassificationError


# Test emails - classified without the AI fallback
TEST_EMAILS = [
    {
        "name": "Carrier booking confirmation",
        "email": {
            "subject": "Booking Confirmation : 263522431",
            "sender_email": "in.export@maersk.com",
        },
        "expected": {
            "document_type": "booking_confirmation",
            "document_source": "subject",
            "document_confidence": 90,
            "sender_category": "carrier",
            "direction": "inbound",
            "suggested_workflow_state": "booking_confirmation_received",
            "needs_manual_review": False,
        },
    },
    {
        "name": "Internal booking share",
        "email": {
            "subject": "Booking Confirmation - MSKU1234567",
            "sender_email": "rahul@intoglo.com",
        },
        "expected": {
            "document_type": "booking_confirmation",
            "sender_category": "intoglo",
            "direction": "outbound",
            "suggested_workflow_state": "booking_confirmation_shared",
        },
    },
    {
        "name": "Arrival notice by filename",
        "email": {
            "subject": "Shipment update",
            "sender_email": "noreply@cma-cgm.com",
            "attachment_filenames": ["Arrival_Notice_CMDU1234.pdf"],
        },
        "expected": {
            "document_type": "arrival_notice",
            "document_source": "attachment_filename",
            "document_confidence": 95,
            "sender_category": "carrier",
            "suggested_workflow_state": "arrival_notice_received",
            "email_type": "unknown",
        },
    },
    {
        "name": "Entry summary by attachment text",
        "email": {
            "subject": "Docs",
            "sender_email": "entries@portsidecustoms.com",
            "attachment_filenames": ["scan001.pdf"],
            "attachment_text": "DEPARTMENT OF HOMELAND SECURITY\nU.S. Customs and Border Protection\nENTRY SUMMARY\nCBP Form 7501",
        },
        "expected": {
            "document_type": "entry_summary",
            "document_sub_type": "cbp_7501",
            "document_source": "attachment_content",
            "document_confidence": 98,
            "sender_category": "customs_broker_us",
            "suggested_workflow_state": "customs_cleared",
        },
    },
    {
        "name": "Empty email",
        "email": {},
        "expected": {
            "document_type": "unknown",
            "document_confidence": 0,
            "email_type_confidence": 0,
            "document_source": "none",
            "sender_category": "unknown",
            "suggested_workflow_state": None,
            "needs_manual_review": True,
            "fallback_reason": "low_confidence:0,fallback_disabled",
            "used_ai_fallback": False,
        },
    },
]


@pytest.mark.parametrize("case", TEST_EMAILS, ids=[c["name"] for c in TEST_EMAILS])
def test_deterministic_classification(case):
    result = classify_email(ClassificationInput(**case["email"]), use_ai=False)

    for field, expected in case["expected"].items():
        assert getattr(result, field) == expected, f"{case['name']}: {field}"


@pytest.mark.parametrize("case", TEST_EMAILS, ids=[c["name"] for c in TEST_EMAILS])
def test_confidences_stay_in_range(case):
    result = classify_email(ClassificationInput(**case["email"]), use_ai=False)
    assert 0 <= result.document_confidence <= 100
    assert 0 <= result.email_type_confidence <= 100


@pytest.mark.parametrize("case", TEST_EMAILS, ids=[c["name"] for c in TEST_EMAILS])
def test_reclassification_is_deterministic(case):
    email = ClassificationInput(**case["email"])
    assert classify_email(email, use_ai=False) == classify_email(email, use_ai=False)


def test_none_fields_are_accepted():
    email = ClassificationInput(subject=None, sender_email=None, body_text=None, attachment_filenames=None, headers=None)
    result = classify_email(email, use_ai=False)
    assert result.document_type == "unknown"
    assert result.needs_manual_review is True


# ============================================================================
# PRECEDENCE
# ============================================================================

CONFLICTING_EMAIL = ClassificationInput(
    subject="SI draft for approval",
    sender_email="ops@intoglo.com",
    attachment_filenames=["HBL_123.pdf"],
)


@pytest.mark.parametrize("policy,expected_type,expected_source", [
    ("attachment_first", "house_bl", "attachment_filename"),
    ("subject_first", "si_draft", "subject"),
    ("no_such_policy", "house_bl", "attachment_filename"),
])
def test_precedence_policy(policy, expected_type, expected_source):
    result = classify_email(CONFLICTING_EMAIL, use_ai=False, precedence=policy)
    assert result.document_type == expected_type
    assert result.document_source == expected_source


# ============================================================================
# REPLIES AND THREADS
# ============================================================================

def test_reply_without_attachment_is_downgraded():
    email = ClassificationInput(
        subject="RE: Booking Confirmation : 263522431",
        sender_email="in.export@maersk.com",
        is_response=True,
    )
    result = classify_email(email, use_ai=False)

    assert result.document_type == "booking_confirmation"
    assert result.no_document_evidence is True
    assert result.document_confidence == 45
    assert result.suggested_workflow_state is None
    assert "no_document_evidence" in result.matched_markers
    assert result.is_thread_reply is True
    assert result.clean_subject == "Booking Confirmation : 263522431"


def test_reply_reads_fresh_body_before_subject():
    email = ClassificationInput(
        subject="RE: Booking Confirmation : 263522431",
        sender_email="in.export@maersk.com",
        body_text="Please find attached the arrival notice for this booking.",
        is_response=True,
    )
    result = classify_email(email, use_ai=False)

    assert result.document_type == "arrival_notice"
    assert result.document_source == "body"
    assert result.no_document_evidence is False


def test_reply_repeating_thread_document_is_general_correspondence():
    email = ClassificationInput(
        subject="RE: MBL copy",
        sender_email="docs@maersk.com",
        attachment_filenames=["MBL_778.pdf"],
        is_response=True,
        existing_doc_types_in_thread=["bill_of_lading"],
    )
    result = classify_email(email, use_ai=False)

    assert result.document_type == "general_correspondence"
    assert result.document_confidence == 70
    assert "thread_dedup:bill_of_lading" in result.matched_markers
    assert result.suggested_workflow_state is None


def test_relayed_sender_uses_true_sender():
    email = ClassificationInput(
        subject="Booking Confirmation : 99881",
        sender_email="shipments@intoglo.com",
        sender_name="Maersk Export via Shipments",
        headers={"X-Original-Sender": "in.export@maersk.com"},
    )
    result = classify_email(email, use_ai=False)

    assert result.true_sender == "in.export@maersk.com"
    assert result.sender_category == "carrier"
    assert result.direction == "inbound"


# ============================================================================
# AI FALLBACK
# ============================================================================

# Reply with no attachment and no intent: deterministic confidence 47
LOW_CONFIDENCE_EMAIL = ClassificationInput(
    subject="RE: Bill of Lading 12345",
    sender_email="ops@example.com",
    is_response=True,
)


class FakeAI:
    def __init__(self, payload=None, error=None, delay=0):
        self.payload = payload
        self.error = error
        self.delay = delay
        self.calls = []

    def __call__(self, email):
        self.calls.append(email)
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.payload


def test_low_confidence_baseline():
    result = classify_email(LOW_CONFIDENCE_EMAIL, use_ai=False)
    assert result.document_type == "bill_of_lading"
    assert result.document_confidence == 47
    assert result.email_type == "general_correspondence"
    assert result.needs_manual_review is True


def test_ai_answer_adopted_when_more_confident():
    ai = FakeAI({"document_type": "Bill of Lading", "confidence": 0.8, "reasoning": "MBL discussed"})
    result = classify_email(LOW_CONFIDENCE_EMAIL, ai_classifier=ai)

    assert len(ai.calls) == 1
    assert ai.calls[0]["subject"] == "RE: Bill of Lading 12345"
    assert result.used_ai_fallback is True
    assert result.document_type == "bill_of_lading"
    assert result.document_source == "ai_fallback"
    assert result.document_confidence == 80
    assert result.needs_manual_review is False
    assert result.fallback_reason == "low_confidence:47"
    assert result.ai_reasoning == "MBL discussed"
    assert "ai_fallback:bill_of_lading" in result.matched_markers


def test_ai_answer_ignored_when_less_confident():
    ai = FakeAI({"document_type": "invoice", "confidence": 30, "reasoning": "maybe"})
    result = classify_email(LOW_CONFIDENCE_EMAIL, ai_classifier=ai)

    assert result.used_ai_fallback is True
    assert result.document_type == "bill_of_lading"
    assert result.document_source == "subject"
    assert result.document_confidence == 47
    assert result.needs_manual_review is True


def test_ai_unrecognized_type_is_not_adopted():
    ai = FakeAI({"document_type": "container ship", "confidence": 95})
    result = classify_email(LOW_CONFIDENCE_EMAIL, ai_classifier=ai)

    assert result.document_type == "bill_of_lading"
    assert result.needs_manual_review is True


@pytest.mark.parametrize("ai,expected_reason", [
    (FakeAI(error=AIClassificationError("quota exceeded")), "low_confidence:47,fallback_unavailable:quota exceeded"),
    (FakeAI(payload="not json"), "low_confidence:47,fallback_unavailable:Expected dict payload, got str"),
    (FakeAI(error=RuntimeError("socket closed")), "low_confidence:47,fallback_unavailable:socket closed"),
])
def test_ai_failure_keeps_deterministic_answer(ai, expected_reason):
    result = classify_email(LOW_CONFIDENCE_EMAIL, ai_classifier=ai)

    assert result.used_ai_fallback is False
    assert result.document_type == "bill_of_lading"
    assert result.needs_manual_review is True
    assert result.fallback_reason == expected_reason


def test_ai_timeout_keeps_deterministic_answer():
    ai = FakeAI({"document_type": "bill_of_lading", "confidence": 99}, delay=1.0)
    started = time.time()
    result = classify_email(LOW_CONFIDENCE_EMAIL, ai_classifier=ai, ai_timeout=0.05)

    assert time.time() - started < 0.9
    assert result.used_ai_fallback is False
    assert result.fallback_reason == "low_confidence:47,fallback_timeout"
    assert result.needs_manual_review is True


def test_confident_email_never_calls_ai():
    ai = FakeAI({"document_type": "invoice", "confidence": 99})
    result = classify_email(
        ClassificationInput(subject="Booking Confirmation : 263522431", sender_email="in.export@maersk.com"),
        ai_classifier=ai,
    )

    assert ai.calls == []
    assert result.used_ai_fallback is False
    assert result.fallback_reason is None


def test_use_ai_false_overrides_classifier():
    ai = FakeAI({"document_type": "bill_of_lading", "confidence": 99})
    result = classify_email(LOW_CONFIDENCE_EMAIL, ai_classifier=ai, use_ai=False)

    assert ai.calls == []
    assert result.fallback_reason == "low_confidence:47,fallback_disabled"


# ============================================================================
# PAYLOAD COERCION
# ============================================================================

@pytest.mark.parametrize("value,expected", [
    (150, 100),
    (-5, 0),
    (72.6, 73),
    ("88", 88),
    ("abc", 0),
    (None, 0),
    (math.nan, 0),
])
def test_clamp_confidence(value, expected):
    assert clamp_confidence(value) == expected


@pytest.mark.parametrize("payload,expected_type,expected_confidence", [
    ({"document_type": "Arrival Notice", "confidence": 0.92}, "arrival_notice", 92),
    ({"document_type": "house-bl", "confidence": 85}, "house_bl", 85),
    ({"document_type": "", "confidence": 250}, "unknown", 100),
    ({"document_type": None, "confidence": True}, "unknown", 0),
    ({}, "unknown", 0),
])
def test_ai_payload_coercion(payload, expected_type, expected_confidence):
    result = AIClassification.model_validate(payload)
    assert result.document_type == expected_type
    assert result.confidence == expected_confidence
