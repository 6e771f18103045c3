"""
Email intent classifier.

Runs next to the document classifier and answers a different question: what is
the sender trying to do (approve, request, report status, chase)? Intent lets
emails with no attached document still move a shipment forward, e.g. a
customer replying "SI approved".

Also scores sentiment so urgent or escalated mail can be flagged.
"""

import re
import logging
from typing import Dict, List, Optional

from ..schemas import ThreadContext

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

MIN_INTENT_CONFIDENCE = 70
OPTIONAL_TOKEN_BONUS = 2
MAX_PATTERN_CONFIDENCE = 99

UNKNOWN_EMAIL_TYPE = "unknown"
GENERAL_CORRESPONDENCE = "general_correspondence"


# ============================================================================
# EMAIL TYPE REGISTRY
# ============================================================================
#
# Each subject/body pattern matches when every required token appears as a
# whole word in the upper-cased text and no exclude phrase does. Every
# optional token present adds a small bonus.

EMAIL_TYPE_CONFIGS = [
    {
        "type": "approval_request",
        "category": "approval",
        "subject": [
            {"required": ["CHECKLIST", "APPROVAL"], "confidence": 95},
            {"required": ["SI", "APPROVAL"], "confidence": 93},
            {"required": ["BL", "APPROVAL"], "confidence": 93},
            {"required": ["FOR YOUR", "APPROVAL"], "confidence": 92},
            {"required": ["APPROVAL"], "optional": ["CHECKLIST", "SI", "BL", "DRAFT"], "exclude": ["APPROVAL GRANTED"], "confidence": 90},
            {"required": ["APPROVE"], "optional": ["PLEASE", "KINDLY"], "confidence": 88},
            {"required": ["FOR", "REVIEW"], "optional": ["DRAFT"], "confidence": 85},
        ],
        "body": [
            {"required": ["AWAITING", "APPROVAL"], "confidence": 88},
            {"required": ["PLEASE", "APPROVE"], "confidence": 85},
            {"required": ["KINDLY", "APPROVE"], "confidence": 85},
        ],
    },
    {
        "type": "approval_granted",
        "category": "approval",
        "subject": [
            {"required": ["APPROVAL", "GRANTED"], "confidence": 95},
            {"required": ["APPROVED"], "exclude": ["NOT APPROVED", "REJECTED"], "confidence": 92},
        ],
        "body": [
            {"required": ["APPROVED"], "optional": ["CHECKLIST", "SI", "BL"], "exclude": ["NOT APPROVED"], "confidence": 85},
            {"required": ["GO AHEAD"], "confidence": 80},
        ],
    },
    {
        "type": "approval_rejected",
        "category": "approval",
        "subject": [
            {"required": ["REJECTED"], "confidence": 90},
            {"required": ["NOT APPROVED"], "confidence": 90},
            {"required": ["REVISION", "REQUIRED"], "confidence": 85},
        ],
        "body": [
            {"required": ["REJECTED"], "confidence": 85},
            {"required": ["PLEASE", "REVISE"], "confidence": 82},
            {"required": ["CORRECTION", "REQUIRED"], "confidence": 82},
        ],
    },
    {
        "type": "stuffing_update",
        "category": "status",
        "sender_categories": ["cha_india", "shipper", "intoglo"],
        "subject": [
            {"required": ["FACTORY", "STUFFING"], "confidence": 95},
            {"required": ["STUFFING"], "optional": ["COMPLETE", "DONE", "UPDATE", "STATUS"], "confidence": 92},
            {"required": ["CONTAINER", "STUFFED"], "confidence": 90},
        ],
    },
    {
        "type": "gate_in_update",
        "category": "status",
        "subject": [
            {"required": ["GATE", "IN"], "optional": ["CONFIRM", "DONE"], "confidence": 92},
            {"required": ["GATED", "IN"], "confidence": 92},
            {"required": ["ARRIVED", "AT", "ICD"], "confidence": 88},
            {"required": ["ARRIVED", "AT", "CFS"], "confidence": 88},
            {"required": ["ARRIVED", "AT", "PORT"], "confidence": 88},
        ],
    },
    {
        "type": "handover_update",
        "category": "status",
        "sender_categories": ["cha_india"],
        "subject": [
            {"required": ["HANDOVER"], "optional": ["DONE", "COMPLETE"], "confidence": 92},
            {"required": ["RAILOUT"], "optional": ["DONE", "COMPLETE"], "confidence": 92},
            {"required": ["HAND", "OVER"], "confidence": 88},
        ],
    },
    {
        "type": "departure_update",
        "category": "status",
        "subject": [
            {"required": ["VESSEL", "SAILED"], "confidence": 95},
            {"required": ["SOB", "CONFIRMATION"], "confidence": 95},
            {"required": ["DEPARTED"], "confidence": 92},
            {"required": ["SAILING", "CONFIRMATION"], "confidence": 92},
            {"required": ["SHIPPED", "ON", "BOARD"], "confidence": 90},
            {"required": ["SOB"], "confidence": 88},
            {"required": ["ETD", "CONFIRMED"], "confidence": 88},
            {"required": ["SAILED"], "confidence": 85},
        ],
    },
    {
        "type": "transit_update",
        "category": "status",
        "subject": [
            {"required": ["IN", "TRANSIT"], "confidence": 92},
            {"required": ["TRANSIT", "UPDATE"], "confidence": 90},
            {"required": ["TRANSSHIPMENT"], "optional": ["UPDATE", "NOTICE"], "confidence": 88},
            {"required": ["ETA", "UPDATE"], "confidence": 88},
            {"required": ["VESSEL", "UPDATE"], "confidence": 85},
        ],
    },
    {
        "type": "arrival_update",
        "category": "status",
        "subject": [
            {"required": ["VESSEL", "ARRIVAL"], "confidence": 95},
            {"required": ["ARRIVAL", "NOTICE"], "confidence": 95},
            {"required": ["ARRIVED"], "exclude": ["ARRIVED AT ICD", "ARRIVED AT CFS", "ARRIVED AT PORT"], "confidence": 92},
            {"required": ["DISCHARGED"], "confidence": 88},
        ],
    },
    {
        "type": "pre_alert",
        "category": "customs",
        "sender_categories": ["intoglo", "cha_india", "partner"],
        "subject": [
            {"required": ["PRE-ALERT"], "confidence": 95},
            {"required": ["PREALERT"], "confidence": 95},
            {"required": ["PRE ALERT"], "confidence": 95},
            {"required": ["PRE-ARRIVAL"], "confidence": 92},
        ],
    },
    {
        "type": "clearance_initiation",
        "category": "customs",
        "subject": [
            {"required": ["CLEARANCE", "INITIATION"], "confidence": 95},
            {"required": ["CUSTOMS", "CLEARANCE", "REQUEST"], "confidence": 90},
            {"required": ["CUSTOMS", "CLEARANCE"], "optional": ["INITIATE", "STARTED"], "exclude": ["CLEARED"], "confidence": 88},
        ],
    },
    {
        "type": "clearance_complete",
        "category": "customs",
        "subject": [
            {"required": ["OUT OF CHARGE"], "confidence": 95},
            {"required": ["CUSTOMS", "RELEASED"], "confidence": 92},
            {"required": ["OOC"], "confidence": 90},
            {"required": ["CARGO", "RELEASED"], "confidence": 90},
            {"required": ["CLEARED"], "optional": ["CUSTOMS", "CARGO"], "confidence": 88},
        ],
    },
    {
        "type": "delivery_scheduling",
        "category": "delivery",
        "subject": [
            {"required": ["DELIVERY", "APPOINTMENT"], "confidence": 95},
            {"required": ["DELIVERY", "SCHEDULE"], "confidence": 92},
            {"required": ["DELIVERY", "PLANNING"], "confidence": 90},
            {"required": ["APPOINTMENT"], "optional": ["CONFIRM", "SCHEDULED"], "confidence": 85},
        ],
    },
    {
        "type": "pickup_scheduling",
        "category": "delivery",
        "subject": [
            {"required": ["PICKUP"], "optional": ["SCHEDULE", "ARRANGE", "READY"], "confidence": 88},
            {"required": ["CONTAINER", "OUT"], "confidence": 88},
            {"required": ["DRAYAGE"], "confidence": 85},
        ],
    },
    {
        "type": "delivery_complete",
        "category": "delivery",
        "subject": [
            {"required": ["SUCCESSFULLY", "DELIVERED"], "confidence": 95},
            {"required": ["DELIVERY", "COMPLETE"], "confidence": 92},
            {"required": ["DELIVERED"], "confidence": 90},
            {"required": ["POD", "ATTACHED"], "confidence": 90},
        ],
    },
    {
        "type": "quote_request",
        "category": "commercial",
        "subject": [
            {"required": ["REQUEST", "FOR", "QUOTE"], "confidence": 95},
            {"required": ["RATE", "QUOTE"], "exclude": ["QUOTE ATTACHED"], "confidence": 92},
            {"required": ["RFQ"], "confidence": 92},
            {"required": ["QUOTE"], "optional": ["REQUEST", "FREIGHT", "FCL"], "exclude": ["QUOTE ATTACHED", "OUR QUOTE"], "confidence": 90},
        ],
    },
    {
        "type": "quote_response",
        "category": "commercial",
        "subject": [
            {"required": ["QUOTE", "ATTACHED"], "confidence": 92},
            {"required": ["QUOTATION", "ATTACHED"], "confidence": 92},
            {"required": ["RATE", "OFFER"], "confidence": 90},
            {"required": ["OUR", "QUOTE"], "confidence": 88},
            {"required": ["FREIGHT", "RATES"], "confidence": 88},
        ],
    },
    {
        "type": "payment_request",
        "category": "commercial",
        "subject": [
            {"required": ["PAYMENT", "DUE"], "confidence": 90},
            {"required": ["PAYMENT", "REQUEST"], "confidence": 90},
            {"required": ["STATEMENT"], "optional": ["ACCOUNT", "OUTSTANDING"], "confidence": 85},
            {"required": ["INVOICE"], "optional": ["ATTACHED", "DUE"], "exclude": ["PACKING", "COMMERCIAL INVOICE"], "confidence": 82},
        ],
    },
    {
        "type": "payment_confirmation",
        "category": "commercial",
        "subject": [
            {"required": ["PAYMENT", "SUCCESSFUL"], "confidence": 95},
            {"required": ["PAYMENT", "RECEIVED"], "confidence": 92},
            {"required": ["PAYMENT", "CONFIRMED"], "confidence": 92},
        ],
    },
    {
        "type": "amendment_request",
        "category": "change",
        "subject": [
            {"required": ["AMENDMENT"], "optional": ["REQUEST", "REQUIRED"], "exclude": ["BOOKING AMENDMENT"], "confidence": 88},
            {"required": ["AMEND"], "optional": ["PLEASE", "NEED"], "confidence": 85},
            {"required": ["NEED", "REVISED"], "confidence": 85},
        ],
    },
    {
        "type": "cancellation_notice",
        "category": "change",
        "subject": [
            {"required": ["CANCELLED"], "confidence": 88},
            {"required": ["CANCELLATION"], "confidence": 88},
            {"required": ["CANCEL"], "optional": ["BOOKING", "SHIPMENT"], "confidence": 85},
        ],
    },
    {
        "type": "query",
        "category": "communication",
        "subject": [
            {"required": ["QUERY"], "confidence": 85},
            {"required": ["CLARIFICATION"], "confidence": 85},
            {"required": ["CLARIFY"], "confidence": 82},
        ],
        "body": [
            {"required": ["PLEASE", "CLARIFY"], "confidence": 80},
            {"required": ["KINDLY", "ADVISE"], "confidence": 80},
        ],
    },
    {
        "type": "reminder",
        "category": "communication",
        "subject": [
            {"required": ["GENTLE", "REMINDER"], "confidence": 95},
            {"required": ["REMINDER"], "confidence": 90},
            {"required": ["FOLLOW", "UP"], "confidence": 82},
        ],
    },
    {
        "type": "urgent_action",
        "category": "communication",
        "subject": [
            {"required": ["URGENT"], "confidence": 90},
            {"required": ["ASAP"], "confidence": 88},
            {"required": ["IMMEDIATE"], "optional": ["ACTION", "ATTENTION"], "confidence": 88},
        ],
    },
    {
        "type": "delay_notice",
        "category": "communication",
        "subject": [
            {"required": ["DELAY"], "optional": ["NOTICE", "UPDATE"], "confidence": 88},
            {"required": ["ROLLOVER"], "confidence": 85},
            {"required": ["HOLD"], "confidence": 82},
        ],
    },
    {
        "type": "demurrage_action",
        "category": "communication",
        "subject": [
            {"required": ["AVOIDING", "DEMURRAGE"], "confidence": 95},
            {"required": ["DEMURRAGE"], "confidence": 92},
            {"required": ["DETENTION"], "confidence": 92},
            {"required": ["LFD"], "confidence": 85},
        ],
    },
    {
        "type": "document_share",
        "category": "communication",
        "subject": [
            {"required": ["FINAL", "BL"], "confidence": 90},
            {"required": ["BOOKING", "CONFIRMATION"], "confidence": 88},
            {"required": ["EXPRESS", "BL"], "confidence": 88},
            {"required": ["PLEASE", "FIND", "ATTACHED"], "confidence": 88},
            {"required": ["PFA"], "confidence": 85},
            {"required": ["ATTACHED", "HEREWITH"], "confidence": 85},
            {"required": ["DRAFT", "BL"], "confidence": 85},
            {"required": ["SHARING"], "optional": ["DOCUMENTS", "FILES"], "confidence": 82},
        ],
        "body": [
            {"required": ["PLEASE", "FIND", "ATTACHED"], "confidence": 82},
            {"required": ["PFA"], "confidence": 80},
        ],
    },
    {
        "type": "acknowledgement",
        "category": "communication",
        "subject": [
            {"required": ["ACKNOWLEDGED"], "confidence": 92},
            {"required": ["RECEIVED", "THANKS"], "confidence": 88},
            {"required": ["NOTED"], "optional": ["THANKS", "WITH"], "confidence": 85},
        ],
        "body": [
            {"required": ["ACKNOWLEDGED"], "confidence": 90},
            {"required": ["RECEIVED", "WILL", "PROCESS"], "confidence": 88},
            {"required": ["NOTED", "THANKS"], "confidence": 85},
        ],
    },
    {
        "type": "escalation",
        "category": "communication",
        "subject": [
            {"required": ["ESCALATION"], "confidence": 95},
            {"required": ["ESCALATE"], "confidence": 92},
            {"required": ["COMPLAINT"], "confidence": 90},
            {"required": ["UNRESOLVED"], "confidence": 88},
            {"required": ["PENDING", "SINCE"], "confidence": 85},
        ],
        "body": [
            {"required": ["ESCALATING", "THIS"], "confidence": 92},
            {"required": ["MULTIPLE", "TIMES"], "confidence": 85},
            {"required": ["STILL", "WAITING"], "confidence": 82},
        ],
    },
]

EMAIL_CATEGORIES = {config["type"]: config["category"] for config in EMAIL_TYPE_CONFIGS}
EMAIL_CATEGORIES[GENERAL_CORRESPONDENCE] = "communication"
EMAIL_CATEGORIES[UNKNOWN_EMAIL_TYPE] = "unknown"


# ============================================================================
# SENTIMENT REGISTRY
# ============================================================================

# (phrases, weight) - every phrase found in the text adds its weight
SENTIMENT_SUBJECT_WEIGHTS = [
    (["URGENT", "ASAP", "IMMEDIATELY"], 10),
    (["RUSH", "PRIORITY", "CRITICAL"], 9),
    (["TIME SENSITIVE", "DEADLINE"], 8),
    (["EOD", "END OF DAY"], 7),
    (["ESCALATION", "ESCALATE"], 10),
    (["COMPLAINT"], 8),
    (["UNRESOLVED", "PENDING SINCE", "STILL WAITING", "NO RESPONSE"], 7),
    (["DISAPPOINTED", "DISSATISFIED"], -8),
    (["FAILED", "ERROR", "WRONG"], -6),
    (["PROBLEM"], -5),
    (["DELAYED", "MISSING"], -4),
    (["THANK YOU", "THANKS"], 5),
    (["APPRECIATE", "GRATEFUL"], 6),
    (["WELL DONE", "GREAT JOB"], 7),
]

SENTIMENT_BODY_WEIGHTS = [
    (["PLEASE EXPEDITE", "NEED URGENTLY"], 8),
    (["AS SOON AS POSSIBLE"], 7),
    (["ESCALATING THIS", "RAISING THIS"], 9),
    (["BEEN WAITING", "FOLLOWING UP AGAIN"], 6),
    (["DISAPPOINTED", "FRUSTRATED"], -8),
    (["POOR SERVICE", "BAD EXPERIENCE"], -8),
    (["NOT HAPPY", "UNACCEPTABLE"], -7),
    (["PLEASE EXPLAIN", "WHY IS THIS"], -4),
    (["THANK YOU", "THANKS FOR"], 5),
    (["APPRECIATE YOUR", "GRATEFUL FOR"], 6),
    (["EXCELLENT", "GREAT SERVICE"], 7),
]

URGENT_EMAIL_TYPES = {"urgent_action", "escalation"}


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

_TOKEN_CACHE: Dict[str, "re.Pattern"] = {}


def has_token(text_upper: str, token: str) -> bool:
    """Whole-word (or whole-phrase) match against upper-cased text."""
    pattern = _TOKEN_CACHE.get(token)
    if pattern is None:
        pattern = re.compile(r"(?<![A-Z0-9])" + re.escape(token) + r"(?![A-Z0-9])")
        _TOKEN_CACHE[token] = pattern
    return pattern.search(text_upper) is not None


def score_pattern(text_upper: str, pattern: Dict) -> Optional[int]:
    """Confidence for one pattern entry, or None when it does not match."""
    if not all(has_token(text_upper, token) for token in pattern["required"]):
        return None
    if any(has_token(text_upper, phrase) for phrase in pattern.get("exclude", [])):
        return None
    bonus = sum(OPTIONAL_TOKEN_BONUS for token in pattern.get("optional", []) if has_token(text_upper, token))
    return min(pattern["confidence"] + bonus, MAX_PATTERN_CONFIDENCE)


def best_match(text: str, section: str, sender_category: str) -> Optional[Dict]:
    """Highest-confidence email type for one text section ('subject' or 'body')."""
    if not text:
        return None
    text_upper = text.upper()
    best = None

    for config in EMAIL_TYPE_CONFIGS:
        allowed = config.get("sender_categories")
        if allowed and sender_category not in allowed:
            continue
        for pattern in config.get(section, []):
            confidence = score_pattern(text_upper, pattern)
            if confidence is None:
                continue
            if best is None or confidence > best["confidence"]:
                best = {
                    "email_type": config["type"],
                    "email_category": config["category"],
                    "confidence": confidence,
                    "matched_pattern": f"{section}:" + "+".join(pattern["required"]),
                }

    return best


def detect_sentiment(subject: str, body: str) -> Dict:
    """
    Score sentiment from weighted phrases in subject and body.

    Thresholds: >= 5 with an ESCALAT phrase escalated, >= 8 urgent,
    < -3 negative, > 3 positive, otherwise neutral.
    """
    subject_upper = (subject or "").upper()
    body_upper = (body or "").upper()
    score = 0
    matched = []

    for phrases, weight in SENTIMENT_SUBJECT_WEIGHTS:
        for phrase in phrases:
            if has_token(subject_upper, phrase):
                score += weight
                matched.append(f"subject:{phrase}")

    for phrases, weight in SENTIMENT_BODY_WEIGHTS:
        for phrase in phrases:
            if has_token(body_upper, phrase):
                score += weight
                matched.append(f"body:{phrase}")

    if score >= 5 and any("ESCALAT" in item for item in matched):
        sentiment = "escalated"
    elif score >= 8:
        sentiment = "urgent"
    elif score < -3:
        sentiment = "negative"
    elif score > 3:
        sentiment = "positive"
    else:
        sentiment = "neutral"

    return {"sentiment": sentiment, "score": score, "matched_patterns": matched}


# ============================================================================
# MAIN CLASSIFIER
# ============================================================================

def classify_intent(context: ThreadContext, sender_category: str, is_reply: bool = False) -> Dict:
    """
    Classify the communicative intent of an email.

    Originals are read subject first then body. Replies and forwards read
    the fresh body first, because their subject is inherited from the thread.

    Returns:
        Dictionary with email_type, email_category, confidence (0-100)
        and matched_patterns
    """
    is_reply = is_reply or context.is_thread
    sections = [("body", context.fresh_body), ("subject", context.clean_subject)] if is_reply \
        else [("subject", context.clean_subject), ("body", context.fresh_body)]

    result = None
    for section, text in sections:
        result = best_match(text, section, sender_category)
        if result and result["confidence"] >= MIN_INTENT_CONFIDENCE:
            break
        result = None

    if result is None:
        fallback_type = GENERAL_CORRESPONDENCE if is_reply else UNKNOWN_EMAIL_TYPE
        logger.debug(f"No intent match, using {fallback_type}")
        return {
            "email_type": fallback_type,
            "email_category": EMAIL_CATEGORIES[fallback_type],
            "confidence": 0,
            "matched_patterns": [],
        }

    logger.debug(f"Intent {result['email_type']} ({result['confidence']}) via {result['matched_pattern']}")
    return {
        "email_type": result["email_type"],
        "email_category": result["email_category"],
        "confidence": result["confidence"],
        "matched_patterns": [result["matched_pattern"]],
    }


def is_urgent(email_type: str, sentiment: str) -> bool:
    return sentiment in ("urgent", "escalated") or email_type in URGENT_EMAIL_TYPES


def known_email_types() -> List[str]:
    return sorted(EMAIL_CATEGORIES)
