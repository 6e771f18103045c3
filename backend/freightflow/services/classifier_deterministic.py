"""
Deterministic shipping-document classifier.

Classifies an email into a shipping document type (booking confirmation, SI
draft, bill of lading, arrival notice, ...) from four independent evidence
groups:

    1. Attachment filenames
    2. Extracted attachment text (content markers)
    3. Subject line (reply/forward prefixes already stripped)
    4. Fresh body text (quoted history already removed)

Each group reports its strongest match. A precedence policy then decides which
group wins when they disagree. Emails with no deterministic match come back as
'unknown' with confidence 0 so the arbitrator can decide on AI fallback.
"""

import os
import re
import logging
from typing import Dict, Optional, List
from dotenv import load_dotenv

from ..schemas import ClassificationInput, ThreadContext

load_dotenv()
logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

PRECEDENCE_POLICIES = {
    "attachment_first": ["attachment_filename", "attachment_content", "subject", "body"],
    "subject_first": ["subject", "attachment_filename", "attachment_content", "body"],
}
DEFAULT_PRECEDENCE = os.getenv("CLASSIFICATION_PRECEDENCE", "attachment_first")

FILENAME_CONFIDENCE = 95
BODY_CONFIDENCE = 85
THREAD_DEDUP_CONFIDENCE = 70

UNKNOWN_DOCUMENT_TYPE = "unknown"
GENERAL_CORRESPONDENCE = "general_correspondence"


# ============================================================================
# DOCUMENT TYPE REGISTRY
# ============================================================================

DOCUMENT_TYPES = {
    "booking_confirmation",
    "booking_amendment",
    "booking_cancellation",
    "shipping_instruction",
    "si_draft",
    "si_confirmation",
    "checklist",
    "shipping_bill",
    "leo_copy",
    "vgm_confirmation",
    "sob_confirmation",
    "bill_of_lading",
    "house_bl",
    "hbl_draft",
    "invoice",
    "freight_invoice",
    "commercial_invoice",
    "packing_list",
    "isf_filing",
    "arrival_notice",
    "draft_entry",
    "entry_summary",
    "customs_clearance",
    "duty_invoice",
    "delivery_order",
    "container_release",
    "work_order",
    "proof_of_delivery",
    "empty_return",
    "rate_quote",
    "vessel_schedule",
    "cutoff_advisory",
    GENERAL_CORRESPONDENCE,
    UNKNOWN_DOCUMENT_TYPE,
}


# ============================================================================
# PATTERN TABLES - order matters, more specific patterns first
# ============================================================================

# (pattern, document_type, sub_type)
# Filenames use '_' as a separator and \b treats '_' as a word character,
# so acronyms are bounded by non-letters instead.
FILENAME_PATTERNS = [
    (r"7501|entry.?summary", "entry_summary", None),
    (r"draft.?entry|entry.?draft", "draft_entry", None),
    (r"(?<![a-z])ISF(?![a-z])|10\+2", "isf_filing", None),
    (r"duty.?invoice|customs.?invoice", "duty_invoice", None),
    (r"shipping.?bill|(?<![a-z])SB[_\- ]?\d+", "shipping_bill", None),
    (r"(?<![a-z])LEO(?![a-z])|let.?export", "leo_copy", None),
    (r"checklist", "checklist", None),
    (r"booking.?cancel", "booking_cancellation", None),
    (r"booking.?amend", "booking_amendment", None),
    (r"booking.?confirm|^BC[_\-]", "booking_confirmation", None),
    (r"(?<![a-z])SI(?![a-z]).*draft|draft.*(?<![a-z])SI(?![a-z])", "si_draft", None),
    (r"^SI[_\-]|shipping.?instruction", "shipping_instruction", None),
    (r"(?<![a-z])HBL(?![a-z]).*draft|draft.*(?<![a-z])(HBL|B/?L)(?![a-z])", "hbl_draft", None),
    (r"(?<![a-z])HBL(?![a-z])|house.?bill", "house_bl", "house"),
    (r"(?<![a-z])MBL(?![a-z])|master.?bill|bill.?of.?lading|sea.?waybill", "bill_of_lading", "master"),
    (r"(?<![a-z])SOB(?![a-z])|shipped.?on.?board", "sob_confirmation", None),
    (r"(?<![a-z])VGM(?![a-z])", "vgm_confirmation", None),
    (r"arrival.?notice|^AN[_\-\s]?\d+", "arrival_notice", None),
    (r"delivery.?order|^DO[_\-]\d+", "delivery_order", None),
    (r"container.?release|release.?order", "container_release", None),
    (r"(?<![a-z])POD(?![a-z])|proof.?of.?delivery", "proof_of_delivery", None),
    (r"freight.?invoice", "freight_invoice", "freight"),
    (r"commercial.?invoice|^CI[_\-]", "commercial_invoice", "commercial"),
    (r"packing.?list|^PL[_\-]", "packing_list", None),
    (r"invoice|^INV[_\-]", "invoice", None),
    (r"work.?order|dray(age)?.?order", "work_order", None),
]

# (required tokens, excluded tokens, document_type, sub_type, confidence)
# Tokens are matched against upper-cased extracted text.
CONTENT_MARKERS = [
    (["DEPARTMENT OF HOMELAND SECURITY", "ENTRY SUMMARY"], [], "entry_summary", "cbp_7501", 98),
    (["ENTRY SUMMARY", "CBP"], [], "entry_summary", "cbp_7501", 95),
    (["IMPORTER SECURITY FILING"], [], "isf_filing", None, 95),
    (["DRAFT", "ENTRY"], ["ENTRY SUMMARY"], "draft_entry", None, 88),
    (["SHIPPING BILL"], ["DRAFT"], "shipping_bill", None, 95),
    (["LET EXPORT ORDER"], [], "leo_copy", None, 95),
    (["CHECKLIST"], [], "checklist", None, 85),
    (["BOOKING CONFIRMATION"], ["AMENDMENT", "CANCEL"], "booking_confirmation", None, 95),
    (["BOOKING", "CONFIRMED"], ["AMENDMENT", "CANCEL"], "booking_confirmation", None, 85),
    (["BOOKING", "AMENDMENT"], [], "booking_amendment", None, 92),
    (["BOOKING", "CANCEL"], [], "booking_cancellation", None, 95),
    (["DRAFT", "SHIPPING INSTRUCTION"], [], "si_draft", None, 90),
    (["SHIPPING INSTRUCTION", "ACCEPTED"], [], "si_confirmation", None, 88),
    (["SHIPPING INSTRUCTION"], ["DRAFT"], "shipping_instruction", None, 90),
    (["HOUSE BILL OF LADING", "DRAFT"], [], "hbl_draft", None, 92),
    (["HOUSE BILL OF LADING"], ["DRAFT"], "house_bl", "house", 92),
    (["MASTER BILL OF LADING"], ["DRAFT"], "bill_of_lading", "master", 92),
    (["SEA WAYBILL"], ["DRAFT"], "bill_of_lading", "sea_waybill", 90),
    (["BILL OF LADING"], ["DRAFT", "HOUSE"], "bill_of_lading", "master", 85),
    (["SHIPPED ON BOARD"], ["DRAFT"], "sob_confirmation", None, 92),
    (["VERIFIED GROSS MASS"], [], "vgm_confirmation", None, 90),
    (["ARRIVAL NOTICE"], ["EXCEPTION", "PRE-ARRIVAL"], "arrival_notice", None, 95),
    (["DELIVERY ORDER"], [], "delivery_order", None, 92),
    (["CONTAINER", "RELEASE"], [], "container_release", None, 88),
    (["PROOF OF DELIVERY"], [], "proof_of_delivery", None, 95),
    (["DUTY", "INVOICE"], [], "duty_invoice", None, 88),
    (["COMMERCIAL INVOICE"], [], "commercial_invoice", "commercial", 92),
    (["FREIGHT", "INVOICE"], ["DUTY", "COMMERCIAL"], "freight_invoice", "freight", 88),
    (["PACKING LIST"], [], "packing_list", None, 92),
    (["INVOICE"], ["DUTY", "CUSTOMS", "COMMERCIAL"], "invoice", None, 85),
]

# (pattern, document_type, confidence)
SUBJECT_PATTERNS = [
    (r"\bSOB\s+CONFIRM", "sob_confirmation", 95),
    (r"\bSOB\s+for\b", "sob_confirmation", 95),
    (r"\bshipped\s+on\s+board", "sob_confirmation", 95),
    (r"\bon\s*board\s+confirm", "sob_confirmation", 90),

    (r"^Arrival\s+Notice\s*\(BL#:", "arrival_notice", 98),
    (r"^(COSCO|OOCL|SMIL)\s+Arrival\s+Notice", "arrival_notice", 98),
    (r"^CMA\s+CGM\s*-\s*Arrival\s+notice\s+available", "arrival_notice", 98),
    (r"\barrival\s+notice\b", "arrival_notice", 95),
    (r"\bnotice\s+of\s+arrival\b", "arrival_notice", 95),

    (r"\bHBL\s+DRAFT", "hbl_draft", 95),
    (r"\bBL\s+DRAFT\s+FOR\b", "hbl_draft", 95),
    (r"\bdraft\s+(HBL|B/?L)\b", "hbl_draft", 95),
    (r"\bBL\s+for\s+(your\s+)?(approval|review)", "hbl_draft", 90),

    (r"\bSI\s+draft", "si_draft", 95),
    (r"\bdraft\s+SI\b", "si_draft", 95),
    (r"\bSI\s+for\s+(your\s+)?(approval|review)", "si_draft", 90),

    (r"\bhouse\s*b/?l\b", "house_bl", 90),
    (r"\bfinal\s*B/?L\b", "bill_of_lading", 90),
    (r"\bbill\s+of\s+lading\b", "bill_of_lading", 95),
    (r"\bsea\s*waybill\b", "bill_of_lading", 90),
    (r"\bmaster\s*b/?l\b", "bill_of_lading", 90),
    (r"\bMBL\s*[#:]", "bill_of_lading", 85),

    (r"\bbooking.*cancel", "booking_cancellation", 95),
    (r"\bcancel.*booking", "booking_cancellation", 95),

    (r"\b(1st|2nd|3rd|\d+th)\s+UPDATE\b", "booking_amendment", 95),
    (r"\bamendment\s+to\s+booking", "booking_amendment", 95),
    (r"\bbooking.*amendment", "booking_amendment", 90),
    (r"\brollover\b", "booking_amendment", 85),

    (r"\bdelivery\s+order\b", "delivery_order", 95),
    (r"\bD/?O\s+(release|issued)", "delivery_order", 90),

    (r"\bSI\s+(submission|confirm)", "si_confirmation", 90),
    (r"\bshipping\s+instruction", "shipping_instruction", 90),

    (r"\bVGM\s+(confirm|submit|accept|receiv)", "vgm_confirmation", 95),
    (r"\bverified\s+gross\s+mass", "vgm_confirmation", 90),

    (r"^Booking\s+Confirmation\s*[:\-]", "booking_confirmation", 90),
    (r"CMA\s*CGM.*Booking\s+confirmation", "booking_confirmation", 90),
    (r"\[Hapag.*Booking\s+Confirmation", "booking_confirmation", 90),

    (r"\bfreight\s+invoice\b", "freight_invoice", 90),
    (r"\bcommercial\s+invoice", "commercial_invoice", 85),
    (r"\bduty\s+invoice", "duty_invoice", 95),
    (r"\bduty\s+(payment|statement|summary|bill)", "duty_invoice", 90),
    (r"\brequest\s+for\s+duty", "duty_invoice", 90),
    (r"\binvoice\s*#\s*[A-Z0-9-]+", "invoice", 90),
    (r"\binvoice\s+\d+", "invoice", 85),

    (r"\bISF\s+(fil|confirm|submit)", "isf_filing", 90),

    (r"\bchecklist\s+(attached|for|ready)", "checklist", 95),
    (r"\b(export|CHA|shipment)\s+checklist", "checklist", 95),

    (r"\bshipping\s+bill\s+(copy|number|attached)", "shipping_bill", 95),
    (r"\bSB\s+(copy|no\.?|number)", "shipping_bill", 90),
    (r"\bLEO\s+(copy|attached|received)", "leo_copy", 95),
    (r"\blet\s+export\s+order", "leo_copy", 95),

    (r"\bdraft\s+entry", "draft_entry", 95),
    (r"\bentry\s+draft", "draft_entry", 95),
    (r"\b7501\s+draft", "draft_entry", 95),
    (r"\bentry\s+for\s+(review|approval)", "draft_entry", 90),

    (r"\bentry\s+summary", "entry_summary", 95),
    (r"\b7501\s+(filed|submitted|summary)", "entry_summary", 95),
    (r"\bcustoms\s+entry\s+(filed|released)", "entry_summary", 90),
    (r"\b\d{3}-\d{7}-\d-7501\b", "entry_summary", 95),

    (r"Cargo\s+Release\s+Update", "customs_clearance", 95),
    (r"ACE\s+RELEASE", "customs_clearance", 95),
    (r"\bcustoms\s+clear(ance|ed)", "customs_clearance", 90),

    (r"\bcontainer\s+release", "container_release", 85),
    (r"Work\s+Order\s*:", "work_order", 90),
    (r"Dray(age)?\s+Order", "work_order", 90),

    (r"Proof\s+of\s+Delivery", "proof_of_delivery", 95),
    (r"\bPOD\s+(attached|confirm|received|copy)", "proof_of_delivery", 95),
    (r"Signed\s+(POD|delivery|BOL)", "proof_of_delivery", 95),

    (r"Empty\s+Return|MTY\s+Return", "empty_return", 95),
    (r"\b(rate|freight)\s+quot", "rate_quote", 90),
    (r"\b(vessel|sailing)\s+schedule\b", "vessel_schedule", 90),
    (r"\bcut\s*-?\s*off\s+(advis|change|update)", "cutoff_advisory", 90),
]

# (pattern, document_type)
BODY_PATTERNS = [
    (r"(attached|enclosed|find)\b.{0,40}\barrival\s+notice", "arrival_notice"),
    (r"(attached|enclosed|find)\b.{0,40}\bbooking\s+confirmation", "booking_confirmation"),
    (r"(attached|enclosed|find)\b.{0,40}\b(draft\s+HBL|HBL\s+draft|draft\s+B/?L)", "hbl_draft"),
    (r"(attached|enclosed|find)\b.{0,40}\b(SI\s+draft|draft\s+SI)\b", "si_draft"),
    (r"(attached|enclosed|find)\b.{0,40}\bchecklist", "checklist"),
    (r"(attached|enclosed|find)\b.{0,40}\bshipping\s+bill", "shipping_bill"),
    (r"(attached|enclosed|find)\b.{0,40}\b(draft\s+entry|entry\s+draft|7501)", "draft_entry"),
    (r"(attached|enclosed|find)\b.{0,40}\bduty\s+invoice", "duty_invoice"),
    (r"(attached|enclosed|find)\b.{0,40}\bdelivery\s+order", "delivery_order"),
    (r"(attached|enclosed|find)\b.{0,40}\b(POD|proof\s+of\s+delivery)\b", "proof_of_delivery"),
    (r"(attached|enclosed|find)\b.{0,40}\b(MBL|bill\s+of\s+lading|sea\s*waybill)\b", "bill_of_lading"),
    (r"\bcontainer(s)?\s+(has|have)\s+been\s+(loaded|shipped)\s+on\s+board", "sob_confirmation"),
    (r"\bbooking\s+(has\s+been|is)\s+cancel", "booking_cancellation"),
    (r"\bVGM\s+(has\s+been\s+)?(submitted|accepted)", "vgm_confirmation"),
]


def _compile(patterns):
    return [(re.compile(entry[0], re.IGNORECASE),) + tuple(entry[1:]) for entry in patterns]


_FILENAME_PATTERNS = _compile(FILENAME_PATTERNS)
_SUBJECT_PATTERNS = _compile(SUBJECT_PATTERNS)
_BODY_PATTERNS = _compile(BODY_PATTERNS)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def extract_domain(email_address: str) -> str:
    """Extract domain from email address."""
    if not email_address:
        return ""
    match = re.search(r"@([\w\.-]+)$", email_address.strip().lower())
    return match.group(1) if match else ""


def _match(document_type: str, confidence: int, source: str, marker: str, sub_type: str = None) -> Dict:
    return {
        "document_type": document_type,
        "document_sub_type": sub_type,
        "confidence": confidence,
        "source": source,
        "marker": marker,
    }


# ============================================================================
# EVIDENCE GROUPS
# ============================================================================

def check_attachment_filenames(filenames: List[str]) -> Optional[Dict]:
    """
    Attachment filenames

    First filename (in attachment order) that matches any pattern wins.
    Filenames are the most precise signal: carriers and CHAs name PDFs after
    the document they contain.
    """
    for filename in filenames or []:
        if not filename:
            continue
        for pattern, document_type, sub_type in _FILENAME_PATTERNS:
            if pattern.search(filename):
                return _match(
                    document_type,
                    FILENAME_CONFIDENCE,
                    "attachment_filename",
                    f"filename:{filename}",
                    sub_type,
                )
    return None


def check_attachment_content(text: Optional[str]) -> Optional[Dict]:
    """
    Extracted attachment text

    Every marker set is evaluated; the highest confidence wins, first declared
    on ties. A marker set matches when all required tokens are present and no
    excluded token is.
    """
    if not text or not text.strip():
        return None

    text_upper = text.upper()
    best = None

    for required, excluded, document_type, sub_type, confidence in CONTENT_MARKERS:
        if not all(token in text_upper for token in required):
            continue
        if any(token in text_upper for token in excluded):
            continue
        if best is None or confidence > best["confidence"]:
            best = _match(
                document_type,
                confidence,
                "attachment_content",
                "content:" + "+".join(required),
                sub_type,
            )

    return best


def check_subject(clean_subject: str) -> Optional[Dict]:
    """Subject line, reply/forward prefixes already stripped. First match wins."""
    if not clean_subject:
        return None
    for pattern, document_type, confidence in _SUBJECT_PATTERNS:
        if pattern.search(clean_subject):
            return _match(document_type, confidence, "subject", f"subject:{pattern.pattern}")
    return None


def check_body(fresh_body: str) -> Optional[Dict]:
    """Fresh (unquoted) body text. First match wins."""
    if not fresh_body:
        return None
    for pattern, document_type in _BODY_PATTERNS:
        if pattern.search(fresh_body):
            return _match(document_type, BODY_CONFIDENCE, "body", f"body:{pattern.pattern}")
    return None


def resolve_precedence(policy: Optional[str]) -> List[str]:
    """Group order for a policy name; unknown names fall back to attachment_first."""
    order = PRECEDENCE_POLICIES.get(policy or DEFAULT_PRECEDENCE)
    if order is None:
        logger.warning(f"Unknown classification precedence '{policy}', using attachment_first")
        order = PRECEDENCE_POLICIES["attachment_first"]
    return list(order)


# ============================================================================
# MAIN CLASSIFIER
# ============================================================================

def classify_document(
    email: ClassificationInput,
    context: ThreadContext,
    precedence: Optional[str] = None,
) -> Dict:
    """
    Classify the shipping document an email represents.

    Args:
        email: Immutable classification input
        context: Thread context for the same email
        precedence: 'attachment_first' (default) or 'subject_first'

    Returns:
        Dictionary with document_type, document_sub_type, confidence (0-100),
        source, matched_markers and no_document_evidence.

    Reply handling:
        A reply or forward keeps the original subject even when it carries no
        document. On such emails without attachments the fresh body is
        consulted before the subject, and a subject-only match is flagged with
        no_document_evidence so the arbitrator downgrades it.
    """
    is_reply = email.is_response or context.is_thread

    groups = {
        "attachment_filename": check_attachment_filenames(email.attachment_filenames),
        "attachment_content": check_attachment_content(email.attachment_text),
        "subject": check_subject(context.clean_subject),
        "body": check_body(context.fresh_body),
    }

    order = resolve_precedence(precedence)
    if is_reply and not email.has_attachments:
        order.remove("body")
        order.insert(order.index("subject"), "body")

    matched_markers = [groups[name]["marker"] for name in order if groups[name]]

    winner = None
    for name in order:
        if groups[name]:
            winner = groups[name]
            break

    if winner is None:
        logger.debug(f"No deterministic document match for: {context.clean_subject or '[no subject]'}")
        return {
            "document_type": UNKNOWN_DOCUMENT_TYPE,
            "document_sub_type": None,
            "confidence": 0,
            "source": "none",
            "matched_markers": [],
            "no_document_evidence": False,
        }

    disagreeing = {groups[name]["document_type"] for name in order if groups[name]}
    if len(disagreeing) > 1:
        logger.info(
            f"Evidence groups disagree ({', '.join(sorted(disagreeing))}), "
            f"{winner['source']} wins under {precedence or DEFAULT_PRECEDENCE}"
        )

    # Replies re-sending a document the thread already produced must not
    # trigger the same workflow transition twice
    if is_reply and winner["document_type"] in email.existing_doc_types_in_thread:
        logger.info(f"Thread dedup: {winner['document_type']} already in thread, downgrading to {GENERAL_CORRESPONDENCE}")
        return {
            "document_type": GENERAL_CORRESPONDENCE,
            "document_sub_type": None,
            "confidence": THREAD_DEDUP_CONFIDENCE,
            "source": winner["source"],
            "matched_markers": matched_markers + [f"thread_dedup:{winner['document_type']}"],
            "no_document_evidence": False,
        }

    no_document_evidence = is_reply and not email.has_attachments and winner["source"] == "subject"
    if no_document_evidence:
        logger.info(f"Subject-only match '{winner['document_type']}' on reply without attachments")

    logger.info(f"Classified document as {winner['document_type']} via {winner['source']} ({winner['confidence']})")

    return {
        "document_type": winner["document_type"],
        "document_sub_type": winner["document_sub_type"],
        "confidence": winner["confidence"],
        "source": winner["source"],
        "matched_markers": matched_markers,
        "no_document_evidence": no_document_evidence,
    }
