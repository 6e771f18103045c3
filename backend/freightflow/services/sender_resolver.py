"""
Sender category and direction resolution.

Maps the real sending address to the role that party plays on a shipment
(carrier, CHA, US broker, trucker, shipper, ...) and derives direction:
mail from our own domain is outbound, everything else is inbound.
"""

import re
import logging
from typing import Dict, Optional

from .classifier_deterministic import extract_domain

logger = logging.getLogger(__name__)


INTERNAL_CATEGORY = "intoglo"
UNKNOWN_CATEGORY = "unknown"

SENDER_CATEGORIES = (
    "carrier",
    "cha_india",
    "customs_broker_us",
    "shipper",
    "consignee",
    "trucker",
    "warehouse",
    "partner",
    "platform",
    INTERNAL_CATEGORY,
    UNKNOWN_CATEGORY,
)


# ============================================================================
# SENDER REGISTRY - order matters, first matching category wins
# ============================================================================

SENDER_CATEGORY_PATTERNS = [
    ("carrier", [
        r"maersk",
        r"hapag|hlag",
        r"cma.?cgm",
        r"cosco|coscon",
        r"one-line|ocean.?network",
        r"evergreen",
        r"\bmsc\b|@msc\.com|mediterranean.?shipping",
        r"yang.?ming|@yml",
        r"\bzim\b|@zim\.com",
        r"oocl",
        r"@apl\.com",
    ]),
    (INTERNAL_CATEGORY, [
        r"@intoglo\.com$",
        r"@intoglo\.in$",
    ]),
    ("platform", [
        r"cbp\.dhs\.gov",
        r"cbsa|auth\.canada\.ca",
        r"fffai\.org",
        r"odexservices",
        r"shipcube",
        r"softlinkglobal",
    ]),
    ("customs_broker_us", [
        r"portside",
        r"chbentries|artemus",
        r"jmdcustoms",
        r"sssusainc",
        r"cometclearing",
    ]),
    ("cha_india", [
        r"anscargo",
        r"aarishkalogistics",
        r"arglltd",
        r"highwayroop",
        r"klfintl",
        r"tulipshipping",
        r"tulsilogistics",
        r"triwaystransport",
        r"arihantshipping",
        r"transnautic|trnautic",
        r"rajvilogistics",
        r"bbcargo",
    ]),
    ("trucker", [
        r"carmeltransport",
        r"meiborg",
        r"champion.?logistics",
    ]),
    ("warehouse", [
        r"warehouse",
        r"\bcfs\b|cfs\.",
    ]),
    ("partner", [
        r"transjetcargo",
        r"go2wwl",
    ]),
    ("shipper", [
        r"ideafasteners",
        r"matangiindustries",
        r"sonacomstar",
        r"northpole-industries",
        r"starpipeproducts",
        r"pearlglobal",
        r"tradepartners\.us",
        r"crafttrends",
        r"raajtubes",
    ]),
    ("consignee", [
        r"unimotion",
        r"gravityconcepts",
    ]),
]

_COMPILED_SENDER_PATTERNS = [
    (category, [re.compile(pattern, re.IGNORECASE) for pattern in patterns])
    for category, patterns in SENDER_CATEGORY_PATTERNS
]

ADDRESS_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
VIA_PATTERN = re.compile(r"^(.+?)\s+via\s+.+$", re.IGNORECASE)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def normalize_address(raw: Optional[str]) -> str:
    """Pull a bare lower-cased address out of 'Name <addr>' style strings."""
    if not raw:
        return ""
    match = ADDRESS_PATTERN.search(raw)
    return match.group(0).lower() if match else raw.strip().lower()


def resolve_true_sender(
    sender_email: str,
    true_sender_email: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> str:
    """
    Pick the address that actually wrote the email.

    An explicit true sender wins. Otherwise an X-Original-Sender header
    (set by group relays) is used, then the visible sender.
    """
    if true_sender_email and normalize_address(true_sender_email):
        return normalize_address(true_sender_email)

    for key, value in (headers or {}).items():
        if key.lower() == "x-original-sender" and value:
            return normalize_address(value)

    return normalize_address(sender_email)


def display_name_without_relay(sender_name: Optional[str]) -> Optional[str]:
    """'Jane Doe via Ops Group' -> 'Jane Doe'."""
    if not sender_name:
        return sender_name
    match = VIA_PATTERN.match(sender_name.strip())
    return match.group(1).strip("'\" ") if match else sender_name


def get_sender_category(sender_email: str) -> str:
    """First matching category from the registry, or 'unknown'."""
    address = normalize_address(sender_email)
    if not address:
        return UNKNOWN_CATEGORY

    for category, patterns in _COMPILED_SENDER_PATTERNS:
        for pattern in patterns:
            if pattern.search(address):
                return category

    return UNKNOWN_CATEGORY


def direction_for_category(sender_category: str) -> str:
    return "outbound" if sender_category == INTERNAL_CATEGORY else "inbound"


# ============================================================================
# MAIN RESOLVER
# ============================================================================

def resolve_sender(
    sender_email: str,
    true_sender_email: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Dict:
    """
    Resolve sender category and direction for one email.

    Returns:
        Dictionary with true_sender, sender_category, direction and domain
    """
    true_sender = resolve_true_sender(sender_email, true_sender_email, headers)
    sender_category = get_sender_category(true_sender)
    direction = direction_for_category(sender_category)

    if sender_category == UNKNOWN_CATEGORY:
        logger.debug(f"Unrecognized sender: {true_sender or '[empty]'}")

    return {
        "true_sender": true_sender or None,
        "sender_category": sender_category,
        "direction": direction,
        "domain": extract_domain(true_sender),
    }
