"""
Thread context extraction.

Runs first for every email: strips RE:/FW: prefixes from the subject, splits the
body into fresh and quoted text, and collects the forward chain so downstream
classifiers only look at what the latest sender actually wrote.
"""

import re
import logging
from typing import Dict, List, Optional, Tuple

from ..schemas import ThreadContext

logger = logging.getLogger(__name__)


# ============================================================================
# PATTERNS
# ============================================================================

RE_PREFIX = re.compile(r"^RE\s*:\s*", re.IGNORECASE)
FW_PREFIX = re.compile(r"^(?:FW|FWD)\s*:\s*", re.IGNORECASE)
THREAD_PREFIX = re.compile(r"^(?:RE|FW|FWD)\s*:\s*", re.IGNORECASE)

QUOTE_PATTERNS = [
    re.compile(r"^On\s+.+\s+wrote:\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^-{2,}\s*(?:Original Message|Forwarded message)\s*-{2,}", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^From:\s*.+\n(?:Sent|Date):\s*.+\nTo:\s*.+", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^>", re.MULTILINE),
    re.compile(r"^Le\s+.+\s+a\s+écrit\s*:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^Am\s+.+\s+schrieb\s+.+:", re.IGNORECASE | re.MULTILINE),
]

FORWARD_FROM = re.compile(
    r"^(?:From|De)\s*:\s*(?:\"?([^\"<\n]+?)\"?\s*)?<?([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})>?",
    re.IGNORECASE | re.MULTILINE,
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def analyze_subject(subject: str) -> Dict:
    """Strip every leading RE:/FW:/FWD: and count what was removed."""
    current = (subject or "").strip()
    reply_count = 0
    forward_count = 0

    while THREAD_PREFIX.match(current):
        if RE_PREFIX.match(current):
            reply_count += 1
            current = RE_PREFIX.sub("", current, count=1)
        else:
            forward_count += 1
            current = FW_PREFIX.sub("", current, count=1)
        current = current.lstrip()

    return {
        "reply_count": reply_count,
        "forward_count": forward_count,
        "clean_subject": current.strip(),
    }


def _split_line_quoted(body: str) -> Tuple[str, str]:
    """Fallback split for bodies that open with a quote marker."""
    fresh_lines = []
    quoted_lines = []
    in_quote = False

    for line in body.split("\n"):
        stripped = line.strip()
        is_quote_line = (
            stripped.startswith(">")
            or re.match(r"^On\s+.+\s+wrote:\s*$", stripped, re.IGNORECASE)
            or re.match(r"^From:\s+", stripped, re.IGNORECASE)
        )
        if is_quote_line:
            in_quote = True
            quoted_lines.append(line)
        elif not in_quote and stripped:
            fresh_lines.append(line)
        else:
            quoted_lines.append(line)

    return "\n".join(fresh_lines).strip(), "\n".join(quoted_lines).strip()


def split_body(body: str) -> Tuple[str, str]:
    """Return (fresh_body, quoted_body)."""
    if not body:
        return "", ""

    positions = []
    for pattern in QUOTE_PATTERNS:
        match = pattern.search(body)
        if match:
            positions.append(match.start())

    if not positions:
        return body.strip(), ""

    first = min(positions)
    if first == 0:
        return _split_line_quoted(body)

    return body[:first].strip(), body[first:].strip()


def extract_forward_chain(body: str) -> List[str]:
    """Addresses from embedded From:/De: lines, first seen first, no duplicates."""
    chain = []
    if not body:
        return chain
    for match in FORWARD_FROM.finditer(body):
        address = match.group(2).lower()
        if address not in chain:
            chain.append(address)
    return chain


def find_original_sender(forward_chain: List[str], headers: Optional[Dict[str, str]]) -> Optional[str]:
    """X-Original-Sender wins; otherwise the deepest address in the forward chain."""
    for key, value in (headers or {}).items():
        if key.lower() == "x-original-sender" and value:
            return value.strip().lower()
    if forward_chain:
        return forward_chain[-1]
    return None


# ============================================================================
# MAIN EXTRACTOR
# ============================================================================

def extract_thread_context(
    subject: str,
    body_text: str = "",
    headers: Optional[Dict[str, str]] = None,
) -> ThreadContext:
    """
    Build the thread context for one email.

    Args:
        subject: Raw subject line
        body_text: Plain-text body
        headers: Optional raw headers (only X-Original-Sender is read)

    Returns:
        ThreadContext with clean subject, fresh/quoted body and forward chain
    """
    subject_info = analyze_subject(subject)
    fresh_body, quoted_body = split_body(body_text or "")
    forward_chain = extract_forward_chain(quoted_body)

    depth = subject_info["reply_count"] + subject_info["forward_count"]

    context = ThreadContext(
        is_thread=depth > 0,
        is_reply=subject_info["reply_count"] > 0,
        is_forward=subject_info["forward_count"] > 0,
        thread_depth=depth,
        clean_subject=subject_info["clean_subject"],
        fresh_body=fresh_body,
        quoted_body=quoted_body,
        forward_chain=forward_chain,
        has_nested_forwards=subject_info["forward_count"] > 1,
        original_sender=find_original_sender(forward_chain, headers),
    )

    if context.is_thread:
        logger.debug(f"Thread context: depth={depth}, clean subject='{context.clean_subject}'")

    return context
