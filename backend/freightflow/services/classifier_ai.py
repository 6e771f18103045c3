"""
AI fallback classifier using the Claude API.

Only called when deterministic classification is below the manual-review
threshold. Returns a raw payload (document_type, confidence, reasoning); the
arbitrator validates and merges it. Any failure is raised as
AIClassificationError so the caller can continue deterministic-only.
"""

import os
import re
import json
import time
import logging
from typing import Dict
from dotenv import load_dotenv
import anthropic

from .classifier_deterministic import DOCUMENT_TYPES
from .sender_resolver import display_name_without_relay

load_dotenv()
logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
MODEL = os.getenv("AI_MODEL", "claude-3-5-sonnet-20241022")
MAX_TOKENS = 300
TEMPERATURE = 0.1  # Low temperature for consistent classification
REQUEST_TIMEOUT = float(os.getenv("AI_REQUEST_TIMEOUT_SECONDS", "20"))

# Retry configuration for rate limiting
MAX_RETRIES = 3
INITIAL_RETRY_DELAY = 1.0  # seconds

BODY_PREVIEW_CHARS = 1500
ATTACHMENT_PREVIEW_CHARS = 2000


class AIClassificationError(Exception):
    """The AI fallback could not produce a usable answer."""


# ============================================================================
# SYSTEM PROMPT
# ============================================================================

SYSTEM_PROMPT = f"""You classify freight forwarding emails by the shipping document they carry or announce.

The forwarder handles India-to-US ocean shipments. Senders include carriers (Maersk, Hapag-Lloyd, CMA CGM, ...),
Indian customs house agents, US customs brokers, truckers, shippers and consignees, and the forwarder's own team.

DOCUMENT TYPES:
{", ".join(sorted(DOCUMENT_TYPES))}

GUIDELINES:
- Prefer attachment filenames and attachment text over the subject line.
- A reply that only discusses a document without attaching it is general_correspondence.
- If the thread already produced a document type, a reply repeating it is general_correspondence.
- Use unknown when nothing fits.

CONFIDENCE SCORING (0-100):
- 90-100: document is clearly attached or unambiguously described
- 70-89: strong signals point to one type
- 40-69: plausible but ambiguous
- 0-39: guess

Respond ONLY with valid JSON in this exact format:
{{
  "document_type": "<one of the document types>",
  "confidence": <number 0-100>,
  "reasoning": "<brief 1-2 sentence explanation>"
}}"""


# ============================================================================
# API CLIENT
# ============================================================================

def get_client() -> anthropic.Anthropic:
    """Initialize and return Anthropic client."""
    if not ANTHROPIC_API_KEY:
        raise AIClassificationError("ANTHROPIC_API_KEY not found in environment variables")
    return anthropic.Anthropic(api_key=ANTHROPIC_API_KEY, timeout=REQUEST_TIMEOUT)


# ============================================================================
# EMAIL FORMATTING
# ============================================================================

def format_email_for_classification(email: Dict) -> str:
    """
    Format classification input into a message for Claude.

    Args:
        email: Dictionary with subject, sender_email, true_sender_email,
            sender_name, body_text, attachment_filenames, attachment_text,
            is_response and existing_doc_types_in_thread

    Returns:
        Formatted string with email details
    """
    body = email.get("body_text") or ""
    body_preview = body[:BODY_PREVIEW_CHARS] if body else "[No body content]"

    attachment_text = email.get("attachment_text") or ""
    attachment_preview = attachment_text[:ATTACHMENT_PREVIEW_CHARS] if attachment_text else "[Not extracted]"

    filenames = email.get("attachment_filenames") or []
    filenames_str = ", ".join(filenames) if filenames else "None"

    thread_types = email.get("existing_doc_types_in_thread") or []
    thread_str = ", ".join(thread_types) if thread_types else "None"

    sender = email.get("true_sender_email") or email.get("sender_email") or "unknown"
    sender_name = display_name_without_relay(email.get("sender_name")) or "Unknown"

    message = f"""EMAIL TO CLASSIFY:

From: {sender_name} <{sender}>
Subject: {email.get('subject') or '[No subject]'}
Is Reply/Forward: {bool(email.get('is_response'))}
Document types already in thread: {thread_str}
Attachments: {filenames_str}

Body:
{body_preview}

Attachment text:
{attachment_preview}

Please classify this email."""

    return message


# ============================================================================
# API INTERACTION
# ============================================================================

def parse_response_text(response_text: str) -> Dict:
    """Parse Claude's reply, tolerating prose around the JSON object."""
    try:
        return json.loads(response_text)
    except json.JSONDecodeError:
        json_match = re.search(r"\{[^{}]*\}", response_text, re.DOTALL)
        if json_match:
            try:
                return json.loads(json_match.group(0))
            except json.JSONDecodeError:
                pass
        logger.error(f"Failed to parse Claude response as JSON: {response_text[:200]}")
        raise AIClassificationError("AI response was not valid JSON")


def call_claude_api(client: anthropic.Anthropic, user_message: str) -> Dict:
    """
    Call Claude API with retry logic for rate limiting.

    Raises:
        AIClassificationError: If the call fails after all retries
    """
    retry_delay = INITIAL_RETRY_DELAY

    for attempt in range(MAX_RETRIES):
        try:
            response = client.messages.create(
                model=MODEL,
                max_tokens=MAX_TOKENS,
                temperature=TEMPERATURE,
                system=SYSTEM_PROMPT,
                messages=[
                    {"role": "user", "content": user_message}
                ]
            )
            return parse_response_text(response.content[0].text)

        except anthropic.RateLimitError as e:
            if attempt < MAX_RETRIES - 1:
                logger.warning(f"Rate limit hit, retrying in {retry_delay}s (attempt {attempt + 1}/{MAX_RETRIES})")
                time.sleep(retry_delay)
                retry_delay *= 2  # Exponential backoff
            else:
                logger.error(f"Rate limit exceeded after {MAX_RETRIES} retries")
                raise AIClassificationError(f"Rate limited: {e}") from e

        except (anthropic.InternalServerError, anthropic.APIConnectionError) as e:
            if attempt < MAX_RETRIES - 1:
                logger.warning(f"API error: {str(e)}, retrying in {retry_delay}s (attempt {attempt + 1}/{MAX_RETRIES})")
                time.sleep(retry_delay)
                retry_delay *= 2
            else:
                logger.error(f"API error after {MAX_RETRIES} retries: {str(e)}")
                raise AIClassificationError(f"API unavailable: {e}") from e

        except anthropic.APIError as e:
            logger.error(f"Claude API error: {str(e)}")
            raise AIClassificationError(f"API error: {e}") from e

    raise AIClassificationError(f"Failed to get response from Claude API after {MAX_RETRIES} retries")


# ============================================================================
# MAIN CLASSIFIER
# ============================================================================

def classify_with_ai(email: Dict) -> Dict:
    """
    Classify an email's document type using Claude.

    Args:
        email: ClassificationInput as a dictionary (see format_email_for_classification)

    Returns:
        Raw payload with document_type, confidence and reasoning. Shape is
        validated by the caller.

    Raises:
        AIClassificationError: on missing key, API failure or unparseable output
    """
    if not email:
        raise AIClassificationError("Empty email provided to AI classifier")

    logger.info(f"AI classifying email: {email.get('sender_email', 'unknown')} - {email.get('subject', '[No subject]')}")

    client = get_client()
    result = call_claude_api(client, format_email_for_classification(email))

    if not isinstance(result, dict):
        raise AIClassificationError(f"Expected dict response, got {type(result).__name__}")

    logger.info(f"AI classified as {result.get('document_type')} with confidence {result.get('confidence')}")
    return result
