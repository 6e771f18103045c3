"""
Classification orchestration and confidence arbitration.

Runs every deterministic stage for one email, merges their answers into a
single ClassificationOutput and decides whether the AI fallback is needed:

    1. Thread context (clean subject, fresh body)
    2. Sender category and direction
    3. Document type (deterministic)
    4. Email intent and sentiment
    5. Arbitration: downgrade reply-without-attachment matches, compare the
       combined confidence to the manual-review threshold, call the AI
       fallback below it and merge asymmetrically
"""

import os
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Callable, Dict, Optional
from dotenv import load_dotenv
from pydantic import ValidationError

from ..schemas import AIClassification, ClassificationInput, ClassificationOutput
from .thread_context import extract_thread_context
from .sender_resolver import resolve_sender
from .classifier_deterministic import DOCUMENT_TYPES, UNKNOWN_DOCUMENT_TYPE, classify_document
from .classifier_intent import classify_intent, detect_sentiment, is_urgent
from .classifier_ai import AIClassificationError, classify_with_ai
from .workflow_rules import suggest_workflow_state

load_dotenv()
logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

MANUAL_REVIEW_THRESHOLD = int(os.getenv("MANUAL_REVIEW_THRESHOLD", "70"))
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "30"))
AI_FALLBACK_ENABLED = os.getenv("AI_FALLBACK_ENABLED", "true").lower() in ("1", "true", "yes")

# Subject-only match on a reply with nothing attached
NO_DOCUMENT_EVIDENCE_FACTOR = 0.5

AIClassifier = Callable[[Dict], Dict]

_ai_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="ai-fallback")


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def downgrade_confidence(confidence: int, threshold: int) -> int:
    """Halve a confidence and keep it strictly below the review threshold."""
    return max(0, min(int(confidence * NO_DOCUMENT_EVIDENCE_FACTOR), threshold - 1))


def default_ai_classifier() -> Optional[AIClassifier]:
    return classify_with_ai if AI_FALLBACK_ENABLED else None


def call_ai_with_timeout(ai_classifier: AIClassifier, payload: Dict, timeout: float) -> Dict:
    """
    Run the AI classifier on a worker thread and wait at most `timeout` seconds.

    Raises:
        FutureTimeoutError: the call did not finish in time
        Exception: whatever the classifier raised
    """
    future = _ai_executor.submit(ai_classifier, payload)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        raise


def validate_ai_payload(payload) -> AIClassification:
    """Coerce a raw AI payload into AIClassification; unknown types become 'unknown'."""
    if not isinstance(payload, dict):
        raise AIClassificationError(f"Expected dict payload, got {type(payload).__name__}")
    try:
        result = AIClassification.model_validate(payload)
    except ValidationError as e:
        raise AIClassificationError(f"Invalid AI payload: {e.errors()[0]['msg']}") from e
    if result.document_type not in DOCUMENT_TYPES:
        logger.warning(f"AI returned unrecognized document type '{result.document_type}', treating as unknown")
        result = result.model_copy(update={"document_type": UNKNOWN_DOCUMENT_TYPE})
    return result


# ============================================================================
# MAIN CLASSIFIER
# ============================================================================

def classify_email(
    email: ClassificationInput,
    ai_classifier: Optional[AIClassifier] = None,
    use_ai: bool = True,
    precedence: Optional[str] = None,
    threshold: Optional[int] = None,
    ai_timeout: Optional[float] = None,
) -> ClassificationOutput:
    """
    Classify one email end to end.

    Args:
        email: Immutable classification input
        ai_classifier: Callable taking the input as a dict and returning
            document_type/confidence/reasoning. Defaults to the Claude
            classifier when AI_FALLBACK_ENABLED is set.
        use_ai: False forces a deterministic-only run
        precedence: Evidence precedence policy for the document classifier
        threshold: Manual-review threshold (0-100)
        ai_timeout: Seconds to wait for the AI classifier

    Returns:
        ClassificationOutput. Never raises for bad input; an empty email
        comes back as 'unknown' with needs_manual_review set.
    """
    threshold = MANUAL_REVIEW_THRESHOLD if threshold is None else threshold
    ai_timeout = AI_TIMEOUT_SECONDS if ai_timeout is None else ai_timeout
    if ai_classifier is None and use_ai:
        ai_classifier = default_ai_classifier()
    if not use_ai:
        ai_classifier = None

    context = extract_thread_context(email.subject, email.body_text, email.headers)
    sender = resolve_sender(email.sender_email, email.true_sender_email, email.headers)
    document = classify_document(email, context, precedence)
    intent = classify_intent(context, sender["sender_category"], is_reply=email.is_response)
    sentiment = detect_sentiment(context.clean_subject, context.fresh_body)

    document_type = document["document_type"]
    document_sub_type = document["document_sub_type"]
    document_source = document["source"]
    document_confidence = document["confidence"]
    matched_markers = list(document["matched_markers"]) + intent["matched_patterns"]
    no_document_evidence = document["no_document_evidence"]

    if no_document_evidence:
        downgraded = downgrade_confidence(document_confidence, threshold)
        logger.info(f"Reply without attachment: {document_type} confidence {document_confidence} -> {downgraded}")
        document_confidence = downgraded
        matched_markers.append("no_document_evidence")

    combined = max(document_confidence, intent["confidence"])

    needs_manual_review = False
    used_ai_fallback = False
    fallback_reason = None
    ai_reasoning = None

    if combined < threshold:
        fallback_reason = f"low_confidence:{combined}"
        needs_manual_review = True

        if ai_classifier is None:
            fallback_reason += ",fallback_disabled"
        else:
            try:
                payload = call_ai_with_timeout(ai_classifier, email.model_dump(), ai_timeout)
                ai_result = validate_ai_payload(payload)
            except FutureTimeoutError:
                logger.warning(f"AI fallback timed out after {ai_timeout}s, keeping deterministic result")
                fallback_reason += ",fallback_timeout"
            except Exception as e:
                logger.warning(f"AI fallback unavailable: {str(e)}")
                fallback_reason += f",fallback_unavailable:{str(e)[:100]}"
            else:
                used_ai_fallback = True
                ai_reasoning = ai_result.reasoning

                if ai_result.document_type != UNKNOWN_DOCUMENT_TYPE and ai_result.confidence > document_confidence:
                    logger.info(
                        f"AI fallback adopted: {document_type}({document_confidence}) -> "
                        f"{ai_result.document_type}({ai_result.confidence})"
                    )
                    document_type = ai_result.document_type
                    document_sub_type = None
                    document_source = "ai_fallback"
                    document_confidence = ai_result.confidence
                    matched_markers.append(f"ai_fallback:{ai_result.document_type}")
                    needs_manual_review = max(document_confidence, intent["confidence"]) < threshold
                else:
                    logger.info(
                        f"AI fallback not adopted ({ai_result.document_type}:{ai_result.confidence} "
                        f"<= {document_type}:{document_confidence})"
                    )

    suggested_state = None
    if not no_document_evidence:
        suggested_state = suggest_workflow_state(document_type, sender["direction"])

    return ClassificationOutput(
        document_type=document_type,
        document_sub_type=document_sub_type,
        document_confidence=document_confidence,
        document_source=document_source,
        matched_markers=matched_markers,
        email_type=intent["email_type"],
        email_category=intent["email_category"],
        email_type_confidence=intent["confidence"],
        sender_category=sender["sender_category"],
        direction=sender["direction"],
        true_sender=sender["true_sender"],
        sentiment=sentiment["sentiment"],
        sentiment_score=sentiment["score"],
        is_urgent=is_urgent(intent["email_type"], sentiment["sentiment"]),
        is_thread_reply=email.is_response or context.is_thread,
        clean_subject=context.clean_subject,
        suggested_workflow_state=suggested_state,
        needs_manual_review=needs_manual_review,
        no_document_evidence=no_document_evidence,
        used_ai_fallback=used_ai_fallback,
        fallback_reason=fallback_reason,
        ai_reasoning=ai_reasoning,
    )
