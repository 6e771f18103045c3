"""
Typed records passed between the classification and workflow services.

Inputs and outputs are frozen pydantic models so a classification result can be
stored, compared and replayed without any caller mutating it in place.
"""

from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


DOCUMENT_SOURCES = ("subject", "attachment_filename", "body", "attachment_content", "ai_fallback", "none")


def clamp_confidence(value) -> int:
    """Coerce any numeric confidence into an int on the 0-100 scale."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if number != number:  # NaN
        return 0
    return int(round(max(0.0, min(100.0, number))))


class ThreadContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_thread: bool = False
    is_reply: bool = False
    is_forward: bool = False
    thread_depth: int = 0
    clean_subject: str = ""
    fresh_body: str = ""
    quoted_body: str = ""
    forward_chain: List[str] = Field(default_factory=list)
    has_nested_forwards: bool = False
    original_sender: Optional[str] = None


class ClassificationInput(BaseModel):
    """Everything the classifiers may look at for one email."""
    model_config = ConfigDict(frozen=True)

    subject: str = ""
    sender_email: str = ""
    true_sender_email: Optional[str] = None
    sender_name: Optional[str] = None
    body_text: str = ""
    attachment_filenames: List[str] = Field(default_factory=list)
    attachment_text: Optional[str] = None
    is_response: bool = False
    existing_doc_types_in_thread: List[str] = Field(default_factory=list)
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("subject", "sender_email", "body_text", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""

    @field_validator("attachment_filenames", "existing_doc_types_in_thread", mode="before")
    @classmethod
    def _none_to_list(cls, value):
        return list(value or [])

    @field_validator("headers", mode="before")
    @classmethod
    def _none_to_dict(cls, value):
        return dict(value or {})

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachment_filenames)


class ClassificationOutput(BaseModel):
    """Result of classifying one email. Stored as a full overwrite on reclassification."""
    model_config = ConfigDict(frozen=True)

    document_type: str = "unknown"
    document_sub_type: Optional[str] = None
    document_confidence: int = 0
    document_source: str = "none"
    matched_markers: List[str] = Field(default_factory=list)

    email_type: str = "unknown"
    email_category: str = "unknown"
    email_type_confidence: int = 0

    sender_category: str = "unknown"
    direction: str = "inbound"
    true_sender: Optional[str] = None

    sentiment: str = "neutral"
    sentiment_score: int = 0
    is_urgent: bool = False

    is_thread_reply: bool = False
    clean_subject: str = ""

    suggested_workflow_state: Optional[str] = None
    needs_manual_review: bool = False
    no_document_evidence: bool = False
    used_ai_fallback: bool = False
    fallback_reason: Optional[str] = None
    ai_reasoning: Optional[str] = None

    @field_validator("document_confidence", "email_type_confidence", mode="before")
    @classmethod
    def _bound_confidence(cls, value):
        return clamp_confidence(value)

    @field_validator("document_source")
    @classmethod
    def _known_source(cls, value):
        if value not in DOCUMENT_SOURCES:
            raise ValueError(f"Unknown document source: {value}")
        return value

    @field_validator("direction")
    @classmethod
    def _known_direction(cls, value):
        if value not in ("inbound", "outbound"):
            raise ValueError(f"Unknown direction: {value}")
        return value


class AIClassification(BaseModel):
    """
    Validated shape of the AI fallback payload.

    Confidences reported as fractions (0.0-1.0) are scaled to 0-100.
    """

    document_type: str = "unknown"
    confidence: int = 0
    reasoning: str = ""

    @field_validator("document_type", mode="before")
    @classmethod
    def _normalize_type(cls, value):
        if not isinstance(value, str) or not value.strip():
            return "unknown"
        return value.strip().lower().replace(" ", "_").replace("-", "_")

    @field_validator("confidence", mode="before")
    @classmethod
    def _scale_confidence(cls, value):
        if isinstance(value, bool):
            return 0
        if isinstance(value, float) and 0 < value <= 1:
            return clamp_confidence(value * 100)
        return clamp_confidence(value)

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning_text(cls, value):
        return "" if value is None else str(value)[:1000]
