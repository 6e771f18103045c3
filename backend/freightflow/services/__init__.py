from .classification import classify_email
from .classifier_ai import classify_with_ai, AIClassificationError
from .attachments import fetch_attachment_context, AttachmentContext
from .state_store import (
    ShipmentStateStore,
    ShipmentNotFoundError,
    StaleStateError,
    TransitionPersistenceError,
)
from .workflow_engine import (
    attempt_transition,
    preview_transition,
    get_workflow_status,
    replay_workflow_state,
    TransitionResult,
)
from .pipeline import run_pipeline, process_email, ingest_email

__all__ = [
    "classify_email",
    "classify_with_ai",
    "AIClassificationError",
    "fetch_attachment_context",
    "AttachmentContext",
    "ShipmentStateStore",
    "ShipmentNotFoundError",
    "StaleStateError",
    "TransitionPersistenceError",
    "attempt_transition",
    "preview_transition",
    "get_workflow_status",
    "replay_workflow_state",
    "TransitionResult",
    "run_pipeline",
    "process_email",
    "ingest_email",
]
