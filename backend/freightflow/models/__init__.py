from .shipment import Shipment
from .email import Email
from .attachment import EmailAttachment
from .classification import EmailClassification
from .workflow_transition import WorkflowTransition

__all__ = ["Shipment", "Email", "EmailAttachment", "EmailClassification", "WorkflowTransition"]
