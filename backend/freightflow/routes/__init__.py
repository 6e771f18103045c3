from .classification import router as classification_router
from .emails import router as emails_router
from .shipments import router as shipments_router

__all__ = ["classification_router", "emails_router", "shipments_router"]
