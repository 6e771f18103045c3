import asyncio
from fastapi import APIRouter, Query
from ..schemas import ClassificationInput
from ..services.classification import classify_email

router = APIRouter(prefix="/api/classify", tags=["classification"])


@router.post("/")
async def classify(
    email: ClassificationInput,
    use_ai: bool = Query(default=True, description="Allow the AI fallback below the review threshold"),
):
    """
    Classify an email without storing anything.

    Args:
        email: Subject, sender, body, attachment names/text and thread context
        use_ai: Allow the AI fallback

    Returns:
        dict: ClassificationOutput fields
    """
    output = await asyncio.to_thread(classify_email, email, use_ai=use_ai)
    return output.model_dump()
