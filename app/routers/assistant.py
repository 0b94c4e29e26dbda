"""Scheduling assistant chat endpoint"""

import hmac
import logging
from typing import Optional
from fastapi import APIRouter, Header, HTTPException
from app.config import settings
from app.models.schemas import AssistantRequest, AssistantResponse
from app.services.assistant import run_conversation

logger = logging.getLogger(__name__)

router = APIRouter()


def verify_assistant_secret(secret: Optional[str]) -> bool:
    """Check the shared secret; open when no secret is configured"""
    if not settings.assistant_api_secret:
        return True
    if not secret:
        return False
    return hmac.compare_digest(secret, settings.assistant_api_secret)


@router.post("/chat", response_model=AssistantResponse)
async def chat(
    request: AssistantRequest,
    x_assistant_secret: Optional[str] = Header(None, alias="x-assistant-secret"),
):
    """
    Handle one inbound patient message.

    The caller sends the full prior transcript each time; the response either
    carries the assistant's text or asks the caller to switch to the booking
    flow (`handoff_to_booking`).
    """
    if not verify_assistant_secret(x_assistant_secret):
        logger.warning(f"Rejected assistant request for clinic {request.clinic_id}: invalid secret")
        raise HTTPException(status_code=401, detail="Invalid assistant secret")

    logger.info(
        f"Assistant message for clinic {request.clinic_id} "
        f"({len(request.conversation_history)} prior messages)"
    )

    result = await run_conversation(request)

    logger.info(
        f"Assistant finished for clinic {request.clinic_id}: "
        f"tool_calls={result.tool_calls_made} handoff={result.handoff_to_booking} error={result.error}"
    )
    return result
