"""
Conversation orchestrator for the scheduling assistant.

Loop:
1. Send system preamble + history + user message (+ tool results) to the model
2. If the reply requests tools, run them one by one and append the results
3. Repeat until the model answers in plain text, hands off to the booking
   flow, or the tool-round cap is reached

Nothing is persisted between requests; the caller owns the transcript.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from app.config import settings, supabase
from app.models.schemas import AssistantRequest, AssistantResponse, ToolCall
from app.services.availability import WEEKDAYS, clinic_now
from app.services.llm import (
    ProviderError,
    ProviderQuotaError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    complete_chat,
)
from app.services.tools import ToolContext, execute_tool, tool_schemas

logger = logging.getLogger(__name__)

HANDOFF_ACTION = "handoff_to_booking"

RATE_LIMITED_MESSAGE = "We are receiving a lot of messages right now. Please try again in a few moments."
TIMEOUT_MESSAGE = "Sorry, I took too long to answer. Please send your message again."
UNAVAILABLE_MESSAGE = "Sorry, the assistant is temporarily unavailable. Please try again later."
ROUND_LIMIT_MESSAGE = "Sorry, I could not finish that request. Could you rephrase it or ask for one thing at a time?"


def build_system_prompt(clinic_name: str, now: datetime, phone: Optional[str] = None) -> str:
    """System preamble with the clinic's local date so relative dates resolve correctly"""
    weekday = WEEKDAYS[now.weekday()]
    caller = f"\nThe patient is writing from phone number {phone}." if phone else ""

    return f"""You are the scheduling assistant for {clinic_name}.
Today is {weekday}, {now.date().isoformat()}, and the local time is {now.strftime('%H:%M')}.{caller}

Use the tools for every fact about professionals, dates, times, patients and appointments. Never invent availability.

Booking:
- Identify the patient with find_patient_by_cpf before booking or listing appointments.
- Offer dates with get_available_dates and times with get_available_times; only book times the tools returned.
- Confirm professional, date and time with the patient, then call create_appointment.
- If a patient is not registered, explain that registration at the clinic is required.

Cancelling: list the patient's appointments, confirm which one, then call cancel_appointment.

If the patient asks for the guided booking menu, or the request cannot be handled here, call handoff_to_booking.

Reply in the patient's language, briefly, and send dates as DD/MM/YYYY."""


def _clinic_name(clinic_id: str) -> str:
    try:
        response = (
            supabase.table("clinics")
            .select("name")
            .eq("id", clinic_id)
            .limit(1)
            .execute()
        )
    except Exception as e:
        logger.error(f"Error loading clinic {clinic_id}: {e}")
        return "the clinic"

    if response.data:
        return response.data[0].get("name") or "the clinic"
    return "the clinic"


def _parse_tool_calls(message: Dict[str, Any]) -> List[ToolCall]:
    calls = []
    for raw in message.get("tool_calls") or []:
        function = raw.get("function") or {}
        arguments = function.get("arguments")
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments)
        calls.append(ToolCall(
            id=raw.get("id") or f"call_{len(calls)}",
            name=function.get("name") or "",
            arguments=arguments or "{}",
        ))
    return calls


async def run_conversation(
    request: AssistantRequest,
    now: Optional[datetime] = None,
) -> AssistantResponse:
    """
    Run one bounded orchestration for an inbound message.

    Args:
        request: Inbound message, clinic and prior transcript
        now: Clinic-local time (defaults to the clinic wall clock)

    Returns:
        AssistantResponse; provider failures become plain-language responses
    """
    now = now or clinic_now()
    clinic_id = str(request.clinic_id)
    ctx = ToolContext(clinic_id=request.clinic_id, now=now)
    tools = tool_schemas()

    messages: List[Dict[str, Any]] = [
        {"role": "system", "content": build_system_prompt(_clinic_name(clinic_id), now, request.phone)},
        *[m.to_provider() for m in request.conversation_history],
        {"role": "user", "content": request.message},
    ]

    tool_calls_made = 0
    rounds = 0
    last_text: Optional[str] = None

    try:
        while True:
            reply = await complete_chat(messages, tools)
            content = reply.get("content")
            if content:
                last_text = content

            calls = _parse_tool_calls(reply)
            if not calls:
                return AssistantResponse(response=content or ROUND_LIMIT_MESSAGE, tool_calls_made=tool_calls_made)

            if rounds >= settings.assistant_max_tool_rounds:
                logger.warning(f"Tool round limit ({rounds}) reached for clinic {clinic_id}")
                return AssistantResponse(
                    response=last_text or ROUND_LIMIT_MESSAGE,
                    tool_calls_made=tool_calls_made,
                    error="tool_round_limit",
                )
            rounds += 1

            messages.append({
                "role": "assistant",
                "content": content,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments},
                    }
                    for call in calls
                ],
            })

            # Sequential on purpose: later calls may depend on earlier results
            for call in calls:
                result = await execute_tool(call.name, call.arguments, ctx)
                tool_calls_made += 1

                if result.get("handoff"):
                    return AssistantResponse(
                        response=None,
                        handoff_to_booking=True,
                        action=HANDOFF_ACTION,
                        tool_calls_made=tool_calls_made,
                    )

                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": json.dumps(result, default=str),
                })

    except ProviderRateLimitError:
        return AssistantResponse(response=RATE_LIMITED_MESSAGE, tool_calls_made=tool_calls_made, error="rate_limited")
    except ProviderTimeoutError:
        return AssistantResponse(response=TIMEOUT_MESSAGE, tool_calls_made=tool_calls_made, error="timeout")
    except ProviderQuotaError:
        return AssistantResponse(response=UNAVAILABLE_MESSAGE, tool_calls_made=tool_calls_made, error="quota_exhausted")
    except ProviderError as e:
        logger.error(f"Provider failure for clinic {clinic_id}: {e}")
        return AssistantResponse(response=UNAVAILABLE_MESSAGE, tool_calls_made=tool_calls_made, error="provider_error")
