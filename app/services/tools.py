"""
Tool registry for the scheduling assistant.

Each tool pairs a pydantic argument model (the JSON schema declared to the
model) with one async handler. Every handler returns a flat JSON object with
at least 'success'; failures carry a 'message' the model can relay.
"""

import json
import logging
from dataclasses import dataclass
import datetime as dt
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union
from uuid import UUID
from pydantic import BaseModel, Field, ValidationError
from app.models.schemas import ToolResult
from app.services.appointments import (
    cancel_appointment,
    create_appointment,
    list_upcoming_appointments,
)
from app.services.availability import get_available_dates, get_available_times
from app.services.patients import find_patient_by_cpf
from app.services.professionals import find_professional_by_name, list_professionals

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolContext:
    clinic_id: UUID
    now: dt.datetime


# =============================================================================
# ARGUMENT MODELS
# =============================================================================

class ListProfessionalsArgs(BaseModel):
    specialty: Optional[str] = Field(None, description="Optional specialty filter, e.g. 'dentist'")


class AvailableDatesArgs(BaseModel):
    professional_name: str = Field(..., description="Full or partial name of the professional")


class AvailableTimesArgs(BaseModel):
    professional_name: str = Field(..., description="Full or partial name of the professional")
    date: dt.date = Field(..., description="Date in YYYY-MM-DD format")


class FindPatientArgs(BaseModel):
    cpf: str = Field(..., description="Patient CPF, 11 digits, punctuation optional")


class CreateAppointmentArgs(BaseModel):
    patient_id: UUID = Field(..., description="Patient id returned by find_patient_by_cpf")
    professional_name: str = Field(..., description="Full or partial name of the professional")
    date: dt.date = Field(..., description="Date in YYYY-MM-DD format")
    time: dt.time = Field(..., description="Start time in HH:MM format, one of the offered times")


class PatientAppointmentsArgs(BaseModel):
    patient_id: UUID = Field(..., description="Patient id returned by find_patient_by_cpf")


class CancelAppointmentArgs(BaseModel):
    appointment_id: UUID = Field(..., description="Appointment id from list_patient_appointments")
    reason: Optional[str] = Field(None, description="Reason given by the patient")


class HandoffArgs(BaseModel):
    reason: Optional[str] = Field(None, description="Why the guided booking flow is needed")


# =============================================================================
# HANDLERS
# =============================================================================

def _professional_not_found(name: str) -> Dict[str, Any]:
    return {
        "success": False,
        "message": f"No professional named '{name}' was found. Offer the list of professionals.",
    }


async def _list_professionals(args: ListProfessionalsArgs, ctx: ToolContext) -> Dict[str, Any]:
    professionals = await list_professionals(ctx.clinic_id, args.specialty)
    if not professionals:
        return {
            "success": False,
            "professionals": [],
            "message": "No professionals found" + (f" for specialty '{args.specialty}'" if args.specialty else ""),
        }
    return {
        "success": True,
        "professionals": [
            {"name": p["name"], "specialty": p.get("specialty")} for p in professionals
        ],
    }


async def _available_dates(args: AvailableDatesArgs, ctx: ToolContext) -> Dict[str, Any]:
    professional, other_matches = await find_professional_by_name(ctx.clinic_id, args.professional_name)
    if not professional:
        return _professional_not_found(args.professional_name)

    result = await get_available_dates(ctx.clinic_id, professional, ctx.now)
    envelope = {
        "success": result["available"],
        "professional_name": professional["name"],
        **result,
    }
    if other_matches:
        envelope["other_matches"] = other_matches
    return envelope


async def _available_times(args: AvailableTimesArgs, ctx: ToolContext) -> Dict[str, Any]:
    professional, other_matches = await find_professional_by_name(ctx.clinic_id, args.professional_name)
    if not professional:
        return _professional_not_found(args.professional_name)

    result = await get_available_times(ctx.clinic_id, professional, args.date, ctx.now)
    envelope = {
        "success": result["available"],
        "professional_name": professional["name"],
        **result,
    }
    if other_matches:
        envelope["other_matches"] = other_matches
    return envelope


async def _find_patient(args: FindPatientArgs, ctx: ToolContext) -> Dict[str, Any]:
    result = await find_patient_by_cpf(ctx.clinic_id, args.cpf)
    if not result["found"]:
        return {"success": False, "reason": result["reason"], "message": result["message"]}
    return {"success": True, "patient": result["patient"], "message": result["message"]}


async def _create_appointment(args: CreateAppointmentArgs, ctx: ToolContext) -> Dict[str, Any]:
    return await create_appointment(
        ctx.clinic_id,
        args.patient_id,
        args.professional_name,
        args.date,
        args.time.replace(second=0, microsecond=0),
    )


async def _patient_appointments(args: PatientAppointmentsArgs, ctx: ToolContext) -> Dict[str, Any]:
    return await list_upcoming_appointments(ctx.clinic_id, args.patient_id, ctx.now.date())


async def _cancel_appointment(args: CancelAppointmentArgs, ctx: ToolContext) -> Dict[str, Any]:
    return await cancel_appointment(ctx.clinic_id, args.appointment_id, args.reason)


async def _handoff(args: HandoffArgs, ctx: ToolContext) -> Dict[str, Any]:
    logger.info(f"Handoff to booking flow requested for clinic {ctx.clinic_id}: {args.reason}")
    return {"success": True, "handoff": True, "message": "Switching to the booking flow"}


# =============================================================================
# REGISTRY
# =============================================================================

@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: Callable[[Any, ToolContext], Awaitable[Dict[str, Any]]]

    def schema(self) -> Dict[str, Any]:
        parameters = _strip_titles(self.args_model.model_json_schema())
        parameters.setdefault("required", [])
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


def _strip_titles(schema: Any) -> Any:
    if isinstance(schema, dict):
        return {k: _strip_titles(v) for k, v in schema.items() if k != "title"}
    if isinstance(schema, list):
        return [_strip_titles(v) for v in schema]
    return schema


TOOLS: List[Tool] = [
    Tool(
        "list_professionals",
        "List the clinic's active professionals, optionally filtered by specialty",
        ListProfessionalsArgs,
        _list_professionals,
    ),
    Tool(
        "get_available_dates",
        "List the next dates with open slots for a professional, with the number of free slots per date",
        AvailableDatesArgs,
        _available_dates,
    ),
    Tool(
        "get_available_times",
        "List the free start times for a professional on a specific date",
        AvailableTimesArgs,
        _available_times,
    ),
    Tool(
        "find_patient_by_cpf",
        "Look up a registered patient by CPF. Required before booking or listing appointments",
        FindPatientArgs,
        _find_patient,
    ),
    Tool(
        "create_appointment",
        "Book an appointment for a patient with a professional at a date and time",
        CreateAppointmentArgs,
        _create_appointment,
    ),
    Tool(
        "list_patient_appointments",
        "List a patient's upcoming appointments",
        PatientAppointmentsArgs,
        _patient_appointments,
    ),
    Tool(
        "cancel_appointment",
        "Cancel an appointment by id",
        CancelAppointmentArgs,
        _cancel_appointment,
    ),
    Tool(
        "handoff_to_booking",
        "Hand the conversation to the guided booking flow when the patient asks for it or the request cannot be handled here",
        HandoffArgs,
        _handoff,
    ),
]

TOOL_REGISTRY: Dict[str, Tool] = {tool.name: tool for tool in TOOLS}


def tool_schemas() -> List[Dict[str, Any]]:
    """Tool declarations in chat-completions format"""
    return [tool.schema() for tool in TOOLS]


def _failure(message: str, error: str) -> Dict[str, Any]:
    return ToolResult(success=False, message=message, error=error).model_dump(exclude_none=True)


async def execute_tool(
    name: str,
    arguments: Union[str, Dict[str, Any], None],
    ctx: ToolContext,
) -> Dict[str, Any]:
    """
    Run one tool call and return its result envelope.

    Never raises: unknown tools, malformed arguments and handler errors come
    back as failure envelopes so the conversation can continue.
    """
    tool = TOOL_REGISTRY.get(name)
    if tool is None:
        logger.warning(f"Unknown tool requested: {name}")
        return _failure(f"Unknown tool: {name}", "unknown_tool")

    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError:
            logger.warning(f"Malformed JSON arguments for {name}: {arguments!r}")
            return _failure("Tool arguments were not valid JSON", "invalid_arguments")

    if not isinstance(arguments, dict):
        arguments = {}

    try:
        args = tool.args_model.model_validate(arguments)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        logger.warning(f"Invalid arguments for {name}: {fields}")
        return _failure(f"Invalid or missing arguments: {fields}", "invalid_arguments")

    logger.info(f"Executing tool {name} for clinic {ctx.clinic_id}")

    try:
        result = await tool.handler(args, ctx)
    except Exception as e:
        logger.error(f"Error executing tool {name}: {e}", exc_info=True)
        return _failure("The system could not complete this request right now. Please try again.", "tool_error")

    result.setdefault("success", False)
    return result
