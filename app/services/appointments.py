"""Appointment service for booking and cancelling appointments"""

import logging
import re
from datetime import date, time, datetime, timezone
from enum import Enum
from uuid import UUID
from typing import Dict, Any, List, Optional, Tuple
from postgrest.exceptions import APIError
from app.config import supabase
from app.services.availability import BOOKED_STATUSES, add_minutes, format_hhmm, parse_hhmm
from app.services.professionals import find_professional_by_name

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

# Statuses that can still be cancelled
CANCELLABLE_STATUSES = ["scheduled", "confirmed"]


class BookingErrorCode(str, Enum):
    SLOT_TAKEN = "slot_taken"
    BOOKING_LIMIT_EXCEEDED = "booking_limit_exceeded"
    CARD_EXPIRED = "card_expired"
    DEPENDENT_CARD_EXPIRED = "dependent_card_expired"
    PATIENT_BLOCKED = "patient_blocked"
    INVALID_TIME = "invalid_time"
    HOLIDAY = "holiday"
    PROFESSIONAL_NOT_FOUND = "professional_not_found"
    APPOINTMENT_NOT_FOUND = "appointment_not_found"
    NOT_CANCELLABLE = "not_cancellable"
    BOOKING_FAILED = "booking_failed"


DEFAULT_MESSAGES = {
    BookingErrorCode.SLOT_TAKEN: "This time slot is no longer available. Please choose another time.",
    BookingErrorCode.BOOKING_LIMIT_EXCEEDED: "The monthly booking limit for this patient has been reached.",
    BookingErrorCode.CARD_EXPIRED: "The patient's membership card has expired. Please renew it to book.",
    BookingErrorCode.DEPENDENT_CARD_EXPIRED: "The dependent's membership card has expired. Please renew it to book.",
    BookingErrorCode.PATIENT_BLOCKED: "The patient is blocked after missed appointments. Please contact the clinic.",
    BookingErrorCode.INVALID_TIME: "The professional does not work at this time.",
    BookingErrorCode.HOLIDAY: "Appointments cannot be booked on this date (holiday).",
    BookingErrorCode.BOOKING_FAILED: "The appointment could not be booked. Please try again.",
}

# Markers raised by database triggers, checked in order (the dependent marker
# contains the patient marker as a substring)
TRIGGER_MARKERS: List[Tuple[str, BookingErrorCode]] = [
    ("CARTEIRINHA_DEPENDENTE_VENCIDA", BookingErrorCode.DEPENDENT_CARD_EXPIRED),
    ("CARTEIRINHA_VENCIDA", BookingErrorCode.CARD_EXPIRED),
    ("LIMITE_AGENDAMENTO_CPF", BookingErrorCode.BOOKING_LIMIT_EXCEEDED),
    ("LIMITE_AGENDAMENTO_DEPENDENTE", BookingErrorCode.BOOKING_LIMIT_EXCEEDED),
    ("PACIENTE_BLOQUEADO_NO_SHOW", BookingErrorCode.PATIENT_BLOCKED),
    ("HORARIO_INVALIDO", BookingErrorCode.INVALID_TIME),
    ("FERIADO", BookingErrorCode.HOLIDAY),
]


def classify_storage_error(error: APIError) -> Tuple[BookingErrorCode, str]:
    """
    Map a PostgREST error from an appointment insert to a domain code.

    Trigger errors look like 'CODE: message for the user'; the text after the
    marker is preferred over the default message.
    """
    if error.code == UNIQUE_VIOLATION:
        return BookingErrorCode.SLOT_TAKEN, DEFAULT_MESSAGES[BookingErrorCode.SLOT_TAKEN]

    text = error.message or ""
    for marker, code in TRIGGER_MARKERS:
        if marker in text:
            match = re.search(rf"{marker}:\s*(.+)", text)
            detail = match.group(1).strip() if match else ""
            return code, detail or DEFAULT_MESSAGES[code]

    return BookingErrorCode.BOOKING_FAILED, DEFAULT_MESSAGES[BookingErrorCode.BOOKING_FAILED]


def _failure(code: BookingErrorCode, message: str, **extra: Any) -> Dict[str, Any]:
    return {"success": False, "error_code": code.value, "message": message, **extra}


async def create_appointment(
    clinic_id: UUID,
    patient_id: UUID,
    professional_name: str,
    appointment_date: date,
    start_time: time,
) -> Dict[str, Any]:
    """
    Book an appointment for a registered patient.

    No availability pre-check is made here: the partial unique index on
    (professional_id, appointment_date, start_time) over active rows decides
    races, and its violation is reported as SLOT_TAKEN.

    Returns:
        Dict with 'success' (bool), 'appointment' or 'error_code', and 'message'
    """
    professional, other_matches = await find_professional_by_name(clinic_id, professional_name)
    if not professional:
        return _failure(
            BookingErrorCode.PROFESSIONAL_NOT_FOUND,
            f"No professional named '{professional_name}' was found. Ask the patient to confirm the name.",
        )

    duration = professional.get("appointment_duration") or 30
    try:
        end_time = add_minutes(start_time, duration)
    except ValueError:
        return _failure(BookingErrorCode.INVALID_TIME, DEFAULT_MESSAGES[BookingErrorCode.INVALID_TIME])

    appointment_record = {
        "clinic_id": str(clinic_id),
        "professional_id": professional["id"],
        "patient_id": str(patient_id),
        "appointment_date": appointment_date.isoformat(),
        "start_time": format_hhmm(start_time),
        "end_time": format_hhmm(end_time),
        "duration_minutes": duration,
        "status": "scheduled",
    }

    try:
        response = supabase.table("appointments").insert(appointment_record).execute()
    except APIError as e:
        code, message = classify_storage_error(e)
        log = logger.info if code == BookingErrorCode.SLOT_TAKEN else logger.warning
        log(f"Appointment insert rejected ({code.value}) for professional {professional['id']}: {e.message}")
        return _failure(code, message)

    if not response.data:
        logger.error(f"Appointment insert returned no rows for clinic {clinic_id}")
        return _failure(BookingErrorCode.BOOKING_FAILED, DEFAULT_MESSAGES[BookingErrorCode.BOOKING_FAILED])

    appointment = response.data[0]
    logger.info(f"Appointment booked: {appointment['id']} for clinic {clinic_id}")

    result = {
        "success": True,
        "appointment": {
            "id": appointment["id"],
            "professional_name": professional["name"],
            "date": appointment_date.isoformat(),
            "start_time": format_hhmm(start_time),
            "end_time": format_hhmm(end_time),
            "status": "scheduled",
        },
        "message": "Appointment booked successfully",
    }
    if other_matches:
        result["other_matches"] = other_matches
    return result


async def cancel_appointment(
    clinic_id: UUID,
    appointment_id: UUID,
    cancellation_reason: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Cancel an appointment. The row is kept; only status and audit fields change.

    Returns:
        Dict with 'success' (bool) and 'message' (str)
    """
    appointment_response = (
        supabase.table("appointments")
        .select("id, status")
        .eq("id", str(appointment_id))
        .eq("clinic_id", str(clinic_id))
        .limit(1)
        .execute()
    )

    if not appointment_response.data:
        return _failure(BookingErrorCode.APPOINTMENT_NOT_FOUND, "Appointment not found")

    current_status = appointment_response.data[0].get("status")
    if current_status not in CANCELLABLE_STATUSES:
        return _failure(
            BookingErrorCode.NOT_CANCELLABLE,
            f"Cannot cancel appointment with status: {current_status}",
        )

    now = datetime.now(timezone.utc).isoformat()
    update_data = {
        "status": "cancelled",
        "cancellation_reason": cancellation_reason or "Cancelled by patient via assistant",
        "cancelled_at": now,
        "updated_at": now,
    }

    # Guarded on the status so a concurrent status change wins cleanly
    response = (
        supabase.table("appointments")
        .update(update_data)
        .eq("id", str(appointment_id))
        .eq("clinic_id", str(clinic_id))
        .in_("status", CANCELLABLE_STATUSES)
        .execute()
    )

    if not response.data:
        return _failure(BookingErrorCode.NOT_CANCELLABLE, "The appointment was changed in the meantime and could not be cancelled")

    logger.info(f"Appointment cancelled: {appointment_id}")

    return {
        "success": True,
        "appointment_id": str(appointment_id),
        "message": "Appointment cancelled successfully",
    }


async def list_upcoming_appointments(
    clinic_id: UUID,
    patient_id: UUID,
    today: date,
) -> Dict[str, Any]:
    """
    Upcoming active appointments of a patient, soonest first.

    Returns:
        Dict with 'success' (bool), 'appointments' (list) and 'count'
    """
    appointments_response = (
        supabase.table("appointments")
        .select("id, professional_id, appointment_date, start_time, end_time, status")
        .eq("clinic_id", str(clinic_id))
        .eq("patient_id", str(patient_id))
        .gte("appointment_date", today.isoformat())
        .in_("status", [s for s in BOOKED_STATUSES if s != "completed"])
        .order("appointment_date")
        .order("start_time")
        .execute()
    )
    rows = appointments_response.data or []

    names: Dict[str, str] = {}
    professional_ids = sorted({row["professional_id"] for row in rows})
    if professional_ids:
        professionals_response = (
            supabase.table("professionals")
            .select("id, name")
            .in_("id", professional_ids)
            .execute()
        )
        names = {p["id"]: p["name"] for p in professionals_response.data or []}

    appointments = [
        {
            "id": row["id"],
            "professional_name": names.get(row["professional_id"], "Unknown"),
            "date": row["appointment_date"],
            "start_time": format_hhmm(parse_hhmm(row["start_time"])),
            "status": row["status"],
        }
        for row in rows
    ]

    return {
        "success": True,
        "appointments": appointments,
        "count": len(appointments),
        "message": f"{len(appointments)} upcoming appointments" if appointments else "No upcoming appointments",
    }
