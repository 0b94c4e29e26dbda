"""Patient service for looking up patient records"""

import logging
import re
from uuid import UUID
from typing import Dict, Any
from app.config import supabase

logger = logging.getLogger(__name__)


def normalize_cpf(cpf: str) -> str:
    """Strip everything but digits"""
    return re.sub(r"\D", "", cpf or "")


def format_cpf(digits: str) -> str:
    """000.000.000-00 presentation used by some stored records"""
    return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"


def _check_digit(digits: str, weight_start: int) -> int:
    total = sum(int(d) * w for d, w in zip(digits, range(weight_start, 1, -1)))
    remainder = (total * 10) % 11
    return 0 if remainder == 10 else remainder


def is_valid_cpf(cpf: str) -> bool:
    """Validate a Brazilian CPF (11 digits plus two check digits)"""
    digits = normalize_cpf(cpf)
    if len(digits) != 11 or digits == digits[0] * 11:
        return False
    if _check_digit(digits[:9], 10) != int(digits[9]):
        return False
    return _check_digit(digits[:10], 11) == int(digits[10])


async def find_patient_by_cpf(
    clinic_id: UUID,
    cpf: str,
) -> Dict[str, Any]:
    """
    Look up a registered patient by CPF.

    Args:
        clinic_id: Clinic UUID
        cpf: CPF with or without punctuation

    Returns:
        Dict with 'found' (bool), 'patient' (dict or None), 'reason' and 'message' (str)
    """
    digits = normalize_cpf(cpf)

    if not is_valid_cpf(digits):
        return {
            "found": False,
            "patient": None,
            "reason": "invalid_cpf",
            "message": "The CPF provided is not valid. Please check the 11 digits.",
        }

    response = (
        supabase.table("patients")
        .select("id, name, cpf, phone, is_active")
        .eq("clinic_id", str(clinic_id))
        .in_("cpf", [digits, format_cpf(digits)])
        .limit(1)
        .execute()
    )

    if not response.data:
        logger.info(f"No patient with CPF ending {digits[-4:]} in clinic {clinic_id}")
        return {
            "found": False,
            "patient": None,
            "reason": "not_registered",
            "message": "No patient is registered with this CPF. Registration at the clinic is required before booking.",
        }

    patient = response.data[0]

    if patient.get("is_active") is False:
        return {
            "found": False,
            "patient": None,
            "reason": "inactive",
            "message": "This patient record is inactive. Please contact the clinic to reactivate it.",
        }

    return {
        "found": True,
        "patient": {"id": patient["id"], "name": patient["name"]},
        "reason": None,
        "message": f"Found patient: {patient['name']}",
    }
