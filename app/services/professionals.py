"""Professional lookup service"""

import logging
from uuid import UUID
from typing import Any, Dict, List, Optional, Tuple
from app.config import supabase

logger = logging.getLogger(__name__)

PROFESSIONAL_COLUMNS = "id, name, specialty, is_active, schedule, appointment_duration"


def contains_pattern(fragment: str) -> str:
    """ILIKE pattern matching `fragment` literally anywhere in the value"""
    escaped = fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


async def list_professionals(
    clinic_id: UUID,
    specialty: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    List active professionals of a clinic.

    Args:
        clinic_id: Clinic UUID
        specialty: Optional partial specialty filter (case-insensitive)

    Returns:
        List of professional rows ordered by name
    """
    query = (
        supabase.table("professionals")
        .select(PROFESSIONAL_COLUMNS)
        .eq("clinic_id", str(clinic_id))
        .eq("is_active", True)
    )
    if specialty:
        query = query.ilike("specialty", contains_pattern(specialty.strip()))

    response = query.order("name").execute()
    return response.data or []


async def find_professional_by_name(
    clinic_id: UUID,
    name: str,
) -> Tuple[Optional[Dict[str, Any]], List[str]]:
    """
    Resolve a professional from a partial name.

    The first match in name order wins; the names of the remaining matches
    are returned so the caller can ask for disambiguation.

    Returns:
        (professional or None, names of other matches)
    """
    cleaned = name.strip()
    for prefix in ("dr. ", "dra. ", "dr ", "dra "):
        if cleaned.lower().startswith(prefix):
            cleaned = cleaned[len(prefix):].strip()
            break

    if not cleaned:
        return None, []

    response = (
        supabase.table("professionals")
        .select(PROFESSIONAL_COLUMNS)
        .eq("clinic_id", str(clinic_id))
        .eq("is_active", True)
        .ilike("name", contains_pattern(cleaned))
        .order("name")
        .execute()
    )
    matches = response.data or []

    if not matches:
        logger.info(f"No professional matching '{cleaned}' in clinic {clinic_id}")
        return None, []

    if len(matches) > 1:
        logger.warning(f"{len(matches)} professionals match '{cleaned}', using {matches[0]['name']}")

    return matches[0], [m["name"] for m in matches[1:]]
