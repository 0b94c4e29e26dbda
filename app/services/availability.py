"""Availability service for computing open dates and time slots"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple
from uuid import UUID
from zoneinfo import ZoneInfo
from app.config import settings, supabase

logger = logging.getLogger(__name__)

# Index matches date.weekday()
WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

DEFAULT_DURATION = 30
DEFAULT_BLOCK_STEP = 5

# Appointment statuses that occupy a slot
BOOKED_STATUSES = ["scheduled", "confirmed", "in_progress", "completed"]

# Day statuses
AVAILABLE = "available"
NOT_CONFIGURED = "not_configured"
WEEKDAY_CLOSED = "weekday_closed"
DAY_OFF = "day_off"
HOLIDAY = "holiday"
PAST_DATE = "past_date"
FULLY_BOOKED = "fully_booked"

_REFERENCE_DAY = date(2000, 1, 1)


@dataclass(frozen=True)
class TimeRange:
    start: time
    end: time


@dataclass(frozen=True)
class ScheduleBlock:
    days: frozenset
    ranges: Tuple[TimeRange, ...]
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    step_minutes: Optional[int] = None

    def applies_to(self, day: date) -> bool:
        if WEEKDAYS[day.weekday()] not in self.days:
            return False
        if self.start_date and day < self.start_date:
            return False
        if self.end_date and day > self.end_date:
            return False
        return True


@dataclass(frozen=True)
class WeeklySchedule:
    """Recurring template: enabled weekday ranges, or dated blocks when present"""

    days: Dict[str, Tuple[TimeRange, ...]]
    blocks: Tuple[ScheduleBlock, ...] = ()


@dataclass(frozen=True)
class ScheduleException:
    is_day_off: bool
    start: Optional[time] = None
    end: Optional[time] = None


@dataclass(frozen=True)
class DayPlan:
    ranges: Tuple[TimeRange, ...]
    step_minutes: int


@dataclass
class DaySlots:
    status: str
    slots: List[time]
    message: str

    @property
    def available(self) -> bool:
        return self.status == AVAILABLE


@dataclass(frozen=True)
class DateAvailability:
    date: date
    free_count: int


# =============================================================================
# TIME HELPERS
# =============================================================================

def parse_hhmm(value: str) -> time:
    """Parse 'HH:MM' or 'HH:MM:SS' into a minute-precision time"""
    parts = str(value).strip().split(":")
    if len(parts) < 2:
        raise ValueError(f"Invalid time: {value!r}")
    return time(int(parts[0]), int(parts[1]))


def format_hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def add_minutes(value: time, minutes: int) -> time:
    """Time-of-day arithmetic; raises ValueError when the result passes midnight"""
    moved = datetime.combine(_REFERENCE_DAY, value) + timedelta(minutes=minutes)
    if moved.date() != _REFERENCE_DAY:
        raise ValueError(f"{format_hhmm(value)} + {minutes} minutes passes midnight")
    return moved.time()


def clinic_now() -> datetime:
    """Current wall-clock time in the clinic time zone (naive, local)"""
    return datetime.now(ZoneInfo(settings.clinic_timezone)).replace(tzinfo=None)


# =============================================================================
# SCHEDULE PARSING
# =============================================================================

def _parse_ranges(raw_ranges: Iterable[Any]) -> Tuple[TimeRange, ...]:
    ranges = []
    for raw in raw_ranges or []:
        if not isinstance(raw, dict) or not raw.get("start") or not raw.get("end"):
            continue
        try:
            start = parse_hhmm(raw["start"])
            end = parse_hhmm(raw["end"])
        except ValueError:
            logger.warning(f"Skipping malformed schedule range: {raw}")
            continue
        if start < end:
            ranges.append(TimeRange(start, end))
    return tuple(sorted(ranges, key=lambda r: r.start))


def _parse_block(raw: Dict[str, Any]) -> Optional[ScheduleBlock]:
    raw_ranges = list(raw.get("slots") or [])
    if raw.get("start_time") and raw.get("end_time"):
        raw_ranges.append({"start": raw["start_time"], "end": raw["end_time"]})

    step = None
    if isinstance(raw.get("duration"), int):
        step = raw["duration"]
    if isinstance(raw.get("block_interval"), int):
        step = raw["block_interval"]

    try:
        start_date = date.fromisoformat(raw["start_date"]) if raw.get("start_date") else None
        end_date = date.fromisoformat(raw["end_date"]) if raw.get("end_date") else None
    except ValueError:
        logger.warning(f"Skipping schedule block with malformed dates: {raw}")
        return None

    return ScheduleBlock(
        days=frozenset(d.lower() for d in raw.get("days") or []),
        ranges=_parse_ranges(raw_ranges),
        start_date=start_date,
        end_date=end_date,
        step_minutes=step,
    )


def parse_weekly_schedule(raw: Optional[Dict[str, Any]]) -> Optional[WeeklySchedule]:
    """
    Parse the professional's stored schedule JSON.

    Returns None when no schedule is configured at all, which callers must
    report as "not configured" rather than as an empty day.
    """
    if not raw or not isinstance(raw, dict):
        return None

    blocks = []
    for raw_block in raw.get("_blocks") or []:
        if isinstance(raw_block, dict):
            block = _parse_block(raw_block)
            if block:
                blocks.append(block)

    days = {}
    for day_name in WEEKDAYS:
        day_schedule = raw.get(day_name) or {}
        if not day_schedule.get("enabled", False):
            continue
        ranges = _parse_ranges(day_schedule.get("slots"))
        if ranges:
            days[day_name] = ranges

    return WeeklySchedule(days=days, blocks=tuple(blocks))


# =============================================================================
# SLOT GENERATION
# =============================================================================

def day_plan(schedule: WeeklySchedule, target_date: date, duration: int) -> Optional[DayPlan]:
    """Open ranges and step for a date from the recurring template; None when closed"""
    if schedule.blocks:
        ranges: List[TimeRange] = []
        step = None
        for block in schedule.blocks:
            if not block.applies_to(target_date):
                continue
            ranges.extend(block.ranges)
            if block.step_minutes:
                step = block.step_minutes
        if not ranges:
            return None
        return DayPlan(tuple(ranges), step or DEFAULT_BLOCK_STEP)

    ranges = schedule.days.get(WEEKDAYS[target_date.weekday()])
    if not ranges:
        return None
    return DayPlan(ranges, duration)


def apply_exception(
    plan: Optional[DayPlan],
    exception: Optional[ScheduleException],
    duration: int,
) -> Optional[DayPlan]:
    if exception is None:
        return plan
    if exception.is_day_off:
        return None
    if exception.start and exception.end and exception.start < exception.end:
        step = plan.step_minutes if plan else duration
        return DayPlan((TimeRange(exception.start, exception.end),), step)
    return plan


def generate_grid(plan: DayPlan, duration: int) -> List[time]:
    """
    Candidate start times for a day.

    Steps from each range start by the plan step. A start is only offered when
    the whole appointment fits before the range end.
    """
    span = timedelta(minutes=duration)
    step = timedelta(minutes=max(1, plan.step_minutes))
    grid: Set[time] = set()

    for time_range in plan.ranges:
        cursor = datetime.combine(_REFERENCE_DAY, time_range.start)
        range_end = datetime.combine(_REFERENCE_DAY, time_range.end)
        while cursor + span <= range_end:
            grid.add(cursor.time())
            cursor += step

    return sorted(grid)


def normalize_booked(start_times: Iterable[str]) -> Set[time]:
    """Booked start times truncated to HH:MM"""
    booked = set()
    for value in start_times:
        try:
            booked.add(parse_hhmm(value))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring appointment with malformed start_time: {value!r}")
    return booked


def free_slots(grid: Iterable[time], booked: Set[time], not_after: Optional[time] = None) -> List[time]:
    """Grid minus booked starts, and minus every start at or before `not_after`"""
    return [
        slot for slot in grid
        if slot not in booked and (not_after is None or slot > not_after)
    ]


def _same_day_cutoff(target_date: date, now: datetime, lead_minutes: int) -> Optional[time]:
    if target_date != now.date():
        return None
    cutoff = now.replace(second=0, microsecond=0) + timedelta(minutes=lead_minutes)
    if cutoff.date() != target_date:
        return time.max
    return cutoff.time()


def available_times(
    schedule: Optional[WeeklySchedule],
    duration: int,
    target_date: date,
    booked: Set[time],
    now: datetime,
    exception: Optional[ScheduleException] = None,
    is_holiday: bool = False,
    lead_minutes: int = 0,
    limit: Optional[int] = None,
) -> DaySlots:
    """Free start times for one date, with an explicit reason when there are none"""
    if schedule is None:
        return DaySlots(NOT_CONFIGURED, [], "This professional has no schedule configured")

    if target_date < now.date():
        return DaySlots(PAST_DATE, [], "That date has already passed")

    if exception is not None and exception.is_day_off:
        return DaySlots(DAY_OFF, [], "The professional is not working on that date")

    plan = apply_exception(day_plan(schedule, target_date, duration), exception, duration)
    if plan is None:
        weekday = WEEKDAYS[target_date.weekday()]
        return DaySlots(WEEKDAY_CLOSED, [], f"The professional does not work on {weekday}s")

    if is_holiday:
        return DaySlots(HOLIDAY, [], "The clinic is closed on that date (holiday)")

    grid = generate_grid(plan, duration)
    slots = free_slots(grid, booked, _same_day_cutoff(target_date, now, lead_minutes))

    if not slots:
        return DaySlots(FULLY_BOOKED, [], "There are no free times left on that date")

    if limit is not None:
        slots = slots[:limit]
    return DaySlots(AVAILABLE, slots, f"Found {len(slots)} available times")


def iter_open_dates(
    schedule: WeeklySchedule,
    duration: int,
    now: datetime,
    booked_by_date: Dict[date, Set[time]],
    exceptions_by_date: Dict[date, ScheduleException],
    horizon_days: int,
    lead_minutes: int = 0,
) -> Iterator[DateAvailability]:
    today = now.date()
    for offset in range(horizon_days):
        day = today + timedelta(days=offset)
        result = available_times(
            schedule,
            duration,
            day,
            booked_by_date.get(day, set()),
            now,
            exception=exceptions_by_date.get(day),
            lead_minutes=lead_minutes,
        )
        if result.available:
            yield DateAvailability(day, len(result.slots))


def available_dates(
    schedule: WeeklySchedule,
    duration: int,
    now: datetime,
    booked_by_date: Dict[date, Set[time]],
    exceptions_by_date: Optional[Dict[date, ScheduleException]] = None,
    is_holiday: Callable[[date], bool] = lambda day: False,
    horizon_days: int = 30,
    limit: int = 5,
    lead_minutes: int = 0,
) -> List[DateAvailability]:
    """
    Scan forward from today for dates with at least one free slot.

    Stops as soon as `limit` dates are found. Holidays are checked lazily, only
    for dates that would otherwise be offered.
    """
    found: List[DateAvailability] = []
    for entry in iter_open_dates(
        schedule,
        duration,
        now,
        booked_by_date,
        exceptions_by_date or {},
        horizon_days,
        lead_minutes,
    ):
        if is_holiday(entry.date):
            continue
        found.append(entry)
        if len(found) >= limit:
            break
    return found


# =============================================================================
# STORE ACCESS
# =============================================================================

def _load_bookings(
    clinic_id: UUID,
    professional_id: str,
    start: date,
    end: date,
) -> Dict[date, Set[time]]:
    response = (
        supabase.table("appointments")
        .select("appointment_date, start_time")
        .eq("clinic_id", str(clinic_id))
        .eq("professional_id", professional_id)
        .gte("appointment_date", start.isoformat())
        .lte("appointment_date", end.isoformat())
        .in_("status", BOOKED_STATUSES)
        .execute()
    )

    raw: Dict[date, List[str]] = {}
    for apt in response.data or []:
        raw.setdefault(date.fromisoformat(apt["appointment_date"]), []).append(apt["start_time"])
    return {day: normalize_booked(times) for day, times in raw.items()}


def _load_exceptions(
    clinic_id: UUID,
    professional_id: str,
    start: date,
    end: date,
) -> Dict[date, ScheduleException]:
    response = (
        supabase.table("professional_schedule_exceptions")
        .select("exception_date, is_day_off, start_time, end_time")
        .eq("clinic_id", str(clinic_id))
        .eq("professional_id", professional_id)
        .gte("exception_date", start.isoformat())
        .lte("exception_date", end.isoformat())
        .execute()
    )

    exceptions = {}
    for row in response.data or []:
        try:
            exceptions[date.fromisoformat(row["exception_date"])] = ScheduleException(
                is_day_off=bool(row.get("is_day_off")),
                start=parse_hhmm(row["start_time"]) if row.get("start_time") else None,
                end=parse_hhmm(row["end_time"]) if row.get("end_time") else None,
            )
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Skipping malformed schedule exception for professional {professional_id}: {row}")
    return exceptions


def _is_holiday(clinic_id: UUID, day: date) -> bool:
    """Holiday lookup; a failing RPC is logged and treated as a working day"""
    try:
        response = supabase.rpc(
            "is_holiday",
            {"p_clinic_id": str(clinic_id), "p_date": day.isoformat()},
        ).execute()
    except Exception as e:
        logger.error(f"is_holiday RPC failed for {day}: {e}")
        return False

    rows = response.data if isinstance(response.data, list) else []
    return bool(rows and rows[0].get("is_holiday"))


def _duration_of(professional: Dict[str, Any]) -> int:
    return professional.get("appointment_duration") or DEFAULT_DURATION


async def get_available_dates(
    clinic_id: UUID,
    professional: Dict[str, Any],
    now: datetime,
) -> Dict[str, Any]:
    """
    Upcoming dates with free slots for a professional.

    Args:
        clinic_id: Clinic UUID
        professional: Professional row (id, name, schedule, appointment_duration)
        now: Clinic-local current time

    Returns:
        Dict with 'available' (bool), 'status', 'dates' and 'message'
    """
    schedule = parse_weekly_schedule(professional.get("schedule"))
    if schedule is None:
        return {
            "available": False,
            "status": NOT_CONFIGURED,
            "dates": [],
            "message": f"{professional['name']} has no schedule configured yet",
        }

    today = now.date()
    last_day = today + timedelta(days=settings.availability_horizon_days - 1)
    booked = _load_bookings(clinic_id, professional["id"], today, last_day)
    exceptions = _load_exceptions(clinic_id, professional["id"], today, last_day)

    dates = available_dates(
        schedule,
        _duration_of(professional),
        now,
        booked,
        exceptions,
        is_holiday=lambda day: _is_holiday(clinic_id, day),
        horizon_days=settings.availability_horizon_days,
        limit=settings.max_open_dates,
        lead_minutes=settings.booking_lead_minutes,
    )

    logger.info(f"Found {len(dates)} open dates for professional {professional['id']}")

    if not dates:
        return {
            "available": False,
            "status": FULLY_BOOKED,
            "dates": [],
            "message": f"No open dates in the next {settings.availability_horizon_days} days",
        }

    return {
        "available": True,
        "status": AVAILABLE,
        "dates": [
            {
                "date": entry.date.isoformat(),
                "weekday": WEEKDAYS[entry.date.weekday()],
                "free_slots": entry.free_count,
            }
            for entry in dates
        ],
        "message": f"Found {len(dates)} dates with open slots",
    }


async def get_available_times(
    clinic_id: UUID,
    professional: Dict[str, Any],
    target_date: date,
    now: datetime,
) -> Dict[str, Any]:
    """
    Free start times for a professional on a specific date.

    Returns:
        Dict with 'available' (bool), 'status', 'slots' (HH:MM strings) and 'message'
    """
    schedule = parse_weekly_schedule(professional.get("schedule"))
    booked: Set[time] = set()
    exception = None
    holiday = False

    if schedule is not None and target_date >= now.date():
        booked = _load_bookings(clinic_id, professional["id"], target_date, target_date).get(target_date, set())
        exception = _load_exceptions(clinic_id, professional["id"], target_date, target_date).get(target_date)
        holiday = _is_holiday(clinic_id, target_date)

    result = available_times(
        schedule,
        _duration_of(professional),
        target_date,
        booked,
        now,
        exception=exception,
        is_holiday=holiday,
        lead_minutes=settings.booking_lead_minutes,
        limit=settings.max_times_per_day,
    )

    return {
        "available": result.available,
        "status": result.status,
        "date": target_date.isoformat(),
        "weekday": WEEKDAYS[target_date.weekday()],
        "slots": [format_hhmm(slot) for slot in result.slots],
        "message": result.message,
    }
