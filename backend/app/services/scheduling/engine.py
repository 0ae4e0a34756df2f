"""
Appointment Slot Suggestions
Free windows are found by walking the contractor's availability pattern and
skipping anything that collides with the booked calendar. No LLM involved.

Availability patterns (hours in UTC, Monday = 0):
- weekdays:        Mon-Fri 08:00-17:00
- weekends:        Sat-Sun 09:00-17:00
- 24_7:            every day, all day
- emergency_only:  every day, all day, Critical cases only
- anything else (including "custom") falls back to weekdays

Candidate starts are on 30-minute boundaries; each needs a 15-minute travel
buffer on both sides. Days already at max_jobs_per_day are skipped.

Each free window is scored 0-1:
    urgency    1.0, decaying for Critical starts beyond 4h (floor 0.3)
               and High starts beyond 24h (floor 0.5)
  x workload   1 - 0.3 * (jobs booked that day / max_jobs_per_day)
  x hours      1.0 between 09:00 and 17:00, else 0.9
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel

from app.core.logging import get_logger
from app.db.records import CasePriority, ContractorCalendar, Vendor, as_utc

logger = get_logger(__name__)


SLOT_STEP_MINUTES = 30
TRAVEL_BUFFER_MINUTES = 15
BUSINESS_START_MINUTE = 9 * 60
BUSINESS_END_MINUTE = 17 * 60
OFF_HOURS_FACTOR = 0.9
WORKLOAD_WEIGHT = 0.3

CRITICAL_PROMPT_HOURS = 4.0
CRITICAL_FLOOR = 0.3
HIGH_PROMPT_HOURS = 24.0
HIGH_FLOOR = 0.5


@dataclass(frozen=True)
class WorkingHours:
    days: FrozenSet[int]
    start_minute: int
    end_minute: int


WEEKDAYS = frozenset(range(5))
EVERY_DAY = frozenset(range(7))

EMERGENCY_ONLY = "emergency_only"
DEFAULT_PATTERN = "weekdays"

AVAILABILITY_PATTERNS: Dict[str, WorkingHours] = {
    "weekdays": WorkingHours(WEEKDAYS, 8 * 60, 17 * 60),
    "weekends": WorkingHours(frozenset({5, 6}), 9 * 60, 17 * 60),
    "24_7": WorkingHours(EVERY_DAY, 0, 24 * 60),
    EMERGENCY_ONLY: WorkingHours(EVERY_DAY, 0, 24 * 60),
}


class SlotSuggestion(BaseModel):
    contractor_id: str
    start: datetime
    end: datetime
    score: float
    workload: str
    reasoning: str


def _workload_label(load: float) -> str:
    if load < 0.3:
        return "light"
    if load < 0.7:
        return "moderate"
    return "heavy"


def _first_start(now: datetime) -> datetime:
    """Next slot boundary strictly after now."""
    floored = now.replace(
        minute=(now.minute // SLOT_STEP_MINUTES) * SLOT_STEP_MINUTES, second=0, microsecond=0
    )
    return floored + timedelta(minutes=SLOT_STEP_MINUTES)


class SlotFinder:
    """Suggests free appointment windows for one contractor."""

    def working_hours(self, vendor: Vendor) -> WorkingHours:
        hours = AVAILABILITY_PATTERNS.get(vendor.availability_pattern)
        if hours is None:
            logger.debug(
                f"Contractor {vendor.id} has pattern '{vendor.availability_pattern}'; "
                f"assuming {DEFAULT_PATTERN}"
            )
            hours = AVAILABILITY_PATTERNS[DEFAULT_PATTERN]
        return hours

    def suggest(
        self,
        vendor: Vendor,
        calendar: ContractorCalendar,
        priority: CasePriority,
        duration_minutes: int,
        now: datetime,
        horizon_days: int,
        limit: int,
    ) -> List[SlotSuggestion]:
        if vendor.availability_pattern == EMERGENCY_ONLY and priority != CasePriority.CRITICAL:
            return []
        if vendor.max_jobs_per_day <= 0:
            return []

        now = as_utc(now)
        hours = self.working_hours(vendor)
        duration = timedelta(minutes=duration_minutes)
        buffer = timedelta(minutes=TRAVEL_BUFFER_MINUTES)
        earliest = _first_start(now)
        suggestions: List[SlotSuggestion] = []

        for offset in range(horizon_days):
            day = (now + timedelta(days=offset)).date()
            if day.weekday() not in hours.days:
                continue
            booked = self._booked_on(calendar, day)
            if booked >= vendor.max_jobs_per_day:
                continue
            load = booked / vendor.max_jobs_per_day

            day_start = datetime.combine(day, time.min, tzinfo=timezone.utc)
            last_start = hours.end_minute - duration_minutes - TRAVEL_BUFFER_MINUTES
            for minute in range(hours.start_minute, last_start + 1, SLOT_STEP_MINUTES):
                start = day_start + timedelta(minutes=minute)
                if start < earliest:
                    continue
                end = start + duration
                if calendar.find_overlap(start - buffer, end + buffer) is not None:
                    continue
                suggestions.append(self._score(vendor, priority, start, end, now, minute, booked, load))

        suggestions.sort(key=lambda s: (-s.score, s.start))
        logger.info(
            f"Found {len(suggestions)} free windows for contractor {vendor.id} "
            f"over {horizon_days} days"
        )
        return suggestions[:limit]

    @staticmethod
    def _booked_on(calendar: ContractorCalendar, day: date) -> int:
        return sum(1 for w in calendar.windows if as_utc(w.start).date() == day)

    @staticmethod
    def _score(
        vendor: Vendor,
        priority: CasePriority,
        start: datetime,
        end: datetime,
        now: datetime,
        minute_of_day: int,
        booked: int,
        load: float,
    ) -> SlotSuggestion:
        reasons: List[str] = []
        hours_until = (start - now).total_seconds() / 3600

        urgency = 1.0
        if priority == CasePriority.CRITICAL:
            if hours_until <= CRITICAL_PROMPT_HOURS:
                reasons.append(f"within {CRITICAL_PROMPT_HOURS:g}h for a Critical case")
            else:
                urgency = max(CRITICAL_FLOOR, 1.0 - (hours_until - CRITICAL_PROMPT_HOURS) / 24)
        elif priority == CasePriority.HIGH:
            if hours_until <= HIGH_PROMPT_HOURS:
                reasons.append(f"within {HIGH_PROMPT_HOURS:g}h for a High case")
            else:
                urgency = max(HIGH_FLOOR, 1.0 - (hours_until - HIGH_PROMPT_HOURS) / 48)

        workload = 1.0 - WORKLOAD_WEIGHT * load
        reasons.append(f"{booked}/{vendor.max_jobs_per_day} jobs booked that day")

        if BUSINESS_START_MINUTE <= minute_of_day < BUSINESS_END_MINUTE:
            business = 1.0
            reasons.append("during business hours")
        else:
            business = OFF_HOURS_FACTOR

        return SlotSuggestion(
            contractor_id=vendor.id,
            start=start,
            end=end,
            score=round(urgency * workload * business, 3),
            workload=_workload_label(load),
            reasoning="; ".join(reasons),
        )


_slot_finder: Optional[SlotFinder] = None


def get_slot_finder() -> SlotFinder:
    """Get or create the slot finder singleton."""
    global _slot_finder
    if _slot_finder is None:
        _slot_finder = SlotFinder()
    return _slot_finder
