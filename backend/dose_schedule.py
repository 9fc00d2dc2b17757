"""
Schedule interpretation: turn a medication's times of day into dose slots.

Everything here is pure. Slots are ordered like ``times_of_day`` and the
position in that list is the slot's dose number.
"""
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import List, Optional

from dose_models import DEFAULT_DOSE_LABEL, Medication

# Nominal clock times for the labels caregivers pick in the medication form.
TIME_OF_DAY_CLOCK = {
    "morning": "08:00",
    "breakfast": "08:00",
    "noon": "12:00",
    "midday": "12:00",
    "lunch": "12:00",
    "afternoon": "14:00",
    "evening": "18:00",
    "dinner": "18:00",
    "supper": "18:00",
    "night": "21:00",
    "bedtime": "21:00",
}

AS_NEEDED_MARKERS = ("as needed", "as-needed", "prn")

@dataclass(frozen=True)
class DoseSlot:
    dose_number: int
    label: str
    scheduled_time: Optional[datetime] = None  # None: due by end of day

    @property
    def due_by_end_of_day(self) -> bool:
        return self.scheduled_time is None

def normalize_hhmm(value: str) -> str:
    """Normalize time values into HH:MM."""
    if not value:
        return ""
    value = value.strip()
    match = re.match(r"^(\d{1,2}):(\d{2})$", value)
    if not match:
        return value
    hour = int(match.group(1))
    minute = int(match.group(2))
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        return value
    return f"{hour:02d}:{minute:02d}"

def clock_time_for_label(label: str) -> Optional[time]:
    """Nominal clock time for a time-of-day label, or None when it has none."""
    if not label:
        return None
    cleaned = label.strip().lower()
    if cleaned in TIME_OF_DAY_CLOCK:
        cleaned = TIME_OF_DAY_CLOCK[cleaned]

    match = re.match(r"^(\d{1,2})(?::(\d{2}))?\s*([ap])\.?m\.?$", cleaned)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if not 1 <= hour <= 12 or minute > 59:
            return None
        hour = hour % 12 + (12 if match.group(3) == "p" else 0)
        return time(hour, minute)

    normalized = normalize_hhmm(cleaned)
    if not re.match(r"^\d{2}:\d{2}$", normalized):
        return None
    hour, minute = (int(part) for part in normalized.split(":"))
    if hour > 23 or minute > 59:
        return None
    return time(hour, minute)

def is_as_needed(medication: Medication) -> bool:
    frequency = (medication.frequency or "").strip().lower()
    return any(marker in frequency for marker in AS_NEEDED_MARKERS)

def derive_slots(medication: Medication, on_date: date, tz: tzinfo) -> List[DoseSlot]:
    """Expected dose slots for ``medication`` on ``on_date`` in time zone ``tz``."""
    if is_as_needed(medication):
        return []

    labels = medication.times_of_day
    if not labels:
        return [DoseSlot(dose_number=0, label=DEFAULT_DOSE_LABEL)]

    slots = []
    for index, label in enumerate(labels):
        clock = clock_time_for_label(label)
        scheduled = datetime.combine(on_date, clock, tzinfo=tz) if clock else None
        slots.append(DoseSlot(dose_number=index, label=label, scheduled_time=scheduled))
    return slots

def end_of_day(on_date: date, tz: tzinfo) -> datetime:
    """First instant after ``on_date`` in ``tz``."""
    return datetime.combine(on_date + timedelta(days=1), time(0, 0), tzinfo=tz)

def day_has_elapsed(on_date: date, now: datetime, tz: tzinfo) -> bool:
    return now >= end_of_day(on_date, tz)
