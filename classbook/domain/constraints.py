"""Domain-level validation rules for class templates and engine tuning."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import time

from classbook.domain.models import ClassTemplate, WeeklySlot


WEEKDAY_INDEX = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}

TIE_BREAK_POLICIES = ("soonest_expiry", "newest_purchase", "oldest_purchase")

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class ScheduleEntryError(ValueError):
    """Raised when a single weekly schedule entry cannot be interpreted."""


@dataclass(frozen=True)
class EngineConfig:
    generation_horizon_weeks: int
    generation_workers: int
    booking_max_attempts: int
    entitlement_debit_max_attempts: int
    compensation_max_attempts: int
    store_timeout_seconds: float
    entitlement_tie_break: str


def validate_engine_config(config: EngineConfig) -> None:
    if config.generation_horizon_weeks <= 0:
        raise ValueError("generation_horizon_weeks must be > 0")
    if config.generation_workers <= 0:
        raise ValueError("generation_workers must be > 0")
    if config.booking_max_attempts <= 0:
        raise ValueError("booking_max_attempts must be > 0")
    if config.entitlement_debit_max_attempts <= 0:
        raise ValueError("entitlement_debit_max_attempts must be > 0")
    if config.compensation_max_attempts <= 0:
        raise ValueError("compensation_max_attempts must be > 0")
    if config.store_timeout_seconds <= 0:
        raise ValueError("store_timeout_seconds must be > 0")
    if config.entitlement_tie_break not in TIE_BREAK_POLICIES:
        raise ValueError(
            "entitlement_tie_break must be one of " + ", ".join(TIE_BREAK_POLICIES)
        )


def parse_clock_time(value: str) -> time:
    if not isinstance(value, str) or not TIME_PATTERN.match(value):
        raise ScheduleEntryError(f"time {value!r} must follow HH:MM format")
    hours, minutes = (int(part) for part in value.split(":"))
    return time(hour=hours, minute=minutes)


def parse_weekly_slot(slot: WeeklySlot) -> tuple[int, time]:
    """Return (weekday index, start time) for a schedule entry.

    Raises ScheduleEntryError with a human-readable reason for entries that
    must be skipped during generation.
    """
    day_name = (slot.day_of_week or "").strip().lower()
    if not day_name:
        raise ScheduleEntryError("day_of_week is missing")
    if day_name not in WEEKDAY_INDEX:
        raise ScheduleEntryError(f"invalid day of week: {slot.day_of_week!r}")
    start = parse_clock_time(slot.start_time)
    end = parse_clock_time(slot.end_time)
    if start >= end:
        raise ScheduleEntryError("start_time must be before end_time")
    return WEEKDAY_INDEX[day_name], start


def validate_class_template(template: ClassTemplate) -> None:
    """Check the single-vs-recurring invariant and basic field ranges."""
    if not template.tenant_id.strip():
        raise ValueError("tenant_id must be non-empty")
    if not template.title.strip():
        raise ValueError("title must be non-empty")
    if template.capacity <= 0:
        raise ValueError("capacity must be > 0")

    if template.is_recurring:
        if template.single_date is not None:
            raise ValueError("a recurring class cannot also define single_date")
        if template.recurring_window is None:
            raise ValueError("a recurring class requires recurring_window")
        window = template.recurring_window
        if window.start_date > window.end_date:
            raise ValueError("recurring_window start_date must not be after end_date")
        if not template.weekly_schedule:
            raise ValueError("a recurring class requires at least one weekly slot")
        for slot in template.weekly_schedule:
            try:
                parse_weekly_slot(slot)
            except ScheduleEntryError as exc:
                raise ValueError(f"weekly_schedule entry invalid: {exc}") from exc
        return

    if template.single_date is None:
        raise ValueError("a single class requires single_date")
    if template.single_date.tzinfo is None:
        raise ValueError("single_date must be timezone-aware")
    if template.recurring_window is not None or template.weekly_schedule:
        raise ValueError("a single class cannot define a recurring schedule")
