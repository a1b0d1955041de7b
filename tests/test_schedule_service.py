from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

import pytest

from classbook.domain.models import PassProduct, RecurringWindow, WeeklySlot
from classbook.repository.data_repository import DataRepository, StoreUnavailableError
from classbook.services.booking_service import BookingService
from classbook.services.entitlement_service import EntitlementService
from classbook.services.instance_generator import InstanceGenerationService
from classbook.services.schedule_service import (
    ClassDraft,
    InstanceAlreadyCancelledError,
    InstanceNotFoundError,
    ScheduleService,
    ScheduleValidationError,
)
from classbook.utils.config import get_settings


# Monday
NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

WEDNESDAY_CLASS = ClassDraft(
    title="Kizomba Improvers",
    capacity=3,
    is_recurring=True,
    recurring_window=RecurringWindow(date(2026, 1, 1), date(2026, 6, 30)),
    weekly_schedule=(WeeklySlot("wednesday", "18:00", "19:30"),),
)


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    base = get_settings()
    return replace(base, database_path=tmp_path / filename)


def _build_services(tmp_path, filename: str):
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    generator = InstanceGenerationService(repository=repository, settings=settings)
    schedule = ScheduleService(repository=repository, generator=generator, settings=settings)
    entitlements = EntitlementService(repository=repository, settings=settings)
    bookings = BookingService(
        repository=repository,
        entitlement_service=entitlements,
        settings=settings,
    )
    return schedule, bookings, entitlements, repository


def test_recurring_class_generates_instances_on_creation(tmp_path):
    schedule, _, _, repository = _build_services(tmp_path, "schedule_recurring.db")

    result = schedule.create_class("tenant-a", WEDNESDAY_CLASS, now=NOW)

    assert result.generation is not None
    assert result.generation.created == 8
    assert result.generation_error is None
    assert schedule.get_class("tenant-a", result.template.class_id) == result.template
    assert schedule.get_class("tenant-b", result.template.class_id) is None


def test_single_class_materializes_one_future_instance(tmp_path):
    schedule, _, _, repository = _build_services(tmp_path, "schedule_single.db")
    future = ClassDraft(
        title="Saturday workshop",
        capacity=20,
        is_recurring=False,
        single_date=NOW + timedelta(days=5),
    )
    past = replace(future, single_date=NOW - timedelta(days=1))

    upcoming = schedule.create_class("tenant-a", future, now=NOW)
    finished = schedule.create_class("tenant-a", past, now=NOW)

    assert upcoming.single_instance is not None
    assert upcoming.single_instance.starts_at == NOW + timedelta(days=5)
    assert finished.single_instance is None
    assert (
        repository.list_instances_for_class(tenant_id="tenant-a", class_id=finished.template.class_id)
        == []
    )


def test_invalid_class_draft_is_rejected(tmp_path):
    schedule, _, _, _ = _build_services(tmp_path, "schedule_invalid.db")

    with pytest.raises(ScheduleValidationError):
        schedule.create_class("tenant-a", replace(WEDNESDAY_CLASS, weekly_schedule=()), now=NOW)
    with pytest.raises(ScheduleValidationError):
        schedule.create_class(
            "tenant-a",
            replace(WEDNESDAY_CLASS, single_date=NOW + timedelta(days=1)),
            now=NOW,
        )


def test_generation_failure_does_not_fail_class_creation(monkeypatch, tmp_path):
    schedule, _, _, repository = _build_services(tmp_path, "schedule_generation_failure.db")

    def unavailable(*args, **kwargs):
        raise StoreUnavailableError("database is locked")

    monkeypatch.setattr(schedule._generator, "generate_for_template", unavailable)

    result = schedule.create_class("tenant-a", WEDNESDAY_CLASS, now=NOW)

    assert result.generation is None
    assert "database is locked" in result.generation_error
    assert repository.get_class(tenant_id="tenant-a", class_id=result.template.class_id) is not None


def test_calendar_reports_booking_counts_and_bookability(tmp_path):
    schedule, bookings, entitlements, _ = _build_services(tmp_path, "schedule_calendar.db")
    schedule.create_class("tenant-a", WEDNESDAY_CLASS, now=NOW)
    first_week = schedule.list_instances("tenant-a", NOW, NOW + timedelta(days=7))
    target = first_week[0]
    for student in ("student-1", "student-2", "student-3"):
        entitlements.grant_from_pass(
            "tenant-a",
            student,
            PassProduct(name="Unlimited", pass_type="unlimited", validity_days=30),
            now=NOW,
        )
        bookings.book_instance("tenant-a", target.instance_id, student, now=NOW)

    entries = schedule.list_instances("tenant-a", NOW, NOW + timedelta(days=14))

    assert len(entries) == 2
    assert entries[0].title == "Kizomba Improvers"
    assert entries[0].booking_count == 3
    assert entries[0].remaining_capacity == 0
    assert entries[0].is_bookable is False
    assert entries[1].is_bookable is True
    assert schedule.list_instances("tenant-b", NOW, NOW + timedelta(days=14)) == []


def test_calendar_rejects_naive_or_inverted_ranges(tmp_path):
    schedule, _, _, _ = _build_services(tmp_path, "schedule_calendar_invalid.db")

    with pytest.raises(ScheduleValidationError):
        schedule.list_instances("tenant-a", datetime(2026, 1, 1), datetime(2026, 2, 1))
    with pytest.raises(ScheduleValidationError):
        schedule.list_instances("tenant-a", NOW, NOW - timedelta(days=1))


def test_cancel_single_instance_keeps_bookings_and_reports_them(tmp_path):
    schedule, bookings, entitlements, repository = _build_services(tmp_path, "schedule_cancel.db")
    schedule.create_class("tenant-a", WEDNESDAY_CLASS, now=NOW)
    target = schedule.list_instances("tenant-a", NOW, NOW + timedelta(days=7))[0]
    entitlements.grant_from_pass(
        "tenant-a",
        "student-1",
        PassProduct(name="Unlimited", pass_type="unlimited", validity_days=30),
        now=NOW,
    )
    bookings.book_instance("tenant-a", target.instance_id, "student-1", now=NOW)

    result = schedule.cancel_instance("tenant-a", target.instance_id, reason="Studio flooded", now=NOW)

    assert result.cancelled_instance_ids == [target.instance_id]
    assert result.affected_bookings == 1
    stored = repository.get_instance(tenant_id="tenant-a", instance_id=target.instance_id)
    assert stored.is_cancelled is True
    assert stored.cancellation_reason == "Studio flooded"
    assert len(stored.bookings) == 1
    with pytest.raises(InstanceAlreadyCancelledError):
        schedule.cancel_instance("tenant-a", target.instance_id, now=NOW)


def test_cancel_series_only_touches_future_active_instances(tmp_path):
    schedule, _, _, repository = _build_services(tmp_path, "schedule_cancel_series.db")
    created = schedule.create_class("tenant-a", WEDNESDAY_CLASS, now=NOW)
    instances = repository.list_instances_for_class(
        tenant_id="tenant-a",
        class_id=created.template.class_id,
    )
    schedule.cancel_instance("tenant-a", instances[3].instance_id, now=NOW)
    later = datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)

    result = schedule.cancel_instance(
        "tenant-a",
        instances[0].instance_id,
        cancel_entire_series=True,
        now=later,
    )

    # Jan 21 .. Feb 25 is six instances, Jan 28 was already cancelled
    assert len(result.cancelled_instance_ids) == 5
    assert instances[3].instance_id not in result.cancelled_instance_ids
    stored = repository.list_instances_for_class(
        tenant_id="tenant-a",
        class_id=created.template.class_id,
    )
    assert [item.is_cancelled for item in stored[:2]] == [False, False]
    assert all(item.is_cancelled for item in stored[2:])


def test_cancel_from_another_tenant_is_not_found(tmp_path):
    schedule, _, _, _ = _build_services(tmp_path, "schedule_cancel_tenant.db")
    schedule.create_class("tenant-a", WEDNESDAY_CLASS, now=NOW)
    target = schedule.list_instances("tenant-a", NOW, NOW + timedelta(days=7))[0]

    with pytest.raises(InstanceNotFoundError):
        schedule.cancel_instance("tenant-b", target.instance_id, now=NOW)
