from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone

import pytest

from classbook.domain.models import ClassTemplate, RecurringWindow, WeeklySlot
from classbook.repository.data_repository import DataRepository, StoreUnavailableError
from classbook.services.instance_generator import (
    ClassNotFoundError,
    GenerationValidationError,
    InstanceGenerationService,
    expand_slot,
)
from classbook.utils.config import get_settings


# Monday
NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def _build_test_settings(tmp_path, filename: str, **overrides):
    get_settings.cache_clear()
    base = get_settings()
    return replace(base, database_path=tmp_path / filename, **overrides)


def _build_service(tmp_path, filename: str, **overrides):
    settings = _build_test_settings(tmp_path, filename, **overrides)
    repository = DataRepository(settings)
    repository.initialize_database()
    return InstanceGenerationService(repository=repository, settings=settings), repository


def _store_class(
    repository: DataRepository,
    class_id: str = "salsa",
    tenant_id: str = "tenant-a",
    slots=(WeeklySlot("monday", "18:00", "19:00"),),
    window=RecurringWindow(date(2026, 1, 1), date(2026, 6, 30)),
    **overrides,
) -> ClassTemplate:
    template = ClassTemplate(
        class_id=class_id,
        tenant_id=tenant_id,
        title="Salsa",
        capacity=10,
        is_recurring=True,
        recurring_window=window,
        weekly_schedule=tuple(slots),
        **overrides,
    )
    return repository.create_class(template, created_at=NOW)


def test_generation_creates_weekly_instances_inside_horizon(tmp_path):
    service, repository = _build_service(tmp_path, "generate_basic.db")
    _store_class(repository)

    report = service.generate_instances("tenant-a", "salsa", now=NOW)

    assert report.created == 8
    assert report.skipped == 0
    assert report.errored == 0
    instances = repository.list_instances_for_class(tenant_id="tenant-a", class_id="salsa")
    assert len(instances) == 8
    assert instances[0].starts_at == datetime(2026, 1, 5, 18, 0, tzinfo=timezone.utc)
    for instance in instances:
        assert instance.capacity == 10
        assert instance.remaining_capacity == 10
        assert instance.bookings == ()
        assert instance.starts_at.weekday() == 0


def test_generation_is_idempotent(tmp_path):
    service, repository = _build_service(tmp_path, "generate_idempotent.db")
    _store_class(repository)

    first = service.generate_instances("tenant-a", "salsa", now=NOW)
    second = service.generate_instances("tenant-a", "salsa", now=NOW)

    assert first.created == 8
    assert second.created == 0
    assert second.skipped == 8
    assert len(repository.list_instances_for_class(tenant_id="tenant-a", class_id="salsa")) == 8


def test_duplicate_creation_race_counts_as_skipped(monkeypatch, tmp_path):
    service, repository = _build_service(tmp_path, "generate_race.db")
    _store_class(repository)
    service.generate_instances("tenant-a", "salsa", now=NOW)

    original_find = repository.find_instance_at
    seen = set()

    def racing_find(**kwargs):
        # first lookup misses, as if another generator was still writing
        if kwargs["starts_at"] not in seen:
            seen.add(kwargs["starts_at"])
            return None
        return original_find(**kwargs)

    monkeypatch.setattr(repository, "find_instance_at", racing_find)
    report = service.generate_instances("tenant-a", "salsa", now=NOW)

    assert report.created == 0
    assert report.skipped == 8
    assert report.errored == 0


def test_window_end_date_bounds_generation(tmp_path):
    service, repository = _build_service(tmp_path, "generate_window.db")
    _store_class(repository, window=RecurringWindow(date(2026, 1, 1), date(2026, 1, 20)))

    report = service.generate_instances("tenant-a", "salsa", now=NOW)

    assert report.created == 3
    instances = repository.list_instances_for_class(tenant_id="tenant-a", class_id="salsa")
    assert all(instance.starts_at.date() <= date(2026, 1, 20) for instance in instances)


def test_window_start_date_after_today_delays_first_instance(tmp_path):
    service, repository = _build_service(tmp_path, "generate_window_start.db")
    _store_class(repository, window=RecurringWindow(date(2026, 1, 20), date(2026, 6, 30)))

    report = service.generate_instances("tenant-a", "salsa", now=NOW)

    # Tuesday window start; Mondays from Jan 26 up to the Mar 2 horizon end.
    assert report.created == 5
    instances = repository.list_instances_for_class(tenant_id="tenant-a", class_id="salsa")
    assert all(instance.starts_at.date() >= date(2026, 1, 20) for instance in instances)
    assert instances[0].starts_at == datetime(2026, 1, 26, 18, 0, tzinfo=timezone.utc)


def test_slot_already_passed_today_rolls_to_next_week(tmp_path):
    service, repository = _build_service(tmp_path, "generate_rollover.db")
    _store_class(repository, slots=(WeeklySlot("monday", "09:00", "10:00"),))

    service.generate_instances("tenant-a", "salsa", now=NOW)

    instances = repository.list_instances_for_class(tenant_id="tenant-a", class_id="salsa")
    assert instances[0].starts_at == datetime(2026, 1, 12, 9, 0, tzinfo=timezone.utc)
    assert all(instance.starts_at > NOW for instance in instances)


def test_malformed_entry_is_reported_and_others_continue(tmp_path):
    service, repository = _build_service(tmp_path, "generate_malformed.db")
    _store_class(
        repository,
        slots=(
            WeeklySlot("monday", "18:00", "19:00"),
            WeeklySlot("funday", "18:00", "19:00"),
            WeeklySlot("thursday", "20:00", "19:00"),
        ),
    )

    report = service.generate_instances("tenant-a", "salsa", now=NOW)

    assert report.created == 8
    assert report.entries[0].reason is None
    assert "invalid day of week" in report.entries[1].reason
    assert report.entries[2].reason is not None
    assert report.entries[2].created == 0


def test_store_failure_on_one_candidate_does_not_stop_generation(monkeypatch, tmp_path):
    service, repository = _build_service(tmp_path, "generate_store_failure.db")
    _store_class(repository)
    failing_start = datetime(2026, 1, 19, 18, 0, tzinfo=timezone.utc)
    original_create = repository.create_instance

    def flaky_create(**kwargs):
        if kwargs["starts_at"] == failing_start:
            raise StoreUnavailableError("database is locked")
        return original_create(**kwargs)

    monkeypatch.setattr(repository, "create_instance", flaky_create)
    report = service.generate_instances("tenant-a", "salsa", now=NOW)

    assert report.created == 7
    assert report.errored == 1
    assert report.entries[0].errored == 1


def test_class_from_another_tenant_is_not_found(tmp_path):
    service, repository = _build_service(tmp_path, "generate_tenant.db")
    _store_class(repository, tenant_id="tenant-a")

    with pytest.raises(ClassNotFoundError):
        service.generate_instances("tenant-b", "salsa", now=NOW)
    assert repository.list_instances_for_class(tenant_id="tenant-b", class_id="salsa") == []


def test_inactive_or_single_class_is_rejected(tmp_path):
    service, repository = _build_service(tmp_path, "generate_rejected.db")
    _store_class(repository, class_id="paused", is_active=False)
    repository.create_class(
        ClassTemplate(
            class_id="workshop",
            tenant_id="tenant-a",
            title="Workshop",
            capacity=20,
            is_recurring=False,
            single_date=NOW + timedelta(days=3),
        ),
        created_at=NOW,
    )

    with pytest.raises(GenerationValidationError):
        service.generate_instances("tenant-a", "paused", now=NOW)
    with pytest.raises(GenerationValidationError):
        service.generate_instances("tenant-a", "workshop", now=NOW)


def test_custom_horizon_limits_candidates(tmp_path):
    service, repository = _build_service(tmp_path, "generate_horizon.db")
    _store_class(repository)

    report = service.generate_instances("tenant-a", "salsa", horizon=timedelta(weeks=2), now=NOW)

    assert report.created == 2


def test_schedule_times_follow_configured_timezone(tmp_path):
    service, repository = _build_service(
        tmp_path,
        "generate_timezone.db",
        schedule_timezone="Europe/Oslo",
    )
    _store_class(repository)

    service.generate_instances("tenant-a", "salsa", horizon=timedelta(weeks=1), now=NOW)

    instances = repository.list_instances_for_class(tenant_id="tenant-a", class_id="salsa")
    assert [item.starts_at for item in instances] == [
        datetime(2026, 1, 5, 17, 0, tzinfo=timezone.utc)
    ]


def test_generate_for_tenant_covers_every_active_recurring_class(tmp_path):
    service, repository = _build_service(tmp_path, "generate_tenant_all.db", generation_workers=2)
    _store_class(repository, class_id="salsa")
    _store_class(repository, class_id="bachata", slots=(WeeklySlot("friday", "19:00", "20:00"),))
    _store_class(repository, class_id="paused", is_active=False)
    _store_class(repository, class_id="elsewhere", tenant_id="tenant-b")

    result = service.generate_for_tenant("tenant-a", now=NOW)

    assert result.classes_processed == 2
    assert {report.class_id for report in result.reports} == {"salsa", "bachata"}
    assert result.total_created == 16
    assert result.total_errored == 0
    assert repository.list_instances_for_class(tenant_id="tenant-b", class_id="elsewhere") == []


def test_expand_slot_is_empty_when_window_already_ended():
    instants = expand_slot(
        weekday=0,
        start_time=time(18, 0),
        window=RecurringWindow(date(2025, 9, 1), date(2025, 12, 31)),
        now=NOW,
        horizon_end=NOW + timedelta(weeks=8),
        tz=timezone.utc,
    )
    assert instants == []
