"""Materialize dated class instances from recurring weekly templates.

Generation is safe to re-run (e.g. nightly): every candidate slot is checked
against the store before it is created, a duplicate-creation race counts as
"skipped", and a failed write only marks that candidate as errored while the
remaining candidates and classes carry on.
"""

from __future__ import annotations

from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from classbook.domain.constraints import ScheduleEntryError, parse_weekly_slot
from classbook.domain.models import (
    ClassTemplate,
    EntryReport,
    GenerationReport,
    RecurringWindow,
)
from classbook.repository.data_repository import (
    DataRepository,
    DuplicateDocumentError,
    StoreError,
)
from classbook.services.tenant_guard import require_subject_id, require_tenant_id, scoped
from classbook.utils.config import Settings, get_settings
from classbook.utils.logger import get_logger


logger = get_logger(__name__)

CREATED = "created"
SKIPPED = "skipped"
ERRORED = "errored"


class GenerationError(Exception):
    """Base exception for instance generation failures."""


class ClassNotFoundError(GenerationError):
    """Raised when the class is absent or belongs to another tenant."""


class GenerationValidationError(GenerationError):
    """Raised when a class cannot be expanded (inactive, not recurring, bad horizon)."""


@dataclass(frozen=True)
class TenantGenerationReport:
    tenant_id: str
    classes_processed: int
    total_created: int
    total_skipped: int
    total_errored: int
    reports: list[GenerationReport]


def resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown schedule timezone {name!r}") from exc


def expand_slot(
    *,
    weekday: int,
    start_time: time,
    window: RecurringWindow,
    now: datetime,
    horizon_end: datetime,
    tz: tzinfo,
) -> list[datetime]:
    """Return the UTC start instants of one weekly slot inside the window.

    Only dates in both the recurring window and [today, horizon end] are
    considered, and instants at or before ``now`` are dropped, so a slot whose
    start time has already passed today rolls over to next week.
    """
    first_day: date = max(now.astimezone(tz).date(), window.start_date)
    last_day: date = min(horizon_end.astimezone(tz).date(), window.end_date)
    if first_day > last_day:
        return []

    day = first_day + timedelta(days=(weekday - first_day.weekday()) % 7)
    instants: list[datetime] = []
    while day <= last_day:
        local_start = datetime.combine(day, start_time, tzinfo=tz)
        candidate = local_start.astimezone(timezone.utc)
        if now < candidate <= horizon_end:
            instants.append(candidate)
        day += timedelta(days=7)
    return instants


class InstanceGenerationService:
    """Expands recurring classes into ClassInstance documents."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._tz = resolve_timezone(self._settings.schedule_timezone)

    @property
    def default_horizon(self) -> timedelta:
        return timedelta(weeks=self._settings.generation_horizon_weeks)

    def generate_instances(
        self,
        tenant_id: str,
        class_id: str,
        horizon: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> GenerationReport:
        tenant_id = require_tenant_id(tenant_id)
        class_id = require_subject_id(class_id, "class id")
        template = scoped(
            tenant_id,
            self._repository.get_class(tenant_id=tenant_id, class_id=class_id),
        )
        if template is None:
            raise ClassNotFoundError(f"Class {class_id} not found")
        if not template.is_recurring:
            raise GenerationValidationError(f"Class {class_id} is not a recurring class")
        if not template.is_active:
            raise GenerationValidationError(f"Class {class_id} is not active")
        return self.generate_for_template(template, horizon=horizon, now=now)

    def generate_for_tenant(
        self,
        tenant_id: str,
        horizon: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> TenantGenerationReport:
        """Run generation for every active recurring class of the tenant."""
        tenant_id = require_tenant_id(tenant_id)
        now = now or datetime.now(timezone.utc)
        templates = self._repository.list_generatable_classes(tenant_id=tenant_id)
        logger.info("Generating instances for %s classes of tenant %s", len(templates), tenant_id)

        reports: list[GenerationReport] = []
        if templates:
            workers = min(self._settings.generation_workers, len(templates))
            with ThreadPoolExecutor(
                max_workers=workers,
                thread_name_prefix="generate",
            ) as pool:
                reports = list(
                    pool.map(
                        lambda template: self._generate_isolated(template, horizon, now),
                        templates,
                    )
                )

        return TenantGenerationReport(
            tenant_id=tenant_id,
            classes_processed=len(reports),
            total_created=sum(report.created for report in reports),
            total_skipped=sum(report.skipped for report in reports),
            total_errored=sum(report.errored for report in reports),
            reports=reports,
        )

    def generate_for_template(
        self,
        template: ClassTemplate,
        horizon: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> GenerationReport:
        horizon = self.default_horizon if horizon is None else horizon
        if horizon <= timedelta(0):
            raise GenerationValidationError("horizon must be positive")
        now = now or datetime.now(timezone.utc)
        horizon_end = now + horizon

        if template.recurring_window is None:
            return GenerationReport(
                class_id=template.class_id,
                created=0,
                skipped=0,
                errored=0,
                reason="No recurring window defined",
            )
        if not template.weekly_schedule:
            return GenerationReport(
                class_id=template.class_id,
                created=0,
                skipped=0,
                errored=0,
                reason="No weekly schedule defined",
            )

        entries: list[EntryReport] = []
        for slot in template.weekly_schedule:
            try:
                weekday, start_time = parse_weekly_slot(slot)
            except ScheduleEntryError as exc:
                logger.warning(
                    "Skipping schedule entry %s/%s of class %s: %s",
                    slot.day_of_week,
                    slot.start_time,
                    template.class_id,
                    exc,
                )
                entries.append(
                    EntryReport(
                        day_of_week=slot.day_of_week,
                        start_time=slot.start_time,
                        reason=str(exc),
                    )
                )
                continue

            counts: Counter[str] = Counter()
            for starts_at in expand_slot(
                weekday=weekday,
                start_time=start_time,
                window=template.recurring_window,
                now=now,
                horizon_end=horizon_end,
                tz=self._tz,
            ):
                counts[self._materialize(template, starts_at)] += 1
            entries.append(
                EntryReport(
                    day_of_week=slot.day_of_week,
                    start_time=slot.start_time,
                    created=counts[CREATED],
                    skipped=counts[SKIPPED],
                    errored=counts[ERRORED],
                )
            )

        report = GenerationReport(
            class_id=template.class_id,
            created=sum(entry.created for entry in entries),
            skipped=sum(entry.skipped for entry in entries),
            errored=sum(entry.errored for entry in entries),
            entries=entries,
        )
        logger.info(
            "Class %s: created=%s skipped=%s errored=%s",
            template.class_id,
            report.created,
            report.skipped,
            report.errored,
        )
        return report

    def _generate_isolated(
        self,
        template: ClassTemplate,
        horizon: Optional[timedelta],
        now: datetime,
    ) -> GenerationReport:
        """Generate one class, turning its failure into a report entry."""
        try:
            return self.generate_for_template(template, horizon=horizon, now=now)
        except (StoreError, GenerationError) as exc:
            logger.warning("Generation for class %s failed: %s", template.class_id, exc)
            return GenerationReport(
                class_id=template.class_id,
                created=0,
                skipped=0,
                errored=0,
                reason=str(exc),
            )

    def _materialize(self, template: ClassTemplate, starts_at: datetime) -> str:
        try:
            existing = self._repository.find_instance_at(
                tenant_id=template.tenant_id,
                class_id=template.class_id,
                starts_at=starts_at,
            )
            if existing is not None:
                return SKIPPED
            self._repository.create_instance(
                tenant_id=template.tenant_id,
                class_id=template.class_id,
                starts_at=starts_at,
                capacity=template.capacity,
            )
            return CREATED
        except DuplicateDocumentError:
            # lost a create race; confirm the winner is really there
            return self._confirm_existing(template, starts_at)
        except StoreError as exc:
            logger.warning(
                "Could not create instance of class %s at %s: %s",
                template.class_id,
                starts_at.isoformat(),
                exc,
            )
            return ERRORED

    def _confirm_existing(self, template: ClassTemplate, starts_at: datetime) -> str:
        try:
            existing = self._repository.find_instance_at(
                tenant_id=template.tenant_id,
                class_id=template.class_id,
                starts_at=starts_at,
            )
        except StoreError as exc:
            logger.warning("Duplicate check failed for class %s: %s", template.class_id, exc)
            return ERRORED
        return SKIPPED if existing is not None else ERRORED
