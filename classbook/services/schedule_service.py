"""Class template administration: creation, calendar listing and cancellation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from classbook.domain.constraints import validate_class_template
from classbook.domain.models import (
    ClassInstance,
    ClassTemplate,
    GenerationReport,
    RecurringWindow,
    WeeklySlot,
)
from classbook.repository.data_repository import (
    DataRepository,
    DocumentNotFoundError,
    DuplicateDocumentError,
    RevisionConflictError,
    StoreError,
    new_document_id,
)
from classbook.services.instance_generator import GenerationError, InstanceGenerationService
from classbook.services.tenant_guard import require_subject_id, require_tenant_id, scoped
from classbook.utils.config import Settings, get_settings
from classbook.utils.logger import get_logger


logger = get_logger(__name__)

DEFAULT_CANCELLATION_REASON = "Cancelled by administrator"


class ScheduleError(Exception):
    """Base exception for schedule administration failures."""


class ScheduleValidationError(ScheduleError):
    """Raised when a class draft or calendar query is invalid."""


class InstanceNotFoundError(ScheduleError):
    """Raised when an instance is absent or belongs to another tenant."""


class InstanceAlreadyCancelledError(ScheduleError):
    """Raised when cancelling an instance that is already cancelled."""


@dataclass(frozen=True)
class ClassDraft:
    title: str
    capacity: int
    is_recurring: bool
    single_date: Optional[datetime] = None
    recurring_window: Optional[RecurringWindow] = None
    weekly_schedule: tuple[WeeklySlot, ...] = ()
    is_active: bool = True


@dataclass(frozen=True)
class ClassCreationResult:
    template: ClassTemplate
    generation: Optional[GenerationReport] = None
    single_instance: Optional[ClassInstance] = None
    generation_error: Optional[str] = None


@dataclass(frozen=True)
class CalendarEntry:
    instance_id: str
    class_id: str
    title: str
    starts_at: datetime
    capacity: int
    remaining_capacity: int
    booking_count: int
    is_cancelled: bool
    is_bookable: bool


@dataclass(frozen=True)
class CancellationResult:
    class_id: str
    reason: str
    cancelled_instance_ids: list[str] = field(default_factory=list)
    affected_bookings: int = 0


class ScheduleService:
    """Admin-facing operations on classes and their instances."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        generator: Optional[InstanceGenerationService] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._generator = generator or InstanceGenerationService(
            repository=self._repository,
            settings=self._settings,
        )

    def create_class(
        self,
        tenant_id: str,
        draft: ClassDraft,
        now: Optional[datetime] = None,
    ) -> ClassCreationResult:
        """Persist a class and materialize its first instances.

        A failure while generating instances is reported on the result but
        does not undo the class; the nightly run picks it up again.
        """
        tenant_id = require_tenant_id(tenant_id)
        now = now or datetime.now(timezone.utc)
        template = ClassTemplate(
            class_id=new_document_id(),
            tenant_id=tenant_id,
            title=draft.title.strip(),
            capacity=draft.capacity,
            is_recurring=draft.is_recurring,
            is_active=draft.is_active,
            single_date=draft.single_date,
            recurring_window=draft.recurring_window,
            weekly_schedule=tuple(draft.weekly_schedule),
        )
        try:
            validate_class_template(template)
        except ValueError as exc:
            raise ScheduleValidationError(str(exc)) from exc

        self._repository.create_class(template, created_at=now)
        logger.info("Created class %s (%s) in tenant %s", template.class_id, template.title, tenant_id)

        if template.is_recurring:
            if not template.is_active:
                return ClassCreationResult(template=template)
            try:
                report = self._generator.generate_for_template(template, now=now)
            except (GenerationError, StoreError) as exc:
                logger.warning(
                    "Instance generation for new class %s failed: %s",
                    template.class_id,
                    exc,
                )
                return ClassCreationResult(template=template, generation_error=str(exc))
            return ClassCreationResult(template=template, generation=report)

        if template.single_date is None or template.single_date <= now:
            return ClassCreationResult(template=template)
        try:
            instance = self._repository.create_instance(
                tenant_id=tenant_id,
                class_id=template.class_id,
                starts_at=template.single_date,
                capacity=template.capacity,
            )
        except (DuplicateDocumentError, StoreError) as exc:
            logger.warning("Could not create instance for class %s: %s", template.class_id, exc)
            return ClassCreationResult(template=template, generation_error=str(exc))
        return ClassCreationResult(template=template, single_instance=instance)

    def get_class(self, tenant_id: str, class_id: str) -> Optional[ClassTemplate]:
        tenant_id = require_tenant_id(tenant_id)
        class_id = require_subject_id(class_id, "class id")
        return scoped(tenant_id, self._repository.get_class(tenant_id=tenant_id, class_id=class_id))

    def list_instances(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
    ) -> list[CalendarEntry]:
        tenant_id = require_tenant_id(tenant_id)
        if start.tzinfo is None or end.tzinfo is None:
            raise ScheduleValidationError("start and end must be timezone-aware")
        if start > end:
            raise ScheduleValidationError("start must not be after end")

        titles: dict[str, str] = {}
        entries: list[CalendarEntry] = []
        for instance in self._repository.list_instances_between(
            tenant_id=tenant_id,
            start=start,
            end=end,
        ):
            if instance.class_id not in titles:
                template = scoped(
                    tenant_id,
                    self._repository.get_class(tenant_id=tenant_id, class_id=instance.class_id),
                )
                titles[instance.class_id] = template.title if template else ""
            entries.append(
                CalendarEntry(
                    instance_id=instance.instance_id,
                    class_id=instance.class_id,
                    title=titles[instance.class_id],
                    starts_at=instance.starts_at,
                    capacity=instance.capacity,
                    remaining_capacity=instance.remaining_capacity,
                    booking_count=len(instance.bookings),
                    is_cancelled=instance.is_cancelled,
                    is_bookable=not instance.is_cancelled and instance.remaining_capacity > 0,
                )
            )
        return entries

    def cancel_instance(
        self,
        tenant_id: str,
        instance_id: str,
        reason: Optional[str] = None,
        cancel_entire_series: bool = False,
        now: Optional[datetime] = None,
    ) -> CancellationResult:
        """Cancel one instance or every future instance of its class.

        Bookings stay on the cancelled instances; the count is reported so
        the caller can notify the students.
        """
        tenant_id = require_tenant_id(tenant_id)
        instance_id = require_subject_id(instance_id, "instance id")
        now = now or datetime.now(timezone.utc)
        reason = (reason or "").strip() or DEFAULT_CANCELLATION_REASON

        instance = scoped(
            tenant_id,
            self._repository.get_instance(tenant_id=tenant_id, instance_id=instance_id),
        )
        if instance is None:
            raise InstanceNotFoundError(f"Class instance {instance_id} not found")

        if cancel_entire_series:
            targets = self._repository.list_future_instances(
                tenant_id=tenant_id,
                class_id=instance.class_id,
                now=now,
            )
        else:
            if instance.is_cancelled:
                raise InstanceAlreadyCancelledError(f"Class instance {instance_id} is already cancelled")
            targets = [instance]

        cancelled: list[ClassInstance] = []
        for target in targets:
            result = self._cancel_one(tenant_id, target, reason)
            if result is not None:
                cancelled.append(result)

        if not cancel_entire_series and not cancelled:
            raise InstanceAlreadyCancelledError(f"Class instance {instance_id} is already cancelled")

        affected = sum(len(item.bookings) for item in cancelled)
        logger.info(
            "Cancelled %s instance(s) of class %s in tenant %s (%s bookings affected)",
            len(cancelled),
            instance.class_id,
            tenant_id,
            affected,
        )
        return CancellationResult(
            class_id=instance.class_id,
            reason=reason,
            cancelled_instance_ids=[item.instance_id for item in cancelled],
            affected_bookings=affected,
        )

    def _cancel_one(
        self,
        tenant_id: str,
        instance: ClassInstance,
        reason: str,
    ) -> Optional[ClassInstance]:
        """Mark one instance cancelled; None when it was cancelled or removed meanwhile."""
        current = instance
        for _ in range(self._settings.booking_max_attempts):
            if current.is_cancelled:
                return None
            try:
                return self._repository.mark_instance_cancelled(
                    tenant_id=tenant_id,
                    instance=current,
                    reason=reason,
                )
            except DocumentNotFoundError:
                return None
            except RevisionConflictError:
                refreshed = scoped(
                    tenant_id,
                    self._repository.get_instance(tenant_id=tenant_id, instance_id=current.instance_id),
                )
                if refreshed is None:
                    return None
                current = refreshed
        raise RevisionConflictError(
            f"Could not cancel instance {instance.instance_id}; it kept changing concurrently"
        )
