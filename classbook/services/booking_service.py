"""Booking engine: capacity check, booking append and entitlement debit.

A booking touches two documents, the class instance and the entitlement, and
the store has no multi-document transactions. Both writes are conditional on
the revision read at the start of the attempt and always happen in the same
order (instance, then entitlement). If the debit fails after the instance was
written, the booking is removed again before the error is surfaced.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from classbook.domain.models import (
    Booking,
    BookingError,
    BookingErrorKind,
    BookingResult,
    ClassInstance,
)
from classbook.repository.data_repository import (
    DataRepository,
    DocumentNotFoundError,
    RevisionConflictError,
    StoreError,
    StoreUnavailableError,
)
from classbook.services.entitlement_service import (
    EntitlementDebitConflictError,
    EntitlementExhaustedError,
    EntitlementService,
)
from classbook.services.tenant_guard import require_subject_id, require_tenant_id, scoped
from classbook.utils.config import Settings, get_settings
from classbook.utils.logger import get_logger


logger = get_logger(__name__)


class BookingUnavailableError(Exception):
    """Transient failure; the caller may retry the booking later."""

    retryable = True


@dataclass(frozen=True)
class UserBooking:
    instance_id: str
    class_id: str
    starts_at: datetime
    is_cancelled: bool
    booking: Booking


BookingOutcome = Union[BookingResult, BookingError]


class BookingService:
    """Books a student onto a class instance exactly once."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        entitlement_service: Optional[EntitlementService] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._entitlements = entitlement_service or EntitlementService(
            repository=self._repository,
            settings=self._settings,
        )

    def book_instance(
        self,
        tenant_id: str,
        instance_id: str,
        student_id: str,
        now: Optional[datetime] = None,
    ) -> BookingOutcome:
        """Book ``student_id`` onto ``instance_id``.

        Business refusals come back as BookingError values. Lost revision
        races and store hiccups re-run the whole precondition chain; once
        ``booking_max_attempts`` is used up BookingUnavailableError is raised.
        """
        tenant_id = require_tenant_id(tenant_id)
        instance_id = require_subject_id(instance_id, "instance id")
        student_id = require_subject_id(student_id, "student id")
        now = now or datetime.now(timezone.utc)

        last_error: Optional[Exception] = None
        for attempt in range(1, self._settings.booking_max_attempts + 1):
            try:
                outcome = self._attempt(tenant_id, instance_id, student_id, now)
            except (RevisionConflictError, EntitlementExhaustedError) as exc:
                logger.debug(
                    "Booking attempt %s for instance %s lost a race: %s",
                    attempt,
                    instance_id,
                    exc,
                )
                last_error = exc
                continue
            except StoreUnavailableError as exc:
                logger.warning(
                    "Store unavailable during booking attempt %s for instance %s: %s",
                    attempt,
                    instance_id,
                    exc,
                )
                last_error = exc
                continue

            if isinstance(outcome, BookingError):
                logger.info(
                    "Booking refused for student %s on instance %s: %s",
                    student_id,
                    instance_id,
                    outcome.kind.value,
                )
            else:
                logger.info(
                    "Booked student %s on instance %s using %s (%s seats left)",
                    student_id,
                    instance_id,
                    outcome.booking.entitlement_type.value,
                    outcome.remaining_capacity,
                )
            return outcome

        raise BookingUnavailableError(
            f"Booking for instance {instance_id} did not complete after "
            f"{self._settings.booking_max_attempts} attempts"
        ) from last_error

    def list_user_bookings(self, tenant_id: str, student_id: str) -> list[UserBooking]:
        tenant_id = require_tenant_id(tenant_id)
        student_id = require_subject_id(student_id, "student id")
        rows: list[UserBooking] = []
        for instance in self._repository.list_instances_booked_by(
            tenant_id=tenant_id,
            student_id=student_id,
        ):
            if scoped(tenant_id, instance) is None:
                continue
            for booking in instance.bookings:
                if booking.student_id == student_id:
                    rows.append(
                        UserBooking(
                            instance_id=instance.instance_id,
                            class_id=instance.class_id,
                            starts_at=instance.starts_at,
                            is_cancelled=instance.is_cancelled,
                            booking=booking,
                        )
                    )
        return rows

    def _attempt(
        self,
        tenant_id: str,
        instance_id: str,
        student_id: str,
        now: datetime,
    ) -> BookingOutcome:
        instance = self._load_instance(tenant_id, instance_id)
        if instance is None:
            return BookingError(BookingErrorKind.NOT_FOUND, "Class instance not found")
        if instance.is_cancelled:
            return BookingError(BookingErrorKind.CLASS_CANCELLED, "Class is cancelled")
        if instance.remaining_capacity <= 0:
            return BookingError(BookingErrorKind.CLASS_FULL, "Class is full")
        if instance.has_booking_for(student_id):
            return BookingError(BookingErrorKind.ALREADY_BOOKED, "Already booked this class")

        entitlement = self._entitlements.select_entitlement(tenant_id, student_id, now)
        if entitlement is None:
            return BookingError(
                BookingErrorKind.NO_VALID_ENTITLEMENT,
                "No valid subscription or clips remaining",
            )

        booking = Booking(
            student_id=student_id,
            entitlement_type=entitlement.kind,
            entitlement_id=entitlement.entitlement_id,
            booked_at=now,
        )
        try:
            updated = self._repository.save_instance_bookings(
                tenant_id=tenant_id,
                instance=instance.with_booking(booking),
            )
        except DocumentNotFoundError:
            return BookingError(BookingErrorKind.NOT_FOUND, "Class instance not found")

        remaining_clips = entitlement.remaining_clips
        if not entitlement.kind.is_unlimited:
            try:
                debited = self._entitlements.debit_clip(
                    tenant_id=tenant_id,
                    entitlement=entitlement,
                    now=now,
                )
            except EntitlementExhaustedError as exc:
                if not self._compensate(tenant_id, updated, booking):
                    raise BookingUnavailableError(
                        f"Could not roll back booking on instance {updated.instance_id}"
                    ) from exc
                raise
            except (EntitlementDebitConflictError, StoreError) as exc:
                self._compensate(tenant_id, updated, booking)
                raise BookingUnavailableError(
                    f"Could not debit entitlement {entitlement.entitlement_id}"
                ) from exc
            remaining_clips = debited.remaining_clips

        return BookingResult(
            booking=booking,
            instance_id=updated.instance_id,
            remaining_capacity=updated.remaining_capacity,
            entitlement_id=entitlement.entitlement_id,
            remaining_clips=remaining_clips,
        )

    def _load_instance(self, tenant_id: str, instance_id: str) -> Optional[ClassInstance]:
        """Load the instance and cross-check its parent class's tenant."""
        instance = scoped(
            tenant_id,
            self._repository.get_instance(tenant_id=tenant_id, instance_id=instance_id),
        )
        if instance is None:
            return None
        parent = scoped(
            tenant_id,
            self._repository.get_class(tenant_id=tenant_id, class_id=instance.class_id),
        )
        if parent is None:
            logger.warning(
                "Instance %s references class %s outside tenant %s",
                instance_id,
                instance.class_id,
                tenant_id,
            )
            return None
        return instance

    def _compensate(self, tenant_id: str, written: ClassInstance, booking: Booking) -> bool:
        """Remove ``booking`` from the instance again after a failed debit."""
        current = written
        for _ in range(self._settings.compensation_max_attempts):
            if booking not in current.bookings:
                return True
            try:
                self._repository.save_instance_bookings(
                    tenant_id=tenant_id,
                    instance=current.without_booking(booking.student_id),
                )
                logger.info(
                    "Rolled back booking of student %s on instance %s",
                    booking.student_id,
                    written.instance_id,
                )
                return True
            except DocumentNotFoundError:
                return False
            except RevisionConflictError:
                try:
                    refreshed = self._repository.get_instance(
                        tenant_id=tenant_id,
                        instance_id=written.instance_id,
                    )
                except StoreError:
                    continue
                if refreshed is None:
                    return False
                current = refreshed
            except StoreError as exc:
                logger.warning(
                    "Rollback of booking on instance %s failed: %s",
                    written.instance_id,
                    exc,
                )

        logger.error(
            "Could not roll back booking of student %s on instance %s (entitlement %s); "
            "the instance holds a booking without a matching debit",
            booking.student_id,
            written.instance_id,
            booking.entitlement_id,
        )
        return False
