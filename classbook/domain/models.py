"""Domain models for class scheduling, entitlements and bookings."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Optional


class EntitlementKind(str, Enum):
    SINGLE = "single"
    MULTI_PASS = "multi-pass"
    CLIPCARD = "clipcard"
    MONTHLY = "monthly"

    @property
    def is_unlimited(self) -> bool:
        return self is EntitlementKind.MONTHLY


CLIP_BASED_KINDS = frozenset(
    {EntitlementKind.SINGLE, EntitlementKind.MULTI_PASS, EntitlementKind.CLIPCARD}
)


class BookingErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    CLASS_CANCELLED = "CLASS_CANCELLED"
    CLASS_FULL = "CLASS_FULL"
    ALREADY_BOOKED = "ALREADY_BOOKED"
    NO_VALID_ENTITLEMENT = "NO_VALID_ENTITLEMENT"


@dataclass(frozen=True)
class WeeklySlot:
    day_of_week: str
    start_time: str
    end_time: str


@dataclass(frozen=True)
class RecurringWindow:
    start_date: date
    end_date: date


@dataclass(frozen=True)
class ClassTemplate:
    class_id: str
    tenant_id: str
    title: str
    capacity: int
    is_recurring: bool
    is_active: bool = True
    single_date: Optional[datetime] = None
    recurring_window: Optional[RecurringWindow] = None
    weekly_schedule: tuple[WeeklySlot, ...] = ()


@dataclass(frozen=True)
class Booking:
    student_id: str
    entitlement_type: EntitlementKind
    entitlement_id: str
    booked_at: datetime

    def to_document(self) -> dict[str, str]:
        return {
            "student_id": self.student_id,
            "entitlement_type": self.entitlement_type.value,
            "entitlement_id": self.entitlement_id,
            "booked_at": self.booked_at.isoformat(),
        }

    @classmethod
    def from_document(cls, payload: dict[str, str]) -> "Booking":
        return cls(
            student_id=str(payload["student_id"]),
            entitlement_type=EntitlementKind(payload["entitlement_type"]),
            entitlement_id=str(payload["entitlement_id"]),
            booked_at=datetime.fromisoformat(payload["booked_at"]),
        )


@dataclass(frozen=True)
class ClassInstance:
    instance_id: str
    tenant_id: str
    class_id: str
    starts_at: datetime
    capacity: int
    remaining_capacity: int
    revision: str
    is_cancelled: bool = False
    cancellation_reason: Optional[str] = None
    bookings: tuple[Booking, ...] = ()

    def has_booking_for(self, student_id: str) -> bool:
        return any(booking.student_id == student_id for booking in self.bookings)

    def with_booking(self, booking: Booking) -> "ClassInstance":
        """Return a copy holding one more booking and one less free seat."""
        if self.remaining_capacity <= 0:
            raise ValueError("cannot add a booking to a full class instance")
        if self.has_booking_for(booking.student_id):
            raise ValueError("student already holds a booking on this instance")
        return replace(
            self,
            bookings=self.bookings + (booking,),
            remaining_capacity=self.remaining_capacity - 1,
        )

    def without_booking(self, student_id: str) -> "ClassInstance":
        kept = tuple(b for b in self.bookings if b.student_id != student_id)
        if len(kept) == len(self.bookings):
            return self
        return replace(
            self,
            bookings=kept,
            remaining_capacity=self.remaining_capacity + (len(self.bookings) - len(kept)),
        )


@dataclass(frozen=True)
class Entitlement:
    entitlement_id: str
    tenant_id: str
    user_id: str
    kind: EntitlementKind
    remaining_clips: Optional[int]
    valid_from: datetime
    valid_until: datetime
    created_at: datetime
    revision: str
    is_active: bool = True
    pass_name: Optional[str] = None

    def is_valid_at(self, now: datetime) -> bool:
        return self.is_active and self.valid_from <= now < self.valid_until

    def is_usable_at(self, now: datetime) -> bool:
        """True when a booking made at ``now`` could consume this entitlement."""
        if not self.is_valid_at(now):
            return False
        if self.kind.is_unlimited:
            return True
        return self.remaining_clips is not None and self.remaining_clips > 0


@dataclass(frozen=True)
class PassProduct:
    """Product definition the payment collaborator turns into an entitlement."""

    name: str
    pass_type: str
    validity_days: int
    classes_limit: Optional[int] = None


@dataclass(frozen=True)
class BookingResult:
    booking: Booking
    instance_id: str
    remaining_capacity: int
    entitlement_id: str
    remaining_clips: Optional[int]


@dataclass(frozen=True)
class BookingError:
    kind: BookingErrorKind
    message: str


@dataclass(frozen=True)
class EntryReport:
    day_of_week: str
    start_time: str
    created: int = 0
    skipped: int = 0
    errored: int = 0
    reason: Optional[str] = None


@dataclass(frozen=True)
class GenerationReport:
    class_id: str
    created: int
    skipped: int
    errored: int
    entries: list[EntryReport] = field(default_factory=list)
    reason: Optional[str] = None
