"""HTTP controller layer for bookings and entitlements."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from classbook.controllers.dependencies import (
    get_booking_service,
    get_entitlement_service,
    get_tenant_id,
    get_user_id,
    require_admin,
)
from classbook.domain.models import (
    BookingError,
    BookingErrorKind,
    Entitlement,
    PassProduct,
)
from classbook.repository.data_repository import StoreError
from classbook.services.booking_service import BookingService, BookingUnavailableError
from classbook.services.entitlement_service import (
    PASS_TYPE_MAPPING,
    EntitlementService,
    EntitlementSummary,
    EntitlementValidationError,
)
from classbook.services.tenant_guard import TenantValidationError
from classbook.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["bookings"])

RETRY_AFTER_SECONDS = "1"

BOOKING_ERROR_STATUS = {
    BookingErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    BookingErrorKind.CLASS_CANCELLED: status.HTTP_409_CONFLICT,
    BookingErrorKind.CLASS_FULL: status.HTTP_409_CONFLICT,
    BookingErrorKind.ALREADY_BOOKED: status.HTTP_409_CONFLICT,
    BookingErrorKind.NO_VALID_ENTITLEMENT: status.HTTP_402_PAYMENT_REQUIRED,
}


class BookInstanceRequest(BaseModel):
    instance_id: str = Field(min_length=1)


class BookingResponse(BaseModel):
    instance_id: str
    student_id: str
    entitlement_type: str
    entitlement_id: str
    booked_at: datetime
    remaining_capacity: int = Field(ge=0)
    remaining_clips: Optional[int] = Field(default=None, ge=0)


class UserBookingResponse(BaseModel):
    instance_id: str
    class_id: str
    starts_at: datetime
    is_cancelled: bool
    entitlement_type: str
    entitlement_id: str
    booked_at: datetime


class UserBookingsResponse(BaseModel):
    bookings: list[UserBookingResponse]


class EntitlementResponse(BaseModel):
    entitlement_id: str
    user_id: str
    kind: str
    remaining_clips: Optional[int] = Field(default=None, ge=0)
    valid_from: datetime
    valid_until: datetime
    is_active: bool
    pass_name: Optional[str] = None


class EntitlementSummaryResponse(EntitlementResponse):
    days_remaining: int
    is_expired: bool


class EntitlementOverviewResponse(BaseModel):
    active: list[EntitlementSummaryResponse]
    expired: list[EntitlementSummaryResponse]


class EntitlementSelectionResponse(BaseModel):
    entitlement: Optional[EntitlementResponse] = None


class GrantEntitlementRequest(BaseModel):
    """Completed-purchase notification from the payment collaborator."""

    user_id: str = Field(min_length=1)
    pass_name: str = Field(min_length=1)
    pass_type: str
    validity_days: int = Field(gt=0)
    classes_limit: Optional[int] = Field(default=None, gt=0)

    @field_validator("pass_type")
    @classmethod
    def validate_pass_type(cls, value: str) -> str:
        if value not in PASS_TYPE_MAPPING:
            raise ValueError("pass_type must be one of " + ", ".join(PASS_TYPE_MAPPING))
        return value


def _entitlement_fields(entitlement: Entitlement) -> dict:
    return {
        "entitlement_id": entitlement.entitlement_id,
        "user_id": entitlement.user_id,
        "kind": entitlement.kind.value,
        "remaining_clips": entitlement.remaining_clips,
        "valid_from": entitlement.valid_from,
        "valid_until": entitlement.valid_until,
        "is_active": entitlement.is_active,
        "pass_name": entitlement.pass_name,
    }


def _summary_response(summary: EntitlementSummary) -> EntitlementSummaryResponse:
    return EntitlementSummaryResponse(
        **_entitlement_fields(summary.entitlement),
        days_remaining=summary.days_remaining,
        is_expired=summary.is_expired,
    )


def _unavailable(exc: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=str(exc) or "Service temporarily unavailable",
        headers={"Retry-After": RETRY_AFTER_SECONDS},
    )


@router.post(
    "/bookings",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
def book_instance(
    payload: BookInstanceRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """Book the calling student onto a class instance."""
    try:
        outcome = service.book_instance(tenant_id, payload.instance_id, user_id)
    except TenantValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (BookingUnavailableError, StoreError) as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected booking failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to book class",
        ) from exc

    if isinstance(outcome, BookingError):
        raise HTTPException(
            status_code=BOOKING_ERROR_STATUS[outcome.kind],
            detail={"kind": outcome.kind.value, "message": outcome.message},
        )
    return BookingResponse(
        instance_id=outcome.instance_id,
        student_id=outcome.booking.student_id,
        entitlement_type=outcome.booking.entitlement_type.value,
        entitlement_id=outcome.entitlement_id,
        booked_at=outcome.booking.booked_at,
        remaining_capacity=outcome.remaining_capacity,
        remaining_clips=outcome.remaining_clips,
    )


@router.get("/bookings", response_model=UserBookingsResponse, status_code=status.HTTP_200_OK)
def list_user_bookings(
    tenant_id: str = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    service: BookingService = Depends(get_booking_service),
) -> UserBookingsResponse:
    try:
        rows = service.list_user_bookings(tenant_id, user_id)
    except TenantValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StoreError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected failure while listing bookings")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list bookings",
        ) from exc
    return UserBookingsResponse(
        bookings=[
            UserBookingResponse(
                instance_id=row.instance_id,
                class_id=row.class_id,
                starts_at=row.starts_at,
                is_cancelled=row.is_cancelled,
                entitlement_type=row.booking.entitlement_type.value,
                entitlement_id=row.booking.entitlement_id,
                booked_at=row.booking.booked_at,
            )
            for row in rows
        ]
    )


@router.get(
    "/entitlements",
    response_model=EntitlementOverviewResponse,
    status_code=status.HTTP_200_OK,
)
def list_user_entitlements(
    tenant_id: str = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementOverviewResponse:
    try:
        overview = service.list_user_entitlements(tenant_id, user_id)
    except TenantValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StoreError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected failure while listing entitlements")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list entitlements",
        ) from exc
    return EntitlementOverviewResponse(
        active=[_summary_response(item) for item in overview.active],
        expired=[_summary_response(item) for item in overview.expired],
    )


@router.get(
    "/entitlements/selection",
    response_model=EntitlementSelectionResponse,
    status_code=status.HTTP_200_OK,
)
def preview_entitlement_selection(
    tenant_id: str = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementSelectionResponse:
    """Show which entitlement the next booking would consume."""
    try:
        selected = service.select_entitlement(tenant_id, user_id)
    except TenantValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StoreError as exc:
        raise _unavailable(exc) from exc
    if selected is None:
        return EntitlementSelectionResponse()
    return EntitlementSelectionResponse(entitlement=EntitlementResponse(**_entitlement_fields(selected)))


@router.post(
    "/admin/entitlements",
    response_model=EntitlementResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def grant_entitlement(
    payload: GrantEntitlementRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementResponse:
    product = PassProduct(
        name=payload.pass_name,
        pass_type=payload.pass_type,
        validity_days=payload.validity_days,
        classes_limit=payload.classes_limit,
    )
    try:
        entitlement = service.grant_from_pass(tenant_id, payload.user_id, product)
    except (EntitlementValidationError, TenantValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StoreError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected failure while granting entitlement")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to grant entitlement",
        ) from exc
    return EntitlementResponse(**_entitlement_fields(entitlement))
