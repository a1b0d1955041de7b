"""HTTP controller layer for classes, instance generation and the calendar."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field, field_validator

from classbook.controllers.dependencies import (
    get_generation_service,
    get_schedule_service,
    get_tenant_id,
    require_admin,
)
from classbook.domain.constraints import TIME_PATTERN, WEEKDAY_INDEX
from classbook.domain.models import GenerationReport, RecurringWindow, WeeklySlot
from classbook.repository.data_repository import StoreError
from classbook.services.instance_generator import (
    ClassNotFoundError,
    GenerationValidationError,
    InstanceGenerationService,
)
from classbook.services.schedule_service import (
    ClassDraft,
    InstanceAlreadyCancelledError,
    InstanceNotFoundError,
    ScheduleService,
    ScheduleValidationError,
)
from classbook.services.tenant_guard import TenantValidationError
from classbook.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["schedule"])


class WeeklySlotRequest(BaseModel):
    day_of_week: str
    start_time: str = Field(pattern=TIME_PATTERN.pattern)
    end_time: str = Field(pattern=TIME_PATTERN.pattern)

    @field_validator("day_of_week")
    @classmethod
    def validate_day_of_week(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in WEEKDAY_INDEX:
            raise ValueError("day_of_week must be an English weekday name")
        return normalized


class RecurringWindowRequest(BaseModel):
    start_date: date
    end_date: date


class CreateClassRequest(BaseModel):
    title: str = Field(min_length=1)
    capacity: int = Field(gt=0)
    is_recurring: bool
    is_active: bool = True
    single_date: Optional[datetime] = None
    recurring_window: Optional[RecurringWindowRequest] = None
    weekly_schedule: list[WeeklySlotRequest] = Field(default_factory=list)

    @field_validator("single_date")
    @classmethod
    def validate_single_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            raise ValueError("single_date must include a timezone offset")
        return value


class WeeklySlotResponse(BaseModel):
    day_of_week: str
    start_time: str
    end_time: str


class ClassResponse(BaseModel):
    class_id: str
    title: str
    capacity: int = Field(gt=0)
    is_recurring: bool
    is_active: bool
    single_date: Optional[datetime] = None
    recurring_window: Optional[RecurringWindowRequest] = None
    weekly_schedule: list[WeeklySlotResponse]


class EntryReportResponse(BaseModel):
    day_of_week: str
    start_time: str
    created: int = Field(ge=0)
    skipped: int = Field(ge=0)
    errored: int = Field(ge=0)
    reason: Optional[str] = None


class GenerationReportResponse(BaseModel):
    class_id: str
    created: int = Field(ge=0)
    skipped: int = Field(ge=0)
    errored: int = Field(ge=0)
    entries: list[EntryReportResponse]
    reason: Optional[str] = None


class CreateClassResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    class_: ClassResponse = Field(alias="class")
    generation: Optional[GenerationReportResponse] = None
    single_instance_id: Optional[str] = None
    generation_error: Optional[str] = None


class GenerateRequest(BaseModel):
    horizon_weeks: Optional[int] = Field(default=None, gt=0, le=52)


class TenantGenerationResponse(BaseModel):
    classes_processed: int = Field(ge=0)
    total_created: int = Field(ge=0)
    total_skipped: int = Field(ge=0)
    total_errored: int = Field(ge=0)
    reports: list[GenerationReportResponse]


class CancelInstanceRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    cancel_entire_series: bool = False


class CancellationResponse(BaseModel):
    class_id: str
    reason: str
    cancelled_instance_ids: list[str]
    affected_bookings: int = Field(ge=0)


class CalendarEntryResponse(BaseModel):
    instance_id: str
    class_id: str
    title: str
    starts_at: datetime
    capacity: int = Field(gt=0)
    remaining_capacity: int = Field(ge=0)
    booking_count: int = Field(ge=0)
    is_cancelled: bool
    is_bookable: bool


class CalendarResponse(BaseModel):
    instances: list[CalendarEntryResponse]


def _report_response(report: GenerationReport) -> GenerationReportResponse:
    return GenerationReportResponse(
        class_id=report.class_id,
        created=report.created,
        skipped=report.skipped,
        errored=report.errored,
        entries=[
            EntryReportResponse(
                day_of_week=entry.day_of_week,
                start_time=entry.start_time,
                created=entry.created,
                skipped=entry.skipped,
                errored=entry.errored,
                reason=entry.reason,
            )
            for entry in report.entries
        ],
        reason=report.reason,
    )


def _horizon(payload: Optional[GenerateRequest]) -> Optional[timedelta]:
    if payload is None or payload.horizon_weeks is None:
        return None
    return timedelta(weeks=payload.horizon_weeks)


def _unavailable(exc: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=str(exc) or "Store temporarily unavailable",
        headers={"Retry-After": "1"},
    )


@router.get("/health", status_code=status.HTTP_200_OK)
async def health(request: Request) -> dict[str, str]:
    return {"status": "ok", "version": request.app.state.settings.app_version}


@router.get("/instances", response_model=CalendarResponse, status_code=status.HTTP_200_OK)
def list_instances(
    start: datetime = Query(...),
    end: datetime = Query(...),
    tenant_id: str = Depends(get_tenant_id),
    service: ScheduleService = Depends(get_schedule_service),
) -> CalendarResponse:
    """Calendar view of instances starting between ``start`` and ``end``."""
    try:
        entries = service.list_instances(tenant_id, start, end)
    except (ScheduleValidationError, TenantValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StoreError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected failure while listing instances")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list instances",
        ) from exc
    return CalendarResponse(
        instances=[
            CalendarEntryResponse(
                instance_id=entry.instance_id,
                class_id=entry.class_id,
                title=entry.title,
                starts_at=entry.starts_at,
                capacity=entry.capacity,
                remaining_capacity=entry.remaining_capacity,
                booking_count=entry.booking_count,
                is_cancelled=entry.is_cancelled,
                is_bookable=entry.is_bookable,
            )
            for entry in entries
        ]
    )


@router.post(
    "/admin/classes",
    response_model=CreateClassResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def create_class(
    payload: CreateClassRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ScheduleService = Depends(get_schedule_service),
) -> CreateClassResponse:
    window = payload.recurring_window
    draft = ClassDraft(
        title=payload.title,
        capacity=payload.capacity,
        is_recurring=payload.is_recurring,
        is_active=payload.is_active,
        single_date=payload.single_date,
        recurring_window=(
            RecurringWindow(start_date=window.start_date, end_date=window.end_date)
            if window
            else None
        ),
        weekly_schedule=tuple(
            WeeklySlot(
                day_of_week=slot.day_of_week,
                start_time=slot.start_time,
                end_time=slot.end_time,
            )
            for slot in payload.weekly_schedule
        ),
    )
    try:
        result = service.create_class(tenant_id, draft)
    except (ScheduleValidationError, TenantValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StoreError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected failure while creating class")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create class",
        ) from exc

    template = result.template
    return CreateClassResponse(
        class_=ClassResponse(
            class_id=template.class_id,
            title=template.title,
            capacity=template.capacity,
            is_recurring=template.is_recurring,
            is_active=template.is_active,
            single_date=template.single_date,
            recurring_window=payload.recurring_window,
            weekly_schedule=[
                WeeklySlotResponse(
                    day_of_week=slot.day_of_week,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                )
                for slot in template.weekly_schedule
            ],
        ),
        generation=_report_response(result.generation) if result.generation else None,
        single_instance_id=result.single_instance.instance_id if result.single_instance else None,
        generation_error=result.generation_error,
    )


@router.post(
    "/admin/classes/{class_id}/generate",
    response_model=GenerationReportResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
def generate_class_instances(
    class_id: str,
    payload: Optional[GenerateRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    service: InstanceGenerationService = Depends(get_generation_service),
) -> GenerationReportResponse:
    try:
        report = service.generate_instances(tenant_id, class_id, horizon=_horizon(payload))
    except ClassNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (GenerationValidationError, TenantValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StoreError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected failure while generating instances")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate instances",
        ) from exc
    return _report_response(report)


@router.post(
    "/admin/generate",
    response_model=TenantGenerationResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
def generate_tenant_instances(
    payload: Optional[GenerateRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    service: InstanceGenerationService = Depends(get_generation_service),
) -> TenantGenerationResponse:
    """Run generation for every active recurring class of the tenant."""
    try:
        result = service.generate_for_tenant(tenant_id, horizon=_horizon(payload))
    except (GenerationValidationError, TenantValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StoreError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected failure while generating tenant instances")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate instances",
        ) from exc
    return TenantGenerationResponse(
        classes_processed=result.classes_processed,
        total_created=result.total_created,
        total_skipped=result.total_skipped,
        total_errored=result.total_errored,
        reports=[_report_response(report) for report in result.reports],
    )


@router.post(
    "/admin/instances/{instance_id}/cancel",
    response_model=CancellationResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
def cancel_instance(
    instance_id: str,
    payload: Optional[CancelInstanceRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    service: ScheduleService = Depends(get_schedule_service),
) -> CancellationResponse:
    payload = payload or CancelInstanceRequest()
    try:
        result = service.cancel_instance(
            tenant_id,
            instance_id,
            reason=payload.reason,
            cancel_entire_series=payload.cancel_entire_series,
        )
    except InstanceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InstanceAlreadyCancelledError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except TenantValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StoreError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected failure while cancelling instance")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel instance",
        ) from exc
    return CancellationResponse(
        class_id=result.class_id,
        reason=result.reason,
        cancelled_instance_ids=result.cancelled_instance_ids,
        affected_bookings=result.affected_bookings,
    )
