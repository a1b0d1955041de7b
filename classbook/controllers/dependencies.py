"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from classbook.services.auth_service import AuthenticationError, AuthService
from classbook.services.booking_service import BookingService
from classbook.services.entitlement_service import EntitlementService
from classbook.services.instance_generator import InstanceGenerationService
from classbook.services.schedule_service import ScheduleService
from classbook.utils.config import get_settings


bearer_scheme = HTTPBearer(auto_error=False)


def _service_from_state(request: Request, attribute: str, label: str):
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} service is not initialized",
        )
    return service


def get_auth_service(request: Request) -> AuthService:
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        service = AuthService(settings=get_settings())
        request.app.state.auth_service = service
    return service


def get_booking_service(request: Request) -> BookingService:
    return _service_from_state(request, "booking_service", "Booking")


def get_entitlement_service(request: Request) -> EntitlementService:
    return _service_from_state(request, "entitlement_service", "Entitlement")


def get_generation_service(request: Request) -> InstanceGenerationService:
    return _service_from_state(request, "generation_service", "Generation")


def get_schedule_service(request: Request) -> ScheduleService:
    return _service_from_state(request, "schedule_service", "Schedule")


async def get_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str:
    """Tenant id resolved upstream and forwarded in X-Tenant-Id."""
    if x_tenant_id is None or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-Id header is required",
        )
    return x_tenant_id.strip()


async def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Authenticated caller id forwarded in X-User-Id."""
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    return x_user_id.strip()


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> None:
    if not auth_service.auth_enabled:
        return
    try:
        auth_service.validate_bearer_token(credentials.credentials if credentials else None)
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
