"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires all services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from classbook.controllers.booking_controller import router as booking_router
from classbook.controllers.schedule_controller import router as schedule_router
from classbook.domain.constraints import EngineConfig, validate_engine_config
from classbook.repository.data_repository import DataRepository
from classbook.services.auth_service import AuthService
from classbook.services.booking_service import BookingService
from classbook.services.entitlement_service import EntitlementService
from classbook.services.instance_generator import InstanceGenerationService
from classbook.services.schedule_service import ScheduleService
from classbook.utils.config import Settings, get_settings
from classbook.utils.logger import get_logger


logger = get_logger(__name__)


def engine_config(settings: Settings) -> EngineConfig:
    return EngineConfig(
        generation_horizon_weeks=settings.generation_horizon_weeks,
        generation_workers=settings.generation_workers,
        booking_max_attempts=settings.booking_max_attempts,
        entitlement_debit_max_attempts=settings.entitlement_debit_max_attempts,
        compensation_max_attempts=settings.compensation_max_attempts,
        store_timeout_seconds=settings.store_timeout_seconds,
        entitlement_tie_break=settings.entitlement_tie_break,
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Instantiates all services with explicit dependency injection via app.state.
    Every dependency is traceable from this function.
    """
    settings = settings or get_settings()
    validate_engine_config(engine_config(settings))

    repository = DataRepository(settings)
    entitlement_service = EntitlementService(repository=repository, settings=settings)
    generation_service = InstanceGenerationService(repository=repository, settings=settings)
    booking_service = BookingService(
        repository=repository,
        entitlement_service=entitlement_service,
        settings=settings,
    )
    schedule_service = ScheduleService(
        repository=repository,
        generator=generation_service,
        settings=settings,
    )
    auth_service = AuthService(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.include_router(schedule_router)
    app.include_router(booking_router)

    app.state.settings = settings
    app.state.repository = repository
    app.state.entitlement_service = entitlement_service
    app.state.generation_service = generation_service
    app.state.booking_service = booking_service
    app.state.schedule_service = schedule_service
    app.state.auth_service = auth_service

    return app


def _startup(app: FastAPI) -> None:
    """Idempotent startup sequence. Safe to re-run on server restarts."""
    repository: DataRepository = app.state.repository
    settings: Settings = app.state.settings

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if not settings.admin_token:
        logger.warning("ADMIN_TOKEN is not set; admin routes are open")
    logger.info("Startup complete (schedule timezone %s)", settings.schedule_timezone)


# Module-level app object for uvicorn
app = create_app()
