"""Tenant isolation checks shared by every service.

Records from another tenant are reported exactly like missing records so that
callers never learn whether an id exists elsewhere.
"""

from __future__ import annotations

from typing import Optional, Protocol, TypeVar


class TenantValidationError(ValueError):
    """Raised when an operation is invoked without a usable tenant id."""


class TenantScoped(Protocol):
    tenant_id: str


RecordT = TypeVar("RecordT", bound=TenantScoped)


def require_tenant_id(tenant_id: Optional[str]) -> str:
    if tenant_id is None or not str(tenant_id).strip():
        raise TenantValidationError("tenant id is required")
    return str(tenant_id).strip()


def require_subject_id(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise TenantValidationError(f"{label} is required")
    return str(value).strip()


def scoped(tenant_id: str, record: Optional[RecordT]) -> Optional[RecordT]:
    """Return ``record`` only when it belongs to ``tenant_id``."""
    if record is None or record.tenant_id != tenant_id:
        return None
    return record
