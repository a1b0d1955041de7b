"""Entitlement selection, debit and grant logic."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from classbook.domain.constraints import TIE_BREAK_POLICIES
from classbook.domain.models import (
    CLIP_BASED_KINDS,
    Entitlement,
    EntitlementKind,
    PassProduct,
)
from classbook.repository.data_repository import (
    DataRepository,
    DocumentNotFoundError,
    RevisionConflictError,
    new_revision,
    new_document_id,
)
from classbook.services.tenant_guard import require_subject_id, require_tenant_id, scoped
from classbook.utils.config import Settings, get_settings
from classbook.utils.logger import get_logger


logger = get_logger(__name__)


class EntitlementError(Exception):
    """Base exception for entitlement workflow failures."""


class EntitlementValidationError(EntitlementError):
    """Raised when a grant request or policy name is invalid."""


class EntitlementExhaustedError(EntitlementError):
    """Raised when the chosen entitlement was used up by a concurrent booking."""


class EntitlementDebitConflictError(EntitlementError):
    """Raised when the clip debit kept losing revision races."""


# pass type sold by the school -> (entitlement kind, fixed clip count)
PASS_TYPE_MAPPING: dict[str, tuple[EntitlementKind, Optional[int]]] = {
    "single": (EntitlementKind.SINGLE, 1),
    "multi-pass": (EntitlementKind.MULTI_PASS, None),
    "multi": (EntitlementKind.CLIPCARD, None),
    "unlimited": (EntitlementKind.MONTHLY, None),
}


def _tie_break_key(tie_break: str) -> Callable[[Entitlement], tuple]:
    if tie_break == "soonest_expiry":
        return lambda e: (e.valid_until, e.created_at, e.entitlement_id)
    if tie_break == "newest_purchase":
        return lambda e: (-e.created_at.timestamp(), e.entitlement_id)
    if tie_break == "oldest_purchase":
        return lambda e: (e.created_at, e.entitlement_id)
    raise EntitlementValidationError(
        f"Unknown tie-break policy {tie_break!r}; expected one of {', '.join(TIE_BREAK_POLICIES)}"
    )


def choose_entitlement(
    entitlements: Iterable[Entitlement],
    now: datetime,
    tie_break: str = "soonest_expiry",
) -> Optional[Entitlement]:
    """Pick the entitlement a booking at ``now`` should consume.

    Unlimited (monthly) passes always win, since consuming them costs nothing.
    Otherwise a clip-based pass with clips left is chosen by ``tie_break``.
    Returns None when nothing qualifies.
    """
    key = _tie_break_key(tie_break)
    usable = [item for item in entitlements if item.is_usable_at(now)]

    monthly = [item for item in usable if item.kind is EntitlementKind.MONTHLY]
    if monthly:
        return min(monthly, key=key)

    clip_based = [item for item in usable if item.kind in CLIP_BASED_KINDS]
    if clip_based:
        return min(clip_based, key=key)
    return None


@dataclass(frozen=True)
class EntitlementSummary:
    entitlement: Entitlement
    days_remaining: int
    is_expired: bool


@dataclass(frozen=True)
class EntitlementOverview:
    active: list[EntitlementSummary]
    expired: list[EntitlementSummary]


class EntitlementService:
    """Reads, selects and debits a user's entitlements within one tenant."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        _tie_break_key(self._settings.entitlement_tie_break)

    @property
    def tie_break(self) -> str:
        return self._settings.entitlement_tie_break

    def select_entitlement(
        self,
        tenant_id: str,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[Entitlement]:
        """Return the entitlement a new booking would consume, or None.

        Always queries the store; nothing is cached between calls so that a
        debit by a concurrent booking is visible to the next selection.
        """
        tenant_id = require_tenant_id(tenant_id)
        user_id = require_subject_id(user_id, "user id")
        now = now or datetime.now(timezone.utc)
        candidates = [
            item
            for item in self._repository.list_valid_entitlements(
                tenant_id=tenant_id,
                user_id=user_id,
                now=now,
            )
            if scoped(tenant_id, item) is not None and item.user_id == user_id
        ]
        return choose_entitlement(candidates, now, self.tie_break)

    def list_user_entitlements(
        self,
        tenant_id: str,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> EntitlementOverview:
        tenant_id = require_tenant_id(tenant_id)
        user_id = require_subject_id(user_id, "user id")
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=self._settings.expired_history_days)

        active = self._repository.list_valid_entitlements(
            tenant_id=tenant_id, user_id=user_id, now=now
        )
        lapsed = self._repository.list_lapsed_entitlements(
            tenant_id=tenant_id, user_id=user_id, now=now, since=since
        )
        return EntitlementOverview(
            active=[self._summarize(item, now) for item in active],
            expired=[self._summarize(item, now) for item in lapsed],
        )

    def grant_from_pass(
        self,
        tenant_id: str,
        user_id: str,
        product: PassProduct,
        now: Optional[datetime] = None,
    ) -> Entitlement:
        """Create the entitlement a completed purchase of ``product`` grants."""
        tenant_id = require_tenant_id(tenant_id)
        user_id = require_subject_id(user_id, "user id")
        now = now or datetime.now(timezone.utc)

        mapping = PASS_TYPE_MAPPING.get(product.pass_type)
        if mapping is None:
            raise EntitlementValidationError(f"Invalid pass type: {product.pass_type!r}")
        if product.validity_days <= 0:
            raise EntitlementValidationError("validity_days must be > 0")

        kind, fixed_clips = mapping
        if kind.is_unlimited:
            clips = None
        elif fixed_clips is not None:
            clips = fixed_clips
        else:
            if product.classes_limit is None or product.classes_limit <= 0:
                raise EntitlementValidationError(
                    f"classes_limit must be > 0 for pass type {product.pass_type!r}"
                )
            clips = product.classes_limit

        entitlement = Entitlement(
            entitlement_id=new_document_id(),
            tenant_id=tenant_id,
            user_id=user_id,
            kind=kind,
            remaining_clips=clips,
            valid_from=now,
            valid_until=now + timedelta(days=product.validity_days),
            created_at=now,
            revision=new_revision(),
            pass_name=product.name,
        )
        self._repository.create_entitlement(entitlement)
        logger.info(
            "Granted %s entitlement %s to user %s in tenant %s",
            kind.value,
            entitlement.entitlement_id,
            user_id,
            tenant_id,
        )
        return entitlement

    def debit_clip(
        self,
        *,
        tenant_id: str,
        entitlement: Entitlement,
        now: datetime,
    ) -> Entitlement:
        """Remove one clip with a revision-checked write, retrying on races."""
        current = entitlement
        for attempt in range(1, self._settings.entitlement_debit_max_attempts + 1):
            try:
                return self._repository.decrement_entitlement_clips(
                    tenant_id=tenant_id,
                    entitlement=current,
                )
            except DocumentNotFoundError as exc:
                raise EntitlementExhaustedError(
                    f"Entitlement {current.entitlement_id} no longer exists"
                ) from exc
            except RevisionConflictError:
                refreshed = scoped(
                    tenant_id,
                    self._repository.get_entitlement(
                        tenant_id=tenant_id,
                        entitlement_id=current.entitlement_id,
                    ),
                )
                if refreshed is None or not refreshed.is_usable_at(now):
                    raise EntitlementExhaustedError(
                        f"Entitlement {current.entitlement_id} was used up concurrently"
                    )
                logger.debug(
                    "Clip debit conflict on %s (attempt %s); retrying",
                    current.entitlement_id,
                    attempt,
                )
                current = refreshed
        raise EntitlementDebitConflictError(
            f"Could not debit entitlement {entitlement.entitlement_id} after "
            f"{self._settings.entitlement_debit_max_attempts} attempts"
        )

    @staticmethod
    def _summarize(entitlement: Entitlement, now: datetime) -> EntitlementSummary:
        seconds_left = (entitlement.valid_until - now).total_seconds()
        return EntitlementSummary(
            entitlement=entitlement,
            days_remaining=round(seconds_left / 86400),
            is_expired=entitlement.valid_until < now,
        )
