from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from classbook.domain.models import Entitlement, EntitlementKind, PassProduct
from classbook.repository.data_repository import DataRepository, new_document_id, new_revision
from classbook.services.entitlement_service import (
    EntitlementExhaustedError,
    EntitlementService,
    EntitlementValidationError,
    choose_entitlement,
)
from classbook.utils.config import get_settings


NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def _build_test_settings(tmp_path, filename: str, **overrides):
    get_settings.cache_clear()
    base = get_settings()
    return replace(base, database_path=tmp_path / filename, **overrides)


def _build_service(tmp_path, filename: str, **overrides):
    settings = _build_test_settings(tmp_path, filename, **overrides)
    repository = DataRepository(settings)
    repository.initialize_database()
    return EntitlementService(repository=repository, settings=settings), repository


def make_entitlement(
    kind: EntitlementKind,
    clips: int | None,
    *,
    tenant_id: str = "tenant-a",
    user_id: str = "student-1",
    valid_from: datetime = NOW - timedelta(days=1),
    valid_until: datetime = NOW + timedelta(days=30),
    created_at: datetime = NOW - timedelta(days=1),
    is_active: bool = True,
) -> Entitlement:
    return Entitlement(
        entitlement_id=new_document_id(),
        tenant_id=tenant_id,
        user_id=user_id,
        kind=kind,
        remaining_clips=clips,
        valid_from=valid_from,
        valid_until=valid_until,
        created_at=created_at,
        revision=new_revision(),
        is_active=is_active,
    )


# --- Pure selection policy ---

def test_monthly_wins_over_clip_based_passes():
    clipcard = make_entitlement(EntitlementKind.CLIPCARD, 3)
    monthly = make_entitlement(EntitlementKind.MONTHLY, None)

    assert choose_entitlement([clipcard, monthly], NOW) == monthly


def test_soonest_expiry_breaks_ties_between_clip_passes():
    late = make_entitlement(EntitlementKind.CLIPCARD, 5, valid_until=NOW + timedelta(days=60))
    early = make_entitlement(EntitlementKind.MULTI_PASS, 2, valid_until=NOW + timedelta(days=10))

    assert choose_entitlement([late, early], NOW, "soonest_expiry") == early


def test_purchase_order_tie_breaks():
    older = make_entitlement(EntitlementKind.CLIPCARD, 5, created_at=NOW - timedelta(days=20))
    newer = make_entitlement(EntitlementKind.SINGLE, 1, created_at=NOW - timedelta(days=2))

    assert choose_entitlement([older, newer], NOW, "newest_purchase") == newer
    assert choose_entitlement([older, newer], NOW, "oldest_purchase") == older


def test_unusable_entitlements_are_never_chosen():
    candidates = [
        make_entitlement(EntitlementKind.CLIPCARD, 0),
        make_entitlement(EntitlementKind.MONTHLY, None, valid_until=NOW - timedelta(seconds=1)),
        make_entitlement(EntitlementKind.MONTHLY, None, is_active=False),
        make_entitlement(EntitlementKind.SINGLE, 1, valid_from=NOW + timedelta(hours=1)),
    ]

    assert choose_entitlement(candidates, NOW) is None


def test_validity_end_is_exclusive():
    monthly = make_entitlement(EntitlementKind.MONTHLY, None, valid_until=NOW)

    assert choose_entitlement([monthly], NOW) is None


def test_unknown_tie_break_policy_is_rejected(tmp_path):
    with pytest.raises(EntitlementValidationError):
        _build_service(tmp_path, "bad_policy.db", entitlement_tie_break="cheapest")


# --- Store-backed selection ---

def test_select_entitlement_reads_only_the_callers_tenant(tmp_path):
    service, repository = _build_service(tmp_path, "select_tenant.db")
    repository.create_entitlement(make_entitlement(EntitlementKind.MONTHLY, None, tenant_id="tenant-b"))
    clipcard = repository.create_entitlement(make_entitlement(EntitlementKind.CLIPCARD, 4))

    selected = service.select_entitlement("tenant-a", "student-1", now=NOW)

    assert selected is not None
    assert selected.entitlement_id == clipcard.entitlement_id
    assert service.select_entitlement("tenant-c", "student-1", now=NOW) is None


def test_select_entitlement_sees_debits_immediately(tmp_path):
    service, repository = _build_service(tmp_path, "select_fresh.db")
    single = repository.create_entitlement(make_entitlement(EntitlementKind.SINGLE, 1))

    selected = service.select_entitlement("tenant-a", "student-1", now=NOW)
    service.debit_clip(tenant_id="tenant-a", entitlement=selected, now=NOW)

    assert selected.entitlement_id == single.entitlement_id
    assert service.select_entitlement("tenant-a", "student-1", now=NOW) is None


def test_debit_on_used_up_entitlement_raises_exhausted(tmp_path):
    service, repository = _build_service(tmp_path, "debit_exhausted.db")
    single = repository.create_entitlement(make_entitlement(EntitlementKind.SINGLE, 1))

    service.debit_clip(tenant_id="tenant-a", entitlement=single, now=NOW)
    with pytest.raises(EntitlementExhaustedError):
        service.debit_clip(tenant_id="tenant-a", entitlement=single, now=NOW)

    stored = repository.get_entitlement(tenant_id="tenant-a", entitlement_id=single.entitlement_id)
    assert stored.remaining_clips == 0


def test_debit_retries_after_concurrent_revision_change(tmp_path):
    service, repository = _build_service(tmp_path, "debit_retry.db")
    clipcard = repository.create_entitlement(make_entitlement(EntitlementKind.CLIPCARD, 5))

    # another booking debits first, leaving our copy with a stale revision
    service.debit_clip(tenant_id="tenant-a", entitlement=clipcard, now=NOW)
    debited = service.debit_clip(tenant_id="tenant-a", entitlement=clipcard, now=NOW)

    assert debited.remaining_clips == 3
    stored = repository.get_entitlement(tenant_id="tenant-a", entitlement_id=clipcard.entitlement_id)
    assert stored.remaining_clips == 3


# --- Grants ---

@pytest.mark.parametrize(
    ("pass_type", "classes_limit", "expected_kind", "expected_clips"),
    [
        ("single", None, EntitlementKind.SINGLE, 1),
        ("multi-pass", 8, EntitlementKind.MULTI_PASS, 8),
        ("multi", 10, EntitlementKind.CLIPCARD, 10),
        ("unlimited", None, EntitlementKind.MONTHLY, None),
    ],
)
def test_grant_from_pass_maps_pass_types(tmp_path, pass_type, classes_limit, expected_kind, expected_clips):
    service, repository = _build_service(tmp_path, f"grant_{pass_type}.db")
    product = PassProduct(
        name="Spring pass",
        pass_type=pass_type,
        validity_days=30,
        classes_limit=classes_limit,
    )

    granted = service.grant_from_pass("tenant-a", "student-1", product, now=NOW)

    assert granted.kind is expected_kind
    assert granted.remaining_clips == expected_clips
    assert granted.valid_from == NOW
    assert granted.valid_until == NOW + timedelta(days=30)
    stored = repository.get_entitlement(tenant_id="tenant-a", entitlement_id=granted.entitlement_id)
    assert stored == granted


def test_grant_rejects_unknown_pass_type_and_missing_limit(tmp_path):
    service, _ = _build_service(tmp_path, "grant_invalid.db")

    with pytest.raises(EntitlementValidationError):
        service.grant_from_pass("tenant-a", "student-1", PassProduct("X", "weekly", 7), now=NOW)
    with pytest.raises(EntitlementValidationError):
        service.grant_from_pass("tenant-a", "student-1", PassProduct("X", "multi", 7), now=NOW)


def test_list_user_entitlements_splits_active_and_expired(tmp_path):
    service, repository = _build_service(tmp_path, "list_entitlements.db")
    repository.create_entitlement(make_entitlement(EntitlementKind.MONTHLY, None))
    repository.create_entitlement(
        make_entitlement(
            EntitlementKind.CLIPCARD,
            2,
            valid_from=NOW - timedelta(days=40),
            valid_until=NOW - timedelta(days=5),
        )
    )
    repository.create_entitlement(
        make_entitlement(
            EntitlementKind.CLIPCARD,
            2,
            valid_from=NOW - timedelta(days=120),
            valid_until=NOW - timedelta(days=90),
        )
    )

    overview = service.list_user_entitlements("tenant-a", "student-1", now=NOW)

    assert [item.entitlement.kind for item in overview.active] == [EntitlementKind.MONTHLY]
    assert overview.active[0].days_remaining == 30
    assert len(overview.expired) == 1
    assert overview.expired[0].is_expired is True
    assert overview.expired[0].days_remaining == -5
