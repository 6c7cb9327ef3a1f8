"""Tests for access ledger reads and transitions."""
from __future__ import annotations

from datetime import timedelta

import pytest

from marketplace.app.billing import (
    BillingAuditEventType,
    BillingRequestError,
    CancellationState,
    LedgerEntryNotFoundError,
    LedgerStatus,
    Product,
)
from marketplace.app.billing.ledger import map_provider_status

from .conftest import make_entry, utcnow


def test_current_access_prefers_longest_expiry_across_tiers(billing_components):
    repository = billing_components.repository
    ledger = billing_components.service.ledger
    repository.entries["sub_old"] = make_entry(entry_id="sub_old", tier_id="tier_basic", expires_in=timedelta(days=5))
    repository.entries["sub_new"] = make_entry(entry_id="sub_new", tier_id="tier_pro", expires_in=timedelta(days=25))
    repository.entries["sub_other"] = make_entry(
        entry_id="sub_other", tier_id="tier_elsewhere", vendor_id="ven_2", expires_in=timedelta(days=90)
    )

    entry = ledger.current_access("acct_1", "ven_1")

    assert entry is not None
    assert entry.entry_id == "sub_new"
    assert ledger.has_active_access("acct_1", "ven_1") is True
    assert ledger.current_access("acct_2", "ven_1") is None


def test_current_access_returns_expired_entry_without_granting_access(billing_components):
    repository = billing_components.repository
    ledger = billing_components.service.ledger
    repository.entries["sub_1"] = make_entry(expires_in=timedelta(days=-1))

    assert ledger.current_access("acct_1", "ven_1") is not None
    assert ledger.has_active_access("acct_1", "ven_1") is False
    assert ledger.active_entries("acct_1", "ven_1") == []


def test_cancelled_entry_keeps_access_until_expiry(billing_components):
    repository = billing_components.repository
    ledger = billing_components.service.ledger
    repository.entries["sub_1"] = make_entry(status=LedgerStatus.CANCELLED, cancelled_at=utcnow())

    assert ledger.has_active_access("acct_1", "ven_1") is True
    assert [entry.entry_id for entry in ledger.list_active_subscriptions("acct_1")] == ["sub_1"]


def test_apply_checkout_completed_is_idempotent(billing_components):
    repository = billing_components.repository
    ledger = billing_components.service.ledger
    period_start = utcnow()
    period_end = period_start + timedelta(days=30)

    first = ledger.apply_checkout_completed(
        account_id="acct_1",
        tier_id="tier_pro",
        billing_subscription_ref="stripe_sub_9",
        period_start=period_start,
        period_end=period_end,
    )
    second = ledger.apply_checkout_completed(
        account_id="acct_1",
        tier_id="tier_pro",
        billing_subscription_ref="stripe_sub_9",
        period_start=period_start,
        period_end=period_end,
    )

    assert len(repository.entries) == 1
    assert first.entry_id == second.entry_id
    assert second.status == LedgerStatus.ACTIVE
    assert second.vendor_id == "ven_1"
    assert second.access_expires_at == period_end


def test_apply_checkout_completed_clears_cancellation_markers(billing_components):
    repository = billing_components.repository
    ledger = billing_components.service.ledger
    repository.entries["sub_1"] = make_entry(
        status=LedgerStatus.CANCELLED,
        cancel_requested_at=utcnow(),
        cancelled_at=utcnow(),
    )
    period_end = utcnow() + timedelta(days=30)

    entry = ledger.apply_checkout_completed(
        account_id="acct_1",
        tier_id="tier_basic",
        billing_subscription_ref="stripe_sub_2",
        period_start=utcnow(),
        period_end=period_end,
    )

    assert entry.entry_id == "sub_1"
    assert entry.status == LedgerStatus.ACTIVE
    assert entry.cancellation_state == CancellationState.NONE
    assert entry.billing_subscription_ref == "stripe_sub_2"


def test_subscription_updated_moves_expiry_to_new_period_end_even_when_cancelled(billing_components):
    repository = billing_components.repository
    ledger = billing_components.service.ledger
    repository.entries["sub_1"] = make_entry()
    new_end = utcnow() + timedelta(days=45)
    cancelled_at = utcnow()

    entry = ledger.apply_provider_subscription_updated(
        account_id="acct_1",
        tier_id="tier_basic",
        new_status="canceled",
        period_start=utcnow(),
        period_end=new_end,
        cancelled_at=cancelled_at,
    )

    assert entry.status == LedgerStatus.CANCELLED
    assert entry.access_expires_at == new_end
    assert entry.cancelled_at == cancelled_at
    assert entry.cancellation_state == CancellationState.CONFIRMED


def test_subscription_updated_without_cancellation_clears_request(billing_components):
    repository = billing_components.repository
    ledger = billing_components.service.ledger
    repository.entries["sub_1"] = make_entry(cancel_requested_at=utcnow())

    entry = ledger.apply_provider_subscription_updated(
        account_id="acct_1",
        tier_id="tier_basic",
        new_status="active",
        period_start=None,
        period_end=None,
        cancelled_at=None,
    )

    assert entry.cancellation_state == CancellationState.NONE
    assert entry.access_expires_at == repository.entries["sub_1"].access_expires_at


def test_subscription_deleted_does_not_shrink_access(billing_components):
    repository = billing_components.repository
    ledger = billing_components.service.ledger
    original = make_entry(expires_in=timedelta(days=20))
    repository.entries["sub_1"] = original

    entry = ledger.apply_provider_subscription_deleted(account_id="acct_1", tier_id="tier_basic")

    assert entry.status == LedgerStatus.CANCELLED
    assert entry.cancelled_at is not None
    assert entry.access_expires_at == original.access_expires_at
    assert ledger.has_active_access("acct_1", "ven_1") is True


def test_transitions_require_existing_entry(billing_components):
    ledger = billing_components.service.ledger

    with pytest.raises(LedgerEntryNotFoundError):
        ledger.apply_provider_subscription_deleted(account_id="acct_1", tier_id="tier_basic")
    with pytest.raises(LedgerEntryNotFoundError):
        ledger.mark_payment_failed("stripe_sub_missing")


def test_mark_payment_failed_sets_past_due_without_touching_expiry(billing_components):
    repository = billing_components.repository
    ledger = billing_components.service.ledger
    original = make_entry()
    repository.entries["sub_1"] = original

    entry = ledger.mark_payment_failed("stripe_sub_1")

    assert entry.status == LedgerStatus.PAST_DUE
    assert entry.access_expires_at == original.access_expires_at
    assert billing_components.event_logger.types()[-1] == BillingAuditEventType.PAYMENT_FAILED


def test_mark_payment_failed_leaves_cancelled_entry(billing_components):
    repository = billing_components.repository
    repository.entries["sub_1"] = make_entry(status=LedgerStatus.CANCELLED, cancelled_at=utcnow())

    entry = billing_components.service.ledger.mark_payment_failed("stripe_sub_1")

    assert entry.status == LedgerStatus.CANCELLED


def test_price_change_guard_counts_only_entries_with_access(billing_components):
    repository = billing_components.repository
    ledger = billing_components.service.ledger
    repository.entries["sub_1"] = make_entry(expires_in=timedelta(days=-3))

    ledger.assert_price_change_allowed("tier_basic")
    with pytest.raises(BillingRequestError) as excinfo:
        ledger.assert_deletable("tier_basic")
    assert excinfo.value.code == "tier_has_subscribers"

    repository.entries["sub_2"] = make_entry(entry_id="sub_2", account_id="acct_2")
    with pytest.raises(BillingRequestError) as excinfo:
        ledger.assert_price_change_allowed("tier_basic")
    assert excinfo.value.message == "Cannot change price while there are active subscribers"


def test_can_access_product_honours_tier_restrictions(billing_components):
    repository = billing_components.repository
    ledger = billing_components.service.ledger
    repository.entries["sub_1"] = make_entry(tier_id="tier_basic")
    open_product = Product(product_id="prod_a", vendor_id="ven_1", name="Poster", price_cents=1000)
    pro_only = open_product.model_copy(update={"product_id": "prod_b", "allowed_tier_ids": ["tier_pro"]})
    other_vendor = open_product.model_copy(update={"product_id": "prod_c", "vendor_id": "ven_2"})

    assert ledger.can_access_product("acct_1", open_product) is True
    assert ledger.can_access_product("acct_1", pro_only) is False
    assert ledger.can_access_product("acct_1", other_vendor) is False


@pytest.mark.parametrize(
    "provider_status, expected",
    [
        ("active", LedgerStatus.ACTIVE),
        ("trialing", LedgerStatus.ACTIVE),
        ("past_due", LedgerStatus.PAST_DUE),
        ("unpaid", LedgerStatus.PAST_DUE),
        ("canceled", LedgerStatus.CANCELLED),
        ("paused", LedgerStatus.PAUSED),
        (None, LedgerStatus.ACTIVE),
    ],
)
def test_map_provider_status(provider_status, expected):
    assert map_provider_status(provider_status) == expected
