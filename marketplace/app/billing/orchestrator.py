"""Subscriber-initiated subscription flows: subscribe, change tier, cancel."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict

from ...config import BillingConfig
from .errors import (
    BillingConflictError,
    BillingForbiddenError,
    BillingNotFoundError,
    BillingRequestError,
    ProviderTerminalError,
)
from .ledger import AccessLedger
from .models import (
    AccessLedgerEntry,
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEventLogger,
    CheckoutMode,
    CheckoutRedirect,
    LedgerStatus,
    TierChangeKind,
    TierChangeResult,
    Vendor,
    VendorTier,
)
from .provider import BillingProvider, ensure_active_price
from .repository import BillingRepository

logger = logging.getLogger("billing.orchestrator")


@dataclass(slots=True)
class TierChangeOrchestrator:
    """Drives the billing provider and the access ledger for subscriber actions.

    Upgrades tear the current provider subscription down immediately (prorated) and send
    the subscriber through a fresh checkout; the new ledger entry appears only when the
    checkout completion event is reconciled. Downgrades mutate the provider subscription
    in place without proration and move the local entry to the new tier right away.
    """

    repository: BillingRepository
    provider: BillingProvider
    ledger: AccessLedger
    event_logger: BillingEventLogger
    config: BillingConfig

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def start_subscription_checkout(self, account_id: str, tier_id: str) -> CheckoutRedirect:
        tier = self.repository.get_tier(tier_id)
        if tier is None:
            raise BillingNotFoundError(code="tier_not_found", message="Tier not found")
        if not tier.is_purchasable:
            raise BillingRequestError(code="tier_unavailable", message="Tier not available")
        vendor = self._approved_vendor(tier.vendor_id)

        existing = self.repository.get_ledger_entry_for_tier(account_id, tier_id)
        if existing is not None and existing.status == LedgerStatus.ACTIVE and existing.has_access(self._now()):
            raise BillingConflictError(code="already_subscribed", message="Already subscribed to this tier")

        customer_ref = self._ensure_customer(account_id)
        price_ref = self._usable_tier_price(tier)
        metadata = {"account_id": account_id, "tier_id": tier.tier_id, "vendor_id": vendor.vendor_id}
        session = self.provider.create_checkout_session(
            mode=CheckoutMode.SUBSCRIPTION,
            customer_ref=customer_ref,
            price_ref=price_ref,
            quantity=1,
            metadata=metadata,
            subscription_metadata=metadata,
            success_url=self.config.subscription_success_url(),
            cancel_url=self.config.subscription_cancel_url(vendor.slug),
        )
        if not session.url:
            raise ProviderTerminalError(code="checkout_unavailable", message="Checkout session has no redirect URL")
        logger.info("Opened subscription checkout %s for account %s tier %s", session.session_id, account_id, tier_id)
        return CheckoutRedirect(url=session.url, session_id=session.session_id)

    def change_tier(self, account_id: str, entry_id: str, target_tier_id: str) -> TierChangeResult:
        entry = self._owned_entry(account_id, entry_id)
        if not entry.billing_subscription_ref:
            raise BillingRequestError(code="no_billing_subscription", message="No billing subscription found")
        if entry.tier_id == target_tier_id:
            raise BillingRequestError(code="same_tier", message="Already subscribed to this tier")

        target = self.repository.get_tier(target_tier_id)
        if target is None:
            raise BillingNotFoundError(code="tier_not_found", message="Tier not found")
        if not target.is_purchasable:
            raise BillingRequestError(code="tier_unavailable", message="Tier not available")
        current = self.repository.get_tier(entry.tier_id)
        if current is None:
            raise BillingNotFoundError(code="tier_not_found", message="Current tier not found")
        if target.vendor_id != current.vendor_id:
            raise BillingRequestError(
                code="cross_vendor_tier_change",
                message="Cannot change to a tier from a different vendor",
            )

        if target.price_cents > current.price_cents:
            return self._upgrade(entry, current, target)
        return self._downgrade(entry, current, target)

    def _upgrade(self, entry: AccessLedgerEntry, current: VendorTier, target: VendorTier) -> TierChangeResult:
        vendor = self._approved_vendor(target.vendor_id)
        price_ref = self._usable_tier_price(target)
        customer_ref = self._ensure_customer(entry.account_id)

        self.provider.cancel_subscription(entry.billing_subscription_ref, prorate=True)
        logger.info(
            "Cancelled subscription %s for upgrade from tier %s to %s",
            entry.billing_subscription_ref,
            current.tier_id,
            target.tier_id,
        )

        metadata: Dict[str, str] = {
            "account_id": entry.account_id,
            "tier_id": target.tier_id,
            "vendor_id": target.vendor_id,
            "is_upgrade": "true",
            "previous_tier_id": current.tier_id,
            "previous_access_expires_at": entry.access_expires_at.isoformat(),
        }
        try:
            session = self.provider.create_checkout_session(
                mode=CheckoutMode.SUBSCRIPTION,
                customer_ref=customer_ref,
                price_ref=price_ref,
                quantity=1,
                metadata=metadata,
                subscription_metadata=metadata,
                success_url=self.config.upgrade_success_url(),
                cancel_url=self.config.subscription_cancel_url(vendor.slug),
            )
        except Exception:
            logger.error(
                "Upgrade checkout failed after cancelling subscription %s; access continues until %s",
                entry.billing_subscription_ref,
                entry.access_expires_at.isoformat(),
            )
            raise
        if not session.url:
            raise ProviderTerminalError(code="checkout_unavailable", message="Checkout session has no redirect URL")

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.TIER_UPGRADE_STARTED,
                subject_id=entry.entry_id,
                actor_id=entry.account_id,
                metadata={"previous_tier_id": current.tier_id, "target_tier_id": target.tier_id},
            )
        )
        return TierChangeResult(
            kind=TierChangeKind.UPGRADE,
            previous_tier_id=current.tier_id,
            target_tier_id=target.tier_id,
            checkout=CheckoutRedirect(url=session.url, session_id=session.session_id),
            previous_access_expires_at=entry.access_expires_at,
            current_period_end=entry.current_period_end,
        )

    def _downgrade(self, entry: AccessLedgerEntry, current: VendorTier, target: VendorTier) -> TierChangeResult:
        price_ref = self._usable_tier_price(target)
        subscription = self.provider.retrieve_subscription(entry.billing_subscription_ref)
        if not subscription.item_ref:
            raise ProviderTerminalError(
                code="subscription_item_missing",
                message="Billing subscription has no item to update",
            )

        self.provider.update_subscription_price(
            entry.billing_subscription_ref,
            item_ref=subscription.item_ref,
            price_ref=price_ref,
            metadata={
                "account_id": entry.account_id,
                "tier_id": target.tier_id,
                "vendor_id": target.vendor_id,
                "scheduled_downgrade": "true",
                "previous_tier_id": current.tier_id,
            },
            prorate=False,
        )
        updated = self.ledger.reassign_tier(entry, target.tier_id)

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.TIER_DOWNGRADED,
                subject_id=updated.entry_id,
                actor_id=entry.account_id,
                metadata={"previous_tier_id": current.tier_id, "target_tier_id": target.tier_id},
            )
        )
        logger.info("Downgraded subscription %s from tier %s to %s", entry.entry_id, current.tier_id, target.tier_id)
        return TierChangeResult(
            kind=TierChangeKind.DOWNGRADE,
            previous_tier_id=current.tier_id,
            target_tier_id=target.tier_id,
            previous_access_expires_at=entry.access_expires_at,
            current_period_end=updated.current_period_end,
            entry=updated,
            message=f"Your subscription will change to {target.name} at the next billing cycle",
        )

    def cancel_subscription(self, account_id: str, entry_id: str) -> AccessLedgerEntry:
        """Subscriber-initiated cancellation at period end."""

        entry = self._owned_entry(account_id, entry_id)
        if entry.status == LedgerStatus.CANCELLED:
            raise BillingRequestError(code="already_cancelled", message="Subscription is already cancelled")
        return self._schedule_cancellation(entry, actor_id=account_id)

    def vendor_cancel_subscription(self, actor_account_id: str, entry_id: str) -> AccessLedgerEntry:
        """Cancellation issued by the tier's vendor or a platform admin."""

        entry = self.ledger.get_entry(entry_id)
        if not self.config.platform_roles.is_admin(actor_account_id):
            vendor = self.repository.get_vendor(entry.vendor_id)
            if vendor is None or vendor.owner_account_id != actor_account_id:
                raise BillingForbiddenError(code="forbidden", message="Not allowed to cancel this subscription")
        if entry.cancel_requested_at is not None or entry.cancelled_at is not None:
            raise BillingRequestError(
                code="already_cancelled",
                message="Subscription cancellation has already been requested",
            )
        return self._schedule_cancellation(entry, actor_id=actor_account_id)

    def _schedule_cancellation(self, entry: AccessLedgerEntry, *, actor_id: str) -> AccessLedgerEntry:
        if not entry.billing_subscription_ref:
            raise BillingRequestError(code="no_billing_subscription", message="No billing subscription found")
        self.provider.schedule_cancellation(entry.billing_subscription_ref)
        return self.ledger.request_cancellation(entry, actor_id=actor_id)

    def _owned_entry(self, account_id: str, entry_id: str) -> AccessLedgerEntry:
        entry = self.repository.get_ledger_entry(entry_id)
        if entry is None or entry.account_id != account_id:
            raise BillingNotFoundError(code="subscription_not_found", message="Subscription not found")
        return entry

    def _approved_vendor(self, vendor_id: str) -> Vendor:
        vendor = self.repository.get_vendor(vendor_id)
        if vendor is None or not vendor.is_approved:
            raise BillingRequestError(code="vendor_unavailable", message="Vendor not available")
        return vendor

    def _ensure_customer(self, account_id: str) -> str:
        account = self.repository.get_account(account_id)
        if account is None:
            raise BillingNotFoundError(code="account_not_found", message="Account not found")
        if account.provider_customer_ref:
            return account.provider_customer_ref
        customer_ref = self.provider.create_customer(
            account_id=account.account_id,
            email=account.email,
            name=account.name,
        )
        self.repository.set_provider_customer_ref(account.account_id, customer_ref)
        return customer_ref

    def _usable_tier_price(self, tier: VendorTier) -> str:
        price_ref, replaced = ensure_active_price(
            self.provider,
            tier.provider_price_ref,
            product_ref=tier.provider_product_ref,
            unit_amount=tier.price_cents,
            currency=tier.currency,
            recurring_interval="month",
            nickname=tier.name,
        )
        if replaced:
            self.repository.save_tier(tier.model_copy(update={"provider_price_ref": price_ref, "updated_at": self._now()}))
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.PRICE_REPLACED,
                    subject_id=tier.tier_id,
                    metadata={"previous_price_ref": tier.provider_price_ref or "", "price_ref": price_ref},
                )
            )
        return price_ref


__all__ = ["TierChangeOrchestrator"]
