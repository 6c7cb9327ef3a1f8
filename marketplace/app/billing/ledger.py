"""Access ledger: the persisted paid relationship between subscribers and vendor tiers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from .errors import BillingNotFoundError, BillingRequestError, LedgerEntryNotFoundError
from .models import (
    AccessLedgerEntry,
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEventLogger,
    LedgerStatus,
    Product,
)
from .repository import BillingRepository

logger = logging.getLogger("billing")

_PROVIDER_STATUS_MAP = {
    "active": LedgerStatus.ACTIVE,
    "trialing": LedgerStatus.ACTIVE,
    "past_due": LedgerStatus.PAST_DUE,
    "unpaid": LedgerStatus.PAST_DUE,
    "canceled": LedgerStatus.CANCELLED,
    "incomplete_expired": LedgerStatus.CANCELLED,
    "paused": LedgerStatus.PAUSED,
}


def map_provider_status(status: Optional[str]) -> LedgerStatus:
    """Translate the provider's subscription status vocabulary into a ledger status."""

    return _PROVIDER_STATUS_MAP.get((status or "").lower(), LedgerStatus.ACTIVE)


def _access_rank(entry: AccessLedgerEntry) -> tuple:
    return (entry.access_expires_at, entry.status != LedgerStatus.CANCELLED, entry.updated_at)


@dataclass(slots=True)
class AccessLedger:
    """Reads and transitions access ledger entries.

    Every write keeps ``access_expires_at`` equal to the end of the last billing period the
    provider reported; cancellation and deletion only touch status and markers.
    """

    repository: BillingRepository
    event_logger: BillingEventLogger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # Reads

    def current_access(self, account_id: str, vendor_id: str) -> Optional[AccessLedgerEntry]:
        """Entry granting the longest access to the vendor, regardless of status.

        Ties on expiry prefer entries that are not cancelled, then the most recently
        updated one.
        """

        entries = self.repository.list_ledger_entries(account_id, vendor_id=vendor_id)
        if not entries:
            return None
        return max(entries, key=_access_rank)

    def active_entries(self, account_id: str, vendor_id: str) -> List[AccessLedgerEntry]:
        now = self._now()
        entries = self.repository.list_ledger_entries(account_id, vendor_id=vendor_id)
        return sorted(
            (entry for entry in entries if entry.has_access(now)),
            key=_access_rank,
            reverse=True,
        )

    def has_active_access(self, account_id: str, vendor_id: str) -> bool:
        entry = self.current_access(account_id, vendor_id)
        return entry is not None and entry.has_access(self._now())

    def list_active_subscriptions(self, account_id: str) -> List[AccessLedgerEntry]:
        now = self._now()
        entries = self.repository.list_ledger_entries(account_id)
        return sorted(
            (entry for entry in entries if entry.has_access(now)),
            key=lambda entry: entry.access_expires_at,
        )

    def can_access_product(self, account_id: str, product: Product) -> bool:
        """Whether the account may buy ``product`` right now."""

        entries = self.active_entries(account_id, product.vendor_id)
        if not entries:
            return False
        if not product.is_tier_restricted:
            return True
        allowed = set(product.allowed_tier_ids)
        return any(entry.tier_id in allowed for entry in entries)

    def get_entry(self, entry_id: str) -> AccessLedgerEntry:
        entry = self.repository.get_ledger_entry(entry_id)
        if entry is None:
            raise BillingNotFoundError(code="subscription_not_found", message="Subscription not found")
        return entry

    def find_entry(
        self,
        *,
        account_id: Optional[str] = None,
        tier_id: Optional[str] = None,
        billing_subscription_ref: Optional[str] = None,
    ) -> Optional[AccessLedgerEntry]:
        """Locate an entry by its natural key, falling back to the billing reference."""

        if account_id and tier_id:
            entry = self.repository.get_ledger_entry_for_tier(account_id, tier_id)
            if entry is not None:
                return entry
        if billing_subscription_ref:
            return self.repository.find_ledger_entry_by_billing_ref(billing_subscription_ref)
        return None

    @staticmethod
    def is_stale(entry: AccessLedgerEntry, event_created_at: Optional[datetime]) -> bool:
        """``True`` when a newer provider event has already been applied to ``entry``."""

        if event_created_at is None or entry.provider_synced_at is None:
            return False
        return event_created_at < entry.provider_synced_at

    def active_subscriber_count(self, tier_id: str) -> int:
        return self.repository.count_ledger_entries(tier_id, active_at=self._now())

    def assert_price_change_allowed(self, tier_id: str) -> None:
        if self.active_subscriber_count(tier_id) > 0:
            raise BillingRequestError(
                code="tier_has_active_subscribers",
                message="Cannot change price while there are active subscribers",
            )

    def assert_deletable(self, tier_id: str) -> None:
        if self.repository.count_ledger_entries(tier_id) > 0:
            raise BillingRequestError(
                code="tier_has_subscribers",
                message="Cannot delete tier with existing subscribers. Deactivate it instead.",
            )

    # Transitions

    def _require_entry(self, account_id: str, tier_id: str) -> AccessLedgerEntry:
        entry = self.repository.get_ledger_entry_for_tier(account_id, tier_id)
        if entry is None:
            raise LedgerEntryNotFoundError(
                code="ledger_entry_not_found",
                message="No subscription recorded for this account and tier",
                detail={"account_id": account_id, "tier_id": tier_id},
            )
        return entry

    def apply_checkout_completed(
        self,
        *,
        account_id: str,
        tier_id: str,
        billing_subscription_ref: str,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        synced_at: Optional[datetime] = None,
    ) -> AccessLedgerEntry:
        tier = self.repository.get_tier(tier_id)
        if tier is None:
            raise BillingNotFoundError(code="tier_not_found", message="Tier not found")
        if period_end is None:
            raise BillingRequestError(code="missing_period_end", message="Subscription has no billing period end")

        existing = self.repository.get_ledger_entry_for_tier(account_id, tier_id)
        now = self._now()
        entry = AccessLedgerEntry(
            entry_id=existing.entry_id if existing else f"sub_{uuid4().hex}",
            account_id=account_id,
            tier_id=tier_id,
            vendor_id=tier.vendor_id,
            status=LedgerStatus.ACTIVE,
            billing_subscription_ref=billing_subscription_ref,
            current_period_start=period_start,
            current_period_end=period_end,
            access_expires_at=period_end,
            cancel_requested_at=None,
            cancelled_at=None,
            provider_synced_at=synced_at,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        persisted = self.repository.upsert_ledger_entry(entry)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_ACTIVATED,
                subject_id=persisted.entry_id,
                actor_id=account_id,
                metadata={"tier_id": tier_id, "billing_subscription_ref": billing_subscription_ref},
            )
        )
        return persisted

    def apply_provider_subscription_updated(
        self,
        *,
        account_id: str,
        tier_id: str,
        new_status: Optional[str],
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        cancelled_at: Optional[datetime],
        cancel_at_period_end: bool = False,
        synced_at: Optional[datetime] = None,
    ) -> AccessLedgerEntry:
        entry = self._require_entry(account_id, tier_id)
        status = map_provider_status(new_status)

        if cancelled_at is not None or cancel_at_period_end:
            cancel_requested_at = entry.cancel_requested_at or cancelled_at or self._now()
        else:
            cancel_requested_at = None

        updated = entry.model_copy(
            update={
                "status": status,
                "current_period_start": period_start or entry.current_period_start,
                "current_period_end": period_end or entry.current_period_end,
                "access_expires_at": period_end or entry.access_expires_at,
                "cancel_requested_at": cancel_requested_at,
                "cancelled_at": cancelled_at,
                "provider_synced_at": synced_at or entry.provider_synced_at,
                "updated_at": self._now(),
            }
        )
        persisted = self.repository.save_ledger_entry(updated)
        audit_type = (
            BillingAuditEventType.SUBSCRIPTION_CANCELED
            if status == LedgerStatus.CANCELLED
            else BillingAuditEventType.SUBSCRIPTION_UPDATED
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=audit_type,
                subject_id=persisted.entry_id,
                actor_id=account_id,
                metadata={"status": persisted.status.value},
            )
        )
        return persisted

    def apply_provider_subscription_deleted(
        self,
        *,
        account_id: str,
        tier_id: str,
        synced_at: Optional[datetime] = None,
    ) -> AccessLedgerEntry:
        entry = self._require_entry(account_id, tier_id)
        updated = entry.model_copy(
            update={
                "status": LedgerStatus.CANCELLED,
                "cancelled_at": entry.cancelled_at or self._now(),
                "cancel_requested_at": entry.cancel_requested_at or entry.cancelled_at or self._now(),
                "provider_synced_at": synced_at or entry.provider_synced_at,
                "updated_at": self._now(),
            }
        )
        persisted = self.repository.save_ledger_entry(updated)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_CANCELED,
                subject_id=persisted.entry_id,
                actor_id=account_id,
                metadata={"access_expires_at": persisted.access_expires_at.isoformat()},
            )
        )
        return persisted

    def mark_payment_failed(self, billing_subscription_ref: str) -> AccessLedgerEntry:
        entry = self.repository.find_ledger_entry_by_billing_ref(billing_subscription_ref)
        if entry is None:
            raise LedgerEntryNotFoundError(
                code="ledger_entry_not_found",
                message="No subscription recorded for this billing reference",
                detail={"billing_subscription_ref": billing_subscription_ref},
            )
        if entry.status == LedgerStatus.CANCELLED:
            logger.info("Ignoring payment failure for cancelled subscription %s", entry.entry_id)
            return entry

        persisted = self.repository.save_ledger_entry(
            entry.model_copy(update={"status": LedgerStatus.PAST_DUE, "updated_at": self._now()})
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_FAILED,
                subject_id=persisted.entry_id,
                actor_id=persisted.account_id,
                metadata={"billing_subscription_ref": billing_subscription_ref},
            )
        )
        return persisted

    def request_cancellation(self, entry: AccessLedgerEntry, *, actor_id: str) -> AccessLedgerEntry:
        """Record that cancellation was requested; the provider confirms it later."""

        persisted = self.repository.save_ledger_entry(
            entry.model_copy(
                update={
                    "cancel_requested_at": entry.cancel_requested_at or self._now(),
                    "updated_at": self._now(),
                }
            )
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CANCELLATION_REQUESTED,
                subject_id=persisted.entry_id,
                actor_id=actor_id,
                metadata={"access_expires_at": persisted.access_expires_at.isoformat()},
            )
        )
        return persisted

    def reassign_tier(self, entry: AccessLedgerEntry, tier_id: str) -> AccessLedgerEntry:
        return self.repository.reassign_ledger_entry_tier(entry.entry_id, tier_id)


__all__ = ["AccessLedger", "map_provider_status"]
