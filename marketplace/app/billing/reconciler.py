"""Reconciles billing provider webhook events into local ledger and order state."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import LedgerEntryNotFoundError, WebhookSignatureError
from .fulfillment import OrderFulfillmentRecorder
from .ledger import AccessLedger
from .models import (
    AccessLedgerEntry,
    BillingWebhookEvent,
    BillingWebhookEventType,
    ProviderSubscription,
    WebhookDisposition,
)
from .provider import (
    BillingProvider,
    checkout_session_from_payload,
    invoice_subscription_ref,
    provider_subscription_from_payload,
)
from .repository import BillingRepository

logger = logging.getLogger("billing.webhooks")


@dataclass(slots=True)
class WebhookReconciler:
    """Applies verified provider events idempotently.

    Any exception escaping :meth:`handle_event` must turn into a non-2xx response so the
    provider redelivers the event. Event ids are recorded only after their handler
    succeeded.
    """

    repository: BillingRepository
    provider: BillingProvider
    ledger: AccessLedger
    fulfillment: OrderFulfillmentRecorder

    def handle_payload(self, payload: bytes, signature: Optional[str]) -> WebhookDisposition:
        """Verify the signed envelope, then reconcile the event it carries."""

        if not signature:
            raise WebhookSignatureError(code="missing_signature", message="Missing signature")
        event = self.provider.construct_event(payload, signature)
        return self.handle_event(event)

    def handle_event(self, event: BillingWebhookEvent) -> WebhookDisposition:
        if self.repository.has_processed_webhook_event(event.event_id):
            logger.info("Skipping already processed event %s (%s)", event.event_id, event.event_type)
            return WebhookDisposition.DUPLICATE

        handler = self._handlers().get(event.event_type)
        if handler is None:
            logger.debug("Ignoring unhandled event type %s", event.event_type)
            return WebhookDisposition.IGNORED

        disposition = handler(event)
        self.repository.record_webhook_event(event)
        logger.info("Processed event %s (%s): %s", event.event_id, event.event_type, disposition.value)
        return disposition

    def _handlers(self) -> Dict[str, Callable[[BillingWebhookEvent], WebhookDisposition]]:
        return {
            BillingWebhookEventType.CHECKOUT_SESSION_COMPLETED.value: self._handle_checkout_completed,
            BillingWebhookEventType.SUBSCRIPTION_UPDATED.value: self._handle_subscription_updated,
            BillingWebhookEventType.SUBSCRIPTION_DELETED.value: self._handle_subscription_deleted,
            BillingWebhookEventType.INVOICE_PAYMENT_FAILED.value: self._handle_payment_failed,
        }

    def _handle_checkout_completed(self, event: BillingWebhookEvent) -> WebhookDisposition:
        session = checkout_session_from_payload(event.data)
        if session.is_product_purchase:
            result = self.fulfillment.record_purchase(session)
            return WebhookDisposition.APPLIED if result is not None else WebhookDisposition.IGNORED

        account_id = session.metadata.get("account_id")
        tier_id = session.metadata.get("tier_id")
        if not account_id or not tier_id:
            logger.warning("Checkout session %s is missing subscription metadata", session.session_id)
            return WebhookDisposition.IGNORED
        if not session.subscription_ref:
            logger.warning("Checkout session %s has no subscription reference", session.session_id)
            return WebhookDisposition.IGNORED

        subscription = self.provider.retrieve_subscription(session.subscription_ref)
        entry = self.ledger.apply_checkout_completed(
            account_id=account_id,
            tier_id=tier_id,
            billing_subscription_ref=subscription.subscription_ref,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            synced_at=event.created_at,
        )
        logger.info("Activated subscription %s for account %s tier %s", entry.entry_id, account_id, tier_id)
        return WebhookDisposition.APPLIED

    def _handle_subscription_updated(self, event: BillingWebhookEvent) -> WebhookDisposition:
        subscription = provider_subscription_from_payload(event.data)
        entry = self._resolve_entry(subscription)
        if entry is None:
            return WebhookDisposition.IGNORED
        if self.ledger.is_stale(entry, event.created_at):
            logger.info("Skipping stale %s for subscription %s", event.event_type, entry.entry_id)
            return WebhookDisposition.STALE

        self.ledger.apply_provider_subscription_updated(
            account_id=entry.account_id,
            tier_id=entry.tier_id,
            new_status=subscription.status,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            cancelled_at=subscription.canceled_at,
            cancel_at_period_end=subscription.cancel_at_period_end,
            synced_at=event.created_at,
        )
        return WebhookDisposition.APPLIED

    def _handle_subscription_deleted(self, event: BillingWebhookEvent) -> WebhookDisposition:
        subscription = provider_subscription_from_payload(event.data)
        entry = self._resolve_entry(subscription)
        if entry is None:
            return WebhookDisposition.IGNORED
        if self.ledger.is_stale(entry, event.created_at):
            logger.info("Skipping stale %s for subscription %s", event.event_type, entry.entry_id)
            return WebhookDisposition.STALE

        self.ledger.apply_provider_subscription_deleted(
            account_id=entry.account_id,
            tier_id=entry.tier_id,
            synced_at=event.created_at,
        )
        return WebhookDisposition.APPLIED

    def _handle_payment_failed(self, event: BillingWebhookEvent) -> WebhookDisposition:
        subscription_ref = invoice_subscription_ref(event.data)
        if not subscription_ref:
            logger.info("Invoice %s is not tied to a subscription", event.data.get("id"))
            return WebhookDisposition.IGNORED
        if self.ledger.find_entry(billing_subscription_ref=subscription_ref) is None:
            logger.warning("Payment failed for unknown subscription %s", subscription_ref)
            return WebhookDisposition.IGNORED

        self.ledger.mark_payment_failed(subscription_ref)
        return WebhookDisposition.APPLIED

    def _resolve_entry(self, subscription: ProviderSubscription) -> Optional[AccessLedgerEntry]:
        """Find the ledger entry a provider subscription belongs to.

        Returns ``None`` for events that can never be attributed locally. Raises
        :class:`LedgerEntryNotFoundError` when the entry is expected but not written yet.
        """

        account_id = subscription.metadata.get("account_id")
        tier_id = subscription.metadata.get("tier_id")
        entry = self.ledger.find_entry(
            account_id=account_id,
            tier_id=tier_id,
            billing_subscription_ref=subscription.subscription_ref,
        )
        if entry is None:
            if not account_id or not tier_id:
                logger.warning("Subscription %s has no metadata and no local entry", subscription.subscription_ref)
                return None
            raise LedgerEntryNotFoundError(
                code="ledger_entry_not_found",
                message="Subscription event arrived before its checkout was reconciled",
                detail={"billing_subscription_ref": subscription.subscription_ref},
            )

        if not subscription.subscription_ref or entry.billing_subscription_ref == subscription.subscription_ref:
            return entry

        # Metadata can still name a tier the subscription has since moved off of.
        tracking = self.ledger.find_entry(billing_subscription_ref=subscription.subscription_ref)
        if tracking is not None:
            logger.info(
                "Subscription %s metadata names entry %s; applying to entry %s which tracks it",
                subscription.subscription_ref,
                entry.entry_id,
                tracking.entry_id,
            )
            return tracking

        logger.info(
            "Ignoring event for superseded subscription %s (entry %s tracks %s)",
            subscription.subscription_ref,
            entry.entry_id,
            entry.billing_subscription_ref,
        )
        return None


__all__ = ["WebhookReconciler"]
