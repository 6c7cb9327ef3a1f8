"""Facade bundling the billing components behind one object."""
from __future__ import annotations

from dataclasses import dataclass

from ...config import BillingConfig
from .fulfillment import OrderFulfillmentRecorder
from .ledger import AccessLedger
from .models import BillingEventLogger
from .orchestrator import TierChangeOrchestrator
from .provider import BillingProvider
from .reconciler import WebhookReconciler
from .repository import BillingRepository
from .tiers import TierCatalog


@dataclass(slots=True)
class BillingService:
    """Coordinates subscriptions, tier changes, webhooks and orders."""

    ledger: AccessLedger
    orchestrator: TierChangeOrchestrator
    reconciler: WebhookReconciler
    fulfillment: OrderFulfillmentRecorder
    tiers: TierCatalog

    @classmethod
    def build(
        cls,
        *,
        repository: BillingRepository,
        provider: BillingProvider,
        event_logger: BillingEventLogger,
        config: BillingConfig,
    ) -> "BillingService":
        ledger = AccessLedger(repository=repository, event_logger=event_logger)
        fulfillment = OrderFulfillmentRecorder(
            repository=repository,
            provider=provider,
            ledger=ledger,
            event_logger=event_logger,
            config=config,
        )
        return cls(
            ledger=ledger,
            orchestrator=TierChangeOrchestrator(
                repository=repository,
                provider=provider,
                ledger=ledger,
                event_logger=event_logger,
                config=config,
            ),
            reconciler=WebhookReconciler(
                repository=repository,
                provider=provider,
                ledger=ledger,
                fulfillment=fulfillment,
            ),
            fulfillment=fulfillment,
            tiers=TierCatalog(repository=repository, provider=provider, ledger=ledger, config=config),
        )


__all__ = ["BillingService"]
