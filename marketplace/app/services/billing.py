"""Application wiring for the billing service."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..billing import BillingAuditEvent, BillingEventLogger, BillingService, StripeBillingProvider
from ..billing.repository import PostgresBillingRepository
from ...app_context import get_billing_config


logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s subject=%s actor=%s metadata=%s",
            event.event_type.value,
            event.subject_id,
            event.actor_id,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    config = get_billing_config()
    return BillingService.build(
        repository=PostgresBillingRepository(),
        provider=StripeBillingProvider(
            api_key=config.stripe_secret_key,
            webhook_secret=config.stripe_webhook_secret,
        ),
        event_logger=LoggingBillingEventLogger(),
        config=config,
    )


__all__ = ["get_billing_service", "LoggingBillingEventLogger"]
