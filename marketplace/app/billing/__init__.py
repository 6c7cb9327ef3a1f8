"""Billing domain package: access ledger, tier changes, webhooks and orders."""

from .errors import (
    BillingConflictError,
    BillingError,
    BillingForbiddenError,
    BillingNotFoundError,
    BillingRequestError,
    LedgerEntryNotFoundError,
    PriceInactiveError,
    ProviderTerminalError,
    ProviderTransientError,
    WebhookSignatureError,
)
from .fulfillment import OrderFulfillmentRecorder
from .ledger import AccessLedger
from .models import (
    AccessLedgerEntry,
    Account,
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEventLogger,
    BillingWebhookEvent,
    BillingWebhookEventType,
    CancellationState,
    CheckoutRedirect,
    LedgerStatus,
    Order,
    OrderStatus,
    Product,
    TierChangeKind,
    TierChangeResult,
    Vendor,
    VendorStatus,
    VendorTier,
    WebhookDisposition,
)
from .orchestrator import TierChangeOrchestrator
from .provider import BillingProvider, StripeBillingProvider
from .reconciler import WebhookReconciler
from .repository import BillingRepository
from .service import BillingService
from .tiers import TierCatalog

__all__ = [
    "AccessLedger",
    "AccessLedgerEntry",
    "Account",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingConflictError",
    "BillingError",
    "BillingEventLogger",
    "BillingForbiddenError",
    "BillingNotFoundError",
    "BillingProvider",
    "BillingRepository",
    "BillingRequestError",
    "BillingService",
    "BillingWebhookEvent",
    "BillingWebhookEventType",
    "CancellationState",
    "CheckoutRedirect",
    "LedgerEntryNotFoundError",
    "LedgerStatus",
    "Order",
    "OrderFulfillmentRecorder",
    "OrderStatus",
    "PriceInactiveError",
    "Product",
    "ProviderTerminalError",
    "ProviderTransientError",
    "StripeBillingProvider",
    "TierChangeKind",
    "TierChangeOrchestrator",
    "TierChangeResult",
    "TierCatalog",
    "Vendor",
    "VendorStatus",
    "VendorTier",
    "WebhookDisposition",
    "WebhookReconciler",
    "WebhookSignatureError",
]
