"""Domain models for subscriptions, tiers, and one-time purchase orders."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerStatus(str, Enum):
    """Lifecycle status of an access ledger entry."""

    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"
    PAUSED = "PAUSED"


class CancellationState(str, Enum):
    """Two-phase cancellation marker exposed on ledger entries."""

    NONE = "none"
    REQUESTED = "requested"
    CONFIRMED = "confirmed"


class VendorStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"


class OrderStatus(str, Enum):
    """Fulfillment status of a one-time purchase order."""

    PENDING = "PENDING"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class CheckoutMode(str, Enum):
    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"


class TierChangeKind(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class BillingWebhookEventType(str, Enum):
    """Provider event types the reconciler reacts to."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class WebhookDisposition(str, Enum):
    """What the reconciler did with an accepted event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    STALE = "stale"


class Account(BaseModel):
    """A subscriber account as seen by the billing core."""

    account_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    provider_customer_ref: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Vendor(BaseModel):
    vendor_id: str
    owner_account_id: str
    slug: str
    store_name: str
    status: VendorStatus = VendorStatus.PENDING

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_approved(self) -> bool:
        return self.status == VendorStatus.APPROVED


class VendorTier(BaseModel):
    """A priced recurring-access level owned by a vendor."""

    tier_id: str
    vendor_id: str
    name: str
    description: Optional[str] = None
    price_cents: int = Field(ge=0)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    benefits: List[str] = Field(default_factory=list)
    is_active: bool = True
    provider_price_ref: Optional[str] = None
    provider_product_ref: Optional[str] = None
    sort_order: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()

    @property
    def is_purchasable(self) -> bool:
        """``True`` when new checkouts may be opened against this tier."""
        return self.is_active and bool(self.provider_price_ref)


class AccessLedgerEntry(BaseModel):
    """One subscriber's paid relationship to one vendor tier.

    ``access_expires_at`` is the authoritative access clock. It always holds the end of
    the billing period the subscriber has paid for, independent of ``status`` and of any
    pending or confirmed cancellation.
    """

    entry_id: str
    account_id: str
    tier_id: str
    vendor_id: str
    status: LedgerStatus = LedgerStatus.ACTIVE
    billing_subscription_ref: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    access_expires_at: datetime
    cancel_requested_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    provider_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def has_access(self, now: Optional[datetime] = None) -> bool:
        return self.access_expires_at > (now or _utcnow())

    @property
    def cancellation_state(self) -> CancellationState:
        if self.cancelled_at is not None:
            return CancellationState.CONFIRMED
        if self.cancel_requested_at is not None:
            return CancellationState.REQUESTED
        return CancellationState.NONE


class Address(BaseModel):
    address_id: str
    account_id: str
    name: str
    label: Optional[str] = None
    line1: str
    line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "US"
    is_default: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ShippingDetails(BaseModel):
    """Shipping information collected by the provider during checkout."""

    name: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Product(BaseModel):
    """Catalog item sold to a vendor's subscribers."""

    product_id: str
    vendor_id: str
    name: str
    price_cents: int = Field(ge=0)
    currency: str = "usd"
    is_active: bool = True
    is_limited: bool = False
    stock_quantity: int = Field(default=0, ge=0)
    allowed_tier_ids: List[str] = Field(default_factory=list)
    provider_product_ref: Optional[str] = None
    provider_price_ref: Optional[str] = None
    is_pre_order: bool = False
    pre_order_ship_date: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_tier_restricted(self) -> bool:
        return bool(self.allowed_tier_ids)


class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1)
    price_cents: int = Field(ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Order(BaseModel):
    """A one-time purchase recorded from a completed payment checkout."""

    order_id: str
    account_id: str
    vendor_id: str
    status: OrderStatus = OrderStatus.PENDING
    total_cents: int = Field(ge=0)
    currency: str = "usd"
    provider_payment_ref: str
    subscription_tier_id: Optional[str] = None
    subscription_tier_name: Optional[str] = None
    shipping_address_id: Optional[str] = None
    is_pre_order: bool = False
    pre_order_ship_date: Optional[datetime] = None
    notes: Optional[str] = None
    requires_review: bool = False
    items: List[OrderItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def quantity(self) -> int:
        return sum(item.quantity for item in self.items)


class ProviderSubscription(BaseModel):
    """Local view of a recurring subscription held by the billing provider."""

    subscription_ref: str
    status: str
    customer_ref: Optional[str] = None
    item_ref: Optional[str] = None
    price_ref: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProviderPrice(BaseModel):
    price_ref: str
    product_ref: Optional[str] = None
    active: bool = True
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    recurring_interval: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProviderProduct(BaseModel):
    product_ref: str
    active: bool = True
    name: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProviderCheckoutSession(BaseModel):
    """Local view of a provider checkout session."""

    session_id: str
    url: Optional[str] = None
    mode: CheckoutMode = CheckoutMode.SUBSCRIPTION
    metadata: Dict[str, str] = Field(default_factory=dict)
    subscription_ref: Optional[str] = None
    payment_intent_ref: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    shipping: Optional[ShippingDetails] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_product_purchase(self) -> bool:
        return self.metadata.get("type") == "product_purchase" or self.mode == CheckoutMode.PAYMENT


class BillingWebhookEvent(BaseModel):
    """Verified provider event, decoupled from the provider's wire objects."""

    event_id: str
    event_type: str
    created_at: datetime = Field(default_factory=_utcnow)
    data: Dict[str, object] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutRedirect(BaseModel):
    """Where to send the subscriber to complete payment."""

    url: str
    session_id: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class TierChangeResult(BaseModel):
    """Outcome of a tier change request."""

    kind: TierChangeKind
    previous_tier_id: str
    target_tier_id: str
    checkout: Optional[CheckoutRedirect] = None
    previous_access_expires_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    entry: Optional[AccessLedgerEntry] = None
    message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class OrderRecordResult(BaseModel):
    order: Order
    created: bool

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    CANCELLATION_REQUESTED = "cancellation_requested"
    PAYMENT_FAILED = "payment_failed"
    TIER_UPGRADE_STARTED = "tier_upgrade_started"
    TIER_DOWNGRADED = "tier_downgraded"
    PRICE_REPLACED = "price_replaced"
    ORDER_RECORDED = "order_recorded"
    ORDER_FLAGGED_FOR_REVIEW = "order_flagged_for_review"


class BillingAuditEvent(BaseModel):
    """Structured audit event for operators and downstream consumers."""

    event_type: BillingAuditEventType
    subject_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...
