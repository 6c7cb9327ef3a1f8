"""API schemas for subscription, tier, product checkout and order endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    AccessLedgerEntry,
    CancellationState,
    CheckoutRedirect,
    LedgerStatus,
    Order,
    OrderStatus,
    TierChangeKind,
    TierChangeResult,
    VendorTier,
)


class SubscriptionCheckoutRequest(BaseModel):
    tier_id: str = Field(alias="tierId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class CheckoutResponse(BaseModel):
    url: str
    session_id: str = Field(alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_redirect(cls, redirect: CheckoutRedirect) -> "CheckoutResponse":
        return cls(url=redirect.url, session_id=redirect.session_id)


class LedgerEntryOut(BaseModel):
    id: str
    tier_id: str = Field(alias="tierId")
    vendor_id: str = Field(alias="vendorId")
    status: LedgerStatus
    access_expires_at: datetime = Field(alias="accessExpiresAt")
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    cancellation_state: CancellationState = Field(alias="cancellationState")
    cancel_requested_at: Optional[datetime] = Field(alias="cancelRequestedAt", default=None)
    cancelled_at: Optional[datetime] = Field(alias="cancelledAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_entry(cls, entry: AccessLedgerEntry) -> "LedgerEntryOut":
        return cls(
            id=entry.entry_id,
            tier_id=entry.tier_id,
            vendor_id=entry.vendor_id,
            status=entry.status,
            access_expires_at=entry.access_expires_at,
            current_period_end=entry.current_period_end,
            cancellation_state=entry.cancellation_state,
            cancel_requested_at=entry.cancel_requested_at,
            cancelled_at=entry.cancelled_at,
        )


class ChangeTierRequest(BaseModel):
    current_subscription_id: str = Field(alias="currentSubscriptionId", min_length=1)
    new_tier_id: str = Field(alias="newTierId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class ChangeTierResponse(BaseModel):
    type: TierChangeKind
    url: Optional[str] = None
    message: Optional[str] = None
    previous_access_expires_at: Optional[datetime] = Field(alias="previousAccessExpiresAt", default=None)
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    access_expires_at: Optional[datetime] = Field(alias="accessExpiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: TierChangeResult) -> "ChangeTierResponse":
        return cls(
            type=result.kind,
            url=result.checkout.url if result.checkout else None,
            message=result.message,
            previous_access_expires_at=result.previous_access_expires_at,
            current_period_end=result.current_period_end,
            access_expires_at=result.entry.access_expires_at if result.entry else None,
        )


class CancelSubscriptionRequest(BaseModel):
    subscription_id: str = Field(alias="subscriptionId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class CancelSubscriptionResponse(BaseModel):
    success: bool = True
    subscription: LedgerEntryOut


class AccessResponse(BaseModel):
    has_access: bool = Field(alias="hasAccess")
    entry: Optional[LedgerEntryOut] = None

    model_config = ConfigDict(populate_by_name=True)


class ProductCheckoutRequest(BaseModel):
    product_id: str = Field(alias="productId", min_length=1)
    vendor_slug: str = Field(alias="vendorSlug", min_length=1)
    address_id: str = Field(alias="addressId", min_length=1)
    quantity: int = Field(default=1, ge=1)

    model_config = ConfigDict(populate_by_name=True)


class TierOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price_cents: int = Field(alias="priceCents")
    currency: str
    benefits: List[str] = Field(default_factory=list)
    is_active: bool = Field(alias="isActive")
    sort_order: int = Field(alias="sortOrder")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_tier(cls, tier: VendorTier) -> "TierOut":
        return cls(
            id=tier.tier_id,
            name=tier.name,
            description=tier.description,
            price_cents=tier.price_cents,
            currency=tier.currency,
            benefits=list(tier.benefits),
            is_active=tier.is_active,
            sort_order=tier.sort_order,
        )


class TierListResponse(BaseModel):
    tiers: List[TierOut]


class TierCreateRequest(BaseModel):
    name: str
    price_cents: int = Field(alias="priceCents")
    description: Optional[str] = None
    benefits: List[str] = Field(default_factory=list)
    is_active: bool = Field(alias="isActive", default=True)

    model_config = ConfigDict(populate_by_name=True)


class TierUpdateRequest(BaseModel):
    name: Optional[str] = None
    price_cents: Optional[int] = Field(alias="priceCents", default=None)
    description: Optional[str] = None
    benefits: Optional[List[str]] = None
    is_active: Optional[bool] = Field(alias="isActive", default=None)

    model_config = ConfigDict(populate_by_name=True)


class OrderStatusUpdateRequest(BaseModel):
    status: OrderStatus


class OrderOut(BaseModel):
    id: str
    status: OrderStatus
    total_cents: int = Field(alias="totalCents")
    currency: str
    requires_review: bool = Field(alias="requiresReview")
    notes: Optional[str] = None
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_order(cls, order: Order) -> "OrderOut":
        return cls(
            id=order.order_id,
            status=order.status,
            total_cents=order.total_cents,
            currency=order.currency,
            requires_review=order.requires_review,
            notes=order.notes,
            updated_at=order.updated_at,
        )


class WebhookReceivedResponse(BaseModel):
    received: bool = True
