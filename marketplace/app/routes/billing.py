"""API routes for subscriptions, tier management, product checkout and orders."""
from __future__ import annotations

import os
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Response, status

from ... import app_context
from ..billing import BillingError
from ..schemas.billing import (
    AccessResponse,
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    ChangeTierRequest,
    ChangeTierResponse,
    CheckoutResponse,
    LedgerEntryOut,
    OrderOut,
    OrderStatusUpdateRequest,
    ProductCheckoutRequest,
    SubscriptionCheckoutRequest,
    TierCreateRequest,
    TierListResponse,
    TierOut,
    TierUpdateRequest,
)
from ..services.billing import get_billing_service

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_account(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_account(session_token=session_token)


router = APIRouter(prefix="/api", tags=["billing"])


@router.post("/subscriptions/checkout", response_model=CheckoutResponse)
def start_subscription_checkout(
    payload: SubscriptionCheckoutRequest,
    *,
    current_account=Depends(_get_current_account),
) -> CheckoutResponse:
    service = get_billing_service()
    try:
        redirect = service.orchestrator.start_subscription_checkout(str(current_account.id), payload.tier_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CheckoutResponse.from_redirect(redirect)


@router.post("/subscriptions/change-tier", response_model=ChangeTierResponse)
def change_tier(
    payload: ChangeTierRequest,
    *,
    current_account=Depends(_get_current_account),
) -> ChangeTierResponse:
    service = get_billing_service()
    try:
        result = service.orchestrator.change_tier(
            str(current_account.id),
            payload.current_subscription_id,
            payload.new_tier_id,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return ChangeTierResponse.from_result(result)


@router.post("/subscriptions/cancel", response_model=CancelSubscriptionResponse)
def cancel_subscription(
    payload: CancelSubscriptionRequest,
    *,
    current_account=Depends(_get_current_account),
) -> CancelSubscriptionResponse:
    service = get_billing_service()
    try:
        entry = service.orchestrator.cancel_subscription(str(current_account.id), payload.subscription_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CancelSubscriptionResponse(subscription=LedgerEntryOut.from_entry(entry))


@router.get("/subscriptions/access/{vendor_id}", response_model=AccessResponse)
def get_vendor_access(
    vendor_id: str,
    *,
    current_account=Depends(_get_current_account),
) -> AccessResponse:
    service = get_billing_service()
    entry = service.ledger.current_access(str(current_account.id), vendor_id)
    if entry is None:
        return AccessResponse(has_access=False)
    return AccessResponse(
        has_access=service.ledger.has_active_access(str(current_account.id), vendor_id),
        entry=LedgerEntryOut.from_entry(entry),
    )


@router.post("/products/checkout", response_model=CheckoutResponse)
def start_product_checkout(
    payload: ProductCheckoutRequest,
    *,
    current_account=Depends(_get_current_account),
) -> CheckoutResponse:
    service = get_billing_service()
    try:
        redirect = service.fulfillment.start_product_checkout(
            str(current_account.id),
            product_id=payload.product_id,
            vendor_slug=payload.vendor_slug,
            address_id=payload.address_id,
            quantity=payload.quantity,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CheckoutResponse.from_redirect(redirect)


@router.get("/vendor/tiers", response_model=TierListResponse)
def list_vendor_tiers(*, current_account=Depends(_get_current_account)) -> TierListResponse:
    service = get_billing_service()
    try:
        vendor = service.tiers.owned_vendor(str(current_account.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return TierListResponse(tiers=[TierOut.from_tier(tier) for tier in service.tiers.list_tiers(vendor.vendor_id)])


@router.post("/vendor/tiers", response_model=TierOut, status_code=status.HTTP_201_CREATED)
def create_vendor_tier(
    payload: TierCreateRequest,
    *,
    current_account=Depends(_get_current_account),
) -> TierOut:
    service = get_billing_service()
    try:
        tier = service.tiers.create_tier(
            str(current_account.id),
            name=payload.name,
            price_cents=payload.price_cents,
            description=payload.description,
            benefits=payload.benefits,
            is_active=payload.is_active,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return TierOut.from_tier(tier)


@router.patch("/vendor/tiers/{tier_id}", response_model=TierOut)
def update_vendor_tier(
    tier_id: str,
    payload: TierUpdateRequest,
    *,
    current_account=Depends(_get_current_account),
) -> TierOut:
    service = get_billing_service()
    try:
        tier = service.tiers.update_tier(
            str(current_account.id),
            tier_id,
            name=payload.name,
            description=payload.description,
            price_cents=payload.price_cents,
            benefits=payload.benefits,
            is_active=payload.is_active,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return TierOut.from_tier(tier)


@router.delete("/vendor/tiers/{tier_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_vendor_tier(
    tier_id: str,
    *,
    current_account=Depends(_get_current_account),
) -> Response:
    service = get_billing_service()
    try:
        service.tiers.delete_tier(str(current_account.id), tier_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/vendor/subscriptions/{subscription_id}/cancel", response_model=CancelSubscriptionResponse)
def vendor_cancel_subscription(
    subscription_id: str,
    *,
    current_account=Depends(_get_current_account),
) -> CancelSubscriptionResponse:
    service = get_billing_service()
    try:
        entry = service.orchestrator.vendor_cancel_subscription(str(current_account.id), subscription_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CancelSubscriptionResponse(subscription=LedgerEntryOut.from_entry(entry))


@router.patch("/vendor/orders/{order_id}/status", response_model=OrderOut)
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdateRequest,
    *,
    current_account=Depends(_get_current_account),
) -> OrderOut:
    service = get_billing_service()
    try:
        order = service.fulfillment.update_order_status(str(current_account.id), order_id, payload.status)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return OrderOut.from_order(order)
