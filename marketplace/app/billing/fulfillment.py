"""One-time product purchases: checkout initiation and order recording."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional
from uuid import uuid4

from ...config import BillingConfig
from .errors import (
    BillingForbiddenError,
    BillingNotFoundError,
    BillingRequestError,
    ProviderTerminalError,
)
from .ledger import AccessLedger
from .models import (
    AccessLedgerEntry,
    Address,
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEventLogger,
    CheckoutMode,
    CheckoutRedirect,
    Order,
    OrderItem,
    OrderRecordResult,
    OrderStatus,
    Product,
    ProviderCheckoutSession,
    ShippingDetails,
)
from .provider import BillingProvider, ensure_active_price
from .repository import BillingRepository

logger = logging.getLogger("billing.fulfillment")

PRODUCT_PURCHASE = "product_purchase"
NO_ACCESS_NOTE = "WARNING: No active subscription at time of fulfillment"
TIER_MISMATCH_NOTE = "WARNING: Subscription tier does not include this product at time of fulfillment"
MISSING_PRODUCT_NOTE = "WARNING: Paid product no longer exists"

_FULFILLMENT_SEQUENCE: List[OrderStatus] = [
    OrderStatus.PENDING,
    OrderStatus.PAID,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
]


def _build_transitions() -> Dict[OrderStatus, FrozenSet[OrderStatus]]:
    transitions: Dict[OrderStatus, FrozenSet[OrderStatus]] = {}
    for index, current in enumerate(_FULFILLMENT_SEQUENCE):
        forward = set(_FULFILLMENT_SEQUENCE[index + 1 :])
        if current == OrderStatus.DELIVERED:
            forward.add(OrderStatus.REFUNDED)
        else:
            forward.update({OrderStatus.CANCELLED, OrderStatus.REFUNDED})
        transitions[current] = frozenset(forward)
    transitions[OrderStatus.CANCELLED] = frozenset()
    transitions[OrderStatus.REFUNDED] = frozenset()
    return transitions


ORDER_TRANSITIONS = _build_transitions()


def _parse_quantity(raw: Optional[str]) -> int:
    try:
        return max(1, int(raw or 1))
    except (TypeError, ValueError):
        return 1


@dataclass(slots=True)
class OrderFulfillmentRecorder:
    """Creates orders from completed one-time checkouts.

    Access is re-verified when the payment lands rather than trusted from checkout time.
    Stock only moves here, once per payment reference.
    """

    repository: BillingRepository
    provider: BillingProvider
    ledger: AccessLedger
    event_logger: BillingEventLogger
    config: BillingConfig

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def start_product_checkout(
        self,
        account_id: str,
        *,
        product_id: str,
        vendor_slug: str,
        address_id: str,
        quantity: int = 1,
    ) -> CheckoutRedirect:
        if quantity < 1:
            raise BillingRequestError(code="invalid_quantity", message="Quantity must be at least 1")

        address = self.repository.get_address(address_id)
        if address is None or address.account_id != account_id:
            raise BillingNotFoundError(code="address_not_found", message="Address not found")

        product = self.repository.get_product(product_id)
        vendor = self.repository.get_vendor_by_slug(vendor_slug)
        if product is None or not product.is_active or vendor is None or vendor.vendor_id != product.vendor_id:
            raise BillingNotFoundError(code="product_not_found", message="Product not found")
        if not vendor.is_approved:
            raise BillingRequestError(code="vendor_unavailable", message="Vendor not available")

        if not self.ledger.active_entries(account_id, vendor.vendor_id):
            raise BillingForbiddenError(
                code="subscription_required",
                message="An active subscription is required to purchase this product",
            )
        if not self.ledger.can_access_product(account_id, product):
            raise BillingForbiddenError(
                code="tier_required",
                message="Your subscription tier does not include this product",
            )
        if product.is_limited and product.stock_quantity < quantity:
            raise BillingRequestError(code="out_of_stock", message="Not enough stock available")
        if not product.provider_product_ref or not product.provider_price_ref:
            raise BillingRequestError(code="product_unavailable", message="Product is not available for purchase")

        price_ref = self._usable_product_price(product)
        account = self.repository.get_account(account_id)
        metadata = {
            "type": PRODUCT_PURCHASE,
            "account_id": account_id,
            "product_id": product.product_id,
            "vendor_id": vendor.vendor_id,
            "address_id": address.address_id,
            "quantity": str(quantity),
        }
        session = self.provider.create_checkout_session(
            mode=CheckoutMode.PAYMENT,
            customer_ref=account.provider_customer_ref if account else None,
            price_ref=price_ref,
            quantity=quantity,
            metadata=metadata,
            collect_shipping=True,
            success_url=self.config.product_success_url(vendor.slug, product.product_id),
            cancel_url=self.config.product_cancel_url(vendor.slug, product.product_id),
        )
        if not session.url:
            raise ProviderTerminalError(code="checkout_unavailable", message="Checkout session has no redirect URL")
        logger.info("Opened product checkout %s for account %s product %s", session.session_id, account_id, product_id)
        return CheckoutRedirect(url=session.url, session_id=session.session_id)

    def _usable_product_price(self, product: Product) -> str:
        provider_product = self.provider.retrieve_product(product.provider_product_ref)
        if not provider_product.active:
            self.provider.activate_product(product.provider_product_ref)
            logger.info("Reactivated provider product %s", product.provider_product_ref)

        price_ref, replaced = ensure_active_price(
            self.provider,
            product.provider_price_ref,
            product_ref=product.provider_product_ref,
            unit_amount=product.price_cents,
            currency=product.currency,
            nickname=product.name,
        )
        if replaced:
            self.repository.save_product(product.model_copy(update={"provider_price_ref": price_ref}))
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.PRICE_REPLACED,
                    subject_id=product.product_id,
                    metadata={"previous_price_ref": product.provider_price_ref or "", "price_ref": price_ref},
                )
            )
        return price_ref

    def record_purchase(self, session: ProviderCheckoutSession) -> Optional[OrderRecordResult]:
        """Record the order for a completed payment checkout.

        Returns ``None`` when the session cannot be attributed to a buyer and product. A
        paid session whose product is gone is flagged for review instead of recorded.
        """

        metadata = session.metadata
        account_id = metadata.get("account_id")
        product_id = metadata.get("product_id")
        if not account_id or not product_id:
            logger.warning("Checkout session %s is missing purchase metadata", session.session_id)
            return None

        payment_ref = session.payment_intent_ref or session.session_id
        existing = self.repository.get_order_by_payment_ref(payment_ref)
        if existing is not None:
            logger.info("Order for payment %s already recorded", payment_ref)
            return OrderRecordResult(order=existing, created=False)

        product = self.repository.get_product(product_id)
        if product is None:
            logger.error("Product %s for paid checkout %s not found", product_id, session.session_id)
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.ORDER_FLAGGED_FOR_REVIEW,
                    subject_id=session.session_id,
                    actor_id=account_id,
                    metadata={
                        "reason": MISSING_PRODUCT_NOTE,
                        "product_id": product_id,
                        "payment_ref": payment_ref,
                        "amount_total": str(session.amount_total or 0),
                    },
                )
            )
            return None

        quantity = _parse_quantity(metadata.get("quantity"))
        entries = self.ledger.active_entries(account_id, product.vendor_id)
        entry = self._granting_entry(entries, product)
        notes: Optional[str] = None
        if not entries:
            notes = NO_ACCESS_NOTE
        elif entry is None:
            notes = TIER_MISMATCH_NOTE

        tier_entry = entry or (entries[0] if entries else self.ledger.current_access(account_id, product.vendor_id))
        tier = self.repository.get_tier(tier_entry.tier_id) if tier_entry else None

        order = Order(
            order_id=f"ord_{uuid4().hex}",
            account_id=account_id,
            vendor_id=product.vendor_id,
            status=OrderStatus.PAID,
            total_cents=session.amount_total if session.amount_total is not None else product.price_cents * quantity,
            currency=(session.currency or product.currency).lower(),
            provider_payment_ref=payment_ref,
            subscription_tier_id=tier.tier_id if tier else None,
            subscription_tier_name=tier.name if tier else None,
            shipping_address_id=self._resolve_address(account_id, metadata.get("address_id"), session.shipping),
            is_pre_order=product.is_pre_order,
            pre_order_ship_date=product.pre_order_ship_date,
            notes=notes,
            requires_review=notes is not None,
            items=[OrderItem(product_id=product.product_id, quantity=quantity, price_cents=product.price_cents)],
            created_at=self._now(),
            updated_at=self._now(),
        )
        result = self.repository.record_order(order, stock_decrement=quantity if product.is_limited else 0)
        if not result.created:
            logger.info("Order for payment %s recorded concurrently", payment_ref)
            return result

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.ORDER_RECORDED,
                subject_id=result.order.order_id,
                actor_id=account_id,
                metadata={"product_id": product.product_id, "quantity": str(quantity)},
            )
        )
        if result.order.requires_review:
            logger.error(
                "Order %s paid without valid access (account %s, product %s): %s",
                result.order.order_id,
                account_id,
                product.product_id,
                notes,
            )
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.ORDER_FLAGGED_FOR_REVIEW,
                    subject_id=result.order.order_id,
                    actor_id=account_id,
                    metadata={"reason": notes or ""},
                )
            )
        return result

    @staticmethod
    def _granting_entry(entries: List[AccessLedgerEntry], product: Product) -> Optional[AccessLedgerEntry]:
        if not entries:
            return None
        if not product.is_tier_restricted:
            return entries[0]
        allowed = set(product.allowed_tier_ids)
        return next((entry for entry in entries if entry.tier_id in allowed), None)

    def _resolve_address(
        self,
        account_id: str,
        address_id: Optional[str],
        shipping: Optional[ShippingDetails],
    ) -> Optional[str]:
        if address_id:
            address = self.repository.get_address(address_id)
            if address is not None and address.account_id == account_id:
                return address.address_id
        if shipping is None or not shipping.line1:
            return None

        match = self.repository.find_matching_address(account_id, shipping)
        if match is not None:
            return match.address_id
        created = self.repository.create_address(
            Address(
                address_id=f"addr_{uuid4().hex}",
                account_id=account_id,
                name=shipping.name or "Shipping address",
                line1=shipping.line1,
                line2=shipping.line2,
                city=shipping.city or "",
                state=shipping.state or "",
                postal_code=shipping.postal_code or "",
                country=shipping.country or "US",
                is_default=self.repository.count_addresses(account_id) == 0,
            )
        )
        return created.address_id

    def update_order_status(self, actor_account_id: str, order_id: str, status: OrderStatus) -> Order:
        order = self.repository.get_order(order_id)
        if order is None:
            raise BillingNotFoundError(code="order_not_found", message="Order not found")
        vendor = self.repository.get_vendor(order.vendor_id)
        if vendor is None or vendor.owner_account_id != actor_account_id:
            raise BillingForbiddenError(code="forbidden", message="Not allowed to update this order")
        if status == order.status:
            return order
        if status not in ORDER_TRANSITIONS[order.status]:
            raise BillingRequestError(
                code="invalid_status_transition",
                message=f"Cannot change order status from {order.status.value} to {status.value}",
            )
        updated = self.repository.update_order_status(order_id, status)
        if updated is None:
            raise BillingNotFoundError(code="order_not_found", message="Order not found")
        logger.info("Order %s moved from %s to %s", order_id, order.status.value, status.value)
        return updated


__all__ = ["ORDER_TRANSITIONS", "OrderFulfillmentRecorder", "PRODUCT_PURCHASE"]
