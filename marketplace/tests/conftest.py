"""Shared in-memory fakes for billing tests."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from marketplace.app.billing import (
    AccessLedgerEntry,
    Account,
    BillingAuditEvent,
    BillingService,
    BillingWebhookEvent,
    LedgerStatus,
    Order,
    OrderStatus,
    Product,
    Vendor,
    VendorStatus,
    VendorTier,
)
from marketplace.app.billing.errors import ProviderTerminalError, WebhookSignatureError
from marketplace.app.billing.models import (
    Address,
    BillingEventLogger,
    CheckoutMode,
    OrderRecordResult,
    ProviderCheckoutSession,
    ProviderPrice,
    ProviderProduct,
    ProviderSubscription,
    ShippingDetails,
)
from marketplace.app.billing.provider import BillingProvider, webhook_event_from_payload
from marketplace.app.billing.repository import BillingRepository
from marketplace.config import BillingConfig, PlatformRoles

VALID_SIGNATURE = "t=1,v1=valid"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryBillingRepository(BillingRepository):
    def __init__(self) -> None:
        self.accounts: Dict[str, Account] = {}
        self.vendors: Dict[str, Vendor] = {}
        self.tiers: Dict[str, VendorTier] = {}
        self.entries: Dict[str, AccessLedgerEntry] = {}
        self.products: Dict[str, Product] = {}
        self.addresses: Dict[str, Address] = {}
        self.orders: Dict[str, Order] = {}
        self.webhook_events: set[str] = set()

    def get_account(self, account_id: str) -> Optional[Account]:
        return self.accounts.get(account_id)

    def set_provider_customer_ref(self, account_id: str, customer_ref: str) -> Account:
        updated = self.accounts[account_id].model_copy(update={"provider_customer_ref": customer_ref})
        self.accounts[account_id] = updated
        return updated

    def get_vendor(self, vendor_id: str) -> Optional[Vendor]:
        return self.vendors.get(vendor_id)

    def get_vendor_by_slug(self, slug: str) -> Optional[Vendor]:
        return next((vendor for vendor in self.vendors.values() if vendor.slug == slug), None)

    def get_vendor_by_owner(self, account_id: str) -> Optional[Vendor]:
        return next((vendor for vendor in self.vendors.values() if vendor.owner_account_id == account_id), None)

    def get_tier(self, tier_id: str) -> Optional[VendorTier]:
        return self.tiers.get(tier_id)

    def list_tiers(self, vendor_id: str) -> Sequence[VendorTier]:
        return sorted(
            (tier for tier in self.tiers.values() if tier.vendor_id == vendor_id),
            key=lambda tier: tier.sort_order,
        )

    def find_tier_by_name(self, vendor_id: str, name: str) -> Optional[VendorTier]:
        return next(
            (tier for tier in self.tiers.values() if tier.vendor_id == vendor_id and tier.name == name),
            None,
        )

    def next_tier_sort_order(self, vendor_id: str) -> int:
        orders = [tier.sort_order for tier in self.tiers.values() if tier.vendor_id == vendor_id]
        return max(orders, default=0) + 1

    def save_tier(self, tier: VendorTier) -> VendorTier:
        self.tiers[tier.tier_id] = tier
        return tier

    def delete_tier(self, tier_id: str) -> bool:
        if any(entry.tier_id == tier_id for entry in self.entries.values()):
            return False
        return self.tiers.pop(tier_id, None) is not None

    def count_ledger_entries(self, tier_id: str, *, active_at: Optional[datetime] = None) -> int:
        return sum(
            1
            for entry in self.entries.values()
            if entry.tier_id == tier_id and (active_at is None or entry.access_expires_at > active_at)
        )

    def get_ledger_entry(self, entry_id: str) -> Optional[AccessLedgerEntry]:
        return self.entries.get(entry_id)

    def get_ledger_entry_for_tier(self, account_id: str, tier_id: str) -> Optional[AccessLedgerEntry]:
        return next(
            (e for e in self.entries.values() if e.account_id == account_id and e.tier_id == tier_id),
            None,
        )

    def find_ledger_entry_by_billing_ref(self, billing_subscription_ref: str) -> Optional[AccessLedgerEntry]:
        matches = [e for e in self.entries.values() if e.billing_subscription_ref == billing_subscription_ref]
        return max(matches, key=lambda e: e.updated_at) if matches else None

    def list_ledger_entries(self, account_id: str, *, vendor_id: Optional[str] = None) -> Sequence[AccessLedgerEntry]:
        return [
            e
            for e in self.entries.values()
            if e.account_id == account_id and (vendor_id is None or e.vendor_id == vendor_id)
        ]

    def upsert_ledger_entry(self, entry: AccessLedgerEntry) -> AccessLedgerEntry:
        existing = self.get_ledger_entry_for_tier(entry.account_id, entry.tier_id)
        if existing is not None:
            synced = [value for value in (existing.provider_synced_at, entry.provider_synced_at) if value]
            entry = entry.model_copy(
                update={
                    "entry_id": existing.entry_id,
                    "created_at": existing.created_at,
                    "provider_synced_at": max(synced) if synced else None,
                }
            )
        self.entries[entry.entry_id] = entry
        return entry

    def save_ledger_entry(self, entry: AccessLedgerEntry) -> AccessLedgerEntry:
        if entry.entry_id not in self.entries:
            raise LookupError("Ledger entry not found")
        self.entries[entry.entry_id] = entry
        return entry

    def reassign_ledger_entry_tier(self, entry_id: str, tier_id: str) -> AccessLedgerEntry:
        current = self.entries[entry_id]
        existing = self.get_ledger_entry_for_tier(current.account_id, tier_id)
        now = utcnow()
        if existing is None:
            moved = current.model_copy(update={"tier_id": tier_id, "updated_at": now})
            self.entries[entry_id] = moved
            return moved
        survivor = existing.model_copy(
            update={
                "status": current.status,
                "billing_subscription_ref": current.billing_subscription_ref,
                "current_period_start": current.current_period_start,
                "current_period_end": current.current_period_end,
                "access_expires_at": current.access_expires_at,
                "cancel_requested_at": current.cancel_requested_at,
                "cancelled_at": current.cancelled_at,
                "provider_synced_at": current.provider_synced_at,
                "updated_at": now,
            }
        )
        self.entries[survivor.entry_id] = survivor
        self.entries[entry_id] = current.model_copy(
            update={
                "billing_subscription_ref": None,
                "status": LedgerStatus.CANCELLED,
                "cancelled_at": current.cancelled_at or now,
                "updated_at": now,
            }
        )
        return survivor

    def get_product(self, product_id: str) -> Optional[Product]:
        return self.products.get(product_id)

    def save_product(self, product: Product) -> Product:
        self.products[product.product_id] = product
        return product

    def get_address(self, address_id: str) -> Optional[Address]:
        return self.addresses.get(address_id)

    def find_matching_address(self, account_id: str, shipping: ShippingDetails) -> Optional[Address]:
        for address in self.addresses.values():
            if (
                address.account_id == account_id
                and address.line1 == shipping.line1
                and address.city == shipping.city
                and address.postal_code == shipping.postal_code
            ):
                return address
        return None

    def create_address(self, address: Address) -> Address:
        self.addresses[address.address_id] = address
        return address

    def count_addresses(self, account_id: str) -> int:
        return sum(1 for address in self.addresses.values() if address.account_id == account_id)

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.orders.get(order_id)

    def get_order_by_payment_ref(self, provider_payment_ref: str) -> Optional[Order]:
        return next((o for o in self.orders.values() if o.provider_payment_ref == provider_payment_ref), None)

    def record_order(self, order: Order, *, stock_decrement: int = 0) -> OrderRecordResult:
        existing = self.get_order_by_payment_ref(order.provider_payment_ref)
        if existing is not None:
            return OrderRecordResult(order=existing, created=False)
        self.orders[order.order_id] = order
        if stock_decrement > 0:
            for item in order.items:
                product = self.products.get(item.product_id)
                if product is not None and product.is_limited:
                    remaining = max(product.stock_quantity - min(stock_decrement, item.quantity), 0)
                    self.products[product.product_id] = product.model_copy(update={"stock_quantity": remaining})
        return OrderRecordResult(order=order, created=True)

    def update_order_status(self, order_id: str, status: OrderStatus) -> Optional[Order]:
        order = self.orders.get(order_id)
        if order is None:
            return None
        updated = order.model_copy(update={"status": status, "updated_at": utcnow()})
        self.orders[order_id] = updated
        return updated

    def has_processed_webhook_event(self, event_id: str) -> bool:
        return event_id in self.webhook_events

    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        if event.event_id in self.webhook_events:
            return False
        self.webhook_events.add(event.event_id)
        return True


class FakeBillingProvider(BillingProvider):
    def __init__(self) -> None:
        self.calls: List[Tuple[str, object]] = []
        self.checkout_sessions: List[Dict[str, object]] = []
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.prices: Dict[str, ProviderPrice] = {}
        self.products: Dict[str, ProviderProduct] = {}
        self.fail_checkout: Optional[Exception] = None

    def create_customer(self, *, account_id: str, email: Optional[str], name: Optional[str]) -> str:
        self.calls.append(("create_customer", account_id))
        return f"cus_{account_id}"

    def create_checkout_session(
        self,
        *,
        mode: CheckoutMode,
        customer_ref: Optional[str],
        price_ref: str,
        quantity: int,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        subscription_metadata: Optional[Dict[str, str]] = None,
        collect_shipping: bool = False,
    ) -> ProviderCheckoutSession:
        self.calls.append(("create_checkout_session", price_ref))
        if self.fail_checkout is not None:
            raise self.fail_checkout
        session_id = f"cs_{len(self.checkout_sessions) + 1}"
        self.checkout_sessions.append(
            {
                "id": session_id,
                "mode": mode,
                "customer_ref": customer_ref,
                "price_ref": price_ref,
                "quantity": quantity,
                "metadata": dict(metadata),
                "subscription_metadata": dict(subscription_metadata or {}),
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )
        return ProviderCheckoutSession(
            session_id=session_id,
            url=f"https://checkout.test/{session_id}",
            mode=mode,
            metadata=dict(metadata),
        )

    def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        self.calls.append(("retrieve_subscription", subscription_ref))
        try:
            return self.subscriptions[subscription_ref]
        except KeyError:
            raise ProviderTerminalError(code="provider_request_rejected", message="No such subscription")

    def update_subscription_price(
        self,
        subscription_ref: str,
        *,
        item_ref: str,
        price_ref: str,
        metadata: Dict[str, str],
        prorate: bool,
    ) -> ProviderSubscription:
        self.calls.append(("update_subscription_price", (subscription_ref, price_ref, prorate)))
        updated = self.subscriptions[subscription_ref].model_copy(update={"price_ref": price_ref, "metadata": metadata})
        self.subscriptions[subscription_ref] = updated
        return updated

    def cancel_subscription(self, subscription_ref: str, *, prorate: bool) -> ProviderSubscription:
        self.calls.append(("cancel_subscription", (subscription_ref, prorate)))
        updated = self.subscriptions[subscription_ref].model_copy(update={"status": "canceled"})
        self.subscriptions[subscription_ref] = updated
        return updated

    def schedule_cancellation(self, subscription_ref: str) -> ProviderSubscription:
        self.calls.append(("schedule_cancellation", subscription_ref))
        updated = self.subscriptions[subscription_ref].model_copy(update={"cancel_at_period_end": True})
        self.subscriptions[subscription_ref] = updated
        return updated

    def create_product(self, *, name: str, metadata: Dict[str, str]) -> ProviderProduct:
        product = ProviderProduct(product_ref=f"prod_{len(self.products) + 1}", name=name)
        self.calls.append(("create_product", product.product_ref))
        self.products[product.product_ref] = product
        return product

    def retrieve_product(self, product_ref: str) -> ProviderProduct:
        return self.products[product_ref]

    def activate_product(self, product_ref: str) -> ProviderProduct:
        self.calls.append(("activate_product", product_ref))
        product = self.products[product_ref].model_copy(update={"active": True})
        self.products[product_ref] = product
        return product

    def create_price(
        self,
        *,
        product_ref: str,
        unit_amount: int,
        currency: str,
        recurring_interval: Optional[str] = None,
        nickname: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderPrice:
        price = ProviderPrice(
            price_ref=f"price_new_{len(self.prices) + 1}",
            product_ref=product_ref,
            unit_amount=unit_amount,
            currency=currency,
            recurring_interval=recurring_interval,
        )
        self.calls.append(("create_price", price.price_ref))
        self.prices[price.price_ref] = price
        return price

    def retrieve_price(self, price_ref: str) -> ProviderPrice:
        return self.prices[price_ref]

    def update_price(
        self,
        price_ref: str,
        *,
        nickname: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> ProviderPrice:
        self.calls.append(("update_price", (price_ref, nickname, active)))
        price = self.prices[price_ref]
        if active is not None:
            price = price.model_copy(update={"active": active})
            self.prices[price_ref] = price
        return price

    def construct_event(self, payload: bytes, signature: str) -> BillingWebhookEvent:
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError(code="invalid_signature", message="Invalid signature")
        return webhook_event_from_payload(json.loads(payload))

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]


class FakeEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: list[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)

    def types(self) -> list:
        return [event.event_type for event in self.events]


def make_entry(
    *,
    entry_id: str = "sub_1",
    account_id: str = "acct_1",
    tier_id: str = "tier_basic",
    vendor_id: str = "ven_1",
    billing_ref: Optional[str] = "stripe_sub_1",
    expires_in: timedelta = timedelta(days=20),
    status: LedgerStatus = LedgerStatus.ACTIVE,
    **extra,
) -> AccessLedgerEntry:
    expires_at = utcnow() + expires_in
    return AccessLedgerEntry(
        entry_id=entry_id,
        account_id=account_id,
        tier_id=tier_id,
        vendor_id=vendor_id,
        status=status,
        billing_subscription_ref=billing_ref,
        current_period_start=expires_at - timedelta(days=30),
        current_period_end=expires_at,
        access_expires_at=expires_at,
        **extra,
    )


def webhook_event(event_id: str, event_type: str, data: dict, *, created_at: Optional[datetime] = None) -> BillingWebhookEvent:
    return BillingWebhookEvent(
        event_id=event_id,
        event_type=event_type,
        created_at=created_at or utcnow(),
        data=data,
    )


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        stripe_secret_key="sk_test",
        stripe_webhook_secret="whsec_test",
        app_base_url="https://market.test",
        currency="usd",
        tier_min_price_cents=100,
        platform_roles=PlatformRoles.from_ids(["acct_admin"]),
    )


@pytest.fixture
def billing_components(billing_config):
    repository = InMemoryBillingRepository()
    provider = FakeBillingProvider()
    event_logger = FakeEventLogger()

    repository.accounts["acct_1"] = Account(account_id="acct_1", email="fan@example.com", name="Fan")
    repository.accounts["acct_owner"] = Account(account_id="acct_owner", email="owner@example.com")
    repository.vendors["ven_1"] = Vendor(
        vendor_id="ven_1",
        owner_account_id="acct_owner",
        slug="studio",
        store_name="Studio",
        status=VendorStatus.APPROVED,
    )
    repository.vendors["ven_2"] = Vendor(
        vendor_id="ven_2",
        owner_account_id="acct_other",
        slug="other",
        store_name="Other",
        status=VendorStatus.APPROVED,
    )
    for tier_id, vendor_id, name, price, order in (
        ("tier_basic", "ven_1", "Basic", 500, 1),
        ("tier_pro", "ven_1", "Pro", 1500, 2),
        ("tier_elsewhere", "ven_2", "Elsewhere", 900, 1),
    ):
        price_ref = f"price_{tier_id}"
        product_ref = f"prod_{tier_id}"
        repository.tiers[tier_id] = VendorTier(
            tier_id=tier_id,
            vendor_id=vendor_id,
            name=name,
            price_cents=price,
            provider_price_ref=price_ref,
            provider_product_ref=product_ref,
            sort_order=order,
        )
        provider.prices[price_ref] = ProviderPrice(price_ref=price_ref, product_ref=product_ref, unit_amount=price)
        provider.products[product_ref] = ProviderProduct(product_ref=product_ref, name=name)

    service = BillingService.build(
        repository=repository,
        provider=provider,
        event_logger=event_logger,
        config=billing_config,
    )
    return SimpleNamespace(
        repository=repository,
        provider=provider,
        event_logger=event_logger,
        service=service,
        config=billing_config,
    )
