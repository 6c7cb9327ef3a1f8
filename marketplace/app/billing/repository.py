"""Persistence layer for billing domain objects."""
from __future__ import annotations

from contextlib import contextmanager
import json
from datetime import datetime
from typing import Iterable, Optional, Protocol, Sequence
from uuid import uuid4

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .models import (
    Account,
    AccessLedgerEntry,
    Address,
    BillingWebhookEvent,
    LedgerStatus,
    Order,
    OrderItem,
    OrderRecordResult,
    OrderStatus,
    Product,
    ShippingDetails,
    Vendor,
    VendorStatus,
    VendorTier,
)


class BillingRepository(Protocol):
    """Persistence operations required by the billing core.

    Writes that must survive duplicate concurrent webhook delivery are atomic with
    respect to their natural key: ledger entries on (account, tier), orders on the
    provider payment reference.
    """

    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def set_provider_customer_ref(self, account_id: str, customer_ref: str) -> Account:
        ...

    def get_vendor(self, vendor_id: str) -> Optional[Vendor]:
        ...

    def get_vendor_by_slug(self, slug: str) -> Optional[Vendor]:
        ...

    def get_vendor_by_owner(self, account_id: str) -> Optional[Vendor]:
        ...

    def get_tier(self, tier_id: str) -> Optional[VendorTier]:
        ...

    def list_tiers(self, vendor_id: str) -> Sequence[VendorTier]:
        ...

    def find_tier_by_name(self, vendor_id: str, name: str) -> Optional[VendorTier]:
        ...

    def next_tier_sort_order(self, vendor_id: str) -> int:
        ...

    def save_tier(self, tier: VendorTier) -> VendorTier:
        ...

    def delete_tier(self, tier_id: str) -> bool:
        ...

    def count_ledger_entries(self, tier_id: str, *, active_at: Optional[datetime] = None) -> int:
        """Count entries for a tier; with ``active_at`` only those with access at that instant."""

    def get_ledger_entry(self, entry_id: str) -> Optional[AccessLedgerEntry]:
        ...

    def get_ledger_entry_for_tier(self, account_id: str, tier_id: str) -> Optional[AccessLedgerEntry]:
        ...

    def find_ledger_entry_by_billing_ref(self, billing_subscription_ref: str) -> Optional[AccessLedgerEntry]:
        ...

    def list_ledger_entries(
        self,
        account_id: str,
        *,
        vendor_id: Optional[str] = None,
    ) -> Sequence[AccessLedgerEntry]:
        ...

    def upsert_ledger_entry(self, entry: AccessLedgerEntry) -> AccessLedgerEntry:
        """Insert or refresh the entry keyed by (account, tier)."""

    def save_ledger_entry(self, entry: AccessLedgerEntry) -> AccessLedgerEntry:
        ...

    def reassign_ledger_entry_tier(self, entry_id: str, tier_id: str) -> AccessLedgerEntry:
        """Move an entry to another tier of the same vendor.

        When the account already holds an entry for ``tier_id`` that entry takes over
        the billing state and the moved entry is retired as CANCELLED.
        """

    def get_product(self, product_id: str) -> Optional[Product]:
        ...

    def save_product(self, product: Product) -> Product:
        ...

    def get_address(self, address_id: str) -> Optional[Address]:
        ...

    def find_matching_address(self, account_id: str, shipping: ShippingDetails) -> Optional[Address]:
        ...

    def create_address(self, address: Address) -> Address:
        ...

    def count_addresses(self, account_id: str) -> int:
        ...

    def get_order(self, order_id: str) -> Optional[Order]:
        ...

    def get_order_by_payment_ref(self, provider_payment_ref: str) -> Optional[Order]:
        ...

    def record_order(self, order: Order, *, stock_decrement: int = 0) -> OrderRecordResult:
        """Create the order once per payment reference, decrementing stock on creation only."""

    def update_order_status(self, order_id: str, status: OrderStatus) -> Optional[Order]:
        ...

    def has_processed_webhook_event(self, event_id: str) -> bool:
        ...

    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        ...


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


_ENTRY_SELECT = """
    SELECT s.*, t.vendor_id
    FROM subscriptions AS s
    JOIN subscription_tiers AS t ON t.id = s.tier_id
"""

_TIER_SELECT = """
    SELECT *
    FROM subscription_tiers
"""

_PRODUCT_SELECT = """
    SELECT p.*,
           COALESCE(
               ARRAY(SELECT pta.tier_id FROM product_tier_access AS pta WHERE pta.product_id = p.id),
               ARRAY[]::text[]
           ) AS allowed_tier_ids
    FROM products AS p
"""


def _row_to_account(row: dict) -> Account:
    return Account(
        account_id=row["id"],
        email=row.get("email"),
        name=row.get("name"),
        provider_customer_ref=row.get("provider_customer_ref"),
    )


def _row_to_vendor(row: dict) -> Vendor:
    return Vendor(
        vendor_id=row["id"],
        owner_account_id=row["owner_account_id"],
        slug=row["slug"],
        store_name=row["store_name"],
        status=VendorStatus(row["status"]),
    )


def _row_to_tier(row: dict) -> VendorTier:
    return VendorTier(
        tier_id=row["id"],
        vendor_id=row["vendor_id"],
        name=row["name"],
        description=row.get("description"),
        price_cents=int(row["price_cents"]),
        currency=row.get("currency") or "usd",
        benefits=list(row.get("benefits") or []),
        is_active=bool(row["is_active"]),
        provider_price_ref=row.get("provider_price_ref"),
        provider_product_ref=row.get("provider_product_ref"),
        sort_order=int(row.get("sort_order") or 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_entry(row: dict) -> AccessLedgerEntry:
    return AccessLedgerEntry(
        entry_id=row["id"],
        account_id=row["account_id"],
        tier_id=row["tier_id"],
        vendor_id=row["vendor_id"],
        status=LedgerStatus(row["status"]),
        billing_subscription_ref=row.get("billing_subscription_ref"),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        access_expires_at=row["access_expires_at"],
        cancel_requested_at=row.get("cancel_requested_at"),
        cancelled_at=row.get("cancelled_at"),
        provider_synced_at=row.get("provider_synced_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_product(row: dict) -> Product:
    return Product(
        product_id=row["id"],
        vendor_id=row["vendor_id"],
        name=row["name"],
        price_cents=int(row["price_cents"]),
        currency=row.get("currency") or "usd",
        is_active=bool(row["is_active"]),
        is_limited=bool(row["is_limited"]),
        stock_quantity=max(0, int(row.get("stock_quantity") or 0)),
        allowed_tier_ids=list(row.get("allowed_tier_ids") or []),
        provider_product_ref=row.get("provider_product_ref"),
        provider_price_ref=row.get("provider_price_ref"),
        is_pre_order=bool(row.get("is_pre_order")),
        pre_order_ship_date=row.get("pre_order_ship_date"),
    )


def _row_to_address(row: dict) -> Address:
    return Address(
        address_id=row["id"],
        account_id=row["account_id"],
        name=row["name"],
        label=row.get("label"),
        line1=row["line1"],
        line2=row.get("line2"),
        city=row["city"],
        state=row["state"],
        postal_code=row["postal_code"],
        country=row["country"],
        is_default=bool(row.get("is_default")),
    )


def _row_to_order(row: dict, items: Sequence[dict]) -> Order:
    return Order(
        order_id=row["id"],
        account_id=row["account_id"],
        vendor_id=row["vendor_id"],
        status=OrderStatus(row["status"]),
        total_cents=int(row["total_cents"]),
        currency=row.get("currency") or "usd",
        provider_payment_ref=row["provider_payment_ref"],
        subscription_tier_id=row.get("subscription_tier_id"),
        subscription_tier_name=row.get("subscription_tier_name"),
        shipping_address_id=row.get("shipping_address_id"),
        is_pre_order=bool(row.get("is_pre_order")),
        pre_order_ship_date=row.get("pre_order_ship_date"),
        notes=row.get("notes"),
        requires_review=bool(row.get("requires_review")),
        items=[
            OrderItem(
                product_id=item["product_id"],
                quantity=int(item["quantity"]),
                price_cents=int(item["price_cents"]),
            )
            for item in items
        ],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresBillingRepository:
    """Concrete repository persisting billing models in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    # Accounts and vendors

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM accounts WHERE id = %s LIMIT 1", (account_id,))
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def set_provider_customer_ref(self, account_id: str, customer_ref: str) -> Account:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE accounts
                SET provider_customer_ref = %s, updated_at = NOW()
                WHERE id = %s
                RETURNING *
                """,
                (customer_ref, account_id),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to store provider customer reference")
            return _row_to_account(row)

    def get_vendor(self, vendor_id: str) -> Optional[Vendor]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM vendors WHERE id = %s LIMIT 1", (vendor_id,))
            row = cursor.fetchone()
            return _row_to_vendor(row) if row else None

    def get_vendor_by_slug(self, slug: str) -> Optional[Vendor]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM vendors WHERE slug = %s LIMIT 1", (slug,))
            row = cursor.fetchone()
            return _row_to_vendor(row) if row else None

    def get_vendor_by_owner(self, account_id: str) -> Optional[Vendor]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM vendors WHERE owner_account_id = %s LIMIT 1", (account_id,))
            row = cursor.fetchone()
            return _row_to_vendor(row) if row else None

    # Tiers

    def get_tier(self, tier_id: str) -> Optional[VendorTier]:
        with self._cursor() as cursor:
            cursor.execute(_TIER_SELECT + " WHERE id = %s LIMIT 1", (tier_id,))
            row = cursor.fetchone()
            return _row_to_tier(row) if row else None

    def list_tiers(self, vendor_id: str) -> list[VendorTier]:
        with self._cursor() as cursor:
            cursor.execute(_TIER_SELECT + " WHERE vendor_id = %s ORDER BY sort_order ASC", (vendor_id,))
            return [_row_to_tier(row) for row in cursor.fetchall() or []]

    def find_tier_by_name(self, vendor_id: str, name: str) -> Optional[VendorTier]:
        with self._cursor() as cursor:
            cursor.execute(_TIER_SELECT + " WHERE vendor_id = %s AND name = %s LIMIT 1", (vendor_id, name))
            row = cursor.fetchone()
            return _row_to_tier(row) if row else None

    def next_tier_sort_order(self, vendor_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT COALESCE(MAX(sort_order), 0) + 1 AS next_order FROM subscription_tiers WHERE vendor_id = %s",
                (vendor_id,),
            )
            row = cursor.fetchone()
            return int(row["next_order"]) if row else 1

    def save_tier(self, tier: VendorTier) -> VendorTier:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscription_tiers (
                    id,
                    vendor_id,
                    name,
                    description,
                    price_cents,
                    currency,
                    benefits,
                    is_active,
                    provider_price_ref,
                    provider_product_ref,
                    sort_order
                )
                VALUES (%(id)s, %(vendor_id)s, %(name)s, %(description)s, %(price_cents)s,
                        %(currency)s, %(benefits)s, %(is_active)s, %(provider_price_ref)s,
                        %(provider_product_ref)s, %(sort_order)s)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    price_cents = EXCLUDED.price_cents,
                    currency = EXCLUDED.currency,
                    benefits = EXCLUDED.benefits,
                    is_active = EXCLUDED.is_active,
                    provider_price_ref = EXCLUDED.provider_price_ref,
                    provider_product_ref = EXCLUDED.provider_product_ref,
                    sort_order = EXCLUDED.sort_order,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "id": tier.tier_id,
                    "vendor_id": tier.vendor_id,
                    "name": tier.name,
                    "description": tier.description,
                    "price_cents": tier.price_cents,
                    "currency": tier.currency,
                    "benefits": list(tier.benefits),
                    "is_active": tier.is_active,
                    "provider_price_ref": tier.provider_price_ref,
                    "provider_product_ref": tier.provider_product_ref,
                    "sort_order": tier.sort_order,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist tier")
            return _row_to_tier(row)

    def delete_tier(self, tier_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                DELETE FROM subscription_tiers
                WHERE id = %s
                  AND NOT EXISTS (SELECT 1 FROM subscriptions WHERE tier_id = %s)
                """,
                (tier_id, tier_id),
            )
            return cursor.rowcount > 0

    def count_ledger_entries(self, tier_id: str, *, active_at: Optional[datetime] = None) -> int:
        with self._cursor() as cursor:
            if active_at is None:
                cursor.execute("SELECT COUNT(*) AS total FROM subscriptions WHERE tier_id = %s", (tier_id,))
            else:
                cursor.execute(
                    """
                    SELECT COUNT(*) AS total
                    FROM subscriptions
                    WHERE tier_id = %s AND access_expires_at > %s
                    """,
                    (tier_id, active_at),
                )
            row = cursor.fetchone()
            return int(row["total"]) if row else 0

    # Access ledger

    def _fetch_entry(self, cursor: PgCursor, entry_id: str) -> Optional[AccessLedgerEntry]:
        cursor.execute(_ENTRY_SELECT + " WHERE s.id = %s LIMIT 1", (entry_id,))
        row = cursor.fetchone()
        return _row_to_entry(row) if row else None

    def get_ledger_entry(self, entry_id: str) -> Optional[AccessLedgerEntry]:
        with self._cursor() as cursor:
            return self._fetch_entry(cursor, entry_id)

    def get_ledger_entry_for_tier(self, account_id: str, tier_id: str) -> Optional[AccessLedgerEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                _ENTRY_SELECT + " WHERE s.account_id = %s AND s.tier_id = %s LIMIT 1",
                (account_id, tier_id),
            )
            row = cursor.fetchone()
            return _row_to_entry(row) if row else None

    def find_ledger_entry_by_billing_ref(self, billing_subscription_ref: str) -> Optional[AccessLedgerEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                _ENTRY_SELECT + " WHERE s.billing_subscription_ref = %s ORDER BY s.updated_at DESC LIMIT 1",
                (billing_subscription_ref,),
            )
            row = cursor.fetchone()
            return _row_to_entry(row) if row else None

    def list_ledger_entries(
        self,
        account_id: str,
        *,
        vendor_id: Optional[str] = None,
    ) -> list[AccessLedgerEntry]:
        with self._cursor() as cursor:
            if vendor_id is None:
                cursor.execute(
                    _ENTRY_SELECT + " WHERE s.account_id = %s ORDER BY s.created_at DESC",
                    (account_id,),
                )
            else:
                cursor.execute(
                    _ENTRY_SELECT + " WHERE s.account_id = %s AND t.vendor_id = %s ORDER BY s.created_at DESC",
                    (account_id, vendor_id),
                )
            return [_row_to_entry(row) for row in cursor.fetchall() or []]

    def upsert_ledger_entry(self, entry: AccessLedgerEntry) -> AccessLedgerEntry:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscriptions (
                    id,
                    account_id,
                    tier_id,
                    status,
                    billing_subscription_ref,
                    current_period_start,
                    current_period_end,
                    access_expires_at,
                    cancel_requested_at,
                    cancelled_at,
                    provider_synced_at
                )
                VALUES (%(id)s, %(account_id)s, %(tier_id)s, %(status)s, %(billing_subscription_ref)s,
                        %(current_period_start)s, %(current_period_end)s, %(access_expires_at)s,
                        %(cancel_requested_at)s, %(cancelled_at)s, %(provider_synced_at)s)
                ON CONFLICT (account_id, tier_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    billing_subscription_ref = EXCLUDED.billing_subscription_ref,
                    current_period_start = EXCLUDED.current_period_start,
                    current_period_end = EXCLUDED.current_period_end,
                    access_expires_at = EXCLUDED.access_expires_at,
                    cancel_requested_at = EXCLUDED.cancel_requested_at,
                    cancelled_at = EXCLUDED.cancelled_at,
                    provider_synced_at = GREATEST(subscriptions.provider_synced_at, EXCLUDED.provider_synced_at),
                    updated_at = NOW()
                RETURNING id
                """,
                self._entry_params(entry),
            )
            row = cursor.fetchone()
            persisted = self._fetch_entry(cursor, row["id"]) if row else None
            if persisted is None:
                raise RuntimeError("Failed to persist ledger entry")
            return persisted

    def save_ledger_entry(self, entry: AccessLedgerEntry) -> AccessLedgerEntry:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscriptions
                SET tier_id = %(tier_id)s,
                    status = %(status)s,
                    billing_subscription_ref = %(billing_subscription_ref)s,
                    current_period_start = %(current_period_start)s,
                    current_period_end = %(current_period_end)s,
                    access_expires_at = %(access_expires_at)s,
                    cancel_requested_at = %(cancel_requested_at)s,
                    cancelled_at = %(cancelled_at)s,
                    provider_synced_at = %(provider_synced_at)s,
                    updated_at = NOW()
                WHERE id = %(id)s
                RETURNING id
                """,
                self._entry_params(entry),
            )
            row = cursor.fetchone()
            persisted = self._fetch_entry(cursor, row["id"]) if row else None
            if persisted is None:
                raise LookupError("Ledger entry not found")
            return persisted

    def reassign_ledger_entry_tier(self, entry_id: str, tier_id: str) -> AccessLedgerEntry:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM subscriptions WHERE id = %s FOR UPDATE", (entry_id,))
            current = cursor.fetchone()
            if not current:
                raise LookupError("Ledger entry not found")

            cursor.execute(
                "SELECT id FROM subscriptions WHERE account_id = %s AND tier_id = %s FOR UPDATE",
                (current["account_id"], tier_id),
            )
            existing = cursor.fetchone()
            if existing is None:
                cursor.execute(
                    "UPDATE subscriptions SET tier_id = %s, updated_at = NOW() WHERE id = %s",
                    (tier_id, entry_id),
                )
                survivor_id = entry_id
            else:
                cursor.execute(
                    """
                    UPDATE subscriptions
                    SET status = %(status)s,
                        billing_subscription_ref = %(billing_subscription_ref)s,
                        current_period_start = %(current_period_start)s,
                        current_period_end = %(current_period_end)s,
                        access_expires_at = %(access_expires_at)s,
                        cancel_requested_at = %(cancel_requested_at)s,
                        cancelled_at = %(cancelled_at)s,
                        provider_synced_at = %(provider_synced_at)s,
                        updated_at = NOW()
                    WHERE id = %(id)s
                    """,
                    {**current, "id": existing["id"]},
                )
                cursor.execute(
                    """
                    UPDATE subscriptions
                    SET billing_subscription_ref = NULL,
                        status = %s,
                        cancelled_at = COALESCE(cancelled_at, NOW()),
                        updated_at = NOW()
                    WHERE id = %s
                    """,
                    (LedgerStatus.CANCELLED.value, entry_id),
                )
                survivor_id = existing["id"]

            persisted = self._fetch_entry(cursor, survivor_id)
            if persisted is None:
                raise RuntimeError("Failed to reassign ledger entry")
            return persisted

    @staticmethod
    def _entry_params(entry: AccessLedgerEntry) -> dict:
        return {
            "id": entry.entry_id,
            "account_id": entry.account_id,
            "tier_id": entry.tier_id,
            "status": entry.status.value,
            "billing_subscription_ref": entry.billing_subscription_ref,
            "current_period_start": entry.current_period_start,
            "current_period_end": entry.current_period_end,
            "access_expires_at": entry.access_expires_at,
            "cancel_requested_at": entry.cancel_requested_at,
            "cancelled_at": entry.cancelled_at,
            "provider_synced_at": entry.provider_synced_at,
        }

    # Products and addresses

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._cursor() as cursor:
            cursor.execute(_PRODUCT_SELECT + " WHERE p.id = %s LIMIT 1", (product_id,))
            row = cursor.fetchone()
            return _row_to_product(row) if row else None

    def save_product(self, product: Product) -> Product:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE products
                SET provider_product_ref = %s,
                    provider_price_ref = %s,
                    is_active = %s,
                    updated_at = NOW()
                WHERE id = %s
                """,
                (product.provider_product_ref, product.provider_price_ref, product.is_active, product.product_id),
            )
            cursor.execute(_PRODUCT_SELECT + " WHERE p.id = %s LIMIT 1", (product.product_id,))
            row = cursor.fetchone()
            if not row:
                raise LookupError("Product not found")
            return _row_to_product(row)

    def get_address(self, address_id: str) -> Optional[Address]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM addresses WHERE id = %s LIMIT 1", (address_id,))
            row = cursor.fetchone()
            return _row_to_address(row) if row else None

    def find_matching_address(self, account_id: str, shipping: ShippingDetails) -> Optional[Address]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM addresses
                WHERE account_id = %s
                  AND line1 = %s
                  AND city = %s
                  AND UPPER(state) = UPPER(%s)
                  AND postal_code = %s
                  AND UPPER(country) = UPPER(%s)
                LIMIT 1
                """,
                (
                    account_id,
                    shipping.line1 or "",
                    shipping.city or "",
                    shipping.state or "",
                    shipping.postal_code or "",
                    shipping.country or "",
                ),
            )
            row = cursor.fetchone()
            return _row_to_address(row) if row else None

    def create_address(self, address: Address) -> Address:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO addresses (
                    id, account_id, name, label, line1, line2, city, state, postal_code, country, is_default
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    address.address_id,
                    address.account_id,
                    address.name,
                    address.label,
                    address.line1,
                    address.line2,
                    address.city,
                    address.state,
                    address.postal_code,
                    address.country,
                    address.is_default,
                ),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist address")
            return _row_to_address(row)

    def count_addresses(self, account_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute("SELECT COUNT(*) AS total FROM addresses WHERE account_id = %s", (account_id,))
            row = cursor.fetchone()
            return int(row["total"]) if row else 0

    # Orders

    def _fetch_order(self, cursor: PgCursor, where: str, value: str) -> Optional[Order]:
        cursor.execute(f"SELECT * FROM orders WHERE {where} = %s LIMIT 1", (value,))
        row = cursor.fetchone()
        if not row:
            return None
        cursor.execute(
            "SELECT product_id, quantity, price_cents FROM order_items WHERE order_id = %s ORDER BY id",
            (row["id"],),
        )
        return _row_to_order(row, cursor.fetchall() or [])

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._cursor() as cursor:
            return self._fetch_order(cursor, "id", order_id)

    def get_order_by_payment_ref(self, provider_payment_ref: str) -> Optional[Order]:
        with self._cursor() as cursor:
            return self._fetch_order(cursor, "provider_payment_ref", provider_payment_ref)

    def record_order(self, order: Order, *, stock_decrement: int = 0) -> OrderRecordResult:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO orders (
                    id,
                    account_id,
                    vendor_id,
                    status,
                    total_cents,
                    currency,
                    provider_payment_ref,
                    subscription_tier_id,
                    subscription_tier_name,
                    shipping_address_id,
                    is_pre_order,
                    pre_order_ship_date,
                    notes,
                    requires_review
                )
                VALUES (%(id)s, %(account_id)s, %(vendor_id)s, %(status)s, %(total_cents)s, %(currency)s,
                        %(provider_payment_ref)s, %(subscription_tier_id)s, %(subscription_tier_name)s,
                        %(shipping_address_id)s, %(is_pre_order)s, %(pre_order_ship_date)s, %(notes)s,
                        %(requires_review)s)
                ON CONFLICT (provider_payment_ref) DO NOTHING
                RETURNING id
                """,
                {
                    "id": order.order_id,
                    "account_id": order.account_id,
                    "vendor_id": order.vendor_id,
                    "status": order.status.value,
                    "total_cents": order.total_cents,
                    "currency": order.currency,
                    "provider_payment_ref": order.provider_payment_ref,
                    "subscription_tier_id": order.subscription_tier_id,
                    "subscription_tier_name": order.subscription_tier_name,
                    "shipping_address_id": order.shipping_address_id,
                    "is_pre_order": order.is_pre_order,
                    "pre_order_ship_date": order.pre_order_ship_date,
                    "notes": order.notes,
                    "requires_review": order.requires_review,
                },
            )
            inserted = cursor.fetchone()
            if inserted:
                psycopg2.extras.execute_values(
                    cursor,
                    "INSERT INTO order_items (id, order_id, product_id, quantity, price_cents) VALUES %s",
                    [
                        (f"oi_{uuid4().hex}", order.order_id, item.product_id, item.quantity, item.price_cents)
                        for item in order.items
                    ],
                )
                if stock_decrement > 0:
                    for item in order.items:
                        cursor.execute(
                            """
                            UPDATE products
                            SET stock_quantity = GREATEST(stock_quantity - %s, 0),
                                updated_at = NOW()
                            WHERE id = %s AND is_limited
                            """,
                            (min(stock_decrement, item.quantity), item.product_id),
                        )

            persisted = self._fetch_order(cursor, "provider_payment_ref", order.provider_payment_ref)
            if persisted is None:
                raise RuntimeError("Failed to persist order")
            return OrderRecordResult(order=persisted, created=bool(inserted))

    def update_order_status(self, order_id: str, status: OrderStatus) -> Optional[Order]:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE orders SET status = %s, updated_at = NOW() WHERE id = %s",
                (status.value, order_id),
            )
            return self._fetch_order(cursor, "id", order_id)

    # Webhook bookkeeping

    def has_processed_webhook_event(self, event_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("SELECT 1 FROM billing_webhook_events WHERE event_id = %s LIMIT 1", (event_id,))
            return cursor.fetchone() is not None

    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_events (
                    event_id,
                    event_type,
                    payload,
                    received_at,
                    processed_at
                )
                VALUES (%s, %s, %s, %s, NOW())
                ON CONFLICT (event_id) DO NOTHING
                """,
                (
                    event.event_id,
                    event.event_type,
                    psycopg2.extras.Json(event.data, dumps=_json_dumps),
                    event.created_at,
                ),
            )
            return cursor.rowcount > 0


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


__all__ = ["BillingRepository", "PostgresBillingRepository", "managed_connection"]
