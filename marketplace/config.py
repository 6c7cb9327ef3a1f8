"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Mapping, Optional
from urllib.parse import quote
import os


@dataclass(frozen=True)
class PlatformRoles:
    """Accounts holding platform-wide privileges."""

    admin_account_ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_ids(cls, account_ids: Iterable[str]) -> "PlatformRoles":
        return cls(admin_account_ids=frozenset(a.strip() for a in account_ids if a and a.strip()))

    def is_admin(self, account_id: Optional[str]) -> bool:
        return bool(account_id) and account_id in self.admin_account_ids


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the billing provider and checkout redirects."""

    stripe_secret_key: str
    stripe_webhook_secret: Optional[str]
    app_base_url: str
    currency: str
    tier_min_price_cents: int
    platform_roles: PlatformRoles = field(default_factory=PlatformRoles)

    def subscription_success_url(self) -> str:
        return f"{self.app_base_url}/dashboard/subscriptions?success=true"

    def upgrade_success_url(self) -> str:
        return f"{self.app_base_url}/dashboard/subscriptions?upgraded=true"

    def subscription_cancel_url(self, vendor_slug: str) -> str:
        return f"{self.app_base_url}/{quote(vendor_slug)}?canceled=true"

    def product_success_url(self, vendor_slug: str, product_id: str) -> str:
        return f"{self.app_base_url}/{quote(vendor_slug)}/products/{quote(product_id)}?success=true"

    def product_cancel_url(self, vendor_slug: str, product_id: str) -> str:
        return f"{self.app_base_url}/{quote(vendor_slug)}/products/{quote(product_id)}?canceled=true"


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    app_base_url = env_mapping.get("APP_BASE_URL") or "http://localhost:3000"
    currency = (env_mapping.get("BILLING_CURRENCY") or "usd").strip().lower()
    admin_ids = (env_mapping.get("PLATFORM_ADMIN_IDS") or "").split(",")

    return BillingConfig(
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        app_base_url=app_base_url.rstrip("/"),
        currency=currency,
        tier_min_price_cents=max(0, _to_int(env_mapping.get("TIER_MIN_PRICE_CENTS"), default=100)),
        platform_roles=PlatformRoles.from_ids(admin_ids),
    )
