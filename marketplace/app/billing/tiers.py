"""Vendor tier catalog management."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence
from uuid import uuid4

from ...config import BillingConfig
from .errors import BillingConflictError, BillingForbiddenError, BillingNotFoundError, BillingRequestError
from .ledger import AccessLedger
from .models import Vendor, VendorTier
from .provider import BillingProvider
from .repository import BillingRepository

logger = logging.getLogger("billing")

MIN_TIER_NAME_LENGTH = 2


@dataclass(slots=True)
class TierCatalog:
    """Creates, edits and retires the tiers a vendor sells.

    Price edits and deletion are refused while subscribers depend on the tier; vendors
    deactivate the tier instead.
    """

    repository: BillingRepository
    provider: BillingProvider
    ledger: AccessLedger
    config: BillingConfig

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def owned_vendor(self, account_id: str) -> Vendor:
        vendor = self.repository.get_vendor_by_owner(account_id)
        if vendor is None:
            raise BillingForbiddenError(code="vendor_required", message="Vendor account required")
        if not vendor.is_approved:
            raise BillingForbiddenError(code="vendor_not_approved", message="Vendor is not approved")
        return vendor

    def list_tiers(self, vendor_id: str) -> List[VendorTier]:
        return list(self.repository.list_tiers(vendor_id))

    def create_tier(
        self,
        account_id: str,
        *,
        name: str,
        price_cents: int,
        description: Optional[str] = None,
        benefits: Optional[Sequence[str]] = None,
        is_active: bool = True,
    ) -> VendorTier:
        vendor = self.owned_vendor(account_id)
        name = self._validate_name(name)
        self._validate_price(price_cents)
        if self.repository.find_tier_by_name(vendor.vendor_id, name) is not None:
            raise BillingConflictError(code="duplicate_tier_name", message="A tier with this name already exists")

        product = self.provider.create_product(
            name=f"{vendor.store_name} - {name}",
            metadata={"vendor_id": vendor.vendor_id, "tier_name": name},
        )
        price = self.provider.create_price(
            product_ref=product.product_ref,
            unit_amount=price_cents,
            currency=self.config.currency,
            recurring_interval="month",
            nickname=name,
            metadata={"vendor_id": vendor.vendor_id},
        )
        now = self._now()
        tier = VendorTier(
            tier_id=f"tier_{uuid4().hex}",
            vendor_id=vendor.vendor_id,
            name=name,
            description=description,
            price_cents=price_cents,
            currency=self.config.currency,
            benefits=list(benefits or []),
            is_active=is_active,
            provider_price_ref=price.price_ref,
            provider_product_ref=product.product_ref,
            sort_order=self.repository.next_tier_sort_order(vendor.vendor_id),
            created_at=now,
            updated_at=now,
        )
        persisted = self.repository.save_tier(tier)
        logger.info("Created tier %s for vendor %s", persisted.tier_id, vendor.vendor_id)
        return persisted

    def update_tier(
        self,
        account_id: str,
        tier_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        price_cents: Optional[int] = None,
        benefits: Optional[Sequence[str]] = None,
        is_active: Optional[bool] = None,
    ) -> VendorTier:
        vendor = self.owned_vendor(account_id)
        tier = self._owned_tier(vendor, tier_id)
        changes: dict = {}

        if name is not None:
            name = self._validate_name(name)
            if name != tier.name:
                clash = self.repository.find_tier_by_name(vendor.vendor_id, name)
                if clash is not None and clash.tier_id != tier.tier_id:
                    raise BillingConflictError(
                        code="duplicate_tier_name",
                        message="A tier with this name already exists",
                    )
                changes["name"] = name

        if price_cents is not None and price_cents != tier.price_cents:
            self._validate_price(price_cents)
            self.ledger.assert_price_change_allowed(tier.tier_id)
            changes.update(self._replace_price(vendor, tier, price_cents, changes.get("name", tier.name)))
        elif "name" in changes and tier.provider_price_ref:
            self.provider.update_price(tier.provider_price_ref, nickname=changes["name"])

        if description is not None:
            changes["description"] = description
        if benefits is not None:
            changes["benefits"] = list(benefits)
        if is_active is not None:
            changes["is_active"] = is_active

        if not changes:
            return tier
        changes["updated_at"] = self._now()
        persisted = self.repository.save_tier(tier.model_copy(update=changes))
        logger.info("Updated tier %s (%s)", tier.tier_id, ", ".join(sorted(k for k in changes if k != "updated_at")))
        return persisted

    def delete_tier(self, account_id: str, tier_id: str) -> None:
        vendor = self.owned_vendor(account_id)
        tier = self._owned_tier(vendor, tier_id)
        self.ledger.assert_deletable(tier.tier_id)

        if tier.provider_price_ref:
            self.provider.update_price(tier.provider_price_ref, active=False)
        if not self.repository.delete_tier(tier.tier_id):
            raise BillingRequestError(
                code="tier_has_subscribers",
                message="Cannot delete tier with existing subscribers. Deactivate it instead.",
            )
        logger.info("Deleted tier %s for vendor %s", tier.tier_id, vendor.vendor_id)

    def _replace_price(self, vendor: Vendor, tier: VendorTier, price_cents: int, nickname: str) -> dict:
        product_ref = tier.provider_product_ref
        if not product_ref:
            product_ref = self.provider.create_product(
                name=f"{vendor.store_name} - {nickname}",
                metadata={"vendor_id": vendor.vendor_id, "tier_name": nickname},
            ).product_ref
        price = self.provider.create_price(
            product_ref=product_ref,
            unit_amount=price_cents,
            currency=tier.currency,
            recurring_interval="month",
            nickname=nickname,
            metadata={"vendor_id": vendor.vendor_id},
        )
        if tier.provider_price_ref:
            self.provider.update_price(tier.provider_price_ref, active=False)
        return {
            "price_cents": price_cents,
            "provider_price_ref": price.price_ref,
            "provider_product_ref": product_ref,
        }

    def _owned_tier(self, vendor: Vendor, tier_id: str) -> VendorTier:
        tier = self.repository.get_tier(tier_id)
        if tier is None or tier.vendor_id != vendor.vendor_id:
            raise BillingNotFoundError(code="tier_not_found", message="Tier not found")
        return tier

    @staticmethod
    def _validate_name(name: str) -> str:
        cleaned = (name or "").strip()
        if len(cleaned) < MIN_TIER_NAME_LENGTH:
            raise BillingRequestError(code="invalid_name", message="Tier name must be at least 2 characters")
        return cleaned

    def _validate_price(self, price_cents: int) -> None:
        minimum = self.config.tier_min_price_cents
        if price_cents < minimum:
            raise BillingRequestError(
                code="invalid_price",
                message=f"Minimum price is ${minimum / 100:.2f}",
            )


__all__ = ["TierCatalog"]
