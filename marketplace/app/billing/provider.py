"""Billing provider integration.

:class:`BillingProvider` is the contract the billing core consumes. The Stripe
implementation keeps every SDK object at this boundary: responses are flattened into
plain mappings and translated into the local ``Provider*`` models by the
``*_from_payload`` functions, which the webhook reconciler also uses for event
payloads. Provider API changes therefore stop here.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol, Tuple

import stripe

from .errors import (
    PriceInactiveError,
    ProviderTerminalError,
    ProviderTransientError,
    WebhookSignatureError,
)
from .models import (
    BillingWebhookEvent,
    CheckoutMode,
    ProviderCheckoutSession,
    ProviderPrice,
    ProviderProduct,
    ProviderSubscription,
    ShippingDetails,
)

logger = logging.getLogger("billing.provider")


class BillingProvider(Protocol):
    """External recurring-billing API."""

    def create_customer(self, *, account_id: str, email: Optional[str], name: Optional[str]) -> str:
        """Create a provider customer and return its reference."""

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
        """Create a hosted checkout session."""

    def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        ...

    def update_subscription_price(
        self,
        subscription_ref: str,
        *,
        item_ref: str,
        price_ref: str,
        metadata: Dict[str, str],
        prorate: bool,
    ) -> ProviderSubscription:
        ...

    def cancel_subscription(self, subscription_ref: str, *, prorate: bool) -> ProviderSubscription:
        """Cancel immediately."""

    def schedule_cancellation(self, subscription_ref: str) -> ProviderSubscription:
        """Cancel at the end of the current billing period."""

    def create_product(self, *, name: str, metadata: Dict[str, str]) -> ProviderProduct:
        ...

    def retrieve_product(self, product_ref: str) -> ProviderProduct:
        ...

    def activate_product(self, product_ref: str) -> ProviderProduct:
        ...

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
        ...

    def retrieve_price(self, price_ref: str) -> ProviderPrice:
        ...

    def update_price(
        self,
        price_ref: str,
        *,
        nickname: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> ProviderPrice:
        ...

    def construct_event(self, payload: bytes, signature: str) -> BillingWebhookEvent:
        """Verify the signature over ``payload`` and parse the event."""


_INACTIVE_PRICE_MARKERS = ("price specified is inactive", "inactive price", "archived")


def _is_inactive_price_error(exc: "stripe.InvalidRequestError") -> bool:
    message = (getattr(exc, "user_message", None) or str(exc) or "").lower()
    param = (getattr(exc, "param", None) or "").lower()
    if any(marker in message for marker in _INACTIVE_PRICE_MARKERS):
        return True
    return "price" in param and "inactive" in message


@contextmanager
def translate_provider_errors(operation: str) -> Iterator[None]:
    """Map Stripe SDK exceptions onto the billing error taxonomy."""

    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
        logger.warning("Transient provider failure during %s: %s", operation, exc)
        raise ProviderTransientError(
            code="provider_unavailable",
            message="Billing provider is temporarily unavailable, please retry",
            detail={"operation": operation},
        ) from exc
    except stripe.InvalidRequestError as exc:
        if _is_inactive_price_error(exc):
            raise PriceInactiveError(
                code="price_inactive",
                message="Price is no longer active",
                detail={"operation": operation},
            ) from exc
        logger.error("Provider rejected %s: %s", operation, exc)
        raise ProviderTerminalError(
            code=getattr(exc, "code", None) or "provider_rejected",
            message=getattr(exc, "user_message", None) or str(exc) or "Billing provider rejected the request",
            detail={"operation": operation},
        ) from exc
    except stripe.StripeError as exc:
        logger.error("Provider error during %s: %s", operation, exc)
        raise ProviderTerminalError(
            code="provider_error",
            message="Billing provider request failed",
            detail={"operation": operation},
        ) from exc


class StripeBillingProvider:
    """:class:`BillingProvider` backed by the Stripe API."""

    def __init__(self, *, api_key: str, webhook_secret: Optional[str] = None) -> None:
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    def create_customer(self, *, account_id: str, email: Optional[str], name: Optional[str]) -> str:
        with translate_provider_errors("customer.create"):
            customer = stripe.Customer.create(
                email=email or None,
                name=name or None,
                metadata={"account_id": account_id},
                api_key=self._api_key,
            )
        return str(_plain(customer)["id"])

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
        params: Dict[str, Any] = {
            "mode": mode.value,
            "payment_method_types": ["card"],
            "line_items": [{"price": price_ref, "quantity": quantity}],
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_ref:
            params["customer"] = customer_ref
        if subscription_metadata and mode == CheckoutMode.SUBSCRIPTION:
            params["subscription_data"] = {"metadata": subscription_metadata}
        if collect_shipping:
            params["shipping_address_collection"] = {"allowed_countries": ["US", "CA"]}

        with translate_provider_errors("checkout.session.create"):
            session = stripe.checkout.Session.create(api_key=self._api_key, **params)
        return checkout_session_from_payload(_plain(session))

    def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        with translate_provider_errors("subscription.retrieve"):
            subscription = stripe.Subscription.retrieve(
                subscription_ref,
                expand=["items.data"],
                api_key=self._api_key,
            )
        return provider_subscription_from_payload(_plain(subscription))

    def update_subscription_price(
        self,
        subscription_ref: str,
        *,
        item_ref: str,
        price_ref: str,
        metadata: Dict[str, str],
        prorate: bool,
    ) -> ProviderSubscription:
        with translate_provider_errors("subscription.update"):
            subscription = stripe.Subscription.modify(
                subscription_ref,
                items=[{"id": item_ref, "price": price_ref}],
                proration_behavior="create_prorations" if prorate else "none",
                metadata=metadata,
                api_key=self._api_key,
            )
        return provider_subscription_from_payload(_plain(subscription))

    def cancel_subscription(self, subscription_ref: str, *, prorate: bool) -> ProviderSubscription:
        with translate_provider_errors("subscription.cancel"):
            subscription = stripe.Subscription.cancel(
                subscription_ref,
                prorate=prorate,
                api_key=self._api_key,
            )
        return provider_subscription_from_payload(_plain(subscription))

    def schedule_cancellation(self, subscription_ref: str) -> ProviderSubscription:
        with translate_provider_errors("subscription.schedule_cancel"):
            subscription = stripe.Subscription.modify(
                subscription_ref,
                cancel_at_period_end=True,
                api_key=self._api_key,
            )
        return provider_subscription_from_payload(_plain(subscription))

    def create_product(self, *, name: str, metadata: Dict[str, str]) -> ProviderProduct:
        with translate_provider_errors("product.create"):
            product = stripe.Product.create(name=name, metadata=metadata, api_key=self._api_key)
        return provider_product_from_payload(_plain(product))

    def retrieve_product(self, product_ref: str) -> ProviderProduct:
        with translate_provider_errors("product.retrieve"):
            product = stripe.Product.retrieve(product_ref, api_key=self._api_key)
        return provider_product_from_payload(_plain(product))

    def activate_product(self, product_ref: str) -> ProviderProduct:
        with translate_provider_errors("product.update"):
            product = stripe.Product.modify(product_ref, active=True, api_key=self._api_key)
        return provider_product_from_payload(_plain(product))

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
        params: Dict[str, Any] = {
            "product": product_ref,
            "unit_amount": unit_amount,
            "currency": currency,
            "metadata": metadata or {},
        }
        if recurring_interval:
            params["recurring"] = {"interval": recurring_interval}
        if nickname:
            params["nickname"] = nickname
        with translate_provider_errors("price.create"):
            price = stripe.Price.create(api_key=self._api_key, **params)
        return provider_price_from_payload(_plain(price))

    def retrieve_price(self, price_ref: str) -> ProviderPrice:
        with translate_provider_errors("price.retrieve"):
            price = stripe.Price.retrieve(price_ref, api_key=self._api_key)
        return provider_price_from_payload(_plain(price))

    def update_price(
        self,
        price_ref: str,
        *,
        nickname: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> ProviderPrice:
        params: Dict[str, Any] = {}
        if nickname is not None:
            params["nickname"] = nickname
        if active is not None:
            params["active"] = active
        with translate_provider_errors("price.update"):
            price = stripe.Price.modify(price_ref, api_key=self._api_key, **params)
        return provider_price_from_payload(_plain(price))

    def construct_event(self, payload: bytes, signature: str) -> BillingWebhookEvent:
        if not self._webhook_secret:
            raise WebhookSignatureError(code="webhook_secret_missing", message="Webhook secret not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except (stripe.SignatureVerificationError, ValueError) as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise WebhookSignatureError(code="invalid_signature", message="Invalid signature") from exc
        return webhook_event_from_payload(_plain(event))


def ensure_active_price(
    provider: BillingProvider,
    price_ref: str,
    *,
    product_ref: Optional[str],
    unit_amount: int,
    currency: str,
    recurring_interval: Optional[str] = None,
    nickname: Optional[str] = None,
) -> Tuple[str, bool]:
    """Return a usable price reference, replacing an archived price when needed.

    The second element is ``True`` when a replacement price was created and the caller
    must persist the new reference.
    """

    try:
        price = provider.retrieve_price(price_ref)
    except PriceInactiveError:
        price = None
    if price is not None and price.active:
        return price.price_ref, False

    target_product = product_ref or (price.product_ref if price is not None else None)
    if not target_product:
        raise ProviderTerminalError(
            code="price_unrecoverable",
            message="Price is inactive and has no product to re-create it under",
        )
    replacement = provider.create_price(
        product_ref=target_product,
        unit_amount=unit_amount,
        currency=currency,
        recurring_interval=recurring_interval,
        nickname=nickname,
    )
    logger.info("Replaced inactive price %s with %s", price_ref, replacement.price_ref)
    return replacement.price_ref, True


def _plain(value: Any) -> Any:
    """Flatten SDK objects into builtin dicts and lists."""

    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _plain(to_dict())
    return value


def _timestamp(value: object) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported timestamp value")


def _ref(value: object) -> Optional[str]:
    """Return the id of an expandable field, whether expanded or not."""

    if value is None:
        return None
    if isinstance(value, Mapping):
        identifier = value.get("id")
        return str(identifier) if identifier else None
    return str(value) or None


def _metadata(value: object) -> Dict[str, str]:
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}


def provider_subscription_from_payload(payload: Mapping[str, Any]) -> ProviderSubscription:
    items = payload.get("items") or {}
    data = items.get("data") if isinstance(items, Mapping) else None
    first_item: Mapping[str, Any] = data[0] if data else {}

    # Newer API versions report period bounds per item; older ones on the subscription.
    period_start = first_item.get("current_period_start") or payload.get("current_period_start")
    period_end = first_item.get("current_period_end") or payload.get("current_period_end")
    price = first_item.get("price")

    return ProviderSubscription(
        subscription_ref=str(payload["id"]),
        status=str(payload.get("status") or "active"),
        customer_ref=_ref(payload.get("customer")),
        item_ref=_ref(first_item.get("id")) if first_item else None,
        price_ref=_ref(price),
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(payload.get("cancel_at_period_end")),
        canceled_at=_timestamp(payload.get("canceled_at")),
        metadata=_metadata(payload.get("metadata")),
    )


def _shipping_from_payload(payload: Mapping[str, Any]) -> Optional[ShippingDetails]:
    shipping = payload.get("shipping_details")
    if not shipping:
        collected = payload.get("collected_information") or {}
        shipping = collected.get("shipping_details") if isinstance(collected, Mapping) else None
    if not isinstance(shipping, Mapping):
        return None
    address = shipping.get("address")
    if not isinstance(address, Mapping):
        return None
    return ShippingDetails(
        name=shipping.get("name"),
        line1=address.get("line1"),
        line2=address.get("line2"),
        city=address.get("city"),
        state=address.get("state"),
        postal_code=address.get("postal_code"),
        country=address.get("country"),
    )


def checkout_session_from_payload(payload: Mapping[str, Any]) -> ProviderCheckoutSession:
    raw_mode = str(payload.get("mode") or CheckoutMode.SUBSCRIPTION.value)
    try:
        mode = CheckoutMode(raw_mode)
    except ValueError:
        mode = CheckoutMode.PAYMENT
    amount_total = payload.get("amount_total")
    return ProviderCheckoutSession(
        session_id=str(payload["id"]),
        url=payload.get("url"),
        mode=mode,
        metadata=_metadata(payload.get("metadata")),
        subscription_ref=_ref(payload.get("subscription")),
        payment_intent_ref=_ref(payload.get("payment_intent")),
        amount_total=int(amount_total) if amount_total is not None else None,
        currency=payload.get("currency"),
        shipping=_shipping_from_payload(payload),
    )


def provider_price_from_payload(payload: Mapping[str, Any]) -> ProviderPrice:
    recurring = payload.get("recurring")
    unit_amount = payload.get("unit_amount")
    return ProviderPrice(
        price_ref=str(payload["id"]),
        product_ref=_ref(payload.get("product")),
        active=bool(payload.get("active", True)),
        unit_amount=int(unit_amount) if unit_amount is not None else None,
        currency=payload.get("currency"),
        recurring_interval=recurring.get("interval") if isinstance(recurring, Mapping) else None,
    )


def provider_product_from_payload(payload: Mapping[str, Any]) -> ProviderProduct:
    return ProviderProduct(
        product_ref=str(payload["id"]),
        active=bool(payload.get("active", True)),
        name=payload.get("name"),
    )


def webhook_event_from_payload(payload: Mapping[str, Any]) -> BillingWebhookEvent:
    data = payload.get("data") or {}
    obj = data.get("object") if isinstance(data, Mapping) else None
    return BillingWebhookEvent(
        event_id=str(payload["id"]),
        event_type=str(payload.get("type", "")),
        created_at=_timestamp(payload.get("created")) or datetime.now(timezone.utc),
        data=dict(obj) if isinstance(obj, Mapping) else {},
    )


def invoice_subscription_ref(payload: Mapping[str, Any]) -> Optional[str]:
    """Extract the subscription an invoice belongs to."""

    parent = payload.get("parent")
    if isinstance(parent, Mapping):
        details = parent.get("subscription_details")
        if isinstance(details, Mapping):
            ref = _ref(details.get("subscription"))
            if ref:
                return ref
    return _ref(payload.get("subscription"))


__all__ = [
    "BillingProvider",
    "StripeBillingProvider",
    "checkout_session_from_payload",
    "ensure_active_price",
    "invoice_subscription_ref",
    "provider_price_from_payload",
    "provider_product_from_payload",
    "provider_subscription_from_payload",
    "translate_provider_errors",
    "webhook_event_from_payload",
]
