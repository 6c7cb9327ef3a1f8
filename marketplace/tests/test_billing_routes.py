from __future__ import annotations

import json
from dataclasses import replace
from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from marketplace import app_context
from marketplace.app.billing import LedgerStatus, TierChangeKind
from marketplace.app.billing.models import ProviderSubscription
from marketplace.app.routes import billing as billing_routes
from marketplace.app.routes import webhooks as webhooks_routes
from marketplace.app.schemas.billing import (
    CancelSubscriptionRequest,
    ChangeTierRequest,
    SubscriptionCheckoutRequest,
    TierCreateRequest,
)

from .conftest import VALID_SIGNATURE, make_entry, utcnow


@pytest.fixture
def routed_service(monkeypatch, billing_components):
    monkeypatch.setattr(billing_routes, "get_billing_service", lambda: billing_components.service)
    monkeypatch.setattr(webhooks_routes, "get_billing_service", lambda: billing_components.service)
    monkeypatch.setattr(app_context, "_billing_config", billing_components.config)
    return billing_components


def test_start_subscription_checkout_returns_redirect(routed_service):
    user = SimpleNamespace(id="acct_1")

    response = billing_routes.start_subscription_checkout(
        SubscriptionCheckoutRequest(tierId="tier_basic"),
        current_account=user,
    )

    assert response.session_id == routed_service.provider.checkout_sessions[-1]["id"]
    assert response.url.startswith("https://checkout.test/")


def test_change_tier_maps_missing_subscription_to_404(routed_service):
    user = SimpleNamespace(id="acct_1")

    with pytest.raises(HTTPException) as excinfo:
        billing_routes.change_tier(
            ChangeTierRequest(currentSubscriptionId="sub_missing", newTierId="tier_pro"),
            current_account=user,
        )

    assert excinfo.value.status_code == 404
    assert excinfo.value.detail["code"] == "subscription_not_found"


def test_change_tier_downgrade_response(routed_service):
    routed_service.repository.entries["sub_1"] = make_entry(tier_id="tier_pro")
    routed_service.provider.subscriptions["stripe_sub_1"] = ProviderSubscription(
        subscription_ref="stripe_sub_1",
        status="active",
        item_ref="si_1",
        current_period_end=utcnow() + timedelta(days=20),
    )

    response = billing_routes.change_tier(
        ChangeTierRequest(currentSubscriptionId="sub_1", newTierId="tier_basic"),
        current_account=SimpleNamespace(id="acct_1"),
    )

    assert response.type == TierChangeKind.DOWNGRADE
    assert response.url is None
    assert response.access_expires_at == routed_service.repository.entries["sub_1"].access_expires_at


def test_cancel_subscription_returns_requested_entry(routed_service):
    routed_service.repository.entries["sub_1"] = make_entry()
    routed_service.provider.subscriptions["stripe_sub_1"] = ProviderSubscription(
        subscription_ref="stripe_sub_1", status="active"
    )

    response = billing_routes.cancel_subscription(
        CancelSubscriptionRequest(subscriptionId="sub_1"),
        current_account=SimpleNamespace(id="acct_1"),
    )

    assert response.success is True
    assert response.subscription.cancellation_state.value == "requested"
    assert response.subscription.status == LedgerStatus.ACTIVE


def test_get_vendor_access_without_entry(routed_service):
    response = billing_routes.get_vendor_access("ven_1", current_account=SimpleNamespace(id="acct_1"))

    assert response.has_access is False
    assert response.entry is None


def test_create_vendor_tier_requires_vendor(routed_service):
    with pytest.raises(HTTPException) as excinfo:
        billing_routes.create_vendor_tier(
            TierCreateRequest(name="Gold", priceCents=2500),
            current_account=SimpleNamespace(id="acct_1"),
        )

    assert excinfo.value.status_code == 403


def test_delete_vendor_tier_with_subscribers_is_bad_request(routed_service):
    routed_service.repository.entries["sub_1"] = make_entry(tier_id="tier_basic")

    with pytest.raises(HTTPException) as excinfo:
        billing_routes.delete_vendor_tier("tier_basic", current_account=SimpleNamespace(id="acct_owner"))

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["error"] == "Cannot delete tier with existing subscribers. Deactivate it instead."


@pytest.fixture
def webhook_client(routed_service):
    app = FastAPI()
    app.include_router(webhooks_routes.router)
    return TestClient(app)


def _envelope(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps(
        {"id": event_id, "type": event_type, "created": int(utcnow().timestamp()), "data": {"object": obj}}
    ).encode()


def test_webhook_requires_configured_secret(monkeypatch, webhook_client, routed_service):
    monkeypatch.setattr(app_context, "_billing_config", replace(routed_service.config, stripe_webhook_secret=None))

    response = webhook_client.post(
        "/api/webhooks/stripe",
        content=b"{}",
        headers={"stripe-signature": VALID_SIGNATURE},
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Webhook secret not configured"}


def test_webhook_rejects_missing_and_invalid_signatures(webhook_client):
    body = _envelope("evt_1", "customer.created", {"id": "cus_1"})

    missing = webhook_client.post("/api/webhooks/stripe", content=body)
    invalid = webhook_client.post("/api/webhooks/stripe", content=body, headers={"stripe-signature": "t=1,v1=bad"})

    assert missing.status_code == 400
    assert missing.json() == {"error": "Missing signature"}
    assert invalid.status_code == 400
    assert invalid.json() == {"error": "Invalid signature"}


def test_webhook_acknowledges_processed_event(webhook_client, routed_service):
    routed_service.repository.entries["sub_1"] = make_entry()
    body = _envelope(
        "evt_failed",
        "invoice.payment_failed",
        {"id": "in_1", "parent": {"subscription_details": {"subscription": "stripe_sub_1"}}},
    )

    response = webhook_client.post("/api/webhooks/stripe", content=body, headers={"stripe-signature": VALID_SIGNATURE})

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert routed_service.repository.entries["sub_1"].status == LedgerStatus.PAST_DUE


def test_webhook_processing_failure_asks_for_redelivery(webhook_client, routed_service):
    body = _envelope(
        "evt_early",
        "customer.subscription.updated",
        {"id": "stripe_sub_9", "status": "active", "metadata": {"account_id": "acct_1", "tier_id": "tier_pro"}},
    )

    response = webhook_client.post("/api/webhooks/stripe", content=body, headers={"stripe-signature": VALID_SIGNATURE})

    assert response.status_code == 500
    assert response.json() == {"error": "Webhook processing failed"}
    assert "evt_early" not in routed_service.repository.webhook_events
