"""
Tests for POST /api/billing/webhook and its status code contract.
"""
from datetime import timedelta
from unittest.mock import patch

from backend.models.entitlement import SubscriptionStatus, Tier


def post(client, body, signature):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["X-Signature"] = signature
    return client.post("/api/billing/webhook", content=body, headers=headers)


def test_webhook_success_then_already_processed(client, services, webhooks, notifier):
    services.store.create_for_user("user_1")
    body, signature = webhooks.sign(
        webhooks.event("subscription_created", "sub_1", {"variant_id": "222"}, user_id="user_1")
    )

    response = post(client, body, signature)
    assert response.status_code == 200
    assert response.json()["status"] == "success"
    assert services.store.get("user_1").tier == Tier.PREMIUM
    # Background task ran after the response
    assert len(notifier.sent) == 1

    replay = post(client, body, signature)
    assert replay.status_code == 200
    assert replay.json()["status"] == "already_processed"


def test_webhook_ignored_event(client, webhooks):
    body, signature = webhooks.sign(webhooks.event("affiliate_activated", "aff_1"))
    response = post(client, body, signature)
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


def test_webhook_bad_signature_is_401(client, services, webhooks):
    services.store.create_for_user("user_1")
    body, _ = webhooks.sign(webhooks.event("subscription_created", "sub_1", user_id="user_1"))

    response = post(client, body, "deadbeef")
    assert response.status_code == 401
    assert response.json()["status"] == "error"
    assert response.json()["error"] == "invalid_signature"
    assert services.store.get("user_1").subscription_status == SubscriptionStatus.NONE


def test_webhook_missing_signature_is_401(client, webhooks):
    body, _ = webhooks.sign(webhooks.event("subscription_created", "sub_1"))
    assert post(client, body, None).status_code == 401


def test_webhook_stale_event_is_401(client, webhooks, clock):
    body, signature = webhooks.sign(
        webhooks.event("subscription_created", "sub_1", created_at=clock() - timedelta(minutes=10))
    )
    response = post(client, body, signature)
    assert response.status_code == 401
    assert response.json()["error"] == "stale_event"


def test_webhook_malformed_payload_is_400(client, webhooks):
    body = b'{"meta": "nope"}'
    response = post(client, body, webhooks.sign_bytes(body))
    assert response.status_code == 400
    assert response.json()["status"] == "error"


def test_webhook_unknown_subscription_is_500(client, webhooks):
    body, signature = webhooks.sign(webhooks.event("subscription_expired", "sub_missing"))
    response = post(client, body, signature)
    assert response.status_code == 500
    assert response.json()["status"] == "error"


def test_webhook_unexpected_error_is_500(client, services, webhooks):
    body, signature = webhooks.sign(webhooks.event("subscription_expired", "sub_1"))
    with patch.object(services.store, "get_by_subscription", side_effect=RuntimeError("db gone")):
        response = post(client, body, signature)
    assert response.status_code == 500
    assert response.json()["status"] == "error"
    assert response.json()["error"] == "internal_error"


def test_webhook_health(client):
    response = client.get("/api/billing/webhook/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["signature_configured"] is True
    assert data["webhook_url"].endswith("/api/billing/webhook")
