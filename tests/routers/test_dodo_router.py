"""Dodo webhook router tests"""
import asyncio
import json
import logging
import time
from datetime import datetime, timedelta, timezone

import pytest

from core.responses import MalformedPayloadException
from mocks import (
    BASIC_PRODUCT,
    PACKAGE_120_PRODUCT,
    PACKAGE_300_PRODUCT,
    PRO_PRODUCT,
    USER_EMAIL,
    USER_ID,
    post_event,
    sign_payload,
)
from routers.dodo_router import _verify_signature, parse_webhook_payload, process_dodo_payload
from schemas.webhook import EventKind, WebhookPayload


def _payload(event_type, **data):
    return WebhookPayload.model_validate({"type": event_type, "data": data})


def _activation(payment_id="pay_sub_1", product_id=PRO_PRODUCT, email=USER_EMAIL):
    return {
        "type": "subscription.created",
        "data": {
            "payment_id": payment_id,
            "subscription_id": "sub_1",
            "product_id": product_id,
            "customer": {"customer_id": "cus_1", "email": email},
        },
    }


def _purchase(payment_id="pay_1", product_id=PACKAGE_120_PRODUCT, email=USER_EMAIL):
    return {
        "type": "payment.succeeded",
        "data": {
            "payment_id": payment_id,
            "product_cart": [{"product_id": product_id, "quantity": 1}],
            "customer": {"customer_id": "cus_1", "email": email},
            "total_amount": 19900,
            "payment_method": "card",
        },
    }


# --- Receiver ---

def test_unknown_event_is_acknowledged_without_store_calls(client, store, unsigned):
    response = post_event(client, {"type": "dispute.opened", "data": {"payment_id": "pay_9"}})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["event"] == "dispute.opened"
    assert body["data"]["status"] == "skipped"
    assert store.calls == []


@pytest.mark.parametrize(
    "raw",
    [
        b"{not json",
        b"[1, 2, 3]",
        b'{"data": {}}',
        b'{"type": "", "data": {}}',
        b'{"type": 42}',
        b'{"type": "payment.succeeded", "data": [1]}',
    ],
)
def test_malformed_payload_returns_400(client, store, unsigned, raw):
    response = post_event(client, raw)

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["error_code"] == "MALFORMED_PAYLOAD"
    assert store.calls == []


def test_parse_webhook_payload_allows_missing_data():
    payload = parse_webhook_payload(b'{"type": "subscription.cancelled"}')

    assert payload.kind is EventKind.SUBSCRIPTION_ENDED
    assert payload.data.subscription_id is None


def test_parse_webhook_payload_rejects_non_utf8():
    with pytest.raises(MalformedPayloadException):
        parse_webhook_payload(b"\xff\xfe")


def test_liveness_endpoint(client):
    response = client.get("/api/v1/webhooks/dodo")

    assert response.status_code == 200
    assert response.json()["success"] is True


def test_legacy_path_is_routed(client, store, unsigned):
    response = post_event(client, _purchase(), path="/webhook")

    assert response.status_code == 200
    assert store.balance(USER_ID) == 120


# --- Signature ---

def test_valid_signature_is_accepted(client, store, signed):
    body = json.dumps(_purchase()).encode("utf-8")

    response = post_event(client, body, headers=sign_payload(body))

    assert response.status_code == 200
    assert store.balance(USER_ID) == 120


def test_tampered_body_is_rejected(client, store, signed):
    body = json.dumps(_purchase()).encode("utf-8")
    headers = sign_payload(body)
    tampered = body.replace(b"pay_1", b"pay_2")

    response = post_event(client, tampered, headers=headers)

    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "error": "invalid signature",
        "error_code": "INVALID_SIGNATURE",
    }
    assert store.calls == []


def test_missing_signature_headers_rejected_in_strict_mode(client, store, signed):
    response = post_event(client, _purchase())

    assert response.status_code == 401
    assert store.calls == []


def test_stale_timestamp_is_rejected(signed):
    body = b'{"type": "payment.succeeded"}'
    headers = sign_payload(body, timestamp=int(time.time()) - 3600)

    assert not _verify_signature(
        body,
        headers["webhook-id"],
        headers["webhook-timestamp"],
        headers["webhook-signature"],
    )


def test_any_matching_signature_entry_is_accepted(signed):
    body = b'{"type": "payment.succeeded"}'
    headers = sign_payload(body)
    signatures = "v1,bm90LXRoZS1zaWduYXR1cmU= " + headers["webhook-signature"]

    assert _verify_signature(body, headers["webhook-id"], headers["webhook-timestamp"], signatures)


def test_lenient_mode_accepts_unsigned_requests(unsigned):
    assert _verify_signature(b"{}", None, None, None)


# --- Subscription activation ---

def test_pro_activation_provisions_plan_and_credits(client, store, unsigned):
    response = post_event(client, _activation())

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "processed"

    subscription = store.subscriptions[USER_ID]
    assert subscription["plan_type"] == "pro"
    assert subscription["status"] == "active"
    assert subscription["monthly_credits"] == 400
    assert subscription["dodo_subscription_id"] == "sub_1"
    assert subscription["dodo_customer_id"] == "cus_1"
    assert store.balance(USER_ID) == 400

    assert len(store.transactions) == 1
    assert store.transactions[0]["transaction_type"] == "subscription_credit"
    assert store.transactions[0]["credits"] == 400

    assert len(store.payment_history) == 1
    history = store.payment_history[0]
    assert history["payment_type"] == "subscription"
    assert history["status"] == "completed"
    assert history["amount_inr"] == 699
    assert history["plan_type"] == "pro"
    assert history["payment_method"] == "upi"


def test_activation_replay_is_idempotent(client, store, unsigned):
    post_event(client, _activation())
    response = post_event(client, _activation())

    assert response.status_code == 200
    assert response.json()["data"]["duplicate"] is True
    assert store.balance(USER_ID) == 400
    assert len(store.transactions) == 1
    assert len(store.payment_history) == 1


def test_activation_keeps_existing_balance(client, store, unsigned):
    store.seed_subscription(USER_ID, current_credits=75)

    post_event(client, _activation(product_id=BASIC_PRODUCT))

    assert store.subscriptions[USER_ID]["plan_type"] == "basic"
    assert store.balance(USER_ID) == 275


def test_activation_with_unknown_product_defaults_to_basic(client, store, unsigned):
    post_event(client, _activation(product_id="pdt_unknown"))

    assert store.subscriptions[USER_ID]["plan_type"] == "basic"
    assert store.balance(USER_ID) == 200


# --- Renewal ---

@pytest.mark.asyncio
async def test_renewal_adds_allotment_and_extends_expiry(services, store):
    store.seed_subscription(
        USER_ID,
        plan_type="basic",
        current_credits=50,
        monthly_credits=200,
        dodo_subscription_id="sub_1",
    )
    renewed_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    outcome = await process_dodo_payload(
        _payload("subscription.renewed", subscription_id="sub_1", payment_id="pay_r1"),
        services,
        received_at=renewed_at,
    )

    assert outcome["status"] == "processed"
    assert store.balance(USER_ID) == 250
    subscription = store.subscriptions[USER_ID]
    assert subscription["status"] == "active"
    assert subscription["expires_at"] == renewed_at + timedelta(days=30)
    assert store.transactions[-1]["transaction_type"] == "subscription_credit"
    assert store.payment_history == []


@pytest.mark.asyncio
async def test_duplicate_renewal_does_not_double_credit(services, store):
    store.seed_subscription(USER_ID, plan_type="pro", current_credits=0, dodo_subscription_id="sub_1")
    payload = _payload("subscription.renewed", subscription_id="sub_1", payment_id="pay_r1")

    first = await process_dodo_payload(payload, services)
    second = await process_dodo_payload(payload, services)

    assert first["status"] == "processed"
    assert second["status"] == "duplicate"
    assert store.balance(USER_ID) == 400
    assert len(store.transactions) == 1


@pytest.mark.asyncio
async def test_renewal_without_payment_id_uses_webhook_id(services, store):
    store.seed_subscription(USER_ID, plan_type="basic", dodo_subscription_id="sub_1")
    payload = _payload("subscription.renewed", subscription_id="sub_1")

    await process_dodo_payload(payload, services, webhook_id="msg_42")
    second = await process_dodo_payload(payload, services, webhook_id="msg_42")

    assert second["duplicate"] is True
    assert store.balance(USER_ID) == 200


@pytest.mark.asyncio
async def test_renewal_for_unknown_subscription_is_logged(services, store, caplog):
    with caplog.at_level(logging.ERROR):
        outcome = await process_dodo_payload(
            _payload("subscription.renewed", subscription_id="sub_missing", payment_id="pay_r9"),
            services,
        )

    assert outcome["status"] == "unresolved"
    assert "add_credits" not in store.calls
    assert store.system_logs[0]["event_type"] == "dodo_webhook_unresolved"
    assert "sub_missing" in caplog.text


# --- Cancellation ---

def test_cancellation_preserves_balance(client, store, unsigned):
    store.seed_subscription(
        USER_ID,
        plan_type="pro",
        current_credits=300,
        dodo_subscription_id="sub_1",
    )

    response = post_event(client, {"type": "subscription.cancelled", "data": {"subscription_id": "sub_1"}})

    assert response.status_code == 200
    subscription = store.subscriptions[USER_ID]
    assert subscription["status"] == "cancelled"
    assert subscription["cancelled_at"] is not None
    assert store.balance(USER_ID) == 300
    assert "add_credits" not in store.calls


def test_cancellation_of_unknown_subscription_is_noop(client, store, unsigned):
    response = post_event(client, {"type": "subscription.expired", "data": {"subscription_id": "sub_x"}})

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "ignored"


# --- Credit purchase ---

def test_credit_purchase_adds_package_credits(client, store, unsigned):
    response = post_event(client, _purchase())

    assert response.status_code == 200
    assert store.balance(USER_ID) == 120
    assert store.subscriptions[USER_ID]["plan_type"] == "free"
    assert store.transactions[0]["transaction_type"] == "purchase"

    history = store.payment_history[0]
    assert history["payment_type"] == "credits"
    assert history["credits_purchased"] == 120
    assert history["amount_inr"] == 199
    assert history["payment_method"] == "card"


def test_credit_purchase_replay_is_idempotent(client, store, unsigned):
    for _ in range(3):
        response = post_event(client, _purchase())
        assert response.status_code == 200

    assert store.balance(USER_ID) == 120
    assert len(store.transactions) == 1
    assert len(store.payment_history) == 1


def test_subscription_payment_is_left_to_subscription_events(client, store, unsigned):
    payload = _purchase()
    payload["data"]["subscription_id"] = "sub_1"

    response = post_event(client, payload)

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "ignored"
    assert store.mutation_calls == []


def test_purchase_of_unknown_product_is_ignored(client, store, unsigned):
    response = post_event(client, _purchase(product_id="pdt_not_a_package"))

    assert response.status_code == 200
    assert response.json()["data"]["processed"]["reason"] == "unknown_product"
    assert store.mutation_calls == []


@pytest.mark.asyncio
async def test_concurrent_purchases_lose_no_update(services, store):
    store.seed_subscription(USER_ID, current_credits=10)

    await asyncio.gather(
        process_dodo_payload(WebhookPayload.model_validate(_purchase("pay_a", PACKAGE_120_PRODUCT)), services),
        process_dodo_payload(WebhookPayload.model_validate(_purchase("pay_b", PACKAGE_300_PRODUCT)), services),
    )

    assert store.balance(USER_ID) == 430
    assert sorted(tx["balance_after"] for tx in store.transactions)[-1] == 430


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_credit_once(services, store):
    payload = WebhookPayload.model_validate(_purchase())

    outcomes = await asyncio.gather(
        process_dodo_payload(payload, services),
        process_dodo_payload(payload, services),
    )

    assert store.balance(USER_ID) == 120
    assert len(store.payment_history) == 1
    assert {outcome["status"] for outcome in outcomes} <= {"processed", "duplicate"}


# --- Failed payment ---

def test_failed_payment_records_history_only(client, store, unsigned):
    payload = {
        "type": "payment.failed",
        "data": {
            "payment_id": "pay_f1",
            "product_id": PRO_PRODUCT,
            "customer": {"customer_id": "cus_1", "email": USER_EMAIL},
            "failure_reason": "card_declined",
        },
    }

    response = post_event(client, payload)

    assert response.status_code == 200
    assert store.mutation_calls == ["record_payment_history"]
    history = store.payment_history[0]
    assert history["status"] == "failed"
    assert history["payment_type"] == "subscription"
    assert history["user_id"] == USER_ID
    assert history["metadata"]["error"] == "card_declined"


def test_failed_payment_of_unknown_customer_uses_sentinel(client, store, unsigned):
    payload = {
        "type": "payment.failed",
        "data": {
            "payment_id": "pay_f2",
            "product_id": PACKAGE_120_PRODUCT,
            "customer_email": "stranger@example.com",
            "error_message": "insufficient_funds",
        },
    }

    post_event(client, payload)

    history = store.payment_history[0]
    assert history["user_id"] == "unknown"
    assert history["payment_type"] == "credits"
    assert history["metadata"]["customer_email"] == "stranger@example.com"
    assert history["metadata"]["error"] == "insufficient_funds"


# --- Identity ---

def test_unresolvable_customer_mutates_nothing(client, store, unsigned, caplog):
    with caplog.at_level(logging.ERROR, logger="routers.dodo_router"):
        response = post_event(client, _purchase(email="nobody@example.com"))

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "unresolved"
    assert "add_credits" not in store.calls
    assert store.payment_history == []
    assert store.subscriptions == {}
    assert store.system_logs[0]["event_data"]["customer_email"] == "nobody@example.com"
    assert "nobody@example.com" in caplog.text


def test_email_match_ignores_case_and_whitespace(client, store, unsigned):
    post_event(client, _purchase(email="  Aspirant@Example.COM "))

    assert store.balance(USER_ID) == 120


# --- Failures ---

def test_store_failure_returns_500(client, store, unsigned):
    store.fail_on.add("add_credits")

    response = post_event(client, _purchase())

    assert response.status_code == 500
    assert response.json()["success"] is False
    assert response.json()["error_code"] == "PERSISTENCE_ERROR"
    assert store.payment_history == []


def test_unexpected_error_returns_500(client, store, unsigned, monkeypatch):
    async def _boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(store, "has_completed_payment", _boom)

    response = post_event(client, _purchase())

    assert response.status_code == 500
    assert response.json()["error_code"] == "INTERNAL_SERVER_ERROR"


def test_cors_preflight_is_answered(client, store):
    response = client.options(
        "/api/v1/webhooks/dodo",
        headers={
            "Origin": "https://dashboard.example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "content-type,webhook-signature",
        },
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"
    assert store.calls == []


# --- Redelivery and state transitions ---

def test_unknown_event_with_foreign_data_shape_is_acknowledged(client, store, unsigned):
    response = post_event(
        client,
        {"type": "something.unrecognized", "data": {"customer": "cus_123", "product_cart": "n/a"}},
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["data"]["status"] == "skipped"
    assert store.calls == []


def test_known_event_with_foreign_data_shape_is_rejected(client, store, unsigned):
    response = post_event(client, {"type": "payment.succeeded", "data": {"customer": "cus_123"}})

    assert response.status_code == 400
    assert store.calls == []


@pytest.mark.asyncio
async def test_renewal_keeps_cancelled_subscription_cancelled(services, store):
    cancelled_at = datetime(2026, 2, 20, tzinfo=timezone.utc)
    store.seed_subscription(
        USER_ID,
        plan_type="basic",
        status="cancelled",
        cancelled_at=cancelled_at,
        current_credits=30,
        dodo_subscription_id="sub_1",
    )

    await process_dodo_payload(
        _payload("subscription.renewed", subscription_id="sub_1", payment_id="pay_r2"),
        services,
    )

    subscription = store.subscriptions[USER_ID]
    assert subscription["status"] == "cancelled"
    assert subscription["cancelled_at"] == cancelled_at


def test_activation_replay_without_payment_id_keeps_cancellation(client, store, unsigned):
    activation = _activation(payment_id=None)
    activation["data"]["subscription_id"] = "sub_9"
    del activation["data"]["payment_id"]

    post_event(client, activation)
    post_event(client, {"type": "subscription.cancelled", "data": {"subscription_id": "sub_9"}})
    cancelled = dict(store.subscriptions[USER_ID])

    response = post_event(client, activation)

    assert response.status_code == 200
    assert response.json()["data"]["duplicate"] is True
    subscription = store.subscriptions[USER_ID]
    assert subscription["status"] == "cancelled"
    assert subscription["cancelled_at"] == cancelled["cancelled_at"]
    assert subscription["expires_at"] == cancelled["expires_at"]
    assert store.balance(USER_ID) == 400
    assert store.calls.count("upsert_subscription") == 1


def test_failed_payment_redelivery_records_one_row(client, store, unsigned):
    payload = {
        "type": "payment.failed",
        "data": {
            "payment_id": "pay_f",
            "product_id": PACKAGE_120_PRODUCT,
            "customer": {"email": USER_EMAIL},
            "failure_reason": "card_declined",
        },
    }

    post_event(client, payload)
    response = post_event(client, payload)

    assert response.status_code == 200
    assert response.json()["data"]["duplicate"] is True
    assert [row["status"] for row in store.payment_history] == ["failed"]


@pytest.mark.asyncio
async def test_concurrent_failed_deliveries_record_one_row(services, store):
    payload = _payload("payment.failed", payment_id="pay_f", customer_email=USER_EMAIL)

    await asyncio.gather(
        process_dodo_payload(payload, services),
        process_dodo_payload(payload, services),
    )

    assert len(store.payment_history) == 1


def test_cancellation_redelivery_keeps_first_timestamp(client, store, unsigned):
    store.seed_subscription(USER_ID, plan_type="pro", dodo_subscription_id="sub_1")
    cancellation = {"type": "subscription.cancelled", "data": {"subscription_id": "sub_1"}}

    post_event(client, cancellation)
    first_cancelled_at = store.subscriptions[USER_ID]["cancelled_at"]
    response = post_event(client, cancellation)

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "ignored"
    assert store.subscriptions[USER_ID]["cancelled_at"] == first_cancelled_at
    assert store.subscriptions[USER_ID]["updated_at"] == first_cancelled_at
