"""
Dodo Payments Webhook Router

Handles Dodo Payments webhook events:
- signature verification (Standard Webhooks, HMAC-SHA256) against the shared secret
- subscription provisioning, renewal and cancellation
- one-time credit package purchases through the atomic add_credits RPC
- failed payment audit rows
- idempotency via payment history / credit transactions so redeliveries are no-ops
"""
import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from core.config import settings
from core.factory import ServiceFactory, WebhookServices
from core.middleware import render_error
from core.responses import (
    BusinessException,
    DuplicatePaymentError,
    MalformedPayloadException,
    SignatureException,
    success_response,
)
from schemas.webhook import DodoEventData, EventKind, WebhookPayload, classify_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks", "dodo"])
legacy_router = APIRouter(tags=["webhooks", "dodo"])

TRANSACTION_PURCHASE = "purchase"
TRANSACTION_SUBSCRIPTION_CREDIT = "subscription_credit"

UNRESOLVED_EVENT_TYPE = "dodo_webhook_unresolved"

HandlerResult = Tuple[str, Dict[str, Any]]
HandlerFunc = Callable[["DodoHandlerContext"], Awaitable[HandlerResult]]


@dataclass(slots=True)
class DodoHandlerContext:
    event_type: str
    kind: EventKind
    data: DodoEventData
    services: WebhookServices
    webhook_id: Optional[str]
    received_at: datetime
    payment_id: Optional[str]
    subscription_id: Optional[str]
    product_id: Optional[str]
    customer_email: Optional[str]
    customer_id: Optional[str]


def get_webhook_services() -> WebhookServices:
    return ServiceFactory.get_services()


def _decode_secret(secret: str) -> bytes:
    if secret.startswith("whsec_"):
        return base64.b64decode(secret[len("whsec_"):])
    return secret.encode("utf-8")


def _verify_signature(
    raw: bytes,
    webhook_id: Optional[str],
    timestamp: Optional[str],
    signature: Optional[str],
    now: Optional[float] = None,
) -> bool:
    """Verify webhook-signature (Standard Webhooks: base64 HMAC over "{id}.{ts}.{body}")."""

    strict = settings.DODO_WEBHOOK_STRICT_VERIFY
    secret = (settings.DODO_WEBHOOK_SECRET or "").strip()

    if not secret:
        if strict:
            logger.warning("[DODO] strict verify enabled but no webhook secret configured")
            return False
        return True

    if not webhook_id or not timestamp or not signature:
        logger.warning("[DODO] missing webhook-id/webhook-timestamp/webhook-signature header")
        return not strict

    try:
        sent_at = int(timestamp)
        current = time.time() if now is None else now
        if abs(current - sent_at) > settings.DODO_WEBHOOK_TOLERANCE_SECONDS:
            logger.error("[DODO] webhook timestamp outside tolerance: %s", timestamp)
            return False if strict else True

        signed = f"{webhook_id}.{timestamp}.".encode("utf-8") + raw
        expected = base64.b64encode(
            hmac.new(_decode_secret(secret), signed, hashlib.sha256).digest()
        ).decode("ascii")

        for entry in signature.split(" "):
            version, _, provided = entry.strip().partition(",")
            if version == "v1" and hmac.compare_digest(expected, provided):
                return True

        logger.error("[DODO] signature mismatch")
        return False if strict else True
    except ValueError as e:
        logger.error(f"[DODO] signature verification error: {e}")
        return False if strict else True


def parse_webhook_payload(raw: bytes) -> WebhookPayload:
    try:
        body = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise MalformedPayloadException("invalid json")

    if not isinstance(body, dict):
        raise MalformedPayloadException("payload must be a JSON object")
    if not isinstance(body.get("type"), str) or not body["type"].strip():
        raise MalformedPayloadException("missing event type")
    if classify_event(body["type"]) is EventKind.UNKNOWN:
        # unrecognised events are acked without reading data
        return WebhookPayload(type=body["type"])
    if body.get("data") is None:
        body.pop("data", None)

    try:
        return WebhookPayload.model_validate(body)
    except ValidationError as e:
        logger.warning("[DODO] payload validation failed: %s", e.errors())
        raise MalformedPayloadException("invalid event data")


async def _record_unresolved(ctx: DodoHandlerContext, reason: str, **extra: Any) -> None:
    """Keep events that need manual reconciliation in system_logs"""
    event_data = {
        "reason": reason,
        "event_type": ctx.event_type,
        "payment_id": ctx.payment_id,
        "subscription_id": ctx.subscription_id,
        "product_id": ctx.product_id,
        "customer_email": ctx.customer_email,
        "customer_id": ctx.customer_id,
        "webhook_id": ctx.webhook_id,
        **extra,
    }
    try:
        await ctx.services.db_helper.log_system_event(
            event_type=UNRESOLVED_EVENT_TYPE,
            event_data=event_data,
        )
    except Exception as e:
        logger.warning("[DODO] failed to record unresolved event %s: %s", ctx.event_type, e)


async def _resolve_user(ctx: DodoHandlerContext) -> Optional[str]:
    if not ctx.customer_email:
        logger.error("[DODO] no customer email in %s event (payment %s)", ctx.event_type, ctx.payment_id)
        return None
    return await ctx.services.user_directory.resolve_user_id_by_email(ctx.customer_email)


async def _append_history(ctx: DodoHandlerContext, entry: Dict[str, Any]) -> bool:
    """Insert payment history last; a unique hit means a concurrent delivery got there first"""
    try:
        await ctx.services.db_helper.record_payment_history(entry)
        return True
    except DuplicatePaymentError:
        logger.info("[DODO] payment history already recorded for %s", ctx.payment_id)
        return False


def _activation_key(ctx: DodoHandlerContext) -> Optional[str]:
    if ctx.payment_id:
        return ctx.payment_id
    if ctx.subscription_id:
        return f"{ctx.subscription_id}:activation"
    return None


def _renewal_key(ctx: DodoHandlerContext) -> Optional[str]:
    if ctx.payment_id:
        return ctx.payment_id
    if ctx.webhook_id:
        return f"webhook:{ctx.webhook_id}"
    if ctx.subscription_id and ctx.data.next_billing_date:
        return f"renewal:{ctx.subscription_id}:{ctx.data.next_billing_date}"
    return None


async def _handle_subscription_activated(ctx: DodoHandlerContext) -> HandlerResult:
    db_helper = ctx.services.db_helper
    catalog = ctx.services.catalog

    if ctx.payment_id and await db_helper.has_completed_payment(ctx.payment_id):
        logger.info("[DODO] duplicate subscription activation ignored: payment %s", ctx.payment_id)
        return "duplicate", {"payment_id": ctx.payment_id}

    if not ctx.payment_id:
        key = _activation_key(ctx)
        if key and await db_helper.has_credit_transaction(key, TRANSACTION_SUBSCRIPTION_CREDIT):
            logger.info("[DODO] duplicate subscription activation ignored: %s", key)
            return "duplicate", {"idempotency_key": key}

    user_id = await _resolve_user(ctx)
    if not user_id:
        logger.error(
            "[DODO] valid user id not found for subscription %s (%s)",
            ctx.subscription_id,
            ctx.customer_email,
        )
        await _record_unresolved(ctx, "user_not_found")
        return "unresolved", {"reason": "user_not_found"}

    if not catalog.is_plan_product(ctx.product_id):
        logger.warning(
            "[DODO] product %s is not a known plan; defaulting to %s",
            ctx.product_id,
            catalog.DEFAULT_PLAN.value,
        )
    terms = catalog.plan_for_product(ctx.product_id)

    await ctx.services.subscription_service.provision(
        user_id,
        terms,
        subscription_id=ctx.subscription_id,
        customer_id=ctx.customer_id,
        now=ctx.received_at,
    )

    ledger = await db_helper.add_credits(
        user_id,
        terms.monthly_credits,
        TRANSACTION_SUBSCRIPTION_CREDIT,
        _activation_key(ctx),
        f"{terms.label} Plan - {terms.monthly_credits} credits",
    )

    history_recorded = False
    # Without a payment id a re-applied activation cannot be told apart in history.
    if ledger.applied or ctx.payment_id:
        history_recorded = await _append_history(
            ctx,
            {
                "user_id": user_id,
                "payment_type": "subscription",
                "amount_inr": terms.price_inr,
                "status": "completed",
                "dodo_payment_id": ctx.payment_id,
                "plan_type": terms.plan_type.value,
                "payment_method": ctx.data.payment_method or settings.DEFAULT_PAYMENT_METHOD,
            },
        )

    logger.info(
        "[DODO] subscription created for %s: %s plan with %s credits (applied=%s)",
        ctx.customer_email,
        terms.plan_type.value,
        terms.monthly_credits,
        ledger.applied,
    )
    return "processed", {
        "user_id": user_id,
        "plan_type": terms.plan_type.value,
        "credits_added": terms.monthly_credits if ledger.applied else 0,
        "balance": ledger.new_balance,
        "history_recorded": history_recorded,
    }


async def _handle_subscription_renewed(ctx: DodoHandlerContext) -> HandlerResult:
    db_helper = ctx.services.db_helper
    key = _renewal_key(ctx)

    if key is None:
        logger.warning("[DODO] renewal for %s carries no idempotency key", ctx.subscription_id)
    elif await db_helper.has_credit_transaction(key, TRANSACTION_SUBSCRIPTION_CREDIT):
        logger.info("[DODO] duplicate renewal ignored: %s", key)
        return "duplicate", {"idempotency_key": key}

    subscription = await ctx.services.subscription_service.get_by_external_id(ctx.subscription_id)
    if not subscription:
        logger.error("[DODO] subscription not found for renewal: %s", ctx.subscription_id)
        await _record_unresolved(ctx, "subscription_not_found")
        return "unresolved", {"reason": "subscription_not_found", "subscription_id": ctx.subscription_id}

    terms = ctx.services.catalog.plan_terms(subscription.get("plan_type"))
    await ctx.services.subscription_service.renew(subscription, now=ctx.received_at)

    ledger = await db_helper.add_credits(
        subscription["user_id"],
        terms.monthly_credits,
        TRANSACTION_SUBSCRIPTION_CREDIT,
        key,
        f"Subscription Renewal - {terms.monthly_credits} credits",
    )

    logger.info(
        "[DODO] subscription renewed: %s credits added to %s (applied=%s)",
        terms.monthly_credits,
        subscription["user_id"],
        ledger.applied,
    )
    return "processed", {
        "user_id": subscription["user_id"],
        "plan_type": terms.plan_type.value,
        "credits_added": terms.monthly_credits if ledger.applied else 0,
        "balance": ledger.new_balance,
    }


async def _handle_subscription_ended(ctx: DodoHandlerContext) -> HandlerResult:
    updated = await ctx.services.subscription_service.end(ctx.subscription_id, now=ctx.received_at)
    status = "processed" if updated else "ignored"
    return status, {"subscription_id": ctx.subscription_id, "cancelled": updated}


async def _handle_payment_completed(ctx: DodoHandlerContext) -> HandlerResult:
    db_helper = ctx.services.db_helper
    catalog = ctx.services.catalog

    if ctx.subscription_id:
        logger.info(
            "[DODO] payment %s belongs to subscription %s; credited by subscription events",
            ctx.payment_id,
            ctx.subscription_id,
        )
        return "ignored", {"reason": "subscription_payment", "subscription_id": ctx.subscription_id}

    credits = catalog.package_credits(ctx.product_id)
    if not credits:
        logger.info("[DODO] payment completed for non-credit product: %s", ctx.product_id)
        return "ignored", {"reason": "unknown_product", "product_id": ctx.product_id}

    if ctx.payment_id and await db_helper.has_completed_payment(ctx.payment_id):
        logger.info("[DODO] duplicate payment ignored: %s", ctx.payment_id)
        return "duplicate", {"payment_id": ctx.payment_id}

    user_id = await _resolve_user(ctx)
    if not user_id:
        logger.error(
            "[DODO] valid user id not found for payment %s (%s)",
            ctx.payment_id,
            ctx.customer_email,
        )
        await _record_unresolved(ctx, "user_not_found", credits=credits)
        return "unresolved", {"reason": "user_not_found"}

    ledger = await db_helper.add_credits(
        user_id,
        credits,
        TRANSACTION_PURCHASE,
        ctx.payment_id,
        f"Purchased {credits} credits",
    )

    amount_inr = catalog.package_price(credits)
    if amount_inr is None:
        amount_inr = ctx.data.total_amount / 100 if ctx.data.total_amount else 0

    history_recorded = False
    if ledger.applied or ctx.payment_id:
        history_recorded = await _append_history(
            ctx,
            {
                "user_id": user_id,
                "payment_type": "credits",
                "amount_inr": amount_inr,
                "status": "completed",
                "dodo_payment_id": ctx.payment_id,
                "credits_purchased": credits,
                "payment_method": ctx.data.payment_method or settings.DEFAULT_PAYMENT_METHOD,
            },
        )

    logger.info(
        "[DODO] credit purchase completed: %s credits for %s (applied=%s)",
        credits,
        ctx.customer_email,
        ledger.applied,
    )
    return "processed", {
        "user_id": user_id,
        "credits_added": credits if ledger.applied else 0,
        "balance": ledger.new_balance,
        "history_recorded": history_recorded,
    }


async def _handle_payment_failed(ctx: DodoHandlerContext) -> HandlerResult:
    catalog = ctx.services.catalog

    if ctx.payment_id and await ctx.services.db_helper.has_failed_payment(ctx.payment_id):
        logger.info("[DODO] duplicate payment failure ignored: %s", ctx.payment_id)
        return "duplicate", {"payment_id": ctx.payment_id}

    user_id = await _resolve_user(ctx)
    if not user_id:
        logger.warning(
            "[DODO] failed payment %s recorded under sentinel user (%s)",
            ctx.payment_id,
            ctx.customer_email,
        )
        user_id = settings.UNKNOWN_USER_ID

    is_subscription = catalog.is_plan_product(ctx.product_id) or bool(ctx.subscription_id)
    entry: Dict[str, Any] = {
        "user_id": user_id,
        "payment_type": "subscription" if is_subscription else "credits",
        "amount_inr": 0,
        "status": "failed",
        "dodo_payment_id": ctx.payment_id,
        "payment_method": ctx.data.payment_method or settings.DEFAULT_PAYMENT_METHOD,
        "metadata": {
            "error": ctx.data.failure_message,
            "customer_id": ctx.customer_id,
            "customer_email": ctx.customer_email,
            "product_id": ctx.product_id,
            "subscription_id": ctx.subscription_id,
        },
    }
    if catalog.is_plan_product(ctx.product_id):
        entry["plan_type"] = catalog.plan_for_product(ctx.product_id).plan_type.value
    else:
        package_credits = catalog.package_credits(ctx.product_id)
        if package_credits:
            entry["credits_purchased"] = package_credits

    recorded = await _append_history(ctx, entry)
    logger.info("[DODO] payment failed for %s: %s", ctx.customer_email, ctx.data.failure_message)
    return "processed", {"user_id": user_id, "history_recorded": recorded}


async def _handle_unknown_event(ctx: DodoHandlerContext) -> HandlerResult:
    logger.info("[DODO] unhandled event type: %s", ctx.event_type)
    return "skipped", {}


HANDLER_MAP: Dict[EventKind, HandlerFunc] = {
    EventKind.SUBSCRIPTION_ACTIVATED: _handle_subscription_activated,
    EventKind.SUBSCRIPTION_RENEWED: _handle_subscription_renewed,
    EventKind.SUBSCRIPTION_ENDED: _handle_subscription_ended,
    EventKind.PAYMENT_COMPLETED: _handle_payment_completed,
    EventKind.PAYMENT_FAILED: _handle_payment_failed,
    EventKind.UNKNOWN: _handle_unknown_event,
}

PAYMENT_ID_EVENTS = {
    EventKind.SUBSCRIPTION_ACTIVATED,
    EventKind.PAYMENT_COMPLETED,
    EventKind.PAYMENT_FAILED,
}


async def process_dodo_payload(
    payload: WebhookPayload,
    services: WebhookServices,
    *,
    webhook_id: Optional[str] = None,
    received_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Route one parsed webhook to its handler and summarise what happened"""

    data = payload.data
    kind = payload.kind
    context = DodoHandlerContext(
        event_type=payload.type,
        kind=kind,
        data=data,
        services=services,
        webhook_id=webhook_id,
        received_at=received_at or datetime.now(timezone.utc),
        payment_id=data.payment_id,
        subscription_id=data.subscription_id,
        product_id=data.resolved_product_id,
        customer_email=data.email,
        customer_id=data.resolved_customer_id,
    )

    logger.info(
        "[DODO] event=%s kind=%s payment_id=%s subscription_id=%s product_id=%s has_email=%s webhook_id=%s",
        payload.type,
        kind.value,
        context.payment_id,
        context.subscription_id,
        context.product_id,
        bool(context.customer_email),
        webhook_id,
    )

    if kind in PAYMENT_ID_EVENTS and not context.payment_id:
        logger.warning("[DODO] %s payload missing payment_id; idempotency limited", payload.type)

    status, results = await HANDLER_MAP[kind](context)

    return {
        "kind": kind.value,
        "status": status,
        "duplicate": status == "duplicate",
        "processed": results,
    }


@router.get("/dodo")
async def dodo_webhook_get():
    return success_response(data={"ok": True})


@router.post("/dodo")
async def dodo_webhook(
    request: Request,
    webhook_id: Optional[str] = Header(default=None, alias="webhook-id"),
    webhook_timestamp: Optional[str] = Header(default=None, alias="webhook-timestamp"),
    webhook_signature: Optional[str] = Header(default=None, alias="webhook-signature"),
    services: WebhookServices = Depends(get_webhook_services),
):
    raw = await request.body()
    logger.info(
        "[DODO] webhook received: len=%s, has_signature=%s",
        len(raw),
        bool(webhook_signature),
    )

    if not _verify_signature(raw, webhook_id, webhook_timestamp, webhook_signature):
        raise SignatureException()

    payload = parse_webhook_payload(raw)

    try:
        outcome = await process_dodo_payload(payload, services, webhook_id=webhook_id)
    except BusinessException:
        raise
    except Exception as e:
        logger.exception(
            "[DODO] processing failed: event=%s payment_id=%s subscription_id=%s error=%s",
            payload.type,
            payload.data.payment_id,
            payload.data.subscription_id,
            e,
        )
        return render_error(500, "internal server error", "INTERNAL_SERVER_ERROR", event=payload.type)

    return JSONResponse(
        content=success_response(event=payload.type, data=outcome).model_dump(exclude_none=True)
    )


legacy_router.add_api_route("/webhook", dodo_webhook, methods=["POST"])
