"""Payment provider webhook.

Razorpay signs the raw request body with HMAC-SHA256 using the webhook
secret and sends the hex digest in X-Razorpay-Signature.
"""

import hashlib
import hmac
import json
from typing import Any

import structlog
from fastapi import APIRouter, Header, HTTPException, Request, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storymeter.config import settings
from storymeter.database.models import Payment
from storymeter.dependencies import DbSession
from storymeter.exceptions import (
    InvalidWebhookSignatureError,
    UnknownPlanError,
    UserNotFoundError,
)
from storymeter.middleware.rate_limit import RATE_LIMIT_WEBHOOK, limiter
from storymeter.services.subscription import upgrade_user_subscription

logger = structlog.get_logger()

router = APIRouter(prefix="/subscription", tags=["webhooks"])


def verify_webhook_signature(body: bytes, signature: str, secret: str | None) -> None:
    """Raise InvalidWebhookSignatureError unless the signature matches the body."""
    if not secret:
        logger.error("PAYMENT_WEBHOOK_SECRET not configured - rejecting webhook")
        raise InvalidWebhookSignatureError
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise InvalidWebhookSignatureError


async def _get_payment(db: AsyncSession, provider_payment_id: str) -> Payment | None:
    result = await db.execute(
        select(Payment).where(Payment.provider_payment_id == provider_payment_id)
    )
    return result.scalar_one_or_none()


def _payment_details(entity: dict[str, Any]) -> dict[str, Any]:
    return {
        "amount": entity.get("amount") or 0,
        "currency": entity.get("currency") or "INR",
        "provider_order_id": entity.get("order_id"),
        "provider_payment_id": entity.get("id"),
    }


async def _handle_payment_captured(db: AsyncSession, entity: dict[str, Any]) -> None:
    payment_id = entity.get("id")
    if not payment_id:
        return

    existing = await _get_payment(db, payment_id)
    if existing and existing.status != "failed":
        logger.info("Payment already processed", payment_id=payment_id, status=existing.status)
        return

    notes = entity.get("notes") or {}
    user_id = notes.get("userId") or (existing.user_id if existing else None)
    plan_id = notes.get("plan") or (existing.plan_id if existing else None)
    if not user_id:
        logger.warning("Captured payment has no user", payment_id=payment_id)
        return
    if existing:
        logger.info("Captured payment after failed attempt", payment_id=payment_id, user_id=user_id)

    try:
        await upgrade_user_subscription(
            db, user_id, plan_id or "", _payment_details(entity), existing_payment=existing
        )
    except UnknownPlanError:
        logger.warning(
            "Captured payment for unknown plan, recording payment only",
            payment_id=payment_id,
            plan_id=plan_id,
        )
        if existing:
            existing.status = "completed"
        else:
            db.add(
                Payment(
                    user_id=user_id,
                    status="completed",
                    plan_id=plan_id or "unknown",
                    plan_name=plan_id or "Unknown Plan",
                    **_payment_details(entity),
                )
            )
        await db.commit()
    except UserNotFoundError:
        logger.warning("Captured payment for unknown user", payment_id=payment_id, user_id=user_id)


async def _handle_payment_failed(db: AsyncSession, entity: dict[str, Any]) -> None:
    payment_id = entity.get("id")
    notes = entity.get("notes") or {}
    user_id = notes.get("userId")
    logger.warning(
        "Payment failed",
        payment_id=payment_id,
        error_code=entity.get("error_code"),
        error_description=entity.get("error_description"),
    )
    if not payment_id or not user_id or await _get_payment(db, payment_id):
        return

    db.add(
        Payment(
            user_id=user_id,
            status="failed",
            plan_id=notes.get("plan") or "unknown",
            plan_name=notes.get("plan") or "Unknown Plan",
            **_payment_details(entity),
        )
    )
    await db.commit()


async def _handle_refund_created(db: AsyncSession, entity: dict[str, Any]) -> None:
    payment_id = entity.get("payment_id")
    payment = await _get_payment(db, payment_id) if payment_id else None
    if payment is None:
        logger.info("Refund for unknown payment", payment_id=payment_id)
        return
    payment.status = "refunded"
    await db.commit()
    logger.info("Payment refunded", payment_id=payment_id, user_id=payment.user_id)


@router.post("/webhook")
@limiter.limit(RATE_LIMIT_WEBHOOK)
async def payment_webhook(
    request: Request,
    response: Response,
    db: DbSession,
    x_razorpay_signature: str | None = Header(default=None),
) -> dict[str, bool]:
    """Consume payment provider events."""
    body = await request.body()
    if not x_razorpay_signature:
        raise HTTPException(status_code=400, detail="Missing signature")

    try:
        verify_webhook_signature(body, x_razorpay_signature, settings.PAYMENT_WEBHOOK_SECRET)
    except InvalidWebhookSignatureError:
        logger.warning("Invalid webhook signature")
        raise HTTPException(status_code=400, detail="Invalid signature") from None

    try:
        event = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid payload") from None
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    event_type = event.get("event")
    payload = event.get("payload")
    if payload is None:
        payload = {}
    elif not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    logger.info("Payment webhook received", event_type=event_type)

    try:
        if event_type == "payment.captured":
            await _handle_payment_captured(db, (payload.get("payment") or {}).get("entity") or {})
        elif event_type == "payment.failed":
            await _handle_payment_failed(db, (payload.get("payment") or {}).get("entity") or {})
        elif event_type == "refund.created":
            await _handle_refund_created(db, (payload.get("refund") or {}).get("entity") or {})
        elif event_type == "order.paid":
            order = (payload.get("order") or {}).get("entity") or {}
            logger.info("Order paid", order_id=order.get("id"))
        else:
            logger.info("Unhandled webhook event", event_type=event_type)
    except Exception as e:
        await db.rollback()
        logger.exception("Webhook processing failed", event_type=event_type, error=str(e))
        raise HTTPException(status_code=500, detail="Webhook processing failed") from e

    return {"received": True}
