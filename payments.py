"""
Payment processor adapters.

`StripePaymentProcessor` talks to Stripe; `MockPaymentProcessor` is used when
STRIPE_SECRET_KEY is not configured.
"""

import json
import logging
import uuid
from typing import Any, Dict, Optional, Protocol, Union

import stripe
from pydantic import BaseModel

from errors import AuthError, UpstreamError

logger = logging.getLogger(__name__)


class ChargeResult(BaseModel):
    confirmed: bool
    charge_id: Optional[str] = None
    method: Optional[str] = None
    receipt_url: Optional[str] = None


class RefundResult(BaseModel):
    refund_id: str
    status: str
    amount: float


class PaymentProcessor(Protocol):
    def charge(self, amount: float, currency: str, source: str) -> ChargeResult: ...

    def refund(self, charge_id: str, amount: float, currency: str, reason: Optional[str] = None) -> RefundResult: ...


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class StripePaymentProcessor:
    def __init__(self, api_key: str):
        self.api_key = api_key

    def charge(self, amount: float, currency: str, source: str) -> ChargeResult:
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=to_minor_units(amount),
                currency=currency.lower(),
                payment_method=source,
                payment_method_types=["card"],
                confirm=True,
                idempotency_key=str(uuid.uuid4()),
            )
        except stripe.CardError as e:
            logger.warning("Card declined: %s", e.user_message)
            raise UpstreamError(e.user_message or "Payment declined", e.code or "PAYMENT_FAILED", 402)
        except stripe.StripeError as e:
            logger.error("Stripe charge failed: %s", e)
            raise UpstreamError("Payment processing failed", "PAYMENT_PROCESSING_ERROR")
        return ChargeResult(
            confirmed=intent.status == "succeeded",
            charge_id=intent.id,
            method="card",
        )

    def refund(self, charge_id: str, amount: float, currency: str, reason: Optional[str] = None) -> RefundResult:
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=charge_id,
                amount=to_minor_units(amount),
                metadata={"reason": reason or "Customer requested refund"},
                idempotency_key=str(uuid.uuid4()),
            )
        except stripe.StripeError as e:
            logger.error("Stripe refund failed: %s", e)
            raise UpstreamError("Refund processing failed", "REFUND_PROCESSING_ERROR")
        return RefundResult(refund_id=refund.id, status=refund.status, amount=amount)


class MockPaymentProcessor:
    """Confirms every charge except those made with the source "decline"."""

    def __init__(self):
        self.charges = []
        self.refunds = []

    def charge(self, amount: float, currency: str, source: str) -> ChargeResult:
        charge_id = f"mock_{uuid.uuid4().hex[:12]}"
        self.charges.append({"id": charge_id, "amount": amount, "currency": currency, "source": source})
        if source == "decline":
            return ChargeResult(confirmed=False, charge_id=charge_id)
        return ChargeResult(confirmed=True, charge_id=charge_id, method="card")

    def refund(self, charge_id: str, amount: float, currency: str, reason: Optional[str] = None) -> RefundResult:
        refund_id = f"mock_re_{uuid.uuid4().hex[:12]}"
        self.refunds.append({"id": refund_id, "charge_id": charge_id, "amount": amount, "reason": reason})
        return RefundResult(refund_id=refund_id, status="succeeded", amount=amount)


WEBHOOK_TOLERANCE_SECONDS = 300


def verify_webhook(payload: Union[bytes, str], signature: Optional[str], secret: Optional[str]) -> Dict[str, Any]:
    """
    Check the Stripe-Signature header of a payment webhook and return the event.

    Signatures use the Stripe scheme: `t=<timestamp>,v1=<hmac-sha256>`.
    """
    if not secret:
        logger.error("WEBHOOK_SECRET not set, rejecting payment webhook")
        raise AuthError("Webhook signing is not configured", "WEBHOOK_NOT_CONFIGURED")
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    try:
        stripe.WebhookSignature.verify_header(payload, signature, secret, WEBHOOK_TOLERANCE_SECONDS)
    except stripe.SignatureVerificationError as e:
        logger.warning("Rejected payment webhook: %s", e)
        raise AuthError("Invalid webhook signature", "INVALID_SIGNATURE")
    try:
        event = json.loads(payload)
    except ValueError:
        raise AuthError("Malformed webhook payload", "INVALID_SIGNATURE")
    if not isinstance(event, dict):
        raise AuthError("Malformed webhook payload", "INVALID_SIGNATURE")
    return event


def build_processor(secret_key: Optional[str]) -> PaymentProcessor:
    if secret_key:
        return StripePaymentProcessor(secret_key)
    logger.info("STRIPE_SECRET_KEY not set, using mock payment processor")
    return MockPaymentProcessor()
