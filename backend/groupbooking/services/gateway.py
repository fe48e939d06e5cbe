"""Payment gateway adapter.

The settlement code only talks to ``PaymentGateway``; ``StripeGateway`` is the
production implementation (manual-capture PaymentIntents created as direct
charges on the organizer's connected account).

Errors are split in two:
- ``GatewayError``: the gateway answered and refused the operation.
- ``GatewayUnavailable``: timeout or connection failure. The outcome is
  unknown and must be resolved by the next webhook or sweep, never assumed
  failed.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import stripe

from groupbooking.config import settings

logger = logging.getLogger(__name__)

# Intent statuses (Stripe vocabulary, shared by every adapter).
REQUIRES_PAYMENT_METHOD = "requires_payment_method"
REQUIRES_CONFIRMATION = "requires_confirmation"
REQUIRES_ACTION = "requires_action"
REQUIRES_CAPTURE = "requires_capture"
PROCESSING = "processing"
SUCCEEDED = "succeeded"
CANCELED = "canceled"

# Hold exists or may still be placed; releasing it means cancelling the intent.
RELEASABLE_STATUSES = frozenset({
    REQUIRES_PAYMENT_METHOD,
    REQUIRES_CONFIRMATION,
    REQUIRES_ACTION,
    REQUIRES_CAPTURE,
})
# Statuses the client fast path accepts as "guest authorized".
AUTHORIZED_STATUSES = frozenset({REQUIRES_CAPTURE, SUCCEEDED, PROCESSING})

# Webhook event types.
HOLD_PLACED = "payment_intent.amount_capturable_updated"
CAPTURED = "payment_intent.succeeded"
AUTHORIZATION_FAILED = "payment_intent.payment_failed"
INTENT_CANCELED = "payment_intent.canceled"
CHARGE_REFUNDED = "charge.refunded"
ACCOUNT_UPDATED = "account.updated"


class GatewayError(Exception):
    """The gateway refused the operation."""


class GatewayUnavailable(GatewayError):
    """Timeout or connection failure; the operation may or may not have happened."""


class InvalidSignature(Exception):
    """Webhook payload failed signature verification."""


@dataclass(frozen=True)
class Authorization:
    reference: str
    client_secret: str


@dataclass(frozen=True)
class IntentState:
    reference: str
    status: str
    charge_ref: Optional[str] = None


@dataclass(frozen=True)
class GatewayEvent:
    type: str
    reference: Optional[str] = None      # authorization reference, when the event is about one
    charge_ref: Optional[str] = None
    account_id: Optional[str] = None
    account_ready: bool = False          # account.updated: charges, payouts and details all done
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


class PaymentGateway(ABC):
    @abstractmethod
    def authorize(
        self,
        amount_cents: int,
        application_fee_cents: int,
        account_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> Authorization: ...

    @abstractmethod
    def retrieve(self, reference: str, account_id: str) -> IntentState: ...

    # Returns the charge reference when known. Already captured is success.
    @abstractmethod
    def capture(self, reference: str, account_id: str, idempotency_key: str) -> Optional[str]: ...

    # Already cancelled is success.
    @abstractmethod
    def release(self, reference: str, account_id: str, reason: str) -> None: ...

    @abstractmethod
    def refund(self, reference: str, account_id: str, charge_ref: str, reason: str) -> None: ...

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent: ...


def _wrap(exc: stripe.StripeError) -> GatewayError:
    if isinstance(exc, stripe.APIConnectionError):
        return GatewayUnavailable(str(exc))
    return GatewayError(getattr(exc, "user_message", None) or str(exc))


class StripeGateway(PaymentGateway):
    """Stripe-backed gateway using manual capture on connected accounts."""

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None,
                 currency: Optional[str] = None):
        self._api_key = api_key or settings.STRIPE_SECRET_KEY
        self._webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self._currency = currency or settings.CURRENCY

    def authorize(self, amount_cents, application_fee_cents, account_id, metadata, idempotency_key):
        try:
            pi = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=self._currency,
                capture_method="manual",
                application_fee_amount=application_fee_cents,
                automatic_payment_methods={"enabled": True},
                metadata=metadata,
                api_key=self._api_key,
                stripe_account=account_id,
                idempotency_key=f"authorize-{idempotency_key}",
            )
        except stripe.StripeError as e:
            raise _wrap(e) from e
        return Authorization(reference=pi.id, client_secret=pi.client_secret)

    def retrieve(self, reference, account_id):
        try:
            pi = stripe.PaymentIntent.retrieve(
                reference, api_key=self._api_key, stripe_account=account_id,
            )
        except stripe.StripeError as e:
            raise _wrap(e) from e
        return IntentState(reference=pi.id, status=pi.status, charge_ref=pi.latest_charge)

    def capture(self, reference, account_id, idempotency_key):
        try:
            pi = stripe.PaymentIntent.capture(
                reference,
                api_key=self._api_key,
                stripe_account=account_id,
                idempotency_key=f"capture-{idempotency_key}",
            )
            return pi.latest_charge
        except stripe.InvalidRequestError as e:
            state = self.retrieve(reference, account_id)
            if state.status == SUCCEEDED:
                logger.info("Capture of %s reported already captured", reference)
                return state.charge_ref
            raise _wrap(e) from e
        except stripe.StripeError as e:
            raise _wrap(e) from e

    def release(self, reference, account_id, reason):
        try:
            stripe.PaymentIntent.cancel(
                reference,
                cancellation_reason=reason,
                api_key=self._api_key,
                stripe_account=account_id,
            )
        except stripe.InvalidRequestError as e:
            state = self.retrieve(reference, account_id)
            if state.status == CANCELED:
                logger.info("Release of %s reported already cancelled", reference)
                return
            raise _wrap(e) from e
        except stripe.StripeError as e:
            raise _wrap(e) from e

    def refund(self, reference, account_id, charge_ref, reason):
        try:
            stripe.Refund.create(
                charge=charge_ref,
                reason=reason,
                api_key=self._api_key,
                stripe_account=account_id,
                idempotency_key=f"refund-{reference}",
            )
        except stripe.StripeError as e:
            raise _wrap(e) from e

    def parse_webhook(self, payload, signature):
        if not signature:
            raise InvalidSignature("Missing stripe-signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self._webhook_secret,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise InvalidSignature(str(e)) from e
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise InvalidSignature("Invalid JSON") from e
        return event_from_payload(event)


def event_from_payload(event: dict[str, Any]) -> GatewayEvent:
    """Normalize a Stripe event body into a ``GatewayEvent``."""
    event_type = event.get("type", "")
    obj = event.get("data", {}).get("object", {}) or {}
    account_id = event.get("account")

    if event_type == ACCOUNT_UPDATED:
        ready = bool(obj.get("charges_enabled") and obj.get("payouts_enabled")
                     and obj.get("details_submitted"))
        return GatewayEvent(type=event_type, account_id=obj.get("id"), account_ready=ready, raw=event)
    if event_type == CHARGE_REFUNDED:
        return GatewayEvent(type=event_type, reference=obj.get("payment_intent"),
                            charge_ref=obj.get("id"), account_id=account_id, raw=event)
    if event_type.startswith("payment_intent."):
        return GatewayEvent(type=event_type, reference=obj.get("id"),
                            charge_ref=obj.get("latest_charge"), account_id=account_id, raw=event)
    return GatewayEvent(type=event_type, account_id=account_id, raw=event)


_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    """FastAPI dependency; overridden in tests."""
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
