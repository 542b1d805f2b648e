"""Checkout proxy logic.

Routes hand validated schemas to `CheckoutProxyService`, which talks to the
remote backend and to Stripe and shapes the result. When a charge succeeds at
Stripe but the backend cannot record it, the service raises `PartialFailure`
so the route answers 207 with a warning instead of an error: the customer has
already paid.
"""

from decimal import Decimal
from typing import Any
from uuid import uuid4

from cafepay.common.config import settings
from cafepay.common.errors import CheckoutError, PartialFailure, ProviderError, UpstreamError, ValidationError
from cafepay.common.logging import logger, order_id_ctx, payment_id_ctx
from cafepay.common.metrics import payment_failure_total, payment_success_total, recording_warnings_total
from cafepay.common.money import from_minor_units, quantize, to_decimal, to_minor_units
from cafepay.services.checkout_proxy.backend import BackendClient
from cafepay.services.checkout_proxy.schemas import (
    ConfirmPaymentRequest,
    CreatePaymentIntentRequest,
    PaymentIntentResponse,
    PaymentResult,
    QClubPaymentRequest,
    RecordPaymentRequest,
    RefundRequest,
)
from cafepay.services.checkout_proxy.stripe_gateway import StripeGateway, require_gateway

RECORDING_WARNING = "Payment successful, but recording in our system is pending. Please keep your receipt."
AMOUNT_MISMATCH = "The payment amount no longer matches your order total. Please refresh and try again."

# Stripe intent status -> status recorded with the backend.
INTENT_STATUS = {
    "succeeded": "completed",
    "requires_capture": "authorized",
    "processing": "processing",
}

# Intents that have already moved money and only need recording.
SETTLED_INTENT_STATUSES = ("succeeded", "requires_capture")

WEBHOOK_STATUS = {
    "payment_intent.succeeded": "completed",
    "payment_intent.amount_capturable_updated": "authorized",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
}


def _wire_amount(amount: Decimal) -> float:
    return float(quantize(amount))


def _wire_order_id(order_id: str) -> int | str:
    return int(order_id) if order_id.isdigit() else order_id


def _decline_reason(intent) -> str:
    error = intent.get("last_payment_error") or {}
    return error.get("message") or "Payment was not successful."


def _redirect_url(intent) -> str | None:
    next_action = intent.get("next_action") or {}
    redirect = next_action.get("redirect_to_url") or {}
    return redirect.get("url")


class CheckoutProxyService:
    """Validates, forwards, and normalizes checkout operations."""

    def __init__(self, backend: BackendClient, gateway: StripeGateway | None) -> None:
        self.backend = backend
        self.gateway = gateway

    async def get_order(self, order_id: str) -> dict[str, Any]:
        order_id_ctx.set(order_id)
        return await self.backend.get_order(order_id)

    async def _order_subtotal(self, order_id: str) -> Decimal:
        order = await self.get_order(order_id)
        try:
            return to_decimal(order["total_price"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("order_malformed order_id=%s", order_id)
            raise UpstreamError("Could not read the order total. Please try again.", detail=order) from exc

    async def create_payment_intent(self, req: CreatePaymentIntentRequest) -> PaymentIntentResponse:
        """Create a Stripe intent for the order total plus tip.

        The subtotal always comes from the backend; the client only sends the
        tip. Every call creates a fresh intent, so a tip change yields a new
        intent rather than an amended one.
        """

        gateway = require_gateway(self.gateway)
        subtotal = await self._order_subtotal(req.order_id)
        amount = quantize(subtotal + req.tip_amount)
        if amount <= 0:
            raise ValidationError("The order total must be greater than zero.")

        intent = await gateway.create_intent(
            amount_minor=to_minor_units(amount, req.currency),
            currency=req.currency,
            metadata={
                "order_id": req.order_id,
                "subtotal": quantize(subtotal),
                "tip_amount": quantize(req.tip_amount),
            },
            idempotency_key=f"intent-{req.order_id}-{uuid4().hex}",
            automatic_payment_methods=req.automatic_payment_methods,
        )
        payment_id_ctx.set(intent["id"])
        logger.info("payment_intent_created order_id=%s amount=%s currency=%s", req.order_id, amount, req.currency)
        return PaymentIntentResponse(
            client_secret=intent["client_secret"],
            payment_intent_id=intent["id"],
            amount=amount,
            currency=req.currency,
        )

    def _check_intent_amount(self, intent, expected: Decimal, currency: str) -> None:
        if intent.get("amount") != to_minor_units(expected, currency):
            logger.warning(
                "intent_amount_mismatch intent=%s intent_amount=%s expected=%s",
                intent.get("id"),
                intent.get("amount"),
                expected,
            )
            raise ValidationError(AMOUNT_MISMATCH)

    def _record_payload(
        self,
        *,
        order_id: str,
        payment_method: str,
        amount: Decimal,
        tip_amount: Decimal,
        currency: str,
        intent,
    ) -> dict[str, Any]:
        return {
            "order_id": _wire_order_id(order_id),
            "payment_method": payment_method,
            "amount": _wire_amount(amount),
            "tip_amount": _wire_amount(tip_amount),
            "currency": currency,
            "provider": "stripe",
            "provider_transaction_id": intent.get("id"),
            "provider_payment_method_id": intent.get("payment_method"),
            "status": INTENT_STATUS.get(intent.get("status"), "processing"),
        }

    async def _record_after_charge(self, operation: str, payload: dict[str, Any], fallback: dict[str, Any]) -> PaymentResult:
        """Record a charge that already happened at the provider."""

        try:
            data = await self.backend.create_payment(payload)
        except CheckoutError as exc:
            recording_warnings_total.labels(service=settings.service_name, operation=operation).inc()
            logger.error(
                "payment_recording_failed operation=%s provider_transaction_id=%s error=%s detail=%s",
                operation,
                payload.get("provider_transaction_id"),
                exc.message,
                exc.detail,
            )
            raise PartialFailure(RECORDING_WARNING, data=fallback) from exc
        payment_success_total.labels(service=settings.service_name, operation=operation).inc()
        return PaymentResult(status=payload["status"], data=data)

    async def _settle_intent(
        self,
        operation: str,
        intent,
        *,
        order_id: str,
        payment_method: str,
        amount: Decimal,
        tip_amount: Decimal,
        currency: str,
    ) -> PaymentResult:
        status = intent.get("status")
        if status == "requires_action":
            return PaymentResult(success=True, status="requires_action", redirect_url=_redirect_url(intent))
        if status not in INTENT_STATUS:
            payment_failure_total.labels(
                service=settings.service_name,
                operation=operation,
                error_type="declined",
            ).inc()
            raise ProviderError(_decline_reason(intent))

        payload = self._record_payload(
            order_id=order_id,
            payment_method=payment_method,
            amount=amount,
            tip_amount=tip_amount,
            currency=currency,
            intent=intent,
        )
        fallback = {
            "payment_id": intent.get("id"),
            "status": payload["status"],
            "total_amount": _wire_amount(amount + tip_amount),
        }
        return await self._record_after_charge(operation, payload, fallback)

    async def _settle_once(self, operation: str, intent, **order_fields: Any) -> PaymentResult:
        """Settle an intent that was confirmed before this request, recording it at most once.

        Covers the return from 3-D Secure and a resent record call: if the
        backend already holds a payment for the intent, that payment is returned.
        """

        if intent.get("status") in SETTLED_INTENT_STATUSES:
            try:
                recorded = await self.backend.find_payments(intent["id"])
            except CheckoutError as exc:
                logger.warning("recorded_payment_lookup_failed intent=%s error=%s", intent["id"], exc.message)
                recorded = []
            if recorded:
                logger.info("payment_already_recorded intent=%s payment_id=%s", intent["id"], recorded[0].get("payment_id"))
                return PaymentResult(status=recorded[0].get("status") or INTENT_STATUS[intent["status"]], data=recorded[0])
        return await self._settle_intent(operation, intent, **order_fields)

    async def confirm_payment(self, req: ConfirmPaymentRequest) -> PaymentResult:
        """Confirm a card-element intent with Stripe, then record it.

        An intent that was already confirmed (the customer is back from 3-D
        Secure) is recorded instead of being confirmed a second time.
        """

        gateway = require_gateway(self.gateway)
        order_id_ctx.set(req.order_id)
        payment_id_ctx.set(req.payment_intent_id)

        intent = await gateway.retrieve_intent(req.payment_intent_id)
        self._check_intent_amount(intent, req.amount + req.tip_amount, req.currency)
        if intent.get("status") == "canceled":
            raise ValidationError("This payment session has already been used. Please refresh and try again.")
        if intent.get("status") in SETTLED_INTENT_STATUSES:
            return await self._settle_once(
                "confirm",
                intent,
                order_id=req.order_id,
                payment_method=req.payment_method,
                amount=req.amount,
                tip_amount=req.tip_amount,
                currency=req.currency,
            )

        intent = await gateway.confirm_intent(req.payment_intent_id, req.payment_method_id)
        logger.info("payment_intent_confirmed status=%s method=%s", intent.get("status"), req.payment_method)
        return await self._settle_intent(
            "confirm",
            intent,
            order_id=req.order_id,
            payment_method=req.payment_method,
            amount=req.amount,
            tip_amount=req.tip_amount,
            currency=req.currency,
        )

    async def record_payment(self, req: RecordPaymentRequest) -> PaymentResult:
        """Record a browser-confirmed Stripe payment, or open a hosted page."""

        order_id_ctx.set(req.order_id)
        if req.provider == "ngenius":
            payload = {
                "order_id": _wire_order_id(req.order_id),
                "payment_method": req.payment_method,
                "amount": _wire_amount(req.amount),
                "tip_amount": _wire_amount(req.tip_amount),
                "currency": req.currency,
                "provider": "ngenius",
                "customer_email": req.customer_email,
                "customer_phone": req.customer_phone or "",
                "return_url": req.return_url,
            }
            data = await self.backend.create_payment(payload)
            if not data.get("hosted_payment_url"):
                logger.error("hosted_payment_url_missing order_id=%s", req.order_id)
                raise UpstreamError("No hosted payment page was returned. Please try again.", detail=data)
            payment_id_ctx.set(str(data.get("payment_id", "")))
            return PaymentResult(status="created", data=data, redirect_url=data["hosted_payment_url"])

        gateway = require_gateway(self.gateway)
        payment_id_ctx.set(req.provider_payment_id)
        intent = await gateway.retrieve_intent(req.provider_payment_id)
        self._check_intent_amount(intent, req.amount + req.tip_amount, req.currency)
        return await self._settle_once(
            "record",
            intent,
            order_id=req.order_id,
            payment_method=req.payment_method,
            amount=req.amount,
            tip_amount=req.tip_amount,
            currency=req.currency,
        )

    async def create_qclub_payment(self, req: QClubPaymentRequest, referer: str | None) -> dict[str, Any]:
        order_id_ctx.set(str(req.order_id))
        payload = {
            "order_id": req.order_id,
            "amount": _wire_amount(req.amount),
            "currency": req.currency,
            "tip_amount": _wire_amount(req.tip_amount),
            "metadata": {
                "return_url": referer or settings.public_base_url,
                "webhook_url": f"{self.backend.base_url}/payments/qclub/webhook",
            },
        }
        logger.info("qclub_payment_requested order_id=%s", req.order_id)
        return await self.backend.create_qclub_payment(payload)

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        payment_id_ctx.set(payment_id)
        return await self.backend.get_payment(payment_id)

    async def list_order_payments(self, order_id: str) -> list[dict[str, Any]]:
        order_id_ctx.set(order_id)
        return await self.backend.list_order_payments(order_id)

    async def find_payments(self, provider_transaction_id: str) -> list[dict[str, Any]]:
        return await self.backend.find_payments(provider_transaction_id)

    async def capture_payment(self, payment_id: str) -> dict[str, Any]:
        """Capture an authorized payment.

        Stripe authorizations are captured with Stripe first and then marked
        captured in the backend; other providers are captured by the backend.
        """

        payment_id_ctx.set(payment_id)
        payment = await self.backend.get_payment(payment_id)
        intent_id = payment.get("provider_transaction_id")
        if payment.get("provider") != "stripe" or not intent_id:
            return await self.backend.capture_payment(payment_id)

        gateway = require_gateway(self.gateway)
        intent = await gateway.capture_intent(intent_id)
        if intent.get("status") != "succeeded":
            raise ProviderError(_decline_reason(intent))
        logger.info("payment_captured provider=stripe intent=%s", intent_id)
        try:
            return await self.backend.capture_payment(payment_id, {"provider_captured": True})
        except CheckoutError as exc:
            recording_warnings_total.labels(service=settings.service_name, operation="capture").inc()
            logger.error("capture_recording_failed intent=%s error=%s detail=%s", intent_id, exc.message, exc.detail)
            raise PartialFailure(
                RECORDING_WARNING,
                data={"payment_id": payment_id, "status": "completed", "total_amount": payment.get("total_amount")},
            ) from exc

    async def refund(self, req: RefundRequest) -> PaymentResult:
        payment_id_ctx.set(req.payment_id)
        payload: dict[str, Any] = {"reason": req.reason}
        if req.amount is not None:
            payload["amount"] = _wire_amount(req.amount)

        if not req.provider_payment_id:
            data = await self.backend.refund_payment(req.payment_id, payload)
            return PaymentResult(status=data.get("status", "refunded"), data=data)

        gateway = require_gateway(self.gateway)
        amount_minor = to_minor_units(req.amount, req.currency) if req.amount is not None else None
        refund = await gateway.refund(
            req.provider_payment_id,
            amount_minor,
            idempotency_key=f"refund-{req.provider_payment_id}-{amount_minor or 'full'}",
        )
        payload.update(
            {
                "provider_refund_id": refund.get("id"),
                "amount": _wire_amount(from_minor_units(refund.get("amount", 0), req.currency)),
            }
        )
        logger.info("payment_refunded provider=stripe refund=%s", refund.get("id"))
        try:
            data = await self.backend.refund_payment(req.payment_id, payload)
        except CheckoutError as exc:
            recording_warnings_total.labels(service=settings.service_name, operation="refund").inc()
            logger.error("refund_recording_failed refund=%s error=%s detail=%s", refund.get("id"), exc.message, exc.detail)
            raise PartialFailure(
                "Refund issued, but recording in our system is pending.",
                data={"payment_id": req.payment_id, "status": "refunded", "refund_id": refund.get("id")},
            ) from exc
        return PaymentResult(status="refunded", data=data)

    async def handle_stripe_webhook(self, payload: bytes, signature: str | None) -> bool:
        """Forward intent status changes to the backend.

        Returns False for event types that carry no status change. Backend
        failures propagate so Stripe redelivers the event.
        """

        event = require_gateway(self.gateway).construct_event(payload, signature, settings.stripe_webhook_secret)
        status = WEBHOOK_STATUS.get(event["type"])
        if status is None:
            return False
        intent = event["data"]["object"]
        payment_id_ctx.set(intent["id"])
        await self.backend.update_provider_status(
            {
                "provider": "stripe",
                "provider_transaction_id": intent["id"],
                "status": status,
                "event_id": event["id"],
                "error_message": (intent.get("last_payment_error") or {}).get("message"),
            }
        )
        logger.info("webhook_status_forwarded event_type=%s status=%s", event["type"], status)
        return True
