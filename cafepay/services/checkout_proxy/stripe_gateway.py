"""Stripe Payment Intents integration used by the proxy.

The SDK is synchronous, so every call runs in a worker thread. Network retries
are disabled: confirm, capture and refund are never re-sent automatically, and
money-moving calls carry an idempotency key.
"""

import asyncio
from functools import lru_cache
from time import perf_counter
from typing import Any, Callable

import stripe

from cafepay.common.config import settings
from cafepay.common.errors import ProviderError, ProviderNotConfigured, UpstreamError, ValidationError
from cafepay.common.logging import logger
from cafepay.common.metrics import upstream_request_duration_seconds, upstream_requests_total

GENERIC_DECLINE = "The payment could not be processed. Please try another payment method."


class StripeGateway:
    """Stripe-backed payment intent operations."""

    def __init__(self, *, secret_key: str) -> None:
        self._secret_key = secret_key

    @staticmethod
    def _stringify_metadata(metadata: dict[str, Any]) -> dict[str, str]:
        return {str(key): str(value) for key, value in metadata.items() if value is not None}

    def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **params: Any) -> Any:
        start = perf_counter()
        try:
            result = fn(*args, api_key=self._secret_key, **params)
        except stripe.CardError as exc:
            self._count(operation, "declined")
            logger.warning("stripe_declined operation=%s code=%s", operation, exc.code)
            raise ProviderError(exc.user_message or "Your card was declined.", detail=str(exc), code=exc.code) from exc
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.AuthenticationError) as exc:
            self._count(operation, "error")
            logger.error("stripe_unavailable operation=%s error=%r", operation, exc)
            raise UpstreamError(
                "The payment provider is temporarily unavailable. Please try again.",
                detail=str(exc),
            ) from exc
        except stripe.StripeError as exc:
            self._count(operation, "rejected")
            logger.warning("stripe_rejected operation=%s code=%s error=%s", operation, exc.code, exc)
            raise ProviderError(exc.user_message or GENERIC_DECLINE, detail=str(exc), code=exc.code) from exc
        finally:
            upstream_request_duration_seconds.labels(
                service=settings.service_name,
                dependency="stripe",
            ).observe(max(0.0, perf_counter() - start))
        self._count(operation, "ok")
        return result

    @staticmethod
    def _count(operation: str, outcome: str) -> None:
        upstream_requests_total.labels(
            service=settings.service_name,
            dependency=f"stripe.{operation}",
            outcome=outcome,
        ).inc()

    async def create_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        metadata: dict[str, Any],
        idempotency_key: str,
        automatic_payment_methods: bool = False,
        capture_method: str = "automatic",
    ) -> stripe.PaymentIntent:
        params: dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency.lower(),
            "metadata": self._stringify_metadata(metadata),
            "capture_method": capture_method,
            "idempotency_key": idempotency_key,
        }
        if automatic_payment_methods:
            params["automatic_payment_methods"] = {"enabled": True}
        else:
            params["payment_method_types"] = ["card"]
        return await asyncio.to_thread(self._call, "create_intent", stripe.PaymentIntent.create, **params)

    async def retrieve_intent(self, payment_intent_id: str) -> stripe.PaymentIntent:
        return await asyncio.to_thread(self._call, "retrieve_intent", stripe.PaymentIntent.retrieve, payment_intent_id)

    async def confirm_intent(self, payment_intent_id: str, payment_method_id: str) -> stripe.PaymentIntent:
        return await asyncio.to_thread(
            self._call,
            "confirm_intent",
            stripe.PaymentIntent.confirm,
            payment_intent_id,
            payment_method=payment_method_id,
            idempotency_key=f"confirm-{payment_intent_id}-{payment_method_id}",
        )

    async def capture_intent(self, payment_intent_id: str) -> stripe.PaymentIntent:
        return await asyncio.to_thread(
            self._call,
            "capture_intent",
            stripe.PaymentIntent.capture,
            payment_intent_id,
            idempotency_key=f"capture-{payment_intent_id}",
        )

    async def refund(self, payment_intent_id: str, amount_minor: int | None, idempotency_key: str) -> stripe.Refund:
        params: dict[str, Any] = {"payment_intent": payment_intent_id, "idempotency_key": idempotency_key}
        if amount_minor is not None:
            params["amount"] = amount_minor
        return await asyncio.to_thread(self._call, "refund", stripe.Refund.create, **params)

    def construct_event(self, payload: bytes, signature: str | None, secret: str) -> stripe.Event:
        if not secret:
            raise ProviderNotConfigured("Stripe webhooks are not configured.")
        try:
            return stripe.Webhook.construct_event(payload, signature, secret)
        except ValueError as exc:
            raise ValidationError("Invalid payload", detail=str(exc)) from exc
        except stripe.SignatureVerificationError as exc:
            raise ValidationError("Invalid signature", detail=str(exc)) from exc


def configure_stripe(timeout_seconds: float) -> None:
    """Process-wide SDK settings: bounded timeout and no automatic retries."""

    stripe.max_network_retries = 0
    stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)


@lru_cache()
def get_stripe_gateway() -> StripeGateway | None:
    """Lazily build the Stripe gateway, if a secret key is configured."""

    if not settings.stripe_secret_key:
        return None
    configure_stripe(settings.stripe_timeout_seconds)
    return StripeGateway(secret_key=settings.stripe_secret_key)


def require_gateway(gateway: StripeGateway | None) -> StripeGateway:
    if gateway is None:
        raise ProviderNotConfigured("Card payments are not available right now.")
    return gateway
