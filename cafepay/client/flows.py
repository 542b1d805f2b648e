"""Provider flows behind one interface.

Each flow knows how to open a payment session for a charge and how to confirm
it. They share the tip/total calculation and the session state machine and
differ only in where confirmation happens:

* card-element: the proxy confirms the Stripe intent with a payment method id.
* payment-element: Stripe's element confirms in the page; the proxy verifies
  and records the intent.
* hosted-redirect: the customer is sent to a provider page (N-Genius, Q-Club)
  and the result is reconciled on return.
"""

from typing import Any

from cafepay.client.api import ProxyClient
from cafepay.client.errors import NetworkError
from cafepay.client.order import Order
from cafepay.client.payment_session import PaymentSession, SubmitOutcome
from cafepay.client.totals import ChargeBreakdown
from cafepay.common.errors import ValidationError
from cafepay.common.logging import logger
from cafepay.common.money import quantize, to_decimal

TOTAL_CHANGED = "Your order total has changed. Please reload the page."


def _outcome(result: dict[str, Any]) -> SubmitOutcome:
    status = result.get("status")
    if status == "requires_action":
        return SubmitOutcome("redirect", redirect_url=result.get("redirect_url"))
    if status not in ("completed", "authorized"):
        status = "processing"
    return SubmitOutcome(status, data=result.get("data") or {}, warning=result.get("warning"))


class ProviderFlow:
    """Base provider flow."""

    variant = "base"

    async def open(
        self,
        api: ProxyClient,
        order: Order,
        charge: ChargeBreakdown,
        *,
        payment_method: str,
        currency: str,
        generation: int,
    ) -> PaymentSession:
        raise NotImplementedError

    async def confirm(self, api: ProxyClient, session: PaymentSession, method_details: dict[str, Any]) -> SubmitOutcome:
        raise NotImplementedError

    async def resume(self, api: ProxyClient, session: PaymentSession) -> SubmitOutcome | None:
        """Settle a session the customer returned to after a redirect; None if the flow has no such step."""

        return None

    def _session(self, order: Order, charge: ChargeBreakdown, **kwargs) -> PaymentSession:
        return PaymentSession(
            variant=self.variant,
            order_id=str(order.id),
            amount=charge.total,
            tip_amount=charge.tip,
            **kwargs,
        )


class CardElementFlow(ProviderFlow):
    variant = "card-element"
    automatic_payment_methods = False

    async def open(self, api, order, charge, *, payment_method, currency, generation):
        resp = await api.create_payment_intent(
            str(order.id),
            currency,
            float(charge.tip),
            automatic_payment_methods=self.automatic_payment_methods,
        )
        if quantize(to_decimal(resp["amount"])) != charge.total:
            # The backend subtotal differs from the order we rendered.
            logger.warning("intent_amount_differs local=%s proxy=%s", charge.total, resp["amount"])
            raise ValidationError(TOTAL_CHANGED)
        return self._session(
            order,
            charge,
            payment_method=payment_method,
            currency=currency,
            provider_ref=resp["paymentIntentId"],
            client_secret=resp["clientSecret"],
            generation=generation,
        )

    async def confirm(self, api, session, method_details):
        payment_method_id = method_details.get("payment_method_id")
        if not payment_method_id:
            raise ValidationError("Please enter your payment details.")
        result = await api.confirm_payment(
            {
                "payment_intent_id": session.provider_ref,
                "payment_method_id": payment_method_id,
                "order_id": session.order_id,
                "payment_method": session.payment_method,
                "amount": float(session.subtotal),
                "tip_amount": float(session.tip_amount),
                "currency": session.currency,
            }
        )
        return _outcome(result)

    async def resume(self, api, session):
        # The intent was confirmed outside the proxy; it is recorded at most once.
        result = await api.record_payment(
            {
                "order_id": session.order_id,
                "payment_method": session.payment_method,
                "amount": float(session.subtotal),
                "tip_amount": float(session.tip_amount),
                "currency": session.currency,
                "provider": "stripe",
                "provider_payment_id": session.provider_ref,
            }
        )
        return _outcome(result)


class PaymentElementFlow(CardElementFlow):
    variant = "payment-element"
    automatic_payment_methods = True

    async def confirm(self, api, session, method_details):
        return await self.resume(api, session)


class HostedRedirectFlow(ProviderFlow):
    """N-Genius hosted payment page."""

    variant = "hosted-redirect"

    def __init__(self, return_url: str | None = None) -> None:
        self.return_url = return_url

    async def open(self, api, order, charge, *, payment_method, currency, generation):
        result = await api.record_payment(
            {
                "order_id": str(order.id),
                "payment_method": payment_method,
                "amount": float(charge.subtotal),
                "tip_amount": float(charge.tip),
                "currency": currency,
                "provider": "ngenius",
                "customer_email": order.customer_email,
                "customer_phone": order.customer_phone,
                "return_url": self.return_url,
            }
        )
        data = result.get("data") or {}
        return self._session(
            order,
            charge,
            payment_method=payment_method,
            currency=currency,
            provider_ref=str(data["payment_id"]),
            payment_id=str(data["payment_id"]),
            redirect_url=result.get("redirect_url") or data.get("hosted_payment_url"),
            generation=generation,
        )

    async def confirm(self, api, session, method_details):
        return SubmitOutcome("redirect", data={"payment_id": session.payment_id}, redirect_url=session.redirect_url)


class QClubFlow(HostedRedirectFlow):
    """Q-Club hosted payment, charged in its own currency."""

    def __init__(self, return_url: str | None = None, currency: str = "IQD") -> None:
        super().__init__(return_url)
        self.currency = currency

    async def open(self, api, order, charge, *, payment_method, currency, generation):
        data = await api.create_qclub_payment(
            {
                "order_id": int(order.id),
                "amount": float(charge.subtotal),
                "currency": self.currency,
                "tip_amount": float(charge.tip),
            }
        )
        redirect_url = data.get("payment_url") or data.get("hosted_payment_url") or data.get("redirect_url")
        if not redirect_url or not data.get("payment_id"):
            raise NetworkError("No payment page was returned. Please try again.", detail=data)
        return self._session(
            order,
            charge,
            payment_method=payment_method,
            currency=self.currency,
            provider_ref=str(data["payment_id"]),
            payment_id=str(data["payment_id"]),
            redirect_url=redirect_url,
            generation=generation,
        )


def default_flows(return_url: str | None = None, qclub_currency: str = "IQD") -> dict[str, ProviderFlow]:
    return {
        "stripe": CardElementFlow(),
        "stripe-element": PaymentElementFlow(),
        "ngenius": HostedRedirectFlow(return_url),
        "qclub": QClubFlow(return_url, qclub_currency),
    }
