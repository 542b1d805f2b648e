"""Checkout session: the single owner of order, tip and payment session state.

All mutation goes through this object so two rules can be enforced:

* at most one payment session is active, and creating one supersedes the
  previous; responses from superseded requests are discarded by generation tag.
* while a submission or session refresh is in flight, further submissions are
  rejected, not queued.
"""

import asyncio
from typing import Any, Awaitable

from pydantic import ValidationError as SchemaError

from cafepay.client.api import ProxyClient
from cafepay.client.errors import NetworkError, OrderNotFound, SessionBusy, StaleSession
from cafepay.client.flows import ProviderFlow, default_flows
from cafepay.client.order import Order
from cafepay.client.payment_session import PaymentSession, SubmitOutcome
from cafepay.client.reconcile import PENDING_MESSAGE, ReconcileResult, StatusReconciler
from cafepay.client.totals import ChargeBreakdown, TipSelection, compute_charge
from cafepay.common.errors import CheckoutError, NotFoundError, ProviderError
from cafepay.common.logging import logger, order_id_ctx
from cafepay.common.state_machine import (
    AUTHORIZED,
    CANCELED,
    COMPLETED,
    CREATED,
    FAILED,
    SUPERSEDED,
)

DEFAULT_DEBOUNCE_SECONDS = 0.5


class CheckoutSession:
    def __init__(
        self,
        api: ProxyClient,
        *,
        currency: str = "USD",
        flows: dict[str, ProviderFlow] | None = None,
        reconciler: StatusReconciler | None = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self.api = api
        self.currency = currency
        self.flows = flows if flows is not None else default_flows()
        self.reconciler = reconciler or StatusReconciler(api)
        self.debounce_seconds = debounce_seconds
        self.order: Order | None = None
        self.tip = TipSelection()
        self.active: PaymentSession | None = None
        self._generation = 0
        self._create_lock = asyncio.Lock()
        self._submitting = False
        self._refresh_task: asyncio.Task | None = None

    @property
    def busy(self) -> bool:
        """True while a submission or session refresh is in flight; UI controls stay disabled."""

        return self._submitting or self._create_lock.locked()

    async def load_order(self, order_id: str) -> Order:
        order_id_ctx.set(str(order_id))
        self.order = None
        self._invalidate_active()
        try:
            raw = await self.api.get_order(order_id)
        except NotFoundError as exc:
            raise OrderNotFound(f"Could not load order {order_id}. Please check the order ID.", detail=exc.detail) from exc
        except CheckoutError as exc:
            raise NetworkError(exc.message, detail=exc.detail) from exc
        try:
            order = Order.model_validate(raw)
        except SchemaError as exc:
            logger.error("order_malformed order_id=%s error=%s", order_id, exc)
            raise NetworkError("The order could not be read. Please try again.", detail=str(exc)) from exc
        self.order = order
        self.tip.reset()
        return order

    def charge(self) -> ChargeBreakdown:
        """Full-precision breakdown for the current order and tip."""

        if self.order is None:
            raise OrderNotFound("No order is loaded.")
        return compute_charge(self.order.total_price, self.tip)

    def select_tip(self, percent: int) -> ChargeBreakdown:
        self._guard_tip_change()
        self.tip.select_percent(percent)
        self._tip_changed()
        return self.charge()

    def set_custom_tip(self, raw: Any) -> ChargeBreakdown:
        self._guard_tip_change()
        self.tip.set_custom(raw)
        self._tip_changed()
        return self.charge()

    @property
    def paid(self) -> bool:
        """True once the active session holds an authorization or a completed charge."""

        return self.active is not None and self.active.status in (AUTHORIZED, COMPLETED)

    def _guard_paid(self) -> None:
        if self.paid:
            if self.active.status == COMPLETED:
                raise SessionBusy("Your payment has already been completed.")
            raise SessionBusy("Your payment has already been authorized.")

    def _guard_tip_change(self) -> None:
        if self._submitting:
            raise SessionBusy("Your payment is being processed.")
        self._guard_paid()

    def _tip_changed(self) -> None:
        # Any in-flight creation now carries a stale amount.
        self._generation += 1
        self._invalidate_active()

    def _invalidate_active(self) -> None:
        if self.active is not None and self.active.status in (CREATED, AUTHORIZED):
            self.active.transition(SUPERSEDED)

    def _flow(self, provider: str) -> ProviderFlow:
        try:
            return self.flows[provider]
        except KeyError:
            raise ValueError(f"unknown payment provider: {provider}") from None

    async def create_or_refresh_session(self, provider: str = "stripe", payment_method: str = "card") -> PaymentSession | None:
        """Open a provider session for the current total, superseding the old one.

        Returns None when a newer request or a tip change overtook this one.
        """

        if self.order is None:
            raise OrderNotFound("No order is loaded.")
        if self._submitting:
            raise SessionBusy("Your payment is being processed.")
        self._guard_paid()
        flow = self._flow(provider)
        self._generation += 1
        generation = self._generation

        async with self._create_lock:
            if generation != self._generation:
                return None
            charge = self.charge().rounded()
            session = await flow.open(
                self.api,
                self.order,
                charge,
                payment_method=payment_method,
                currency=self.currency,
                generation=generation,
            )
            if generation != self._generation:
                logger.info("stale_session_discarded ref=%s generation=%s", session.provider_ref, generation)
                return None
            self._invalidate_active()
            self.active = session
            logger.info(
                "payment_session_created variant=%s ref=%s amount=%s",
                session.variant,
                session.provider_ref,
                session.amount,
            )
            return session

    def schedule_refresh(self, provider: str = "stripe", payment_method: str = "card") -> asyncio.Task | None:
        """Debounced refresh: fires after a quiet period, replacing any pending one.

        Nothing is scheduled once the checkout is paid.
        """

        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        if self.paid:
            return None
        self._refresh_task = asyncio.create_task(self._refresh_after_quiet_period(provider, payment_method))
        return self._refresh_task

    async def _refresh_after_quiet_period(self, provider: str, payment_method: str) -> PaymentSession | None:
        await asyncio.sleep(self.debounce_seconds)
        if self.paid or self._submitting:
            logger.info("refresh_skipped ref=%s", self.active.provider_ref if self.active else None)
            return None
        return await self.create_or_refresh_session(provider, payment_method)

    async def submit(self, session: PaymentSession, method_details: dict[str, Any] | None = None) -> SubmitOutcome:
        """Confirm `session` with the chosen method. Never retried."""

        if self.busy:
            raise SessionBusy("A payment is already in progress.")
        if session is not self.active or session.status != CREATED:
            raise StaleSession("This payment session is no longer valid. Please try again.")
        if session.amount != self.charge().rounded().total:
            self._invalidate_active()
            raise StaleSession("Your total has changed. Please review it and try again.")

        flow = self._flow_for(session)
        return await self._settle(session, flow.confirm(self.api, session, method_details or {}))

    async def _settle(self, session: PaymentSession, call: Awaitable[SubmitOutcome | None]) -> SubmitOutcome | None:
        """Run one confirm/record call with the busy flag held and apply its outcome."""

        self._submitting = True
        try:
            outcome = await call
        except (ProviderError, NetworkError) as exc:
            session.failure_reason = exc.message
            session.transition(FAILED)
            raise
        finally:
            self._submitting = False

        if outcome is None:
            return None
        if outcome.data.get("payment_id") is not None:
            session.payment_id = str(outcome.data["payment_id"])
        if outcome.status == COMPLETED:
            session.transition(COMPLETED)
        elif outcome.status == AUTHORIZED:
            session.transition(AUTHORIZED)
        if outcome.redirect_url:
            session.redirect_url = outcome.redirect_url
        if outcome.warning:
            logger.warning("payment_recorded_with_warning ref=%s warning=%s", session.provider_ref, outcome.warning)
        return outcome

    def _flow_for(self, session: PaymentSession) -> ProviderFlow:
        for flow in self.flows.values():
            if flow.variant == session.variant:
                return flow
        raise ValueError(f"no flow for variant {session.variant}")

    def cancel(self) -> None:
        """Abandon the active session if it has not been submitted."""

        if self.active is not None and self.active.status == CREATED:
            self.active.transition(CANCELED)

    async def reconcile(self, payment_id: str | None = None) -> ReconcileResult:
        """Settle the status of `payment_id` (default: the active session's payment)."""

        if payment_id is None:
            session = self.active
            if session is not None and session.status == CREATED and not session.payment_id:
                resumed = await self._resume(session)
                if resumed is not None:
                    return resumed
            if session is None or not session.payment_id:
                raise StaleSession("There is no payment to verify.")
            payment_id = session.payment_id
        result = await self.reconciler.reconcile(payment_id)
        self._apply(result, payment_id)
        return result

    async def _resume(self, session: PaymentSession) -> ReconcileResult | None:
        """Record a Stripe session confirmed during a redirect (3-D Secure).

        Returns a final result when no backend lookup is needed, or None to
        continue with the usual status polling on the recorded payment.
        """

        if self.busy:
            raise SessionBusy("A payment is already in progress.")
        flow = self._flow_for(session)
        outcome = await self._settle(session, flow.resume(self.api, session))
        if outcome is None:
            return None
        if outcome.status == "redirect":
            return ReconcileResult("pending", PENDING_MESSAGE)
        if outcome.warning or not session.payment_id:
            status = "completed" if session.status == COMPLETED else "pending"
            message = "Payment successful! Your order has been confirmed." if status == "completed" else PENDING_MESSAGE
            return ReconcileResult(status, message, outcome.data, warning=outcome.warning)
        return None

    async def reconcile_by_reference(self, reference: str) -> ReconcileResult:
        result = await self.reconciler.reconcile_by_reference(reference)
        self._apply(result, result.payment.get("payment_id"))
        return result

    def _apply(self, result: ReconcileResult, payment_id: Any) -> None:
        session = self.active
        if session is None or session.is_terminal or payment_id is None:
            return
        if str(payment_id) not in (session.payment_id, session.provider_ref):
            return
        if result.status == "completed":
            session.transition(COMPLETED)
        elif result.status == "failed":
            session.failure_reason = result.message
            session.transition(FAILED)
