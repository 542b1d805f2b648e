"""Resolve the final payment status after a redirect or an authorization.

Polling is bounded, an `authorized` payment is captured exactly once, and a
failed status lookup ends with a support message instead of retrying.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from cafepay.client.api import ProxyClient
from cafepay.common.errors import CheckoutError
from cafepay.common.logging import logger, payment_id_ctx

SUPPORT_MESSAGE = "Could not verify payment status. Please contact support."
CAPTURE_FAILED = "Payment capture failed. Please contact support."
PENDING_MESSAGE = "Your payment is still being processed. We'll confirm it shortly."

COMPLETED_STATUSES = frozenset({"completed", "captured", "succeeded", "paid"})
FAILED_STATUSES = frozenset({"failed", "declined", "canceled", "cancelled", "expired"})


@dataclass
class ReconcileResult:
    """Terminal view of a payment for the UI.

    `status` is `completed`, `failed`, `pending` (poll budget exhausted) or
    `unverified` (status could not be fetched).
    """

    status: str
    message: str
    payment: dict[str, Any] = field(default_factory=dict)
    warning: str | None = None
    capture_attempted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"


def normalize_status(raw: Any) -> str:
    return str(raw or "").strip().lower()


class StatusReconciler:
    def __init__(
        self,
        api: ProxyClient,
        *,
        poll_interval: float = 2.0,
        max_polls: int = 5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.api = api
        self.poll_interval = poll_interval
        self.max_polls = max(1, max_polls)
        self._sleep = sleep

    async def reconcile(self, payment_id: str) -> ReconcileResult:
        payment_id_ctx.set(payment_id)
        for attempt in range(1, self.max_polls + 1):
            try:
                payment = await self.api.get_payment(payment_id)
            except CheckoutError as exc:
                logger.error("status_check_failed payment_id=%s error=%s", payment_id, exc.message)
                return ReconcileResult("unverified", SUPPORT_MESSAGE)

            status = normalize_status(payment.get("status"))
            if status in COMPLETED_STATUSES:
                return ReconcileResult("completed", "Payment successful! Your order has been confirmed.", payment)
            if status in FAILED_STATUSES:
                reason = payment.get("error_message") or "Unknown error"
                return ReconcileResult("failed", f"Payment failed: {reason}", payment)
            if status == "authorized":
                return await self._capture(payment_id, payment)

            logger.info("payment_pending payment_id=%s status=%s attempt=%s", payment_id, status, attempt)
            if attempt < self.max_polls:
                await self._sleep(self.poll_interval)
        return ReconcileResult("pending", PENDING_MESSAGE)

    async def _capture(self, payment_id: str, payment: dict[str, Any]) -> ReconcileResult:
        """One capture call; anything short of `completed` is a failure."""

        try:
            result = await self.api.capture_payment(payment_id)
        except CheckoutError as exc:
            logger.error("capture_failed payment_id=%s error=%s", payment_id, exc.message)
            return ReconcileResult("failed", CAPTURE_FAILED, payment, capture_attempted=True)

        details = result.get("data") if isinstance(result.get("data"), dict) else result
        if normalize_status(result.get("status") or details.get("status")) in COMPLETED_STATUSES:
            return ReconcileResult(
                "completed",
                "Payment completed successfully!",
                details,
                warning=result.get("warning"),
                capture_attempted=True,
            )
        logger.warning("capture_incomplete payment_id=%s status=%s", payment_id, result.get("status"))
        return ReconcileResult("failed", CAPTURE_FAILED, details, capture_attempted=True)

    async def reconcile_by_reference(self, reference: str) -> ReconcileResult:
        """Resolve a provider reference (N-Genius `ref`) and reconcile it."""

        try:
            payments = await self.api.find_payments(reference)
        except CheckoutError as exc:
            logger.error("payment_lookup_failed ref=%s error=%s", reference, exc.message)
            return ReconcileResult("unverified", SUPPORT_MESSAGE)
        if not payments:
            return ReconcileResult("failed", "Payment not found")
        return await self.reconcile(str(payments[0]["payment_id"]))
