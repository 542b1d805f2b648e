"""Async client for the checkout proxy HTTP surface."""

from typing import Any

import httpx

from cafepay.client.errors import NetworkError, PaymentDeclined
from cafepay.common.errors import NotFoundError, ValidationError
from cafepay.common.logging import logger

NETWORK_MESSAGE = "We couldn't reach the payment service. Please check your connection and try again."


def _message(resp: httpx.Response, default: str) -> str:
    try:
        body = resp.json()
    except ValueError:
        return default
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return default


class ProxyClient:
    """One method per proxy route; maps HTTP failures onto client errors.

    A 207 answer is a success that carries a `warning` and is returned as-is.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:3000/api/payment",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        not_found: str = "Not found",
    ) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, f"{self.base_url}{path}", json=json, params=params)
        except httpx.HTTPError as exc:
            logger.warning("proxy_unreachable method=%s path=%s error=%r", method, path, exc)
            raise NetworkError(NETWORK_MESSAGE, detail=str(exc)) from exc

        if resp.status_code == 404:
            raise NotFoundError(_message(resp, not_found), detail=resp.text)
        if resp.status_code == 402:
            raise PaymentDeclined(_message(resp, "Your payment was declined."), detail=resp.text)
        if resp.status_code in (400, 409, 422):
            raise ValidationError(_message(resp, "The payment request was invalid."), detail=resp.text)
        if resp.status_code >= 400:
            raise NetworkError(_message(resp, NETWORK_MESSAGE), detail=resp.text)
        try:
            return resp.json()
        except ValueError as exc:
            raise NetworkError(NETWORK_MESSAGE, detail=resp.text) from exc

    async def get_config(self) -> dict[str, Any]:
        return await self._request("GET", "/config")

    async def get_order(self, order_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/order/{order_id}", not_found="Order not found")

    async def create_payment_intent(
        self,
        order_id: str,
        currency: str,
        tip_amount: float,
        automatic_payment_methods: bool = False,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/create-payment-intent",
            json={
                "orderId": order_id,
                "currency": currency,
                "tipAmount": tip_amount,
                "automaticPaymentMethods": automatic_payment_methods,
            },
        )

    async def confirm_payment(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/confirm-payment", json=payload)

    async def record_payment(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "", json=payload)

    async def create_qclub_payment(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/qclub/create-payment", json=payload)

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/payment/{payment_id}", not_found="Payment not found")

    async def find_payments(self, provider_transaction_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", "/payments", params={"provider_transaction_id": provider_transaction_id})

    async def capture_payment(self, payment_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/{payment_id}/capture", json={}, not_found="Payment not found")
