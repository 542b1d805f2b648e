"""HTTP client for the remote ordering backend.

One short-lived `httpx.AsyncClient` per call with a bounded timeout. Calls are
never retried here; the caller decides what a failure means.
"""

from time import perf_counter
from typing import Any

import httpx

from cafepay.common.config import settings
from cafepay.common.errors import NotFoundError, UpstreamError
from cafepay.common.logging import logger, trace_id_ctx
from cafepay.common.metrics import upstream_request_duration_seconds, upstream_requests_total

UNAVAILABLE_MESSAGE = "The payment service is temporarily unavailable. Please try again."


def _error_message(resp: httpx.Response) -> str:
    """Pick a human-readable message out of a backend error body."""

    try:
        body = resp.json()
    except ValueError:
        return UNAVAILABLE_MESSAGE
    if isinstance(body, dict):
        for key in ("detail", "message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return UNAVAILABLE_MESSAGE


class BackendClient:
    """Thin wrapper over the backend's order and payment endpoints."""

    def __init__(
        self,
        base_url: str,
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
        start = perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    json=json,
                    params=params,
                    headers={"x-trace-id": trace_id_ctx.get()},
                )
        except httpx.HTTPError as exc:
            upstream_requests_total.labels(service=settings.service_name, dependency="backend", outcome="error").inc()
            logger.error("backend_unreachable method=%s path=%s error=%r", method, path, exc)
            raise UpstreamError(UNAVAILABLE_MESSAGE, detail=str(exc)) from exc
        finally:
            upstream_request_duration_seconds.labels(
                service=settings.service_name,
                dependency="backend",
            ).observe(max(0.0, perf_counter() - start))

        if resp.status_code == 404:
            upstream_requests_total.labels(service=settings.service_name, dependency="backend", outcome="not_found").inc()
            raise NotFoundError(not_found, detail=resp.text)
        if resp.status_code >= 400:
            upstream_requests_total.labels(service=settings.service_name, dependency="backend", outcome="error").inc()
            logger.error(
                "backend_error method=%s path=%s status=%s body=%s",
                method,
                path,
                resp.status_code,
                resp.text[:500],
            )
            # Backend validation errors pass through; anything else is a bad gateway.
            status_code = resp.status_code if resp.status_code < 500 else 502
            raise UpstreamError(_error_message(resp), detail=resp.text, status_code=status_code)

        upstream_requests_total.labels(service=settings.service_name, dependency="backend", outcome="ok").inc()
        try:
            return resp.json()
        except ValueError as exc:
            logger.error("backend_invalid_json method=%s path=%s", method, path)
            raise UpstreamError(UNAVAILABLE_MESSAGE, detail=resp.text) from exc

    async def get_order(self, order_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/orders/{order_id}", not_found="Order not found")

    async def create_payment(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/payments", json=payload)

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/payments/{payment_id}", not_found="Payment not found")

    async def find_payments(self, provider_transaction_id: str) -> list[dict[str, Any]]:
        return await self._request(
            "GET",
            "/payments",
            params={"provider_transaction_id": provider_transaction_id},
        )

    async def list_order_payments(self, order_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/payments/order/{order_id}", not_found="Order not found")

    async def capture_payment(self, payment_id: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/payments/{payment_id}/capture",
            json=payload or {},
            not_found="Payment not found",
        )

    async def refund_payment(self, payment_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/payments/{payment_id}/refund",
            json=payload,
            not_found="Payment not found",
        )

    async def create_qclub_payment(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/payments/qclub/create-payment", json=payload)

    async def update_provider_status(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/payments/provider-status", json=payload, not_found="Payment not found")
