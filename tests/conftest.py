import json
import os

os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("BACKEND_API_URL", "http://backend.test/api")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ["STRIPE_SECRET_KEY"] = ""

import httpx
import pytest
from fastapi.testclient import TestClient

import cafepay.services.checkout_proxy.main as proxy_main
from cafepay.client.api import ProxyClient
from cafepay.services.checkout_proxy.backend import BackendClient
from cafepay.services.checkout_proxy.service import CheckoutProxyService
from cafepay.services.checkout_proxy.stripe_gateway import StripeGateway


class FakeBackend:
    """In-memory stand-in for the remote ordering backend."""

    def __init__(self) -> None:
        self.orders = {
            "42": {
                "id": 42,
                "items": [
                    {"product_id": "latte", "quantity": 2, "price": 4.5},
                    {"product_id": "croissant", "quantity": 1, "price": 6.5},
                ],
                "total_price": 15.5,
                "customer_email": "guest@example.com",
            }
        }
        self.payments: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.down = False
        self.fail_recording = False
        self.fail_capture = False

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == f"/api{path}"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path.removeprefix("/api")
        body = json.loads(request.content) if request.content else {}
        parts = path.strip("/").split("/")

        if request.method == "GET" and parts[0] == "orders":
            order = self.orders.get(parts[1])
            if order is None:
                return httpx.Response(404, json={"detail": "Order not found"})
            return httpx.Response(200, json=order)

        if request.method == "POST" and path == "/payments":
            if self.fail_recording:
                return httpx.Response(500, json={"detail": "database unavailable"})
            payment_id = str(1000 + len(self.payments))
            payment = {"payment_id": payment_id, **body}
            if body.get("provider") == "ngenius":
                payment["status"] = "created"
                payment["hosted_payment_url"] = f"https://paypage.ngenius.test/{payment_id}"
            self.payments[payment_id] = payment
            return httpx.Response(201, json=payment)

        if request.method == "GET" and path == "/payments":
            ref = request.url.params.get("provider_transaction_id")
            return httpx.Response(
                200,
                json=[p for p in self.payments.values() if p.get("provider_transaction_id") == ref],
            )

        if request.method == "GET" and parts[:2] == ["payments", "order"]:
            return httpx.Response(200, json=[p for p in self.payments.values() if str(p.get("order_id")) == parts[2]])

        if request.method == "POST" and path == "/payments/qclub/create-payment":
            return httpx.Response(200, json={"payment_id": "q-1", "payment_url": "https://qclub.test/pay/q-1"})

        if request.method == "POST" and path == "/payments/provider-status":
            return httpx.Response(200, json={"ok": True})

        if parts[0] == "payments" and len(parts) >= 2:
            payment = self.payments.get(parts[1])
            if payment is None:
                return httpx.Response(404, json={"detail": "Payment not found"})
            if request.method == "GET" and len(parts) == 2:
                return httpx.Response(200, json=payment)
            if request.method == "POST" and parts[2:] == ["capture"]:
                if self.fail_capture:
                    return httpx.Response(503, text="unavailable")
                payment["status"] = "completed"
                return httpx.Response(200, json=payment)
            if request.method == "POST" and parts[2:] == ["refund"]:
                if self.fail_recording:
                    return httpx.Response(500, json={"detail": "database unavailable"})
                payment["status"] = "refunded"
                return httpx.Response(200, json=payment)

        return httpx.Response(404, json={"detail": "route not found"})


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def proxy_service(backend):
    return CheckoutProxyService(
        BackendClient("http://backend.test/api", timeout=1.0, transport=httpx.MockTransport(backend.handler)),
        StripeGateway(secret_key="sk_test_123"),
    )


@pytest.fixture
def client(monkeypatch, proxy_service):
    monkeypatch.setattr(proxy_main, "service", proxy_service)
    with TestClient(proxy_main.app) as c:
        yield c


class FakeProxy:
    """In-memory stand-in for the checkout proxy as seen by the client.

    Set `gate` to an `asyncio.Event` to hold requests for `gated_path` until it
    is released; `entered` is set once such a request has arrived.
    """

    def __init__(self) -> None:
        self.orders = {"42": {"id": 42, "items": [{"product_id": "latte", "quantity": 1, "price": 15.5}], "total_price": 15.5}}
        self.payments: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.intents = 0
        self.down = False
        self.confirm_response: tuple[int, dict] = (200, {"success": True, "status": "completed", "data": {}})
        self.capture_response: tuple[int, dict] = (200, {"success": True, "status": "completed", "data": {}})
        self.record_response: tuple[int, dict] = (
            200,
            {"success": True, "status": "completed", "data": {"payment_id": "2000"}},
        )
        self.status_error = False
        self.gate = None
        self.gated_path: str | None = None
        self.entered = None

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == f"/api/payment{path}"]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path.removeprefix("/api/payment")
        body = json.loads(request.content) if request.content else {}
        if self.gate is not None and path == self.gated_path:
            if self.entered is not None:
                self.entered.set()
            await self.gate.wait()

        if request.method == "GET" and path.startswith("/order/"):
            order = self.orders.get(path.removeprefix("/order/"))
            if order is None:
                return httpx.Response(404, json={"error": "not_found", "message": "Order not found"})
            return httpx.Response(200, json=order)

        if path == "/create-payment-intent":
            self.intents += 1
            order = self.orders[body["orderId"]]
            intent_id = f"pi_{self.intents}"
            return httpx.Response(
                200,
                json={
                    "clientSecret": f"{intent_id}_secret",
                    "paymentIntentId": intent_id,
                    "amount": order["total_price"] + body["tipAmount"],
                    "currency": body["currency"],
                },
            )

        if path == "/confirm-payment":
            status, payload = self.confirm_response
            return httpx.Response(status, json=payload)

        if request.method == "POST" and path == "":
            if body.get("provider") == "stripe":
                status, payload = self.record_response
                data = payload.get("data") or {}
                if status < 300 and data.get("payment_id"):
                    self.payments[str(data["payment_id"])] = {**data, "status": payload["status"]}
                return httpx.Response(status, json=payload)
            payment_id = str(1000 + len(self.payments))
            url = f"https://paypage.ngenius.test/{payment_id}"
            self.payments[payment_id] = {"payment_id": payment_id, "status": "created", **body}
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "status": "created",
                    "data": {"payment_id": payment_id, "hosted_payment_url": url},
                    "redirect_url": url,
                },
            )

        if path == "/qclub/create-payment":
            return httpx.Response(200, json={"payment_id": "q-1", "payment_url": "https://qclub.test/pay/q-1"})

        if request.method == "GET" and path == "/payments":
            ref = request.url.params.get("provider_transaction_id")
            return httpx.Response(200, json=[p for p in self.payments.values() if p.get("provider_transaction_id") == ref])

        if request.method == "GET" and path.startswith("/payment/"):
            if self.status_error:
                return httpx.Response(500, json={"error": "upstream_error", "message": "backend unavailable"})
            payment = self.payments.get(path.removeprefix("/payment/"))
            if payment is None:
                return httpx.Response(404, json={"error": "not_found", "message": "Payment not found"})
            return httpx.Response(200, json=payment)

        if request.method == "POST" and path.endswith("/capture"):
            status, payload = self.capture_response
            return httpx.Response(status, json=payload)

        return httpx.Response(404, json={"error": "not_found", "message": "route not found"})


@pytest.fixture
def proxy():
    return FakeProxy()


@pytest.fixture
def proxy_api(proxy):
    return ProxyClient("http://proxy.test/api/payment", timeout=1.0, transport=httpx.MockTransport(proxy.handler))
