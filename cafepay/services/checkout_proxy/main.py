"""Public checkout proxy.

Validates browser/client requests and forwards them to the remote ordering
backend and to Stripe, answering in one uniform shape. Money-moving routes
answer 207 with a `warning` when the charge succeeded but recording it failed.
"""

from time import perf_counter
from uuid import uuid4

import uvicorn
from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from cafepay.common.config import settings
from cafepay.common.errors import CheckoutError, PartialFailure
from cafepay.common.logging import bound, configure_logging, logger
from cafepay.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    payment_latency_seconds,
    payment_requests_total,
    webhook_events_total,
)
from cafepay.common.startup import log_startup_config
from cafepay.common.tips import DEFAULT_TIP_PERCENT, TIP_PRESETS
from cafepay.common.tracing import instrument_app, setup_tracing
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
from cafepay.services.checkout_proxy.service import CheckoutProxyService
from cafepay.services.checkout_proxy.stripe_gateway import get_stripe_gateway

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "port",
        "backend_api_url",
        "public_base_url",
        "stripe_secret_key",
        "stripe_publishable_key",
        "stripe_webhook_secret",
        "default_currency",
        "qclub_currency",
        "http_timeout_seconds",
        "stripe_timeout_seconds",
        "tracing_enabled",
    ],
)
app = FastAPI(title="Cafe Checkout Proxy")
instrument_app(app)
service = CheckoutProxyService(
    BackendClient(settings.backend_api_url, timeout=settings.http_timeout_seconds),
    get_stripe_gateway(),
)
router = APIRouter(prefix="/api/payment")


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Bind a trace id and record request count and latency for every call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    trace_id = request.headers.get("x-correlation-id") or str(uuid4())
    try:
        with bound(trace_id=trace_id):
            response = await call_next(request)
        status_code = response.status_code
        response.headers["x-correlation-id"] = trace_id
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    """Render taxonomy errors as `{error, message}` without internal detail."""

    logger.warning(
        "request_failed path=%s error=%s message=%s detail=%s",
        request.url.path,
        exc.error,
        exc.message,
        exc.detail,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(PartialFailure)
async def partial_failure_handler(request: Request, exc: PartialFailure):
    """The charge went through; report success and carry the warning."""

    logger.warning("partial_failure path=%s warning=%s", request.url.path, exc.warning)
    result = PaymentResult(success=True, status=exc.data.get("status"), data=exc.data, warning=exc.warning)
    return JSONResponse(status_code=207, content=result.model_dump(mode="json", exclude_none=True))


def _timed(operation: str):
    payment_requests_total.labels(service=settings.service_name, operation=operation).inc()
    return payment_latency_seconds.labels(service=settings.service_name, operation=operation).time()


@router.get("/order/{order_id}")
async def get_order(order_id: str):
    """Order summary as stored by the backend."""

    return await service.get_order(order_id)


@router.get("/order/{order_id}/payments")
async def list_order_payments(order_id: str):
    return await service.list_order_payments(order_id)


@router.get("/config")
def client_config():
    """Values the checkout page needs before it can render."""

    return {
        "publishableKey": settings.stripe_publishable_key,
        "currency": settings.default_currency,
        "tipPresets": list(TIP_PRESETS),
        "defaultTipPercent": DEFAULT_TIP_PERCENT,
    }


@router.post("/create-payment-intent", response_model=PaymentIntentResponse)
async def create_payment_intent(req: CreatePaymentIntentRequest):
    """Create a fresh Stripe intent for subtotal + tip."""

    with _timed("create_intent"):
        return await service.create_payment_intent(req)


@router.post("/confirm-payment", response_model=PaymentResult, response_model_exclude_none=True)
async def confirm_payment(req: ConfirmPaymentRequest):
    """Confirm a card-element intent server-side and record the payment."""

    with _timed("confirm"):
        return await service.confirm_payment(req)


@router.post("", response_model=PaymentResult, response_model_exclude_none=True)
@router.post("/", response_model=PaymentResult, response_model_exclude_none=True, include_in_schema=False)
async def record_payment(req: RecordPaymentRequest):
    """Record a Stripe payment or open an N-Genius hosted payment page."""

    with _timed("record"):
        return await service.record_payment(req)


@router.get("/payments")
async def find_payments(provider_transaction_id: str = Query(min_length=1)):
    """Look up payments by provider reference (N-Genius `ref` on return)."""

    return await service.find_payments(provider_transaction_id)


@router.post("/qclub/create-payment")
async def create_qclub_payment(req: QClubPaymentRequest, referer: str | None = Header(default=None)):
    with _timed("qclub_create"):
        return await service.create_qclub_payment(req, referer)


@router.post("/refund", response_model=PaymentResult, response_model_exclude_none=True)
async def refund(req: RefundRequest):
    with _timed("refund"):
        return await service.refund(req)


@router.post("/webhook/stripe")
async def stripe_webhook(request: Request, stripe_signature: str | None = Header(default=None)):
    """Verify a Stripe event and forward any status change to the backend."""

    payload = await request.body()
    forwarded = await service.handle_stripe_webhook(payload, stripe_signature)
    webhook_events_total.labels(
        service=settings.service_name,
        event_type="forwarded" if forwarded else "ignored",
    ).inc()
    return {"ok": True}


@router.get("/payment/{payment_id}")
async def get_payment(payment_id: str):
    return await service.get_payment(payment_id)


@router.post("/{payment_id}/capture")
async def capture_payment(payment_id: str):
    """Capture an authorized payment; never retried automatically."""

    with _timed("capture"):
        return await service.capture_payment(payment_id)


app.include_router(router)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


def run() -> None:
    """Console entrypoint: serve the proxy on `PORT`."""

    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
