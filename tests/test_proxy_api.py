"""HTTP-level tests for the checkout proxy routes."""

import json

import httpx
import stripe
from fastapi.testclient import TestClient

import cafepay.services.checkout_proxy.main as proxy_main
from cafepay.services.checkout_proxy.backend import BackendClient
from cafepay.services.checkout_proxy.service import CheckoutProxyService

BASE = "/api/payment"


def intent(status="succeeded", amount=1750, intent_id="pi_123", **extra):
    return {
        "id": intent_id,
        "amount": amount,
        "status": status,
        "client_secret": f"{intent_id}_secret_abc",
        "payment_method": "pm_card_visa",
        **extra,
    }


def test_health_and_config(client):
    assert client.get("/health").json() == {"ok": True}
    config = client.get(f"{BASE}/config").json()
    assert config["tipPresets"] == [0, 10, 15, 20]
    assert config["defaultTipPercent"] == 15


def test_get_order_forwards_backend_payload(client, backend):
    response = client.get(f"{BASE}/order/42")

    assert response.status_code == 200
    assert response.json()["total_price"] == 15.5
    assert response.headers["x-correlation-id"]


def test_get_order_not_found(client):
    response = client.get(f"{BASE}/order/999")

    assert response.status_code == 404
    assert response.json() == {"error": "not_found", "message": "Order not found"}


def test_backend_unreachable_is_human_readable(client, backend):
    backend.down = True

    response = client.get(f"{BASE}/order/42")

    assert response.status_code == 502
    body = response.json()
    assert body["error"] == "upstream_error"
    assert "connection refused" not in body["message"]


def test_create_payment_intent_uses_backend_subtotal_plus_tip(client, mocker):
    create = mocker.patch("stripe.PaymentIntent.create", return_value=intent(status="requires_payment_method"))

    response = client.post(
        f"{BASE}/create-payment-intent",
        json={"orderId": "42", "currency": "usd", "tipAmount": 2.0},
    )

    assert response.status_code == 200
    assert response.json() == {
        "clientSecret": "pi_123_secret_abc",
        "paymentIntentId": "pi_123",
        "amount": 17.5,
        "currency": "USD",
    }
    kwargs = create.call_args.kwargs
    assert kwargs["amount"] == 1750
    assert kwargs["currency"] == "usd"
    assert kwargs["metadata"]["order_id"] == "42"
    assert kwargs["idempotency_key"].startswith("intent-42-")


def test_create_payment_intent_key_is_fresh_per_call(client, mocker):
    create = mocker.patch("stripe.PaymentIntent.create", return_value=intent(status="requires_payment_method"))
    headers = {"x-correlation-id": "checkout-abc"}

    client.post(f"{BASE}/create-payment-intent", json={"orderId": "42", "tipAmount": 2.0}, headers=headers)
    client.post(f"{BASE}/create-payment-intent", json={"orderId": "42", "tipAmount": 3.0}, headers=headers)

    first, second = (call.kwargs["idempotency_key"] for call in create.call_args_list)
    assert first != second
    assert "checkout-abc" not in first


def test_create_payment_intent_rejects_missing_order_id_before_outbound(client, backend, mocker):
    create = mocker.patch("stripe.PaymentIntent.create")

    response = client.post(f"{BASE}/create-payment-intent", json={"currency": "USD", "tipAmount": 1})

    assert response.status_code == 422
    assert backend.requests == []
    create.assert_not_called()


def test_create_payment_intent_rejects_negative_tip(client, backend):
    response = client.post(f"{BASE}/create-payment-intent", json={"orderId": "42", "tipAmount": -1})

    assert response.status_code == 422
    assert backend.requests == []


def test_stripe_not_configured_returns_503(monkeypatch, backend):
    service = CheckoutProxyService(
        BackendClient("http://backend.test/api", transport=httpx.MockTransport(backend.handler)),
        None,
    )
    monkeypatch.setattr(proxy_main, "service", service)
    with TestClient(proxy_main.app) as c:
        response = c.post(f"{BASE}/create-payment-intent", json={"orderId": "42"})

    assert response.status_code == 503
    assert response.json()["error"] == "provider_not_configured"


def record_body(**overrides):
    body = {
        "order_id": "42",
        "payment_method": "apple_pay",
        "amount": 15.5,
        "tip_amount": 2.0,
        "currency": "USD",
        "provider": "stripe",
        "provider_payment_id": "pi_123",
    }
    body.update(overrides)
    return body


def test_record_stripe_payment(client, backend, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent())

    response = client.post(BASE, json=record_body())

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "completed"
    assert "warning" not in body
    recorded = json.loads(backend.calls("POST", "/payments")[0].content)
    assert recorded["order_id"] == 42
    assert recorded["payment_method"] == "apple_pay"
    assert recorded["amount"] == 15.5
    assert recorded["tip_amount"] == 2.0
    assert recorded["provider_transaction_id"] == "pi_123"
    assert recorded["status"] == "completed"


def test_record_stripe_payment_recording_failure_still_reports_success(client, backend, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent())
    backend.fail_recording = True

    response = client.post(BASE, json=record_body())

    assert response.status_code == 207
    body = response.json()
    assert body["success"] is True
    assert body["warning"]
    assert body["data"]["payment_id"] == "pi_123"
    assert body["data"]["total_amount"] == 17.5


def test_record_stripe_payment_requires_intent_id(client, backend, mocker):
    retrieve = mocker.patch("stripe.PaymentIntent.retrieve")

    response = client.post(BASE, json=record_body(provider_payment_id=None))

    assert response.status_code == 422
    assert backend.requests == []
    retrieve.assert_not_called()


def test_record_rejects_camel_case_payload(client, backend):
    response = client.post(BASE, json={"orderId": "42", "paymentMethod": "card", "amount": 15.5})

    assert response.status_code == 422
    assert backend.requests == []


def test_record_stripe_payment_amount_mismatch(client, backend, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent(amount=1800))

    response = client.post(BASE, json=record_body())

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"
    assert backend.calls("POST", "/payments") == []


def test_record_unsuccessful_intent_is_provider_error(client, backend, mocker):
    mocker.patch(
        "stripe.PaymentIntent.retrieve",
        return_value=intent(
            status="requires_payment_method",
            last_payment_error={"message": "Your card has insufficient funds."},
        ),
    )

    response = client.post(BASE, json=record_body())

    assert response.status_code == 402
    assert response.json()["message"] == "Your card has insufficient funds."
    assert backend.calls("POST", "/payments") == []


def test_record_ngenius_returns_hosted_page(client, backend):
    response = client.post(
        BASE,
        json=record_body(provider="ngenius", provider_payment_id=None, payment_method="card"),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "created"
    assert body["redirect_url"] == f"https://paypage.ngenius.test/{body['data']['payment_id']}"


def confirm_body(**overrides):
    body = {
        "payment_intent_id": "pi_123",
        "payment_method_id": "pm_card_visa",
        "order_id": "42",
        "payment_method": "card",
        "amount": 15.5,
        "tip_amount": 2.0,
        "currency": "USD",
    }
    body.update(overrides)
    return body


def test_confirm_payment_records_after_charge(client, backend, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent(status="requires_payment_method"))
    confirm = mocker.patch("stripe.PaymentIntent.confirm", return_value=intent())

    response = client.post(f"{BASE}/confirm-payment", json=confirm_body())

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    confirm.assert_called_once()
    assert confirm.call_args.args == ("pi_123",)
    assert confirm.call_args.kwargs["payment_method"] == "pm_card_visa"
    assert len(backend.calls("POST", "/payments")) == 1


def test_confirm_payment_recording_failure_is_207_with_warning(client, backend, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent(status="requires_payment_method"))
    mocker.patch("stripe.PaymentIntent.confirm", return_value=intent())
    backend.fail_recording = True

    response = client.post(f"{BASE}/confirm-payment", json=confirm_body())

    assert response.status_code == 207
    assert response.json()["success"] is True
    assert response.json()["warning"]


def test_confirm_payment_decline_is_surfaced_and_not_retried(client, backend, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent(status="requires_payment_method"))
    confirm = mocker.patch(
        "stripe.PaymentIntent.confirm",
        side_effect=stripe.CardError("Your card was declined.", None, "card_declined"),
    )

    response = client.post(f"{BASE}/confirm-payment", json=confirm_body())

    assert response.status_code == 402
    assert response.json() == {"error": "provider_error", "message": "Your card was declined."}
    assert confirm.call_count == 1
    assert backend.calls("POST", "/payments") == []


def test_confirm_rejects_stale_amount(client, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent(status="requires_payment_method"))
    confirm = mocker.patch("stripe.PaymentIntent.confirm")

    response = client.post(f"{BASE}/confirm-payment", json=confirm_body(tip_amount=3.0))

    assert response.status_code == 400
    confirm.assert_not_called()


def test_confirm_rejects_canceled_intent(client, backend, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent(status="canceled"))
    confirm = mocker.patch("stripe.PaymentIntent.confirm")

    response = client.post(f"{BASE}/confirm-payment", json=confirm_body())

    assert response.status_code == 400
    confirm.assert_not_called()
    assert backend.calls("POST", "/payments") == []


def test_confirm_after_3ds_return_records_without_confirming_again(client, backend, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent(status="succeeded"))
    confirm = mocker.patch("stripe.PaymentIntent.confirm")

    first = client.post(f"{BASE}/confirm-payment", json=confirm_body())
    second = client.post(f"{BASE}/confirm-payment", json=confirm_body())

    assert first.status_code == 200
    assert first.json()["status"] == "completed"
    assert second.status_code == 200
    assert second.json()["data"]["payment_id"] == first.json()["data"]["payment_id"]
    confirm.assert_not_called()
    assert len(backend.calls("POST", "/payments")) == 1
    recorded = json.loads(backend.calls("POST", "/payments")[0].content)
    assert recorded["provider_transaction_id"] == "pi_123"


def test_confirm_after_3ds_return_with_recording_failure_is_207(client, backend, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent(status="requires_capture"))
    backend.fail_recording = True

    response = client.post(f"{BASE}/confirm-payment", json=confirm_body())

    assert response.status_code == 207
    assert response.json()["status"] == "authorized"
    assert response.json()["warning"]


def test_record_is_not_duplicated_when_resent(client, backend, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent())

    client.post(BASE, json=record_body())
    response = client.post(BASE, json=record_body())

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert len(backend.calls("POST", "/payments")) == 1


def test_confirm_requires_action_returns_redirect(client, backend, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent(status="requires_payment_method"))
    mocker.patch(
        "stripe.PaymentIntent.confirm",
        return_value=intent(
            status="requires_action",
            next_action={"redirect_to_url": {"url": "https://hooks.stripe.test/3ds"}},
        ),
    )

    response = client.post(f"{BASE}/confirm-payment", json=confirm_body())

    assert response.status_code == 200
    assert response.json()["status"] == "requires_action"
    assert response.json()["redirect_url"] == "https://hooks.stripe.test/3ds"
    assert backend.calls("POST", "/payments") == []


def test_capture_stripe_authorization(client, backend, mocker):
    backend.payments["7"] = {
        "payment_id": "7",
        "provider": "stripe",
        "provider_transaction_id": "pi_777",
        "status": "authorized",
    }
    capture = mocker.patch("stripe.PaymentIntent.capture", return_value=intent(intent_id="pi_777"))

    response = client.post(f"{BASE}/7/capture")

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    capture.assert_called_once()
    assert capture.call_args.kwargs["idempotency_key"] == "capture-pi_777"


def test_capture_stripe_recording_failure_is_207(client, backend, mocker):
    backend.payments["7"] = {"payment_id": "7", "provider": "stripe", "provider_transaction_id": "pi_777"}
    backend.fail_capture = True
    mocker.patch("stripe.PaymentIntent.capture", return_value=intent(intent_id="pi_777"))

    response = client.post(f"{BASE}/7/capture")

    assert response.status_code == 207
    assert response.json()["status"] == "completed"
    assert response.json()["warning"]


def test_capture_hosted_payment_is_forwarded(client, backend, mocker):
    backend.payments["8"] = {"payment_id": "8", "provider": "ngenius", "status": "authorized"}
    capture = mocker.patch("stripe.PaymentIntent.capture")

    response = client.post(f"{BASE}/8/capture")

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    capture.assert_not_called()


def test_capture_unknown_payment(client):
    assert client.post(f"{BASE}/nope/capture").status_code == 404


def test_refund_through_stripe_with_recording_failure(client, backend, mocker):
    backend.payments["9"] = {"payment_id": "9", "provider": "stripe"}
    backend.fail_recording = True
    refund = mocker.patch("stripe.Refund.create", return_value={"id": "re_1", "amount": 500})

    response = client.post(
        f"{BASE}/refund",
        json={"payment_id": "9", "amount": 5, "provider_payment_id": "pi_999"},
    )

    assert response.status_code == 207
    assert response.json()["data"]["refund_id"] == "re_1"
    assert refund.call_args.kwargs["amount"] == 500
    assert refund.call_args.kwargs["payment_intent"] == "pi_999"


def test_refund_forwarded_to_backend(client, backend):
    backend.payments["9"] = {"payment_id": "9", "provider": "ngenius"}

    response = client.post(f"{BASE}/refund", json={"payment_id": "9", "reason": "requested_by_customer"})

    assert response.status_code == 200
    assert response.json()["status"] == "refunded"


def test_refund_requires_payment_id(client, backend):
    assert client.post(f"{BASE}/refund", json={"amount": 5}).status_code == 422
    assert backend.requests == []


def test_qclub_payload_shape(client, backend):
    response = client.post(
        f"{BASE}/qclub/create-payment",
        json={"order_id": "42", "amount": "15.50", "tip_amount": 2},
        headers={"referer": "https://cafe.test/pay?order=42"},
    )

    assert response.status_code == 200
    forwarded = json.loads(backend.calls("POST", "/payments/qclub/create-payment")[0].content)
    assert forwarded == {
        "order_id": 42,
        "amount": 15.5,
        "currency": "IQD",
        "tip_amount": 2.0,
        "metadata": {
            "return_url": "https://cafe.test/pay?order=42",
            "webhook_url": "http://backend.test/api/payments/qclub/webhook",
        },
    }


def test_payment_lookups(client, backend):
    backend.payments["5"] = {"payment_id": "5", "order_id": 42, "provider_transaction_id": "ref-5", "status": "created"}

    assert client.get(f"{BASE}/payment/5").json()["status"] == "created"
    assert client.get(f"{BASE}/order/42/payments").json()[0]["payment_id"] == "5"
    assert client.get(f"{BASE}/payments", params={"provider_transaction_id": "ref-5"}).json()[0]["payment_id"] == "5"
    assert client.get(f"{BASE}/payment/404").status_code == 404


def test_stripe_webhook_forwards_status(client, backend, mocker):
    mocker.patch(
        "stripe.Webhook.construct_event",
        return_value={
            "id": "evt_1",
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_123", "last_payment_error": {"message": "Card expired"}}},
        },
    )

    response = client.post(f"{BASE}/webhook/stripe", content=b"{}", headers={"stripe-signature": "sig"})

    assert response.status_code == 200
    forwarded = json.loads(backend.calls("POST", "/payments/provider-status")[0].content)
    assert forwarded["status"] == "failed"
    assert forwarded["provider_transaction_id"] == "pi_123"
    assert forwarded["error_message"] == "Card expired"


def test_stripe_webhook_ignores_unrelated_events(client, backend, mocker):
    mocker.patch(
        "stripe.Webhook.construct_event",
        return_value={"id": "evt_2", "type": "customer.created", "data": {"object": {"id": "cus_1"}}},
    )

    response = client.post(f"{BASE}/webhook/stripe", content=b"{}", headers={"stripe-signature": "sig"})

    assert response.status_code == 200
    assert backend.requests == []


def test_stripe_webhook_invalid_signature(client, mocker):
    mocker.patch(
        "stripe.Webhook.construct_event",
        side_effect=stripe.SignatureVerificationError("Invalid", "sig"),
    )

    response = client.post(f"{BASE}/webhook/stripe", content=b"{}", headers={"stripe-signature": "bad"})

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid signature"
