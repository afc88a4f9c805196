import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from ticketpay.main import app as fastapi_app
from ticketpay import intents
from ticketpay.models import PaymentIntent, PaymentStatus


def test_create_payment_success(client, db, make_request, pawapay):
    response = client.post("/payments", json=make_request().model_dump(mode="json"))

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "PENDING"
    assert body["provider"] == "MOBILE_MONEY_B"
    assert body["provider_ref"] == body["payment_id"]
    assert body["duplicate"] is False
    assert db.query(PaymentIntent).count() == 1


def test_create_payment_replay_is_flagged(client, make_request, pawapay):
    payload = make_request().model_dump(mode="json")

    first = client.post("/payments", json=payload).json()
    second = client.post("/payments", json=payload).json()

    assert second["payment_id"] == first["payment_id"]
    assert second["duplicate"] is True
    assert len(pawapay.creates) == 1
    assert {k: v for k, v in second.items() if k != "duplicate"} == \
        {k: v for k, v in first.items() if k != "duplicate"}


def test_replay_after_payment_reports_current_status(client, db, make_request, pawapay):
    payload = make_request().model_dump(mode="json")
    first = client.post("/payments", json=payload).json()
    intents.update_status(db, first["payment_id"], PaymentStatus.COMPLETED)

    second = client.post("/payments", json=payload).json()

    assert second["status"] == "COMPLETED"
    unchanged = ("payment_id", "order_id", "provider", "provider_ref", "checkout_url", "client_secret",
                 "display_amount_minor", "display_currency", "charge_amount_minor", "charge_currency")
    assert {k: second[k] for k in unchanged} == {k: first[k] for k in unchanged}
    assert len(pawapay.creates) == 1


def test_card_payment_returns_client_secret(client, make_request, mocker):
    mock_pi = mocker.Mock()
    mock_pi.id = "pi_123"
    mock_pi.client_secret = "secret_123"
    mock_pi.status = "requires_payment_method"
    mocker.patch("stripe.PaymentIntent.create", return_value=mock_pi)

    response = client.post("/payments", json=make_request(provider="CARD").model_dump(mode="json"))

    assert response.status_code == 200
    assert response.json()["client_secret"] == "secret_123"
    assert response.json()["charge_currency"] == "USD"


def test_card_payment_with_quote_from_endpoint(client, make_request, mocker):
    mock_pi = mocker.Mock()
    mock_pi.id = "pi_456"
    mock_pi.client_secret = "secret_456"
    mock_pi.status = "requires_payment_method"
    create = mocker.patch("stripe.PaymentIntent.create", return_value=mock_pi)
    quote = client.post("/fx/quote", json={"display_amount_minor": 10000}).json()
    locked = {key: quote[key] for key in ("charge_amount_minor", "fx_numerator", "fx_denominator",
                                          "locked_at", "margin_bps", "signature")}

    payload = make_request(provider="CARD").model_dump(mode="json")
    response = client.post("/payments", json={**payload, "fx_quote": locked})

    assert response.status_code == 200
    assert response.json()["charge_amount_minor"] == 1742
    assert create.call_args.kwargs["amount"] == 1742


def test_card_payment_with_tampered_quote_is_refused(client, make_request, mocker):
    create = mocker.patch("stripe.PaymentIntent.create")
    quote = client.post("/fx/quote", json={"display_amount_minor": 10000}).json()
    locked = {"charge_amount_minor": 1000, "fx_numerator": 100, "fx_denominator": 1000,
              "locked_at": quote["locked_at"], "margin_bps": quote["margin_bps"],
              "signature": quote["signature"]}

    payload = make_request(provider="CARD").model_dump(mode="json")
    response = client.post("/payments", json={**payload, "fx_quote": locked})

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_REQUEST"
    assert not create.called


@pytest.mark.parametrize("overrides, status, code", [
    ({"currency": "EUR"}, 422, "UNSUPPORTED_CURRENCY"),
    ({"display_amount": 10}, 422, "AMOUNT_OUT_OF_BOUNDS"),
    ({"display_amount": 7000}, 400, "INVALID_REQUEST"),
    ({"mobile_operator": "orange"}, 400, "PRE_AUTH_REQUIRED"),
])
def test_create_payment_errors(client, make_request, pawapay, overrides, status, code):
    response = client.post("/payments", json=make_request(**overrides).model_dump(mode="json"))

    assert response.status_code == status
    assert response.json()["code"] == code


def test_malformed_body_is_invalid_request(client):
    response = client.post("/payments", json={"display_amount": 5000})

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_REQUEST"


def test_provider_rejection_is_402(client, make_request, mock_http):
    mock_http("pawapay_service", lambda request: httpx.Response(
        400, json={"status": "REJECTED", "failureReason": {"failureMessage": "Wallet not found"}}))

    response = client.post("/payments", json=make_request().model_dump(mode="json"))

    assert response.status_code == 402
    assert response.json() == {"code": "PROVIDER_REJECTED", "message": "Wallet not found"}


def test_verify_payment(client, make_request, pawapay):
    created = client.post("/payments", json=make_request().model_dump(mode="json")).json()

    pending = client.post("/payments/verify", json={"payment_id": created["payment_id"]}).json()
    pawapay.settle(created["payment_id"])
    done = client.post("/payments/verify", json={"provider_ref": created["provider_ref"]}).json()

    assert pending["status"] == "pending"
    assert done["status"] == "succeeded"
    assert done["order_id"] == created["order_id"]

    detail = client.get(f"/payments/{created['payment_id']}").json()
    assert detail["status"] == "COMPLETED"
    assert detail["tickets_issued"] == 2


def test_verify_requires_identifier(client):
    response = client.post("/payments/verify", json={})

    assert response.status_code == 400


def test_verify_unknown_payment(client):
    response = client.post("/payments/verify", json={"payment_id": "nope"})

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_reconcile_sweep_endpoint(client):
    response = client.post("/payments/reconcile-sweep", json={"older_than_seconds": 60})

    assert response.status_code == 200
    assert response.json()["checked"] == 0


def test_fx_quote_endpoint(client):
    response = client.post("/fx/quote", json={"display_amount_minor": 5000})

    assert response.status_code == 200
    body = response.json()
    assert body["charge_amount_minor"] == 871
    assert body["charge_amount"] == "$8.71 USD"
    assert body["source"] == "fallback"


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_payments_require_token(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "test_secret")

    with TestClient(fastapi_app) as c:
        assert c.post("/payments/verify", json={"payment_id": "x"}).status_code == 401
        bad = c.post("/payments/verify", json={"payment_id": "x"},
                     headers={"Authorization": "Bearer not-a-jwt"})
        assert bad.status_code == 401


def test_valid_token_is_accepted(client, monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "test_secret")
    fastapi_app.dependency_overrides.clear()
    token = jwt.encode({"sub": "checkout-frontend"}, "test_secret", algorithm="HS256")

    response = client.post("/payments/verify", json={"payment_id": "nope"},
                           headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 404
