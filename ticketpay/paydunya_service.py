"""PayDunya checkout-invoice adapter (mobile money family A).

Charges open a hosted invoice; completion is pushed to us through an IPN
callback carrying the SHA-512 hash of the merchant master key.
"""
import hashlib
import hmac

import httpx
import structlog

from ticketpay.config import get_str, provider_timeout, public_base_url
from ticketpay.errors import InvalidSignature, ProviderRejected, ProviderUnavailable
from ticketpay.log import truncate
from ticketpay.models import PaymentStatus
from ticketpay.providers import (
    ChargeOptions, ChargeResult, ProviderStatus, WebhookNotice, first_present, normalize_status,
    parse_json_body, response_json, send,
)

logger = structlog.get_logger(__name__)

LIVE_URL = "https://app.paydunya.com/api/v1"
SANDBOX_URL = "https://app.paydunya.com/sandbox-api/v1"
SUCCESS_CODE = "00"

CHARGE_MAY_EXIST_AFTER_ERROR = False


def _base_url() -> str:
    return LIVE_URL if get_str("PAYDUNYA_MODE", "live") == "live" else SANDBOX_URL


def _headers() -> dict:
    keys = {
        "PAYDUNYA-MASTER-KEY": get_str("PAYDUNYA_MASTER_KEY"),
        "PAYDUNYA-PRIVATE-KEY": get_str("PAYDUNYA_PRIVATE_KEY"),
        "PAYDUNYA-PUBLIC-KEY": get_str("PAYDUNYA_PUBLIC_KEY"),
        "PAYDUNYA-TOKEN": get_str("PAYDUNYA_TOKEN"),
    }
    if not all(keys.values()):
        raise ProviderUnavailable("PayDunya is not configured")
    return {"Content-Type": "application/json", **keys}


def _client() -> httpx.Client:
    return httpx.Client(timeout=provider_timeout())


def validate_options(options: ChargeOptions) -> None:
    """The hosted invoice page collects the payer details itself."""


def create(intent, options: ChargeOptions | None = None) -> ChargeResult:
    options = options or ChargeOptions()
    site = public_base_url()
    body = {
        "invoice": {
            "total_amount": intent.charge_amount_minor,
            "description": f"Tickets for order {intent.order_id}",
        },
        "store": {"name": get_str("STORE_NAME", "Ticketpay")},
        "actions": {
            "return_url": options.return_url or f"{site}/payment/success?payment_id={intent.id}",
            "cancel_url": options.cancel_url or f"{site}/payment/cancelled?payment_id={intent.id}",
            "callback_url": f"{site}/webhooks/paydunya",
        },
        "custom_data": {"payment_id": intent.id, "order_id": intent.order_id},
    }

    with _client() as client:
        response = send(client, "POST", f"{_base_url()}/checkout-invoice/create", "PayDunya",
                        json=body, headers=_headers())
    data = response_json(response, "PayDunya")

    if data.get("response_code") != SUCCESS_CODE:
        logger.warning("paydunya_create_rejected", payment_id=intent.id, response=truncate(data))
        raise ProviderRejected(data.get("response_text") or data.get("description")
                               or "Payment creation failed")

    nested = data.get("response_json") or {}
    token = data.get("token") or nested.get("invoice_token")
    invoice_url = data.get("invoice_url") or nested.get("invoice_url")
    if not invoice_url and str(data.get("response_text", "")).startswith("http"):
        invoice_url = data["response_text"]
    if not token:
        raise ProviderRejected("PayDunya did not return an invoice token")

    return ChargeResult(provider_ref=token, checkout_url=invoice_url, payload=data)


def verify(intent) -> ProviderStatus:
    if not intent.provider_ref:
        return ProviderStatus(found=False)

    with _client() as client:
        response = send(client, "GET", f"{_base_url()}/checkout-invoice/confirm/{intent.provider_ref}",
                        "PayDunya", headers=_headers())
    if response.status_code == 404:
        return ProviderStatus(found=False, provider_ref=intent.provider_ref)
    data = response_json(response, "PayDunya")

    if data.get("response_code") not in (None, SUCCESS_CODE):
        return ProviderStatus(found=False, provider_ref=intent.provider_ref, payload=data)

    status = normalize_status(data.get("status"))
    invoice = data.get("invoice") or {}
    return ProviderStatus(
        found=True,
        status=status,
        provider_ref=intent.provider_ref,
        amount_minor=_as_int(invoice.get("total_amount")) if status is PaymentStatus.COMPLETED else None,
        currency="XOF",
        payload=data,
    )


def expected_hash(master_key: str) -> str:
    return hashlib.sha512(master_key.encode()).hexdigest()


def parse_webhook(raw_body: bytes, headers) -> WebhookNotice:
    payload = parse_json_body(raw_body)
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload

    master_key = get_str("PAYDUNYA_MASTER_KEY")
    if master_key:
        received = str(data.get("hash") or "")
        if not hmac.compare_digest(received.lower(), expected_hash(master_key)):
            raise InvalidSignature("Invalid IPN hash")
        verified = True
    else:
        verified = False

    invoice = data.get("invoice") or {}
    raw_status = data.get("status") or invoice.get("status")
    # Deployments disagree on where the invoice token lives.
    refs = first_present(invoice.get("token"), data.get("invoice_token"), data.get("token"))
    status = normalize_status(raw_status)
    custom = data.get("custom_data") or invoice.get("custom_data") or {}

    return WebhookNotice(
        event_key=f"{refs[0]}:{str(raw_status).lower()}" if refs and raw_status else None,
        event_type=f"invoice.{str(raw_status).lower()}" if raw_status else None,
        provider_refs=refs,
        status=status,
        verified=verified,
        amount_minor=_as_int(invoice.get("total_amount")) if status is PaymentStatus.COMPLETED else None,
        currency="XOF",
        intent_hint=custom.get("payment_id"),
        payload=payload,
    )


def _as_int(value):
    if value is None or value == "":
        return None
    return int(round(float(value)))
