"""pawaPay deposits adapter (mobile money family B).

Deposits are opened synchronously but callbacks are best-effort, so the
status endpoint is the primary source of truth.
"""
import hashlib
import hmac
import re

import httpx
import structlog

from ticketpay.config import get_str, provider_timeout
from ticketpay.errors import InvalidRequest, InvalidSignature, ProviderRejected, ProviderUnavailable
from ticketpay.log import truncate
from ticketpay.models import PaymentStatus
from ticketpay.providers import (
    ChargeOptions, ChargeResult, ProviderStatus, WebhookNotice, first_present, header,
    normalize_status, parse_json_body, response_json, send,
)

logger = structlog.get_logger(__name__)

PRODUCTION_URL = "https://api.pawapay.io/v2"
SANDBOX_URL = "https://api.sandbox.pawapay.io/v2"

OPERATOR_CODES = {
    "orange": "ORANGE_BFA",
    "orange-money": "ORANGE_BFA",
    "orange-money-bf": "ORANGE_BFA",
    "moov": "MOOV_BFA",
    "moov-money": "MOOV_BFA",
    "mtn": "MTN_MOMO_ZMB",
    "mtn-mobile-money": "MTN_MOMO_ZMB",
    "wave": "WAVE",
}

# Operators that only accept deposits carrying a USSD pre-authorisation code.
PREAUTH_OPERATORS = {"ORANGE_BFA"}

# depositId is our intent id, so a deposit may exist even if create errored.
CHARGE_MAY_EXIST_AFTER_ERROR = True

LEGACY_EVENTS = {
    "payment.success": "COMPLETED",
    "payment.failed": "FAILED",
    "payment.pending": "PENDING",
}


def _base_url() -> str:
    return PRODUCTION_URL if get_str("PAWAPAY_MODE", "production") == "production" else SANDBOX_URL


def _headers() -> dict:
    api_key = get_str("PAWAPAY_API_KEY")
    if not api_key:
        raise ProviderUnavailable("pawaPay is not configured")
    return {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}


def operator_code(name: str | None) -> str:
    if not name:
        raise InvalidRequest("mobile_operator is required for this provider")
    return OPERATOR_CODES.get(name.lower(), name.upper().replace("-", "_"))


def normalize_phone(phone: str | None) -> str:
    """Digits only, country code first (e.g. 22675581026)."""
    country = get_str("PAWAPAY_COUNTRY_CODE", "226")
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith(country):
        digits = digits[len(country):]
    digits = country + digits.lstrip("0")
    if not re.fullmatch(rf"{country}\d{{8}}", digits):
        raise InvalidRequest(f"Invalid phone number, expected {country} followed by 8 digits")
    return digits


def validate_options(options: ChargeOptions) -> None:
    normalize_phone(options.phone)
    code = operator_code(options.operator)
    if code in PREAUTH_OPERATORS and not options.preauth_code:
        raise InvalidRequest(
            f"{code} requires a pre-authorisation code generated by the buyer",
            code="PRE_AUTH_REQUIRED",
        )


def _client() -> httpx.Client:
    return httpx.Client(timeout=provider_timeout())


def _failure_message(data: dict) -> str:
    reason = data.get("failureReason") or {}
    errors = data.get("errors")
    if isinstance(errors, list) and errors:
        joined = ", ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
    else:
        joined = None
    return (data.get("message") or reason.get("failureMessage") or joined
            or "Payment could not be created. Please try again.")


def create(intent, options: ChargeOptions | None = None) -> ChargeResult:
    options = options or ChargeOptions()
    body = {
        "depositId": intent.id,
        "amount": str(intent.charge_amount_minor),
        "currency": intent.charge_currency,
        "payer": {
            "type": "MMO",
            "accountDetails": {
                "phoneNumber": normalize_phone(options.phone),
                "provider": operator_code(options.operator),
            },
        },
    }
    if options.preauth_code:
        body["preAuthorisationCode"] = options.preauth_code

    with _client() as client:
        response = send(client, "POST", f"{_base_url()}/deposits", "pawaPay", json=body, headers=_headers())
    data = response_json(response, "pawaPay")
    nested = data.get("data") if isinstance(data.get("data"), dict) else {}
    deposit_id = next(iter(first_present(
        data.get("depositId"), data.get("deposit_id"), nested.get("depositId"),
        nested.get("deposit_id"), data.get("transactionId"), data.get("id"),
    )), None)
    provider_status = str(data.get("status") or "").upper()

    if response.status_code >= 400 or not deposit_id or provider_status == "REJECTED":
        logger.warning("pawapay_create_rejected", payment_id=intent.id,
                       http_status=response.status_code, response=truncate(data))
        raise ProviderRejected(_failure_message(data))

    return ChargeResult(provider_ref=deposit_id, status=normalize_status(provider_status), payload=data)


def verify(intent) -> ProviderStatus:
    # depositId is our own intent id, so the deposit can be looked up even
    # when the create response never reached us.
    deposit_id = intent.provider_ref or intent.id

    with _client() as client:
        response = send(client, "GET", f"{_base_url()}/deposits/{deposit_id}", "pawaPay", headers=_headers())
    if response.status_code == 404:
        return ProviderStatus(found=False, provider_ref=intent.provider_ref)
    if response.status_code >= 400:
        raise ProviderRejected(f"pawaPay status lookup refused ({response.status_code})")

    envelope = response_json(response, "pawaPay")
    deposit = envelope.get("data")
    if envelope.get("status") != "FOUND" or not isinstance(deposit, dict):
        return ProviderStatus(found=False, provider_ref=intent.provider_ref, payload=envelope)

    status = normalize_status(deposit.get("status") or deposit.get("depositStatus"))
    return ProviderStatus(
        found=True,
        status=status,
        provider_ref=deposit.get("depositId") or deposit.get("transactionId") or deposit_id,
        amount_minor=_amount(deposit.get("amount")) if status is PaymentStatus.COMPLETED else None,
        currency=deposit.get("currency"),
        payload=envelope,
    )


def sign(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def parse_webhook(raw_body: bytes, headers) -> WebhookNotice:
    secret = get_str("PAWAPAY_WEBHOOK_SECRET")
    if secret:
        signature = header(headers, "X-PawaPay-Signature", "X-Signature") or ""
        signature = signature.split("=", 1)[1] if signature.startswith("sha256=") else signature
        if not hmac.compare_digest(signature.lower(), sign(raw_body, secret)):
            raise InvalidSignature("Invalid webhook signature")
        verified = True
    else:
        verified = False

    payload = parse_json_body(raw_body)
    raw_status = payload.get("status")
    if not raw_status and payload.get("event"):
        raw_status = LEGACY_EVENTS.get(str(payload["event"]).lower())
    # Callbacks are inconsistent about which field carries the deposit id.
    refs = first_present(payload.get("depositId"), payload.get("transactionId"),
                         payload.get("id"), payload.get("reference"))
    status = normalize_status(raw_status)
    amount = payload.get("amount")
    currency = payload.get("currency")
    if isinstance(amount, dict):
        currency = amount.get("currency") or currency
        amount = amount.get("value")
    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}

    return WebhookNotice(
        event_key=f"{refs[0]}:{str(raw_status).upper()}" if refs and raw_status else None,
        event_type=payload.get("event") or (f"deposit.{str(raw_status).lower()}" if raw_status else None),
        provider_refs=refs,
        status=status,
        verified=verified,
        amount_minor=_amount(amount) if status is PaymentStatus.COMPLETED else None,
        currency=currency,
        intent_hint=metadata.get("payment_id"),
        payload=payload,
    )


def _amount(value):
    if value is None or value == "":
        return None
    return int(round(float(value)))
