import stripe
import structlog

from ticketpay.config import get_str, provider_timeout
from ticketpay.errors import InvalidRequest, InvalidSignature, ProviderRejected, ProviderUnavailable
from ticketpay.models import PaymentStatus
from ticketpay.providers import (
    ChargeOptions, ChargeResult, ProviderStatus, WebhookNotice, first_present, header,
    normalize_status, parse_json_body,
)

logger = structlog.get_logger(__name__)

stripe.api_key = get_str("STRIPE_SECRET_KEY")
stripe.max_network_retries = 0
stripe.default_http_client = stripe.RequestsClient(timeout=provider_timeout())

EVENT_STATUS = {
    "payment_intent.succeeded": PaymentStatus.COMPLETED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.FAILED,
}

TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)

# Nothing is payable until the client secret reaches the buyer.
CHARGE_MAY_EXIST_AFTER_ERROR = False


def _api_key() -> str:
    return get_str("STRIPE_SECRET_KEY") or stripe.api_key


def validate_options(options: ChargeOptions) -> None:
    """Card charges need nothing beyond the intent itself."""


def create(intent, options: ChargeOptions | None = None) -> ChargeResult:
    try:
        pi = stripe.PaymentIntent.create(
            amount=intent.charge_amount_minor,
            currency=intent.charge_currency.lower(),
            automatic_payment_methods={"enabled": True},
            metadata={
                "payment_id": intent.id,
                "order_id": intent.order_id or "",
                "display_amount": str(intent.display_amount_minor),
                "display_currency": intent.display_currency,
                "fx_rate": f"{intent.fx_numerator}/{intent.fx_denominator}",
                "fx_margin_bps": str(intent.fx_margin_bps or 0),
            },
            idempotency_key=intent.idempotency_key,
            api_key=_api_key(),
        )
    except TRANSIENT_ERRORS as e:
        raise ProviderUnavailable("Card gateway unavailable") from e
    except stripe.StripeError as e:
        logger.warning("stripe_create_rejected", payment_id=intent.id, error=str(e))
        raise ProviderRejected("Card payment could not be created") from e

    return ChargeResult(
        provider_ref=pi.id,
        client_secret=pi.client_secret,
        status=normalize_status(getattr(pi, "status", None)),
        payload={"id": pi.id, "status": getattr(pi, "status", None)},
    )


def verify(intent) -> ProviderStatus:
    if not intent.provider_ref:
        return ProviderStatus(found=False)

    try:
        pi = stripe.PaymentIntent.retrieve(intent.provider_ref, api_key=_api_key())
    except stripe.InvalidRequestError as e:
        if getattr(e, "code", None) == "resource_missing":
            return ProviderStatus(found=False, provider_ref=intent.provider_ref)
        raise ProviderRejected("Card payment lookup refused") from e
    except TRANSIENT_ERRORS as e:
        raise ProviderUnavailable("Card gateway unavailable") from e

    status = pi["status"]
    return ProviderStatus(
        found=True,
        status=normalize_status(status),
        provider_ref=pi["id"],
        amount_minor=pi.get("amount_received") if status == "succeeded" else None,
        currency=(pi.get("currency") or "").upper() or None,
        payload={"id": pi["id"], "status": status},
    )


def parse_webhook(raw_body: bytes, headers) -> WebhookNotice:
    secret = get_str("STRIPE_WEBHOOK_SECRET")
    signature = header(headers, "stripe-signature")

    if secret:
        if not signature:
            raise InvalidSignature("Missing signature")
        try:
            event = stripe.Webhook.construct_event(raw_body, signature, secret)
        except ValueError:
            raise InvalidRequest("Invalid payload")
        except stripe.SignatureVerificationError:
            raise InvalidSignature("Invalid signature")
        verified = True
    else:
        event = parse_json_body(raw_body)
        verified = False

    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    status = EVENT_STATUS.get(event_type, PaymentStatus.PENDING)

    amount = None
    if status is PaymentStatus.COMPLETED:
        amount = obj.get("amount_received", obj.get("amount"))

    return WebhookNotice(
        event_key=event.get("id"),
        event_type=event_type,
        provider_refs=first_present(obj.get("id")),
        status=status,
        verified=verified,
        amount_minor=amount,
        currency=(obj.get("currency") or "").upper() or None,
        intent_hint=metadata.get("payment_id"),
        payload=dict(event),
    )
