"""Inbound provider callbacks.

Every event is recorded under (provider, event key) before it is acted on.
Redeliveries of a processed event are acknowledged without side effects; a
recorded but unprocessed event is picked up again on the next delivery.
"""
import enum
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ticketpay import fulfillment, intents
from ticketpay.errors import InvalidRequest
from ticketpay.log import truncate
from ticketpay.models import PaymentStatus, Provider, WebhookEvent, utcnow
from ticketpay.providers import WebhookNotice, get_adapter

logger = structlog.get_logger(__name__)


class WebhookOutcome(str, enum.Enum):
    ACKNOWLEDGED = "ACKNOWLEDGED"
    DUPLICATE = "DUPLICATE"
    UNMATCHED = "UNMATCHED"
    RETRY = "RETRY"

    @property
    def http_status(self) -> int:
        # A non-2xx answer is the only way to ask the provider to redeliver.
        return 503 if self is WebhookOutcome.RETRY else 200


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    event_key: str
    payment_id: Optional[str] = None
    status: Optional[PaymentStatus] = None

    def body(self) -> dict:
        return {
            "received": True,
            "outcome": self.outcome.value,
            "event_key": self.event_key,
            "payment_id": self.payment_id,
            "status": self.status.value if self.status else None,
        }


def _record_event(db, provider: Provider, notice: WebhookNotice) -> WebhookEvent:
    query = select(WebhookEvent).where(
        WebhookEvent.provider == provider, WebhookEvent.event_key == notice.event_key
    )
    event = db.execute(query).scalar_one_or_none()
    if event is not None:
        return event

    event = WebhookEvent(
        provider=provider,
        event_key=notice.event_key,
        event_type=notice.event_type,
        provider_ref=notice.provider_ref,
        verified=notice.verified,
        payload=notice.payload,
    )
    db.add(event)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event got there first.
        db.rollback()
        event = db.execute(query).scalar_one()
    return event


def _mark(db, event: WebhookEvent, error: Optional[str] = None) -> None:
    event.processed = error is None
    event.error = error
    event.processed_at = utcnow() if error is None else None
    db.commit()


def ingest(db, provider: Provider, raw_body: bytes, headers) -> WebhookResult:
    provider = Provider(provider)
    notice = get_adapter(provider).parse_webhook(raw_body, headers)

    if not notice.event_key:
        raise InvalidRequest("Webhook carries no event identifier")
    if not notice.verified:
        logger.warning("webhook_unverified", provider=provider.value, event_key=notice.event_key)

    log = logger.bind(provider=provider.value, event_key=notice.event_key, event_type=notice.event_type)
    event = _record_event(db, provider, notice)
    if event.processed:
        log.info("webhook_duplicate")
        return WebhookResult(WebhookOutcome.DUPLICATE, notice.event_key)

    intent = intents.find_intent(db, provider, notice.provider_refs, notice.intent_hint)
    if intent is None:
        log.warning("webhook_unmatched", refs=notice.provider_refs, payload=truncate(notice.payload))
        _mark(db, event)
        return WebhookResult(WebhookOutcome.UNMATCHED, notice.event_key)

    payment_id = intent.id
    try:
        transition = intents.update_status(
            db,
            payment_id,
            notice.status,
            provider_ref=notice.provider_ref,
            payload=notice.payload,
            reported_amount=notice.amount_minor,
            reported_currency=notice.currency,
        )
        if transition.intent.status is PaymentStatus.COMPLETED:
            fulfillment.finalize(db, payment_id)
    except Exception as e:
        db.rollback()
        log.exception("webhook_processing_failed", payment_id=payment_id)
        _mark(db, event, error=str(e))
        return WebhookResult(WebhookOutcome.RETRY, notice.event_key, payment_id)

    _mark(db, event)
    log.info("webhook_processed", payment_id=payment_id, status=transition.intent.status.value,
             changed=transition.changed)
    return WebhookResult(WebhookOutcome.ACKNOWLEDGED, notice.event_key, payment_id, transition.intent.status)
