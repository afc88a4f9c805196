"""Active status polling.

Callbacks from mobile money gateways are not guaranteed to arrive, so a
client verify and a periodic sweep both ask the provider directly and feed
the answer through the same transition and fulfillment path as webhooks.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

import structlog

from ticketpay import fulfillment, intents
from ticketpay.config import not_found_grace_seconds, provider_timeout
from ticketpay.errors import NotFound, PaymentError, ProviderRejected, ProviderUnavailable
from ticketpay.fulfillment import FulfillmentResult
from ticketpay.models import PaymentIntent, PaymentStatus, as_utc, utcnow
from ticketpay.providers import get_adapter

logger = structlog.get_logger(__name__)

NO_TRANSACTION_CREATED = "NO_TRANSACTION_CREATED"
DEPOSIT_NOT_FOUND = "DEPOSIT_NOT_FOUND"

MESSAGES = {
    PaymentStatus.COMPLETED: "Payment confirmed. Your tickets have been issued.",
    PaymentStatus.PENDING: "Payment is still being processed.",
    PaymentStatus.FAILED: "Payment failed.",
    NO_TRANSACTION_CREATED: "The payment was never created with the provider. Please start a new payment.",
    DEPOSIT_NOT_FOUND: "The provider has no record of this payment. Please start a new payment.",
    "AMOUNT_MISMATCH": "The amount paid does not match the order. Please contact support.",
}

CLIENT_STATUS = {
    PaymentStatus.PENDING: "pending",
    PaymentStatus.COMPLETED: "succeeded",
    PaymentStatus.FAILED: "failed",
}


@dataclass
class ReconcileResult:
    intent: PaymentIntent
    status: PaymentStatus
    reason: Optional[str] = None
    message: str = ""
    fulfillment: Optional[FulfillmentResult] = None

    @property
    def client_status(self) -> str:
        return CLIENT_STATUS[self.status]


def _result(intent: PaymentIntent, message: Optional[str] = None, fulfilled=None) -> ReconcileResult:
    reason = intent.failure_reason if intent.status is PaymentStatus.FAILED else None
    return ReconcileResult(
        intent=intent,
        status=intent.status,
        reason=reason,
        message=message or MESSAGES.get(reason) or MESSAGES[intent.status],
        fulfillment=fulfilled,
    )


def _age_seconds(intent: PaymentIntent, now) -> float:
    return (now - as_utc(intent.created_at)).total_seconds()


def reconcile(db, intent_id: str, now=None) -> ReconcileResult:
    now = now or utcnow()
    intent = intents.get_intent(db, intent_id)
    if intent is None:
        raise NotFound(f"Payment {intent_id} not found")

    if intent.status is PaymentStatus.COMPLETED:
        # Repairs a completion whose fulfillment failed earlier.
        return _result(intent, fulfilled=fulfillment.finalize(db, intent.id))
    if intent.status is PaymentStatus.FAILED:
        return _result(intent)

    log = logger.bind(payment_id=intent.id, provider=intent.provider.value)
    try:
        remote = get_adapter(intent.provider).verify(intent)
    except (ProviderUnavailable, ProviderRejected) as e:
        log.warning("reconcile_provider_error", error=e.message)
        return _result(intent, message="Unable to confirm the payment right now. Please check again shortly.")

    if not remote.found:
        age = _age_seconds(intent, now)
        if not intent.provider_ref:
            if age < provider_timeout():
                # Creation may still be in flight.
                return _result(intent)
            log.warning("reconcile_no_transaction", age_seconds=age)
            transition = intents.update_status(db, intent.id, PaymentStatus.FAILED, payload=remote.payload,
                                               reason=NO_TRANSACTION_CREATED)
            return _result(transition.intent)
        if age > not_found_grace_seconds():
            log.warning("reconcile_deposit_not_found", age_seconds=age)
            transition = intents.update_status(db, intent.id, PaymentStatus.FAILED, payload=remote.payload,
                                               reason=DEPOSIT_NOT_FOUND)
            return _result(transition.intent)
        return _result(intent)

    transition = intents.update_status(
        db,
        intent.id,
        remote.status,
        provider_ref=remote.provider_ref,
        payload=remote.payload,
        reported_amount=remote.amount_minor,
        reported_currency=remote.currency,
    )
    fulfilled = None
    if transition.intent.status is PaymentStatus.COMPLETED:
        fulfilled = fulfillment.finalize(db, intent.id)
    log.info("reconciled", status=transition.intent.status.value, changed=transition.changed)
    return _result(transition.intent, fulfilled=fulfilled)


@dataclass
class SweepResult:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    errors: list = field(default_factory=list)


def sweep_pending(db, older_than_seconds: int = 300, limit: int = 50, now=None) -> SweepResult:
    now = now or utcnow()
    summary = SweepResult()
    cutoff = now - timedelta(seconds=older_than_seconds)
    # Completed but ticketless payments first; reconcile re-runs their fulfillment.
    due = intents.unfulfilled_intents(db, cutoff, limit)
    due += intents.pending_intents(db, cutoff, limit - len(due))
    for intent_id in due:
        summary.checked += 1
        try:
            result = reconcile(db, intent_id, now=now)
        except PaymentError as e:
            db.rollback()
            logger.warning("sweep_item_failed", payment_id=intent_id, code=e.code, error=e.message)
            summary.errors.append({"payment_id": intent_id, "code": e.code})
            continue
        if result.status is PaymentStatus.COMPLETED:
            summary.completed += 1
        elif result.status is PaymentStatus.FAILED:
            summary.failed += 1
        else:
            summary.pending += 1

    logger.info("sweep_finished", checked=summary.checked, completed=summary.completed,
                failed=summary.failed, pending=summary.pending, errors=len(summary.errors))
    return summary
