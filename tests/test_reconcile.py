from datetime import timedelta

import httpx
import pytest

from ticketpay import intents, reconcile
from ticketpay.errors import FulfillmentFailed, NotFound
from ticketpay.models import Order, PaymentIntent, PaymentStatus, Provider, Ticket, utcnow


def _stored_intent(db, ticket_type, provider_ref=None, age=timedelta(minutes=10)):
    order = Order(event_id="evt-concert", ticket_quantities={ticket_type.id: 1}, total_minor=5000,
                  currency="XOF")
    db.add(order)
    db.flush()
    intent = PaymentIntent(
        order_id=order.id,
        idempotency_key=f"stored-{order.id}",
        provider=Provider.MOBILE_MONEY_B,
        provider_ref=provider_ref,
        status=PaymentStatus.PENDING,
        display_amount_minor=5000,
        display_currency="XOF",
        charge_amount_minor=5000,
        charge_currency="XOF",
        created_at=utcnow() - age,
    )
    db.add(intent)
    db.commit()
    return intent


def test_pending_deposit_stays_pending(db, make_request, pawapay):
    intent, _ = intents.create_intent(db, make_request())

    result = reconcile.reconcile(db, intent.id)

    assert result.status is PaymentStatus.PENDING
    assert result.client_status == "pending"


def test_completed_deposit_is_fulfilled_by_poll(db, make_request, pawapay):
    intent, _ = intents.create_intent(db, make_request())
    pawapay.settle(intent.id)

    result = reconcile.reconcile(db, intent.id)

    assert result.client_status == "succeeded"
    assert result.fulfillment.issued == 2
    assert db.query(Ticket).count() == 2


def test_failed_deposit_is_reported(db, make_request, pawapay):
    intent, _ = intents.create_intent(db, make_request())
    pawapay.settle(intent.id, status="FAILED")

    result = reconcile.reconcile(db, intent.id)

    assert result.client_status == "failed"
    assert db.query(Ticket).count() == 0


def test_deposit_that_was_never_created_fails(db, ticket_type, pawapay):
    intent = _stored_intent(db, ticket_type)

    result = reconcile.reconcile(db, intent.id)

    assert result.status is PaymentStatus.FAILED
    assert result.reason == "NO_TRANSACTION_CREATED"
    assert "never created" in result.message
    assert db.query(Ticket).count() == 0


def test_fresh_intent_without_deposit_is_left_pending(db, ticket_type, pawapay):
    intent = _stored_intent(db, ticket_type, age=timedelta(seconds=1))

    assert reconcile.reconcile(db, intent.id).status is PaymentStatus.PENDING


def test_missing_deposit_fails_after_grace_period(db, ticket_type, pawapay, monkeypatch):
    monkeypatch.setenv("NOT_FOUND_GRACE_SECONDS", "900")
    recent = _stored_intent(db, ticket_type, provider_ref="dep-recent", age=timedelta(minutes=5))
    stale = _stored_intent(db, ticket_type, provider_ref="dep-stale", age=timedelta(minutes=20))

    assert reconcile.reconcile(db, recent.id).status is PaymentStatus.PENDING
    result = reconcile.reconcile(db, stale.id)
    assert result.status is PaymentStatus.FAILED
    assert result.reason == "DEPOSIT_NOT_FOUND"


def test_provider_outage_keeps_intent_pending(db, ticket_type, mock_http):
    def handler(request):
        raise httpx.ConnectError("down", request=request)
    mock_http("pawapay_service", handler)
    intent = _stored_intent(db, ticket_type, provider_ref="dep-1")

    result = reconcile.reconcile(db, intent.id)

    assert result.status is PaymentStatus.PENDING
    assert "right now" in result.message


def test_completed_intent_is_not_polled_again(db, make_request, pawapay):
    intent, _ = intents.create_intent(db, make_request())
    pawapay.settle(intent.id)
    reconcile.reconcile(db, intent.id)
    polls = len(pawapay.calls)

    result = reconcile.reconcile(db, intent.id)

    assert len(pawapay.calls) == polls
    assert result.fulfillment.already_fulfilled


def test_failed_fulfillment_is_repaired_on_next_verify(db, make_request, pawapay, mocker):
    intent, _ = intents.create_intent(db, make_request())
    pawapay.settle(intent.id)
    mocker.patch("ticketpay.fulfillment.finalize", side_effect=FulfillmentFailed("db down"))

    with pytest.raises(FulfillmentFailed):
        reconcile.reconcile(db, intent.id)
    assert db.query(Ticket).count() == 0

    mocker.stopall()
    result = reconcile.reconcile(db, intent.id)

    assert result.fulfillment.issued == 2


def test_unknown_intent(db):
    with pytest.raises(NotFound):
        reconcile.reconcile(db, "missing")


def test_sweep_settles_old_pending_intents(db, ticket_type, pawapay):
    done = _stored_intent(db, ticket_type, provider_ref="dep-done")
    waiting = _stored_intent(db, ticket_type, provider_ref="dep-waiting")
    _stored_intent(db, ticket_type, provider_ref="dep-young", age=timedelta(seconds=30))
    pawapay.deposits["dep-done"] = {"depositId": "dep-done", "status": "COMPLETED", "amount": "5000",
                                    "currency": "XOF"}
    pawapay.deposits["dep-waiting"] = {"depositId": "dep-waiting", "status": "SUBMITTED"}

    summary = reconcile.sweep_pending(db, older_than_seconds=300)

    assert (summary.checked, summary.completed, summary.pending, summary.failed) == (2, 1, 1, 0)
    db.expire_all()
    assert db.get(PaymentIntent, done.id).status is PaymentStatus.COMPLETED
    assert db.get(PaymentIntent, waiting.id).status is PaymentStatus.PENDING
    assert db.query(Ticket).count() == 1
