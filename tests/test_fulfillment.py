import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from ticketpay import intents
from ticketpay.errors import FulfillmentFailed
from ticketpay.fulfillment import finalize
from ticketpay.models import Order, OrderStatus, PaymentStatus, Ticket


@pytest.fixture
def completed_intent(db, make_request, pawapay):
    intent, _ = intents.create_intent(db, make_request())
    intents.update_status(db, intent.id, PaymentStatus.COMPLETED)
    return intent


def test_finalize_issues_one_ticket_per_unit(db, completed_intent):
    result = finalize(db, completed_intent.id)

    assert result.issued == 2
    tickets = db.query(Ticket).order_by(Ticket.unit_index).all()
    assert [t.unit_index for t in tickets] == [0, 1]
    assert {t.payment_id for t in tickets} == {completed_intent.id}
    assert {t.event_id for t in tickets} == {"evt-concert"}
    assert db.get(Order, completed_intent.order_id).status is OrderStatus.COMPLETED


def test_finalize_is_idempotent(db, completed_intent):
    finalize(db, completed_intent.id)
    again = finalize(db, completed_intent.id)

    assert again.already_fulfilled
    assert again.issued == 0
    assert db.query(Ticket).count() == 2


def test_finalize_ignores_pending_intent(db, make_request, pawapay):
    intent, _ = intents.create_intent(db, make_request())

    result = finalize(db, intent.id)

    assert result.issued == 0
    assert not result.already_fulfilled
    assert db.query(Ticket).count() == 0


def test_duplicate_ticket_rows_are_rejected(db, completed_intent):
    finalize(db, completed_intent.id)
    db.add(Ticket(order_id=completed_intent.order_id, event_id="evt-concert", ticket_type_id="tt-standard",
                  payment_id=completed_intent.id, unit_index=0))

    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_concurrent_finalize_loses_gracefully(db, completed_intent, mocker):
    # The other writer commits between our counts and our insert.
    finalize(db, completed_intent.id)
    mocker.patch("ticketpay.fulfillment.ticket_count", side_effect=[0, 0, 2])

    result = finalize(db, completed_intent.id)

    assert result.already_fulfilled
    assert db.query(Ticket).count() == 2


def _fail_ticket_insert(db, mocker, error):
    """Make the commit that carries new tickets raise ``error``."""
    real_commit = db.commit

    def commit():
        if any(isinstance(obj, Ticket) for obj in db.new):
            raise error
        return real_commit()

    return mocker.patch.object(db, "commit", side_effect=commit)


@pytest.mark.parametrize("error", [
    IntegrityError("INSERT INTO tickets", {}, Exception("FOREIGN KEY constraint failed")),
    OperationalError("INSERT INTO tickets", {}, Exception("database is locked")),
])
def test_failed_ticket_insert_leaves_order_retryable(db, completed_intent, mocker, error):
    _fail_ticket_insert(db, mocker, error)

    with pytest.raises(FulfillmentFailed):
        finalize(db, completed_intent.id)

    db.expire_all()
    assert db.query(Ticket).count() == 0
    assert db.get(Order, completed_intent.order_id).status is OrderStatus.AWAITING_PAYMENT

    mocker.stopall()
    assert finalize(db, completed_intent.id).issued == 2
