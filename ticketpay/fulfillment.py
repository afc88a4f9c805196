"""Ticket issuance for completed payments.

``finalize`` may be reached from a webhook, the poller and a client verify
at the same moment. The order row is locked for the check-then-insert and
the unique (order, ticket type, unit) key rejects anything that slips past
the lock, so a paid order gets exactly one set of tickets.
"""
from dataclasses import dataclass

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ticketpay.errors import FulfillmentFailed, NotFound
from ticketpay.models import Order, OrderStatus, PaymentIntent, PaymentStatus, Ticket, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class FulfillmentResult:
    payment_id: str
    order_id: str | None
    issued: int = 0
    already_fulfilled: bool = False


def ticket_count(db, order_id: str) -> int:
    return db.execute(select(func.count(Ticket.id)).where(Ticket.order_id == order_id)).scalar_one()


def finalize(db, intent_id: str) -> FulfillmentResult:
    intent = db.get(PaymentIntent, intent_id, populate_existing=True)
    if intent is None:
        raise NotFound(f"Payment {intent_id} not found")

    result = FulfillmentResult(payment_id=intent.id, order_id=intent.order_id)
    if intent.status is not PaymentStatus.COMPLETED or not intent.order_id:
        return result

    if ticket_count(db, intent.order_id) > 0:
        result.already_fulfilled = True
        return result

    try:
        order = db.execute(
            select(Order).where(Order.id == intent.order_id).with_for_update()
        ).scalar_one()

        if ticket_count(db, order.id) > 0:
            db.rollback()
            result.already_fulfilled = True
            return result

        tickets = []
        for ticket_type_id, quantity in sorted((order.ticket_quantities or {}).items()):
            for unit_index in range(int(quantity)):
                tickets.append(Ticket(
                    order_id=order.id,
                    event_id=order.event_id,
                    ticket_type_id=ticket_type_id,
                    payment_id=intent.id,
                    unit_index=unit_index,
                ))
        if not tickets:
            raise FulfillmentFailed(f"Order {order.id} has no tickets to issue")

        db.add_all(tickets)
        order.status = OrderStatus.COMPLETED
        order.updated_at = utcnow()
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if ticket_count(db, result.order_id) == 0:
            # Nothing was issued by anyone, so this was not a lost race.
            logger.exception("fulfillment_failed", payment_id=intent_id, order_id=result.order_id)
            raise FulfillmentFailed("Could not issue tickets, will retry") from e
        logger.info("fulfillment_raced", payment_id=intent_id, order_id=result.order_id)
        result.already_fulfilled = True
        return result
    except FulfillmentFailed:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("fulfillment_failed", payment_id=intent_id, order_id=result.order_id)
        raise FulfillmentFailed("Could not issue tickets, will retry") from e

    result.issued = len(tickets)
    logger.info("tickets_issued", payment_id=intent_id, order_id=result.order_id, count=result.issued)
    return result
