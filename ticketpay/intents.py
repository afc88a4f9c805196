"""Payment intent lifecycle.

``create_intent`` is the only place a charge is opened; ``update_status`` is
the only place an intent changes state. Webhooks and the reconciliation
poller both go through ``update_status``, whose conditional update lets
exactly one writer move an intent out of PENDING.
"""
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ticketpay import fx
from ticketpay.cache import RateLimiter
from ticketpay.config import amount_bounds, card_charge_currency, max_create_per_minute, supported_currencies
from ticketpay.errors import (
    AmountMismatch, AmountOutOfBounds, InvalidRequest, NotFound, ProviderRejected, RateLimited,
    UnsupportedCurrency,
)
from ticketpay.models import (
    Order, OrderStatus, PaymentIntent, PaymentStatus, Provider, TicketType, new_id, utcnow,
)
from ticketpay.providers import ChargeOptions, get_adapter

logger = structlog.get_logger(__name__)

create_limiter = RateLimiter(window_seconds=60)


@dataclass
class Transition:
    intent: PaymentIntent
    changed: bool

    @property
    def status(self) -> PaymentStatus:
        return self.intent.status


def get_intent(db, intent_id: str) -> Optional[PaymentIntent]:
    return db.get(PaymentIntent, intent_id)


def get_by_idempotency_key(db, key: str) -> Optional[PaymentIntent]:
    return db.execute(
        select(PaymentIntent).where(PaymentIntent.idempotency_key == key)
    ).scalar_one_or_none()


def get_by_provider_ref(db, provider_ref: str, provider: Optional[Provider] = None) -> Optional[PaymentIntent]:
    query = select(PaymentIntent).where(PaymentIntent.provider_ref == provider_ref)
    if provider is not None:
        query = query.where(PaymentIntent.provider == provider)
    return db.execute(query.order_by(PaymentIntent.created_at.desc()).limit(1)).scalar_one_or_none()


def find_intent(db, provider: Provider, refs: list[str], intent_hint: Optional[str] = None):
    """Try every identifier a callback carried, provider refs first."""
    candidates = [ref for ref in refs if ref]
    for ref in candidates:
        intent = get_by_provider_ref(db, ref, provider)
        if intent is not None:
            return intent

    for ref in candidates + ([intent_hint] if intent_hint else []):
        intent = db.get(PaymentIntent, ref)
        if intent is not None and intent.provider == provider:
            return intent
    return None


# --- creation ---------------------------------------------------------------

def _validate_request(request) -> str:
    if not request.idempotency_key or not request.idempotency_key.strip():
        raise InvalidRequest("idempotency_key is required")

    currency = (request.currency or "").upper()
    if not currency:
        raise InvalidRequest("currency is required")
    if currency not in supported_currencies():
        raise UnsupportedCurrency(f"Currency {currency} is not supported")

    low, high = amount_bounds()
    if request.display_amount < low or request.display_amount > high:
        raise AmountOutOfBounds(f"Amount must be between {low} and {high} {currency}")
    return currency


def _check_rate_limit(request) -> None:
    contact = request.buyer_contact
    identifier = (contact.email or contact.phone or "").strip().lower()
    if identifier and not create_limiter.hit(identifier, max_create_per_minute()):
        raise RateLimited("Too many payment attempts. Please try again later.")


def _merge_lines(lines) -> dict:
    quantities = {}
    for line in lines:
        quantities[line.ticket_type_id] = quantities.get(line.ticket_type_id, 0) + line.quantity
    return quantities


def _resolve_order(db, request, currency: str) -> Order:
    if request.order_id:
        order = db.get(Order, request.order_id)
        if order is None:
            raise NotFound(f"Order {request.order_id} not found")
        if order.status != OrderStatus.AWAITING_PAYMENT:
            raise InvalidRequest(f"Order {order.id} is not awaiting payment")
        if order.total_minor != request.display_amount or order.currency != currency:
            raise InvalidRequest("Amount does not match the order total")
        return order

    order = db.execute(
        select(Order).where(Order.checkout_key == request.idempotency_key)
    ).scalar_one_or_none()
    if order is not None:
        if order.total_minor != request.display_amount or order.currency != currency:
            raise InvalidRequest("Amount does not match the order total")
        return order

    quantities = _merge_lines(request.ticket_lines)
    if not quantities:
        raise InvalidRequest("ticket_lines are required when no order_id is given")

    ticket_types = db.execute(
        select(TicketType).where(TicketType.id.in_(list(quantities)))
    ).scalars().all()
    by_id = {t.id: t for t in ticket_types}
    missing = sorted(set(quantities) - set(by_id))
    if missing:
        raise InvalidRequest(f"Unknown ticket types: {', '.join(missing)}")

    event_ids = {t.event_id for t in ticket_types}
    if len(event_ids) != 1 or (request.event_id and request.event_id not in event_ids):
        raise InvalidRequest("All ticket types must belong to the requested event")
    if any(t.currency != currency for t in ticket_types):
        raise InvalidRequest("Ticket prices are not in the requested currency")

    total = sum(by_id[type_id].price_minor * qty for type_id, qty in quantities.items())
    if total != request.display_amount:
        raise InvalidRequest("Amount does not match the order total")

    order = Order(
        id=new_id(),
        event_id=event_ids.pop(),
        ticket_quantities=quantities,
        status=OrderStatus.AWAITING_PAYMENT,
        total_minor=total,
        currency=currency,
        buyer_contact=request.buyer_contact.model_dump(exclude_none=True),
        checkout_key=request.idempotency_key,
    )
    db.add(order)
    return order


def _charge_terms(db, request, provider: Provider, currency: str) -> dict:
    if provider is not Provider.CARD or card_charge_currency() == currency:
        return {
            "charge_amount_minor": request.display_amount,
            "charge_currency": currency,
            "fx_numerator": 1,
            "fx_denominator": 1,
            "fx_locked_at": utcnow(),
            "fx_margin_bps": None,
        }

    locked = request.fx_quote
    if locked is not None:
        fx.validate_locked_quote(request.display_amount, locked.charge_amount_minor,
                                 locked.fx_numerator, locked.fx_denominator, locked.locked_at,
                                 margin_bps=locked.margin_bps, signature=locked.signature)
        return {
            "charge_amount_minor": locked.charge_amount_minor,
            "charge_currency": card_charge_currency(),
            "fx_numerator": locked.fx_numerator,
            "fx_denominator": locked.fx_denominator,
            "fx_locked_at": locked.locked_at,
            "fx_margin_bps": locked.margin_bps,
        }

    q = fx.quote(db, request.display_amount)
    return {
        "charge_amount_minor": q.charge_amount_minor,
        "charge_currency": q.charge_currency,
        "fx_numerator": q.fx_numerator,
        "fx_denominator": q.fx_denominator,
        "fx_locked_at": q.locked_at,
        "fx_margin_bps": q.margin_bps,
    }


def create_intent(db, request) -> tuple[PaymentIntent, bool]:
    """Open a charge for ``request``; returns ``(intent, duplicate)``."""
    currency = _validate_request(request)

    existing = get_by_idempotency_key(db, request.idempotency_key)
    if existing is not None:
        logger.info("payment_duplicate_request", payment_id=existing.id,
                    idempotency_key=request.idempotency_key)
        return existing, True

    provider = Provider(request.provider)
    adapter = get_adapter(provider)
    options = ChargeOptions(
        return_url=request.return_url,
        cancel_url=request.cancel_url,
        phone=request.buyer_contact.phone,
        operator=request.mobile_operator,
        preauth_code=request.preauth_code,
    )
    adapter.validate_options(options)

    terms = _charge_terms(db, request, provider, currency)
    order = _resolve_order(db, request, currency)
    try:
        _check_rate_limit(request)
    except RateLimited:
        db.rollback()
        raise

    intent = PaymentIntent(
        id=new_id(),
        order_id=order.id,
        idempotency_key=request.idempotency_key,
        provider=provider,
        status=PaymentStatus.PENDING,
        display_amount_minor=request.display_amount,
        display_currency=currency,
        buyer_contact=request.buyer_contact.model_dump(exclude_none=True),
        **terms,
    )
    db.add(intent)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = get_by_idempotency_key(db, request.idempotency_key)
        if winner is not None:
            return winner, True
        raise

    intent_id = intent.id
    try:
        charge = adapter.create(intent, options)
    except ProviderRejected as e:
        logger.warning("payment_rejected", payment_id=intent_id, provider=provider.value, reason=e.message)
        update_status(db, intent_id, PaymentStatus.FAILED, payload={"error": e.message}, reason=e.code)
        raise
    except Exception as e:
        if adapter.CHARGE_MAY_EXIST_AFTER_ERROR:
            # The charge may have reached the provider under our id; the
            # poller settles it instead of a blind retry.
            logger.warning("payment_create_unconfirmed", payment_id=intent_id, provider=provider.value,
                           error=str(e))
        else:
            db.delete(intent)
            db.commit()
            logger.warning("payment_create_aborted", provider=provider.value,
                           idempotency_key=request.idempotency_key, error=str(e))
        raise

    intent.provider_ref = charge.provider_ref
    intent.client_secret = charge.client_secret
    intent.checkout_url = charge.checkout_url
    intent.last_provider_payload = charge.payload
    db.commit()

    if charge.status.is_terminal:
        update_status(db, intent_id, charge.status, payload=charge.payload)

    db.refresh(intent)
    logger.info(
        "payment_created",
        payment_id=intent.id,
        order_id=intent.order_id,
        provider=provider.value,
        provider_ref=intent.provider_ref,
        display_amount=intent.display_amount_minor,
        charge_amount=intent.charge_amount_minor,
        charge_currency=intent.charge_currency,
    )
    return intent, False


# --- status transitions -----------------------------------------------------

def ensure_amount_matches(intent: PaymentIntent, amount_minor, currency: Optional[str] = None) -> None:
    if currency and currency.upper() != intent.charge_currency:
        raise AmountMismatch(f"Expected {intent.charge_currency}, provider reported {currency}")
    if int(amount_minor) != intent.charge_amount_minor:
        raise AmountMismatch(
            f"Expected {intent.charge_amount_minor} {intent.charge_currency}, provider reported {amount_minor}"
        )


def update_status(db, intent_id: str, new_status, provider_ref: Optional[str] = None,
                  payload: Optional[dict] = None, reported_amount=None,
                  reported_currency: Optional[str] = None, reason: Optional[str] = None) -> Transition:
    intent = db.get(PaymentIntent, intent_id)
    if intent is None:
        raise NotFound(f"Payment {intent_id} not found")

    new_status = PaymentStatus(new_status)
    if new_status is PaymentStatus.COMPLETED and reported_amount is not None:
        try:
            ensure_amount_matches(intent, reported_amount, reported_currency)
        except AmountMismatch as e:
            logger.error("payment_amount_mismatch", payment_id=intent_id, detail=e.message)
            new_status = PaymentStatus.FAILED
            reason = e.code

    now = utcnow()
    values = {"updated_at": now}
    if provider_ref and not intent.provider_ref:
        values["provider_ref"] = provider_ref
    if payload is not None:
        values["last_provider_payload"] = payload

    if new_status is PaymentStatus.PENDING:
        if len(values) > 1:
            db.execute(
                update(PaymentIntent)
                .where(PaymentIntent.id == intent_id, PaymentIntent.status == PaymentStatus.PENDING)
                .values(**values)
            )
            db.commit()
        db.refresh(intent)
        return Transition(intent, False)

    values["status"] = new_status
    if new_status is PaymentStatus.COMPLETED:
        values["completed_at"] = now
    else:
        values["failed_at"] = now
        values["failure_reason"] = reason

    result = db.execute(
        update(PaymentIntent)
        .where(PaymentIntent.id == intent_id, PaymentIntent.status == PaymentStatus.PENDING)
        .values(**values)
    )
    changed = result.rowcount == 1

    if changed and new_status is PaymentStatus.FAILED and intent.order_id:
        db.execute(
            update(Order)
            .where(Order.id == intent.order_id, Order.status == OrderStatus.AWAITING_PAYMENT)
            .values(status=OrderStatus.FAILED, updated_at=now)
        )
    db.commit()
    db.refresh(intent)

    if changed:
        logger.info("payment_status_changed", payment_id=intent_id, status=new_status.value, reason=reason)
    else:
        logger.info("payment_status_unchanged", payment_id=intent_id, current=intent.status.value,
                    reported=new_status.value)
    return Transition(intent, changed)


def pending_intents(db, older_than, limit: int) -> list[str]:
    return list(db.execute(
        select(PaymentIntent.id)
        .where(PaymentIntent.status == PaymentStatus.PENDING, PaymentIntent.created_at <= older_than)
        .order_by(PaymentIntent.created_at)
        .limit(limit)
    ).scalars())


def unfulfilled_intents(db, older_than, limit: int) -> list[str]:
    """Completed payments whose order never received its tickets."""
    return list(db.execute(
        select(PaymentIntent.id)
        .join(Order, Order.id == PaymentIntent.order_id)
        .where(
            PaymentIntent.status == PaymentStatus.COMPLETED,
            Order.status == OrderStatus.AWAITING_PAYMENT,
            PaymentIntent.completed_at <= older_than,
        )
        .order_by(PaymentIntent.completed_at)
        .limit(limit)
    ).scalars())


def describe(intent: PaymentIntent) -> dict:
    return {
        "payment_id": intent.id,
        "order_id": intent.order_id,
        "provider": intent.provider,
        "provider_ref": intent.provider_ref,
        "status": intent.status.value,
        "checkout_url": intent.checkout_url,
        "client_secret": intent.client_secret,
        "display_amount_minor": intent.display_amount_minor,
        "display_currency": intent.display_currency,
        "charge_amount_minor": intent.charge_amount_minor,
        "charge_currency": intent.charge_currency,
    }
