import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, Integer, JSON, Numeric, String, Text,
    UniqueConstraint,
)

from ticketpay.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Provider(str, enum.Enum):
    CARD = "CARD"
    MOBILE_MONEY_A = "MOBILE_MONEY_A"
    MOBILE_MONEY_B = "MOBILE_MONEY_B"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class OrderStatus(str, enum.Enum):
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TicketStatus(str, enum.Enum):
    VALID = "VALID"
    USED = "USED"
    TRANSFERRED = "TRANSFERRED"


class TicketType(Base):
    __tablename__ = "ticket_types"

    id = Column(String, primary_key=True, default=new_id)
    event_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    price_minor = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="XOF")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_id)
    event_id = Column(String, nullable=False, index=True)
    ticket_quantities = Column(JSON, nullable=False)   # ticket_type_id -> count
    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.AWAITING_PAYMENT)
    total_minor = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    buyer_contact = Column(JSON, nullable=True)
    checkout_key = Column(String, unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True, index=True)
    idempotency_key = Column(String, unique=True, nullable=False)
    provider = Column(Enum(Provider), nullable=False)
    provider_ref = Column(String, nullable=True, index=True)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    failure_reason = Column(String, nullable=True)

    display_amount_minor = Column(Integer, nullable=False)
    display_currency = Column(String(3), nullable=False)
    charge_amount_minor = Column(Integer, nullable=False)
    charge_currency = Column(String(3), nullable=False)
    fx_numerator = Column(Integer, nullable=False, default=1)
    fx_denominator = Column(Integer, nullable=False, default=1)
    fx_locked_at = Column(DateTime(timezone=True), nullable=True)
    fx_margin_bps = Column(Integer, nullable=True)

    client_secret = Column(String, nullable=True)
    checkout_url = Column(String, nullable=True)
    buyer_contact = Column(JSON, nullable=True)
    last_provider_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("provider", "event_key", name="uq_webhook_provider_event"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(Enum(Provider), nullable=False)
    event_key = Column(String, nullable=False)
    event_type = Column(String, nullable=True)
    provider_ref = Column(String, nullable=True)
    verified = Column(Boolean, nullable=False, default=True)
    processed = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)


class FXRate(Base):
    __tablename__ = "fx_rates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    from_currency = Column(String(3), nullable=False)
    to_currency = Column(String(3), nullable=False)
    rate = Column(Numeric(12, 4), nullable=False)      # to-currency units per from-currency unit
    source = Column(String, nullable=False)
    valid_from = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    valid_until = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    details = Column(JSON, nullable=True)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("order_id", "ticket_type_id", "unit_index", name="uq_ticket_order_type_unit"),
    )

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    event_id = Column(String, nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"), nullable=False)
    payment_id = Column(String, ForeignKey("payment_intents.id"), nullable=False)
    unit_index = Column(Integer, nullable=False)
    status = Column(Enum(TicketStatus), nullable=False, default=TicketStatus.VALID)
    created_at = Column(DateTime(timezone=True), default=utcnow)
