from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ticketpay.models import Provider


class TicketLine(BaseModel):
    ticket_type_id: str
    quantity: int = Field(gt=0)


class BuyerContact(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None


class LockedQuote(BaseModel):
    charge_amount_minor: int
    fx_numerator: int
    fx_denominator: int
    locked_at: datetime
    margin_bps: Optional[int] = None
    signature: Optional[str] = None


class PaymentRequest(BaseModel):
    idempotency_key: str
    order_id: Optional[str] = None
    event_id: Optional[str] = None
    ticket_lines: list[TicketLine] = []
    display_amount: int
    currency: str = "XOF"
    provider: Provider
    buyer_contact: BuyerContact = BuyerContact()
    mobile_operator: Optional[str] = None      # e.g. "orange", "moov"
    preauth_code: Optional[str] = None         # USSD pre-authorisation code
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    fx_quote: Optional[LockedQuote] = None


class PaymentResponse(BaseModel):
    payment_id: str
    order_id: Optional[str]
    provider: Provider
    provider_ref: Optional[str]
    status: str
    checkout_url: Optional[str] = None
    client_secret: Optional[str] = None
    display_amount_minor: int
    display_currency: str
    charge_amount_minor: int
    charge_currency: str
    # A replayed key returns the stored intent; only this flag and status differ.
    duplicate: bool = False


class VerifyRequest(BaseModel):
    payment_id: Optional[str] = None
    provider_ref: Optional[str] = None
    order_id: Optional[str] = None


class VerifyResponse(BaseModel):
    status: str                 # pending | succeeded | failed
    payment_id: str
    order_id: Optional[str]
    message: str
    code: Optional[str] = None


class QuoteRequest(BaseModel):
    display_amount_minor: int
    margin_bps: Optional[int] = None


class QuoteResponse(BaseModel):
    charge_amount_minor: int
    fx_numerator: int
    fx_denominator: int
    locked_at: datetime
    base_rate: int
    effective_rate: int
    margin_bps: int
    source: str
    display_amount: str
    charge_amount: str
    signature: Optional[str] = None


class SweepRequest(BaseModel):
    older_than_seconds: int = 300
    limit: int = Field(default=50, gt=0, le=500)
