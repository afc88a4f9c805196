from fastapi import APIRouter, Depends

from ticketpay import fx, intents, reconcile
from ticketpay.auth import verify_token
from ticketpay.database import SessionLocal
from ticketpay.errors import InvalidRequest, NotFound
from ticketpay.fulfillment import ticket_count
from ticketpay.schemas import (
    PaymentRequest, PaymentResponse, QuoteRequest, QuoteResponse, SweepRequest, VerifyRequest,
    VerifyResponse,
)

router = APIRouter()


@router.post("/payments", response_model=PaymentResponse)
def create_payment_api(request: PaymentRequest, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        intent, duplicate = intents.create_intent(db, request)
        return PaymentResponse(**intents.describe(intent), duplicate=duplicate)
    finally:
        db.close()


@router.post("/payments/verify", response_model=VerifyResponse)
def verify_payment_api(request: VerifyRequest, auth=Depends(verify_token)):
    if not request.payment_id and not request.provider_ref:
        raise InvalidRequest("payment_id or provider_ref is required")

    db = SessionLocal()
    try:
        if request.payment_id:
            intent = intents.get_intent(db, request.payment_id)
        else:
            intent = intents.get_by_provider_ref(db, request.provider_ref)
        if intent is None or (request.order_id and intent.order_id != request.order_id):
            raise NotFound("Payment not found")

        result = reconcile.reconcile(db, intent.id)
        return VerifyResponse(
            status=result.client_status,
            payment_id=result.intent.id,
            order_id=result.intent.order_id,
            message=result.message,
            code=result.reason,
        )
    finally:
        db.close()


@router.get("/payments/{payment_id}")
def get_payment_api(payment_id: str, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        intent = intents.get_intent(db, payment_id)
        if intent is None:
            raise NotFound("Payment not found")
        body = intents.describe(intent)
        body["failure_reason"] = intent.failure_reason
        body["tickets_issued"] = ticket_count(db, intent.order_id) if intent.order_id else 0
        return body
    finally:
        db.close()


@router.post("/payments/reconcile-sweep")
def reconcile_sweep_api(request: SweepRequest = SweepRequest(), auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        summary = reconcile.sweep_pending(db, request.older_than_seconds, request.limit)
        return {
            "checked": summary.checked,
            "completed": summary.completed,
            "failed": summary.failed,
            "pending": summary.pending,
            "errors": summary.errors,
        }
    finally:
        db.close()


@router.post("/fx/quote", response_model=QuoteResponse)
def fx_quote_api(request: QuoteRequest):
    db = SessionLocal()
    try:
        q = fx.quote(db, request.display_amount_minor, request.margin_bps)
    finally:
        db.close()
    return QuoteResponse(
        charge_amount_minor=q.charge_amount_minor,
        fx_numerator=q.fx_numerator,
        fx_denominator=q.fx_denominator,
        locked_at=q.locked_at,
        base_rate=q.base_rate,
        effective_rate=q.effective_rate,
        margin_bps=q.margin_bps,
        source=q.source,
        display_amount=q.display_amount,
        charge_amount=q.charge_amount,
        signature=q.signature,
    )


@router.post("/fx/refresh")
def fx_refresh_api(auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        result = fx.refresh_rates(db)
    finally:
        db.close()
    return {
        "rate": str(result.rate),
        "source": result.source,
        "valid_from": result.valid_from,
        "valid_until": result.valid_until,
        "cached": result.cached,
        "degraded": result.degraded,
        "attempted": result.attempted,
    }
