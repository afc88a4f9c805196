import structlog
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ticketpay import webhooks
from ticketpay.database import Base, SessionLocal, engine
from ticketpay.errors import PaymentError
from ticketpay.log import configure_logging
from ticketpay.models import Provider
from ticketpay.routes import router

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="Ticket Payment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    log = logger.warning if exc.status_code < 500 else logger.error
    log("request_failed", path=request.url.path, code=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else "Invalid request body"
    return JSONResponse(status_code=400, content={"code": "INVALID_REQUEST", "message": message})


def _process_webhook(provider: Provider, payload: bytes, headers):
    db = SessionLocal()
    try:
        return webhooks.ingest(db, provider, payload, headers)
    finally:
        db.close()


async def _ingest(request: Request, provider: Provider):
    # The raw body is needed for signature checks; the database work runs in
    # the worker pool so one slow delivery does not hold up the others.
    payload = await request.body()
    result = await run_in_threadpool(_process_webhook, provider, payload, request.headers)
    return JSONResponse(status_code=result.outcome.http_status, content=result.body())


@app.post("/webhooks/stripe")
async def stripe_webhook(request: Request):
    return await _ingest(request, Provider.CARD)


@app.post("/webhooks/paydunya")
async def paydunya_webhook(request: Request):
    return await _ingest(request, Provider.MOBILE_MONEY_A)


@app.post("/webhooks/pawapay")
async def pawapay_webhook(request: Request):
    return await _ingest(request, Provider.MOBILE_MONEY_B)


@app.get("/health")
def health():
    return {"status": "ok"}
