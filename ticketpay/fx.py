"""Foreign-exchange quoting for cross-currency card charges.

Buyers see prices in the display currency (XOF, no minor unit) while the card
gateway settles in USD cents. A quote converts the display amount at the
active rate plus a margin and returns the locked fraction
``fx_numerator / fx_denominator`` the payment intent records.
"""
import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP

import httpx
import structlog
from sqlalchemy import select, update

from ticketpay.cache import TTLCache
from ticketpay.config import fx_quote_secret, get_float, get_int, get_str
from ticketpay.errors import InvalidRequest, RateOutOfBounds, RateUnavailable
from ticketpay.models import FXRate, as_utc, utcnow

logger = structlog.get_logger(__name__)

DISPLAY_CURRENCY = "XOF"
SETTLEMENT_CURRENCY = "USD"
MAX_MARGIN_BPS = 500
RATE_VALIDITY = timedelta(hours=2)
RECENT_RATE_AGE = timedelta(hours=1)
SOURCE_TIMEOUT_SECONDS = 10.0

# Last rate read from a fresh row, per (from, to) pair.
LAST_GOOD_RATES = TTLCache(ttl_seconds=6 * 3600, max_entries=32)


@dataclass
class FXQuote:
    display_amount_minor: int
    charge_amount_minor: int
    fx_numerator: int
    fx_denominator: int
    locked_at: datetime
    margin_bps: int
    base_rate: int
    effective_rate: int
    source: str
    display_currency: str = DISPLAY_CURRENCY
    charge_currency: str = SETTLEMENT_CURRENCY

    @property
    def display_amount(self) -> str:
        return format_display_amount(self.display_amount_minor)

    @property
    def charge_amount(self) -> str:
        return format_charge_amount(self.charge_amount_minor, self.charge_currency)

    @property
    def signature(self) -> str | None:
        return sign_quote(self.display_amount_minor, self.charge_amount_minor, self.fx_numerator,
                          self.fx_denominator, self.margin_bps, self.locked_at)


@dataclass
class RefreshResult:
    rate: Decimal
    source: str
    valid_from: datetime
    valid_until: datetime
    cached: bool = False
    degraded: bool = False
    attempted: list[str] = field(default_factory=list)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def rate_band() -> tuple[Decimal, Decimal]:
    return Decimal(str(get_float("FX_MIN_RATE", 300))), Decimal(str(get_float("FX_MAX_RATE", 1000)))


def is_plausible(rate: Decimal) -> bool:
    low, high = rate_band()
    return low <= rate <= high


def default_margin_bps() -> int:
    return get_int("FX_DEFAULT_MARGIN_BPS", 150)


def fallback_rate() -> Decimal | None:
    raw = get_str("FX_FALLBACK_RATE", "566")
    if raw.strip() in ("", "0"):
        return None
    return Decimal(raw)


def format_display_amount(amount_minor: int) -> str:
    return f"{amount_minor:,}".replace(",", " ") + " FCFA"


def format_charge_amount(amount_minor: int, currency: str = SETTLEMENT_CURRENCY) -> str:
    prefix = "$" if currency == "USD" else ""
    return f"{prefix}{Decimal(amount_minor) / 100:.2f} {currency}"


def current_rate(db, from_currency=SETTLEMENT_CURRENCY, to_currency=DISPLAY_CURRENCY, now=None):
    """Return ``(rate, source)`` for the pair, falling back when no row is fresh."""
    now = now or utcnow()
    pair = (from_currency, to_currency)

    row = db.execute(
        select(FXRate)
        .where(
            FXRate.from_currency == from_currency,
            FXRate.to_currency == to_currency,
            FXRate.is_active.is_(True),
            FXRate.valid_from <= now,
        )
        .order_by(FXRate.valid_from.desc())
        .limit(1)
    ).scalar_one_or_none()

    if row is not None and as_utc(row.valid_until) >= now:
        rate = Decimal(str(row.rate))
        LAST_GOOD_RATES.set(pair, (rate, row.source))
        return rate, row.source

    cached = LAST_GOOD_RATES.get(pair)
    if cached is not None:
        logger.warning("fx_rate_stale_using_cache", pair=pair, rate=str(cached[0]))
        return cached[0], "cache"

    rate = fallback_rate()
    if rate is None:
        raise RateUnavailable(f"No usable {from_currency}/{to_currency} rate")
    logger.warning("fx_rate_fallback", pair=pair, rate=str(rate))
    return rate, "fallback"


def compute_quote(display_amount_minor: int, base_rate, margin_bps: int, source: str = "manual",
                  locked_at: datetime | None = None) -> FXQuote:
    if not isinstance(display_amount_minor, int) or display_amount_minor <= 0:
        raise InvalidRequest("display_amount_minor must be a positive integer")
    if margin_bps < 0 or margin_bps > MAX_MARGIN_BPS:
        raise InvalidRequest(f"margin_bps must be between 0 and {MAX_MARGIN_BPS}")

    base = round_half_up(Decimal(str(base_rate)))
    if not is_plausible(Decimal(base)):
        raise RateOutOfBounds(f"FX source out of bounds: {base} {DISPLAY_CURRENCY}/{SETTLEMENT_CURRENCY}")

    effective = round_half_up(Decimal(base) * (1 + Decimal(margin_bps) / Decimal(10000)))
    charge = max(1, round_half_up(Decimal(display_amount_minor) * 100 / Decimal(effective)))

    implied = Decimal(display_amount_minor) * 100 / Decimal(charge)
    if not is_plausible(implied):
        raise RateOutOfBounds(f"Implied FX out of bounds: {implied:.2f} {DISPLAY_CURRENCY}/{SETTLEMENT_CURRENCY}")

    return FXQuote(
        display_amount_minor=display_amount_minor,
        charge_amount_minor=charge,
        fx_numerator=100,
        fx_denominator=effective,
        locked_at=locked_at or utcnow(),
        margin_bps=margin_bps,
        base_rate=base,
        effective_rate=effective,
        source=source,
    )


def quote(db, display_amount_minor: int, margin_bps: int | None = None, now=None) -> FXQuote:
    margin_bps = default_margin_bps() if margin_bps is None else margin_bps
    rate, source = current_rate(db, now=now)
    result = compute_quote(display_amount_minor, rate, margin_bps, source, locked_at=now)
    logger.info(
        "fx_quote",
        display_amount_minor=display_amount_minor,
        charge_amount_minor=result.charge_amount_minor,
        effective_rate=result.effective_rate,
        source=source,
    )
    return result


def converted_amount(display_amount_minor: int, numerator: int, denominator: int) -> Decimal:
    return Decimal(display_amount_minor) * Decimal(numerator) / Decimal(denominator)


def matches_locked_rate(display_amount_minor: int, charge_amount_minor: int,
                        numerator: int, denominator: int, tolerance: int = 1) -> bool:
    if numerator <= 0 or denominator <= 0:
        return False
    expected = converted_amount(display_amount_minor, numerator, denominator)
    return abs(Decimal(charge_amount_minor) - expected) <= tolerance


def sign_quote(display_amount_minor: int, charge_amount_minor: int, numerator: int, denominator: int,
               margin_bps, locked_at: datetime) -> str | None:
    """HMAC-SHA256 over the quote terms, or ``None`` when no secret is configured."""
    secret = fx_quote_secret()
    if not secret:
        return None
    message = ":".join([
        str(display_amount_minor),
        str(charge_amount_minor),
        str(numerator),
        str(denominator),
        str(margin_bps if margin_bps is not None else ""),
        as_utc(locked_at).astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S.%f"),
    ])
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def validate_locked_quote(display_amount_minor: int, charge_amount_minor: int, numerator: int,
                          denominator: int, locked_at: datetime, margin_bps=None,
                          signature: str | None = None, now=None) -> None:
    """Check a quote the client obtained earlier before charging with it.

    Only quotes issued by :func:`quote` are honoured: the terms must carry
    the signature returned alongside them, unchanged.
    """
    now = now or utcnow()
    ttl = timedelta(seconds=get_int("FX_QUOTE_TTL_SECONDS", 900))
    if now - as_utc(locked_at) > ttl:
        raise InvalidRequest("FX quote has expired, request a new quote")
    if not matches_locked_rate(display_amount_minor, charge_amount_minor, numerator, denominator):
        raise InvalidRequest("Charge amount does not match the locked FX rate")
    implied = Decimal(denominator) / Decimal(numerator) * 100
    if not is_plausible(implied):
        raise RateOutOfBounds(f"Locked FX rate out of bounds: {implied:.2f}")

    expected = sign_quote(display_amount_minor, charge_amount_minor, numerator, denominator,
                          margin_bps, locked_at)
    if expected is None or not signature or not hmac.compare_digest(expected, signature):
        logger.warning("fx_quote_rejected", display_amount_minor=display_amount_minor,
                       charge_amount_minor=charge_amount_minor, fx_denominator=denominator)
        raise InvalidRequest("FX quote was not issued by this service, request a new quote")


# --- Rate refresh -----------------------------------------------------------

def _parse_xe(data: dict):
    if data.get("to"):
        return Decimal(str(data["to"][0]["mid"]))
    return None


def _parse_rates_table(data: dict):
    rates = data.get("rates") or {}
    if DISPLAY_CURRENCY in rates:
        return Decimal(str(rates[DISPLAY_CURRENCY]))
    return None


FX_SOURCES = [
    {
        "name": "XE",
        "url": "https://xecdapi.xe.com/v1/convert_from.json",
        "params": {"from": SETTLEMENT_CURRENCY, "to": DISPLAY_CURRENCY, "amount": 1},
        "key_env": "XE_API_KEY",
        "auth": "bearer",
        "parser": _parse_xe,
    },
    {
        "name": "ExchangeRate-API",
        "url": f"https://api.exchangerate-api.com/v4/latest/{SETTLEMENT_CURRENCY}",
        "params": {},
        "key_env": None,
        "auth": None,
        "parser": _parse_rates_table,
    },
    {
        "name": "Fixer.io",
        "url": "https://data.fixer.io/api/latest",
        "params": {"base": SETTLEMENT_CURRENCY, "symbols": DISPLAY_CURRENCY},
        "key_env": "FIXER_API_KEY",
        "auth": "query",
        "parser": _parse_rates_table,
    },
]


def _fetch_from_source(client: httpx.Client, source: dict):
    headers = {"User-Agent": "ticketpay-fx-fetcher/1.0"}
    params = dict(source["params"])
    if source["key_env"]:
        key = get_str(source["key_env"])
        if not key:
            return None
        if source["auth"] == "bearer":
            headers["Authorization"] = f"Bearer {key}"
        else:
            params["access_key"] = key

    response = client.get(source["url"], params=params, headers=headers)
    if response.status_code != 200:
        logger.warning("fx_source_http_error", source=source["name"], status=response.status_code)
        return None
    return source["parser"](response.json())


def refresh_rates(db, client: httpx.Client | None = None, now=None) -> RefreshResult:
    now = now or utcnow()
    pair = (SETTLEMENT_CURRENCY, DISPLAY_CURRENCY)

    recent = db.execute(
        select(FXRate)
        .where(
            FXRate.from_currency == SETTLEMENT_CURRENCY,
            FXRate.to_currency == DISPLAY_CURRENCY,
            FXRate.is_active.is_(True),
            FXRate.valid_from >= now - RECENT_RATE_AGE,
        )
        .order_by(FXRate.valid_from.desc())
        .limit(1)
    ).scalar_one_or_none()
    if recent is not None:
        logger.info("fx_refresh_skipped", rate=str(recent.rate), source=recent.source)
        return RefreshResult(
            rate=Decimal(str(recent.rate)),
            source=recent.source,
            valid_from=as_utc(recent.valid_from),
            valid_until=as_utc(recent.valid_until),
            cached=True,
        )

    fetched = None
    source_used = ""
    attempted = []
    owns_client = client is None
    client = client or httpx.Client(timeout=SOURCE_TIMEOUT_SECONDS)
    try:
        for source in FX_SOURCES:
            attempted.append(source["name"])
            try:
                rate = _fetch_from_source(client, source)
            except (httpx.HTTPError, ValueError, KeyError, IndexError, ArithmeticError) as e:
                logger.warning("fx_source_failed", source=source["name"], error=str(e))
                continue
            if rate is None:
                continue
            if is_plausible(rate):
                fetched = rate.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
                source_used = source["name"]
                break
            logger.warning("fx_source_implausible", source=source["name"], rate=str(rate))
    finally:
        if owns_client:
            client.close()

    degraded = fetched is None
    if degraded:
        fetched = fallback_rate()
        source_used = "fallback"
        logger.warning("fx_refresh_degraded", attempted=attempted, rate=str(fetched))
        if fetched is None:
            raise RateUnavailable("All FX sources failed and no fallback rate is configured")

    if not is_plausible(fetched):
        raise RateOutOfBounds(f"Fetched rate {fetched} is outside reasonable bounds")

    db.execute(
        update(FXRate)
        .where(
            FXRate.from_currency == SETTLEMENT_CURRENCY,
            FXRate.to_currency == DISPLAY_CURRENCY,
            FXRate.is_active.is_(True),
        )
        .values(is_active=False)
    )
    row = FXRate(
        from_currency=SETTLEMENT_CURRENCY,
        to_currency=DISPLAY_CURRENCY,
        rate=fetched,
        source=source_used,
        valid_from=now,
        valid_until=now + RATE_VALIDITY,
        is_active=True,
        details={
            "fetched_at": now.isoformat(),
            "sources_attempted": attempted,
            "note": f"1 {SETTLEMENT_CURRENCY} = {fetched} {DISPLAY_CURRENCY}",
        },
    )
    db.add(row)
    db.commit()
    LAST_GOOD_RATES.set(pair, (fetched, source_used))

    logger.info("fx_rate_updated", rate=str(fetched), source=source_used, degraded=degraded)
    return RefreshResult(
        rate=fetched,
        source=source_used,
        valid_from=now,
        valid_until=now + RATE_VALIDITY,
        degraded=degraded,
        attempted=attempted,
    )
