import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def get_str(name: str, default: str = "") -> str:
    return os.getenv(name, default) or default


def get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}")


def get_list(name: str, default: str) -> list[str]:
    return [item.strip().upper() for item in get_str(name, default).split(",") if item.strip()]


# Settings are read on every call so that a changed environment
# (tests, rotated secrets) is honoured without a restart.

def database_url() -> str:
    return get_str("DATABASE_URL", "sqlite:///./ticketpay.db")


def jwt_secret() -> str:
    return get_str("JWT_SECRET")


def fx_quote_secret() -> str:
    return get_str("FX_QUOTE_SECRET") or jwt_secret()


def supported_currencies() -> list[str]:
    return get_list("SUPPORTED_CURRENCIES", "XOF")


def card_charge_currency() -> str:
    return get_str("CARD_CHARGE_CURRENCY", "USD").upper()


def amount_bounds() -> tuple[int, int]:
    return get_int("PAYMENT_MIN_AMOUNT", 100), get_int("PAYMENT_MAX_AMOUNT", 10_000_000)


def provider_timeout() -> float:
    return get_float("PROVIDER_TIMEOUT_SECONDS", 20.0)


def not_found_grace_seconds() -> int:
    return get_int("NOT_FOUND_GRACE_SECONDS", 900)


def max_create_per_minute() -> int:
    return get_int("MAX_CREATE_PER_MINUTE", 10)


def public_base_url() -> str:
    return get_str("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
