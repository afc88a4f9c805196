"""Provider adapter registry and status normalization.

Each gateway family is a plain module exposing ``validate_options``,
``create``, ``verify``, ``parse_webhook`` and the ``CHARGE_MAY_EXIST_AFTER_ERROR``
flag; :func:`get_adapter` picks one by :class:`Provider`.
"""
import json
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any, Optional

import httpx

from ticketpay.errors import InvalidRequest, ProviderRejected, ProviderUnavailable
from ticketpay.models import PaymentStatus, Provider

STATUS_TABLE = {
    "ACCEPTED": PaymentStatus.PENDING,
    "SUBMITTED": PaymentStatus.PENDING,
    "PENDING": PaymentStatus.PENDING,
    "PROCESSING": PaymentStatus.PENDING,
    "COMPLETED": PaymentStatus.COMPLETED,
    "SUCCESS": PaymentStatus.COMPLETED,
    "SUCCESSFUL": PaymentStatus.COMPLETED,
    "SUCCEEDED": PaymentStatus.COMPLETED,
    "FAILED": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.FAILED,
    "CANCELED": PaymentStatus.FAILED,
    "ERROR": PaymentStatus.FAILED,
    "REJECTED": PaymentStatus.FAILED,
}


def normalize_status(raw: Optional[str]) -> PaymentStatus:
    """Map a provider status string; anything unknown stays PENDING."""
    if not raw:
        return PaymentStatus.PENDING
    key = str(raw).strip().upper().replace("-", "_").replace(" ", "_")
    return STATUS_TABLE.get(key, PaymentStatus.PENDING)


@dataclass
class ChargeOptions:
    """Per-request details an adapter may need beyond the stored intent."""
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    phone: Optional[str] = None
    operator: Optional[str] = None
    preauth_code: Optional[str] = None


@dataclass
class ChargeResult:
    provider_ref: Optional[str]
    status: PaymentStatus = PaymentStatus.PENDING
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None
    payload: dict = field(default_factory=dict)


@dataclass
class ProviderStatus:
    found: bool
    status: PaymentStatus = PaymentStatus.PENDING
    provider_ref: Optional[str] = None
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    payload: dict = field(default_factory=dict)


@dataclass
class WebhookNotice:
    event_key: Optional[str]
    event_type: Optional[str]
    provider_refs: list[str]
    status: PaymentStatus
    verified: bool
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    intent_hint: Optional[str] = None
    payload: dict = field(default_factory=dict)

    @property
    def provider_ref(self) -> Optional[str]:
        return self.provider_refs[0] if self.provider_refs else None


def first_present(*values: Any) -> list[str]:
    """Distinct, non-empty identifiers in the order given."""
    seen = []
    for value in values:
        if value and str(value) not in seen:
            seen.append(str(value))
    return seen


def parse_json_body(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        raise InvalidRequest("Invalid webhook payload")
    if not isinstance(payload, dict):
        raise InvalidRequest("Invalid webhook payload")
    return payload


def header(headers, *names: str) -> Optional[str]:
    for name in names:
        value = headers.get(name) or headers.get(name.lower())
        if value:
            return value
    return None


def send(client: httpx.Client, method: str, url: str, provider_name: str, **kwargs) -> httpx.Response:
    """Perform one gateway call; transport failures and 5xx are retryable."""
    try:
        response = client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise ProviderUnavailable(f"{provider_name} timed out") from e
    except httpx.HTTPError as e:
        raise ProviderUnavailable(f"{provider_name} unreachable") from e
    if response.status_code >= 500:
        raise ProviderUnavailable(f"{provider_name} returned {response.status_code}")
    return response


def response_json(response: httpx.Response, provider_name: str) -> dict:
    try:
        data = response.json()
    except ValueError:
        raise ProviderRejected(f"Invalid response from {provider_name}")
    return data if isinstance(data, dict) else {"data": data}


def get_adapter(provider: Provider) -> ModuleType:
    from ticketpay import paydunya_service, pawapay_service, stripe_service

    adapters = {
        Provider.CARD: stripe_service,
        Provider.MOBILE_MONEY_A: paydunya_service,
        Provider.MOBILE_MONEY_B: pawapay_service,
    }
    return adapters[Provider(provider)]
