"""Error taxonomy shared by the payment core.

Every error carries a stable machine-readable ``code`` and the HTTP status
the API layer answers with. Messages are safe to show to clients; raw
provider payloads belong in the logs only.
"""


class PaymentError(Exception):
    code = "PAYMENT_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str = "", code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code


class InvalidRequest(PaymentError):
    code = "INVALID_REQUEST"
    status_code = 400


class NotFound(PaymentError):
    code = "NOT_FOUND"
    status_code = 404


class UnsupportedCurrency(PaymentError):
    code = "UNSUPPORTED_CURRENCY"
    status_code = 422


class AmountOutOfBounds(PaymentError):
    code = "AMOUNT_OUT_OF_BOUNDS"
    status_code = 422


class RateLimited(PaymentError):
    code = "RATE_LIMITED"
    status_code = 429
    retryable = True


class ProviderUnavailable(PaymentError):
    """Timeout, network failure or 5xx from a gateway. Safe to retry."""
    code = "PROVIDER_UNAVAILABLE"
    status_code = 503
    retryable = True


class ProviderRejected(PaymentError):
    """The gateway authoritatively refused the charge."""
    code = "PROVIDER_REJECTED"
    status_code = 402


class InvalidSignature(PaymentError):
    code = "INVALID_SIGNATURE"
    status_code = 400


class RateUnavailable(PaymentError):
    code = "RATE_UNAVAILABLE"
    status_code = 503
    retryable = True


class RateOutOfBounds(PaymentError):
    code = "RATE_OUT_OF_BOUNDS"
    status_code = 422


class AmountMismatch(PaymentError):
    code = "AMOUNT_MISMATCH"
    status_code = 409


class FulfillmentFailed(PaymentError):
    code = "FULFILLMENT_FAILED"
    status_code = 500
    retryable = True
