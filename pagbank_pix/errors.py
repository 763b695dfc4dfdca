"""Error taxonomy shared by every component."""


class PixError(Exception):
    """Base class for errors raised by this package."""


class ConfigError(PixError):
    pass


class ValidationError(PixError):
    """Bad input from the caller. User-facing, never retried."""


class InvalidAmount(ValidationError):
    pass


class UnsupportedCurrency(ValidationError):
    def __init__(self, currency: str):
        super().__init__(f"Unsupported currency {currency!r}: Pix settles in BRL only")
        self.currency = currency


class InvalidTransition(ValidationError):
    def __init__(self, current, target):
        super().__init__(f"Transition {current.value} -> {target.value} is not allowed")
        self.current = current
        self.target = target


class ProviderError(PixError):
    """Raised by the PagBank client."""

    def __init__(self, message: str, status_code=None, details=None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details or []


class TransientError(ProviderError):
    """Network failure, timeout or 5xx. Safe to retry."""


class PermanentError(ProviderError):
    """4xx rejection. Retrying the same request will not help."""


class StaleState(PixError):
    """Compare-and-swap lost: the persisted state is not the expected one."""

    def __init__(self, intent_id: str, expected):
        super().__init__(f"Intent {intent_id} is no longer in state {expected.value}")
        self.intent_id = intent_id
        self.expected = expected


class IntentNotFound(PixError):
    pass


class CheckoutFailed(PixError):
    """Recoverable checkout failure. The host should offer a retry."""

    message = "Houve um erro ao processar o pagamento."

    def __init__(self, order_reference: str, cause: Exception = None):
        super().__init__(self.message)
        self.order_reference = order_reference
        self.cause = cause
        self.retryable = True


class RefundFailed(PixError):
    """Refund rejected by the provider. The message is shown to the merchant."""


class Conflict(PixError):
    """A uniqueness rule in the store rejected the write."""


class GatewayUnavailable(PixError):
    """PagBank is not connected: no API token is configured."""
