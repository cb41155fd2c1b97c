GENERIC_GATEWAY_MESSAGE = "payment service unavailable"


class PaymentError(Exception):
    """Base class for everything the payment flow raises on purpose."""

    def __init__(self, message: str = "", **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self):
        return self.message


class ValidationError(PaymentError):
    """Rejected input. Raised before any network call is made."""


class AuthError(PaymentError):
    """Credentials missing or refused by the OAuth endpoint."""


class InitiationError(PaymentError):
    """The gateway did not accept the STK push. Nothing is persisted."""

    def __init__(self, message: str = "", response_code: str = "", **details):
        super().__init__(message or GENERIC_GATEWAY_MESSAGE, **details)
        self.response_code = response_code


class PollError(PaymentError):
    """Transport or auth failure while querying a payment's status."""


class CallbackParseError(PaymentError):
    """A notification from the gateway did not have the expected shape."""
