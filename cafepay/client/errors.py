"""Errors raised by the checkout client to its UI layer."""

from cafepay.common.errors import CheckoutError, NotFoundError, ProviderError, UpstreamError


class OrderNotFound(NotFoundError):
    pass


class NetworkError(UpstreamError):
    """The proxy could not be reached or answered with a server error."""


class PaymentDeclined(ProviderError):
    """The provider declined; `message` is the provider's readable reason."""


class SessionBusy(CheckoutError):
    """Another submission or session refresh is already in flight."""

    status_code = 409
    error = "session_busy"


class StaleSession(CheckoutError):
    """The session was superseded or already confirmed and cannot be submitted."""

    status_code = 409
    error = "stale_session"
