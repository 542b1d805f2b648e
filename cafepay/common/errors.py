"""Error taxonomy shared by the proxy routes and the checkout client.

Every error carries a human-readable `message` that is safe to show to a
customer. Diagnostic detail (upstream bodies, provider payloads) goes to
`detail` and is only ever logged.
"""

from typing import Any


class CheckoutError(Exception):
    """Base class for checkout failures with an HTTP mapping."""

    status_code = 500
    error = "checkout_error"

    def __init__(self, message: str, detail: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_payload(self) -> dict[str, str]:
        return {"error": self.error, "message": self.message}


class NotFoundError(CheckoutError):
    """Order or payment does not exist upstream."""

    status_code = 404
    error = "not_found"


class ValidationError(CheckoutError):
    """Request is missing or has malformed fields; no outbound call was made."""

    status_code = 400
    error = "validation_error"


class ProviderError(CheckoutError):
    """The payment provider declined or rejected the operation."""

    status_code = 402
    error = "provider_error"

    def __init__(self, message: str, detail: Any = None, code: str | None = None) -> None:
        super().__init__(message, detail)
        self.code = code


class UpstreamError(CheckoutError):
    """The remote backend was unreachable or returned an error."""

    status_code = 502
    error = "upstream_error"

    def __init__(self, message: str, detail: Any = None, status_code: int | None = None) -> None:
        super().__init__(message, detail)
        if status_code is not None:
            self.status_code = status_code


class ProviderNotConfigured(UpstreamError):
    status_code = 503
    error = "provider_not_configured"


class PartialFailure(Exception):
    """The charge went through but recording it in the backend failed.

    Raised internally only; routes turn it into a 207 success with a warning.
    """

    def __init__(self, warning: str, data: dict[str, Any] | None = None) -> None:
        super().__init__(warning)
        self.warning = warning
        self.data = data or {}
