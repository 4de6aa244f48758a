"""Error taxonomy for the AI proxy gateway.

Every pipeline stage raises one of these. Each error carries the HTTP status
and the exact client-facing message it maps to, so the HTTP layer never has to
translate between internal failures and response bodies.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for errors that map directly to an HTTP response."""

    status: int = 500
    message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, detail: str = "") -> None:
        if message is not None:
            self.message = message
        # Operator-facing detail; never sent to the client.
        self.detail = detail or self.message
        super().__init__(self.detail)

    def to_body(self) -> Dict[str, Any]:
        """Render the client-facing JSON body."""
        return {"error": self.message}


class ValidationError(GatewayError):
    status = 400
    message = "Invalid message format"


class AuthenticationError(GatewayError):
    """Missing, malformed, invalid or expired credential."""

    status = 401
    message = "Invalid authentication token"


class AuthorizationError(GatewayError):
    """The token's identity does not match the identity in the body."""

    status = 403
    message = "User ID mismatch"


class NotFoundError(GatewayError):
    status = 404
    message = "User not found"


class QuotaExceededError(GatewayError):
    """Raised when a user exceeds the request budget of an operation."""

    status = 429
    message = "Rate limit exceeded"

    def __init__(self, wait_seconds: int, detail: str = "") -> None:
        self.wait_seconds = wait_seconds
        super().__init__(detail=detail)

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message, "waitTime": self.wait_seconds}


class InsufficientCreditsError(GatewayError):
    status = 402
    message = "No AI credits remaining"


class UnsupportedProviderError(GatewayError):
    status = 400
    message = "Unsupported AI provider"


class UpstreamProviderError(GatewayError):
    """The selected backend failed.

    The upstream status and body are captured for diagnostics but the client
    only ever sees a generic 500.
    """

    status = 500
    message = "Internal server error"

    def __init__(
        self,
        provider: str,
        detail: str,
        upstream_status: Optional[int] = None,
        upstream_body: Optional[str] = None,
    ) -> None:
        self.provider = provider
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body
        super().__init__(detail="{}: {}".format(provider, detail))


class ProviderUnavailable(UpstreamProviderError):
    """Transport failure, timeout, missing credential or non-2xx status."""


class ProviderRejected(ProviderUnavailable):
    """The backend refused the request itself (400, 401, 403, 404)."""


class ProviderMalformedResponse(UpstreamProviderError):
    """A 2xx response whose envelope could not be parsed."""


class InternalError(GatewayError):
    status = 500
    message = "Internal server error"
