"""Error taxonomy for the authorization and session layer.

Every error here is reported to the caller as a structured response and is
never fatal to the process.
"""

from typing import Any


class OAuthError(Exception):
    """Base error carrying an RFC 6749 style error code and HTTP status."""

    error = "server_error"
    status_code = 500

    def __init__(self, error_description: str | None = None) -> None:
        super().__init__(error_description or self.error)
        self.error_description = error_description

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"error": self.error}
        if self.error_description:
            data["error_description"] = self.error_description
        return data


class InvalidRequestError(OAuthError):
    """Malformed registration, authorize or token input."""

    error = "invalid_request"
    status_code = 400


class InvalidClientMetadataError(InvalidRequestError):
    """Dynamic client registration rejected (RFC 7591)."""

    error = "invalid_client_metadata"


class RateLimitedError(OAuthError):
    """Too many failed credential checks from one caller."""

    error = "rate_limited"
    status_code = 429

    def __init__(self, error_description: str, retry_after: int) -> None:
        super().__init__(error_description)
        self.retry_after = retry_after


class UnauthorizedError(OAuthError):
    """Bad password or missing bearer credentials."""

    error = "unauthorized"
    status_code = 401


class InvalidTokenError(UnauthorizedError):
    error = "invalid_token"


class InvalidGrantError(OAuthError):
    """Bad, expired or already used authorization code."""

    error = "invalid_grant"
    status_code = 400


class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"
    status_code = 400


class SessionNotFoundError(Exception):
    """No live session matches the request; the caller must re-initialize."""

    status_code = 400
