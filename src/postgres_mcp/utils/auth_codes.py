"""Short-lived, single-use authorization codes and PKCE verification."""

import base64
import hashlib
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass

from cachetools import TTLCache

from postgres_mcp.config import DEFAULT_AUTH_CODE_TTL, DEFAULT_OAUTH_CACHE_MAXSIZE
from postgres_mcp.exceptions import InvalidGrantError, InvalidRequestError
from postgres_mcp.utils.logging import mask_sensitive

logger = logging.getLogger("postgres-mcp.oauth.codes")

SUPPORTED_CHALLENGE_METHODS = ("S256", "plain")


@dataclass(frozen=True)
class AuthorizationCode:
    """Proof of a completed authorize step, exchanged once for a token."""

    code: str
    client_id: str | None
    redirect_uri: str
    expires_at: float
    code_challenge: str | None = None
    code_challenge_method: str | None = None


def normalize_challenge_method(
    code_challenge: str | None, code_challenge_method: str | None
) -> str | None:
    """Validate the PKCE method sent with an authorize request.

    Args:
        code_challenge: Challenge from the client, if any
        code_challenge_method: Method from the client, if any

    Returns:
        The method to record, ``plain`` when a challenge is sent without
        one, None when there is no challenge

    Raises:
        InvalidRequestError: If the method is not S256 or plain.
    """
    if not code_challenge:
        return None
    method = code_challenge_method or "plain"
    if method not in SUPPORTED_CHALLENGE_METHODS:
        raise InvalidRequestError(f"Unsupported code_challenge_method: {method}")
    return method


def derive_code_challenge(code_verifier: str, method: str) -> str:
    """Transform a PKCE verifier the way the client derived its challenge."""
    if method == "S256":
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return code_verifier


def verify_code_verifier(code: AuthorizationCode, code_verifier: str | None) -> None:
    """Check a token request's verifier against the code's challenge.

    Codes issued without a challenge accept any request.

    Raises:
        InvalidGrantError: If a challenge was recorded and the verifier is
            missing or does not match.
    """
    if not code.code_challenge:
        return
    if not code_verifier:
        raise InvalidGrantError("code_verifier is required")
    try:
        derived = derive_code_challenge(
            code_verifier, code.code_challenge_method or "plain"
        )
    except UnicodeEncodeError:
        raise InvalidGrantError("Invalid code_verifier") from None
    if not secrets.compare_digest(derived, code.code_challenge):
        logger.warning(f"PKCE verification failed for client {code.client_id}")
        raise InvalidGrantError("Invalid code_verifier")


class AuthorizationCodeStore:
    """In-memory store of codes awaiting exchange.

    Expired codes are dropped by the underlying ``TTLCache`` and also
    rejected explicitly at consume time. The cache holds at most
    ``maxsize`` codes; issuing past that evicts the oldest pending code
    even if it has not expired, and that code then fails to exchange.
    """

    def __init__(
        self,
        lifetime_seconds: int = DEFAULT_AUTH_CODE_TTL,
        clock: Callable[[], float] = time.time,
        maxsize: int = DEFAULT_OAUTH_CACHE_MAXSIZE,
    ) -> None:
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock
        self._codes: TTLCache[str, AuthorizationCode] = TTLCache(
            maxsize=maxsize, ttl=lifetime_seconds, timer=clock
        )

    def __len__(self) -> int:
        return len(self._codes)

    def issue(
        self,
        client_id: str | None,
        redirect_uri: str,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
    ) -> AuthorizationCode:
        """Create and store a fresh code.

        Args:
            client_id: Client the code is bound to
            redirect_uri: Redirect target the code will be delivered to
            code_challenge: Optional PKCE challenge
            code_challenge_method: PKCE method, already normalized

        Returns:
            The stored authorization code record
        """
        code = secrets.token_urlsafe(32)
        record = AuthorizationCode(
            code=code,
            client_id=client_id,
            redirect_uri=redirect_uri,
            expires_at=self._clock() + self.lifetime_seconds,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        )
        self._codes[code] = record
        logger.debug(f"Issued authorization code {mask_sensitive(code)} for client {client_id}")
        return record

    def consume(self, code: str | None) -> AuthorizationCode:
        """Look up and delete a code in one step.

        Args:
            code: Code presented at the token endpoint

        Returns:
            The code record; it can never be returned again

        Raises:
            InvalidGrantError: If the code is unknown, already used or expired.
        """
        if not code:
            raise InvalidGrantError("Invalid or expired authorization code")

        # No await between lookup and delete, so only one caller can win
        record = self._codes.pop(code, None)
        if record is None or record.expires_at <= self._clock():
            logger.debug(f"Rejected authorization code {mask_sensitive(code)}")
            raise InvalidGrantError("Invalid or expired authorization code")
        return record
