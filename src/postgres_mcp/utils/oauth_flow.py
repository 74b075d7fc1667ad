"""Authorize -> redirect -> token exchange sequence.

The flow supports two ways to obtain a bearer token:

- ``authorization_code``: a browser visits the authorize endpoint, enters
  the deployment password (or is auto-approved when none is configured),
  and is redirected back with a single-use code that the client exchanges.
- ``client_credentials``: a trusted machine client presents its client ID
  and receives a token directly, being registered on first use.

All state lives in the stores handed to the flow; nothing here is global.
"""

import logging
import time
import urllib.parse
from collections.abc import Callable
from dataclasses import dataclass

from postgres_mcp.config import ServerConfig
from postgres_mcp.exceptions import (
    InvalidGrantError,
    InvalidRequestError,
    RateLimitedError,
    UnauthorizedError,
    UnsupportedGrantTypeError,
)
from postgres_mcp.utils.auth_codes import (
    AuthorizationCodeStore,
    normalize_challenge_method,
    verify_code_verifier,
)
from postgres_mcp.utils.oauth_dcr import ClientRegistry
from postgres_mcp.utils.rate_limit import RateLimiter
from postgres_mcp.utils.security import safe_compare
from postgres_mcp.utils.tokens import AccessToken, TokenIssuer

logger = logging.getLogger("postgres-mcp.oauth.flow")

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_CLIENT_CREDENTIALS = "client_credentials"
SUPPORTED_GRANT_TYPES = (GRANT_AUTHORIZATION_CODE, GRANT_CLIENT_CREDENTIALS)


@dataclass(frozen=True)
class AuthorizationRequest:
    """Parameters of one authorize attempt, echoed through the login form."""

    redirect_uri: str | None
    state: str | None = None
    client_id: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None


@dataclass(frozen=True)
class AuthorizationGrant:
    """A freshly issued code and where to deliver it."""

    code: str
    redirect_uri: str
    state: str | None = None

    @property
    def redirect_url(self) -> str:
        params = {"code": self.code}
        if self.state is not None:
            params["state"] = self.state
        separator = "&" if urllib.parse.urlsplit(self.redirect_uri).query else "?"
        return f"{self.redirect_uri}{separator}{urllib.parse.urlencode(params)}"


class AuthorizationFlow:
    """Orchestrates code issuance, password checks and token exchange."""

    def __init__(
        self,
        clients: ClientRegistry,
        codes: AuthorizationCodeStore,
        rate_limiter: RateLimiter,
        tokens: TokenIssuer,
        password: str | None = None,
    ) -> None:
        self.clients = clients
        self.codes = codes
        self.rate_limiter = rate_limiter
        self.tokens = tokens
        self._password = password or None

    @property
    def password_required(self) -> bool:
        return self._password is not None

    def _issue_code(self, request: AuthorizationRequest) -> AuthorizationGrant:
        if not request.redirect_uri:
            raise InvalidRequestError("redirect_uri is required")
        method = normalize_challenge_method(
            request.code_challenge, request.code_challenge_method
        )
        record = self.codes.issue(
            client_id=request.client_id,
            redirect_uri=request.redirect_uri,
            code_challenge=request.code_challenge or None,
            code_challenge_method=method,
        )
        return AuthorizationGrant(
            code=record.code, redirect_uri=record.redirect_uri, state=request.state
        )

    def validate_request(self, request: AuthorizationRequest) -> None:
        """Reject authorize parameters that could never yield a code.

        Raises:
            InvalidRequestError: If redirect_uri is missing or the PKCE
                method is unsupported.
        """
        if not request.redirect_uri:
            raise InvalidRequestError("redirect_uri is required")
        normalize_challenge_method(request.code_challenge, request.code_challenge_method)

    def begin_authorize(self, request: AuthorizationRequest) -> AuthorizationGrant | None:
        """Start an authorize attempt.

        Args:
            request: Authorize parameters from the query string

        Returns:
            A grant to redirect with when no password is configured, or None
            when the caller must be shown the password form

        Raises:
            InvalidRequestError: If the request is malformed.
        """
        self.validate_request(request)
        if self.password_required:
            return None
        grant = self._issue_code(request)
        logger.info(f"Authorization auto-approved for client: {request.client_id}")
        return grant

    def submit_password(
        self,
        request: AuthorizationRequest,
        password: str | None,
        caller_id: str,
    ) -> AuthorizationGrant:
        """Check the password from the login form and issue a code.

        The rate-limit check, the comparison and the counter update run
        without yielding to the event loop.

        Args:
            request: Authorize parameters echoed by the form
            password: Password entered by the user
            caller_id: Identifier used for rate limiting, e.g. client IP

        Returns:
            Grant to redirect with

        Raises:
            InvalidRequestError: If the request is malformed.
            RateLimitedError: If the caller is locked out.
            UnauthorizedError: If the password is wrong.
        """
        self.validate_request(request)

        lockout_message = self.rate_limiter.check(caller_id)
        if lockout_message:
            raise RateLimitedError(
                lockout_message, retry_after=self.rate_limiter.retry_after(caller_id)
            )

        if not safe_compare(password, self._password):
            locked = self.rate_limiter.record_failure(caller_id)
            logger.warning(
                f"Invalid password from {caller_id} for client {request.client_id}"
                + (" (now locked out)" if locked else "")
            )
            raise UnauthorizedError("Invalid password")

        self.rate_limiter.clear(caller_id)
        grant = self._issue_code(request)
        logger.info(f"Authorization granted for client: {request.client_id}")
        return grant

    def exchange_token(
        self,
        grant_type: str | None,
        code: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        code_verifier: str | None = None,
    ) -> AccessToken:
        """Exchange a code or client credentials for a bearer token.

        Args:
            grant_type: ``authorization_code`` or ``client_credentials``
            code: Authorization code (authorization_code grant)
            client_id: Client ID; required for client_credentials and, when
                present, must match the code's client
            client_secret: Client secret (client_credentials grant)
            redirect_uri: When present, must match the code's redirect URI
            code_verifier: PKCE verifier; required if the code has a challenge

        Returns:
            Issued access token

        Raises:
            InvalidRequestError: If client_credentials is used without client_id.
            InvalidGrantError: If the code is unknown, expired, already used or
                does not match the presented client, redirect URI or verifier.
            UnsupportedGrantTypeError: For any other grant type.
        """
        if grant_type == GRANT_CLIENT_CREDENTIALS:
            if not client_id:
                raise InvalidRequestError("client_id is required")
            client = self.clients.get_or_auto_register(client_id, client_secret)
            return self.tokens.issue(client.client_id)

        if grant_type == GRANT_AUTHORIZATION_CODE:
            record = self.codes.consume(code)
            if client_id and record.client_id and client_id != record.client_id:
                logger.warning(f"Authorization code presented by wrong client: {client_id}")
                raise InvalidGrantError("Authorization code was issued to another client")
            if redirect_uri and redirect_uri != record.redirect_uri:
                raise InvalidGrantError("redirect_uri does not match the authorization request")
            verify_code_verifier(record, code_verifier)
            return self.tokens.issue(record.client_id or client_id)

        raise UnsupportedGrantTypeError(
            "Supported grant types: " + ", ".join(SUPPORTED_GRANT_TYPES)
        )

    @classmethod
    def from_config(
        cls, config: ServerConfig, clock: Callable[[], float] = time.time
    ) -> "AuthorizationFlow":
        return cls(
            clients=ClientRegistry(clock=clock),
            codes=AuthorizationCodeStore(
                lifetime_seconds=config.auth_code_ttl,
                clock=clock,
                maxsize=config.oauth_cache_maxsize,
            ),
            rate_limiter=RateLimiter.from_config(config, clock=clock),
            tokens=TokenIssuer(
                expires_in=config.token_expires_in,
                clock=clock,
                maxsize=config.oauth_cache_maxsize,
            ),
            password=config.auth_password,
        )
