"""Opaque bearer token issuance."""

import hashlib
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from cachetools import TTLCache

from postgres_mcp.config import DEFAULT_OAUTH_CACHE_MAXSIZE, DEFAULT_TOKEN_EXPIRES_IN
from postgres_mcp.utils.logging import mask_sensitive

logger = logging.getLogger("postgres-mcp.oauth.tokens")


def _hash_token(token: str) -> str:
    """SHA-256 hex digest, so raw tokens are never held in memory."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AccessToken:
    access_token: str
    expires_in: int
    client_id: str | None = None
    token_type: str = "Bearer"

    def to_response(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


class TokenIssuer:
    """Issues bearer tokens and remembers their hashes until expiry.

    At most ``maxsize`` hashes are kept. Issuing past that evicts the oldest
    hash early, so with token verification on the evicted token is
    rejected before its ``expires_in`` has elapsed.
    """

    def __init__(
        self,
        expires_in: int = DEFAULT_TOKEN_EXPIRES_IN,
        clock: Callable[[], float] = time.time,
        maxsize: int = DEFAULT_OAUTH_CACHE_MAXSIZE,
    ) -> None:
        self.expires_in = expires_in
        self._issued: TTLCache[str, str | None] = TTLCache(
            maxsize=maxsize, ttl=expires_in, timer=clock
        )

    def __len__(self) -> int:
        return len(self._issued)

    def issue(self, client_id: str | None = None) -> AccessToken:
        token = secrets.token_urlsafe(32)
        self._issued[_hash_token(token)] = client_id
        logger.info(f"Issued access token {mask_sensitive(token)} for client {client_id}")
        return AccessToken(access_token=token, expires_in=self.expires_in, client_id=client_id)

    def is_valid(self, token: str | None) -> bool:
        """Whether the token was issued here and has not expired."""
        if not token:
            return False
        return _hash_token(token) in self._issued
