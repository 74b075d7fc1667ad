"""Server configuration loaded from environment variables."""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger("postgres-mcp.config")

SERVER_NAME = "postgres-mcp"
SERVER_VERSION = "2.1.0"

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_TOKEN_EXPIRES_IN = 604800  # 7 days
DEFAULT_AUTH_CODE_TTL = 60
DEFAULT_RATE_LIMIT_ATTEMPTS = 5
DEFAULT_RATE_LIMIT_WINDOW_MS = 900000  # 15 minutes
DEFAULT_OAUTH_CACHE_MAXSIZE = 10000

_TRUE_VALUES = ("true", "1", "yes")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass
class ServerConfig:
    """Settings consumed by the authorization and session layer.

    Attributes:
        host: Interface to bind.
        port: Port to bind.
        external_base_url: Public URL used in discovery documents. Falls back
            to ``http://localhost:<port>``.
        oauth_enabled: Mount the OAuth endpoints and require bearer tokens
            on ``/mcp``.
        auth_password: Password for the interactive authorize step. When
            unset the authorize step auto-approves.
        token_expires_in: Bearer token lifetime in seconds.
        auth_code_ttl: Authorization code lifetime in seconds.
        rate_limit_attempts: Failed password attempts before lockout.
        rate_limit_window_seconds: Lockout duration.
        oauth_cache_maxsize: Capacity of the pending-code store and of the
            issued-token store. Past it the oldest entries are evicted
            before they expire.
        verify_tokens: Reject bearer tokens that were not issued by this
            process.
        trust_proxy: Take the caller address from ``X-Forwarded-For``.
        json_response: Answer ``/mcp`` POSTs with JSON instead of SSE.
        log_level: Level for the ``postgres-mcp`` logger.
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    external_base_url: str | None = None
    oauth_enabled: bool = False
    auth_password: str | None = None
    token_expires_in: int = DEFAULT_TOKEN_EXPIRES_IN
    auth_code_ttl: int = DEFAULT_AUTH_CODE_TTL
    rate_limit_attempts: int = DEFAULT_RATE_LIMIT_ATTEMPTS
    rate_limit_window_seconds: float = DEFAULT_RATE_LIMIT_WINDOW_MS / 1000
    oauth_cache_maxsize: int = DEFAULT_OAUTH_CACHE_MAXSIZE
    verify_tokens: bool = False
    trust_proxy: bool = False
    json_response: bool = False
    log_level: str = "INFO"

    @property
    def base_url(self) -> str:
        if self.external_base_url:
            return self.external_base_url.rstrip("/")
        return f"http://localhost:{self.port}"

    @property
    def password_required(self) -> bool:
        return bool(self.auth_password)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Create configuration from environment variables.

        Environment variables:
        - MCP_HOST / MCP_PORT: Bind address (default: 0.0.0.0:3000)
        - EXTERNAL_BASE_URL: Public base URL for discovery documents
        - MCP_OAUTH: Enable the OAuth surface (default: false)
        - MCP_AUTH_PASSWORD: Password for the authorize form (optional)
        - MCP_OAUTH_TOKEN_EXPIRES_IN: Token lifetime in seconds (default: 604800)
        - MCP_OAUTH_CODE_TTL: Authorization code lifetime in seconds (default: 60)
        - MCP_RATE_LIMIT_ATTEMPTS: Failures before lockout (default: 5)
        - MCP_RATE_LIMIT_WINDOW_MS: Lockout window in ms (default: 900000)
        - MCP_OAUTH_CACHE_MAXSIZE: Max pending codes and issued tokens held (default: 10000)
        - MCP_OAUTH_VERIFY_TOKENS: Validate bearer tokens (default: false)
        - MCP_TRUST_PROXY: Honour X-Forwarded-For (default: false)
        - MCP_JSON_RESPONSE: JSON responses on /mcp (default: false)
        - MCP_LOG_LEVEL: Log level (default: INFO)

        Returns:
            Configured ServerConfig instance

        Raises:
            ValueError: If a numeric variable is malformed or not positive.
        """
        password = os.getenv("MCP_AUTH_PASSWORD") or None
        window_ms = _env_int("MCP_RATE_LIMIT_WINDOW_MS", DEFAULT_RATE_LIMIT_WINDOW_MS)

        return cls(
            host=os.getenv("MCP_HOST", DEFAULT_HOST),
            port=_env_int("MCP_PORT", DEFAULT_PORT),
            external_base_url=os.getenv("EXTERNAL_BASE_URL") or None,
            oauth_enabled=_env_bool("MCP_OAUTH"),
            auth_password=password,
            token_expires_in=_env_int(
                "MCP_OAUTH_TOKEN_EXPIRES_IN", DEFAULT_TOKEN_EXPIRES_IN
            ),
            auth_code_ttl=_env_int("MCP_OAUTH_CODE_TTL", DEFAULT_AUTH_CODE_TTL),
            rate_limit_attempts=_env_int(
                "MCP_RATE_LIMIT_ATTEMPTS", DEFAULT_RATE_LIMIT_ATTEMPTS
            ),
            rate_limit_window_seconds=window_ms / 1000,
            oauth_cache_maxsize=_env_int(
                "MCP_OAUTH_CACHE_MAXSIZE", DEFAULT_OAUTH_CACHE_MAXSIZE
            ),
            verify_tokens=_env_bool("MCP_OAUTH_VERIFY_TOKENS"),
            trust_proxy=_env_bool("MCP_TRUST_PROXY"),
            json_response=_env_bool("MCP_JSON_RESPONSE"),
            log_level=os.getenv("MCP_LOG_LEVEL", "INFO").upper(),
        )
