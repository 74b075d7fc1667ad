"""OAuth 2.0 Dynamic Client Registration (DCR) utilities.

This module provides the in-memory client registry behind the RFC 7591
registration endpoint and the zero-configuration ``client_credentials``
grant. Clients live for the lifetime of the process.
"""

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from postgres_mcp.exceptions import InvalidClientMetadataError

logger = logging.getLogger("postgres-mcp.oauth.dcr")

DEFAULT_CLIENT_NAME = "Unknown Client"
AUTO_REGISTERED_CLIENT_NAME = "Auto-registered Client"


@dataclass(frozen=True)
class Client:
    """A registered OAuth client."""

    client_id: str
    redirect_uris: tuple[str, ...] = ()
    client_name: str = DEFAULT_CLIENT_NAME
    client_secret: str | None = field(default=None, repr=False)
    created_at: float = 0.0

    @property
    def client_id_issued_at(self) -> int:
        return int(self.created_at)

    def to_registration_response(self) -> dict[str, Any]:
        """RFC 7591 registration response for a public (PKCE) client."""
        return {
            "client_id": self.client_id,
            "client_id_issued_at": self.client_id_issued_at,
            "redirect_uris": list(self.redirect_uris),
            "client_name": self.client_name,
            "token_endpoint_auth_method": "none",
        }


class ClientRegistry:
    """Append-only in-memory store of OAuth clients."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._clients: dict[str, Client] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._clients

    def register_client(
        self,
        redirect_uris: list[str] | None,
        client_name: str | None = None,
    ) -> Client:
        """Register a new OAuth client.

        Args:
            redirect_uris: Allowed callback URLs; at least one is required
            client_name: Optional human-readable name

        Returns:
            The stored client

        Raises:
            InvalidClientMetadataError: If redirect_uris is missing, empty or
                contains something other than non-empty strings.
        """
        if not redirect_uris or not isinstance(redirect_uris, list):
            raise InvalidClientMetadataError("redirect_uris is required")

        for uri in redirect_uris:
            if not isinstance(uri, str) or not uri.strip():
                raise InvalidClientMetadataError(
                    f"Invalid redirect_uri: {uri!r}. Must be a non-empty string"
                )

        # Deduplicate, keep order
        unique_uris = tuple(dict.fromkeys(redirect_uris))

        client = Client(
            client_id=str(uuid.uuid4()),
            redirect_uris=unique_uris,
            client_name=client_name or DEFAULT_CLIENT_NAME,
            created_at=self._clock(),
        )
        self._clients[client.client_id] = client

        logger.info(f"OAuth client registered: {client.client_id} ({client.client_name})")
        return client

    def get_client(self, client_id: str) -> Client | None:
        """Get a registered client by client_id.

        Args:
            client_id: The client ID to look up

        Returns:
            Client or None if not found
        """
        return self._clients.get(client_id)

    def get_or_auto_register(
        self, client_id: str, client_secret: str | None = None
    ) -> Client:
        """Return a known client or register an unknown one on first use.

        A known client is returned unchanged, so a replayed request can
        never overwrite its stored secret.

        Args:
            client_id: Client ID presented by a machine client
            client_secret: Secret presented alongside it, if any

        Returns:
            The existing or newly created client
        """
        existing = self._clients.get(client_id)
        if existing is not None:
            return existing

        client = Client(
            client_id=client_id,
            client_secret=client_secret or None,
            client_name=AUTO_REGISTERED_CLIENT_NAME,
            created_at=self._clock(),
        )
        self._clients[client_id] = client
        logger.info(f"Auto-registered OAuth client: {client_id}")
        return client
