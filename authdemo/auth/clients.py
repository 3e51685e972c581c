"""
Identity-provider client abstractions.

A client knows how to obtain credentials for one authentication mechanism
and how to turn them into a UserProfile:

- DirectClient: credentials travel with every request (basic auth header,
  token parameter). No redirection, no session.
- IndirectClient: the user is redirected to a login page or identity
  provider and comes back to the shared callback URL with
  ``client_name=<name>`` in the query string.

Clients is the ordered registry the security logic looks clients up in.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlencode

import httpx
from fastapi import Request

from authdemo.auth.exceptions import ClientNotFoundError, ProtocolError
from authdemo.models import UserProfile

logger = logging.getLogger(__name__)

CLIENT_NAME_PARAMETER = "client_name"
HTTP_TIMEOUT_SECONDS = 10.0


def json_body(response: httpx.Response, description: str) -> Dict[str, Any]:
    """
    Decode the JSON object answered by an identity provider.

    Raises:
        ProtocolError: If the body is not a JSON object
    """
    try:
        data = response.json()
    except ValueError as e:
        raise ProtocolError(f"{description} is not valid JSON") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"{description} is not a JSON object")
    return data


# =============================================================================
# Credentials
# =============================================================================

@dataclass
class Credentials:
    client_name: str = ""


@dataclass
class UsernamePasswordCredentials(Credentials):
    username: str = ""
    password: str = ""


@dataclass
class TokenCredentials(Credentials):
    token: str = ""


@dataclass
class OAuthCredentials(Credentials):
    """Authorization code (OAuth 2 / OIDC) or verifier (OAuth 1.0a) plus session state."""
    code: str = ""
    token: str = ""
    token_secret: str = ""
    nonce: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Clients
# =============================================================================

class Client:
    """Base class of every identity-provider client."""

    direct = False

    def __init__(self, name: Optional[str] = None):
        self.name = name or type(self).__name__
        self.transport: Optional[httpx.AsyncBaseTransport] = None

    async def get_credentials(self, request: Request) -> Optional[Credentials]:
        raise NotImplementedError

    async def get_user_profile(self, credentials: Credentials) -> Optional[UserProfile]:
        raise NotImplementedError

    async def authenticate(self, request: Request) -> Optional[UserProfile]:
        """Read credentials from the request and build the profile, if any."""
        credentials = await self.get_credentials(request)
        if credentials is None:
            return None
        profile = await self.get_user_profile(credentials)
        if profile is not None:
            profile.client_name = self.name
        return profile

    def http_client(self) -> httpx.AsyncClient:
        """Outbound client for identity-provider calls."""
        return httpx.AsyncClient(transport=self.transport, timeout=HTTP_TIMEOUT_SECONDS)

    def session_key(self, suffix: str) -> str:
        return f"{self.name}.{suffix}"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"


class DirectClient(Client):
    """Client whose credentials come with every request."""

    direct = True


class IndirectClient(Client):
    """Client that redirects the user and receives credentials on the callback URL."""

    def __init__(self, name: Optional[str] = None):
        super().__init__(name)
        self.callback_url: Optional[str] = None

    def compute_callback_url(self) -> str:
        if not self.callback_url:
            raise ValueError(f"Callback URL of client {self.name} is not set")
        separator = "&" if "?" in self.callback_url else "?"
        return f"{self.callback_url}{separator}{urlencode({CLIENT_NAME_PARAMETER: self.name})}"

    async def redirect(self, request: Request) -> str:
        """Return the URL the user must be sent to in order to log in."""
        raise NotImplementedError


class Clients:
    """Ordered registry of clients sharing one callback URL."""

    def __init__(self, callback_url: str, *clients: Client):
        self.callback_url = callback_url
        self._clients: List[Client] = []
        for client in clients:
            self.add(client)

    def add(self, client: Client) -> None:
        if any(c.name.lower() == client.name.lower() for c in self._clients):
            raise ValueError(f"Duplicate client name: {client.name}")
        if isinstance(client, IndirectClient) and not client.callback_url:
            client.callback_url = self.callback_url
        self._clients.append(client)

    def find_client(self, name: str) -> Client:
        """
        Find a client by name (case-insensitive).

        Raises:
            ClientNotFoundError: If no client has this name
        """
        for client in self._clients:
            if client.name.lower() == name.strip().lower():
                return client
        raise ClientNotFoundError(f"No client found for name: {name}")

    @property
    def names(self) -> List[str]:
        return [client.name for client in self._clients]

    def __iter__(self) -> Iterator[Client]:
        return iter(self._clients)

    def __len__(self) -> int:
        return len(self._clients)

    def __repr__(self) -> str:
        return f"Clients(callback_url={self.callback_url!r}, clients={self.names})"
