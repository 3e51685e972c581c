"""Security configuration: the client registry plus named authorizers."""

from typing import Dict, Optional

from authdemo.auth.authorizers import Authorizer
from authdemo.auth.clients import Clients
from authdemo.auth.profile import LogoutRegistry


class SecurityConfig:
    """Everything the security logic needs to protect a route."""

    def __init__(self, clients: Clients, logout_registry: Optional[LogoutRegistry] = None):
        self.clients = clients
        self.authorizers: Dict[str, Authorizer] = {}
        self.logout_registry = logout_registry or LogoutRegistry()

    def add_authorizer(self, name: str, authorizer: Authorizer) -> None:
        self.authorizers[name] = authorizer

    def __repr__(self) -> str:
        return f"SecurityConfig(clients={self.clients!r}, authorizers={sorted(self.authorizers)})"
