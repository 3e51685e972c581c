"""
Security Package

Authentication and authorization for the demo, built around identity-provider
clients sharing one callback URL.

Modules:
- clients: Client base classes and the Clients registry
- oauth, cas, saml, oidc, http: one module per family of clients
- authenticators: username/password and JWT credential validation
- authorizers: named checks run on the profiles of a secured request
- profile: profiles of the current request (session + request state)
- security: the ``secured`` route dependency
- routes: shared /callback and /logout endpoints
- tokens: JWT generation and verification

The authentication flow for an indirect client:
1. A secured route finds no profile and redirects to the identity provider
2. The identity provider sends the user back to /callback?client_name=<name>
3. The callback validates the credentials and saves the profile in session
4. The user is redirected to the page first requested
"""

from .config import SecurityConfig
from .security import secured

__all__ = [
    "SecurityConfig",
    "secured",
]
