"""Authenticators: validate credentials and build the matching profile."""

import logging

from authdemo.auth.clients import TokenCredentials, UsernamePasswordCredentials
from authdemo.auth.exceptions import CredentialsError
from authdemo.auth.tokens import profile_from_claims, verify_jwt
from authdemo.models import UserProfile

logger = logging.getLogger(__name__)


class SimpleTestUsernamePasswordAuthenticator:
    """
    Test authenticator: any non-blank username whose password equals it.

    Never use outside a demo.
    """

    def validate(self, credentials: UsernamePasswordCredentials) -> UserProfile:
        username = (credentials.username or "").strip()
        password = credentials.password or ""

        if not username:
            raise CredentialsError("Username cannot be blank")
        if not password.strip():
            raise CredentialsError("Password cannot be blank")
        if username != password:
            logger.info("Rejected username/password", extra={"username": username})
            raise CredentialsError(f"Username : '{username}' does not match password")

        return UserProfile(
            id=username,
            profile_type="HttpProfile",
            client_name=credentials.client_name,
            attributes={"username": username},
        )


class JwtAuthenticator:
    """Validate a JWT signed with the shared secret."""

    def __init__(self, secret: str):
        self.secret = secret

    def validate(self, credentials: TokenCredentials) -> UserProfile:
        claims = verify_jwt(credentials.token, self.secret)
        return profile_from_claims(claims, client_name=credentials.client_name)
