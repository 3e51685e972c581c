"""
HTTP clients: form login, basic auth (indirect and direct) and a token
passed as a request parameter.
"""

import base64
import binascii
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import Request

from authdemo.auth.clients import (
    DirectClient,
    IndirectClient,
    TokenCredentials,
    UsernamePasswordCredentials,
)
from authdemo.auth.exceptions import CredentialsError, HttpAction
from authdemo.models import UserProfile

logger = logging.getLogger(__name__)

BASIC_AUTH_REALM = "authentication required"


def parse_basic_authorization(header: Optional[str]) -> Optional[UsernamePasswordCredentials]:
    """
    Decode an ``Authorization: Basic`` header value.

    Returns:
        Credentials, or None when the header is absent or not Basic

    Raises:
        CredentialsError: If the header is Basic but malformed
    """
    if not header:
        return None

    parts = header.split()
    if len(parts) != 2 or parts[0].lower() != "basic":
        return None

    try:
        decoded = base64.b64decode(parts[1], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise CredentialsError("Bad format of the basic auth header") from e

    username, separator, password = decoded.partition(":")
    if not separator:
        raise CredentialsError("Bad format of the basic auth header")
    return UsernamePasswordCredentials(username=username, password=password)


# =============================================================================
# Form login
# =============================================================================

class FormClient(IndirectClient):
    """Login form posting username/password to the callback URL."""

    ERROR_PARAMETER = "error"
    MISSING_FIELD_ERROR = "missing_field"

    def __init__(self, login_url: str, authenticator, name: Optional[str] = None):
        super().__init__(name)
        self.login_url = login_url
        self.authenticator = authenticator
        self.username_parameter = "username"
        self.password_parameter = "password"

    async def redirect(self, request: Request) -> str:
        return self.login_url

    async def get_credentials(self, request: Request) -> Optional[UsernamePasswordCredentials]:
        if request.method == "POST":
            form = await request.form()
            username = form.get(self.username_parameter)
            password = form.get(self.password_parameter)
        else:
            username = request.query_params.get(self.username_parameter)
            password = request.query_params.get(self.password_parameter)

        if not username or not password:
            raise HttpAction.redirect(self._error_url(username or "", self.MISSING_FIELD_ERROR))

        return UsernamePasswordCredentials(
            client_name=self.name,
            username=str(username),
            password=str(password),
        )

    async def get_user_profile(self, credentials: UsernamePasswordCredentials) -> UserProfile:
        return self.authenticator.validate(credentials)

    async def authenticate(self, request: Request) -> Optional[UserProfile]:
        credentials = await self.get_credentials(request)
        try:
            profile = await self.get_user_profile(credentials)
        except CredentialsError as e:
            logger.info("Form login rejected", extra={"username": credentials.username})
            raise HttpAction.redirect(self._error_url(credentials.username, type(e).__name__))
        profile.client_name = self.name
        return profile

    def _error_url(self, username: str, error: str) -> str:
        separator = "&" if "?" in self.login_url else "?"
        query = urlencode({self.username_parameter: username, self.ERROR_PARAMETER: error})
        return f"{self.login_url}{separator}{query}"


# =============================================================================
# Basic auth
# =============================================================================

class IndirectBasicAuthClient(IndirectClient):
    """Basic auth challenge answered on the callback URL, result kept in session."""

    def __init__(self, authenticator, name: Optional[str] = None, realm: str = BASIC_AUTH_REALM):
        super().__init__(name)
        self.authenticator = authenticator
        self.realm = realm

    async def redirect(self, request: Request) -> str:
        return self.compute_callback_url()

    async def get_credentials(self, request: Request) -> Optional[UsernamePasswordCredentials]:
        try:
            credentials = parse_basic_authorization(request.headers.get("Authorization"))
        except CredentialsError:
            credentials = None
        if credentials is None:
            raise HttpAction.unauthorized(self.realm)
        credentials.client_name = self.name
        return credentials

    async def get_user_profile(self, credentials: UsernamePasswordCredentials) -> UserProfile:
        return self.authenticator.validate(credentials)

    async def authenticate(self, request: Request) -> Optional[UserProfile]:
        try:
            return await super().authenticate(request)
        except CredentialsError:
            raise HttpAction.unauthorized(self.realm)


class DirectBasicAuthClient(DirectClient):
    """Basic auth header checked on every request."""

    def __init__(self, authenticator, name: Optional[str] = None, realm: str = BASIC_AUTH_REALM):
        super().__init__(name)
        self.authenticator = authenticator
        self.realm = realm

    async def get_credentials(self, request: Request) -> Optional[UsernamePasswordCredentials]:
        credentials = parse_basic_authorization(request.headers.get("Authorization"))
        if credentials is not None:
            credentials.client_name = self.name
        return credentials

    async def get_user_profile(self, credentials: UsernamePasswordCredentials) -> UserProfile:
        return self.authenticator.validate(credentials)


# =============================================================================
# Token parameter
# =============================================================================

class ParameterClient(DirectClient):
    """Token read from a query (GET) or form (POST) parameter."""

    def __init__(self, parameter_name: str, authenticator, name: Optional[str] = None):
        super().__init__(name)
        self.parameter_name = parameter_name
        self.authenticator = authenticator
        self.support_get_request = True
        self.support_post_request = False

    async def get_credentials(self, request: Request) -> Optional[TokenCredentials]:
        value = None
        if request.method == "GET" and self.support_get_request:
            value = request.query_params.get(self.parameter_name)
        elif request.method == "POST" and self.support_post_request:
            form = await request.form()
            value = form.get(self.parameter_name)

        if not value:
            return None
        return TokenCredentials(client_name=self.name, token=str(value))

    async def get_user_profile(self, credentials: TokenCredentials) -> UserProfile:
        return self.authenticator.validate(credentials)
