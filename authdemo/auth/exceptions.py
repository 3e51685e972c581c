"""
Exceptions raised by the security layer.

Errors (SecurityError and subclasses) describe something that went wrong.
HttpAction is flow control: a client or the security logic decided what the
response must be (redirect to an identity provider, plain "ok" for a
back-channel call, ...). main.py turns both into responses.
"""

from typing import Dict, Optional


class SecurityError(Exception):
    """Base exception for the security layer"""
    pass


class ClientNotFoundError(SecurityError):
    """No client registered under the requested name"""
    pass


class CredentialsError(SecurityError):
    """Credentials were supplied but are not valid"""
    pass


class ProtocolError(SecurityError):
    """An identity provider answered with something unusable"""
    pass


class SamlValidationError(CredentialsError):
    """A SAML response failed validation"""
    pass


class HttpAction(Exception):
    """Interrupt the request and answer with a fixed response."""

    def __init__(
        self,
        status_code: int,
        content: str = "",
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(f"HTTP action {status_code}")
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}

    @classmethod
    def redirect(cls, location: str) -> "HttpAction":
        return cls(302, headers={"Location": location})

    @classmethod
    def ok(cls, content: str = "") -> "HttpAction":
        return cls(200, content=content)

    @classmethod
    def unauthorized(cls, realm: Optional[str] = None) -> "HttpAction":
        headers = {"WWW-Authenticate": f'Basic realm="{realm}"'} if realm else {}
        return cls(401, content="authentication required", headers=headers)
