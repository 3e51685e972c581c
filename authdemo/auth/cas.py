"""
CAS client (CAS 1.0 / 2.0 / 3.0 protocols).

    1. redirect to <login url>?service=<callback url>
    2. the CAS server sends the user back with ?ticket=ST-...
    3. the ticket is validated against <prefix>/serviceValidate (2.0),
       <prefix>/p3/serviceValidate (3.0) or <prefix>/validate (1.0)

The CAS server may also POST a ``logoutRequest`` to the callback URL when the
user logs out of CAS. The service ticket named in its SessionIndex is handed
to the logout registry, which invalidates the matching login.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import defusedxml.ElementTree as ElementTree
from fastapi import Request

from authdemo.auth.clients import Credentials, IndirectClient
from authdemo.auth.exceptions import CredentialsError, HttpAction, ProtocolError
from authdemo.auth.profile import LogoutRegistry
from authdemo.models import UserProfile

logger = logging.getLogger(__name__)

CAS_NS = "http://www.yale.edu/tp/cas"
SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"


class CasProtocol(str, Enum):
    CAS10 = "CAS10"
    CAS20 = "CAS20"
    CAS30 = "CAS30"


@dataclass
class CasCredentials(Credentials):
    ticket: str = ""


class CasClient(IndirectClient):
    """Central Authentication Service client."""

    def __init__(
        self,
        cas_login_url: Optional[str] = None,
        name: Optional[str] = None,
        protocol: CasProtocol = CasProtocol.CAS30,
    ):
        super().__init__(name)
        self.cas_login_url = cas_login_url
        self.cas_prefix_url: Optional[str] = None
        self.cas_protocol = protocol
        self.logout_handler: Optional[LogoutRegistry] = None
        self.renew = False
        self.gateway = False

    def set_cas_login_url(self, url: str) -> None:
        self.cas_login_url = url
        self.cas_prefix_url = None

    def prefix_url(self) -> str:
        """CAS server prefix derived from the login URL (".../cas/login" -> ".../cas/")."""
        if self.cas_prefix_url:
            return self.cas_prefix_url
        if not self.cas_login_url:
            raise ValueError(f"CAS login URL of client {self.name} is not set")
        prefix = self.cas_login_url
        if prefix.endswith("/login"):
            prefix = prefix[: -len("login")]
        elif not prefix.endswith("/"):
            prefix += "/"
        return prefix

    def validation_url(self) -> str:
        endpoint = {
            CasProtocol.CAS10: "validate",
            CasProtocol.CAS20: "serviceValidate",
            CasProtocol.CAS30: "p3/serviceValidate",
        }[self.cas_protocol]
        return self.prefix_url() + endpoint

    async def redirect(self, request: Request) -> str:
        if not self.cas_login_url:
            raise ValueError(f"CAS login URL of client {self.name} is not set")
        params = {"service": self.compute_callback_url()}
        if self.renew:
            params["renew"] = "true"
        if self.gateway:
            params["gateway"] = "true"
        separator = "&" if "?" in self.cas_login_url else "?"
        return f"{self.cas_login_url}{separator}{urlencode(params)}"

    async def get_credentials(self, request: Request) -> Optional[CasCredentials]:
        if request.method == "POST":
            form = await request.form()
            logout_request = form.get("logoutRequest")
            if logout_request:
                self._handle_logout_request(str(logout_request))
                raise HttpAction.ok("ok")

        ticket = request.query_params.get("ticket")
        if not ticket:
            return None
        return CasCredentials(client_name=self.name, ticket=ticket)

    async def get_user_profile(self, credentials: CasCredentials) -> UserProfile:
        params = {"ticket": credentials.ticket, "service": self.compute_callback_url()}
        async with self.http_client() as client:
            response = await client.get(self.validation_url(), params=params)
        if not response.is_success:
            raise ProtocolError(f"CAS validation failed with status {response.status_code}")

        if self.cas_protocol == CasProtocol.CAS10:
            user_id, attributes = parse_cas10_response(response.text)
        else:
            user_id, attributes = parse_service_response(response.text)

        profile = UserProfile(
            id=user_id,
            profile_type="CasProfile",
            attributes=attributes,
            session_index=credentials.ticket,
        )
        if self.logout_handler is not None:
            self.logout_handler.record_login(credentials.ticket, user_id)

        logger.info("CAS ticket validated", extra={"user_id": user_id})
        return profile

    def _handle_logout_request(self, logout_request: str) -> None:
        try:
            root = ElementTree.fromstring(logout_request)
        except ElementTree.ParseError as e:
            raise CredentialsError("Malformed CAS logout request") from e

        session_index = root.findtext(f"{{{SAMLP_NS}}}SessionIndex")
        if not session_index:
            raise CredentialsError("CAS logout request missing SessionIndex")
        if self.logout_handler is not None:
            self.logout_handler.destroy(session_index.strip())


# =============================================================================
# Response parsing
# =============================================================================

def parse_cas10_response(body: str):
    """CAS 1.0 answers "yes\\n<user>\\n" or "no\\n\\n"."""
    lines = body.splitlines()
    if len(lines) < 2 or lines[0].strip() != "yes" or not lines[1].strip():
        raise CredentialsError("CAS ticket validation failed")
    return lines[1].strip(), {}


def parse_service_response(body: str):
    """
    Parse a CAS 2.0/3.0 serviceResponse document.

    Returns:
        Tuple of (user id, attributes)

    Raises:
        CredentialsError: On authenticationFailure
        ProtocolError: On an unparsable response
    """
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError as e:
        raise ProtocolError("Unparsable CAS service response") from e

    failure = root.find(f"{{{CAS_NS}}}authenticationFailure")
    if failure is not None:
        code = failure.get("code", "UNKNOWN")
        message = (failure.text or "").strip()
        logger.warning("CAS ticket rejected", extra={"code": code, "cas_message": message})
        raise CredentialsError(f"CAS ticket rejected: {code} {message}".strip())

    success = root.find(f"{{{CAS_NS}}}authenticationSuccess")
    if success is None:
        raise ProtocolError("CAS service response has neither success nor failure")

    user = (success.findtext(f"{{{CAS_NS}}}user") or "").strip()
    if not user:
        raise ProtocolError("CAS service response missing user")

    attributes: Dict[str, Any] = {}
    container = success.find(f"{{{CAS_NS}}}attributes")
    if container is not None:
        for element in container:
            key = element.tag.split("}", 1)[-1]
            value = (element.text or "").strip()
            if key in attributes:
                existing = attributes[key]
                attributes[key] = existing + [value] if isinstance(existing, list) else [existing, value]
            else:
                attributes[key] = value
    return user, attributes
