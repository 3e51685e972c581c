"""
SAML 2.0 Web Browser SSO, service provider side.

    1. redirect: AuthnRequest on the HTTP-Redirect binding (deflated, base64)
       to the IdP SSO URL found in the IdP metadata; the request ID is kept
       in session
    2. the IdP POSTs a SAMLResponse to the callback URL (our ACS)
    3. the response is validated: status, destination, issuer, InResponseTo,
       XML signature (Response and/or Assertion), validity window, audience,
       bearer subject confirmation, age of the authentication
    4. NameID, attributes and SessionIndex make up the profile

Our own SP metadata is generated from the configuration and written to
``sp_metadata_path``.
"""

import base64
import binascii
import logging
import uuid
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import Request
from lxml import etree

from authdemo.auth.clients import Credentials, IndirectClient
from authdemo.auth.exceptions import SamlValidationError
from authdemo.auth.xmldsig import find_signature, load_certificate, verify_enveloped_signature
from authdemo.models import UserProfile

logger = logging.getLogger(__name__)

SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
MD_NS = "urn:oasis:names:tc:SAML:2.0:metadata"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"

BINDING_HTTP_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
BINDING_HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
CONFIRMATION_BEARER = "urn:oasis:names:tc:SAML:2.0:cm:bearer"
NAMEID_TRANSIENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:transient"

NS = {"saml": SAML_NS, "samlp": SAMLP_NS, "md": MD_NS, "ds": DS_NS}

# comments are dropped so a comment inside signed text cannot split what is read back
_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_comments=True, huge_tree=False)


def _parse_xml(data: bytes) -> etree._Element:
    try:
        return etree.fromstring(data, parser=_PARSER)
    except etree.XMLSyntaxError as e:
        raise SamlValidationError(f"Malformed XML: {e}") from e


def _text(element: Optional[etree._Element]) -> str:
    """Whole text content of an element, child nodes included."""
    if element is None:
        return ""
    return "".join(element.itertext()).strip()


def _format_instant(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_instant(value: str) -> datetime:
    text = value.strip().replace("Z", "+00:00")
    if "." in text:
        # python < 3.11 accepts at most microsecond precision
        head, _, rest = text.partition(".")
        digits = "".join(c for c in rest if c.isdigit())
        text = f"{head}.{digits[:6]}{rest[len(digits):]}"
    try:
        instant = datetime.fromisoformat(text)
    except ValueError as e:
        raise SamlValidationError(f"Invalid timestamp: {value}") from e
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant


# =============================================================================
# Configuration and metadata
# =============================================================================

@dataclass
class SAML2ClientConfiguration:
    identity_provider_metadata_path: str
    service_provider_entity_id: Optional[str] = None
    service_provider_metadata_path: Optional[str] = None
    service_provider_certificate_path: Optional[str] = None
    maximum_authentication_lifetime: int = 3600
    accepted_skew: int = 120
    force_auth: bool = False
    passive: bool = False
    name_id_policy_format: Optional[str] = None


@dataclass
class IdentityProviderMetadata:
    entity_id: str
    sso_url: str
    sso_binding: str
    certificates: List[Any] = field(default_factory=list)

    @classmethod
    def from_xml(cls, data: bytes) -> "IdentityProviderMetadata":
        root = _parse_xml(data)
        if etree.QName(root).localname == "EntitiesDescriptor":
            entity = root.find("md:EntityDescriptor", NS)
            if entity is None:
                raise SamlValidationError("IdP metadata contains no EntityDescriptor")
            root = entity

        entity_id = root.get("entityID")
        descriptor = root.find("md:IDPSSODescriptor", NS)
        if not entity_id or descriptor is None:
            raise SamlValidationError("Metadata does not describe an identity provider")

        services = {
            s.get("Binding"): s.get("Location")
            for s in descriptor.findall("md:SingleSignOnService", NS)
        }
        binding = BINDING_HTTP_REDIRECT if BINDING_HTTP_REDIRECT in services else BINDING_HTTP_POST
        sso_url = services.get(binding)
        if not sso_url:
            raise SamlValidationError("IdP metadata has no usable SingleSignOnService")

        certificates = []
        for key in descriptor.findall("md:KeyDescriptor", NS):
            if key.get("use") not in (None, "signing"):
                continue
            for cert in key.findall(".//ds:X509Certificate", NS):
                if cert.text and cert.text.strip():
                    certificates.append(load_certificate(cert.text))

        return cls(entity_id=entity_id, sso_url=sso_url, sso_binding=binding, certificates=certificates)

    @classmethod
    def from_file(cls, path: str) -> "IdentityProviderMetadata":
        return cls.from_xml(Path(path).read_bytes())


def generate_sp_metadata(entity_id: str, acs_url: str, certificate_pem: Optional[str] = None) -> str:
    root = etree.Element(etree.QName(MD_NS, "EntityDescriptor"), nsmap={"md": MD_NS, "ds": DS_NS})
    root.set("entityID", entity_id)

    sp = etree.SubElement(root, etree.QName(MD_NS, "SPSSODescriptor"))
    sp.set("AuthnRequestsSigned", "false")
    sp.set("WantAssertionsSigned", "false")
    sp.set("protocolSupportEnumeration", SAMLP_NS)

    if certificate_pem:
        body = "".join(
            line for line in certificate_pem.strip().splitlines() if not line.startswith("-----")
        )
        for use in ("signing", "encryption"):
            key = etree.SubElement(sp, etree.QName(MD_NS, "KeyDescriptor"), use=use)
            info = etree.SubElement(key, etree.QName(DS_NS, "KeyInfo"))
            data = etree.SubElement(info, etree.QName(DS_NS, "X509Data"))
            etree.SubElement(data, etree.QName(DS_NS, "X509Certificate")).text = body

    etree.SubElement(sp, etree.QName(MD_NS, "NameIDFormat")).text = NAMEID_TRANSIENT
    acs = etree.SubElement(sp, etree.QName(MD_NS, "AssertionConsumerService"))
    acs.set("Binding", BINDING_HTTP_POST)
    acs.set("Location", acs_url)
    acs.set("index", "0")
    acs.set("isDefault", "true")

    return etree.tostring(root, pretty_print=True, xml_declaration=True, encoding="UTF-8").decode("utf-8")


# =============================================================================
# Client
# =============================================================================

@dataclass
class SamlCredentials(Credentials):
    saml_response: str = ""
    request_id: Optional[str] = None


class SAML2Client(IndirectClient):
    """SAML 2.0 service provider."""

    def __init__(self, configuration: SAML2ClientConfiguration, name: Optional[str] = None):
        super().__init__(name)
        self.configuration = configuration
        self._idp: Optional[IdentityProviderMetadata] = None

    @property
    def service_provider_entity_id(self) -> str:
        return self.configuration.service_provider_entity_id or self.compute_callback_url()

    def identity_provider(self) -> IdentityProviderMetadata:
        if self._idp is None:
            self._idp = IdentityProviderMetadata.from_file(self.configuration.identity_provider_metadata_path)
            logger.info(
                "Loaded SAML IdP metadata",
                extra={"idp": self._idp.entity_id, "certificates": len(self._idp.certificates)},
            )
        return self._idp

    def service_provider_metadata(self) -> str:
        certificate = None
        if self.configuration.service_provider_certificate_path:
            certificate = Path(self.configuration.service_provider_certificate_path).read_text()
        return generate_sp_metadata(self.service_provider_entity_id, self.compute_callback_url(), certificate)

    def write_service_provider_metadata(self) -> Optional[Path]:
        path = self.configuration.service_provider_metadata_path
        if not path:
            return None
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.service_provider_metadata(), encoding="utf-8")
        logger.info("Wrote SAML SP metadata", extra={"path": str(target)})
        return target

    def build_authn_request(self, request_id: str, now: Optional[datetime] = None) -> bytes:
        idp = self.identity_provider()
        now = now or datetime.now(timezone.utc)

        root = etree.Element(etree.QName(SAMLP_NS, "AuthnRequest"), nsmap={"samlp": SAMLP_NS, "saml": SAML_NS})
        root.set("ID", request_id)
        root.set("Version", "2.0")
        root.set("IssueInstant", _format_instant(now))
        root.set("Destination", idp.sso_url)
        root.set("ProtocolBinding", BINDING_HTTP_POST)
        root.set("AssertionConsumerServiceURL", self.compute_callback_url())
        root.set("ForceAuthn", str(self.configuration.force_auth).lower())
        root.set("IsPassive", str(self.configuration.passive).lower())

        etree.SubElement(root, etree.QName(SAML_NS, "Issuer")).text = self.service_provider_entity_id
        policy = etree.SubElement(root, etree.QName(SAMLP_NS, "NameIDPolicy"), AllowCreate="true")
        if self.configuration.name_id_policy_format:
            policy.set("Format", self.configuration.name_id_policy_format)

        return etree.tostring(root)

    async def redirect(self, request: Request) -> str:
        idp = self.identity_provider()
        request_id = f"_{uuid.uuid4().hex}"
        request.session[self.session_key("request_id")] = request_id

        xml = self.build_authn_request(request_id)
        compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
        deflated = compressor.compress(xml) + compressor.flush()
        params = {
            "SAMLRequest": base64.b64encode(deflated).decode("ascii"),
            "RelayState": self.name,
        }
        separator = "&" if "?" in idp.sso_url else "?"
        return f"{idp.sso_url}{separator}{urlencode(params)}"

    async def get_credentials(self, request: Request) -> Optional[SamlCredentials]:
        if request.method != "POST":
            return None
        form = await request.form()
        saml_response = form.get("SAMLResponse")
        if not saml_response:
            return None
        return SamlCredentials(
            client_name=self.name,
            saml_response=str(saml_response),
            request_id=request.session.pop(self.session_key("request_id"), None),
        )

    async def get_user_profile(self, credentials: SamlCredentials) -> UserProfile:
        try:
            document = base64.b64decode(credentials.saml_response, validate=True)
        except (binascii.Error, ValueError) as e:
            raise SamlValidationError("SAMLResponse is not valid base64") from e

        validator = SamlResponseValidator(
            idp=self.identity_provider(),
            sp_entity_id=self.service_provider_entity_id,
            acs_url=self.compute_callback_url(),
            maximum_authentication_lifetime=self.configuration.maximum_authentication_lifetime,
            accepted_skew=self.configuration.accepted_skew,
        )
        result = validator.validate(document, expected_request_id=credentials.request_id)

        logger.info("SAML response validated", extra={"name_id": result["name_id"]})
        return UserProfile(
            id=result["name_id"],
            profile_type="SAML2Profile",
            attributes=result["attributes"],
            session_index=result["session_index"],
        )


# =============================================================================
# Response validation
# =============================================================================

class SamlResponseValidator:
    """Validate a SAML 2.0 Response carrying one Assertion."""

    def __init__(
        self,
        idp: IdentityProviderMetadata,
        sp_entity_id: str,
        acs_url: str,
        maximum_authentication_lifetime: int = 3600,
        accepted_skew: int = 120,
    ):
        self.idp = idp
        self.sp_entity_id = sp_entity_id
        self.acs_url = acs_url
        self.maximum_authentication_lifetime = maximum_authentication_lifetime
        self.skew = timedelta(seconds=accepted_skew)

    def validate(
        self,
        document: bytes,
        expected_request_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        response = _parse_xml(document)
        if response.tag != etree.QName(SAMLP_NS, "Response").text:
            raise SamlValidationError("Document is not a SAML Response")

        self._validate_status(response)

        in_response_to = response.get("InResponseTo")
        if expected_request_id and in_response_to != expected_request_id:
            raise SamlValidationError("InResponseTo does not match the authentication request")
        if in_response_to and not expected_request_id:
            raise SamlValidationError("No authentication request pending for this response")

        destination = response.get("Destination")
        if destination and destination != self.acs_url:
            raise SamlValidationError(f"Unexpected Destination: {destination}")

        issuer_element = response.find("saml:Issuer", NS)
        issuer = _text(issuer_element)
        if issuer_element is not None and issuer != self.idp.entity_id:
            raise SamlValidationError(f"Unexpected response issuer: {issuer}")

        response_signed = find_signature(response) is not None
        if response_signed:
            verify_enveloped_signature(response, self.idp.certificates)

        if response.find("saml:EncryptedAssertion", NS) is not None:
            raise SamlValidationError("Encrypted assertions are not supported")
        assertions = response.findall("saml:Assertion", NS)
        if len(assertions) != 1:
            raise SamlValidationError("Response must contain exactly one Assertion")
        assertion = assertions[0]

        if find_signature(assertion) is not None:
            verify_enveloped_signature(assertion, self.idp.certificates)
        elif not response_signed:
            raise SamlValidationError("Neither the Response nor the Assertion is signed")

        assertion_issuer = _text(assertion.find("saml:Issuer", NS))
        if assertion_issuer != self.idp.entity_id:
            raise SamlValidationError(f"Unexpected assertion issuer: {assertion_issuer}")

        self._validate_conditions(assertion, now)
        name_id = self._validate_subject(assertion, in_response_to, now)
        session_index = self._validate_authn_statement(assertion, now)

        return {
            "name_id": name_id,
            "session_index": session_index,
            "attributes": self._attributes(assertion),
        }

    def _validate_status(self, response: etree._Element) -> None:
        status = response.find("samlp:Status/samlp:StatusCode", NS)
        value = status.get("Value") if status is not None else None
        if value != STATUS_SUCCESS:
            message = response.findtext("samlp:Status/samlp:StatusMessage", namespaces=NS)
            raise SamlValidationError(f"Authentication failed at the IdP: {value} {message or ''}".strip())

    def _validate_conditions(self, assertion: etree._Element, now: datetime) -> None:
        conditions = assertion.find("saml:Conditions", NS)
        if conditions is None:
            return

        not_before = conditions.get("NotBefore")
        if not_before and now + self.skew < _parse_instant(not_before):
            raise SamlValidationError("Assertion is not yet valid")
        not_on_or_after = conditions.get("NotOnOrAfter")
        if not_on_or_after and now - self.skew >= _parse_instant(not_on_or_after):
            raise SamlValidationError("Assertion has expired")

        restrictions = conditions.findall("saml:AudienceRestriction", NS)
        for restriction in restrictions:
            audiences = [_text(a) for a in restriction.findall("saml:Audience", NS)]
            if self.sp_entity_id not in audiences:
                raise SamlValidationError("Assertion is not intended for this service provider")

    def _validate_subject(self, assertion: etree._Element, in_response_to: Optional[str], now: datetime) -> str:
        subject = assertion.find("saml:Subject", NS)
        if subject is None:
            raise SamlValidationError("Assertion has no Subject")

        name_id = _text(subject.find("saml:NameID", NS))
        if not name_id:
            raise SamlValidationError("Assertion Subject has no NameID")

        for confirmation in subject.findall("saml:SubjectConfirmation", NS):
            if confirmation.get("Method") != CONFIRMATION_BEARER:
                continue
            data = confirmation.find("saml:SubjectConfirmationData", NS)
            if data is None:
                continue
            if data.get("NotBefore"):
                continue
            not_on_or_after = data.get("NotOnOrAfter")
            if not not_on_or_after or now - self.skew >= _parse_instant(not_on_or_after):
                continue
            recipient = data.get("Recipient")
            if recipient and recipient != self.acs_url:
                continue
            if data.get("InResponseTo") and data.get("InResponseTo") != in_response_to:
                continue
            return name_id

        raise SamlValidationError("No valid bearer SubjectConfirmation")

    def _validate_authn_statement(self, assertion: etree._Element, now: datetime) -> Optional[str]:
        statement = assertion.find("saml:AuthnStatement", NS)
        if statement is None:
            raise SamlValidationError("Assertion has no AuthnStatement")

        instant = statement.get("AuthnInstant")
        if not instant:
            raise SamlValidationError("AuthnStatement has no AuthnInstant")
        age = now - _parse_instant(instant)
        if age > timedelta(seconds=self.maximum_authentication_lifetime) + self.skew:
            raise SamlValidationError("Authentication is too old")

        session_not_on_or_after = statement.get("SessionNotOnOrAfter")
        if session_not_on_or_after and now - self.skew >= _parse_instant(session_not_on_or_after):
            raise SamlValidationError("IdP session has expired")

        return statement.get("SessionIndex")

    def _attributes(self, assertion: etree._Element) -> Dict[str, Any]:
        attributes: Dict[str, Any] = {}
        for attribute in assertion.findall("saml:AttributeStatement/saml:Attribute", NS):
            name = attribute.get("Name")
            if not name:
                continue
            values = [_text(value) for value in attribute.findall("saml:AttributeValue", NS)]
            attributes[name] = values
            friendly = attribute.get("FriendlyName")
            if friendly and friendly not in attributes:
                attributes[friendly] = values
        return attributes
