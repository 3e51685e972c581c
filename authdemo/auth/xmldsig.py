"""
XML signature (enveloped) verification for SAML documents.

Only the layout SAML identity providers produce is supported: a ds:Signature
that is a direct child of the signed element, with a single Reference to
that element's ID, the enveloped-signature transform and exclusive or
inclusive canonicalization.
"""

import base64
import copy
import hashlib
import hmac
from typing import Callable, Dict, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from lxml import etree

from authdemo.auth.exceptions import SamlValidationError

XMLDSIG_NS = "http://www.w3.org/2000/09/xmldsig#"
XML_EXC_C14N_NS = "http://www.w3.org/2001/10/xml-exc-c14n#"
ENVELOPED_SIGNATURE = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"

DIGEST_ALGORITHMS: Dict[str, Callable] = {
    "http://www.w3.org/2001/04/xmlenc#sha256": hashlib.sha256,
    "http://www.w3.org/2001/04/xmlenc#sha512": hashlib.sha512,
    "http://www.w3.org/2000/09/xmldsig#sha1": hashlib.sha1,
}

# algorithm uri -> (exclusive, with_comments)
CANONICALIZATION_ALGORITHMS: Dict[str, Tuple[bool, bool]] = {
    "http://www.w3.org/2001/10/xml-exc-c14n#": (True, False),
    "http://www.w3.org/2001/10/xml-exc-c14n#WithComments": (True, True),
    "http://www.w3.org/TR/2001/REC-xml-c14n-20010315": (False, False),
    "http://www.w3.org/TR/2001/REC-xml-c14n-20010315#WithComments": (False, True),
}

SIGNATURE_ALGORITHMS = {
    "http://www.w3.org/2000/09/xmldsig#rsa-sha1": (rsa.RSAPublicKey, hashes.SHA1),
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256": (rsa.RSAPublicKey, hashes.SHA256),
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha512": (rsa.RSAPublicKey, hashes.SHA512),
    "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha256": (ec.EllipticCurvePublicKey, hashes.SHA256),
}


def load_certificate(value: str) -> x509.Certificate:
    """Load a certificate given as PEM or as the bare base64 found in SAML metadata."""
    material = value.strip()
    try:
        if material.startswith("-----BEGIN"):
            return x509.load_pem_x509_certificate(material.encode("ascii"))
        return x509.load_der_x509_certificate(base64.b64decode("".join(material.split())))
    except ValueError as e:
        raise SamlValidationError("Invalid certificate") from e


def find_signature(element: etree._Element):
    """The ds:Signature enveloped in ``element``, if any."""
    return element.find(f"{{{XMLDSIG_NS}}}Signature")


def verify_enveloped_signature(element: etree._Element, certificates) -> None:
    """
    Verify the signature enveloped in ``element`` against any of the certificates.

    Raises:
        SamlValidationError: If the signature is missing, does not cover
            ``element``, or does not verify
    """
    signature = find_signature(element)
    if signature is None:
        raise SamlValidationError("Missing signature")
    if not certificates:
        raise SamlValidationError("No certificate available to verify the signature")

    signed_info = signature.find(f"{{{XMLDSIG_NS}}}SignedInfo")
    if signed_info is None:
        raise SamlValidationError("Signature missing SignedInfo")

    references = signed_info.findall(f"{{{XMLDSIG_NS}}}Reference")
    if len(references) != 1:
        raise SamlValidationError("Signature must contain exactly one Reference")
    reference = references[0]

    element_id = element.get("ID")
    if not element_id or reference.get("URI") != f"#{element_id}":
        raise SamlValidationError("Signature does not reference the signed element")

    _verify_digest(element, signature, reference)

    value = signature.findtext(f"{{{XMLDSIG_NS}}}SignatureValue")
    if not value:
        raise SamlValidationError("Signature missing SignatureValue")
    try:
        signature_bytes = base64.b64decode("".join(value.split()), validate=True)
    except ValueError as e:
        raise SamlValidationError("Malformed SignatureValue") from e

    method = signed_info.find(f"{{{XMLDSIG_NS}}}CanonicalizationMethod")
    if method is None:
        raise SamlValidationError("SignedInfo missing CanonicalizationMethod")
    payload = canonicalize(signed_info, method.get("Algorithm", ""), _inclusive_prefixes(method))

    signature_method = signed_info.find(f"{{{XMLDSIG_NS}}}SignatureMethod")
    algorithm = signature_method.get("Algorithm", "") if signature_method is not None else ""
    if algorithm not in SIGNATURE_ALGORITHMS:
        raise SamlValidationError(f"Unsupported signature algorithm: {algorithm}")

    for certificate in certificates:
        if _verify_with_key(certificate.public_key(), algorithm, signature_bytes, payload):
            return
    raise SamlValidationError("Signature verification failed")


def canonicalize(element: etree._Element, algorithm: str, prefixes=()) -> bytes:
    if algorithm not in CANONICALIZATION_ALGORITHMS:
        raise SamlValidationError(f"Unsupported canonicalization: {algorithm}")
    exclusive, with_comments = CANONICALIZATION_ALGORITHMS[algorithm]
    return etree.tostring(
        element,
        method="c14n",
        exclusive=exclusive,
        with_comments=with_comments,
        inclusive_ns_prefixes=list(prefixes) if prefixes else None,
    )


def _verify_digest(element: etree._Element, signature: etree._Element, reference: etree._Element) -> None:
    target = copy.deepcopy(element)
    data = None

    transforms = reference.find(f"{{{XMLDSIG_NS}}}Transforms")
    for transform in transforms if transforms is not None else []:
        algorithm = transform.get("Algorithm", "")
        if algorithm == ENVELOPED_SIGNATURE:
            enveloped = find_signature(target)
            if enveloped is not None:
                _remove_keeping_tail(enveloped)
        elif algorithm in CANONICALIZATION_ALGORITHMS:
            data = canonicalize(target, algorithm, _inclusive_prefixes(transform))
        else:
            raise SamlValidationError(f"Unsupported transform: {algorithm}")

    if data is None:
        data = canonicalize(target, "http://www.w3.org/TR/2001/REC-xml-c14n-20010315")

    digest_method = reference.find(f"{{{XMLDSIG_NS}}}DigestMethod")
    digest_value = reference.findtext(f"{{{XMLDSIG_NS}}}DigestValue")
    if digest_method is None or not digest_value:
        raise SamlValidationError("Reference missing digest")

    factory = DIGEST_ALGORITHMS.get(digest_method.get("Algorithm", ""))
    if factory is None:
        raise SamlValidationError("Unsupported digest algorithm")

    expected = base64.b64encode(factory(data).digest()).decode("ascii")
    if not hmac.compare_digest(expected, "".join(digest_value.split())):
        raise SamlValidationError("Digest mismatch: the signed element was modified")


def _verify_with_key(public_key, algorithm: str, signature: bytes, payload: bytes) -> bool:
    key_type, hash_type = SIGNATURE_ALGORITHMS[algorithm]
    if not isinstance(public_key, key_type):
        return False
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, payload, padding.PKCS1v15(), hash_type())
        else:
            public_key.verify(signature, payload, ec.ECDSA(hash_type()))
    except InvalidSignature:
        return False
    return True


def _inclusive_prefixes(element: etree._Element) -> Tuple[str, ...]:
    node = element.find(f"{{{XML_EXC_C14N_NS}}}InclusiveNamespaces")
    if node is None:
        return ()
    return tuple((node.get("PrefixList") or "").split())


def _remove_keeping_tail(element: etree._Element) -> None:
    parent = element.getparent()
    if element.tail:
        previous = element.getprevious()
        if previous is not None:
            previous.tail = (previous.tail or "") + element.tail
        else:
            parent.text = (parent.text or "") + element.tail
    parent.remove(element)
