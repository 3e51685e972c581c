"""
OpenID Connect client.

This module handles:
- Fetching and caching the provider's discovery document and JWKS
- The authorization code flow (state, nonce, custom parameters)
- Verifying ID tokens (signature, issuer, audience, expiry, nonce)
"""

import logging
import secrets
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from fastapi import Request
from jose import JWTError, jwk, jwt
from jose.exceptions import JOSEError

from authdemo.auth.clients import IndirectClient, OAuthCredentials, json_body
from authdemo.auth.exceptions import CredentialsError, ProtocolError
from authdemo.models import UserProfile

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "openid profile email"
CLOCK_SKEW_SECONDS = 10


class OidcClient(IndirectClient):
    """OpenID Connect authorization code client."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        secret: Optional[str] = None,
        discovery_uri: Optional[str] = None,
        name: Optional[str] = None,
        cache_seconds: int = 3600,
    ):
        super().__init__(name)
        self.client_id = client_id
        self.secret = secret
        self.discovery_uri = discovery_uri
        self.scope = DEFAULT_SCOPE
        self.custom_params: Dict[str, str] = {}
        self.cache_seconds = cache_seconds

        self._metadata: Optional[Dict[str, Any]] = None
        self._metadata_time: float = 0.0
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_time: float = 0.0

    def add_custom_param(self, key: str, value: str) -> None:
        self.custom_params[key] = value

    # =========================================================================
    # Discovery and JWKS cache
    # =========================================================================

    async def fetch_metadata(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the provider discovery document, with caching.

        Raises:
            ProtocolError: If the document is unreachable or incomplete
        """
        now = time.time()
        if not force_refresh and self._metadata and (now - self._metadata_time) < self.cache_seconds:
            return self._metadata

        if not self.discovery_uri:
            raise ValueError(f"Discovery URI of client {self.name} is not set")

        try:
            async with self.http_client() as client:
                response = await client.get(self.discovery_uri)
                response.raise_for_status()
                metadata = json_body(response, "Discovery document")
        except httpx.HTTPError as e:
            raise ProtocolError(f"Unable to fetch discovery document: {e}") from e

        for key in ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri"):
            if key not in metadata:
                raise ProtocolError(f"Invalid discovery document: missing '{key}'")

        self._metadata = metadata
        self._metadata_time = now
        return metadata

    async def fetch_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the provider JWKS, with caching.

        Raises:
            ProtocolError: If the JWKS is unreachable or invalid
        """
        now = time.time()
        if not force_refresh and self._jwks and (now - self._jwks_time) < self.cache_seconds:
            return self._jwks

        metadata = await self.fetch_metadata()
        try:
            async with self.http_client() as client:
                response = await client.get(metadata["jwks_uri"])
                response.raise_for_status()
                jwks = json_body(response, "JWKS response")
        except httpx.HTTPError as e:
            raise ProtocolError(f"Unable to fetch JWKS: {e}") from e

        if "keys" not in jwks:
            raise ProtocolError("Invalid JWKS response: missing 'keys' field")

        self._jwks = jwks
        self._jwks_time = now
        return jwks

    # =========================================================================
    # Authorization code flow
    # =========================================================================

    async def redirect(self, request: Request) -> str:
        metadata = await self.fetch_metadata()

        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32)
        request.session[self.session_key("state")] = state
        request.session[self.session_key("nonce")] = nonce

        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.compute_callback_url(),
            "scope": self.scope,
            "state": state,
            "nonce": nonce,
        }
        params.update(self.custom_params)
        return f"{metadata['authorization_endpoint']}?{urlencode(params)}"

    async def get_credentials(self, request: Request) -> Optional[OAuthCredentials]:
        error = request.query_params.get("error")
        if error:
            logger.info(
                "OpenID Connect authentication failed at provider",
                extra={"error": error, "error_description": request.query_params.get("error_description")},
            )
            return None

        code = request.query_params.get("code")
        if not code:
            return None

        expected_state = request.session.pop(self.session_key("state"), None)
        nonce = request.session.pop(self.session_key("nonce"), None)
        if not expected_state or request.query_params.get("state") != expected_state:
            raise CredentialsError("Invalid state parameter: possible CSRF or expired session")

        return OAuthCredentials(client_name=self.name, code=code, nonce=nonce)

    async def get_user_profile(self, credentials: OAuthCredentials) -> UserProfile:
        tokens = await self.exchange_code(credentials.code)
        claims = await self.verify_id_token(
            tokens["id_token"],
            nonce=credentials.nonce,
            access_token=tokens.get("access_token"),
        )

        attributes = {
            key: value
            for key, value in claims.items()
            if key not in ("sub", "aud", "iss", "exp", "iat", "nbf", "nonce", "at_hash", "azp")
        }
        if "email" in claims:
            attributes.setdefault("username", claims["email"])
        if tokens.get("access_token"):
            attributes["access_token"] = tokens["access_token"]

        return UserProfile(id=str(claims["sub"]), profile_type="OidcProfile", attributes=attributes)

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """
        Exchange an authorization code for tokens.

        Raises:
            ProtocolError: If the token endpoint fails or returns no id_token
        """
        metadata = await self.fetch_metadata()
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.compute_callback_url(),
            "client_id": self.client_id,
        }
        if self.secret:
            payload["client_secret"] = self.secret

        try:
            async with self.http_client() as client:
                response = await client.post(
                    metadata["token_endpoint"],
                    data=payload,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise ProtocolError(f"Unable to reach token endpoint: {e}") from e

        if not response.is_success:
            try:
                error_data = json_body(response, "Token error response")
            except ProtocolError:
                error_data = {}
            error_msg = error_data.get("error_description") or error_data.get("error") or "Token exchange failed"
            raise ProtocolError(f"Token exchange failed: {error_msg}")

        tokens = json_body(response, "Token response")
        if "id_token" not in tokens:
            raise ProtocolError("Token response missing id_token")
        return tokens

    # =========================================================================
    # ID token verification
    # =========================================================================

    async def verify_id_token(
        self,
        id_token: str,
        nonce: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify and decode an ID token.

        Raises:
            CredentialsError: If the token is invalid, expired, not for us,
                or carries the wrong nonce
        """
        metadata = await self.fetch_metadata()

        signing_key = get_signing_key(id_token, await self.fetch_jwks())
        if not signing_key:
            # keys may have rotated
            signing_key = get_signing_key(id_token, await self.fetch_jwks(force_refresh=True))
            if not signing_key:
                raise CredentialsError("Unable to find matching signing key in JWKS")

        algorithm = signing_key.get("alg") or "RS256"
        try:
            public_key = jwk.construct(signing_key, algorithm=algorithm)
        except JOSEError as e:
            raise CredentialsError(f"Failed to construct public key from JWK: {e}") from e

        try:
            claims = jwt.decode(
                id_token,
                public_key.to_pem().decode("utf-8"),
                algorithms=[algorithm],
                audience=self.client_id,
                issuer=metadata["issuer"],
                access_token=access_token,
                options={
                    "verify_at_hash": bool(access_token),
                    "leeway": CLOCK_SKEW_SECONDS,
                },
            )
        except jwt.ExpiredSignatureError as e:
            raise CredentialsError("ID token has expired") from e
        except jwt.JWTClaimsError as e:
            raise CredentialsError(f"Invalid token claims: {e}") from e
        except JWTError as e:
            raise CredentialsError(f"Token verification failed: {e}") from e

        if nonce and claims.get("nonce") != nonce:
            raise CredentialsError("Nonce mismatch")

        return claims


def get_signing_key(token: str, jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Find the JWKS key matching the token's kid.

    Raises:
        CredentialsError: If the token header is malformed or has no kid
    """
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise CredentialsError(f"Failed to decode token header: {e}") from e

    kid = header.get("kid")
    if not kid:
        raise CredentialsError("Token header missing 'kid' (Key ID)")

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key
    return None
