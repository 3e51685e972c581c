"""
JWT Generation and Verification
================================

Turns a UserProfile into a signed JWT and back.

Token layout:
    sub          typed profile id ("FacebookProfile#1234")
    iat          issue time
    <attribute>  every profile attribute but provider tokens, under its own name
    $int_roles   profile roles
    $int_perms   profile permissions
    $int_client  name of the client that authenticated the user

Tokens are signed with HS256 and the configured JWT salt. The CAS ticket /
SAML session index of a profile is never written into a token.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from authdemo.auth.exceptions import CredentialsError, SecurityError
from authdemo.models import UserProfile

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

INTERNAL_ROLES = "$int_roles"
INTERNAL_PERMISSIONS = "$int_perms"
INTERNAL_CLIENT = "$int_client"

_RESERVED_CLAIMS = {"sub", "iat", "exp", "nbf", "iss", "aud", "jti"}


class JwtGenerator:
    """Generate signed JWTs from user profiles."""

    def __init__(self, secret: str, expiration_minutes: Optional[int] = None):
        if not secret:
            raise SecurityError("JWT secret must not be empty")
        self.secret = secret
        self.expiration_minutes = expiration_minutes

    def generate(self, profile: UserProfile) -> str:
        """
        Create a JWT carrying the profile.

        Args:
            profile: Authenticated user profile

        Returns:
            Encoded JWT string
        """
        now = datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            key: value
            for key, value in profile.public_attributes().items()
            if key not in _RESERVED_CLAIMS
        }
        payload.update({
            "sub": profile.typed_id,
            "iat": now,
            INTERNAL_ROLES: list(profile.roles),
            INTERNAL_PERMISSIONS: list(profile.permissions),
            INTERNAL_CLIENT: profile.client_name,
        })
        if self.expiration_minutes:
            payload["exp"] = int(now.timestamp()) + self.expiration_minutes * 60

        token = jwt.encode(payload, self.secret, algorithm=JWT_ALGORITHM)

        logger.debug(
            "Generated JWT",
            extra={"typed_id": profile.typed_id, "client": profile.client_name},
        )
        return token


def verify_jwt(token: str, secret: str) -> Dict[str, Any]:
    """
    Verify and decode a JWT produced by JwtGenerator.

    Raises:
        CredentialsError: If the token is empty, expired, or invalid
    """
    if not token:
        raise CredentialsError("No token provided")

    try:
        return jwt.decode(
            token,
            secret,
            algorithms=[JWT_ALGORITHM],
            options={
                "verify_signature": True,
                "verify_exp": True,
                "verify_iat": True,
                "require": ["sub", "iat"],
            },
        )
    except ExpiredSignatureError as e:
        logger.warning("JWT token expired")
        raise CredentialsError("Token has expired") from e
    except InvalidTokenError as e:
        logger.warning(f"Invalid JWT token: {e}")
        raise CredentialsError(f"Invalid token: {e}") from e


def profile_from_claims(claims: Dict[str, Any], client_name: str = "") -> UserProfile:
    """Rebuild a profile from the claims of a verified token."""
    subject = str(claims["sub"])
    if "#" in subject:
        profile_type, user_id = subject.split("#", 1)
    else:
        profile_type, user_id = "JwtProfile", subject

    attributes = {
        key: value
        for key, value in claims.items()
        if key not in _RESERVED_CLAIMS and not key.startswith("$int_")
    }
    return UserProfile(
        id=user_id,
        profile_type=profile_type,
        client_name=client_name or claims.get(INTERNAL_CLIENT, ""),
        attributes=attributes,
        roles=list(claims.get(INTERNAL_ROLES) or []),
        permissions=list(claims.get(INTERNAL_PERMISSIONS) or []),
    )
