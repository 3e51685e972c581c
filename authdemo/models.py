"""
Data Models Module

Pydantic models shared by the security layer and the demo pages:
- User profiles built by the identity-provider clients
- JSON response bodies (protected content, health check, errors)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

# provider credentials kept with the profile; never rendered or put into generated tokens
PROVIDER_TOKEN_ATTRIBUTES = frozenset({"access_token"})


# ============================================================================
# Profile Models
# ============================================================================

class UserProfile(BaseModel):
    """Attributes of an authenticated user, as returned by one client."""
    id: str = Field(..., description="User identifier within the identity provider")
    profile_type: str = Field(default="CommonProfile", description="Kind of profile (FacebookProfile, CasProfile, ...)")
    client_name: str = Field(default="", description="Client that authenticated the user")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Provider attributes")
    roles: List[str] = Field(default_factory=list, description="Granted roles")
    permissions: List[str] = Field(default_factory=list, description="Granted permissions")
    remember_me: bool = Field(default=False, description="Remember-me flag")
    session_index: Optional[str] = Field(
        default=None,
        description="CAS service ticket or SAML SessionIndex bound to this login",
    )

    @property
    def typed_id(self) -> str:
        return f"{self.profile_type}#{self.id}"

    @property
    def username(self) -> Optional[str]:
        return self.attributes.get("username")

    @property
    def display_name(self) -> str:
        for key in ("display_name", "name", "username", "email"):
            value = self.attributes.get(key)
            if value:
                return str(value)
        return self.id

    def public_attributes(self) -> Dict[str, Any]:
        """Attributes without the provider tokens."""
        return {k: v for k, v in self.attributes.items() if k not in PROVIDER_TOKEN_ATTRIBUTES}


# ============================================================================
# Response Models
# ============================================================================

class ProtectedContent(BaseModel):
    """JSON wrapper around a rendered protected page."""
    content: str = Field(..., description="Rendered HTML of the protected page")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    clients: List[str] = Field(default_factory=list, description="Configured client names")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Check timestamp")


class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    detail: Optional[str] = Field(None, description="Additional error detail")
