"""
Configuration module for the authentication demo.

This module uses Pydantic Settings to load and validate the demo's settings:
the public base URL, identity-provider credentials (Facebook, Twitter,
OpenID Connect, CAS, SAML), the JWT signing secret and the server/session
options.

Settings are read, by decreasing priority, from:
    - constructor arguments
    - environment variables
    - a .env file
    - a JSON settings file (DEMO_CONFIG_FILE, default: conf.json)

The credentials shipped as defaults are the public example credentials of the
demo identity-provider applications. Replace them for anything but local use.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


PACKAGE_DIR = Path(__file__).resolve().parent

DEFAULT_SESSION_SECRET = "change-me-in-production-session-secret"


class Settings(BaseSettings):
    """
    Application settings.

    Field names double as environment variable names and JSON keys.
    """

    # =========================================================================
    # Application
    # =========================================================================

    BASE_URL: str = Field(
        default="http://localhost:8080",
        description="Public base URL of the demo, used to build callback URLs",
    )

    APP_NAME: str = Field(
        default="FastAPI",
        description="Title rendered on the index page",
    )

    # =========================================================================
    # OAuth (Facebook, Twitter)
    # =========================================================================

    FB_ID: str = Field(default="145278422258960", description="Facebook application id")
    FB_SECRET: str = Field(
        default="be21409ba8f39b5dae2a7de525484da8",
        description="Facebook application secret",
    )

    TWITTER_KEY: str = Field(default="K9dtF7hwOweVHMxIr8Qe4gshl", description="Twitter consumer key")
    TWITTER_SECRET: str = Field(
        default="9tlc3TBpl5aX47BGGgMNC8glDqVYi8mJKHG6LiWYVD4Sh1F9Oj",
        description="Twitter consumer secret",
    )

    # =========================================================================
    # CAS
    # =========================================================================

    CAS_URL: str = Field(
        default="https://casserverpac4j.herokuapp.com/login",
        description="CAS server login URL",
    )

    # =========================================================================
    # OpenID Connect
    # =========================================================================

    OIDC_CLIENT_ID: str = Field(
        default="736887899191-s2lsd8pakdjugkbp6v3lou7jd631rka2.apps.googleusercontent.com",
        description="OpenID Connect client id",
    )
    OIDC_SECRET: str = Field(default="18B4WAQgzs2RhUY8V_Pl0qSh", description="OpenID Connect client secret")
    OIDC_DISCOVERY_URI: str = Field(
        default="https://accounts.google.com/.well-known/openid-configuration",
        description="OpenID Connect discovery document URL",
    )
    OIDC_CUSTOM_PARAMS: Dict[str, str] = Field(
        default_factory=lambda: {"prompt": "consent"},
        description="Extra parameters added to the authorization request",
    )
    OIDC_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache the discovery document and JWKS",
        ge=0,
        le=86400,
    )

    # =========================================================================
    # SAML 2
    # =========================================================================

    SAML_IDP_METADATA_PATH: str = Field(
        default=str(PACKAGE_DIR / "resources" / "idp-metadata.xml"),
        description="Identity provider metadata file",
    )
    SAML_SP_ENTITY_ID: str = Field(
        default="urn:mace:saml:fastapi-demo.authdemo.org",
        description="Service provider entity id",
    )
    SAML_SP_METADATA_PATH: Optional[str] = Field(
        default=str(Path("target") / "sp-metadata.xml"),
        description="Where the generated service provider metadata is written",
    )
    SAML_SP_CERTIFICATE_PATH: Optional[str] = Field(
        default=None,
        description="PEM certificate published in the SP metadata (optional)",
    )
    SAML_MAXIMUM_AUTHENTICATION_LIFETIME: int = Field(
        default=3600,
        description="Maximum age in seconds of the IdP authentication",
        ge=1,
    )

    # =========================================================================
    # JWT
    # =========================================================================

    JWT_SALT: str = Field(
        default="12345678901234567890123456789012",
        description="Secret used to sign and verify the demo JWTs",
    )

    # =========================================================================
    # Server / session
    # =========================================================================

    SESSION_SECRET: str = Field(default=DEFAULT_SESSION_SECRET, description="Session cookie signing secret")
    SESSION_COOKIE: str = Field(default="authdemo_session", description="Session cookie name")
    SESSION_MAX_AGE: int = Field(
        default=14 * 24 * 60 * 60,
        description="Session cookie lifetime in seconds",
        ge=60,
    )
    HOST: str = Field(default="0.0.0.0", description="Host to bind the server")
    PORT: int = Field(default=8080, description="Port to bind the server", ge=1, le=65535)
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    TEMPLATES_DIR: str = Field(
        default=str(PACKAGE_DIR / "templates"),
        description="Directory holding the page templates",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        json_file=os.environ.get("DEMO_CONFIG_FILE", "conf.json"),
        case_sensitive=True,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def callback_url(self) -> str:
        """Shared callback URL of every indirect client."""
        return f"{self.BASE_URL}/callback"

    @property
    def login_form_url(self) -> str:
        return f"{self.BASE_URL}/loginForm"

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("BASE_URL")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """
        Require an absolute http(s) URL and drop any trailing slash.

        Raises:
            ValueError: If the URL is not absolute
        """
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"BASE_URL must be an absolute http(s) URL, got: {v}")
        return v.rstrip("/")

    @field_validator("JWT_SALT")
    @classmethod
    def validate_jwt_salt(cls, v: str) -> str:
        """HS256 keys shorter than the digest size are rejected."""
        if len(v) < 32:
            raise ValueError("JWT_SALT must be at least 32 characters long")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        level = v.upper()
        if level not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}, got: {v}")
        return level


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If a setting is invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Inspect the settings and report anything unsuitable outside a demo.

    Returns:
        Dictionary with validation status and any warnings.

    Example:
        >>> status = validate_configuration(get_settings())
        >>> status["warnings"]
        ['SESSION_SECRET is the built-in default', ...]
    """
    errors: List[str] = []
    warnings: List[str] = []

    if settings.SESSION_SECRET == DEFAULT_SESSION_SECRET:
        warnings.append("SESSION_SECRET is the built-in default")

    defaults = Settings.model_fields
    for name in ("FB_SECRET", "TWITTER_SECRET", "OIDC_SECRET", "JWT_SALT"):
        if getattr(settings, name) == defaults[name].default:
            warnings.append(f"{name} uses the public demo value")

    if not Path(settings.TEMPLATES_DIR).is_dir():
        errors.append(f"TEMPLATES_DIR does not exist: {settings.TEMPLATES_DIR}")

    if not Path(settings.SAML_IDP_METADATA_PATH).is_file():
        warnings.append(f"SAML IdP metadata not found: {settings.SAML_IDP_METADATA_PATH}")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "base_url": settings.BASE_URL,
    }
