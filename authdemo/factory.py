"""
Security configuration of the demo.

Every client shares the callback URL ``<BASE_URL>/callback``; indirect clients
are told apart by the ``client_name`` parameter they add to it.
"""

import logging

from authdemo.auth.authenticators import JwtAuthenticator, SimpleTestUsernamePasswordAuthenticator
from authdemo.auth.authorizers import CustomAuthorizer, RequireAnyRoleAuthorizer
from authdemo.auth.cas import CasClient, CasProtocol
from authdemo.auth.clients import Clients
from authdemo.auth.config import SecurityConfig
from authdemo.auth.http import DirectBasicAuthClient, FormClient, IndirectBasicAuthClient, ParameterClient
from authdemo.auth.oauth import FacebookClient, TwitterClient
from authdemo.auth.oidc import OidcClient
from authdemo.auth.profile import LogoutRegistry
from authdemo.auth.saml import SAML2Client, SAML2ClientConfiguration
from authdemo.config import Settings

logger = logging.getLogger(__name__)

AUTHORIZER_ADMIN = "admin"
AUTHORIZER_CUSTOM = "custom"


def facebook_client(settings: Settings) -> FacebookClient:
    return FacebookClient(settings.FB_ID, settings.FB_SECRET)


def twitter_client(settings: Settings) -> TwitterClient:
    return TwitterClient(settings.TWITTER_KEY, settings.TWITTER_SECRET)


def cas_client(settings: Settings, logout_registry: LogoutRegistry) -> CasClient:
    client = CasClient()
    client.logout_handler = logout_registry
    client.cas_protocol = CasProtocol.CAS20
    client.set_cas_login_url(settings.CAS_URL)
    return client


def saml2_client(settings: Settings) -> SAML2Client:
    configuration = SAML2ClientConfiguration(
        identity_provider_metadata_path=settings.SAML_IDP_METADATA_PATH,
        service_provider_entity_id=settings.SAML_SP_ENTITY_ID,
        service_provider_metadata_path=settings.SAML_SP_METADATA_PATH,
        service_provider_certificate_path=settings.SAML_SP_CERTIFICATE_PATH,
        maximum_authentication_lifetime=settings.SAML_MAXIMUM_AUTHENTICATION_LIFETIME,
    )
    return SAML2Client(configuration)


def form_client(settings: Settings) -> FormClient:
    return FormClient(settings.login_form_url, SimpleTestUsernamePasswordAuthenticator())


def indirect_basic_auth_client() -> IndirectBasicAuthClient:
    return IndirectBasicAuthClient(SimpleTestUsernamePasswordAuthenticator())


def oidc_client(settings: Settings) -> OidcClient:
    client = OidcClient(cache_seconds=settings.OIDC_CACHE_SECONDS)
    client.client_id = settings.OIDC_CLIENT_ID
    client.secret = settings.OIDC_SECRET
    client.discovery_uri = settings.OIDC_DISCOVERY_URI
    for key, value in settings.OIDC_CUSTOM_PARAMS.items():
        client.add_custom_param(key, value)
    return client


def parameter_client(settings: Settings) -> ParameterClient:
    """JWT passed in the ``token`` query parameter."""
    client = ParameterClient("token", JwtAuthenticator(settings.JWT_SALT))
    client.support_get_request = True
    client.support_post_request = False
    return client


def build_config(settings: Settings) -> SecurityConfig:
    """
    Build the clients and authorizers of the demo.

    Args:
        settings: Application settings

    Returns:
        SecurityConfig ready to be attached to the application
    """
    logout_registry = LogoutRegistry(ttl=settings.SESSION_MAX_AGE)

    clients = Clients(
        settings.callback_url,
        facebook_client(settings),
        twitter_client(settings),
        cas_client(settings, logout_registry),
        saml2_client(settings),
        form_client(settings),
        indirect_basic_auth_client(),
        oidc_client(settings),
        parameter_client(settings),
        DirectBasicAuthClient(SimpleTestUsernamePasswordAuthenticator()),
    )

    config = SecurityConfig(clients, logout_registry=logout_registry)
    config.add_authorizer(AUTHORIZER_ADMIN, RequireAnyRoleAuthorizer("ROLE_ADMIN"))
    config.add_authorizer(AUTHORIZER_CUSTOM, CustomAuthorizer())

    logger.info(f"Config created {config!r}")
    return config
