"""
Security Configuration Tests

Tests the clients and authorizers built for the demo.
"""

import logging

from authdemo.auth.authorizers import CustomAuthorizer, RequireAnyRoleAuthorizer
from authdemo.auth.cas import CasProtocol
from authdemo.auth.http import FormClient, ParameterClient
from authdemo.factory import AUTHORIZER_ADMIN, AUTHORIZER_CUSTOM, build_config


class TestBuildConfig:
    """Test suite for build_config"""

    def test_clients_in_order(self, test_settings):
        config = build_config(test_settings)

        assert config.clients.names == [
            "FacebookClient",
            "TwitterClient",
            "CasClient",
            "SAML2Client",
            "FormClient",
            "IndirectBasicAuthClient",
            "OidcClient",
            "ParameterClient",
            "DirectBasicAuthClient",
        ]

    def test_indirect_clients_share_callback(self, test_settings):
        config = build_config(test_settings)

        assert config.clients.callback_url == "http://testserver/callback"
        form = config.clients.find_client("FormClient")
        assert form.compute_callback_url() == "http://testserver/callback?client_name=FormClient"
        cas = config.clients.find_client("CasClient")
        assert cas.compute_callback_url() == "http://testserver/callback?client_name=CasClient"

    def test_form_client_login_url(self, test_settings):
        form = build_config(test_settings).clients.find_client("FormClient")

        assert isinstance(form, FormClient)
        assert form.login_url == "http://testserver/loginForm"

    def test_cas_client(self, test_settings):
        config = build_config(test_settings)
        cas = config.clients.find_client("CasClient")

        assert cas.cas_protocol == CasProtocol.CAS20
        assert cas.cas_login_url == test_settings.CAS_URL
        assert cas.logout_handler is config.logout_registry
        assert config.logout_registry.ttl == test_settings.SESSION_MAX_AGE

    def test_oidc_client(self, test_settings):
        oidc = build_config(test_settings).clients.find_client("OidcClient")

        assert oidc.client_id == test_settings.OIDC_CLIENT_ID
        assert oidc.discovery_uri == test_settings.OIDC_DISCOVERY_URI
        assert oidc.custom_params == {"prompt": "consent"}

    def test_saml_client(self, test_settings):
        saml = build_config(test_settings).clients.find_client("SAML2Client")

        assert saml.service_provider_entity_id == test_settings.SAML_SP_ENTITY_ID
        assert saml.configuration.maximum_authentication_lifetime == 3600

    def test_parameter_client_reads_token_from_get_only(self, test_settings):
        client = build_config(test_settings).clients.find_client("ParameterClient")

        assert isinstance(client, ParameterClient)
        assert client.parameter_name == "token"
        assert client.support_get_request is True
        assert client.support_post_request is False
        assert client.direct is True

    def test_authorizers(self, test_settings):
        config = build_config(test_settings)

        assert isinstance(config.authorizers[AUTHORIZER_ADMIN], RequireAnyRoleAuthorizer)
        assert config.authorizers[AUTHORIZER_ADMIN].roles == {"ROLE_ADMIN"}
        assert isinstance(config.authorizers[AUTHORIZER_CUSTOM], CustomAuthorizer)

    def test_config_creation_logged(self, test_settings, caplog):
        with caplog.at_level(logging.INFO, logger="authdemo.factory"):
            build_config(test_settings)

        assert any("Config created" in record.getMessage() for record in caplog.records)
