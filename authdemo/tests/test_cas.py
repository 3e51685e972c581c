"""
CAS Tests

Tests service response parsing, the login flow against a mocked CAS server
and back-channel logout.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from authdemo.auth.cas import CasClient, CasProtocol, parse_cas10_response, parse_service_response
from authdemo.auth.exceptions import CredentialsError, ProtocolError

CAS_SUCCESS = """<cas:serviceResponse xmlns:cas="http://www.yale.edu/tp/cas">
    <cas:authenticationSuccess>
        <cas:user>jleleu</cas:user>
        <cas:attributes>
            <cas:email>jle@example.org</cas:email>
            <cas:memberOf>staff</cas:memberOf>
            <cas:memberOf>admins</cas:memberOf>
        </cas:attributes>
    </cas:authenticationSuccess>
</cas:serviceResponse>"""

CAS_FAILURE = """<cas:serviceResponse xmlns:cas="http://www.yale.edu/tp/cas">
    <cas:authenticationFailure code="INVALID_TICKET">Ticket ST-1 not recognized</cas:authenticationFailure>
</cas:serviceResponse>"""

LOGOUT_REQUEST = """<samlp:LogoutRequest xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol"
    xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion" ID="LR-1" Version="2.0" IssueInstant="2024-01-01T00:00:00Z">
    <saml:NameID>@NOT_USED@</saml:NameID>
    <samlp:SessionIndex>ST-1-abc</samlp:SessionIndex>
</samlp:LogoutRequest>"""


def cas_server(requests):
    """Mock CAS server answering serviceValidate"""

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.endswith("/serviceValidate"):
            if request.url.params.get("ticket") == "ST-1-abc":
                return httpx.Response(200, text=CAS_SUCCESS)
            return httpx.Response(200, text=CAS_FAILURE)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.fixture
def cas_requests(security_config):
    requests = []
    security_config.clients.find_client("CasClient").transport = cas_server(requests)
    return requests


class TestServiceResponse:
    """Test suite for CAS response parsing"""

    def test_success_with_attributes(self):
        user, attributes = parse_service_response(CAS_SUCCESS)

        assert user == "jleleu"
        assert attributes["email"] == "jle@example.org"
        assert attributes["memberOf"] == ["staff", "admins"]

    def test_failure(self):
        with pytest.raises(CredentialsError, match="INVALID_TICKET"):
            parse_service_response(CAS_FAILURE)

    def test_unparsable(self):
        with pytest.raises(ProtocolError):
            parse_service_response("<html>oops")

    def test_cas10(self):
        assert parse_cas10_response("yes\njleleu\n") == ("jleleu", {})
        with pytest.raises(CredentialsError):
            parse_cas10_response("no\n\n")


class TestCasClient:
    """Test suite for CasClient URLs"""

    def test_prefix_and_validation_urls(self):
        client = CasClient("https://cas.example.org/cas/login")

        assert client.prefix_url() == "https://cas.example.org/cas/"
        assert client.validation_url() == "https://cas.example.org/cas/p3/serviceValidate"

        client.cas_protocol = CasProtocol.CAS20
        assert client.validation_url() == "https://cas.example.org/cas/serviceValidate"

        client.cas_protocol = CasProtocol.CAS10
        assert client.validation_url() == "https://cas.example.org/cas/validate"


class TestCasFlow:
    """Test suite for the CAS login flow"""

    def test_redirect_to_cas(self, client, test_settings):
        response = client.get("/cas/index.html")

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(test_settings.CAS_URL + "?")
        service = parse_qs(urlparse(location).query)["service"]
        assert service == ["http://testserver/callback?client_name=CasClient"]

    def test_ticket_validation(self, client, cas_requests):
        client.get("/cas/index.html")

        response = client.get("/callback?client_name=CasClient&ticket=ST-1-abc")

        assert response.status_code == 302
        assert response.headers["location"] == "http://testserver/cas/index.html"
        page = client.get("/cas/index.html")
        assert page.status_code == 200
        assert "CasProfile#jleleu" in page.text

        validation = cas_requests[0]
        assert validation.url.path == "/serviceValidate"
        assert validation.url.params["service"] == "http://testserver/callback?client_name=CasClient"

    def test_invalid_ticket(self, client, cas_requests):
        response = client.get("/callback?client_name=CasClient&ticket=ST-unknown")

        assert response.status_code == 401
        assert response.json()["error"] == "CredentialsError"

    def test_back_channel_logout(self, app, client, cas_requests):
        client.get("/callback?client_name=CasClient&ticket=ST-1-abc")
        assert client.get("/cas/index.html").status_code == 200

        # the CAS server calls the callback URL without the user's cookies
        cas_server_client = TestClient(app, follow_redirects=False)
        response = cas_server_client.post(
            "/callback?client_name=CasClient",
            data={"logoutRequest": LOGOUT_REQUEST},
        )

        assert response.status_code == 200
        assert response.text == "ok"
        assert client.get("/cas/index.html").status_code == 302
        assert "profiles: none" in client.get("/").text

    def test_logout_request_for_unknown_ticket_is_ignored(self, client, security_config):
        response = client.post(
            "/callback?client_name=CasClient",
            data={"logoutRequest": LOGOUT_REQUEST.replace("ST-1-abc", "ST-forged")},
        )

        assert response.status_code == 200
        assert len(security_config.logout_registry) == 0
