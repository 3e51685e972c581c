"""
Demo Application Tests

End-to-end tests of the protected pages: form login, basic auth (direct and
indirect), JWT generation and reuse, authorizers, logout and error handling.
"""

import json
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

from fastapi.templating import Jinja2Templates
from fastapi.testclient import TestClient

from authdemo.auth.saml import SAML2Client

from conftest import basic_auth, extract_token, form_login


class TestIndex:
    """Test suite for the public pages"""

    def test_index_without_profile(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "FastAPI authentication demo" in response.text
        assert "profiles: none" in response.text

    def test_index_alias(self, client):
        assert client.get("/index.html").status_code == 200

    def test_jwt_page_without_profile(self, client):
        response = client.get("/jwt.html")

        assert response.status_code == 200
        assert 'id="token"' not in response.text

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert "FormClient" in body["clients"]

    def test_saml_metadata(self, client, test_settings):
        response = client.get("/saml2/metadata")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert test_settings.SAML_SP_ENTITY_ID in response.text
        assert "http://testserver/callback?client_name=SAML2Client" in response.text


class TestFormLogin:
    """Test suite for the FormClient flow"""

    def test_protected_page_redirects_to_login_form(self, client):
        response = client.get("/form/index.html")

        assert response.status_code == 302
        assert response.headers["location"] == "http://testserver/loginForm"

    def test_login_form_posts_to_callback(self, client):
        response = client.get("/loginForm")

        assert response.status_code == 200
        assert 'action="http://testserver/callback?client_name=FormClient"' in response.text

    def test_successful_login_returns_to_requested_page(self, client):
        client.get("/form/index.html")

        response = form_login(client, "jleleu", "jleleu")

        assert response.status_code == 302
        assert response.headers["location"] == "http://testserver/form/index.html"

        page = client.get("/form/index.html")
        assert page.status_code == 200
        assert "HttpProfile#jleleu" in page.text
        assert "FormClient" in page.text

    def test_login_without_requested_page_goes_home(self, client):
        response = form_login(client, "jleleu", "jleleu")

        assert response.headers["location"] == "/"
        assert "HttpProfile#jleleu" in client.get("/").text

    def test_wrong_password_back_to_form(self, client):
        response = form_login(client, "jleleu", "wrong")

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert location.path == "/loginForm"
        assert parse_qs(location.query) == {"username": ["jleleu"], "error": ["CredentialsError"]}

        form = client.get(response.headers["location"])
        assert "error: CredentialsError" in form.text
        assert 'value="jleleu"' in form.text

    def test_missing_field_back_to_form(self, client):
        response = client.post("/callback?client_name=FormClient", data={"username": "jleleu"})

        assert response.status_code == 302
        assert "error=missing_field" in response.headers["location"]

    def test_json_page(self, client):
        form_login(client, "jleleu", "jleleu")

        response = client.get("/form/index.html.json")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/json")
        body = json.loads(response.text)
        assert "HttpProfile#jleleu" in body["content"]
        assert response.text.startswith("{\n  ")

    def test_login_replaces_previous_profile(self, client):
        form_login(client, "jleleu", "jleleu")
        form_login(client, "bob", "bob")

        page = client.get("/").text

        assert "HttpProfile#bob" in page
        assert "HttpProfile#jleleu" not in page


class TestProtectedPages:
    """Test suite for route protection and authorizers"""

    def test_protected_without_login_is_unauthorized(self, client):
        response = client.get("/protected/index.html")

        assert response.status_code == 401

    def test_protected_with_any_login(self, client):
        form_login(client, "jleleu", "jleleu")

        assert client.get("/protected/index.html").status_code == 200

    def test_facebook_redirects_to_provider(self, client, test_settings):
        response = client.get("/facebook/index.html")

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert location.netloc == "www.facebook.com"
        query = parse_qs(location.query)
        assert query["client_id"] == [test_settings.FB_ID]
        assert query["redirect_uri"] == ["http://testserver/callback?client_name=FacebookClient"]
        assert query["state"][0]

    def test_client_name_parameter_selects_client(self, client):
        response = client.get("/twitter/index.html?client_name=FacebookClient")

        assert response.status_code == 302
        assert urlparse(response.headers["location"]).netloc == "www.facebook.com"

    def test_admin_authorizer_forbids_profile_without_role(self, client):
        form_login(client, "jleleu", "jleleu")

        assert client.get("/facebookadmin/index.html").status_code == 403

    def test_custom_authorizer(self, client):
        form_login(client, "jleleu", "jleleu")
        assert client.get("/facebookcustom/index.html").status_code == 200

        form_login(client, "bob", "bob")
        assert client.get("/facebookcustom/index.html").status_code == 403


class TestBasicAuth:
    """Test suite for the basic auth clients"""

    def test_direct_basic_auth(self, client):
        response = client.get("/dba/index.html", headers=basic_auth("jleleu", "jleleu"))

        assert response.status_code == 200
        assert "HttpProfile#jleleu" in response.text
        assert "DirectBasicAuthClient" in response.text

    def test_direct_basic_auth_not_kept_in_session(self, client):
        client.get("/dba/index.html", headers=basic_auth("jleleu", "jleleu"))

        assert client.get("/dba/index.html").status_code == 401
        assert "profiles: none" in client.get("/").text

    def test_direct_basic_auth_challenge(self, client):
        response = client.get("/dba/index.html")

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == 'Basic realm="authentication required"'

    def test_direct_basic_auth_wrong_password(self, client):
        response = client.get("/dba/index.html", headers=basic_auth("jleleu", "nope"))

        assert response.status_code == 401

    def test_indirect_basic_auth(self, client):
        response = client.get("/basicauth/index.html")
        assert response.status_code == 302
        callback = response.headers["location"]
        assert callback == "http://testserver/callback?client_name=IndirectBasicAuthClient"

        challenge = client.get(callback)
        assert challenge.status_code == 401
        assert "www-authenticate" in challenge.headers

        login = client.get(callback, headers=basic_auth("jleleu", "jleleu"))
        assert login.status_code == 302
        assert login.headers["location"] == "http://testserver/basicauth/index.html"

        assert client.get("/basicauth/index.html").status_code == 200

    def test_indirect_basic_auth_wrong_password(self, client):
        response = client.get(
            "/callback?client_name=IndirectBasicAuthClient",
            headers=basic_auth("jleleu", "nope"),
        )

        assert response.status_code == 401


class TestJwt:
    """Test suite for JWT generation and the ParameterClient"""

    def test_generated_token_opens_rest_page(self, app, client):
        form_login(client, "jleleu", "jleleu")
        token = extract_token(client.get("/jwt.html").text)

        fresh = TestClient(app, follow_redirects=False)
        response = fresh.get(f"/rest-jwt/index.html?token={token}")

        assert response.status_code == 200
        assert "HttpProfile#jleleu" in response.text
        assert "ParameterClient" in response.text

    def test_token_accepted_on_dba_page(self, app, client):
        form_login(client, "jleleu", "jleleu")
        token = extract_token(client.get("/jwt.html").text)

        fresh = TestClient(app, follow_redirects=False)
        assert fresh.get(f"/dba/index.html?token={token}").status_code == 200

    def test_invalid_token_rejected(self, client):
        assert client.get("/rest-jwt/index.html?token=not-a-jwt").status_code == 401

    def test_session_profile_not_used_by_direct_route(self, client):
        form_login(client, "jleleu", "jleleu")

        assert client.get("/rest-jwt/index.html").status_code == 401

    def test_token_not_read_from_post(self, app, client):
        form_login(client, "jleleu", "jleleu")
        token = extract_token(client.get("/jwt.html").text)

        fresh = TestClient(app, follow_redirects=False)
        assert fresh.post("/rest-jwt/index.html", data={"token": token}).status_code == 405


class TestCallbackAndLogout:
    """Test suite for the callback and logout endpoints"""

    def test_callback_without_client_name(self, client):
        response = client.get("/callback")

        assert response.status_code == 400
        assert response.json()["error"] == "ClientNotFoundError"

    def test_callback_unknown_client(self, client):
        assert client.get("/callback?client_name=NoSuchClient").status_code == 400

    def test_callback_rejects_direct_client(self, client):
        assert client.get("/callback?client_name=DirectBasicAuthClient").status_code == 400

    def test_logout(self, client):
        form_login(client, "jleleu", "jleleu")

        response = client.get("/logout")

        assert response.status_code == 302
        assert response.headers["location"] == "/"
        assert client.get("/protected/index.html").status_code == 401

    def test_logout_redirects_to_local_url(self, client):
        response = client.get("/logout?url=/jwt.html")

        assert response.headers["location"] == "/jwt.html"

    def test_logout_ignores_external_url(self, client):
        assert client.get("/logout?url=https://evil.example.org/").headers["location"] == "/"
        assert client.get("/logout?url=//evil.example.org/").headers["location"] == "/"


class TestErrorHandling:
    """Test suite for the global exception handler"""

    def test_template_failure_returns_500(self, app, tmp_path):
        app.state.templates = Jinja2Templates(directory=str(tmp_path))
        client = TestClient(app, raise_server_exceptions=False)

        response = client.get("/")

        assert response.status_code == 500
        assert response.json()["error"] == "internal_server_error"

    def test_unwritable_sp_metadata_does_not_stop_startup(self, app):
        with patch.object(
            SAML2Client, "write_service_provider_metadata", side_effect=OSError("read-only")
        ) as write:
            with TestClient(app) as client:
                assert client.get("/health").status_code == 200

        write.assert_called_once()
