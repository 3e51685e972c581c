"""
OpenID Connect Tests

Tests the authorization code flow and ID token verification against a mocked
provider (discovery document, JWKS and token endpoint).
"""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from authdemo.auth.exceptions import CredentialsError, ProtocolError
from authdemo.auth.oidc import OidcClient, get_signing_key

ISSUER = "https://idp.example.org"
DISCOVERY_URI = f"{ISSUER}/.well-known/openid-configuration"
CLIENT_ID = "demo-client"
TEST_KID = "test-key-1"


def generate_test_key():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return private_key, private_pem.decode()


TEST_PRIVATE_KEY, TEST_PRIVATE_PEM = generate_test_key()


def create_jwks(kid: str = TEST_KID):
    jwk = RSAAlgorithm.to_jwk(TEST_PRIVATE_KEY.public_key(), as_dict=True)
    jwk["kid"] = kid
    jwk["use"] = "sig"
    jwk["alg"] = "RS256"
    return {"keys": [jwk]}


def create_id_token(nonce: str = None, kid: str = TEST_KID, exp_delta_minutes: int = 60, **overrides):
    """Create an ID token signed with the test private key"""
    now = datetime.now(timezone.utc)
    payload = {
        "iss": ISSUER,
        "sub": "108234567890",
        "aud": CLIENT_ID,
        "exp": now + timedelta(minutes=exp_delta_minutes),
        "iat": now,
        "email": "jle@example.org",
        "name": "Jérôme Leleu",
    }
    if nonce:
        payload["nonce"] = nonce
    payload.update(overrides)
    return jwt.encode(payload, TEST_PRIVATE_PEM, algorithm="RS256", headers={"kid": kid})


class MockProvider:
    """Mock OpenID Connect provider"""

    def __init__(self):
        self.id_token = None
        self.requests = []
        self.token_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == DISCOVERY_URI:
            return httpx.Response(200, json={
                "issuer": ISSUER,
                "authorization_endpoint": f"{ISSUER}/authorize",
                "token_endpoint": f"{ISSUER}/token",
                "jwks_uri": f"{ISSUER}/jwks",
            })
        if request.url.path == "/jwks":
            return httpx.Response(200, json=create_jwks())
        if request.url.path == "/token":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={
                "access_token": "provider-access-token",
                "token_type": "Bearer",
                "id_token": self.id_token,
            })
        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def provider():
    return MockProvider()


@pytest.fixture
def oidc_client(provider):
    client = OidcClient(CLIENT_ID, "demo-secret", DISCOVERY_URI)
    client.callback_url = "http://testserver/callback"
    client.transport = provider.transport()
    return client


@pytest.fixture
def app_provider(security_config, provider):
    client = security_config.clients.find_client("OidcClient")
    client.client_id = CLIENT_ID
    client.discovery_uri = DISCOVERY_URI
    client.transport = provider.transport()
    return provider


class TestOidcFlow:
    """Test suite for the OpenID Connect login flow"""

    def test_redirect_to_provider(self, client, app_provider):
        response = client.get("/oidc/index.html")

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == f"{ISSUER}/authorize"
        query = parse_qs(location.query)
        assert query["client_id"] == [CLIENT_ID]
        assert query["response_type"] == ["code"]
        assert query["redirect_uri"] == ["http://testserver/callback?client_name=OidcClient"]
        assert query["prompt"] == ["consent"]
        assert query["state"][0] and query["nonce"][0]

    def test_successful_login(self, client, app_provider):
        redirect = client.get("/oidc/index.html")
        query = parse_qs(urlparse(redirect.headers["location"]).query)
        app_provider.id_token = create_id_token(nonce=query["nonce"][0])

        response = client.get(
            "/callback",
            params={"client_name": "OidcClient", "code": "auth-code", "state": query["state"][0]},
        )

        assert response.status_code == 302
        assert response.headers["location"] == "http://testserver/oidc/index.html"
        page = client.get("/oidc/index.html")
        assert page.status_code == 200
        assert "OidcProfile#108234567890" in page.text
        assert "provider-access-token" not in page.text

        token_request = next(r for r in app_provider.requests if r.url.path == "/token")
        form = parse_qs(token_request.content.decode())
        assert form["code"] == ["auth-code"]
        assert form["grant_type"] == ["authorization_code"]

    def test_state_mismatch(self, client, app_provider):
        client.get("/oidc/index.html")

        response = client.get(
            "/callback",
            params={"client_name": "OidcClient", "code": "auth-code", "state": "forged"},
        )

        assert response.status_code == 401

    def test_provider_error_is_unauthorized(self, client, app_provider):
        response = client.get("/callback", params={"client_name": "OidcClient", "error": "access_denied"})

        assert response.status_code == 401


class TestIdTokenVerification:
    """Test suite for OidcClient.verify_id_token"""

    @pytest.mark.asyncio
    async def test_valid_token(self, oidc_client):
        claims = await oidc_client.verify_id_token(create_id_token(nonce="n-1"), nonce="n-1")

        assert claims["sub"] == "108234567890"
        assert claims["email"] == "jle@example.org"

    @pytest.mark.asyncio
    async def test_nonce_mismatch(self, oidc_client):
        with pytest.raises(CredentialsError, match="Nonce"):
            await oidc_client.verify_id_token(create_id_token(nonce="n-1"), nonce="n-2")

    @pytest.mark.asyncio
    async def test_expired_token(self, oidc_client):
        with pytest.raises(CredentialsError, match="expired"):
            await oidc_client.verify_id_token(create_id_token(exp_delta_minutes=-10))

    @pytest.mark.asyncio
    async def test_wrong_audience(self, oidc_client):
        with pytest.raises(CredentialsError):
            await oidc_client.verify_id_token(create_id_token(aud="someone-else"))

    @pytest.mark.asyncio
    async def test_wrong_issuer(self, oidc_client):
        with pytest.raises(CredentialsError):
            await oidc_client.verify_id_token(create_id_token(iss="https://evil.example.org"))

    @pytest.mark.asyncio
    async def test_unknown_kid_refreshes_jwks(self, oidc_client, provider):
        with pytest.raises(CredentialsError, match="signing key"):
            await oidc_client.verify_id_token(create_id_token(kid="rotated"))

        jwks_calls = [r for r in provider.requests if r.url.path == "/jwks"]
        assert len(jwks_calls) == 2

    @pytest.mark.asyncio
    async def test_metadata_cached(self, oidc_client, provider):
        await oidc_client.fetch_metadata()
        await oidc_client.fetch_metadata()

        assert [str(r.url) for r in provider.requests] == [DISCOVERY_URI]

    @pytest.mark.asyncio
    async def test_token_endpoint_failure(self, oidc_client, provider):
        provider.token_status = 400

        with pytest.raises(ProtocolError, match="invalid_grant"):
            await oidc_client.exchange_code("bad-code")


class TestSigningKey:
    """Test suite for get_signing_key"""

    def test_missing_kid(self):
        token = jwt.encode({"sub": "x"}, TEST_PRIVATE_PEM, algorithm="RS256")

        with pytest.raises(CredentialsError, match="kid"):
            get_signing_key(token, create_jwks())

    def test_key_found(self):
        token = create_id_token()

        assert get_signing_key(token, create_jwks())["kid"] == TEST_KID
        assert get_signing_key(token, {"keys": []}) is None


def html_transport(requests=None):
    """Provider answering a maintenance page on every endpoint"""

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return httpx.Response(200, text="<html>maintenance</html>", headers={"content-type": "text/html"})

    return httpx.MockTransport(handler)


class TestNonJsonAnswers:
    """Test suite for providers answering something other than JSON"""

    @pytest.mark.asyncio
    async def test_discovery_document(self, oidc_client):
        oidc_client.transport = html_transport()

        with pytest.raises(ProtocolError, match="Discovery document"):
            await oidc_client.fetch_metadata()

    @pytest.mark.asyncio
    async def test_jwks(self, oidc_client, provider):
        await oidc_client.fetch_metadata()
        oidc_client.transport = html_transport()

        with pytest.raises(ProtocolError, match="JWKS"):
            await oidc_client.fetch_jwks()

    @pytest.mark.asyncio
    async def test_token_endpoint(self, oidc_client, provider):
        await oidc_client.fetch_metadata()
        oidc_client.transport = html_transport()

        with pytest.raises(ProtocolError, match="Token response"):
            await oidc_client.exchange_code("auth-code")

    def test_callback_answers_bad_gateway(self, client, app_provider, security_config):
        redirect = client.get("/oidc/index.html")
        state = parse_qs(urlparse(redirect.headers["location"]).query)["state"][0]
        security_config.clients.find_client("OidcClient").transport = html_transport()

        response = client.get(
            "/callback",
            params={"client_name": "OidcClient", "code": "auth-code", "state": state},
        )

        assert response.status_code == 502
        assert response.json()["error"] == "ProtocolError"
