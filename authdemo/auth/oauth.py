"""
OAuth clients.

OAuth 2.0 (authorization code flow):
    1. redirect to the authorization endpoint with a random state kept in session
    2. on the callback, check the state and exchange the code for an access token
    3. fetch the user profile with the access token

OAuth 1.0a (Twitter):
    1. obtain a request token (HMAC-SHA1 signed), keep its secret in session
    2. redirect to the authenticate endpoint
    3. on the callback, exchange token + verifier for an access token
    4. fetch the user profile with signed requests
"""

import base64
import hashlib
import hmac
import logging
import secrets
import time
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, quote, urlencode

import httpx
from fastapi import Request

from authdemo.auth.clients import IndirectClient, OAuthCredentials, json_body
from authdemo.auth.exceptions import CredentialsError, ProtocolError
from authdemo.models import UserProfile

logger = logging.getLogger(__name__)


# =============================================================================
# OAuth 2.0
# =============================================================================

class OAuth20Client(IndirectClient):
    """Generic OAuth 2.0 authorization code client."""

    authorization_url = ""
    token_url = ""
    profile_url = ""
    profile_type = "OAuth20Profile"

    def __init__(self, key: str, secret: str, name: Optional[str] = None, scope: Optional[str] = None):
        super().__init__(name)
        self.key = key
        self.secret = secret
        self.scope = scope

    async def redirect(self, request: Request) -> str:
        state = secrets.token_urlsafe(32)
        request.session[self.session_key("state")] = state

        params = {
            "client_id": self.key,
            "redirect_uri": self.compute_callback_url(),
            "response_type": "code",
            "state": state,
        }
        if self.scope:
            params["scope"] = self.scope
        return f"{self.authorization_url}?{urlencode(params)}"

    async def get_credentials(self, request: Request) -> Optional[OAuthCredentials]:
        error = request.query_params.get("error")
        if error:
            logger.info(
                "OAuth authorization denied",
                extra={"client": self.name, "error": error},
            )
            return None

        code = request.query_params.get("code")
        if not code:
            return None

        expected_state = request.session.pop(self.session_key("state"), None)
        state = request.query_params.get("state")
        if not expected_state or state != expected_state:
            raise CredentialsError("Invalid state parameter: possible CSRF or expired session")

        return OAuthCredentials(client_name=self.name, code=code)

    async def get_user_profile(self, credentials: OAuthCredentials) -> UserProfile:
        async with self.http_client() as client:
            access_token = await self._exchange_code(client, credentials.code)
            data = await self._fetch_profile(client, access_token)
        profile = self.build_profile(data)
        profile.attributes["access_token"] = access_token
        return profile

    async def _exchange_code(self, client: httpx.AsyncClient, code: str) -> str:
        response = await client.post(
            self.token_url,
            data={
                "client_id": self.key,
                "client_secret": self.secret,
                "code": code,
                "redirect_uri": self.compute_callback_url(),
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json"},
        )
        if not response.is_success:
            raise ProtocolError(f"Token exchange failed with status {response.status_code}")

        token = _parse_token_response(response).get("access_token")
        if not token:
            raise ProtocolError("Token response missing access_token")
        return token

    async def _fetch_profile(self, client: httpx.AsyncClient, access_token: str) -> Dict[str, Any]:
        response = await client.get(self.profile_url, params=self.profile_params(access_token))
        if not response.is_success:
            raise ProtocolError(f"Profile request failed with status {response.status_code}")
        return json_body(response, "Profile response")

    def profile_params(self, access_token: str) -> Dict[str, str]:
        return {"access_token": access_token}

    def build_profile(self, data: Mapping[str, Any]) -> UserProfile:
        if "id" not in data:
            raise ProtocolError("Profile response missing id")
        attributes = {k: v for k, v in data.items() if k != "id"}
        return UserProfile(id=str(data["id"]), profile_type=self.profile_type, attributes=attributes)


class FacebookClient(OAuth20Client):
    """Facebook login through the Graph API."""

    api_version = "v2.8"
    authorization_url = f"https://www.facebook.com/{api_version}/dialog/oauth"
    token_url = f"https://graph.facebook.com/{api_version}/oauth/access_token"
    profile_url = f"https://graph.facebook.com/{api_version}/me"
    profile_type = "FacebookProfile"

    DEFAULT_FIELDS = "id,name,first_name,middle_name,last_name,gender,locale,link,email,timezone,verified"

    def __init__(self, key: str, secret: str, name: Optional[str] = None, scope: str = "email"):
        super().__init__(key, secret, name=name, scope=scope)
        self.fields = self.DEFAULT_FIELDS

    def profile_params(self, access_token: str) -> Dict[str, str]:
        proof = hmac.new(self.secret.encode(), access_token.encode(), hashlib.sha256).hexdigest()
        return {"access_token": access_token, "fields": self.fields, "appsecret_proof": proof}

    def build_profile(self, data: Mapping[str, Any]) -> UserProfile:
        profile = super().build_profile(data)
        if "name" in data:
            profile.attributes.setdefault("display_name", data["name"])
        return profile


def _parse_token_response(response: httpx.Response) -> Dict[str, Any]:
    """Token endpoints answer JSON or, for older APIs, form-encoded bodies."""
    if response.headers.get("content-type", "").startswith("application/json"):
        return json_body(response, "Token response")
    return dict(parse_qsl(response.text))


# =============================================================================
# OAuth 1.0a
# =============================================================================

def percent_encode(value: Any) -> str:
    return quote(str(value), safe="~")


def oauth1_signature(
    method: str,
    url: str,
    params: Mapping[str, Any],
    consumer_secret: str,
    token_secret: str = "",
) -> str:
    """HMAC-SHA1 signature of an OAuth 1.0a request (RFC 5849, section 3.4)."""
    encoded = sorted((percent_encode(k), percent_encode(v)) for k, v in params.items())
    normalized = "&".join(f"{k}={v}" for k, v in encoded)
    base_string = "&".join([method.upper(), percent_encode(url), percent_encode(normalized)])
    key = f"{percent_encode(consumer_secret)}&{percent_encode(token_secret)}"
    digest = hmac.new(key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


class OAuth10Client(IndirectClient):
    """Generic OAuth 1.0a client."""

    request_token_url = ""
    authorization_url = ""
    access_token_url = ""
    profile_url = ""
    profile_type = "OAuth10Profile"

    def __init__(self, key: str, secret: str, name: Optional[str] = None):
        super().__init__(name)
        self.key = key
        self.secret = secret

    def authorization_header(
        self,
        method: str,
        url: str,
        token: str = "",
        token_secret: str = "",
        extra_oauth: Optional[Dict[str, str]] = None,
        query: Optional[Dict[str, str]] = None,
    ) -> str:
        oauth_params = {
            "oauth_consumer_key": self.key,
            "oauth_nonce": secrets.token_hex(16),
            "oauth_signature_method": "HMAC-SHA1",
            "oauth_timestamp": str(int(time.time())),
            "oauth_version": "1.0",
        }
        if token:
            oauth_params["oauth_token"] = token
        if extra_oauth:
            oauth_params.update(extra_oauth)

        signed = dict(oauth_params)
        if query:
            signed.update(query)
        oauth_params["oauth_signature"] = oauth1_signature(method, url, signed, self.secret, token_secret)

        return "OAuth " + ", ".join(
            f'{percent_encode(k)}="{percent_encode(v)}"' for k, v in sorted(oauth_params.items())
        )

    async def redirect(self, request: Request) -> str:
        header = self.authorization_header(
            "POST",
            self.request_token_url,
            extra_oauth={"oauth_callback": self.compute_callback_url()},
        )
        async with self.http_client() as client:
            response = await client.post(self.request_token_url, headers={"Authorization": header})
        if not response.is_success:
            raise ProtocolError(f"Request token failed with status {response.status_code}")

        data = dict(parse_qsl(response.text))
        token = data.get("oauth_token")
        if not token or "oauth_token_secret" not in data:
            raise ProtocolError("Request token response missing oauth_token")

        request.session[self.session_key("request_token")] = {
            "token": token,
            "secret": data["oauth_token_secret"],
        }
        return f"{self.authorization_url}?{urlencode({'oauth_token': token})}"

    async def get_credentials(self, request: Request) -> Optional[OAuthCredentials]:
        if request.query_params.get("denied"):
            logger.info("OAuth authorization denied", extra={"client": self.name})
            return None

        token = request.query_params.get("oauth_token")
        verifier = request.query_params.get("oauth_verifier")
        if not token or not verifier:
            return None

        saved = request.session.pop(self.session_key("request_token"), None)
        if not saved or saved.get("token") != token:
            raise CredentialsError("Request token mismatch: possible CSRF or expired session")

        return OAuthCredentials(
            client_name=self.name,
            code=verifier,
            token=token,
            token_secret=saved["secret"],
        )

    async def get_user_profile(self, credentials: OAuthCredentials) -> UserProfile:
        header = self.authorization_header(
            "POST",
            self.access_token_url,
            token=credentials.token,
            token_secret=credentials.token_secret,
            extra_oauth={"oauth_verifier": credentials.code},
        )
        async with self.http_client() as client:
            response = await client.post(self.access_token_url, headers={"Authorization": header})
            if not response.is_success:
                raise ProtocolError(f"Access token failed with status {response.status_code}")

            data = dict(parse_qsl(response.text))
            access_token = data.get("oauth_token")
            access_secret = data.get("oauth_token_secret", "")
            if not access_token:
                raise ProtocolError("Access token response missing oauth_token")

            query = self.profile_query()
            profile_header = self.authorization_header(
                "GET",
                self.profile_url,
                token=access_token,
                token_secret=access_secret,
                query=query,
            )
            response = await client.get(
                self.profile_url,
                params=query,
                headers={"Authorization": profile_header},
            )
            if not response.is_success:
                raise ProtocolError(f"Profile request failed with status {response.status_code}")

        profile = self.build_profile(json_body(response, "Profile response"))
        profile.attributes["access_token"] = access_token
        return profile

    def profile_query(self) -> Dict[str, str]:
        return {}

    def build_profile(self, data: Mapping[str, Any]) -> UserProfile:
        raise NotImplementedError


class TwitterClient(OAuth10Client):
    """Twitter login ("Sign in with Twitter")."""

    request_token_url = "https://api.twitter.com/oauth/request_token"
    authorization_url = "https://api.twitter.com/oauth/authenticate"
    access_token_url = "https://api.twitter.com/oauth/access_token"
    profile_url = "https://api.twitter.com/1.1/account/verify_credentials.json"
    profile_type = "TwitterProfile"

    def build_profile(self, data: Mapping[str, Any]) -> UserProfile:
        user_id = data.get("id_str") or data.get("id")
        if user_id is None:
            raise ProtocolError("Profile response missing id")

        attributes = {
            key: data.get(key)
            for key in ("name", "screen_name", "description", "location", "lang", "profile_image_url_https", "url")
            if data.get(key) is not None
        }
        if "screen_name" in data:
            attributes["username"] = data["screen_name"]
        if "name" in data:
            attributes["display_name"] = data["name"]
        return UserProfile(id=str(user_id), profile_type=self.profile_type, attributes=attributes)
