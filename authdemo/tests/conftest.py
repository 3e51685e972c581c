"""
Shared fixtures: a demo application bound to http://testserver and a
TestClient that does not follow redirects.
"""

import base64
import re

import pytest
from fastapi.testclient import TestClient

from authdemo.config import Settings
from authdemo.main import create_app

BASE_URL = "http://testserver"


def basic_auth(username: str, password: str) -> dict:
    """Authorization header for HTTP basic auth."""
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


def form_login(client: TestClient, username: str, password: str):
    """Post the login form to the FormClient callback."""
    return client.post(
        "/callback?client_name=FormClient",
        data={"username": username, "password": password},
    )


def extract_token(html: str) -> str:
    match = re.search(r'<span id="token">([^<]+)</span>', html)
    assert match, "no token on the page"
    return match.group(1)


@pytest.fixture
def test_settings(tmp_path):
    """Settings for an application served at http://testserver"""
    return Settings(
        BASE_URL=BASE_URL,
        SESSION_SECRET="test-session-secret",
        SAML_SP_METADATA_PATH=str(tmp_path / "sp-metadata.xml"),
        LOG_LEVEL="INFO",
    )


@pytest.fixture
def app(test_settings):
    return create_app(test_settings)


@pytest.fixture
def security_config(app):
    return app.state.security_config


@pytest.fixture
def client(app):
    """Browser-like client keeping cookies, redirects not followed"""
    return TestClient(app, follow_redirects=False)
