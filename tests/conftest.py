# Shared fixtures for the OAuth gateway tests.

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi.testclient import TestClient

from config import Config
from identity import IdentityProvider
from main import create_app
from store import MemoryStore

IDP_URL = "https://idp.test"
BASE_URL = "http://gateway.test"
CLIENT_ID = "mobile-app-client"
REDIRECT_URI = "http://localhost:3000/callback"

USERS = {
    "alice-token": {
        "id": "user-alice",
        "email": "alice@example.com",
        "user_metadata": {"full_name": "Alice Example", "avatar_url": "https://cdn.test/alice.png"},
    },
    "bob-token": {
        "id": "user-bob",
        "email": "bob@example.com",
        "user_metadata": {"display_name": "Bob"},
    },
}


def identity_handler(request: httpx.Request) -> httpx.Response:
    """Minimal Supabase Auth /user endpoint"""
    if request.url.path != "/auth/v1/user":
        return httpx.Response(404)
    token = request.headers.get("Authorization", "").removeprefix("Bearer ")
    if token == "broken-token":
        return httpx.Response(500, text="boom")
    if token not in USERS:
        return httpx.Response(401, json={"msg": "invalid JWT"})
    return httpx.Response(200, json=USERS[token])


@pytest.fixture
def config(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("BASE_URL", BASE_URL)
    monkeypatch.setenv("SUPABASE_URL", IDP_URL)
    monkeypatch.setenv("SUPABASE_SERVICE_KEY", "service-key")
    return Config()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def identity_provider():
    return IdentityProvider(IDP_URL, "service-key", transport=httpx.MockTransport(identity_handler))


@pytest.fixture
def app(config, store, identity_provider):
    return create_app(config, store=store, identity_provider=identity_provider)


@pytest.fixture
def client(app):
    return TestClient(app, follow_redirects=False)


def location_query(response) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(response.headers["location"]).query).items()}


def callback_query(response) -> dict:
    """Query of the gateway callback URL embedded in an authorize redirect"""
    redirect_to = location_query(response)["redirect_to"]
    return {k: v[0] for k, v in parse_qs(urlsplit(redirect_to).query).items()}


def start_authorization(client, **params) -> dict:
    query = {"client_id": CLIENT_ID, "redirect_uri": REDIRECT_URI, "scope": "openid email", **params}
    response = client.get("/oauth/authorize", params=query)
    assert response.status_code == 302, response.text
    return callback_query(response)
