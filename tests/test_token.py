# Tests for the code-for-token exchange (POST /oauth/token and POST /oauth/authorize).

import asyncio
import base64
from datetime import timedelta

import httpx
import pytest

from clients import StaticClientCatalog
from main import create_app
from models import Client, utcnow
from store import MemoryStore
from tests.conftest import CLIENT_ID, REDIRECT_URI, start_authorization


def exchange_form(code, /, **overrides):
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": REDIRECT_URI,
        "client_id": CLIENT_ID,
    }
    form.update(overrides)
    return {k: v for k, v in form.items() if v is not None}


class TestTokenExchange:

    def test_end_to_end_exchange(self, client, store):
        code = start_authorization(client)["code"]
        resp = client.post("/oauth/token", data=exchange_form(code))
        assert resp.status_code == 200
        data = resp.json()
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == 3600
        assert data["scope"] == "openid email"
        assert data["access_token"] and data["refresh_token"]
        assert data["access_token"] != data["refresh_token"]
        assert resp.headers["cache-control"] == "no-store"

        token = store.tokens[data["access_token"]]
        assert token.client_id == CLIENT_ID
        assert token.refresh_token == data["refresh_token"]
        assert (token.expires_at - token.created_at).total_seconds() == 3600
        assert store.codes == {}

    def test_post_authorize_exchanges_code(self, client):
        code = start_authorization(client)["code"]
        resp = client.post("/oauth/authorize", data=exchange_form(code))
        assert resp.status_code == 200
        assert resp.json()["scope"] == "openid email"

    def test_code_cannot_be_redeemed_twice(self, client):
        code = start_authorization(client)["code"]
        assert client.post("/oauth/token", data=exchange_form(code)).status_code == 200
        second = client.post("/oauth/token", data=exchange_form(code))
        assert second.status_code == 400
        assert second.json()["error"] == "invalid_grant"

    def test_expired_code_rejected(self, client, store):
        code = start_authorization(client)["code"]
        store.codes[code] = store.codes[code].model_copy(update={"expires_at": utcnow() - timedelta(seconds=1)})
        resp = client.post("/oauth/token", data=exchange_form(code))
        assert resp.json()["error"] == "invalid_grant"

    def test_mismatched_redirect_uri_rejected(self, client, store):
        code = start_authorization(client)["code"]
        resp = client.post("/oauth/token", data=exchange_form(code, redirect_uri="myapp://oauth/callback"))
        assert resp.json()["error"] == "invalid_grant"
        # A failed attempt does not burn the code
        assert code in store.codes

    def test_mismatched_client_id_rejected(self, client):
        code = start_authorization(client)["code"]
        resp = client.post("/oauth/token", data=exchange_form(code, client_id="web-app-client"))
        assert resp.json()["error"] == "invalid_grant"

    def test_unknown_code_rejected(self, client):
        resp = client.post("/oauth/token", data=exchange_form("not-a-code"))
        assert resp.json()["error"] == "invalid_grant"

    def test_unsupported_grant_type(self, client):
        resp = client.post("/oauth/token", data=exchange_form("x", grant_type="refresh_token"))
        assert resp.status_code == 400
        assert resp.json()["error"] == "unsupported_grant_type"

    @pytest.mark.parametrize("missing", ["code", "redirect_uri", "client_id"])
    def test_missing_parameters(self, client, missing):
        resp = client.post("/oauth/token", data=exchange_form("x", **{missing: None}))
        assert resp.json()["error"] == "invalid_request"

    def test_unknown_client(self, client):
        resp = client.post("/oauth/token", data=exchange_form("x", client_id="unknown-id"))
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_client"

    def test_bearer_user_is_attached(self, client, store):
        code = start_authorization(client)["code"]
        resp = client.post("/oauth/token", data=exchange_form(code),
                           headers={"Authorization": "Bearer alice-token"})
        data = resp.json()
        assert data["user"]["id"] == "user-alice"
        assert store.tokens[data["access_token"]].user_id == "user-alice"

    def test_identity_provider_failure_is_server_error(self, client, store):
        code = start_authorization(client)["code"]
        resp = client.post("/oauth/token", data=exchange_form(code),
                           headers={"Authorization": "Bearer broken-token"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "server_error"
        assert store.tokens == {}

    def test_unknown_bearer_issues_anonymous_token(self, client, store):
        code = start_authorization(client)["code"]
        resp = client.post("/oauth/token", data=exchange_form(code),
                           headers={"Authorization": "Bearer stale-token"})
        assert resp.status_code == 200
        assert "user" not in resp.json()
        assert store.tokens[resp.json()["access_token"]].user_id is None

    def test_store_failure_is_server_error(self, client, store, monkeypatch):
        async def broken_consume(code, now=None, **match):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(store, "consume_code", broken_consume)
        resp = client.post("/oauth/token", data=exchange_form("x"))
        assert resp.status_code == 400
        assert resp.json() == {"error": "server_error", "error_description": "Token exchange failed"}


class TestConfidentialClients:

    @pytest.fixture
    def app(self, config, store, identity_provider):
        catalog = StaticClientCatalog([Client(
            client_id="server-client",
            name="Server",
            redirect_uris=[REDIRECT_URI],
            allowed_scopes=["openid", "email"],
            client_secret="s3cret",
        )])
        return create_app(config, store=store, identity_provider=identity_provider, client_catalog=catalog)

    def test_secret_in_form(self, client):
        code = start_authorization(client, client_id="server-client")["code"]
        resp = client.post("/oauth/token", data=exchange_form(code, client_id="server-client", client_secret="s3cret"))
        assert resp.status_code == 200

    def test_secret_in_basic_auth(self, client):
        code = start_authorization(client, client_id="server-client")["code"]
        credentials = base64.b64encode(b"server-client:s3cret").decode()
        resp = client.post("/oauth/token", data=exchange_form(code, client_id=None),
                           headers={"Authorization": f"Basic {credentials}"})
        assert resp.status_code == 200

    def test_wrong_secret(self, client, store):
        code = start_authorization(client, client_id="server-client")["code"]
        resp = client.post("/oauth/token", data=exchange_form(code, client_id="server-client", client_secret="nope"))
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_client"
        assert code in store.codes


class SlowMemoryStore(MemoryStore):
    """Yields to the event loop before consuming so concurrent requests interleave"""

    async def consume_code(self, code, now=None, **match):
        await asyncio.sleep(0.01)
        return await super().consume_code(code, now, **match)


class TestConcurrentRedemption:

    @pytest.fixture
    def store(self):
        return SlowMemoryStore()

    @pytest.mark.asyncio
    async def test_exactly_one_concurrent_redemption_succeeds(self, app, client):
        code = start_authorization(client)["code"]

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://gateway.test") as http:
            responses = await asyncio.gather(*[
                http.post("/oauth/token", data=exchange_form(code)) for _ in range(5)
            ])

        statuses = sorted(r.status_code for r in responses)
        assert statuses == [200, 400, 400, 400, 400]
        errors = [r.json()["error"] for r in responses if r.status_code == 400]
        assert errors == ["invalid_grant"] * 4
