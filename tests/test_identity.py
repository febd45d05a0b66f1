# Tests for the Supabase Auth client.

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from errors import IdentityProviderError
from identity import IdentityProvider
from models import AuthenticatedUser
from tests.conftest import IDP_URL, identity_handler


@pytest.fixture
def provider():
    return IdentityProvider(IDP_URL, "service-key", transport=httpx.MockTransport(identity_handler))


class TestIdentityProvider:

    def test_authorize_url(self, provider):
        url = urlsplit(provider.authorize_url("github", "http://gateway.test/oauth/callback?code=c"))
        assert url.path == "/auth/v1/authorize"
        assert parse_qs(url.query) == {
            "provider": ["github"],
            "redirect_to": ["http://gateway.test/oauth/callback?code=c"],
        }

    @pytest.mark.asyncio
    async def test_get_user(self, provider):
        user = await provider.get_user("alice-token")
        assert user == AuthenticatedUser(
            id="user-alice", email="alice@example.com",
            display_name="Alice Example", avatar_url="https://cdn.test/alice.png",
        )

    @pytest.mark.asyncio
    async def test_unknown_token(self, provider):
        assert await provider.get_user("nobody") is None

    @pytest.mark.asyncio
    async def test_server_error_raises(self, provider):
        with pytest.raises(IdentityProviderError):
            await provider.get_user("broken-token")

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        provider = IdentityProvider("", None)
        assert not provider.configured
        with pytest.raises(IdentityProviderError):
            await provider.get_user("alice-token")
        with pytest.raises(IdentityProviderError):
            provider.authorize_url("google", "http://gateway.test/cb")


class TestAuthenticatedUser:

    def test_display_name_prefers_display_name(self):
        user = AuthenticatedUser.from_identity_payload({
            "id": "u", "email": None,
            "user_metadata": {"display_name": "D", "full_name": "F"},
        })
        assert user.display_name == "D"
        assert user.email == ""

    def test_missing_metadata(self):
        user = AuthenticatedUser.from_identity_payload({"id": "u"})
        assert user.profile().name == ""
        assert user.avatar_url is None
