import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from errors import IdentityProviderError
from models import AuthenticatedUser

logger = logging.getLogger(__name__)

class IdentityProvider:
    """Supabase Auth client: upstream login redirects and token-to-user resolution"""

    def __init__(self, supabase_url: str, service_key: Optional[str], timeout: int = 10,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.auth_url = f"{supabase_url.rstrip('/')}/auth/v1" if supabase_url else ""
        self.service_key = service_key
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def configured(self) -> bool:
        return bool(self.auth_url and self.service_key)

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    def authorize_url(self, provider: str, redirect_to: str) -> str:
        """URL that starts the upstream login and returns the browser to redirect_to"""
        if not self.auth_url:
            raise IdentityProviderError("Identity Provider URL not configured")
        return f"{self.auth_url}/authorize?{urlencode({'provider': provider, 'redirect_to': redirect_to})}"

    async def get_user(self, access_token: str) -> Optional[AuthenticatedUser]:
        """Resolve an access token to the user it belongs to; None if the token is not valid"""
        if not self.configured:
            raise IdentityProviderError("Identity Provider credentials not configured")

        try:
            response = await self.client.get(
                f"{self.auth_url}/user",
                headers={
                    "apikey": self.service_key,
                    "Authorization": f"Bearer {access_token}"
                }
            )
        except httpx.TimeoutException as e:
            logger.error("Identity Provider timeout")
            raise IdentityProviderError("Identity Provider is not responding") from e
        except httpx.HTTPError as e:
            logger.error(f"Identity Provider network error: {e}")
            raise IdentityProviderError("Unable to reach Identity Provider") from e

        if response.status_code in (401, 403, 404):
            return None
        if response.status_code != 200:
            logger.error(f"Identity Provider error: {response.status_code} - {response.text}")
            raise IdentityProviderError(f"Identity Provider returned {response.status_code}")

        payload = response.json()
        if not payload.get("id"):
            return None
        return AuthenticatedUser.from_identity_payload(payload)
