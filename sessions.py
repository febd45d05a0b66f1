import json
import logging
from typing import Optional
from urllib.parse import unquote

from fastapi import Request

from errors import IdentityProviderError
from models import AuthenticatedUser

logger = logging.getLogger(__name__)

class BearerHeaderStrategy:
    """Access token from an ``Authorization: Bearer`` header"""

    def extract_token(self, request: Request) -> Optional[str]:
        auth_header = request.headers.get("Authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

class CookieStrategy:
    """
    Access token from the session cookie.

    Accepts either a plain token cookie (``sb-access-token`` by default) or the
    Supabase ``sb-<project>-auth-token`` cookie, whose value is JSON: an object
    with ``access_token`` or an array whose first item is the access token.
    """

    def __init__(self, cookie_name: str = "sb-access-token"):
        self.cookie_name = cookie_name

    def extract_token(self, request: Request) -> Optional[str]:
        token = request.cookies.get(self.cookie_name)
        if token:
            return token

        for name, value in request.cookies.items():
            if name.startswith("sb-") and name.endswith("-auth-token"):
                token = self._parse_session_cookie(value)
                if token:
                    return token
        return None

    @staticmethod
    def _parse_session_cookie(value: str) -> Optional[str]:
        try:
            session = json.loads(unquote(value))
        except ValueError:
            return None
        if isinstance(session, dict):
            return session.get("access_token")
        if isinstance(session, list) and session and isinstance(session[0], str):
            return session[0]
        return None

class AuthSessionResolver:
    """Finds the authenticated end user for a request; first strategy to yield a user wins"""

    def __init__(self, identity_provider, strategies):
        self.identity_provider = identity_provider
        self.strategies = list(strategies)

    async def resolve(self, request: Request) -> Optional[AuthenticatedUser]:
        """
        Return the first user any strategy resolves.

        A rejected token falls through to the next strategy. If the Identity
        Provider failed for some strategy and no other one produced a user,
        that failure is raised instead of reporting an anonymous request.
        """
        failure: Optional[IdentityProviderError] = None
        for strategy in self.strategies:
            token = strategy.extract_token(request)
            if not token:
                continue
            try:
                user = await self.identity_provider.get_user(token)
            except IdentityProviderError as e:
                logger.warning(f"{type(strategy).__name__} could not resolve user: {e}")
                failure = e
                continue
            if user is not None:
                return user
        if failure is not None:
            raise failure
        return None
