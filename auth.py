import base64
import binascii
import logging
import secrets
from typing import Mapping, Optional, Tuple
from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse

from errors import (
    ACCESS_DENIED, INVALID_CLIENT, INVALID_GRANT, INVALID_REQUEST, INVALID_SCOPE,
    SERVER_ERROR, UNSUPPORTED_GRANT_TYPE, UNSUPPORTED_RESPONSE_TYPE,
    OAuthError, append_query, build_error_response,
)
from models import AuthenticatedUser, AuthorizationCode, Token, TokenResponse, utcnow

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "openid email"
RESPONSE_MODES = ("json", "query")

def _redacted(value: str) -> str:
    return f"{value[:8]}..."

class TokenIssuer:
    """Mints and persists access/refresh token pairs"""

    def __init__(self, store, config):
        self.store = store
        self.config = config

    async def issue(self, client_id: str, scope: str, user_id: Optional[str] = None,
                    user: Optional[AuthenticatedUser] = None) -> TokenResponse:
        now = utcnow()
        token = Token(
            access_token=secrets.token_urlsafe(32),
            refresh_token=secrets.token_urlsafe(32),
            client_id=client_id,
            user_id=user_id,
            scope=scope,
            expires_at=now + self.config.get_oauth_token_expiry_delta(),
            created_at=now,
        )
        await self.store.create_token(token)
        logger.info(f"Access token {_redacted(token.access_token)} issued for client {client_id}")

        return TokenResponse(
            access_token=token.access_token,
            expires_in=self.config.oauth_token_expiry,
            refresh_token=token.refresh_token,
            scope=scope,
            user=user.profile() if user else None,
        )

def token_json(token_response: TokenResponse) -> JSONResponse:
    return JSONResponse(
        content=token_response.model_dump(exclude_none=True),
        headers={"Cache-Control": "no-store", "Pragma": "no-cache"}
    )

class AuthorizationEndpoint:
    """Handles GET /oauth/authorize: validates the request, issues a code, sends the user upstream"""

    def __init__(self, config, registry, store, identity_provider):
        self.config = config
        self.registry = registry
        self.store = store
        self.identity_provider = identity_provider

    async def authorize(self, params: Mapping[str, str]):
        try:
            return await self._authorize(params)
        except OAuthError as e:
            logger.warning(f"Authorization rejected: {e.error} - {e.description}")
            return e.to_response()
        except Exception:
            logger.exception("Unhandled authorization error")
            return build_error_response(SERVER_ERROR, "Authorization failed")

    async def _authorize(self, params: Mapping[str, str]):
        client_id = params.get("client_id")
        redirect_uri = params.get("redirect_uri")
        # An empty state is the same as no state
        state = params.get("state") or None

        if not client_id:
            raise OAuthError(INVALID_REQUEST, "Missing client_id")
        if not redirect_uri:
            raise OAuthError(INVALID_REQUEST, "Missing redirect_uri")

        client = await self.registry.resolve(client_id)
        if client is None:
            raise OAuthError(INVALID_CLIENT, "Unknown client_id")

        # Exact string match only
        if not client.has_redirect_uri(redirect_uri):
            raise OAuthError(INVALID_REQUEST, "Invalid redirect_uri")

        # From here on errors go back to the verified redirect_uri
        response_type = params.get("response_type") or "code"
        if response_type != "code":
            raise OAuthError(UNSUPPORTED_RESPONSE_TYPE, f"Unsupported response_type: {response_type}",
                             redirect_uri, state)

        scopes = list(dict.fromkeys((params.get("scope") or DEFAULT_SCOPE).split()))
        invalid_scopes = client.unauthorized_scopes(scopes)
        if invalid_scopes:
            raise OAuthError(INVALID_SCOPE, f"Invalid scopes: {', '.join(invalid_scopes)}",
                             redirect_uri, state)

        response_mode = params.get("response_mode") or "json"
        if response_mode not in RESPONSE_MODES:
            raise OAuthError(INVALID_REQUEST, f"Unsupported response_mode: {response_mode}",
                             redirect_uri, state)

        try:
            now = utcnow()
            auth_code = AuthorizationCode(
                code=secrets.token_urlsafe(32),
                client_id=client.client_id,
                redirect_uri=redirect_uri,
                scope=" ".join(scopes),
                state=state,
                expires_at=now + self.config.get_oauth_code_expiry_delta(),
                created_at=now,
            )
            await self.store.create_code(auth_code)

            callback_params = {"code": auth_code.code}
            if state is not None:
                callback_params["state"] = state
            callback_params["redirect_uri"] = redirect_uri
            if response_mode != "json":
                callback_params["response_mode"] = response_mode
            callback_url = f"{self.config.callback_url}?{urlencode(callback_params)}"

            provider = params.get("provider") or self.config.default_provider
            location = self.identity_provider.authorize_url(provider, callback_url)
        except Exception as e:
            logger.exception(f"Failed to start authorization for client {client_id}")
            raise OAuthError(SERVER_ERROR, "Authorization failed", redirect_uri, state) from e

        logger.info(f"Authorization code created for client {client_id}, redirecting to {provider}")
        return RedirectResponse(url=location, status_code=302)

class CallbackCorrelator:
    """Handles GET /oauth/callback: the browser's return trip from the Identity Provider"""

    def __init__(self, store, session_resolver, issuer):
        self.store = store
        self.session_resolver = session_resolver
        self.issuer = issuer

    async def callback(self, request: Request):
        try:
            return await self._callback(request)
        except OAuthError as e:
            logger.warning(f"Callback rejected: {e.error} - {e.description}")
            return e.to_response()
        except Exception:
            logger.exception("Unhandled callback error")
            return build_error_response(SERVER_ERROR, "Internal server error")

    async def _callback(self, request: Request):
        params = request.query_params
        code = params.get("code")
        state = params.get("state") or None
        redirect_uri = params.get("redirect_uri")

        upstream_error = params.get("error")
        if upstream_error:
            await self._abandon(code, state, upstream_error, params.get("error_description"))

        if not code or not redirect_uri:
            raise OAuthError(INVALID_REQUEST, "Missing code or redirect_uri")

        pending = await self.store.get_code(code, state=state)
        if pending is None or pending.redirect_uri != redirect_uri:
            raise OAuthError(INVALID_GRANT, "Invalid authorization code")

        try:
            return await self._complete(request, pending, params.get("response_mode") or "json")
        except OAuthError:
            raise
        except Exception as e:
            logger.exception(f"Callback failed for client {pending.client_id}")
            raise OAuthError(SERVER_ERROR, "Internal server error", pending.redirect_uri, state) from e

    async def _abandon(self, code: Optional[str], state: Optional[str], error: str,
                       description: Optional[str]):
        """Identity Provider declined: drop the pending code and report back to the client"""
        logger.info(f"Identity Provider returned error: {error}")
        pending = await self.store.get_code(code, state=state) if code else None
        if pending is None:
            raise OAuthError(error, description, state=state)
        await self.store.consume_code(code, state=state)
        raise OAuthError(error, description, pending.redirect_uri, state)

    async def _complete(self, request: Request, pending: AuthorizationCode, response_mode: str):
        redirect_uri = pending.redirect_uri
        state = pending.state

        if pending.is_expired():
            raise OAuthError(INVALID_GRANT, "Authorization code expired", redirect_uri, state)

        user = await self.session_resolver.resolve(request)
        if user is None:
            raise OAuthError(ACCESS_DENIED, "User not authenticated", redirect_uri, state)

        if response_mode == "query":
            bound = await self.store.bind_user(pending.code, user.id, state=state, redirect_uri=redirect_uri)
            if bound is None:
                raise OAuthError(INVALID_GRANT, "Invalid authorization code", redirect_uri, state)
            logger.info(f"Code for client {pending.client_id} bound to user {user.id}")
            return RedirectResponse(
                url=append_query(redirect_uri, {"code": pending.code, "state": state}),
                status_code=302
            )

        consumed = await self.store.consume_code(pending.code, state=state, redirect_uri=redirect_uri)
        if consumed is None:
            raise OAuthError(INVALID_GRANT, "Authorization code already used", redirect_uri, state)

        token_response = await self.issuer.issue(consumed.client_id, consumed.scope, user.id, user)
        logger.info(f"Callback completed for client {consumed.client_id}, user {user.id}")
        return token_json(token_response)

class TokenExchangeEndpoint:
    """Handles POST /oauth/token (and POST /oauth/authorize): code for token exchange"""

    def __init__(self, registry, store, session_resolver, issuer):
        self.registry = registry
        self.store = store
        self.session_resolver = session_resolver
        self.issuer = issuer

    async def token(self, request: Request):
        try:
            form_data = await request.form()
            return await self._token(request, form_data)
        except OAuthError as e:
            logger.warning(f"Token exchange rejected: {e.error} - {e.description}")
            return e.to_response()
        except Exception:
            logger.exception("Unhandled token exchange error")
            return build_error_response(SERVER_ERROR, "Token exchange failed")

    @staticmethod
    def _basic_credentials(request: Request) -> Tuple[Optional[str], Optional[str]]:
        auth_header = request.headers.get("Authorization", "")
        scheme, _, encoded = auth_header.partition(" ")
        if scheme.lower() != "basic" or not encoded:
            return None, None
        try:
            decoded = base64.b64decode(encoded.strip()).decode()
        except (binascii.Error, UnicodeDecodeError):
            raise OAuthError(INVALID_CLIENT, "Malformed client credentials")
        client_id, _, client_secret = decoded.partition(":")
        return client_id or None, client_secret or None

    async def _token(self, request: Request, form_data: Mapping[str, str]):
        if form_data.get("grant_type") != "authorization_code":
            raise OAuthError(UNSUPPORTED_GRANT_TYPE, "Only authorization_code is supported")

        basic_id, basic_secret = self._basic_credentials(request)
        code = form_data.get("code")
        redirect_uri = form_data.get("redirect_uri")
        client_id = form_data.get("client_id") or basic_id
        client_secret = form_data.get("client_secret") or basic_secret

        if not code or not redirect_uri or not client_id:
            raise OAuthError(INVALID_REQUEST, "Missing code, redirect_uri or client_id")
        if basic_id and basic_id != client_id:
            raise OAuthError(INVALID_CLIENT, "Conflicting client credentials")

        client = await self.registry.resolve(client_id)
        if client is None:
            raise OAuthError(INVALID_CLIENT, "Unknown client_id")
        if not self.registry.authenticate(client, client_secret):
            raise OAuthError(INVALID_CLIENT, "Client authentication failed")

        # Consume before issuing: only one concurrent redemption can get the record
        consumed = await self.store.consume_code(code, client_id=client_id, redirect_uri=redirect_uri)
        if consumed is None:
            raise OAuthError(INVALID_GRANT, "Invalid, expired or already used authorization code")

        user = await self.session_resolver.resolve(request) if consumed.user_id is None else None
        user_id = consumed.user_id or (user.id if user else None)

        token_response = await self.issuer.issue(client_id, consumed.scope, user_id, user)
        logger.info(f"Code {_redacted(code)} redeemed by client {client_id}")
        return token_json(token_response)
