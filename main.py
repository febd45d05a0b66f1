#!/usr/bin/env python3

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from auth import AuthorizationEndpoint, CallbackCorrelator, TokenExchangeEndpoint, TokenIssuer
from clients import ClientRegistry, StaticClientCatalog, StoreClientSource
from config import Config
from errors import METHOD_NOT_ALLOWED, build_error_response
from identity import IdentityProvider
from models import HealthCheckResponse
from sessions import AuthSessionResolver, BearerHeaderStrategy, CookieStrategy
from store import create_store

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

CORS_HEADERS = {
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Authorization, Content-Type, Cookie",
    "Access-Control-Max-Age": "86400",
}

def preflight_headers(config: Config, origin: Optional[str]) -> Dict[str, str]:
    """CORS headers for an OPTIONS request, honouring ALLOWED_ORIGINS"""
    headers = dict(CORS_HEADERS)
    if config.allowed_origins == ["*"]:
        headers["Access-Control-Allow-Origin"] = "*"
    elif origin and origin in config.allowed_origins:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
        headers["Vary"] = "Origin"
    return headers

def configure_logging(config: Config):
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=config.log_format
    )

def create_app(config: Optional[Config] = None, store=None, identity_provider=None,
               client_catalog: Optional[StaticClientCatalog] = None) -> FastAPI:
    """Wire the gateway components into a FastAPI app"""
    config = config or Config()
    configure_logging(config)
    store = store or create_store(config)
    identity_provider = identity_provider or IdentityProvider(
        config.supabase_url, config.supabase_service_key, config.supabase_timeout
    )

    registry = ClientRegistry([StoreClientSource(store), client_catalog or StaticClientCatalog()])
    session_resolver = AuthSessionResolver(
        identity_provider,
        [BearerHeaderStrategy(), CookieStrategy(config.session_cookie_name)]
    )
    issuer = TokenIssuer(store, config)

    authorization_endpoint = AuthorizationEndpoint(config, registry, store, identity_provider)
    callback_correlator = CallbackCorrelator(store, session_resolver, issuer)
    token_endpoint = TokenExchangeEndpoint(registry, store, session_resolver, issuer)

    app = FastAPI(
        title="OAuth Gateway",
        description="Authorization-code gateway in front of Supabase Auth",
        version=VERSION,
        docs_url="/docs" if config.is_development else None,
        redoc_url="/redoc" if config.is_development else None
    )
    app.state.config = config
    app.state.store = store

    # CORS for actual requests; preflights are answered below
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=config.allowed_origins != ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"]
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        # Every OPTIONS request gets a bare 200, whatever the route
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=preflight_headers(config, request.headers.get("origin")))

        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        if config.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check():
        """Health check endpoint"""
        return HealthCheckResponse(
            status="healthy",
            service="oauth-gateway",
            version=VERSION,
            timestamp=datetime.now(timezone.utc).isoformat(),
            components={
                "store": config.store_backend,
                "identity_provider": "configured" if identity_provider.configured else "not_configured"
            },
            environment=config.environment
        )

    # OAuth 2.0 Authorization Server Metadata (RFC 8414)
    @app.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server_metadata():
        return {
            "issuer": config.base_url,
            "authorization_endpoint": f"{config.base_url}/oauth/authorize",
            "token_endpoint": f"{config.base_url}/oauth/token",
            "response_types_supported": ["code"],
            "response_modes_supported": ["json", "query"],
            "grant_types_supported": ["authorization_code"],
            "token_endpoint_auth_methods_supported": ["none", "client_secret_post", "client_secret_basic"]
        }

    @app.api_route("/oauth/authorize", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def oauth_authorize(request: Request):
        """GET starts an authorization; POST exchanges a code for tokens"""
        if request.method == "GET":
            return await authorization_endpoint.authorize(request.query_params)
        if request.method == "POST":
            return await token_endpoint.token(request)
        return build_error_response(METHOD_NOT_ALLOWED, f"Method {request.method} not allowed")

    @app.api_route("/oauth/token", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def oauth_token(request: Request):
        if request.method == "POST":
            return await token_endpoint.token(request)
        return build_error_response(METHOD_NOT_ALLOWED, f"Method {request.method} not allowed")

    @app.api_route("/oauth/callback", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def oauth_callback(request: Request):
        if request.method == "GET":
            return await callback_correlator.callback(request)
        return build_error_response(METHOD_NOT_ALLOWED, f"Method {request.method} not allowed")

    @app.on_event("startup")
    async def startup_event():
        logger.info(f"Starting OAuth Gateway v{VERSION}")
        logger.info(f"Environment: {config.environment}")
        logger.info(f"Base URL: {config.base_url}")
        logger.info(f"Store backend: {config.store_backend}")
        logger.info(f"Identity Provider configured: {'Yes' if identity_provider.configured else 'No'}")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down OAuth Gateway")
        await store.close()
        await identity_provider.close()

    return app

if __name__ == "__main__":
    config = Config()

    print(f"🚀 Starting OAuth Gateway v{VERSION}")
    print(f"📊 Environment: {config.environment}")
    print(f"🗄️  Store backend: {config.store_backend}")
    print(f"🌐 Base URL: {config.base_url}")
    print(f"💚 Health check: {config.base_url}/health")

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        access_log=True
    )
