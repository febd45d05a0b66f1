import os
from typing import List
from datetime import timedelta

class Config:
    """Configuration management for the OAuth gateway"""

    def __init__(self):
        # Server configuration
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", 8000))
        self.environment = os.getenv("ENVIRONMENT", "production")
        self.base_url = os.getenv("BASE_URL", "http://localhost:8000").rstrip("/")
        self.allowed_origins = self._parse_allowed_origins()

        # Identity Provider / persistent store (Supabase)
        self.supabase_url = (os.getenv("SUPABASE_URL") or "").rstrip("/")
        self.supabase_service_key = os.getenv("SUPABASE_SERVICE_KEY")
        self.supabase_timeout = int(os.getenv("SUPABASE_TIMEOUT", 10))
        default_backend = "memory" if self.environment == "development" else "supabase"
        self.store_backend = os.getenv("STORE_BACKEND", default_backend).lower()

        # OAuth configuration
        self.default_provider = os.getenv("DEFAULT_PROVIDER", "google")
        self.session_cookie_name = os.getenv("SESSION_COOKIE_NAME", "sb-access-token")
        self.oauth_code_expiry = int(os.getenv("OAUTH_CODE_EXPIRY", 600))  # 10 minutes
        self.oauth_token_expiry = int(os.getenv("OAUTH_TOKEN_EXPIRY", 3600))  # 1 hour

        # Logging configuration
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_format = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self._validate_config()

    def _parse_allowed_origins(self) -> List[str]:
        """Parse allowed origins from environment variable"""
        origins_str = os.getenv("ALLOWED_ORIGINS", "*")
        if origins_str == "*":
            return ["*"]
        return [origin.strip() for origin in origins_str.split(",")]

    def _validate_config(self):
        """Validate configuration values"""
        if self.store_backend not in ("supabase", "memory"):
            raise ValueError("STORE_BACKEND must be 'supabase' or 'memory'")

        if self.environment == "production":
            if not self.base_url.startswith("https://"):
                raise ValueError("BASE_URL must use HTTPS in production")

            if self.store_backend == "memory":
                raise ValueError("STORE_BACKEND=memory is not allowed in production")

        if self.store_backend == "supabase":
            if not self.supabase_url or not self.supabase_service_key:
                raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set for the supabase store")

        if self.oauth_code_expiry < 30 or self.oauth_code_expiry > 600:
            raise ValueError("OAUTH_CODE_EXPIRY must be between 30 and 600 seconds")

        if self.oauth_token_expiry < 300:  # 5 minutes minimum
            raise ValueError("OAUTH_TOKEN_EXPIRY must be at least 300 seconds")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == "production"

    @property
    def callback_url(self) -> str:
        return f"{self.base_url}/oauth/callback"

    def get_oauth_code_expiry_delta(self) -> timedelta:
        """Get authorization code lifetime as timedelta"""
        return timedelta(seconds=self.oauth_code_expiry)

    def get_oauth_token_expiry_delta(self) -> timedelta:
        """Get access token lifetime as timedelta"""
        return timedelta(seconds=self.oauth_token_expiry)
