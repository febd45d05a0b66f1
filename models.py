from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, Field, field_validator

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

# Registered clients
class Client(BaseModel):
    """Registered third-party application"""
    client_id: str
    name: str
    redirect_uris: List[str] = Field(default_factory=list, description="Exact-match redirect URIs")
    allowed_scopes: List[str] = Field(default_factory=list, description="Scopes the client may request")
    client_secret: Optional[str] = Field(None, description="Present only for confidential clients")
    description: Optional[str] = None

    @field_validator("redirect_uris", "allowed_scopes", mode="before")
    @classmethod
    def coerce_list(cls, v):
        # PostgREST returns NULL for empty array columns
        if v is None:
            return []
        if isinstance(v, str):
            return v.split()
        return v

    @property
    def is_confidential(self) -> bool:
        return bool(self.client_secret)

    def has_redirect_uri(self, redirect_uri: str) -> bool:
        return redirect_uri in self.redirect_uris

    def unauthorized_scopes(self, scopes: List[str]) -> List[str]:
        return [s for s in dict.fromkeys(scopes) if s not in self.allowed_scopes]

# Persisted grants
class AuthorizationCode(BaseModel):
    """Single-use authorization grant"""
    code: str
    client_id: str
    redirect_uri: str
    scope: str
    state: Optional[str] = None
    user_id: Optional[str] = None
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

class Token(BaseModel):
    """Issued credential pair"""
    access_token: str
    refresh_token: str
    client_id: str
    user_id: Optional[str] = None
    scope: str
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)

# Identity
class AuthenticatedUser(BaseModel):
    """End user as resolved by the Identity Provider"""
    id: str
    email: str = ""
    display_name: str = ""
    avatar_url: Optional[str] = None

    @classmethod
    def from_identity_payload(cls, payload: Dict[str, Any]) -> "AuthenticatedUser":
        metadata = payload.get("user_metadata") or {}
        return cls(
            id=payload["id"],
            email=payload.get("email") or "",
            display_name=metadata.get("display_name") or metadata.get("full_name") or "",
            avatar_url=metadata.get("avatar_url"),
        )

    def profile(self) -> "UserProfile":
        return UserProfile(id=self.id, email=self.email, name=self.display_name, avatar_url=self.avatar_url)

# API Response Models
class UserProfile(BaseModel):
    """Minimal user profile returned alongside tokens"""
    id: str
    email: str
    name: str
    avatar_url: Optional[str] = None

class TokenResponse(BaseModel):
    """OAuth 2.0 Token Response"""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    scope: str
    user: Optional[UserProfile] = None

class OAuthErrorBody(BaseModel):
    """OAuth 2.0 error payload"""
    error: str
    error_description: Optional[str] = None

class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str
    service: str
    version: str
    timestamp: str
    components: Dict[str, str]
    environment: str
