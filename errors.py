import logging
from typing import Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi.responses import JSONResponse, RedirectResponse

from models import OAuthErrorBody

logger = logging.getLogger(__name__)

# OAuth 2.0 error codes
INVALID_REQUEST = "invalid_request"
INVALID_CLIENT = "invalid_client"
INVALID_GRANT = "invalid_grant"
UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
INVALID_SCOPE = "invalid_scope"
ACCESS_DENIED = "access_denied"
SERVER_ERROR = "server_error"
METHOD_NOT_ALLOWED = "method_not_allowed"

class OAuthError(Exception):
    """Protocol error raised by the endpoints and rendered by build_error_response"""

    def __init__(self, error: str, description: Optional[str] = None,
                 redirect_uri: Optional[str] = None, state: Optional[str] = None):
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.redirect_uri = redirect_uri
        self.state = state

    def to_response(self):
        return build_error_response(self.error, self.description, self.redirect_uri, self.state)

class StoreError(Exception):
    """Persistent store failure"""

class IdentityProviderError(Exception):
    """Identity Provider failure"""

def append_query(url: str, params: Dict[str, Optional[str]]) -> str:
    """Append non-empty params to url, keeping any query it already has"""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

def build_error_response(error: str, description: Optional[str] = None,
                         redirect_uri: Optional[str] = None, state: Optional[str] = None):
    """Render an OAuth error as a redirect to a known client URI, or as JSON"""
    if redirect_uri:
        location = append_query(redirect_uri, {
            "error": error,
            "error_description": description,
            "state": state,
        })
        logger.info(f"Redirecting OAuth error {error} to client")
        return RedirectResponse(url=location, status_code=302)

    # Every error that cannot be redirected is a 400, whatever its code
    body = OAuthErrorBody(error=error, error_description=description or error.replace("_", " ").capitalize())
    return JSONResponse(status_code=400, content=body.model_dump())
