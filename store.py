import logging
from typing import Any, Dict, List, Optional
from datetime import datetime

import httpx

from errors import StoreError
from models import AuthorizationCode, Client, Token, utcnow

logger = logging.getLogger(__name__)

class PersistentStore:
    """
    Durable storage for clients, authorization codes and tokens.

    ``match`` keyword arguments narrow a code lookup to records whose columns
    equal the given values (``None`` matches a NULL column). ``consume_code``
    and ``bind_user`` must be single indivisible operations: when two callers
    race for the same unexpired code, exactly one of them gets the record.
    """

    async def get_client(self, client_id: str) -> Optional[Client]:
        raise NotImplementedError

    async def create_code(self, auth_code: AuthorizationCode) -> None:
        raise NotImplementedError

    async def get_code(self, code: str, **match: Optional[str]) -> Optional[AuthorizationCode]:
        raise NotImplementedError

    async def consume_code(self, code: str, now: Optional[datetime] = None,
                           **match: Optional[str]) -> Optional[AuthorizationCode]:
        """Delete and return the unexpired code matching the filters, or None"""
        raise NotImplementedError

    async def bind_user(self, code: str, user_id: str, now: Optional[datetime] = None,
                        **match: Optional[str]) -> Optional[AuthorizationCode]:
        """Attach user_id to an unexpired code that has no user yet"""
        raise NotImplementedError

    async def create_token(self, token: Token) -> None:
        raise NotImplementedError

    async def close(self):
        pass

class MemoryStore(PersistentStore):
    """
    Process-local store for development and tests.

    No await happens between the check and the mutation in consume_code and
    bind_user, so they are atomic on a single event loop. Not usable across
    processes.
    """

    def __init__(self, clients: Optional[List[Client]] = None):
        self.clients: Dict[str, Client] = {c.client_id: c for c in clients or []}
        self.codes: Dict[str, AuthorizationCode] = {}
        self.tokens: Dict[str, Token] = {}

    @staticmethod
    def _matches(record: AuthorizationCode, match: Dict[str, Optional[str]]) -> bool:
        return all(getattr(record, field) == value for field, value in match.items())

    async def get_client(self, client_id: str) -> Optional[Client]:
        return self.clients.get(client_id)

    async def create_code(self, auth_code: AuthorizationCode) -> None:
        self.codes[auth_code.code] = auth_code

    async def get_code(self, code: str, **match: Optional[str]) -> Optional[AuthorizationCode]:
        record = self.codes.get(code)
        if record is None or not self._matches(record, match):
            return None
        return record

    async def consume_code(self, code: str, now: Optional[datetime] = None,
                           **match: Optional[str]) -> Optional[AuthorizationCode]:
        record = self.codes.get(code)
        if record is None or record.is_expired(now) or not self._matches(record, match):
            return None
        return self.codes.pop(code)

    async def bind_user(self, code: str, user_id: str, now: Optional[datetime] = None,
                        **match: Optional[str]) -> Optional[AuthorizationCode]:
        record = self.codes.get(code)
        if (record is None or record.user_id is not None or record.is_expired(now)
                or not self._matches(record, match)):
            return None
        bound = record.model_copy(update={"user_id": user_id})
        self.codes[code] = bound
        return bound

    async def create_token(self, token: Token) -> None:
        self.tokens[token.access_token] = token

class SupabaseStore(PersistentStore):
    """PostgREST-backed store using the oauth_clients, oauth_codes and oauth_tokens tables"""

    def __init__(self, supabase_url: str, service_key: str, timeout: int = 10,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.rest_url = f"{supabase_url.rstrip('/')}/rest/v1"
        self.client = httpx.AsyncClient(
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
                "User-Agent": "OAuth-Gateway/1.0.0"
            },
            timeout=timeout,
            transport=transport
        )

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    @staticmethod
    def _filters(**columns: Optional[str]) -> Dict[str, str]:
        return {
            column: "is.null" if value is None else f"eq.{value}"
            for column, value in columns.items()
        }

    async def _request(self, method: str, table: str, params: Optional[Dict[str, str]] = None,
                       json: Any = None, prefer: Optional[str] = None) -> List[Dict[str, Any]]:
        """Send a PostgREST request and return the affected rows"""
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self.client.request(
                method, f"{self.rest_url}/{table}", params=params, json=json, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Supabase {method} {table} failed: {e.response.status_code} - {e.response.text}")
            raise StoreError(f"Supabase error on {table}: {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            logger.error(f"Supabase {method} {table} timed out")
            raise StoreError("Supabase request timeout") from e
        except httpx.HTTPError as e:
            logger.error(f"Supabase network error: {e}")
            raise StoreError("Unable to reach Supabase") from e

        if response.status_code == 204 or not response.content:
            return []
        return response.json()

    async def get_client(self, client_id: str) -> Optional[Client]:
        rows = await self._request("GET", "oauth_clients", params={**self._filters(client_id=client_id), "select": "*"})
        return Client(**rows[0]) if rows else None

    async def create_code(self, auth_code: AuthorizationCode) -> None:
        await self._request("POST", "oauth_codes", json=auth_code.model_dump(exclude_none=True) | {
            "expires_at": auth_code.expires_at.isoformat(),
            "created_at": auth_code.created_at.isoformat(),
        }, prefer="return=minimal")

    async def get_code(self, code: str, **match: Optional[str]) -> Optional[AuthorizationCode]:
        rows = await self._request("GET", "oauth_codes", params={**self._filters(code=code, **match), "select": "*"})
        return AuthorizationCode(**rows[0]) if rows else None

    async def consume_code(self, code: str, now: Optional[datetime] = None,
                           **match: Optional[str]) -> Optional[AuthorizationCode]:
        # A filtered DELETE returning the deleted rows: only one concurrent caller sees the row
        params = self._filters(code=code, **match)
        params["expires_at"] = f"gt.{(now or utcnow()).isoformat()}"
        rows = await self._request("DELETE", "oauth_codes", params=params, prefer="return=representation")
        return AuthorizationCode(**rows[0]) if rows else None

    async def bind_user(self, code: str, user_id: str, now: Optional[datetime] = None,
                        **match: Optional[str]) -> Optional[AuthorizationCode]:
        params = self._filters(code=code, user_id=None, **match)
        params["expires_at"] = f"gt.{(now or utcnow()).isoformat()}"
        rows = await self._request("PATCH", "oauth_codes", params=params,
                                   json={"user_id": user_id}, prefer="return=representation")
        return AuthorizationCode(**rows[0]) if rows else None

    async def create_token(self, token: Token) -> None:
        await self._request("POST", "oauth_tokens", json=token.model_dump() | {
            "expires_at": token.expires_at.isoformat(),
            "created_at": token.created_at.isoformat(),
        }, prefer="return=minimal")

def create_store(config) -> PersistentStore:
    """Build the store backend selected by STORE_BACKEND"""
    if config.store_backend == "memory":
        logger.warning("Using in-memory store - codes and tokens are lost on restart")
        return MemoryStore()
    return SupabaseStore(config.supabase_url, config.supabase_service_key, config.supabase_timeout)
