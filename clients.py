import hmac
import logging
from typing import List, Optional

from errors import StoreError
from models import Client

logger = logging.getLogger(__name__)

# Development clients served when the store has no record
DEFAULT_CLIENTS = [
    Client(
        client_id="mobile-app-client",
        name="Mobile App",
        redirect_uris=["http://localhost:3000/callback", "myapp://oauth/callback"],
        allowed_scopes=["openid", "email", "profile"],
    ),
    Client(
        client_id="web-app-client",
        name="Web App",
        redirect_uris=["http://localhost:8000/callback"],
        allowed_scopes=["openid", "email", "profile", "read", "write"],
    ),
]

class StoreClientSource:
    """Clients registered in the persistent store"""

    def __init__(self, store):
        self.store = store

    async def lookup(self, client_id: str) -> Optional[Client]:
        try:
            return await self.store.get_client(client_id)
        except StoreError as e:
            logger.warning(f"Client lookup for {client_id} failed, trying fallback: {e}")
            return None

class StaticClientCatalog:
    """Fixed in-memory client catalog"""

    def __init__(self, clients: Optional[List[Client]] = None):
        self.clients = {c.client_id: c for c in (DEFAULT_CLIENTS if clients is None else clients)}

    async def lookup(self, client_id: str) -> Optional[Client]:
        return self.clients.get(client_id)

class ClientRegistry:
    """Resolves client_id by asking each source in order"""

    def __init__(self, sources):
        self.sources = list(sources)

    async def resolve(self, client_id: str) -> Optional[Client]:
        for source in self.sources:
            client = await source.lookup(client_id)
            if client is not None:
                return client
        logger.info(f"Unknown client_id: {client_id}")
        return None

    @staticmethod
    def authenticate(client: Client, client_secret: Optional[str]) -> bool:
        """Public clients always pass; confidential clients must present their secret"""
        if not client.is_confidential:
            return True
        if not client_secret:
            return False
        return hmac.compare_digest(client.client_secret.encode(), client_secret.encode())
