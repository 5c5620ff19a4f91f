"""
Tent remote resource client.
Reads one category from the export entity and writes it to the import entity
over the Tent HTTP API, signed with the job's MAC credentials.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from core.logging import get_logger
from ..credential_store import Credential
from ..errors import FatalAuthorizationError, MalformedItemError, TransientRemoteError
from .base import BaseResourceClient, Page
from .mac_auth import MacAuth

logger = get_logger("tent_migrate.tent_client")

TENT_MEDIA_TYPE = "application/vnd.tent.v0+json"

# Paths relative to the entity's API root. Profile is one unpaged document
# whose info types are written back individually. Paged lists are read with
# `limit`; a page shorter than the requested limit is taken as the last one, so
# a server that caps `limit` below MIGRATION_PAGE_SIZE ends the category early.
CATEGORY_ENDPOINTS = {
    "profile": {"list": "/profile", "create": "/profile/{info_type}", "method": "PUT", "paged": False},
    "apps": {"list": "/apps", "create": "/apps", "method": "POST", "paged": True},
    "groups": {"list": "/groups", "create": "/groups", "method": "POST", "paged": True},
    "permissions": {"list": "/permissions", "create": "/permissions", "method": "POST", "paged": True},
    "followings": {"list": "/followings", "create": "/followings", "method": "POST", "paged": True},
    "followers": {"list": "/followers", "create": "/followers", "method": "POST", "paged": True},
    "secrets": {"list": "/secrets", "create": "/secrets", "method": "POST", "paged": True},
    "posts": {"list": "/posts", "create": "/posts", "method": "POST", "paged": True},
}

RETRYABLE_STATUS = {408, 425, 429}


class TentResourceClient(BaseResourceClient):
    """Paginated reader and single-item writer for one Tent resource category"""

    def __init__(
        self,
        credential: Credential,
        category: str,
        page_size: int = 50,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if category not in CATEGORY_ENDPOINTS:
            raise ValueError(f"Unknown resource category: {category}")
        self.credential = credential
        self.category = category
        self.page_size = page_size
        self.timeout = timeout
        self._endpoint = CATEGORY_ENDPOINTS[category]
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.credential.server_url,
                auth=MacAuth(
                    self.credential.mac_key_id,
                    self.credential.mac_key,
                    self.credential.mac_algorithm,
                ),
                headers={
                    "Accept": TENT_MEDIA_TYPE,
                    "Content-Type": TENT_MEDIA_TYPE,
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, path: str, for_write: bool = False, **kwargs) -> Any:
        """Make a signed request and map failures onto the migration error taxonomy"""
        client = await self.get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientRemoteError(f"{method} {path} failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise FatalAuthorizationError(
                f"{self.credential.entity} refused {method} {path} ({status}); authorization revoked or scope missing",
                status_code=status,
            )
        if status in RETRYABLE_STATUS or status >= 500:
            raise TransientRemoteError(f"{method} {path} returned {status}", status_code=status)
        if status in (404, 410) and not for_write:
            raise FatalAuthorizationError(
                f"{self.credential.entity} no longer serves {path} ({status})",
                status_code=status,
            )
        if status >= 400:
            raise MalformedItemError(f"{method} {path} rejected with {status}: {response.text[:200]}")

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MalformedItemError(f"{method} {path} returned a non-JSON body") from e

    async def list_page(self, cursor: Optional[str] = None) -> Page:
        """
        Read one page, newest first.

        The cursor is the id of the last item of the previous page and is sent
        as ``before_id``, so items published while the migration runs do not
        shift the pages still to be read.
        """
        if not self._endpoint["paged"]:
            data = await self._request("GET", self._endpoint["list"])
            if not isinstance(data, dict):
                raise TransientRemoteError(f"GET {self._endpoint['list']} returned an unexpected body")
            items = [
                {"id": info_type, "type": info_type, "content": content}
                for info_type, content in data.items()
            ]
            return Page(items=items, next_cursor=None)

        params: Dict[str, Any] = {"limit": self.page_size}
        if cursor:
            params["before_id"] = cursor
        if self.category == "posts":
            # Only the account's own posts, not its feed
            params["entity"] = self.credential.entity

        data = await self._request("GET", self._endpoint["list"], params=params)
        if data is None:
            data = []
        if not isinstance(data, list):
            raise TransientRemoteError(f"GET {self._endpoint['list']} returned an unexpected body")

        next_cursor = None
        if len(data) >= self.page_size:
            next_cursor = self._last_id(data)
        elif data:
            logger.info(f"Short {self.category} page, treating it as the last",
                        category=self.category, action="page_short", received=len(data), limit=self.page_size)
        return Page(items=data, next_cursor=next_cursor)

    @staticmethod
    def _last_id(items: List[Any]) -> Optional[str]:
        for item in reversed(items):
            if isinstance(item, dict) and item.get("id"):
                return str(item["id"])
        return None

    async def create(self, item: Dict[str, Any], idempotency_key: Optional[str] = None) -> str:
        """Write one translated item to the import entity"""
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None

        if self.category == "profile":
            info_type = item["type"]
            path = self._endpoint["create"].format(info_type=quote(info_type, safe=""))
            await self._request("PUT", path, for_write=True, json=item.get("content") or {}, headers=headers)
            return info_type

        data = await self._request(
            self._endpoint["method"], self._endpoint["create"], for_write=True, json=item, headers=headers
        )
        remote_id = data.get("id") if isinstance(data, dict) else None
        return str(remote_id) if remote_id is not None else ""

    async def close(self):
        """Close HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
