"""Async client for the internal v3 API (notion.so/api/v3).

Every endpoint is a JSON POST authenticated by the `token_v2` session
cookie. Responses are returned as raw dicts; most carry a `recordMap`
(table → id → record) that `v3.transforms` knows how to read.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import httpx

from ..errors import V3HttpError
from ..ids import new_id
from .operations import V3Operation

logger = logging.getLogger("agent-notion.v3")

V3_API_BASE = "https://www.notion.so/api/v3"
DEFAULT_TIMEOUT = 30.0
COLLECTION_TIMEOUT = 60.0  # queryCollection is slow on large databases
DOWNLOAD_TIMEOUT = 300.0

MAX_CONCURRENCY = 10

# Filters the web client sends with every search
SEARCH_FILTERS = {
    "isDeletedOnly": False,
    "excludeTemplates": False,
    "isNavigableOnly": False,
    "requireEditPermissions": False,
    "ancestors": [],
    "createdBy": [],
    "editedBy": [],
    "lastEditedTime": {},
    "createdTime": {},
}


class V3Client:
    """One v3 session: token_v2 cookie plus the active user and space."""

    def __init__(
        self,
        token_v2: str,
        user_id: str,
        space_id: str,
        http_client: Optional[httpx.AsyncClient] = None,
        time_zone: str = "UTC"
    ):
        self.user_id = user_id
        self.space_id = space_id
        self.time_zone = time_zone
        self._http = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        self._headers = {
            "Content-Type": "application/json",
            "Cookie": f"token_v2={token_v2}",
            "x-notion-active-user-header": user_id,
        }
        self._semaphore = asyncio.Semaphore(MAX_CONCURRENCY)

    async def post(
        self,
        endpoint: str,
        body: dict,
        timeout: Optional[float] = None,
        extra_headers: Optional[dict[str, str]] = None
    ) -> dict:
        """POST to one endpoint. No retries.

        Raises:
            V3HttpError: Non-2xx response (first 200 chars of the body kept).
        """
        headers = {**self._headers, **(extra_headers or {})}
        async with self._semaphore:
            response = await self._http.post(
                f"{V3_API_BASE}/{endpoint}",
                headers=headers,
                json=body,
                timeout=timeout or DEFAULT_TIMEOUT,
            )
        if response.is_error:
            detail = response.text[:200]
            message = response.reason_phrase or "error"
            if detail:
                message = f"{message}: {detail}"
            raise V3HttpError(response.status_code, endpoint, message)
        logger.debug(f"POST {endpoint} -> {response.status_code}")
        return response.json()

    # =========================================================================
    # Reads
    # =========================================================================

    async def sync_record_values(self, pointers: list[tuple[str, str]]) -> dict:
        """Fetch current records by (table, id)."""
        return await self.post("syncRecordValuesMain", {
            "requests": [
                {"pointer": {"table": table, "id": record_id, "spaceId": self.space_id}, "version": -1}
                for table, record_id in pointers
            ],
        })

    async def query_collection(
        self,
        collection_id: str,
        view_id: str,
        filter: Any = None,
        sort: Any = None,
        limit: int = 50,
        search_query: str = ""
    ) -> dict:
        query2: dict[str, Any] = {}
        if filter:
            query2["filter"] = filter
        if sort:
            query2["sort"] = sort
        return await self.post(
            "queryCollection",
            {
                "collection": {"id": collection_id, "spaceId": self.space_id},
                "collectionView": {"id": view_id, "spaceId": self.space_id},
                "loader": {
                    "type": "reducer",
                    "reducers": {
                        "collection_group_results": {
                            "type": "results",
                            "limit": limit,
                            "loadContentCover": False,
                        },
                    },
                    "searchQuery": search_query,
                    "userTimeZone": self.time_zone,
                },
                "query2": query2,
            },
            timeout=COLLECTION_TIMEOUT,
            extra_headers={"x-notion-space-id": self.space_id},
        )

    async def search(
        self,
        query: str,
        limit: int = 20,
        ancestor_id: Optional[str] = None,
        filters: Optional[dict] = None
    ) -> dict:
        body: dict[str, Any] = {
            "type": "BlocksInAncestor" if ancestor_id else "BlocksInSpace",
            "query": query,
            "limit": limit,
            "sort": {"field": "relevance"},
            "source": "quick_find_input_change",
            "filters": {**SEARCH_FILTERS, **(filters or {})},
        }
        if ancestor_id:
            body["ancestorId"] = ancestor_id
        else:
            body["spaceId"] = self.space_id
        return await self.post("search", body)

    async def load_user_content(self) -> dict:
        return await self.post("loadUserContent", {})

    async def get_snapshots_list(self, block_id: str, size: int = 20) -> dict:
        return await self.post("getSnapshotsList", {"blockId": block_id, "size": size})

    async def get_backlinks_for_block(self, block_id: str) -> dict:
        return await self.post("getBacklinksForBlock", {"blockId": block_id})

    async def get_activity_log(
        self, navigable_block_id: Optional[str] = None, limit: int = 20
    ) -> dict:
        body: dict[str, Any] = {"spaceId": self.space_id, "limit": limit}
        if navigable_block_id:
            body["navigableBlockId"] = navigable_block_id
        return await self.post("getActivityLog", body)

    # =========================================================================
    # Tasks (exports)
    # =========================================================================

    async def enqueue_task(self, task: dict) -> dict:
        """Queue a server-side task such as exportBlock. Returns {"taskId": ...}."""
        return await self.post("enqueueTask", {"task": task})

    async def get_tasks(self, task_ids: list[str]) -> dict:
        return await self.post("getTasks", {"taskIds": task_ids})

    async def download(self, url: str, path: Path) -> int:
        """Stream `url` into `path` and return the number of bytes written.

        Export URLs are pre-signed, so no session cookie is sent.

        Raises:
            V3HttpError: Non-2xx response from the download host.
        """
        written = 0
        async with self._http.stream("GET", url, timeout=DOWNLOAD_TIMEOUT) as response:
            if response.is_error:
                raise V3HttpError(
                    response.status_code, "download", f"Download failed: {response.reason_phrase}"
                )
            with open(path, "wb") as f:
                async for chunk in response.aiter_bytes():
                    f.write(chunk)
                    written += len(chunk)
        logger.debug(f"Downloaded {written} bytes to {path}")
        return written

    # =========================================================================
    # Writes
    # =========================================================================

    async def save_transactions(self, operations: list[V3Operation]) -> dict:
        """Submit one logical change as a single transaction."""
        logger.info(f"Submitting transaction with {len(operations)} operations")
        return await self.post("saveTransactions", {
            "requestId": new_id(),
            "transactions": [{
                "id": new_id(),
                "spaceId": self.space_id,
                "operations": [op.to_dict() for op in operations],
            }],
        })

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "V3Client":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
