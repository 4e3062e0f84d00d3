"""Thin async client for the public REST API.

Bearer-token auth, a concurrency semaphore and 429 retry with backoff.
Everything else (pagination, shaping) lives in the backend.
"""

import asyncio
import logging
import random
from typing import Any, Optional

import httpx

from ..errors import NotionApiError

logger = logging.getLogger("agent-notion.official")

NOTION_API_BASE = "https://api.notion.com/v1"
# Last version with /databases/{id}/query and the "database" search filter
NOTION_VERSION = "2022-06-28"

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # max random jitter to add (seconds)

# Concurrent requests in flight per client
MAX_CONCURRENCY = 10


def compute_retry_delay(attempt: int, retry_after: Optional[float] = None) -> float:
    """Exponential backoff delay with jitter for rate limiting.

    Args:
        attempt: Current retry attempt number (0-indexed).
        retry_after: Optional Retry-After header value from server.

    Returns:
        Delay in seconds, including random jitter to prevent thundering herd.
    """
    base_delay = RETRY_BASE_DELAY * (2 ** attempt)
    if retry_after is not None:
        base_delay = max(retry_after, base_delay)
    return base_delay + random.uniform(0, RETRY_JITTER_MAX)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class OfficialClient:
    """Authenticated requests against api.notion.com.

    Usable as an async context manager; otherwise call `aclose()`.
    """

    def __init__(
        self,
        token: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_concurrency: int = MAX_CONCURRENCY
    ):
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None,
        params: Optional[dict[str, Any]] = None
    ) -> dict:
        """Make one API call, retrying 429 responses.

        Args:
            method: HTTP method ("GET", "POST", "PATCH", "DELETE").
            endpoint: Path below /v1, e.g. "/pages/<id>".
            json_body: Request body for POST/PATCH.
            params: Query string parameters; None values are dropped.

        Returns:
            Decoded JSON response.

        Raises:
            NotionApiError: Any non-2xx response, including a 429 that
                outlived MAX_RETRIES.
        """
        if method not in ("GET", "POST", "PATCH", "DELETE"):
            raise ValueError(f"Unsupported method: {method}")

        url = f"{NOTION_API_BASE}{endpoint}"
        query = {k: v for k, v in (params or {}).items() if v is not None}
        body = json_body if method in ("POST", "PATCH") else None
        if body is None and method in ("POST", "PATCH"):
            body = {}

        async with self._semaphore:
            for attempt in range(MAX_RETRIES + 1):
                response = await self._http.request(
                    method, url, headers=self._headers, json=body, params=query or None
                )

                # Handle rate limiting with exponential backoff + jitter
                if response.status_code == 429 and attempt < MAX_RETRIES:
                    retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                    delay = compute_retry_delay(attempt, retry_after)
                    logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
                    await asyncio.sleep(delay)
                    continue

                if response.is_error:
                    raise NotionApiError.from_response(response)
                logger.debug(f"{method} {endpoint} -> {response.status_code}")
                return response.json()

        # Unreachable: the last attempt either returns or raises
        raise NotionApiError(429, "rate_limited", f"Max retries ({MAX_RETRIES}) exceeded")

    async def get(self, endpoint: str, params: Optional[dict[str, Any]] = None) -> dict:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, json_body: Optional[dict] = None) -> dict:
        return await self.request("POST", endpoint, json_body=json_body)

    async def patch(self, endpoint: str, json_body: Optional[dict] = None) -> dict:
        return await self.request("PATCH", endpoint, json_body=json_body)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "OfficialClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
