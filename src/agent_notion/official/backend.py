"""NotionBackend over the public REST API."""

import logging
from typing import Any, Optional

import httpx

from ..backend import BLOCK_PAGE_SIZE, DEFAULT_PAGE_SIZE, MAX_BLOCKS, NotionBackend
from ..errors import NotionApiError, NotionCliError
from ..models import (
    AppendResult,
    BlockListResult,
    CommentCreateResult,
    CommentItem,
    DatabaseDetail,
    DatabaseListItem,
    DatabaseSchema,
    NormalizedBlock,
    PageArchiveResult,
    PageCreateResult,
    PageDetail,
    PageUpdateResult,
    Paginated,
    QueryRow,
    SearchResult,
    UserItem,
    UserMe,
)
from ..properties import (
    TITLE_KEYS,
    build_database_properties,
    build_property_value,
    rich_text_to_plain,
)
from .client import OfficialClient
from .transforms import (
    normalize_block,
    transform_comment,
    transform_database_detail,
    transform_database_list_item,
    transform_database_schema,
    transform_me,
    transform_page_detail,
    transform_query_row,
    transform_search_result,
    transform_user,
)

logger = logging.getLogger("agent-notion.official")


def _title_value(title: str) -> dict:
    return {"title": [{"text": {"content": title}}]}


def _emoji_icon(icon: str) -> dict:
    return {"type": "emoji", "emoji": icon}


def _reject_page_properties(properties: Optional[dict[str, Any]]) -> None:
    for name in properties or {}:
        if name not in TITLE_KEYS:
            raise NotionCliError(
                f"Property {name!r} can only be set on database rows; plain pages only have a title"
            )


def _paginated(result: dict, transform) -> Paginated:
    return Paginated(
        items=[transform(item) for item in result.get("results") or []],
        has_more=bool(result.get("has_more")),
        next_cursor=result.get("next_cursor"),
    )


class OfficialBackend(NotionBackend):
    """Public API backend. No inline comments, history, backlinks or activity."""

    kind = "official"

    def __init__(self, client: OfficialClient):
        self.client = client

    # --- Search ---

    async def search(
        self,
        query: str,
        filter: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None
    ) -> Paginated[SearchResult]:
        body: dict[str, Any] = {"query": query, "page_size": limit or DEFAULT_PAGE_SIZE}
        if filter:
            body["filter"] = {"property": "object", "value": filter}
        if cursor:
            body["start_cursor"] = cursor
        result = await self.client.post("/search", body)
        return _paginated(result, transform_search_result)

    # --- Databases ---

    async def list_databases(
        self, limit: Optional[int] = None, cursor: Optional[str] = None
    ) -> Paginated[DatabaseListItem]:
        body: dict[str, Any] = {
            "filter": {"property": "object", "value": "database"},
            "page_size": limit or DEFAULT_PAGE_SIZE,
        }
        if cursor:
            body["start_cursor"] = cursor
        result = await self.client.post("/search", body)
        return _paginated(result, transform_database_list_item)

    async def get_database(self, database_id: str) -> DatabaseDetail:
        db = await self.client.get(f"/databases/{database_id}")
        return transform_database_detail(db)

    async def query_database(
        self,
        database_id: str,
        filter: Any = None,
        sort: Any = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None
    ) -> Paginated[QueryRow]:
        body: dict[str, Any] = {"page_size": limit or DEFAULT_PAGE_SIZE}
        if filter:
            body["filter"] = filter
        if sort:
            body["sorts"] = sort if isinstance(sort, list) else [sort]
        if cursor:
            body["start_cursor"] = cursor
        result = await self.client.post(f"/databases/{database_id}/query", body)
        return _paginated(result, transform_query_row)

    async def get_database_schema(self, database_id: str) -> DatabaseSchema:
        db = await self.client.get(f"/databases/{database_id}")
        return transform_database_schema(db)

    # --- Pages ---

    async def get_page(self, page_id: str) -> PageDetail:
        page = await self.client.get(f"/pages/{page_id}")
        return transform_page_detail(page)

    async def create_page(
        self,
        parent_id: str,
        title: str,
        properties: Optional[dict[str, Any]] = None,
        icon: Optional[str] = None
    ) -> PageCreateResult:
        database = await self._probe_database(parent_id)
        body: dict[str, Any] = {}

        if database is not None:
            body["parent"] = {"database_id": parent_id}
            body["properties"] = build_database_properties(
                title, properties, title_key=_title_column(database)
            )
        else:
            _reject_page_properties(properties)
            body["parent"] = {"page_id": parent_id}
            body["properties"] = {"title": _title_value(title)}

        if icon:
            body["icon"] = _emoji_icon(icon)

        page = await self.client.post("/pages", body)
        return PageCreateResult(
            id=page.get("id", ""),
            url=page.get("url", ""),
            title=title,
            parent=page.get("parent") or {},
            created_at=page.get("created_time"),
        )

    async def update_page(
        self,
        page_id: str,
        title: Optional[str] = None,
        properties: Optional[dict[str, Any]] = None,
        icon: Optional[str] = None
    ) -> PageUpdateResult:
        body: dict[str, Any] = {}

        if title or properties:
            page = await self.client.get(f"/pages/{page_id}")
            parent = page.get("parent") or {}
            parent_id = parent.get(parent.get("type") or "")
            database = await self._probe_database(parent_id) if isinstance(parent_id, str) else None

            if database is None:
                _reject_page_properties(properties)
            title_key = _title_column(database) if database is not None else "title"
            props: dict[str, Any] = {}
            if title:
                props[title_key] = _title_value(title)
            for key, value in (properties or {}).items():
                if key in TITLE_KEYS or key == title_key:
                    continue
                props[key] = build_property_value(value)
            body["properties"] = props

        if icon:
            body["icon"] = _emoji_icon(icon)

        page = await self.client.patch(f"/pages/{page_id}", body)
        return PageUpdateResult(
            id=page.get("id", page_id),
            url=page.get("url", ""),
            last_edited_at=page.get("last_edited_time"),
        )

    async def archive_page(self, page_id: str) -> PageArchiveResult:
        await self.client.patch(f"/pages/{page_id}", {"archived": True})
        return PageArchiveResult(id=page_id, archived=True)

    # --- Blocks ---

    async def list_blocks(
        self, block_id: str, limit: Optional[int] = None, cursor: Optional[str] = None
    ) -> Paginated[NormalizedBlock]:
        result = await self.client.get(
            f"/blocks/{block_id}/children",
            params={"page_size": limit or DEFAULT_PAGE_SIZE, "start_cursor": cursor},
        )
        return _paginated(result, normalize_block)

    async def get_all_blocks(self, block_id: str) -> BlockListResult:
        blocks: list[NormalizedBlock] = []
        cursor = None
        server_has_more = False

        while len(blocks) < MAX_BLOCKS:
            result = await self.client.get(
                f"/blocks/{block_id}/children",
                params={"page_size": BLOCK_PAGE_SIZE, "start_cursor": cursor},
            )
            blocks.extend(normalize_block(b) for b in result.get("results") or [])

            server_has_more = bool(result.get("has_more"))
            if not server_has_more:
                break
            cursor = result.get("next_cursor")

        # Short pages can overshoot the cap
        return BlockListResult(
            blocks=blocks[:MAX_BLOCKS],
            has_more=server_has_more or len(blocks) > MAX_BLOCKS,
        )

    async def append_blocks(self, block_id: str, blocks: list[dict]) -> AppendResult:
        result = await self.client.patch(f"/blocks/{block_id}/children", {"children": blocks})
        return AppendResult(blocks_added=len(result.get("results") or []))

    # --- Comments ---

    async def list_comments(
        self, page_id: str, limit: Optional[int] = None, cursor: Optional[str] = None
    ) -> Paginated[CommentItem]:
        result = await self.client.get(
            "/comments",
            params={
                "block_id": page_id,
                "page_size": limit or DEFAULT_PAGE_SIZE,
                "start_cursor": cursor,
            },
        )
        return _paginated(result, transform_comment)

    async def add_comment(self, page_id: str, body: str) -> CommentCreateResult:
        comment = await self.client.post("/comments", {
            "parent": {"page_id": page_id},
            "rich_text": [{"type": "text", "text": {"content": body}}],
        })
        return CommentCreateResult(
            id=comment.get("id", ""),
            body=rich_text_to_plain(comment.get("rich_text")) or body,
            created_at=comment.get("created_time"),
            discussion_id=comment.get("discussion_id"),
        )

    # --- Users ---

    async def list_users(
        self, limit: Optional[int] = None, cursor: Optional[str] = None
    ) -> Paginated[UserItem]:
        result = await self.client.get(
            "/users", params={"page_size": limit or DEFAULT_PAGE_SIZE, "start_cursor": cursor}
        )
        return _paginated(result, transform_user)

    async def get_me(self) -> UserMe:
        return transform_me(await self.client.get("/users/me"))

    # --- Utility ---

    async def is_database(self, object_id: str) -> bool:
        return await self._probe_database(object_id) is not None

    async def _probe_database(self, object_id: str) -> Optional[dict]:
        """Retrieve `object_id` as a database, or None on any API failure.

        A permission error and a plain page look the same from here.
        """
        try:
            return await self.client.get(f"/databases/{object_id}")
        except (NotionApiError, httpx.HTTPError) as e:
            logger.debug(f"{object_id} is not a readable database: {e}")
            return None

    async def aclose(self) -> None:
        await self.client.aclose()


def _title_column(database: dict) -> str:
    for name, prop in (database.get("properties") or {}).items():
        if prop.get("type") == "title":
            return name
    return "Name"
