"""NotionBackend over the internal v3 API.

Reads go through syncRecordValues, queryCollection and search; block
lists come from the parent record's `content` ids.
Writes are built with `v3.operations` and each logical change is submitted
as one saveTransactions call. This is the only backend with inline
comments, page history, backlinks, the activity log and exports.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Optional

import httpx

from ..backend import DEFAULT_PAGE_SIZE, EXPORT_FORMATS, MAX_BLOCKS, NotionBackend
from ..errors import ExportError, NotionCliError, RecordNotFoundError, V3HttpError
from ..ids import new_id, notion_url
from ..models import (
    ActivityEntry,
    AppendResult,
    Backlink,
    BlockListResult,
    CommentCreateResult,
    CommentItem,
    DatabaseDetail,
    DatabaseListItem,
    DatabaseSchema,
    ExportResult,
    ExportTask,
    HistorySnapshot,
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
from ..properties import TITLE_KEYS
from .client import V3Client
from .operations import (
    V3Operation,
    archive_block_ops,
    create_block_ops,
    create_comment_ops,
    create_inline_comment_ops,
    official_block_to_v3_args,
    update_property_ops,
)
from .richtext import decode_rich_text, encode_rich_text, splice_anchor, wrap
from .transforms import (
    DATABASE_BLOCK_TYPES,
    find_schema_id,
    first_record,
    get_block,
    get_collection,
    get_records,
    get_user,
    ms_to_iso,
    normalize_v3_block,
    transform_v3_activity,
    transform_v3_backlinks,
    transform_v3_comment,
    transform_v3_database_detail,
    transform_v3_database_list_item,
    transform_v3_database_schema,
    transform_v3_export_task,
    transform_v3_page_detail,
    transform_v3_query_row,
    transform_v3_search_result,
    transform_v3_snapshot,
    transform_v3_user,
    transform_v3_user_me,
)

logger = logging.getLogger("agent-notion.v3")

# Records per syncRecordValues call
SYNC_BATCH = 100

# Seconds between getTasks polls; workspace exports run longer
EXPORT_POLL_INTERVAL = 2.0
WORKSPACE_POLL_INTERVAL = 5.0


def _now_ms() -> int:
    return int(time.time() * 1000)


def _offset(cursor: Optional[str]) -> int:
    """List cursors on this backend are plain offsets."""
    if not cursor:
        return 0
    try:
        offset = int(cursor)
    except ValueError:
        raise NotionCliError(f"Invalid cursor: {cursor!r} (expected a number from a previous page)") from None
    if offset < 0:
        raise NotionCliError(f"Invalid cursor: {cursor!r}")
    return offset


def _page_of(items: list, offset: int, limit: int) -> Paginated:
    end = offset + limit
    has_more = end < len(items)
    return Paginated(items=items[offset:end], has_more=has_more, next_cursor=str(end) if has_more else None)


def _v3_value(value: Any) -> list:
    """Encode a bare JSON value as a v3 property value.

    Pre-shaped rich text (a list of lists) passes through unchanged.
    """
    if isinstance(value, bool):
        return wrap("Yes" if value else "No")
    if isinstance(value, list):
        if value and all(isinstance(v, list) for v in value):
            return value
        return wrap(",".join(str(v) for v in value))
    return wrap(str(value))


class V3Backend(NotionBackend):
    """Internal-API backend bound to one session (user + space)."""

    kind = "v3"

    def __init__(self, client: V3Client):
        self.client = client

    @property
    def user_id(self) -> str:
        return self.client.user_id

    @property
    def space_id(self) -> str:
        return self.client.space_id

    # =========================================================================
    # Record access
    # =========================================================================

    async def _sync(self, table: str, ids: list[str]) -> dict:
        """recordMap for `ids` of one table, fetched SYNC_BATCH at a time."""
        merged: dict[str, dict] = {}
        for start in range(0, len(ids), SYNC_BATCH):
            chunk = ids[start:start + SYNC_BATCH]
            result = await self.client.sync_record_values([(table, i) for i in chunk])
            for tbl, records in (result.get("recordMap") or {}).items():
                merged.setdefault(tbl, {}).update(records or {})
        return merged

    async def _get_block(self, block_id: str) -> dict:
        block = get_block(await self._sync("block", [block_id]), block_id)
        if not block:
            raise RecordNotFoundError("Block", block_id)
        return block

    async def _get_collection(self, collection_id: str) -> dict:
        collection = get_collection(await self._sync("collection", [collection_id]), collection_id)
        if not collection:
            raise RecordNotFoundError("Collection", collection_id)
        return collection

    async def _live_blocks(self, ids: list[str]) -> list[dict]:
        """Fetch blocks by id, keeping input order and dropping dead ones."""
        if not ids:
            return []
        record_map = await self._sync("block", ids)
        blocks = []
        for block_id in ids:
            block = get_block(record_map, block_id)
            if block and block.get("alive", True):
                blocks.append(block)
        return blocks

    async def _resolve_database(self, database_id: str) -> tuple[dict, dict]:
        """(database block, collection) for a collection_view(_page) id."""
        block = await self._get_block(database_id)
        if block.get("type") not in DATABASE_BLOCK_TYPES:
            raise NotionCliError(f"{database_id} is a {block.get('type')} block, not a database")
        collection_id = block.get("collection_id")
        if not collection_id:
            raise RecordNotFoundError("Database", database_id)
        return block, await self._get_collection(collection_id)

    async def _schema_for(self, block: dict) -> Optional[dict]:
        """Collection schema if `block` is a database row, else None."""
        if block.get("parent_table") != "collection":
            return None
        collection = await self._get_collection(block["parent_id"])
        return collection.get("schema") or {}

    # =========================================================================
    # Search
    # =========================================================================

    async def search(
        self,
        query: str,
        filter: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None
    ) -> Paginated[SearchResult]:
        filters = None
        if filter:
            filters = {"excludeTemplates": True, "navigableBlockContentOnly": True}
        result = await self.client.search(query, limit=limit or 20, filters=filters)
        record_map = result.get("recordMap") or {}

        items = []
        for hit in result.get("results") or []:
            block = get_block(record_map, hit.get("id", ""))
            if not block:
                continue
            is_database = block.get("type") in DATABASE_BLOCK_TYPES
            # search has no type filter; apply it here
            if filter == "page" and is_database:
                continue
            if filter == "database" and not is_database:
                continue
            items.append(transform_v3_search_result(block))

        # No cursor: re-run with a larger limit to see more
        return Paginated(items=items, has_more=len(items) < result.get("total", 0))

    # =========================================================================
    # Databases
    # =========================================================================

    async def list_databases(
        self, limit: Optional[int] = None, cursor: Optional[str] = None
    ) -> Paginated[DatabaseListItem]:
        result = await self.client.search(
            "", limit=limit or DEFAULT_PAGE_SIZE,
            filters={"excludeTemplates": True, "navigableBlockContentOnly": True},
        )
        record_map = result.get("recordMap") or {}

        items = []
        for hit in result.get("results") or []:
            block = get_block(record_map, hit.get("id", ""))
            if not block or block.get("type") not in DATABASE_BLOCK_TYPES:
                continue
            collection_id = block.get("collection_id")
            collection = (
                get_collection(record_map, collection_id) if collection_id
                else first_record(record_map, "collection")
            )
            if collection:
                items.append(transform_v3_database_list_item(collection, block["id"]))

        return Paginated(items=items)

    async def get_database(self, database_id: str) -> DatabaseDetail:
        _, collection = await self._resolve_database(database_id)
        return transform_v3_database_detail(collection, database_id)

    async def query_database(
        self,
        database_id: str,
        filter: Any = None,
        sort: Any = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None
    ) -> Paginated[QueryRow]:
        block, collection = await self._resolve_database(database_id)
        view_ids = block.get("view_ids") or []
        if not view_ids:
            raise NotionCliError(f"No view found for database: {database_id}")

        response = await self.client.query_collection(
            collection["id"], view_ids[0], filter=filter, sort=sort,
            limit=limit or DEFAULT_PAGE_SIZE,
        )
        result = response.get("result") or {}
        group = (result.get("reducerResults") or {}).get("collection_group_results") or {}
        block_ids = group.get("blockIds") or result.get("blockIds") or []
        total = group.get("total", result.get("total", len(block_ids)))
        record_map = response.get("recordMap") or {}
        schema = collection.get("schema") or {}

        items = []
        for row_id in block_ids:
            row = get_block(record_map, row_id)
            if row:
                items.append(transform_v3_query_row(row, schema))

        return Paginated(items=items, has_more=len(items) < total)

    async def get_database_schema(self, database_id: str) -> DatabaseSchema:
        _, collection = await self._resolve_database(database_id)
        return transform_v3_database_schema(collection, database_id)

    # =========================================================================
    # Pages
    # =========================================================================

    async def get_page(self, page_id: str) -> PageDetail:
        block = await self._get_block(page_id)
        return transform_v3_page_detail(block, await self._schema_for(block))

    def _encode_properties(self, properties: Optional[dict[str, Any]], schema: Optional[dict]) -> dict:
        """Column name → value, encoded and keyed by schema id."""
        encoded = {}
        for name, value in (properties or {}).items():
            if name in TITLE_KEYS:
                continue
            if schema is None:
                raise NotionCliError(
                    f"Property {name!r} can only be set on database rows; plain pages only have a title"
                )
            prop_id = find_schema_id(schema, name)
            if prop_id is None:
                available = ", ".join(sorted(c.get("name", k) for k, c in schema.items()))
                raise NotionCliError(f"Unknown property {name!r}. Available: {available}")
            encoded[prop_id] = _v3_value(value)
        return encoded

    async def create_page(
        self,
        parent_id: str,
        title: str,
        properties: Optional[dict[str, Any]] = None,
        icon: Optional[str] = None
    ) -> PageCreateResult:
        parent = await self._get_block(parent_id)

        if parent.get("type") in DATABASE_BLOCK_TYPES and parent.get("collection_id"):
            collection = await self._get_collection(parent["collection_id"])
            schema = collection.get("schema") or {}
            parent_table, parent_record = "collection", parent["collection_id"]
            parent_ref = {"type": "database_id", "database_id": parent_id}
        else:
            schema = None
            parent_table, parent_record = "block", parent_id
            parent_ref = {"type": "page_id", "page_id": parent_id}

        props = {"title": wrap(title), **self._encode_properties(properties, schema)}
        page_id = new_id()
        now = _now_ms()
        ops = create_block_ops(
            id=page_id,
            type="page",
            parent_id=parent_record,
            parent_table=parent_table,
            space_id=self.space_id,
            user_id=self.user_id,
            properties=props,
            format={"page_icon": icon} if icon else None,
            now=now,
        )
        await self.client.save_transactions(ops)

        return PageCreateResult(
            id=page_id,
            url=notion_url(page_id),
            title=title,
            parent=parent_ref,
            created_at=ms_to_iso(now),
        )

    async def update_page(
        self,
        page_id: str,
        title: Optional[str] = None,
        properties: Optional[dict[str, Any]] = None,
        icon: Optional[str] = None
    ) -> PageUpdateResult:
        props: dict[str, Any] = {}
        if properties:
            block = await self._get_block(page_id)
            props.update(self._encode_properties(properties, await self._schema_for(block)))
        if title:
            props["title"] = wrap(title)

        now = _now_ms()
        ops = update_property_ops(
            id=page_id,
            space_id=self.space_id,
            user_id=self.user_id,
            properties=props,
            format={"page_icon": icon} if icon else None,
            now=now,
        )
        await self.client.save_transactions(ops)
        return PageUpdateResult(id=page_id, url=notion_url(page_id), last_edited_at=ms_to_iso(now))

    async def archive_page(self, page_id: str) -> PageArchiveResult:
        block = await self._get_block(page_id)
        ops = archive_block_ops(
            id=page_id,
            parent_id=block.get("parent_id", ""),
            parent_table=block.get("parent_table", ""),
            space_id=self.space_id,
            user_id=self.user_id,
        )
        await self.client.save_transactions(ops)
        return PageArchiveResult(id=page_id, archived=True)

    # =========================================================================
    # Blocks
    # =========================================================================

    async def list_blocks(
        self, block_id: str, limit: Optional[int] = None, cursor: Optional[str] = None
    ) -> Paginated[NormalizedBlock]:
        parent = await self._get_block(block_id)
        offset = _offset(cursor)
        page = _page_of(parent.get("content") or [], offset, limit or DEFAULT_PAGE_SIZE)
        blocks = await self._live_blocks(page.items)
        return Paginated(
            items=[normalize_v3_block(b) for b in blocks],
            has_more=page.has_more,
            next_cursor=page.next_cursor,
        )

    async def get_all_blocks(self, block_id: str) -> BlockListResult:
        parent = await self._get_block(block_id)
        content = parent.get("content") or []
        blocks = await self._live_blocks(content[:MAX_BLOCKS])
        return BlockListResult(
            blocks=[normalize_v3_block(b) for b in blocks],
            has_more=len(content) > MAX_BLOCKS,
        )

    def _append_ops(self, parent_id: str, blocks: list[dict], now: int) -> list[V3Operation]:
        ops = []
        for block in blocks:
            args = official_block_to_v3_args(block)
            child_id = new_id()
            ops.extend(create_block_ops(
                id=child_id,
                type=args["type"],
                parent_id=parent_id,
                parent_table="block",
                space_id=self.space_id,
                user_id=self.user_id,
                properties=args.get("properties"),
                format=args.get("format"),
                now=now,
            ))
            children = (block.get(block.get("type", "")) or {}).get("children")
            if children:
                ops.extend(self._append_ops(child_id, children, now))
        return ops

    async def append_blocks(self, block_id: str, blocks: list[dict]) -> AppendResult:
        if not blocks:
            return AppendResult(blocks_added=0)
        ops = self._append_ops(block_id, blocks, _now_ms())
        await self.client.save_transactions(ops)
        return AppendResult(blocks_added=len(blocks))

    # =========================================================================
    # Comments
    # =========================================================================

    async def list_comments(
        self, page_id: str, limit: Optional[int] = None, cursor: Optional[str] = None
    ) -> Paginated[CommentItem]:
        page = await self._get_block(page_id)
        discussion_ids = page.get("discussions") or []
        if not discussion_ids:
            return Paginated(items=[])

        discussions = get_records(await self._sync("discussion", discussion_ids), "discussion")
        comment_ids = [
            cid for d in discussions if d.get("alive", True)
            for cid in d.get("comments") or []
        ]
        window = _page_of(comment_ids, _offset(cursor), limit or DEFAULT_PAGE_SIZE)
        if not window.items:
            return Paginated(items=[])

        record_map = await self._sync("comment", window.items)
        comments = [
            c for c in get_records(record_map, "comment") if c.get("alive", True)
        ]
        author_ids = sorted({c.get("created_by_id") for c in comments if c.get("created_by_id")})
        if author_ids:
            record_map.update(await self._sync("notion_user", author_ids))

        order = {cid: i for i, cid in enumerate(window.items)}
        comments.sort(key=lambda c: order.get(c.get("id"), len(order)))
        return Paginated(
            items=[transform_v3_comment(c, record_map) for c in comments],
            has_more=window.has_more,
            next_cursor=window.next_cursor,
        )

    async def add_comment(self, page_id: str, body: str) -> CommentCreateResult:
        discussion_id, comment_id, now = new_id(), new_id(), _now_ms()
        ops = create_comment_ops(
            discussion_id=discussion_id,
            comment_id=comment_id,
            page_id=page_id,
            space_id=self.space_id,
            user_id=self.user_id,
            text=body,
            now=now,
        )
        await self.client.save_transactions(ops)
        return CommentCreateResult(
            id=comment_id, body=body, created_at=ms_to_iso(now), discussion_id=discussion_id
        )

    async def add_inline_comment(
        self, block_id: str, body: str, text: str, occurrence: int = 1
    ) -> CommentCreateResult:
        block = await self._get_block(block_id)
        title = decode_rich_text((block.get("properties") or {}).get("title"))
        discussion_id, comment_id, now = new_id(), new_id(), _now_ms()

        try:
            anchored = splice_anchor(title, text, discussion_id, occurrence)
        except ValueError as e:
            raise NotionCliError(str(e)) from e

        ops = create_inline_comment_ops(
            discussion_id=discussion_id,
            comment_id=comment_id,
            block_id=block_id,
            space_id=self.space_id,
            user_id=self.user_id,
            text=body,
            updated_title=encode_rich_text(anchored),
            now=now,
        )
        await self.client.save_transactions(ops)
        return CommentCreateResult(
            id=comment_id, body=body, created_at=ms_to_iso(now), discussion_id=discussion_id
        )

    # =========================================================================
    # Users
    # =========================================================================

    async def list_users(
        self, limit: Optional[int] = None, cursor: Optional[str] = None
    ) -> Paginated[UserItem]:
        result = await self.client.load_user_content()
        users = get_records(result.get("recordMap") or {}, "notion_user")
        return Paginated(items=[transform_v3_user(u) for u in users])

    async def get_me(self) -> UserMe:
        result = await self.client.load_user_content()
        record_map = result.get("recordMap") or {}
        user = get_user(record_map, self.user_id) or first_record(record_map, "notion_user")
        if not user:
            raise RecordNotFoundError("User", self.user_id)
        space = first_record(record_map, "space")
        return transform_v3_user_me(user, space.get("name") if space else None)

    # =========================================================================
    # Utility
    # =========================================================================

    async def is_database(self, object_id: str) -> bool:
        try:
            block = await self._get_block(object_id)
        except (RecordNotFoundError, V3HttpError, httpx.HTTPError) as e:
            logger.debug(f"{object_id} is not a readable database: {e}")
            return False
        return block.get("type") in DATABASE_BLOCK_TYPES

    # =========================================================================
    # History / Backlinks / Activity
    # =========================================================================

    async def list_history(self, page_id: str, limit: int = 20) -> list[HistorySnapshot]:
        result = await self.client.get_snapshots_list(page_id, size=limit)
        return [transform_v3_snapshot(s) for s in result.get("snapshots") or []]

    async def list_backlinks(self, page_id: str) -> list[Backlink]:
        return transform_v3_backlinks(await self.client.get_backlinks_for_block(page_id))

    async def get_activity(
        self, page_id: Optional[str] = None, limit: int = 20
    ) -> list[ActivityEntry]:
        result = await self.client.get_activity_log(navigable_block_id=page_id, limit=limit)
        return transform_v3_activity(result)

    # --- Exports ---

    def _export_options(self, format: str) -> dict:
        if format not in EXPORT_FORMATS:
            raise NotionCliError(f'Invalid format "{format}". Use "markdown" or "html".')
        return {"exportType": format, "timeZone": self.client.time_zone, "locale": "en"}

    async def export_page(
        self,
        page_id: str,
        output: str,
        format: str = "markdown",
        recursive: bool = False,
        timeout: float = 120.0
    ) -> ExportResult:
        options = self._export_options(format)
        options["flattenExportFiletree"] = False
        task = {
            "eventName": "exportBlock",
            "request": {
                "block": {"id": page_id, "spaceId": self.space_id},
                "recursive": recursive,
                "exportOptions": options,
                "shouldExportComments": False,
            },
        }
        path, pages = await self._export(task, output, timeout, EXPORT_POLL_INTERVAL)
        return ExportResult(exported=path, format=format, pages_exported=pages, recursive=recursive)

    async def export_workspace(
        self, output: str, format: str = "markdown", timeout: float = 600.0
    ) -> ExportResult:
        task = {
            "eventName": "exportSpace",
            "request": {
                "spaceId": self.space_id,
                "exportOptions": self._export_options(format),
                "shouldExportComments": False,
            },
        }
        path, pages = await self._export(task, output, timeout, WORKSPACE_POLL_INTERVAL)
        return ExportResult(exported=path, format=format, pages_exported=pages)

    async def _export(
        self, task: dict, output: str, timeout: float, poll_interval: float
    ) -> tuple[str, int]:
        """Queue an export, wait for it, and download the zip to `output`."""
        queued = await self.client.enqueue_task(task)
        task_id = queued.get("taskId")
        if not task_id:
            raise ExportError("enqueueTask returned no taskId.")
        logger.info(f"Export task queued: {task_id}")

        finished = await self._poll_task(task_id, timeout, poll_interval)
        if finished.state == "failure":
            detail = f": {finished.error}" if finished.error else ". Check the page ID and try again."
            raise ExportError(f"Export failed{detail}")
        if not finished.export_url:
            raise ExportError("Export succeeded but no download URL was provided.")

        path = Path(output).expanduser().resolve()
        logger.info(f"Downloading export to {path}")
        await self.client.download(finished.export_url, path)
        return str(path), finished.pages_exported

    async def _poll_task(self, task_id: str, timeout: float, poll_interval: float) -> ExportTask:
        deadline = time.monotonic() + timeout
        last_pages = 0
        while time.monotonic() < deadline:
            results = (await self.client.get_tasks([task_id])).get("results") or []
            if not results:
                raise ExportError(f"Task {task_id} not found in getTasks response.")
            task = transform_v3_export_task(results[0])
            if task.state in ("success", "failure"):
                return task
            if task.pages_exported > last_pages:
                logger.info(f"Exporting... {task.pages_exported} pages exported")
                last_pages = task.pages_exported
            await asyncio.sleep(poll_interval)
        raise ExportError(f"Export timed out after {timeout:g}s.", code="EXPORT_TIMEOUT")

    async def aclose(self) -> None:
        await self.client.aclose()
