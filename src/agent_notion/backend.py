"""The capability interface every backend implements.

Commands talk to `NotionBackend` only. Which implementation they get is
decided once, from the configured session (see `config.create_backend`), and
every method returns canonical types from `models`.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from .errors import HINTS, BackendCapabilityError
from .markdown import blocks_to_markdown
from .models import (
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

logger = logging.getLogger("agent-notion")

# Most blocks fetched for one parent before reporting truncation
MAX_BLOCKS = 1000
# Page size used while collecting all blocks
BLOCK_PAGE_SIZE = 100
# Concurrent child fetches per batch (Notion limit: ~3 req/sec on average)
CHILD_FETCH_BATCH = 5
DEFAULT_PAGE_SIZE = 50
EXPORT_FORMATS = ("markdown", "html")


class NotionBackend(ABC):
    """All operations the CLI and MCP tools need, backend-agnostic."""

    kind: str = ""

    # --- Search ---

    @abstractmethod
    async def search(
        self,
        query: str,
        filter: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None
    ) -> Paginated[SearchResult]:
        """Search pages/databases by title. `filter` is "page" or "database"."""

    # --- Databases ---

    @abstractmethod
    async def list_databases(
        self, limit: Optional[int] = None, cursor: Optional[str] = None
    ) -> Paginated[DatabaseListItem]:
        ...

    @abstractmethod
    async def get_database(self, database_id: str) -> DatabaseDetail:
        ...

    @abstractmethod
    async def query_database(
        self,
        database_id: str,
        filter: Any = None,
        sort: Any = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None
    ) -> Paginated[QueryRow]:
        """Query rows. `filter`/`sort` are passed through in the backend's own dialect."""

    @abstractmethod
    async def get_database_schema(self, database_id: str) -> DatabaseSchema:
        ...

    # --- Pages ---

    @abstractmethod
    async def get_page(self, page_id: str) -> PageDetail:
        ...

    @abstractmethod
    async def create_page(
        self,
        parent_id: str,
        title: str,
        properties: Optional[dict[str, Any]] = None,
        icon: Optional[str] = None
    ) -> PageCreateResult:
        """Create a page under a page or a database (row)."""

    @abstractmethod
    async def update_page(
        self,
        page_id: str,
        title: Optional[str] = None,
        properties: Optional[dict[str, Any]] = None,
        icon: Optional[str] = None
    ) -> PageUpdateResult:
        ...

    @abstractmethod
    async def archive_page(self, page_id: str) -> PageArchiveResult:
        ...

    # --- Blocks ---

    @abstractmethod
    async def list_blocks(
        self, block_id: str, limit: Optional[int] = None, cursor: Optional[str] = None
    ) -> Paginated[NormalizedBlock]:
        """One page of direct children."""

    @abstractmethod
    async def get_all_blocks(self, block_id: str) -> BlockListResult:
        """Direct children up to MAX_BLOCKS.

        When the cap is hit and the server still has more, `has_more` is set
        but no cursor is offered: re-scope the request (e.g. per child block)
        to see the rest.
        """

    async def get_child_blocks(self, block_ids: list[str]) -> dict[str, list[NormalizedBlock]]:
        """Fetch the children of several blocks, CHILD_FETCH_BATCH at a time.

        Batches run sequentially; requests inside a batch run concurrently.
        Each result lands under its own key, so no locking is needed.
        """
        child_map: dict[str, list[NormalizedBlock]] = {}
        for start in range(0, len(block_ids), CHILD_FETCH_BATCH):
            batch = block_ids[start:start + CHILD_FETCH_BATCH]
            results = await asyncio.gather(*(self.get_all_blocks(b) for b in batch))
            for block_id, result in zip(batch, results):
                child_map[block_id] = result.blocks
        return child_map

    @abstractmethod
    async def append_blocks(self, block_id: str, blocks: list[dict]) -> AppendResult:
        """Append public-API block objects (see `markdown.markdown_to_blocks`)."""

    # --- Comments ---

    @abstractmethod
    async def list_comments(
        self, page_id: str, limit: Optional[int] = None, cursor: Optional[str] = None
    ) -> Paginated[CommentItem]:
        ...

    @abstractmethod
    async def add_comment(self, page_id: str, body: str) -> CommentCreateResult:
        ...

    async def add_inline_comment(
        self, block_id: str, body: str, text: str, occurrence: int = 1
    ) -> CommentCreateResult:
        """Comment anchored to the `occurrence`-th match of `text` in a block."""
        raise BackendCapabilityError(self.kind, "inline comments", HINTS["v3_only"])

    # --- Users ---

    @abstractmethod
    async def list_users(
        self, limit: Optional[int] = None, cursor: Optional[str] = None
    ) -> Paginated[UserItem]:
        ...

    @abstractmethod
    async def get_me(self) -> UserMe:
        ...

    # --- Utility ---

    @abstractmethod
    async def is_database(self, object_id: str) -> bool:
        """True if `object_id` is a database. Any lookup failure counts as False."""

    # --- v3-only features ---

    async def list_history(self, page_id: str, limit: int = 20) -> list[HistorySnapshot]:
        raise BackendCapabilityError(self.kind, "page history", HINTS["v3_only"])

    async def list_backlinks(self, page_id: str) -> list[Backlink]:
        raise BackendCapabilityError(self.kind, "backlinks", HINTS["v3_only"])

    async def get_activity(
        self, page_id: Optional[str] = None, limit: int = 20
    ) -> list[ActivityEntry]:
        raise BackendCapabilityError(self.kind, "activity log", HINTS["v3_only"])

    async def export_page(
        self,
        page_id: str,
        output: str,
        format: str = "markdown",
        recursive: bool = False,
        timeout: float = 120.0
    ) -> ExportResult:
        raise BackendCapabilityError(self.kind, "page export", HINTS["v3_only"])

    async def export_workspace(
        self, output: str, format: str = "markdown", timeout: float = 600.0
    ) -> ExportResult:
        raise BackendCapabilityError(self.kind, "workspace export", HINTS["v3_only"])

    async def aclose(self) -> None:
        """Release network resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()


async def read_markdown(backend: NotionBackend, block_id: str, depth: int = 2) -> dict:
    """Fetch a page's content tree and render it as markdown.

    Levels are fetched breadth-first: the top level with `get_all_blocks`,
    then each deeper level with `get_child_blocks`.

    Args:
        backend: Active backend.
        block_id: Page or block whose children to render.
        depth: Levels to fetch (1 = top level only).

    Returns:
        {"content": str, "blockCount": int} plus "contentTruncated": True when
        the top level hit MAX_BLOCKS.
    """
    top = await backend.get_all_blocks(block_id)
    child_map: dict[str, list[NormalizedBlock]] = {}

    level = top.blocks
    for _ in range(1, max(depth, 1)):
        parents = [b.id for b in level if b.has_children]
        if not parents:
            break
        fetched = await backend.get_child_blocks(parents)
        child_map.update(fetched)
        level = [child for children in fetched.values() for child in children]

    output = {
        "content": blocks_to_markdown(top.blocks, child_map),
        "blockCount": len(top.blocks),
    }
    if top.has_more:
        logger.info(f"Content of {block_id} truncated at {MAX_BLOCKS} blocks")
        output["contentTruncated"] = True
    return output
