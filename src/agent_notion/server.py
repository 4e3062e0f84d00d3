"""agent-notion MCP server.

Exposes the backend operations agents use most as MCP tools. Every tool
returns JSON text: the result on success, the same `{"error": ...}` object
the CLI prints on failure.

Credentials: --token-file / --session-file at startup, else the same
environment variables as the CLI.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Optional

from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from . import __version__
from .backend import NotionBackend, read_markdown
from .config import BACKENDS, Settings, create_backend, load_settings
from .errors import NotionCliError, format_error
from .ids import normalize_id
from .markdown import markdown_to_blocks
from .models import Paginated, to_dict
from .output import prune_empty, render_paginated, resolve_page_size

logger = logging.getLogger("agent-notion")

mcp = FastMCP("agent-notion")

_settings: Optional[Settings] = None


def _open_backend() -> NotionBackend:
    if _settings is None:
        raise NotionCliError("Server started without credentials")
    return create_backend(_settings)


def _dump(data: Any) -> str:
    if isinstance(data, Paginated):
        data = render_paginated(data)
    else:
        data = prune_empty(data)
    return json.dumps(data, indent=2, ensure_ascii=False)


async def _call(action: Callable[[NotionBackend], Awaitable[Any]]) -> str:
    """Run `action` against a fresh backend and render the outcome as JSON text."""
    try:
        async with _open_backend() as backend:
            return _dump(await action(backend))
    except Exception as e:
        logger.warning(f"Tool failed: {type(e).__name__}: {e}")
        return json.dumps(format_error(e), ensure_ascii=False)


# =============================================================================
# MCP Tools
# =============================================================================

@mcp.tool()
async def notion_search(
    query: str,
    filter: Optional[str] = None,
    limit: int = 20,
    cursor: Optional[str] = None
) -> str:
    """Search pages and databases by title.

    Args:
        query: Text to search for.
        filter: "page" or "database" to restrict the result type.
        limit: Page size (1-100).
        cursor: pagination.nextCursor from a previous call.
    """
    if filter not in (None, "page", "database"):
        return json.dumps(format_error(NotionCliError('filter must be "page" or "database"')))
    return await _call(lambda b: b.search(query, filter=filter, limit=resolve_page_size(limit), cursor=cursor))


@mcp.tool()
async def notion_get_page(ref: str) -> str:
    """Get a page's properties (no content). `ref` is an id or Notion URL."""
    return await _call(lambda b: b.get_page(normalize_id(ref)))


@mcp.tool()
async def notion_read_content(ref: str, depth: int = 2) -> str:
    """Read a page's content as markdown.

    Args:
        ref: Page or block id, or a Notion URL.
        depth: Nesting levels to fetch (1 = top level only).

    Returns:
        JSON with content, blockCount and contentTruncated when the page has
        more than 1000 top-level blocks.
    """
    async def action(backend: NotionBackend) -> dict:
        page_id = normalize_id(ref)
        output = {"pageId": page_id}
        output.update(await read_markdown(backend, page_id, depth=depth))
        return output

    return await _call(action)


@mcp.tool()
async def notion_append(ref: str, markdown: str) -> str:
    """Append markdown to the end of a page.

    Supported: # headings, - bullets, 1. numbers, - [ ] todos, > quotes,
    --- dividers and ``` fenced code. Anything else becomes a paragraph.
    """
    async def action(backend: NotionBackend) -> dict:
        blocks = markdown_to_blocks(markdown)
        if not blocks:
            raise NotionCliError("Nothing to append: the markdown produced no blocks.")
        page_id = normalize_id(ref)
        result = await backend.append_blocks(page_id, blocks)
        return {"pageId": page_id, "blocksAdded": result.blocks_added}

    return await _call(action)


@mcp.tool()
async def notion_comment(
    ref: str,
    body: str,
    text: Optional[str] = None,
    occurrence: int = 1
) -> str:
    """Add a comment.

    Without `text`, comments on the page `ref`. With `text`, `ref` is a block
    and the comment is anchored to the `occurrence`-th match of `text` inside
    it (v3 backend only).
    """
    async def action(backend: NotionBackend) -> Any:
        if not body.strip():
            raise NotionCliError("Comment body is empty.")
        target = normalize_id(ref)
        if text:
            return await backend.add_inline_comment(target, body, text, occurrence)
        return await backend.add_comment(target, body)

    return await _call(action)


@mcp.tool()
async def notion_query_database(
    ref: str,
    filter: Optional[dict] = None,
    sort: Optional[Any] = None,
    limit: int = 50,
    cursor: Optional[str] = None
) -> str:
    """Query database rows with properties flattened to plain values.

    `filter` and `sort` use the active backend's own dialect; call with
    neither to get rows in the default order.
    """
    return await _call(lambda b: b.query_database(
        normalize_id(ref), filter=filter, sort=sort, limit=resolve_page_size(limit), cursor=cursor
    ))


# =============================================================================
# HTTP Endpoints (/health)
# =============================================================================

async def health_endpoint(request: Request) -> JSONResponse:
    """Health check with a live credential probe."""
    status: dict[str, Any] = {
        "status": "ok",
        "version": __version__,
        "backend": _settings.backend if _settings else None,
    }
    if _settings is not None:
        try:
            async with _open_backend() as backend:
                me = await backend.get_me()
            status["user"] = to_dict(me)
        except Exception as e:
            status["auth"] = f"error: {type(e).__name__}"
    return JSONResponse(status)


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run the MCP server.

    Usage:
        agent-notion-mcp --token-file ~/.notion-token      # stdio
        agent-notion-mcp --session-file ~/.notion-v3.json --http
    """
    import argparse

    parser = argparse.ArgumentParser(description="agent-notion MCP server")
    parser.add_argument("--token-file", help="Path to file containing the Notion API token")
    parser.add_argument("--session-file", help="Path to v3 session JSON (token_v2, user_id, space_id)")
    parser.add_argument("--backend", choices=BACKENDS, help="Force a backend")
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server on localhost:2052 instead of stdio"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    global _settings
    try:
        _settings = load_settings(args.token_file, args.session_file, args.backend)
    except NotionCliError as e:
        logger.error(str(e))
        raise SystemExit(1)
    logger.info(f"Backend: {_settings.backend}")

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info("Starting agent-notion MCP server on http://127.0.0.1:2052")
        uvicorn.run(app, host="127.0.0.1", port=2052, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()
