"""agent-notion command line.

Every command prints JSON on stdout. Failures print a JSON error (with a
hint where one exists) on stderr and exit with status 1.

Usage:
    agent-notion search "meeting notes" --filter page
    agent-notion page get <id> --content
    agent-notion block append <id> --content "# Title\n- [ ] task"
    agent-notion --backend v3 comment add <block-id> "Typo?" --text "teh"
    agent-notion export page <id> --recursive --output notes.zip
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from . import __version__
from .backend import EXPORT_FORMATS, NotionBackend, read_markdown
from .config import BACKENDS, create_backend, load_settings
from .errors import NotionCliError
from .ids import normalize_id
from .markdown import flatten_block, markdown_to_blocks
from .models import Paginated, to_dict
from .output import print_error, print_json, print_paginated, resolve_page_size

logger = logging.getLogger("agent-notion")


# =============================================================================
# Input helpers
# =============================================================================

def _parse_json(value: Optional[str], flag: str, expect: Optional[type] = None) -> Any:
    """Parse a JSON-valued flag, failing with a message that names the flag."""
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise NotionCliError(f"Invalid JSON for {flag}: {e.msg} (line {e.lineno}, column {e.colno})") from e
    if expect is not None and not isinstance(parsed, expect):
        raise NotionCliError(f"{flag} must be a JSON {expect.__name__}")
    return parsed


def _read_content(args: argparse.Namespace) -> Optional[str]:
    if getattr(args, "file", None):
        path = Path(args.file).expanduser()
        if not path.exists():
            raise NotionCliError(f"File not found: {path}")
        return path.read_text()
    if getattr(args, "content", None) == "-":
        return sys.stdin.read()
    return getattr(args, "content", None)


# =============================================================================
# Commands
# =============================================================================

async def cmd_search(backend: NotionBackend, args) -> Any:
    return await backend.search(
        args.query, filter=args.filter, limit=resolve_page_size(args.limit), cursor=args.cursor
    )


async def cmd_database_list(backend: NotionBackend, args) -> Any:
    return await backend.list_databases(limit=resolve_page_size(args.limit), cursor=args.cursor)


async def cmd_database_get(backend: NotionBackend, args) -> Any:
    return await backend.get_database(normalize_id(args.id))


async def cmd_database_query(backend: NotionBackend, args) -> Any:
    filter_ = _parse_json(args.filter, "--filter", dict)
    sort = _parse_json(args.sort, "--sort")
    return await backend.query_database(
        normalize_id(args.id), filter=filter_, sort=sort,
        limit=resolve_page_size(args.limit), cursor=args.cursor,
    )


async def cmd_database_schema(backend: NotionBackend, args) -> Any:
    return await backend.get_database_schema(normalize_id(args.id))


async def cmd_page_get(backend: NotionBackend, args) -> Any:
    page_id = normalize_id(args.id)
    output = to_dict(await backend.get_page(page_id))

    if args.raw_content:
        result = await backend.get_all_blocks(page_id)
        output["blocks"] = [flatten_block(b) for b in result.blocks]
        output["blockCount"] = len(result.blocks)
        if result.has_more:
            output["contentTruncated"] = True
    elif args.content:
        output.update(await read_markdown(backend, page_id, depth=args.depth))
    return output


async def cmd_page_create(backend: NotionBackend, args) -> Any:
    properties = _parse_json(args.properties, "--properties", dict)
    return await backend.create_page(
        normalize_id(args.parent), args.title, properties=properties, icon=args.icon
    )


async def cmd_page_update(backend: NotionBackend, args) -> Any:
    properties = _parse_json(args.properties, "--properties", dict)
    if not (args.title or properties or args.icon):
        raise NotionCliError("Nothing to update. Pass --title, --properties or --icon.")
    return await backend.update_page(
        normalize_id(args.id), title=args.title, properties=properties, icon=args.icon
    )


async def cmd_page_archive(backend: NotionBackend, args) -> Any:
    return await backend.archive_page(normalize_id(args.id))


async def cmd_block_list(backend: NotionBackend, args) -> Any:
    block_id = normalize_id(args.id)
    if args.raw:
        page = await backend.list_blocks(block_id, limit=resolve_page_size(args.limit), cursor=args.cursor)
        return Paginated(
            items=[flatten_block(b) for b in page.items],
            has_more=page.has_more,
            next_cursor=page.next_cursor,
        )
    rendered = await read_markdown(backend, block_id, depth=args.depth)
    return {
        "pageId": block_id,
        "content": rendered["content"],
        "blockCount": rendered["blockCount"],
        "hasMore": rendered.get("contentTruncated", False),
    }


async def cmd_block_append(backend: NotionBackend, args) -> Any:
    content = _read_content(args)
    if args.blocks is not None:
        blocks = _parse_json(args.blocks, "--blocks", list)
    elif content is not None:
        blocks = markdown_to_blocks(content)
    else:
        raise NotionCliError("Provide --content (markdown), --file or --blocks (JSON array).")
    if not blocks:
        raise NotionCliError("Nothing to append: the content produced no blocks.")

    block_id = normalize_id(args.id)
    result = await backend.append_blocks(block_id, blocks)
    return {"pageId": block_id, "blocksAdded": result.blocks_added}


async def cmd_comment_list(backend: NotionBackend, args) -> Any:
    return await backend.list_comments(
        normalize_id(args.id), limit=resolve_page_size(args.limit), cursor=args.cursor
    )


async def cmd_comment_add(backend: NotionBackend, args) -> Any:
    if not args.body.strip():
        raise NotionCliError("Comment body is empty.")
    target = normalize_id(args.id)
    if args.text:
        return await backend.add_inline_comment(target, args.body, args.text, args.occurrence)
    return await backend.add_comment(target, args.body)


async def cmd_user_list(backend: NotionBackend, args) -> Any:
    return await backend.list_users(limit=resolve_page_size(args.limit), cursor=args.cursor)


async def cmd_user_me(backend: NotionBackend, args) -> Any:
    return await backend.get_me()


async def cmd_history(backend: NotionBackend, args) -> Any:
    snapshots = await backend.list_history(normalize_id(args.id), limit=args.limit)
    return {"snapshots": to_dict(snapshots), "total": len(snapshots)}


async def cmd_backlinks(backend: NotionBackend, args) -> Any:
    backlinks = await backend.list_backlinks(normalize_id(args.id))
    return {"backlinks": to_dict(backlinks), "total": len(backlinks)}


async def cmd_activity(backend: NotionBackend, args) -> Any:
    page_id = normalize_id(args.page) if args.page else None
    entries = await backend.get_activity(page_id, limit=args.limit)
    return {"activities": to_dict(entries), "total": len(entries)}


def default_export_filename() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    return f"notion-export-{stamp}.zip"


async def cmd_export_page(backend: NotionBackend, args) -> Any:
    return await backend.export_page(
        normalize_id(args.id),
        args.output or default_export_filename(),
        format=args.format,
        recursive=args.recursive,
        timeout=args.timeout,
    )


async def cmd_export_workspace(backend: NotionBackend, args) -> Any:
    return await backend.export_workspace(
        args.output or default_export_filename(),
        format=args.format,
        timeout=args.timeout,
    )


# =============================================================================
# Parser
# =============================================================================

def _add_paging(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--limit", type=int, help="Page size (1-100, default 50)")
    parser.add_argument("--cursor", help="Cursor from a previous page's pagination.nextCursor")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-notion",
        description="Notion for scripts and agents. Output is JSON.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--token-file", help="Path to file containing the Notion API token")
    parser.add_argument("--session-file", help="Path to v3 session JSON (token_v2, user_id, space_id)")
    parser.add_argument("--backend", choices=BACKENDS, help="Force a backend (default: v3 if a session exists)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log requests to stderr")

    commands = parser.add_subparsers(dest="command", required=True)

    p = commands.add_parser("search", help="Search pages and databases by title")
    p.add_argument("query")
    p.add_argument("--filter", choices=("page", "database"))
    _add_paging(p)
    p.set_defaults(handler=cmd_search)

    # database
    database = commands.add_parser("database", help="Databases").add_subparsers(dest="action", required=True)
    p = database.add_parser("list", help="List databases")
    _add_paging(p)
    p.set_defaults(handler=cmd_database_list)
    p = database.add_parser("get", help="Database details and column definitions")
    p.add_argument("id")
    p.set_defaults(handler=cmd_database_get)
    p = database.add_parser("query", help="Query rows")
    p.add_argument("id")
    p.add_argument("--filter", help="Filter as JSON (backend dialect)")
    p.add_argument("--sort", help="Sort as JSON (backend dialect)")
    _add_paging(p)
    p.set_defaults(handler=cmd_database_query)
    p = database.add_parser("schema", help="Columns flattened for building filters")
    p.add_argument("id")
    p.set_defaults(handler=cmd_database_schema)

    # page
    page = commands.add_parser("page", help="Pages").add_subparsers(dest="action", required=True)
    p = page.add_parser("get", help="Page properties, optionally with content")
    p.add_argument("id")
    p.add_argument("--content", action="store_true", help="Include content as markdown")
    p.add_argument("--raw-content", action="store_true", help="Include content as block objects")
    p.add_argument("--depth", type=int, default=2, help="Nesting levels to fetch for --content")
    p.set_defaults(handler=cmd_page_get)
    p = page.add_parser("create", help="Create a page under a page or database")
    p.add_argument("--parent", required=True)
    p.add_argument("--title", required=True)
    p.add_argument("--properties", help='Extra properties as JSON, e.g. {"Status": "Done"}')
    p.add_argument("--icon", help="Emoji icon")
    p.set_defaults(handler=cmd_page_create)
    p = page.add_parser("update", help="Update title, properties or icon")
    p.add_argument("id")
    p.add_argument("--title")
    p.add_argument("--properties")
    p.add_argument("--icon")
    p.set_defaults(handler=cmd_page_update)
    p = page.add_parser("archive", help="Move a page to trash")
    p.add_argument("id")
    p.set_defaults(handler=cmd_page_archive)

    # block
    block = commands.add_parser("block", help="Page content").add_subparsers(dest="action", required=True)
    p = block.add_parser("list", help="Content of a page or block")
    p.add_argument("id")
    p.add_argument("--raw", action="store_true", help="One page of block objects instead of markdown")
    p.add_argument("--depth", type=int, default=2)
    _add_paging(p)
    p.set_defaults(handler=cmd_block_list)
    p = block.add_parser("append", help="Append markdown or block objects")
    p.add_argument("id")
    p.add_argument("--content", help='Markdown ("-" reads stdin)')
    p.add_argument("--file", help="Markdown file")
    p.add_argument("--blocks", help="Public-API block objects as a JSON array")
    p.set_defaults(handler=cmd_block_append)

    # comment
    comment = commands.add_parser("comment", help="Comments").add_subparsers(dest="action", required=True)
    p = comment.add_parser("list", help="Comments on a page")
    p.add_argument("id")
    _add_paging(p)
    p.set_defaults(handler=cmd_comment_list)
    p = comment.add_parser("add", help="Comment on a page, or on text inside a block (--text, v3 only)")
    p.add_argument("id", help="Page id, or block id with --text")
    p.add_argument("body")
    p.add_argument("--text", help="Anchor the comment to this text in the block")
    p.add_argument("--occurrence", type=int, default=1, help="Which match of --text (1-based)")
    p.set_defaults(handler=cmd_comment_add)

    # user
    user = commands.add_parser("user", help="Users").add_subparsers(dest="action", required=True)
    p = user.add_parser("list", help="Workspace members")
    _add_paging(p)
    p.set_defaults(handler=cmd_user_list)
    p = user.add_parser("me", help="The authenticated user or bot")
    p.set_defaults(handler=cmd_user_me)

    # v3-only
    p = commands.add_parser("history", help="Version history of a page (v3)")
    p.add_argument("id")
    p.add_argument("--limit", type=int, default=20)
    p.set_defaults(handler=cmd_history)
    p = commands.add_parser("backlinks", help="Pages linking to a page (v3)")
    p.add_argument("id")
    p.set_defaults(handler=cmd_backlinks)
    p = commands.add_parser("activity", help="Recent activity in the workspace or a page (v3)")
    p.add_argument("--page")
    p.add_argument("--limit", type=int, default=20)
    p.set_defaults(handler=cmd_activity)

    # export (v3)
    export = commands.add_parser("export", help="Export pages or the workspace as a zip (v3)")
    export = export.add_subparsers(dest="action", required=True)
    p = export.add_parser("page", help="Export a page to markdown or HTML")
    p.add_argument("id")
    p.add_argument("--format", choices=EXPORT_FORMATS, default="markdown")
    p.add_argument("--recursive", action="store_true", help="Include subpages")
    p.add_argument("--output", help="Zip path (default: notion-export-<timestamp>.zip)")
    p.add_argument("--timeout", type=float, default=120.0, help="Seconds to wait for the export")
    p.set_defaults(handler=cmd_export_page)
    p = export.add_parser("workspace", help="Export the whole workspace")
    p.add_argument("--format", choices=EXPORT_FORMATS, default="markdown")
    p.add_argument("--output", help="Zip path (default: notion-export-<timestamp>.zip)")
    p.add_argument("--timeout", type=float, default=600.0, help="Seconds to wait for the export")
    p.set_defaults(handler=cmd_export_workspace)

    return parser


# =============================================================================
# Main Entry Point
# =============================================================================

async def run(args: argparse.Namespace) -> Any:
    settings = load_settings(args.token_file, args.session_file, args.backend)
    async with create_backend(settings) as backend:
        return await args.handler(backend, args)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    try:
        result = asyncio.run(run(args))
    except Exception as e:
        logger.debug("Command failed", exc_info=True)
        print_error(e)
        return 1

    if isinstance(result, Paginated):
        print_paginated(result)
    else:
        print_json(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
