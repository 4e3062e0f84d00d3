"""Tests for the MCP tools and the /health route."""

import asyncio
import json

import pytest
from starlette.applications import Starlette
from starlette.routing import Route
from starlette.testclient import TestClient

from agent_notion import __version__, server
from agent_notion.errors import BackendCapabilityError, HINTS
from agent_notion.models import AppendResult, BlockListResult, CommentCreateResult, NormalizedBlock, Paginated, QueryRow

PAGE_ID = "12345678-1234-1234-1234-123456789abc"


class StubBackend:
    kind = "official"

    def __init__(self):
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        pass

    async def get_all_blocks(self, block_id):
        return BlockListResult(
            blocks=[NormalizedBlock(id="t", type="to_do", rich_text="ship", checked=False)],
            has_more=True,
        )

    async def get_child_blocks(self, block_ids):
        return {}

    async def append_blocks(self, block_id, blocks):
        self.calls.append(("append_blocks", block_id, blocks))
        return AppendResult(blocks_added=len(blocks))

    async def add_comment(self, page_id, body):
        self.calls.append(("add_comment", page_id, body))
        return CommentCreateResult(id="c1", body=body)

    async def add_inline_comment(self, block_id, body, text, occurrence=1):
        raise BackendCapabilityError(self.kind, "inline comments", HINTS["v3_only"])

    async def query_database(self, database_id, filter=None, sort=None, limit=None, cursor=None):
        self.calls.append(("query_database", database_id, filter, sort, limit, cursor))
        return Paginated(items=[QueryRow(id="r1", url="u", properties={"Name": "Row", "Done": False})])


@pytest.fixture
def backend(monkeypatch):
    stub = StubBackend()
    monkeypatch.setattr(server, "_open_backend", lambda: stub)
    return stub


class TestTools:
    """Tests for the MCP tool functions."""

    def test_read_content(self, backend):
        output = json.loads(asyncio.run(server.notion_read_content(PAGE_ID.replace("-", ""))))

        assert output == {
            "pageId": PAGE_ID,
            "content": "- [ ] ship",
            "blockCount": 1,
            "contentTruncated": True,
        }

    def test_append(self, backend):
        output = json.loads(asyncio.run(server.notion_append(PAGE_ID, "## Notes\n1. one")))

        assert output == {"pageId": PAGE_ID, "blocksAdded": 2}
        assert [b["type"] for b in backend.calls[0][2]] == ["heading_2", "numbered_list_item"]

    def test_append_empty(self, backend):
        output = json.loads(asyncio.run(server.notion_append(PAGE_ID, "\n\n")))
        assert output["error"] == "INVALID_INPUT"
        assert backend.calls == []

    def test_comment(self, backend):
        output = json.loads(asyncio.run(server.notion_comment(PAGE_ID, "LGTM")))
        assert output == {"id": "c1", "body": "LGTM"}

    def test_inline_comment_unsupported(self, backend):
        output = json.loads(asyncio.run(server.notion_comment(PAGE_ID, "Typo?", text="teh")))
        assert output["error"] == "UNSUPPORTED_BY_BACKEND"

    def test_query_database(self, backend):
        output = json.loads(asyncio.run(server.notion_query_database(PAGE_ID, filter={"property": "Done"})))

        assert output == {"items": [{"id": "r1", "url": "u", "properties": {"Name": "Row", "Done": False}}]}
        assert backend.calls[0] == ("query_database", PAGE_ID, {"property": "Done"}, None, 50, None)

    def test_search_rejects_bad_filter(self, backend):
        output = json.loads(asyncio.run(server.notion_search("x", filter="block")))
        assert output["error"] == "INVALID_INPUT"

    def test_without_credentials(self, monkeypatch):
        monkeypatch.setattr(server, "_settings", None)
        output = json.loads(asyncio.run(server.notion_get_page(PAGE_ID)))
        assert output["error"] == "INVALID_INPUT"


class TestHealth:
    """Tests for the /health route."""

    def test_without_settings(self, monkeypatch):
        monkeypatch.setattr(server, "_settings", None)
        app = Starlette(routes=[Route("/health", server.health_endpoint, methods=["GET"])])

        response = TestClient(app).get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "version": __version__, "backend": None}
