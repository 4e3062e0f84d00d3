"""Tests for the official backend and its HTTP client, against fakes."""

import asyncio

import httpx
import pytest
from agent_notion.backend import MAX_BLOCKS, read_markdown
from agent_notion.errors import BackendCapabilityError, NotionApiError, NotionCliError, format_error
from agent_notion.official import OfficialBackend, OfficialClient
from agent_notion.official import client as client_module


def _block(block_id: str, text: str = "", block_type: str = "paragraph", has_children: bool = False) -> dict:
    return {
        "object": "block",
        "id": block_id,
        "type": block_type,
        "has_children": has_children,
        block_type: {"rich_text": [{"plain_text": text}] if text else []},
    }


class FakeClient:
    """Stands in for OfficialClient: canned children per block, recorded writes."""

    def __init__(self, children=None, databases=None, pages=None, page_size_cap=100):
        self.children = children or {}
        self.databases = databases or {}
        self.pages = pages or {}
        self.page_size_cap = page_size_cap
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def get(self, endpoint, params=None):
        self.calls.append(("GET", endpoint, params))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if endpoint.startswith("/databases/"):
                db_id = endpoint.split("/")[2]
                if db_id not in self.databases:
                    raise NotionApiError(404, "object_not_found", f"Could not find database {db_id}")
                return self.databases[db_id]
            if endpoint.startswith("/pages/"):
                return self.pages[endpoint.split("/")[2]]
            if endpoint.endswith("/children"):
                block_id = endpoint.split("/")[2]
                items = self.children.get(block_id, [])
                start = int((params or {}).get("start_cursor") or 0)
                size = min((params or {}).get("page_size") or 100, self.page_size_cap)
                end = start + size
                return {
                    "results": items[start:end],
                    "has_more": end < len(items),
                    "next_cursor": str(end) if end < len(items) else None,
                }
            raise AssertionError(f"unexpected GET {endpoint}")
        finally:
            self.in_flight -= 1

    async def post(self, endpoint, json_body=None):
        self.calls.append(("POST", endpoint, json_body))
        if endpoint == "/pages":
            return {
                "id": "new-page",
                "url": "https://www.notion.so/newpage",
                "parent": json_body["parent"],
                "created_time": "2024-05-01T00:00:00.000Z",
            }
        if endpoint == "/comments":
            return {"id": "c1", "rich_text": json_body["rich_text"], "discussion_id": "d1"}
        return {"results": [], "has_more": False, "next_cursor": None}

    async def patch(self, endpoint, json_body=None):
        self.calls.append(("PATCH", endpoint, json_body))
        if endpoint.endswith("/children"):
            return {"results": [{"id": str(i)} for i, _ in enumerate(json_body["children"])]}
        return {"id": endpoint.split("/")[2], "url": "https://www.notion.so/x", "last_edited_time": "t"}

    async def aclose(self):
        self.closed = True


class TestGetAllBlocks:
    """Tests for collecting children up to the cap."""

    def test_caps_at_max_blocks(self):
        children = {"page": [_block(f"b{i}", f"line {i}") for i in range(1050)]}
        client = FakeClient(children=children)
        backend = OfficialBackend(client)

        result = asyncio.run(backend.get_all_blocks("page"))

        assert len(result.blocks) == MAX_BLOCKS == 1000
        assert result.has_more is True
        assert result.blocks[-1].id == "b999"
        assert len(client.calls) == 10

    def test_short_pages_still_capped(self):
        children = {"page": [_block(f"b{i}") for i in range(1050)]}
        client = FakeClient(children=children, page_size_cap=99)

        result = asyncio.run(OfficialBackend(client).get_all_blocks("page"))

        assert len(result.blocks) == MAX_BLOCKS
        assert result.blocks[-1].id == "b999"
        assert result.has_more is True

    def test_exactly_one_page(self):
        backend = OfficialBackend(FakeClient(children={"page": [_block("a"), _block("b")]}))

        result = asyncio.run(backend.get_all_blocks("page"))

        assert [b.id for b in result.blocks] == ["a", "b"]
        assert result.has_more is False

    def test_follows_cursor(self):
        children = {"page": [_block(f"b{i}") for i in range(250)]}
        client = FakeClient(children=children)

        result = asyncio.run(OfficialBackend(client).get_all_blocks("page"))

        assert len(result.blocks) == 250
        assert result.has_more is False
        assert [c[2]["start_cursor"] for c in client.calls] == [None, "100", "200"]


class TestChildFanOut:
    """Tests for get_child_blocks batching."""

    def test_batches_of_five(self):
        parents = [f"p{i}" for i in range(12)]
        children = {p: [_block(f"{p}-c")] for p in parents}
        client = FakeClient(children=children)

        child_map = asyncio.run(OfficialBackend(client).get_child_blocks(parents))

        assert list(child_map) == parents
        assert child_map["p7"][0].id == "p7-c"
        assert client.max_in_flight == 5


class TestReadMarkdown:
    """Tests for read_markdown over the official backend."""

    def test_renders_nested_content(self):
        children = {
            "page": [
                _block("h", "Plan", "heading_1"),
                _block("l", "Step", "bulleted_list_item", has_children=True),
            ],
            "l": [_block("s", "Sub step", "bulleted_list_item")],
        }
        backend = OfficialBackend(FakeClient(children=children))

        output = asyncio.run(read_markdown(backend, "page", depth=2))

        assert output == {"content": "# Plan\n\n- Step\n\n  - Sub step", "blockCount": 2}

    def test_depth_one_skips_children(self):
        children = {"page": [_block("l", "Step", "bulleted_list_item", has_children=True)]}
        client = FakeClient(children=children)

        output = asyncio.run(read_markdown(OfficialBackend(client), "page", depth=1))

        assert output["content"] == "- Step"
        assert len(client.calls) == 1

    def test_truncation_reported(self):
        children = {"page": [_block(f"b{i}", "x") for i in range(1001)]}

        output = asyncio.run(read_markdown(OfficialBackend(FakeClient(children=children)), "page", depth=1))

        assert output["blockCount"] == 1000
        assert output["contentTruncated"] is True


class TestIsDatabase:
    """Tests for the database probe."""

    def test_database(self):
        backend = OfficialBackend(FakeClient(databases={"db": {"id": "db", "properties": {}}}))
        assert asyncio.run(backend.is_database("db")) is True

    def test_not_found_is_false(self):
        backend = OfficialBackend(FakeClient())
        assert asyncio.run(backend.is_database("page")) is False

    def test_transport_error_is_false(self):
        class Broken(FakeClient):
            async def get(self, endpoint, params=None):
                raise httpx.ConnectError("boom")

        assert asyncio.run(OfficialBackend(Broken()).is_database("x")) is False


class TestPageWrites:
    """Tests for create/update/archive payloads."""

    def test_create_in_database_uses_title_column(self):
        database = {"id": "db", "properties": {"Task": {"type": "title"}, "Status": {"type": "select"}}}
        client = FakeClient(databases={"db": database})

        result = asyncio.run(OfficialBackend(client).create_page(
            "db", "Write docs", properties={"Status": "Done", "Name": "ignored"}, icon="📝"
        ))

        _, endpoint, body = client.calls[-1]
        assert endpoint == "/pages"
        assert body == {
            "parent": {"database_id": "db"},
            "properties": {
                "Task": {"title": [{"text": {"content": "Write docs"}}]},
                "Status": {"select": {"name": "Done"}},
            },
            "icon": {"type": "emoji", "emoji": "📝"},
        }
        assert result.id == "new-page"
        assert result.title == "Write docs"

    def test_create_under_page(self):
        client = FakeClient()

        asyncio.run(OfficialBackend(client).create_page("parent-page", "Child"))

        _, _, body = client.calls[-1]
        assert body == {
            "parent": {"page_id": "parent-page"},
            "properties": {"title": {"title": [{"text": {"content": "Child"}}]}},
        }

    def test_create_under_page_rejects_properties(self):
        client = FakeClient()

        with pytest.raises(NotionCliError, match="only be set on database rows"):
            asyncio.run(OfficialBackend(client).create_page(
                "parent-page", "Child", properties={"Status": "Done"}
            ))

        assert [c[0] for c in client.calls] == ["GET"]

    def test_update_under_page(self):
        client = FakeClient(pages={"p1": {"id": "p1", "parent": {"type": "page_id", "page_id": "root"}}})

        asyncio.run(OfficialBackend(client).update_page(
            "p1", title="Renamed", properties={"title": "skip"}
        ))

        assert ("GET", "/databases/root", None) in client.calls
        method, endpoint, body = client.calls[-1]
        assert (method, endpoint) == ("PATCH", "/pages/p1")
        assert body == {"properties": {"title": {"title": [{"text": {"content": "Renamed"}}]}}}

    def test_update_under_page_rejects_properties(self):
        client = FakeClient(pages={"p1": {"id": "p1", "parent": {"type": "workspace", "workspace": True}}})

        with pytest.raises(NotionCliError, match="'Points'"):
            asyncio.run(OfficialBackend(client).update_page("p1", properties={"Points": 3}))

        assert all(c[0] == "GET" for c in client.calls)

    def test_update_database_row_uses_title_column(self):
        database = {"id": "db", "properties": {"Task": {"type": "title"}}}
        row = {"id": "r1", "parent": {"type": "database_id", "database_id": "db"}}
        client = FakeClient(databases={"db": database}, pages={"r1": row})

        asyncio.run(OfficialBackend(client).update_page(
            "r1", title="Renamed", properties={"Task": "skip", "Done": True}
        ))

        assert client.calls[-1][2] == {"properties": {
            "Task": {"title": [{"text": {"content": "Renamed"}}]},
            "Done": {"checkbox": True},
        }}

    def test_update_icon_only_skips_probe(self):
        client = FakeClient()

        asyncio.run(OfficialBackend(client).update_page("p1", icon="🚀"))

        assert client.calls == [("PATCH", "/pages/p1", {"icon": {"type": "emoji", "emoji": "🚀"}})]

    def test_archive(self):
        client = FakeClient()

        result = asyncio.run(OfficialBackend(client).archive_page("p1"))

        assert client.calls[-1] == ("PATCH", "/pages/p1", {"archived": True})
        assert result.archived is True


class TestAppendAndComments:
    """Tests for append and comments."""

    def test_append_single_request(self):
        client = FakeClient()
        blocks = [_block("a", "x"), _block("b", "y")]

        result = asyncio.run(OfficialBackend(client).append_blocks("page", blocks))

        assert result.blocks_added == 2
        assert client.calls == [("PATCH", "/blocks/page/children", {"children": blocks})]

    def test_add_comment(self):
        client = FakeClient()

        result = asyncio.run(OfficialBackend(client).add_comment("page", "Nice"))

        _, endpoint, body = client.calls[-1]
        assert endpoint == "/comments"
        assert body["parent"] == {"page_id": "page"}
        assert result.body == "Nice"
        assert result.discussion_id == "d1"


class TestCapabilityErrors:
    """v3-only operations fail loudly on the official backend."""

    @pytest.mark.parametrize("call", [
        lambda b: b.add_inline_comment("blk", "body", "text"),
        lambda b: b.list_history("page"),
        lambda b: b.list_backlinks("page"),
        lambda b: b.get_activity(),
        lambda b: b.export_page("page", "out.zip"),
        lambda b: b.export_workspace("out.zip"),
    ])
    def test_raises(self, call):
        client = FakeClient()
        with pytest.raises(BackendCapabilityError) as exc_info:
            asyncio.run(call(OfficialBackend(client)))

        assert exc_info.value.backend == "official"
        assert format_error(exc_info.value)["error"] == "UNSUPPORTED_BY_BACKEND"
        assert client.calls == []


class TestOfficialClient:
    """Tests for OfficialClient against httpx.MockTransport."""

    def test_headers_and_params(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        async def run():
            client = OfficialClient("secret", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
            async with client:
                return await client.get("/users", params={"page_size": 10, "start_cursor": None})

        assert asyncio.run(run()) == {"ok": True}
        request = seen[0]
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.headers["Notion-Version"] == "2022-06-28"
        assert str(request.url) == "https://api.notion.com/v1/users?page_size=10"

    def test_retries_429(self, monkeypatch):
        delays = []
        monkeypatch.setattr(client_module, "compute_retry_delay", lambda attempt, retry_after=None: delays.append(
            (attempt, retry_after)) or 0)
        responses = [
            httpx.Response(429, headers={"Retry-After": "2"}, json={"code": "rate_limited"}),
            httpx.Response(200, json={"id": "me"}),
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        async def run():
            client = OfficialClient("t", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
            async with client:
                return await client.get("/users/me")

        assert asyncio.run(run()) == {"id": "me"}
        assert delays == [(0, 2.0)]

    def test_gives_up_after_max_retries(self, monkeypatch):
        monkeypatch.setattr(client_module, "compute_retry_delay", lambda attempt, retry_after=None: 0)
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(429, json={"code": "rate_limited", "message": "slow down"})

        async def run():
            client = OfficialClient("t", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
            async with client:
                await client.get("/users/me")

        with pytest.raises(NotionApiError) as exc_info:
            asyncio.run(run())
        assert exc_info.value.status == 429
        assert len(attempts) == client_module.MAX_RETRIES + 1
        assert format_error(exc_info.value)["error"] == "RATE_LIMITED"

    def test_error_body_parsed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"code": "object_not_found", "message": "Could not find page"})

        async def run():
            client = OfficialClient("t", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
            async with client:
                await client.get("/pages/x")

        with pytest.raises(NotionApiError) as exc_info:
            asyncio.run(run())
        assert exc_info.value.code == "object_not_found"
        assert format_error(exc_info.value)["error"] == "NOT_FOUND"

    def test_compute_retry_delay_honors_retry_after(self):
        delay = client_module.compute_retry_delay(0, retry_after=5.0)
        assert 5.0 <= delay <= 5.0 + client_module.RETRY_JITTER_MAX
