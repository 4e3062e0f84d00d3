"""Tests for the v3 backend against an in-memory record store."""

import asyncio
import json

import httpx
import pytest
from agent_notion.backend import read_markdown
from agent_notion.errors import ExportError, NotionCliError, RecordNotFoundError, V3HttpError, format_error
from agent_notion.markdown import markdown_to_blocks
from agent_notion.v3 import V3Backend, V3Client
from agent_notion.v3 import backend as v3_backend

SPACE = "space-1"
USER = "user-1"


class FakeV3Client:
    """Serves records from a dict and records every transaction."""

    def __init__(self, records=None, responses=None, task_states=None):
        self.user_id = USER
        self.space_id = SPACE
        self.time_zone = "UTC"
        self.records = records or {}
        self.responses = responses or {}
        self.task_states = list(task_states or [])
        self.enqueued = []
        self.task_polls = 0
        self.downloads = []
        self.transactions = []
        self.sync_calls = []
        self.closed = False

    def _record_map(self, pointers):
        record_map = {}
        for table, record_id in pointers:
            record = self.records.get(table, {}).get(record_id)
            if record is not None:
                # Newer response shape: value nested with a role
                record_map.setdefault(table, {})[record_id] = {"value": {"value": record, "role": "editor"}}
        return record_map

    async def sync_record_values(self, pointers):
        self.sync_calls.append(list(pointers))
        return {"recordMap": self._record_map(pointers)}

    async def query_collection(self, collection_id, view_id, filter=None, sort=None, limit=50, search_query=""):
        self.query = {"collection_id": collection_id, "view_id": view_id, "filter": filter, "sort": sort}
        return self.responses["queryCollection"]

    async def search(self, query, limit=20, ancestor_id=None, filters=None):
        return self.responses["search"]

    async def load_user_content(self):
        return self.responses["loadUserContent"]

    async def get_snapshots_list(self, block_id, size=20):
        return self.responses["getSnapshotsList"]

    async def get_backlinks_for_block(self, block_id):
        return self.responses["getBacklinksForBlock"]

    async def get_activity_log(self, navigable_block_id=None, limit=20):
        return self.responses["getActivityLog"]

    async def enqueue_task(self, task):
        self.enqueued.append(task)
        return {"taskId": "task-1"}

    async def get_tasks(self, task_ids):
        self.task_polls += 1
        if not self.task_states:
            return {"results": []}
        # The last state repeats once the script runs out
        state = self.task_states.pop(0) if len(self.task_states) > 1 else self.task_states[0]
        return {"results": [{"id": task_ids[0], **state}]}

    async def download(self, url, path):
        self.downloads.append((url, path))
        path.write_bytes(b"PK")
        return 2

    async def save_transactions(self, operations):
        self.transactions.append(list(operations))
        return {}

    async def aclose(self):
        self.closed = True


def _text_block(block_id, text, block_type="text", **extra):
    return {"id": block_id, "type": block_type, "alive": True,
            "properties": {"title": [[text]]}, "parent_table": "block", **extra}


SCHEMA = {
    "title": {"name": "Name", "type": "title"},
    "abc": {"name": "Status", "type": "select", "options": [{"id": "o1", "value": "Done"}]},
}


def _database_records():
    return {
        "block": {
            "db": {"id": "db", "type": "collection_view_page", "alive": True,
                   "collection_id": "coll", "view_ids": ["view-1"]},
            "plain": _text_block("plain", "A page", "page"),
        },
        "collection": {
            "coll": {"id": "coll", "name": [["Tasks"]], "schema": SCHEMA,
                     "parent_id": "db", "parent_table": "block"},
        },
    }


class TestBlocks:
    """Tests for block listing."""

    def test_list_blocks_offset_cursor(self):
        children = {f"b{i}": _text_block(f"b{i}", f"line {i}") for i in range(5)}
        page = {"id": "page", "type": "page", "content": list(children)}
        backend = V3Backend(FakeV3Client({"block": {"page": page, **children}}))

        first = asyncio.run(backend.list_blocks("page", limit=2))
        last = asyncio.run(backend.list_blocks("page", limit=2, cursor="4"))

        assert [b.id for b in first.items] == ["b0", "b1"]
        assert first.items[0].type == "paragraph"
        assert first.items[0].rich_text == "line 0"
        assert first.has_more is True
        assert first.next_cursor == "2"
        assert [b.id for b in last.items] == ["b4"]
        assert last.has_more is False
        assert last.next_cursor is None

    def test_invalid_cursor(self):
        page = {"id": "page", "type": "page", "content": []}
        backend = V3Backend(FakeV3Client({"block": {"page": page}}))

        with pytest.raises(NotionCliError, match="Invalid cursor"):
            asyncio.run(backend.list_blocks("page", cursor="abc"))

    def test_dead_blocks_dropped(self):
        page = {"id": "page", "type": "page", "content": ["a", "b"]}
        records = {"block": {
            "page": page,
            "a": _text_block("a", "kept"),
            "b": {**_text_block("b", "gone"), "alive": False},
        }}

        result = asyncio.run(V3Backend(FakeV3Client(records)).get_all_blocks("page"))

        assert [b.id for b in result.blocks] == ["a"]

    def test_get_all_blocks_cap(self):
        children = {f"b{i}": _text_block(f"b{i}", "x") for i in range(1050)}
        page = {"id": "page", "type": "page", "content": list(children)}
        client = FakeV3Client({"block": {"page": page, **children}})

        result = asyncio.run(V3Backend(client).get_all_blocks("page"))

        assert len(result.blocks) == 1000
        assert result.has_more is True
        # one parent lookup, then ten batches of 100
        assert len(client.sync_calls) == 11
        assert max(len(call) for call in client.sync_calls) == 100

    def test_read_markdown(self):
        records = {"block": {
            "page": {"id": "page", "type": "page", "content": ["h", "t"]},
            "h": _text_block("h", "Title", "header"),
            "t": {**_text_block("t", "done", "to_do"), "properties": {"title": [["done"]], "checked": [["Yes"]]}},
        }}

        output = asyncio.run(read_markdown(V3Backend(FakeV3Client(records)), "page"))

        assert output == {"content": "# Title\n\n- [x] done", "blockCount": 2}

    def test_missing_block(self):
        with pytest.raises(RecordNotFoundError):
            asyncio.run(V3Backend(FakeV3Client()).get_all_blocks("nope"))


class TestAppend:
    """Tests for append_blocks."""

    def test_single_transaction(self):
        client = FakeV3Client()
        blocks = markdown_to_blocks("# Title\n- [ ] task one\n- [x] task two")

        result = asyncio.run(V3Backend(client).append_blocks("page", blocks))

        assert result.blocks_added == 3
        assert len(client.transactions) == 1
        ops = client.transactions[0]
        assert len(ops) == 9
        created = [op.args for op in ops if op.command == "set" and op.path == []]
        assert [r["type"] for r in created] == ["header", "to_do", "to_do"]
        assert "checked" not in created[1]["properties"]
        assert created[2]["properties"]["checked"] == [["Yes"]]
        assert all(r["parent_id"] == "page" for r in created)

    def test_nested_children_follow_parent(self):
        client = FakeV3Client()
        blocks = [{
            "type": "bulleted_list_item",
            "bulleted_list_item": {
                "rich_text": [{"text": {"content": "parent"}}],
                "children": [{"type": "paragraph", "paragraph": {"rich_text": [{"text": {"content": "child"}}]}}],
            },
        }]

        result = asyncio.run(V3Backend(client).append_blocks("page", blocks))

        assert result.blocks_added == 1
        ops = client.transactions[0]
        parent_record, child_record = [op.args for op in ops if op.command == "set" and op.path == []]
        assert child_record["parent_id"] == parent_record["id"]
        assert child_record["type"] == "text"

    def test_nothing_to_append(self):
        client = FakeV3Client()
        assert asyncio.run(V3Backend(client).append_blocks("page", [])).blocks_added == 0
        assert client.transactions == []


class TestInlineComment:
    """Tests for anchored comments."""

    def test_anchor_spliced_into_title(self):
        client = FakeV3Client({"block": {"blk": _text_block("blk", "fix teh typo")}})

        result = asyncio.run(V3Backend(client).add_inline_comment("blk", "Spelling?", "teh"))

        assert len(client.transactions) == 1
        ops = client.transactions[0]
        assert len(ops) == 8
        assert ops[6].path == ["properties", "title"]
        assert ops[6].args == [["fix "], ["teh", [["m", result.discussion_id]]], [" typo"]]
        assert ops[2].args["text"] == [["Spelling?"]]
        assert result.body == "Spelling?"

    def test_text_not_found(self):
        client = FakeV3Client({"block": {"blk": _text_block("blk", "nothing here")}})

        with pytest.raises(NotionCliError, match="not found"):
            asyncio.run(V3Backend(client).add_inline_comment("blk", "x", "missing"))
        assert client.transactions == []

    def test_page_comment(self):
        client = FakeV3Client()

        result = asyncio.run(V3Backend(client).add_comment("page", "Hello"))

        ops = client.transactions[0]
        assert len(ops) == 6
        assert ops[0].args["parent_id"] == "page"
        assert ops[2].args["id"] == result.id


class TestPages:
    """Tests for page reads and writes."""

    def test_create_database_row(self):
        client = FakeV3Client(_database_records())

        result = asyncio.run(V3Backend(client).create_page("db", "Row", {"Status": "Done"}, icon="✅"))

        ops = client.transactions[0]
        record = ops[0].args
        assert record["parent_table"] == "collection"
        assert record["parent_id"] == "coll"
        assert record["properties"] == {"title": [["Row"]], "abc": [["Done"]]}
        assert record["format"] == {"page_icon": "✅"}
        assert ops[1].pointer.table == "block"
        assert result.parent == {"type": "database_id", "database_id": "db"}
        assert result.id == record["id"]

    def test_create_unknown_property(self):
        client = FakeV3Client(_database_records())

        with pytest.raises(NotionCliError, match="Available: Name, Status"):
            asyncio.run(V3Backend(client).create_page("db", "Row", {"Owner": "me"}))
        assert client.transactions == []

    def test_create_under_page_rejects_columns(self):
        client = FakeV3Client(_database_records())

        with pytest.raises(NotionCliError):
            asyncio.run(V3Backend(client).create_page("plain", "Child", {"Status": "x"}))

    def test_update_title(self):
        client = FakeV3Client()

        asyncio.run(V3Backend(client).update_page("p1", title="New"))

        ops = client.transactions[0]
        assert ops[0].path == ["properties", "title"]
        assert ops[0].args == [["New"]]
        assert ops[-1].command == "update"

    def test_archive(self):
        records = {"block": {"p1": _text_block("p1", "Old", "page", parent_id="parent")}}
        client = FakeV3Client(records)

        result = asyncio.run(V3Backend(client).archive_page("p1"))

        ops = client.transactions[0]
        assert ops[0].args["alive"] is False
        assert ops[1].command == "listRemove"
        assert ops[1].pointer.id == "parent"
        assert result.archived is True

    def test_get_page_row(self):
        records = _database_records()
        records["block"]["row"] = {
            "id": "row", "type": "page", "alive": True,
            "parent_table": "collection", "parent_id": "coll",
            "properties": {"title": [["Row 1"]], "abc": [["Done"]]},
        }

        page = asyncio.run(V3Backend(FakeV3Client(records)).get_page("row"))

        assert page.properties == {"Name": "Row 1", "Status": "Done"}
        assert page.parent.type == "database"
        assert page.archived is False

    def test_get_page_missing(self):
        with pytest.raises(RecordNotFoundError):
            asyncio.run(V3Backend(FakeV3Client()).get_page("missing"))


class TestDatabases:
    """Tests for database operations."""

    def test_query(self):
        client = FakeV3Client(_database_records(), responses={"queryCollection": {
            "result": {"reducerResults": {"collection_group_results": {"blockIds": ["r1", "r2"], "total": 3}}},
            "recordMap": {"block": {
                "r1": {"value": {"id": "r1", "properties": {"title": [["One"]], "abc": [["Done"]]}}},
                "r2": {"value": {"id": "r2", "properties": {"title": [["Two"]]}}},
            }},
        }})

        page = asyncio.run(V3Backend(client).query_database("db", filter={"operator": "and", "filters": []}))

        assert client.query["collection_id"] == "coll"
        assert client.query["view_id"] == "view-1"
        assert [row.properties for row in page.items] == [
            {"Name": "One", "Status": "Done"},
            {"Name": "Two", "Status": None},
        ]
        assert page.has_more is True
        assert page.next_cursor is None

    def test_schema(self):
        schema = asyncio.run(V3Backend(FakeV3Client(_database_records())).get_database_schema("db"))

        assert schema.title == "Tasks"
        assert [(p.name, p.type) for p in schema.properties] == [("Name", "title"), ("Status", "select")]
        assert schema.properties[1].options == ["Done"]

    def test_not_a_database(self):
        with pytest.raises(NotionCliError, match="not a database"):
            asyncio.run(V3Backend(FakeV3Client(_database_records())).get_database("plain"))

    def test_is_database(self):
        backend = V3Backend(FakeV3Client(_database_records()))
        assert asyncio.run(backend.is_database("db")) is True
        assert asyncio.run(backend.is_database("plain")) is False
        assert asyncio.run(backend.is_database("missing")) is False

    def test_is_database_http_error(self):
        class Failing(FakeV3Client):
            async def sync_record_values(self, pointers):
                raise V3HttpError(403, "syncRecordValuesMain", "Forbidden")

        assert asyncio.run(V3Backend(Failing()).is_database("db")) is False

    def test_search_filter(self):
        client = FakeV3Client(responses={"search": {
            "results": [{"id": "db"}, {"id": "plain"}],
            "total": 2,
            "recordMap": {"block": {
                "db": {"value": {"id": "db", "type": "collection_view_page", "properties": {"title": [["Tasks"]]}}},
                "plain": {"value": {"id": "plain", "type": "page", "properties": {"title": [["Notes"]]}}},
            }},
        }})

        page = asyncio.run(V3Backend(client).search("t", filter="page"))

        assert [(r.id, r.type, r.title) for r in page.items] == [("plain", "page", "Notes")]


class TestCommentsAndUsers:
    """Tests for comment listing and users."""

    def test_list_comments(self):
        records = {
            "block": {"page": {"id": "page", "type": "page", "discussions": ["d1"]}},
            "discussion": {"d1": {"id": "d1", "comments": ["c1", "c2"], "alive": True}},
            "comment": {
                "c1": {"id": "c1", "text": [["first"]], "created_by_id": "u1", "parent_id": "d1",
                       "created_time": 1700000000000},
                "c2": {"id": "c2", "text": [["second"]], "created_by_id": "u1", "parent_id": "d1"},
            },
            "notion_user": {"u1": {"id": "u1", "given_name": "Ada", "family_name": "Lovelace"}},
        }

        page = asyncio.run(V3Backend(FakeV3Client(records)).list_comments("page"))

        assert [c.body for c in page.items] == ["first", "second"]
        assert page.items[0].author.name == "Ada Lovelace"
        assert page.items[0].created_at == "2023-11-14T22:13:20.000Z"
        assert page.items[0].discussion_id == "d1"

    def test_no_discussions(self):
        records = {"block": {"page": {"id": "page", "type": "page"}}}
        page = asyncio.run(V3Backend(FakeV3Client(records)).list_comments("page"))
        assert page.items == []

    def test_get_me(self):
        client = FakeV3Client(responses={"loadUserContent": {"recordMap": {
            "notion_user": {USER: {"value": {"id": USER, "name": "Me"}}},
            "space": {SPACE: {"value": {"id": SPACE, "name": "Acme"}}},
        }}})

        me = asyncio.run(V3Backend(client).get_me())

        assert (me.id, me.name, me.workspace_name) == (USER, "Me", "Acme")


class TestHistoryBacklinksActivity:
    """Tests for the v3-only reads."""

    def test_history(self):
        client = FakeV3Client(responses={"getSnapshotsList": {"snapshots": [
            {"id": "s1", "version": 4, "last_version": 3, "timestamp": 1700000000000, "authors": [{"id": "u1"}]},
        ]}})

        snapshots = asyncio.run(V3Backend(client).list_history("page", limit=5))

        assert snapshots[0].version == 4
        assert snapshots[0].authors == ["u1"]

    def test_backlinks_one_per_page(self):
        client = FakeV3Client(responses={"getBacklinksForBlock": {
            "backlinks": [{"mentioned_from": {"block_id": "m1"}}, {"mentioned_from": {"block_id": "m2"}}],
            "recordMap": {"block": {
                "m1": {"value": {"id": "m1", "parent_id": "P"}},
                "m2": {"value": {"id": "m2", "parent_id": "P"}},
                "P": {"value": {"id": "P", "properties": {"title": [["Linking page"]]}}},
            }},
        }})

        backlinks = asyncio.run(V3Backend(client).list_backlinks("target"))

        assert len(backlinks) == 1
        assert (backlinks[0].page_id, backlinks[0].page_title) == ("P", "Linking page")

    def test_activity(self):
        client = FakeV3Client(responses={"getActivityLog": {
            "activityIds": ["a1"],
            "activities": {"a1": {
                "type": "block-edited",
                "navigable_block_id": "page",
                "edits": [{"type": "block-changed", "authors": [{"id": "u1"}]}],
                "start_time": "1700000000000",
            }},
            "recordMap": {},
        }})

        entries = asyncio.run(V3Backend(client).get_activity("page"))

        assert entries[0].page_id == "page"
        assert entries[0].authors == ["u1"]
        assert entries[0].edit_types == ["block-changed"]
        assert entries[0].start_time == "2023-11-14T22:13:20.000Z"

    def test_closes_client(self):
        client = FakeV3Client()

        async def run():
            async with V3Backend(client):
                pass

        asyncio.run(run())
        assert client.closed is True


IN_PROGRESS = {"state": "in_progress", "status": {"pagesExported": 3}}
SUCCESS = {"state": "success", "status": {"pagesExported": 10, "exportURL": "https://files.example/export.zip"}}


@pytest.fixture
def fast_polls(monkeypatch):
    monkeypatch.setattr(v3_backend, "EXPORT_POLL_INTERVAL", 0)
    monkeypatch.setattr(v3_backend, "WORKSPACE_POLL_INTERVAL", 0)


class TestExport:
    """Tests for page and workspace exports."""

    def test_page_export_polls_then_downloads(self, fast_polls, tmp_path):
        client = FakeV3Client(task_states=[IN_PROGRESS, IN_PROGRESS, SUCCESS])
        output = tmp_path / "notes.zip"

        result = asyncio.run(V3Backend(client).export_page(
            "page", str(output), format="html", recursive=True
        ))

        assert client.task_polls == 3
        assert client.downloads == [("https://files.example/export.zip", output.resolve())]
        assert output.read_bytes() == b"PK"
        assert (result.exported, result.format, result.pages_exported, result.recursive) == (
            str(output.resolve()), "html", 10, True
        )
        task = client.enqueued[0]
        assert task["eventName"] == "exportBlock"
        assert task["request"]["block"] == {"id": "page", "spaceId": SPACE}
        assert task["request"]["recursive"] is True
        assert task["request"]["exportOptions"] == {
            "exportType": "html", "timeZone": "UTC", "locale": "en", "flattenExportFiletree": False,
        }

    def test_workspace_export(self, fast_polls, tmp_path):
        client = FakeV3Client(task_states=[SUCCESS])

        result = asyncio.run(V3Backend(client).export_workspace(str(tmp_path / "all.zip")))

        task = client.enqueued[0]
        assert task["eventName"] == "exportSpace"
        assert task["request"]["spaceId"] == SPACE
        assert task["request"]["exportOptions"]["exportType"] == "markdown"
        assert result.pages_exported == 10
        assert result.recursive is None

    def test_timeout(self, monkeypatch, tmp_path):
        monkeypatch.setattr(v3_backend, "EXPORT_POLL_INTERVAL", 0.005)
        client = FakeV3Client(task_states=[IN_PROGRESS])

        with pytest.raises(ExportError, match="timed out") as exc_info:
            asyncio.run(V3Backend(client).export_page("page", str(tmp_path / "x.zip"), timeout=0.05))

        assert client.task_polls >= 1
        assert client.downloads == []
        error = format_error(exc_info.value)
        assert error["error"] == "EXPORT_TIMEOUT"
        assert "--timeout" in error["hint"]

    def test_failure_reported(self, fast_polls, tmp_path):
        client = FakeV3Client(task_states=[{"state": "failure", "error": "Block not found"}])

        with pytest.raises(ExportError, match="Export failed: Block not found"):
            asyncio.run(V3Backend(client).export_page("page", str(tmp_path / "x.zip")))

        assert client.downloads == []

    def test_success_without_url(self, fast_polls, tmp_path):
        client = FakeV3Client(task_states=[{"state": "success", "status": {}}])

        with pytest.raises(ExportError, match="no download URL"):
            asyncio.run(V3Backend(client).export_workspace(str(tmp_path / "x.zip")))

    def test_task_missing(self, fast_polls, tmp_path):
        client = FakeV3Client()

        with pytest.raises(ExportError, match="not found in getTasks"):
            asyncio.run(V3Backend(client).export_page("page", str(tmp_path / "x.zip")))

    def test_invalid_format_fails_before_enqueue(self, tmp_path):
        client = FakeV3Client(task_states=[SUCCESS])

        with pytest.raises(NotionCliError, match='Invalid format "pdf"'):
            asyncio.run(V3Backend(client).export_page("page", str(tmp_path / "x.zip"), format="pdf"))

        assert client.enqueued == []


class TestClientTasks:
    """Tests for the V3Client task endpoints and export download."""

    def test_enqueue_and_get_tasks(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content), request.headers.get("cookie")))
            if request.url.path.endswith("/enqueueTask"):
                return httpx.Response(200, json={"taskId": "t1"})
            return httpx.Response(200, json={"results": []})

        async def run():
            http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            async with V3Client("tok", USER, SPACE, http_client=http) as client:
                queued = await client.enqueue_task({"eventName": "exportSpace"})
                await client.get_tasks(["t1"])
            return queued

        assert asyncio.run(run()) == {"taskId": "t1"}
        assert seen[0] == ("/api/v3/enqueueTask", {"task": {"eventName": "exportSpace"}}, "token_v2=tok")
        assert seen[1][:2] == ("/api/v3/getTasks", {"taskIds": ["t1"]})

    def test_download_streams_to_file(self, tmp_path):
        cookies = []

        def handler(request):
            cookies.append(request.headers.get("cookie"))
            return httpx.Response(200, content=b"zip-bytes")

        async def run():
            http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            async with V3Client("tok", USER, SPACE, http_client=http) as client:
                return await client.download("https://files.example/export.zip", tmp_path / "out.zip")

        assert asyncio.run(run()) == 9
        assert (tmp_path / "out.zip").read_bytes() == b"zip-bytes"
        assert cookies == [None]

    def test_download_error(self, tmp_path):
        async def run():
            http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(403)))
            async with V3Client("tok", USER, SPACE, http_client=http) as client:
                await client.download("https://files.example/export.zip", tmp_path / "out.zip")

        with pytest.raises(V3HttpError) as exc_info:
            asyncio.run(run())

        assert exc_info.value.status == 403
        assert not (tmp_path / "out.zip").exists()
