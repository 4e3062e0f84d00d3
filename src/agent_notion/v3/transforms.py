"""Map v3 recordMap records onto the canonical model.

v3 differs from the public API in four ways handled here: block types use
internal names (`text`, `header`, ...), properties are keyed by schema id
and stored as rich text, timestamps are unix milliseconds, and parents are
`(parent_table, parent_id)` pairs.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from ..ids import notion_url
from ..models import (
    ActivityEntry,
    Backlink,
    CommentItem,
    DatabaseDetail,
    DatabaseListItem,
    DatabaseSchema,
    ExportTask,
    HistorySnapshot,
    Icon,
    NormalizedBlock,
    PageDetail,
    ParentRef,
    PropertyDefinition,
    QueryRow,
    SchemaProperty,
    SearchResult,
    SelectOption,
    StatusGroup,
    UserItem,
    UserMe,
    UserRef,
)
from .richtext import decode_rich_text, plain_text

# v3 block type → public-API block type
V3_BLOCK_TYPE_MAP = {
    "text": "paragraph",
    "header": "heading_1",
    "sub_header": "heading_2",
    "sub_sub_header": "heading_3",
    "bulleted_list": "bulleted_list_item",
    "numbered_list": "numbered_list_item",
    "to_do": "to_do",
    "toggle": "toggle",
    "code": "code",
    "quote": "quote",
    "callout": "callout",
    "divider": "divider",
    "image": "image",
    "bookmark": "bookmark",
    "equation": "equation",
    "page": "child_page",
    "collection_view_page": "child_database",
    "collection_view": "child_database",
    "table_of_contents": "table_of_contents",
    "breadcrumb": "breadcrumb",
    "column_list": "column_list",
    "column": "column",
    "synced_block": "synced_block",
    "link_preview": "link_preview",
    "embed": "embed",
    "video": "video",
    "pdf": "pdf",
    "audio": "audio",
    "file": "file",
}

DATABASE_BLOCK_TYPES = ("collection_view_page", "collection_view")

# v3 parent_table → canonical ParentRef type
PARENT_TABLES = {
    "collection": "database",
    "block": "page",
    "space": "workspace",
}


def ms_to_iso(ms: Optional[int]) -> Optional[str]:
    """Unix milliseconds → ISO 8601 UTC, e.g. "2024-01-02T03:04:05.000Z"."""
    if not ms:
        return None
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def v3_parent(parent_table: Optional[str], parent_id: Optional[str]) -> Optional[ParentRef]:
    if parent_table not in PARENT_TABLES:
        return None
    return ParentRef(type=PARENT_TABLES[parent_table], id=parent_id)


def _prop_text(block: dict, key: str) -> str:
    return plain_text((block.get("properties") or {}).get(key))


def _prop_text_or_none(block: dict, key: str) -> Optional[str]:
    value = (block.get("properties") or {}).get(key)
    return plain_text(value) if value else None


def user_display_name(user: dict) -> Optional[str]:
    name = " ".join(part for part in (user.get("given_name"), user.get("family_name")) if part)
    return name or user.get("name") or None


# =============================================================================
# RecordMap helpers
# =============================================================================

def _unwrap(entry: Any) -> Optional[dict]:
    """Record value from a recordMap entry.

    Newer responses nest one level deeper: {"value": {"value": record, "role": ...}}.
    """
    if not isinstance(entry, dict):
        return None
    value = entry.get("value")
    if isinstance(value, dict) and "role" in value and isinstance(value.get("value"), dict):
        value = value["value"]
    return value if isinstance(value, dict) else None


def get_record(record_map: dict, table: str, record_id: str) -> Optional[dict]:
    return _unwrap((record_map.get(table) or {}).get(record_id))


def get_block(record_map: dict, block_id: str) -> Optional[dict]:
    return get_record(record_map, "block", block_id)


def get_collection(record_map: dict, collection_id: str) -> Optional[dict]:
    return get_record(record_map, "collection", collection_id)


def get_user(record_map: dict, user_id: str) -> Optional[dict]:
    return get_record(record_map, "notion_user", user_id)


def get_records(record_map: dict, table: str) -> list[dict]:
    """All records of a table, in response order."""
    records = [_unwrap(entry) for entry in (record_map.get(table) or {}).values()]
    return [r for r in records if r]


def first_record(record_map: dict, table: str) -> Optional[dict]:
    records = get_records(record_map, table)
    return records[0] if records else None


# =============================================================================
# Properties
# =============================================================================

def _decorations(value: Optional[list], kind: str) -> list[tuple]:
    found = []
    for segment in decode_rich_text(value):
        for deco in segment.decorations:
            if deco.kind == kind:
                found.append(deco.args)
    return found


def _number(text: str) -> Optional[float]:
    try:
        number = float(text)
    except ValueError:
        return None
    return int(number) if number.is_integer() else number


def flatten_v3_property_value(value: Optional[list], schema: dict) -> Any:
    """Flatten a v3 property value, using its schema entry for the type.

    Output shapes follow `properties.flatten_property_value` where v3 stores
    enough to reproduce them; computed types (formula, rollup) come back as
    their display text.
    """
    text = plain_text(value)
    prop_type = schema.get("type")

    if prop_type in ("title", "text"):
        return text

    elif prop_type == "number":
        return _number(text) if text else None

    elif prop_type in ("select", "status"):
        return text or None

    elif prop_type == "multi_select":
        return text.split(",") if text else []

    elif prop_type == "date":
        # Stored as a mention: [["‣", [["d", {"start_date": ..., "end_date": ...}]]]]
        for args in _decorations(value, "d"):
            if args and isinstance(args[0], dict):
                return {"start": args[0].get("start_date"), "end": args[0].get("end_date")}
        return {"start": text, "end": None} if text else None

    elif prop_type in ("person", "people"):
        return [{"id": args[0]} for args in _decorations(value, "u") if args]

    elif prop_type == "checkbox":
        return text == "Yes"

    elif prop_type == "relation":
        return [{"id": args[0]} for args in _decorations(value, "p") if args]

    elif prop_type in ("created_by", "last_edited_by"):
        return {"id": text} if text else None

    elif prop_type in ("file", "files"):
        return [{"name": text, "url": None}] if text else []

    return text or None


def flatten_v3_properties(properties: Optional[dict], schema: dict) -> dict[str, Any]:
    """Flatten every schema column of a row, keyed by column name."""
    properties = properties or {}
    return {
        column.get("name", prop_id): flatten_v3_property_value(properties.get(prop_id), column)
        for prop_id, column in schema.items()
    }


def _option_names(column: dict) -> list[str]:
    return [o.get("value") for o in column.get("options") or []]


def _group_members(column: dict, group: dict) -> list[str]:
    member_ids = group.get("optionIds") or []
    return [o.get("value") for o in column.get("options") or [] if o.get("id") in member_ids]


def build_v3_property_definition(prop_id: str, column: dict) -> PropertyDefinition:
    definition = PropertyDefinition(id=prop_id, type=column.get("type", ""))
    if column.get("options") is not None:
        definition.options = [
            SelectOption(name=o.get("value"), color=o.get("color")) for o in column["options"]
        ]
    if column.get("groups") is not None:
        definition.groups = [
            StatusGroup(name=g.get("name", ""), options=_group_members(column, g))
            for g in column["groups"]
        ]
    definition.related_database = column.get("collection_id") or None
    return definition


def build_v3_schema_property(prop_id: str, column: dict) -> SchemaProperty:
    schema = SchemaProperty(name=column.get("name", prop_id), id=prop_id, type=column.get("type", ""))
    if column.get("options") is not None:
        schema.options = _option_names(column)
    if column.get("groups") is not None:
        schema.groups = {g.get("name", ""): _group_members(column, g) for g in column["groups"]}
    schema.related_database = column.get("collection_id") or None
    return schema


def find_schema_id(schema: dict, name: str) -> Optional[str]:
    """Schema id of the column called `name` ("title" always maps to itself)."""
    if name in schema:
        return name
    for prop_id, column in schema.items():
        if column.get("name") == name:
            return prop_id
    return None


# =============================================================================
# Blocks
# =============================================================================

def normalize_v3_block(block: dict) -> NormalizedBlock:
    """Convert a v3 block record into a NormalizedBlock (public-API type names)."""
    v3_type = block.get("type", "")
    title = _prop_text(block, "title")
    fmt = block.get("format") or {}

    normalized = NormalizedBlock(
        id=block.get("id", ""),
        type=V3_BLOCK_TYPE_MAP.get(v3_type, v3_type),
        rich_text=title,
        has_children=bool(block.get("content")),
    )

    if v3_type == "to_do":
        normalized.checked = _prop_text(block, "checked") == "Yes"
    elif v3_type == "code":
        normalized.language = _prop_text_or_none(block, "language")
    elif v3_type == "image":
        normalized.url = fmt.get("display_source") or _prop_text_or_none(block, "source")
        normalized.caption = _prop_text_or_none(block, "caption")
    elif v3_type == "bookmark":
        normalized.url = _prop_text_or_none(block, "link")
        normalized.caption = _prop_text_or_none(block, "description")
    elif v3_type == "equation":
        normalized.expression = title
    elif v3_type in ("page", *DATABASE_BLOCK_TYPES):
        normalized.title = title or None
    elif v3_type == "callout":
        normalized.emoji = fmt.get("page_icon")
    elif v3_type in ("embed", "link_preview"):
        normalized.url = _prop_text_or_none(block, "source")
    elif v3_type in ("video", "pdf", "audio", "file"):
        normalized.url = _prop_text_or_none(block, "source")
        normalized.caption = _prop_text_or_none(block, "caption")
        normalized.title = title or None

    return normalized


# =============================================================================
# Search / Databases / Pages
# =============================================================================

def transform_v3_search_result(block: dict) -> SearchResult:
    block_id = block.get("id", "")
    return SearchResult(
        id=block_id,
        type="database" if block.get("type") in DATABASE_BLOCK_TYPES else "page",
        title=_prop_text(block, "title"),
        url=notion_url(block_id),
        parent=v3_parent(block.get("parent_table"), block.get("parent_id")),
        last_edited_at=ms_to_iso(block.get("last_edited_time")),
    )


def transform_v3_database_list_item(collection: dict, page_id: Optional[str] = None) -> DatabaseListItem:
    database_id = page_id or collection.get("parent_id", "")
    return DatabaseListItem(
        id=database_id,
        title=plain_text(collection.get("name")),
        url=notion_url(database_id),
        parent=v3_parent(collection.get("parent_table"), collection.get("parent_id")),
        property_count=len(collection.get("schema") or {}),
    )


def transform_v3_database_detail(collection: dict, page_id: Optional[str] = None) -> DatabaseDetail:
    database_id = page_id or collection.get("parent_id", "")
    schema = collection.get("schema") or {}
    return DatabaseDetail(
        id=database_id,
        title=plain_text(collection.get("name")),
        url=notion_url(database_id),
        properties={
            column.get("name", prop_id): build_v3_property_definition(prop_id, column)
            for prop_id, column in schema.items()
        },
        description=plain_text(collection.get("description")) or None,
        parent=v3_parent(collection.get("parent_table"), collection.get("parent_id")),
    )


def transform_v3_database_schema(collection: dict, page_id: Optional[str] = None) -> DatabaseSchema:
    schema = collection.get("schema") or {}
    return DatabaseSchema(
        id=page_id or collection.get("parent_id", ""),
        title=plain_text(collection.get("name")),
        properties=[build_v3_schema_property(pid, column) for pid, column in schema.items()],
    )


def transform_v3_query_row(block: dict, schema: dict) -> QueryRow:
    block_id = block.get("id", "")
    return QueryRow(
        id=block_id,
        url=notion_url(block_id),
        properties=flatten_v3_properties(block.get("properties"), schema),
        created_at=ms_to_iso(block.get("created_time")),
        last_edited_at=ms_to_iso(block.get("last_edited_time")),
    )


def transform_v3_page_detail(block: dict, schema: Optional[dict] = None) -> PageDetail:
    """Page metadata. Rows of a database get their columns; plain pages get `title`."""
    block_id = block.get("id", "")
    if schema:
        properties = flatten_v3_properties(block.get("properties"), schema)
    else:
        properties = {"title": _prop_text(block, "title")}
    page_icon = (block.get("format") or {}).get("page_icon")
    return PageDetail(
        id=block_id,
        url=notion_url(block_id),
        properties=properties,
        parent=v3_parent(block.get("parent_table"), block.get("parent_id")),
        icon=Icon(type="emoji", emoji=page_icon) if page_icon else None,
        created_at=ms_to_iso(block.get("created_time")),
        last_edited_at=ms_to_iso(block.get("last_edited_time")),
        archived=not block.get("alive", True),
    )


# =============================================================================
# Comments / Users
# =============================================================================

def transform_v3_comment(comment: dict, record_map: Optional[dict] = None) -> CommentItem:
    author_id = comment.get("created_by_id") or comment.get("created_by")
    author = None
    if author_id:
        user = get_user(record_map or {}, author_id)
        author = UserRef(id=author_id, name=user_display_name(user) if user else None)
    return CommentItem(
        id=comment.get("id", ""),
        body=plain_text(comment.get("text")),
        author=author,
        created_at=ms_to_iso(comment.get("created_time")),
        discussion_id=comment.get("parent_id"),
    )


def transform_v3_user(user: dict) -> UserItem:
    return UserItem(
        id=user.get("id", ""),
        type="person",
        name=user_display_name(user),
        email=user.get("email"),
        avatar_url=user.get("profile_photo"),
    )


def transform_v3_user_me(user: dict, space_name: Optional[str] = None) -> UserMe:
    return UserMe(
        id=user.get("id", ""),
        type="person",
        name=user_display_name(user),
        workspace_name=space_name,
    )


# =============================================================================
# History / Backlinks / Activity
# =============================================================================

def transform_v3_snapshot(snapshot: dict) -> HistorySnapshot:
    return HistorySnapshot(
        id=snapshot.get("id", ""),
        version=snapshot.get("version"),
        last_version=snapshot.get("last_version"),
        timestamp=ms_to_iso(snapshot.get("timestamp")),
        authors=[a.get("id") for a in snapshot.get("authors") or [] if a.get("id")],
    )


def transform_v3_backlinks(response: dict) -> list[Backlink]:
    """Backlinks from getBacklinksForBlock, one per referencing page."""
    record_map = response.get("recordMap") or {}
    backlinks = []
    seen = set()

    for link in response.get("backlinks") or []:
        block_id = (link.get("mentioned_from") or {}).get("block_id")
        if not block_id:
            continue
        block = get_block(record_map, block_id)
        page = get_block(record_map, block["parent_id"]) if block and block.get("parent_id") else None

        page_id = page["id"] if page else block_id
        if page_id in seen:
            continue
        seen.add(page_id)

        title = _prop_text(page, "title") if page else ""
        if not title and block:
            title = _prop_text(block, "title")
        backlinks.append(Backlink(block_id=block_id, page_id=page_id, page_title=title or None))

    return backlinks


def transform_v3_activity(response: dict) -> list[ActivityEntry]:
    record_map = response.get("recordMap") or {}
    activities = response.get("activities") or {}
    entries = []

    for activity_id in response.get("activityIds") or []:
        activity = activities.get(activity_id) or _unwrap(
            (record_map.get("activity") or {}).get(activity_id)
        )
        if not activity:
            entries.append(ActivityEntry(id=activity_id))
            continue

        page_id = activity.get("navigable_block_id") or activity.get("parent_id")
        block = get_block(record_map, page_id) if page_id else None

        authors = []
        for edit in activity.get("edits") or []:
            for author in edit.get("authors") or []:
                user = get_user(record_map, author.get("id", ""))
                name = (user_display_name(user) if user else None) or author.get("id")
                if name and name not in authors:
                    authors.append(name)

        edits = activity.get("edits")
        entries.append(ActivityEntry(
            id=activity_id,
            type=activity.get("type"),
            page_id=page_id,
            page_title=(_prop_text(block, "title") or None) if block else None,
            authors=authors or None,
            edit_types=[e.get("type") for e in edits] if edits else None,
            start_time=ms_to_iso(_as_int(activity.get("start_time"))),
            end_time=ms_to_iso(_as_int(activity.get("end_time"))),
        ))

    return entries


def _as_int(value: Any) -> Optional[int]:
    # Activity timestamps arrive as strings
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def transform_v3_export_task(task: dict) -> ExportTask:
    status = task.get("status") or {}
    error = task.get("error")
    if isinstance(error, dict):
        error = error.get("message") or error.get("name")
    return ExportTask(
        id=task.get("id", ""),
        state=task.get("state"),
        pages_exported=_as_int(status.get("pagesExported")) or 0,
        export_url=status.get("exportURL"),
        error=str(error) if error else None,
    )
