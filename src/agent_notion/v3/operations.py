"""Operation builders for v3 `saveTransactions`.

Each builder returns the ordered operations for one logical change. The
list is meant to be submitted as a single transaction; later operations
assume the earlier ones were applied.

Builders do no I/O. A missing identifier is a caller bug and raises
ValueError immediately.
"""

import time
from dataclasses import dataclass
from typing import Any, Optional

from .richtext import wrap

# Commands understood by saveTransactions
COMMANDS = ("set", "update", "listAfter", "listRemove")


@dataclass(frozen=True)
class V3Pointer:
    """Address of one record: (table, id, space)."""
    table: str
    id: str
    space_id: str

    def to_dict(self) -> dict:
        return {"table": self.table, "id": self.id, "spaceId": self.space_id}


@dataclass
class V3Operation:
    pointer: V3Pointer
    path: list[str]
    command: str
    args: Any

    def to_dict(self) -> dict:
        return {
            "pointer": self.pointer.to_dict(),
            "path": list(self.path),
            "command": self.command,
            "args": self.args,
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


def _require(**ids: Optional[str]) -> None:
    for name, value in ids.items():
        if not value:
            raise ValueError(f"{name} is required")


def pointer(table: str, record_id: str, space_id: str) -> V3Pointer:
    return V3Pointer(table=table, id=record_id, space_id=space_id)


def block_pointer(record_id: str, space_id: str) -> V3Pointer:
    return V3Pointer(table="block", id=record_id, space_id=space_id)


# =============================================================================
# Low-level operations
# =============================================================================

def set_op(ptr: V3Pointer, path: list[str], args: Any) -> V3Operation:
    """Set the value at `path` (the whole record when path is [])."""
    return V3Operation(ptr, list(path), "set", args)


def update_op(ptr: V3Pointer, args: dict) -> V3Operation:
    """Shallow-merge `args` into the record root."""
    return V3Operation(ptr, [], "update", args)


def list_after_op(
    ptr: V3Pointer, list_path: str, child_id: str, after_id: Optional[str] = None
) -> V3Operation:
    args = {"id": child_id}
    if after_id:
        args["after"] = after_id
    return V3Operation(ptr, [list_path], "listAfter", args)


def list_remove_op(ptr: V3Pointer, list_path: str, child_id: str) -> V3Operation:
    return V3Operation(ptr, [list_path], "listRemove", {"id": child_id})


def edit_meta_op(ptr: V3Pointer, user_id: str, now: Optional[int] = None) -> V3Operation:
    """Stamp last_edited_time / last_edited_by on a record."""
    return update_op(ptr, {
        "last_edited_time": now if now is not None else _now_ms(),
        "last_edited_by_table": "notion_user",
        "last_edited_by_id": user_id,
    })


# =============================================================================
# Blocks
# =============================================================================

def create_block_ops(
    id: str,
    type: str,
    parent_id: str,
    parent_table: str,
    space_id: str,
    user_id: str,
    properties: Optional[dict] = None,
    format: Optional[dict] = None,
    now: Optional[int] = None
) -> list[V3Operation]:
    """Create a block and append it to its parent's content list.

    Returns:
        [set(block, [], record), listAfter(parent, "content"), editMeta(parent)].
        The record keeps `parent_table` as given; the parent pointer always
        uses table "block", including for collection parents.
    """
    _require(id=id, type=type, parent_id=parent_id, parent_table=parent_table,
             space_id=space_id, user_id=user_id)
    now = now if now is not None else _now_ms()
    block_ptr = block_pointer(id, space_id)
    parent_ptr = pointer(
        "block" if parent_table == "collection" else parent_table, parent_id, space_id
    )

    record: dict[str, Any] = {
        "type": type,
        "id": id,
        "version": 0,
        "created_time": now,
        "last_edited_time": now,
        "parent_id": parent_id,
        "parent_table": parent_table,
        "alive": True,
        "created_by_table": "notion_user",
        "created_by_id": user_id,
        "last_edited_by_table": "notion_user",
        "last_edited_by_id": user_id,
        "space_id": space_id,
    }
    if properties:
        record["properties"] = properties
    if format:
        record["format"] = format

    return [
        set_op(block_ptr, [], record),
        list_after_op(parent_ptr, "content", id),
        edit_meta_op(parent_ptr, user_id, now),
    ]


def archive_block_ops(
    id: str,
    parent_id: str,
    parent_table: str,
    space_id: str,
    user_id: str,
    now: Optional[int] = None
) -> list[V3Operation]:
    """Soft-delete a block (alive=False) and unlink it from its parent."""
    _require(id=id, parent_id=parent_id, parent_table=parent_table,
             space_id=space_id, user_id=user_id)
    now = now if now is not None else _now_ms()
    block_ptr = block_pointer(id, space_id)
    parent_ptr = pointer(parent_table, parent_id, space_id)

    return [
        update_op(block_ptr, {
            "alive": False,
            "last_edited_time": now,
            "last_edited_by_table": "notion_user",
            "last_edited_by_id": user_id,
        }),
        list_remove_op(parent_ptr, "content", id),
        edit_meta_op(parent_ptr, user_id, now),
    ]


def update_property_ops(
    id: str,
    space_id: str,
    user_id: str,
    properties: Optional[dict] = None,
    format: Optional[dict] = None,
    now: Optional[int] = None
) -> list[V3Operation]:
    """One path-based set per property and format key, then editMeta."""
    _require(id=id, space_id=space_id, user_id=user_id)
    block_ptr = block_pointer(id, space_id)
    ops = [set_op(block_ptr, ["properties", key], value) for key, value in (properties or {}).items()]
    ops.extend(set_op(block_ptr, ["format", key], value) for key, value in (format or {}).items())
    ops.append(edit_meta_op(block_ptr, user_id, now))
    return ops


# =============================================================================
# Discussions / Comments
# =============================================================================

def _discussion_ops(
    discussion_id: str,
    comment_id: str,
    parent_id: str,
    space_id: str,
    user_id: str,
    text: str,
    now: int
) -> list[V3Operation]:
    discussion_ptr = pointer("discussion", discussion_id, space_id)
    comment_ptr = pointer("comment", comment_id, space_id)

    return [
        set_op(discussion_ptr, [], {
            "id": discussion_id,
            "version": 0,
            "parent_id": parent_id,
            "parent_table": "block",
            "resolved": False,
            "comments": [],
            "space_id": space_id,
            "alive": True,
        }),
        list_after_op(block_pointer(parent_id, space_id), "discussions", discussion_id),
        set_op(comment_ptr, [], {
            "id": comment_id,
            "version": 0,
            "parent_id": discussion_id,
            "parent_table": "discussion",
            "text": wrap(text),
            "created_by_table": "notion_user",
            "created_by_id": user_id,
            "alive": True,
            "space_id": space_id,
        }),
        list_after_op(discussion_ptr, "comments", comment_id),
        set_op(comment_ptr, ["created_time"], now),
        set_op(comment_ptr, ["last_edited_time"], now),
    ]


def create_comment_ops(
    discussion_id: str,
    comment_id: str,
    page_id: str,
    space_id: str,
    user_id: str,
    text: str,
    now: Optional[int] = None
) -> list[V3Operation]:
    """A new top-level discussion on a page holding one comment (6 operations)."""
    _require(discussion_id=discussion_id, comment_id=comment_id, page_id=page_id,
             space_id=space_id, user_id=user_id)
    now = now if now is not None else _now_ms()
    return _discussion_ops(discussion_id, comment_id, page_id, space_id, user_id, text, now)


def create_inline_comment_ops(
    discussion_id: str,
    comment_id: str,
    block_id: str,
    space_id: str,
    user_id: str,
    text: str,
    updated_title: list,
    now: Optional[int] = None
) -> list[V3Operation]:
    """A discussion anchored to text inside a block (8 operations).

    Same as `create_comment_ops` with the block as the discussion parent,
    followed by setting the block's title to `updated_title` (already
    carrying the ["m", discussion_id] decoration, see
    `richtext.splice_anchor`) and an editMeta on the block.
    """
    _require(discussion_id=discussion_id, comment_id=comment_id, block_id=block_id,
             space_id=space_id, user_id=user_id)
    now = now if now is not None else _now_ms()
    block_ptr = block_pointer(block_id, space_id)
    ops = _discussion_ops(discussion_id, comment_id, block_id, space_id, user_id, text, now)
    ops.append(set_op(block_ptr, ["properties", "title"], updated_title))
    ops.append(edit_meta_op(block_ptr, user_id, now))
    return ops


# =============================================================================
# Public-API block → v3 block
# =============================================================================

OFFICIAL_TO_V3_TYPE = {
    "paragraph": "text",
    "heading_1": "header",
    "heading_2": "sub_header",
    "heading_3": "sub_sub_header",
    "bulleted_list_item": "bulleted_list",
    "numbered_list_item": "numbered_list",
    "to_do": "to_do",
    "toggle": "toggle",
    "code": "code",
    "quote": "quote",
    "callout": "callout",
    "divider": "divider",
    "image": "image",
    "bookmark": "bookmark",
    "equation": "equation",
    "embed": "embed",
    "video": "video",
    "pdf": "pdf",
    "audio": "audio",
    "file": "file",
}

MEDIA_TYPES = {"image", "video", "pdf", "audio", "file", "embed"}


def official_block_to_v3_args(block: dict) -> dict:
    """Map a public-API block-creation object to `{type, properties?, format?}`.

    Unknown types keep their name and get no properties.
    """
    official_type = block.get("type", "")
    v3_type = OFFICIAL_TO_V3_TYPE.get(official_type, official_type)
    data = block.get(official_type)
    if not data:
        return {"type": v3_type}

    properties: dict[str, Any] = {}
    format: dict[str, Any] = {}

    rich_text = data.get("rich_text")
    if rich_text:
        joined = "".join((rt.get("text") or {}).get("content", "") for rt in rich_text)
        properties["title"] = wrap(joined)

    if official_type == "code":
        if data.get("language"):
            properties["language"] = wrap(data["language"])
    elif official_type == "to_do":
        if data.get("checked") is True:
            properties["checked"] = wrap("Yes")
    elif official_type in MEDIA_TYPES:
        url = (
            data.get("url")
            or (data.get("file") or {}).get("url")
            or (data.get("external") or {}).get("url")
        )
        if url:
            properties["source"] = wrap(url)
    elif official_type == "bookmark":
        if data.get("url"):
            properties["link"] = wrap(data["url"])
    elif official_type == "equation":
        if data.get("expression"):
            properties["title"] = wrap(data["expression"])
    elif official_type == "callout":
        emoji = (data.get("icon") or {}).get("emoji")
        if emoji:
            format["page_icon"] = emoji

    args: dict[str, Any] = {"type": v3_type}
    if properties:
        args["properties"] = properties
    if format:
        args["format"] = format
    return args
