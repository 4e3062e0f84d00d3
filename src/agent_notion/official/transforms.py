"""Map public-API response objects onto the canonical model."""

from typing import Optional

from ..models import (
    CommentItem,
    DatabaseDetail,
    DatabaseListItem,
    DatabaseSchema,
    Icon,
    NormalizedBlock,
    PageDetail,
    ParentRef,
    QueryRow,
    SearchResult,
    UserItem,
    UserMe,
    UserRef,
)
from ..properties import (
    build_property_definition,
    extract_title,
    flatten_properties,
    flatten_property_schema,
    rich_text_to_plain,
)

# parent.type → canonical ParentRef type
PARENT_KEYS = {
    "database_id": "database",
    "page_id": "page",
    "block_id": "block",
}


def format_parent(parent: Optional[dict]) -> Optional[ParentRef]:
    if not parent:
        return None
    parent_type = parent.get("type")
    if parent_type == "workspace":
        return ParentRef(type="workspace")
    if parent_type in PARENT_KEYS:
        return ParentRef(type=PARENT_KEYS[parent_type], id=parent.get(parent_type))
    return None


def format_icon(icon: Optional[dict]) -> Optional[Icon]:
    if not icon:
        return None
    if icon.get("type") == "emoji":
        return Icon(type="emoji", emoji=icon.get("emoji"))
    if icon.get("type") == "external":
        return Icon(type="external", url=(icon.get("external") or {}).get("url"))
    return None


def format_user(user: Optional[dict]) -> Optional[UserRef]:
    if not user:
        return None
    return UserRef(id=user.get("id", ""), name=user.get("name"))


def _file_url(data: dict) -> Optional[str]:
    return (data.get("file") or {}).get("url") or (data.get("external") or {}).get("url")


def _title(items: Optional[list[dict]]) -> str:
    return rich_text_to_plain(items)


# =============================================================================
# Blocks
# =============================================================================

def normalize_block(block: dict) -> NormalizedBlock:
    """Normalize a public-API block into a NormalizedBlock.

    Only the type-specific fields the markdown renderer reads are lifted;
    `rich_text` is the joined plain text ("" for blocks without text).
    """
    block_type = block.get("type", "")
    data = block.get(block_type) or {}

    normalized = NormalizedBlock(
        id=block.get("id", ""),
        type=block_type,
        rich_text=rich_text_to_plain(data.get("rich_text")),
        has_children=bool(block.get("has_children")),
    )

    if block_type == "to_do":
        normalized.checked = bool(data.get("checked", False))
    elif block_type == "code":
        normalized.language = data.get("language")
    elif block_type == "image":
        normalized.url = _file_url(data)
        normalized.caption = rich_text_to_plain(data.get("caption"))
    elif block_type == "bookmark":
        normalized.url = data.get("url")
        normalized.caption = rich_text_to_plain(data.get("caption"))
    elif block_type == "equation":
        normalized.expression = data.get("expression")
    elif block_type in ("child_page", "child_database"):
        normalized.title = data.get("title")
    elif block_type == "callout":
        normalized.emoji = (data.get("icon") or {}).get("emoji")
    elif block_type in ("link_preview", "embed"):
        normalized.url = data.get("url")
    elif block_type in ("video", "pdf", "audio", "file"):
        normalized.url = _file_url(data)
        normalized.caption = rich_text_to_plain(data.get("caption"))
        normalized.title = data.get("name")

    return normalized


# =============================================================================
# Search / Databases
# =============================================================================

def transform_search_result(item: dict) -> SearchResult:
    if item.get("object") == "page":
        result_type = "page"
        title = extract_title(item.get("properties") or {})
    else:
        result_type = "database"
        title = _title(item.get("title"))
    return SearchResult(
        id=item.get("id", ""),
        type=result_type,
        title=title,
        url=item.get("url", ""),
        parent=format_parent(item.get("parent")),
        last_edited_at=item.get("last_edited_time"),
    )


def transform_database_list_item(db: dict) -> DatabaseListItem:
    return DatabaseListItem(
        id=db.get("id", ""),
        title=_title(db.get("title")),
        url=db.get("url", ""),
        parent=format_parent(db.get("parent")),
        property_count=len(db.get("properties") or {}),
        last_edited_at=db.get("last_edited_time"),
    )


def transform_database_detail(db: dict) -> DatabaseDetail:
    raw_props = db.get("properties") or {}
    return DatabaseDetail(
        id=db.get("id", ""),
        title=_title(db.get("title")),
        url=db.get("url", ""),
        properties={name: build_property_definition(p) for name, p in raw_props.items()},
        description=rich_text_to_plain(db.get("description")) or None,
        parent=format_parent(db.get("parent")),
        is_inline=db.get("is_inline"),
        created_at=db.get("created_time"),
        last_edited_at=db.get("last_edited_time"),
    )


def transform_database_schema(db: dict) -> DatabaseSchema:
    return DatabaseSchema(
        id=db.get("id", ""),
        title=_title(db.get("title")),
        properties=flatten_property_schema(db.get("properties") or {}),
    )


def transform_query_row(page: dict) -> QueryRow:
    return QueryRow(
        id=page.get("id", ""),
        url=page.get("url", ""),
        properties=flatten_properties(page.get("properties") or {}),
        created_at=page.get("created_time"),
        last_edited_at=page.get("last_edited_time"),
    )


# =============================================================================
# Pages / Comments / Users
# =============================================================================

def transform_page_detail(page: dict) -> PageDetail:
    return PageDetail(
        id=page.get("id", ""),
        url=page.get("url", ""),
        properties=flatten_properties(page.get("properties") or {}),
        parent=format_parent(page.get("parent")),
        icon=format_icon(page.get("icon")),
        created_at=page.get("created_time"),
        created_by=format_user(page.get("created_by")),
        last_edited_at=page.get("last_edited_time"),
        last_edited_by=format_user(page.get("last_edited_by")),
        archived=page.get("archived"),
    )


def transform_comment(comment: dict) -> CommentItem:
    return CommentItem(
        id=comment.get("id", ""),
        body=rich_text_to_plain(comment.get("rich_text")),
        author=format_user(comment.get("created_by")),
        created_at=comment.get("created_time"),
        discussion_id=comment.get("discussion_id"),
    )


def transform_user(user: dict) -> UserItem:
    return UserItem(
        id=user.get("id", ""),
        type=user.get("type", "person"),
        name=user.get("name"),
        email=(user.get("person") or {}).get("email"),
        avatar_url=user.get("avatar_url"),
    )


def transform_me(user: dict) -> UserMe:
    return UserMe(
        id=user.get("id", ""),
        type=user.get("type", "bot"),
        name=user.get("name"),
        workspace_name=(user.get("bot") or {}).get("workspace_name"),
    )
