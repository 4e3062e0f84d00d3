"""Canonical data model shared by both backends.

Every backend transforms its raw responses into these dataclasses, and every
command consumes them. Nothing downstream of a backend should need to know
which API produced a value.

JSON output goes through `to_dict`, which renames fields to camelCase and
drops unset (None) values.
"""

from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


# =============================================================================
# JSON Projection
# =============================================================================

def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def to_dict(value: Any) -> Any:
    """Convert dataclasses (recursively) to JSON-ready dicts.

    Field names become camelCase and None fields are omitted. Lists and dicts
    are walked so nested dataclasses are converted too.
    """
    if is_dataclass(value) and not isinstance(value, type):
        out = {}
        for f in fields(value):
            item = getattr(value, f.name)
            if item is None:
                continue
            out[_camel(f.name)] = to_dict(item)
        return out
    if isinstance(value, list):
        return [to_dict(v) for v in value]
    if isinstance(value, dict):
        return {k: to_dict(v) for k, v in value.items()}
    return value


# =============================================================================
# Pagination
# =============================================================================

@dataclass
class Paginated(Generic[T]):
    """One page of results.

    `next_cursor` is only kept when `has_more` is true. `has_more` with no
    cursor means the backend cannot resume (re-scope the request instead).
    """
    items: list[T]
    has_more: bool = False
    next_cursor: Optional[str] = None

    def __post_init__(self):
        if not self.has_more:
            self.next_cursor = None


# =============================================================================
# References
# =============================================================================

PARENT_TYPES = ("database", "page", "workspace", "block")


@dataclass
class ParentRef:
    """Where a page/database lives. `workspace` parents have no id."""
    type: str
    id: Optional[str] = None


@dataclass
class UserRef:
    id: str
    name: Optional[str] = None


@dataclass
class Icon:
    type: str
    emoji: Optional[str] = None
    url: Optional[str] = None


# =============================================================================
# Search / Databases
# =============================================================================

@dataclass
class SearchResult:
    id: str
    type: str  # "page" | "database"
    title: str
    url: str
    parent: Optional[ParentRef] = None
    last_edited_at: Optional[str] = None


@dataclass
class DatabaseListItem:
    id: str
    title: str
    url: str
    parent: Optional[ParentRef] = None
    property_count: int = 0
    last_edited_at: Optional[str] = None


@dataclass
class SelectOption:
    name: str
    color: Optional[str] = None


@dataclass
class StatusGroup:
    name: str
    options: list[str] = field(default_factory=list)


@dataclass
class PropertyDefinition:
    """A database column as returned by `get_database`."""
    id: str
    type: str
    options: Optional[list[SelectOption]] = None
    groups: Optional[list[StatusGroup]] = None
    prefix: Optional[str] = None
    related_database: Optional[str] = None


@dataclass
class SchemaProperty:
    """A database column flattened for filter-building."""
    name: str
    id: str
    type: str
    options: Optional[list[str]] = None
    groups: Optional[dict[str, list[str]]] = None
    prefix: Optional[str] = None
    related_database: Optional[str] = None


@dataclass
class DatabaseDetail:
    id: str
    title: str
    url: str
    properties: dict[str, PropertyDefinition] = field(default_factory=dict)
    description: Optional[str] = None
    parent: Optional[ParentRef] = None
    is_inline: Optional[bool] = None
    created_at: Optional[str] = None
    last_edited_at: Optional[str] = None


@dataclass
class DatabaseSchema:
    id: str
    title: str
    properties: list[SchemaProperty] = field(default_factory=list)


@dataclass
class QueryRow:
    id: str
    url: str
    properties: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    last_edited_at: Optional[str] = None


# =============================================================================
# Pages
# =============================================================================

@dataclass
class PageDetail:
    id: str
    url: str
    properties: dict[str, Any] = field(default_factory=dict)
    parent: Optional[ParentRef] = None
    icon: Optional[Icon] = None
    created_at: Optional[str] = None
    created_by: Optional[UserRef] = None
    last_edited_at: Optional[str] = None
    last_edited_by: Optional[UserRef] = None
    archived: Optional[bool] = None


@dataclass
class PageCreateResult:
    id: str
    url: str
    title: str
    parent: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None


@dataclass
class PageUpdateResult:
    id: str
    url: str
    last_edited_at: Optional[str] = None


@dataclass
class PageArchiveResult:
    id: str
    archived: bool = True


# =============================================================================
# Blocks
# =============================================================================

@dataclass
class NormalizedBlock:
    """One content block, independent of the API it came from.

    `rich_text` is always a string (possibly empty). The remaining optional
    fields are only set for the block types that carry them.
    """
    id: str
    type: str
    rich_text: str = ""
    has_children: bool = False
    checked: Optional[bool] = None  # to_do
    language: Optional[str] = None  # code
    url: Optional[str] = None  # media, bookmark, embed, link_preview
    caption: Optional[str] = None
    expression: Optional[str] = None  # equation
    title: Optional[str] = None  # child_page, child_database, file
    emoji: Optional[str] = None  # callout


@dataclass
class BlockListResult:
    """All blocks under a parent, up to the fetch cap."""
    blocks: list[NormalizedBlock]
    has_more: bool = False


@dataclass
class AppendResult:
    blocks_added: int


# =============================================================================
# Comments / Users
# =============================================================================

@dataclass
class CommentItem:
    id: str
    body: str
    author: Optional[UserRef] = None
    created_at: Optional[str] = None
    discussion_id: Optional[str] = None


@dataclass
class CommentCreateResult:
    id: str
    body: str
    created_at: Optional[str] = None
    discussion_id: Optional[str] = None


@dataclass
class UserItem:
    id: str
    type: str  # "person" | "bot"
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass
class UserMe:
    id: str
    type: str
    name: Optional[str] = None
    workspace_name: Optional[str] = None


# =============================================================================
# v3-only records
# =============================================================================

@dataclass
class HistorySnapshot:
    id: str
    version: Optional[int] = None
    last_version: Optional[int] = None
    timestamp: Optional[str] = None
    authors: list[str] = field(default_factory=list)


@dataclass
class Backlink:
    block_id: str
    page_id: str
    page_title: Optional[str] = None


@dataclass
class ActivityEntry:
    id: str
    type: Optional[str] = None
    page_id: Optional[str] = None
    page_title: Optional[str] = None
    authors: Optional[list[str]] = None
    edit_types: Optional[list[str]] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None


@dataclass
class ExportTask:
    """One enqueueTask/getTasks task as last reported by the server."""

    id: str
    state: Optional[str] = None
    pages_exported: int = 0
    export_url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ExportResult:
    exported: str
    format: str
    pages_exported: int = 0
    recursive: Optional[bool] = None
