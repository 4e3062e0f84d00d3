"""JSON output for the CLI.

Results go to stdout as pretty JSON with empty values pruned, errors go to
stderr as a single JSON object.
"""

import json
import sys
from typing import Any, Optional, TextIO

from .errors import format_error
from .models import Paginated, to_dict

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100  # public API maximum


def _prune(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return None if value.strip() == "" else value
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, list):
        items = [p for p in (_prune(v) for v in value) if p is not None]
        return items or None
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            pruned = _prune(item)
            if pruned is not None:
                out[key] = pruned
        return out or None
    return value


def prune_empty(value: Any) -> Any:
    """Drop None, blank strings, empty lists and empty dicts, recursively.

    False and 0 are kept. A value that prunes away entirely becomes {}.
    """
    pruned = _prune(to_dict(value))
    return {} if pruned is None else pruned


def render_paginated(page: Paginated) -> dict:
    """`{"items": [...]}` plus `pagination` only when there is more."""
    payload: dict[str, Any] = {"items": [prune_empty(item) for item in page.items]}
    if page.has_more:
        payload["pagination"] = {"hasMore": True, "nextCursor": page.next_cursor}
    return payload


def resolve_page_size(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_PAGE_SIZE
    return min(max(limit, 1), MAX_PAGE_SIZE)


def print_json(data: Any, file: Optional[TextIO] = None) -> None:
    print(json.dumps(prune_empty(data), indent=2, ensure_ascii=False), file=file or sys.stdout)


def print_paginated(page: Paginated, file: Optional[TextIO] = None) -> None:
    # Bypass prune_empty at the top level: "items" stays even when empty
    print(json.dumps(render_paginated(page), indent=2, ensure_ascii=False), file=file or sys.stdout)


def print_error(exc: BaseException, file: Optional[TextIO] = None) -> None:
    print(json.dumps(format_error(exc), ensure_ascii=False), file=file or sys.stderr)
