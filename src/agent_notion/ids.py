"""Notion ID helpers."""

import re
import uuid
from typing import Optional

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Args:
        uuid_str: UUID with or without dashes.

    Returns:
        UUID in format xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx

    Raises:
        ValueError: If input is not a valid UUID (wrong length or invalid chars).
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def extract_uuid_from_url(url: str) -> Optional[str]:
    """Extract a Notion UUID from a page URL.

    Handles formats like:
    - https://notion.so/workspace/Page-Title-abc123def456...
    - https://www.notion.so/Page-abc123def456...

    Returns:
        Normalized UUID or None if not found.
    """
    match = NOTION_URL_PATTERN.match(url)
    if not match:
        return None
    uuid_match = re.search(r'([0-9a-f]{32}|[0-9a-f-]{36})$', match.group(1), re.IGNORECASE)
    if uuid_match:
        return normalize_uuid(uuid_match.group(1))
    return None


def normalize_id(ref: str) -> str:
    """Accept a dashed UUID, a dashless UUID, or a Notion URL.

    Anything unrecognised is returned unchanged so the API can reject it with
    its own error.
    """
    ref = ref.strip()
    if ref.startswith("http"):
        return extract_uuid_from_url(ref) or ref
    if UUID_PATTERN.match(ref):
        return normalize_uuid(ref)
    return ref


def new_id() -> str:
    """Fresh record id for v3 writes."""
    return str(uuid.uuid4())


def notion_url(record_id: str) -> str:
    return f"https://www.notion.so/{record_id.replace('-', '')}"
