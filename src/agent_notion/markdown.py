"""Block ⇄ markdown conversion.

Backend-agnostic: rendering works on NormalizedBlock, parsing produces
public-API block-creation objects (the v3 backend maps those further through
`v3.operations.official_block_to_v3_args`).

Both directions are lossy. Styling and inline formatting are dropped, and
numbered list items always render as "1." since no counter is tracked.
"""

import re
from typing import Callable, Optional

from .models import NormalizedBlock

# =============================================================================
# Blocks → Markdown
# =============================================================================

INDENT = "  "

# Containers that render nothing themselves; their children still render
CONTAINER_BLOCK_TYPES = {"column_list", "column", "synced_block"}

# Fixed-text placeholders
LITERAL_BLOCKS = {
    "divider": "---",
    "table_of_contents": "[Table of Contents]",
    "breadcrumb": "[Breadcrumb]",
}

# Simple prefix markers: type → marker prepended to the text
BLOCK_TYPE_TO_MARKER = {
    "heading_1": "# ",
    "heading_2": "## ",
    "heading_3": "### ",
    "bulleted_list_item": "- ",
    "numbered_list_item": "1. ",
    "toggle": "> ▶ ",
    "quote": "> ",
}


def block_to_markdown(block: NormalizedBlock, indent: str = "") -> str:
    """Render one block as a markdown line (or a fenced span for code).

    Returns "" for blocks that render nothing (containers, empty paragraphs).
    """
    text = block.rich_text
    block_type = block.type

    if block_type in CONTAINER_BLOCK_TYPES:
        return ""

    if block_type in LITERAL_BLOCKS:
        return f"{indent}{LITERAL_BLOCKS[block_type]}"

    if block_type in BLOCK_TYPE_TO_MARKER:
        return f"{indent}{BLOCK_TYPE_TO_MARKER[block_type]}{text}"

    if block_type == "paragraph":
        return f"{indent}{text}" if text else ""

    if block_type == "to_do":
        mark = "x" if block.checked else " "
        return f"{indent}- [{mark}] {text}"

    if block_type == "code":
        language = block.language if block.language is not None else ""
        return f"{indent}```{language}\n{text}\n{indent}```"

    if block_type == "callout":
        emoji = block.emoji if block.emoji is not None else "💡"
        return f"{indent}> {emoji} {text}"

    url = block.url if block.url is not None else ""

    if block_type == "image":
        return f"{indent}![{block.caption or 'image'}]({url})"
    if block_type == "bookmark":
        return f"{indent}[{block.caption or block.url or 'bookmark'}]({url})"
    if block_type == "equation":
        expression = block.expression if block.expression is not None else ""
        return f"{indent}$${expression}$$"
    if block_type == "child_page":
        return f"{indent}📄 {block.title if block.title is not None else 'Untitled'}"
    if block_type == "child_database":
        return f"{indent}📊 {block.title if block.title is not None else 'Untitled'}"
    if block_type == "link_preview":
        label = block.url if block.url is not None else "link"
        return f"{indent}[{label}]({url})"
    if block_type == "embed":
        return f"{indent}[embed: {url}]({url})"
    if block_type in ("video", "pdf", "audio"):
        return f"{indent}[{block_type}]({url})"
    if block_type == "file":
        return f"{indent}[{block.caption or block.title or 'file'}]({url})"

    # Unrecognized type: keep the text if there is any
    return f"{indent}{text}" if text else f"{indent}[unsupported: {block_type}]"


def blocks_to_markdown(
    blocks: list[NormalizedBlock],
    child_map: Optional[dict[str, list[NormalizedBlock]]] = None,
    indent: str = ""
) -> str:
    """Render a block sequence, recursing into children from `child_map`.

    Args:
        blocks: Blocks at this level, in order.
        child_map: Block id → that block's children (as fetched by
            `get_child_blocks`). Blocks missing from the map render without
            children.
        indent: Indent for this level; children get two more spaces.

    Returns:
        Non-empty lines joined by blank lines. Pure: the same input always
        yields the same string.
    """
    lines = []
    for block in blocks:
        lines.append(block_to_markdown(block, indent))
        if block.has_children and child_map and block.id in child_map:
            child_md = blocks_to_markdown(child_map[block.id], child_map, indent + INDENT)
            if child_md:
                lines.append(child_md)

    return "\n\n".join(line for line in lines if line != "")


def flatten_block(block: NormalizedBlock) -> dict:
    """Compact block dict for raw listings: {id, type, content?, hasChildren}."""
    out = {"id": block.id, "type": block.type}
    if block.rich_text:
        out["content"] = block.rich_text
    out["hasChildren"] = block.has_children
    return out


# =============================================================================
# Markdown → Blocks
# =============================================================================

def _rich_text(content: str) -> list[dict]:
    return [{"type": "text", "text": {"content": content}}]


def _text_block(block_type: str, content: str, **extra) -> dict:
    return {"type": block_type, block_type: {"rich_text": _rich_text(content), **extra}}


def _heading(m: re.Match) -> dict:
    return _text_block(f"heading_{len(m.group(1))}", m.group(2))


def _divider(m: re.Match) -> dict:
    return {"type": "divider", "divider": {}}


def _todo(m: re.Match) -> dict:
    return _text_block("to_do", m.group(2), checked=m.group(1) != " ")


def _bullet(m: re.Match) -> dict:
    return _text_block("bulleted_list_item", m.group(1))


def _numbered(m: re.Match) -> dict:
    return _text_block("numbered_list_item", m.group(1))


def _quote(m: re.Match) -> dict:
    return _text_block("quote", m.group(1))


# Line markers in precedence order (first match wins). Code fences are
# handled before this table because they consume several lines.
LINE_MARKERS: list[tuple[re.Pattern, Callable[[re.Match], dict]]] = [
    (re.compile(r'^(#{1,3})\s+(.+)$'), _heading),
    (re.compile(r'^\s*(?:-{3,}|\*{3,})\s*$'), _divider),
    (re.compile(r'^[-*]\s+\[([ xX])\]\s+(.+)$'), _todo),
    (re.compile(r'^[-*]\s+(.+)$'), _bullet),
    (re.compile(r'^\d+\.\s+(.+)$'), _numbered),
    (re.compile(r'^>\s+(.+)$'), _quote),
]

CODE_FENCE = "```"


def parse_line(line: str) -> dict:
    """Parse one non-blank, non-fence line into a block object."""
    for pattern, build in LINE_MARKERS:
        m = pattern.match(line)
        if m:
            return build(m)
    return _text_block("paragraph", line)


def markdown_to_blocks(markdown: str) -> list[dict]:
    """Parse markdown into public-API block-creation objects.

    Single pass, line by line, no backtracking. Blank lines are skipped.
    A fence (```` ``` ```` plus an optional language) swallows every line up
    to the closing fence, or to the end of input if it is never closed.

    Args:
        markdown: Markdown text.

    Returns:
        List like [{"type": "heading_1", "heading_1": {"rich_text": [...]}}].
    """
    blocks = []
    lines = [line.rstrip("\r") for line in markdown.split("\n")]
    i = 0

    while i < len(lines):
        line = lines[i]

        if line.strip() == "":
            i += 1
            continue

        if line.strip().startswith(CODE_FENCE):
            language = line.strip()[len(CODE_FENCE):].strip()
            code_lines = []
            i += 1
            while i < len(lines) and not lines[i].strip().startswith(CODE_FENCE):
                code_lines.append(lines[i])
                i += 1
            i += 1  # closing fence
            blocks.append({
                "type": "code",
                "code": {
                    "rich_text": _rich_text("\n".join(code_lines)),
                    "language": language or "plain text",
                },
            })
            continue

        blocks.append(parse_line(line))
        i += 1

    return blocks
