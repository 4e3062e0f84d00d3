"""The v3 rich-text value: decode, encode, and anchor splicing.

On the wire a v3 title is a list of segments, each `[text]` or
`[text, [decoration, ...]]`, and each decoration is a list whose first item
is its kind: `["b"]` bold, `["a", url]` link, `["p", page_id]` page
mention, `["m", discussion_id]` comment anchor. Here those become `Segment`
and `Decoration` values so the anchor splice can be tested on its own.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

# Decoration kind marking text as the anchor of a discussion
ANCHOR = "m"


@dataclass(frozen=True)
class Decoration:
    kind: str
    args: tuple = ()

    def encode(self) -> list:
        return [self.kind, *self.args]


@dataclass
class Segment:
    text: str
    decorations: list[Decoration] = field(default_factory=list)

    def encode(self) -> list:
        if not self.decorations:
            return [self.text]
        return [self.text, [d.encode() for d in self.decorations]]


def decode_rich_text(value: Optional[list]) -> list[Segment]:
    """Parse a wire value into segments. None or [] gives []."""
    segments = []
    for item in value or []:
        if not item:
            continue
        text = item[0] if isinstance(item[0], str) else str(item[0])
        decorations = []
        if len(item) > 1 and item[1]:
            for deco in item[1]:
                if deco:
                    decorations.append(Decoration(kind=deco[0], args=tuple(deco[1:])))
        segments.append(Segment(text=text, decorations=decorations))
    return segments


def encode_rich_text(segments: list[Segment]) -> list:
    return [segment.encode() for segment in segments]


def plain_text(value: Any) -> str:
    """Concatenated text of a wire value or a segment list."""
    if not value:
        return ""
    if isinstance(value[0], Segment):
        return "".join(s.text for s in value)
    return "".join(s.text for s in decode_rich_text(value))


def wrap(value: Any) -> list:
    """Encode a bare value as a single undecorated segment: `[[value]]`."""
    return [[value]]


def find_occurrence(haystack: str, needle: str, occurrence: int = 1) -> int:
    """Index of the `occurrence`-th non-overlapping match, or -1."""
    if not needle or occurrence < 1:
        return -1
    start = 0
    found = -1
    for _ in range(occurrence):
        index = haystack.find(needle, start)
        if index == -1:
            return -1
        found = index
        start = index + len(needle)
    return found


def splice_anchor(
    segments: list[Segment],
    text: str,
    discussion_id: str,
    occurrence: int = 1
) -> list[Segment]:
    """Mark a range of text as the anchor of a discussion.

    Finds the `occurrence`-th (1-based, non-overlapping) match of `text` in
    the plain text of `segments`, splits segments at the match boundaries,
    and adds `["m", discussion_id]` to every segment inside the match.
    Existing decorations are kept. The input list is not modified.

    Args:
        segments: Decoded title of the block.
        text: Exact text to anchor to.
        discussion_id: Id of the discussion the anchor points at.
        occurrence: Which match to use.

    Returns:
        New segment list.

    Raises:
        ValueError: `text` is empty, `occurrence` < 1, or there is no such match.
    """
    if not text:
        raise ValueError("Anchor text must not be empty")
    if occurrence < 1:
        raise ValueError(f"occurrence must be >= 1, got {occurrence}")

    full = plain_text(segments)
    start = find_occurrence(full, text, occurrence)
    if start == -1:
        raise ValueError(f"Text {text!r} (occurrence {occurrence}) not found in block")
    end = start + len(text)
    anchor = Decoration(kind=ANCHOR, args=(discussion_id,))

    result = []
    pos = 0
    for segment in segments:
        seg_start, seg_end = pos, pos + len(segment.text)
        pos = seg_end

        if seg_end <= start or seg_start >= end:
            result.append(Segment(segment.text, list(segment.decorations)))
            continue

        # Split into before / inside / after around the match
        cut_from = max(start, seg_start) - seg_start
        cut_to = min(end, seg_end) - seg_start
        before = segment.text[:cut_from]
        inside = segment.text[cut_from:cut_to]
        after = segment.text[cut_to:]

        if before:
            result.append(Segment(before, list(segment.decorations)))
        result.append(Segment(inside, [*segment.decorations, anchor]))
        if after:
            result.append(Segment(after, list(segment.decorations)))

    return result
