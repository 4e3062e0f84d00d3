"""Flatten Notion property values and schemas into plain JSON.

Input is the public-API property shape (a dict tagged by "type"). Output
shapes are fixed: downstream consumers and agents rely on them.
"""

from typing import Any, Optional

from .models import (
    PropertyDefinition,
    SchemaProperty,
    SelectOption,
    StatusGroup,
)


def rich_text_to_plain(items: Optional[list[dict]]) -> str:
    """Join a rich_text array into plain text.

    Accepts both response items (plain_text) and request items (text.content).
    """
    if not items:
        return ""
    return "".join(
        t.get("plain_text", (t.get("text") or {}).get("content", ""))
        for t in items
    )


def _user(user: Optional[dict]) -> Optional[dict]:
    if not user:
        return None
    return {"id": user.get("id"), "name": user.get("name")}


# =============================================================================
# Property values
# =============================================================================

def flatten_property_value(prop: dict) -> Any:
    """Flatten a single property value to a simple JSON value.

    Args:
        prop: Property object from page.properties (has a "type" key).

    Returns:
        str, number, bool, list or dict depending on the type; None for
        unset values and unknown types. multi_select, people, relation and
        files always return a list, never None.
    """
    prop_type = prop.get("type", "")

    if prop_type in ("title", "rich_text"):
        return rich_text_to_plain(prop.get(prop_type))

    elif prop_type == "number":
        return prop.get("number")

    elif prop_type in ("select", "status"):
        option = prop.get(prop_type)
        return option.get("name") if option else None

    elif prop_type == "multi_select":
        return [opt.get("name") for opt in prop.get("multi_select") or []]

    elif prop_type == "date":
        date_obj = prop.get("date")
        if not date_obj:
            return None
        return {"start": date_obj.get("start"), "end": date_obj.get("end")}

    elif prop_type == "people":
        return [_user(p) for p in prop.get("people") or []]

    elif prop_type == "checkbox":
        return bool(prop.get("checkbox"))

    elif prop_type in ("url", "email", "phone_number"):
        return prop.get(prop_type)

    elif prop_type == "relation":
        return [{"id": r.get("id")} for r in prop.get("relation") or []]

    elif prop_type == "rollup":
        rollup = prop.get("rollup")
        if not rollup:
            return None
        if rollup.get("type") == "array":
            return [flatten_property_value(item) for item in rollup.get("array") or []]
        return flatten_property_value(rollup)

    elif prop_type == "formula":
        formula = prop.get("formula")
        if not formula:
            return None
        return formula.get(formula.get("type", ""))

    elif prop_type == "files":
        files = prop.get("files") or []
        return [
            {
                "name": f.get("name"),
                "url": (f.get("file") or {}).get("url") or (f.get("external") or {}).get("url"),
            }
            for f in files
        ]

    elif prop_type in ("created_time", "last_edited_time"):
        return prop.get(prop_type)

    elif prop_type in ("created_by", "last_edited_by"):
        return _user(prop.get(prop_type))

    elif prop_type == "unique_id":
        uid = prop.get("unique_id")
        if not uid:
            return None
        prefix = uid.get("prefix")
        number = uid.get("number")
        return f"{prefix}-{number}" if prefix else str(number)

    elif prop_type == "verification":
        verification = prop.get("verification") or {}
        return verification.get("state")

    return None


def flatten_properties(properties: dict[str, dict]) -> dict[str, Any]:
    """Flatten every property of a page: name → value."""
    return {name: flatten_property_value(prop) for name, prop in properties.items()}


def extract_title(properties: dict[str, dict]) -> str:
    """Plain text of the title-typed property, or "" if there is none."""
    for prop in properties.values():
        if prop.get("type") == "title":
            return rich_text_to_plain(prop.get("title"))
    return ""


# =============================================================================
# Property schema
# =============================================================================

def _status_groups(config: dict) -> list[StatusGroup]:
    options = config.get("options") or []
    groups = []
    for group in config.get("groups") or []:
        member_ids = group.get("option_ids") or []
        groups.append(StatusGroup(
            name=group.get("name", ""),
            options=[o.get("name") for o in options if o.get("id") in member_ids],
        ))
    return groups


def build_property_definition(prop: dict) -> PropertyDefinition:
    """Database column definition with options, status groups, prefix, relation target."""
    prop_type = prop.get("type", "")
    definition = PropertyDefinition(id=prop.get("id", ""), type=prop_type)
    config = prop.get(prop_type) or {}

    if prop_type in ("select", "multi_select", "status"):
        if config.get("options") is not None:
            definition.options = [
                SelectOption(name=o.get("name"), color=o.get("color"))
                for o in config["options"]
            ]
        if prop_type == "status" and config.get("groups") is not None:
            definition.groups = _status_groups(config)

    elif prop_type == "unique_id":
        definition.prefix = config.get("prefix") or None

    elif prop_type == "relation":
        definition.related_database = config.get("database_id") or None

    return definition


def build_schema_property(name: str, prop: dict) -> SchemaProperty:
    """Flattened column for filter-building: option names, {group: [names]}."""
    definition = build_property_definition(prop)
    schema = SchemaProperty(name=name, id=definition.id, type=definition.type)
    if definition.options is not None:
        schema.options = [o.name for o in definition.options]
    if definition.groups is not None:
        schema.groups = {g.name: g.options for g in definition.groups}
    schema.prefix = definition.prefix
    schema.related_database = definition.related_database
    return schema


def flatten_property_schema(properties: dict[str, dict]) -> list[SchemaProperty]:
    """Flatten a database's property definitions, in schema order."""
    return [build_schema_property(name, prop) for name, prop in properties.items()]


# =============================================================================
# Property values for writes
# =============================================================================

# Keys that always address the title column
TITLE_KEYS = ("Name", "title")


def build_property_value(value: Any) -> Any:
    """Guess a property payload from a bare JSON value.

    Lossy: strings become selects, so rich_text,
    date, relation, people and status columns need pre-shaped values.
    """
    # bool before number: bool is an int subclass
    if isinstance(value, bool):
        return {"checkbox": value}
    if isinstance(value, str):
        return {"select": {"name": value}}
    if isinstance(value, (int, float)):
        return {"number": value}
    if isinstance(value, list):
        return {"multi_select": [{"name": str(v)} for v in value]}
    return value


def build_database_properties(
    title: str,
    extra: Optional[dict[str, Any]] = None,
    title_key: str = "Name"
) -> dict:
    """Properties for a new database row: the title column plus coerced extras."""
    props: dict[str, Any] = {title_key: {"title": [{"text": {"content": title}}]}}
    for key, value in (extra or {}).items():
        if key in TITLE_KEYS or key == title_key:
            continue
        props[key] = build_property_value(value)
    return props
