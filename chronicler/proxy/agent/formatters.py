"""Markdown renderings of campaign data for the model."""

from __future__ import annotations

import re
from typing import Any

from ..content import field_to_markdown

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)

# frontmatter keys per entity type, in display order
_METADATA: dict[str, tuple[str, ...]] = {
    "character": ("lineage", "occupation", "is_alive"),
    "location": ("location_type", "parent_id"),
    "organization": ("org_type", "is_active"),
    "quest": ("plot_type", "status"),
    "session": ("session_number", "date"),
    "timeline_event": ("date_display", "significance", "is_public"),
    "secret": ("revealed", "known_by"),
    "hero": ("classes", "is_active"),
    "player": ("preferences",),
    "campaign": ("system",),
}

# rich-text sections per entity type; description always comes first
_SECTIONS: dict[str, tuple[tuple[str, str], ...]] = {
    "character": (("personality", "Personality"), ("motivations", "Motivations"),
                  ("secrets", "Secrets"), ("voice_notes", "Voice Notes")),
    "location": (("gm_notes", "GM Notes"),),
    "organization": (("goals", "Goals"), ("resources", "Resources"), ("secrets", "Secrets")),
    "quest": (("hook", "Hook"), ("objectives", "Objectives"), ("complications", "Complications"),
              ("resolution", "Resolution"), ("reward", "Reward")),
    "session": (("planned_content", "Planned Content"), ("summary", "Summary"),
                ("highlights", "Highlights"), ("notes", "Notes")),
    "secret": (("content", "Content"), ("reveal_conditions", "Reveal Conditions")),
    "hero": (("backstory", "Backstory"), ("goals", "Goals"), ("bonds", "Bonds")),
    "player": (("boundaries", "Boundaries"), ("notes", "Notes")),
}

_BOOL_FIELDS = {"is_alive", "is_active", "is_public", "revealed"}


def is_uuid(value: str) -> bool:
    return bool(_UUID_RE.match(value or ""))


def invalid_id_message(value: str) -> str:
    shown = value if len(value) <= 50 else value[:47] + "..."
    return (
        f'"{shown}" is not a valid entity ID. Entity IDs are UUIDs '
        f'(e.g., "550e8400-e29b-41d4-a716-446655440000").\n\n'
        f"To find an entity's ID by name, use the search_entities tool:\n"
        f'  search_entities({{ query: "{shown}" }})\n\n'
        f"Then use the returned ID with this tool."
    )


def entity_label(entity: dict[str, Any]) -> str:
    return str(entity.get("name") or entity.get("title") or entity.get("id", ""))


def format_entity(entity_type: str, entity: dict[str, Any]) -> str:
    lines = ["---", f"type: {entity_type}", f"id: {entity.get('id')}"]
    if entity.get("name"):
        lines.append(f"name: {entity['name']}")
    elif entity.get("title"):
        lines.append(f"title: {entity['title']}")

    for key in _METADATA.get(entity_type, ()):
        value = entity.get(key)
        if key in _BOOL_FIELDS:
            lines.append(f"{key}: {str(bool(value)).lower()}")
        elif value not in (None, ""):
            lines.append(f"{key}: {value}")
    lines += ["---", ""]

    sections = (("description", "Description"),) + _SECTIONS.get(entity_type, ())
    for key, title in sections:
        text = field_to_markdown(entity.get(key))
        if text:
            lines += [f"## {title}", str(text), ""]
    return "\n".join(lines)


def format_entity_summary(entity_type: str, entity: dict[str, Any]) -> str:
    """Short header block used for the page the user is viewing."""
    lines = [f"# {entity_label(entity)}", f"**Type:** {entity_type}", f"**ID:** `{entity.get('id')}`"]

    if entity_type == "character":
        for key, label in (("lineage", "Lineage"), ("occupation", "Occupation")):
            if entity.get(key):
                lines.append(f"**{label}:** {entity[key]}")
        lines.append(f"**Status:** {'Alive' if entity.get('is_alive', True) else 'Deceased'}")
    elif entity_type == "location" and entity.get("location_type"):
        lines.append(f"**Location Type:** {entity['location_type']}")
    elif entity_type == "organization":
        if entity.get("org_type"):
            lines.append(f"**Organization Type:** {entity['org_type']}")
        lines.append(f"**Status:** {'Active' if entity.get('is_active', True) else 'Inactive'}")
    elif entity_type == "quest":
        if entity.get("status"):
            lines.append(f"**Status:** {entity['status']}")
        if entity.get("plot_type"):
            lines.append(f"**Plot Type:** {entity['plot_type']}")
    elif entity_type == "hero":
        if entity.get("classes"):
            lines.append(f"**Classes:** {entity['classes']}")
        lines.append(f"**Status:** {'Active' if entity.get('is_active', True) else 'Inactive'}")
    elif entity_type == "session":
        lines.append(f"**Session Number:** {entity.get('session_number')}")
        if entity.get("date"):
            lines.append(f"**Date:** {entity['date']}")
    lines.append("")

    description = field_to_markdown(entity.get("description"))
    if description:
        lines += ["## Description", str(description), ""]
    return "\n".join(lines)


def format_search_results(query: str, results: list[dict[str, Any]]) -> str:
    if not results:
        return f'No results found for "{query}".'
    lines = []
    for i, r in enumerate(results, start=1):
        snippet = f": {r['snippet']}" if r.get("snippet") else ""
        lines.append(f"{i}. **{r.get('name')}** ({r.get('entity_type')}, id: {r.get('entity_id')}){snippet}")
    return f'## Search Results for "{query}"\n\n' + "\n".join(lines)


def format_relationship_lines(relationships: list[dict[str, Any]], entity_id: str, code_ids: bool = False) -> str:
    lines = []
    for r in relationships:
        outgoing = r.get("source_id") == entity_id
        if r.get("is_bidirectional"):
            arrow = "↔"
        else:
            arrow = "→" if outgoing else "←"
        other_type = r.get("target_type") if outgoing else r.get("source_type")
        other_id = r.get("target_id") if outgoing else r.get("source_id")
        shown_id = f"`{other_id}`" if code_ids else other_id

        line = f"- **{r.get('relationship_type')}** {arrow} {other_type} ({shown_id})"
        if r.get("strength") is not None:
            line += f" [strength: {r['strength']}]"
        if r.get("description"):
            line += f"\n  {r['description']}"
        lines.append(line)
    return "\n".join(lines)


def format_hierarchy(
    location: dict[str, Any],
    ancestors: list[dict[str, Any]],
    children: list[dict[str, Any]],
) -> str:
    def kind(loc: dict[str, Any]) -> str:
        return f" ({loc['location_type']})" if loc.get("location_type") else ""

    lines = [f"## Location Hierarchy for {location.get('name')}", ""]
    if ancestors:
        lines.append("### Ancestors (top to bottom)")
        for depth, a in enumerate(ancestors):
            lines.append(f"{'  ' * depth}└─ **{a.get('name')}**{kind(a)} [{a.get('id')}]")
        lines.append(f"{'  ' * len(ancestors)}└─ **{location.get('name')}**{kind(location)} ← current")
    else:
        lines.append("*No parent locations (this is a top-level location)*")
    lines.append("")

    if children:
        lines.append("### Children")
        lines.extend(f"- **{c.get('name')}**{kind(c)} [{c.get('id')}]" for c in children)
    else:
        lines.append("*No child locations*")
    return "\n".join(lines)


def format_timeline(events: list[dict[str, Any]]) -> str:
    if not events:
        return "No timeline events found for this campaign."
    blocks = []
    for e in events:
        secret = "" if e.get("is_public", True) else " [SECRET]"
        significance = f" [{e['significance']}]" if e.get("significance") else ""
        block = f"### {e.get('title')}{secret}\n**Date:** {e.get('date_display') or 'unknown'}{significance}"
        description = field_to_markdown(e.get("description"))
        if description:
            block += f"\n\n{description}"
        blocks.append(block)
    return "## Campaign Timeline\n\n" + "\n\n---\n\n".join(blocks)


def format_campaign_context(campaign: dict[str, Any], lists: dict[str, list[dict[str, Any]]]) -> str:
    lines = ["---", f"name: {campaign.get('name')}"]
    if campaign.get("system"):
        lines.append(f"system: {campaign['system']}")
    lines += [f"id: {campaign.get('id')}", "---", ""]

    description = field_to_markdown(campaign.get("description"))
    if description:
        lines += ["## Description", str(description), ""]

    rows = (
        ("Characters", "character"), ("Locations", "location"), ("Organizations", "organization"),
        ("Quests", "quest"), ("Player Heroes", "hero"), ("Sessions", "session"),
        ("Timeline Events", "timeline_event"),
    )
    lines += ["## Campaign Statistics", "", "| Entity Type | Count |", "|-------------|-------|"]
    lines.extend(f"| {label} | {len(lists.get(key, []))} |" for label, key in rows)
    lines.append("")

    for title, key in (("Characters (names)", "character"), ("Locations (names)", "location")):
        items = lists.get(key, [])
        if not items:
            continue
        lines.append(f"## {title}")
        lines.extend(f"- {entity_label(i)}" for i in items[:20])
        if len(items) > 20:
            lines.append(f"- ... and {len(items) - 20} more")
        lines.append("")

    heroes = lists.get("hero", [])
    if heroes:
        lines.append("## Player Heroes")
        lines.extend(f"- {h.get('name')}" + (f" ({h['classes']})" if h.get("classes") else "") for h in heroes)
        lines.append("")
    return "\n".join(lines)


def truncate(value: Any, limit: int = 50) -> str:
    text = "" if value is None else str(value)
    return text if len(text) <= limit else text[:limit] + "..."
