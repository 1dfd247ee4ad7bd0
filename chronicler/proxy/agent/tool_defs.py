from __future__ import annotations

from .validators import CREATABLE_ENTITY_TYPES, UPDATABLE_ENTITY_TYPES

_FLAVOR = {
    "type": "string",
    "description": "Brief status text shown to the user while this tool runs (e.g., 'Searching the archives...'). Keep under 50 chars.",
}

_ENTITY_ID_HINT = "The entity's UUID. Use search_entities to find IDs by name."


def get_tool_definitions() -> list[dict]:
    return (
        get_work_item_definitions()
        + get_campaign_context_definitions()
        + get_proposal_definitions()
    )


def get_work_item_definitions() -> list[dict]:
    return [_add_work_item_def(), _update_work_item_def(), _list_work_items_def()]


def get_campaign_context_definitions() -> list[dict]:
    return [
        _search_entities_def(),
        _get_entity_def(),
        _get_relationships_def(),
        _get_location_hierarchy_def(),
        _get_timeline_def(),
        _get_campaign_context_def(),
        _get_page_context_def(),
    ]


def get_proposal_definitions() -> list[dict]:
    return [_propose_create_def(), _propose_update_def(), _propose_relationship_def()]


def _function(name: str, description: str, properties: dict, required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


# ─── Work items ──────────────────────────────────────────────────────

def _add_work_item_def() -> dict:
    return _function(
        "add_work_item",
        "Add a step to your research plan. Use this before multi-step lookups so you "
        "can track what you still need to find out.",
        {
            "description": {
                "type": "string",
                "description": "What this step will accomplish (e.g., 'Find all members of the Thieves Guild').",
            },
        },
        ["description"],
    )


def _update_work_item_def() -> dict:
    return _function(
        "update_work_item",
        "Update the status of a work item and optionally record what you found.",
        {
            "id": {"type": "string", "description": "The work item ID (e.g., 'wi_1')."},
            "status": {
                "type": "string",
                "enum": ["pending", "in_progress", "completed"],
                "description": "New status.",
            },
            "result": {"type": "string", "description": "Short summary of what this step found."},
        },
        ["id", "status"],
    )


def _list_work_items_def() -> dict:
    return _function(
        "list_work_items",
        "Show your current research plan with the status of every step.",
        {},
        [],
    )


# ─── Campaign context ────────────────────────────────────────────────

def _search_entities_def() -> dict:
    return _function(
        "search_entities",
        "Search for entities (characters, locations, organizations, quests, etc.) in the campaign. "
        "Returns matching entities with relevance snippets.",
        {
            "query": {"type": "string", "description": "Search query."},
            "entity_types": {
                "type": "array",
                "items": {"type": "string", "enum": list(CREATABLE_ENTITY_TYPES)},
                "description": "Optional filter by entity type(s).",
            },
            "limit": {"type": "number", "description": "Maximum results to return (default 20)."},
            "flavor": _FLAVOR,
        },
        ["query"],
    )


def _get_entity_def() -> dict:
    return _function(
        "get_entity",
        "Get full details of one entity, including all rich-text sections, by type and ID.",
        {
            "entity_type": {
                "type": "string",
                "enum": list(UPDATABLE_ENTITY_TYPES),
                "description": "The type of entity to retrieve.",
            },
            "entity_id": {"type": "string", "description": _ENTITY_ID_HINT},
            "flavor": _FLAVOR,
        },
        ["entity_type", "entity_id"],
    )


def _get_relationships_def() -> dict:
    return _function(
        "get_relationships",
        "Get all relationships involving a specific entity. Shows how entities are connected.",
        {
            "entity_type": {
                "type": "string",
                "enum": list(CREATABLE_ENTITY_TYPES),
                "description": "The type of entity.",
            },
            "entity_id": {"type": "string", "description": _ENTITY_ID_HINT},
            "flavor": _FLAVOR,
        },
        ["entity_type", "entity_id"],
    )


def _get_location_hierarchy_def() -> dict:
    return _function(
        "get_location_hierarchy",
        "Get the parent chain (world down to this place) and the immediate children of a location.",
        {
            "location_id": {"type": "string", "description": "The location ID to get hierarchy for."},
            "flavor": _FLAVOR,
        },
        ["location_id"],
    )


def _get_timeline_def() -> dict:
    return _function(
        "get_timeline",
        "Get the campaign's timeline events in chronological order.",
        {
            "limit": {"type": "number", "description": "Maximum number of events to return (default: all)."},
            "include_hidden": {
                "type": "boolean",
                "description": "Include events the players don't know about (default: true).",
            },
            "flavor": _FLAVOR,
        },
        [],
    )


def _get_campaign_context_def() -> dict:
    return _function(
        "get_campaign_context",
        "Get a high-level overview of the campaign including its description, game system, and "
        "entity counts. Use this to understand the campaign before diving into specifics.",
        {"flavor": _FLAVOR},
        [],
    )


def _get_page_context_def() -> dict:
    return _function(
        "get_page_context",
        "Get detailed context about the entity the user is currently viewing: full details, "
        "relationships, and hierarchy (for locations).",
        {
            "include_relationships": {
                "type": "boolean",
                "description": "Include all relationships for this entity (default: true).",
            },
            "include_hierarchy": {
                "type": "boolean",
                "description": "For locations, include the parent chain and children (default: true).",
            },
            "flavor": _FLAVOR,
        },
        [],
    )


# ─── Proposals ───────────────────────────────────────────────────────

_APPROVAL_NOTE = (
    "IMPORTANT: This does NOT change the campaign immediately. It creates a proposal "
    "that the user reviews, and may edit, before accepting or rejecting it."
)


def _propose_create_def() -> dict:
    return _function(
        "propose_create",
        "Propose creating a new entity in the campaign.\n\n" + _APPROVAL_NOTE,
        {
            "entity_type": {
                "type": "string",
                "enum": list(CREATABLE_ENTITY_TYPES),
                "description": "Type of entity to create.",
            },
            "data": {
                "type": "object",
                "description": (
                    "Entity data. 'name' is always required.\n\n"
                    "Common fields by entity type:\n"
                    "- character: name, lineage, occupation, description, personality, motivations, secrets, voice_notes\n"
                    "- location: name, location_type, description\n"
                    "- organization: name, org_type, description, goals, resources\n"
                    "- quest: name, plot_type, status, description, hook, objectives\n"
                    "- hero: name, classes, backstory, notes\n"
                    "- player: name, email, preferences, boundaries, notes\n"
                    "- session: name, session_number, title, summary, notes\n"
                    "- timeline_event: name, date_display, description\n"
                    "- secret: name, content, reveal_conditions"
                ),
                "properties": {"name": {"type": "string", "description": "Name of the entity."}},
                "required": ["name"],
            },
            "reasoning": {
                "type": "string",
                "description": "Brief explanation of why you're suggesting this entity (shown to user).",
            },
            "suggested_relationships": {
                "type": "array",
                "description": "Optional relationships to create with existing entities after this entity is created.",
                "items": {
                    "type": "object",
                    "properties": {
                        "target_type": {"type": "string", "description": "Entity type of the target."},
                        "target_name": {"type": "string", "description": "Name of the target entity (must exist)."},
                        "relationship_type": {
                            "type": "string",
                            "description": "Type of relationship (e.g., located_in, member_of, ally_of, enemy_of).",
                        },
                        "description": {"type": "string", "description": "Optional description of the relationship."},
                        "is_new_entity": {
                            "type": "boolean",
                            "description": "True if the target doesn't exist yet (skipped on creation).",
                        },
                    },
                    "required": ["target_type", "target_name", "relationship_type"],
                },
            },
            "parent_id": {
                "type": "string",
                "description": "Parent location ID (only for locations, to set the hierarchy).",
            },
        },
        ["entity_type", "data"],
    )


def _propose_update_def() -> dict:
    return _function(
        "propose_update",
        "Propose updating an existing entity. Find the entity_id with search_entities or "
        "get_entity first.\n\n" + _APPROVAL_NOTE,
        {
            "entity_type": {
                "type": "string",
                "enum": list(UPDATABLE_ENTITY_TYPES),
                "description": "Type of entity to update.",
            },
            "entity_id": {"type": "string", "description": "ID of the entity to update."},
            "changes": {
                "type": "object",
                "description": "Fields to update. Only include fields you want to change.",
            },
            "reasoning": {
                "type": "string",
                "description": "Brief explanation of why you're suggesting these changes (shown to user).",
            },
        },
        ["entity_type", "entity_id", "changes"],
    )


def _propose_relationship_def() -> dict:
    return _function(
        "propose_relationship",
        "Propose a relationship between two existing entities.\n\n" + _APPROVAL_NOTE,
        {
            "source_type": {"type": "string", "enum": list(CREATABLE_ENTITY_TYPES), "description": "Entity type of the source."},
            "source_id": {"type": "string", "description": "ID of the source entity."},
            "target_type": {"type": "string", "enum": list(CREATABLE_ENTITY_TYPES), "description": "Entity type of the target."},
            "target_id": {"type": "string", "description": "ID of the target entity."},
            "relationship_type": {
                "type": "string",
                "description": "Type of relationship (e.g., ally_of, member_of, rival_of).",
            },
            "description": {"type": "string", "description": "Optional description explaining this relationship."},
            "is_bidirectional": {
                "type": "boolean",
                "description": "Whether the relationship goes both ways (default: true).",
            },
            "reasoning": {
                "type": "string",
                "description": "Brief explanation of why you're suggesting this relationship (shown to user).",
            },
        },
        ["source_type", "source_id", "target_type", "target_id", "relationship_type"],
    )
