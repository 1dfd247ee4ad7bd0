"""Typed tool inputs.

Each tool's raw JSON input is decoded into one of these models before the
handler runs; the JSON schemas in tool_defs.py describe the same shapes to
the model.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

EntityType = Literal[
    "character", "location", "organization", "quest", "hero",
    "player", "session", "timeline_event", "secret",
]
AnyEntityType = Literal[
    "campaign", "character", "location", "organization", "quest", "hero",
    "player", "session", "timeline_event", "secret",
]

CREATABLE_ENTITY_TYPES: tuple[str, ...] = (
    "character", "location", "organization", "quest", "hero",
    "player", "session", "timeline_event", "secret",
)
UPDATABLE_ENTITY_TYPES: tuple[str, ...] = ("campaign",) + CREATABLE_ENTITY_TYPES

LOCATION_TYPES = (
    "world", "continent", "region", "territory", "settlement",
    "district", "building", "room", "landmark", "wilderness",
)
ORG_TYPES = (
    "government", "guild", "religion", "military", "criminal",
    "mercantile", "academic", "secret_society", "family", "other",
)
PLOT_TYPES = ("main", "secondary", "side", "background")
QUEST_STATUSES = ("planned", "available", "active", "completed", "failed", "abandoned")

MAX_NAME_LENGTH = 200


def format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "input"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


class ToolInput(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _FlavoredInput(ToolInput):
    flavor: Optional[str] = Field(default=None, max_length=80)


# ─── Work items ──────────────────────────────────────────────────────

class AddWorkItemInput(ToolInput):
    description: str = Field(min_length=1)


class UpdateWorkItemInput(ToolInput):
    id: str = Field(min_length=1)
    status: Literal["pending", "in_progress", "completed"]
    result: Optional[str] = None


class ListWorkItemsInput(ToolInput):
    pass


# ─── Campaign context ────────────────────────────────────────────────

class SearchEntitiesInput(_FlavoredInput):
    query: str = Field(min_length=1)
    entity_types: Optional[list[EntityType]] = None
    limit: int = Field(default=20, ge=1, le=100)


class GetEntityInput(_FlavoredInput):
    entity_type: AnyEntityType
    entity_id: str = Field(min_length=1)


class GetRelationshipsInput(_FlavoredInput):
    entity_type: EntityType
    entity_id: str = Field(min_length=1)


class GetLocationHierarchyInput(_FlavoredInput):
    location_id: str = Field(min_length=1)


class GetTimelineInput(_FlavoredInput):
    limit: Optional[int] = Field(default=None, ge=0)
    include_hidden: bool = True


class GetCampaignContextInput(_FlavoredInput):
    pass


class GetPageContextInput(_FlavoredInput):
    include_relationships: bool = True
    include_hierarchy: bool = True


# ─── Proposals ───────────────────────────────────────────────────────

class SuggestedRelationshipInput(ToolInput):
    target_type: EntityType
    target_name: str = Field(min_length=1)
    relationship_type: str = Field(min_length=1)
    description: Optional[str] = None
    is_new_entity: bool = False


class ProposeCreateInput(ToolInput):
    entity_type: EntityType
    data: dict[str, Any]
    reasoning: Optional[str] = None
    suggested_relationships: Optional[list[SuggestedRelationshipInput]] = None
    parent_id: Optional[str] = None


class ProposeUpdateInput(ToolInput):
    entity_type: AnyEntityType
    entity_id: str = Field(min_length=1)
    changes: dict[str, Any]
    reasoning: Optional[str] = None


class ProposeRelationshipInput(ToolInput):
    source_type: EntityType
    source_id: str = Field(min_length=1)
    target_type: EntityType
    target_id: str = Field(min_length=1)
    relationship_type: str = Field(min_length=1)
    description: Optional[str] = None
    is_bidirectional: bool = True
    reasoning: Optional[str] = None


def validate_proposal_data(entity_type: str, data: dict[str, Any]) -> str | None:
    """Check create-proposal data against the entity store's requirements.

    Returns an error message, or None when the data is acceptable.
    """
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        return "name is required and must be a non-empty string"
    if len(name) > MAX_NAME_LENGTH:
        return f"name must be {MAX_NAME_LENGTH} characters or less"

    if entity_type == "location":
        return _check_enum(data, "location_type", LOCATION_TYPES)
    if entity_type == "organization":
        return _check_enum(data, "org_type", ORG_TYPES)
    if entity_type == "quest":
        return _check_enum(data, "plot_type", PLOT_TYPES) or _check_enum(data, "status", QUEST_STATUSES)
    return None


def _check_enum(data: dict[str, Any], field: str, allowed: tuple[str, ...]) -> str | None:
    value = data.get(field)
    if not value:
        return f"{field} is required. Must be one of: {', '.join(allowed)}"
    if value not in allowed:
        return f'{field} "{value}" is invalid. Must be one of: {", ".join(allowed)}'
    return None
