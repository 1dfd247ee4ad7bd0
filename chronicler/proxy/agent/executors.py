from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..content import field_to_markdown
from ..entities import EntityGateway
from .formatters import (
    entity_label,
    format_campaign_context,
    format_entity,
    format_entity_summary,
    format_hierarchy,
    format_relationship_lines,
    format_search_results,
    format_timeline,
    invalid_id_message,
    is_uuid,
    truncate,
)
from .proposals import ProposalTracker, SuggestedRelationship, proposal_to_dict
from .registry import PageContext, ToolCategory, ToolContext, ToolDefinition, ToolRegistry, ToolResult
from .tool_defs import get_campaign_context_definitions, get_proposal_definitions, get_work_item_definitions
from .validators import (
    AddWorkItemInput,
    GetCampaignContextInput,
    GetEntityInput,
    GetLocationHierarchyInput,
    GetPageContextInput,
    GetRelationshipsInput,
    GetTimelineInput,
    ListWorkItemsInput,
    ProposeCreateInput,
    ProposeRelationshipInput,
    ProposeUpdateInput,
    SearchEntitiesInput,
    UpdateWorkItemInput,
    validate_proposal_data,
)
from .work_items import WorkItemTracker

logger = logging.getLogger("chronicler.agent")

_STATUS_MARKS = {"completed": "✓", "in_progress": "⟳", "pending": "○"}

_REVIEW_NOTE = "The user will see this proposal in the chat and can accept, edit, or reject it."


class WorkItemExecutor:

    def __init__(self, tracker: WorkItemTracker) -> None:
        self.tracker = tracker

    async def _execute_add(self, args: AddWorkItemInput, ctx: ToolContext) -> ToolResult:
        item = self.tracker.add(args.description)
        return ToolResult(True, f"Added work item **{item.id}**: {item.description}", item.to_dict())

    async def _execute_update(self, args: UpdateWorkItemInput, ctx: ToolContext) -> ToolResult:
        item = self.tracker.update(args.id, args.status, args.result)
        if item is None:
            return ToolResult(False, f"Work item {args.id} not found.")

        content = f"{_STATUS_MARKS[args.status]} Updated **{item.id}** to {args.status}"
        if args.result:
            content += f"\n→ {args.result}"
        return ToolResult(True, content, item.to_dict())

    async def _execute_list(self, args: ListWorkItemsInput, ctx: ToolContext) -> ToolResult:
        items = self.tracker.list()
        if not items:
            return ToolResult(True, "No work items yet. Use `add_work_item` to plan your research.", [])
        summary = self.tracker.summary()
        content = f"## Work Items ({summary['completed']}/{summary['total']} completed)\n\n{self.tracker.to_markdown()}"
        return ToolResult(True, content, [i.to_dict() for i in items])

    def handlers(self) -> dict[str, tuple[Any, type]]:
        return {
            "add_work_item": (self._execute_add, AddWorkItemInput),
            "update_work_item": (self._execute_update, UpdateWorkItemInput),
            "list_work_items": (self._execute_list, ListWorkItemsInput),
        }


class CampaignContextExecutor:
    """Read-only lookups against the entity gateway."""

    def __init__(self, gateway: EntityGateway) -> None:
        self.gateway = gateway

    async def _execute_search(self, args: SearchEntitiesInput, ctx: ToolContext) -> ToolResult:
        try:
            results = await self.gateway.search(ctx.campaign_id, args.query, args.entity_types, args.limit)
        except Exception as e:
            logger.error(f"Entity search failed: {e}")
            return ToolResult(False, f"Search failed: {e}")
        return ToolResult(True, format_search_results(args.query, results), results)

    async def _execute_get_entity(self, args: GetEntityInput, ctx: ToolContext) -> ToolResult:
        entity = await self.gateway.get(args.entity_type, args.entity_id)
        if entity is None:
            return ToolResult(
                False,
                f'Could not find {args.entity_type} with ID "{args.entity_id}". Use search_entities to find the correct ID.',
            )
        return ToolResult(True, format_entity(args.entity_type, entity), entity)

    async def _execute_get_relationships(self, args: GetRelationshipsInput, ctx: ToolContext) -> ToolResult:
        if not is_uuid(args.entity_id):
            return ToolResult(False, invalid_id_message(args.entity_id))

        relationships = await self.gateway.relationships_for(args.entity_type, args.entity_id)
        if not relationships:
            return ToolResult(True, f"No relationships found for {args.entity_type} {args.entity_id}.", [])
        content = (
            f"## Relationships for {args.entity_type} {args.entity_id}\n\n"
            + format_relationship_lines(relationships, args.entity_id)
        )
        return ToolResult(True, content, relationships)

    async def _execute_get_location_hierarchy(self, args: GetLocationHierarchyInput, ctx: ToolContext) -> ToolResult:
        location = await self.gateway.get("location", args.location_id)
        if location is None:
            return ToolResult(False, f'Could not find location with ID "{args.location_id}".')

        ancestors = await self._ancestors(location)
        children = await self.gateway.location_children(args.location_id)
        return ToolResult(
            True,
            format_hierarchy(location, ancestors, children),
            {"location": location, "ancestors": ancestors, "children": children},
        )

    async def _ancestors(self, location: dict[str, Any]) -> list[dict[str, Any]]:
        chain: list[dict[str, Any]] = []
        seen = {location.get("id")}
        parent_id = location.get("parent_id")
        while parent_id and parent_id not in seen:
            parent = await self.gateway.get("location", parent_id)
            if parent is None:
                break
            chain.insert(0, parent)
            seen.add(parent_id)
            parent_id = parent.get("parent_id")
        return chain

    async def _execute_get_timeline(self, args: GetTimelineInput, ctx: ToolContext) -> ToolResult:
        events = await self.gateway.list(ctx.campaign_id, "timeline_event")
        if not args.include_hidden:
            events = [e for e in events if e.get("is_public", True)]
        events.sort(key=lambda e: float(e.get("sort_order") or 0))
        if args.limit:
            events = events[: args.limit]
        return ToolResult(True, format_timeline(events), events)

    async def _execute_get_campaign_context(self, args: GetCampaignContextInput, ctx: ToolContext) -> ToolResult:
        campaign = await self.gateway.get("campaign", ctx.campaign_id)
        if campaign is None:
            return ToolResult(False, f"Campaign {ctx.campaign_id} not found.")

        kinds = ("character", "location", "organization", "quest", "hero", "session", "timeline_event")
        results = await asyncio.gather(*(self.gateway.list(ctx.campaign_id, k) for k in kinds))
        lists = dict(zip(kinds, results))
        stats = {k: len(v) for k, v in lists.items()}
        return ToolResult(True, format_campaign_context(campaign, lists), {"campaign": campaign, "stats": stats})

    async def _execute_get_page_context(self, args: GetPageContextInput, ctx: ToolContext) -> ToolResult:
        page: PageContext | None = ctx.page_context
        if page is None or not page.entity_type or not page.entity_id:
            return ToolResult(
                True,
                "The user is not currently viewing a specific entity. They are on a list page or the "
                "dashboard. Ask what they'd like to explore, or use search_entities to find something specific.",
                {"no_context": True},
            )

        entity = await self.gateway.get(page.entity_type, page.entity_id)
        if entity is None:
            return ToolResult(False, f"Could not load the {page.entity_type} the user is viewing ({page.entity_id}).")

        sections = [format_entity_summary(page.entity_type, entity)]
        if page.entity_type == "location" and args.include_hierarchy:
            ancestors = await self._ancestors(entity)
            children = await self.gateway.location_children(page.entity_id)
            sections.append(format_hierarchy(entity, ancestors, children))
        if args.include_relationships:
            relationships = await self.gateway.relationships_for(page.entity_type, page.entity_id)
            body = format_relationship_lines(relationships, page.entity_id, code_ids=True) or "*No relationships found*"
            sections.append(f"## Relationships\n\n{body}")

        return ToolResult(
            True,
            "\n\n".join(sections),
            {"entity_type": page.entity_type, "entity_id": page.entity_id, "entity_name": page.entity_name},
        )

    def handlers(self) -> dict[str, tuple[Any, type]]:
        return {
            "search_entities": (self._execute_search, SearchEntitiesInput),
            "get_entity": (self._execute_get_entity, GetEntityInput),
            "get_relationships": (self._execute_get_relationships, GetRelationshipsInput),
            "get_location_hierarchy": (self._execute_get_location_hierarchy, GetLocationHierarchyInput),
            "get_timeline": (self._execute_get_timeline, GetTimelineInput),
            "get_campaign_context": (self._execute_get_campaign_context, GetCampaignContextInput),
            "get_page_context": (self._execute_get_page_context, GetPageContextInput),
        }


class ProposalToolExecutor:
    """Records proposals; never mutates entities."""

    def __init__(self, tracker: ProposalTracker, gateway: EntityGateway) -> None:
        self.tracker = tracker
        self.gateway = gateway

    async def _execute_propose_create(self, args: ProposeCreateInput, ctx: ToolContext) -> ToolResult:
        error = validate_proposal_data(args.entity_type, args.data)
        if error:
            return ToolResult(False, f"Proposal validation failed: {error}\n\nPlease fix the data and try again.")

        relationships = [
            SuggestedRelationship(
                target_type=r.target_type,
                target_name=r.target_name,
                relationship_type=r.relationship_type,
                description=r.description,
                is_new_entity=r.is_new_entity,
            )
            for r in args.suggested_relationships or []
        ]
        proposal = self.tracker.add_create(
            args.entity_type,
            args.data,
            reasoning=args.reasoning,
            suggested_relationships=relationships,
            parent_id=args.parent_id,
        )

        lines = [
            f"Created proposal to make a new {args.entity_type}:",
            "",
            f"**Name:** {args.data['name']}",
            f"**Proposal ID:** {proposal.id}",
            "",
        ]
        if args.reasoning:
            lines += [f"**Reasoning:** {args.reasoning}", ""]
        if relationships:
            lines.append("**Suggested Relationships:**")
            for rel in relationships:
                tag = " (new entity)" if rel.is_new_entity else ""
                lines.append(f"- {rel.relationship_type} → {rel.target_type}: {rel.target_name}{tag}")
            lines.append("")
        lines.append(_REVIEW_NOTE)
        return ToolResult(True, "\n".join(lines), proposal_to_dict(proposal))

    async def _execute_propose_update(self, args: ProposeUpdateInput, ctx: ToolContext) -> ToolResult:
        if not args.changes:
            return ToolResult(False, "Changes object is empty. Specify at least one field to update.")

        entity = await self.gateway.get(args.entity_type, args.entity_id)
        if entity is None:
            return ToolResult(
                False,
                f'Could not find {args.entity_type} with ID "{args.entity_id}". Use search_entities to find the correct ID.',
            )
        current = {k: field_to_markdown(v) for k, v in entity.items()}
        proposal = self.tracker.add_update(
            args.entity_type,
            args.entity_id,
            args.changes,
            reasoning=args.reasoning,
            current_data=current,
        )

        lines = [
            f"Created proposal to update {args.entity_type}: **{entity_label(entity)}**",
            "",
            f"**Entity ID:** {args.entity_id}",
            f"**Proposal ID:** {proposal.id}",
            "",
            "**Proposed Changes:**",
        ]
        for key, value in args.changes.items():
            old = truncate(current[key]) if key in current else "(not set)"
            lines.append(f'- **{key}:** "{old}" → "{truncate(value)}"')
        lines.append("")
        if args.reasoning:
            lines += [f"**Reasoning:** {args.reasoning}", ""]
        lines.append(_REVIEW_NOTE)
        return ToolResult(True, "\n".join(lines), proposal_to_dict(proposal))

    async def _execute_propose_relationship(self, args: ProposeRelationshipInput, ctx: ToolContext) -> ToolResult:
        names = {}
        for side, etype, eid in (("source", args.source_type, args.source_id), ("target", args.target_type, args.target_id)):
            entity = await self.gateway.get(etype, eid)
            if entity is None:
                return ToolResult(
                    False, f'Could not find {etype} with ID "{eid}". Use search_entities to find the correct ID.'
                )
            names[side] = entity_label(entity)

        proposal = self.tracker.add_relationship(
            args.source_type,
            args.source_id,
            args.target_type,
            args.target_id,
            args.relationship_type,
            source_name=names["source"],
            target_name=names["target"],
            description=args.description,
            is_bidirectional=args.is_bidirectional,
            reasoning=args.reasoning,
        )

        arrow = "↔" if args.is_bidirectional else "→"
        lines = [
            "Created proposal to link entities:",
            "",
            f"**{names['source']}** ({args.source_type}) {arrow} **{args.relationship_type}** "
            f"{arrow} **{names['target']}** ({args.target_type})",
            "",
            f"**Proposal ID:** {proposal.id}",
            f"**Bidirectional:** {'Yes' if args.is_bidirectional else 'No'}",
        ]
        if args.description:
            lines.append(f"**Description:** {args.description}")
        if args.reasoning:
            lines.append(f"**Reasoning:** {args.reasoning}")
        lines += ["", "The user will see this proposal in the chat and can accept or reject it."]
        return ToolResult(True, "\n".join(lines), proposal_to_dict(proposal))

    def handlers(self) -> dict[str, tuple[Any, type]]:
        return {
            "propose_create": (self._execute_propose_create, ProposeCreateInput),
            "propose_update": (self._execute_propose_update, ProposeUpdateInput),
            "propose_relationship": (self._execute_propose_relationship, ProposeRelationshipInput),
        }


def _bind(schemas: list[dict], handlers: dict[str, tuple[Any, type]], category: ToolCategory) -> list[ToolDefinition]:
    definitions = []
    for schema in schemas:
        fn = schema["function"]
        handler, model = handlers[fn["name"]]
        definitions.append(
            ToolDefinition(
                name=fn["name"],
                description=fn["description"],
                input_schema=fn["parameters"],
                handler=handler,
                category=category,
                input_model=model,
            )
        )
    return definitions


def create_tool_registry(
    work_items: WorkItemTracker,
    campaign_id: str,
    gateway: EntityGateway,
    proposals: ProposalTracker | None = None,
    page_context: PageContext | None = None,
) -> ToolRegistry:
    """Build the per-run registry. Proposal tools are only offered when a tracker is given."""
    definitions = _bind(get_work_item_definitions(), WorkItemExecutor(work_items).handlers(), "internal")
    definitions += _bind(get_campaign_context_definitions(), CampaignContextExecutor(gateway).handlers(), "read")
    if proposals is not None:
        definitions += _bind(get_proposal_definitions(), ProposalToolExecutor(proposals, gateway).handlers(), "write")
    return ToolRegistry(definitions, ToolContext(campaign_id=campaign_id, page_context=page_context))


def create_read_tool_registry(
    campaign_id: str,
    gateway: EntityGateway,
    page_context: PageContext | None = None,
) -> ToolRegistry:
    """Campaign read tools only, for runs that must not plan or propose."""
    definitions = _bind(get_campaign_context_definitions(), CampaignContextExecutor(gateway).handlers(), "read")
    return ToolRegistry(definitions, ToolContext(campaign_id=campaign_id, page_context=page_context))
