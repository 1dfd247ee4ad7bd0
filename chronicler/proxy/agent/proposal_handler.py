"""Executes accepted proposals against the entity gateway."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, assert_never

from ..content import to_rich_text
from ..entities import CampaignSummaryCache, EntityGateway
from .proposals import (
    CreateProposal,
    EntityProposal,
    ProposalError,
    ProposalTracker,
    RelationshipProposal,
    SuggestedRelationship,
    UpdateProposal,
)
from .validators import CREATABLE_ENTITY_TYPES, UPDATABLE_ENTITY_TYPES

logger = logging.getLogger("chronicler.proposals")

# Fields the editor stores as ProseMirror JSON
RICH_TEXT_FIELDS = frozenset({
    "description", "personality", "motivations", "secrets", "voice_notes",
    "backstory", "notes", "goals", "resources", "objectives", "hook",
    "summary", "content", "gm_notes", "highlights", "reveal_conditions",
    "preferences", "boundaries",
})

RELATIONSHIP_SEARCH_LIMIT = 10


@dataclass
class AcceptResult:
    ok: bool
    proposal_id: str
    entity_id: str | None = None
    skipped_relationships: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "proposal_id": self.proposal_id,
            "entity_id": self.entity_id,
            "skipped_relationships": self.skipped_relationships,
            "error": self.error,
        }


def convert_rich_text_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Normalize allow-listed text fields to stored rich text; other fields pass through."""
    converted = dict(data)
    for key, value in data.items():
        if key in RICH_TEXT_FIELDS and isinstance(value, str) and value.strip():
            converted[key] = to_rich_text(value)
    return converted


def describe_skipped(skipped: list[dict[str, Any]]) -> str:
    names = ", ".join(f"{s['target_type']} \"{s['target_name']}\" ({s['reason']})" for s in skipped)
    return f"Some suggested relationships were not created: {names}."


class ProposalExecutor:
    """Accept/reject pathway for proposals held by a ProposalTracker.

    A failed acceptance is logged and reported through ``AcceptResult`` and
    the proposal stays pending so the user can retry.
    """

    def __init__(
        self,
        tracker: ProposalTracker,
        gateway: EntityGateway,
        campaign_id: str,
        summary_cache: CampaignSummaryCache | None = None,
    ) -> None:
        self.tracker = tracker
        self.gateway = gateway
        self.campaign_id = campaign_id
        self.summary_cache = summary_cache

    async def accept(self, proposal_id: str, edited_data: dict[str, Any] | None = None) -> AcceptResult:
        """Apply a pending proposal.

        Raises ProposalError for unknown or settled proposals and while another
        acceptance of the same proposal is still running.
        """
        proposal = self.tracker.claim(proposal_id)
        try:
            return await self._accept_claimed(proposal, edited_data)
        finally:
            self.tracker.release(proposal_id)

    async def _accept_claimed(self, proposal: EntityProposal, edited_data: dict[str, Any] | None) -> AcceptResult:
        proposal_id = proposal.id
        skipped: list[dict[str, Any]] = []

        try:
            if isinstance(proposal, CreateProposal):
                entity_id = await self._execute_create(proposal, edited_data, skipped)
            elif isinstance(proposal, UpdateProposal):
                entity_id = await self._execute_update(proposal, edited_data)
            elif isinstance(proposal, RelationshipProposal):
                entity_id = await self._execute_relationship(proposal)
            else:
                assert_never(proposal)
        except Exception as e:
            logger.error(f"Failed to execute proposal {proposal_id}: {e}")
            return AcceptResult(ok=False, proposal_id=proposal_id, error=str(e) or type(e).__name__)

        self.tracker.update_status(proposal_id, "accepted")
        if self.summary_cache is not None:
            self.summary_cache.invalidate(self.campaign_id)

        logger.info(f"Accepted {proposal.kind} proposal {proposal_id} (entity: {entity_id})")
        return AcceptResult(ok=True, proposal_id=proposal_id, entity_id=entity_id, skipped_relationships=skipped)

    def reject(self, proposal_id: str) -> EntityProposal:
        proposal = self.tracker.update_status(proposal_id, "rejected")
        logger.info(f"Rejected {proposal.kind} proposal {proposal_id}")
        return proposal

    async def _execute_create(
        self,
        proposal: CreateProposal,
        edited_data: dict[str, Any] | None,
        skipped: list[dict[str, Any]],
    ) -> str:
        if proposal.entity_type not in CREATABLE_ENTITY_TYPES:
            raise ValueError(f"Creation not supported for entity type: {proposal.entity_type}")

        data = {"campaign_id": self.campaign_id, **convert_rich_text_fields(edited_data or proposal.data)}
        if proposal.entity_type == "location":
            data["parent_id"] = proposal.parent_id

        entity = await self.gateway.create(proposal.entity_type, data)
        entity_id = entity["id"]

        for rel in proposal.suggested_relationships:
            reason = await self._link(proposal.entity_type, entity_id, rel)
            if reason is not None:
                skipped.append({
                    "target_type": rel.target_type,
                    "target_name": rel.target_name,
                    "relationship_type": rel.relationship_type,
                    "reason": reason,
                })
        return entity_id

    async def _link(self, source_type: str, source_id: str, rel: SuggestedRelationship) -> str | None:
        """Create one suggested relationship; returns why it was skipped, or None."""
        if rel.is_new_entity:
            return "entity does not exist yet"

        target_id = await self._find_by_name(rel.target_type, rel.target_name)
        if target_id is None:
            logger.info(f"Skipping relationship: {rel.target_type} \"{rel.target_name}\" not found")
            return "not found"

        try:
            await self.gateway.create_relationship({
                "campaign_id": self.campaign_id,
                "source_type": source_type,
                "source_id": source_id,
                "target_type": rel.target_type,
                "target_id": target_id,
                "relationship_type": rel.relationship_type,
                "description": rel.description,
                "is_bidirectional": True,
            })
        except Exception as e:
            logger.warning(f"Failed to create relationship to {rel.target_name}: {e}")
            return "link failed"
        return None

    async def _find_by_name(self, entity_type: str, name: str) -> str | None:
        try:
            results = await self.gateway.search(
                self.campaign_id, name, entity_types=[entity_type], limit=RELATIONSHIP_SEARCH_LIMIT
            )
        except Exception as e:
            logger.warning(f"Search for {entity_type} \"{name}\" failed: {e}")
            return None

        wanted = name.lower()
        for hit in results:
            if str(hit.get("name", "")).lower() == wanted:
                return hit["entity_id"]
        return None

    async def _execute_update(self, proposal: UpdateProposal, edited_data: dict[str, Any] | None) -> str:
        if proposal.entity_type not in UPDATABLE_ENTITY_TYPES:
            raise ValueError(f"Update not supported for entity type: {proposal.entity_type}")

        changes = convert_rich_text_fields(edited_data or proposal.changes)
        await self.gateway.update(proposal.entity_type, proposal.entity_id, changes)
        return proposal.entity_id

    async def _execute_relationship(self, proposal: RelationshipProposal) -> str:
        rel = await self.gateway.create_relationship({
            "campaign_id": self.campaign_id,
            "source_type": proposal.source_type,
            "source_id": proposal.source_id,
            "target_type": proposal.target_type,
            "target_id": proposal.target_id,
            "relationship_type": proposal.relationship_type,
            "description": proposal.description,
            "is_bidirectional": proposal.is_bidirectional,
        })
        return rel.get("id")
