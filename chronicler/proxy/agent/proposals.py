"""Entity proposals: agent-suggested mutations awaiting user review.

A proposal is exactly one of CreateProposal, UpdateProposal or
RelationshipProposal; ``kind`` is the tag. Status moves only
``pending -> accepted | rejected``.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal, Union, assert_never

ProposalStatus = Literal["pending", "accepted", "rejected"]

_STATUS_LABELS = {"pending": "[Pending]", "accepted": "[Accepted]", "rejected": "[Rejected]"}


class ProposalError(Exception):
    """Raised for invalid proposal ids or illegal status transitions."""


@dataclass
class SuggestedRelationship:
    target_type: str
    target_name: str
    relationship_type: str
    description: str | None = None
    is_new_entity: bool = False


@dataclass
class CreateProposal:
    id: str
    entity_type: str
    data: dict[str, Any]
    parent_id: str | None = None
    suggested_relationships: list[SuggestedRelationship] = field(default_factory=list)
    reasoning: str | None = None
    status: ProposalStatus = "pending"
    created_at: datetime = field(default_factory=datetime.now)
    kind: Literal["create"] = "create"


@dataclass
class UpdateProposal:
    id: str
    entity_type: str
    entity_id: str
    changes: dict[str, Any]
    current_data: dict[str, Any] | None = None
    reasoning: str | None = None
    status: ProposalStatus = "pending"
    created_at: datetime = field(default_factory=datetime.now)
    kind: Literal["update"] = "update"


@dataclass
class RelationshipProposal:
    id: str
    source_type: str
    source_id: str
    target_type: str
    target_id: str
    relationship_type: str
    source_name: str = ""
    target_name: str = ""
    description: str | None = None
    is_bidirectional: bool = True
    reasoning: str | None = None
    status: ProposalStatus = "pending"
    created_at: datetime = field(default_factory=datetime.now)
    kind: Literal["relationship"] = "relationship"


EntityProposal = Union[CreateProposal, UpdateProposal, RelationshipProposal]


def proposal_to_dict(proposal: EntityProposal) -> dict[str, Any]:
    data = asdict(proposal)
    data["created_at"] = proposal.created_at.isoformat()
    return data


def proposal_from_dict(data: dict[str, Any]) -> EntityProposal:
    """Rebuild a proposal from its persisted form."""
    data = dict(data)
    kind = data.pop("kind", None)
    created = data.pop("created_at", None)
    if created:
        data["created_at"] = datetime.fromisoformat(created)

    if kind == "create":
        data["suggested_relationships"] = [
            SuggestedRelationship(**r) for r in data.get("suggested_relationships") or []
        ]
        return CreateProposal(**data)
    if kind == "update":
        return UpdateProposal(**data)
    if kind == "relationship":
        return RelationshipProposal(**data)
    raise ProposalError(f"Unknown proposal kind: {kind!r}")


def describe_proposal(proposal: EntityProposal) -> str:
    label = _STATUS_LABELS[proposal.status]
    if isinstance(proposal, CreateProposal):
        return f"{label} Create {proposal.entity_type}: **{proposal.data.get('name')}** (id: {proposal.id})"
    if isinstance(proposal, UpdateProposal):
        fields = ", ".join(proposal.changes)
        return f"{label} Update {proposal.entity_type} ({proposal.entity_id}): fields [{fields}] (id: {proposal.id})"
    if isinstance(proposal, RelationshipProposal):
        return (
            f"{label} Relationship: {proposal.source_name} → {proposal.relationship_type} "
            f"→ {proposal.target_name} (id: {proposal.id})"
        )
    assert_never(proposal)


class ProposalTracker:
    """Proposals raised during one conversation."""

    def __init__(self, on_proposal_created: Callable[[EntityProposal], Any] | None = None) -> None:
        self._proposals: dict[str, EntityProposal] = {}
        self._counter = 0
        # ids whose acceptance is awaiting the entity store
        self._in_flight: set[str] = set()
        self.on_proposal_created = on_proposal_created

    def __len__(self) -> int:
        return len(self._proposals)

    def _next_id(self) -> str:
        self._counter += 1
        return f"proposal_{int(time.time() * 1000)}_{self._counter}"

    def _record(self, proposal: EntityProposal) -> EntityProposal:
        self._proposals[proposal.id] = proposal
        if self.on_proposal_created is not None:
            self.on_proposal_created(proposal)
        return proposal

    def add_create(
        self,
        entity_type: str,
        data: dict[str, Any],
        reasoning: str | None = None,
        suggested_relationships: list[SuggestedRelationship] | None = None,
        parent_id: str | None = None,
    ) -> CreateProposal:
        proposal = CreateProposal(
            id=self._next_id(),
            entity_type=entity_type,
            data=dict(data),
            parent_id=parent_id,
            suggested_relationships=list(suggested_relationships or []),
            reasoning=reasoning,
        )
        self._record(proposal)
        return proposal

    def add_update(
        self,
        entity_type: str,
        entity_id: str,
        changes: dict[str, Any],
        reasoning: str | None = None,
        current_data: dict[str, Any] | None = None,
    ) -> UpdateProposal:
        proposal = UpdateProposal(
            id=self._next_id(),
            entity_type=entity_type,
            entity_id=entity_id,
            changes=dict(changes),
            current_data=current_data,
            reasoning=reasoning,
        )
        self._record(proposal)
        return proposal

    def add_relationship(
        self,
        source_type: str,
        source_id: str,
        target_type: str,
        target_id: str,
        relationship_type: str,
        source_name: str = "",
        target_name: str = "",
        description: str | None = None,
        is_bidirectional: bool = True,
        reasoning: str | None = None,
    ) -> RelationshipProposal:
        proposal = RelationshipProposal(
            id=self._next_id(),
            source_type=source_type,
            source_id=source_id,
            target_type=target_type,
            target_id=target_id,
            relationship_type=relationship_type,
            source_name=source_name,
            target_name=target_name,
            description=description,
            is_bidirectional=is_bidirectional,
            reasoning=reasoning,
        )
        self._record(proposal)
        return proposal

    def adopt(self, proposal: EntityProposal) -> None:
        """Track a proposal restored from persistence without firing the callback."""
        self._proposals[proposal.id] = proposal

    def get(self, proposal_id: str) -> EntityProposal | None:
        return self._proposals.get(proposal_id)

    def update_status(self, proposal_id: str, status: ProposalStatus) -> EntityProposal:
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise ProposalError(f"Unknown proposal: {proposal_id}")
        if status not in ("accepted", "rejected"):
            raise ProposalError(f"Cannot move a proposal to {status!r}")
        if proposal.status != "pending":
            raise ProposalError(f"Proposal {proposal_id} is already {proposal.status}")
        if status == "rejected" and proposal_id in self._in_flight:
            raise ProposalError(f"Proposal {proposal_id} is being applied")
        proposal.status = status
        return proposal

    def claim(self, proposal_id: str) -> EntityProposal:
        """Reserve a pending proposal for acceptance; a second claim fails until release()."""
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise ProposalError(f"Unknown proposal: {proposal_id}")
        if proposal.status != "pending":
            raise ProposalError(f"Proposal {proposal_id} is already {proposal.status}")
        if proposal_id in self._in_flight:
            raise ProposalError(f"Proposal {proposal_id} is being applied")
        self._in_flight.add(proposal_id)
        return proposal

    def release(self, proposal_id: str) -> None:
        self._in_flight.discard(proposal_id)

    def is_in_flight(self, proposal_id: str) -> bool:
        return proposal_id in self._in_flight

    def list(self) -> list[EntityProposal]:
        return list(self._proposals.values())

    def pending(self) -> list[EntityProposal]:
        return [p for p in self._proposals.values() if p.status == "pending"]

    def accepted(self) -> list[EntityProposal]:
        return [p for p in self._proposals.values() if p.status == "accepted"]

    def has_pending(self) -> bool:
        return any(p.status == "pending" for p in self._proposals.values())

    def clear(self) -> None:
        self._proposals.clear()
        self._in_flight.clear()
        self._counter = 0

    def to_markdown(self) -> str:
        if not self._proposals:
            return "No proposals."
        return "\n".join(describe_proposal(p) for p in self._proposals.values())
