"""Tests for the proposal tracker and proposal serialization."""

import pytest

from chronicler.proxy.agent.proposals import (
    CreateProposal,
    ProposalError,
    ProposalTracker,
    RelationshipProposal,
    SuggestedRelationship,
    UpdateProposal,
    describe_proposal,
    proposal_from_dict,
    proposal_to_dict,
)


@pytest.fixture
def tracker():
    return ProposalTracker()


# ═══════════════════════════════════════════════════════════════
# Creation
# ═══════════════════════════════════════════════════════════════

class TestAdd:

    def test_create_proposal(self, tracker):
        proposal = tracker.add_create(
            "character",
            {"name": "Sera Vale"},
            reasoning="The party needs a fence",
            suggested_relationships=[SuggestedRelationship("organization", "The Gilded Hand", "member_of")],
        )
        assert isinstance(proposal, CreateProposal)
        assert proposal.kind == "create"
        assert proposal.status == "pending"
        assert proposal.id.startswith("proposal_")
        assert proposal.suggested_relationships[0].target_name == "The Gilded Hand"

    def test_ids_are_unique(self, tracker):
        ids = {tracker.add_create("character", {"name": f"NPC {i}"}).id for i in range(5)}
        assert len(ids) == 5

    def test_data_is_copied(self, tracker):
        data = {"name": "Sera"}
        proposal = tracker.add_create("character", data)
        data["name"] = "Changed"
        assert proposal.data["name"] == "Sera"

    def test_callback_fires_once_per_proposal(self):
        seen = []
        tracker = ProposalTracker(on_proposal_created=seen.append)
        update = tracker.add_update("character", "c-1", {"occupation": "Smuggler"})
        link = tracker.add_relationship("character", "c-1", "organization", "o-1", "member_of")
        assert seen == [update, link]
        assert isinstance(update, UpdateProposal)
        assert isinstance(link, RelationshipProposal)

    def test_adopt_does_not_fire_callback(self):
        seen = []
        tracker = ProposalTracker(on_proposal_created=seen.append)
        restored = CreateProposal(id="proposal_1_1", entity_type="quest", data={"name": "Q"})
        tracker.adopt(restored)
        assert seen == []
        assert tracker.get("proposal_1_1") is restored


# ═══════════════════════════════════════════════════════════════
# Status transitions
# ═══════════════════════════════════════════════════════════════

class TestStatus:
    """Status only moves pending -> accepted | rejected."""

    def test_accept(self, tracker):
        proposal = tracker.add_create("character", {"name": "Sera"})
        tracker.update_status(proposal.id, "accepted")
        assert proposal.status == "accepted"
        assert tracker.accepted() == [proposal]
        assert tracker.has_pending() is False

    def test_terminal_states_are_final(self, tracker):
        proposal = tracker.add_create("character", {"name": "Sera"})
        tracker.update_status(proposal.id, "rejected")
        with pytest.raises(ProposalError):
            tracker.update_status(proposal.id, "accepted")
        assert proposal.status == "rejected"

    def test_cannot_return_to_pending(self, tracker):
        proposal = tracker.add_create("character", {"name": "Sera"})
        with pytest.raises(ProposalError):
            tracker.update_status(proposal.id, "pending")

    def test_unknown_id(self, tracker):
        with pytest.raises(ProposalError):
            tracker.update_status("proposal_nope", "accepted")

    def test_claim_is_exclusive_until_released(self, tracker):
        proposal = tracker.add_create("character", {"name": "Sera"})
        assert tracker.claim(proposal.id) is proposal
        with pytest.raises(ProposalError):
            tracker.claim(proposal.id)
        with pytest.raises(ProposalError):
            tracker.update_status(proposal.id, "rejected")
        tracker.release(proposal.id)
        assert tracker.claim(proposal.id) is proposal

    def test_claim_settled_proposal(self, tracker):
        proposal = tracker.add_create("character", {"name": "Sera"})
        tracker.update_status(proposal.id, "accepted")
        with pytest.raises(ProposalError):
            tracker.claim(proposal.id)

    def test_pending_and_clear(self, tracker):
        a = tracker.add_create("character", {"name": "A"})
        b = tracker.add_create("character", {"name": "B"})
        tracker.update_status(a.id, "accepted")
        assert tracker.pending() == [b]
        tracker.clear()
        assert len(tracker) == 0
        assert tracker.to_markdown() == "No proposals."


# ═══════════════════════════════════════════════════════════════
# Serialization and descriptions
# ═══════════════════════════════════════════════════════════════

class TestSerialization:

    def test_create_restores_with_relationships(self, tracker):
        proposal = tracker.add_create(
            "location",
            {"name": "Dockside", "location_type": "district"},
            suggested_relationships=[SuggestedRelationship("character", "Mira Thorn", "home_of", is_new_entity=False)],
            parent_id="loc-1",
        )
        data = proposal_to_dict(proposal)
        assert data["kind"] == "create"
        assert isinstance(data["created_at"], str)

        restored = proposal_from_dict(data)
        assert restored == proposal
        assert isinstance(restored.suggested_relationships[0], SuggestedRelationship)

    def test_relationship_restores(self, tracker):
        proposal = tracker.add_relationship("character", "c-1", "organization", "o-1", "rival_of",
                                            source_name="Aldric", target_name="Gilded Hand",
                                            is_bidirectional=False)
        assert proposal_from_dict(proposal_to_dict(proposal)) == proposal

    def test_unknown_kind(self):
        with pytest.raises(ProposalError):
            proposal_from_dict({"kind": "delete", "id": "x"})

    def test_descriptions(self, tracker):
        create = tracker.add_create("character", {"name": "Sera"})
        update = tracker.add_update("quest", "q-1", {"status": "active", "hook": "x"})
        link = tracker.add_relationship("character", "c-1", "organization", "o-1", "member_of",
                                        source_name="Aldric", target_name="Gilded Hand")
        tracker.update_status(update.id, "accepted")

        assert describe_proposal(create) == f"[Pending] Create character: **Sera** (id: {create.id})"
        assert describe_proposal(update) == f"[Accepted] Update quest (q-1): fields [status, hook] (id: {update.id})"
        assert describe_proposal(link) == f"[Pending] Relationship: Aldric → member_of → Gilded Hand (id: {link.id})"
