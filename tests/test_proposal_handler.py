"""Tests for accepting and rejecting proposals against the entity store."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import ALDRIC_ID, CAMPAIGN_ID, CITY_ID, GUILD_ID
from chronicler.proxy.agent.proposal_handler import (
    ProposalExecutor,
    convert_rich_text_fields,
    describe_skipped,
)
from chronicler.proxy.agent.proposals import ProposalError, ProposalTracker, SuggestedRelationship


@pytest.fixture
def tracker():
    return ProposalTracker()


@pytest.fixture
def cache():
    return MagicMock()


@pytest.fixture
def executor(tracker, entity_store, cache):
    return ProposalExecutor(tracker, entity_store, CAMPAIGN_ID, summary_cache=cache)


def accept(executor, proposal_id, edited=None):
    return asyncio.run(executor.accept(proposal_id, edited))


def get(store, entity_type, entity_id):
    return asyncio.run(store.get(entity_type, entity_id))


# ═══════════════════════════════════════════════════════════════
# Create
# ═══════════════════════════════════════════════════════════════

class TestAcceptCreate:

    def test_creates_entity_with_rich_text(self, executor, tracker, entity_store, cache):
        proposal = tracker.add_create("character", {"name": "Sera Vale", "description": "A quiet fence.", "level": 3})
        result = accept(executor, proposal.id)

        assert result.ok
        assert proposal.status == "accepted"
        entity = get(entity_store, "character", result.entity_id)
        assert entity["campaign_id"] == CAMPAIGN_ID
        assert entity["level"] == 3
        assert json.loads(entity["description"]) == {
            "type": "doc",
            "content": [{"type": "paragraph", "content": [{"type": "text", "text": "A quiet fence."}]}],
        }
        cache.invalidate.assert_called_once_with(CAMPAIGN_ID)

    def test_edited_data_replaces_proposal_data(self, executor, tracker, entity_store):
        proposal = tracker.add_create("character", {"name": "Sera Vale"})
        result = accept(executor, proposal.id, {"name": "Sera Vane"})
        assert get(entity_store, "character", result.entity_id)["name"] == "Sera Vane"

    def test_location_gets_parent(self, executor, tracker, entity_store):
        proposal = tracker.add_create("location", {"name": "Dockside", "location_type": "district"}, parent_id=CITY_ID)
        result = accept(executor, proposal.id)
        assert get(entity_store, "location", result.entity_id)["parent_id"] == CITY_ID

    def test_links_existing_targets_by_exact_name(self, executor, tracker, entity_store):
        proposal = tracker.add_create(
            "character",
            {"name": "Sera Vale"},
            suggested_relationships=[SuggestedRelationship("organization", "the gilded hand", "member_of")],
        )
        result = accept(executor, proposal.id)

        assert result.skipped_relationships == []
        links = asyncio.run(entity_store.relationships_for("character", result.entity_id))
        assert len(links) == 1
        assert links[0]["target_id"] == GUILD_ID
        assert links[0]["is_bidirectional"] is True

    def test_skipped_relationships_are_reported(self, executor, tracker):
        proposal = tracker.add_create(
            "character",
            {"name": "Sera Vale"},
            suggested_relationships=[
                SuggestedRelationship("character", "Captain", "rival_of"),
                SuggestedRelationship("organization", "Silver Circle", "member_of", is_new_entity=True),
            ],
        )
        result = accept(executor, proposal.id)

        assert result.ok
        assert [(s["target_name"], s["reason"]) for s in result.skipped_relationships] == [
            ("Captain", "not found"),
            ("Silver Circle", "entity does not exist yet"),
        ]

    def test_link_failure_does_not_fail_acceptance(self, executor, tracker, entity_store):
        proposal = tracker.add_create(
            "character",
            {"name": "Sera Vale"},
            suggested_relationships=[SuggestedRelationship("character", "Captain Aldric", "rival_of")],
        )
        with patch.object(entity_store, "create_relationship", AsyncMock(side_effect=RuntimeError("db down"))):
            result = accept(executor, proposal.id)
        assert result.ok
        assert result.skipped_relationships[0]["reason"] == "link failed"

    def test_unsupported_type_leaves_pending(self, executor, tracker, cache):
        proposal = tracker.add_create("campaign", {"name": "Another world"})
        result = accept(executor, proposal.id)
        assert not result.ok
        assert result.error == "Creation not supported for entity type: campaign"
        assert proposal.status == "pending"
        cache.invalidate.assert_not_called()


# ═══════════════════════════════════════════════════════════════
# Update and relationship
# ═══════════════════════════════════════════════════════════════

class TestAcceptUpdate:

    def test_applies_only_changes(self, executor, tracker, entity_store):
        proposal = tracker.add_update("character", ALDRIC_ID, {"occupation": "Exile", "notes": "**Wanted** in Greyhaven"})
        result = accept(executor, proposal.id)

        assert result.ok
        assert result.entity_id == ALDRIC_ID
        entity = get(entity_store, "character", ALDRIC_ID)
        assert entity["occupation"] == "Exile"
        assert entity["name"] == "Captain Aldric"
        assert entity["notes"].startswith('{"type":"doc"')

    def test_missing_entity_fails_and_stays_pending(self, executor, tracker):
        proposal = tracker.add_update("character", "gone", {"occupation": "Ghost"})
        result = accept(executor, proposal.id)
        assert not result.ok
        assert result.error == "character gone not found"
        assert proposal.status == "pending"

    def test_retry_after_failure(self, executor, tracker, entity_store):
        proposal = tracker.add_update("character", ALDRIC_ID, {"occupation": "Exile"})
        with patch.object(entity_store, "update", AsyncMock(side_effect=ConnectionError("offline"))):
            assert not accept(executor, proposal.id).ok
        assert accept(executor, proposal.id).ok


class TestAcceptRelationship:

    def test_creates_link(self, executor, tracker, entity_store):
        proposal = tracker.add_relationship("character", ALDRIC_ID, "location", CITY_ID, "guards", is_bidirectional=False)
        result = accept(executor, proposal.id)
        assert result.ok
        links = asyncio.run(entity_store.relationships_for("location", CITY_ID))
        assert [link["id"] for link in links] == [result.entity_id]
        assert links[0]["is_bidirectional"] is False


# ═══════════════════════════════════════════════════════════════
# Reject and invalid ids
# ═══════════════════════════════════════════════════════════════

class TestRejectAndErrors:

    def test_reject(self, executor, tracker, entity_store):
        before = entity_store.count()
        proposal = tracker.add_create("character", {"name": "Sera"})
        executor.reject(proposal.id)
        assert proposal.status == "rejected"
        assert entity_store.count() == before

    def test_accept_unknown(self, executor):
        with pytest.raises(ProposalError):
            accept(executor, "proposal_missing")

    def test_accept_twice(self, executor, tracker):
        proposal = tracker.add_create("character", {"name": "Sera"})
        accept(executor, proposal.id)
        with pytest.raises(ProposalError):
            accept(executor, proposal.id)

    def test_accept_after_reject(self, executor, tracker):
        proposal = tracker.add_create("character", {"name": "Sera"})
        executor.reject(proposal.id)
        with pytest.raises(ProposalError):
            accept(executor, proposal.id)


# ═══════════════════════════════════════════════════════════════
# Overlapping requests
# ═══════════════════════════════════════════════════════════════

class SlowCreateStore:
    """Entity store whose create() yields to the event loop before writing."""

    def __init__(self, store):
        self.store = store

    def __getattr__(self, name):
        return getattr(self.store, name)

    async def create(self, entity_type, data):
        await asyncio.sleep(0.01)
        return await self.store.create(entity_type, data)


class TestOverlappingAccepts:

    def test_second_accept_refused_before_any_write(self, tracker, entity_store):
        executor = ProposalExecutor(tracker, SlowCreateStore(entity_store), CAMPAIGN_ID)
        proposal = tracker.add_create("character", {"name": "Sera Twin"})

        async def go():
            return await asyncio.gather(
                executor.accept(proposal.id), executor.accept(proposal.id), return_exceptions=True
            )

        first, second = asyncio.run(go())
        assert first.ok
        assert isinstance(second, ProposalError)
        assert len(asyncio.run(entity_store.search(CAMPAIGN_ID, "Sera Twin"))) == 1
        assert proposal.status == "accepted"
        assert not tracker.is_in_flight(proposal.id)

    def test_reject_refused_while_applying(self, tracker, entity_store):
        executor = ProposalExecutor(tracker, SlowCreateStore(entity_store), CAMPAIGN_ID)
        proposal = tracker.add_create("character", {"name": "Sera"})

        async def go():
            task = asyncio.ensure_future(executor.accept(proposal.id))
            await asyncio.sleep(0)
            with pytest.raises(ProposalError):
                executor.reject(proposal.id)
            return await task

        assert asyncio.run(go()).ok
        assert proposal.status == "accepted"

    def test_failed_accept_can_be_retried(self, tracker, entity_store):
        executor = ProposalExecutor(tracker, entity_store, CAMPAIGN_ID)
        proposal = tracker.add_update("character", "missing", {"name": "x"})
        assert accept(executor, proposal.id).ok is False
        assert not tracker.is_in_flight(proposal.id)
        # still pending and claimable
        assert accept(executor, proposal.id).ok is False


class TestHelpers:

    def test_convert_only_allow_listed_text(self):
        converted = convert_rich_text_fields({"name": "Sera", "description": "Hi", "goals": "  ", "hook": 5})
        assert converted["name"] == "Sera"
        assert converted["description"].startswith('{"type":"doc"')
        assert converted["goals"] == "  "
        assert converted["hook"] == 5

    def test_describe_skipped(self):
        text = describe_skipped([
            {"target_type": "character", "target_name": "Captain", "reason": "not found"},
        ])
        assert text == 'Some suggested relationships were not created: character "Captain" (not found).'
