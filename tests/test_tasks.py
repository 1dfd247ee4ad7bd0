"""Tests for the one-shot check, expand and generate runs."""

import asyncio
import json

import pytest
from pydantic import ValidationError

from conftest import ALDRIC_ID, CAMPAIGN_ID, CITY_ID, ScriptedClient, text_turn, tool_turn
from chronicler.proxy.agent.model_selector import ModelTiers
from chronicler.proxy.agent.models import AgentResult, TokenUsage
from chronicler.proxy.agent.proposals import ProposalTracker
from chronicler.proxy.agent.tasks import (
    RESEARCH_FALLBACK,
    ConsistencyCheckRequest,
    ConsistencyOutput,
    ExpansionRequest,
    GenerationRequest,
    TaskEnvironment,
    TaskOutputError,
    check_consistency,
    expand_content,
    extract_json,
    generate_entity,
    parse_output,
    surrounding_context,
)

TIERS = ModelTiers(fast="qwen3:8b", balanced="qwen3:14b", quality="qwen3:32b")

READ_TOOLS = {
    "search_entities", "get_entity", "get_relationships", "get_location_hierarchy",
    "get_timeline", "get_campaign_context", "get_page_context",
}


def json_turn(payload):
    return text_turn("Here is my analysis.\n```json\n" + json.dumps(payload) + "\n```")


def tool_names(call):
    return {t["function"]["name"] for t in call["tools"] or []}


@pytest.fixture
def client():
    return ScriptedClient()


@pytest.fixture
def env(client, entity_store):
    return TaskEnvironment(client=client, gateway=entity_store, tiers=TIERS)


# ═══════════════════════════════════════════════════════════════
# JSON extraction
# ═══════════════════════════════════════════════════════════════

class TestExtractJson:

    def test_fenced_block(self):
        text = 'Thinking...\n```json\n{"overall_score": 90}\n```\nThat is all.'
        assert extract_json(text) == {"overall_score": 90}

    def test_bare_object(self):
        assert extract_json('Result: {"a": {"b": 1}} done') == {"a": {"b": 1}}

    def test_no_object(self):
        with pytest.raises(TaskOutputError, match="No JSON object"):
            extract_json("I could not decide.")

    def test_trailing_comma_repaired(self):
        assert extract_json('{"issues": [], "overall_score": 80,}') == {"issues": [], "overall_score": 80}

    def test_invalid_json(self):
        with pytest.raises(TaskOutputError, match="not valid JSON"):
            extract_json("{not json}")

    def test_camel_case_keys_accepted(self):
        result = AgentResult(
            response='{"overallScore": 55, "issues": [{"severity": "warning", "issue": "x", '
                     '"conflictingEntity": {"type": "character", "name": "Aldric"}}]}',
            iterations=1, usage=TokenUsage(), work_items=[], completed=True, stop_reason="end_turn",
        )
        output = parse_output(result, ConsistencyOutput)
        assert output.overall_score == 55
        assert output.issues[0].conflicting_entity.name == "Aldric"

    def test_run_error_wins(self):
        result = AgentResult(response="", iterations=1, usage=TokenUsage(), work_items=[],
                             completed=False, stop_reason="error", error="Cannot connect to Ollama")
        with pytest.raises(TaskOutputError, match="Cannot connect"):
            parse_output(result, ConsistencyOutput)


# ═══════════════════════════════════════════════════════════════
# Consistency check
# ═══════════════════════════════════════════════════════════════

def check_request(**changes):
    fields = {
        "campaign_id": CAMPAIGN_ID,
        "entity_type": "character",
        "entity_name": "Captain Aldric",
        "content": {"description": "Aldric died in the coup.", "notes": ""},
        "entity_id": ALDRIC_ID,
    }
    fields.update(changes)
    return ConsistencyCheckRequest(**fields)


class TestConsistencyCheck:

    def test_verifies_with_read_tools_on_quality_tier(self, env, client):
        client.turns = [
            tool_turn(("search_entities", {"query": "Aldric"})),
            json_turn({
                "issues": [{
                    "severity": "error",
                    "field": "description",
                    "issue": "Aldric is recorded as alive.",
                    "conflicting_entity": {"type": "character", "id": ALDRIC_ID, "name": "Captain Aldric"},
                    "suggestion": "Move the death after the coup or mark him dead.",
                }],
                "overall_score": 35,
                "reasoning": "The character record says he is alive.",
            }),
        ]
        report = asyncio.run(check_consistency(env, check_request(), campaign_context="# The Shattered Crown"))

        assert report.success
        assert report.model == "qwen3:32b"
        assert report.overall_score == 35
        assert report.has_errors
        assert report.iterations == 2
        assert report.usage.input_tokens == 20

        first = client.calls[0]
        assert tool_names(first) == READ_TOOLS
        assert first["model"] == "qwen3:32b"
        assert first["options"]["num_predict"] == 2048
        assert "# The Shattered Crown" in first["system_prompt"]
        message = first["messages"][0]["content"]
        assert message.startswith("Check this existing character")
        assert "### description" in message
        assert "### notes" not in message
        assert any("Captain Aldric" in m["content"] for m in client.calls[1]["messages"] if m["role"] == "tool")

    def test_speed_preference_does_not_downgrade_check(self, entity_store, client):
        env = TaskEnvironment(client=client, gateway=entity_store, tiers=TIERS, preference="speed")
        client.turns = [json_turn({"issues": [], "overall_score": 100})]
        report = asyncio.run(check_consistency(env, check_request(entity_id=None)))
        assert report.model == "qwen3:32b"
        assert report.issues == []
        assert client.calls[0]["messages"][0]["content"].startswith("Check this new character")

    def test_unparseable_reply_is_reported(self, env, client):
        client.turns = [text_turn("Looks fine to me!")]
        report = asyncio.run(check_consistency(env, check_request()))
        assert not report.success
        assert report.error == "No JSON object in the model's reply"
        assert report.to_dict()["issues"] == []

    def test_bad_severity_is_rejected(self, env, client):
        client.turns = [json_turn({"issues": [{"severity": "fatal", "issue": "x"}]})]
        report = asyncio.run(check_consistency(env, check_request()))
        assert not report.success
        assert report.error.startswith("Unexpected output: issues.0.severity")


# ═══════════════════════════════════════════════════════════════
# Expansion
# ═══════════════════════════════════════════════════════════════

FULL_TEXT = "Greyhaven is a port city. The docks are busy. Smugglers rule the night."


def expansion_request(**changes):
    start = FULL_TEXT.index("The docks")
    fields = {
        "campaign_id": CAMPAIGN_ID,
        "entity_type": "location",
        "entity_name": "Greyhaven",
        "field_name": "description",
        "expansion_type": "sensory",
        "full_text": FULL_TEXT,
        "selection_start": start,
        "selection_end": start + len("The docks are busy."),
    }
    fields.update(changes)
    return ExpansionRequest(**fields)


class TestExpansion:

    def test_expands_selection(self, env, client):
        client.turns = [json_turn({"expanded_text": "Gulls shriek over the docks.", "reasoning": "Added sound."})]
        expansion = asyncio.run(expand_content(env, expansion_request()))

        assert expansion.success
        assert expansion.expanded_text == "Gulls shriek over the docks."
        # short selection on the balanced preference
        assert expansion.model == "qwen3:8b"

        call = client.calls[0]
        assert tool_names(call) == READ_TOOLS
        assert "## Expansion Type: Sensory Details" in call["system_prompt"]
        message = call["messages"][0]["content"]
        assert "The docks are busy." in message
        assert "[SELECTED TEXT HERE]" in message

    def test_quality_preference(self, entity_store, client):
        env = TaskEnvironment(client=client, gateway=entity_store, tiers=TIERS, preference="quality")
        client.turns = [json_turn({"expandedText": "More."})]
        expansion = asyncio.run(expand_content(env, expansion_request()))
        assert expansion.model == "qwen3:32b"
        assert expansion.expanded_text == "More."

    def test_selection_bounds(self):
        with pytest.raises(ValidationError):
            expansion_request(selection_start=10, selection_end=5)
        with pytest.raises(ValidationError):
            expansion_request(selection_end=len(FULL_TEXT) + 1)

    def test_surrounding_context(self):
        text = "aaa SELECTED bbb"
        context = surrounding_context(text, 4, 12)
        assert context == "[...before...]\naaa\n[SELECTED TEXT HERE]\nbbb\n[...after...]"
        assert surrounding_context("SELECTED", 0, 8) is None


# ═══════════════════════════════════════════════════════════════
# Generation
# ═══════════════════════════════════════════════════════════════

GENERATED = {
    "name": "Sera Vale",
    "fields": {"occupation": "Fence", "description": "A quiet fence.", "hit_points": 12},
    "relationships": [
        {"targetType": "organization", "targetName": "The Gilded Hand", "relationshipType": "member_of"},
    ],
    "reasoning": "The docks need a fence.",
}


def generation_request(**changes):
    fields = {"campaign_id": CAMPAIGN_ID, "entity_type": "character", "context": "A fence for the docks"}
    fields.update(changes)
    return GenerationRequest(**fields)


class TestGeneration:

    def test_research_then_generate(self, env, client):
        tracker = ProposalTracker()
        client.turns = [
            tool_turn(("get_entity", {"entity_type": "location", "entity_id": CITY_ID})),
            text_turn("### Parent/Location Context\nGreyhaven, a port city."),
            json_turn(GENERATED),
        ]
        request = generation_request(
            page_context={"entity_type": "location", "entity_id": CITY_ID, "entity_name": "Greyhaven"},
            parent_id=CITY_ID,
        )
        generation = asyncio.run(generate_entity(env, request, tracker=tracker))

        assert generation.success
        assert generation.research_model == "qwen3:32b"
        assert generation.research.startswith("### Parent/Location Context")
        assert generation.model == "qwen3:8b"
        assert generation.iterations == 3

        research_call, _, generate_call = client.calls
        assert tool_names(research_call) == READ_TOOLS
        assert "**Greyhaven** (location)" in research_call["system_prompt"]
        assert generate_call["tools"] == []
        assert generate_call["messages"][0]["content"].startswith("## Research Context")

        assert generation.data == {"occupation": "Fence", "description": "A quiet fence.", "name": "Sera Vale"}
        proposal = generation.proposal
        assert tracker.pending() == [proposal]
        assert proposal.parent_id == CITY_ID
        assert proposal.reasoning == "The docks need a fence."
        assert proposal.suggested_relationships[0].target_name == "The Gilded Hand"

    def test_detailed_quality_uses_quality_tier(self, env, client):
        client.turns = [json_turn(GENERATED)]
        generation = asyncio.run(generate_entity(env, generation_request(quality="detailed", research=False)))
        assert generation.model == "qwen3:32b"
        assert generation.research is None
        assert generation.proposal is None
        assert len(client.calls) == 1

    def test_research_failure_falls_back(self, env, client):
        client.turns = [[ConnectionError("connection refused")], json_turn(GENERATED)]
        generation = asyncio.run(generate_entity(env, generation_request()))
        assert generation.success
        assert generation.research == RESEARCH_FALLBACK
        assert RESEARCH_FALLBACK in client.calls[1]["messages"][0]["content"]

    def test_invalid_draft_is_not_proposed(self, env, client):
        tracker = ProposalTracker()
        client.turns = [json_turn({"name": "Eastside", "fields": {"location_type": "megacity"}})]
        generation = asyncio.run(generate_entity(
            env, generation_request(entity_type="location", research=False), tracker=tracker
        ))
        assert not generation.success
        assert generation.error.startswith('Generated location is invalid: location_type "megacity"')
        assert len(tracker) == 0

    def test_propose_requires_success(self, env, client):
        client.turns = [text_turn("no json")]
        generation = asyncio.run(generate_entity(env, generation_request(research=False)))
        with pytest.raises(ValueError):
            generation.propose(ProposalTracker())
