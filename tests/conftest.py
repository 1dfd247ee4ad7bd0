"""Shared fixtures: a seeded entity store and a scripted model client."""

import asyncio
from dataclasses import replace

import pytest

import chronicler.proxy.config as config_module
from chronicler.proxy.agent.models import StreamDone, TextDelta, ToolRequest, UsageReport
from chronicler.proxy.config import DEFAULT_CONFIG, Config
from chronicler.proxy.entities import InMemoryEntityStore

CAMPAIGN_ID = "11111111-1111-4111-8111-111111111111"
ALDRIC_ID = "22222222-2222-4222-8222-222222222222"
MIRA_ID = "33333333-3333-4333-8333-333333333333"
KINGDOM_ID = "44444444-4444-4444-8444-444444444444"
CITY_ID = "55555555-5555-4555-8555-555555555555"
TAVERN_ID = "66666666-6666-4666-8666-666666666666"
GUILD_ID = "77777777-7777-4777-8777-777777777777"


# ═══════════════════════════════════════════════════════════════
# Scripted model client
# ═══════════════════════════════════════════════════════════════

def text_turn(text, input_tokens=10, output_tokens=5):
    """One model turn that only produces text."""
    return [TextDelta(text), UsageReport(input_tokens, output_tokens), StreamDone("end_turn")]


def tool_turn(*calls, text="", input_tokens=10, output_tokens=5):
    """One model turn requesting tools; each call is (name, arguments)."""
    events = [TextDelta(text)] if text else []
    events += [ToolRequest(id=f"call_{i}", name=name, arguments=args) for i, (name, args) in enumerate(calls, 1)]
    events += [UsageReport(input_tokens, output_tokens), StreamDone("tool_use")]
    return events


class ScriptedClient:
    """Plays back one scripted turn per stream_events call.

    A turn is a list of stream events; an Exception instance in the list is
    raised at that point. Once the script runs out every turn is plain text.
    """

    def __init__(self, turns=None, delay=0.0):
        self.turns = list(turns or [])
        self.delay = delay
        self.calls = []

    async def stream_events(self, model, system_prompt, messages, tools=None, options=None):
        self.calls.append({
            "model": model,
            "system_prompt": system_prompt,
            "messages": [dict(m) for m in messages],
            "tools": tools,
            "options": options,
        })
        turn = self.turns.pop(0) if self.turns else text_turn("Done.")
        for event in turn:
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(event, Exception):
                raise event
            yield event

    async def health_check(self):
        return True

    async def unload_model(self, model):
        self.unloaded = model


@pytest.fixture
def scripted_client():
    return ScriptedClient


# ═══════════════════════════════════════════════════════════════
# Entity store
# ═══════════════════════════════════════════════════════════════

def seed_store():
    store = InMemoryEntityStore()
    store.add("campaign", {"id": CAMPAIGN_ID, "name": "The Shattered Crown", "system": "D&D 5e",
                           "description": "A kingdom split by a usurper's war."})
    store.add("character", {"id": ALDRIC_ID, "campaign_id": CAMPAIGN_ID, "name": "Captain Aldric",
                            "occupation": "Guard captain", "is_alive": True,
                            "description": "A weary veteran loyal to the old king.",
                            "secrets": "Took a bribe from the Gilded Hand."})
    store.add("character", {"id": MIRA_ID, "campaign_id": CAMPAIGN_ID, "name": "Mira Thorn",
                            "description": "Innkeeper who hears every rumour."})
    store.add("location", {"id": KINGDOM_ID, "campaign_id": CAMPAIGN_ID, "name": "Eldmark",
                           "location_type": "territory"})
    store.add("location", {"id": CITY_ID, "campaign_id": CAMPAIGN_ID, "name": "Greyhaven",
                           "location_type": "settlement", "parent_id": KINGDOM_ID})
    store.add("location", {"id": TAVERN_ID, "campaign_id": CAMPAIGN_ID, "name": "The Rusty Anchor",
                           "location_type": "building", "parent_id": CITY_ID})
    store.add("organization", {"id": GUILD_ID, "campaign_id": CAMPAIGN_ID, "name": "The Gilded Hand",
                               "org_type": "criminal", "description": "Smugglers who run the docks."})
    store.add("timeline_event", {"campaign_id": CAMPAIGN_ID, "title": "The Usurper's Coup",
                                 "date_display": "Year 1012", "sort_order": 2, "is_public": True})
    store.add("timeline_event", {"campaign_id": CAMPAIGN_ID, "title": "The Secret Pact",
                                 "date_display": "Year 1010", "sort_order": 1, "is_public": False})
    store._relationships.append({
        "id": "rel-1", "source_type": "character", "source_id": ALDRIC_ID,
        "target_type": "organization", "target_id": GUILD_ID,
        "relationship_type": "informant_for", "is_bidirectional": False,
        "strength": 3, "description": "Passes patrol routes to the smugglers.",
    })
    return store


@pytest.fixture
def entity_store():
    return seed_store()


# ═══════════════════════════════════════════════════════════════
# Config
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def test_config(tmp_path):
    """Install a config singleton that never touches ~/.chronicler."""
    cfg = Config(**{**DEFAULT_CONFIG, "data_dir": str(tmp_path / "data")})
    previous = config_module._config
    config_module._config = cfg
    yield cfg
    config_module._config = previous


def with_config(cfg, **changes):
    config_module._config = replace(cfg, **changes)
    return config_module._config
