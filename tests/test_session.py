"""Tests for the conversation stores."""

import asyncio
import json

import pytest

from chronicler.proxy.agent.models import TokenUsage
from chronicler.proxy.agent.session import (
    InMemoryConversationStore,
    JsonConversationStore,
    _conversation_filename,
)


def message(role, content, **extra):
    return {"role": role, "content": content, **extra}


# ═══════════════════════════════════════════════════════════════
# In-memory store
# ═══════════════════════════════════════════════════════════════

class TestInMemoryStore:

    def test_one_conversation_per_campaign_and_surface(self):
        store = InMemoryConversationStore()

        async def go():
            a = await store.get_or_create("camp", "sidebar")
            b = await store.get_or_create("camp", "sidebar")
            c = await store.get_or_create("camp", "fullpage")
            return a, b, c

        a, b, c = asyncio.run(go())
        assert a.id == b.id
        assert a.id != c.id

    def test_unknown_context_type(self):
        store = InMemoryConversationStore()
        with pytest.raises(ValueError):
            asyncio.run(store.get_or_create("camp", "popup"))

    def test_load_missing(self):
        assert asyncio.run(InMemoryConversationStore().load("camp", "sidebar")) is None

    def test_messages_sorted_by_order(self):
        store = InMemoryConversationStore()

        async def go():
            record = await store.get_or_create("camp", "sidebar")
            await store.append_message(record.id, message("assistant", "second"), 2)
            await store.append_message(record.id, message("user", "first"), 1)
            return await store.load("camp", "sidebar")

        stored = asyncio.run(go())
        assert [m.content for m in stored.messages] == ["first", "second"]

    def test_token_counts_accumulate(self):
        store = InMemoryConversationStore()

        async def go():
            record = await store.get_or_create("camp", "sidebar")
            await store.update_token_counts(record.id, TokenUsage(10, 2))
            return await store.update_token_counts(record.id, TokenUsage(5, 1, 3, 4))

        assert asyncio.run(go()) == TokenUsage(15, 3, 3, 4)

    def test_unknown_conversation(self):
        store = InMemoryConversationStore()
        with pytest.raises(KeyError):
            asyncio.run(store.append_message("nope", message("user", "hi"), 1))

    def test_proposal_status_update(self):
        store = InMemoryConversationStore()

        async def go():
            record = await store.get_or_create("camp", "sidebar")
            plain = await store.append_message(record.id, message("user", "hi"), 1)
            card = await store.append_message(
                record.id, message("proposal", "[Pending]", proposal={"id": "p1", "status": "pending"}), 2
            )
            await store.update_proposal_status(card, "accepted")
            with pytest.raises(ValueError):
                await store.update_proposal_status(plain, "accepted")
            with pytest.raises(KeyError):
                await store.update_proposal_status("missing", "accepted")
            return await store.load("camp", "sidebar")

        stored = asyncio.run(go())
        assert stored.messages[1].proposal == {"id": "p1", "status": "accepted"}

    def test_clear_resets_everything(self):
        store = InMemoryConversationStore()

        async def go():
            record = await store.get_or_create("camp", "sidebar")
            await store.append_message(record.id, message("user", "hi"), 1)
            await store.update_token_counts(record.id, TokenUsage(10, 2))
            await store.update_agent_history(record.id, [{"role": "user", "content": "hi"}])
            await store.clear(record.id)
            return await store.load("camp", "sidebar")

        stored = asyncio.run(go())
        assert stored.messages == []
        assert stored.conversation.agent_history == []
        assert stored.conversation.usage.is_empty


# ═══════════════════════════════════════════════════════════════
# JSON store
# ═══════════════════════════════════════════════════════════════

class TestJsonStore:

    def test_survives_restart(self, tmp_path):
        async def write():
            store = JsonConversationStore.from_data_dir(tmp_path)
            record = await store.get_or_create("camp-1", "fullpage")
            await store.append_message(record.id, message("user", "Who is Aldric?"), 1)
            await store.append_message(record.id, message("tool", "found", display_mode="hidden",
                                                          tool_name="search_entities", tool_category="read"), 2)
            await store.update_token_counts(record.id, TokenUsage(100, 25))
            await store.update_agent_history(record.id, [{"role": "user", "content": "Who is Aldric?"}])
            return record.id

        async def read():
            store = JsonConversationStore.from_data_dir(tmp_path)
            record = await store.get_or_create("camp-1", "fullpage")
            return record, await store.load("camp-1", "fullpage")

        conversation_id = asyncio.run(write())
        record, stored = asyncio.run(read())

        assert record.id == conversation_id
        assert record.total_input_tokens == 100
        assert record.agent_history == [{"role": "user", "content": "Who is Aldric?"}]
        assert [m.display_mode for m in stored.messages] == ["normal", "hidden"]
        assert stored.messages[1].tool_category == "read"

    def test_file_layout(self, tmp_path):
        async def go():
            store = JsonConversationStore.from_data_dir(tmp_path)
            await store.get_or_create("camp/../1", "sidebar")

        asyncio.run(go())
        files = list((tmp_path / "conversations").iterdir())
        assert [f.name for f in files] == ["camp_.._1_sidebar.json"]
        data = json.loads(files[0].read_text(encoding="utf-8"))
        assert data["conversation"]["campaign_id"] == "camp/../1"
        assert data["messages"] == []

    def test_filename_is_sanitized(self):
        assert _conversation_filename("a b:c", "sidebar") == "a_b_c_sidebar.json"
