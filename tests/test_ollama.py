"""Tests for OllamaClient.stream_events: think stripping, tool calls, usage, retries."""

import asyncio
from unittest.mock import AsyncMock, patch

import ollama
import pytest

from chronicler.proxy.agent.models import StreamDone, TextDelta, ToolRequest, UsageReport
from chronicler.proxy.ollama import OllamaClient


class FakeSDK:
    """Stands in for ollama.AsyncClient; each chat() call plays the next script."""

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.requests = []

    async def chat(self, **kwargs):
        self.requests.append(kwargs)
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script

        async def stream():
            for chunk in script:
                yield chunk

        return stream()

    async def list(self):
        raise ConnectionError("offline")


def chunk(content="", tool_calls=None, done=False, **extra):
    return {"message": {"role": "assistant", "content": content, "tool_calls": tool_calls}, "done": done, **extra}


def final(prompt=0, output=0, reason="stop"):
    return chunk(done=True, prompt_eval_count=prompt, eval_count=output, done_reason=reason)


@pytest.fixture
def make_client(test_config):
    def make(*scripts):
        client = OllamaClient()
        client._client = FakeSDK(*scripts)
        return client
    return make


def collect(client, messages=None, tools=None):
    async def go():
        return [e async for e in client.stream_events("qwen3:8b", "You help a GM.", messages or [], tools=tools)]
    return asyncio.run(go())


# ═══════════════════════════════════════════════════════════════
# Text and reasoning blocks
# ═══════════════════════════════════════════════════════════════

class TestText:

    def test_plain_text_then_usage_and_done(self, make_client):
        client = make_client([chunk("Hello"), chunk(" there"), final(42, 7)])
        events = collect(client)
        assert events == [
            TextDelta("Hello"),
            TextDelta(" there"),
            UsageReport(input_tokens=42, output_tokens=7),
            StreamDone("end_turn"),
        ]

    def test_think_block_split_across_chunks(self, make_client):
        client = make_client([chunk("Hello <thi"), chunk("nk>secret plans</th"), chunk("ink> world"), final()])
        text = "".join(e.text for e in collect(client) if isinstance(e, TextDelta))
        assert text == "Hello  world"

    def test_unclosed_think_block_is_dropped(self, make_client):
        client = make_client([chunk("<think>still pondering"), final()])
        assert [e for e in collect(client) if isinstance(e, TextDelta)] == []

    def test_trailing_partial_tag_is_released(self, make_client):
        client = make_client([chunk("a < b and b <"), final()])
        text = "".join(e.text for e in collect(client) if isinstance(e, TextDelta))
        assert text == "a < b and b <"

    def test_length_stop(self, make_client):
        client = make_client([chunk("cut"), final(reason="length")])
        assert collect(client)[-1] == StreamDone("max_tokens")

    def test_system_prompt_prepended(self, make_client):
        client = make_client([final()])
        collect(client, messages=[{"role": "user", "content": "hi"}], tools=[{"type": "function"}])
        request = client._client.requests[0]
        assert request["messages"][0] == {"role": "system", "content": "You help a GM."}
        assert request["messages"][1] == {"role": "user", "content": "hi"}
        assert request["tools"] == [{"type": "function"}]
        assert request["stream"] is True
        assert "think" not in request


# ═══════════════════════════════════════════════════════════════
# Tool calls
# ═══════════════════════════════════════════════════════════════

class TestToolCalls:

    def test_calls_become_requests(self, make_client):
        calls = [
            {"function": {"name": "search_entities", "arguments": {"query": "Aldric"}}},
            {"function": {"name": "get_timeline", "arguments": '{"limit": 3}'}},
        ]
        client = make_client([chunk(tool_calls=calls), final(10, 2)])
        events = collect(client)
        assert events[:2] == [
            ToolRequest(id="call_1", name="search_entities", arguments={"query": "Aldric"}),
            ToolRequest(id="call_2", name="get_timeline", arguments={"limit": 3}),
        ]
        assert events[-1] == StreamDone("tool_use")

    def test_bad_argument_json(self, make_client):
        calls = [{"function": {"name": "get_entity", "arguments": "{not json"}}]
        client = make_client([chunk(tool_calls=calls), final()])
        assert collect(client)[0].arguments == {}

    def test_missing_arguments(self, make_client):
        calls = [{"function": {"name": "list_work_items", "arguments": None}}]
        client = make_client([chunk(tool_calls=calls), final()])
        assert collect(client)[0].arguments == {}


# ═══════════════════════════════════════════════════════════════
# Errors and retries
# ═══════════════════════════════════════════════════════════════

class TestErrors:

    def test_transient_error_retried(self, make_client):
        client = make_client(ConnectionError("Connection refused"), [chunk("ok"), final()])
        with patch("chronicler.proxy.ollama.asyncio.sleep", AsyncMock()) as sleep:
            events = collect(client)
        assert events[0] == TextDelta("ok")
        sleep.assert_awaited_once()

    def test_gives_up_after_retries(self, make_client):
        client = make_client(*(ConnectionError("connection refused") for _ in range(3)))
        with patch("chronicler.proxy.ollama.asyncio.sleep", AsyncMock()):
            with pytest.raises(ConnectionError):
                collect(client)
        assert len(client._client.requests) == 3

    def test_html_error_page(self, make_client):
        client = make_client(ollama.ResponseError("invalid character '<' looking for beginning of value", 500))
        with pytest.raises(ollama.ResponseError, match="HTML error page"):
            collect(client)

    def test_health_check_false_when_offline(self, make_client):
        client = make_client()
        assert asyncio.run(client.health_check()) is False
        assert asyncio.run(client.list_models()) == []
