"""Async client for Ollama using the official Python SDK."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any, AsyncIterator

import ollama

from .agent.models import StreamDone, StreamEvent, TextDelta, ToolRequest, UsageReport
from .config import get_config

logger = logging.getLogger("chronicler.ollama")

_OPEN_TAG = "<think>"
_CLOSE_TAG = "</think>"

_TRANSIENT_MARKERS = (
    "connection reset", "connection refused", "eof", "broken pipe",
    "timeout", "timed out", "network", "connection error",
)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from an SDK model or a plain dict chunk."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class OllamaClient:
    """Wrapper around the official ollama.AsyncClient."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None, keep_alive: str | None = None) -> None:
        cfg = get_config()
        host = (base_url or cfg.ollama_url).rstrip("/")
        self.timeout = timeout if timeout is not None else cfg.ollama_timeout
        self.keep_alive = keep_alive or cfg.ollama_keep_alive

        logger.info(f"Initializing Ollama SDK client for host: {host}, timeout: {self.timeout}s")
        self._client = ollama.AsyncClient(host=host, timeout=self.timeout)

    async def unload_model(self, model: str) -> None:
        """Unload model from memory by setting keep_alive to 0."""
        try:
            logger.info(f"Unloading model {model}...")
            await self._client.generate(model=model, prompt="", keep_alive=0)
            logger.info("Model unloaded successfully.")
        except Exception as e:
            logger.error(f"Failed to unload model {model}: {e}")

    async def health_check(self) -> bool:
        """Check if Ollama is reachable."""
        try:
            await self._client.list()
            return True
        except Exception:
            return False

    async def list_models(self) -> list[dict]:
        """List available models."""
        try:
            response = await self._client.list()
            models = _field(response, "models", [])
            return [
                model.model_dump() if hasattr(model, "model_dump") else model
                for model in models
            ]
        except Exception as e:
            logger.error(f"Failed to list models: {e}")
            return []

    async def chat_stream(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        options: dict[str, Any] | None = None,
        max_retries: int = 2,
    ) -> AsyncIterator[Any]:
        """
        Streaming chat completion using SDK.
        Returns the raw chunk object from Ollama SDK.
        Retries up to max_retries times on transient connection errors,
        but only before the first chunk has been delivered.
        """
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "keep_alive": self.keep_alive,
        }
        if tools:
            kwargs["tools"] = tools
        if options:
            kwargs["options"] = options

        last_err: Exception | None = None
        for attempt in range(max_retries + 1):
            delivered = False
            try:
                async for chunk in await self._client.chat(**kwargs):
                    delivered = True
                    yield chunk
                return

            except ollama.ResponseError as e:
                err_str = str(e.error)
                if "invalid character '<'" in err_str or "failed to parse JSON" in err_str:
                    raise ollama.ResponseError(
                        "Ollama returned an HTML error page instead of JSON. "
                        "This usually means Ollama crashed or ran out of memory. "
                        "Try: `systemctl restart ollama` or reduce `ollama_num_ctx` in config.",
                        status_code=e.status_code,
                    )
                logger.error(f"Ollama ResponseError (attempt {attempt + 1}): {e.error}")
                raise

            except Exception as e:
                err_str = str(e).lower()
                is_transient = any(k in err_str for k in _TRANSIENT_MARKERS)
                if is_transient and not delivered and attempt < max_retries:
                    wait = 1.5 * (attempt + 1)
                    logger.warning(
                        f"Transient Ollama error (attempt {attempt + 1}/{max_retries + 1}), "
                        f"retrying in {wait:.1f}s: {e}"
                    )
                    last_err = e
                    await asyncio.sleep(wait)
                    continue
                logger.exception(f"Unexpected SDK error: {e}")
                raise

        raise RuntimeError(
            f"Ollama connection failed after {max_retries + 1} attempts: {last_err}"
        )

    async def stream_events(
        self,
        model: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Typed event stream for one model turn.

        Yields TextDelta for visible text (``<think>`` blocks removed),
        one ToolRequest per requested call, then a UsageReport and a final
        StreamDone.
        """
        full_messages = [{"role": "system", "content": system_prompt}, *messages]

        carry = ""
        in_think = False
        call_count = 0
        stop_reason = "end_turn"
        usage = UsageReport()

        async for chunk in self.chat_stream(model, full_messages, tools=tools, options=options):
            message = _field(chunk, "message")
            content = _field(message, "content") or ""

            if content:
                text = carry + content
                carry = ""
                # hold back a partial tag so it is never split across deltas
                for partial_len in range(min(len(text), len(_CLOSE_TAG)), 0, -1):
                    suffix = text[-partial_len:]
                    if _OPEN_TAG.startswith(suffix) or _CLOSE_TAG.startswith(suffix):
                        carry = suffix
                        text = text[:-partial_len]
                        break

                while text:
                    if in_think:
                        if _CLOSE_TAG not in text:
                            break
                        text = text[text.index(_CLOSE_TAG) + len(_CLOSE_TAG):]
                        in_think = False
                    elif _OPEN_TAG in text:
                        idx = text.index(_OPEN_TAG)
                        if idx:
                            yield TextDelta(text[:idx])
                        text = text[idx + len(_OPEN_TAG):]
                        in_think = True
                    else:
                        yield TextDelta(text)
                        text = ""

            for call in _field(message, "tool_calls") or []:
                function = _field(call, "function")
                arguments = _field(function, "arguments")
                if isinstance(arguments, str):
                    try:
                        arguments = json.loads(arguments) if arguments.strip() else {}
                    except json.JSONDecodeError:
                        logger.warning(f"Undecodable tool arguments for {_field(function, 'name')}: {arguments[:200]}")
                        arguments = {}
                elif arguments is None:
                    arguments = {}
                elif isinstance(arguments, Mapping):
                    arguments = dict(arguments)
                call_count += 1
                yield ToolRequest(
                    id=f"call_{call_count}",
                    name=_field(function, "name") or "",
                    arguments=arguments,
                )

            if _field(chunk, "done"):
                usage = UsageReport(
                    input_tokens=_field(chunk, "prompt_eval_count") or 0,
                    output_tokens=_field(chunk, "eval_count") or 0,
                )
                if _field(chunk, "done_reason") == "length":
                    stop_reason = "max_tokens"

        if carry and not in_think:
            yield TextDelta(carry)

        if call_count:
            stop_reason = "tool_use"
        yield usage
        yield StreamDone(stop_reason=stop_reason)
