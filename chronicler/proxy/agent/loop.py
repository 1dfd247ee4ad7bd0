from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from .models import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_TOKENS,
    AgentEvent,
    AgentMessage,
    AgentResult,
    StreamDone,
    StreamEvent,
    TextDelta,
    TokenUsage,
    ToolRequest,
    UsageReport,
    logger,
)
from .registry import ToolRegistry, ToolResult
from .work_items import WorkItemTracker

TOOL_ERROR_PREFIX = "[TOOL ERROR] "

_END = object()


class ModelClient(Protocol):
    def stream_events(
        self,
        model: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[StreamEvent]: ...


@dataclass
class AgentSettings:
    """Run-scoped settings; nothing here is read from global config."""

    model: str
    system_prompt: str
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_tokens: int = DEFAULT_MAX_TOKENS
    tool_response_role: str = "tool"
    options: dict[str, Any] = field(default_factory=dict)


class _RunCancelled(Exception):
    pass


def friendly_stream_error(err: Exception, model: str) -> str:
    err_str = str(err)
    err_lower = err_str.lower()
    if "invalid character '<'" in err_str or "failed to parse JSON" in err_str or "HTML error page" in err_str:
        return (
            "Ollama returned an HTML error page: the server crashed or ran out of memory.\n"
            "Fix: restart Ollama or reduce `ollama_num_ctx` in config."
        )
    if "connection refused" in err_lower or "connecterror" in err_lower:
        return "Cannot connect to Ollama (connection refused).\nFix: start Ollama with `ollama serve`."
    if "not found" in err_lower and "model" in err_lower:
        return f"Model not found: {model}\nFix: run `ollama pull {model}`."
    if "context length" in err_lower or "out of memory" in err_lower:
        return "Model ran out of context or memory.\nFix: lower `ollama_num_ctx` in config."
    if "timeout" in err_lower or "timed out" in err_lower:
        return "Ollama request timed out.\nFix: increase `ollama_timeout` in config or pick a faster model."
    return f"Model connection error: {err_str}"


class AgentLoop:
    """Drives one agent run: model turn, tool calls, repeat.

    ``run`` is an async generator of AgentEvents; once it is exhausted,
    ``result`` holds the AgentResult.
    """

    def __init__(
        self,
        client: ModelClient,
        registry: ToolRegistry,
        settings: AgentSettings,
        work_items: WorkItemTracker | None = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.settings = settings
        self.work_items = work_items or WorkItemTracker()
        self.result: AgentResult | None = None

    async def run(
        self,
        user_message: str,
        history: list[dict[str, Any]] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[AgentEvent]:
        messages: list[dict[str, Any]] = list(history or [])
        messages.append({"role": "user", "content": user_message})

        usage = TokenUsage()
        iterations = 0
        final_response = ""
        max_iterations = self.settings.max_iterations

        def finish(stop_reason: str, completed: bool, response: str, error: str | None = None, notice: str | None = None) -> AgentEvent:
            self.result = AgentResult(
                response=response,
                iterations=iterations,
                usage=usage,
                work_items=[i.to_dict() for i in self.work_items.list()],
                completed=completed,
                stop_reason=stop_reason,  # type: ignore[arg-type]
                error=error,
                notice=notice,
                history=list(messages),
            )
            return AgentEvent(type="done", data=self.result.to_dict())

        try:
            while iterations < max_iterations:
                if cancel is not None and cancel.is_set():
                    logger.info("Agent run cancelled before model request")
                    yield finish("cancelled", False, final_response)
                    return

                iterations += 1
                logger.debug(f"Agent iteration {iterations}/{max_iterations} with {self.settings.model}")

                text_parts: list[str] = []
                requests: list[ToolRequest] = []
                turn_usage: UsageReport | None = None
                stop_reason = "end_turn"

                stream = self.client.stream_events(
                    self.settings.model,
                    self.settings.system_prompt,
                    messages,
                    tools=self.registry.schemas(),
                    options={"num_predict": self.settings.max_tokens, **self.settings.options},
                )
                try:
                    while True:
                        event = await self._next_event(stream, cancel)
                        if event is _END:
                            break
                        if isinstance(event, TextDelta):
                            if event.text:
                                text_parts.append(event.text)
                                yield AgentEvent(type="text", data={"content": event.text})
                        elif isinstance(event, ToolRequest):
                            requests.append(event)
                        elif isinstance(event, UsageReport):
                            usage.add(event)
                            turn_usage = event
                        elif isinstance(event, StreamDone):
                            stop_reason = event.stop_reason
                except _RunCancelled:
                    logger.info("Agent run cancelled mid-stream")
                    yield finish("cancelled", False, "".join(text_parts) or final_response)
                    return
                except Exception as stream_err:
                    if cancel is not None and cancel.is_set():
                        logger.info(f"Stream ended by cancellation: {stream_err}")
                        yield finish("cancelled", False, "".join(text_parts) or final_response)
                        return
                    logger.error(f"Model stream error: {stream_err}")
                    message = friendly_stream_error(stream_err, self.settings.model)
                    yield AgentEvent(type="error", data={"message": message})
                    yield finish("error", False, final_response, error=message)
                    return
                finally:
                    await self._close(stream)

                if turn_usage is not None:
                    yield AgentEvent(type="usage", data=asdict(turn_usage))

                text = "".join(text_parts)
                assistant_turn: dict[str, Any] = {"role": "assistant", "content": text}
                if requests:
                    assistant_turn["tool_calls"] = [
                        {"function": {"name": r.name, "arguments": r.arguments if isinstance(r.arguments, dict) else {}}}
                        for r in requests
                    ]
                messages.append(assistant_turn)

                if text:
                    final_response = text
                    yield AgentEvent(type="message", data=asdict(AgentMessage(role="assistant", content=text)))

                if not requests:
                    if stop_reason == "max_tokens":
                        logger.warning(f"Model hit the token limit ({self.settings.max_tokens}) on its final turn")
                    yield finish("end_turn", True, final_response)
                    return

                for idx, request in enumerate(requests):
                    if cancel is not None and cancel.is_set():
                        logger.info(f"Agent run cancelled before tool {request.name}")
                        for skipped in requests[idx:]:
                            self._append_tool_result(
                                messages, skipped, ToolResult(False, "Cancelled by user before execution.")
                            )
                        yield finish("cancelled", False, final_response)
                        return

                    category = self.registry.category_of(request.name)
                    yield AgentEvent(
                        type="tool_start",
                        data={
                            **asdict(AgentMessage(
                                role="assistant",
                                content=f"Using tool: {request.name}",
                                tool_name=request.name,
                                tool_input=request.arguments,
                                tool_call_id=request.id,
                            )),
                            "category": category,
                        },
                    )

                    started = time.monotonic()
                    result = await self.registry.invoke(request.name, request.arguments)
                    duration = time.monotonic() - started
                    logger.info(
                        f"Tool {request.name} {'succeeded' if result.success else 'failed'} in {duration:.2f}s"
                    )

                    yield AgentEvent(
                        type="tool_end",
                        data={
                            **asdict(AgentMessage(
                                role="tool_result",
                                content=result.content,
                                tool_name=request.name,
                                tool_input=request.arguments,
                                tool_call_id=request.id,
                                success=result.success,
                                data=result.data,
                            )),
                            "category": category,
                            "duration": round(duration, 2),
                        },
                    )
                    self._append_tool_result(messages, request, result)

            notice = f"Reached maximum iterations ({max_iterations})"
            logger.warning(notice)
            yield AgentEvent(type="limit", data={"message": notice, "max_iterations": max_iterations})
            yield finish("max_iterations", False, final_response, notice=notice)

        except Exception as e:
            logger.exception("Fatal error in agent loop")
            message = f"Agent error: {e}"
            yield AgentEvent(type="error", data={"message": message})
            yield finish("error", False, final_response, error=message)

    async def _next_event(self, stream: AsyncIterator[StreamEvent], cancel: asyncio.Event | None) -> Any:
        """Next stream event, or _END; raises _RunCancelled if ``cancel`` fires first."""
        if cancel is None:
            return await _pull(stream)
        if cancel.is_set():
            raise _RunCancelled()

        next_task = asyncio.ensure_future(_pull(stream))
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            next_task.cancel()
            cancel_task.cancel()
            raise

        if next_task in done:
            cancel_task.cancel()
            return next_task.result()

        next_task.cancel()
        await asyncio.wait({next_task})
        raise _RunCancelled()

    @staticmethod
    async def _close(stream: AsyncIterator[StreamEvent]) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug(f"Error closing model stream: {e}")

    def _append_tool_result(self, messages: list[dict[str, Any]], request: ToolRequest, result: ToolResult) -> None:
        content = result.content if result.success else TOOL_ERROR_PREFIX + result.content
        if self.settings.tool_response_role.lower() == "tool":
            messages.append({"role": "tool", "tool_name": request.name, "content": content})
        else:
            status = "successfully" if result.success else "with errors"
            messages.append({
                "role": "user",
                "content": f"[Tool '{request.name}' executed {status}]\nOutput:\n{content}",
            })


async def _pull(stream: AsyncIterator[StreamEvent]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END


Callback = Callable[..., Any]


async def _call(callback: Callback | None, *args: Any) -> None:
    if callback is None:
        return
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome


async def run_agent(
    user_message: str,
    registry: ToolRegistry,
    client: ModelClient,
    settings: AgentSettings,
    work_items: WorkItemTracker | None = None,
    history: list[dict[str, Any]] | None = None,
    on_text_delta: Callable[[str], Any] | None = None,
    on_message: Callable[[AgentMessage], Any] | Callable[[AgentMessage], Awaitable[Any]] | None = None,
    cancel: asyncio.Event | None = None,
) -> AgentResult:
    """Run the loop to completion and return its result.

    ``on_text_delta`` receives every text fragment in order; ``on_message``
    receives each complete assistant text, tool announcement and tool result.
    Callbacks may be plain functions or coroutines.
    """
    loop = AgentLoop(client, registry, settings, work_items)
    async for event in loop.run(user_message, history=history, cancel=cancel):
        if event.type == "text":
            await _call(on_text_delta, event.data["content"])
        elif event.type in ("message", "tool_start", "tool_end"):
            fields = {k: v for k, v in event.data.items() if k in AgentMessage.__dataclass_fields__}
            await _call(on_message, AgentMessage(**fields))
    if loop.result is None:
        raise RuntimeError("Agent loop ended without a result")
    return loop.result
