"""Streaming conversation state.

Turns agent events into the transcript the user sees. Text deltas are
buffered and flushed once per ``flush_interval_ms`` instead of per delta.
Read-tool progress shows as a single ephemeral indicator that fades when
superseded. Token totals only ever grow. Writes to the conversation store
are queued in order; a failed write is logged and the in-memory transcript
stays authoritative.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal

from ..pricing import calculate_cost_with_cache
from .models import AgentEvent, AgentResult, TokenUsage, UsageReport
from .proposals import (
    EntityProposal,
    ProposalStatus,
    ProposalTracker,
    describe_proposal,
    proposal_from_dict,
    proposal_to_dict,
)
from .registry import ToolCategory
from .session import ConversationStore, StoredMessage

logger = logging.getLogger("chronicler.agent.conversation")

Role = Literal["user", "assistant", "tool", "error", "proposal"]
DisplayMode = Literal["normal", "ephemeral", "fading", "hidden"]

THINKING_TEXT = "Thinking..."


@dataclass
class ChatMessage:
    id: str
    role: Role
    content: str
    order: int
    tool_name: str | None = None
    tool_input: Any = None
    tool_data: Any = None
    proposal: EntityProposal | None = None
    display_mode: DisplayMode = "normal"
    tool_category: ToolCategory | None = None
    timestamp: datetime = field(default_factory=datetime.now)
    persisted_id: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "tool_name": self.tool_name,
            "tool_input": self.tool_input,
            "tool_data": self.tool_data,
            "proposal": proposal_to_dict(self.proposal) if self.proposal else None,
            "display_mode": self.display_mode,
            "tool_category": self.tool_category,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "order": self.order, **self.to_record()}

    @classmethod
    def from_stored(cls, stored: StoredMessage) -> ChatMessage:
        try:
            timestamp = datetime.fromisoformat(stored.created_at)
        except ValueError:
            timestamp = datetime.now()
        return cls(
            id=stored.id,
            role=stored.role,  # type: ignore[arg-type]
            content=stored.content,
            order=stored.message_order,
            tool_name=stored.tool_name,
            tool_input=stored.tool_input,
            tool_data=stored.tool_data,
            proposal=proposal_from_dict(stored.proposal) if stored.proposal else None,
            display_mode=stored.display_mode,  # type: ignore[arg-type]
            tool_category=stored.tool_category,  # type: ignore[arg-type]
            timestamp=timestamp,
            persisted_id=stored.id,
        )


class ConversationState:
    def __init__(
        self,
        campaign_id: str,
        context_type: str = "sidebar",
        store: ConversationStore | None = None,
        flush_interval_ms: int = 16,
        ephemeral_fade_ms: int = 1500,
        on_change: Callable[[], Any] | None = None,
    ) -> None:
        self.campaign_id = campaign_id
        self.context_type = context_type
        self.store = store
        self.flush_interval = flush_interval_ms / 1000
        self.ephemeral_fade = ephemeral_fade_ms / 1000
        self.on_change = on_change

        self.conversation_id: str | None = None
        self.messages: list[ChatMessage] = []
        self.usage = TokenUsage()
        self.agent_history: list[dict[str, Any]] = []
        self.proposals = ProposalTracker(on_proposal_created=self.add_proposal)
        self.streaming_message_id: str | None = None

        self._order = 0
        self._counter = 0
        self._buffer: list[str] = []
        self._flush_handle: asyncio.TimerHandle | None = None
        self._active_ephemeral: str | None = None
        self._fade_handles: dict[str, asyncio.TimerHandle] = {}
        self._write_chain: asyncio.Future | None = None

    @classmethod
    async def open(
        cls,
        store: ConversationStore,
        campaign_id: str,
        context_type: str = "sidebar",
        **kwargs: Any,
    ) -> ConversationState:
        state = cls(campaign_id, context_type, store=store, **kwargs)
        await state.load()
        return state

    async def load(self) -> None:
        """Restore transcript, token totals, model history and proposals from the store."""
        if self.store is None:
            return
        record = await self.store.get_or_create(self.campaign_id, self.context_type)
        self.conversation_id = record.id
        stored = await self.store.load(self.campaign_id, self.context_type)

        self.messages = [ChatMessage.from_stored(m) for m in (stored.messages if stored else [])]
        self._order = max((m.order for m in self.messages), default=0)
        self.usage = record.usage
        self.agent_history = list(record.agent_history)
        for message in self.messages:
            if message.proposal is not None:
                self.proposals.adopt(message.proposal)
        logger.info(
            f"Loaded conversation {record.id}: {len(self.messages)} messages, "
            f"{self.usage.input_tokens + self.usage.output_tokens} tokens"
        )

    # ─── Queries ──────────────────────────────────────────────────────

    def get(self, message_id: str) -> ChatMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def visible_messages(self) -> list[ChatMessage]:
        return [m for m in self.messages if m.display_mode != "hidden"]

    @property
    def is_streaming(self) -> bool:
        return self.streaming_message_id is not None

    @property
    def active_ephemeral_id(self) -> str | None:
        return self._active_ephemeral

    def cost(self, model_id: str) -> float:
        return calculate_cost_with_cache(
            model_id,
            self.usage.input_tokens,
            self.usage.output_tokens,
            self.usage.cache_read_tokens,
            self.usage.cache_creation_tokens,
        )

    def to_dict(self, include_hidden: bool = False) -> dict[str, Any]:
        messages = self.messages if include_hidden else self.visible_messages()
        return {
            "conversation_id": self.conversation_id,
            "campaign_id": self.campaign_id,
            "context_type": self.context_type,
            "messages": [m.to_dict() for m in messages],
            "usage": self.usage.to_dict(),
            "pending_proposals": [proposal_to_dict(p) for p in self.proposals.pending()],
        }

    # ─── Plain messages ───────────────────────────────────────────────

    def _new_message(self, role: Role, content: str, **fields: Any) -> ChatMessage:
        self._order += 1
        self._counter += 1
        message = ChatMessage(
            id=f"msg_{int(time.time() * 1000)}_{self._counter}",
            role=role,
            content=content,
            order=self._order,
            **fields,
        )
        self.messages.append(message)
        self._changed()
        return message

    def _remove(self, message_id: str) -> None:
        self.messages = [m for m in self.messages if m.id != message_id]
        self._changed()

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def add_user_message(self, content: str) -> str:
        message = self._new_message("user", content)
        self._persist_message(message)
        return message.id

    def add_assistant_message(self, content: str, tool_name: str | None = None, tool_input: Any = None) -> str:
        message = self._new_message("assistant", content, tool_name=tool_name, tool_input=tool_input)
        self._persist_message(message)
        return message.id

    def add_tool_result(
        self,
        content: str,
        tool_name: str,
        category: ToolCategory | None = None,
        tool_input: Any = None,
        tool_data: Any = None,
        success: bool = True,
    ) -> str:
        # known tools report through indicators and proposal cards; failures stay visible
        display_mode: DisplayMode = "hidden" if success and category is not None else "normal"
        message = self._new_message(
            "tool",
            content,
            tool_name=tool_name,
            tool_input=tool_input,
            tool_data=tool_data,
            display_mode=display_mode,
            tool_category=category,
        )
        self._persist_message(message)
        return message.id

    def add_error(self, error: str) -> str:
        message = self._new_message("error", error)
        self._persist_message(message)
        return message.id

    def add_proposal(self, proposal: EntityProposal) -> str:
        message = self._new_message(
            "proposal", describe_proposal(proposal), proposal=proposal, tool_category="write"
        )
        self._persist_message(message)
        return message.id

    def mark_proposal(self, proposal_id: str, status: ProposalStatus) -> None:
        """Reflect a proposal's new status in its transcript entry."""
        message = next(
            (m for m in self.messages if m.proposal is not None and m.proposal.id == proposal_id), None
        )
        if message is None:
            logger.warning(f"No transcript entry for proposal {proposal_id}")
            return
        proposal = message.proposal
        if proposal.status != status:
            proposal.status = status
        message.content = describe_proposal(proposal)
        self._changed()

        async def write() -> None:
            if message.persisted_id is None:
                logger.warning(f"Proposal message for {proposal_id} was never persisted")
                return
            await self.store.update_proposal_status(message.persisted_id, status)

        self._persist(write, f"proposal {proposal_id} status")

    def set_agent_history(self, history: list[dict[str, Any]]) -> None:
        self.agent_history = list(history)
        snapshot = list(history)

        async def write() -> None:
            await self.store.update_agent_history(self.conversation_id, snapshot)

        self._persist(write, "agent history")

    # ─── Token accounting ─────────────────────────────────────────────

    def record_usage(self, report: UsageReport | TokenUsage) -> TokenUsage:
        delta = TokenUsage(
            input_tokens=max(report.input_tokens, 0),
            output_tokens=max(report.output_tokens, 0),
            cache_read_tokens=max(report.cache_read_tokens, 0),
            cache_creation_tokens=max(report.cache_creation_tokens, 0),
        )
        if delta.is_empty:
            return self.usage
        self.usage.add(delta)
        self._changed()

        async def write() -> None:
            await self.store.update_token_counts(self.conversation_id, delta)

        self._persist(write, "token counts")
        return self.usage

    # ─── Streaming ────────────────────────────────────────────────────

    def start_streaming(self) -> str:
        if self.streaming_message_id is not None:
            raise RuntimeError(f"Message {self.streaming_message_id} is still streaming")
        message = self._new_message("assistant", "")
        self.streaming_message_id = message.id
        return message.id

    def append_delta(self, delta: str) -> None:
        if self.streaming_message_id is None or not delta:
            return
        if self._active_ephemeral is not None:
            self._fade(self._active_ephemeral)

        self._buffer.append(delta)
        if self._flush_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        self._flush_handle = loop.call_later(self.flush_interval, self.flush)

    def flush(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if not self._buffer:
            return
        text = "".join(self._buffer)
        self._buffer.clear()
        message = self.get(self.streaming_message_id) if self.streaming_message_id else None
        if message is None:
            logger.warning(f"Dropping {len(text)} buffered characters with no streaming message")
            return
        message.content += text
        self._changed()

    async def finish_streaming(self) -> ChatMessage | None:
        """Drain the delta buffer, then persist the streamed message.

        A streamed message that ended up empty is removed instead.
        """
        message_id = self.streaming_message_id
        if message_id is None:
            return None
        self.flush()
        self.streaming_message_id = None

        message = self.get(message_id)
        if message is None:
            return None
        if not message.content:
            self._remove(message_id)
            return None
        self._persist_message(message)
        await self.drain()
        return message

    # ─── Ephemeral indicators ─────────────────────────────────────────

    def show_ephemeral(
        self,
        content: str,
        tool_name: str | None = None,
        tool_input: Any = None,
        role: Role = "tool",
    ) -> str:
        if self._active_ephemeral is not None:
            self._fade(self._active_ephemeral)
        message = self._new_message(
            role,
            content,
            tool_name=tool_name,
            tool_input=tool_input,
            display_mode="ephemeral",
            tool_category="read" if role == "tool" else None,
        )
        self._active_ephemeral = message.id
        return message.id

    def show_thinking(self) -> str:
        return self.show_ephemeral(THINKING_TEXT, role="assistant")

    def clear_ephemeral(self) -> None:
        if self._active_ephemeral is not None:
            self._fade(self._active_ephemeral)

    def _fade(self, message_id: str) -> None:
        if self._active_ephemeral == message_id:
            self._active_ephemeral = None
        message = self.get(message_id)
        if message is None or message.display_mode != "ephemeral":
            return
        message.display_mode = "fading"
        self._changed()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._prune(message_id)
            return
        self._fade_handles[message_id] = loop.call_later(self.ephemeral_fade, self._prune, message_id)

    def _prune(self, message_id: str) -> None:
        self._fade_handles.pop(message_id, None)
        message = self.get(message_id)
        if message is not None and message.display_mode == "fading":
            self._remove(message_id)

    # ─── Agent events ─────────────────────────────────────────────────

    def begin_turn(self, user_message: str) -> str:
        message_id = self.add_user_message(user_message)
        self.show_thinking()
        return message_id

    async def handle_event(self, event: AgentEvent) -> None:
        data = event.data
        if event.type == "text":
            if self.streaming_message_id is None:
                self.start_streaming()
            self.append_delta(data.get("content", ""))

        elif event.type == "message":
            finished = await self.finish_streaming()
            if finished is None and data.get("content"):
                self.add_assistant_message(data["content"])

        elif event.type == "tool_start":
            await self.finish_streaming()
            category = data.get("category")
            tool_input = data.get("tool_input")
            if category == "read":
                flavor = tool_input.get("flavor") if isinstance(tool_input, dict) else None
                self.show_ephemeral(flavor or data.get("content", ""), data.get("tool_name"), tool_input)
            elif category == "write":
                self.add_assistant_message(data.get("content", ""), data.get("tool_name"), tool_input)

        elif event.type == "tool_end":
            self.add_tool_result(
                data.get("content", ""),
                data.get("tool_name") or "",
                category=data.get("category"),
                tool_input=data.get("tool_input"),
                tool_data=data.get("data"),
                success=bool(data.get("success")),
            )

        elif event.type == "usage":
            self.record_usage(UsageReport(**{k: data.get(k, 0) for k in UsageReport.__dataclass_fields__}))

        elif event.type == "limit":
            await self.finish_streaming()
            self.add_assistant_message(data.get("message", ""))

        elif event.type == "error":
            await self.finish_streaming()
            self.add_error(data.get("message", "Unknown error"))

        elif event.type == "done":
            await self.finish_streaming()
            self.clear_ephemeral()
            await self.drain()

    def complete_run(self, result: AgentResult) -> None:
        """Keep the finished run's model history for the next turn.

        A cancelled run's history ends before the interrupted model turn, so
        no partial assistant message is carried forward.
        """
        self.set_agent_history(result.history)

    # ─── Persistence ──────────────────────────────────────────────────

    def _persist_message(self, message: ChatMessage) -> None:
        async def write() -> None:
            message.persisted_id = await self.store.append_message(
                self.conversation_id, message.to_record(), message.order
            )

        self._persist(write, f"{message.role} message")

    def _persist(self, action: Callable[[], Awaitable[Any]], what: str) -> None:
        if self.store is None or self.conversation_id is None:
            return
        previous = self._write_chain

        async def write() -> None:
            if previous is not None:
                await asyncio.wait({previous})
            try:
                await action()
            except Exception as e:
                logger.error(f"Failed to persist {what}: {e}")

        self._write_chain = asyncio.get_running_loop().create_task(write())

    async def drain(self) -> None:
        """Wait for every queued store write."""
        while self._write_chain is not None:
            chain = self._write_chain
            await asyncio.wait({chain})
            if chain is self._write_chain:
                self._write_chain = None

    async def clear(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        for handle in self._fade_handles.values():
            handle.cancel()
        self._fade_handles.clear()
        self._buffer.clear()
        self._active_ephemeral = None
        self.streaming_message_id = None
        self.messages = []
        self.usage = TokenUsage()
        self.agent_history = []
        self.proposals.clear()
        self._changed()

        async def write() -> None:
            await self.store.clear(self.conversation_id)

        self._persist(write, "conversation clear")
        await self.drain()
