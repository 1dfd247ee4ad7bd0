"""Conversation persistence.

One conversation per (campaign, context surface). A conversation keeps its
ordered transcript, cumulative token counts and the raw model history used
to resume multi-turn context. ``JsonConversationStore`` writes one file per
conversation under ``<data_dir>/conversations/``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from .models import TokenUsage

logger = logging.getLogger("chronicler.agent.session")

CONTEXT_TYPES = ("sidebar", "fullpage")


@dataclass
class ConversationRecord:
    id: str
    campaign_id: str
    context_type: str
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_cache_creation_tokens: int = 0
    agent_history: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = datetime.now().isoformat()
        if not self.updated_at:
            self.updated_at = self.created_at

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.total_input_tokens,
            output_tokens=self.total_output_tokens,
            cache_read_tokens=self.total_cache_read_tokens,
            cache_creation_tokens=self.total_cache_creation_tokens,
        )


@dataclass
class StoredMessage:
    id: str
    conversation_id: str
    role: str
    content: str
    message_order: int
    tool_name: str | None = None
    tool_input: Any = None
    tool_data: Any = None
    proposal: dict[str, Any] | None = None
    display_mode: str = "normal"
    tool_category: str | None = None
    created_at: str = ""


@dataclass
class StoredConversation:
    conversation: ConversationRecord
    messages: list[StoredMessage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"conversation": asdict(self.conversation), "messages": [asdict(m) for m in self.messages]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoredConversation:
        return cls(
            conversation=ConversationRecord(**data["conversation"]),
            messages=[StoredMessage(**m) for m in data.get("messages", [])],
        )


class ConversationStore(Protocol):
    async def get_or_create(self, campaign_id: str, context_type: str) -> ConversationRecord: ...

    async def load(self, campaign_id: str, context_type: str) -> StoredConversation | None: ...

    async def append_message(self, conversation_id: str, message: dict[str, Any], order: int) -> str: ...

    async def update_token_counts(self, conversation_id: str, deltas: TokenUsage) -> TokenUsage: ...

    async def update_agent_history(self, conversation_id: str, history: list[dict[str, Any]]) -> None: ...

    async def clear(self, conversation_id: str) -> None: ...

    async def update_proposal_status(self, message_id: str, status: str) -> None: ...


def _check_context(context_type: str) -> None:
    if context_type not in CONTEXT_TYPES:
        raise ValueError(f"Unknown context type {context_type!r}; expected one of {', '.join(CONTEXT_TYPES)}")


class InMemoryConversationStore:
    """Conversation store that lives only as long as the process."""

    def __init__(self) -> None:
        self._conversations: dict[str, StoredConversation] = {}
        self._keys: dict[tuple[str, str], str] = {}
        self._message_owner: dict[str, str] = {}

    def _index(self, stored: StoredConversation) -> None:
        record = stored.conversation
        self._conversations[record.id] = stored
        self._keys[(record.campaign_id, record.context_type)] = record.id
        for message in stored.messages:
            self._message_owner[message.id] = record.id

    def _require(self, conversation_id: str) -> StoredConversation:
        stored = self._conversations.get(conversation_id)
        if stored is None:
            raise KeyError(f"Unknown conversation: {conversation_id}")
        return stored

    async def _lookup(self, campaign_id: str, context_type: str) -> StoredConversation | None:
        conversation_id = self._keys.get((campaign_id, context_type))
        return self._conversations.get(conversation_id) if conversation_id else None

    async def _save(self, stored: StoredConversation) -> None:
        stored.conversation.updated_at = datetime.now().isoformat()

    async def get_or_create(self, campaign_id: str, context_type: str) -> ConversationRecord:
        _check_context(context_type)
        stored = await self._lookup(campaign_id, context_type)
        if stored is None:
            stored = StoredConversation(
                conversation=ConversationRecord(id=str(uuid.uuid4()), campaign_id=campaign_id, context_type=context_type)
            )
            self._index(stored)
            await self._save(stored)
            logger.info(f"Created {context_type} conversation {stored.conversation.id} for campaign {campaign_id}")
        return stored.conversation

    async def load(self, campaign_id: str, context_type: str) -> StoredConversation | None:
        _check_context(context_type)
        stored = await self._lookup(campaign_id, context_type)
        if stored is None:
            return None
        stored.messages.sort(key=lambda m: m.message_order)
        return stored

    async def append_message(self, conversation_id: str, message: dict[str, Any], order: int) -> str:
        stored = self._require(conversation_id)
        persisted = StoredMessage(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=message["role"],
            content=message.get("content", ""),
            message_order=order,
            tool_name=message.get("tool_name"),
            tool_input=message.get("tool_input"),
            tool_data=message.get("tool_data"),
            proposal=message.get("proposal"),
            display_mode=message.get("display_mode") or "normal",
            tool_category=message.get("tool_category"),
            created_at=message.get("timestamp") or datetime.now().isoformat(),
        )
        stored.messages.append(persisted)
        self._message_owner[persisted.id] = conversation_id
        await self._save(stored)
        return persisted.id

    async def update_token_counts(self, conversation_id: str, deltas: TokenUsage) -> TokenUsage:
        stored = self._require(conversation_id)
        record = stored.conversation
        record.total_input_tokens += deltas.input_tokens
        record.total_output_tokens += deltas.output_tokens
        record.total_cache_read_tokens += deltas.cache_read_tokens
        record.total_cache_creation_tokens += deltas.cache_creation_tokens
        await self._save(stored)
        return record.usage

    async def update_agent_history(self, conversation_id: str, history: list[dict[str, Any]]) -> None:
        stored = self._require(conversation_id)
        stored.conversation.agent_history = list(history)
        await self._save(stored)

    async def clear(self, conversation_id: str) -> None:
        stored = self._require(conversation_id)
        for message in stored.messages:
            self._message_owner.pop(message.id, None)
        stored.messages.clear()
        record = stored.conversation
        record.agent_history = []
        record.total_input_tokens = record.total_output_tokens = 0
        record.total_cache_read_tokens = record.total_cache_creation_tokens = 0
        await self._save(stored)
        logger.info(f"Cleared conversation {conversation_id}")

    async def update_proposal_status(self, message_id: str, status: str) -> None:
        conversation_id = self._message_owner.get(message_id)
        if conversation_id is None:
            raise KeyError(f"Unknown message: {message_id}")
        stored = self._require(conversation_id)
        for message in stored.messages:
            if message.id == message_id:
                if message.proposal is None:
                    raise ValueError(f"Message {message_id} does not carry a proposal")
                message.proposal = {**message.proposal, "status": status}
                break
        await self._save(stored)


def _conversation_filename(campaign_id: str, context_type: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.\-_]", "_", f"{campaign_id}_{context_type}") + ".json"


class JsonConversationStore(InMemoryConversationStore):
    """Write-through store: one JSON file per conversation.

    File I/O runs in a worker thread so the event loop never blocks on disk.
    """

    def __init__(self, root: str | Path) -> None:
        super().__init__()
        self.root = Path(root).expanduser()

    @classmethod
    def from_data_dir(cls, data_dir: str | Path) -> JsonConversationStore:
        return cls(Path(data_dir).expanduser() / "conversations")

    def _path(self, campaign_id: str, context_type: str) -> Path:
        return self.root / _conversation_filename(campaign_id, context_type)

    async def _lookup(self, campaign_id: str, context_type: str) -> StoredConversation | None:
        stored = await super()._lookup(campaign_id, context_type)
        if stored is not None:
            return stored

        path = self._path(campaign_id, context_type)
        data = await asyncio.to_thread(_read_json, path)
        if data is None:
            return None
        stored = StoredConversation.from_dict(data)
        self._index(stored)
        logger.info(f"Loaded conversation {stored.conversation.id} ({len(stored.messages)} messages) from {path}")
        return stored

    async def _save(self, stored: StoredConversation) -> None:
        await super()._save(stored)
        record = stored.conversation
        path = self._path(record.campaign_id, record.context_type)
        await asyncio.to_thread(_write_json, path, stored.to_dict())


def _read_json(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".json.tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, default=str, ensure_ascii=False)
    os.replace(tmp, path)
