from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Union

logger = logging.getLogger("chronicler.agent")

DEFAULT_MAX_ITERATIONS = 20
DEFAULT_MAX_TOKENS = 4096

StopReason = Literal["end_turn", "max_iterations", "cancelled", "error"]


# ─── Model-service stream events ─────────────────────────────────────

@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolRequest:
    id: str
    name: str
    arguments: Any


@dataclass(frozen=True)
class UsageReport:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0


@dataclass(frozen=True)
class StreamDone:
    stop_reason: str = "end_turn"


StreamEvent = Union[TextDelta, ToolRequest, UsageReport, StreamDone]


# ─── Agent loop protocol ─────────────────────────────────────────────

@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    def add(self, report: UsageReport | TokenUsage) -> None:
        self.input_tokens += report.input_tokens
        self.output_tokens += report.output_tokens
        self.cache_read_tokens += report.cache_read_tokens
        self.cache_creation_tokens += report.cache_creation_tokens

    @property
    def is_empty(self) -> bool:
        return not (
            self.input_tokens or self.output_tokens
            or self.cache_read_tokens or self.cache_creation_tokens
        )

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class AgentMessage:
    """One logical model message surfaced to the caller.

    ``role`` is ``assistant`` for model text and tool announcements and
    ``tool_result`` for the outcome of a tool call.
    """

    role: Literal["assistant", "tool_result"]
    content: str
    tool_name: str | None = None
    tool_input: Any = None
    tool_call_id: str | None = None
    success: bool | None = None
    data: Any = None


@dataclass
class AgentEvent:
    # "text", "message", "tool_start", "tool_end", "usage", "limit", "error", "done"
    type: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentResult:
    response: str
    iterations: int
    usage: TokenUsage
    work_items: list[dict[str, Any]]
    completed: bool
    stop_reason: StopReason
    error: str | None = None
    notice: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.stop_reason == "cancelled"

    def to_dict(self) -> dict[str, Any]:
        return {
            "response": self.response,
            "iterations": self.iterations,
            "usage": self.usage.to_dict(),
            "work_items": self.work_items,
            "completed": self.completed,
            "cancelled": self.cancelled,
            "stop_reason": self.stop_reason,
            "error": self.error,
            "notice": self.notice,
        }
