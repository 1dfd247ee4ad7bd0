"""Tool registry: named tool definitions and the dispatch boundary.

Handlers never raise past ``ToolRegistry.invoke``; every failure (unknown
tool, bad input, handler exception) comes back as a failed ``ToolResult`` so
the agent loop can feed it to the model.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ValidationError

from .validators import format_validation_error

logger = logging.getLogger("chronicler.agent.registry")

ToolCategory = Literal["read", "write", "internal"]


@dataclass
class ToolResult:
    success: bool
    content: str
    data: Any = None


@dataclass
class RelatedEntityRef:
    entity_type: str
    entity_id: str
    name: str
    relationship: str | None = None


@dataclass
class PageContext:
    """What the user is looking at when they send a message."""

    entity_type: str | None = None
    entity_id: str | None = None
    entity_name: str | None = None
    location_hierarchy: list[dict[str, str]] = field(default_factory=list)
    related_entities: list[RelatedEntityRef] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PageContext | None:
        if not data:
            return None
        return cls(
            entity_type=data.get("entity_type"),
            entity_id=data.get("entity_id"),
            entity_name=data.get("entity_name"),
            location_hierarchy=list(data.get("location_hierarchy") or []),
            related_entities=[
                RelatedEntityRef(**ref) for ref in (data.get("related_entities") or [])
            ],
        )


@dataclass
class ToolContext:
    campaign_id: str
    page_context: PageContext | None = None


Handler = Callable[[Any, ToolContext], Awaitable[ToolResult]]


@dataclass
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: Handler
    category: ToolCategory = "read"
    input_model: type[BaseModel] | None = None

    def to_ollama(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class ToolRegistry:

    def __init__(self, definitions: list[ToolDefinition] | None = None, context: ToolContext | None = None) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self.context = context
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: ToolDefinition) -> None:
        if definition.name in self._tools:
            raise ValueError(f"Tool already registered: {definition.name}")
        self._tools[definition.name] = definition

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def category_of(self, name: str) -> ToolCategory | None:
        definition = self._tools.get(name)
        return definition.category if definition else None

    def schemas(self) -> list[dict[str, Any]]:
        return [d.to_ollama() for d in self._tools.values()]

    async def invoke(self, name: str, raw_input: Any, context: ToolContext | None = None) -> ToolResult:
        definition = self._tools.get(name)
        if definition is None:
            logger.warning(f"Model requested unknown tool '{name}'")
            return ToolResult(success=False, content=f"Unknown tool: {name}")

        ctx = context or self.context
        if ctx is None:
            return ToolResult(success=False, content=f"Tool {name} needs a campaign context")

        if raw_input is None:
            raw_input = {}
        if not isinstance(raw_input, dict):
            return ToolResult(
                success=False,
                content=f"Invalid input for {name}: expected a JSON object, got {type(raw_input).__name__}",
            )

        payload: Any = raw_input
        if definition.input_model is not None:
            try:
                payload = definition.input_model.model_validate(raw_input)
            except ValidationError as e:
                return ToolResult(success=False, content=f"Invalid input for {name}: {format_validation_error(e)}")

        try:
            return await definition.handler(payload, ctx)
        except Exception as e:
            logger.exception(f"Tool {name} raised")
            return ToolResult(success=False, content=f"Tool {name} failed: {e}")
