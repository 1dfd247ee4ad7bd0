"""Agent package.

Public API:
    from chronicler.proxy.agent import AgentLoop, run_agent, AgentSettings
    from chronicler.proxy.agent import ConversationState, ProposalExecutor

Internal layout:
    models.py           — stream events, AgentEvent, AgentMessage, AgentResult, TokenUsage
    work_items.py       — WorkItemTracker (agent-internal research plan)
    registry.py         — ToolDefinition, ToolResult, ToolContext, ToolRegistry
    validators.py       — pydantic tool inputs, proposal data validation
    tool_defs.py        — get_tool_definitions() (all Ollama tool schemas)
    executors.py        — tool handlers (all _execute_* methods), create_tool_registry(),
                          create_read_tool_registry()
    formatters.py       — markdown rendering of campaign data for the model
    model_selector.py   — select_model(), estimate_content_length()
    loop.py             — AgentLoop (main loop), run_agent()
    proposals.py        — EntityProposal variants, ProposalTracker
    proposal_handler.py — ProposalExecutor (accept / reject)
    conversation.py     — ConversationState (streamed transcript)
    session.py          — conversation stores
    tasks.py            — one-shot check / expand / generate runs (import directly)
"""

from .conversation import ChatMessage, ConversationState
from .executors import create_tool_registry
from .loop import AgentLoop, AgentSettings, run_agent
from .model_selector import (
    ModelTiers,
    estimate_content_length,
    get_model_display_name,
    model_for_preference,
    requires_reasoning,
    select_model,
)
from .models import AgentEvent, AgentMessage, AgentResult, TokenUsage
from .proposal_handler import AcceptResult, ProposalExecutor, describe_skipped
from .proposals import (
    CreateProposal,
    EntityProposal,
    ProposalError,
    ProposalTracker,
    RelationshipProposal,
    UpdateProposal,
    proposal_to_dict,
)
from .registry import ToolContext, ToolDefinition, ToolRegistry, ToolResult
from .work_items import WorkItem, WorkItemTracker

__all__ = [
    "AcceptResult",
    "AgentEvent",
    "AgentLoop",
    "AgentMessage",
    "AgentResult",
    "AgentSettings",
    "ChatMessage",
    "ConversationState",
    "CreateProposal",
    "EntityProposal",
    "ModelTiers",
    "ProposalError",
    "ProposalExecutor",
    "ProposalTracker",
    "RelationshipProposal",
    "TokenUsage",
    "ToolContext",
    "ToolDefinition",
    "ToolRegistry",
    "ToolResult",
    "UpdateProposal",
    "WorkItem",
    "WorkItemTracker",
    "create_tool_registry",
    "describe_skipped",
    "estimate_content_length",
    "get_model_display_name",
    "model_for_preference",
    "proposal_to_dict",
    "requires_reasoning",
    "run_agent",
    "select_model",
]
