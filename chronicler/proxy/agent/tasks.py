"""One-shot agent runs outside the chat: consistency check, expansion and
entity generation.

Each run drives ``run_agent`` with read-only campaign tools and asks the
model to finish with a JSON object, which is validated with pydantic.
Generation optionally runs a research pass first and turns its output
into a pending CreateProposal.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..entities import EntityGateway
from ..system import (
    ENTITY_FIELDS,
    EXPANSION_TYPE_LABELS,
    build_consistency_check_message,
    build_consistency_check_prompt,
    build_expansion_message,
    build_expansion_prompt,
    build_generation_message,
    build_generation_prompt,
    build_research_prompt,
)
from .executors import create_read_tool_registry
from .loop import AgentSettings, ModelClient, run_agent
from .model_selector import ModelPreference, ModelTiers, estimate_content_length, select_model
from .models import AgentResult, TokenUsage
from .proposals import CreateProposal, ProposalTracker, SuggestedRelationship, proposal_to_dict
from .registry import PageContext, ToolRegistry
from .validators import EntityType, format_validation_error, validate_proposal_data

logger = logging.getLogger("chronicler.tasks")

CHECK_MAX_ITERATIONS = 7
EXPAND_MAX_ITERATIONS = 5
RESEARCH_MAX_ITERATIONS = 5
GENERATE_MAX_ITERATIONS = 2
TASK_MAX_TOKENS = 2048
SURROUNDING_CONTEXT_CHARS = 500

RESEARCH_FALLBACK = "Research phase encountered an error. Proceeding with basic context."

GenerationQuality = Literal["quick", "balanced", "detailed"]
ExpansionType = Literal["detail", "backstory", "sensory", "gm_notes"]

QUALITY_PREFERENCE: dict[str, ModelPreference] = {
    "quick": "speed",
    "balanced": "balanced",
    "detailed": "quality",
}


class TaskOutputError(Exception):
    """The model's final reply could not be turned into the expected output."""


@dataclass
class TaskEnvironment:
    client: ModelClient
    gateway: EntityGateway
    tiers: ModelTiers
    preference: ModelPreference = "balanced"
    tool_response_role: str = "tool"
    options: dict[str, Any] = field(default_factory=dict)
    max_tokens: int = TASK_MAX_TOKENS


# ─── Requests ────────────────────────────────────────────────────────

class ConsistencyCheckRequest(BaseModel):
    campaign_id: str = Field(min_length=1)
    entity_type: EntityType
    entity_name: str = Field(min_length=1)
    content: dict[str, str]
    # set when checking an entity that already exists
    entity_id: Optional[str] = None


class ExpansionRequest(BaseModel):
    campaign_id: str = Field(min_length=1)
    entity_type: EntityType
    entity_name: str = Field(min_length=1)
    field_name: str = Field(min_length=1)
    expansion_type: ExpansionType = "detail"
    full_text: str
    selection_start: int = Field(ge=0)
    selection_end: int

    @model_validator(mode="after")
    def _check_selection(self) -> ExpansionRequest:
        if not self.selection_start < self.selection_end <= len(self.full_text):
            raise ValueError("selection must be a non-empty range inside full_text")
        if not self.selected_text.strip():
            raise ValueError("selection is blank")
        return self

    @property
    def selected_text(self) -> str:
        return self.full_text[self.selection_start:self.selection_end]


class GenerationRequest(BaseModel):
    campaign_id: str = Field(min_length=1)
    entity_type: EntityType
    context: str = ""
    related_to: list[str] = Field(default_factory=list)
    quality: GenerationQuality = "balanced"
    parent_id: Optional[str] = None
    research: bool = True
    page_context: Optional[dict[str, Any]] = None


# ─── Model output ────────────────────────────────────────────────────

class _Output(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ConflictingEntity(_Output):
    type: str
    id: str = ""
    name: str = ""


class ConsistencyIssue(_Output):
    severity: Literal["error", "warning", "suggestion"]
    field: str = ""
    issue: str
    conflicting_entity: Optional[ConflictingEntity] = Field(
        default=None, validation_alias=AliasChoices("conflicting_entity", "conflictingEntity")
    )
    suggestion: Optional[str] = None


class ConsistencyOutput(_Output):
    issues: list[ConsistencyIssue] = Field(default_factory=list)
    overall_score: int = Field(
        default=100, ge=0, le=100, validation_alias=AliasChoices("overall_score", "overallScore")
    )
    reasoning: str = ""


class ExpansionOutput(_Output):
    expanded_text: str = Field(min_length=1, validation_alias=AliasChoices("expanded_text", "expandedText"))
    reasoning: str = ""


class GeneratedRelationship(_Output):
    target_type: str = Field(validation_alias=AliasChoices("target_type", "targetType"))
    target_name: str = Field(validation_alias=AliasChoices("target_name", "targetName"))
    relationship_type: str = Field(validation_alias=AliasChoices("relationship_type", "relationshipType"))
    description: Optional[str] = None
    is_new_entity: bool = Field(default=False, validation_alias=AliasChoices("is_new_entity", "isNewEntity"))


class GeneratedEntity(_Output):
    name: str = Field(min_length=1)
    fields: dict[str, Any] = Field(default_factory=dict)
    relationships: list[GeneratedRelationship] = Field(default_factory=list)
    reasoning: str = ""


_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


def extract_json(text: str) -> dict[str, Any]:
    """The JSON object in a model reply: a fenced block, else the outermost braces."""
    match = _FENCED_JSON.search(text)
    if match:
        candidate = match.group(1)
    else:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise TaskOutputError("No JSON object in the model's reply")
        candidate = text[start:end + 1]

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        # trailing commas are the usual slip
        try:
            data = json.loads(_TRAILING_COMMA.sub(r"\1", candidate))
        except json.JSONDecodeError:
            raise TaskOutputError(f"Model reply is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise TaskOutputError("Model reply is not a JSON object")
    return data


def parse_output(result: AgentResult, output_type: type[_Output]) -> Any:
    if result.error:
        raise TaskOutputError(result.error)
    try:
        return output_type.model_validate(extract_json(result.response))
    except ValidationError as e:
        raise TaskOutputError(f"Unexpected output: {format_validation_error(e)}") from e


# ─── Results ─────────────────────────────────────────────────────────

@dataclass
class TaskRun:
    model: str
    success: bool = False
    error: str | None = None
    iterations: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)

    def record(self, result: AgentResult) -> None:
        self.iterations += result.iterations
        self.usage.add(result.usage)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "model": self.model,
            "error": self.error,
            "iterations": self.iterations,
            "usage": self.usage.to_dict(),
        }


@dataclass
class ConsistencyReport(TaskRun):
    issues: list[ConsistencyIssue] = field(default_factory=list)
    overall_score: int | None = None
    reasoning: str = ""

    @property
    def has_errors(self) -> bool:
        return any(issue.severity == "error" for issue in self.issues)

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "issues": [issue.model_dump() for issue in self.issues],
            "overall_score": self.overall_score,
            "has_errors": self.has_errors,
            "reasoning": self.reasoning,
        }


@dataclass
class ExpansionResult(TaskRun):
    expanded_text: str = ""
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "expanded_text": self.expanded_text, "reasoning": self.reasoning}


@dataclass
class GenerationResult(TaskRun):
    entity_type: str = ""
    research_model: str | None = None
    research: str | None = None
    name: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    relationships: list[GeneratedRelationship] = field(default_factory=list)
    reasoning: str = ""
    proposal: CreateProposal | None = None

    def propose(self, tracker: ProposalTracker, parent_id: str | None = None) -> CreateProposal:
        """Record the successful draft as a pending create proposal."""
        if not self.success:
            raise ValueError("Only a successful generation can be proposed")
        self.proposal = tracker.add_create(
            self.entity_type,
            self.data,
            reasoning=self.reasoning or None,
            suggested_relationships=[SuggestedRelationship(**rel.model_dump()) for rel in self.relationships],
            parent_id=parent_id,
        )
        logger.info(f"Generated {self.entity_type} \"{self.name}\" as proposal {self.proposal.id}")
        return self.proposal

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "entity_type": self.entity_type,
            "research_model": self.research_model,
            "research": self.research,
            "name": self.name,
            "data": self.data,
            "relationships": [rel.model_dump() for rel in self.relationships],
            "reasoning": self.reasoning,
            "proposal": proposal_to_dict(self.proposal) if self.proposal is not None else None,
        }


# ─── Runs ────────────────────────────────────────────────────────────

async def _run(
    env: TaskEnvironment,
    model: str,
    system_prompt: str,
    message: str,
    registry: ToolRegistry,
    max_iterations: int,
) -> AgentResult:
    settings = AgentSettings(
        model=model,
        system_prompt=system_prompt,
        max_iterations=max_iterations,
        max_tokens=env.max_tokens,
        tool_response_role=env.tool_response_role,
        options=dict(env.options),
    )
    return await run_agent(message, registry, env.client, settings)


async def check_consistency(
    env: TaskEnvironment,
    request: ConsistencyCheckRequest,
    campaign_context: str | None = None,
) -> ConsistencyReport:
    """Audit entity content against the campaign; always on the quality tier."""
    content_text = "\n".join(request.content.values())
    model = select_model("check", estimate_content_length(content_text), True, env.preference, env.tiers)
    report = ConsistencyReport(model=model)
    logger.info(f"Consistency check of {request.entity_type} \"{request.entity_name}\" with {model}")

    result = await _run(
        env,
        model,
        build_consistency_check_prompt(request.entity_type, campaign_context),
        build_consistency_check_message(
            request.entity_type, request.entity_name, request.content, is_new=request.entity_id is None
        ),
        create_read_tool_registry(request.campaign_id, env.gateway),
        CHECK_MAX_ITERATIONS,
    )
    report.record(result)
    try:
        output = parse_output(result, ConsistencyOutput)
    except TaskOutputError as e:
        logger.warning(f"Consistency check failed: {e}")
        report.error = str(e)
        return report

    report.success = True
    report.issues = output.issues
    report.overall_score = output.overall_score
    report.reasoning = output.reasoning
    logger.info(f"Consistency check found {len(output.issues)} issue(s), score {output.overall_score}")
    return report


def surrounding_context(full_text: str, start: int, end: int, chars: int = SURROUNDING_CONTEXT_CHARS) -> str | None:
    """Text around a selection with the selection itself marked, or None if there is none."""
    before = full_text[max(0, start - chars):start].strip()
    after = full_text[end:end + chars].strip()
    if not before and not after:
        return None

    parts = []
    if before:
        parts.append(f"[...before...]\n{before}")
    parts.append("\n[SELECTED TEXT HERE]\n")
    if after:
        parts.append(f"{after}\n[...after...]")
    return "".join(parts)


async def expand_content(
    env: TaskEnvironment,
    request: ExpansionRequest,
    campaign_context: str | None = None,
) -> ExpansionResult:
    selected = request.selected_text
    model = select_model("expand", estimate_content_length(selected), False, env.preference, env.tiers)
    expansion = ExpansionResult(model=model)
    logger.info(
        f"Expanding {request.entity_type}.{request.field_name} "
        f"({EXPANSION_TYPE_LABELS[request.expansion_type]}) with {model}"
    )

    result = await _run(
        env,
        model,
        build_expansion_prompt(
            request.entity_type, request.entity_name, request.field_name, request.expansion_type, campaign_context
        ),
        build_expansion_message(
            selected, surrounding_context(request.full_text, request.selection_start, request.selection_end)
        ),
        create_read_tool_registry(request.campaign_id, env.gateway),
        EXPAND_MAX_ITERATIONS,
    )
    expansion.record(result)
    try:
        output = parse_output(result, ExpansionOutput)
    except TaskOutputError as e:
        logger.warning(f"Expansion failed: {e}")
        expansion.error = str(e)
        return expansion

    expansion.success = True
    expansion.expanded_text = output.expanded_text
    expansion.reasoning = output.reasoning
    return expansion


async def research_context(
    env: TaskEnvironment,
    request: GenerationRequest,
    page_context: PageContext | None = None,
) -> tuple[str, str, AgentResult | None]:
    """Gather world context with read tools before generating.

    Returns (summary, model, run). A failed or empty run yields
    RESEARCH_FALLBACK so generation can still proceed.
    """
    model = select_model("process", "medium", True, env.preference, env.tiers)
    logger.info(f"Researching context for a new {request.entity_type} with {model}")
    try:
        result = await _run(
            env,
            model,
            build_research_prompt(request.entity_type, request.context, page_context),
            f"Research the campaign world to prepare for generating a new {request.entity_type}.",
            create_read_tool_registry(request.campaign_id, env.gateway, page_context),
            RESEARCH_MAX_ITERATIONS,
        )
    except Exception as e:
        logger.warning(f"Research phase failed: {e}")
        return RESEARCH_FALLBACK, model, None

    if result.error or not result.response.strip():
        logger.warning(f"Research phase produced no summary: {result.error or 'empty reply'}")
        return RESEARCH_FALLBACK, model, result
    return result.response.strip(), model, result


async def generate_entity(
    env: TaskEnvironment,
    request: GenerationRequest,
    campaign_context: str | None = None,
    tracker: ProposalTracker | None = None,
) -> GenerationResult:
    """Draft a new entity; with a tracker, the draft becomes a pending create proposal."""
    page_context = PageContext.from_dict(request.page_context)
    content_length = "long" if request.quality == "detailed" else "medium"
    model = select_model("generate", content_length, False, QUALITY_PREFERENCE[request.quality], env.tiers)
    generation = GenerationResult(model=model, entity_type=request.entity_type)

    if request.research:
        summary, research_model, research_run = await research_context(env, request, page_context)
        generation.research = summary
        generation.research_model = research_model
        if research_run is not None:
            generation.record(research_run)

    logger.info(f"Generating {request.entity_type} ({request.quality}) with {model}")
    result = await _run(
        env,
        model,
        build_generation_prompt(request.entity_type, request.quality, campaign_context),
        build_generation_message(request.entity_type, request.context, generation.research, request.related_to),
        ToolRegistry(),
        GENERATE_MAX_ITERATIONS,
    )
    generation.record(result)
    try:
        output = parse_output(result, GeneratedEntity)
    except TaskOutputError as e:
        logger.warning(f"Generation failed: {e}")
        generation.error = str(e)
        return generation

    allowed = ENTITY_FIELDS[request.entity_type]
    data = {k: v for k, v in output.fields.items() if k in allowed and v not in (None, "")}
    data["name"] = output.name
    generation.name = output.name
    generation.data = data
    generation.relationships = output.relationships
    generation.reasoning = output.reasoning

    problem = validate_proposal_data(request.entity_type, data)
    if problem is not None:
        generation.error = f"Generated {request.entity_type} is invalid: {problem}"
        logger.warning(generation.error)
        return generation

    generation.success = True
    if tracker is not None:
        generation.propose(tracker, request.parent_id)
    return generation
