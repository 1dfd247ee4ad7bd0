"""Model tier selection.

Rules, first match wins:
  1. ``check`` and ``process`` tasks always get the quality tier.
  2. An explicit ``speed`` / ``quality`` preference picks that tier.
  3. ``balanced``: quality tier for long content or reasoning-heavy work,
     otherwise the fast tier.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

TaskType = Literal["generate", "expand", "check", "process", "chat"]
ContentLength = Literal["short", "medium", "long"]
ModelPreference = Literal["speed", "balanced", "quality"]

ALWAYS_QUALITY_TASKS = ("check", "process")
REASONING_TASK_TYPES = ("relationship_analysis", "consistency_check")


@dataclass(frozen=True)
class ModelTiers:
    fast: str
    balanced: str
    quality: str

    @classmethod
    def from_config(cls, cfg) -> ModelTiers:
        return cls(fast=cfg.model_fast, balanced=cfg.model_balanced, quality=cfg.model_quality)


def select_model(
    task_type: TaskType,
    content_length: ContentLength,
    requires_reasoning: bool,
    user_preference: ModelPreference,
    tiers: ModelTiers,
) -> str:
    if task_type in ALWAYS_QUALITY_TASKS:
        return tiers.quality

    if user_preference == "speed":
        return tiers.fast
    if user_preference == "quality":
        return tiers.quality

    if content_length == "long" or requires_reasoning:
        return tiers.quality
    return tiers.fast


def estimate_content_length(text: str) -> ContentLength:
    words = len(text.split())
    if words < 100:
        return "short"
    if words < 500:
        return "medium"
    return "long"


def requires_reasoning(prompt_task_type: str) -> bool:
    """Whether an inferred chat task (see system.infer_task_type) needs multi-step reasoning."""
    return prompt_task_type in REASONING_TASK_TYPES


def model_for_preference(preference: ModelPreference, tiers: ModelTiers) -> str:
    return {"speed": tiers.fast, "balanced": tiers.balanced, "quality": tiers.quality}[preference]


def get_model_display_name(model_id: str, tiers: ModelTiers | None = None) -> str:
    if tiers is not None:
        if model_id == tiers.fast:
            return f"{model_id} (Fast)"
        if model_id == tiers.quality:
            return f"{model_id} (Quality)"
        if model_id == tiers.balanced:
            return f"{model_id} (Balanced)"
    if "haiku" in model_id:
        return "Haiku (Fast)"
    if "sonnet" in model_id:
        return "Sonnet (Quality)"
    return model_id
