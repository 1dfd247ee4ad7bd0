"""Tests for model tier selection."""

import pytest

from chronicler.proxy.agent.model_selector import (
    ModelTiers,
    estimate_content_length,
    get_model_display_name,
    model_for_preference,
    requires_reasoning,
    select_model,
)

TIERS = ModelTiers(fast="qwen3:8b", balanced="qwen3:14b", quality="qwen3:32b")


class TestSelectModel:
    """First matching rule wins."""

    @pytest.mark.parametrize("task", ["check", "process"])
    @pytest.mark.parametrize("preference", ["speed", "balanced", "quality"])
    def test_check_and_process_always_quality(self, task, preference):
        assert select_model(task, "short", False, preference, TIERS) == TIERS.quality

    def test_speed_preference_ignores_length(self):
        assert select_model("chat", "long", True, "speed", TIERS) == TIERS.fast

    def test_quality_preference(self):
        assert select_model("generate", "short", False, "quality", TIERS) == TIERS.quality

    def test_balanced_long_content(self):
        assert select_model("expand", "long", False, "balanced", TIERS) == TIERS.quality

    def test_balanced_reasoning(self):
        assert select_model("chat", "short", True, "balanced", TIERS) == TIERS.quality

    def test_balanced_default_is_fast(self):
        assert select_model("chat", "medium", False, "balanced", TIERS) == TIERS.fast


class TestContentLength:

    def test_boundaries(self):
        assert estimate_content_length("") == "short"
        assert estimate_content_length("word " * 99) == "short"
        assert estimate_content_length("word " * 100) == "medium"
        assert estimate_content_length("word " * 499) == "medium"
        assert estimate_content_length("word " * 500) == "long"

    def test_whitespace_runs_count_once(self):
        assert estimate_content_length("a\n\n\tb   c") == "short"


class TestHelpers:

    def test_requires_reasoning(self):
        assert requires_reasoning("relationship_analysis")
        assert requires_reasoning("consistency_check")
        assert not requires_reasoning("character_lookup")

    def test_model_for_preference(self):
        assert model_for_preference("balanced", TIERS) == "qwen3:14b"

    def test_display_names(self):
        assert get_model_display_name("qwen3:8b", TIERS) == "qwen3:8b (Fast)"
        assert get_model_display_name("qwen3:32b", TIERS) == "qwen3:32b (Quality)"
        assert get_model_display_name("claude-haiku-4-5") == "Haiku (Fast)"
        assert get_model_display_name("llama3") == "llama3"
