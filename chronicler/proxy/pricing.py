"""Token pricing and cost formatting.

Local models have no bill; costs are estimated at hosted-API rates so the
footer shows what a conversation would cost on a paid tier. Prices are USD
per million tokens.
"""

from __future__ import annotations

MODEL_PRICING: dict[str, dict[str, float]] = {
    "claude-haiku-4-5": {"input": 1.0, "output": 5.0},
    "claude-sonnet-4-5": {"input": 3.0, "output": 15.0},
}

DEFAULT_PRICING = {"input": 3.0, "output": 15.0}

CACHE_READ_MULTIPLIER = 0.1
CACHE_WRITE_MULTIPLIER = 1.25


def get_pricing(model_id: str) -> dict[str, float]:
    if model_id in MODEL_PRICING:
        return MODEL_PRICING[model_id]
    # dated ids ("claude-haiku-4-5-20251001") share the family price
    for prefix, pricing in MODEL_PRICING.items():
        if model_id.startswith(prefix):
            return pricing
    return DEFAULT_PRICING


def calculate_cost(model_id: str, input_tokens: int, output_tokens: int) -> float:
    pricing = get_pricing(model_id)
    return (input_tokens / 1_000_000) * pricing["input"] + (output_tokens / 1_000_000) * pricing["output"]


def calculate_cost_with_cache(
    model_id: str,
    input_tokens: int,
    output_tokens: int,
    cache_read_tokens: int,
    cache_creation_tokens: int,
) -> float:
    pricing = get_pricing(model_id)
    cache_read = (cache_read_tokens / 1_000_000) * pricing["input"] * CACHE_READ_MULTIPLIER
    cache_write = (cache_creation_tokens / 1_000_000) * pricing["input"] * CACHE_WRITE_MULTIPLIER
    return calculate_cost(model_id, input_tokens, output_tokens) + cache_read + cache_write


def format_cost(cost: float) -> str:
    if cost < 0.01:
        return "<$0.01" if cost > 0 else "$0.00"
    return f"${cost:.2f}"


def format_tokens(tokens: int) -> str:
    return f"{tokens:,}"
