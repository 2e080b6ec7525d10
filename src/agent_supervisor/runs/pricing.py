"""Per-model token pricing for derived run metrics."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class ModelPricing:
    """Per-model pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float
    cache_write_per_1m: float = 0.0
    cache_read_per_1m: float = 0.0

    def cost_usd(
        self,
        *,
        input_tokens: int,
        output_tokens: int,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
    ) -> float:
        return (
            (input_tokens / 1_000_000) * self.input_per_1m
            + (output_tokens / 1_000_000) * self.output_per_1m
            + (cache_creation_tokens / 1_000_000) * self.cache_write_per_1m
            + (cache_read_tokens / 1_000_000) * self.cache_read_per_1m
        )


OPUS_PRICING = ModelPricing(
    input_per_1m=15.0,
    output_per_1m=75.0,
    cache_write_per_1m=18.75,
    cache_read_per_1m=1.50,
)
SONNET_PRICING = ModelPricing(
    input_per_1m=3.0,
    output_per_1m=15.0,
    cache_write_per_1m=3.75,
    cache_read_per_1m=0.30,
)


def lookup_pricing(model: str) -> ModelPricing:
    """Pricing for ``model``: env overrides first, then the built-in model families.

    Unknown models are priced as sonnet.
    """

    normalized = model.strip().lower()
    mapping = _parse_pricing_mapping(os.getenv("AGENT_SUPERVISOR_PRICING", ""))
    direct = mapping.get(normalized)
    if direct is not None:
        return direct
    wildcard = mapping.get("*")
    if wildcard is not None:
        return wildcard
    if "opus" in normalized:
        return OPUS_PRICING
    return SONNET_PRICING


def _parse_pricing_mapping(raw: str) -> dict[str, ModelPricing]:
    """Parse `AGENT_SUPERVISOR_PRICING` mapping.

    Format:
    - `model:input_per_1m:output_per_1m[:cache_write_per_1m:cache_read_per_1m]`
    - multiple entries separated by `,`
    - `*` as model matches any model without a direct entry
    """

    parsed: dict[str, ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) not in {3, 5}:
            continue
        model, *prices = parts
        try:
            numbers = [float(price) for price in prices]
        except ValueError:
            continue
        parsed[model.lower()] = ModelPricing(*numbers)
    return parsed
