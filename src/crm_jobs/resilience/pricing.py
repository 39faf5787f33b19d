"""Cost estimation for guarded AI calls."""

from __future__ import annotations

import os
from dataclasses import dataclass

PRICING_ENV = "CRM_JOBS_AI_PRICING"


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M units."""

    input_per_1m: float
    output_per_1m: float


def estimate_cost_usd(model: str, input_units: int, output_units: int) -> float:
    """Estimate call cost in USD; models without configured pricing cost 0.0."""

    pricing = _lookup_pricing(model)
    if pricing is None:
        return 0.0
    return (input_units / 1_000_000) * pricing.input_per_1m + (
        output_units / 1_000_000
    ) * pricing.output_per_1m


def _lookup_pricing(model: str) -> ModelPricing | None:
    mapping = parse_pricing_mapping(os.getenv(PRICING_ENV, ""))
    direct = mapping.get(model.strip())
    if direct is not None:
        return direct
    return mapping.get("*")


def parse_pricing_mapping(raw: str) -> dict[str, ModelPricing]:
    """Parse `CRM_JOBS_AI_PRICING` mapping.

    Format:
    - `model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - `*` as model is the fallback for unlisted models
    """

    parsed: dict[str, ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        # Model names may contain ':' so split prices off the right.
        parts = [part.strip() for part in value.rsplit(":", 2)]
        if len(parts) != 3:
            continue
        model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        parsed[model] = ModelPricing(input_per_1m=input_per_1m, output_per_1m=output_per_1m)
    return parsed
