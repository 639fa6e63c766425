"""Cost Estimator — price strings to USD estimates.

Providers publish prices as strings such as "$0.002/1K" (USD per
1 000 tokens) or "$0.03/10K tokens". A price that cannot be parsed
contributes zero instead of failing the call.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any

from llm_relay.gateway.types import CostEstimate, ModelPricing, TokenUsage

logger = logging.getLogger(__name__)

_PRICE_PATTERN = re.compile(r"\$\s*(\d+(?:\.\d+)?|\.\d+)\s*/\s*(\d+)\s*K", re.IGNORECASE)


def parse_price(price: Any) -> float:
    """Return the price per single token, or 0.0 when unparseable.

    The thousands multiplier is applied, not assumed: "$0.03/10K" is
    0.03 USD per 10 000 tokens (3e-6 per token), not per 1 000. Only the
    common "$x/1K" form reads the same either way.
    """
    if not isinstance(price, str):
        return 0.0
    match = _PRICE_PATTERN.search(price)
    if match is None:
        return 0.0
    amount = float(match.group(1))
    per_thousands = int(match.group(2))
    if per_thousands <= 0:
        return 0.0
    return amount / (per_thousands * 1000)


def estimate_cost(
    pricing: ModelPricing | dict[str, Any] | None,
    prompt_tokens: int,
    completion_tokens: int = 0,
) -> CostEstimate:
    """Estimate the USD cost of a call. Pure: no I/O, never suspends."""
    if isinstance(pricing, dict):
        pricing = ModelPricing(prompt=pricing.get("prompt"), completion=pricing.get("completion"))
    pricing = pricing or ModelPricing()

    prompt_cost = prompt_tokens * parse_price(pricing.prompt)
    completion_cost = completion_tokens * parse_price(pricing.completion)

    return CostEstimate(
        prompt_cost=prompt_cost,
        completion_cost=completion_cost,
        total_cost=prompt_cost + completion_cost,
        token_usage=TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


def count_tokens(text: str) -> int:
    """Rough token count (about 4 characters per token).

    Used only where the provider reports no usage, e.g. streamed replies.
    """
    if not text:
        return 0
    return math.ceil(len(text) / 4)
