"""Per-model token prices, quoted in USD per million tokens."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Final

_TOKENS_PER_UNIT: Final[float] = 1_000_000.0


@dataclass(frozen=True, slots=True)
class ModelPrice:
    input_per_million: float
    output_per_million: float

    def __post_init__(self) -> None:
        if self.input_per_million < 0 or self.output_per_million < 0:
            raise ValueError("model prices must be non-negative")


# Unknown models are billed at a deliberately high rate.
DEFAULT_PRICE: Final[ModelPrice] = ModelPrice(1.0, 5.0)

MODEL_PRICES: Final[Mapping[str, ModelPrice]] = MappingProxyType(
    {
        "openai/gpt-4o": ModelPrice(2.50, 10.00),
        "openai/gpt-4o-mini": ModelPrice(0.15, 0.60),
        "openai/gpt-4.1": ModelPrice(2.00, 8.00),
        "openai/gpt-4.1-mini": ModelPrice(0.40, 1.60),
        "anthropic/claude-3.5-sonnet": ModelPrice(3.00, 15.00),
        "anthropic/claude-3-haiku": ModelPrice(0.25, 1.25),
    }
)


def price_for(model: str, table: Mapping[str, ModelPrice] | None = None) -> ModelPrice:
    prices = MODEL_PRICES if table is None else table
    return prices.get(model.strip(), DEFAULT_PRICE)


def calculate_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    *,
    table: Mapping[str, ModelPrice] | None = None,
) -> float:
    """Return the USD cost of one call."""

    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("token counts must be non-negative")
    price = price_for(model, table)
    return (input_tokens / _TOKENS_PER_UNIT) * price.input_per_million + (
        output_tokens / _TOKENS_PER_UNIT
    ) * price.output_per_million


__all__ = ["DEFAULT_PRICE", "MODEL_PRICES", "ModelPrice", "calculate_cost", "price_for"]
