from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

from agentrun.core.config import ModelPrice, get_settings


logger = logging.getLogger(__name__)

_ONE_MILLION = Decimal("1000000")
_CENTS_PER_USD = Decimal("100")


def _to_decimal(value: float | int | Decimal) -> Decimal:
    # Normalize table floats through str so 0.15 stays 0.15.
    return value if isinstance(value, Decimal) else Decimal(str(value))


def calculate_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    *,
    prices: dict[str, ModelPrice] | None = None,
) -> int:
    """Return the cost of one call in integer cents.

    Prices are USD per million tokens, input and output independently; the sum
    is rounded half-up to whole cents. Unknown models cost nothing.
    """
    table = prices if prices is not None else get_settings().model_prices
    price = table.get(model)
    if price is None:
        logger.warning("cost_unknown_model model=%s", model)
        return 0
    input_usd = Decimal(max(input_tokens, 0)) / _ONE_MILLION * _to_decimal(price.input)
    output_usd = Decimal(max(output_tokens, 0)) / _ONE_MILLION * _to_decimal(price.output)
    cents = (input_usd + output_usd) * _CENTS_PER_USD
    return int(cents.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
