"""
QueryGuard - Dynamic Row-Limit Safety Governor
==============================================

Bounds how many result rows may be handed to a token-budgeted model.

A fixed row cap is wrong because row width varies per query: 500 rows of
`(id)` are cheap, 500 rows of free-text reviews are not. The governor sizes
ONE representative row (the first returned) with a 4-characters-per-token
heuristic and divides the usable budget by it.

    tokens(row)  = sum(ceil(len(str(v)) / 4) for non-null v)
    available    = budget - floor(budget * 0.20)
    allowed_rows = max(1, floor(available / tokens(row)))

This is an estimate, not an exact bound: later rows may be wider than the
sample. No decision is cached between queries.
"""

import math
import logging
from dataclasses import dataclass
from typing import Any, Mapping

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_BUDGET = 128_000
RESERVED_RATIO = 0.20
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class RowLimitDecision:
    allowed_rows: int
    tokens_per_row: int
    token_budget: int

    def overflows(self, row_count: int) -> bool:
        return row_count > self.allowed_rows


def estimate_row_tokens(row: Mapping[str, Any]) -> int:
    """Estimated token cost of one serialized row (null fields are free)."""
    total = 0
    for value in row.values():
        if value is None:
            continue
        total += math.ceil(len(str(value)) / CHARS_PER_TOKEN)
    return total


def compute_row_limit(
    sample_row: Mapping[str, Any],
    token_budget: int = DEFAULT_TOKEN_BUDGET,
    reserved_ratio: float = RESERVED_RATIO,
) -> RowLimitDecision:
    """
    Number of rows that fit in the token budget, judged from one sample row.

    Args:
        sample_row: First row of the result set
        token_budget: Total model budget (20% is reserved for overhead)

    Returns:
        RowLimitDecision with allowed_rows >= 1
    """
    tokens_per_row = estimate_row_tokens(sample_row)
    reserved = math.floor(token_budget * reserved_ratio)
    available = token_budget - reserved
    # Rows estimated at 0 tokens count as 1
    max_rows = available // max(1, tokens_per_row)
    decision = RowLimitDecision(
        allowed_rows=max(1, int(max_rows)),
        tokens_per_row=tokens_per_row,
        token_budget=token_budget,
    )
    logger.debug(
        f"[GOVERNOR] ~{tokens_per_row} tokens/row -> {decision.allowed_rows} rows "
        f"(budget {token_budget})"
    )
    return decision
