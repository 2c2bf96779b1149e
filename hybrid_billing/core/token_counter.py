"""
Token counting and usage splitting.

Consumption is debited as a single token total; analytics want an
input/output split, which is estimated here.
"""

from dataclasses import dataclass

DEFAULT_INPUT_TOKEN_RATIO = 0.4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage split into prompt and completion counts."""
    prompt_tokens: int
    completion_tokens: int


def estimate_usage_split(total_tokens: int, input_ratio: float = DEFAULT_INPUT_TOKEN_RATIO) -> TokenUsage:
    """Estimate the prompt/completion split of a debited token total.

    A fixed heuristic (40% input / 60% output by default), not a measured
    value. Both parts are floored, so their sum may be one below the total.

    Args:
        total_tokens: Tokens debited for the request
        input_ratio: Share attributed to the prompt, between 0 and 1

    Returns:
        Estimated TokenUsage

    Raises:
        ValueError: If total_tokens is negative or input_ratio is out of range
    """
    if total_tokens < 0:
        raise ValueError("total_tokens cannot be negative")
    if not 0 <= input_ratio <= 1:
        raise ValueError("input_ratio must be between 0 and 1")

    # Percent arithmetic on integers avoids float drift on large totals
    input_percent = round(input_ratio * 100)
    return TokenUsage(
        prompt_tokens=total_tokens * input_percent // 100,
        completion_tokens=total_tokens * (100 - input_percent) // 100
    )
