"""Token estimation for messages without recorded usage.

The numbers here are a stable approximation, not a billing-grade count:
roughly 4 characters per token and 40 characters per changed line.
"""

import math
from dataclasses import dataclass

from swarm_analytics.storage import Message


@dataclass(frozen=True)
class TokenHeuristics:
    """Constants behind the fallback estimate."""

    chars_per_token: int = 4
    chars_per_diff_line: int = 40
    assumed_context_tokens: int = 500  # input overhead assumed for non-human messages

    @property
    def diff_tokens_per_line(self) -> int:
        return self.chars_per_diff_line // self.chars_per_token


DEFAULT_HEURISTICS = TokenHeuristics()


@dataclass
class TokenUsage:
    """Input/output token totals. ``estimated`` is sticky once set."""

    input: int = 0
    output: int = 0
    estimated: bool = False

    @property
    def total(self) -> int:
        return self.input + self.output

    def add(self, other: "TokenUsage") -> None:
        self.input += other.input
        self.output += other.output
        self.estimated = self.estimated or other.estimated


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (``round`` uses banker's rounding)."""
    return int(math.floor(value + 0.5))


def estimate_tokens(message: Message, heuristics: TokenHeuristics = DEFAULT_HEURISTICS) -> TokenUsage:
    """Return recorded token usage, or a fallback estimate when none was recorded.

    Args:
        message: Message to estimate
        heuristics: Estimation constants

    Returns:
        TokenUsage with ``estimated=True`` when the fallback was used
    """
    recorded_input = message.input_tokens or 0
    recorded_output = message.output_tokens or 0
    if recorded_input > 0 or recorded_output > 0:
        return TokenUsage(input=recorded_input, output=recorded_output, estimated=False)

    title_len = len(message.title or "")
    changed_lines = sum(d.additions + d.deletions for d in message.diffs)
    output = round_half_up(
        (title_len + changed_lines * heuristics.chars_per_diff_line) / heuristics.chars_per_token
    )
    if message.is_human:
        input_tokens = round_half_up(title_len / heuristics.chars_per_token)
    else:
        input_tokens = heuristics.assumed_context_tokens
    return TokenUsage(input=input_tokens, output=output, estimated=True)


def diff_tokens(message: Message, heuristics: TokenHeuristics = DEFAULT_HEURISTICS) -> int:
    """Estimate the tokens of code written by a message. Deleted lines cost nothing."""
    added = sum(d.additions for d in message.diffs)
    return added * heuristics.diff_tokens_per_line
