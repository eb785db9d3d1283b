"""Normalize recorded tool invocations into tool events."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from swarm_analytics.storage import RawToolRecord, SQLiteStorage
from swarm_analytics.tokens import DEFAULT_HEURISTICS, TokenHeuristics, round_half_up

logger = logging.getLogger("swarm-analytics")

TOOL_PART_TYPE = "tool"
READ_TOOLS = frozenset({"read"})
# Any of these arguments scopes a read to part of the file
RANGE_PARAMETERS = ("offset", "limit", "startLine", "endLine")
FILE_PATH_PARAMETERS = ("filePath", "file_path", "path")


@dataclass(frozen=True)
class ToolEvent:
    """One tool invocation with its estimated token cost and span."""

    tool: str
    args: dict = field(default_factory=dict)
    input_tokens: int = 0
    output_tokens: int = 0
    start: int | None = None
    end: int | None = None
    duration: int = 0
    inefficient: bool = False

    @property
    def file_path(self) -> str | None:
        for key in FILE_PATH_PARAMETERS:
            value = self.args.get(key)
            if value:
                return value
        return None


def serialized_size(value: Any) -> int:
    """Byte length of the compact JSON form of a value."""
    text = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    # Truncated outputs can hold lone surrogates
    return len(text.encode("utf-8", "surrogatepass"))


def is_inefficient_read(tool: str, args: dict) -> bool:
    """True for a read that names no offset/limit/line range.

    Falsy values (e.g. ``offset: 0``) do not count as a range hint.
    """
    if tool.lower() not in READ_TOOLS:
        return False
    return not any(args.get(key) for key in RANGE_PARAMETERS)


def to_tool_event(
    record: RawToolRecord, heuristics: TokenHeuristics = DEFAULT_HEURISTICS
) -> ToolEvent | None:
    """Convert a raw part record, or return None when it is not a tool invocation."""
    if record.part_type != TOOL_PART_TYPE or not record.tool:
        return None

    args = record.input or {}
    output = record.output or ""
    start, end = record.start, record.end
    return ToolEvent(
        tool=record.tool,
        args=args,
        input_tokens=round_half_up(serialized_size(args) / heuristics.chars_per_token),
        output_tokens=round_half_up(serialized_size(output) / heuristics.chars_per_token),
        start=start,
        end=end,
        duration=end - start if start and end else 0,
        inefficient=is_inefficient_read(record.tool, args),
    )


def collect_events(
    storage: SQLiteStorage,
    message_id: str,
    heuristics: TokenHeuristics = DEFAULT_HEURISTICS,
) -> list[ToolEvent]:
    """Get normalized tool events for a message.

    Args:
        storage: Record store
        message_id: Message whose parts to load
        heuristics: Estimation constants

    Returns:
        Tool events in stored order (empty when the message used no tools)
    """
    events = []
    for record in storage.list_tool_events(message_id):
        event = to_tool_event(record, heuristics)
        if event is None:
            logger.debug(f"Skipping non-tool part {record.id} of message {message_id}")
            continue
        events.append(event)
    return events
