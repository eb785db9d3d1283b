"""Session tree aggregation.

Walks a root session and its delegated child sessions, rolling message,
token, diff and tool statistics into one ``AggregatedNode`` per session.
Each recursion frame fills a private ``_NodeBuilder`` and returns a
finished node; parents only read from their children's finished nodes.
"""

import logging
from dataclasses import dataclass, field

from swarm_analytics.storage import Message, Session, SQLiteStorage
from swarm_analytics.tokens import (
    DEFAULT_HEURISTICS,
    TokenHeuristics,
    TokenUsage,
    diff_tokens,
    estimate_tokens,
)
from swarm_analytics.tools import ToolEvent, collect_events

logger = logging.getLogger("swarm-analytics")

HUMAN_AGENT = "human"
UNKNOWN_AGENT = "unknown"
# Diffs under this directory are planning artifacts (requirements, plans, context)
PLANNING_DIR_MARKER = ".opencode/"


@dataclass(frozen=True)
class TimelineEntry:
    """One message on the merged timeline."""

    time: int
    agent: str
    diffs: int = 0
    tokens: int = 0
    diff_tokens: int = 0


@dataclass(frozen=True)
class FlameEvent:
    """A timed span: a tool call or a whole agent message."""

    type: str  # 'tool' or 'agent'
    name: str
    start: int
    end: int
    agent: str | None = None
    args: dict | None = None


@dataclass(frozen=True)
class InefficientRead:
    """A full-file read that could have been scoped."""

    file: str | None
    agent: str | None
    tokens: int


@dataclass
class AgentStats:
    messages: int = 0
    diffs: int = 0
    models: list[str] = field(default_factory=list)
    duration: int | None = None
    tokens: TokenUsage = field(default_factory=TokenUsage)
    diff_tokens: int = 0


@dataclass
class FileStats:
    additions: int = 0
    deletions: int = 0
    agents: list[str] = field(default_factory=list)


@dataclass
class ToolStats:
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    duration: int = 0

    @property
    def tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add_event(self, event: ToolEvent) -> None:
        self.calls += 1
        self.input_tokens += event.input_tokens
        self.output_tokens += event.output_tokens
        self.duration += event.duration

    def add(self, other: "ToolStats") -> None:
        self.calls += other.calls
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.duration += other.duration


@dataclass
class AggregatedNode:
    """Aggregated statistics for one session and, where noted, its descendants.

    ``messages``, ``diffs``, ``agents``, ``files`` and ``duration`` cover this
    session only. ``timeline``, ``tokens``, ``diff_tokens``,
    ``referenced_files``, ``tool_stats``, ``flame_events`` and
    ``inefficient_reads`` include all descendants.
    """

    id: str
    title: str | None = None
    directory: str | None = None
    created: int | None = None
    agent: str | None = None
    messages: int = 0
    diffs: int = 0
    agents: dict[str, AgentStats] = field(default_factory=dict)
    files: dict[str, FileStats] = field(default_factory=dict)
    children: list["AggregatedNode"] = field(default_factory=list)
    duration: int | None = None
    timeline: list[TimelineEntry] = field(default_factory=list)
    tokens: TokenUsage = field(default_factory=TokenUsage)
    diff_tokens: int = 0
    referenced_files: list[str] = field(default_factory=list)
    human_messages: int = 0
    tool_stats: dict[str, ToolStats] = field(default_factory=dict)
    tool_calls: int = 0
    flame_events: list[FlameEvent] = field(default_factory=list)
    inefficient_reads: list[InefficientRead] = field(default_factory=list)


def _span(start: int | None, end: int | None) -> int | None:
    return end - start if start and end else None


class _AgentAccumulator:
    def __init__(self):
        self.messages = 0
        self.diffs = 0
        self.models: dict[str, None] = {}  # ordered set
        self.start: int | None = None
        self.end: int | None = None
        self.tokens = TokenUsage()
        self.diff_tokens = 0

    def finish(self) -> AgentStats:
        return AgentStats(
            messages=self.messages,
            diffs=self.diffs,
            models=list(self.models),
            duration=_span(self.start, self.end),
            tokens=self.tokens,
            diff_tokens=self.diff_tokens,
        )


class _NodeBuilder:
    """Mutable accumulator owned by a single recursion frame."""

    def __init__(self, session: Session, is_root: bool, heuristics: TokenHeuristics):
        self.session = session
        self.is_root = is_root
        self.heuristics = heuristics
        self.agents: dict[str, _AgentAccumulator] = {}
        self.files: dict[str, tuple[list[int], dict[str, None]]] = {}
        self.total_diffs = 0
        self.start: int | None = None
        self.end: int | None = None
        self.timeline: list[TimelineEntry] = []
        self.tokens = TokenUsage()
        self.child_diff_tokens = 0
        self.referenced_files: dict[str, None] = {}
        self.human_messages = 0
        self.tool_stats: dict[str, ToolStats] = {}
        self.flame_events: list[FlameEvent] = []
        self.inefficient_reads: list[InefficientRead] = []

    def add_message(self, m: Message) -> None:
        if m.is_human and self.is_root:
            self.human_messages += 1
            if m.created:
                self.timeline.append(TimelineEntry(time=m.created, agent=HUMAN_AGENT))

        name = m.agent or UNKNOWN_AGENT
        acc = self.agents.setdefault(name, _AgentAccumulator())
        acc.messages += 1
        if m.model:
            acc.models[f"{m.provider or ''}/{m.model}"] = None

        for d in m.diffs:
            if d.file and PLANNING_DIR_MARKER in d.file:
                self.referenced_files[d.file] = None

        usage = estimate_tokens(m, self.heuristics)
        acc.tokens.add(usage)
        self.tokens.add(usage)

        written = diff_tokens(m, self.heuristics)
        acc.diff_tokens += written

        if m.created:
            if not self.start or m.created < self.start:
                self.start = m.created
            if not acc.start or m.created < acc.start:
                acc.start = m.created
            self.timeline.append(
                TimelineEntry(
                    time=m.created,
                    agent=name,
                    diffs=len(m.diffs),
                    tokens=usage.total,
                    diff_tokens=written,
                )
            )
        end = m.completed or m.created
        if end:
            if not self.end or end > self.end:
                self.end = end
            if not acc.end or end > acc.end:
                acc.end = end

        acc.diffs += len(m.diffs)
        self.total_diffs += len(m.diffs)
        for d in m.diffs:
            counts, contributors = self.files.setdefault(d.file, ([0, 0], {}))
            counts[0] += d.additions
            counts[1] += d.deletions
            contributors[name] = None

    def add_tool_events(self, m: Message, events: list[ToolEvent]) -> None:
        for event in events:
            self.tool_stats.setdefault(event.tool, ToolStats()).add_event(event)
            if event.start and event.end:
                self.flame_events.append(
                    FlameEvent(
                        type="tool",
                        name=event.tool,
                        start=event.start,
                        end=event.end,
                        agent=m.agent,
                        args=event.args,
                    )
                )
            if event.inefficient:
                self.inefficient_reads.append(
                    InefficientRead(file=event.file_path, agent=m.agent, tokens=event.output_tokens)
                )
        if m.created and m.completed:
            self.flame_events.append(
                FlameEvent(
                    type="agent",
                    name=m.agent or UNKNOWN_AGENT,
                    start=m.created,
                    end=m.completed,
                )
            )

    def merge_child(self, child: AggregatedNode) -> None:
        self.timeline.extend(child.timeline)
        self.tokens.add(child.tokens)
        self.child_diff_tokens += child.diff_tokens
        for path in child.referenced_files:
            self.referenced_files[path] = None
        for tool, stats in child.tool_stats.items():
            self.tool_stats.setdefault(tool, ToolStats()).add(stats)
        self.flame_events.extend(child.flame_events)
        self.inefficient_reads.extend(child.inefficient_reads)

    def finish(self, messages: list[Message], children: list[AggregatedNode]) -> AggregatedNode:
        self.timeline.sort(key=lambda e: e.time)
        self.flame_events.sort(key=lambda e: e.start)

        agents = {name: acc.finish() for name, acc in self.agents.items()}
        files = {
            path: FileStats(additions=counts[0], deletions=counts[1], agents=list(contributors))
            for path, (counts, contributors) in self.files.items()
        }
        own_diff_tokens = sum(a.diff_tokens for a in agents.values())

        return AggregatedNode(
            id=self.session.id,
            title=self.session.title,
            directory=self.session.directory,
            created=self.session.created,
            agent=messages[0].agent if messages else None,
            messages=len(messages),
            diffs=self.total_diffs,
            agents=agents,
            files=files,
            children=children,
            duration=_span(self.start, self.end),
            timeline=self.timeline,
            tokens=self.tokens,
            diff_tokens=own_diff_tokens + self.child_diff_tokens,
            referenced_files=list(self.referenced_files),
            human_messages=self.human_messages,
            tool_stats=self.tool_stats,
            tool_calls=sum(s.calls for s in self.tool_stats.values()),
            flame_events=self.flame_events,
            inefficient_reads=self.inefficient_reads,
        )


def _build_node(
    storage: SQLiteStorage,
    project_id: str,
    session_id: str,
    is_root: bool,
    ancestors: frozenset[str],
    heuristics: TokenHeuristics,
) -> AggregatedNode | None:
    session = storage.resolve_session(project_id, session_id)
    if session is None:
        logger.debug(f"Session {session_id} not found in project {project_id}")
        return None

    builder = _NodeBuilder(session, is_root, heuristics)
    messages = storage.list_messages(session_id)
    for m in messages:
        builder.add_message(m)
    for m in messages:
        builder.add_tool_events(m, collect_events(storage, m.id, heuristics))

    path = ancestors | {session_id}
    children = []
    for child_session in storage.list_child_sessions(project_id, session_id):
        if child_session.id in path:
            logger.debug(f"Ignoring cyclic edge {session_id} -> {child_session.id}")
            continue
        child = _build_node(storage, project_id, child_session.id, False, path, heuristics)
        if child is not None:
            children.append(child)

    for child in children:
        builder.merge_child(child)

    return builder.finish(messages, children)


def build_tree(
    storage: SQLiteStorage,
    project_id: str,
    root_session_id: str,
    heuristics: TokenHeuristics = DEFAULT_HEURISTICS,
) -> AggregatedNode | None:
    """Build the aggregated tree for a root session.

    Args:
        storage: Record store
        project_id: Project containing the session
        root_session_id: Session to treat as the root
        heuristics: Token estimation constants

    Returns:
        The aggregated root node, or None if the session cannot be resolved
    """
    return _build_node(
        storage, project_id, root_session_id, True, frozenset(), heuristics
    )
