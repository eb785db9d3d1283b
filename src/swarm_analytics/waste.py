"""Heuristic waste detection over an aggregated session tree."""

from collections import Counter
from dataclasses import asdict, dataclass, field

from swarm_analytics.report import FlatNode, format_duration, format_tokens
from swarm_analytics.tokens import round_half_up
from swarm_analytics.tree import AggregatedNode

SEVERITY_INFO = "info"
SEVERITY_WARN = "warn"
SEVERITY_SEVERE = "severe"

# Agents whose job is legitimately message-heavy without writing files
READ_ONLY_AGENTS = frozenset(
    {
        "product-owner",
        "orchestrator",
        "project-knowledge",
        "validator",
        "code-search",
        "dependency-analyzer",
        "api-documentation",
    }
)


@dataclass(frozen=True)
class WasteThresholds:
    """Policy constants for the waste rules."""

    abandoned_max_messages: int = 2
    excessive_iteration_messages: int = 40
    wasted_compute_messages: int = 5
    max_token_ratio: float = 50
    output_heavy_tokens: int = 5000
    long_running_ms: int = 30 * 60 * 1000
    context_agent: str = "project-knowledge"
    max_context_queries: int = 2
    tool_dominance_share: float = 0.6
    tool_dominance_min_tokens: int = 10_000
    expensive_tool_tokens: int = 100_000
    max_delegation_depth: int = 4
    max_human_messages: int = 5
    read_only_agents: frozenset[str] = READ_ONLY_AGENTS


DEFAULT_THRESHOLDS = WasteThresholds()


@dataclass(frozen=True)
class Finding:
    """One output of the waste rule set."""

    type: str
    severity: str
    subject: str
    detail: str
    session_id: str | None = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def _node_findings(entry: FlatNode, t: WasteThresholds) -> list[Finding]:
    n = entry.node
    agent = n.agent or "unknown"
    read_only = n.agent in t.read_only_agents
    idle = n.diffs == 0 and entry.child_count == 0
    in_tok = n.tokens.input
    out_tok = n.tokens.output

    def finding(type_: str, severity: str, detail: str, **metadata) -> Finding:
        return Finding(
            type=type_,
            severity=severity,
            subject=agent,
            detail=f"{agent}: {detail}",
            session_id=n.id,
            metadata=metadata,
        )

    findings = []
    if not read_only and n.messages <= t.abandoned_max_messages and idle:
        findings.append(
            finding(
                "Abandoned Session",
                SEVERITY_WARN,
                f"{n.messages} msgs, 0 diffs. Session started but produced nothing.",
                messages=n.messages,
            )
        )
    if not read_only and n.messages > t.excessive_iteration_messages:
        per_diff = f"{n.messages / n.diffs:.1f} msgs/diff" if n.diffs else "no output"
        findings.append(
            finding(
                "Excessive Iteration",
                SEVERITY_SEVERE,
                f"{n.messages} msgs for {n.diffs} diffs ({per_diff}). "
                "Possible micromanagement or thrashing.",
                messages=n.messages,
                diffs=n.diffs,
            )
        )
    if not read_only and n.messages > t.wasted_compute_messages and idle:
        findings.append(
            finding(
                "Wasted Compute",
                SEVERITY_SEVERE,
                f"{n.messages} msgs with zero output. Tokens burned with no result.",
                messages=n.messages,
            )
        )
    if not read_only and n.diff_tokens > 0:
        ratio = n.tokens.total / n.diff_tokens
        if ratio > t.max_token_ratio:
            findings.append(
                finding(
                    "Low Token Efficiency",
                    SEVERITY_WARN,
                    f"{round_half_up(ratio)}:1 token ratio. High context overhead for output produced.",
                    ratio=round(ratio, 1),
                )
            )
    if out_tok > in_tok and out_tok > t.output_heavy_tokens:
        findings.append(
            finding(
                "Output Heavy",
                SEVERITY_INFO,
                f"{format_tokens(out_tok)} output vs {format_tokens(in_tok)} input. "
                "Unusually verbose generation.",
                input_tokens=in_tok,
                output_tokens=out_tok,
            )
        )
    if n.duration and n.duration > t.long_running_ms:
        findings.append(
            finding(
                "Long Running",
                SEVERITY_INFO,
                f"{format_duration(n.duration)} duration. May indicate stuck or slow processing.",
                duration_ms=n.duration,
            )
        )
    return findings


def _tool_findings(tree: AggregatedNode, t: WasteThresholds) -> list[Finding]:
    findings = []
    total = sum(s.tokens for s in tree.tool_stats.values())
    for tool, stats in tree.tool_stats.items():
        share = stats.tokens / total if total else 0
        if total > t.tool_dominance_min_tokens and share > t.tool_dominance_share:
            findings.append(
                Finding(
                    type="Tool Dominance",
                    severity=SEVERITY_INFO,
                    subject=tool,
                    detail=f"{tool}: {round_half_up(share * 100)}% of tool tokens "
                    f"({format_tokens(stats.tokens)}). May indicate over-reliance.",
                    metadata={"tokens": stats.tokens, "share": round(share, 3)},
                )
            )
        if stats.tokens > t.expensive_tool_tokens:
            findings.append(
                Finding(
                    type="Expensive Tool",
                    severity=SEVERITY_WARN,
                    subject=tool,
                    detail=f"{tool}: {format_tokens(stats.tokens)} tokens across "
                    f"{stats.calls} calls. Consider optimizing usage.",
                    metadata={"tokens": stats.tokens, "calls": stats.calls},
                )
            )
    return findings


def _inefficient_read_finding(tree: AggregatedNode) -> Finding | None:
    reads = tree.inefficient_reads
    if not reads:
        return None

    by_agent: dict[str, dict] = {}
    for r in reads:
        agg = by_agent.setdefault(r.agent or "unknown", {"count": 0, "tokens": 0})
        agg["count"] += 1
        agg["tokens"] += r.tokens
    total = sum(r.tokens for r in reads)
    agent_list = ", ".join(f"{a}: {v['count']}" for a, v in by_agent.items())
    return Finding(
        type="Inefficient Reads",
        severity=SEVERITY_WARN,
        subject=tree.id,
        detail=f"{len(reads)} full-file reads without offset/limit ({format_tokens(total)} tokens). "
        f"{agent_list}. Use partial reads to reduce context.",
        metadata={"reads": len(reads), "total_tokens": total, "by_agent": by_agent},
    )


def detect_waste(
    flat: list[FlatNode],
    tree: AggregatedNode,
    thresholds: WasteThresholds = DEFAULT_THRESHOLDS,
) -> list[Finding]:
    """Evaluate the waste rules over a flattened tree and its root.

    Args:
        flat: Depth-first flattening of ``tree``
        tree: Aggregated root node (tool stats, reads, human inputs)
        thresholds: Policy constants

    Returns:
        Findings in discovery order: per-node rules first, then tree-wide rules
    """
    t = thresholds
    findings = []
    for entry in flat:
        findings.extend(_node_findings(entry, t))

    node_agents = Counter(entry.node.agent for entry in flat)
    context_queries = node_agents[t.context_agent]
    if context_queries > t.max_context_queries:
        findings.append(
            Finding(
                type="Duplicate Context Queries",
                severity=SEVERITY_WARN,
                subject=t.context_agent,
                detail=f"{t.context_agent} invoked {context_queries} times. "
                "Consider context caching.",
                metadata={"count": context_queries},
            )
        )

    findings.extend(_tool_findings(tree, t))

    max_depth = max((entry.depth for entry in flat), default=0)
    if max_depth > t.max_delegation_depth:
        findings.append(
            Finding(
                type="Deep Delegation",
                severity=SEVERITY_WARN,
                subject=tree.id,
                detail=f"{max_depth} levels of agent nesting. "
                "May indicate over-decomposition or delegation loops.",
                metadata={"depth": max_depth},
            )
        )

    if tree.human_messages > t.max_human_messages:
        findings.append(
            Finding(
                type="High Human Intervention",
                severity=SEVERITY_INFO,
                subject=tree.id,
                detail=f"{tree.human_messages} human inputs during session. "
                "May indicate unclear requirements or agent confusion.",
                metadata={"human_messages": tree.human_messages},
            )
        )

    reads = _inefficient_read_finding(tree)
    if reads:
        findings.append(reads)

    return findings
