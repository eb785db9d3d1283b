"""Flattening and reporting for aggregated session trees."""

import json
from dataclasses import asdict, dataclass

from swarm_analytics.tokens import round_half_up
from swarm_analytics.tree import AggregatedNode

NO_DATA = "No session data available."

INTERPRETATION_GUIDE = """
## Interpretation Guide

**Token Ratio**: Total tokens consumed / tokens written to files. Lower is more efficient.
- <10:1 = Excellent efficiency
- 10-30:1 = Normal for complex tasks
- 30-50:1 = Consider optimization
- >50:1 = Significant overhead, investigate

**Severity Levels**:
- severe: Immediate attention needed (wasted compute, excessive iteration)
- warn: Optimization opportunity (low efficiency, abandoned sessions)
- info: Informational (long running, output heavy)

**Common Waste Patterns**:
- Abandoned Session: Started but produced nothing
- Excessive Iteration: >40 messages indicates thrashing
- Wasted Compute: Many messages with zero file output
- Low Token Efficiency: High token overhead for output produced
- Duplicate Context Queries: Redundant project-knowledge queries
- Deep Delegation: Over-decomposition of tasks
- Inefficient Reads: Full-file reads without offset/limit (use partial reads)
"""


@dataclass(frozen=True)
class FlatNode:
    """A tree node with its depth in the delegation hierarchy."""

    node: AggregatedNode
    depth: int

    @property
    def child_count(self) -> int:
        return len(self.node.children)


def flatten(tree: AggregatedNode | None) -> list[FlatNode]:
    """Depth-first, root-first linearization of a tree."""
    result: list[FlatNode] = []
    if tree is None:
        return result

    stack = [(tree, 0)]
    while stack:
        node, depth = stack.pop()
        result.append(FlatNode(node=node, depth=depth))
        for child in reversed(node.children):
            stack.append((child, depth + 1))
    return result


def format_tokens(n: int | float) -> str:
    """Compact token count: 12345 -> '12.3k'."""
    return f"{n / 1000:.1f}k" if n >= 1000 else str(n)


def format_duration(ms: int) -> str:
    minutes, seconds = divmod(ms // 1000, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def token_ratio(total_tokens: int, diff_tokens: int) -> int:
    """Tokens consumed per token written, or 0 when nothing was written."""
    return round_half_up(total_tokens / diff_tokens) if diff_tokens > 0 else 0


def tree_to_dict(node: AggregatedNode) -> dict:
    """JSON-serializable form of a node and all of its children."""
    return asdict(node)


def aggregate_agents(flat: list[FlatNode]) -> dict[str, dict]:
    """Roll per-agent stats up across every node, busiest agent first."""
    totals: dict[str, dict] = {}
    for entry in flat:
        for name, stats in entry.node.agents.items():
            agg = totals.setdefault(
                name,
                {
                    "sessions": 0,
                    "messages": 0,
                    "diffs": 0,
                    "input_tokens": 0,
                    "output_tokens": 0,
                    "diff_tokens": 0,
                },
            )
            agg["sessions"] += 1
            agg["messages"] += stats.messages
            agg["diffs"] += stats.diffs
            agg["input_tokens"] += stats.tokens.input
            agg["output_tokens"] += stats.tokens.output
            agg["diff_tokens"] += stats.diff_tokens
    return dict(sorted(totals.items(), key=lambda item: item[1]["messages"], reverse=True))


def summarize(tree: AggregatedNode, findings: list | None = None) -> dict:
    """Serializable headline numbers for a tree, with its findings."""
    flat = flatten(tree)
    return {
        "id": tree.id,
        "title": tree.title,
        "directory": tree.directory,
        "sessions": len(flat),
        "messages": sum(e.node.messages for e in flat),
        "diffs": sum(e.node.diffs for e in flat),
        "input_tokens": tree.tokens.input,
        "output_tokens": tree.tokens.output,
        "tokens_estimated": tree.tokens.estimated,
        "diff_tokens": tree.diff_tokens,
        "token_ratio": token_ratio(tree.tokens.total, tree.diff_tokens),
        "duration_ms": tree.duration or 0,
        "human_inputs": tree.human_messages,
        "tool_calls": tree.tool_calls,
        "max_depth": max(e.depth for e in flat),
        "findings": [f.to_dict() for f in findings or []],
    }


def _quote(value) -> str:
    return str(value).replace("&", "&amp;").replace('"', "&quot;")


def generate_report(tree: AggregatedNode | None, findings: list | None = None) -> str:
    """Render a Markdown analytics report for a tree.

    Findings are computed with the default thresholds when not supplied.
    """
    if tree is None:
        return NO_DATA
    flat = flatten(tree)
    if findings is None:
        # Import here to avoid circular import (waste uses FlatNode)
        from swarm_analytics.waste import detect_waste

        findings = detect_waste(flat, tree)

    summary = summarize(tree)
    lines = [
        "# Swarm Session Analytics Report",
        "",
        "<session_summary>",
        f"  <title>{tree.title or tree.id}</title>",
        f"  <sessions>{summary['sessions']}</sessions>",
        f"  <messages>{summary['messages']}</messages>",
        f"  <diffs>{summary['diffs']}</diffs>",
        f"  <input_tokens>{summary['input_tokens']}</input_tokens>",
        f"  <output_tokens>{summary['output_tokens']}</output_tokens>",
        f"  <diff_tokens>{summary['diff_tokens']}</diff_tokens>",
        f"  <token_ratio>{summary['token_ratio']}:1</token_ratio>",
        f"  <duration_ms>{summary['duration_ms']}</duration_ms>",
        f"  <human_inputs>{summary['human_inputs']}</human_inputs>",
        "</session_summary>",
        "",
        "## Session Tree",
        "",
        "| Session | Agent | Msgs | Diffs | In Tok | Out Tok | Ratio |",
        "|---------|-------|------|-------|--------|---------|-------|",
    ]
    for entry in flat:
        n = entry.node
        indent = "  " * entry.depth
        ratio = f"{token_ratio(n.tokens.total, n.diff_tokens)}:1" if n.diff_tokens > 0 else "-"
        lines.append(
            f"| {indent}{n.title or n.id[:8]} | {n.agent or '-'} | {n.messages} | {n.diffs} "
            f"| {n.tokens.input} | {n.tokens.output} | {ratio} |"
        )

    lines += ["", "## Agent Summary", "", "<agents>"]
    for name, s in aggregate_agents(flat).items():
        ratio = token_ratio(s["input_tokens"] + s["output_tokens"], s["diff_tokens"])
        lines.append(
            f'  <agent name="{_quote(name)}" calls="{s["sessions"]}" messages="{s["messages"]}" '
            f'diffs="{s["diffs"]}" input_tokens="{s["input_tokens"]}" '
            f'output_tokens="{s["output_tokens"]}" diff_tokens="{s["diff_tokens"]}" '
            f'ratio="{ratio}:1"/>'
        )
    lines.append("</agents>")

    if tree.tool_stats:
        tools = sorted(tree.tool_stats.items(), key=lambda item: item[1].tokens, reverse=True)
        total_tok = sum(s.tokens for _, s in tools)
        total_dur = sum(s.duration for _, s in tools)
        lines += [
            "",
            "## Tool Usage",
            "",
            f'<tools total_tokens="{total_tok}" total_duration_ms="{total_dur}">',
        ]
        for tool, s in tools:
            pct = round_half_up(s.tokens / total_tok * 100) if total_tok > 0 else 0
            lines.append(
                f'  <tool name="{_quote(tool)}" calls="{s.calls}" input_tokens="{s.input_tokens}" '
                f'output_tokens="{s.output_tokens}" duration_ms="{s.duration}" percent="{pct}"/>'
            )
        lines.append("</tools>")

    if tree.flame_events:
        events = tree.flame_events
        min_t = min(e.start for e in events)
        agent_time = sum(e.end - e.start for e in events if e.type == "agent")
        tool_time = sum(e.end - e.start for e in events if e.type == "tool")
        lines += [
            "",
            "## Timeline",
            "",
            f'<timeline events="{len(events)}" start_ms="{min_t}" '
            f'agent_time_ms="{agent_time}" tool_time_ms="{tool_time}">',
        ]
        for e in events:
            attrs = (
                f'type="{e.type}" name="{_quote(e.name)}" offset_ms="{e.start - min_t}" '
                f'duration_ms="{e.end - e.start}"'
            )
            if e.type == "tool":
                if e.agent:
                    attrs += f' agent="{_quote(e.agent)}"'
                if e.args:
                    attrs += f' args="{_quote(json.dumps(e.args))}"'
            lines.append(f"  <event {attrs}/>")
        lines.append("</timeline>")

    if findings:
        lines += ["", "## Waste Detection", "", f'<warnings count="{len(findings)}">']
        for f in findings:
            lines.append(
                f'  <warning type="{f.type}" severity="{f.severity}" '
                f'subject="{_quote(f.subject)}">{f.detail}</warning>'
            )
        lines.append("</warnings>")

    return "\n".join(lines) + "\n" + INTERPRETATION_GUIDE


def generate_report_context(tree: AggregatedNode | None) -> str:
    """Short plain-text summary of a tree, sized for a chat prompt."""
    if tree is None:
        return NO_DATA
    flat = flatten(tree)
    total = tree.tokens.total
    ratio = f"{token_ratio(total, tree.diff_tokens)}:1" if tree.diff_tokens > 0 else "-"

    lines = [
        f"# Session: {tree.title or tree.id}",
        f"Sessions: {len(flat)} | Msgs: {sum(e.node.messages for e in flat)} "
        f"| Diffs: {sum(e.node.diffs for e in flat)} | Tokens: {total} | Ratio: {ratio}",
        "",
        "## Agents",
    ]
    for name, s in aggregate_agents(flat).items():
        tokens = s["input_tokens"] + s["output_tokens"]
        lines.append(f"- {name}: {s['messages']} msgs, {s['diffs']} diffs, {tokens} tok")
    return "\n".join(lines) + "\n"
