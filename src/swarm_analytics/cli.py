"""Command-line interface for swarm session analytics."""

import argparse
import json

from swarm_analytics.ingest import ingest_store
from swarm_analytics.report import flatten, generate_report, summarize, tree_to_dict
from swarm_analytics.storage import SQLiteStorage
from swarm_analytics.tree import build_tree
from swarm_analytics.waste import detect_waste

# Formatter registry: list of (predicate, formatter) tuples
# Each predicate checks if this formatter can handle the data
# Order matters - first match wins
_FORMATTERS: list[tuple[callable, callable]] = []


def _register_formatter(predicate: callable):
    """Decorator to register a formatter with its predicate."""

    def decorator(formatter: callable):
        _FORMATTERS.append((predicate, formatter))
        return formatter

    return decorator


@_register_formatter(lambda d: "error" in d)
def _format_error(data: dict) -> list[str]:
    return [f"Error: {data['error']}"]


@_register_formatter(lambda d: "projects_found" in d)
def _format_ingest(data: dict) -> list[str]:
    return [
        f"Projects found: {data['projects_found']}",
        f"Session files found: {data['files_found']}",
        f"Sessions added: {data['sessions_added']}",
        f"Messages added: {data['messages_added']}",
        f"Parts added: {data['parts_added']}",
        f"Files skipped: {data['files_skipped']}",
        f"Errors: {data['errors']}",
    ]


@_register_formatter(lambda d: "message_count" in d and "db_path" in d)
def _format_status(data: dict) -> list[str]:
    return [
        f"Database: {data.get('db_path', 'unknown')}",
        f"Size: {data.get('db_size_bytes', 0) / 1024:.1f} KB",
        f"Projects: {data['project_count']}",
        f"Sessions: {data['session_count']} ({data['root_session_count']} root)",
        f"Messages: {data['message_count']}",
        f"Tool parts: {data['tool_part_count']}",
        f"Last ingestion: {data.get('last_ingestion') or 'never'}",
    ]


@_register_formatter(lambda d: "projects" in d)
def _format_projects(data: dict) -> list[str]:
    lines = [f"Projects: {len(data['projects'])}", ""]
    for p in data["projects"]:
        lines.append(f"  {p['id']}: {p['sessions']} sessions ({p.get('directory') or 'unknown'})")
    return lines


@_register_formatter(lambda d: "sessions" in d and "project" in d)
def _format_sessions(data: dict) -> list[str]:
    lines = [f"Sessions in {data['project']}: {len(data['sessions'])}", ""]
    for s in data["sessions"][:50]:
        marker = "  " if s.get("parent_id") else "* "
        lines.append(f"  {marker}{s['id']} {s.get('title') or ''}".rstrip())
    return lines


@_register_formatter(lambda d: "findings" in d and "token_ratio" in d)
def _format_summary(data: dict) -> list[str]:
    estimated = " (estimated)" if data.get("tokens_estimated") else ""
    lines = [
        f"Session: {data.get('title') or data['id']}",
        f"Sessions: {data['sessions']} (max depth {data['max_depth']})",
        f"Messages: {data['messages']}",
        f"Diffs: {data['diffs']}",
        f"Tokens: {data['input_tokens']} in / {data['output_tokens']} out{estimated}",
        f"Diff tokens: {data['diff_tokens']} (ratio {data['token_ratio']}:1)",
        f"Human inputs: {data['human_inputs']}",
        f"Tool calls: {data['tool_calls']}",
    ]
    if data["findings"]:
        lines.append("")
        lines.append(f"Findings: {len(data['findings'])}")
        for f in data["findings"]:
            lines.append(f"  [{f['severity']}] {f['type']}: {f['detail']}")
    return lines


def format_output(data: dict, json_output: bool = False) -> str:
    """Format output as JSON or human-readable."""
    if json_output:
        return json.dumps(data, indent=2, default=str)

    # Find matching formatter from registry
    for predicate, formatter in _FORMATTERS:
        if predicate(data):
            return "\n".join(formatter(data))

    # Fallback to JSON if no formatter matches
    return json.dumps(data, indent=2, default=str)


def _session_not_found(args) -> dict:
    return {"error": f"Session {args.session_id} not found in project {args.project}"}


def cmd_status(args):
    """Show database status."""
    storage = SQLiteStorage()
    last_ingest = storage.get_last_ingestion_time()
    result = {
        "last_ingestion": last_ingest.isoformat() if last_ingest else None,
        **storage.get_db_stats(),
    }
    print(format_output(result, args.json))


def cmd_ingest(args):
    """Ingest the on-disk session store."""
    storage = SQLiteStorage()
    result = ingest_store(
        storage,
        storage_dir=args.storage_dir,
        project=args.project,
        force=args.force,
    )
    print(format_output(result, args.json))


def cmd_projects(args):
    """List ingested projects."""
    storage = SQLiteStorage()
    print(format_output({"projects": storage.list_projects()}, args.json))


def cmd_sessions(args):
    """List sessions of a project."""
    storage = SQLiteStorage()
    sessions = storage.list_sessions(args.project)
    if args.roots:
        sessions = [s for s in sessions if not s.parent_id]
    result = {
        "project": args.project,
        "sessions": [
            {"id": s.id, "title": s.title, "parent_id": s.parent_id, "created": s.created}
            for s in sessions
        ],
    }
    print(format_output(result, args.json))


def cmd_tree(args):
    """Show the aggregated tree of a root session."""
    storage = SQLiteStorage()
    tree = build_tree(storage, args.project, args.session_id)
    if tree is None:
        result = _session_not_found(args)
    elif args.json:
        result = tree_to_dict(tree)
    else:
        result = summarize(tree)
    print(format_output(result, args.json))


def cmd_waste(args):
    """Show waste findings for a root session."""
    storage = SQLiteStorage()
    tree = build_tree(storage, args.project, args.session_id)
    if tree is None:
        result = _session_not_found(args)
    else:
        result = summarize(tree, detect_waste(flatten(tree), tree))
    print(format_output(result, args.json))


def cmd_report(args):
    """Print the Markdown analytics report for a root session."""
    storage = SQLiteStorage()
    tree = build_tree(storage, args.project, args.session_id)
    print(generate_report(tree))


def main():
    """CLI entry point."""
    epilog = """
Examples:
  swarm-analytics-cli ingest                     # Load the session store
  swarm-analytics-cli projects                   # Ingested projects
  swarm-analytics-cli sessions PROJECT --roots   # Root sessions of a project
  swarm-analytics-cli waste PROJECT SESSION      # Waste findings for a session tree
  swarm-analytics-cli report PROJECT SESSION     # Full Markdown report

All commands except report support --json for machine-readable output.
Data location: ~/.local/share/swarm-analytics/data.db
"""
    parser = argparse.ArgumentParser(
        description="Swarm Session Analytics CLI - Find waste in multi-agent sessions",
        prog="swarm-analytics-cli",
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # status
    sub = subparsers.add_parser("status", help="Show database status")
    sub.set_defaults(func=cmd_status)

    # ingest
    sub = subparsers.add_parser("ingest", help="Ingest the session store")
    sub.add_argument("--storage-dir", help="Session store root (default: $OPENCODE_STORAGE)")
    sub.add_argument("--project", help="Project ID filter")
    sub.add_argument("--force", action="store_true", help="Force re-ingestion")
    sub.set_defaults(func=cmd_ingest)

    # projects
    sub = subparsers.add_parser("projects", help="List projects")
    sub.set_defaults(func=cmd_projects)

    # sessions
    sub = subparsers.add_parser("sessions", help="List sessions of a project")
    sub.add_argument("project", help="Project ID")
    sub.add_argument("--roots", action="store_true", help="Only root sessions")
    sub.set_defaults(func=cmd_sessions)

    # tree / waste / report
    for name, func, help_text in (
        ("tree", cmd_tree, "Show the aggregated session tree"),
        ("waste", cmd_waste, "Detect waste in a session tree"),
        ("report", cmd_report, "Print the Markdown analytics report"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("project", help="Project ID")
        sub.add_argument("session_id", help="Root session ID")
        sub.set_defaults(func=func)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
