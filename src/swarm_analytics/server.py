"""MCP Swarm Session Analytics Server.

Provides tools for analyzing multi-agent session trees:
- ingest_sessions: Refresh data from the on-disk session store
- list_projects: Ingested projects
- list_sessions: Sessions of a project
- get_session_tree: Aggregated statistics for a root session and its children
- detect_session_waste: Waste findings for a session tree
- get_session_report: Markdown analytics report for a session tree
- get_status: Ingestion status + DB stats
"""

import logging
import os
from dataclasses import replace
from pathlib import Path

from fastmcp import FastMCP

from swarm_analytics.ingest import ingest_store
from swarm_analytics.report import (
    flatten,
    generate_report,
    generate_report_context,
    summarize,
    tree_to_dict,
)
from swarm_analytics.storage import SQLiteStorage
from swarm_analytics.tree import build_tree
from swarm_analytics.waste import DEFAULT_THRESHOLDS, detect_waste

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("swarm-analytics")
if os.environ.get("DEV_MODE"):
    logger.setLevel(logging.DEBUG)

# Initialize MCP server
mcp = FastMCP("swarm-analytics")

# Initialize storage
storage = SQLiteStorage()


def _not_found(project: str, session_id: str) -> dict:
    return {"status": "error", "error": f"Session {session_id} not found in project {project}"}


@mcp.resource("swarm-analytics://guide", description="Usage guide and interpretation notes")
def usage_guide() -> str:
    """Return the usage guide from the bundled markdown file."""
    guide_path = Path(__file__).parent / "guide.md"
    try:
        return guide_path.read_text()
    except FileNotFoundError:
        return "# Swarm Session Analytics Guide\n\nGuide file not found."


@mcp.tool()
def get_status() -> dict:
    """Get ingestion status and database stats.

    Returns:
        Status info including last ingestion time, record counts, and DB size
    """
    stats = storage.get_db_stats()
    last_ingest = storage.get_last_ingestion_time()

    return {
        "status": "ok",
        "version": "0.1.0",
        "last_ingestion": last_ingest.isoformat() if last_ingest else None,
        **stats,
    }


@mcp.tool()
def ingest_sessions(
    storage_dir: str | None = None, project: str | None = None, force: bool = False
) -> dict:
    """Refresh data from the on-disk session store.

    Args:
        storage_dir: Store root (default: $OPENCODE_STORAGE)
        project: Optional project ID filter
        force: Force re-ingestion of unchanged files

    Returns:
        Ingestion stats (files found, sessions/messages/parts added, etc.)
    """
    result = ingest_store(storage, storage_dir=storage_dir, project=project, force=force)
    return {"status": "ok", **result}


@mcp.tool()
def list_projects() -> dict:
    """List ingested projects with their session counts."""
    return {"status": "ok", "projects": storage.list_projects()}


@mcp.tool()
def list_sessions(project: str, roots_only: bool = False) -> dict:
    """List sessions of a project, newest first.

    Args:
        project: Project ID
        roots_only: Only include sessions without a parent
    """
    sessions = storage.list_sessions(project)
    if roots_only:
        sessions = [s for s in sessions if not s.parent_id]
    return {
        "status": "ok",
        "project": project,
        "sessions": [
            {
                "id": s.id,
                "title": s.title,
                "parent_id": s.parent_id,
                "created": s.created,
                "directory": s.directory,
            }
            for s in sessions
        ],
    }


@mcp.tool()
def get_session_tree(project: str, session_id: str, summary_only: bool = False) -> dict:
    """Aggregate a root session and all of its delegated child sessions.

    Args:
        project: Project ID
        session_id: Root session ID
        summary_only: Return headline numbers instead of the full tree

    Returns:
        The aggregated tree, or its summary
    """
    tree = build_tree(storage, project, session_id)
    if tree is None:
        return _not_found(project, session_id)
    if summary_only:
        return {"status": "ok", **summarize(tree)}
    return {"status": "ok", "tree": tree_to_dict(tree)}


@mcp.tool()
def detect_session_waste(
    project: str,
    session_id: str,
    max_token_ratio: float | None = None,
    max_delegation_depth: int | None = None,
) -> dict:
    """Run the waste rules over a session tree.

    Args:
        project: Project ID
        session_id: Root session ID
        max_token_ratio: Override for the Low Token Efficiency threshold
        max_delegation_depth: Override for the Deep Delegation threshold

    Returns:
        Session summary with its findings
    """
    tree = build_tree(storage, project, session_id)
    if tree is None:
        return _not_found(project, session_id)

    overrides = {}
    if max_token_ratio is not None:
        overrides["max_token_ratio"] = max_token_ratio
    if max_delegation_depth is not None:
        overrides["max_delegation_depth"] = max_delegation_depth
    thresholds = replace(DEFAULT_THRESHOLDS, **overrides)

    findings = detect_waste(flatten(tree), tree, thresholds)
    return {"status": "ok", **summarize(tree, findings)}


@mcp.tool()
def get_session_report(project: str, session_id: str, brief: bool = False) -> dict:
    """Render the analytics report for a session tree.

    Args:
        project: Project ID
        session_id: Root session ID
        brief: Return the short prompt-sized context instead of the full report

    Returns:
        Report text under ``report``
    """
    tree = build_tree(storage, project, session_id)
    if tree is None:
        return _not_found(project, session_id)
    report = generate_report_context(tree) if brief else generate_report(tree)
    return {"status": "ok", "report": report}


def create_app():
    """Create the ASGI app for uvicorn."""
    # stateless_http=True allows resilience to server restarts
    return mcp.http_app(stateless_http=True)


def main():
    """Run the MCP server."""
    import uvicorn

    port = int(os.environ.get("PORT", 8082))
    host = os.environ.get("HOST", "127.0.0.1")

    print(f"Starting Swarm Session Analytics on {host}:{port}")
    print(f"MCP endpoint: http://{host}:{port}/mcp")

    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    main()
