"""Swarm Session Analytics - aggregation and waste detection for multi-agent sessions."""

from importlib.metadata import version

try:
    __version__ = version("swarm-session-analytics")
except Exception:
    __version__ = "0.1.0"  # Fallback for development

# Re-export public API
from swarm_analytics.report import flatten, generate_report, generate_report_context
from swarm_analytics.storage import (
    FileDiff,
    IngestionState,
    Message,
    RawToolRecord,
    Session,
    SQLiteStorage,
)
from swarm_analytics.tokens import TokenHeuristics, TokenUsage, estimate_tokens
from swarm_analytics.tree import AggregatedNode, build_tree
from swarm_analytics.waste import Finding, WasteThresholds, detect_waste

__all__ = [
    # Version
    "__version__",
    # Storage
    "SQLiteStorage",
    "Session",
    "Message",
    "FileDiff",
    "RawToolRecord",
    "IngestionState",
    # Analysis
    "TokenHeuristics",
    "TokenUsage",
    "estimate_tokens",
    "AggregatedNode",
    "build_tree",
    "Finding",
    "WasteThresholds",
    "detect_waste",
    "flatten",
    "generate_report",
    "generate_report_context",
]
