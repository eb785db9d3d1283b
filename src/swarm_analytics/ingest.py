"""Ingestion of the on-disk agent session store.

The store keeps one JSON file per record:

    <storage>/session/<project_id>/<session_id>.json
    <storage>/message/<session_id>/<message_id>.json
    <storage>/part/<message_id>/<part_id>.json
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path

from swarm_analytics.storage import (
    FileDiff,
    IngestionState,
    Message,
    RawToolRecord,
    Session,
    SQLiteStorage,
)

logger = logging.getLogger("swarm-analytics")

# Default location of the agent runtime's record store
DEFAULT_STORAGE_DIR = Path.home() / ".local" / "share" / "opencode" / "storage"

SKIPPED_PROJECTS = ("global",)


def get_storage_dir() -> Path:
    return Path(os.environ.get("OPENCODE_STORAGE", str(DEFAULT_STORAGE_DIR)))


def _read_json(path: Path) -> dict | None:
    """Read a JSON object, or None when the file is unreadable or malformed."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:  # JSONDecodeError and UnicodeDecodeError
        logger.debug(f"Could not read {path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def _as_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def find_project_dirs(storage_dir: Path, project_filter: str | None = None) -> list[Path]:
    """Find project directories under ``<storage>/session``."""
    session_root = storage_dir / "session"
    if not session_root.exists():
        logger.warning(f"Session directory does not exist: {session_root}")
        return []

    dirs = []
    for project_dir in sorted(session_root.iterdir()):
        if not project_dir.is_dir():
            continue
        if project_dir.name in SKIPPED_PROJECTS or project_dir.name.startswith("."):
            continue
        if project_filter and project_filter not in project_dir.name:
            continue
        dirs.append(project_dir)
    return dirs


def parse_session(raw: dict, project_id: str) -> Session | None:
    """Parse a session record. Returns None for records without an ID."""
    session_id = raw.get("id")
    if not session_id or not isinstance(session_id, str):
        return None
    times = raw.get("time") if isinstance(raw.get("time"), dict) else {}
    return Session(
        id=session_id,
        project_id=project_id,
        parent_id=raw.get("parentID"),
        title=raw.get("title"),
        slug=raw.get("slug"),
        created=_as_int(times.get("created")),
        updated=_as_int(times.get("updated")),
        directory=raw.get("directory"),
    )


def parse_diff(raw) -> FileDiff | None:
    if not isinstance(raw, dict) or not raw.get("file"):
        return None
    return FileDiff(
        file=raw["file"],
        additions=_as_int(raw.get("additions")) or 0,
        deletions=_as_int(raw.get("deletions")) or 0,
        status=raw.get("status"),
    )


def parse_message(raw: dict, session_id: str) -> Message | None:
    """Parse a message record. Returns None for records without an ID."""
    message_id = raw.get("id")
    if not message_id or not isinstance(message_id, str):
        return None

    times = raw.get("time") if isinstance(raw.get("time"), dict) else {}
    tokens = raw.get("tokens") if isinstance(raw.get("tokens"), dict) else {}
    summary = raw.get("summary") if isinstance(raw.get("summary"), dict) else {}
    raw_diffs = summary.get("diffs") if isinstance(summary.get("diffs"), list) else []
    cost = raw.get("cost")

    return Message(
        id=message_id,
        session_id=raw.get("sessionID") or session_id,
        role=raw.get("role"),
        agent=raw.get("agent") or raw.get("mode"),
        model=raw.get("modelID"),
        provider=raw.get("providerID"),
        input_tokens=_as_int(tokens.get("input")),
        output_tokens=_as_int(tokens.get("output")),
        cost=float(cost) if isinstance(cost, (int, float)) else None,
        finish=raw.get("finish"),
        created=_as_int(times.get("created")),
        completed=_as_int(times.get("completed")),
        title=summary.get("title"),
        diffs=[d for d in (parse_diff(r) for r in raw_diffs) if d is not None],
    )


def parse_part(raw: dict, message_id: str) -> RawToolRecord | None:
    """Parse a message part record. Returns None for records without an ID."""
    part_id = raw.get("id")
    if not part_id or not isinstance(part_id, str):
        return None

    state = raw.get("state") if isinstance(raw.get("state"), dict) else {}
    times = state.get("time") if isinstance(state.get("time"), dict) else {}
    tool_input = state.get("input")
    return RawToolRecord(
        id=part_id,
        message_id=raw.get("messageID") or message_id,
        part_type=raw.get("type"),
        tool=raw.get("tool"),
        input=tool_input if isinstance(tool_input, dict) else {},
        output=state.get("output"),
        start=_as_int(times.get("start")),
        end=_as_int(times.get("end")),
    )


def _is_unchanged(storage: SQLiteStorage, path: Path) -> bool:
    stat = path.stat()
    state = storage.get_ingestion_state(str(path))
    return bool(
        state
        and state.file_size == stat.st_size
        and state.last_modified >= datetime.fromtimestamp(stat.st_mtime)
    )


def _mark_processed(storage: SQLiteStorage, path: Path) -> None:
    stat = path.stat()
    storage.update_ingestion_state(
        IngestionState(
            file_path=str(path),
            file_size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime),
            last_processed=datetime.now(),
        )
    )


def ingest_session(
    session_file: Path,
    project_id: str,
    storage: SQLiteStorage,
    storage_dir: Path,
    force: bool = False,
) -> dict:
    """Ingest one session file with its messages and their parts.

    Message and part files are tracked individually, so an unchanged
    file is skipped even when its session has new records.

    Returns:
        Stats dict with sessions/messages/parts added, files skipped, errors
    """
    stats = {"sessions": 0, "messages": 0, "parts": 0, "skipped": 0, "errors": 0}

    raw = _read_json(session_file)
    session = parse_session(raw, project_id) if raw else None
    if session is None:
        stats["errors"] += 1
        return stats

    if force or not _is_unchanged(storage, session_file):
        storage.upsert_session(session)
        _mark_processed(storage, session_file)
        stats["sessions"] += 1
    else:
        stats["skipped"] += 1

    message_dir = storage_dir / "message" / session.id
    if not message_dir.is_dir():
        return stats

    for message_file in sorted(message_dir.glob("*.json")):
        raw = _read_json(message_file)
        message = parse_message(raw, session.id) if raw else None
        if message is None:
            stats["errors"] += 1
            continue

        if force or not _is_unchanged(storage, message_file):
            storage.add_message(message)
            _mark_processed(storage, message_file)
            stats["messages"] += 1
        else:
            stats["skipped"] += 1

        part_dir = storage_dir / "part" / message.id
        if not part_dir.is_dir():
            continue

        records = []
        part_files = []
        for part_file in sorted(part_dir.glob("*.json")):
            if not force and _is_unchanged(storage, part_file):
                stats["skipped"] += 1
                continue
            raw = _read_json(part_file)
            record = parse_part(raw, message.id) if raw else None
            if record is None:
                stats["errors"] += 1
                continue
            records.append(record)
            part_files.append(part_file)

        if records:
            stats["parts"] += storage.add_tool_records_batch(records)
            for part_file in part_files:
                _mark_processed(storage, part_file)

    return stats


def ingest_store(
    storage: SQLiteStorage,
    storage_dir: Path | None = None,
    project: str | None = None,
    force: bool = False,
) -> dict:
    """Ingest every project of the on-disk session store.

    Args:
        storage: Storage instance
        storage_dir: Store root (default: $OPENCODE_STORAGE or ~/.local/share/opencode/storage)
        project: Optional project ID filter (substring match)
        force: Re-ingest files even if unchanged

    Returns:
        Stats dict with totals
    """
    storage_dir = Path(storage_dir) if storage_dir else get_storage_dir()
    project_dirs = find_project_dirs(storage_dir, project_filter=project)

    totals = {
        "projects_found": len(project_dirs),
        "files_found": 0,
        "sessions_added": 0,
        "messages_added": 0,
        "parts_added": 0,
        "files_skipped": 0,
        "errors": 0,
    }

    for project_dir in project_dirs:
        for session_file in sorted(project_dir.glob("*.json")):
            totals["files_found"] += 1
            try:
                result = ingest_session(
                    session_file, project_dir.name, storage, storage_dir, force=force
                )
            except Exception as e:
                logger.warning(f"Failed to ingest {session_file}: {e}")
                totals["errors"] += 1
                continue
            totals["sessions_added"] += result["sessions"]
            totals["messages_added"] += result["messages"]
            totals["parts_added"] += result["parts"]
            totals["files_skipped"] += result["skipped"]
            totals["errors"] += result["errors"]

    logger.info(
        f"Ingested {totals['sessions_added']} sessions, {totals['messages_added']} messages, "
        f"{totals['parts_added']} parts from {storage_dir}"
    )
    return totals
