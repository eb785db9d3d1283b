"""SQLite storage backend for swarm session records."""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger("swarm-analytics")

# Register datetime adapters/converters (required for Python 3.12+)


def _adapt_datetime(dt: datetime) -> str:
    """Convert datetime to ISO format string for SQLite storage."""
    return dt.isoformat()


def _convert_datetime(data: bytes) -> datetime:
    """Convert ISO format string from SQLite to datetime."""
    return datetime.fromisoformat(data.decode())


sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_converter("TIMESTAMP", _convert_datetime)


@dataclass
class Session:
    """One node of agent work. Timestamps are epoch milliseconds."""

    id: str
    project_id: str
    parent_id: str | None = None
    title: str | None = None
    slug: str | None = None
    created: int | None = None
    updated: int | None = None
    directory: str | None = None


@dataclass
class FileDiff:
    """A recorded file change attached to a message."""

    file: str
    additions: int = 0
    deletions: int = 0
    status: str | None = None


@dataclass
class Message:
    """A single message inside a session."""

    id: str
    session_id: str
    role: str | None = None  # 'user' or 'assistant'
    agent: str | None = None
    model: str | None = None
    provider: str | None = None

    # Recorded usage (0/None when the runtime did not report it)
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost: float | None = None
    finish: str | None = None

    created: int | None = None
    completed: int | None = None
    title: str | None = None  # summary title
    diffs: list[FileDiff] = field(default_factory=list)

    @property
    def is_human(self) -> bool:
        return self.role == "user"


@dataclass
class RawToolRecord:
    """A stored message part, as recorded by the agent runtime."""

    id: str
    message_id: str
    part_type: str | None = None  # only 'tool' parts become tool events
    tool: str | None = None
    input: dict = field(default_factory=dict)
    output: Any = None
    start: int | None = None
    end: int | None = None


@dataclass
class IngestionState:
    """Tracks the ingestion state of a record file."""

    file_path: str
    file_size: int
    last_modified: datetime
    last_processed: datetime


# Default database path
DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "swarm-analytics" / "data.db"

SCHEMA_VERSION = 1


class SQLiteStorage:
    """SQLite-backed store for sessions, messages, diffs and tool parts.

    Implements the lookups the tree builder consumes: ``resolve_session``,
    ``list_messages``, ``list_tool_events`` and ``list_child_sessions``.
    """

    def __init__(self, db_path: str | Path | None = None):
        """Initialize storage with optional custom DB path."""
        if db_path is None:
            db_path = os.environ.get("SWARM_ANALYTICS_DB", str(DEFAULT_DB_PATH))

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    @contextmanager
    def _connect(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(
            self.db_path,
            detect_types=sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES,
        )
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def execute_query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        """Execute a SQL query and return all results."""
        with self._connect() as conn:
            return conn.execute(sql, params).fetchall()

    def _init_db(self):
        """Create tables if they don't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    parent_id TEXT,
                    title TEXT,
                    slug TEXT,
                    created INTEGER,
                    updated INTEGER,
                    directory TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_parent ON sessions(parent_id)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    role TEXT,
                    agent TEXT,
                    model TEXT,
                    provider TEXT,
                    input_tokens INTEGER,
                    output_tokens INTEGER,
                    cost REAL,
                    finish TEXT,
                    created INTEGER,
                    completed INTEGER,
                    title TEXT,
                    seq INTEGER
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS diffs (
                    id INTEGER PRIMARY KEY,
                    message_id TEXT NOT NULL,
                    file TEXT NOT NULL,
                    additions INTEGER DEFAULT 0,
                    deletions INTEGER DEFAULT 0,
                    status TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_diffs_message ON diffs(message_id)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS tool_parts (
                    id TEXT PRIMARY KEY,
                    message_id TEXT NOT NULL,
                    part_type TEXT,
                    tool TEXT,
                    input_json TEXT,
                    output_json TEXT,
                    start_time INTEGER,
                    end_time INTEGER
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_tool_parts_message ON tool_parts(message_id)"
            )

            # Ingestion tracking (incremental updates)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS ingestion_state (
                    file_path TEXT PRIMARY KEY,
                    file_size INTEGER,
                    last_modified TIMESTAMP,
                    last_processed TIMESTAMP
                )
            """)

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )

    # Session operations

    def upsert_session(self, session: Session) -> None:
        """Add or update a session."""
        self.upsert_sessions_batch([session])

    def upsert_sessions_batch(self, sessions: list[Session]) -> int:
        """Add or update multiple sessions in one transaction. Returns count written."""
        with self._connect() as conn:
            cursor = conn.executemany(
                """
                INSERT OR REPLACE INTO sessions (
                    id, project_id, parent_id, title, slug, created, updated, directory
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        s.id,
                        s.project_id,
                        s.parent_id,
                        s.title,
                        s.slug,
                        s.created,
                        s.updated,
                        s.directory,
                    )
                    for s in sessions
                ],
            )
            return cursor.rowcount

    def resolve_session(self, project_id: str, session_id: str) -> Session | None:
        """Get a session by ID within a project."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE project_id = ? AND id = ?",
                (project_id, session_id),
            ).fetchone()
            if row:
                return self._row_to_session(row)
            return None

    def list_sessions(self, project_id: str) -> list[Session]:
        """Get all sessions of a project, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sessions
                WHERE project_id = ?
                ORDER BY COALESCE(created, 0) DESC, id
                """,
                (project_id,),
            ).fetchall()
            return [self._row_to_session(row) for row in rows]

    def list_child_sessions(self, project_id: str, parent_session_id: str) -> list[Session]:
        """Get the direct children of a session, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sessions
                WHERE project_id = ? AND parent_id = ?
                ORDER BY COALESCE(created, 0), id
                """,
                (project_id, parent_session_id),
            ).fetchall()
            return [self._row_to_session(row) for row in rows]

    def list_projects(self) -> list[dict]:
        """Get project IDs with session counts and a representative directory."""
        rows = self.execute_query(
            """
            SELECT
                project_id,
                COUNT(*) as session_count,
                MAX(directory) as directory
            FROM sessions
            GROUP BY project_id
            ORDER BY project_id
            """
        )
        return [
            {
                "id": row["project_id"],
                "directory": row["directory"],
                "sessions": row["session_count"],
            }
            for row in rows
        ]

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        """Convert a database row to a Session object."""
        return Session(
            id=row["id"],
            project_id=row["project_id"],
            parent_id=row["parent_id"],
            title=row["title"],
            slug=row["slug"],
            created=row["created"],
            updated=row["updated"],
            directory=row["directory"],
        )

    # Message operations

    def add_message(self, message: Message) -> Message:
        """Add or replace a message together with its diffs."""
        self.add_messages_batch([message])
        return message

    def add_messages_batch(self, messages: list[Message]) -> int:
        """Add or replace multiple messages in a single transaction. Returns count added.

        First-insertion order is kept as the tie-break for messages created at
        the same millisecond. Replacing a message keeps its place.
        """
        if not messages:
            return 0
        with self._connect() as conn:
            row = conn.execute("SELECT COALESCE(MAX(seq), 0) FROM messages").fetchone()
            next_seq = row[0] + 1
            conn.executemany(
                """
                INSERT INTO messages (
                    id, session_id, role, agent, model, provider,
                    input_tokens, output_tokens, cost, finish,
                    created, completed, title, seq
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    session_id = excluded.session_id,
                    role = excluded.role,
                    agent = excluded.agent,
                    model = excluded.model,
                    provider = excluded.provider,
                    input_tokens = excluded.input_tokens,
                    output_tokens = excluded.output_tokens,
                    cost = excluded.cost,
                    finish = excluded.finish,
                    created = excluded.created,
                    completed = excluded.completed,
                    title = excluded.title
                """,
                [
                    (
                        m.id,
                        m.session_id,
                        m.role,
                        m.agent,
                        m.model,
                        m.provider,
                        m.input_tokens,
                        m.output_tokens,
                        m.cost,
                        m.finish,
                        m.created,
                        m.completed,
                        m.title,
                        next_seq + i,
                    )
                    for i, m in enumerate(messages)
                ],
            )
            conn.executemany(
                "DELETE FROM diffs WHERE message_id = ?", [(m.id,) for m in messages]
            )
            conn.executemany(
                """
                INSERT INTO diffs (message_id, file, additions, deletions, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (m.id, d.file, d.additions, d.deletions, d.status)
                    for m in messages
                    for d in m.diffs
                ],
            )
            return len(messages)

    def list_messages(self, session_id: str) -> list[Message]:
        """Get a session's messages, ascending by creation time."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE session_id = ?
                ORDER BY COALESCE(created, 0), seq
                """,
                (session_id,),
            ).fetchall()
            if not rows:
                return []

            diff_rows = conn.execute(
                """
                SELECT d.* FROM diffs d
                JOIN messages m ON m.id = d.message_id
                WHERE m.session_id = ?
                ORDER BY d.id
                """,
                (session_id,),
            ).fetchall()

        diffs_by_message: dict[str, list[FileDiff]] = {}
        for d in diff_rows:
            diffs_by_message.setdefault(d["message_id"], []).append(
                FileDiff(
                    file=d["file"],
                    additions=d["additions"] or 0,
                    deletions=d["deletions"] or 0,
                    status=d["status"],
                )
            )

        return [
            Message(
                id=row["id"],
                session_id=row["session_id"],
                role=row["role"],
                agent=row["agent"],
                model=row["model"],
                provider=row["provider"],
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                cost=row["cost"],
                finish=row["finish"],
                created=row["created"],
                completed=row["completed"],
                title=row["title"],
                diffs=diffs_by_message.get(row["id"], []),
            )
            for row in rows
        ]

    # Tool part operations

    def add_tool_records_batch(self, records: list[RawToolRecord]) -> int:
        """Add or replace message parts in a single transaction. Returns count added."""
        with self._connect() as conn:
            cursor = conn.executemany(
                """
                INSERT OR REPLACE INTO tool_parts (
                    id, message_id, part_type, tool, input_json, output_json,
                    start_time, end_time
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        r.id,
                        r.message_id,
                        r.part_type,
                        r.tool,
                        json.dumps(r.input) if r.input is not None else None,
                        json.dumps(r.output) if r.output is not None else None,
                        r.start,
                        r.end,
                    )
                    for r in records
                ],
            )
            return cursor.rowcount

    def list_tool_events(self, message_id: str) -> list[RawToolRecord]:
        """Get the raw part records of a message.

        Rows whose stored JSON no longer decodes are dropped.
        """
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tool_parts WHERE message_id = ? ORDER BY id",
                (message_id,),
            ).fetchall()

        records = []
        for row in rows:
            try:
                tool_input = json.loads(row["input_json"]) if row["input_json"] else {}
                tool_output = json.loads(row["output_json"]) if row["output_json"] else None
            except json.JSONDecodeError as e:
                logger.debug(f"Dropping malformed tool part {row['id']}: {e}")
                continue
            if not isinstance(tool_input, dict):
                logger.debug(f"Dropping tool part {row['id']}: input is not an object")
                continue
            records.append(
                RawToolRecord(
                    id=row["id"],
                    message_id=row["message_id"],
                    part_type=row["part_type"],
                    tool=row["tool"],
                    input=tool_input,
                    output=tool_output,
                    start=row["start_time"],
                    end=row["end_time"],
                )
            )
        return records

    # Ingestion state operations

    def get_ingestion_state(self, file_path: str) -> IngestionState | None:
        """Get ingestion state for a file."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ingestion_state WHERE file_path = ?", (file_path,)
            ).fetchone()
            if row:
                return IngestionState(
                    file_path=row["file_path"],
                    file_size=row["file_size"],
                    last_modified=row["last_modified"],
                    last_processed=row["last_processed"],
                )
            return None

    def update_ingestion_state(self, state: IngestionState) -> None:
        """Update ingestion state for a file."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO ingestion_state (
                    file_path, file_size, last_modified, last_processed
                ) VALUES (?, ?, ?, ?)
                """,
                (
                    state.file_path,
                    state.file_size,
                    state.last_modified,
                    state.last_processed,
                ),
            )

    def get_last_ingestion_time(self) -> datetime | None:
        """Get the most recent ingestion time across all files."""
        with self._connect() as conn:
            row = conn.execute("SELECT MAX(last_processed) as last FROM ingestion_state").fetchone()
            if not row or not row["last"]:
                return None
            # Handle both datetime objects and ISO strings (SQLite aggregates return strings)
            val = row["last"]
            return datetime.fromisoformat(val) if isinstance(val, str) else val

    # Utility operations

    def get_db_stats(self) -> dict:
        """Get database statistics."""
        with self._connect() as conn:
            session_count = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
            root_count = conn.execute(
                "SELECT COUNT(*) FROM sessions WHERE parent_id IS NULL"
            ).fetchone()[0]
            project_count = conn.execute(
                "SELECT COUNT(DISTINCT project_id) FROM sessions"
            ).fetchone()[0]
            message_count = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
            diff_count = conn.execute("SELECT COUNT(*) FROM diffs").fetchone()[0]
            tool_part_count = conn.execute("SELECT COUNT(*) FROM tool_parts").fetchone()[0]
            file_count = conn.execute("SELECT COUNT(*) FROM ingestion_state").fetchone()[0]

        db_size = self.db_path.stat().st_size if self.db_path.exists() else 0

        return {
            "project_count": project_count,
            "session_count": session_count,
            "root_session_count": root_count,
            "message_count": message_count,
            "diff_count": diff_count,
            "tool_part_count": tool_part_count,
            "files_processed": file_count,
            "db_size_bytes": db_size,
            "db_path": str(self.db_path),
        }
