"""Pytest configuration and shared fixtures."""

import tempfile
from pathlib import Path

import pytest

from swarm_analytics.storage import FileDiff, Message, RawToolRecord, Session, SQLiteStorage

PROJECT = "proj-1"


@pytest.fixture
def storage():
    """Create a temporary storage instance for testing.

    This is the base fixture for all storage-dependent tests.
    Use this when you need an empty database.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        yield SQLiteStorage(db_path)


@pytest.fixture
def add_session(storage):
    """Factory fixture: add a session to the temporary storage."""

    def _add(session_id, parent_id=None, created=None, title=None, project_id=PROJECT):
        session = Session(
            id=session_id,
            project_id=project_id,
            parent_id=parent_id,
            title=title,
            created=created,
            directory="/work/app",
        )
        storage.upsert_session(session)
        return session

    return _add


@pytest.fixture
def add_messages(storage):
    """Factory fixture: add ``count`` assistant messages to a session.

    Messages are one second apart starting at ``start``. ``diffs`` is a list
    of diff lists, one per message, for the first messages that have diffs.
    """

    def _add(session_id, count, agent="build", start=1_000_000, diffs=None, **fields):
        diffs = diffs or []
        messages = [
            Message(
                id=f"{session_id}-msg-{i:03d}",
                session_id=session_id,
                role="assistant",
                agent=agent,
                created=start + i * 1000,
                diffs=diffs[i] if i < len(diffs) else [],
                **fields,
            )
            for i in range(count)
        ]
        storage.add_messages_batch(messages)
        return messages

    return _add


@pytest.fixture
def swarm_storage(storage):
    """Storage with a small delegated session tree.

    Contains:
    - ses-root: 1 human message + 1 assistant message (+20 lines in src/login.py)
    - ses-child (child of ses-root): 1 coder message with 2 diffs, one of them
      a planning artifact, and a full-file read, a scoped edit and a text part
    - ses-orphan: parent ID that doesn't exist
    """
    storage.upsert_sessions_batch(
        [
            Session(
                id="ses-root",
                project_id=PROJECT,
                title="Build login page",
                created=1_000_000,
                directory="/work/app",
            ),
            Session(
                id="ses-child",
                project_id=PROJECT,
                parent_id="ses-root",
                title="Implement form",
                created=1_002_000,
                directory="/work/app",
            ),
            Session(
                id="ses-orphan",
                project_id=PROJECT,
                parent_id="missing-parent",
                title="Lost",
                created=1_003_000,
            ),
        ]
    )

    storage.add_messages_batch(
        [
            Message(
                id="msg-r1",
                session_id="ses-root",
                role="user",
                agent="build",
                created=1_000_000,
                title="Add a login page",
            ),
            Message(
                id="msg-r2",
                session_id="ses-root",
                role="assistant",
                agent="build",
                model="claude-sonnet",
                provider="anthropic",
                input_tokens=1200,
                output_tokens=300,
                created=1_001_000,
                completed=1_005_000,
                diffs=[FileDiff(file="src/login.py", additions=20, deletions=0)],
            ),
            Message(
                id="msg-c1",
                session_id="ses-child",
                role="assistant",
                agent="coder",
                model="gpt-4o",
                provider="openai",
                input_tokens=800,
                output_tokens=200,
                created=1_002_000,
                completed=1_003_000,
                diffs=[
                    FileDiff(file="src/form.py", additions=5, deletions=2),
                    FileDiff(file=".opencode/plan.md", additions=3, deletions=0),
                ],
            ),
            Message(
                id="msg-o1",
                session_id="ses-orphan",
                role="assistant",
                agent="build",
                created=1_003_000,
            ),
        ]
    )

    storage.add_tool_records_batch(
        [
            RawToolRecord(
                id="prt-1",
                message_id="msg-c1",
                part_type="tool",
                tool="read",
                input={"filePath": "src/form.py"},
                output="x" * 398,
                start=1_002_100,
                end=1_002_300,
            ),
            RawToolRecord(
                id="prt-2",
                message_id="msg-c1",
                part_type="tool",
                tool="edit",
                input={"filePath": "src/form.py", "oldString": "a", "newString": "b"},
                output="ok",
                start=1_002_400,
                end=1_002_500,
            ),
            RawToolRecord(
                id="prt-3",
                message_id="msg-c1",
                part_type="text",
                input={},
                output="Done.",
            ),
        ]
    )
    return storage
