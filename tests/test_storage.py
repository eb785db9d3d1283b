"""Tests for the storage module."""

from datetime import datetime

from swarm_analytics.storage import (
    FileDiff,
    IngestionState,
    Message,
    RawToolRecord,
    Session,
    SQLiteStorage,
)


class TestSessions:
    def test_resolve_session(self, storage):
        storage.upsert_session(Session(id="s1", project_id="p1", title="First", created=5))
        session = storage.resolve_session("p1", "s1")
        assert session is not None
        assert session.title == "First"
        assert session.created == 5

    def test_resolve_session_wrong_project(self, storage):
        storage.upsert_session(Session(id="s1", project_id="p1"))
        assert storage.resolve_session("p2", "s1") is None

    def test_resolve_missing_session(self, storage):
        assert storage.resolve_session("p1", "nope") is None

    def test_upsert_updates_existing(self, storage):
        storage.upsert_session(Session(id="s1", project_id="p1", title="Old"))
        storage.upsert_session(Session(id="s1", project_id="p1", title="New"))
        assert storage.resolve_session("p1", "s1").title == "New"
        assert len(storage.list_sessions("p1")) == 1

    def test_list_sessions_newest_first(self, storage):
        storage.upsert_sessions_batch(
            [
                Session(id="a", project_id="p1", created=100),
                Session(id="b", project_id="p1", created=300),
                Session(id="c", project_id="p1", created=200),
                Session(id="d", project_id="p2", created=400),
            ]
        )
        assert [s.id for s in storage.list_sessions("p1")] == ["b", "c", "a"]

    def test_list_child_sessions(self, storage):
        storage.upsert_sessions_batch(
            [
                Session(id="root", project_id="p1"),
                Session(id="late", project_id="p1", parent_id="root", created=200),
                Session(id="early", project_id="p1", parent_id="root", created=100),
                Session(id="grandchild", project_id="p1", parent_id="early", created=150),
                Session(id="other", project_id="p2", parent_id="root", created=50),
            ]
        )
        children = storage.list_child_sessions("p1", "root")
        assert [s.id for s in children] == ["early", "late"]

    def test_list_projects(self, storage):
        storage.upsert_sessions_batch(
            [
                Session(id="a", project_id="p1", directory="/work/one"),
                Session(id="b", project_id="p1", directory="/work/one"),
                Session(id="c", project_id="p2"),
            ]
        )
        projects = storage.list_projects()
        assert projects == [
            {"id": "p1", "directory": "/work/one", "sessions": 2},
            {"id": "p2", "directory": None, "sessions": 1},
        ]


class TestMessages:
    def test_messages_sorted_by_creation(self, storage):
        storage.add_messages_batch(
            [
                Message(id="m2", session_id="s1", created=200),
                Message(id="m1", session_id="s1", created=100),
                Message(id="m3", session_id="s1", created=300),
            ]
        )
        assert [m.id for m in storage.list_messages("s1")] == ["m1", "m2", "m3"]

    def test_equal_timestamps_keep_insertion_order(self, storage):
        storage.add_messages_batch(
            [
                Message(id="z", session_id="s1", created=100),
                Message(id="a", session_id="s1", created=100),
            ]
        )
        storage.add_message(Message(id="m", session_id="s1", created=100))
        assert [m.id for m in storage.list_messages("s1")] == ["z", "a", "m"]

    def test_diffs_round_trip(self, storage):
        storage.add_message(
            Message(
                id="m1",
                session_id="s1",
                diffs=[
                    FileDiff(file="a.py", additions=3, deletions=1, status="modified"),
                    FileDiff(file="b.py", additions=7),
                ],
            )
        )
        (message,) = storage.list_messages("s1")
        assert [d.file for d in message.diffs] == ["a.py", "b.py"]
        assert message.diffs[0].status == "modified"
        assert message.diffs[1].additions == 7

    def test_replacing_message_replaces_diffs(self, storage):
        storage.add_message(
            Message(id="m1", session_id="s1", diffs=[FileDiff(file="a.py", additions=1)])
        )
        storage.add_message(
            Message(id="m1", session_id="s1", diffs=[FileDiff(file="b.py", additions=2)])
        )
        (message,) = storage.list_messages("s1")
        assert [d.file for d in message.diffs] == ["b.py"]

    def test_is_human(self):
        assert Message(id="m", session_id="s", role="user").is_human
        assert not Message(id="m", session_id="s", role="assistant").is_human

    def test_empty_batch(self, storage):
        assert storage.add_messages_batch([]) == 0


class TestToolParts:
    def test_round_trip(self, storage):
        storage.add_tool_records_batch(
            [
                RawToolRecord(
                    id="p1",
                    message_id="m1",
                    part_type="tool",
                    tool="read",
                    input={"filePath": "a.py", "limit": 20},
                    output={"lines": ["x"]},
                    start=10,
                    end=30,
                )
            ]
        )
        (record,) = storage.list_tool_events("m1")
        assert record.tool == "read"
        assert record.input == {"filePath": "a.py", "limit": 20}
        assert record.output == {"lines": ["x"]}
        assert (record.start, record.end) == (10, 30)

    def test_malformed_rows_are_dropped(self, storage):
        storage.add_tool_records_batch(
            [RawToolRecord(id="good", message_id="m1", part_type="tool", tool="bash")]
        )
        with storage._connect() as conn:
            conn.execute(
                "INSERT INTO tool_parts (id, message_id, part_type, tool, input_json) "
                "VALUES ('bad', 'm1', 'tool', 'read', '{not json')"
            )
            conn.execute(
                "INSERT INTO tool_parts (id, message_id, part_type, tool, input_json) "
                "VALUES ('list', 'm1', 'tool', 'read', '[1, 2]')"
            )
        assert [r.id for r in storage.list_tool_events("m1")] == ["good"]

    def test_no_parts(self, storage):
        assert storage.list_tool_events("m1") == []


class TestIngestionState:
    def test_round_trip(self, storage):
        now = datetime.now()
        storage.update_ingestion_state(
            IngestionState(
                file_path="/tmp/a.json",
                file_size=42,
                last_modified=now,
                last_processed=now,
            )
        )
        state = storage.get_ingestion_state("/tmp/a.json")
        assert state.file_size == 42
        assert state.last_modified == now
        assert storage.get_last_ingestion_time() == now

    def test_never_ingested(self, storage):
        assert storage.get_ingestion_state("/tmp/a.json") is None
        assert storage.get_last_ingestion_time() is None


def test_db_stats(swarm_storage):
    stats = swarm_storage.get_db_stats()
    assert stats["project_count"] == 1
    assert stats["session_count"] == 3
    assert stats["root_session_count"] == 1
    assert stats["message_count"] == 4
    assert stats["diff_count"] == 3
    assert stats["tool_part_count"] == 3
    assert stats["db_size_bytes"] > 0


def test_db_path_from_environment(tmp_path, monkeypatch):
    db_path = tmp_path / "nested" / "env.db"
    monkeypatch.setenv("SWARM_ANALYTICS_DB", str(db_path))
    storage = SQLiteStorage()
    assert storage.db_path == db_path
    assert db_path.exists()


def test_replaced_message_keeps_its_place(storage):
    storage.add_messages_batch(
        [
            Message(id="z", session_id="s1", created=100, title="first"),
            Message(id="a", session_id="s1", created=100),
        ]
    )
    storage.add_message(Message(id="z", session_id="s1", created=100, title="edited"))
    messages = storage.list_messages("s1")
    assert [m.id for m in messages] == ["z", "a"]
    assert messages[0].title == "edited"
