"""Tests for session tree aggregation."""

import pytest

from swarm_analytics.report import tree_to_dict
from swarm_analytics.storage import FileDiff, Message, RawToolRecord, Session
from swarm_analytics.tree import HUMAN_AGENT, build_tree

PROJECT = "proj-1"


class TestBuildTree:
    def test_missing_root(self, swarm_storage):
        assert build_tree(swarm_storage, PROJECT, "does-not-exist") is None

    def test_root_from_other_project(self, swarm_storage):
        assert build_tree(swarm_storage, "other-project", "ses-root") is None

    def test_root_counts(self, swarm_storage):
        tree = build_tree(swarm_storage, PROJECT, "ses-root")
        assert tree.id == "ses-root"
        assert tree.title == "Build login page"
        assert tree.directory == "/work/app"
        assert tree.messages == 2
        assert tree.diffs == 1
        assert tree.human_messages == 1
        assert tree.agent == "build"
        assert tree.duration == 5000

    def test_children(self, swarm_storage):
        tree = build_tree(swarm_storage, PROJECT, "ses-root")
        assert [c.id for c in tree.children] == ["ses-child"]
        child = tree.children[0]
        assert child.agent == "coder"
        assert child.messages == 1
        assert child.diffs == 2
        assert child.human_messages == 0
        assert child.children == []

    def test_tokens_roll_up_with_sticky_estimate(self, swarm_storage):
        tree = build_tree(swarm_storage, PROJECT, "ses-root")
        # Human message estimated at 4/4, recorded 1200/300 and child 800/200
        assert tree.tokens.input == 2004
        assert tree.tokens.output == 504
        assert tree.tokens.estimated
        assert not tree.children[0].tokens.estimated

    def test_diff_tokens_include_children(self, swarm_storage):
        tree = build_tree(swarm_storage, PROJECT, "ses-root")
        assert tree.children[0].diff_tokens == 80
        assert tree.diff_tokens == 280

    def test_agent_stats(self, swarm_storage):
        tree = build_tree(swarm_storage, PROJECT, "ses-root")
        build = tree.agents["build"]
        assert build.messages == 2
        assert build.diffs == 1
        assert build.models == ["anthropic/claude-sonnet"]
        assert build.duration == 5000
        assert build.diff_tokens == 200
        # Child agents stay in the child's own map
        assert "coder" not in tree.agents
        assert tree.children[0].agents["coder"].models == ["openai/gpt-4o"]

    def test_file_rollup_not_merged_from_children(self, swarm_storage):
        tree = build_tree(swarm_storage, PROJECT, "ses-root")
        assert list(tree.files) == ["src/login.py"]
        assert tree.files["src/login.py"].additions == 20
        assert tree.files["src/login.py"].agents == ["build"]
        child_files = tree.children[0].files
        assert child_files["src/form.py"].deletions == 2

    def test_referenced_files(self, swarm_storage):
        tree = build_tree(swarm_storage, PROJECT, "ses-root")
        assert tree.referenced_files == [".opencode/plan.md"]

    def test_tool_stats_roll_up(self, swarm_storage):
        tree = build_tree(swarm_storage, PROJECT, "ses-root")
        assert set(tree.tool_stats) == {"read", "edit"}
        read = tree.tool_stats["read"]
        assert read.calls == 1
        assert read.input_tokens == 7
        assert read.output_tokens == 100
        assert read.duration == 200
        assert tree.tool_calls == 2

    def test_inefficient_reads(self, swarm_storage):
        tree = build_tree(swarm_storage, PROJECT, "ses-root")
        assert len(tree.inefficient_reads) == 1
        read = tree.inefficient_reads[0]
        assert read.file == "src/form.py"
        assert read.agent == "coder"
        assert read.tokens == 100

    def test_flame_events_sorted(self, swarm_storage):
        tree = build_tree(swarm_storage, PROJECT, "ses-root")
        starts = [e.start for e in tree.flame_events]
        assert starts == sorted(starts)
        assert [(e.type, e.name) for e in tree.flame_events] == [
            ("agent", "build"),
            ("agent", "coder"),
            ("tool", "read"),
            ("tool", "edit"),
        ]

    def test_timeline(self, swarm_storage):
        tree = build_tree(swarm_storage, PROJECT, "ses-root")
        assert [(e.time, e.agent) for e in tree.timeline] == [
            (1_000_000, HUMAN_AGENT),
            (1_000_000, "build"),
            (1_001_000, "build"),
            (1_002_000, "coder"),
        ]
        assert tree.timeline[2].diffs == 1
        assert tree.timeline[2].tokens == 1500
        assert tree.timeline[2].diff_tokens == 200

    def test_orphan_never_attached(self, swarm_storage):
        tree = build_tree(swarm_storage, PROJECT, "ses-root")
        ids = []
        stack = [tree]
        while stack:
            node = stack.pop()
            ids.append(node.id)
            stack.extend(node.children)
        assert "ses-orphan" not in ids

    def test_orphan_can_be_its_own_root(self, swarm_storage):
        tree = build_tree(swarm_storage, PROJECT, "ses-orphan")
        assert tree.messages == 1
        assert tree.children == []

    def test_idempotent(self, swarm_storage):
        first = build_tree(swarm_storage, PROJECT, "ses-root")
        second = build_tree(swarm_storage, PROJECT, "ses-root")
        assert tree_to_dict(first) == tree_to_dict(second)


class TestScenarios:
    def test_single_session_with_one_diff(self, storage, add_session):
        add_session("root", created=1000)
        storage.add_messages_batch(
            [
                Message(id="m1", session_id="root", role="user", agent="build", created=1000),
                Message(
                    id="m2",
                    session_id="root",
                    role="assistant",
                    agent="build",
                    created=2000,
                    diffs=[FileDiff(file="app.py", additions=20, deletions=0)],
                ),
            ]
        )
        tree = build_tree(storage, PROJECT, "root")
        assert tree.diffs == 1
        assert tree.diff_tokens == 200
        assert tree.human_messages == 1
        assert tree.children == []

    def test_diff_count_matches_messages(self, storage, add_session, add_messages):
        add_session("root")
        diffs = [
            [FileDiff(file="a.py", additions=1)],
            [],
            [FileDiff(file="a.py", additions=2), FileDiff(file="b.py", deletions=4)],
        ]
        messages = add_messages("root", 3, diffs=diffs)
        tree = build_tree(storage, PROJECT, "root")
        assert tree.diffs == sum(len(m.diffs) for m in messages) == 3
        assert tree.files["a.py"].additions == 3
        assert tree.files["b.py"].deletions == 4

    def test_no_estimates_when_all_recorded(self, storage, add_session, add_messages):
        add_session("root")
        add_messages("root", 2, input_tokens=10, output_tokens=5)
        tree = build_tree(storage, PROJECT, "root")
        assert not tree.tokens.estimated
        assert tree.tokens.total == 30

    def test_human_messages_only_counted_at_root(self, storage, add_session):
        add_session("root", created=1)
        add_session("child", parent_id="root", created=2)
        storage.add_messages_batch(
            [
                Message(id="m1", session_id="root", role="user", created=10),
                Message(id="m2", session_id="child", role="user", created=20),
            ]
        )
        tree = build_tree(storage, PROJECT, "root")
        assert tree.human_messages == 1
        assert tree.children[0].human_messages == 0
        assert [e.agent for e in tree.timeline] == [HUMAN_AGENT, "unknown", "unknown"]

    def test_message_without_timestamp(self, storage, add_session):
        add_session("root")
        storage.add_message(Message(id="m1", session_id="root", agent="build"))
        tree = build_tree(storage, PROJECT, "root")
        assert tree.messages == 1
        assert tree.timeline == []
        assert tree.duration is None
        assert tree.agents["build"].duration is None

    def test_empty_session(self, storage, add_session):
        add_session("root")
        tree = build_tree(storage, PROJECT, "root")
        assert tree.messages == 0
        assert tree.agent is None
        assert tree.tokens.total == 0
        assert not tree.tokens.estimated


class TestMergedOrdering:
    @pytest.fixture
    def interleaved(self, storage, add_session):
        """Child activity falls between the parent's two messages."""
        add_session("root", created=1000)
        add_session("child", parent_id="root", created=3000)
        storage.add_messages_batch(
            [
                Message(id="r1", session_id="root", agent="build", created=1000, completed=2000),
                Message(id="r2", session_id="root", agent="build", created=5000, completed=6000),
                Message(id="c1", session_id="child", agent="coder", created=3000, completed=3500),
            ]
        )
        storage.add_tool_records_batch(
            [
                RawToolRecord(
                    id="prt-1",
                    message_id="c1",
                    part_type="tool",
                    tool="bash",
                    input={"command": "make"},
                    start=3100,
                    end=3200,
                )
            ]
        )
        return build_tree(storage, PROJECT, "root")

    def test_timeline_interleaves_children(self, interleaved):
        times = [e.time for e in interleaved.timeline]
        assert all(a <= b for a, b in zip(times, times[1:]))
        assert [(e.time, e.agent) for e in interleaved.timeline] == [
            (1000, "build"),
            (3000, "coder"),
            (5000, "build"),
        ]

    def test_flame_events_interleave_children(self, interleaved):
        starts = [e.start for e in interleaved.flame_events]
        assert all(a <= b for a, b in zip(starts, starts[1:]))
        assert [(e.type, e.name, e.start) for e in interleaved.flame_events] == [
            ("agent", "build", 1000),
            ("agent", "coder", 3000),
            ("tool", "bash", 3100),
            ("agent", "build", 5000),
        ]


class TestCycles:
    def test_two_session_cycle(self, storage):
        storage.upsert_sessions_batch(
            [
                Session(id="a", project_id=PROJECT, parent_id="b"),
                Session(id="b", project_id=PROJECT, parent_id="a"),
            ]
        )
        tree = build_tree(storage, PROJECT, "a")
        assert [c.id for c in tree.children] == ["b"]
        assert tree.children[0].children == []

    def test_self_parent(self, storage):
        storage.upsert_session(Session(id="a", project_id=PROJECT, parent_id="a"))
        tree = build_tree(storage, PROJECT, "a")
        assert tree.children == []

    def test_nested_siblings_are_not_cycles(self, storage, add_session):
        add_session("root", created=1)
        add_session("left", parent_id="root", created=2)
        add_session("right", parent_id="root", created=3)
        add_session("leaf", parent_id="left", created=4)
        tree = build_tree(storage, PROJECT, "root")
        assert [c.id for c in tree.children] == ["left", "right"]
        assert [c.id for c in tree.children[0].children] == ["leaf"]


def test_deep_chain(storage, add_session):
    add_session("s0", created=0)
    for i in range(1, 7):
        add_session(f"s{i}", parent_id=f"s{i - 1}", created=i)
    tree = build_tree(storage, PROJECT, "s0")
    depth = 0
    node = tree
    while node.children:
        node = node.children[0]
        depth += 1
    assert depth == 6
