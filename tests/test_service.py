"""Tests for beads.service."""

from pathlib import Path

import pytest

from beads.config import BeadsConfig
from beads.errors import CycleError, NotFoundError, ValidationError
from beads.models import Dependency, DependencyType, IssueFilter, IssueType, Status
from beads.service import IssueService
from beads.storage import MarkdownStorage


@pytest.fixture
def beads_root(tmp_path: Path) -> Path:
    return tmp_path / ".beads"


@pytest.fixture
def service(beads_root: Path) -> IssueService:
    storage = MarkdownStorage(beads_root)
    storage.ensure_initialized()
    return IssueService(storage, BeadsConfig(lock_timeout=1.0))


class TestCreateIssue:
    def test_creates_with_sequential_ids(self, service: IssueService):
        first = service.create_issue("First")
        second = service.create_issue("Second")

        assert first.id == "bd-1"
        assert second.id == "bd-2"
        assert service.get_issue("bd-1").title == "First"

    def test_uses_configured_prefix(self, beads_root: Path):
        storage = MarkdownStorage(beads_root)
        storage.ensure_initialized()
        service = IssueService(storage, BeadsConfig(id_prefix="proj"))
        assert service.create_issue("x").id == "proj-1"

    def test_defaults_and_normalization(self, service: IssueService):
        issue = service.create_issue(
            "  Padded title  ",
            description="  body  ",
            labels=["b", "a", "b"],
            type="bug",
            priority=0,
        )
        assert issue.title == "Padded title"
        assert issue.description == "body"
        assert issue.labels == ["a", "b"]
        assert issue.type == IssueType.BUG
        assert issue.status == Status.OPEN
        assert service.get_issue(issue.id) == issue

    def test_explicit_id(self, service: IssueService):
        issue = service.create_issue("x", issue_id="bd-42")
        assert issue.id == "bd-42"
        assert service.create_issue("y").id == "bd-43"

    def test_duplicate_explicit_id_rejected(self, service: IssueService):
        service.create_issue("x", issue_id="bd-42")
        with pytest.raises(ValidationError, match="already exists"):
            service.create_issue("y", issue_id="bd-42")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"title": ""},
            {"title": "   "},
            {"title": "x", "priority": 5},
            {"title": "x", "type": "story"},
            {"title": "x", "issue_id": "not an id"},
            {"title": "x", "estimated_minutes": -1},
            {"title": "x", "labels": [""]},
        ],
    )
    def test_invalid_input_rejected(self, service: IssueService, kwargs):
        with pytest.raises(ValidationError):
            service.create_issue(**kwargs)
        assert service.list_issues() == []

    def test_with_dependencies(self, service: IssueService):
        epic = service.create_issue("Epic", type="epic")
        blocker = service.create_issue("Blocker")
        child = service.create_issue(
            "Child",
            deps=[(epic.id, "parent_child"), (blocker.id, DependencyType.BLOCKS)],
        )

        assert service.get_dependencies(child.id) == [
            Dependency(child.id, epic.id, DependencyType.PARENT_CHILD),
            Dependency(child.id, blocker.id, DependencyType.BLOCKS),
        ]

    def test_missing_dependency_target_rejected(self, service: IssueService):
        with pytest.raises(NotFoundError):
            service.create_issue("x", deps=[("bd-404", "blocks")])
        assert service.list_issues() == []

    def test_marks_store_dirty(self, service: IssueService):
        calls = []
        service.add_mutation_listener(lambda: calls.append(1))
        service.create_issue("x")
        assert service.storage.is_dirty()
        assert calls == [1]


class TestGetIssue:
    def test_missing_issue_raises(self, service: IssueService):
        with pytest.raises(NotFoundError) as exc_info:
            service.get_issue("bd-404")
        assert exc_info.value.issue_id == "bd-404"

    def test_path_like_id_is_not_found(self, service: IssueService):
        (service.storage.root / "x.md").write_text("not an issue\n")
        with pytest.raises(NotFoundError):
            service.get_issue("../x")


class TestUpdateIssue:
    def test_updates_fields(self, service: IssueService):
        issue = service.create_issue("Old")
        updated = service.update_issue(
            issue.id,
            title="New",
            priority=1,
            status="in_progress",
            assignee="bob",
            labels=["x"],
            notes=" progress ",
            actual_minutes=15,
        )

        assert updated.title == "New"
        assert updated.priority == 1
        assert updated.status == Status.IN_PROGRESS
        assert updated.assignee == "bob"
        assert updated.labels == ["x"]
        assert updated.notes == "progress"
        assert updated.actual_minutes == 15
        assert updated.updated_at >= issue.updated_at
        assert service.get_issue(issue.id) == updated

    def test_unknown_field_rejected(self, service: IssueService):
        issue = service.create_issue("x")
        with pytest.raises(ValidationError, match="Cannot update"):
            service.update_issue(issue.id, id="bd-9")

    def test_cannot_close_via_update(self, service: IssueService):
        issue = service.create_issue("x")
        with pytest.raises(ValidationError, match="close"):
            service.update_issue(issue.id, status="closed")

    def test_missing_issue(self, service: IssueService):
        with pytest.raises(NotFoundError):
            service.update_issue("bd-404", title="x")

    def test_invalid_value_leaves_issue_untouched(self, service: IssueService):
        issue = service.create_issue("x")
        with pytest.raises(ValidationError):
            service.update_issue(issue.id, priority=9)
        assert service.get_issue(issue.id) == issue

    def test_moving_closed_issue_to_open_clears_close_fields(self, service: IssueService):
        issue = service.create_issue("x")
        service.close_issue(issue.id, "done")
        updated = service.update_issue(issue.id, status="open")
        assert updated.closed_at is None
        assert updated.close_reason == ""


class TestCloseAndReopen:
    def test_close_records_reason(self, service: IssueService):
        issue = service.create_issue("x")
        closed = service.close_issue(issue.id, "Done")

        assert closed.status == Status.CLOSED
        assert closed.close_reason == "Done"
        assert closed.closed_at is not None

    def test_close_requires_reason(self, service: IssueService):
        issue = service.create_issue("x")
        with pytest.raises(ValidationError, match="reason"):
            service.close_issue(issue.id, "  ")

    def test_close_twice_rejected(self, service: IssueService):
        issue = service.create_issue("x")
        service.close_issue(issue.id, "Done")
        with pytest.raises(ValidationError, match="already closed"):
            service.close_issue(issue.id, "Again")

    def test_reopen(self, service: IssueService):
        issue = service.create_issue("x")
        service.close_issue(issue.id, "Done")
        reopened = service.reopen_issue(issue.id)

        assert reopened.status == Status.OPEN
        assert reopened.closed_at is None
        assert reopened.close_reason == ""

    def test_reopen_open_issue_rejected(self, service: IssueService):
        issue = service.create_issue("x")
        with pytest.raises(ValidationError, match="not closed"):
            service.reopen_issue(issue.id)


class TestListIssues:
    def test_sorted_by_priority_then_age(self, service: IssueService):
        service.create_issue("low", priority=3)
        service.create_issue("high", priority=0)
        service.create_issue("mid", priority=2)
        service.create_issue("mid2", priority=2)

        assert [i.title for i in service.list_issues()] == ["high", "mid", "mid2", "low"]

    def test_filters(self, service: IssueService):
        service.create_issue("a", assignee="alice", labels=["api"])
        service.create_issue("b", assignee="bob", labels=["api", "db"], type="bug")
        closed = service.create_issue("c", assignee="alice")
        service.close_issue(closed.id, "done")

        assert [i.title for i in service.list_issues(IssueFilter(assignee="alice"))] == ["a", "c"]
        assert [i.title for i in service.list_issues(IssueFilter(labels=["db"]))] == ["b"]
        assert [i.title for i in service.list_issues(IssueFilter(type=IssueType.BUG))] == ["b"]
        assert [i.title for i in service.list_issues(IssueFilter(status=Status.CLOSED))] == ["c"]
        assert len(service.list_issues(IssueFilter(limit=2))) == 2

    def test_zero_limit_rejected(self, service: IssueService):
        service.create_issue("a")
        with pytest.raises(ValidationError):
            service.list_issues(IssueFilter(limit=0))


class TestDependencies:
    def test_add_and_remove(self, service: IssueService):
        a = service.create_issue("a")
        b = service.create_issue("b")

        assert service.add_dependency(b.id, a.id) is True
        assert service.add_dependency(b.id, a.id) is False
        assert service.get_dependents(a.id) == [Dependency(b.id, a.id)]

        removed = service.remove_dependency(b.id, a.id)
        assert removed == [Dependency(b.id, a.id)]
        assert service.get_dependencies(b.id) == []

    def test_add_requires_both_issues(self, service: IssueService):
        a = service.create_issue("a")
        with pytest.raises(NotFoundError):
            service.add_dependency(a.id, "bd-404")
        with pytest.raises(NotFoundError):
            service.add_dependency("bd-404", a.id)

    def test_self_loop_rejected(self, service: IssueService):
        a = service.create_issue("a")
        with pytest.raises(ValidationError):
            service.add_dependency(a.id, a.id, "related")

    def test_cycle_rejected_and_store_unchanged(self, service: IssueService):
        a = service.create_issue("a")
        b = service.create_issue("b")
        c = service.create_issue("c")
        service.add_dependency(b.id, a.id)
        service.add_dependency(c.id, b.id)

        with pytest.raises(CycleError) as exc_info:
            service.add_dependency(a.id, c.id)
        assert exc_info.value.path == [a.id, c.id, b.id, a.id]
        assert service.storage.read_dependencies() == sorted(
            [Dependency(b.id, a.id), Dependency(c.id, b.id)]
        )
        assert service.find_cycles() == []

    def test_remove_missing_edge(self, service: IssueService):
        a = service.create_issue("a")
        b = service.create_issue("b")
        with pytest.raises(NotFoundError):
            service.remove_dependency(a.id, b.id)


class TestReadyWork:
    def test_epic_blocked_hides_children(self, service: IssueService):
        epic = service.create_issue("Epic", type="epic")
        child = service.create_issue("Child", deps=[(epic.id, "parent_child")])
        blocker = service.create_issue("Blocker")
        service.add_dependency(epic.id, blocker.id, "blocks")

        ready_ids = [i.id for i in service.get_ready_issues()]
        blocked_ids = [b.issue.id for b in service.get_blocked_issues()]

        assert epic.id not in ready_ids
        assert child.id not in ready_ids
        assert blocker.id in ready_ids
        assert sorted(blocked_ids) == sorted([epic.id, child.id])

    def test_closing_in_chain_unblocks_next(self, service: IssueService):
        design = service.create_issue("Design")
        implement = service.create_issue("Implement", deps=[(design.id, "blocks")])
        test = service.create_issue("Test", deps=[(implement.id, "blocks")])
        service.create_issue("Deploy", deps=[(test.id, "blocks")])

        assert [i.title for i in service.get_ready_issues()] == ["Design"]

        service.close_issue(design.id, "Approved")
        assert [i.title for i in service.get_ready_issues()] == ["Implement"]

    def test_closed_parent_no_longer_blocks_children(self, service: IssueService):
        blocker = service.create_issue("Blocker")
        epic = service.create_issue("Epic", type="epic", deps=[(blocker.id, "blocks")])
        child = service.create_issue("Child", deps=[(epic.id, "parent_child")])
        assert not service.is_ready(child.id)

        service.close_issue(epic.id, "Descoped")

        assert service.is_ready(child.id)
        assert [b.issue.id for b in service.get_blocked_issues()] == []

    def test_ready_filters(self, service: IssueService):
        service.create_issue("a", priority=1, assignee="alice")
        service.create_issue("b", priority=1)
        service.create_issue("c", priority=3, assignee="alice")

        result = service.get_ready_issues(IssueFilter(assignee="alice", limit=1))
        assert [i.title for i in result] == ["a"]

    def test_is_ready(self, service: IssueService):
        a = service.create_issue("a")
        b = service.create_issue("b", deps=[(a.id, "blocks")])
        assert service.is_ready(a.id)
        assert not service.is_ready(b.id)
        with pytest.raises(NotFoundError):
            service.is_ready("bd-404")


class TestDependencyTree:
    def test_tree_marks_repeated_nodes(self, service: IssueService):
        a = service.create_issue("a")
        b = service.create_issue("b", deps=[(a.id, "blocks")])
        c = service.create_issue("c", deps=[(a.id, "blocks"), (b.id, "blocks")])

        tree = service.dependency_tree(c.id)

        assert tree.issue.id == c.id
        assert tree.depth == 0
        assert tree.ready is False
        assert [n.issue.id for n in tree.children] == [a.id, b.id]
        first_a, via_b = tree.children
        assert first_a.repeated is False
        assert first_a.ready is True
        assert via_b.children[0].issue.id == a.id
        assert via_b.children[0].repeated is True
        assert via_b.children[0].depth == 2

    def test_max_depth(self, service: IssueService):
        a = service.create_issue("a")
        b = service.create_issue("b", deps=[(a.id, "blocks")])
        tree = service.dependency_tree(b.id, max_depth=0)
        assert tree.children == []

    def test_missing_root(self, service: IssueService):
        with pytest.raises(NotFoundError):
            service.dependency_tree("bd-404")


class TestStats:
    def test_counts(self, service: IssueService):
        a = service.create_issue("a")
        service.create_issue("b", deps=[(a.id, "blocks")])
        c = service.create_issue("c")
        service.update_issue(c.id, status="in_progress")
        d = service.create_issue("d")
        service.close_issue(d.id, "done")
        e = service.create_issue("e")
        service.update_issue(e.id, status="blocked")

        stats = service.stats()
        assert stats.total == 5
        assert stats.open == 2
        assert stats.ready == 1
        assert stats.blocked == 1
        assert stats.in_progress == 1
        assert stats.closed == 1
        assert stats.blocked_status == 1


class TestIsolation:
    def test_two_stores_in_one_process(self, tmp_path: Path):
        services = []
        for name in ("one", "two"):
            storage = MarkdownStorage(tmp_path / name / ".beads")
            storage.ensure_initialized()
            services.append(IssueService(storage))

        services[0].create_issue("only in one")
        assert services[1].list_issues() == []
        assert services[1].create_issue("x").id == "bd-1"

    def test_open_reads_config(self, beads_root: Path):
        beads_root.mkdir(parents=True)
        (beads_root / "config.yml").write_text("id_prefix: web\n")
        service = IssueService.open(beads_root)
        assert service.create_issue("x").id == "web-1"
        assert service.jsonl_path == beads_root / "issues.jsonl"
