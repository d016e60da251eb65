"""Tests for beads.models."""

import pytest

from beads.errors import ValidationError
from beads.models import (
    Dependency,
    DependencyType,
    Issue,
    IssueFilter,
    IssueType,
    Status,
    clean_text,
    generate_id,
    id_number,
    natural_key,
    parse_enum,
    validate_id,
    validate_priority,
)


class TestStatus:
    def test_enum_values(self):
        assert Status.OPEN.value == "open"
        assert Status.IN_PROGRESS.value == "in_progress"
        assert Status.BLOCKED.value == "blocked"
        assert Status.CLOSED.value == "closed"

    def test_from_string(self):
        assert Status("open") == Status.OPEN
        assert Status("in_progress") == Status.IN_PROGRESS


class TestIssue:
    def test_defaults(self):
        issue = Issue(id="bd-1", title="Test issue")
        assert issue.status == Status.OPEN
        assert issue.priority == 2
        assert issue.type == IssueType.TASK
        assert issue.assignee is None
        assert issue.labels == []
        assert issue.design == ""
        assert issue.closed_at is None

    def test_is_open(self):
        issue = Issue(id="bd-1", title="Test")
        assert issue.is_open() is True

        issue.status = Status.IN_PROGRESS
        assert issue.is_open() is True

        issue.status = Status.CLOSED
        assert issue.is_open() is False

    def test_content_hash_ignores_id_and_timestamps(self):
        issue1 = Issue(id="bd-1", title="Test", description="desc", notes="n")
        issue2 = Issue(id="bd-2", title="Test", description="desc", notes="n")
        assert issue1.content_hash == issue2.content_hash

    def test_content_hash_ignores_label_order(self):
        issue1 = Issue(id="bd-1", title="Test", labels=["b", "a"])
        issue2 = Issue(id="bd-1", title="Test", labels=["a", "b"])
        assert issue1.content_hash == issue2.content_hash

    def test_content_hash_changes_with_content(self):
        issue1 = Issue(id="bd-1", title="Test A")
        issue2 = Issue(id="bd-1", title="Test B")
        assert issue1.content_hash != issue2.content_hash

        issue3 = Issue(id="bd-1", title="Test A", priority=0)
        assert issue1.content_hash != issue3.content_hash


class TestDependency:
    def test_sorts_by_endpoints_then_type(self):
        deps = [
            Dependency("bd-2", "bd-1", DependencyType.RELATED),
            Dependency("bd-1", "bd-3"),
            Dependency("bd-2", "bd-1", DependencyType.BLOCKS),
        ]
        assert sorted(deps) == [
            Dependency("bd-1", "bd-3"),
            Dependency("bd-2", "bd-1", DependencyType.BLOCKS),
            Dependency("bd-2", "bd-1", DependencyType.RELATED),
        ]

    def test_hashable(self):
        assert len({Dependency("a-1", "a-2"), Dependency("a-1", "a-2")}) == 1


class TestIssueFilter:
    def test_empty_filter_matches_everything(self):
        assert IssueFilter().matches(Issue(id="bd-1", title="x"))

    def test_filters_combine_with_and(self):
        issue = Issue(id="bd-1", title="x", priority=1, assignee="alice", labels=["api", "db"])
        assert IssueFilter(priority=1, assignee="alice").matches(issue)
        assert not IssueFilter(priority=1, assignee="bob").matches(issue)
        assert IssueFilter(labels=["api"]).matches(issue)
        assert IssueFilter(labels=["api", "db"]).matches(issue)
        assert not IssueFilter(labels=["api", "ui"]).matches(issue)
        assert not IssueFilter(type=IssueType.BUG).matches(issue)

    @pytest.mark.parametrize("limit", [0, -1, True, "2"])
    def test_limit_must_be_positive(self, limit):
        with pytest.raises(ValidationError) as exc_info:
            IssueFilter(limit=limit)
        assert exc_info.value.field == "limit"

    def test_limit_of_one_allowed(self):
        assert IssueFilter(limit=1).limit == 1


class TestValidation:
    @pytest.mark.parametrize("value", [0, 2, 4])
    def test_priority_in_range(self, value):
        assert validate_priority(value) == value

    @pytest.mark.parametrize("value", [-1, 5, "1", 1.5, True])
    def test_priority_rejected(self, value):
        with pytest.raises(ValidationError) as exc_info:
            validate_priority(value, "bd-7")
        assert exc_info.value.field == "priority"
        assert exc_info.value.issue_id == "bd-7"

    def test_validate_id(self):
        assert validate_id("bd-12") == "bd-12"
        assert validate_id("my.proj-a3f8") == "my.proj-a3f8"
        for bad in ["", "bd", "-12", "bd-", "bd 1", None]:
            with pytest.raises(ValidationError):
                validate_id(bad)

    def test_parse_enum(self):
        assert parse_enum(IssueType, "bug", "type") == IssueType.BUG
        assert parse_enum(IssueType, IssueType.BUG, "type") == IssueType.BUG
        with pytest.raises(ValidationError, match="expected one of"):
            parse_enum(IssueType, "story", "type")

    def test_clean_text(self):
        assert clean_text("  hello \n", "notes") == "hello"
        assert clean_text(None, "notes") == ""
        with pytest.raises(ValidationError):
            clean_text(3, "notes")


class TestIds:
    def test_id_number(self):
        assert id_number("bd-12", "bd") == 12
        assert id_number("bd-a3f8", "bd") is None
        assert id_number("xy-3", "bd") is None

    def test_generate_id_starts_at_one(self):
        assert generate_id("bd", set()) == "bd-1"

    def test_generate_id_uses_max_suffix(self):
        assert generate_id("bd", {"bd-1", "bd-7", "bd-3", "other-99"}) == "bd-8"

    def test_natural_key_orders_numbers(self):
        ids = ["bd-10", "bd-2", "bd-1", "abc-3"]
        assert sorted(ids, key=natural_key) == ["abc-3", "bd-1", "bd-2", "bd-10"]
