"""Business logic service for the beads issue tracker."""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from beads.config import BeadsConfig, load_config
from beads.cycles import find_cycles
from beads.errors import NotFoundError, ValidationError
from beads.graph import DependencyGraph
from beads.locking import StoreLock
from beads.models import (
    Dependency,
    DependencyType,
    Issue,
    IssueFilter,
    IssueType,
    Status,
    clean_text,
    generate_id,
    natural_key,
    parse_enum,
    validate_effort,
    validate_id,
    validate_priority,
)
from beads.resolver import MAX_HIERARCHY_DEPTH, BlockedIssue, BlockingResolver
from beads.storage import MarkdownStorage

log = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "title",
    "description",
    "status",
    "priority",
    "type",
    "assignee",
    "labels",
    "design",
    "notes",
    "acceptance_criteria",
    "estimated_minutes",
    "actual_minutes",
}


@dataclass
class TreeNode:
    issue: Issue
    depth: int
    ready: bool
    repeated: bool = False  # already shown elsewhere in the tree
    children: list["TreeNode"] = field(default_factory=list)


@dataclass
class Statistics:
    total: int = 0
    open: int = 0
    in_progress: int = 0
    blocked_status: int = 0
    closed: int = 0
    ready: int = 0
    blocked: int = 0


def sort_issues(issues: Iterable[Issue]) -> list[Issue]:
    return sorted(issues, key=lambda i: (i.priority, i.created_at, natural_key(i.id)))


def normalize_labels(labels: Iterable[str] | None, issue_id: str | None = None) -> list[str]:
    result = set()
    for label in labels or []:
        if not isinstance(label, str) or not label.strip():
            raise ValidationError(f"Invalid label {label!r}", field="labels", issue_id=issue_id)
        result.add(label.strip())
    return sorted(result)


class IssueService:
    """Business logic layer for issue operations.

    An IssueService is the explicit handle for one store; nothing here is
    module-global, so several stores can be used from one process.
    """

    def __init__(self, storage: MarkdownStorage, config: BeadsConfig | None = None):
        self.storage = storage
        self.config = config or BeadsConfig()
        self.lock = StoreLock(storage.lock_path, timeout=self.config.lock_timeout)
        self._listeners: list[Callable[[], None]] = []

    @classmethod
    def open(cls, root: Path) -> "IssueService":
        """Open the store rooted at a .beads directory."""
        storage = MarkdownStorage(root)
        storage.ensure_initialized()
        return cls(storage, load_config(root))

    @property
    def jsonl_path(self) -> Path:
        return self.storage.root / self.config.jsonl_filename

    def add_mutation_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def remove_mutation_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _mark_dirty(self) -> None:
        self.storage.mark_dirty()
        for listener in list(self._listeners):
            listener()

    def load_graph(self) -> DependencyGraph:
        return DependencyGraph.build(self.storage.read_dependencies())

    def _snapshot(self) -> tuple[dict[str, Issue], DependencyGraph]:
        issues = {issue.id: issue for issue in self.storage.read_all_issues()}
        return issues, self.load_graph()

    def _require(self, issue_id: str) -> Issue:
        issue = self.storage.read_issue(issue_id)
        if issue is None:
            raise NotFoundError(issue_id)
        return issue

    # Issue store

    def create_issue(
        self,
        title: str,
        description: str = "",
        priority: int = 2,
        type: IssueType | str = IssueType.TASK,
        assignee: str | None = None,
        labels: list[str] | None = None,
        issue_id: str | None = None,
        design: str = "",
        notes: str = "",
        acceptance_criteria: str = "",
        estimated_minutes: float | None = None,
        deps: Iterable[tuple[str, DependencyType | str]] | None = None,
    ) -> Issue:
        """Create a new issue, optionally with an explicit id and outgoing edges.

        Raises:
            ValidationError: For bad field values, a taken id or a self-loop.
            NotFoundError: If a dependency target doesn't exist.
            CycleError: If a blocks dependency would create a cycle.
        """
        title = clean_text(title, "title", issue_id)
        if not title:
            raise ValidationError("Title must not be empty", field="title", issue_id=issue_id)

        with self.lock.exclusive():
            existing_ids = set(self.storage.list_issue_ids())
            if issue_id is None:
                issue_id = generate_id(self.config.id_prefix, existing_ids)
            else:
                validate_id(issue_id)
                if issue_id in existing_ids:
                    raise ValidationError(
                        f"Issue id already exists: {issue_id}", field="id", issue_id=issue_id
                    )

            issue = Issue(
                id=issue_id,
                title=title,
                description=clean_text(description, "description", issue_id),
                priority=validate_priority(priority, issue_id),
                type=parse_enum(IssueType, type, "type", issue_id),
                assignee=assignee or None,
                labels=normalize_labels(labels, issue_id),
                design=clean_text(design, "design", issue_id),
                notes=clean_text(notes, "notes", issue_id),
                acceptance_criteria=clean_text(acceptance_criteria, "acceptance_criteria", issue_id),
                estimated_minutes=validate_effort(estimated_minutes, "estimated_minutes", issue_id),
            )

            graph = None
            for to_id, dep_type in deps or []:
                dep_type = parse_enum(DependencyType, dep_type, "dependency type", issue_id)
                if to_id not in existing_ids:
                    raise NotFoundError(to_id)
                if graph is None:
                    graph = self.load_graph()
                graph.add_edge(issue_id, to_id, dep_type)

            with self.storage.transaction() as txn:
                txn.write_issue(issue)
                if graph is not None:
                    txn.write_dependencies(graph.all_edges())
            self._mark_dirty()

        log.info("Created %s: %s", issue.id, issue.title)
        return issue

    def get_issue(self, issue_id: str) -> Issue:
        """Get an issue by ID.

        Raises:
            NotFoundError: If the issue doesn't exist.
        """
        return self._require(issue_id)

    def update_issue(self, issue_id: str, **fields: object) -> Issue:
        """Update fields of an existing issue.

        Closing goes through close_issue so that a reason is recorded.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Cannot update field(s): {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
                issue_id=issue_id,
            )

        with self.lock.exclusive():
            issue = self._require(issue_id)
            for name, value in fields.items():
                if name == "title":
                    value = clean_text(value, "title", issue_id)
                    if not value:
                        raise ValidationError("Title must not be empty", field="title", issue_id=issue_id)
                elif name == "status":
                    value = parse_enum(Status, value, "status", issue_id)
                    if value == Status.CLOSED and issue.status != Status.CLOSED:
                        raise ValidationError(
                            "Use close to close an issue", field="status", issue_id=issue_id
                        )
                    if value != Status.CLOSED:
                        issue.closed_at = None
                        issue.close_reason = ""
                elif name == "priority":
                    value = validate_priority(value, issue_id)
                elif name == "type":
                    value = parse_enum(IssueType, value, "type", issue_id)
                elif name == "labels":
                    value = normalize_labels(value, issue_id)
                elif name == "assignee":
                    value = value or None
                elif name in ("estimated_minutes", "actual_minutes"):
                    value = validate_effort(value, name, issue_id)
                else:
                    value = clean_text(value, name, issue_id)
                setattr(issue, name, value)

            issue.updated_at = datetime.now()
            self.storage.write_issue(issue)
            self._mark_dirty()

        log.info("Updated %s (%s)", issue_id, ", ".join(sorted(fields)))
        return issue

    def close_issue(self, issue_id: str, reason: str) -> Issue:
        """Close an issue with a non-empty reason."""
        reason = clean_text(reason, "reason", issue_id)
        if not reason:
            raise ValidationError("A close reason is required", field="reason", issue_id=issue_id)

        with self.lock.exclusive():
            issue = self._require(issue_id)
            if issue.status == Status.CLOSED:
                raise ValidationError(f"Issue {issue_id} is already closed", field="status", issue_id=issue_id)
            now = datetime.now()
            issue.status = Status.CLOSED
            issue.close_reason = reason
            issue.closed_at = now
            issue.updated_at = now
            self.storage.write_issue(issue)
            self._mark_dirty()

        log.info("Closed %s: %s", issue_id, reason)
        return issue

    def reopen_issue(self, issue_id: str) -> Issue:
        """Move a closed issue back to open."""
        with self.lock.exclusive():
            issue = self._require(issue_id)
            if issue.status != Status.CLOSED:
                raise ValidationError(f"Issue {issue_id} is not closed", field="status", issue_id=issue_id)
            issue.status = Status.OPEN
            issue.closed_at = None
            issue.close_reason = ""
            issue.updated_at = datetime.now()
            self.storage.write_issue(issue)
            self._mark_dirty()

        log.info("Reopened %s", issue_id)
        return issue

    def list_issues(self, filter: IssueFilter | None = None) -> list[Issue]:
        """List issues matching every set filter field."""
        filter = filter or IssueFilter()
        with self.lock.shared():
            issues = self.storage.read_all_issues()
        issues = sort_issues(i for i in issues if filter.matches(i))
        if filter.limit is not None:
            issues = issues[: filter.limit]
        return issues

    # Dependency graph

    def add_dependency(
        self,
        from_id: str,
        to_id: str,
        type: DependencyType | str = DependencyType.BLOCKS,
    ) -> bool:
        """
        Add edge: from_id depends on to_id. Returns False if it already existed.

        Raises:
            NotFoundError: If either issue doesn't exist.
            ValidationError: For a self-loop or unknown type.
            CycleError: If adding a blocks edge would create a cycle.
        """
        type = parse_enum(DependencyType, type, "dependency type", from_id)
        with self.lock.exclusive():
            self._require(from_id)
            self._require(to_id)
            graph = self.load_graph()
            added = graph.add_edge(from_id, to_id, type)
            if added:
                self.storage.write_dependencies(graph.all_edges())
                self._mark_dirty()

        if added:
            log.info("Added %s dependency %s -> %s", type.value, from_id, to_id)
        return added

    def remove_dependency(self, from_id: str, to_id: str) -> list[Dependency]:
        """Remove every edge from from_id to to_id.

        Raises:
            NotFoundError: If no such edge exists.
        """
        with self.lock.exclusive():
            graph = self.load_graph()
            removed = graph.remove_edge(from_id, to_id)
            self.storage.write_dependencies(graph.all_edges())
            self._mark_dirty()

        log.info("Removed %d dependency edge(s) %s -> %s", len(removed), from_id, to_id)
        return removed

    def get_dependencies(self, issue_id: str) -> list[Dependency]:
        """Outgoing edges of an issue."""
        self._require(issue_id)
        return self.load_graph().edges_from(issue_id)

    def get_dependents(self, issue_id: str) -> list[Dependency]:
        """Incoming edges of an issue."""
        self._require(issue_id)
        return self.load_graph().edges_to(issue_id)

    def find_cycles(self) -> list[list[str]]:
        with self.lock.shared():
            graph = self.load_graph()
        return find_cycles(graph)

    # Blocking queries

    def resolver(self) -> BlockingResolver:
        """A resolver over a fresh snapshot of the store."""
        with self.lock.shared():
            issues, graph = self._snapshot()
        return BlockingResolver(issues, graph)

    def is_ready(self, issue_id: str) -> bool:
        return self.resolver().is_ready(issue_id)

    def get_ready_issues(self, filter: IssueFilter | None = None) -> list[Issue]:
        """Get unblocked open issues ready for work, with filters."""
        filter = filter or IssueFilter()
        ready = sort_issues(i for i in self.resolver().ready() if filter.matches(i))
        if filter.limit is not None:
            ready = ready[: filter.limit]
        return ready

    def get_blocked_issues(self) -> list[BlockedIssue]:
        """Open issues that are not ready, with the reasons."""
        blocked = self.resolver().blocked()
        order = {issue.id: n for n, issue in enumerate(sort_issues(b.issue for b in blocked))}
        return sorted(blocked, key=lambda b: order[b.issue.id])

    def dependency_tree(self, issue_id: str, max_depth: int = MAX_HIERARCHY_DEPTH) -> TreeNode:
        """Tree of what issue_id is blocked by, following blocks edges."""
        resolver = self.resolver()
        root_issue = resolver.issues.get(issue_id)
        if root_issue is None:
            raise NotFoundError(issue_id)

        seen: set[str] = set()

        def build(issue: Issue, depth: int) -> TreeNode:
            node = TreeNode(
                issue=issue,
                depth=depth,
                ready=resolver.is_ready(issue.id),
                repeated=issue.id in seen,
            )
            if node.repeated or depth >= max_depth:
                return node
            seen.add(issue.id)
            for blocker_id in sorted(resolver.graph.blockers_of(issue.id), key=natural_key):
                blocker = resolver.issues.get(blocker_id)
                if blocker is not None:
                    node.children.append(build(blocker, depth + 1))
            return node

        return build(root_issue, 0)

    def stats(self) -> Statistics:
        resolver = self.resolver()
        stats = Statistics(total=len(resolver.issues))
        for issue_id, issue in resolver.issues.items():
            if issue.status == Status.OPEN:
                stats.open += 1
                if resolver.is_ready(issue_id):
                    stats.ready += 1
                else:
                    stats.blocked += 1
            elif issue.status == Status.IN_PROGRESS:
                stats.in_progress += 1
            elif issue.status == Status.BLOCKED:
                stats.blocked_status += 1
            else:
                stats.closed += 1
        return stats
