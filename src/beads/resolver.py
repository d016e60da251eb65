"""Ready/blocked computation with hierarchical blocking."""

from dataclasses import dataclass, field

from beads.errors import NotFoundError
from beads.graph import DependencyGraph
from beads.models import Issue, Status

MAX_HIERARCHY_DEPTH = 50


@dataclass
class BlockedIssue:
    issue: Issue
    blockers: list[str] = field(default_factory=list)  # open direct blockers
    blocked_ancestors: list[str] = field(default_factory=list)  # within MAX_HIERARCHY_DEPTH


class BlockingResolver:
    """Evaluates readiness against one snapshot of issues and edges.

    Build a new resolver per query: memoized results are only valid for the
    snapshot it was constructed with.
    """

    def __init__(
        self,
        issues: dict[str, Issue],
        graph: DependencyGraph,
        max_depth: int = MAX_HIERARCHY_DEPTH,
    ):
        self.issues = issues
        self.graph = graph
        self.max_depth = max_depth
        self._open_blockers: dict[str, list[str]] = {}
        self._ancestor_blocked: dict[tuple[str, int], bool] = {}

    def _get(self, issue_id: str) -> Issue:
        issue = self.issues.get(issue_id)
        if issue is None:
            raise NotFoundError(issue_id)
        return issue

    def open_blockers(self, issue_id: str) -> list[str]:
        """Direct blockers that are not closed. Unknown blocker ids are ignored."""
        if issue_id not in self._open_blockers:
            self._open_blockers[issue_id] = sorted(
                blocker_id
                for blocker_id in self.graph.blockers_of(issue_id)
                if (blocker := self.issues.get(blocker_id)) is not None
                and blocker.status != Status.CLOSED
            )
        return self._open_blockers[issue_id]

    def _blocks_descendants(self, parent_id: str) -> bool:
        """Whether the parent's own open blockers hold back its children. Closed parents never do."""
        parent = self.issues.get(parent_id)
        if parent is not None and parent.status == Status.CLOSED:
            return False
        return bool(self.open_blockers(parent_id))

    def _has_blocked_ancestor(self, issue_id: str, depth_left: int) -> bool:
        """Whether a non-closed parent within depth_left hops has an open direct blocker."""
        if depth_left <= 0:
            return False
        key = (issue_id, depth_left)
        if key not in self._ancestor_blocked:
            self._ancestor_blocked[key] = any(
                self._blocks_descendants(parent_id)
                or self._has_blocked_ancestor(parent_id, depth_left - 1)
                for parent_id in sorted(self.graph.parents_of(issue_id))
            )
        return self._ancestor_blocked[key]

    def blocked_ancestors(self, issue_id: str) -> list[str]:
        """Non-closed ancestors within max_depth hops that have open direct blockers."""
        found: set[str] = set()
        seen: set[str] = {issue_id}
        frontier = [issue_id]
        for _ in range(self.max_depth):
            next_frontier = []
            for current in frontier:
                for parent_id in self.graph.parents_of(current):
                    if self._blocks_descendants(parent_id):
                        found.add(parent_id)
                    if parent_id not in seen:
                        seen.add(parent_id)
                        next_frontier.append(parent_id)
            frontier = next_frontier
        return sorted(found)

    def hierarchically_blocked(self, issue_id: str) -> bool:
        self._get(issue_id)
        return self._has_blocked_ancestor(issue_id, self.max_depth)

    def is_ready(self, issue_id: str) -> bool:
        issue = self._get(issue_id)
        return (
            issue.status == Status.OPEN
            and not self.open_blockers(issue_id)
            and not self._has_blocked_ancestor(issue_id, self.max_depth)
        )

    def is_blocked(self, issue_id: str) -> bool:
        issue = self._get(issue_id)
        return issue.status == Status.OPEN and not self.is_ready(issue_id)

    def ready(self) -> list[Issue]:
        return [issue for issue_id, issue in self.issues.items() if self.is_ready(issue_id)]

    def blocked(self) -> list[BlockedIssue]:
        return [
            BlockedIssue(
                issue=issue,
                blockers=self.open_blockers(issue_id),
                blocked_ancestors=self.blocked_ancestors(issue_id),
            )
            for issue_id, issue in self.issues.items()
            if self.is_blocked(issue_id)
        ]
