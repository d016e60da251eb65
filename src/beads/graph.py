"""Dependency graph for the beads issue tracker."""

from collections import defaultdict
from dataclasses import dataclass, field

from beads.errors import CycleError, NotFoundError, ValidationError
from beads.models import Dependency, DependencyType

EdgeTable = dict[str, dict[DependencyType, set[str]]]


def _table() -> EdgeTable:
    return defaultdict(lambda: defaultdict(set))


@dataclass
class DependencyGraph:
    """Adjacency table of typed edges keyed by issue id.

    outgoing[a][type] holds every b with an edge (a, b, type); incoming is
    the mirror image.
    """

    outgoing: EdgeTable = field(default_factory=_table)
    incoming: EdgeTable = field(default_factory=_table)

    @classmethod
    def build(cls, dependencies: list[Dependency]) -> "DependencyGraph":
        """Build the graph from stored edges without running the cycle guard."""
        graph = cls()
        for dep in dependencies:
            graph._insert(dep.from_id, dep.to_id, dep.type)
        return graph

    def _insert(self, from_id: str, to_id: str, type: DependencyType) -> None:
        self.outgoing[from_id][type].add(to_id)
        self.incoming[to_id][type].add(from_id)

    def _targets(self, issue_id: str, type: DependencyType) -> set[str]:
        if issue_id not in self.outgoing:
            return set()
        return self.outgoing[issue_id].get(type, set())

    def _sources(self, issue_id: str, type: DependencyType) -> set[str]:
        if issue_id not in self.incoming:
            return set()
        return self.incoming[issue_id].get(type, set())

    def has_edge(self, from_id: str, to_id: str, type: DependencyType) -> bool:
        return to_id in self._targets(from_id, type)

    def add_edge(
        self, from_id: str, to_id: str, type: DependencyType = DependencyType.BLOCKS
    ) -> bool:
        """
        Add edge (from_id, to_id, type). Returns False if it already existed.

        Raises:
            ValidationError: For a self-loop.
            CycleError: If a blocks edge would close a cycle. The graph is unchanged.
        """
        if from_id == to_id:
            raise ValidationError(
                f"Issue {from_id} cannot depend on itself", field="dependencies", issue_id=from_id
            )
        if self.has_edge(from_id, to_id, type):
            return False
        if type == DependencyType.BLOCKS:
            path = self.find_blocking_path(to_id, from_id)
            if path is not None:
                raise CycleError(from_id, to_id, [from_id, *path])
        self._insert(from_id, to_id, type)
        return True

    def insert_unchecked(self, dep: Dependency) -> bool:
        """Bulk-load an edge without the cycle guard. Returns False if present."""
        if self.has_edge(dep.from_id, dep.to_id, dep.type):
            return False
        self._insert(dep.from_id, dep.to_id, dep.type)
        return True

    def remove_edge(self, from_id: str, to_id: str) -> list[Dependency]:
        """Remove every edge from from_id to to_id regardless of type."""
        removed = [
            Dependency(from_id, to_id, type)
            for type, targets in self.outgoing.get(from_id, {}).items()
            if to_id in targets
        ]
        if not removed:
            raise NotFoundError(
                from_id, f"No dependency from {from_id} to {to_id}"
            )
        for dep in removed:
            self.outgoing[from_id][dep.type].discard(to_id)
            self.incoming[to_id][dep.type].discard(from_id)
        return removed

    def find_blocking_path(self, start: str, goal: str) -> list[str] | None:
        """Path from start to goal following blocks edges (blocked -> blocker), or None."""
        parents: dict[str, str | None] = {start: None}
        stack = [start]

        while stack:
            current = stack.pop()
            if current == goal:
                path = [current]
                while (prev := parents[path[-1]]) is not None:
                    path.append(prev)
                return list(reversed(path))
            for blocker in sorted(self._targets(current, DependencyType.BLOCKS)):
                if blocker not in parents:
                    parents[blocker] = current
                    stack.append(blocker)

        return None

    def blockers_of(self, issue_id: str) -> set[str]:
        """Get IDs of issues blocking the given issue."""
        return set(self._targets(issue_id, DependencyType.BLOCKS))

    def dependents_of(self, issue_id: str) -> set[str]:
        """Get IDs of issues blocked by the given issue."""
        return set(self._sources(issue_id, DependencyType.BLOCKS))

    def parents_of(self, issue_id: str) -> set[str]:
        return set(self._targets(issue_id, DependencyType.PARENT_CHILD))

    def children_of(self, issue_id: str) -> set[str]:
        return set(self._sources(issue_id, DependencyType.PARENT_CHILD))

    def edges_from(self, issue_id: str) -> list[Dependency]:
        return sorted(
            Dependency(issue_id, to_id, type)
            for type, targets in self.outgoing.get(issue_id, {}).items()
            for to_id in targets
        )

    def edges_to(self, issue_id: str) -> list[Dependency]:
        return sorted(
            Dependency(from_id, issue_id, type)
            for type, sources in self.incoming.get(issue_id, {}).items()
            for from_id in sources
        )

    def all_edges(self) -> list[Dependency]:
        return sorted(
            Dependency(from_id, to_id, type)
            for from_id, by_type in self.outgoing.items()
            for type, targets in by_type.items()
            for to_id in targets
        )

    def node_ids(self) -> set[str]:
        return {
            issue_id
            for table in (self.outgoing, self.incoming)
            for issue_id, by_type in table.items()
            if any(by_type.values())
        }
