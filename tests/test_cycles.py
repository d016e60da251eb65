"""Tests for beads.cycles."""

import pytest

from beads.cycles import assert_acyclic, find_cycles
from beads.errors import CorruptDataError
from beads.graph import DependencyGraph
from beads.models import Dependency, DependencyType


class TestFindCycles:
    def test_empty_graph(self):
        assert find_cycles(DependencyGraph()) == []

    def test_acyclic_chain(self):
        graph = DependencyGraph.build([Dependency("bd-3", "bd-2"), Dependency("bd-2", "bd-1")])
        assert find_cycles(graph) == []

    def test_two_node_cycle(self):
        graph = DependencyGraph.build([Dependency("bd-1", "bd-2"), Dependency("bd-2", "bd-1")])
        assert find_cycles(graph) == [["bd-1", "bd-2"]]

    def test_three_node_cycle_rotated_to_smallest(self):
        graph = DependencyGraph.build(
            [
                Dependency("bd-2", "bd-3"),
                Dependency("bd-3", "bd-1"),
                Dependency("bd-1", "bd-2"),
            ]
        )
        assert find_cycles(graph) == [["bd-1", "bd-2", "bd-3"]]

    def test_separate_cycles(self):
        graph = DependencyGraph.build(
            [
                Dependency("a-1", "a-2"),
                Dependency("a-2", "a-1"),
                Dependency("b-1", "b-2"),
                Dependency("b-2", "b-1"),
                Dependency("c-1", "a-1"),
            ]
        )
        assert find_cycles(graph) == [["a-1", "a-2"], ["b-1", "b-2"]]

    def test_ignores_non_blocks_edges(self):
        graph = DependencyGraph.build(
            [
                Dependency("bd-1", "bd-2", DependencyType.PARENT_CHILD),
                Dependency("bd-2", "bd-1", DependencyType.PARENT_CHILD),
                Dependency("bd-1", "bd-2", DependencyType.RELATED),
                Dependency("bd-2", "bd-1", DependencyType.RELATED),
            ]
        )
        assert find_cycles(graph) == []

    def test_does_not_mutate(self):
        graph = DependencyGraph.build([Dependency("bd-1", "bd-2"), Dependency("bd-2", "bd-1")])
        edges = graph.all_edges()
        find_cycles(graph)
        assert graph.all_edges() == edges

    def test_long_cycle_without_recursion_limit(self):
        n = 3000
        deps = [Dependency(f"n-{i}", f"n-{(i + 1) % n}") for i in range(n)]
        cycles = find_cycles(DependencyGraph.build(deps))
        assert len(cycles) == 1
        assert len(cycles[0]) == n


class TestAssertAcyclic:
    def test_passes_on_dag(self):
        assert_acyclic(DependencyGraph.build([Dependency("bd-2", "bd-1")]))

    def test_raises_with_cycles(self):
        graph = DependencyGraph.build([Dependency("bd-1", "bd-2"), Dependency("bd-2", "bd-1")])
        with pytest.raises(CorruptDataError) as exc_info:
            assert_acyclic(graph)
        assert exc_info.value.cycles == [["bd-1", "bd-2"]]
        assert "bd-1 -> bd-2 -> bd-1" in str(exc_info.value)
