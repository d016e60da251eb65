"""Diagnostic cycle scan over the blocks subgraph.

Insertion through DependencyGraph.add_edge already rejects cycles, so a
non-empty result here means edges were loaded without the guard (for
example by a bulk import of a hand-edited interchange file).
"""

import logging

from beads.errors import CorruptDataError
from beads.graph import DependencyGraph
from beads.models import DependencyType

log = logging.getLogger(__name__)

_WHITE, _GREY, _BLACK = 0, 1, 2


def _canonical(cycle: list[str]) -> tuple[str, ...]:
    """Rotate a cycle so its smallest id comes first."""
    pivot = cycle.index(min(cycle))
    return tuple(cycle[pivot:] + cycle[:pivot])


def find_cycles(graph: DependencyGraph) -> list[list[str]]:
    """Return every cycle found by DFS over blocks edges.

    Each cycle is the ordered list of ids along blocked -> blocker edges,
    reported once and rotated to start at its smallest id. The scan is
    iterative and visits nodes and neighbours in sorted order.
    """
    color: dict[str, int] = {}
    found: dict[tuple[str, ...], None] = {}

    for root in sorted(graph.node_ids()):
        if color.get(root, _WHITE) != _WHITE:
            continue

        path: list[str] = [root]
        on_path: dict[str, int] = {root: 0}
        color[root] = _GREY
        iterators = [iter(sorted(graph.blockers_of(root)))]

        while iterators:
            advanced = False
            for blocker in iterators[-1]:
                state = color.get(blocker, _WHITE)
                if state == _GREY:
                    cycle = path[on_path[blocker]:]
                    found.setdefault(_canonical(cycle), None)
                elif state == _WHITE:
                    color[blocker] = _GREY
                    on_path[blocker] = len(path)
                    path.append(blocker)
                    iterators.append(iter(sorted(graph.blockers_of(blocker))))
                    advanced = True
                    break
            if not advanced:
                done = path.pop()
                del on_path[done]
                color[done] = _BLACK
                iterators.pop()

    cycles = [list(cycle) for cycle in found]
    if cycles:
        log.warning("Detected %d cycle(s) in %s edges", len(cycles), DependencyType.BLOCKS.value)
    return cycles


def assert_acyclic(graph: DependencyGraph) -> None:
    """Raise CorruptDataError if the blocks subgraph contains a cycle."""
    cycles = find_cycles(graph)
    if cycles:
        raise CorruptDataError(cycles)
