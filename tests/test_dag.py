import pytest

from releaseci.dag import build_graph, topo_levels
from releaseci.dsl import sh, stage
from releaseci.errors import GraphError


def _s(name, *needs):
    return stage(name, sh("noop", "true"), needs=list(needs))


def test_levels_group_independent_stages():
    stages = [_s("a"), _s("b", "a"), _s("c", "a"), _s("d", "b", "c")]
    _by_name, adj, indeg = build_graph(stages)
    assert topo_levels(adj, indeg) == [["a"], ["b", "c"], ["d"]]


def test_duplicate_dependency_counts_once():
    _by_name, _adj, indeg = build_graph([_s("a"), _s("b", "a", "a")])
    assert indeg["b"] == 1


def test_duplicate_names_rejected():
    with pytest.raises(GraphError, match="Duplicate"):
        build_graph([_s("a"), _s("a")])


def test_missing_dependency_rejected():
    with pytest.raises(GraphError, match="missing stage 'nope'"):
        build_graph([_s("a", "nope")])


def test_cycle_rejected():
    with pytest.raises(GraphError) as exc:
        _by_name, adj, indeg = build_graph([_s("a", "c"), _s("b", "a"), _s("c", "b")])
        topo_levels(adj, indeg)
    assert exc.value.details["stuck"] == ["a", "b", "c"]
