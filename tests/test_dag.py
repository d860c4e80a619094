import pytest

from flowci.dag import build_dag, find_cycle, topo_levels, topo_order
from flowci.dsl import job, sh
from flowci.errors import CycleDetected, DuplicateJob, UnknownDependency


def _job(name, *needs):
    return job(name, sh("noop", "true"), needs=list(needs))


def test_topo_order_puts_every_job_after_its_needs():
    jobs = [_job("d", "b", "c"), _job("b", "a"), _job("c", "a"), _job("a")]
    order = topo_order(jobs)

    assert sorted(order) == ["a", "b", "c", "d"]
    for j in jobs:
        for dep in j.needs:
            assert order.index(dep) < order.index(j.name)


def test_topo_order_breaks_ties_by_declaration_order():
    jobs = [_job("lint"), _job("docs"), _job("test", "lint"), _job("build")]
    assert topo_order(jobs) == ["lint", "docs", "build", "test"]


def test_topo_levels_groups_independent_jobs():
    jobs = [_job("a"), _job("b", "a"), _job("c", "a"), _job("d", "b", "c")]
    assert topo_levels(jobs) == [["a"], ["b", "c"], ["d"]]


def test_build_dag_maps_dependency_to_dependents():
    adj, indeg = build_dag([_job("a"), _job("b", "a"), _job("c", "a", "b")])
    assert adj["a"] == {"b", "c"}
    assert indeg == {"a": 0, "b": 1, "c": 2}


def test_cycle_is_reported_with_its_path():
    jobs = [_job("a", "c"), _job("b", "a"), _job("c", "b"), _job("free")]

    with pytest.raises(CycleDetected) as exc:
        topo_order(jobs)

    cycle = exc.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert exc.value.kind == "CycleDetected"


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleDetected):
        topo_levels([_job("a", "a")])


def test_find_cycle_on_acyclic_graph_is_empty():
    assert find_cycle([_job("a"), _job("b", "a")]) == []


def test_unknown_dependency():
    with pytest.raises(UnknownDependency) as exc:
        topo_order([_job("a"), _job("b", "missing")])
    assert exc.value.missing == "missing"
    assert "missing" in str(exc.value)


def test_duplicate_job_names():
    with pytest.raises(DuplicateJob) as exc:
        build_dag([_job("a"), _job("a")])
    assert exc.value.names == ["a"]
