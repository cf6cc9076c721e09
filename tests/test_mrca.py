"""MRCA detection and subtree filtering on flow matrices.

Results are cross-checked against parent-pointer walks on the explicit tree
(:meth:`PosetTree.find_lca` and ``count_descendants``), which share no code
with the flow-based implementation.
"""

import itertools
import logging

import numpy as np
import pytest

from phyloflow import config
from phyloflow.core_utils.tree_utils import count_descendants
from phyloflow.errors import EmptyQueryError, UnknownMemberError
from phyloflow.flow.flow_matrix import FlowMatrix
from phyloflow.flow.mrca import (
    _get_n_jobs,
    extract_subtree,
    filter_many,
    filter_to_mrca,
    find_mrca,
)
from phyloflow.simulation.brownian import random_tree


@pytest.mark.parametrize(
    "members, expected",
    [
        (["t1", "t2"], "B"),
        (["t1", "t3"], "A"),
        (["t6", "t7"], "E"),
        (["t5", "t7"], "D"),
        (["t4", "t6"], "C"),
        (["t1", "t7"], "root"),
        (["B", "t2"], "B"),
        (["t4", "t5", "t6", "t7"], "C"),
        (["root", "t3"], "root"),
    ],
)
def test_find_mrca_known_clades(seven_tip_flows, members, expected):
    assert find_mrca(seven_tip_flows, members) == expected


def test_find_mrca_matches_pointer_walk_for_all_pairs(seven_tip_flows, seven_tip_tree):
    for a, b in itertools.combinations(seven_tip_tree.nodes, 2):
        assert find_mrca(seven_tip_flows, [a, b]) == seven_tip_tree.find_lca(a, b)


def test_find_mrca_matches_pointer_walk_on_random_tree():
    rng = np.random.RandomState(11)
    tree = random_tree(60, random_state=rng)
    fm = FlowMatrix.from_tree(tree)
    nodes = list(tree.nodes)

    for _ in range(50):
        size = rng.randint(1, 6)
        members = [nodes[i] for i in rng.choice(len(nodes), size=size, replace=False)]
        assert find_mrca(fm, members) == tree.find_lca_for_set(members)


def test_single_member_is_its_own_mrca(seven_tip_flows):
    assert find_mrca(seven_tip_flows, ["t3"]) == "t3"
    assert find_mrca(seven_tip_flows, ["t3", "t3"]) == "t3"

    sub, mrca = filter_to_mrca(seven_tip_flows, ["t3"])
    assert mrca == "t3"
    assert sub.shape == (1, 0)
    assert sub.source_node_ids == ("t3",)


def test_bare_member_is_not_split_into_characters(seven_tip_flows):
    assert find_mrca(seven_tip_flows, "t1") == "t1"
    assert find_mrca(seven_tip_flows, "walrus", by="label") == "t7"

    sub, mrca = filter_to_mrca(seven_tip_flows, "E")
    assert mrca == "E"
    assert sub.source_node_ids == ("E", "t6", "t7")


def test_empty_query_raises(seven_tip_flows):
    with pytest.raises(EmptyQueryError):
        find_mrca(seven_tip_flows, [])
    with pytest.raises(EmptyQueryError):
        filter_to_mrca(seven_tip_flows, iter(()))


def test_unknown_member_raises_with_offending_ids(seven_tip_flows):
    with pytest.raises(UnknownMemberError) as exc_info:
        find_mrca(seven_tip_flows, ["t1", "zebra", "okapi"])
    assert exc_info.value.missing == ("zebra", "okapi")


def test_lookup_by_label(seven_tip_flows):
    assert find_mrca(seven_tip_flows, ["lion", "lynx"], by="label") == "A"
    assert find_mrca(seven_tip_flows, ["Node185"], by="label") == "E"
    with pytest.raises(UnknownMemberError):
        find_mrca(seven_tip_flows, ["unicorn"], by="label")
    with pytest.raises(ValueError):
        find_mrca(seven_tip_flows, ["t1"], by="name")


def test_filter_keeps_whole_subtree(seven_tip_flows, seven_tip_tree):
    for node in seven_tip_tree.nodes:
        sub = extract_subtree(seven_tip_flows, node)
        expected = count_descendants(seven_tip_tree, node)
        assert sub.n_nodes == expected
        assert sub.n_edges == expected - 1
        sub.validate()


def test_filter_renumbers_and_keeps_back_references(seven_tip_flows):
    sub, mrca = filter_to_mrca(seven_tip_flows, ["t5", "t7"])

    assert mrca == "D"
    assert sub.root == "n0"
    assert sub.node_ids == ("n0", "n1", "n2", "n3", "n4")
    assert sub.edge_ids == ("e0", "e1", "e2", "e3")
    assert sub.source_node_ids == ("D", "t5", "E", "t6", "t7")
    assert sub.source_edge_ids == ("Et5", "EE", "Et6", "Et7")
    assert sub.labels == (None, "fox", "Node185", "seal", "walrus")
    assert list(sub.is_tip) == [False, True, False, True, True]
    assert np.allclose(sub.branch_lengths, [3.0, 0.25, 1.0, 9.0])
    assert sub.row("n4").edge_ids == ("e1", "e3")
    assert len(sub.row("n0")) == 0


def test_filter_does_not_touch_source(seven_tip_flows):
    before = seven_tip_flows.to_dense().copy()
    filter_to_mrca(seven_tip_flows, ["t1", "t2"])
    assert np.array_equal(seven_tip_flows.to_dense(), before)
    assert seven_tip_flows.n_nodes == 13


def test_filter_without_renumbering(seven_tip_flows):
    sub, _ = filter_to_mrca(seven_tip_flows, ["t1", "t3"], renumber=False)
    assert sub.root == "A"
    assert sub.node_ids == ("A", "B", "t1", "t2", "t3")
    assert sub.edge_ids == ("EB", "Et1", "Et2", "Et3")


def test_chained_filters_resolve_to_original_ids(seven_tip_flows):
    first, _ = filter_to_mrca(seven_tip_flows, ["t4", "t7"])
    second, mrca = filter_to_mrca(first, ["seal", "walrus"], by="label")

    assert first.source_id_of(mrca) == "E"
    assert second.source_node_ids == ("E", "t6", "t7")
    assert second.source_edge_ids == ("Et6", "Et7")


def test_filter_many_matches_sequential(seven_tip_flows):
    queries = [["t1", "t2"], ["t5", "t7"], ["t4"], ["t1", "t7"]] * 3
    expected = [filter_to_mrca(seven_tip_flows, q) for q in queries]

    results = filter_many(seven_tip_flows, queries, n_jobs=2)

    assert [m for _, m in results] == [m for _, m in expected]
    for (sub, _), (ref, _) in zip(results, expected):
        assert sub.source_node_ids == ref.source_node_ids
        assert (sub.to_sparse() != ref.to_sparse()).nnz == 0


def test_filter_many_propagates_errors(seven_tip_flows):
    with pytest.raises(UnknownMemberError):
        filter_many(seven_tip_flows, [["t1"], ["ghost"]], n_jobs=1)


def test_get_n_jobs_respects_environment(monkeypatch, caplog):
    monkeypatch.delenv(config.N_JOBS_ENV_VAR, raising=False)
    assert _get_n_jobs(1) == 1
    assert _get_n_jobs(config.MIN_QUERIES_FOR_PARALLEL) == -1

    monkeypatch.setenv(config.N_JOBS_ENV_VAR, "3")
    assert _get_n_jobs(1) == 3

    monkeypatch.setenv(config.N_JOBS_ENV_VAR, "many")
    with caplog.at_level(logging.WARNING, logger="phyloflow.flow.mrca"):
        assert _get_n_jobs(1) == 1
    assert "non-integer" in caplog.text
