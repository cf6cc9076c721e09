"""Tests for PosetTree construction and the edge-table / Newick / linkage readers."""

import networkx as nx
import numpy as np
import pandas as pd
import pytest
from scipy.cluster.hierarchy import linkage

from phyloflow.errors import EmptyQueryError, MalformedFlowError, UnknownMemberError
from phyloflow.tree.branch_lengths import compute_ultrametric_branch_lengths
from phyloflow.tree.io import (
    EDGE_TABLE_COLUMNS,
    tree_from_edge_table,
    tree_from_newick,
    tree_to_edge_table,
    tree_to_newick,
)
from phyloflow.tree.poset_tree import PosetTree


def _edge_set(tree):
    return {(u, v, round(d["branch_length"], 12)) for u, v, d in tree.edges(data=True)}


# ---------------------------------------------------------------------------
# PosetTree
# ---------------------------------------------------------------------------


def test_finalize_records_explicit_root(seven_tip_tree):
    assert seven_tip_tree.root() == "root"
    assert seven_tip_tree.graph["root"] == "root"
    assert seven_tip_tree.parent("root") is None
    assert seven_tip_tree.parent("t6") == "E"


def test_leaf_flags_and_labels(seven_tip_tree):
    tips = [n for n in seven_tip_tree.nodes if seven_tip_tree.is_tip(n)]
    assert sorted(tips) == ["t1", "t2", "t3", "t4", "t5", "t6", "t7"]
    assert seven_tip_tree.label("t1") == "lion"
    assert seven_tip_tree.label("A") is None
    assert seven_tip_tree.get_leaves("E") == ["seal", "walrus"]
    assert seven_tip_tree.get_leaves("B", return_labels=False) == ["t1", "t2"]


def test_preorder_keeps_insertion_order(seven_tip_tree):
    assert seven_tip_tree.preorder() == [
        "root", "A", "B", "t1", "t2", "t3", "C", "t4", "D", "t5", "E", "t6", "t7",
    ]


def test_depths(seven_tip_tree):
    depths = seven_tip_tree.depths()
    assert depths["root"] == 0
    assert depths["B"] == 2
    assert depths["t7"] == 4


def test_add_branch_rejects_second_parent():
    tree = PosetTree()
    tree.add_branch("r", "a", branch_length=1.0)
    tree.add_branch("r", "b", branch_length=1.0)
    with pytest.raises(MalformedFlowError, match="already has parent"):
        tree.add_branch("b", "a", branch_length=1.0)


@pytest.mark.parametrize("bad", [-0.5, np.inf, np.nan])
def test_add_branch_rejects_invalid_lengths(bad):
    tree = PosetTree()
    with pytest.raises(MalformedFlowError):
        tree.add_branch("r", "a", branch_length=bad)


def test_add_branch_clamps_tiny_negative_and_defaults_missing():
    tree = PosetTree()
    tree.add_branch("r", "a", branch_length=-1e-15)
    tree.add_branch("r", "b")
    tree.finalize()
    assert tree.branch_length("a") == 0.0
    assert tree.branch_length("b") == 1.0


def test_finalize_rejects_forest():
    tree = PosetTree()
    tree.add_branch("r1", "a", branch_length=1.0)
    tree.add_branch("r2", "b", branch_length=1.0)
    with pytest.raises(MalformedFlowError, match="one root"):
        tree.finalize()


def test_finalize_rejects_wrong_declared_root(seven_tip_tree):
    with pytest.raises(MalformedFlowError):
        seven_tip_tree.finalize("A")


def test_find_lca_walks_parent_pointers(seven_tip_tree):
    assert seven_tip_tree.find_lca("t1", "t3") == "A"
    assert seven_tip_tree.find_lca("t6", "t5") == "D"
    assert seven_tip_tree.find_lca("t1", "t7") == "root"
    assert seven_tip_tree.find_lca_for_set(["t4", "t6", "t7"]) == "C"


def test_find_lca_errors(seven_tip_tree):
    with pytest.raises(EmptyQueryError):
        seven_tip_tree.find_lca_for_set([])
    with pytest.raises(UnknownMemberError):
        seven_tip_tree.find_lca("t1", "ghost")


# ---------------------------------------------------------------------------
# Edge tables
# ---------------------------------------------------------------------------


def test_edge_table_round_trip(seven_tip_tree):
    table = tree_to_edge_table(seven_tip_tree)

    assert list(table.columns) == EDGE_TABLE_COLUMNS
    assert table.iloc[0]["child"] == "root"
    assert pd.isna(table.iloc[0]["parent"])
    assert len(table) == seven_tip_tree.number_of_nodes()

    rebuilt = tree_from_edge_table(table)
    assert rebuilt.root() == "root"
    assert _edge_set(rebuilt) == _edge_set(seven_tip_tree)
    assert rebuilt.label("t7") == "walrus"
    assert rebuilt.label("E") == "Node185"


def test_edge_table_custom_columns_and_default_length():
    edges = pd.DataFrame(
        {"from": ["r", "r", "x"], "to": ["x", "y", "z"]},
    )
    tree = PosetTree.from_edge_table(edges, parent="from", child="to")
    assert tree.root() == "r"
    assert tree.branch_length("z") == 1.0


def test_edge_table_carries_edge_ids():
    edges = pd.DataFrame(
        {
            "edge_id": ["e_x", "e_y"],
            "parent": ["r", "r"],
            "child": ["x", "y"],
            "branch_length": [0.5, 2.0],
        }
    )
    tree = tree_from_edge_table(edges)
    assert tree.edges["r", "x"]["edge_id"] == "e_x"


def test_edge_table_missing_columns():
    with pytest.raises(KeyError):
        tree_from_edge_table(pd.DataFrame({"parent": ["r"]}))


def test_edge_table_rejects_node_with_two_parents():
    edges = pd.DataFrame(
        {"parent": ["r", "r", "a"], "child": ["a", "b", "b"], "branch_length": [1.0, 1.0, 1.0]}
    )
    with pytest.raises(MalformedFlowError):
        tree_from_edge_table(edges)


def test_edge_table_rejects_negative_length():
    edges = pd.DataFrame({"parent": ["r"], "child": ["a"], "branch_length": [-2.0]})
    with pytest.raises(MalformedFlowError, match="Negative"):
        tree_from_edge_table(edges)


# ---------------------------------------------------------------------------
# Newick
# ---------------------------------------------------------------------------


def test_newick_named_internal_nodes():
    tree = tree_from_newick("((a:1,b:2)ab:0.5,c:3)root;")

    assert tree.root() == "root"
    assert tree.parent("a") == "ab"
    assert tree.branch_length("ab") == pytest.approx(0.5)
    assert tree.branch_length("c") == pytest.approx(3.0)
    assert tree.label("b") == "b"


def test_newick_unnamed_internal_nodes_get_preorder_ids():
    tree = PosetTree.from_newick("((a:1,b:2):0.5,c:3);")

    assert tree.root() == "N0"
    assert tree.parent("a") == "N1"
    assert tree.label("N1") is None


def test_newick_round_trip(seven_tip_tree):
    tree = tree_from_edge_table(
        tree_to_edge_table(seven_tip_tree).assign(label=lambda df: df["child"])
    )
    text = tree_to_newick(tree)
    assert text.endswith(";")

    parsed = tree_from_newick(text)
    assert parsed.root() == "root"
    assert _edge_set(parsed) == _edge_set(tree)


# ---------------------------------------------------------------------------
# Linkage matrices
# ---------------------------------------------------------------------------


def test_tree_from_linkage_is_ultrametric():
    rng = np.random.RandomState(0)
    X = rng.normal(size=(6, 3))
    Z = linkage(X, method="average")
    names = [f"s{i}" for i in range(6)]

    tree = PosetTree.from_linkage(Z, leaf_names=names)

    assert tree.number_of_nodes() == 11
    assert tree.root() == "N10"
    assert nx.is_tree(tree)
    assert sorted(tree.get_leaves()) == names

    heights = set()
    for leaf in tree.get_leaves(return_labels=False):
        path = nx.shortest_path(tree, tree.root(), leaf)
        heights.add(round(sum(tree.branch_length(n) for n in path[1:]), 9))
    assert heights == {round(float(Z[-1, 2]), 9)}


def test_tree_from_linkage_rejects_wrong_name_count():
    Z = linkage(np.arange(8, dtype=float).reshape(4, 2))
    with pytest.raises(ValueError):
        PosetTree.from_linkage(Z, leaf_names=["a", "b"])


def test_ultrametric_lengths_subtract_child_merge_height():
    children = np.array([[0, 1], [2, 3]])
    lengths = compute_ultrametric_branch_lengths(3, children, np.array([1.0, 3.0]))

    assert lengths == {
        ("N3", "L0"): 1.0,
        ("N3", "L1"): 1.0,
        ("N4", "L2"): 3.0,
        ("N4", "N3"): 2.0,
    }
