"""I/O helpers for constructing :class:`PosetTree` from external representations.

Each public constructor accepts a standard rooted-tree representation
(parent/child/length edge table, Newick text, SciPy linkage matrix) and
returns a finalised :class:`PosetTree` with an explicit root.

Newick parsing and writing are delegated to :class:`skbio.TreeNode`.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Dict, Hashable, List, Optional

import numpy as np
import pandas as pd
from skbio import TreeNode

from phyloflow.errors import MalformedFlowError
from phyloflow.tree.branch_lengths import compute_ultrametric_branch_lengths, node_id

if TYPE_CHECKING:
    from phyloflow.tree.poset_tree import PosetTree

logger = logging.getLogger(__name__)

EDGE_TABLE_COLUMNS = ["edge_id", "parent", "child", "branch_length", "label", "is_leaf"]


def _get_poset_tree_cls() -> type["PosetTree"]:
    """Lazy import to avoid circular dependency with poset_tree.py."""
    from phyloflow.tree.poset_tree import PosetTree

    return PosetTree


# ---------------------------------------------------------------------------
# Edge tables
# ---------------------------------------------------------------------------


def tree_from_edge_table(
    edges: pd.DataFrame,
    parent: str = "parent",
    child: str = "child",
    length: str = "branch_length",
    label: Optional[str] = "label",
    edge_id: Optional[str] = "edge_id",
    root: Optional[Hashable] = None,
) -> "PosetTree":
    """Build a :class:`PosetTree` from parent/child/length triples.

    Parameters
    ----------
    edges
        One row per edge. A row whose ``parent`` is null declares the root
        (and may carry its label); such a row is optional.
    parent, child, length
        Column names of the triple. ``length`` may be absent, in which case
        every edge receives the default branch length.
    label
        Optional column holding the child's human-readable name.
    edge_id
        Optional column of stable edge ids to carry onto the tree.
    root
        Explicit root id; inferred from in-degree when omitted.

    Returns
    -------
    PosetTree
    """
    cls = _get_poset_tree_cls()
    missing = [c for c in (parent, child) if c not in edges.columns]
    if missing:
        raise KeyError(f"Edge table is missing required column(s): {missing}")

    G = cls()
    has_length = length in edges.columns
    has_label = label is not None and label in edges.columns
    has_edge_id = edge_id is not None and edge_id in edges.columns

    for rec in edges.to_dict("records"):
        c = rec[child]
        if c not in G:
            G.add_node(c)
        if has_label and pd.notna(rec[label]):
            G.nodes[c]["label"] = str(rec[label])

        p = rec[parent]
        if pd.isna(p):
            if root is not None and root != c:
                raise MalformedFlowError(f"Edge table declares root {c!r} but {root!r} was requested.")
            root = c
            continue

        bl = rec[length] if has_length and pd.notna(rec[length]) else None
        eid = rec[edge_id] if has_edge_id and pd.notna(rec[edge_id]) else None
        G.add_branch(p, c, branch_length=bl, edge_id=eid)

    logger.debug("Built tree with %d nodes from edge table.", G.number_of_nodes())
    return G.finalize(root)


def tree_to_edge_table(tree: "PosetTree") -> pd.DataFrame:
    """Export a tree as an edge table readable by :func:`tree_from_edge_table`.

    The first row describes the root (null parent, edge and length).
    Remaining rows follow preorder.
    """
    root = tree.root()
    rows: List[Dict] = [
        {
            "edge_id": None,
            "parent": None,
            "child": root,
            "branch_length": np.nan,
            "label": tree.label(root),
            "is_leaf": tree.is_tip(root),
        }
    ]
    for n in tree.preorder():
        if n == root:
            continue
        p = tree.parent(n)
        attrs = tree.edges[p, n]
        rows.append(
            {
                "edge_id": attrs.get("edge_id"),
                "parent": p,
                "child": n,
                "branch_length": float(attrs.get("branch_length", np.nan)),
                "label": tree.label(n),
                "is_leaf": tree.is_tip(n),
            }
        )
    return pd.DataFrame(rows, columns=EDGE_TABLE_COLUMNS)


# ---------------------------------------------------------------------------
# Newick (via scikit-bio)
# ---------------------------------------------------------------------------


def tree_from_skbio(skbio_tree: TreeNode) -> "PosetTree":
    """Convert a rooted :class:`skbio.TreeNode` into a :class:`PosetTree`.

    Node names become both node ids and labels when they are present and
    unique. Unnamed or duplicated nodes receive ``N{preorder index}`` ids and
    keep their name (if any) as the label.
    """
    cls = _get_poset_tree_cls()
    nodes = list(skbio_tree.preorder(include_self=True))

    name_counts: Dict[str, int] = {}
    for n in nodes:
        if n.name:
            name_counts[n.name] = name_counts.get(n.name, 0) + 1

    ids: Dict[int, Hashable] = {}
    used = set()
    for i, n in enumerate(nodes):
        nid = n.name if n.name and name_counts[n.name] == 1 else f"N{i}"
        while nid in used:
            nid = f"N{i}_{len(used)}"
        used.add(nid)
        ids[id(n)] = nid

    G = cls()
    for n in nodes:
        nid = ids[id(n)]
        G.add_node(nid)
        if n.name:
            G.nodes[nid]["label"] = str(n.name)
        if n.parent is not None:
            G.add_branch(ids[id(n.parent)], nid, branch_length=n.length)

    return G.finalize(ids[id(skbio_tree)])


def tree_from_newick(newick: str) -> "PosetTree":
    """Parse Newick text into a :class:`PosetTree` using scikit-bio's reader."""
    skbio_tree = TreeNode.read(io.StringIO(newick), format="newick", convert_underscores=False)
    return tree_from_skbio(skbio_tree)


def tree_to_skbio(tree: "PosetTree") -> TreeNode:
    """Convert a :class:`PosetTree` into a :class:`skbio.TreeNode`.

    Nodes are named by label when present, otherwise by id.
    """
    root = tree.root()
    converted: Dict[Hashable, TreeNode] = {}
    for n in tree.preorder():
        name = tree.label(n) or str(n)
        length = None if n == root else tree.branch_length(n)
        converted[n] = TreeNode(name=name, length=length)
        if n != root:
            converted[tree.parent(n)].append(converted[n])
    return converted[root]


def tree_to_newick(tree: "PosetTree") -> str:
    """Serialise a :class:`PosetTree` to a single-line Newick string."""
    buf = io.StringIO()
    tree_to_skbio(tree).write(buf, format="newick")
    return buf.getvalue().strip()


# ---------------------------------------------------------------------------
# Linkage matrices
# ---------------------------------------------------------------------------


def tree_from_linkage(
    linkage_matrix: np.ndarray,
    leaf_names: Optional[List[str]] = None,
) -> "PosetTree":
    """Build a :class:`PosetTree` from a SciPy linkage matrix.

    Branch lengths come from ultrametric subtraction of merge heights (see
    :func:`~phyloflow.tree.branch_lengths.compute_ultrametric_branch_lengths`).

    Parameters
    ----------
    linkage_matrix
        A ``(n-1, 4)`` NumPy array from :func:`scipy.cluster.hierarchy.linkage`.
    leaf_names
        Optional list of leaf labels; defaults to ``leaf_0 … leaf_{n-1}``.
    """
    cls = _get_poset_tree_cls()
    linkage_matrix = np.asarray(linkage_matrix)
    n_leaves = linkage_matrix.shape[0] + 1
    if leaf_names is None:
        leaf_names = [f"leaf_{i}" for i in range(n_leaves)]
    if len(leaf_names) != n_leaves:
        raise ValueError(f"Expected {n_leaves} leaf names, got {len(leaf_names)}.")

    children = linkage_matrix[:, :2].astype(int)
    distances = linkage_matrix[:, 2]
    edge_lengths = compute_ultrametric_branch_lengths(n_leaves, children, distances)

    G = cls()
    for i, name in enumerate(leaf_names):
        G.add_node(node_id(i, n_leaves), label=str(name))

    for k, (a, b) in enumerate(children):
        nid = node_id(n_leaves + k, n_leaves)
        G.add_node(nid)
        for c in (node_id(int(a), n_leaves), node_id(int(b), n_leaves)):
            G.add_branch(nid, c, branch_length=edge_lengths[(nid, c)])

    return G.finalize()


__all__ = [
    "EDGE_TABLE_COLUMNS",
    "tree_from_edge_table",
    "tree_to_edge_table",
    "tree_from_skbio",
    "tree_to_skbio",
    "tree_from_newick",
    "tree_to_newick",
    "tree_from_linkage",
]
