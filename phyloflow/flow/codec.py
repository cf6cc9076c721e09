"""Conversion between an explicit :class:`PosetTree` and a :class:`FlowMatrix`.

Encoding walks the tree once in preorder, giving each node its parent's flow
plus its incoming edge. Decoding rebuilds parent pointers from the flows
alone: a node's parent is the row holding the largest flow strictly
contained in its own, which is the flow minus its deepest edge.
"""

from __future__ import annotations

import logging
from typing import Dict, Hashable, List, Tuple

import numpy as np
from scipy import sparse

from phyloflow.errors import MalformedFlowError
from phyloflow.flow.edge_index import EdgeIndex
from phyloflow.flow.flow_matrix import FlowMatrix
from phyloflow.tree.poset_tree import PosetTree

logger = logging.getLogger(__name__)


def encode_tree(tree: PosetTree) -> FlowMatrix:
    """Build the flow matrix of ``tree`` in ``O(nodes + edges)`` time.

    Rows follow preorder from the root; columns follow the preorder of each
    edge's child (see :meth:`EdgeIndex.from_tree`), so every row's column
    indices come out sorted.

    Parameters
    ----------
    tree
        A finalised :class:`PosetTree`.

    Returns
    -------
    FlowMatrix
        Contains ``sum(depth)`` nonzeros.
    """
    edge_index = EdgeIndex.from_tree(tree)
    order = tree.preorder()
    root = tree.root()

    column: Dict[Hashable, int] = {child: j for j, child in enumerate(edge_index.children)}
    flows: Dict[Hashable, List[int]] = {root: []}
    indptr = [0]
    indices: List[int] = []
    for node in order:
        if node != root:
            flows[node] = flows[tree.parent(node)] + [column[node]]
        indices.extend(flows[node])
        indptr.append(len(indices))

    matrix = sparse.csr_matrix(
        (np.ones(len(indices), dtype=np.float64), np.asarray(indices, dtype=np.int64), indptr),
        shape=(len(order), len(edge_index)),
    )
    fm = FlowMatrix(
        matrix,
        node_ids=order,
        edge_index=edge_index,
        root=root,
        labels=[tree.label(n) for n in order],
        is_tip=[tree.is_tip(n) for n in order],
        validate=False,
    )
    logger.debug("Encoded tree with %d nodes into %d flow nonzeros.", len(order), fm.nnz)
    return fm


def _terminal_columns(fm: FlowMatrix) -> Tuple[np.ndarray, int]:
    """Deepest edge of every row, chosen as the member column with the fewest rows.

    Returns the per-row terminal column (``-1`` for the root) and the root
    row position.
    """
    matrix = fm.to_sparse()
    column_sizes = matrix.getnnz(axis=0)
    indptr, indices = matrix.indptr, matrix.indices

    terminal = np.full(fm.n_nodes, -1, dtype=np.int64)
    empty_rows = []
    for pos in range(fm.n_nodes):
        cols = indices[indptr[pos] : indptr[pos + 1]]
        if cols.size == 0:
            empty_rows.append(pos)
            continue
        sizes = column_sizes[cols]
        smallest = np.flatnonzero(sizes == sizes.min())
        if smallest.size != 1:
            raise MalformedFlowError(
                f"Flow of {fm.node_ids[pos]!r} has no unique deepest edge "
                f"(candidates: {[fm.edge_ids[cols[k]] for k in smallest]})."
            )
        terminal[pos] = cols[smallest[0]]

    if len(empty_rows) != 1:
        raise MalformedFlowError(
            f"Expected exactly one empty (root) flow, got {[fm.node_ids[p] for p in empty_rows]}."
        )
    return terminal, empty_rows[0]


def decode_flows(fm: FlowMatrix) -> PosetTree:
    """Reconstruct the tree encoded by ``fm``.

    Node ids, labels, edge ids and branch lengths are preserved, so
    ``decode_flows(encode_tree(T))`` is isomorphic to ``T``.

    Raises
    ------
    MalformedFlowError
        If two rows claim the same terminal edge (incomparable under subset
        ordering, or duplicated), a row's parent flow is not itself a row,
        or the flows do not have exactly one empty root row.
    """
    terminal, root_pos = _terminal_columns(fm)
    matrix = fm.to_sparse()
    indptr, indices = matrix.indptr, matrix.indices

    claimed: Dict[int, int] = {}
    for pos, t in enumerate(terminal):
        if t < 0:
            continue
        if t in claimed:
            raise MalformedFlowError(
                f"Rows {fm.node_ids[claimed[t]]!r} and {fm.node_ids[pos]!r} both end in edge "
                f"{fm.edge_ids[t]!r} but neither flow contains the other (laminarity violated)."
            )
        claimed[int(t)] = pos

    unclaimed = [fm.edge_ids[j] for j in range(fm.n_edges) if j not in claimed]
    if unclaimed:
        raise MalformedFlowError(f"Edges with no child row: {unclaimed[:5]}")

    flow_to_row: Dict[Tuple[int, ...], int] = {
        tuple(indices[indptr[p] : indptr[p + 1]].tolist()): p for p in range(fm.n_nodes)
    }

    tree = PosetTree()
    for pos, node in enumerate(fm.node_ids):
        tree.add_node(node)
        if fm.labels[pos] is not None:
            tree.nodes[node]["label"] = fm.labels[pos]

    lengths = fm.branch_lengths
    for pos, t in enumerate(terminal):
        if t < 0:
            continue
        cols = indices[indptr[pos] : indptr[pos + 1]]
        parent_key = tuple(cols[cols != t].tolist())
        parent_pos = flow_to_row.get(parent_key)
        if parent_pos is None:
            raise MalformedFlowError(
                f"Flow of {fm.node_ids[pos]!r} minus edge {fm.edge_ids[t]!r} is not the flow of any row."
            )
        tree.add_branch(
            fm.node_ids[parent_pos],
            fm.node_ids[pos],
            branch_length=float(lengths[t]),
            edge_id=fm.edge_ids[t],
        )

    return tree.finalize(fm.node_ids[root_pos])


__all__ = ["encode_tree", "decode_flows"]
