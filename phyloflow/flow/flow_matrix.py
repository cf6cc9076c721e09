"""Sparse root-to-node path encoding of a rooted tree.

Row *i* of a :class:`FlowMatrix` is the **flow** of node *i*: the set of edges
on the path from the root to that node. Column *j* is edge *j*; its nonzero
rows are exactly the nodes descended from the edge's child.

The encoding stores ``sum(depth)`` nonzeros rather than one parent pointer
per node. In exchange, ancestry becomes set containment:

* ``flow(root)`` is empty;
* ``flow(child) = flow(parent) ∪ {incoming edge}``;
* if A is an ancestor of B then ``flow(A) ⊂ flow(B)``;
* the columns form a laminar family (any two are disjoint or nested).

These invariants are what :mod:`phyloflow.flow.mrca` relies on to compute the
most recent common ancestor as an intersection of rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from phyloflow.errors import DimensionMismatchError, MalformedFlowError, UnknownMemberError
from phyloflow.flow.edge_index import EdgeIndex
from phyloflow.tree.branch_lengths import brownian_weights

if TYPE_CHECKING:
    from phyloflow.tree.poset_tree import PosetTree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Flow:
    """The root-to-node path of one node.

    ``weights`` holds ``sqrt(branch_length)`` per edge when requested.
    """

    node_id: Hashable
    edge_ids: Tuple[Hashable, ...]
    weights: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self.edge_ids)

    def __contains__(self, edge_id: Hashable) -> bool:
        return edge_id in self.edge_ids

    def issubset(self, other: "Flow") -> bool:
        return set(self.edge_ids) <= set(other.edge_ids)


class FlowMatrix:
    """Immutable nodes × edges membership matrix with an explicit root.

    Parameters
    ----------
    matrix
        Any SciPy sparse matrix (or dense array) of shape
        ``(len(node_ids), len(edge_index))`` holding 0/1 memberships.
    node_ids
        Row identifiers.
    edge_index
        Column identifiers, parent/child pointers and branch lengths.
    root
        Identifier of the root row. Stored explicitly; never inferred from
        identifier ordering.
    labels
        Optional human-readable names aligned with ``node_ids``.
    is_tip
        Optional tip flags; derived from the edge index when omitted.
    source_node_ids, source_edge_ids
        Back-references to the identifiers of the matrix this one was derived
        from. Default to the identity mapping.
    validate
        Check the nesting invariants on construction (see :meth:`validate`).
    """

    def __init__(
        self,
        matrix,
        node_ids: Sequence[Hashable],
        edge_index: EdgeIndex,
        root: Hashable,
        labels: Optional[Sequence[Optional[str]]] = None,
        is_tip: Optional[Sequence[bool]] = None,
        source_node_ids: Optional[Sequence[Hashable]] = None,
        source_edge_ids: Optional[Sequence[Hashable]] = None,
        validate: bool = True,
    ):
        csr = sparse.csr_matrix(matrix, dtype=np.float64, copy=True)
        csr.sum_duplicates()
        csr.sort_indices()
        csr.eliminate_zeros()
        self._matrix = csr

        self._node_ids: Tuple[Hashable, ...] = tuple(node_ids)
        self._edge_index = edge_index
        self._root = root

        n_nodes, n_edges = len(self._node_ids), len(edge_index)
        if csr.shape != (n_nodes, n_edges):
            raise DimensionMismatchError(
                f"Matrix shape {csr.shape} does not match {n_nodes} nodes × {n_edges} edges."
            )

        self._position: Dict[Hashable, int] = {n: i for i, n in enumerate(self._node_ids)}
        if len(self._position) != n_nodes:
            raise MalformedFlowError("Duplicate node ids in FlowMatrix rows.")
        if root not in self._position:
            raise MalformedFlowError(f"Root {root!r} is not a row of the matrix.")

        self._labels: Tuple[Optional[str], ...] = (
            tuple(labels) if labels is not None else (None,) * n_nodes
        )
        if is_tip is None:
            internal = set(edge_index.parents)
            is_tip = [n not in internal for n in self._node_ids]
        self._is_tip = np.array(is_tip, dtype=bool)
        self._is_tip.setflags(write=False)
        self._depths = np.diff(csr.indptr).astype(np.int64)
        self._depths.setflags(write=False)

        self._source_node_ids: Tuple[Hashable, ...] = (
            tuple(source_node_ids) if source_node_ids is not None else self._node_ids
        )
        self._source_edge_ids: Tuple[Hashable, ...] = (
            tuple(source_edge_ids) if source_edge_ids is not None else edge_index.edge_ids
        )
        if len(self._labels) != n_nodes or self._is_tip.size != n_nodes:
            raise DimensionMismatchError("Node annotations are not aligned with node_ids.")
        if len(self._source_node_ids) != n_nodes or len(self._source_edge_ids) != n_edges:
            raise DimensionMismatchError("Source id back-references are not aligned with the matrix.")

        self._terminal = np.full(n_nodes, -1, dtype=np.int64)
        for j, child in enumerate(edge_index.children):
            pos = self._position.get(child)
            if pos is None:
                raise MalformedFlowError(
                    f"Edge {edge_index.edge_ids[j]!r} ends at {child!r}, which is not a row."
                )
            self._terminal[pos] = j
        self._csc = csr.tocsc()
        self._csc.sort_indices()

        if validate:
            self.validate()
        logger.debug("FlowMatrix with %d nodes, %d edges, %d nonzeros.", n_nodes, n_edges, self.nnz)

    # ---------------- Constructors ----------------

    @classmethod
    def from_tree(cls, tree: "PosetTree") -> "FlowMatrix":
        """Encode ``tree``; see :func:`phyloflow.flow.codec.encode_tree`."""
        from phyloflow.flow.codec import encode_tree

        return encode_tree(tree)

    build = from_tree

    def to_tree(self) -> "PosetTree":
        """Decode back into a tree; see :func:`phyloflow.flow.codec.decode_flows`."""
        from phyloflow.flow.codec import decode_flows

        return decode_flows(self)

    # ---------------- Invariants ----------------

    def validate(self) -> None:
        """Check that every row is its parent's flow plus its own incoming edge.

        Raises
        ------
        MalformedFlowError
            If memberships are not 0/1, the root row is non-empty, a non-root
            row lacks an incoming edge or does not contain it, or a row minus
            its terminal edge differs from its parent's row.
        """
        m = self._matrix
        if m.nnz and not np.all(m.data == 1.0):
            raise MalformedFlowError("Flow memberships must be 0/1.")

        root_pos = self._position[self._root]
        if self._terminal[root_pos] != -1:
            raise MalformedFlowError(f"Root {self._root!r} has an incoming edge.")

        indptr, indices = m.indptr, m.indices
        for pos, node in enumerate(self._node_ids):
            flow = indices[indptr[pos] : indptr[pos + 1]]
            if pos == root_pos:
                if flow.size:
                    raise MalformedFlowError(f"Root flow must be empty; {node!r} has {flow.size} edges.")
                continue
            t = self._terminal[pos]
            if t < 0:
                raise MalformedFlowError(f"Non-root node {node!r} has no incoming edge.")
            if not np.any(flow == t):
                raise MalformedFlowError(
                    f"Flow of {node!r} does not contain its incoming edge "
                    f"{self._edge_index.edge_ids[t]!r}."
                )
            parent_pos = self._position.get(self._edge_index.parents[t])
            if parent_pos is None:
                raise MalformedFlowError(f"Parent of {node!r} is not a row of the matrix.")
            parent_flow = indices[indptr[parent_pos] : indptr[parent_pos + 1]]
            if not np.array_equal(flow[flow != t], parent_flow):
                raise MalformedFlowError(
                    f"Flow of {node!r} is not its parent's flow plus edge "
                    f"{self._edge_index.edge_ids[t]!r} (nesting violated)."
                )

    # ---------------- Shape & identifiers ----------------

    def __len__(self) -> int:
        return len(self._node_ids)

    def __contains__(self, node_id: Hashable) -> bool:
        return node_id in self._position

    def __repr__(self) -> str:
        return (
            f"FlowMatrix(n_nodes={self.n_nodes}, n_edges={self.n_edges}, "
            f"nnz={self.nnz}, root={self._root!r})"
        )

    @property
    def shape(self) -> Tuple[int, int]:
        return self._matrix.shape

    @property
    def n_nodes(self) -> int:
        return self._matrix.shape[0]

    @property
    def n_edges(self) -> int:
        return self._matrix.shape[1]

    @property
    def nnz(self) -> int:
        return int(self._matrix.nnz)

    @property
    def root(self) -> Hashable:
        return self._root

    @property
    def node_ids(self) -> Tuple[Hashable, ...]:
        return self._node_ids

    @property
    def edge_ids(self) -> Tuple[Hashable, ...]:
        return self._edge_index.edge_ids

    @property
    def edge_index(self) -> EdgeIndex:
        return self._edge_index

    @property
    def labels(self) -> Tuple[Optional[str], ...]:
        return self._labels

    @property
    def is_tip(self) -> np.ndarray:
        return self._is_tip

    @property
    def depths(self) -> np.ndarray:
        """Read-only number of edges from the root, per row."""
        return self._depths

    @property
    def source_node_ids(self) -> Tuple[Hashable, ...]:
        return self._source_node_ids

    @property
    def source_edge_ids(self) -> Tuple[Hashable, ...]:
        return self._source_edge_ids

    @property
    def branch_lengths(self) -> np.ndarray:
        return self._edge_index.branch_lengths

    def node_position(self, node_id: Hashable) -> int:
        try:
            return self._position[node_id]
        except KeyError:
            raise UnknownMemberError([node_id]) from None

    def node_positions(self, node_ids: Iterable[Hashable]) -> np.ndarray:
        """Row numbers of ``node_ids``; raises listing every unknown id."""
        node_ids = list(node_ids)
        missing = [n for n in node_ids if n not in self._position]
        if missing:
            raise UnknownMemberError(missing)
        return np.fromiter((self._position[n] for n in node_ids), dtype=np.int64, count=len(node_ids))

    def label_of(self, node_id: Hashable) -> Optional[str]:
        return self._labels[self.node_position(node_id)]

    def ids_for_labels(self, labels: Iterable[str]) -> List[Hashable]:
        """Resolve labels to node ids; raises on unknown labels."""
        lookup: Dict[str, Hashable] = {}
        for n, lab in zip(self._node_ids, self._labels):
            if lab is not None:
                lookup.setdefault(lab, n)
        labels = list(labels)
        missing = [lab for lab in labels if lab not in lookup]
        if missing:
            raise UnknownMemberError(missing)
        return [lookup[lab] for lab in labels]

    def source_id_of(self, node_id: Hashable) -> Hashable:
        return self._source_node_ids[self.node_position(node_id)]

    def tips(self) -> List[Hashable]:
        return [n for n, tip in zip(self._node_ids, self._is_tip) if tip]

    # ---------------- Flow access ----------------

    def _row_columns(self, pos: int) -> np.ndarray:
        m = self._matrix
        return m.indices[m.indptr[pos] : m.indptr[pos + 1]]

    def row(self, node_id: Hashable, weighted: bool = False) -> Flow:
        """Return the flow of ``node_id`` as edge ids (and optional sqrt-length weights)."""
        cols = self._row_columns(self.node_position(node_id))
        edge_ids = tuple(self._edge_index.edge_ids[j] for j in cols)
        weights = brownian_weights(self._edge_index.branch_lengths[cols]) if weighted else None
        return Flow(node_id=node_id, edge_ids=edge_ids, weights=weights)

    def terminal_edge(self, node_id: Hashable) -> Optional[Hashable]:
        """Incoming edge of ``node_id``; ``None`` for the root."""
        t = self._terminal[self.node_position(node_id)]
        return None if t < 0 else self._edge_index.edge_ids[t]

    def _column_rows(self, col: int) -> np.ndarray:
        c = self._csc
        return c.indices[c.indptr[col] : c.indptr[col + 1]]

    def descendant_positions(self, pos: int) -> np.ndarray:
        """Rows whose flow contains the flow of row ``pos`` (inclusive), in row order."""
        t = self._terminal[pos]
        if t < 0:
            return np.arange(self.n_nodes, dtype=np.int64)
        return np.sort(self._column_rows(int(t))).astype(np.int64)

    def descendants_of(self, node_id: Hashable) -> List[Hashable]:
        """``node_id`` and every node below it, in row order."""
        return [self._node_ids[i] for i in self.descendant_positions(self.node_position(node_id))]

    def is_ancestor(self, ancestor: Hashable, node: Hashable) -> bool:
        """``True`` when ``flow(ancestor) ⊆ flow(node)`` (a node is its own ancestor)."""
        t = self._terminal[self.node_position(ancestor)]
        pos = self.node_position(node)
        return t < 0 or bool(np.any(self._row_columns(pos) == t))

    # ---------------- Numeric views ----------------

    def to_sparse(self) -> sparse.csr_matrix:
        """Copy of the (nodes × edges) CSR membership matrix."""
        return self._matrix.copy()

    to_dense_columns = to_sparse

    def to_dense(self) -> np.ndarray:
        return self._matrix.toarray()

    def to_frame(self) -> pd.DataFrame:
        """Dense membership table indexed by node id with one column per edge id."""
        return pd.DataFrame(
            self.to_dense(),
            index=pd.Index(self._node_ids, name="node_id"),
            columns=pd.Index(self.edge_ids, name="edge_id"),
        )

    def node_table(self) -> pd.DataFrame:
        """One row per node: label, tip flag, depth, incoming edge and source id."""
        return pd.DataFrame(
            {
                "label": list(self._labels),
                "is_tip": np.array(self._is_tip),
                "depth": np.array(self._depths),
                "edge_id": [
                    None if t < 0 else self._edge_index.edge_ids[t] for t in self._terminal
                ],
                "source_node_id": list(self._source_node_ids),
            },
            index=pd.Index(self._node_ids, name="node_id"),
        )


__all__ = ["Flow", "FlowMatrix"]
