"""Canonical edge identifiers and branch lengths for a rooted tree.

Every edge is keyed by its child node: a node has at most one incoming edge,
so ``child -> edge`` is a bijection onto the non-root nodes. Edge ids default
to ``config.EDGE_ID_PREFIX + str(child)`` and are carried through
serialization (edge tables, filtered matrices) so a subtree's edges can be
traced back to the full dataset.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Hashable, Iterable, Iterator, Sequence, Tuple

import numpy as np
import pandas as pd

from phyloflow import config
from phyloflow.errors import MalformedFlowError, UnknownMemberError
from phyloflow.tree.branch_lengths import validate_branch_lengths

if TYPE_CHECKING:
    from phyloflow.tree.poset_tree import PosetTree

logger = logging.getLogger(__name__)


def default_edge_id(child: Hashable) -> str:
    """Edge id derived from the child node id."""
    return f"{config.EDGE_ID_PREFIX}{child}"


class EdgeIndex:
    """Immutable, ordered edge table with O(1) lookups.

    The position of an edge in the index is its column in a
    :class:`~phyloflow.flow.flow_matrix.FlowMatrix`.

    Parameters
    ----------
    edge_ids, parents, children
        Parallel sequences describing each edge.
    branch_lengths
        Non-negative finite lengths aligned with ``edge_ids``.

    Raises
    ------
    MalformedFlowError
        On duplicate edge ids, a child with two incoming edges, mismatched
        lengths or invalid branch lengths.
    """

    __slots__ = ("_edge_ids", "_parents", "_children", "_lengths", "_position", "_by_child")

    def __init__(
        self,
        edge_ids: Sequence[Hashable],
        parents: Sequence[Hashable],
        children: Sequence[Hashable],
        branch_lengths: Iterable[float],
    ):
        self._edge_ids: Tuple[Hashable, ...] = tuple(edge_ids)
        self._parents: Tuple[Hashable, ...] = tuple(parents)
        self._children: Tuple[Hashable, ...] = tuple(children)
        self._lengths = validate_branch_lengths(list(branch_lengths))

        n = len(self._edge_ids)
        if not (len(self._parents) == len(self._children) == self._lengths.size == n):
            raise MalformedFlowError(
                f"Edge columns have different lengths: ids={n}, parents={len(self._parents)}, "
                f"children={len(self._children)}, branch_lengths={self._lengths.size}."
            )

        self._position: Dict[Hashable, int] = {e: i for i, e in enumerate(self._edge_ids)}
        if len(self._position) != n:
            dupes = pd.Series(self._edge_ids).loc[lambda s: s.duplicated()].unique().tolist()
            raise MalformedFlowError(f"Duplicate edge ids: {dupes[:5]}")

        self._by_child: Dict[Hashable, Hashable] = dict(zip(self._children, self._edge_ids))
        if len(self._by_child) != n:
            dupes = pd.Series(self._children).loc[lambda s: s.duplicated()].unique().tolist()
            raise MalformedFlowError(f"Node(s) with more than one incoming edge: {dupes[:5]}")

    # ---------------- Constructors ----------------

    @classmethod
    def from_tree(cls, tree: "PosetTree") -> "EdgeIndex":
        """Index the edges of ``tree`` in preorder of their child node.

        Preorder guarantees every edge appears after the edges above it, so
        flows built against this index are sorted by column.
        """
        edge_ids, parents, children, lengths = [], [], [], []
        for node in tree.preorder():
            parent = tree.parent(node)
            if parent is None:
                continue
            attrs = tree.edges[parent, node]
            edge_ids.append(attrs.get("edge_id", default_edge_id(node)))
            parents.append(parent)
            children.append(node)
            lengths.append(attrs.get("branch_length", config.DEFAULT_BRANCH_LENGTH))
        return cls(edge_ids, parents, children, lengths)

    @classmethod
    def from_frame(cls, frame: pd.DataFrame) -> "EdgeIndex":
        """Rebuild an index from :meth:`to_frame` output (rows with null parent are skipped)."""
        edges = frame[frame["parent"].notna()]
        return cls(
            edges["edge_id"].tolist(),
            edges["parent"].tolist(),
            edges["child"].tolist(),
            edges["branch_length"].to_numpy(dtype=np.float64),
        )

    # ---------------- Lookups ----------------

    def __len__(self) -> int:
        return len(self._edge_ids)

    def __contains__(self, edge_id: Hashable) -> bool:
        return edge_id in self._position

    def __iter__(self) -> Iterator[Hashable]:
        return iter(self._edge_ids)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EdgeIndex):
            return NotImplemented
        return (
            self._edge_ids == other._edge_ids
            and self._parents == other._parents
            and self._children == other._children
            and np.array_equal(self._lengths, other._lengths)
        )

    __hash__ = None

    def __repr__(self) -> str:
        return f"EdgeIndex(n_edges={len(self)})"

    @property
    def edge_ids(self) -> Tuple[Hashable, ...]:
        return self._edge_ids

    @property
    def parents(self) -> Tuple[Hashable, ...]:
        return self._parents

    @property
    def children(self) -> Tuple[Hashable, ...]:
        return self._children

    @property
    def branch_lengths(self) -> np.ndarray:
        """Read-only array of lengths aligned with :attr:`edge_ids`."""
        return self._lengths

    def _require(self, edge_id: Hashable) -> int:
        try:
            return self._position[edge_id]
        except KeyError:
            raise UnknownMemberError([edge_id]) from None

    def position(self, edge_id: Hashable) -> int:
        """Column number of ``edge_id``."""
        return self._require(edge_id)

    def branch_length(self, edge_id: Hashable) -> float:
        return float(self._lengths[self._require(edge_id)])

    def parent(self, edge_id: Hashable) -> Hashable:
        return self._parents[self._require(edge_id)]

    def child(self, edge_id: Hashable) -> Hashable:
        return self._children[self._require(edge_id)]

    def edge_for_child(self, node_id: Hashable) -> Hashable:
        """Id of the edge entering ``node_id``; ``KeyError`` for the root."""
        return self._by_child[node_id]

    def has_child(self, node_id: Hashable) -> bool:
        return node_id in self._by_child

    # ---------------- Derived indexes ----------------

    def subset(self, edge_ids: Iterable[Hashable]) -> "EdgeIndex":
        """Restrict to ``edge_ids``, keeping the original column order."""
        positions = sorted({self._require(e) for e in edge_ids})
        return EdgeIndex(
            [self._edge_ids[i] for i in positions],
            [self._parents[i] for i in positions],
            [self._children[i] for i in positions],
            self._lengths[positions],
        )

    def to_frame(self) -> pd.DataFrame:
        """Edge table with columns ``edge_id, parent, child, branch_length``."""
        return pd.DataFrame(
            {
                "edge_id": list(self._edge_ids),
                "parent": list(self._parents),
                "child": list(self._children),
                "branch_length": np.array(self._lengths),
            }
        )

    def length_series(self) -> pd.Series:
        return pd.Series(np.array(self._lengths), index=pd.Index(self._edge_ids, name="edge_id"))


__all__ = ["EdgeIndex", "default_edge_id"]
