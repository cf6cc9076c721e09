"""Brownian-motion design matrices built from a FlowMatrix.

Column *j* of the design is the flow-membership indicator of edge *j*
scaled by ``sqrt(branch_length_j)``. Under Brownian motion the increment
along an edge has variance proportional to its length, so giving each edge
a unit-scale coefficient and weighting its column by the square root of the
length makes penalized least squares on this design match the Brownian
variance structure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Hashable, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import sparse

from phyloflow.errors import DimensionMismatchError, MalformedFlowError
from phyloflow.flow.flow_matrix import FlowMatrix
from phyloflow.tree.branch_lengths import brownian_weights

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DesignMatrix:
    """Sparse (rows × edges) design with the weights used to build it."""

    matrix: sparse.csr_matrix
    row_ids: Tuple[Hashable, ...]
    edge_ids: Tuple[Hashable, ...]
    weights: np.ndarray

    @property
    def shape(self) -> Tuple[int, int]:
        return self.matrix.shape

    @property
    def n_rows(self) -> int:
        return self.matrix.shape[0]

    @property
    def n_edges(self) -> int:
        return self.matrix.shape[1]

    def weight_series(self) -> pd.Series:
        return pd.Series(np.array(self.weights), index=pd.Index(self.edge_ids, name="edge_id"))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.matrix.toarray(),
            index=pd.Index(self.row_ids, name="node_id"),
            columns=pd.Index(self.edge_ids, name="edge_id"),
        )


def _resolve_branch_lengths(
    fm: FlowMatrix,
    branch_lengths: Optional[Union[Sequence[float], np.ndarray, Mapping[Hashable, float]]],
) -> np.ndarray:
    if branch_lengths is None:
        return np.asarray(fm.branch_lengths, dtype=np.float64)
    if isinstance(branch_lengths, Mapping):
        missing = [e for e in fm.edge_ids if e not in branch_lengths]
        if missing:
            raise DimensionMismatchError(
                f"Branch lengths missing for {len(missing)} edge(s), e.g. {missing[:5]}"
            )
        return np.array([branch_lengths[e] for e in fm.edge_ids], dtype=np.float64)

    arr = np.asarray(branch_lengths, dtype=np.float64).reshape(-1)
    if arr.size != fm.n_edges:
        raise DimensionMismatchError(
            f"Got {arr.size} branch lengths for a FlowMatrix with {fm.n_edges} edges."
        )
    return arr


def build_brownian_design(
    fm: FlowMatrix,
    branch_lengths: Optional[Union[Sequence[float], np.ndarray, Mapping[Hashable, float]]] = None,
    rows: Optional[Sequence[Hashable]] = None,
) -> DesignMatrix:
    """Scale each flow column by ``sqrt`` of its edge's branch length.

    Parameters
    ----------
    fm
        Flow matrix providing the membership structure.
    branch_lengths
        Per-edge lengths aligned with ``fm.edge_ids`` (or a mapping keyed by
        edge id). Defaults to the lengths stored in ``fm``.
    rows
        Node ids to keep, in the order given. Defaults to every row of
        ``fm``.

    Returns
    -------
    DesignMatrix

    Raises
    ------
    DimensionMismatchError
        If the branch-length vector does not have one entry per edge.
    MalformedFlowError
        If any branch length is negative or non-finite.
    UnknownMemberError
        If ``rows`` names a node absent from ``fm``.
    """
    lengths = _resolve_branch_lengths(fm, branch_lengths)
    try:
        weights = brownian_weights(lengths)
    except MalformedFlowError:
        logger.error("Invalid branch lengths supplied for %d edges.", lengths.size)
        raise

    membership = fm.to_sparse()
    if rows is None:
        row_ids = fm.node_ids
    else:
        row_ids = tuple(rows)
        membership = membership[fm.node_positions(row_ids)]

    if weights.size:
        matrix = sparse.csr_matrix(membership @ sparse.diags(weights, format="csr"))
    else:
        matrix = sparse.csr_matrix(membership.shape, dtype=np.float64)
    logger.debug("Brownian design: %d rows × %d edges, %d nonzeros.", *matrix.shape, matrix.nnz)
    return DesignMatrix(matrix=matrix, row_ids=tuple(row_ids), edge_ids=fm.edge_ids, weights=weights)


__all__ = ["DesignMatrix", "build_brownian_design"]
