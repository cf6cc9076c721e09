"""Branch-length handling for trees and flow encodings.

Provides validation of per-edge branch lengths, the square-root weights used
by the Brownian design, and the ultrametric subtraction used when converting
a linkage matrix into per-edge lengths.
"""

from __future__ import annotations

from typing import Dict, Tuple

import numpy as np

from phyloflow import config
from phyloflow.errors import MalformedFlowError


def node_id(idx: int, n_leaves: int) -> str:
    """Map a flat merge index to a node-ID string.

    Indices ``0 … n_leaves-1`` become ``L0 … L{n-1}`` (leaves);
    indices ``≥ n_leaves`` become ``N{idx}`` (internal nodes).
    """
    return f"L{idx}" if idx < n_leaves else f"N{idx}"


def validate_branch_length(value, edge: object = None) -> float:
    """Coerce one branch length to ``float`` and reject invalid values.

    Missing values (``None``) fall back to ``config.DEFAULT_BRANCH_LENGTH``.
    Negative values within ``config.BRANCH_LENGTH_TOLERANCE`` of zero are
    clamped to ``0.0``.

    Raises
    ------
    MalformedFlowError
        If the value is non-finite or clearly negative.
    """
    if value is None:
        return float(config.DEFAULT_BRANCH_LENGTH)
    length = float(value)
    if not np.isfinite(length):
        raise MalformedFlowError(f"Non-finite branch length {value!r} on edge {edge!r}.")
    if length < 0.0:
        if length >= -config.BRANCH_LENGTH_TOLERANCE:
            return 0.0
        raise MalformedFlowError(f"Negative branch length {value!r} on edge {edge!r}.")
    return length


def validate_branch_lengths(lengths) -> np.ndarray:
    """Vectorised :func:`validate_branch_length` returning a read-only array."""
    arr = np.asarray(lengths, dtype=np.float64).reshape(-1).copy()
    if not np.all(np.isfinite(arr)):
        bad = np.flatnonzero(~np.isfinite(arr))
        raise MalformedFlowError(f"Non-finite branch lengths at positions {bad[:5].tolist()}.")
    near_zero = (arr < 0.0) & (arr >= -config.BRANCH_LENGTH_TOLERANCE)
    arr[near_zero] = 0.0
    if np.any(arr < 0.0):
        bad = np.flatnonzero(arr < 0.0)
        raise MalformedFlowError(f"Negative branch lengths at positions {bad[:5].tolist()}.")
    arr.setflags(write=False)
    return arr


def brownian_weights(lengths) -> np.ndarray:
    """Return ``sqrt(branch_length)`` per edge.

    Under Brownian motion the increment along an edge has variance
    proportional to its length, so a unit-variance rate on that edge
    contributes ``sqrt(length)`` to the trait.
    """
    weights = np.sqrt(validate_branch_lengths(lengths))
    weights.setflags(write=False)
    return weights


def compute_ultrametric_branch_lengths(
    n_leaves: int,
    children: np.ndarray,
    distances: np.ndarray,
) -> Dict[Tuple[str, str], float]:
    """Compute per-edge branch lengths from merge distances.

    For each merge step *k* that joins children *a*, *b* at height
    ``distances[k]``:

        branch_length(parent → child) = distances[k] − merge_height(child)

    Leaf merge-heights are 0.

    Parameters
    ----------
    n_leaves
        Number of original leaf nodes.
    children
        ``(n_leaves - 1, 2)`` array of child-index pairs (from scipy/sklearn).
    distances
        ``(n_leaves - 1,)`` array of merge distances.

    Returns
    -------
    Dict[Tuple[str, str], float]
        Mapping ``(parent_id, child_id) → branch_length``.
    """
    edge_lengths: Dict[Tuple[str, str], float] = {}
    merge_heights: Dict[str, float] = {node_id(i, n_leaves): 0.0 for i in range(n_leaves)}

    for k, (a, b) in enumerate(children):
        parent = node_id(n_leaves + k, n_leaves)
        height = float(distances[k])
        merge_heights[parent] = height

        for child in (node_id(int(a), n_leaves), node_id(int(b), n_leaves)):
            edge_lengths[(parent, child)] = validate_branch_length(
                height - merge_heights[child], edge=(parent, child)
            )

    return edge_lengths


__all__ = [
    "node_id",
    "validate_branch_length",
    "validate_branch_lengths",
    "brownian_weights",
    "compute_ultrametric_branch_lengths",
]
