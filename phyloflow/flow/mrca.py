"""Most-recent-common-ancestor detection and induced-subtree extraction.

Because flows are nested, the flow of the MRCA of a member set is the
intersection of the member flows. Laminarity guarantees that this
intersection is itself the flow of a stored row (or empty, meaning the
root), so the MRCA is found with one column-sum over the member rows and
one lookup of the deepest surviving edge. No graph search is involved.

Filtering keeps every row whose flow contains the MRCA's flow: the MRCA
itself and every internal node and tip below it. Identifiers are renumbered
into a fresh contiguous namespace; each new id maps back to the original
through :attr:`FlowMatrix.source_node_ids` / :attr:`FlowMatrix.source_edge_ids`.
"""

from __future__ import annotations

import logging
import os
from typing import Hashable, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from joblib import Parallel, delayed

from phyloflow import config
from phyloflow.errors import EmptyQueryError, MalformedFlowError
from phyloflow.flow.edge_index import EdgeIndex
from phyloflow.flow.flow_matrix import FlowMatrix

logger = logging.getLogger(__name__)


def _resolve_members(fm: FlowMatrix, members: Iterable[Hashable], by: str) -> np.ndarray:
    """Unique row positions for ``members`` given as node ids or labels."""
    if isinstance(members, str) or not isinstance(members, Iterable):
        members = [members]
    members = list(dict.fromkeys(members))
    if not members:
        raise EmptyQueryError("MRCA query needs at least one member node.")
    if by == "label":
        members = fm.ids_for_labels(members)
    elif by != "id":
        raise ValueError(f"Unknown member lookup {by!r}; expected 'id' or 'label'.")
    return np.unique(fm.node_positions(members))


def _mrca_position(fm: FlowMatrix, positions: np.ndarray) -> int:
    """Row position of the MRCA of the rows at ``positions``."""
    if positions.size == 1:
        return int(positions[0])

    member_rows = fm.to_sparse()[positions]
    counts = np.asarray(member_rows.sum(axis=0)).ravel()
    common = np.flatnonzero(counts == positions.size)
    if common.size == 0:
        return fm.node_position(fm.root)

    # The deepest shared edge is the one whose column has the fewest rows.
    column_sizes = np.asarray(fm.to_sparse().getnnz(axis=0))[common]
    deepest = common[np.argmin(column_sizes)]
    mrca_id = fm.edge_index.children[deepest]
    pos = fm.node_position(mrca_id)
    if fm.depths[pos] != common.size:
        raise MalformedFlowError(
            f"Intersection of member flows ({common.size} edges) is not the flow of "
            f"{mrca_id!r} ({fm.depths[pos]} edges); flows are not laminar."
        )
    return pos


def find_mrca(fm: FlowMatrix, members: Iterable[Hashable], by: str = "id") -> Hashable:
    """Most recent common ancestor of ``members``.

    Parameters
    ----------
    fm
        The flow matrix to query.
    members
        Node ids (or labels when ``by="label"``). A single member, given
        alone or in a collection, is its own MRCA.
    by
        ``"id"`` (default) or ``"label"``.

    Raises
    ------
    EmptyQueryError
        If ``members`` is empty.
    UnknownMemberError
        If any member is not a row of ``fm``.
    """
    positions = _resolve_members(fm, members, by)
    return fm.node_ids[_mrca_position(fm, positions)]


def subtree_positions(fm: FlowMatrix, mrca: Hashable) -> Tuple[np.ndarray, np.ndarray]:
    """Row and column positions of the subtree rooted at ``mrca``.

    Rows are every node whose flow contains ``flow(mrca)``; columns are the
    edges strictly below ``mrca``. Both keep the original order.
    """
    mrca_pos = fm.node_position(mrca)
    rows = fm.descendant_positions(mrca_pos)
    owner_rows = set(rows.tolist())
    owner_rows.discard(mrca_pos)
    children = fm.edge_index.children
    cols = np.array(
        [j for j in range(fm.n_edges) if fm.node_position(children[j]) in owner_rows],
        dtype=np.int64,
    )
    return rows, cols


def extract_subtree(fm: FlowMatrix, mrca: Hashable, renumber: bool = True) -> FlowMatrix:
    """Induced sub-FlowMatrix rooted at ``mrca``.

    Parameters
    ----------
    fm
        Source flow matrix; never mutated.
    mrca
        New root.
    renumber
        When ``True`` (default) nodes become ``n0, n1, …`` and edges
        ``e0, e1, …`` (prefixes from :mod:`phyloflow.config`). When
        ``False`` the original ids are kept.

    Returns
    -------
    FlowMatrix
        Independent matrix whose ``source_node_ids`` / ``source_edge_ids``
        resolve to the ids of the very first matrix in a filtering chain.
    """
    rows, cols = subtree_positions(fm, mrca)
    sub = fm.to_sparse()[rows][:, cols]

    old_nodes = [fm.node_ids[i] for i in rows]
    old_edges = [fm.edge_ids[j] for j in cols]
    if renumber:
        node_map = {old: f"{config.RENUMBER_NODE_PREFIX}{k}" for k, old in enumerate(old_nodes)}
        edge_map = {old: f"{config.RENUMBER_EDGE_PREFIX}{k}" for k, old in enumerate(old_edges)}
    else:
        node_map = {old: old for old in old_nodes}
        edge_map = {old: old for old in old_edges}

    ei = fm.edge_index
    edge_index = EdgeIndex(
        [edge_map[e] for e in old_edges],
        [node_map[ei.parents[j]] for j in cols],
        [node_map[ei.children[j]] for j in cols],
        ei.branch_lengths[cols],
    )
    return FlowMatrix(
        sub,
        node_ids=[node_map[n] for n in old_nodes],
        edge_index=edge_index,
        root=node_map[mrca],
        labels=[fm.labels[i] for i in rows],
        is_tip=fm.is_tip[rows],
        source_node_ids=[fm.source_node_ids[i] for i in rows],
        source_edge_ids=[fm.source_edge_ids[j] for j in cols],
        validate=False,
    )


def filter_to_mrca(
    fm: FlowMatrix,
    members: Iterable[Hashable],
    by: str = "id",
    renumber: bool = True,
) -> Tuple[FlowMatrix, Hashable]:
    """Restrict ``fm`` to the subtree under the MRCA of ``members``.

    Returns
    -------
    (FlowMatrix, Hashable)
        The induced sub-FlowMatrix and the MRCA's id **in the original
        matrix** (its new id is ``sub.root``).

    Raises
    ------
    EmptyQueryError
        If ``members`` is empty.
    UnknownMemberError
        If any member is not a row of ``fm``.
    """
    mrca = find_mrca(fm, members, by=by)
    sub = extract_subtree(fm, mrca, renumber=renumber)
    logger.debug(
        "MRCA %r keeps %d/%d nodes and %d/%d edges.",
        mrca,
        sub.n_nodes,
        fm.n_nodes,
        sub.n_edges,
        fm.n_edges,
    )
    return sub, mrca


# =====================================================================
# Batch queries
# =====================================================================


def _get_n_jobs(n_tasks: int) -> int:
    """Resolve the number of parallel workers.

    Returns 1 (sequential) when the number of tasks is small or the user
    explicitly sets ``PHYLOFLOW_N_JOBS=1``.
    """
    env = os.environ.get(config.N_JOBS_ENV_VAR)
    if env is not None:
        try:
            return max(int(env), 1)
        except ValueError:
            logger.warning("Ignoring non-integer %s=%r.", config.N_JOBS_ENV_VAR, env)
    if n_tasks < config.MIN_QUERIES_FOR_PARALLEL:
        return 1
    return -1  # joblib: use all available cores


def filter_many(
    fm: FlowMatrix,
    queries: Sequence[Iterable[Hashable]],
    by: str = "id",
    renumber: bool = True,
    n_jobs: Optional[int] = None,
) -> List[Tuple[FlowMatrix, Hashable]]:
    """Run independent :func:`filter_to_mrca` queries, in query order.

    Queries share no state, so they run on joblib threads when there are
    enough of them. The first failing query's error propagates.
    """
    queries = [list(q) for q in queries]
    if n_jobs is None:
        n_jobs = _get_n_jobs(len(queries))
    if n_jobs == 1:
        return [filter_to_mrca(fm, q, by=by, renumber=renumber) for q in queries]
    return Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(filter_to_mrca)(fm, q, by=by, renumber=renumber) for q in queries
    )


__all__ = [
    "find_mrca",
    "filter_to_mrca",
    "extract_subtree",
    "subtree_positions",
    "filter_many",
]
