"""Ancestral trait reconstruction from fitted per-edge coefficients.

The prediction at a node is the sum, over the edges of its flow, of
``coefficient × design weight``. That is exactly the node's design row
dotted with the coefficient vector, so predictions are reproducible from a
:class:`~phyloflow.model.fit.FitResult` alone, with no second call to the
fitting engine. Internal nodes never observed during fitting get
predictions the same way.

Predictions stay in the fitted scale. :func:`back_transform` undoes a
standardization the caller applied before fitting.
"""

from __future__ import annotations

import logging
from typing import Hashable, Iterable, Optional, Tuple, Union

import numpy as np
import pandas as pd

from phyloflow.flow.flow_matrix import FlowMatrix
from phyloflow.model.fit import FitResult

logger = logging.getLogger(__name__)


def _edge_keys(fm: FlowMatrix, use_source_ids: bool) -> Tuple[Hashable, ...]:
    return fm.source_edge_ids if use_source_ids else fm.edge_ids


def _aligned_effects(fm: FlowMatrix, fit: FitResult, use_source_ids: bool) -> np.ndarray:
    """Per-edge ``weight × coefficient`` aligned with ``fm``'s columns (missing edges → 0)."""
    keys = list(_edge_keys(fm, use_source_ids))
    coef = fit.coefficients.reindex(keys)
    weights = fit.weights.reindex(keys)
    n_missing = int(coef.isna().any(axis=1).sum())
    if n_missing:
        logger.debug("%d of %d edges have no fitted coefficient; treated as 0.", n_missing, len(keys))
    return weights.fillna(0.0).to_numpy()[:, None] * coef.fillna(0.0).to_numpy()


def predict_node(
    fm: FlowMatrix,
    fit: FitResult,
    node_id: Hashable,
    include_intercept: bool = True,
    use_source_ids: bool = False,
) -> pd.Series:
    """Predicted trait vector at ``node_id``.

    Parameters
    ----------
    fm
        Flow matrix defining the node's path. May be a filtered matrix of
        the one used for fitting; pass ``use_source_ids=True`` to match its
        edges to the fit through ``fm.source_edge_ids``.
    fit
        Fitted coefficients and design weights.
    node_id
        Row of ``fm`` to predict.
    include_intercept
        Add the fitted intercept (root state).

    Returns
    -------
    pd.Series
        One value per trait, in the fit's (possibly standardized) scale.
    """
    flow = fm.row(node_id)
    keys = _edge_keys(fm, use_source_ids)
    if use_source_ids:
        positions = [fm.edge_index.position(e) for e in flow.edge_ids]
        path = [keys[p] for p in positions]
    else:
        path = list(flow.edge_ids)

    total = pd.Series(0.0, index=fit.coefficients.columns)
    known = [e for e in path if e in fit.coefficients.index]
    if known:
        weighted = fit.coefficients.loc[known].mul(fit.weights.loc[known], axis=0)
        total = total + weighted.sum(axis=0)
    if include_intercept:
        total = total + fit.intercepts
    total.name = node_id
    return total


def predict_nodes(
    fm: FlowMatrix,
    fit: FitResult,
    node_ids: Optional[Iterable[Hashable]] = None,
    include_intercept: bool = True,
    use_source_ids: bool = False,
) -> pd.DataFrame:
    """Predicted traits for many nodes at once (defaults to every row).

    Computed as ``membership @ (weights × coefficients)``, which equals
    :func:`predict_node` row by row.
    """
    membership = fm.to_sparse()
    if node_ids is None:
        row_ids = list(fm.node_ids)
    else:
        row_ids = list(node_ids)
        membership = membership[fm.node_positions(row_ids)]

    values = membership @ _aligned_effects(fm, fit, use_source_ids)
    values = np.asarray(values, dtype=np.float64).reshape(len(row_ids), len(fit.traits))
    if include_intercept:
        values = values + fit.intercepts.to_numpy()[None, :]
    return pd.DataFrame(
        values,
        index=pd.Index(row_ids, name="node_id"),
        columns=fit.coefficients.columns,
    )


def back_transform(
    values: Union[pd.Series, pd.DataFrame],
    center: Optional[pd.Series],
    scale: Optional[pd.Series],
) -> Union[pd.Series, pd.DataFrame]:
    """Map standardized predictions back to the original trait scale.

    Computes ``values * scale + center`` aligned by trait name. ``None``
    for either argument leaves that step out.
    """
    out = values.copy()
    if scale is not None:
        out = out * scale if isinstance(out, pd.Series) else out.mul(scale, axis=1)
    if center is not None:
        out = out + center if isinstance(out, pd.Series) else out.add(center, axis=1)
    if isinstance(values, pd.Series):
        out.name = values.name
    return out


__all__ = ["predict_node", "predict_nodes", "back_transform"]
