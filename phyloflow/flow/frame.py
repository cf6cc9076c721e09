"""A FlowMatrix bundled with named trait columns.

:class:`FlowFrame` is the explicit replacement for a data frame with a
special phylogeny column. It holds a :class:`FlowMatrix` and a
:class:`pandas.DataFrame` of traits indexed by the same node ids, and
exposes the few typed operations downstream code needs: column selection,
predicate filters that resolve to id sets, MRCA filtering and
standardization.
"""

from __future__ import annotations

import logging
from typing import Callable, Hashable, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from phyloflow.errors import DimensionMismatchError
from phyloflow.flow.flow_matrix import FlowMatrix
from phyloflow.flow.mrca import extract_subtree, find_mrca, subtree_positions

logger = logging.getLogger(__name__)

RowPredicate = Callable[[pd.DataFrame], Union[pd.Series, np.ndarray]]


def standardize_columns(traits: pd.DataFrame) -> Tuple[pd.DataFrame, pd.Series, pd.Series]:
    """Centre and scale each column, ignoring missing values.

    Uses the nan-mean and the population standard deviation (``ddof=0``).
    Constant columns get a scale of 1 so they map to zero instead of NaN.

    Returns
    -------
    (DataFrame, Series, Series)
        Standardized traits, per-column centre, per-column scale.
    """
    center = traits.mean(axis=0, skipna=True)
    scale = traits.std(axis=0, skipna=True, ddof=0)
    scale = scale.where((scale > 0) & np.isfinite(scale), 1.0)
    return (traits - center) / scale, center, scale


class FlowFrame:
    """Immutable pairing of a :class:`FlowMatrix` with a trait table.

    Parameters
    ----------
    flows
        The flow matrix; its rows define the frame's index.
    traits
        Trait values indexed by node id. Rows for nodes without observations
        may be omitted; they are filled with NaN.

    Raises
    ------
    DimensionMismatchError
        If ``traits`` is indexed by ids that are not rows of ``flows``.
    """

    def __init__(self, flows: FlowMatrix, traits: Optional[pd.DataFrame] = None):
        if traits is None:
            traits = pd.DataFrame(index=pd.Index(flows.node_ids))
        extra = [i for i in traits.index if i not in flows]
        if extra:
            raise DimensionMismatchError(
                f"{len(extra)} trait row(s) have no FlowMatrix row, e.g. {extra[:5]}"
            )
        if traits.index.has_duplicates:
            raise DimensionMismatchError("Trait table has duplicated node ids.")
        aligned = traits.reindex(pd.Index(flows.node_ids, name="node_id"))
        self._flows = flows
        self._traits = aligned

    def __len__(self) -> int:
        return len(self._flows)

    def __repr__(self) -> str:
        return f"FlowFrame(n_nodes={len(self)}, traits={list(self._traits.columns)})"

    @property
    def flows(self) -> FlowMatrix:
        return self._flows

    @property
    def traits(self) -> pd.DataFrame:
        """Copy of the trait table, aligned with ``flows.node_ids``."""
        return self._traits.copy()

    @property
    def columns(self) -> List[str]:
        return list(self._traits.columns)

    def trait_vector(self, node_id: Hashable) -> pd.Series:
        return self._traits.loc[node_id].copy()

    def with_traits(self, traits: pd.DataFrame) -> "FlowFrame":
        return FlowFrame(self._flows, traits)

    # ---------------- Column & row selection ----------------

    def select(self, columns: Sequence[str]) -> "FlowFrame":
        """Keep only ``columns`` (raises ``KeyError`` on unknown names)."""
        columns = list(columns)
        missing = [c for c in columns if c not in self._traits.columns]
        if missing:
            raise KeyError(f"Unknown trait column(s): {missing}")
        return FlowFrame(self._flows, self._traits[columns])

    def ids_where(
        self,
        column_or_predicate: Union[str, RowPredicate],
        value=None,
    ) -> List[Hashable]:
        """Resolve a row filter to node ids.

        Either ``ids_where("clade", "Felidae")`` (column equals value) or
        ``ids_where(lambda df: df["size"] > 2)`` with a predicate evaluated on
        the trait table joined with :meth:`FlowMatrix.node_table`.
        """
        nodes = self._flows.node_table()
        table = nodes.drop(columns=[c for c in nodes.columns if c in self._traits.columns]).join(
            self._traits
        )
        if callable(column_or_predicate):
            mask = np.asarray(column_or_predicate(table), dtype=bool)
        else:
            if column_or_predicate not in table.columns:
                raise KeyError(f"Unknown column {column_or_predicate!r}")
            mask = (table[column_or_predicate] == value).to_numpy()
        if mask.shape != (len(table),):
            raise DimensionMismatchError(
                f"Row filter returned shape {mask.shape}, expected ({len(table)},)."
            )
        return table.index[mask].tolist()

    def tips_only(self) -> pd.DataFrame:
        """Trait rows of tip nodes."""
        return self._traits[self._flows.is_tip]

    # ---------------- Subtree filtering ----------------

    def filter_mrca(
        self,
        members: Optional[Iterable[Hashable]] = None,
        where: Optional[Union[Tuple[str, object], RowPredicate]] = None,
        by: str = "id",
        renumber: bool = True,
    ) -> Tuple["FlowFrame", Hashable]:
        """Restrict the frame to the subtree under the MRCA of a member set.

        Parameters
        ----------
        members
            Explicit member ids (or labels with ``by="label"``).
        where
            Alternatively a ``(column, value)`` pair or a row predicate,
            resolved through :meth:`ids_where`.

        Returns
        -------
        (FlowFrame, Hashable)
            The filtered frame and the MRCA id in this frame's namespace.
        """
        if (members is None) == (where is None):
            raise ValueError("Pass exactly one of 'members' or 'where'.")
        if where is not None:
            members = self.ids_where(*where) if isinstance(where, tuple) else self.ids_where(where)
            by = "id"

        mrca = find_mrca(self._flows, members, by=by)
        rows, _ = subtree_positions(self._flows, mrca)
        sub = extract_subtree(self._flows, mrca, renumber=renumber)
        traits = self._traits.iloc[rows].copy()
        traits.index = pd.Index(sub.node_ids, name="node_id")
        logger.debug("Filtered frame to %d rows under MRCA %r.", len(traits), mrca)
        return FlowFrame(sub, traits), mrca

    # ---------------- Scaling ----------------

    def standardize(
        self, columns: Optional[Sequence[str]] = None
    ) -> Tuple["FlowFrame", pd.Series, pd.Series]:
        """Return a frame with ``columns`` centred and scaled, plus centre and scale.

        ``columns`` defaults to every numeric trait column; categorical
        columns are left untouched.
        """
        if columns is None:
            columns = self._traits.select_dtypes("number").columns.tolist()
        columns = list(columns)
        scaled, center, scale = standardize_columns(self._traits[columns])
        traits = self._traits.copy()
        traits[columns] = scaled
        return FlowFrame(self._flows, traits), center, scale


__all__ = ["FlowFrame", "standardize_columns"]
