"""Model configuration and the end-to-end fitting entry point.

:class:`ModelConfig` spells out what a symbolic formula would otherwise
encode: the response columns, the model term, the engine and its options,
and which rows to fit over. :func:`fit_flow_model` turns a
:class:`~phyloflow.flow.frame.FlowFrame` and a config into an immutable
:class:`FitResult`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Hashable, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from phyloflow import config
from phyloflow.flow.frame import FlowFrame, standardize_columns
from phyloflow.model.design import build_brownian_design
from phyloflow.model.engine import FitEngine, get_engine, run_engine

logger = logging.getLogger(__name__)

SUPPORTED_TERMS = ("brownian_flow",)


@dataclass(frozen=True)
class ModelConfig:
    """Explicit model definition.

    Attributes
    ----------
    response
        Trait columns to model jointly.
    term
        Model term; only ``"brownian_flow"`` (sqrt-branch-length weighted
        flows) is supported.
    engine
        Registered engine name; ``None`` means ``config.DEFAULT_ENGINE``.
    family
        Response family passed to the engine.
    engine_options
        Extra keyword options for the engine (e.g. ``alpha``).
    rows
        ``"observed"`` (every row with complete responses), ``"tips"``,
        ``"all"``, or an explicit sequence of node ids. Incomplete rows are
        always dropped. ``"all"`` selects the same rows as ``"observed"`` but
        expects every node to be observed, so dropped rows are logged as a
        warning instead of at info level.
    standardize
        Centre and scale responses before fitting; centre and scale are
        recorded on the result for back-transformation.
    timeout
        Seconds before the engine call is abandoned.
    """

    response: Tuple[str, ...]
    term: str = "brownian_flow"
    engine: Optional[str] = None
    family: str = "gaussian"
    engine_options: Mapping[str, Any] = field(default_factory=dict)
    rows: Union[str, Sequence[Hashable]] = "observed"
    standardize: bool = True
    timeout: Optional[float] = None

    # engine_options is a read-only mapping and rows may be a list.
    __hash__ = None

    def __post_init__(self):
        response = (self.response,) if isinstance(self.response, str) else tuple(self.response)
        if not response:
            raise ValueError("ModelConfig.response must name at least one trait column.")
        if self.term not in SUPPORTED_TERMS:
            raise ValueError(f"Unsupported model term {self.term!r}; expected one of {SUPPORTED_TERMS}.")
        if isinstance(self.rows, str) and self.rows not in ("observed", "tips", "all"):
            raise ValueError(f"rows must be 'observed', 'tips', 'all' or a sequence of ids, got {self.rows!r}.")
        object.__setattr__(self, "response", response)
        object.__setattr__(self, "engine_options", MappingProxyType(dict(self.engine_options)))


@dataclass(frozen=True)
class FitResult:
    """Immutable outcome of one model fit.

    Attributes
    ----------
    coefficients
        (edges × traits) estimated rate of change along each edge.
    weights
        Design weight of each edge at fit time (``sqrt(branch_length)``).
    intercepts
        Per-trait intercept (the root state in the fitted scale).
    row_ids
        Node ids the model was fitted on.
    center, scale
        Standardization applied to the responses, or ``None``.
    """

    coefficients: pd.DataFrame
    weights: pd.Series
    intercepts: pd.Series
    row_ids: Tuple[Hashable, ...]
    engine: str
    family: str
    options: Mapping[str, Any]
    center: Optional[pd.Series] = None
    scale: Optional[pd.Series] = None

    @property
    def traits(self) -> Tuple[str, ...]:
        return tuple(self.coefficients.columns)

    @property
    def edge_ids(self) -> Tuple[Hashable, ...]:
        return tuple(self.coefficients.index)

    def coefficient(self, edge_id: Hashable, trait: str) -> float:
        return float(self.coefficients.at[edge_id, trait])


def _select_rows(frame: FlowFrame, response: pd.DataFrame, rows) -> pd.Index:
    fm = frame.flows
    if isinstance(rows, str):
        if rows == "tips":
            candidates = pd.Index(fm.tips())
        else:
            candidates = response.index
    else:
        fm.node_positions(rows)
        candidates = pd.Index(list(rows))

    complete = response.loc[candidates].notna().all(axis=1)
    dropped = int((~complete).sum())
    if dropped and isinstance(rows, str) and rows == "observed":
        logger.info("Fitting on %d observed row(s); %d lack responses.", len(candidates) - dropped, dropped)
    elif dropped:
        logger.warning("Dropping %d row(s) with missing responses.", dropped)
    selected = candidates[complete.to_numpy()]
    if len(selected) == 0:
        raise ValueError("No rows with complete responses to fit.")
    return selected


def fit_flow_model(
    frame: FlowFrame,
    model: ModelConfig,
    engine: Optional[FitEngine] = None,
) -> FitResult:
    """Fit per-edge coefficients for ``model.response`` on ``frame``.

    Parameters
    ----------
    frame
        Flow matrix plus traits.
    model
        What to fit and how.
    engine
        Engine instance overriding ``model.engine``.

    Returns
    -------
    FitResult

    Raises
    ------
    KeyError
        If a response column is missing.
    NonConvergenceError, FitTimeoutError
        Propagated from the engine unchanged.
    """
    missing = [c for c in model.response if c not in frame.columns]
    if missing:
        raise KeyError(f"Response column(s) not in frame: {missing}")

    response = frame.traits[list(model.response)].astype(np.float64)
    row_ids = _select_rows(frame, response, model.rows)
    Y = response.loc[row_ids]

    center = scale = None
    if model.standardize:
        Y, center, scale = standardize_columns(Y)

    design = build_brownian_design(frame.flows, rows=list(row_ids))
    engine = engine or get_engine(model.engine)
    timeout = model.timeout if model.timeout is not None else config.DEFAULT_FIT_TIMEOUT
    output = run_engine(
        engine,
        design,
        Y.to_numpy(),
        family=model.family,
        options=model.engine_options,
        timeout=timeout,
    )

    traits = pd.Index(model.response, name="trait")
    edges = pd.Index(design.edge_ids, name="edge_id")
    return FitResult(
        coefficients=pd.DataFrame(np.asarray(output.coefficients), index=edges, columns=traits),
        weights=design.weight_series(),
        intercepts=pd.Series(np.asarray(output.intercepts), index=traits),
        row_ids=tuple(row_ids),
        engine=getattr(engine, "name", type(engine).__name__),
        family=model.family,
        options=model.engine_options,
        center=center,
        scale=scale,
    )


__all__ = ["ModelConfig", "FitResult", "fit_flow_model"]
