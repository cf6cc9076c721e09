"""Penalized-regression engines that fit per-edge coefficients.

The core treats the solver as an opaque collaborator behind
:class:`FitEngine`: it receives the Brownian design matrix and a dense
response matrix and returns one coefficient per (edge, trait). The bundled
:class:`SklearnFitEngine` wraps :mod:`sklearn.linear_model` estimators, all
of which accept sparse designs and multi-output responses.

Engine failures are surfaced, never retried or replaced with defaults:
``ConvergenceWarning`` is escalated to :class:`NonConvergenceError` with the
solver's message verbatim, and calls exceeding ``timeout`` raise
:class:`FitTimeoutError`.
"""

from __future__ import annotations

import concurrent.futures as futures
import logging
import time
import warnings
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

import numpy as np
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import ElasticNet, Lasso, LinearRegression, Ridge

from phyloflow import config
from phyloflow.errors import DimensionMismatchError, FitTimeoutError, NonConvergenceError
from phyloflow.model.design import DesignMatrix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineOutput:
    """Raw engine result: ``coefficients`` is (n_edges, n_traits), ``intercepts`` is (n_traits,)."""

    coefficients: np.ndarray
    intercepts: np.ndarray


class FitEngine(Protocol):
    """Interface every fitting engine implements."""

    name: str

    def fit(
        self,
        design: DesignMatrix,
        response: np.ndarray,
        family: str,
        options: Mapping[str, Any],
    ) -> EngineOutput: ...


# =============================================================================
# scikit-learn engine
# =============================================================================


def _default_options(name: str) -> Dict[str, Any]:
    """Engine defaults read from :mod:`phyloflow.config` at call time."""
    if name == "elastic_net":
        return {
            "alpha": config.DEFAULT_ALPHA,
            "l1_ratio": config.DEFAULT_L1_RATIO,
            "max_iter": config.DEFAULT_MAX_ITER,
        }
    if name == "lasso":
        return {"alpha": config.DEFAULT_ALPHA, "max_iter": config.DEFAULT_MAX_ITER}
    if name == "ridge":
        return {"alpha": config.DEFAULT_ALPHA}
    return {}


class SklearnFitEngine:
    """Gaussian-family engine backed by a scikit-learn linear estimator.

    Parameters
    ----------
    name
        Registry name, also used to pick defaults.
    estimator_factory
        Callable building an unfitted estimator from keyword options.
    """

    supported_families = ("gaussian",)

    def __init__(self, name: str, estimator_factory: Callable[..., Any]):
        self.name = name
        self.estimator_factory = estimator_factory

    def __repr__(self) -> str:
        return f"SklearnFitEngine({self.name!r})"

    def fit(
        self,
        design: DesignMatrix,
        response: np.ndarray,
        family: str,
        options: Mapping[str, Any],
    ) -> EngineOutput:
        if family not in self.supported_families:
            raise ValueError(
                f"Engine {self.name!r} supports families {self.supported_families}, got {family!r}."
            )
        Y = np.asarray(response, dtype=np.float64)
        if Y.ndim == 1:
            Y = Y[:, None]
        if Y.shape[0] != design.n_rows:
            raise DimensionMismatchError(
                f"Design has {design.n_rows} rows but the response has {Y.shape[0]}."
            )

        params = {**_default_options(self.name), **dict(options)}
        estimator = self.estimator_factory(**params)

        with warnings.catch_warnings():
            warnings.simplefilter("error", ConvergenceWarning)
            try:
                estimator.fit(design.matrix, Y)
            except ConvergenceWarning as exc:
                raise NonConvergenceError(str(exc)) from exc

        n_traits, n_edges = Y.shape[1], design.n_edges
        coef = np.asarray(estimator.coef_, dtype=np.float64).reshape(n_traits, n_edges).T
        intercepts = np.broadcast_to(
            np.asarray(getattr(estimator, "intercept_", 0.0), dtype=np.float64), (n_traits,)
        ).copy()
        return EngineOutput(coefficients=coef, intercepts=intercepts)


_ENGINES: Dict[str, Callable[[], FitEngine]] = {
    "elastic_net": lambda: SklearnFitEngine("elastic_net", ElasticNet),
    "lasso": lambda: SklearnFitEngine("lasso", Lasso),
    "ridge": lambda: SklearnFitEngine("ridge", Ridge),
    "ols": lambda: SklearnFitEngine("ols", LinearRegression),
}


def available_engines() -> list[str]:
    return sorted(_ENGINES)


def register_engine(name: str, factory: Callable[[], FitEngine]) -> None:
    """Make ``factory`` available to :func:`get_engine` under ``name``."""
    _ENGINES[name] = factory


def get_engine(name: Optional[str] = None) -> FitEngine:
    """Instantiate the engine registered under ``name`` (default: ``config.DEFAULT_ENGINE``)."""
    name = name or config.DEFAULT_ENGINE
    try:
        return _ENGINES[name]()
    except KeyError:
        raise ValueError(f"Unknown fitting engine {name!r}; available: {available_engines()}") from None


# =============================================================================
# Invocation
# =============================================================================


def run_engine(
    engine: FitEngine,
    design: DesignMatrix,
    response: np.ndarray,
    family: str = "gaussian",
    options: Optional[Mapping[str, Any]] = None,
    timeout: Optional[float] = None,
) -> EngineOutput:
    """Invoke ``engine`` once, optionally bounded by ``timeout`` seconds.

    The engine runs on a worker thread when a timeout is set. A timed-out
    worker cannot be interrupted: it is abandoned and its result discarded,
    but it keeps running until the engine returns. Interpreter exit waits
    for it, and a :class:`SklearnFitEngine` worker still restores the
    process-wide warning filters when its fit ends. Engines that may run
    for a long time should honour their own iteration limits.

    Raises
    ------
    FitTimeoutError
        If the engine does not return in time.
    NonConvergenceError
        Propagated unchanged from the engine.
    DimensionMismatchError
        If the engine's output does not have one row per edge and one
        column per trait.
    """
    options = dict(options or {})
    n_traits = 1 if np.ndim(response) == 1 else np.shape(response)[1]
    logger.info(
        "Fitting %s on %d rows × %d edges for %d trait(s).",
        getattr(engine, "name", type(engine).__name__),
        design.n_rows,
        design.n_edges,
        n_traits,
    )
    started = time.perf_counter()

    if timeout is None:
        output = engine.fit(design, response, family, options)
    else:
        executor = futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="phyloflow-fit")
        future = executor.submit(engine.fit, design, response, family, options)
        try:
            output = future.result(timeout=timeout)
        except futures.TimeoutError:
            raise FitTimeoutError(f"Fitting engine did not finish within {timeout:g} s.") from None
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    coef = np.asarray(output.coefficients)
    if coef.shape != (design.n_edges, n_traits):
        raise DimensionMismatchError(
            f"Engine returned coefficients of shape {coef.shape}, "
            f"expected ({design.n_edges}, {n_traits})."
        )
    logger.info("Fit finished in %.2f s.", time.perf_counter() - started)
    return output


__all__ = [
    "EngineOutput",
    "FitEngine",
    "SklearnFitEngine",
    "available_engines",
    "register_engine",
    "get_engine",
    "run_engine",
]
