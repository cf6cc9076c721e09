"""End-to-end model fitting on a FlowFrame."""

import logging
import threading
import warnings

import numpy as np
import pandas as pd
import pytest
from sklearn.exceptions import ConvergenceWarning

from phyloflow.errors import FitTimeoutError, NonConvergenceError
from phyloflow.flow.frame import FlowFrame
from phyloflow.model.ancestral import back_transform, predict_nodes
from phyloflow.model.engine import SklearnFitEngine
from phyloflow.model.fit import FitResult, ModelConfig, fit_flow_model


# ---------------------------------------------------------------------------
# ModelConfig
# ---------------------------------------------------------------------------


def test_model_config_normalizes_response():
    model = ModelConfig("size")
    assert model.response == ("size",)
    assert model.term == "brownian_flow"
    assert model.rows == "observed"


def test_model_config_options_are_read_only():
    model = ModelConfig(["size"], engine_options={"alpha": 0.5})
    with pytest.raises(TypeError):
        model.engine_options["alpha"] = 1.0


def test_model_config_compares_by_value_but_is_unhashable():
    a = ModelConfig(["size"], engine_options={"alpha": 0.5})
    b = ModelConfig("size", engine_options={"alpha": 0.5})

    assert a == b
    assert a != ModelConfig("size", engine_options={"alpha": 1.0})
    with pytest.raises(TypeError):
        hash(a)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"response": []},
        {"response": ["size"], "term": "ornstein_uhlenbeck"},
        {"response": ["size"], "rows": "internal"},
    ],
)
def test_model_config_rejects_invalid_settings(kwargs):
    with pytest.raises(ValueError):
        ModelConfig(**kwargs)


# ---------------------------------------------------------------------------
# fit_flow_model
# ---------------------------------------------------------------------------


def test_exact_fit_recovers_simulated_rates(seven_tip_flows, simulated_traits, lstsq_engine):
    traits, rates = simulated_traits
    frame = FlowFrame(seven_tip_flows, traits)
    model = ModelConfig(list(traits.columns), rows="all", standardize=False)

    fit = fit_flow_model(frame, model, engine=lstsq_engine)

    assert isinstance(fit, FitResult)
    assert fit.engine == "lstsq"
    assert fit.traits == tuple(traits.columns)
    assert fit.edge_ids == seven_tip_flows.edge_ids
    assert np.allclose(fit.coefficients.loc[list(rates.index)].to_numpy(), rates.to_numpy())
    assert np.allclose(fit.intercepts.to_numpy(), [1.0, -2.0, 0.5])
    assert fit.coefficient("Et7", "latent_0") == pytest.approx(rates.loc["Et7", "latent_0"])
    assert fit.center is None and fit.scale is None


def test_standardized_fit_back_transforms_to_observations(
    seven_tip_flows, simulated_traits, lstsq_engine
):
    traits, _ = simulated_traits
    frame = FlowFrame(seven_tip_flows, traits)
    fit = fit_flow_model(frame, ModelConfig(list(traits.columns), rows="all"), engine=lstsq_engine)

    assert np.allclose(fit.center.to_numpy(), traits.mean().to_numpy())
    assert np.allclose(fit.scale.to_numpy(), traits.std(ddof=0).to_numpy())

    predicted = back_transform(predict_nodes(seven_tip_flows, fit), fit.center, fit.scale)
    assert np.allclose(predicted.loc[traits.index].to_numpy(), traits.to_numpy())


def test_observed_rows_are_the_complete_ones(seven_tip_flows, seven_tip_traits, caplog):
    frame = FlowFrame(seven_tip_flows, seven_tip_traits)
    model = ModelConfig(["size", "latitude"], engine="ridge")

    with caplog.at_level(logging.INFO, logger="phyloflow.model.fit"):
        fit = fit_flow_model(frame, model)

    assert fit.row_ids == ("t1", "t2", "t3", "t4", "t5", "t6", "t7")
    assert "6 lack responses" in caplog.text
    assert fit.coefficients.shape == (12, 2)
    assert fit.engine == "ridge"

    internal = predict_nodes(seven_tip_flows, fit, ["A", "E", "root"])
    assert internal.notna().all().all()


def test_tip_rows_and_explicit_rows(seven_tip_flows, seven_tip_traits, caplog):
    traits = seven_tip_traits.copy()
    traits.loc["t4", "size"] = np.nan
    frame = FlowFrame(seven_tip_flows, traits)

    fit = fit_flow_model(frame, ModelConfig("size", engine="ridge", rows="tips"))
    assert "t4" not in fit.row_ids
    assert len(fit.row_ids) == 6
    assert "Dropping 1 row(s)" in caplog.text

    fit = fit_flow_model(frame, ModelConfig("size", engine="ridge", rows=["t7", "t1", "t2"]))
    assert fit.row_ids == ("t7", "t1", "t2")


def test_all_rows_matches_observed_but_warns(seven_tip_flows, seven_tip_traits, caplog):
    frame = FlowFrame(seven_tip_flows, seven_tip_traits)

    with caplog.at_level(logging.INFO, logger="phyloflow.model.fit"):
        observed = fit_flow_model(frame, ModelConfig("size", engine="ridge"))
        everything = fit_flow_model(frame, ModelConfig("size", engine="ridge", rows="all"))

    assert everything.row_ids == observed.row_ids
    levels = [r.levelname for r in caplog.records if r.name == "phyloflow.model.fit"]
    assert levels == ["INFO", "WARNING"]
    assert "Dropping 6 row(s)" in caplog.text


def test_missing_response_column(seven_tip_flows, seven_tip_traits):
    frame = FlowFrame(seven_tip_flows, seven_tip_traits)
    with pytest.raises(KeyError):
        fit_flow_model(frame, ModelConfig("mass"))


def test_no_complete_rows(seven_tip_flows, seven_tip_traits):
    frame = FlowFrame(seven_tip_flows, seven_tip_traits)
    with pytest.raises(ValueError, match="No rows"):
        fit_flow_model(frame, ModelConfig("size", rows=["A", "B"]))


def test_engine_errors_propagate_unchanged(seven_tip_flows, seven_tip_traits):
    class NeverConverges:
        def __init__(self, **params):
            pass

        def fit(self, X, y):
            warnings.warn("gap 0.3 > tol 1e-4", ConvergenceWarning)

    frame = FlowFrame(seven_tip_flows, seven_tip_traits)
    engine = SklearnFitEngine("stubborn", NeverConverges)

    with pytest.raises(NonConvergenceError, match="gap 0.3 > tol 1e-4"):
        fit_flow_model(frame, ModelConfig("size"), engine=engine)


def test_model_timeout_is_forwarded(seven_tip_flows, seven_tip_traits):
    release = threading.Event()

    class Slow:
        name = "slow"

        def fit(self, design, response, family, options):
            release.wait(timeout=5.0)
            raise AssertionError("abandoned fit should not be used")

    frame = FlowFrame(seven_tip_flows, seven_tip_traits)
    try:
        with pytest.raises(FitTimeoutError):
            fit_flow_model(frame, ModelConfig("size", timeout=0.05), engine=Slow())
    finally:
        release.set()


def test_engine_options_reach_the_estimator(seven_tip_flows, seven_tip_traits):
    seen = {}

    class Recorder:
        def __init__(self, **params):
            seen.update(params)
            self.coef_ = None

        def fit(self, X, y):
            self.coef_ = np.zeros((y.shape[1], X.shape[1]))
            self.intercept_ = np.zeros(y.shape[1])
            return self

    frame = FlowFrame(seven_tip_flows, seven_tip_traits)
    engine = SklearnFitEngine("elastic_net", Recorder)
    fit = fit_flow_model(
        frame, ModelConfig("size", engine_options={"alpha": 0.25}), engine=engine
    )

    assert seen["alpha"] == 0.25
    assert "l1_ratio" in seen
    assert fit.options["alpha"] == 0.25
    assert isinstance(fit.weights, pd.Series)
