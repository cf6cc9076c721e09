import os
import sys

import numpy as np
import pandas as pd
import pytest

# Ensure the project root is on sys.path so tests can import ``phyloflow``
# when running directly from the repository without installing it.
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from phyloflow.flow.flow_matrix import FlowMatrix  # noqa: E402
from phyloflow.model.engine import EngineOutput  # noqa: E402
from phyloflow.simulation.brownian import simulate_brownian_traits  # noqa: E402
from phyloflow.tree.poset_tree import PosetTree  # noqa: E402

# Fixed 7-tip tree used across the suite.
#
#               root
#        1.0 /        \ 2.0
#          A            C
#     4.0 / \ 0.5   1.0 / \ 1.0
#        B   t3       t4   D
#   1.0 / \ 2.0       3.0 / \ 0.25
#     t1   t2            t5   E
#                       1.0 / \ 9.0
#                         t6   t7
SEVEN_TIP_EDGES = [
    ("root", "A", 1.0),
    ("A", "B", 4.0),
    ("B", "t1", 1.0),
    ("B", "t2", 2.0),
    ("A", "t3", 0.5),
    ("root", "C", 2.0),
    ("C", "t4", 1.0),
    ("C", "D", 1.0),
    ("D", "t5", 3.0),
    ("D", "E", 0.25),
    ("E", "t6", 1.0),
    ("E", "t7", 9.0),
]

SEVEN_TIP_LABELS = {
    "t1": "lion",
    "t2": "tiger",
    "t3": "lynx",
    "t4": "wolf",
    "t5": "fox",
    "t6": "seal",
    "t7": "walrus",
    "E": "Node185",
}

SEVEN_TIP_CLADES = {
    "t1": "cats",
    "t2": "cats",
    "t3": "cats",
    "t4": "dogs",
    "t5": "dogs",
    "t6": "pinnipeds",
    "t7": "pinnipeds",
}


def build_seven_tip_tree() -> PosetTree:
    tree = PosetTree()
    tree.add_node("root")
    for parent, child, length in SEVEN_TIP_EDGES:
        tree.add_branch(parent, child, branch_length=length)
    for node, label in SEVEN_TIP_LABELS.items():
        tree.nodes[node]["label"] = label
    return tree.finalize("root")


@pytest.fixture
def seven_tip_tree() -> PosetTree:
    return build_seven_tip_tree()


@pytest.fixture
def seven_tip_flows(seven_tip_tree) -> FlowMatrix:
    return FlowMatrix.from_tree(seven_tip_tree)


@pytest.fixture
def seven_tip_traits() -> pd.DataFrame:
    """Two numeric traits on the tips plus a categorical clade column."""
    tips = list(SEVEN_TIP_CLADES)
    return pd.DataFrame(
        {
            "size": [190.0, 220.0, 20.0, 40.0, 8.0, 90.0, 1200.0],
            "latitude": [-5.0, 25.0, 55.0, 50.0, 45.0, 60.0, 75.0],
            "clade": [SEVEN_TIP_CLADES[t] for t in tips],
        },
        index=pd.Index(tips, name="node_id"),
    )


@pytest.fixture
def simulated_traits(seven_tip_tree):
    """Brownian traits on every node of the 7-tip tree plus the true per-edge rates."""
    traits, rates = simulate_brownian_traits(
        seven_tip_tree,
        n_traits=3,
        random_state=np.random.RandomState(7),
        root_state=[1.0, -2.0, 0.5],
    )
    return traits, rates


class LeastSquaresEngine:
    """Exact dense least squares with an intercept column, for deterministic fits."""

    name = "lstsq"

    def fit(self, design, response, family, options):
        X = design.matrix.toarray()
        Y = np.asarray(response, dtype=float).reshape(X.shape[0], -1)
        A = np.hstack([np.ones((X.shape[0], 1)), X])
        solution, *_ = np.linalg.lstsq(A, Y, rcond=None)
        return EngineOutput(coefficients=solution[1:], intercepts=solution[0])


@pytest.fixture
def lstsq_engine() -> LeastSquaresEngine:
    return LeastSquaresEngine()
