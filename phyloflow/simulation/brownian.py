"""
Synthetic trees and Brownian-motion traits for testing and demos.

The simulation:
1. Generates a random binary tree with the requested number of tips
2. Assigns a root state for each trait
3. Evolves traits down the tree, adding N(0, sigma² · branch_length) per edge
4. Records every node's value, internal nodes included

The per-edge standardized increments (``rates``) are returned as well.
Feeding them back as coefficients reproduces the simulated values exactly
(see :func:`phyloflow.model.ancestral.predict_nodes`).
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from phyloflow.flow.edge_index import default_edge_id
from phyloflow.tree.poset_tree import PosetTree


def random_tree(
    n_tips: int,
    random_state: Optional[np.random.RandomState] = None,
    branch_length_mean: float = 1.0,
) -> PosetTree:
    """Generate a random rooted binary tree with ``n_tips`` tips.

    Uses a simple coalescent-like process: repeatedly join two random
    lineages under a new internal node. Tips are ``T0 … T{n-1}``, internal
    nodes ``I0 …`` in merge order (the root is the last one). Every edge
    gets an exponential branch length with mean ``branch_length_mean``.
    """
    if n_tips < 1:
        raise ValueError(f"n_tips must be positive, got {n_tips}.")
    random_state = random_state if random_state is not None else np.random.RandomState()

    G = PosetTree()
    lineages: List[str] = []
    for i in range(n_tips):
        G.add_node(f"T{i}", label=f"T{i}")
        lineages.append(f"T{i}")

    internal_id = 0
    while len(lineages) > 1:
        idx1, idx2 = random_state.choice(len(lineages), size=2, replace=False)
        parent = f"I{internal_id}"
        internal_id += 1
        G.add_node(parent, label=parent)
        for idx in sorted((idx1, idx2)):
            G.add_branch(
                parent,
                lineages[idx],
                branch_length=random_state.exponential(branch_length_mean),
            )
        lineages = [n for i, n in enumerate(lineages) if i not in (idx1, idx2)]
        lineages.append(parent)

    return G.finalize(lineages[0])


def simulate_brownian_traits(
    tree: PosetTree,
    n_traits: int = 1,
    sigma: float = 1.0,
    random_state: Optional[np.random.RandomState] = None,
    root_state: Optional[Sequence[float]] = None,
    trait_names: Optional[Sequence[str]] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Evolve ``n_traits`` independent Brownian traits down ``tree``.

    Parameters
    ----------
    tree
        Rooted tree with ``branch_length`` edge attributes.
    n_traits
        Number of trait columns (``latent_0 …`` unless ``trait_names`` given).
    sigma
        Brownian rate: increments have variance ``sigma² · branch_length``.
    random_state
        NumPy random state for reproducibility.
    root_state
        Trait values at the root; zeros by default.

    Returns
    -------
    (DataFrame, DataFrame)
        Node values indexed by node id, and per-edge standardized rates
        (increment / sqrt(branch_length)) indexed by edge id.
    """
    random_state = random_state if random_state is not None else np.random.RandomState()
    names = list(trait_names) if trait_names is not None else [f"latent_{k}" for k in range(n_traits)]
    if len(names) != n_traits:
        raise ValueError(f"Expected {n_traits} trait names, got {len(names)}.")
    root_values = np.zeros(n_traits) if root_state is None else np.asarray(root_state, dtype=np.float64)

    root = tree.root()
    values = {root: root_values}
    edge_ids, rates = [], []
    for node in tree.preorder():
        if node == root:
            continue
        parent = tree.parent(node)
        rate = sigma * random_state.standard_normal(n_traits)
        values[node] = values[parent] + rate * np.sqrt(tree.branch_length(node))
        edge_ids.append(tree.edges[parent, node].get("edge_id", default_edge_id(node)))
        rates.append(rate)

    order = tree.preorder()
    traits = pd.DataFrame(
        np.vstack([values[n] for n in order]),
        index=pd.Index(order, name="node_id"),
        columns=names,
    )
    rate_table = pd.DataFrame(
        np.vstack(rates) if rates else np.zeros((0, n_traits)),
        index=pd.Index(edge_ids, name="edge_id"),
        columns=names,
    )
    return traits, rate_table


__all__ = ["random_tree", "simulate_brownian_traits"]
