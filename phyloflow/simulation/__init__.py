from .brownian import random_tree, simulate_brownian_traits

__all__ = ["random_tree", "simulate_brownian_traits"]
