"""
Phylogenetic flow encoding of rooted trees.

This package provides:
- EdgeIndex: stable edge identifiers and branch lengths
- FlowMatrix: sparse root-to-node path membership matrix
- encode_tree / decode_flows: conversion to and from PosetTree
- MRCA detection and induced-subtree filtering
- FlowFrame: a FlowMatrix with named trait columns
"""

from .edge_index import EdgeIndex, default_edge_id
from .flow_matrix import Flow, FlowMatrix
from .codec import decode_flows, encode_tree
from .mrca import extract_subtree, filter_many, filter_to_mrca, find_mrca
from .frame import FlowFrame, standardize_columns

__all__ = [
    "EdgeIndex",
    "default_edge_id",
    "Flow",
    "FlowMatrix",
    "encode_tree",
    "decode_flows",
    "find_mrca",
    "filter_to_mrca",
    "extract_subtree",
    "filter_many",
    "FlowFrame",
    "standardize_columns",
]
