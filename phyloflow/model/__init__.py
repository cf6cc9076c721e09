"""
Trait-evolution models on phylogenetic flows.

This package provides:
- Brownian-motion design matrices (sqrt-branch-length weighted flows)
- Fitting engines wrapping scikit-learn penalized regression
- ModelConfig / fit_flow_model for end-to-end fits
- Ancestral reconstruction and back-transformation
- The boundary to an external latent → mesh decoder
"""

from .design import DesignMatrix, build_brownian_design
from .engine import (
    EngineOutput,
    FitEngine,
    SklearnFitEngine,
    available_engines,
    get_engine,
    register_engine,
    run_engine,
)
from .fit import FitResult, ModelConfig, fit_flow_model
from .ancestral import back_transform, predict_node, predict_nodes
from .decoder import MeshDecoder, decode_node, latent_vector

__all__ = [
    "DesignMatrix",
    "build_brownian_design",
    "EngineOutput",
    "FitEngine",
    "SklearnFitEngine",
    "available_engines",
    "get_engine",
    "register_engine",
    "run_engine",
    "FitResult",
    "ModelConfig",
    "fit_flow_model",
    "predict_node",
    "predict_nodes",
    "back_transform",
    "MeshDecoder",
    "decode_node",
    "latent_vector",
]
