"""Boundary to an external latent-vector → mesh decoder.

The decoder (for example a pretrained neural network) is an opaque callable.
This module only produces the latent vector it consumes, through ancestral
prediction and back-transformation. It never inspects the returned mesh.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Hashable, Optional

import numpy as np

from phyloflow.errors import DimensionMismatchError
from phyloflow.flow.flow_matrix import FlowMatrix
from phyloflow.model.ancestral import back_transform as _back_transform
from phyloflow.model.ancestral import predict_node
from phyloflow.model.fit import FitResult

logger = logging.getLogger(__name__)

MeshDecoder = Callable[[np.ndarray], Any]


def latent_vector(
    fm: FlowMatrix,
    fit: FitResult,
    node_id: Hashable,
    back_transform: bool = True,
    use_source_ids: bool = False,
) -> np.ndarray:
    """Predicted latent vector at ``node_id`` in the original trait scale."""
    pred = predict_node(fm, fit, node_id, use_source_ids=use_source_ids)
    if back_transform:
        pred = _back_transform(pred, fit.center, fit.scale)
    return pred.to_numpy(dtype=np.float64)


def decode_node(
    fm: FlowMatrix,
    fit: FitResult,
    node_id: Hashable,
    decoder: MeshDecoder,
    back_transform: bool = True,
    latent_dim: Optional[int] = None,
    use_source_ids: bool = False,
) -> Any:
    """Reconstruct ``node_id``'s latent vector and hand it to ``decoder``.

    Raises
    ------
    DimensionMismatchError
        If ``latent_dim`` is given and differs from the number of fitted traits.
    """
    vec = latent_vector(fm, fit, node_id, back_transform=back_transform, use_source_ids=use_source_ids)
    if latent_dim is not None and vec.size != latent_dim:
        raise DimensionMismatchError(
            f"Decoder expects a latent vector of length {latent_dim}, got {vec.size}."
        )
    logger.debug("Decoding latent vector of length %d for node %r.", vec.size, node_id)
    return decoder(vec)


__all__ = ["MeshDecoder", "latent_vector", "decode_node"]
