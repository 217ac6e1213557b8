"""
Vector helpers shared by candidate retrieval, clustering and hybrid retrieval.
"""

from typing import List, Optional, Sequence

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors.

    Args:
        a: First vector
        b: Second vector

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector has zero magnitude

    Raises:
        ValueError: If the vectors have different dimensions
    """
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise ValueError(f'Vector dimension mismatch: {va.shape[0]} vs {vb.shape[0]}')

    magnitude = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if magnitude == 0.0:
        return 0.0

    # Clip float noise so identical vectors never report 1.0000000002
    return float(np.clip(np.dot(va, vb) / magnitude, -1.0, 1.0))


def normalize_vector(vector: Sequence[float]) -> List[float]:
    """Scale a vector to unit length; a zero vector is returned unchanged."""
    v = np.asarray(vector, dtype=float)
    magnitude = float(np.linalg.norm(v))
    if magnitude == 0.0:
        return v.tolist()
    return (v / magnitude).tolist()


def mean_vector(vectors: Sequence[Sequence[float]]) -> Optional[List[float]]:
    """Element-wise mean of equally sized vectors, or None for an empty input."""
    if not vectors:
        return None
    return np.mean(np.asarray(vectors, dtype=float), axis=0).tolist()


def centroid(vectors: Sequence[Sequence[float]], normalize: bool = True) -> Optional[List[float]]:
    """Centroid of a set of embeddings.

    Args:
        vectors: Embeddings to average; empty entries are skipped
        normalize: Rescale the mean to unit length

    Returns:
        The centroid, or None when no usable vector was given
    """
    usable = [v for v in vectors if v is not None and len(v) > 0]
    mean = mean_vector(usable)
    if mean is None:
        return None
    return normalize_vector(mean) if normalize else mean
