"""
Greedy threshold clustering of interpretation embeddings for batch pattern detection.
"""

from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from ..models.core import Interpretation, Pattern
from ..utils.vector_math import centroid, cosine_similarity


@dataclass(frozen=True)
class InterpretationCluster:
    """A group of mutually similar interpretations."""
    interpretations: List[Interpretation]
    centroid: List[float]
    avg_similarity: float

    @property
    def event_ids(self) -> List[str]:
        return [i.event_id for i in self.interpretations]


def compute_similarity_matrix(interpretations: Sequence[Interpretation]) -> np.ndarray:
    """Pairwise cosine similarity of interpretation embeddings.

    Args:
        interpretations: Interpretations that all carry an embedding

    Returns:
        Symmetric ``n x n`` matrix with ones on the diagonal
    """
    n = len(interpretations)
    if n == 0:
        return np.zeros((0, 0))

    vectors = np.asarray([i.embedding for i in interpretations], dtype=float)
    norms = np.linalg.norm(vectors, axis=1)
    safe = np.where(norms == 0.0, 1.0, norms)
    unit = vectors / safe[:, None]
    matrix = np.clip(unit @ unit.T, -1.0, 1.0)
    # Zero vectors are similar to nothing, including each other
    matrix[norms == 0.0, :] = 0.0
    matrix[:, norms == 0.0] = 0.0
    np.fill_diagonal(matrix, 1.0)
    return matrix


def cluster_interpretations(interpretations: Sequence[Interpretation],
                            similarity_threshold: float = 0.75,
                            min_cluster_size: int = 3) -> List[InterpretationCluster]:
    """Single-pass greedy clustering.

    Each interpretation not yet clustered seeds a cluster made of itself and every
    other unclustered interpretation at or above the threshold. Seeds whose
    cluster would be smaller than ``min_cluster_size`` form nothing and their
    neighbours stay available for later seeds.

    Args:
        interpretations: Interpretations with embeddings
        similarity_threshold: Minimum similarity to the seed
        min_cluster_size: Minimum members of a kept cluster

    Returns:
        Clusters in seed order, with mean-embedding centroids and the average
        pairwise similarity of their members
    """
    n = len(interpretations)
    if n == 0:
        return []

    matrix = compute_similarity_matrix(interpretations)
    clustered = set()
    clusters = []

    for i in range(n):
        if i in clustered:
            continue

        members = [i] + [j for j in range(n) if j != i and j not in clustered and matrix[i][j] >= similarity_threshold]
        if len(members) < min_cluster_size:
            continue

        pairs = [matrix[a][b] for idx, a in enumerate(members) for b in members[idx + 1:]]
        avg_similarity = float(np.mean(pairs)) if pairs else 1.0

        clusters.append(
            InterpretationCluster(interpretations=[interpretations[m] for m in members],
                                  centroid=centroid([interpretations[m].embedding for m in members], normalize=False),
                                  avg_similarity=avg_similarity))
        clustered.update(members)

    return clusters


def find_matching_patterns(cluster_centroid: Sequence[float], patterns: Sequence[Pattern],
                           threshold: float = 0.8) -> List[Pattern]:
    """Patterns whose embedding is at least ``threshold`` similar to a cluster centroid, in input order."""
    return [p for p in patterns if p.embedding and cosine_similarity(cluster_centroid, p.embedding) >= threshold]
