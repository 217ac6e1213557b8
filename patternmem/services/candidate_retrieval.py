"""
Candidate retrieval: which ACTIVE patterns are numerically close enough to a
new observation to be worth asking the decision oracle about.
"""

from typing import List, Optional, Sequence

from ..models.core import Pattern, PatternCandidate
from ..storage.base import MemoryStore
from ..utils.config import PatternConfig, config
from ..utils.logging_config import get_logger
from ..utils.vector_math import cosine_similarity

logger = get_logger(__name__)


def rank_candidates(patterns: Sequence[Pattern],
                    trigger_embedding: Sequence[float],
                    similarity_threshold: float = 0.30,
                    max_candidates: int = 5) -> List[PatternCandidate]:
    """Score patterns against a trigger embedding and keep the closest ones.

    Args:
        patterns: Patterns to score; inactive ones and ones without an embedding are ignored
        trigger_embedding: Embedding of the triggering interpretation
        similarity_threshold: Minimum cosine similarity to keep a pattern
        max_candidates: Maximum number of candidates returned

    Returns:
        Candidates sorted by descending similarity
    """
    candidates = []
    for pattern in patterns:
        if not pattern.is_active or not pattern.embedding:
            continue
        similarity = cosine_similarity(trigger_embedding, pattern.embedding)
        if similarity >= similarity_threshold:
            candidates.append(PatternCandidate(pattern=pattern, similarity=similarity))

    candidates.sort(key=lambda c: c.similarity, reverse=True)
    return candidates[:max_candidates]


class CandidateRetriever:
    """Find the candidate patterns of a user for one trigger embedding."""

    def __init__(self, store: MemoryStore, pattern_config: Optional[PatternConfig] = None):
        self.store = store
        self.config = pattern_config or config.pattern

    def find_candidates(self, user_id: str, trigger_embedding: Sequence[float]) -> List[PatternCandidate]:
        """
        Return the user's ACTIVE patterns closest to the trigger embedding.

        An empty list is a normal outcome (a first pattern, or nothing close enough).

        Args:
            user_id: Owner of the patterns
            trigger_embedding: Embedding of the triggering interpretation

        Returns:
            At most ``max_candidate_patterns`` candidates at or above the similarity threshold
        """
        patterns = self.store.list_active_patterns(user_id)
        candidates = rank_candidates(patterns, trigger_embedding, self.config.candidate_similarity_threshold,
                                     self.config.max_candidate_patterns)

        logger.debug(f'{len(candidates)}/{len(patterns)} active patterns are candidates for user {user_id}: '
                     f'{[round(c.similarity, 3) for c in candidates]}')
        return candidates
