"""
Representative evidence selection.

Picks a bounded, diverse set of a user's past interpretations that support a
new observation: the most similar ones across the whole timeline, the most
recent and the oldest matching ones (historical recurrence), interpretations
already backing similar patterns, and always the newest few for causal context.
"""

import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..models.core import Interpretation, ScoredInterpretation
from ..storage.base import MemoryStore
from ..utils.config import EvidenceConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import age_in_days, ensure_utc, utc_now
from ..utils.vector_math import cosine_similarity

logger = get_logger(__name__)


def _score(interpretation: Interpretation,
           trigger_embedding: Sequence[float],
           now: datetime,
           decay_days: float,
           from_pattern_id: Optional[str] = None) -> ScoredInterpretation:
    similarity = cosine_similarity(trigger_embedding, interpretation.embedding)
    recency = math.exp(-age_in_days(interpretation.created_at, now) / decay_days)
    if from_pattern_id is None:
        combined = similarity * 0.7 + recency * 0.3
    else:
        # Flat bonus for evidence that already backs a related pattern
        combined = similarity * 0.6 + recency * 0.2 + 0.2
    return ScoredInterpretation(interpretation=interpretation,
                                similarity_score=similarity,
                                recency_score=recency,
                                combined_score=combined,
                                from_pattern_id=from_pattern_id)


def deduplicate_by_embedding(items: Sequence[ScoredInterpretation], threshold: float) -> List[ScoredInterpretation]:
    """Drop near-duplicate interpretations, keeping the higher combined score of each pair.

    Args:
        items: Scored interpretations in merge order
        threshold: Embedding similarity at or above which two items are duplicates

    Returns:
        Deduplicated items, first-seen order preserved
    """
    result: List[ScoredInterpretation] = []
    for item in items:
        for idx, existing in enumerate(result):
            if cosine_similarity(item.interpretation.embedding, existing.interpretation.embedding) >= threshold:
                if item.combined_score > existing.combined_score:
                    result[idx] = item
                break
        else:
            result.append(item)
    return result


class EvidenceSelector:
    """Select supporting evidence for a trigger embedding."""

    def __init__(self, store: MemoryStore, evidence_config: Optional[EvidenceConfig] = None):
        self.store = store
        self.config = evidence_config or config.evidence

    def _from_similar_patterns(self, user_id: str, trigger_embedding: Sequence[float],
                               now: datetime) -> List[ScoredInterpretation]:
        """Interpretations linked to ACTIVE patterns that resemble the trigger."""
        cfg = self.config
        similar = self.store.search_patterns(user_id, trigger_embedding, cfg.max_related_patterns,
                                             cfg.pattern_similarity_threshold)
        if not similar:
            return []

        pool_size = cfg.max_from_existing_patterns * 2
        seen = set()
        linked: List[ScoredInterpretation] = []
        for pattern, _ in similar:
            event_ids = sorted(self.store.get_linked_event_ids(pattern.id))
            for interpretation in self.store.get_interpretations_for_events(event_ids):
                if interpretation.id in seen:
                    continue
                seen.add(interpretation.id)
                linked.append(_score(interpretation, trigger_embedding, now, cfg.recency_decay_days, pattern.id))
                if len(linked) >= pool_size:
                    break
            if len(linked) >= pool_size:
                break

        return linked[:cfg.max_from_existing_patterns]

    def select_evidence(self, user_id: str, trigger_embedding: Sequence[float]) -> List[ScoredInterpretation]:
        """
        Select representative evidence for a new observation.

        Args:
            user_id: Owner of the history
            trigger_embedding: Embedding of the triggering interpretation

        Returns:
            At most ``max_total`` scored interpretations, by descending combined score
        """
        cfg = self.config
        now = utc_now()

        history = self.store.list_interpretations(user_id, limit=cfg.history_limit)
        if not history:
            return []

        scored = [_score(i, trigger_embedding, now, cfg.recency_decay_days) for i in history]
        relevant = [s for s in scored if s.similarity_score >= cfg.relevance_threshold]

        by_similarity = sorted(relevant, key=lambda s: s.similarity_score, reverse=True)[:cfg.max_global_similar]
        by_recency = sorted(relevant, key=lambda s: s.recency_score, reverse=True)[:cfg.max_recent]
        by_oldest = sorted(relevant, key=lambda s: s.recency_score)[:cfg.max_oldest]
        from_patterns = self._from_similar_patterns(user_id, trigger_embedding, now)

        # Later strategies override earlier ones for the same interpretation
        merged: Dict[str, ScoredInterpretation] = {}
        for item in by_oldest + by_recency + by_similarity + from_patterns:
            merged[item.interpretation.id] = item

        newest = sorted(scored, key=lambda s: ensure_utc(s.interpretation.created_at), reverse=True)
        for item in newest[:cfg.mandatory_recent_count]:
            merged.setdefault(item.interpretation.id, item)

        candidates = deduplicate_by_embedding(list(merged.values()), cfg.dedupe_threshold)
        candidates.sort(key=lambda s: s.combined_score, reverse=True)
        selected = candidates[:cfg.max_total]

        logger.debug(f'Selected {len(selected)} evidence items for user {user_id} '
                     f'({len(relevant)} relevant of {len(history)}, {len(from_patterns)} from patterns)')
        return selected
