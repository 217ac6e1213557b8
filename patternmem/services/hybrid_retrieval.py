"""
Hybrid temporal + semantic retrieval of memory objects for a time window.

Each memory type is fetched twice: a temporal bucket (what happened in or
just before the window) and a semantic bucket (what resembles the window's
content, above a similarity floor). The buckets are merged by id and ranked by

    hybrid = recency * w_r + similarity * w_s + bonus * w_b

where items without a similarity score use a penalized recency instead of
the semantic term.
"""

import asyncio
import math
from datetime import datetime
from typing import Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

from ..models.core import (Insight, InsightConfidence, Pattern, PriorSummary, ScoredMemory, SummaryType,
                           WindowMemory)
from ..storage.base import MemoryStore, StoreError
from ..utils.config import HybridWeights, RetrievalConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import age_in_days
from ..utils.vector_math import centroid

logger = get_logger(__name__)

T = TypeVar('T')

INSIGHT_CONFIDENCE_BONUS = {
    InsightConfidence.HIGH: 1.0,
    InsightConfidence.MEDIUM: 0.6,
    InsightConfidence.EMERGING: 0.3,
}


class HybridRetrievalError(Exception):
    """Custom exception for window memory retrieval errors."""
    pass


def recency_score(age_days: float, half_life_days: float = 30.0) -> float:
    """Exponential decay with a half-life.

    Args:
        age_days: Age in days; negative ages count as zero
        half_life_days: Age at which the score is 0.5

    Returns:
        Score in (0, 1], 1.0 at age zero
    """
    return math.exp(-max(0.0, age_days) / half_life_days * math.log(2))


def hybrid_score(recency: float,
                 similarity: Optional[float],
                 bonus: float,
                 weights: HybridWeights,
                 no_embedding_penalty: float = 0.7) -> float:
    """Weighted score of one memory object.

    Without a similarity, the recency term stands in for both the recency and
    the similarity weight, scaled down by ``no_embedding_penalty``.
    """
    if similarity is not None:
        return recency * weights.recency_weight + similarity * weights.similarity_weight + bonus * weights.bonus_weight
    return (recency * no_embedding_penalty * (weights.recency_weight + weights.similarity_weight) +
            bonus * weights.bonus_weight)


def bucket_limits(limit: int, temporal_allocation: float = 0.6, semantic_allocation: float = 0.4) -> Tuple[int, int]:
    """Sizes of the temporal and semantic buckets for a requested result count."""
    return math.ceil(limit * temporal_allocation), math.ceil(limit * semantic_allocation)


class HybridScorer(Generic[T]):
    """Merges a temporal and a semantic bucket and ranks them by hybrid score."""

    def __init__(self, half_life_days: float = 30.0, no_embedding_penalty: float = 0.7):
        self.half_life_days = half_life_days
        self.no_embedding_penalty = no_embedding_penalty

    def _scored(self, item: T, similarity: Optional[float], anchor: Callable[[T], datetime],
                bonus: Callable[[T], float], weights: HybridWeights, reference: datetime,
                source: str) -> ScoredMemory[T]:
        recency = recency_score(age_in_days(anchor(item), reference), self.half_life_days)
        bonus_value = bonus(item)
        return ScoredMemory(item=item,
                            recency_score=recency,
                            similarity_score=similarity,
                            bonus_score=bonus_value,
                            hybrid_score=hybrid_score(recency, similarity, bonus_value, weights, self.no_embedding_penalty),
                            source=source)

    def rank(self, temporal: Sequence[T], semantic: Sequence[Tuple[T, float]], anchor: Callable[[T], datetime],
             bonus: Callable[[T], float], weights: HybridWeights, reference: datetime, limit: int) -> List[ScoredMemory[T]]:
        """
        Merge both buckets by item id and keep the best ``limit`` items.

        Args:
            temporal: Items from the temporal bucket
            semantic: (item, similarity) pairs from the semantic bucket
            anchor: Timestamp of an item used for its recency
            bonus: Type-specific bonus of an item in [0, 1]
            weights: Hybrid weights of the memory type
            reference: Time recency is measured against
            limit: Maximum number of results

        Returns:
            Scored items by descending hybrid score
        """
        similarities = {item.id: similarity for item, similarity in semantic}
        merged: Dict[str, ScoredMemory[T]] = {}

        for item in temporal:
            item_id = item.id
            if item_id not in merged:
                merged[item_id] = self._scored(item, similarities.get(item_id), anchor, bonus, weights, reference,
                                               'temporal')

        for item, similarity in semantic:
            item_id = item.id
            if item_id not in merged:
                merged[item_id] = self._scored(item, similarity, anchor, bonus, weights, reference, 'semantic')

        ranked = sorted(merged.values(), key=lambda s: s.hybrid_score, reverse=True)
        return ranked[:limit]


def pattern_bonus(pattern: Pattern) -> float:
    return 1.0 if pattern.is_active else 0.0


def insight_bonus(insight: Insight) -> float:
    return INSIGHT_CONFIDENCE_BONUS.get(insight.confidence, 0.0)


def summary_bonus(summary: PriorSummary) -> float:
    return 0.0


class HybridRetrievalService:
    """Select patterns, insights and prior summaries relevant to a time window."""

    def __init__(self, store: MemoryStore, retrieval_config: Optional[RetrievalConfig] = None):
        self.store = store
        self.config = retrieval_config or config.retrieval
        self.scorer = HybridScorer(self.config.recency_half_life_days, self.config.no_embedding_penalty)

    def _limits(self, limit: int) -> Tuple[int, int]:
        return bucket_limits(limit, self.config.temporal_allocation, self.config.semantic_allocation)

    def _log_ranked(self, kind: str, user_id: str, ranked: Sequence[ScoredMemory], temporal: int, semantic: int) -> None:
        logger.debug(f'{kind} for user {user_id}: temporal={temporal} semantic={semantic} selected={len(ranked)}')
        for scored in ranked:
            logger.debug(f'  {kind} {scored.item.id} [{scored.source}] hybrid={scored.hybrid_score:.3f} '
                         f'recency={scored.recency_score:.3f} similarity={scored.similarity_score} bonus={scored.bonus_score}')

    def compute_window_embedding(self, user_id: str, start: datetime, end: datetime) -> Optional[List[float]]:
        """
        Unit-normalized centroid of the interpretations of events inside the window.

        Args:
            user_id: Owner of the events
            start: Window start (inclusive)
            end: Window end (exclusive)

        Returns:
            The centroid, or None when no event in the window has an embedding
        """
        embeddings = self.store.list_window_embeddings(user_id, start, end)
        if not embeddings:
            logger.debug(f'No embedded interpretations in window for user {user_id}; semantic retrieval skipped')
            return None
        return centroid(embeddings, normalize=True)

    def retrieve_patterns(self, user_id: str, start: datetime, end: datetime,
                          window_embedding: Optional[Sequence[float]]) -> List[ScoredMemory[Pattern]]:
        """Patterns of the window (one row per lineage) plus ACTIVE patterns resembling it."""
        limit = self.config.max_patterns
        temporal_limit, semantic_limit = self._limits(limit)

        temporal = self.store.list_patterns_in_window(user_id, start, end, temporal_limit)
        semantic = []
        if window_embedding is not None:
            semantic = self.store.search_patterns(user_id, window_embedding, semantic_limit,
                                                  self.config.min_similarity_threshold)

        ranked = self.scorer.rank(temporal, semantic, lambda p: p.last_reinforced_at, pattern_bonus,
                                  self.config.pattern_weights, end, limit)
        self._log_ranked('pattern', user_id, ranked, len(temporal), len(semantic))
        return ranked

    def retrieve_insights(self, user_id: str, start: datetime, end: datetime,
                          window_embedding: Optional[Sequence[float]]) -> List[ScoredMemory[Insight]]:
        """Non-superseded insights of the window plus ones resembling it, confidence as bonus."""
        limit = self.config.max_insights
        temporal_limit, semantic_limit = self._limits(limit)

        temporal = self.store.list_insights_in_window(user_id, start, end, temporal_limit)
        semantic = []
        if window_embedding is not None:
            semantic = self.store.search_insights(user_id, window_embedding, semantic_limit,
                                                  self.config.min_similarity_threshold)

        ranked = self.scorer.rank(temporal, semantic, lambda i: i.last_reinforced_at, insight_bonus,
                                  self.config.insight_weights, end, limit)
        self._log_ranked('insight', user_id, ranked, len(temporal), len(semantic))
        return ranked

    def retrieve_prior_summaries(self, user_id: str, summary_type: SummaryType, before: datetime,
                                 window_embedding: Optional[Sequence[float]]) -> List[ScoredMemory[PriorSummary]]:
        """Summaries of one type that ended before ``before``: the latest ones plus ones resembling the window."""
        limit = self.config.max_prior_summaries
        temporal_limit, semantic_limit = self._limits(limit)

        temporal = self.store.list_summaries_before(user_id, summary_type, before, temporal_limit)
        semantic = []
        if window_embedding is not None:
            semantic = self.store.search_summaries(user_id, summary_type, before, window_embedding, semantic_limit,
                                                   self.config.min_similarity_threshold)

        ranked = self.scorer.rank(temporal, semantic, lambda s: s.period_end, summary_bonus,
                                  self.config.summary_weights, before, limit)
        self._log_ranked('summary', user_id, ranked, len(temporal), len(semantic))
        return ranked

    async def retrieve_window_memory(self,
                                     user_id: str,
                                     start: datetime,
                                     end: datetime,
                                     summary_type: SummaryType = SummaryType.DAILY) -> WindowMemory:
        """
        Retrieve everything relevant to a time window.

        Prior summaries are those that ended before the window starts.

        Args:
            user_id: Owner of the memory
            start: Window start (inclusive)
            end: Window end (exclusive)
            summary_type: Type of prior summaries to include

        Returns:
            WindowMemory with the three ranked lists

        Raises:
            HybridRetrievalError: If the store fails
        """
        try:
            window_embedding = await asyncio.to_thread(self.compute_window_embedding, user_id, start, end)
            patterns, insights, summaries = await asyncio.gather(
                asyncio.to_thread(self.retrieve_patterns, user_id, start, end, window_embedding),
                asyncio.to_thread(self.retrieve_insights, user_id, start, end, window_embedding),
                asyncio.to_thread(self.retrieve_prior_summaries, user_id, summary_type, start, window_embedding))
        except StoreError as e:
            logger.error(f'Window memory retrieval failed for user {user_id}: {e}')
            raise HybridRetrievalError(f'Window memory retrieval failed: {e}') from e

        logger.info(f'Window memory for user {user_id}: {len(patterns)} patterns, {len(insights)} insights, '
                    f'{len(summaries)} prior summaries')
        return WindowMemory(window_start=start,
                            window_end=end,
                            window_embedding=window_embedding,
                            patterns=patterns,
                            insights=insights,
                            prior_summaries=summaries)
