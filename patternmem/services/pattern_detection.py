"""
Event-triggered pattern detection.

For each new event: find candidate patterns and supporting evidence, let the
decision oracle arbitrate, and commit exactly one pattern version. Every
processed event ends up linked to an ACTIVE pattern; when the inputs are too
thin to arbitrate, an emerging pattern is created from the raw event text.

The legacy batch clustering mode lives here too, as a maintenance operation.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from ..models.core import (BatchDetectionResult, DecisionAction, Event, Interpretation, Pattern, PatternDetectionResult,
                           PatternOutcome)
from ..storage.base import MemoryStore
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import AppConfig, config as default_config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import day_bounds, utc_now
from .candidate_retrieval import CandidateRetriever
from .clustering import cluster_interpretations, find_matching_patterns
from .decision_oracle import DecisionContext, DecisionOracle, emerging_pattern_description
from .evidence_selection import EvidenceSelector
from .pattern_versioning import PatternVersionManager

logger = get_logger(__name__)


class EventNotFoundError(Exception):
    """Custom exception for events that were never ingested for the user."""
    pass


class PatternDetectionService:
    """Turn events into pattern reinforcements or new patterns."""

    def __init__(self,
                 store: MemoryStore,
                 oracle: Optional[DecisionOracle] = None,
                 embedder: Optional[BedrockEmbed] = None,
                 app_config: Optional[AppConfig] = None):
        """
        Initialize the detection service.

        Args:
            store: Memory store
            oracle: Decision oracle; a Bedrock-backed one is built if None
            embedder: Embedding client for new pattern descriptions; Bedrock if None
            app_config: AppConfig instance, uses default if None
        """
        self.config = app_config or default_config
        self.store = store
        self.oracle = oracle or DecisionOracle()
        self.retriever = CandidateRetriever(store, self.config.pattern)
        self.evidence = EvidenceSelector(store, self.config.evidence)
        self.versions = PatternVersionManager(store, embedder)

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._locks_loop = None

        logger.info('Initialized PatternDetectionService')

    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        loop = asyncio.get_running_loop()
        if loop is not self._locks_loop:
            self._locks = {}
            self._lock_users = {}
            self._locks_loop = loop
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Dropped once no holder or waiter references it
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]

    async def process_event(self, user_id: str, event_id: str) -> PatternDetectionResult:
        """
        Detect or reinforce a pattern for a newly interpreted event.

        Args:
            user_id: Owner of the event
            event_id: Event to process

        Returns:
            REINFORCED or CREATED result naming the ACTIVE pattern now carrying the event

        Raises:
            EventNotFoundError: If the event does not exist for this user
            PatternCommitError: If the pattern mutation cannot be committed
        """
        if not self.config.pattern.serialize_per_user:
            return await self._process_event(user_id, event_id)

        async with self._user_lock(user_id):
            return await self._process_event(user_id, event_id)

    async def _load_context(self, event: Event) -> Tuple[List[Event], List[Event], List[Event]]:
        cfg = self.config.pattern
        exclude = [event.id]
        day_start, day_end = day_bounds(event.occurred_at)
        lookback_start = event.occurred_at - timedelta(hours=cfg.context_lookback_hours)

        async def no_events() -> List[Event]:
            return []

        same_day, preceding, category = await asyncio.gather(
            asyncio.to_thread(self.store.list_events, event.user_id, day_start, day_end, None, exclude,
                              cfg.max_context_events),
            asyncio.to_thread(self.store.list_events, event.user_id, lookback_start, event.occurred_at, None, exclude,
                              cfg.max_context_events),
            asyncio.to_thread(self.store.list_events, event.user_id, None, None, event.category, exclude,
                              cfg.max_context_events) if event.category else no_events())
        return same_day, preceding, category

    async def _create_emerging(self, event: Event, reason: str, candidates_considered: int = 0) -> PatternDetectionResult:
        pattern = await asyncio.to_thread(self.versions.create_emerging, event.user_id, event.content, [event.id], reason)
        logger.info(f'Event {event.id}: CREATED emerging pattern {pattern.id} ({reason})')
        return PatternDetectionResult(outcome=PatternOutcome.CREATED,
                                      pattern_id=pattern.id,
                                      event_id=event.id,
                                      candidates_considered=candidates_considered,
                                      reasoning=f'Emerging pattern: {reason}',
                                      used_fallback=True)

    async def _process_event(self, user_id: str, event_id: str) -> PatternDetectionResult:
        event, interpretation = await asyncio.gather(asyncio.to_thread(self.store.get_event, event_id),
                                                     asyncio.to_thread(self.store.get_interpretation_for_event, event_id))
        if event is None or event.user_id != user_id:
            raise EventNotFoundError(f'Event {event_id} not found for user {user_id}')

        if interpretation is None or not interpretation.embedding:
            return await self._create_emerging(event, 'missing interpretation')

        trigger = interpretation.embedding
        candidates, evidence, (same_day, preceding, category) = await asyncio.gather(
            asyncio.to_thread(self.retriever.find_candidates, user_id, trigger),
            asyncio.to_thread(self.evidence.select_evidence, user_id, trigger), self._load_context(event))

        if not candidates and len(evidence) < self.config.pattern.min_evidence_for_oracle:
            return await self._create_emerging(event, 'insufficient evidence')

        context = DecisionContext(user_id=user_id,
                                  raw_event=event,
                                  interpretation=interpretation,
                                  candidates=candidates,
                                  same_day_events=same_day,
                                  preceding_events=preceding,
                                  category_events=category,
                                  evidence=evidence)
        decision = await asyncio.to_thread(self.oracle.decide, context)

        contributing = list(dict.fromkeys([event.id] + [e.interpretation.event_id for e in evidence]))

        if decision.action == DecisionAction.REINFORCE:
            pattern = await asyncio.to_thread(self.versions.reinforce, decision.pattern_id, decision.description,
                                              contributing)
            logger.info(f'Event {event.id}: REINFORCED {pattern.supersedes_id} -> {pattern.id}')
            return PatternDetectionResult(outcome=PatternOutcome.REINFORCED,
                                          pattern_id=pattern.id,
                                          event_id=event.id,
                                          superseded_pattern_id=pattern.supersedes_id,
                                          candidates_considered=len(candidates),
                                          reasoning=decision.reasoning,
                                          used_fallback=decision.is_fallback)

        pattern = await asyncio.to_thread(self.versions.create, user_id, decision.description, contributing)
        logger.info(f'Event {event.id}: CREATED pattern {pattern.id} '
                    f'({len(candidates)} candidates, fallback={decision.is_fallback})')
        return PatternDetectionResult(outcome=PatternOutcome.CREATED,
                                      pattern_id=pattern.id,
                                      event_id=event.id,
                                      candidates_considered=len(candidates),
                                      reasoning=decision.reasoning,
                                      used_fallback=decision.is_fallback)

    async def detect_patterns_batch(self, user_id: str, lookback_days: Optional[int] = None) -> BatchDetectionResult:
        """
        Legacy clustering pass over a user's recent interpretations.

        Clusters that match an ACTIVE pattern reinforce it with its description
        unchanged; the others become new synthesized patterns. There is no
        per-cluster arbitration by the oracle.

        Args:
            user_id: Owner of the interpretations
            lookback_days: Window size in days (config default if None)

        Returns:
            Counters of the run

        Raises:
            PatternCommitError: If a pattern mutation cannot be committed
        """
        if not self.config.pattern.serialize_per_user:
            return await self._detect_patterns_batch(user_id, lookback_days)

        async with self._user_lock(user_id):
            return await self._detect_patterns_batch(user_id, lookback_days)

    async def _detect_patterns_batch(self, user_id: str, lookback_days: Optional[int]) -> BatchDetectionResult:
        cfg = self.config.clustering
        days = lookback_days if lookback_days is not None else cfg.lookback_days
        since = utc_now() - timedelta(days=days)

        interpretations = await asyncio.to_thread(self.store.list_interpretations, user_id, since)
        result = BatchDetectionResult()
        if len(interpretations) < cfg.min_cluster_size:
            logger.info(f'Batch detection for user {user_id}: only {len(interpretations)} interpretations, nothing to do')
            return result

        clusters = cluster_interpretations(interpretations, cfg.similarity_threshold, cfg.min_cluster_size)
        result.clusters_found = len(clusters)
        patterns: List[Pattern] = await asyncio.to_thread(self.store.list_active_patterns, user_id)

        for cluster in clusters:
            matches = find_matching_patterns(cluster.centroid, patterns, cfg.pattern_match_threshold)
            if matches:
                target = matches[0]
                pattern = await asyncio.to_thread(self.versions.reinforce, target.id, target.description,
                                                  cluster.event_ids)
                patterns = [pattern if p.id == target.id else p for p in patterns]
                result.patterns_reinforced += 1
            else:
                description = await asyncio.to_thread(self.oracle.synthesize_pattern, user_id, cluster.interpretations)
                if description is None:
                    description = self._cluster_fallback_description(cluster.interpretations)
                pattern = await asyncio.to_thread(self.versions.create, user_id, description, cluster.event_ids)
                patterns.append(pattern)
                result.patterns_created += 1
            result.pattern_ids.append(pattern.id)

        logger.info(f'Batch detection for user {user_id}: {result.clusters_found} clusters, '
                    f'{result.patterns_created} created, {result.patterns_reinforced} reinforced')
        return result

    @staticmethod
    def _cluster_fallback_description(interpretations: List[Interpretation]) -> str:
        observations = '\n'.join(f'- {i.content}' for i in interpretations)
        return emerging_pattern_description(observations, 'pattern synthesis failure')
