"""
In-process implementation of the memory store.

Used by the test-suite and for local runs without AWS. Pattern mutations run
against private copies of the pattern and link tables which replace the live
tables only when the transaction block completes.
"""

import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from ..models.core import (Event, Insight, InsightStatus, Interpretation, Pattern, PatternStatus, PriorSummary,
                           SummaryType)
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import ensure_utc
from ..utils.vector_math import cosine_similarity
from .base import MemoryStore, PatternTransaction, StoreError

logger = get_logger(__name__)


def _in_range(value: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    value = ensure_utc(value)
    if start is not None and value < ensure_utc(start):
        return False
    if end is not None and value >= ensure_utc(end):
        return False
    return True


def _rank(items: Iterable, vector: Sequence[float], limit: int, min_similarity: float) -> List[Tuple]:
    scored = []
    for item in items:
        if not item.embedding:
            continue
        similarity = cosine_similarity(vector, item.embedding)
        if similarity >= min_similarity:
            scored.append((item, similarity))
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:limit]


class _InMemoryPatternTransaction(PatternTransaction):
    """Stages pattern and link changes on copies of the store tables."""

    def __init__(self, patterns: Dict[str, Pattern], links: Dict[str, Set[str]]):
        self.patterns = dict(patterns)
        self.links = {pattern_id: set(event_ids) for pattern_id, event_ids in links.items()}

    def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        return self.patterns.get(pattern_id)

    def get_active_head(self, lineage_id: str) -> Optional[Pattern]:
        for pattern in self.patterns.values():
            if pattern.lineage_id == lineage_id and pattern.is_active:
                return pattern
        return None

    def get_linked_event_ids(self, pattern_id: str) -> Set[str]:
        return set(self.links.get(pattern_id, set()))

    def mark_superseded(self, pattern_id: str, superseded_by_id: str) -> None:
        pattern = self.patterns.get(pattern_id)
        if pattern is None:
            raise StoreError(f'Pattern {pattern_id} not found')
        self.patterns[pattern_id] = replace(pattern, status=PatternStatus.SUPERSEDED, superseded_by_id=superseded_by_id)

    def insert_pattern(self, pattern: Pattern) -> None:
        if pattern.id in self.patterns:
            raise StoreError(f'Pattern {pattern.id} already exists')
        if pattern.is_active and self.get_active_head(pattern.lineage_id) is not None:
            raise StoreError(f'Lineage {pattern.lineage_id} already has an ACTIVE version')
        self.patterns[pattern.id] = pattern

    def link_events(self, pattern_id: str, event_ids: Iterable[str]) -> None:
        if pattern_id not in self.patterns:
            raise StoreError(f'Pattern {pattern_id} not found')
        self.links.setdefault(pattern_id, set()).update(event_ids)


class InMemoryStore(MemoryStore):
    """Thread-safe dictionary-backed store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._events: Dict[str, Event] = {}
        self._interpretations: Dict[str, Interpretation] = {}
        self._patterns: Dict[str, Pattern] = {}
        self._links: Dict[str, Set[str]] = {}
        self._insights: Dict[str, Insight] = {}
        self._summaries: Dict[str, PriorSummary] = {}

    def add_event(self, event: Event) -> None:
        with self._lock:
            self._events[event.id] = event

    def add_interpretation(self, interpretation: Interpretation) -> None:
        with self._lock:
            self._interpretations[interpretation.id] = interpretation

    def add_insight(self, insight: Insight) -> None:
        with self._lock:
            self._insights[insight.id] = insight

    def add_summary(self, summary: PriorSummary) -> None:
        with self._lock:
            self._summaries[summary.id] = summary

    def get_event(self, event_id: str) -> Optional[Event]:
        with self._lock:
            return self._events.get(event_id)

    def get_interpretation_for_event(self, event_id: str) -> Optional[Interpretation]:
        with self._lock:
            for interpretation in self._interpretations.values():
                if interpretation.event_id == event_id:
                    return interpretation
            return None

    def get_interpretations_for_events(self, event_ids: Sequence[str]) -> List[Interpretation]:
        wanted = set(event_ids)
        with self._lock:
            return [i for i in self._interpretations.values() if i.event_id in wanted and i.embedding]

    def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        with self._lock:
            return self._patterns.get(pattern_id)

    def get_linked_event_ids(self, pattern_id: str) -> Set[str]:
        with self._lock:
            return set(self._links.get(pattern_id, set()))

    def get_lineage(self, lineage_id: str) -> List[Pattern]:
        with self._lock:
            versions = [p for p in self._patterns.values() if p.lineage_id == lineage_id]
        return sorted(versions, key=lambda p: p.version)

    def list_events(self,
                    user_id: str,
                    start: Optional[datetime] = None,
                    end: Optional[datetime] = None,
                    category: Optional[str] = None,
                    exclude_ids: Sequence[str] = (),
                    limit: Optional[int] = None) -> List[Event]:
        excluded = set(exclude_ids)
        with self._lock:
            events = [
                e for e in self._events.values() if e.user_id == user_id and e.id not in excluded and
                _in_range(e.occurred_at, start, end) and (category is None or e.category == category)
            ]
        events.sort(key=lambda e: ensure_utc(e.occurred_at), reverse=True)
        return events[:limit] if limit is not None else events

    def list_interpretations(self,
                             user_id: str,
                             since: Optional[datetime] = None,
                             until: Optional[datetime] = None,
                             limit: Optional[int] = None) -> List[Interpretation]:
        with self._lock:
            rows = [
                i for i in self._interpretations.values()
                if i.user_id == user_id and i.embedding and _in_range(i.created_at, since, until)
            ]
        rows.sort(key=lambda i: ensure_utc(i.created_at), reverse=True)
        return rows[:limit] if limit is not None else rows

    def list_window_embeddings(self, user_id: str, start: datetime, end: datetime) -> List[List[float]]:
        with self._lock:
            embeddings = []
            for interpretation in self._interpretations.values():
                event = self._events.get(interpretation.event_id)
                if (interpretation.user_id == user_id and interpretation.embedding and event is not None and
                        _in_range(event.occurred_at, start, end)):
                    embeddings.append(list(interpretation.embedding))
            return embeddings

    def list_active_patterns(self, user_id: str) -> List[Pattern]:
        with self._lock:
            return [p for p in self._patterns.values() if p.user_id == user_id and p.is_active and p.embedding]

    def list_patterns_in_window(self, user_id: str, start: datetime, end: datetime, limit: int) -> List[Pattern]:
        newest_by_lineage: Dict[str, Pattern] = {}
        with self._lock:
            for pattern in self._patterns.values():
                if pattern.user_id != user_id:
                    continue
                if not (pattern.is_active or _in_range(pattern.last_reinforced_at, start, end) or
                        _in_range(pattern.first_detected_at, start, end)):
                    continue
                current = newest_by_lineage.get(pattern.lineage_id)
                if current is None or pattern.version > current.version:
                    newest_by_lineage[pattern.lineage_id] = pattern
        patterns = sorted(newest_by_lineage.values(), key=lambda p: ensure_utc(p.last_reinforced_at), reverse=True)
        return patterns[:limit]

    def list_insights_in_window(self, user_id: str, start: datetime, end: datetime, limit: int) -> List[Insight]:
        with self._lock:
            insights = [
                i for i in self._insights.values()
                if i.user_id == user_id and i.status != InsightStatus.SUPERSEDED and
                (_in_range(i.first_detected_at, start, end) or _in_range(i.last_reinforced_at, start, end))
            ]
        insights.sort(key=lambda i: ensure_utc(i.last_reinforced_at), reverse=True)
        return insights[:limit]

    def list_summaries_before(self, user_id: str, summary_type: SummaryType, before: datetime,
                              limit: int) -> List[PriorSummary]:
        with self._lock:
            summaries = [
                s for s in self._summaries.values() if s.user_id == user_id and s.summary_type == summary_type and
                ensure_utc(s.period_end) < ensure_utc(before)
            ]
        summaries.sort(key=lambda s: ensure_utc(s.period_end), reverse=True)
        return summaries[:limit]

    def search_patterns(self, user_id: str, vector: Sequence[float], limit: int,
                        min_similarity: float) -> List[Tuple[Pattern, float]]:
        return _rank(self.list_active_patterns(user_id), vector, limit, min_similarity)

    def search_insights(self, user_id: str, vector: Sequence[float], limit: int,
                        min_similarity: float) -> List[Tuple[Insight, float]]:
        with self._lock:
            insights = [i for i in self._insights.values() if i.user_id == user_id and i.status != InsightStatus.SUPERSEDED]
        return _rank(insights, vector, limit, min_similarity)

    def search_summaries(self, user_id: str, summary_type: SummaryType, before: datetime, vector: Sequence[float],
                         limit: int, min_similarity: float) -> List[Tuple[PriorSummary, float]]:
        with self._lock:
            summaries = [
                s for s in self._summaries.values() if s.user_id == user_id and s.summary_type == summary_type and
                ensure_utc(s.period_end) < ensure_utc(before)
            ]
        return _rank(summaries, vector, limit, min_similarity)

    @contextmanager
    def transaction(self) -> Iterator[PatternTransaction]:
        with self._lock:
            tx = _InMemoryPatternTransaction(self._patterns, self._links)
            try:
                yield tx
            except StoreError:
                logger.error('Pattern transaction rolled back')
                raise
            except Exception as e:
                logger.error(f'Pattern transaction rolled back: {e}')
                raise StoreError(f'Pattern transaction failed: {e}') from e
            self._patterns = tx.patterns
            self._links = tx.links
