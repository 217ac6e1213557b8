"""
Storage contract of the pattern memory engine.

The engine needs point reads and writes on events, interpretations, patterns,
insights and prior summaries, vector "top-N above a similarity floor" queries,
and one multi-statement atomic unit of work for pattern version mutations.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from ..models.core import Event, Insight, Interpretation, Pattern, PriorSummary, SummaryType


class StoreError(Exception):
    """Custom exception for storage failures; always propagated to callers."""
    pass


class PatternTransaction(ABC):
    """Unit of work over pattern rows and pattern-event links.

    Reads observe the writes already staged in the same transaction.
    """

    @abstractmethod
    def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        ...

    @abstractmethod
    def get_active_head(self, lineage_id: str) -> Optional[Pattern]:
        """The ACTIVE version of a lineage, if any."""
        ...

    @abstractmethod
    def get_linked_event_ids(self, pattern_id: str) -> Set[str]:
        ...

    @abstractmethod
    def mark_superseded(self, pattern_id: str, superseded_by_id: str) -> None:
        ...

    @abstractmethod
    def insert_pattern(self, pattern: Pattern) -> None:
        ...

    @abstractmethod
    def link_events(self, pattern_id: str, event_ids: Iterable[str]) -> None:
        ...


class MemoryStore(ABC):
    """Vector-aware store of one deployment; every query is scoped to a user."""

    # Ingestion seams (events and derived objects are produced elsewhere)

    @abstractmethod
    def add_event(self, event: Event) -> None:
        ...

    @abstractmethod
    def add_interpretation(self, interpretation: Interpretation) -> None:
        ...

    @abstractmethod
    def add_insight(self, insight: Insight) -> None:
        ...

    @abstractmethod
    def add_summary(self, summary: PriorSummary) -> None:
        ...

    # Point reads

    @abstractmethod
    def get_event(self, event_id: str) -> Optional[Event]:
        ...

    @abstractmethod
    def get_interpretation_for_event(self, event_id: str) -> Optional[Interpretation]:
        ...

    @abstractmethod
    def get_interpretations_for_events(self, event_ids: Sequence[str]) -> List[Interpretation]:
        """Interpretations carrying an embedding for the given events."""
        ...

    @abstractmethod
    def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        ...

    @abstractmethod
    def get_linked_event_ids(self, pattern_id: str) -> Set[str]:
        ...

    @abstractmethod
    def get_lineage(self, lineage_id: str) -> List[Pattern]:
        """Every version of a lineage, oldest first, SUPERSEDED rows included."""
        ...

    # Listings

    @abstractmethod
    def list_events(self,
                    user_id: str,
                    start: Optional[datetime] = None,
                    end: Optional[datetime] = None,
                    category: Optional[str] = None,
                    exclude_ids: Sequence[str] = (),
                    limit: Optional[int] = None) -> List[Event]:
        """Events with ``start <= occurred_at < end``, newest first."""
        ...

    @abstractmethod
    def list_interpretations(self,
                             user_id: str,
                             since: Optional[datetime] = None,
                             until: Optional[datetime] = None,
                             limit: Optional[int] = None) -> List[Interpretation]:
        """Interpretations with an embedding created in ``[since, until)``, newest first."""
        ...

    @abstractmethod
    def list_window_embeddings(self, user_id: str, start: datetime, end: datetime) -> List[List[float]]:
        """Interpretation embeddings of events that occurred in ``[start, end)``."""
        ...

    @abstractmethod
    def list_active_patterns(self, user_id: str) -> List[Pattern]:
        """ACTIVE patterns that carry an embedding."""
        ...

    @abstractmethod
    def list_patterns_in_window(self, user_id: str, start: datetime, end: datetime, limit: int) -> List[Pattern]:
        """Patterns reinforced or first detected in the window, or currently ACTIVE.

        At most one version per lineage (the newest match), ordered by
        ``last_reinforced_at`` descending.
        """
        ...

    @abstractmethod
    def list_insights_in_window(self, user_id: str, start: datetime, end: datetime, limit: int) -> List[Insight]:
        """Non-superseded insights first detected or reinforced in the window, newest first."""
        ...

    @abstractmethod
    def list_summaries_before(self, user_id: str, summary_type: SummaryType, before: datetime,
                              limit: int) -> List[PriorSummary]:
        """Summaries of one type whose period ended before ``before``, newest first."""
        ...

    # Vector queries

    @abstractmethod
    def search_patterns(self, user_id: str, vector: Sequence[float], limit: int,
                        min_similarity: float) -> List[Tuple[Pattern, float]]:
        """ACTIVE patterns by descending similarity, floor applied."""
        ...

    @abstractmethod
    def search_insights(self, user_id: str, vector: Sequence[float], limit: int,
                        min_similarity: float) -> List[Tuple[Insight, float]]:
        """Non-superseded insights by descending similarity, floor applied."""
        ...

    @abstractmethod
    def search_summaries(self, user_id: str, summary_type: SummaryType, before: datetime, vector: Sequence[float],
                         limit: int, min_similarity: float) -> List[Tuple[PriorSummary, float]]:
        """Summaries of one type ended before ``before`` by descending similarity, floor applied."""
        ...

    # Atomic pattern mutations

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Context manager yielding a PatternTransaction.

        Commits when the block exits normally; rolls back and raises
        StoreError when anything inside it fails.
        """
        ...
