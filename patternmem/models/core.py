"""
Core data models for the pattern memory engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, List, Optional, TypeVar


@dataclass(frozen=True)
class Event:
    """Immutable fact about a user's life as ingested."""
    id: str
    user_id: str
    content: str
    occurred_at: datetime
    category: Optional[str] = None


@dataclass(frozen=True)
class Interpretation:
    """Derived annotation of exactly one Event; source of the matching embedding."""
    id: str
    event_id: str
    user_id: str
    content: str
    embedding: Optional[List[float]]
    created_at: datetime


class PatternStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    SUPERSEDED = 'SUPERSEDED'


@dataclass(frozen=True)
class Pattern:
    """One version of a claim about a user's recurring behavior.

    Versions of the same claim share a ``lineage_id`` (the id of version 1).
    A reinforced version is never edited: it flips to SUPERSEDED and points at
    its successor through ``superseded_by_id``, while the successor points back
    through ``supersedes_id``. At most one version per lineage is ACTIVE.
    """
    id: str
    user_id: str
    description: str
    embedding: Optional[List[float]]
    status: PatternStatus
    reinforcement_count: int
    first_detected_at: datetime
    last_reinforced_at: datetime
    lineage_id: str
    version: int = 1
    supersedes_id: Optional[str] = None
    superseded_by_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == PatternStatus.ACTIVE


class InsightConfidence(str, Enum):
    HIGH = 'HIGH'
    MEDIUM = 'MEDIUM'
    EMERGING = 'EMERGING'
    LOW = 'LOW'


class InsightStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    SUPERSEDED = 'SUPERSEDED'


@dataclass(frozen=True)
class Insight:
    """Independently produced insight; only ranked, never versioned here."""
    id: str
    user_id: str
    statement: str
    explanation: str
    confidence: InsightConfidence
    status: InsightStatus
    embedding: Optional[List[float]]
    first_detected_at: datetime
    last_reinforced_at: datetime
    category: Optional[str] = None


class SummaryType(str, Enum):
    DAILY = 'DAILY'
    WEEKLY = 'WEEKLY'
    MONTHLY = 'MONTHLY'


@dataclass(frozen=True)
class PriorSummary:
    """A previously generated review of one period."""
    id: str
    user_id: str
    summary_type: SummaryType
    period_key: str
    period_start: datetime
    period_end: datetime
    summary: str
    embedding: Optional[List[float]]


@dataclass(frozen=True)
class PatternCandidate:
    """An ACTIVE pattern numerically close enough to be arbitrated over."""
    pattern: Pattern
    similarity: float


@dataclass(frozen=True)
class ScoredInterpretation:
    """An interpretation picked as supporting evidence, with its scores."""
    interpretation: Interpretation
    similarity_score: float
    recency_score: float
    combined_score: float
    from_pattern_id: Optional[str] = None


class DecisionAction(str, Enum):
    REINFORCE = 'reinforce'
    CREATE = 'create'


@dataclass(frozen=True)
class PatternDecision:
    """Validated decision of the oracle (or of its fallback)."""
    action: DecisionAction
    description: str
    reasoning: str
    pattern_id: Optional[str] = None
    is_fallback: bool = False


class PatternOutcome(str, Enum):
    REINFORCED = 'REINFORCED'
    CREATED = 'CREATED'


@dataclass(frozen=True)
class PatternDetectionResult:
    """Terminal result of processing one event.

    ``pattern_id`` is the id of the ACTIVE version that now carries the event.
    For REINFORCED it differs from ``superseded_pattern_id``.
    """
    outcome: PatternOutcome
    pattern_id: str
    event_id: str
    superseded_pattern_id: Optional[str] = None
    candidates_considered: int = 0
    reasoning: str = ''
    used_fallback: bool = False

    def __post_init__(self):
        if not self.pattern_id:
            raise ValueError('A detection result must carry a pattern id')
        if self.outcome == PatternOutcome.REINFORCED and not self.superseded_pattern_id:
            raise ValueError('A reinforcement must name the superseded pattern version')


@dataclass
class BatchDetectionResult:
    """Counters of one legacy batch clustering run."""
    clusters_found: int = 0
    patterns_created: int = 0
    patterns_reinforced: int = 0
    pattern_ids: List[str] = field(default_factory=list)


T = TypeVar('T')


@dataclass(frozen=True)
class ScoredMemory(Generic[T]):
    """A memory object with its hybrid ranking breakdown."""
    item: T
    recency_score: float
    similarity_score: Optional[float]
    bonus_score: float
    hybrid_score: float
    source: str  # 'temporal' or 'semantic'


@dataclass(frozen=True)
class WindowMemory:
    """Memory objects selected as relevant to one time window."""
    window_start: datetime
    window_end: datetime
    window_embedding: Optional[List[float]]
    patterns: List[ScoredMemory[Any]]
    insights: List[ScoredMemory[Any]]
    prior_summaries: List[ScoredMemory[Any]]
