"""Tests for patternmem/services/hybrid_retrieval.py."""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from conftest import USER, FakeEmbedder, _run, add_event, add_pattern, axis, vec_with_similarity

from patternmem.models.core import (Insight, InsightConfidence, InsightStatus, PriorSummary, SummaryType)
from patternmem.services.hybrid_retrieval import (HybridRetrievalService, HybridScorer, bucket_limits,
                                                  hybrid_score, recency_score)
from patternmem.services.pattern_versioning import PatternVersionManager
from patternmem.utils.config import HybridWeights, RetrievalConfig
from patternmem.utils.timestamp_utils import utc_now

PATTERN_WEIGHTS = HybridWeights(0.4, 0.5, 0.1)


def _insight(embedding, confidence=InsightConfidence.HIGH, status=InsightStatus.ACTIVE, age_days=0.0):
    when = utc_now() - timedelta(days=age_days)
    return Insight(id=str(uuid.uuid4()),
                   user_id=USER,
                   statement='Sleeps better after exercise',
                   explanation='',
                   confidence=confidence,
                   status=status,
                   embedding=embedding,
                   first_detected_at=when,
                   last_reinforced_at=when)


def _summary(period_end, embedding=None, summary_type=SummaryType.DAILY):
    return PriorSummary(id=str(uuid.uuid4()),
                        user_id=USER,
                        summary_type=summary_type,
                        period_key=period_end.date().isoformat(),
                        period_start=period_end - timedelta(days=1),
                        period_end=period_end,
                        summary='A day',
                        embedding=embedding)


class TestScoring:

    def test_recency_halves_every_half_life(self):
        assert recency_score(0) == pytest.approx(1.0)
        assert recency_score(30) == pytest.approx(0.5)
        assert recency_score(60) == pytest.approx(0.25)
        assert recency_score(-5) == pytest.approx(1.0)

    @pytest.mark.parametrize('step', [0.01, 0.5, 7])
    def test_recency_strictly_decreases_with_age(self, step):
        ages = [n * 0.25 for n in range(0, 1461)]
        for age in ages:
            assert recency_score(age) > recency_score(age + step)

    def test_hybrid_score_with_similarity(self):
        assert hybrid_score(0.5, 0.8, 1.0, PATTERN_WEIGHTS) == pytest.approx(0.7)

    def test_hybrid_score_without_similarity_uses_penalized_recency(self):
        assert hybrid_score(0.5, None, 1.0, PATTERN_WEIGHTS) == pytest.approx(0.415)

    def test_bucket_limits_round_up(self):
        assert bucket_limits(30) == (18, 12)
        assert bucket_limits(7) == (5, 3)


@dataclass(frozen=True)
class _Item:
    id: str
    at: datetime


class TestHybridScorer:

    def test_item_in_both_buckets_appears_once_with_similarity(self):
        now = datetime(2025, 3, 4, tzinfo=timezone.utc)
        shared, temporal_only, semantic_only = _Item('a', now), _Item('b', now), _Item('c', now)

        ranked = HybridScorer().rank([shared, temporal_only], [(shared, 0.9), (semantic_only, 0.5)], lambda i: i.at,
                                     lambda i: 0.0, PATTERN_WEIGHTS, now, 10)

        by_id = {s.item.id: s for s in ranked}
        assert sorted(by_id) == ['a', 'b', 'c']
        assert by_id['a'].source == 'temporal'
        assert by_id['a'].similarity_score == pytest.approx(0.9)
        assert by_id['b'].similarity_score is None
        assert by_id['c'].source == 'semantic'
        assert [s.item.id for s in ranked] == ['a', 'c', 'b']

    def test_limit(self):
        now = datetime(2025, 3, 4, tzinfo=timezone.utc)
        items = [_Item(str(n), now - timedelta(days=n)) for n in range(5)]
        ranked = HybridScorer().rank(items, [], lambda i: i.at, lambda i: 0.0, PATTERN_WEIGHTS, now, 2)
        assert [s.item.id for s in ranked] == ['0', '1']


@pytest.fixture
def window():
    end = utc_now()
    return end - timedelta(days=1), end


@pytest.fixture
def service(store):
    return HybridRetrievalService(store, RetrievalConfig())


class TestWindowEmbedding:

    def test_normalized_centroid_of_window_events(self, store, service, window):
        start, end = window
        add_event(store, 'in window', axis(0), occurred_at=end - timedelta(hours=2))
        add_event(store, 'in window too', axis(1), occurred_at=end - timedelta(hours=1))
        add_event(store, 'before window', axis(2), occurred_at=start - timedelta(hours=1))

        embedding = service.compute_window_embedding(USER, start, end)

        assert embedding[0] == pytest.approx(2**-0.5)
        assert embedding[1] == pytest.approx(2**-0.5)
        assert embedding[2] == 0.0

    def test_no_embedded_events_is_none(self, store, service, window):
        add_event(store, 'no interpretation', None, occurred_at=window[1] - timedelta(hours=1),
                  with_interpretation=False)
        assert service.compute_window_embedding(USER, *window) is None


class TestRetrieveWindowMemory:

    def test_without_window_embedding_temporal_results_survive(self, store, service, window):
        pattern = add_pattern(store, 'Runs', axis(0))

        memory = _run(service.retrieve_window_memory(USER, *window))

        assert memory.window_embedding is None
        assert [s.item.id for s in memory.patterns] == [pattern.id]
        assert memory.patterns[0].similarity_score is None
        assert memory.patterns[0].source == 'temporal'

    def test_one_row_per_lineage(self, store, service, window):
        old = add_pattern(store, 'Runs', axis(0))
        new = PatternVersionManager(store, FakeEmbedder({'Runs more': axis(0)})).reinforce(old.id, 'Runs more', [])
        add_event(store, 'ran', axis(0), occurred_at=window[1] - timedelta(hours=1))

        memory = _run(service.retrieve_window_memory(USER, *window))

        assert [s.item.id for s in memory.patterns] == [new.id]
        assert memory.patterns[0].similarity_score == pytest.approx(1.0)
        assert memory.patterns[0].bonus_score == 1.0

    def test_semantic_bucket_respects_similarity_floor(self, store, service, window):
        close = _insight(vec_with_similarity(0.8), age_days=60)
        far = _insight(vec_with_similarity(0.3), age_days=60)
        store.add_insight(close)
        store.add_insight(far)
        add_event(store, 'slept well', axis(0), occurred_at=window[1] - timedelta(hours=1))

        memory = _run(service.retrieve_window_memory(USER, *window))

        assert [s.item.id for s in memory.insights] == [close.id]
        assert memory.insights[0].source == 'semantic'

    def test_insights_use_confidence_bonus_and_skip_superseded(self, store, service, window):
        high = _insight(None, InsightConfidence.HIGH, age_days=0.5)
        emerging = _insight(None, InsightConfidence.EMERGING, age_days=0.5)
        superseded = _insight(None, status=InsightStatus.SUPERSEDED, age_days=0.5)
        for insight in (high, emerging, superseded):
            store.add_insight(insight)

        memory = _run(service.retrieve_window_memory(USER, *window))

        scored = {s.item.id: s for s in memory.insights}
        assert set(scored) == {high.id, emerging.id}
        assert scored[high.id].bonus_score == 1.0
        assert scored[emerging.id].bonus_score == pytest.approx(0.3)
        assert [s.item.id for s in memory.insights] == [high.id, emerging.id]

    def test_prior_summaries_ended_before_window_start(self, store, service, window):
        start, end = window
        before = _summary(start - timedelta(days=1))
        during = _summary(end)
        weekly = _summary(start - timedelta(days=1), summary_type=SummaryType.WEEKLY)
        for summary in (before, during, weekly):
            store.add_summary(summary)

        memory = _run(service.retrieve_window_memory(USER, start, end, SummaryType.DAILY))

        assert [s.item.id for s in memory.prior_summaries] == [before.id]
        assert memory.prior_summaries[0].bonus_score == 0.0
