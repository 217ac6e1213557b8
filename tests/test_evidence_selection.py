"""Tests for patternmem/services/evidence_selection.py."""

from datetime import timedelta

import pytest
from conftest import USER, add_event, add_pattern, axis, vec_with_similarity

from patternmem.services.evidence_selection import EvidenceSelector
from patternmem.utils.config import EvidenceConfig
from patternmem.utils.timestamp_utils import utc_now


def _aged_event(store, content, embedding, days):
    return add_event(store, content, embedding, occurred_at=utc_now() - timedelta(days=days))


def _event_ids(evidence):
    return [s.interpretation.event_id for s in evidence]


class TestSelectEvidence:

    def test_no_history_is_empty(self, store):
        assert EvidenceSelector(store, EvidenceConfig()).select_evidence(USER, axis(0)) == []

    def test_near_duplicates_keep_the_better_one(self, store):
        recent = _aged_event(store, 'ran today', vec_with_similarity(0.8), 0)
        _aged_event(store, 'ran last week', vec_with_similarity(0.8), 10)

        evidence = EvidenceSelector(store, EvidenceConfig()).select_evidence(USER, axis(0))

        assert _event_ids(evidence) == [recent.id]

    def test_newest_items_are_included_even_if_unrelated(self, store):
        unrelated = [_aged_event(store, f'unrelated {n}', axis(n + 2), n) for n in range(3)]

        evidence = EvidenceSelector(store, EvidenceConfig()).select_evidence(USER, axis(0))

        assert set(_event_ids(evidence)) == {e.id for e in unrelated}

    def test_old_unrelated_items_are_left_out(self, store):
        config = EvidenceConfig(mandatory_recent_count=1)
        similar = _aged_event(store, 'similar', vec_with_similarity(0.9), 5)
        _aged_event(store, 'unrelated', axis(2), 50)

        evidence = EvidenceSelector(store, config).select_evidence(USER, axis(0))

        assert _event_ids(evidence) == [similar.id]

    def test_total_is_capped(self, store):
        for n in range(10):
            _aged_event(store, f'similar {n}', vec_with_similarity(0.7 + n * 0.02, other_axis=n + 1), n)

        evidence = EvidenceSelector(store, EvidenceConfig(max_total=3)).select_evidence(USER, axis(0))

        assert len(evidence) == 3

    def test_sorted_by_combined_score(self, store):
        for n in range(6):
            _aged_event(store, f'similar {n}', vec_with_similarity(0.6 + n * 0.05, other_axis=n + 1), n * 7)

        evidence = EvidenceSelector(store, EvidenceConfig()).select_evidence(USER, axis(0))

        scores = [s.combined_score for s in evidence]
        assert scores == sorted(scores, reverse=True)

    def test_scores_blend_similarity_and_recency(self, store):
        _aged_event(store, 'similar', vec_with_similarity(0.9), 0)

        item = EvidenceSelector(store, EvidenceConfig()).select_evidence(USER, axis(0))[0]

        assert item.similarity_score == pytest.approx(0.9)
        assert item.recency_score == pytest.approx(1.0, abs=1e-3)
        assert item.combined_score == pytest.approx(0.9 * 0.7 + 0.3, abs=1e-3)
        assert item.from_pattern_id is None


class TestPatternRelativeEvidence:

    def test_interpretations_behind_similar_patterns_are_tagged(self, store):
        backing = add_event(store, 'ran once', axis(2))
        pattern = add_pattern(store, 'Runs', vec_with_similarity(0.9), event_ids=[backing.id])

        evidence = EvidenceSelector(store, EvidenceConfig()).select_evidence(USER, axis(0))

        item = next(s for s in evidence if s.interpretation.event_id == backing.id)
        assert item.from_pattern_id == pattern.id
        # Unrelated by embedding, so only recency and the flat bonus count
        assert item.combined_score == pytest.approx(0.2 + 0.2, abs=1e-3)

    def test_dissimilar_patterns_contribute_nothing(self, store):
        backing = add_event(store, 'ran once', axis(2))
        add_pattern(store, 'Runs', vec_with_similarity(0.3), event_ids=[backing.id])

        evidence = EvidenceSelector(store, EvidenceConfig()).select_evidence(USER, axis(0))

        assert all(s.from_pattern_id is None for s in evidence)
