"""Tests for patternmem/storage/memory_store.py."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from conftest import OTHER_USER, USER, add_event, add_pattern, axis

from patternmem.models.core import PatternStatus
from patternmem.storage.base import StoreError

NOON = datetime(2025, 3, 4, 12, 0, tzinfo=timezone.utc)


class TestListEvents:

    def test_newest_first_with_exclusions_and_limit(self, store):
        events = [add_event(store, f'event {n}', axis(0), occurred_at=NOON - timedelta(hours=n)) for n in range(4)]
        add_event(store, 'someone else', axis(0), user_id=OTHER_USER, occurred_at=NOON)

        listed = store.list_events(USER, exclude_ids=[events[0].id], limit=2)

        assert [e.id for e in listed] == [events[1].id, events[2].id]

    def test_range_is_half_open(self, store):
        inside = add_event(store, 'start', axis(0), occurred_at=NOON)
        add_event(store, 'end', axis(0), occurred_at=NOON + timedelta(hours=1))

        listed = store.list_events(USER, NOON, NOON + timedelta(hours=1))

        assert [e.id for e in listed] == [inside.id]

    def test_category_filter(self, store):
        food = add_event(store, 'lunch', axis(0), occurred_at=NOON, category='food')
        add_event(store, 'run', axis(0), occurred_at=NOON, category='exercise')

        assert [e.id for e in store.list_events(USER, category='food')] == [food.id]


class TestInterpretations:

    def test_unembedded_interpretations_are_not_listed(self, store):
        embedded = add_event(store, 'with embedding', axis(0))
        add_event(store, 'without embedding', None)

        assert [i.event_id for i in store.list_interpretations(USER)] == [embedded.id]
        assert store.get_interpretations_for_events([embedded.id]) == store.list_interpretations(USER)


class TestTransactions:

    def test_changes_apply_only_on_success(self, store):
        pattern = add_pattern(store, 'Runs', axis(0))

        with pytest.raises(StoreError):
            with store.transaction() as tx:
                tx.mark_superseded(pattern.id, 'next')
                raise ValueError('boom')

        assert store.get_pattern(pattern.id).status == PatternStatus.ACTIVE

    def test_second_active_version_in_lineage_is_rejected(self, store):
        pattern = add_pattern(store, 'Runs', axis(0))
        duplicate = replace(pattern, id='another-id', version=2)

        with pytest.raises(StoreError):
            with store.transaction() as tx:
                tx.insert_pattern(duplicate)

        assert store.get_pattern('another-id') is None

    def test_linking_unknown_pattern_fails(self, store):
        with pytest.raises(StoreError):
            with store.transaction() as tx:
                tx.link_events('missing', ['evt'])

    def test_staged_changes_visible_inside_transaction(self, store):
        pattern = add_pattern(store, 'Runs', axis(0))

        with store.transaction() as tx:
            tx.mark_superseded(pattern.id, 'next')
            assert tx.get_active_head(pattern.lineage_id) is None
            assert store.get_pattern(pattern.id).is_active

        assert store.get_pattern(pattern.id).superseded_by_id == 'next'


class TestPatternQueries:

    def test_search_returns_only_active_patterns_above_floor(self, store):
        active = add_pattern(store, 'Runs', axis(0))
        superseded = add_pattern(store, 'Walks', axis(0))
        with store.transaction() as tx:
            tx.mark_superseded(superseded.id, 'next')
        add_pattern(store, 'Reads', axis(1))

        results = store.search_patterns(USER, axis(0), limit=5, min_similarity=0.5)

        assert [(p.id, round(s, 3)) for p, s in results] == [(active.id, 1.0)]

    def test_window_listing_keeps_newest_version_per_lineage(self, store):
        old = add_pattern(store, 'Runs', axis(0), age_days=1)
        new = replace(old, id='v2', version=2, supersedes_id=old.id)
        with store.transaction() as tx:
            tx.mark_superseded(old.id, new.id)
            tx.insert_pattern(new)

        start = NOON.replace(year=2000)
        listed = store.list_patterns_in_window(USER, start, datetime.now(timezone.utc), limit=10)

        assert [p.id for p in listed] == ['v2']
