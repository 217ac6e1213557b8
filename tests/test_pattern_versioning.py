"""Tests for patternmem/services/pattern_versioning.py."""

import pytest
from conftest import USER, FakeEmbedder, add_event, add_pattern, axis

from patternmem.models.core import PatternStatus
from patternmem.services.pattern_versioning import PatternCommitError, PatternVersionManager
from patternmem.storage import memory_store


@pytest.fixture
def manager(store, embedder):
    return PatternVersionManager(store, embedder)


class TestCreate:

    def test_first_version_of_new_lineage(self, store, manager):
        event = add_event(store, 'ran 5k', axis(0))
        pattern = manager.create(USER, 'Runs in the morning', [event.id])

        assert pattern.status == PatternStatus.ACTIVE
        assert pattern.reinforcement_count == 1
        assert pattern.version == 1
        assert pattern.lineage_id == pattern.id
        assert pattern.embedding
        assert store.get_pattern(pattern.id) == pattern
        assert store.get_linked_event_ids(pattern.id) == {event.id}

    def test_emerging_pattern_quotes_raw_content(self, store, manager):
        event = add_event(store, 'skipped lunch again', axis(0))
        pattern = manager.create_emerging(USER, 'skipped lunch again', [event.id], 'insufficient evidence')
        assert 'skipped lunch again' in pattern.description
        assert '## EMERGING PATTERN' in pattern.description

    def test_embedding_failure_commits_nothing(self, store):
        manager = PatternVersionManager(store, FakeEmbedder(fail=True))
        with pytest.raises(PatternCommitError):
            manager.create(USER, 'anything', [])
        assert store.list_active_patterns(USER) == []


class TestReinforce:

    def test_supersedes_old_version(self, store, manager):
        first = add_event(store, 'ran 5k', axis(0))
        second = add_event(store, 'ran 10k', axis(0))
        old = add_pattern(store, 'Runs', axis(0), event_ids=[first.id], age_days=3)

        new = manager.reinforce(old.id, 'Runs often', [second.id])

        assert new.id != old.id
        assert new.status == PatternStatus.ACTIVE
        assert new.reinforcement_count == old.reinforcement_count + 1
        assert new.version == old.version + 1
        assert new.lineage_id == old.lineage_id
        assert new.supersedes_id == old.id
        assert new.first_detected_at == old.first_detected_at
        assert new.last_reinforced_at > old.last_reinforced_at

        stored_old = store.get_pattern(old.id)
        assert stored_old.status == PatternStatus.SUPERSEDED
        assert stored_old.superseded_by_id == new.id

    def test_new_version_links_old_and_contributing_events(self, store, manager):
        first = add_event(store, 'ran 5k', axis(0))
        second = add_event(store, 'ran 10k', axis(0))
        old = add_pattern(store, 'Runs', axis(0), event_ids=[first.id])

        new = manager.reinforce(old.id, 'Runs often', [second.id])

        assert store.get_linked_event_ids(new.id) >= store.get_linked_event_ids(old.id) | {second.id}
        # The audit trail of the old version is untouched
        assert store.get_linked_event_ids(old.id) == {first.id}

    def test_reinforcing_stale_version_reinforces_lineage_head(self, store, manager):
        old = add_pattern(store, 'Runs', axis(0))
        head = manager.reinforce(old.id, 'Runs v2', [])
        newest = manager.reinforce(old.id, 'Runs v3', [])

        assert newest.supersedes_id == head.id
        assert newest.version == 3
        lineage = store.get_lineage(old.lineage_id)
        assert [p.version for p in lineage] == [1, 2, 3]
        assert [p.is_active for p in lineage] == [False, False, True]

    def test_unknown_pattern_raises_commit_error(self, manager):
        with pytest.raises(PatternCommitError):
            manager.reinforce('missing', 'whatever', [])

    def test_failed_transaction_leaves_old_version_active(self, store, manager, monkeypatch):
        old = add_pattern(store, 'Runs', axis(0))

        def broken_link(self, pattern_id, event_ids):
            raise RuntimeError('disk full')

        monkeypatch.setattr(memory_store._InMemoryPatternTransaction, 'link_events', broken_link)

        with pytest.raises(PatternCommitError):
            manager.reinforce(old.id, 'Runs often', [])

        assert store.get_pattern(old.id).status == PatternStatus.ACTIVE
        assert store.get_lineage(old.lineage_id) == [old]


class TestLineage:

    def test_lineage_from_any_version_is_oldest_first(self, store, manager):
        old = add_pattern(store, 'Runs', axis(0))
        v2 = manager.reinforce(old.id, 'Runs v2', [])
        v3 = manager.reinforce(v2.id, 'Runs v3', [])

        assert [p.id for p in manager.get_lineage(v2.id)] == [old.id, v2.id, v3.id]
        assert [p.id for p in manager.get_lineage(old.id)] == [old.id, v2.id, v3.id]

    def test_unknown_pattern_has_empty_lineage(self, manager):
        assert manager.get_lineage('missing') == []
