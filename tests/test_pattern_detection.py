"""Tests for patternmem/services/pattern_detection.py."""

import asyncio
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from conftest import (OTHER_USER, USER, FakeEmbedder, ScriptedLLM, _run, add_event, add_pattern, axis, decision_json,
                      vec_with_similarity)

from patternmem.models.core import PatternOutcome, PatternStatus
from patternmem.services.decision_oracle import DecisionOracle
from patternmem.services.pattern_detection import EventNotFoundError, PatternDetectionService


def _service(store, llm, app_config, embedder=None):
    return PatternDetectionService(store, DecisionOracle(llm), embedder or FakeEmbedder(), app_config)


class TestProcessEvent:

    def test_first_event_creates_emerging_pattern_without_oracle(self, store, app_config):
        llm = ScriptedLLM()
        event = add_event(store, 'Drank three coffees before noon', axis(0))

        result = _run(_service(store, llm, app_config).process_event(USER, event.id))

        assert result.outcome == PatternOutcome.CREATED
        assert result.used_fallback
        assert llm.calls == []
        pattern = store.get_pattern(result.pattern_id)
        assert pattern.is_active
        assert 'Drank three coffees before noon' in pattern.description
        assert event.id in store.get_linked_event_ids(pattern.id)

    def test_missing_interpretation_still_yields_a_pattern(self, store, app_config):
        llm = ScriptedLLM()
        event = add_event(store, 'Slept in', None, with_interpretation=False)

        result = _run(_service(store, llm, app_config).process_event(USER, event.id))

        assert result.outcome == PatternOutcome.CREATED
        assert 'Slept in' in store.get_pattern(result.pattern_id).description
        assert store.get_linked_event_ids(result.pattern_id) == {event.id}
        assert llm.calls == []

    def test_unknown_event_raises(self, store, app_config):
        with pytest.raises(EventNotFoundError):
            _run(_service(store, ScriptedLLM(), app_config).process_event(USER, 'nope'))

    def test_event_of_another_user_raises(self, store, app_config):
        event = add_event(store, 'Not yours', axis(0), user_id=OTHER_USER)
        with pytest.raises(EventNotFoundError):
            _run(_service(store, ScriptedLLM(), app_config).process_event(USER, event.id))

    def test_oracle_reinforce_supersedes_candidate(self, store, app_config):
        old = add_pattern(store, 'Runs in the morning', vec_with_similarity(0.92), age_days=2)
        event = add_event(store, 'Ran 5k at 6am', axis(0))
        llm = ScriptedLLM([decision_json('reinforce', old.id, 'Runs most mornings')])

        result = _run(_service(store, llm, app_config).process_event(USER, event.id))

        assert result.outcome == PatternOutcome.REINFORCED
        assert result.superseded_pattern_id == old.id
        assert result.pattern_id != old.id
        assert result.candidates_considered == 1
        assert store.get_pattern(old.id).status == PatternStatus.SUPERSEDED
        new = store.get_pattern(result.pattern_id)
        assert new.description == 'Runs most mornings'
        assert new.reinforcement_count == 2
        assert event.id in store.get_linked_event_ids(new.id)

    def test_high_similarity_does_not_force_reinforcement(self, store, app_config):
        old = add_pattern(store, 'Runs in the morning', vec_with_similarity(0.92))
        event = add_event(store, 'Ran to catch the bus', axis(0))
        llm = ScriptedLLM([decision_json('create', None, 'Often late for the bus')])

        result = _run(_service(store, llm, app_config).process_event(USER, event.id))

        assert result.outcome == PatternOutcome.CREATED
        assert not result.used_fallback
        assert store.get_pattern(old.id).is_active
        assert store.get_pattern(result.pattern_id).description == 'Often late for the bus'

    def test_empty_oracle_reply_creates_fallback_pattern(self, store, app_config):
        add_pattern(store, 'Runs in the morning', vec_with_similarity(0.92))
        event = add_event(store, 'Ran to catch the bus', axis(0))

        result = _run(_service(store, ScriptedLLM(['']), app_config).process_event(USER, event.id))

        assert result.outcome == PatternOutcome.CREATED
        assert result.used_fallback
        assert 'Ran to catch the bus' in store.get_pattern(result.pattern_id).description

    def test_oracle_client_exception_creates_fallback_pattern(self, store, app_config):
        old = add_pattern(store, 'Runs in the morning', vec_with_similarity(0.92))
        event = add_event(store, 'Ran to catch the bus', axis(0))
        llm = ScriptedLLM([TimeoutError('read timed out')])

        result = _run(_service(store, llm, app_config).process_event(USER, event.id))

        assert result.outcome == PatternOutcome.CREATED
        assert result.used_fallback
        assert store.get_pattern(old.id).is_active
        assert event.id in store.get_linked_event_ids(result.pattern_id)

    def test_context_events_exclude_the_trigger(self, store, app_config):
        noon = datetime(2025, 3, 4, 12, 0, tzinfo=timezone.utc)
        add_pattern(store, 'Drinks coffee', vec_with_similarity(0.9))
        add_event(store, 'Morning coffee', axis(2), occurred_at=noon - timedelta(hours=3), category='food')
        add_event(store, 'Coffee yesterday', axis(3), occurred_at=noon - timedelta(days=1), category='food')
        trigger = add_event(store, 'Afternoon coffee', axis(0), occurred_at=noon, category='food')
        llm = ScriptedLLM([decision_json('create', None, 'Drinks coffee twice a day')])

        _run(_service(store, llm, app_config).process_event(USER, trigger.id))

        payload = llm.user_payload(0)
        assert payload['rawEvent'] == 'Afternoon coffee'
        assert [e['content'] for e in payload['sameDayEvents']] == ['Morning coffee']
        assert [e['content'] for e in payload['precedingEvents']] == ['Morning coffee', 'Coffee yesterday']
        assert [e['content'] for e in payload['categoryEvents']] == ['Morning coffee', 'Coffee yesterday']


def _reinforce_first_candidate(user_message):
    payload = json.loads(user_message)
    return decision_json('reinforce', payload['existingPatterns'][0]['id'], 'Runs a lot')


class TestConcurrentEvents:

    @pytest.mark.parametrize('serialize', [True, False])
    def test_concurrent_reinforcements_form_a_linear_lineage(self, store, app_config, serialize):
        app_config = replace(app_config, pattern=replace(app_config.pattern, serialize_per_user=serialize))
        old = add_pattern(store, 'Runs', axis(0))
        events = [add_event(store, f'Run number {n}', axis(0)) for n in range(3)]
        llm = ScriptedLLM(default=_reinforce_first_candidate)
        service = _service(store, llm, app_config, FakeEmbedder({'Runs a lot': axis(0)}))

        async def process_all():
            return await asyncio.gather(*(service.process_event(USER, e.id) for e in events))

        results = _run(process_all())

        assert all(r.outcome == PatternOutcome.REINFORCED for r in results)
        lineage = store.get_lineage(old.lineage_id)
        assert [p.version for p in lineage] == [1, 2, 3, 4]
        assert [p.is_active for p in lineage] == [False, False, False, True]
        for previous, current in zip(lineage, lineage[1:]):
            assert current.supersedes_id == previous.id
            assert previous.superseded_by_id == current.id
        assert lineage[-1].reinforcement_count == 4
        assert {e.id for e in events} <= store.get_linked_event_ids(lineage[-1].id)

    def test_user_locks_are_dropped_once_released(self, store, app_config):
        app_config = replace(app_config, pattern=replace(app_config.pattern, serialize_per_user=True))
        add_pattern(store, 'Runs', axis(0))
        events = [add_event(store, f'Run number {n}', axis(0)) for n in range(3)]
        service = _service(store, ScriptedLLM(default=_reinforce_first_candidate), app_config,
                           FakeEmbedder({'Runs a lot': axis(0)}))

        async def process_all():
            processed = asyncio.gather(*(service.process_event(USER, e.id) for e in events))
            missing = service.process_event(OTHER_USER, 'nope')
            return await asyncio.gather(processed, missing, return_exceptions=True)

        processed, missing = _run(process_all())

        assert len(processed) == 3
        assert isinstance(missing, EventNotFoundError)
        assert service._locks == {}
        assert service._lock_users == {}


class TestBatchDetection:

    def _cluster(self, store, count=3):
        return [add_event(store, f'Evening run {n}', vec_with_similarity(0.95, other_axis=n + 1)) for n in range(count)]

    def test_unmatched_cluster_becomes_synthesized_pattern(self, store, app_config):
        events = self._cluster(store)
        llm = ScriptedLLM(['{"pattern": "Runs in the evening"}'])

        result = _run(_service(store, llm, app_config).detect_patterns_batch(USER))

        assert result.clusters_found == 1
        assert result.patterns_created == 1
        assert result.patterns_reinforced == 0
        pattern = store.get_pattern(result.pattern_ids[0])
        assert pattern.description == 'Runs in the evening'
        assert store.get_linked_event_ids(pattern.id) == {e.id for e in events}

    def test_matching_pattern_is_reinforced_with_description_kept(self, store, app_config):
        old = add_pattern(store, 'Runs in the evening', axis(0))
        self._cluster(store)
        llm = ScriptedLLM()

        result = _run(_service(store, llm, app_config).detect_patterns_batch(USER))

        assert result.patterns_reinforced == 1
        assert result.patterns_created == 0
        assert llm.calls == []
        new = store.get_pattern(result.pattern_ids[0])
        assert new.supersedes_id == old.id
        assert new.description == 'Runs in the evening'

    @pytest.mark.parametrize('reply', ['', RuntimeError('connection reset')])
    def test_synthesis_failure_falls_back_to_observations(self, store, app_config, reply):
        self._cluster(store)

        result = _run(_service(store, ScriptedLLM([reply]), app_config).detect_patterns_batch(USER))

        description = store.get_pattern(result.pattern_ids[0]).description
        assert '- Interpretation of: Evening run 0' in description
        assert 'pattern synthesis failure' in description

    def test_too_few_interpretations_is_a_no_op(self, store, app_config):
        self._cluster(store, count=2)

        result = _run(_service(store, ScriptedLLM(), app_config).detect_patterns_batch(USER))

        assert result.clusters_found == 0
        assert result.pattern_ids == []
        assert store.list_active_patterns(USER) == []
