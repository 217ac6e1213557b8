"""Shared pytest fixtures for all test modules."""

import asyncio
import hashlib
import json
import math
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Union

import pytest

from patternmem.models.core import Event, Interpretation, Pattern, PatternStatus
from patternmem.storage.memory_store import InMemoryStore
from patternmem.utils.config import load_config
from patternmem.utils.timestamp_utils import utc_now

DIM = 16
# Axes below HASH_OFFSET are reserved for hand-built test vectors
HASH_OFFSET = 8
USER = 'user-1'
OTHER_USER = 'user-2'


def _run(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Vectors with known cosine similarity to the first axis
# ---------------------------------------------------------------------------


def axis(index: int, dim: int = DIM) -> List[float]:
    v = [0.0] * dim
    v[index] = 1.0
    return v


def vec_with_similarity(similarity: float, other_axis: int = 1, dim: int = DIM) -> List[float]:
    """Unit vector whose cosine similarity to ``axis(0)`` is ``similarity``."""
    v = [0.0] * dim
    v[0] = similarity
    v[other_axis] = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return v


# ---------------------------------------------------------------------------
# Fakes for the Bedrock clients
# ---------------------------------------------------------------------------


class FakeEmbedder:
    """Deterministic embedder: known texts map to fixed vectors, the rest to a hash."""

    def __init__(self, known: Optional[dict] = None, fail: bool = False):
        self.known = dict(known or {})
        self.fail = fail
        self.calls: List[str] = []

    def embed_document(self, text: str) -> List[float]:
        from patternmem.utils.bedrock_embed import BedrockEmbedError

        self.calls.append(text)
        if self.fail:
            raise BedrockEmbedError('embedding service unavailable')
        if text in self.known:
            return list(self.known[text])
        digest = hashlib.sha256(text.encode('utf-8')).digest()
        return [0.0] * HASH_OFFSET + [b / 255.0 + 0.01 for b in digest[:DIM - HASH_OFFSET]]


Response = Union[str, Exception, Callable[[str], str]]


class ScriptedLLM:
    """Returns queued responses; a callable response receives the user message."""

    def __init__(self, responses: Optional[Sequence[Response]] = None, default: Optional[Response] = None):
        self.responses = list(responses or [])
        self.default = default
        self.calls: List[dict] = []

    def complete(self, system_prompt, user_message, prefill=None, stop_sequences=None):
        self.calls.append({
            'system_prompt': system_prompt,
            'user_message': user_message,
            'prefill': prefill,
            'stop_sequences': stop_sequences
        })
        response = self.responses.pop(0) if self.responses else self.default
        if response is None:
            raise AssertionError('ScriptedLLM ran out of responses')
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(user_message)
        return response

    def user_payload(self, call_index: int = -1) -> dict:
        return json.loads(self.calls[call_index]['user_message'])


def decision_json(action: str, pattern_id: Optional[str] = None, description: Optional[str] = None,
                  reasoning: str = 'test') -> str:
    # Replies continue the prefilled code fence
    return json.dumps({'action': action, 'patternId': pattern_id, 'description': description, 'reasoning': reasoning})


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def add_event(store: InMemoryStore,
              content: str,
              embedding: Optional[List[float]],
              user_id: str = USER,
              occurred_at: Optional[datetime] = None,
              category: Optional[str] = None,
              with_interpretation: bool = True) -> Event:
    occurred_at = occurred_at or utc_now()
    event = Event(id=str(uuid.uuid4()), user_id=user_id, content=content, occurred_at=occurred_at, category=category)
    store.add_event(event)
    if with_interpretation:
        store.add_interpretation(
            Interpretation(id=str(uuid.uuid4()),
                           event_id=event.id,
                           user_id=user_id,
                           content=f'Interpretation of: {content}',
                           embedding=embedding,
                           created_at=occurred_at))
    return event


def add_pattern(store: InMemoryStore,
                description: str,
                embedding: Optional[List[float]],
                user_id: str = USER,
                event_ids: Sequence[str] = (),
                age_days: float = 0.0) -> Pattern:
    when = utc_now() - timedelta(days=age_days)
    pattern_id = str(uuid.uuid4())
    pattern = Pattern(id=pattern_id,
                      user_id=user_id,
                      description=description,
                      embedding=embedding,
                      status=PatternStatus.ACTIVE,
                      reinforcement_count=1,
                      first_detected_at=when,
                      last_reinforced_at=when,
                      lineage_id=pattern_id)
    with store.transaction() as tx:
        tx.insert_pattern(pattern)
        tx.link_events(pattern.id, event_ids)
    return pattern


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def app_config():
    return load_config()
