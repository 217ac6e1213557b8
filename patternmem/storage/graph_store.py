"""
Neptune + OpenSearch implementation of the memory store.

Neptune holds events, pattern versions and the pattern-event / version edges,
and every pattern mutation runs in a single Gremlin transaction. OpenSearch
holds interpretations, insights and prior summaries, plus a mirror of the
pattern vertices that serves vector queries. The mirror is refreshed after
each commit; vector hits are re-read from Neptune so a stale mirror can only
hide a pattern, never resurrect a superseded one.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from ..models.core import (Event, Insight, InsightConfidence, InsightStatus, Interpretation, Pattern, PatternStatus,
                           PriorSummary, SummaryType)
from ..utils.config import AppConfig, config as default_config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient, NeptuneError, decode_embedding, encode_embedding
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import from_epoch_seconds, to_epoch_seconds
from ..utils.vector_math import cosine_similarity
from .base import MemoryStore, PatternTransaction, StoreError
from .memory_store import InMemoryStore

logger = get_logger(__name__)

# Neighbours fetched per requested result; filters are applied after the k-NN stage
KNN_OVERSAMPLE = 4


def _pattern_from_properties(props: Dict[str, Any]) -> Pattern:
    return Pattern(id=props['id'],
                   user_id=props['user_id'],
                   description=props['description'],
                   embedding=decode_embedding(props.get('embedding')),
                   status=PatternStatus(props['status']),
                   reinforcement_count=int(props['reinforcement_count']),
                   first_detected_at=from_epoch_seconds(props['first_detected_at']),
                   last_reinforced_at=from_epoch_seconds(props['last_reinforced_at']),
                   lineage_id=props['lineage_id'],
                   version=int(props.get('version', 1)),
                   supersedes_id=props.get('supersedes_id'),
                   superseded_by_id=props.get('superseded_by_id'))


def _pattern_to_properties(pattern: Pattern) -> Dict[str, Any]:
    return {
        'id': pattern.id,
        'user_id': pattern.user_id,
        'description': pattern.description,
        'embedding': encode_embedding(pattern.embedding),
        'status': pattern.status.value,
        'reinforcement_count': pattern.reinforcement_count,
        'first_detected_at': to_epoch_seconds(pattern.first_detected_at),
        'last_reinforced_at': to_epoch_seconds(pattern.last_reinforced_at),
        'lineage_id': pattern.lineage_id,
        'version': pattern.version,
        'supersedes_id': pattern.supersedes_id,
        'superseded_by_id': pattern.superseded_by_id,
    }


def _pattern_document(pattern: Pattern) -> Dict[str, Any]:
    doc = {k: v for k, v in _pattern_to_properties(pattern).items() if v is not None and k != 'embedding'}
    if pattern.embedding:
        doc['embedding'] = list(pattern.embedding)
    return doc


def _event_from_properties(props: Dict[str, Any]) -> Event:
    return Event(id=props['id'],
                 user_id=props['user_id'],
                 content=props['content'],
                 occurred_at=from_epoch_seconds(props['occurred_at']),
                 category=props.get('category'))


def _interpretation_from_document(doc: Dict[str, Any]) -> Interpretation:
    return Interpretation(id=doc['id'],
                          event_id=doc['event_id'],
                          user_id=doc['user_id'],
                          content=doc.get('content', ''),
                          embedding=doc.get('embedding'),
                          created_at=from_epoch_seconds(doc['created_at']))


def _insight_from_document(doc: Dict[str, Any]) -> Insight:
    return Insight(id=doc['id'],
                   user_id=doc['user_id'],
                   statement=doc.get('statement', ''),
                   explanation=doc.get('explanation', ''),
                   confidence=InsightConfidence(doc['confidence']),
                   status=InsightStatus(doc['status']),
                   embedding=doc.get('embedding'),
                   first_detected_at=from_epoch_seconds(doc['first_detected_at']),
                   last_reinforced_at=from_epoch_seconds(doc['last_reinforced_at']),
                   category=doc.get('category'))


def _summary_from_document(doc: Dict[str, Any]) -> PriorSummary:
    return PriorSummary(id=doc['id'],
                        user_id=doc['user_id'],
                        summary_type=SummaryType(doc['summary_type']),
                        period_key=doc.get('period_key', ''),
                        period_start=from_epoch_seconds(doc['period_start']),
                        period_end=from_epoch_seconds(doc['period_end']),
                        summary=doc.get('summary', ''),
                        embedding=doc.get('embedding'))


def _range(field: str, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
    bounds = {}
    if start is not None:
        bounds['gte'] = to_epoch_seconds(start)
    if end is not None:
        bounds['lt'] = to_epoch_seconds(end)
    return {'range': {field: bounds}}


class _GraphPatternTransaction(PatternTransaction):
    """Pattern unit of work bound to one Gremlin session transaction."""

    def __init__(self, gtx):
        self.gtx = gtx
        self.written: List[str] = []

    def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        props = NeptuneClient.read_pattern(self.gtx, pattern_id)
        return _pattern_from_properties(props) if props else None

    def get_active_head(self, lineage_id: str) -> Optional[Pattern]:
        props = NeptuneClient.read_active_head(self.gtx, lineage_id)
        return _pattern_from_properties(props) if props else None

    def get_linked_event_ids(self, pattern_id: str) -> Set[str]:
        return set(NeptuneClient.read_linked_event_ids(self.gtx, pattern_id))

    def mark_superseded(self, pattern_id: str, superseded_by_id: str) -> None:
        NeptuneClient.write_superseded(self.gtx, pattern_id, superseded_by_id)
        self.written.append(pattern_id)

    def insert_pattern(self, pattern: Pattern) -> None:
        if pattern.is_active and NeptuneClient.read_active_head(self.gtx, pattern.lineage_id) is not None:
            raise StoreError(f'Lineage {pattern.lineage_id} already has an ACTIVE version')
        NeptuneClient.write_pattern(self.gtx, _pattern_to_properties(pattern))
        if pattern.supersedes_id:
            NeptuneClient.write_supersedes_edge(self.gtx, pattern.id, pattern.supersedes_id)
        self.written.append(pattern.id)

    def link_events(self, pattern_id: str, event_ids: Iterable[str]) -> None:
        NeptuneClient.write_supported_by_edges(self.gtx, pattern_id, event_ids)


class GraphVectorStore(MemoryStore):
    """Memory store backed by Amazon Neptune and Amazon OpenSearch Serverless."""

    def __init__(self, neptune: NeptuneClient, opensearch: OpenSearchClient):
        self.neptune = neptune
        self.opensearch = opensearch

    @classmethod
    def from_config(cls, app_config: Optional[AppConfig] = None) -> 'GraphVectorStore':
        app_config = app_config or default_config
        opensearch = OpenSearchClient(app_config.opensearch)
        opensearch.create_all_indexes()
        return cls(NeptuneClient(app_config.neptune), opensearch)

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (NeptuneError, OpenSearchError) as e:
            logger.error(f'Store operation {operation} failed: {e}')
            raise StoreError(f'{operation} failed: {e}') from e

    # Ingestion

    def add_event(self, event: Event) -> None:
        self._call('add_event', self.neptune.add_event_vertex, event.id, event.user_id, event.content,
                   to_epoch_seconds(event.occurred_at), event.category)

    def add_interpretation(self, interpretation: Interpretation) -> None:
        event = self.get_event(interpretation.event_id)
        doc = {
            'id': interpretation.id,
            'event_id': interpretation.event_id,
            'user_id': interpretation.user_id,
            'content': interpretation.content,
            'created_at': to_epoch_seconds(interpretation.created_at),
        }
        if event is not None:
            doc['event_occurred_at'] = to_epoch_seconds(event.occurred_at)
        if interpretation.embedding:
            doc['embedding'] = list(interpretation.embedding)
        self._call('add_interpretation', self.opensearch.index_document, 'interpretation', doc)

    def add_insight(self, insight: Insight) -> None:
        doc = {
            'id': insight.id,
            'user_id': insight.user_id,
            'statement': insight.statement,
            'explanation': insight.explanation,
            'confidence': insight.confidence.value,
            'status': insight.status.value,
            'first_detected_at': to_epoch_seconds(insight.first_detected_at),
            'last_reinforced_at': to_epoch_seconds(insight.last_reinforced_at),
        }
        if insight.category:
            doc['category'] = insight.category
        if insight.embedding:
            doc['embedding'] = list(insight.embedding)
        self._call('add_insight', self.opensearch.index_document, 'insight', doc)

    def add_summary(self, summary: PriorSummary) -> None:
        doc = {
            'id': summary.id,
            'user_id': summary.user_id,
            'summary_type': summary.summary_type.value,
            'period_key': summary.period_key,
            'period_start': to_epoch_seconds(summary.period_start),
            'period_end': to_epoch_seconds(summary.period_end),
            'summary': summary.summary,
        }
        if summary.embedding:
            doc['embedding'] = list(summary.embedding)
        self._call('add_summary', self.opensearch.index_document, 'summary', doc)

    # Point reads

    def get_event(self, event_id: str) -> Optional[Event]:
        props = self._call('get_event', self.neptune.get_event_vertex, event_id)
        return _event_from_properties(props) if props else None

    def get_interpretation_for_event(self, event_id: str) -> Optional[Interpretation]:
        event = self.get_event(event_id)
        if event is None:
            return None
        hits = self._call('get_interpretation_for_event',
                          self.opensearch.filter_search,
                          'interpretation',
                          event.user_id,
                          filters=[{
                              'term': {
                                  'event_id': event_id
                              }
                          }],
                          size=1)
        return _interpretation_from_document(hits[0]['document']) if hits else None

    def get_interpretations_for_events(self, event_ids: Sequence[str]) -> List[Interpretation]:
        if not event_ids:
            return []
        first = self.get_event(event_ids[0])
        if first is None:
            return []
        hits = self._call('get_interpretations_for_events',
                          self.opensearch.filter_search,
                          'interpretation',
                          first.user_id,
                          filters=[{
                              'terms': {
                                  'event_id': list(event_ids)
                              }
                          }, {
                              'exists': {
                                  'field': 'embedding'
                              }
                          }])
        return [_interpretation_from_document(hit['document']) for hit in hits]

    def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        props = self._call('get_pattern', self.neptune.get_pattern_vertex, pattern_id)
        return _pattern_from_properties(props) if props else None

    def get_linked_event_ids(self, pattern_id: str) -> Set[str]:
        return set(self._call('get_linked_event_ids', self.neptune.get_linked_event_ids, pattern_id))

    def get_lineage(self, lineage_id: str) -> List[Pattern]:
        rows = self._call('get_lineage', self.neptune.list_pattern_vertices, lineage_id=lineage_id)
        return sorted((_pattern_from_properties(row) for row in rows), key=lambda p: p.version)

    # Listings

    def list_events(self,
                    user_id: str,
                    start: Optional[datetime] = None,
                    end: Optional[datetime] = None,
                    category: Optional[str] = None,
                    exclude_ids: Sequence[str] = (),
                    limit: Optional[int] = None) -> List[Event]:
        rows = self._call('list_events',
                          self.neptune.list_event_vertices,
                          user_id,
                          start=to_epoch_seconds(start) if start is not None else None,
                          end=to_epoch_seconds(end) if end is not None else None,
                          category=category,
                          exclude_ids=exclude_ids,
                          limit=limit)
        return [_event_from_properties(row) for row in rows]

    def list_interpretations(self,
                             user_id: str,
                             since: Optional[datetime] = None,
                             until: Optional[datetime] = None,
                             limit: Optional[int] = None) -> List[Interpretation]:
        filters = [{'exists': {'field': 'embedding'}}]
        if since is not None or until is not None:
            filters.append(_range('created_at', since, until))
        hits = self._call('list_interpretations',
                          self.opensearch.filter_search,
                          'interpretation',
                          user_id,
                          filters=filters,
                          sort_field='created_at',
                          size=limit)
        return [_interpretation_from_document(hit['document']) for hit in hits]

    def list_window_embeddings(self, user_id: str, start: datetime, end: datetime) -> List[List[float]]:
        hits = self._call('list_window_embeddings',
                          self.opensearch.filter_search,
                          'interpretation',
                          user_id,
                          filters=[{
                              'exists': {
                                  'field': 'embedding'
                              }
                          }, _range('event_occurred_at', start, end)])
        return [hit['document']['embedding'] for hit in hits]

    def list_active_patterns(self, user_id: str) -> List[Pattern]:
        rows = self._call('list_active_patterns', self.neptune.list_pattern_vertices, user_id=user_id, status='ACTIVE')
        return [p for p in (_pattern_from_properties(row) for row in rows) if p.embedding]

    def list_patterns_in_window(self, user_id: str, start: datetime, end: datetime, limit: int) -> List[Pattern]:
        rows = self._call('list_patterns_in_window', self.neptune.list_pattern_vertices_in_window, user_id,
                          to_epoch_seconds(start), to_epoch_seconds(end))
        newest_by_lineage: Dict[str, Pattern] = {}
        for pattern in (_pattern_from_properties(row) for row in rows):
            current = newest_by_lineage.get(pattern.lineage_id)
            if current is None or pattern.version > current.version:
                newest_by_lineage[pattern.lineage_id] = pattern
        patterns = sorted(newest_by_lineage.values(), key=lambda p: p.last_reinforced_at, reverse=True)
        return patterns[:limit]

    def list_insights_in_window(self, user_id: str, start: datetime, end: datetime, limit: int) -> List[Insight]:
        hits = self._call('list_insights_in_window',
                          self.opensearch.filter_search,
                          'insight',
                          user_id,
                          must_not=[{
                              'term': {
                                  'status': InsightStatus.SUPERSEDED.value
                              }
                          }],
                          should=[_range('first_detected_at', start, end),
                                  _range('last_reinforced_at', start, end)],
                          sort_field='last_reinforced_at',
                          size=limit)
        return [_insight_from_document(hit['document']) for hit in hits]

    def list_summaries_before(self, user_id: str, summary_type: SummaryType, before: datetime,
                              limit: int) -> List[PriorSummary]:
        hits = self._call('list_summaries_before',
                          self.opensearch.filter_search,
                          'summary',
                          user_id,
                          filters=[{
                              'term': {
                                  'summary_type': summary_type.value
                              }
                          }, _range('period_end', end=before)],
                          sort_field='period_end',
                          size=limit)
        return [_summary_from_document(hit['document']) for hit in hits]

    # Vector queries

    def _vector_query(self, operation: str, kind: str, user_id: str, vector: Sequence[float], limit: int,
                      min_similarity: float, **kwargs) -> List[Tuple[Dict[str, Any], float]]:
        hits = self._call(operation,
                          self.opensearch.vector_search,
                          kind,
                          list(vector),
                          user_id,
                          top_k=max(limit * KNN_OVERSAMPLE, limit),
                          **kwargs)
        scored = []
        for hit in hits:
            embedding = hit['document'].get('embedding')
            if not embedding:
                continue
            similarity = cosine_similarity(vector, embedding)
            if similarity >= min_similarity:
                scored.append((hit['document'], similarity))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    def search_patterns(self, user_id: str, vector: Sequence[float], limit: int,
                        min_similarity: float) -> List[Tuple[Pattern, float]]:
        matches = self._vector_query('search_patterns',
                                     'pattern',
                                     user_id,
                                     vector,
                                     limit,
                                     min_similarity,
                                     filters=[{
                                         'term': {
                                             'status': PatternStatus.ACTIVE.value
                                         }
                                     }])
        results = []
        for doc, similarity in matches:
            pattern = self.get_pattern(doc['id'])
            if pattern is not None and pattern.is_active:
                results.append((pattern, similarity))
            else:
                logger.debug(f'Pattern mirror entry {doc["id"]} is stale; skipped')
        return results

    def search_insights(self, user_id: str, vector: Sequence[float], limit: int,
                        min_similarity: float) -> List[Tuple[Insight, float]]:
        matches = self._vector_query('search_insights',
                                     'insight',
                                     user_id,
                                     vector,
                                     limit,
                                     min_similarity,
                                     must_not=[{
                                         'term': {
                                             'status': InsightStatus.SUPERSEDED.value
                                         }
                                     }])
        return [(_insight_from_document(doc), similarity) for doc, similarity in matches]

    def search_summaries(self, user_id: str, summary_type: SummaryType, before: datetime, vector: Sequence[float],
                         limit: int, min_similarity: float) -> List[Tuple[PriorSummary, float]]:
        matches = self._vector_query('search_summaries',
                                     'summary',
                                     user_id,
                                     vector,
                                     limit,
                                     min_similarity,
                                     filters=[{
                                         'term': {
                                             'summary_type': summary_type.value
                                         }
                                     }, _range('period_end', end=before)])
        return [(_summary_from_document(doc), similarity) for doc, similarity in matches]

    # Atomic pattern mutations

    @contextmanager
    def transaction(self) -> Iterator[PatternTransaction]:
        tx, gtx = self._call('transaction', self.neptune.begin_transaction)
        unit = _GraphPatternTransaction(gtx)
        try:
            yield unit
            tx.commit()
        except Exception as e:
            try:
                tx.rollback()
            except Exception as rollback_error:
                logger.error(f'Neptune rollback failed: {rollback_error}')
            logger.error(f'Pattern transaction rolled back: {e}')
            if isinstance(e, StoreError):
                raise
            raise StoreError(f'Pattern transaction failed: {e}') from e

        self._sync_pattern_mirror(unit.written)

    def _sync_pattern_mirror(self, pattern_ids: Iterable[str]) -> None:
        for pattern_id in dict.fromkeys(pattern_ids):
            try:
                pattern = self.get_pattern(pattern_id)
                if pattern is not None:
                    self.opensearch.index_document('pattern', _pattern_document(pattern))
            except (StoreError, OpenSearchError) as e:
                # The graph is already committed; reindex_patterns() repairs the mirror
                logger.warning(f'Pattern mirror sync failed for {pattern_id}: {e}')

    def reindex_patterns(self, user_id: str) -> int:
        """
        Rebuild the pattern mirror of one user from Neptune.

        Args:
            user_id: Owner of the patterns

        Returns:
            Number of pattern versions written to the mirror
        """
        rows = self._call('reindex_patterns', self.neptune.list_pattern_vertices, user_id=user_id)
        for row in rows:
            self._call('reindex_patterns', self.opensearch.index_document, 'pattern',
                       _pattern_document(_pattern_from_properties(row)))
        logger.info(f'Reindexed {len(rows)} pattern versions for user {user_id}')
        return len(rows)


def store_from_config(app_config: Optional[AppConfig] = None) -> MemoryStore:
    """
    Build the storage backend selected by ``store_backend``.

    Args:
        app_config: AppConfig instance, uses default if None

    Returns:
        A MemoryStore implementation

    Raises:
        StoreError: If the backend name is unknown or the backend cannot be reached
    """
    app_config = app_config or default_config
    backend = app_config.store_backend.lower()

    if backend == 'memory':
        logger.info('Using in-memory pattern store')
        return InMemoryStore()
    if backend == 'graph':
        try:
            return GraphVectorStore.from_config(app_config)
        except (NeptuneError, OpenSearchError) as e:
            raise StoreError(f'Cannot initialize graph store: {e}') from e

    raise StoreError(f'Unknown store backend: {app_config.store_backend}')
