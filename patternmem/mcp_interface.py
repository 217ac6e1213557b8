"""
MCP Interface Layer using fastmcp for agent orchestration.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .models.core import Insight, Pattern, PriorSummary, ScoredMemory, SummaryType
from .services.hybrid_retrieval import HybridRetrievalError, HybridRetrievalService
from .services.pattern_detection import EventNotFoundError, PatternDetectionService
from .services.pattern_versioning import PatternCommitError
from .storage.base import MemoryStore, StoreError
from .storage.graph_store import store_from_config
from .utils.config import config
from .utils.health_check import get_health_status
from .utils.logging_config import get_logger
from .utils.timestamp_utils import ensure_utc

logger = get_logger(__name__)

mcp = FastMCP('Pattern Memory')

_store: Optional[MemoryStore] = None
_detection_service: Optional[PatternDetectionService] = None
_retrieval_service: Optional[HybridRetrievalService] = None


def get_store() -> MemoryStore:
    global _store
    if _store is None:
        _store = store_from_config(config)
    return _store


def get_detection_service() -> PatternDetectionService:
    global _detection_service
    if _detection_service is None:
        _detection_service = PatternDetectionService(get_store(), app_config=config)
    return _detection_service


def get_retrieval_service() -> HybridRetrievalService:
    global _retrieval_service
    if _retrieval_service is None:
        _retrieval_service = HybridRetrievalService(get_store(), config.retrieval)
    return _retrieval_service


def _pattern_payload(pattern: Pattern) -> Dict[str, Any]:
    return {
        'id': pattern.id,
        'description': pattern.description,
        'status': pattern.status.value,
        'version': pattern.version,
        'lineage_id': pattern.lineage_id,
        'reinforcement_count': pattern.reinforcement_count,
        'first_detected_at': pattern.first_detected_at.isoformat(),
        'last_reinforced_at': pattern.last_reinforced_at.isoformat(),
        'supersedes_id': pattern.supersedes_id,
        'superseded_by_id': pattern.superseded_by_id,
    }


def _scored_payload(scored: ScoredMemory) -> Dict[str, Any]:
    item = scored.item
    if isinstance(item, Pattern):
        text = item.description
    elif isinstance(item, Insight):
        text = item.statement
    elif isinstance(item, PriorSummary):
        text = item.summary
    else:
        text = str(item)
    return {
        'id': item.id,
        'text': text,
        'source': scored.source,
        'hybrid_score': round(scored.hybrid_score, 4),
        'recency_score': round(scored.recency_score, 4),
        'similarity_score': None if scored.similarity_score is None else round(scored.similarity_score, 4),
        'bonus_score': scored.bonus_score,
    }


@mcp.tool()
async def process_event(user_id: str, event_id: str) -> Dict[str, Any]:
    """Detect or reinforce a pattern for a newly interpreted event.

    Args:
        user_id: User ID
        event_id: ID of an ingested event

    Returns:
        Outcome (REINFORCED or CREATED), the ACTIVE pattern id and the superseded version id

    Raises:
        Exception: If the event is unknown or the pattern cannot be committed
    """
    try:
        if not user_id or not user_id.strip():
            raise ValueError('User ID is required')

        result = await get_detection_service().process_event(user_id, event_id)
        payload = asdict(result)
        payload['outcome'] = result.outcome.value
        return payload

    except (EventNotFoundError, PatternCommitError) as e:
        logger.error(f'Pattern detection error in MCP process_event: {e}')
        raise Exception(f'Pattern detection failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP process_event: {e}')
        raise Exception(f'Pattern detection failed: {e}')


@mcp.tool()
async def detect_patterns_batch(user_id: str, lookback_days: Optional[int] = None) -> Dict[str, Any]:
    """Run the batch clustering pass over a user's recent interpretations.

    Args:
        user_id: User ID
        lookback_days: Window in days (default from configuration)

    Returns:
        Counters of clusters, created and reinforced patterns, and the pattern ids touched
    """
    try:
        result = await get_detection_service().detect_patterns_batch(user_id, lookback_days)
        return asdict(result)

    except Exception as e:
        logger.error(f'Error in MCP detect_patterns_batch: {e}')
        raise Exception(f'Batch pattern detection failed: {e}')


@mcp.tool()
async def retrieve_window_memory(user_id: str, start: str, end: str, summary_type: str = 'DAILY') -> Dict[str, Any]:
    """Retrieve the patterns, insights and prior summaries relevant to a time window.

    Args:
        user_id: User ID
        start: Window start, ISO 8601 (UTC if no offset)
        end: Window end, ISO 8601 (UTC if no offset)
        summary_type: DAILY, WEEKLY or MONTHLY

    Returns:
        Ranked lists with per-item hybrid score breakdown
    """
    try:
        window_start = ensure_utc(datetime.fromisoformat(start))
        window_end = ensure_utc(datetime.fromisoformat(end))
        if window_end <= window_start:
            raise ValueError('Window end must be after window start')

        memory = await get_retrieval_service().retrieve_window_memory(user_id, window_start, window_end,
                                                                      SummaryType(summary_type.upper()))
        return {
            'window_start': memory.window_start.isoformat(),
            'window_end': memory.window_end.isoformat(),
            'has_window_embedding': memory.window_embedding is not None,
            'patterns': [_scored_payload(s) for s in memory.patterns],
            'insights': [_scored_payload(s) for s in memory.insights],
            'prior_summaries': [_scored_payload(s) for s in memory.prior_summaries],
        }

    except HybridRetrievalError as e:
        logger.error(f'Retrieval error in MCP retrieve_window_memory: {e}')
        raise Exception(f'Window memory retrieval failed: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP retrieve_window_memory: {e}')
        raise Exception(f'Window memory retrieval failed: {e}')


@mcp.tool()
def get_pattern_lineage(pattern_id: str) -> List[Dict[str, Any]]:
    """List every version of the lineage a pattern belongs to, oldest first.

    Args:
        pattern_id: ID of any version of the pattern

    Returns:
        Pattern versions, SUPERSEDED ones included
    """
    try:
        return [_pattern_payload(p) for p in get_detection_service().versions.get_lineage(pattern_id)]

    except StoreError as e:
        logger.error(f'Store error in MCP get_pattern_lineage: {e}')
        raise Exception(f'Pattern lineage lookup failed: {e}')


@mcp.tool()
def health() -> Dict[str, Any]:
    """Report the health of every backing service."""
    return get_health_status()


if __name__ == '__main__':
    mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
