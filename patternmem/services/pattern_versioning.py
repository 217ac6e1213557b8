"""
Pattern version management.

Patterns are never edited in place. Reinforcing a pattern supersedes the
current version and inserts its successor in the same transaction, so the
history of a claim and the events that supported each version stay auditable.
"""

import uuid
from typing import Iterable, List, Optional

from ..models.core import Pattern, PatternStatus
from ..storage.base import MemoryStore, StoreError
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .decision_oracle import emerging_pattern_description

logger = get_logger(__name__)


class PatternCommitError(Exception):
    """Custom exception for pattern mutations that could not be committed."""
    pass


def _ordered_union(*groups: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(event_id for group in groups for event_id in group))


class PatternVersionManager:
    """Create, reinforce and trace pattern versions."""

    def __init__(self, store: MemoryStore, embedder: Optional[BedrockEmbed] = None):
        """
        Initialize the version manager.

        Args:
            store: Memory store holding patterns and their event links
            embedder: Client exposing ``embed_document``; a Bedrock client is built if None
        """
        self.store = store
        self.embedder = embedder or BedrockEmbed(config.bedrock_embed)

    def _embed(self, description: str) -> List[float]:
        try:
            return self.embedder.embed_document(description)
        except BedrockEmbedError as e:
            logger.error(f'Failed to embed pattern description: {e}')
            raise PatternCommitError(f'Pattern embedding failed: {e}') from e

    def reinforce(self, old_pattern_id: str, new_description: str, contributing_event_ids: Iterable[str]) -> Pattern:
        """
        Supersede a pattern with a reinforced successor.

        The old row is marked SUPERSEDED and a new ACTIVE row takes its place,
        with the count and version incremented, the lineage and first detection
        carried over, and every event of the old row plus the contributing ones
        linked to it. When the old row was already superseded by a concurrent
        reinforcement, the lineage's current ACTIVE head is reinforced instead.

        Args:
            old_pattern_id: Pattern version chosen for reinforcement
            new_description: Description of the successor
            contributing_event_ids: Events that led to the reinforcement

        Returns:
            The new ACTIVE pattern version

        Raises:
            PatternCommitError: If embedding or the store transaction fails; nothing is applied
        """
        contributing = list(contributing_event_ids)
        embedding = self._embed(new_description)

        try:
            with self.store.transaction() as tx:
                old = tx.get_pattern(old_pattern_id)
                if old is None:
                    raise StoreError(f'Pattern {old_pattern_id} not found')

                if not old.is_active:
                    head = tx.get_active_head(old.lineage_id)
                    if head is None:
                        raise StoreError(f'Lineage {old.lineage_id} has no ACTIVE version')
                    logger.warning(f'Pattern {old.id} was already superseded; reinforcing head {head.id} instead')
                    old = head

                now = utc_now()
                new = Pattern(id=str(uuid.uuid4()),
                              user_id=old.user_id,
                              description=new_description,
                              embedding=embedding,
                              status=PatternStatus.ACTIVE,
                              reinforcement_count=old.reinforcement_count + 1,
                              first_detected_at=old.first_detected_at,
                              last_reinforced_at=now,
                              lineage_id=old.lineage_id,
                              version=old.version + 1,
                              supersedes_id=old.id)

                linked = sorted(tx.get_linked_event_ids(old.id))
                tx.mark_superseded(old.id, new.id)
                tx.insert_pattern(new)
                tx.link_events(new.id, _ordered_union(linked, contributing))

        except StoreError as e:
            logger.error(f'Failed to reinforce pattern {old_pattern_id}: {e}')
            raise PatternCommitError(f'Pattern reinforcement failed: {e}') from e

        logger.info(f'Reinforced pattern {new.supersedes_id} -> {new.id} '
                    f'(lineage {new.lineage_id}, version {new.version}, count {new.reinforcement_count})')
        return new

    def create(self, user_id: str, description: str, contributing_event_ids: Iterable[str]) -> Pattern:
        """
        Create the first version of a new pattern.

        Args:
            user_id: Owner of the pattern
            description: Markdown pattern description
            contributing_event_ids: Events linked to the new pattern

        Returns:
            The new ACTIVE pattern

        Raises:
            PatternCommitError: If embedding or the store transaction fails
        """
        contributing = _ordered_union(contributing_event_ids)
        embedding = self._embed(description)

        now = utc_now()
        pattern_id = str(uuid.uuid4())
        pattern = Pattern(id=pattern_id,
                          user_id=user_id,
                          description=description,
                          embedding=embedding,
                          status=PatternStatus.ACTIVE,
                          reinforcement_count=1,
                          first_detected_at=now,
                          last_reinforced_at=now,
                          lineage_id=pattern_id,
                          version=1)

        try:
            with self.store.transaction() as tx:
                tx.insert_pattern(pattern)
                tx.link_events(pattern.id, contributing)
        except StoreError as e:
            logger.error(f'Failed to create pattern for user {user_id}: {e}')
            raise PatternCommitError(f'Pattern creation failed: {e}') from e

        logger.info(f'Created pattern {pattern.id} for user {user_id} with {len(contributing)} events')
        return pattern

    def create_emerging(self, user_id: str, raw_content: str, contributing_event_ids: Iterable[str],
                        reason: str) -> Pattern:
        """Create an emerging pattern that quotes the raw observation."""
        return self.create(user_id, emerging_pattern_description(raw_content, reason), contributing_event_ids)

    def get_lineage(self, pattern_id: str) -> List[Pattern]:
        """
        Every version of the lineage a pattern belongs to, oldest first.

        Args:
            pattern_id: Id of any version in the lineage

        Returns:
            All versions including SUPERSEDED ones; empty if the pattern is unknown
        """
        pattern = self.store.get_pattern(pattern_id)
        if pattern is None:
            logger.debug(f'Pattern {pattern_id} not found; empty lineage')
            return []
        return self.store.get_lineage(pattern.lineage_id)
