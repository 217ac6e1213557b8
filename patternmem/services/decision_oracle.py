"""
Decision oracle: asks the LLM whether a new observation reinforces one of the
candidate patterns or is something new, and validates what comes back.

Embeddings only nominate candidates; a high similarity does not mean the
candidate is about the same behavior. The oracle never raises: every failure
mode of the model turns into a ``create`` decision for an emerging pattern
that quotes the raw observation.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import (DecisionAction, Event, Interpretation, PatternCandidate, PatternDecision,
                           ScoredInterpretation)
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import config
from ..utils.json_utils import parse_json_object
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

DECISION_SYSTEM_PROMPT = """
You maintain a small set of behavioral patterns about one person. A pattern is a
recurring tendency supported by several observations, written in markdown.

You receive a NEW OBSERVATION (the raw event, exactly as the person logged it),
an interpretation of it written by another model, and up to five existing
patterns that embeddings found to be numerically similar, each with an id and a
similarity score. You may also receive events from the same day, the preceding
48 hours and the same category, and a set of earlier interpretations selected as
evidence.

Decide based on the RAW EVENT. The interpretation is context only and may be
biased toward the person's usual baseline. A high similarity score does not
mean the pattern is about the same behavior.

- "reinforce": the observation is another instance of exactly one existing
  pattern. Give its id in "patternId" and, in "description", the full updated
  pattern text taking the new observation into account.
- "create": no existing pattern is actually about this observation. Write the
  new pattern in "description", grounded in the observation and the evidence.

Return exactly one JSON object:
```json
{
  "action": "reinforce|create",
  "patternId": "id of the reinforced pattern or null",
  "description": "markdown pattern description",
  "reasoning": "one or two sentences"
}
```"""

SYNTHESIS_SYSTEM_PROMPT = """
You write behavioral patterns about one person. You receive a cluster of
interpretations of their past events that were grouped because they are
semantically close. Describe the recurring tendency they share in markdown:
what happens, when it tends to happen, and what seems to trigger it. Only use
what the interpretations support.

Return exactly one JSON object:
```json
{
  "pattern": "markdown pattern description"
}
```"""


def emerging_pattern_description(raw_event_text: str, reason: str) -> str:
    """Minimal pattern description used whenever the oracle cannot be trusted.

    Args:
        raw_event_text: The triggering event's raw content, quoted verbatim
        reason: Short cause recorded in the description

    Returns:
        Markdown description that always contains the raw event text
    """
    return (f'## EMERGING PATTERN\n\n## OBSERVATION\n{raw_event_text}\n\n## INTERPRETATION\n'
            f'Emerging pattern based on recent observation. Created due to {reason}.')


@dataclass(frozen=True)
class DecisionContext:
    """Everything the oracle is shown about one triggering event."""
    user_id: str
    raw_event: Event
    interpretation: Optional[Interpretation]
    candidates: List[PatternCandidate]
    same_day_events: List[Event] = field(default_factory=list)
    preceding_events: List[Event] = field(default_factory=list)
    category_events: List[Event] = field(default_factory=list)
    evidence: List[ScoredInterpretation] = field(default_factory=list)


def _events_payload(events: Sequence[Event]) -> List[Dict[str, Any]]:
    return [{'content': e.content, 'occurredAt': e.occurred_at.isoformat(), 'category': e.category} for e in events]


def build_decision_message(context: DecisionContext) -> str:
    """Serialize a decision context into the oracle's user message.

    The raw event text comes first; the interpretation is only context.
    """
    payload = {
        'rawEvent': context.raw_event.content,
        'interpretation': context.interpretation.content if context.interpretation else None,
        'existingPatterns': [{
            'index': i + 1,
            'id': c.pattern.id,
            'description': c.pattern.description,
            'similarity': f'{c.similarity:.3f}',
        } for i, c in enumerate(context.candidates)],
        'sameDayEvents': _events_payload(context.same_day_events),
        'precedingEvents': _events_payload(context.preceding_events),
        'categoryEvents': _events_payload(context.category_events),
        'evidence': [{
            'content': s.interpretation.content,
            'createdAt': s.interpretation.created_at.isoformat(),
            'similarity': round(s.similarity_score, 3),
            'isFromExistingPattern': s.from_pattern_id is not None,
        } for s in context.evidence],
    }
    return json.dumps(payload, ensure_ascii=False)


class DecisionOracle:
    """LLM arbiter between reinforcing a candidate pattern and creating a new one."""

    def __init__(self, llm: Optional[BedrockLLM] = None):
        """
        Initialize the decision oracle.

        Args:
            llm: LLM client exposing ``complete``; a Bedrock client is built if None
        """
        self.llm = llm or BedrockLLM(config.bedrock_llm)

        logger.info('Initialized DecisionOracle')

    def _complete_json(self, system_prompt: str, user_message: str) -> str:
        # The reply continues an open json fence and stops at the closing one
        return self.llm.complete(system_prompt=system_prompt,
                                 user_message=user_message,
                                 prefill='```json',
                                 stop_sequences=['```']) or ''

    def _fallback(self, context: DecisionContext, reason: str) -> PatternDecision:
        logger.warning(f'Decision oracle fallback for event {context.raw_event.id}: {reason}')
        return PatternDecision(action=DecisionAction.CREATE,
                               description=emerging_pattern_description(context.raw_event.content, reason),
                               reasoning=f'Fallback: {reason}, creating new pattern from observation',
                               is_fallback=True)

    def decide(self, context: DecisionContext) -> PatternDecision:
        """
        Ask the oracle to reinforce or create, and validate the answer.

        Args:
            context: The triggering event, its candidates and surrounding context

        Returns:
            A validated PatternDecision; a fallback ``create`` on any oracle failure
        """
        try:
            response = self._complete_json(DECISION_SYSTEM_PROMPT, build_decision_message(context))
        except Exception as e:
            return self._fallback(context, f'LLM error ({e})')

        if not response.strip():
            return self._fallback(context, 'LLM empty response')

        parsed = parse_json_object(response)
        if parsed is None:
            return self._fallback(context, 'LLM parse error')

        action = parsed.get('action')
        description = parsed.get('description')
        reasoning = parsed.get('reasoning')
        reasoning = reasoning if isinstance(reasoning, str) else ''

        if description is not None and not isinstance(description, str):
            return self._fallback(context, 'invalid description type')

        if action == DecisionAction.REINFORCE.value:
            pattern_id = parsed.get('patternId')
            candidate = next((c for c in context.candidates if c.pattern.id == pattern_id), None)
            if candidate is None:
                return self._fallback(context, f'unknown pattern id {pattern_id!r}')
            if not description or not description.strip():
                description = candidate.pattern.description
            return PatternDecision(action=DecisionAction.REINFORCE,
                                   pattern_id=candidate.pattern.id,
                                   description=description,
                                   reasoning=reasoning)

        if action == DecisionAction.CREATE.value:
            if not description or not description.strip():
                return self._fallback(context, 'missing description')
            return PatternDecision(action=DecisionAction.CREATE, description=description, reasoning=reasoning)

        return self._fallback(context, f'invalid action {action!r}')

    def synthesize_pattern(self, user_id: str, interpretations: Sequence[Interpretation]) -> Optional[str]:
        """
        Synthesize a pattern description from a cluster of interpretations.

        Args:
            user_id: Owner of the interpretations
            interpretations: Cluster members

        Returns:
            Markdown description, or None when the model gives nothing usable
        """
        payload = {
            'mode': 'CREATE',
            'eventCount': len(interpretations),
            'interpretations': [{
                'content': i.content,
                'createdAt': i.created_at.isoformat()
            } for i in interpretations],
        }
        try:
            response = self._complete_json(SYNTHESIS_SYSTEM_PROMPT, json.dumps(payload, ensure_ascii=False))
        except Exception as e:
            logger.warning(f'Pattern synthesis failed for user {user_id}: {e}')
            return None

        parsed = parse_json_object(response)
        pattern = parsed.get('pattern') if parsed else None
        if not isinstance(pattern, str) or not pattern.strip():
            logger.warning(f'Pattern synthesis for user {user_id} returned no usable pattern')
            return None
        return pattern
