"""
Extraction client: turns a journal entry into a structured JSON object.
"""

from typing import Any, Dict, List

from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError, assistant_prefill, user_message
from ..utils.json_utils import StructuredResponseParseError, parse_structured_response
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

EXTRACTION_SYSTEM_PROMPT = """
You analyze a personal journal entry (typed or a voice transcript) and extract its psychological dimensions.
The user never sees this analysis.

Rules:
1. Surface emotion is what is obvious. Deeper emotion is what is underneath.
2. Core need is one of: security, recognition, love, autonomy, competence, belonging.
3. Defense mechanism: intellectualizing, deflecting, minimizing, projecting, humor, or null.
4. Cognitive pattern: catastrophizing, black_white, should_statements, overgeneralization, or null.
5. If something is ambiguous, use null. Do not invent emotions, people or connections.
6. People mentioned: name, inferred relationship, sentiment label, and the context of the mention.
7. Tasks: only clearly actionable items with a verb.

Return ONE JSON object with EVERY field below present. Use null for unknown optional values.
```json
{
  "category": "emotion|task|reflection|goal|memory|idea|gratitude|vent",
  "title": "3-6 word title",
  "content": "the thought, cleaned up, in the user's own voice",
  "mood_score": 1-10,
  "surface_emotion": "string or null",
  "deeper_emotion": "string or null",
  "core_need": "security|recognition|love|autonomy|competence|belonging|null",
  "triggers": ["string"],
  "defense_mechanism": "intellectualizing|deflecting|minimizing|projecting|humor|null",
  "self_talk_tone": "critical|neutral|compassionate",
  "energy_level": 1-10,
  "cognitive_pattern": "catastrophizing|black_white|should_statements|overgeneralization|null",
  "beliefs_revealed": ["string"],
  "avoidance_signal": "string or null",
  "growth_edge": "string or null",
  "identity_persona": "Professional|Son|Builder|Seeker|Achiever|Wounded|Friend",
  "body_signals": ["string"],
  "is_task": true|false,
  "task_status": "pending|null",
  "task_due_date": "YYYY-MM-DD|null",
  "people_mentioned": [{"name": "string", "relationship": "string", "sentiment": "string", "context": "string"}],
  "ai_persona_selected": "mother|father|friend|guru|coach|psychologist|partner|mirror|daughter|brother|manager",
  "ai_response": "2-4 sentence reply in the selected persona's voice",
  "follow_up_question": "string or null"
}
```"""

BACKGROUND_SYSTEM_PROMPT = """
You read a personal journal entry and detect slower-moving facts worth keeping.

Only report what the entry actually states. Leave lists empty and objects null when nothing qualifies.
- life_events: genuinely significant events only (new job, loss, major decision, achievement, relationship change).
  event_date is the date the event happened, "YYYY", "YYYY-MM-DD", or null when the entry does not say.
- health_metrics: measured values with units (weight, blood pressure, heart rate, lab results).
- insights: observations about patterns or behaviours.
- dream: only if the entry describes a dream.
- courage: only if the user describes an act of courage.

Return ONE JSON object with every field present:
```json
{
  "life_events": [{"title": "string", "description": "string", "significance": 1-10, "category": "string",
                   "emotions": ["string"], "people_involved": ["string"], "event_date": "string|null"}],
  "health_metrics": [{"metric_name": "string", "value": "string", "unit": "string|null",
                      "status": "normal|high|low|critical|null", "measured_at": "YYYY-MM-DD|null"}],
  "insights": ["string"],
  "dream": {"dream_text": "string", "dream_type": "normal|nightmare|recurring|lucid", "symbols": ["string"],
            "emotions": ["string"], "themes": ["string"], "waking_connections": "string|null",
            "significance": 1-10} | null,
  "courage": {"description": "string", "courage_type": "boundary|vulnerability|risk|confrontation|honesty|change",
              "significance": 1-10, "people_involved": ["string"], "outcome": "string|null"} | null
}
```"""

STRICT_JSON_INSTRUCTION = """

IMPORTANT: Your previous answer could not be parsed.
Respond with the JSON object ONLY. No markdown, no code fences, no commentary before or after it."""


class ExtractionError(Exception):
    """Base exception for extraction failures."""
    pass


class ExtractionParseError(ExtractionError):
    """The model's answer was not a parseable JSON object, even after the strict retry."""
    pass


class ExtractionTransportError(ExtractionError):
    """The model could not be reached or did not answer in time."""
    pass


def build_user_message(raw_text: str, recent_context: str = '', persona_summary: str = '') -> str:
    """Assemble the variable part of the request."""
    blocks = []
    if persona_summary:
        blocks.append(f'CURRENT PERSONA SUMMARY (who the user is right now):\n{persona_summary}')
    if recent_context:
        blocks.append(f'RECENT ENTRIES (for continuity):\n{recent_context}')
    blocks.append(f'NEW ENTRY TO ANALYZE:\n"{raw_text}"')
    return '\n\n'.join(blocks)


class ExtractionClient:
    """Calls the LLM with a fixed schema contract and recovers malformed JSON.

    The first attempt pre-seeds the assistant turn with an opening code fence
    and stops at the closing one. If that answer cannot be parsed, the whole
    request is sent once more with a stricter instruction and no pre-seeding.
    A second parse failure raises ExtractionParseError. Transport errors are
    never retried.
    """

    def __init__(self, llm: BedrockLLM):
        self.llm = llm
        logger.info('Initialized ExtractionClient')

    def _call(self, system_prompt: str, messages: List[Dict[str, Any]], stop_sequences: List[str]) -> str:
        try:
            response, metrics = self.llm.generate_response(messages=messages,
                                                           system_prompt=system_prompt,
                                                           stop_sequences=stop_sequences)
        except BedrockLLMError as e:
            logger.error(f'LLM transport error during extraction: {e}')
            raise ExtractionTransportError(f'Extraction call failed: {e}')
        if metrics:
            logger.debug(f'Extraction call metrics: {metrics}')
        return response

    def _request_structured(self, system_prompt: str, message: str, label: str) -> Dict[str, Any]:
        first = self._call(system_prompt, [user_message(message), assistant_prefill('```json')], ['```'])
        try:
            return parse_structured_response(first)
        except StructuredResponseParseError as e:
            logger.warning(f'{label} response was not valid JSON ({e}), retrying once with strict instruction')

        second = self._call(system_prompt + STRICT_JSON_INSTRUCTION, [user_message(message)], [])
        try:
            return parse_structured_response(second)
        except StructuredResponseParseError as e:
            logger.error(f'{label} response still not valid JSON after retry: {e}')
            raise ExtractionParseError(f'{label} returned malformed JSON twice: {e}')

    def extract(self, raw_text: str, recent_context: str = '', persona_summary: str = '') -> Dict[str, Any]:
        """Extract the per-entry analysis.

        Args:
            raw_text: The journal entry
            recent_context: Summaries of recent entries
            persona_summary: Current profile of the user

        Returns:
            The raw JSON object; normalization happens in the validators

        Raises:
            ExtractionParseError: If the answer is malformed twice
            ExtractionTransportError: If the model call fails
        """
        message = build_user_message(raw_text, recent_context, persona_summary)
        return self._request_structured(EXTRACTION_SYSTEM_PROMPT, message, 'Extraction')

    def extract_background_features(self, raw_text: str) -> Dict[str, Any]:
        """Extract life events, health metrics, insights, dreams and courage."""
        message = f'ENTRY:\n"{raw_text}"'
        return self._request_structured(BACKGROUND_SYSTEM_PROMPT, message, 'Background extraction')
