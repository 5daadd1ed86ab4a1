"""
People graph updater: one aggregated record per person across all entries.
"""

import re
from typing import Any, Iterable

from ..models.core import Person, SentimentRecord
from ..utils.document_store import DocumentStoreError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso
from .repositories import PersonRepository
from .validators import validate_person

logger = get_logger(__name__)

SENTIMENT_SCORES = {
    'positive': 8,
    'negative': 2,
    'neutral': 5,
    'mixed': 5,
    'joy': 9,
    'joyful': 9,
    'love': 9,
    'loving': 9,
    'admiration': 9,
    'proud': 8,
    'grateful': 8,
    'gratitude': 8,
    'happy': 8,
    'excited': 8,
    'supportive': 8,
    'warm': 8,
    'respect': 7,
    'trust': 7,
    'hopeful': 7,
    'nostalgic': 6,
    'concerned': 4,
    'worried': 4,
    'ambivalent': 5,
    'sad': 3,
    'frustrated': 3,
    'disappointed': 3,
    'annoyed': 3,
    'hurt': 2,
    'angry': 2,
    'resentful': 2,
    'grief': 3,
    'betrayed': 1,
    'hostile': 1,
}

POSITIVE_WORDS = frozenset([
    'good', 'great', 'happy', 'love', 'kind', 'support', 'supportive', 'proud', 'grateful', 'thankful', 'excited',
    'warm', 'caring', 'close', 'fun', 'helpful', 'trust', 'admire', 'joy', 'calm', 'hopeful', 'positive'
])
NEGATIVE_WORDS = frozenset([
    'bad', 'sad', 'angry', 'hurt', 'upset', 'annoyed', 'frustrated', 'disappointed', 'betrayed', 'tense', 'toxic',
    'distant', 'cold', 'conflict', 'fight', 'jealous', 'afraid', 'fear', 'resent', 'lonely', 'negative', 'stressed'
])

WORD = re.compile(r'[a-z]+')


def sentiment_to_number(label: Any) -> int:
    """Map a sentiment label from the model onto [1, 10].

    Known labels use the lexicon. Anything else is scored by counting
    positive against negative keywords, and a tie or no keyword is neutral.
    """
    if not isinstance(label, str) or not label.strip():
        return 5
    normalized = label.strip().lower()
    if normalized in SENTIMENT_SCORES:
        return SENTIMENT_SCORES[normalized]

    words = WORD.findall(normalized)
    positive = sum(1 for w in words if w in POSITIVE_WORDS)
    negative = sum(1 for w in words if w in NEGATIVE_WORDS)
    if positive > negative:
        return 7
    if negative > positive:
        return 3
    return 5


class PeopleGraphUpdater:
    """Sole writer of people_map."""

    def __init__(self, repository: PersonRepository):
        self.repository = repository

    def _apply_mention(self, mention) -> str:
        now = to_iso()
        record = SentimentRecord(date=now,
                                 sentiment=sentiment_to_number(mention.sentiment),
                                 label=mention.sentiment,
                                 context=mention.context)

        def create() -> Person:
            return Person(id=self.repository.person_id(mention.name),
                          name=mention.name,
                          relationship=mention.relationship or 'unknown',
                          first_mentioned=now,
                          last_mentioned=now,
                          sentiment_history=(record, ))

        def update(existing: Person) -> Person:
            # A blank relationship never overwrites a known one
            return existing.with_mention(record, relationship=mention.relationship or None)

        return self.repository.upsert(mention.name, create, update)

    def update_people_map(self, mentions: Iterable[Any]) -> int:
        """Record every mention. Returns how many were stored.

        A mention that fails validation or storage is logged and skipped;
        the rest of the batch still goes through.
        """
        stored = 0
        for raw in mentions or []:
            try:
                mention = validate_person(raw)
                if mention is None:
                    continue
                outcome = self._apply_mention(mention)
                logger.debug(f'People map {outcome}: {mention.name}')
                stored += 1
            except (DocumentStoreError, ValueError, TypeError, KeyError) as e:
                logger.error(f'Failed to update person {raw!r}: {e}')
        return stored
