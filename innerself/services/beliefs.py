"""
Belief store: recurring self-beliefs and how often they resurface.
"""

from typing import Iterable, Optional

from ..models.core import Belief
from ..utils.document_store import DocumentStoreError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso
from .repositories import BeliefRepository
from .validators import validate_string_array

logger = get_logger(__name__)


class BeliefStore:
    """Sole writer of belief_system."""

    def __init__(self, repository: BeliefRepository):
        self.repository = repository

    def _reinforce(self, text: str, source_entry_id: str, domain: Optional[str]) -> str:
        now = to_iso()

        def create() -> Belief:
            return Belief(id=self.repository.belief_id(text),
                          belief_text=text,
                          domain=domain,
                          first_surfaced=now,
                          last_reinforced=now,
                          reinforcement_count=1,
                          status='active',
                          source_entry_ids=[source_entry_id])

        def update(existing: Belief) -> Belief:
            sources = existing.source_entry_ids
            if source_entry_id not in sources:
                sources = sources + [source_entry_id]
            return Belief(id=existing.id,
                          belief_text=existing.belief_text,
                          domain=existing.domain or domain,
                          first_surfaced=existing.first_surfaced,
                          last_reinforced=now,
                          reinforcement_count=existing.reinforcement_count + 1,
                          status='active',
                          source_entry_ids=sources)

        return self.repository.upsert(text, create, update)

    def update_belief_system(self, beliefs: Iterable[str], source_entry_id: str, domain: Optional[str] = None) -> int:
        """Insert new beliefs and reinforce known ones. Returns how many were written."""
        written = 0
        for text in validate_string_array(list(beliefs or [])):
            try:
                outcome = self._reinforce(text, source_entry_id, domain)
                logger.debug(f'Belief {outcome}: "{text}"')
                written += 1
            except DocumentStoreError as e:
                logger.error(f'Failed to update belief "{text}" from entry {source_entry_id}: {e}')
        return written
