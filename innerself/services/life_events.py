"""
Life-event store: deduplicated timeline of significant events.
"""

from typing import Any, Optional

from ..models.core import LifeEvent
from ..utils.document_store import DocumentConflictError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso
from .repositories import LifeEventRepository
from .validators import MAX_FUTURE_YEARS, MIN_SANE_YEAR, validate_life_event

logger = get_logger(__name__)


class LifeEventStore:
    """Sole writer of life_events_timeline.

    Titles are the dedup key, compared case-insensitively. Storing an event
    whose title already exists is a no-op, even if the other fields differ.
    """

    def __init__(self,
                 repository: LifeEventRepository,
                 min_event_year: int = MIN_SANE_YEAR,
                 max_future_years: int = MAX_FUTURE_YEARS):
        self.repository = repository
        self.min_event_year = min_event_year
        self.max_future_years = max_future_years

    def store_life_event(self, event: Any, source_entry_id: str) -> Optional[str]:
        """Validate and insert one event.

        Returns:
            The new event id, or None when the event was rejected or already known
        """
        validated = validate_life_event(event, self.min_event_year, self.max_future_years)
        if validated is None:
            return None

        title = validated['title']
        if self.repository.exists(title):
            logger.info(f'Skipped duplicate life event: "{title}"')
            return None

        life_event = LifeEvent(id=self.repository.event_id(title),
                               title=title,
                               description=validated['description'],
                               significance=validated['significance'],
                               category=validated['category'],
                               emotions=validated['emotions'],
                               people_involved=validated['people_involved'],
                               event_date=validated['event_date'],
                               source_entry_ids=[source_entry_id],
                               created_at=to_iso())
        try:
            self.repository.insert(life_event)
        except DocumentConflictError:
            # A concurrent entry stored the same title first
            logger.info(f'Skipped duplicate life event: "{title}"')
            return None

        logger.info(f'Stored life event "{title}" (date: {life_event.event_date or "unknown"})')
        return life_event.id
