"""
Append-only side records written by the background pipeline.
"""

import uuid
from typing import Any, Iterable, Optional

from ..models.core import CourageEntry, Dream, HealthMetric, Insight
from ..utils.document_store import DocumentConflictError, DocumentStoreError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso
from .repositories import SideRecordRepository
from .validators import validate_courage, validate_dream, validate_health_metric, validate_string_array

logger = get_logger(__name__)


class SideRecordStore:
    """Sole writer of insights, health_metrics, dreams and courage_log."""

    def __init__(self, repository: SideRecordRepository):
        self.repository = repository

    def store_insights(self, insights: Iterable[Any], source_entry_id: str) -> int:
        """Store insights, skipping any whose text is already known."""
        stored = 0
        for text in validate_string_array(list(insights or [])):
            insight = Insight(id=self.repository.insight_id(text),
                              insight_text=text,
                              type='auto_extracted',
                              source_entry_id=source_entry_id,
                              created_at=to_iso())
            try:
                self.repository.insert_insight(insight)
                stored += 1
            except DocumentConflictError:
                logger.debug(f'Skipped duplicate insight: "{text[:60]}"')
            except DocumentStoreError as e:
                logger.error(f'Failed to store insight from entry {source_entry_id}: {e}')
        return stored

    def store_health_metrics(self, metrics: Iterable[Any], source_entry_id: str) -> int:
        """Store metrics, one per (name, measurement date)."""
        stored = 0
        for raw in metrics or []:
            validated = validate_health_metric(raw)
            if validated is None:
                continue
            metric = HealthMetric(id=self.repository.health_metric_id(validated['metric_name'], validated['measured_at']),
                                  source_entry_id=source_entry_id,
                                  created_at=to_iso(),
                                  **validated)
            try:
                self.repository.insert_health_metric(metric)
                stored += 1
            except DocumentConflictError:
                logger.debug(f'Skipped duplicate health metric {metric.metric_name} on {metric.measured_at}')
            except DocumentStoreError as e:
                logger.error(f'Failed to store health metric {metric.metric_name}: {e}')
        return stored

    def store_dream(self, raw: Any, entry_id: str) -> Optional[str]:
        validated = validate_dream(raw)
        if validated is None:
            return None
        dream = Dream(id=str(uuid.uuid4()), entry_id=entry_id, created_at=to_iso(), **validated)
        self.repository.insert_dream(dream)
        logger.info(f'Stored {dream.dream_type} dream from entry {entry_id}')
        return dream.id

    def store_courage(self, raw: Any, entry_id: str) -> Optional[str]:
        validated = validate_courage(raw)
        if validated is None:
            return None
        entry = CourageEntry(id=str(uuid.uuid4()), entry_id=entry_id, created_at=to_iso(), **validated)
        self.repository.insert_courage(entry)
        logger.info(f'Stored courage entry ({entry.courage_type}) from entry {entry_id}')
        return entry.id
