"""
Entry pipeline: raw text in, structured record and derived stores out.

A run moves through intake, dedup check, raw persistence, extraction (or
the fast path for trivial input), entity persistence and fan-out. Only the
raw and entity writes and the extraction itself can fail a run. Every
fan-out step is attempted independently and its outcome is recorded in
the result's diagnostics.
"""

import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models.core import ENTRY_SOURCES, BackgroundResult, ExtractedEntity, ProcessResult, RawEntry, StepResult
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, PipelineConfig
from ..utils.document_store import DocumentConflictError, DocumentStore, DocumentStoreError
from ..utils.logging_config import get_logger, preview
from ..utils.memory_store import InMemoryDocumentStore
from ..utils.opensearch_client import OpenSearchClient
from ..utils.timestamp_utils import local_today, time_of_day, utc_now
from .beliefs import BeliefStore
from .embedding_store import EmbeddingStore
from .extraction_client import ExtractionClient, ExtractionError, ExtractionTransportError
from .life_events import LifeEventStore
from .people_graph import PeopleGraphUpdater
from .repositories import (BeliefRepository, EmbeddingRepository, EntityRepository, LifeEventRepository,
                           PersonaSummaryRepository, PersonRepository, ProcessingLockRepository, RawEntryRepository,
                           SideRecordRepository, text_hash)
from .side_records import SideRecordStore
from .validators import default_extraction, normalize_extraction

logger = get_logger(__name__)

# What the user sees. Internal error text only goes to the log.
EMPTY_TEXT_MESSAGE = 'No text provided.'
SAVE_FAILED_MESSAGE = 'Could not save your entry. Please try again.'
ANALYSIS_FAILED_MESSAGE = 'Could not analyze your entry. Please try again.'
BACKGROUND_FAILED_MESSAGE = 'Background processing failed.'

# Seconds between checks while an identical entry is being processed
LOCK_POLL_INTERVAL = 0.1


class EntryPipelineError(Exception):
    """Raised for failures that abort an entry-processing run."""
    pass


class EntryPipeline:
    """Orchestrates entry processing over injected stores and clients."""

    def __init__(self,
                 extraction_client: ExtractionClient,
                 embedding_store: EmbeddingStore,
                 people: PeopleGraphUpdater,
                 beliefs: BeliefStore,
                 life_events: LifeEventStore,
                 side_records: SideRecordStore,
                 raw_entries: RawEntryRepository,
                 entities: EntityRepository,
                 persona_summary: PersonaSummaryRepository,
                 locks: ProcessingLockRepository,
                 config: PipelineConfig):
        self.extraction_client = extraction_client
        self.embedding_store = embedding_store
        self.people = people
        self.beliefs = beliefs
        self.life_events = life_events
        self.side_records = side_records
        self.raw_entries = raw_entries
        self.entities = entities
        self.persona_summary = persona_summary
        self.locks = locks
        self.config = config
        workers = max(2, config.fanout_workers)
        # Separate pools: a timed-out model call keeps its thread until the
        # Bedrock read timeout, and must not hold up other entries' fan-out
        self._extraction_executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='innerself-extract')
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='innerself-fanout')

        logger.info('Initialized EntryPipeline')

    def close(self) -> None:
        self._extraction_executor.shutdown(wait=True)
        self._executor.shutdown(wait=True)

    def __enter__(self) -> 'EntryPipeline':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---- helpers ----

    @staticmethod
    def _attempt(entry_id: str, step: str, fn: Callable[..., Any], *args) -> Tuple[StepResult, Any]:
        """Run one recoverable step, turning any failure into a StepResult."""
        try:
            value = fn(*args)
        except Exception as e:
            logger.error(f'[{entry_id}] step {step} failed: {e}')
            return StepResult(step=step, ok=False, error=str(e)), None
        return StepResult(step=step, ok=True), value

    def _with_timeout(self, fn: Callable[..., Dict[str, Any]], *args) -> Dict[str, Any]:
        future = self._extraction_executor.submit(fn, *args)
        try:
            return future.result(timeout=self.config.extraction_timeout)
        except FutureTimeoutError:
            raise ExtractionTransportError(f'Extraction timed out after {self.config.extraction_timeout}s')

    def _assemble_context(self, raw_text: str) -> Tuple[str, str]:
        """Recent entries plus similar past entries, and the persona summary."""
        lines = [
            f"[{e.get('category')}] {e.get('title')}: {e.get('content')} (mood: {e.get('mood_score')}/10)"
            for e in self.entities.recent(self.config.recent_entries)
        ]
        similar = self.embedding_store.search_similar(raw_text, self.config.similar_entries)
        if similar:
            lines.append('')
            lines.append('RELATED PAST ENTRIES:')
            lines.extend(f"[Relevance: {r['score'] * 100:.0f}%] {r['content_text']}" for r in similar)
        return '\n'.join(lines).strip(), self.persona_summary.current_profile()

    def _persist_raw(self, raw_text: str, source: str, audio_url: Optional[str], audio_duration_sec: Optional[float],
                     existing_entry_id: Optional[str]) -> RawEntry:
        created_at = utc_now()
        if existing_entry_id:
            previous = self.raw_entries.get(existing_entry_id)
            if previous is not None:
                created_at = previous.created_at
            # Re-processing is a full replace: the old analysis goes first
            self.entities.delete_for_entry(existing_entry_id)
            self.raw_entries.delete(existing_entry_id)

        entry = RawEntry(id=existing_entry_id or str(uuid.uuid4()),
                         created_at=created_at,
                         raw_text=raw_text,
                         source=source,
                         text_hash=text_hash(raw_text),
                         audio_url=audio_url,
                         audio_duration_sec=audio_duration_sec,
                         input_metadata={
                             'entry_length_chars': len(raw_text),
                             'time_of_day': time_of_day(),
                         })
        self.raw_entries.insert(entry)
        return entry

    def _fan_out(self, entry_id: str, extraction: ExtractedEntity) -> List[StepResult]:
        steps = [('embedding', self.embedding_store.store_embedding, (entry_id, f'{extraction.title}. {extraction.content}', {
            'category': extraction.category,
            'mood': extraction.mood_score,
            'date': local_today(),
            'people': [p.name for p in extraction.people_mentioned],
            'persona': extraction.identity_persona,
        }))]
        if extraction.people_mentioned:
            steps.append(('people', self.people.update_people_map, (extraction.people_mentioned, )))
        if extraction.beliefs_revealed:
            steps.append(('beliefs', self.beliefs.update_belief_system, (extraction.beliefs_revealed, entry_id)))

        futures = [self._executor.submit(self._attempt, entry_id, step, fn, *args) for step, fn, args in steps]
        return [future.result()[0] for future in futures]

    # ---- entry points ----

    def process_entry(self,
                      raw_text: str,
                      source: str = 'text',
                      audio_url: Optional[str] = None,
                      audio_duration_sec: Optional[float] = None,
                      existing_entry_id: Optional[str] = None) -> ProcessResult:
        """Process one journal entry end to end.

        Identical text is processed once. A second submission that arrives
        while the first is still running waits for it and then returns its
        result as a duplicate.

        Args:
            raw_text: The entry as submitted
            source: 'text' or 'voice'
            audio_url: Recording the text was transcribed from, if any
            audio_duration_sec: Length of that recording
            existing_entry_id: Re-process this entry instead of creating one

        Returns:
            ProcessResult; success means the raw entry and its extraction
            were both persisted
        """
        if not raw_text or not raw_text.strip():
            return ProcessResult(entry_id=existing_entry_id or '', extraction=None, success=False, error=EMPTY_TEXT_MESSAGE)

        if source not in ENTRY_SOURCES:
            logger.warning(f'Unknown entry source "{source}", treating as text')
            source = 'text'

        logger.info(f'Processing entry: "{preview(raw_text)}" | source: {source}')

        if existing_entry_id:
            return self._run(raw_text, source, audio_url, audio_duration_sec, existing_entry_id)

        key = text_hash(raw_text)
        owner = str(uuid.uuid4())
        try:
            duplicate, existing_entry_id = self._check_duplicate(raw_text)
            if duplicate is not None:
                return duplicate
            self._acquire_lock(key, owner)
        except DocumentStoreError as e:
            logger.error(f'Dedup lookup failed: {e}')
            return ProcessResult(entry_id='', extraction=None, success=False, error=SAVE_FAILED_MESSAGE)

        try:
            # The run that held the lock may have finished this text meanwhile
            try:
                duplicate, existing_entry_id = self._check_duplicate(raw_text)
            except DocumentStoreError as e:
                logger.error(f'Dedup lookup failed: {e}')
                return ProcessResult(entry_id='', extraction=None, success=False, error=SAVE_FAILED_MESSAGE)
            if duplicate is not None:
                return duplicate
            return self._run(raw_text, source, audio_url, audio_duration_sec, existing_entry_id)
        finally:
            self._release_lock(key, owner)

    def _check_duplicate(self, raw_text: str) -> Tuple[Optional[ProcessResult], Optional[str]]:
        """Result for already-processed text, or the id of an unanalyzed entry to finish."""
        existing = self.raw_entries.find_live_by_text(raw_text)
        if existing is None:
            return None, None
        extraction = self.entities.get_for_entry(existing.id)
        if extraction is not None:
            logger.info(f'[{existing.id}] Duplicate entry text, nothing to do')
            return ProcessResult(entry_id=existing.id, extraction=extraction, success=True, duplicate=True), None
        # An earlier run never got an analysis saved. Only reached while
        # holding the lock, so that run is no longer in flight.
        logger.info(f'[{existing.id}] Duplicate of an unanalyzed entry, re-processing it')
        return None, existing.id

    def _acquire_lock(self, key: str, owner: str) -> None:
        waited = False
        while not self.locks.acquire(key, owner, self.config.lock_stale_after):
            if not waited:
                logger.info('Identical entry is already being processed, waiting for it')
                waited = True
            time.sleep(LOCK_POLL_INTERVAL)

    def _release_lock(self, key: str, owner: str) -> None:
        try:
            self.locks.release(key, owner)
        except DocumentStoreError as e:
            logger.warning(f'Could not release processing lock, it expires after {self.config.lock_stale_after}s: {e}')

    def _stored_extraction(self, entry_id: str) -> Optional[ExtractedEntity]:
        try:
            return self.entities.get_for_entry(entry_id)
        except DocumentStoreError as e:
            logger.error(f'[{entry_id}] Could not read back stored extraction: {e}')
            return None

    def _run(self, raw_text: str, source: str, audio_url: Optional[str], audio_duration_sec: Optional[float],
             existing_entry_id: Optional[str]) -> ProcessResult:
        # Persist raw
        try:
            entry = self._persist_raw(raw_text, source, audio_url, audio_duration_sec, existing_entry_id)
        except DocumentStoreError as e:
            logger.error(f'[{existing_entry_id or "new"}] Raw entry save failed: {e}')
            return ProcessResult(entry_id=existing_entry_id or '', extraction=None, success=False, error=SAVE_FAILED_MESSAGE)

        entry_id = entry.id
        diagnostics: List[StepResult] = []
        if existing_entry_id:
            # The fan-out writes a fresh vector; the old one must not outlive a failed write
            diagnostics.append(self._attempt(entry_id, 'embedding_cleanup', self.embedding_store.delete_embedding,
                                             entry_id)[0])

        # Fast path or extraction
        if len(raw_text.strip()) < self.config.min_text_length:
            logger.info(f'[{entry_id}] Short input, skipping extraction')
            extraction = default_extraction(raw_text)
        else:
            context_result, context = self._attempt(entry_id, 'context', self._assemble_context, raw_text)
            diagnostics.append(context_result)
            recent_context, persona_summary = context or ('', '')

            try:
                raw_extraction = self._with_timeout(self.extraction_client.extract, raw_text, recent_context,
                                                    persona_summary)
            except ExtractionError as e:
                logger.error(f'[{entry_id}] Extraction failed: {e}')
                return ProcessResult(entry_id=entry_id,
                                     extraction=None,
                                     success=False,
                                     error=ANALYSIS_FAILED_MESSAGE,
                                     diagnostics=diagnostics)
            extraction = normalize_extraction(raw_extraction, raw_text, self.config.min_event_year,
                                              self.config.max_future_years)

        # Persist entity
        try:
            self.entities.insert(entry_id, extraction, utc_now())
        except DocumentStoreError as e:
            stored = self._stored_extraction(entry_id) if isinstance(e, DocumentConflictError) else None
            if stored is not None:
                logger.info(f'[{entry_id}] Extraction was already saved by a concurrent run')
                return ProcessResult(entry_id=entry_id,
                                     extraction=stored,
                                     success=True,
                                     duplicate=True,
                                     diagnostics=diagnostics)
            logger.error(f'[{entry_id}] Extraction save failed: {e}')
            return ProcessResult(entry_id=entry_id,
                                 extraction=None,
                                 success=False,
                                 error=SAVE_FAILED_MESSAGE,
                                 diagnostics=diagnostics)

        diagnostics.extend(self._fan_out(entry_id, extraction))

        failed = [d.step for d in diagnostics if not d.ok]
        if failed:
            logger.warning(f'[{entry_id}] Processed with failed side steps: {", ".join(failed)}')
        else:
            logger.info(f'[{entry_id}] Processed: "{extraction.title}" ({extraction.category})')

        return ProcessResult(entry_id=entry_id, extraction=extraction, success=True, diagnostics=diagnostics)

    def delete_entry(self, entry_id: str) -> bool:
        """Soft-delete an entry and drop its vector.

        The raw text is kept with deleted_at set. Resubmitting the same text
        afterwards creates a new entry.

        Returns:
            False if no such entry exists
        """
        if not self.raw_entries.tombstone(entry_id, utc_now()):
            return False
        self.embedding_store.delete_embedding(entry_id)
        logger.info(f'[{entry_id}] Entry deleted')
        return True

    def process_background_features(self, entry_id: str, raw_text: str) -> BackgroundResult:
        """Run the slower extraction and store what it finds.

        Never retried; any failure comes back as success=False.
        """
        if not entry_id or not raw_text or not raw_text.strip():
            return BackgroundResult(success=False, error='Missing entryId or text')

        try:
            features = self._with_timeout(self.extraction_client.extract_background_features, raw_text)

            events = list(features.get('life_events') or [])
            if features.get('life_event_detected'):
                events.append(features['life_event_detected'])

            steps = [
                ('life_events', lambda: [self.life_events.store_life_event(e, entry_id) for e in events]),
                ('health_metrics', lambda: self.side_records.store_health_metrics(features.get('health_metrics'), entry_id)),
                ('insights', lambda: self.side_records.store_insights(features.get('insights'), entry_id)),
            ]
            if features.get('dream'):
                steps.append(('dream', lambda: self.side_records.store_dream(features['dream'], entry_id)))
            if features.get('courage'):
                steps.append(('courage', lambda: self.side_records.store_courage(features['courage'], entry_id)))

            diagnostics = [self._attempt(entry_id, step, fn)[0] for step, fn in steps]

        except Exception as e:
            logger.error(f'[{entry_id}] Background processing failed: {e}')
            return BackgroundResult(success=False, error=BACKGROUND_FAILED_MESSAGE)

        logger.info(f'[{entry_id}] Background features processed')
        return BackgroundResult(success=True, diagnostics=diagnostics)


def build_store(app_config: AppConfig) -> DocumentStore:
    """Document store selected by STORE_BACKEND."""
    backend = app_config.pipeline.store_backend.lower()
    if backend == 'memory':
        return InMemoryDocumentStore()
    if backend != 'opensearch':
        raise EntryPipelineError(f'Unknown store backend: {backend}')
    store = OpenSearchClient(app_config.opensearch)
    store.create_indexes()
    return store


def build_pipeline(app_config: Optional[AppConfig] = None,
                   store: Optional[DocumentStore] = None,
                   llm: Optional[BedrockLLM] = None,
                   embed: Optional[BedrockEmbed] = None) -> EntryPipeline:
    """Wire a pipeline from configuration. Build it once per process."""
    if app_config is None:
        from ..utils.config import config as default_config
        app_config = default_config

    pipeline_config = app_config.pipeline
    store = store or build_store(app_config)
    llm = llm or BedrockLLM(app_config.bedrock_llm)
    embed = embed or BedrockEmbed(app_config.bedrock_embed)

    return EntryPipeline(extraction_client=ExtractionClient(llm),
                         embedding_store=EmbeddingStore(embed, EmbeddingRepository(store)),
                         people=PeopleGraphUpdater(PersonRepository(store, pipeline_config.upsert_max_attempts)),
                         beliefs=BeliefStore(BeliefRepository(store, pipeline_config.upsert_max_attempts)),
                         life_events=LifeEventStore(LifeEventRepository(store), pipeline_config.min_event_year,
                                                    pipeline_config.max_future_years),
                         side_records=SideRecordStore(SideRecordRepository(store)),
                         raw_entries=RawEntryRepository(store),
                         entities=EntityRepository(store),
                         persona_summary=PersonaSummaryRepository(store),
                         locks=ProcessingLockRepository(store),
                         config=pipeline_config)
