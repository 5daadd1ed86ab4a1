"""
Core data models for the journaling pipeline.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

ENTRY_CATEGORIES = ('emotion', 'task', 'reflection', 'goal', 'memory', 'idea', 'gratitude', 'vent')
SELF_TALK_TONES = ('critical', 'neutral', 'compassionate')
DEFENSE_MECHANISMS = ('intellectualizing', 'deflecting', 'minimizing', 'projecting', 'humor')
COGNITIVE_PATTERNS = ('catastrophizing', 'black_white', 'should_statements', 'overgeneralization')
IDENTITY_PERSONAS = ('Professional', 'Son', 'Builder', 'Seeker', 'Achiever', 'Wounded', 'Friend')
AI_PERSONAS = ('mother', 'father', 'friend', 'guru', 'coach', 'psychologist', 'partner', 'mirror', 'daughter',
               'brother', 'manager')
CORE_NEEDS = ('security', 'recognition', 'love', 'autonomy', 'competence', 'belonging')
TASK_STATUSES = ('pending', 'done', 'cancelled')
ENTRY_SOURCES = ('text', 'voice')
BELIEF_STATUSES = ('active', 'questioned', 'evolved')


@dataclass
class RawEntry:
    """The immutable, verbatim user submission."""
    id: str
    created_at: datetime
    raw_text: str
    source: str  # text | voice
    text_hash: str  # sha256 of raw_text, exact-duplicate key
    audio_url: Optional[str] = None
    audio_duration_sec: Optional[float] = None
    input_metadata: Dict[str, Any] = field(default_factory=dict)
    deleted_at: Optional[datetime] = None


@dataclass
class PersonMention:
    """A person named inside one entry."""
    name: str
    relationship: str
    sentiment: str  # raw label from the model, e.g. "positive" or "betrayed"
    context: str


@dataclass
class ExtractedEntity:
    """Structured analysis of one raw entry.

    Every attribute is always present. Optional ones hold None rather than
    being left out, and scores are integers in [1, 10].
    """
    category: str
    title: str
    content: str
    mood_score: int
    surface_emotion: Optional[str]
    deeper_emotion: Optional[str]
    core_need: Optional[str]
    triggers: List[str]
    defense_mechanism: Optional[str]
    self_talk_tone: Optional[str]
    energy_level: int
    cognitive_pattern: Optional[str]
    beliefs_revealed: List[str]
    avoidance_signal: Optional[str]
    growth_edge: Optional[str]
    identity_persona: Optional[str]
    body_signals: List[str]
    is_task: bool
    task_status: Optional[str]
    task_due_date: Optional[str]
    people_mentioned: List[PersonMention]
    ai_response: Optional[str]
    ai_persona_used: Optional[str]
    follow_up_question: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExtractedEntity':
        values = {name: data.get(name) for name in cls.__dataclass_fields__}
        values['people_mentioned'] = [PersonMention(**p) for p in data.get('people_mentioned') or []]
        return cls(**values)


@dataclass(frozen=True)
class SentimentRecord:
    """One mention of a person and how the entry felt about them."""
    date: str
    sentiment: float
    label: str
    context: str


@dataclass
class Person:
    """Aggregated record for everyone mentioned across all entries."""
    id: str
    name: str
    relationship: str
    first_mentioned: str
    last_mentioned: str
    sentiment_history: Tuple[SentimentRecord, ...] = ()
    tags: List[str] = field(default_factory=list)

    @property
    def mention_count(self) -> int:
        return len(self.sentiment_history)

    @property
    def sentiment_avg(self) -> float:
        if not self.sentiment_history:
            return 0.0
        return sum(record.sentiment for record in self.sentiment_history) / len(self.sentiment_history)

    def with_mention(self, record: SentimentRecord, relationship: Optional[str] = None) -> 'Person':
        """Return a copy with one more mention appended to the history."""
        return Person(id=self.id,
                      name=self.name,
                      relationship=relationship or self.relationship,
                      first_mentioned=self.first_mentioned,
                      last_mentioned=record.date,
                      sentiment_history=self.sentiment_history + (record,),
                      tags=list(self.tags))

    def to_document(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'name_key': self.name.strip().lower(),
            'relationship': self.relationship,
            'first_mentioned': self.first_mentioned,
            'last_mentioned': self.last_mentioned,
            'mention_count': self.mention_count,
            'sentiment_history': [asdict(record) for record in self.sentiment_history],
            'sentiment_avg': self.sentiment_avg,
            'tags': list(self.tags),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'Person':
        history = tuple(
            SentimentRecord(date=h.get('date', ''),
                            sentiment=float(h.get('sentiment', 5)),
                            label=h.get('label', ''),
                            context=h.get('context', '')) for h in doc.get('sentiment_history') or [])
        return cls(id=doc['id'],
                   name=doc['name'],
                   relationship=doc.get('relationship') or '',
                   first_mentioned=doc.get('first_mentioned', ''),
                   last_mentioned=doc.get('last_mentioned', ''),
                   sentiment_history=history,
                   tags=list(doc.get('tags') or []))


@dataclass
class LifeEvent:
    """A significant occurrence; event_date stays None when unknown."""
    id: str
    title: str
    description: str
    significance: int
    category: str
    emotions: List[str]
    people_involved: List[str]
    event_date: Optional[str]
    source_entry_ids: List[str]
    created_at: str


@dataclass
class Belief:
    """A recurring self-belief statement."""
    id: str
    belief_text: str
    domain: Optional[str]
    first_surfaced: str
    last_reinforced: str
    reinforcement_count: int
    status: str
    source_entry_ids: List[str] = field(default_factory=list)


@dataclass
class Insight:
    id: str
    insight_text: str
    type: str
    source_entry_id: str
    created_at: str


@dataclass
class HealthMetric:
    id: str
    metric_name: str
    value: str  # text so "120/80" and "Positive" survive
    unit: Optional[str]
    status: Optional[str]
    measured_at: str
    source_entry_id: str
    notes: Optional[str]
    created_at: str


@dataclass
class Dream:
    id: str
    entry_id: str
    dream_text: str
    dream_type: str
    symbols: List[str]
    emotions: List[str]
    themes: List[str]
    waking_connections: Optional[str]
    significance: int
    dream_date: str
    created_at: str


@dataclass
class CourageEntry:
    id: str
    entry_id: str
    description: str
    courage_type: str
    significance: int
    people_involved: List[str]
    outcome: Optional[str]
    created_at: str


@dataclass
class StepResult:
    """Outcome of one recoverable pipeline step."""
    step: str
    ok: bool
    error: Optional[str] = None


@dataclass
class ProcessResult:
    """Result of processing one entry."""
    entry_id: str
    extraction: Optional[ExtractedEntity]
    success: bool
    error: Optional[str] = None
    duplicate: bool = False
    diagnostics: List[StepResult] = field(default_factory=list)

    @property
    def failed_steps(self) -> List[str]:
        return [d.step for d in self.diagnostics if not d.ok]


@dataclass
class BackgroundResult:
    """Result of the background feature pipeline."""
    success: bool
    error: Optional[str] = None
    diagnostics: List[StepResult] = field(default_factory=list)
