"""
Validators and sanitizers for model-produced data.

Everything the extraction model returns passes through these functions
before it is written anywhere. They never raise: a value that cannot be
repaired is replaced by a default, and a record that should not be stored
at all comes back as None.
"""

import math
import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from ..models.core import (AI_PERSONAS, CORE_NEEDS, COGNITIVE_PATTERNS, DEFENSE_MECHANISMS, ENTRY_CATEGORIES,
                           IDENTITY_PERSONAS, SELF_TALK_TONES, TASK_STATUSES, ExtractedEntity, PersonMention)
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import local_today

logger = get_logger(__name__)

MIN_SANE_YEAR = 1985
MAX_FUTURE_YEARS = 1
MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 2000

UNKNOWN_SENTINELS = frozenset(['null', 'unknown', 'n/a', 'na', 'none', 'undefined', ''])

VALID_CATEGORIES = ('career', 'relationship', 'family', 'health', 'finance', 'personal', 'education', 'achievement',
                    'professional_achievement', 'personal_development', 'loss')
VALID_COURAGE_TYPES = ('boundary', 'vulnerability', 'risk', 'confrontation', 'honesty', 'change')
VALID_DREAM_TYPES = ('normal', 'nightmare', 'recurring', 'lucid')

# Checked in order, first hit wins
CATEGORY_SYNONYMS = (
    ('career', ('career', 'work', 'job')),
    ('family', ('family', )),
    ('relationship', ('relation', 'love', 'marriage', 'partner')),
    ('health', ('health', 'medical', 'fitness')),
    ('loss', ('loss', 'death', 'grief', 'passing')),
    ('finance', ('money', 'financial')),
    ('education', ('education', 'study', 'degree', 'school')),
    ('achievement', ('achieve', 'award')),
)

# Example text from the extraction prompts. A model that returns these
# copied the instructions instead of reading the entry.
PROMPT_LEAKAGE_PATTERNS = (
    re.compile(r'^(started|joined|got)\s+(a\s+)?(new\s+)?job\s+at\s+(google|acme|example)', re.IGNORECASE),
    re.compile(r'^my\s+job\s+at\s+google', re.IGNORECASE),
    re.compile(r'^short\s+title$', re.IGNORECASE),
    re.compile(r'^what\s+happened$', re.IGNORECASE),
    re.compile(r'^deep\s+observation\s+\d$', re.IGNORECASE),
    re.compile(r'^insight\s+text\s+\d$', re.IGNORECASE),
    re.compile(r'^e\.g\.\s', re.IGNORECASE),
)

PLACEHOLDER_NAME = re.compile(r'^(user|person|someone|example|test|null|undefined|n/a)$', re.IGNORECASE)

ISO_DATE_PREFIX = re.compile(r'^\d{4}-\d{2}-\d{2}')
BARE_YEAR = re.compile(r'^\d{4}$')

FALLBACK_DATE_FORMATS = (
    '%Y/%m/%d',
    '%d/%m/%Y',
    '%d-%m-%Y',
    '%d.%m.%Y',
    '%B %d, %Y',
    '%b %d, %Y',
    '%d %B %Y',
    '%d %b %Y',
    '%B %Y',
    '%b %Y',
)


# ---- Dates ----


def _is_unknown(raw: Any) -> bool:
    return raw is None or (isinstance(raw, str) and raw.strip().lower() in UNKNOWN_SENTINELS)


def _parse_general_date(text: str) -> Optional[date]:
    try:
        return datetime.fromisoformat(text.replace('Z', '+00:00')).date()
    except ValueError:
        pass
    for fmt in FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _is_calendar_date(date_str: str) -> bool:
    """Reject ISO-shaped strings such as 2020-13-45 that name no real day."""
    try:
        date.fromisoformat(date_str)
    except ValueError:
        return False
    return True


def validate_date(raw: Any) -> str:
    """Resolve a date where unknown means today (e.g. a lab measurement)."""
    if _is_unknown(raw) or not isinstance(raw, (str, date)):
        return local_today()
    if isinstance(raw, date):
        return raw.isoformat()[:10]

    text = raw.strip()
    if ISO_DATE_PREFIX.match(text) and _is_calendar_date(text[:10]):
        return text[:10]

    parsed = _parse_general_date(text)
    if parsed is not None:
        return parsed.isoformat()
    return local_today()


def validate_date_nullable(raw: Any, min_year: int = MIN_SANE_YEAR, max_future_years: int = MAX_FUTURE_YEARS) -> Optional[str]:
    """Resolve a historical date, or None when it is unknown or implausible.

    Never falls back to today. Bare years expand to January 1st and any year
    outside [min_year, current year + max_future_years] is rejected.
    """
    if _is_unknown(raw) or not isinstance(raw, (str, int)) or isinstance(raw, bool):
        return None

    text = str(raw).strip()
    date_str = None
    if ISO_DATE_PREFIX.match(text):
        date_str = text[:10]
    elif BARE_YEAR.match(text):
        date_str = f'{text}-01-01'
    else:
        parsed = _parse_general_date(text)
        if parsed is not None:
            date_str = parsed.isoformat()

    if not date_str or not _is_calendar_date(date_str):
        return None

    year = int(date_str[:4])
    max_year = date.today().year + max_future_years
    if year < min_year or year > max_year:
        logger.warning(f'Rejected suspicious date "{date_str}" (year {year} outside {min_year}-{max_year})')
        return None

    return date_str


# ---- Text ----


def is_prompt_leakage(text: Any) -> bool:
    """Check whether text looks like the model echoing prompt examples."""
    if not text or not isinstance(text, str):
        return False
    stripped = text.strip()
    return any(pattern.search(stripped) for pattern in PROMPT_LEAKAGE_PATTERNS)


def sanitize_title(raw: Any) -> Optional[str]:
    if not raw or not isinstance(raw, str):
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None
    return trimmed[:MAX_TITLE_LENGTH]


def _optional_text(raw: Any) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    trimmed = raw.strip()
    if trimmed.lower() in UNKNOWN_SENTINELS:
        return None
    return trimmed


# ---- Numbers ----


def _clamp_score(raw: Any, default: int = 5) -> int:
    if raw is None or isinstance(raw, bool):
        return default
    try:
        value = float(raw)
    except OverflowError:
        # Integers too large for a float
        return 10 if raw > 0 else 1
    except (TypeError, ValueError):
        return default
    if math.isnan(value):
        return default
    if math.isinf(value):
        return 10 if value > 0 else 1
    # Half-up rounding, not banker's rounding
    return max(1, min(10, int(math.floor(value + 0.5))))


def validate_significance(raw: Any) -> int:
    """Clamp significance to [1, 10], default 5."""
    return _clamp_score(raw)


def validate_mood_score(raw: Any) -> int:
    """Clamp a mood or energy score to [1, 10], default 5."""
    return _clamp_score(raw)


# ---- Categories and enumerations ----


def validate_category(raw: Any) -> str:
    """Map a life-event category onto the whitelist, default 'personal'."""
    if not raw or not isinstance(raw, str):
        return 'personal'
    normalized = raw.strip().lower()
    if normalized in VALID_CATEGORIES:
        return normalized
    for category, keywords in CATEGORY_SYNONYMS:
        if any(keyword in normalized for keyword in keywords):
            return category
    return 'personal'


def validate_entry_category(raw: Any) -> str:
    if isinstance(raw, str) and raw.strip().lower() in ENTRY_CATEGORIES:
        return raw.strip().lower()
    return 'reflection'


def validate_choice(raw: Any, allowed: Iterable[str]) -> Optional[str]:
    """Return the allowed value matching raw case-insensitively, else None."""
    if not isinstance(raw, str):
        return None
    normalized = raw.strip().lower()
    for choice in allowed:
        if choice.lower() == normalized:
            return choice
    return None


def validate_courage_type(raw: Any) -> str:
    return validate_choice(raw, VALID_COURAGE_TYPES) or 'boundary'


def validate_dream_type(raw: Any) -> str:
    return validate_choice(raw, VALID_DREAM_TYPES) or 'normal'


# ---- Arrays ----


def validate_string_array(raw: Any) -> List[str]:
    """Keep only non-blank strings, trimmed. Anything but a list gives []."""
    if not isinstance(raw, list):
        return []
    return [item.strip() for item in raw if isinstance(item, str) and item.strip()]


# ---- Composite validators ----


def validate_life_event(raw: Any,
                        min_year: int = MIN_SANE_YEAR,
                        max_future_years: int = MAX_FUTURE_YEARS) -> Optional[Dict[str, Any]]:
    """Validate a life event from model output. None means do not store it."""
    if not isinstance(raw, dict):
        logger.warning('Rejected life event: not an object')
        return None

    title = sanitize_title(raw.get('title'))
    if not title:
        logger.warning('Rejected life event: no title')
        return None

    if is_prompt_leakage(title):
        logger.warning(f'Rejected life event, prompt leakage detected: "{title}"')
        return None

    description = raw.get('description') if isinstance(raw.get('description'), str) else ''
    return {
        'title': title,
        'description': description.strip()[:MAX_DESCRIPTION_LENGTH],
        'significance': validate_significance(raw.get('significance')),
        'category': validate_category(raw.get('category')),
        'emotions': validate_string_array(raw.get('emotions')),
        'people_involved': validate_string_array(raw.get('people_involved')),
        'event_date': validate_date_nullable(raw.get('event_date'), min_year, max_future_years),
    }


def validate_person(raw: Any) -> Optional[PersonMention]:
    """Validate a person mention. None means do not store it."""
    if isinstance(raw, PersonMention):
        raw = {'name': raw.name, 'relationship': raw.relationship, 'sentiment': raw.sentiment, 'context': raw.context}
    if not isinstance(raw, dict):
        return None

    name = raw.get('name')
    if not isinstance(name, str) or len(name.strip()) < 2:
        logger.warning('Rejected person: missing or too-short name')
        return None

    name = name.strip()
    if PLACEHOLDER_NAME.match(name):
        logger.warning(f'Rejected person, looks like placeholder: "{name}"')
        return None

    return PersonMention(name=name,
                         relationship=_optional_text(raw.get('relationship')) or '',
                         sentiment=_optional_text(raw.get('sentiment')) or 'neutral',
                         context=_optional_text(raw.get('context')) or '')


def validate_health_metric(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    name = _optional_text(raw.get('metric_name') or raw.get('name'))
    value = raw.get('value')
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    value = _optional_text(value)
    if not name or not value:
        logger.warning('Rejected health metric: missing name or value')
        return None
    return {
        'metric_name': name[:100],
        'value': value[:100],
        'unit': _optional_text(raw.get('unit')),
        'status': _optional_text(raw.get('status')),
        'measured_at': validate_date(raw.get('measured_at') or raw.get('date')),
        'notes': _optional_text(raw.get('notes')),
    }


def validate_dream(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    text = _optional_text(raw.get('dream_text') or raw.get('description'))
    if not text:
        return None
    if is_prompt_leakage(text):
        logger.warning(f'Rejected dream, prompt leakage detected: "{text[:60]}"')
        return None
    return {
        'dream_text': text[:MAX_DESCRIPTION_LENGTH],
        'dream_type': validate_dream_type(raw.get('dream_type')),
        'symbols': validate_string_array(raw.get('symbols')),
        'emotions': validate_string_array(raw.get('emotions')),
        'themes': validate_string_array(raw.get('themes')),
        'waking_connections': _optional_text(raw.get('waking_connections')),
        'significance': validate_significance(raw.get('significance')),
        'dream_date': validate_date(raw.get('dream_date')),
    }


def validate_courage(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    description = _optional_text(raw.get('description'))
    if not description:
        return None
    if is_prompt_leakage(description):
        logger.warning(f'Rejected courage entry, prompt leakage detected: "{description[:60]}"')
        return None
    return {
        'description': description[:MAX_DESCRIPTION_LENGTH],
        'courage_type': validate_courage_type(raw.get('courage_type')),
        'significance': validate_significance(raw.get('significance')),
        'people_involved': validate_string_array(raw.get('people_involved')),
        'outcome': _optional_text(raw.get('outcome')),
    }


# ---- Extraction result ----

EXTRACTION_FIELDS = tuple(ExtractedEntity.__dataclass_fields__)


def default_extraction(raw_text: str) -> ExtractedEntity:
    """Minimal entity for input too short to be worth a model call."""
    text = raw_text.strip()
    return ExtractedEntity(category='reflection',
                           title=text[:50] or 'Quick note',
                           content=text,
                           mood_score=5,
                           surface_emotion=None,
                           deeper_emotion=None,
                           core_need=None,
                           triggers=[],
                           defense_mechanism=None,
                           self_talk_tone=None,
                           energy_level=5,
                           cognitive_pattern=None,
                           beliefs_revealed=[],
                           avoidance_signal=None,
                           growth_edge=None,
                           identity_persona=None,
                           body_signals=[],
                           is_task=False,
                           task_status=None,
                           task_due_date=None,
                           people_mentioned=[],
                           ai_response=None,
                           ai_persona_used=None,
                           follow_up_question=None)


def normalize_extraction(raw: Dict[str, Any],
                         raw_text: str = '',
                         min_year: int = MIN_SANE_YEAR,
                         max_future_years: int = MAX_FUTURE_YEARS) -> ExtractedEntity:
    """Turn the model's JSON object into a fully populated ExtractedEntity."""
    # The model calls it ai_persona_selected; the stored record says ai_persona_used
    if 'ai_persona_used' not in raw and 'ai_persona_selected' in raw:
        raw = dict(raw, ai_persona_used=raw['ai_persona_selected'])

    absent = [name for name in EXTRACTION_FIELDS if name not in raw]
    if absent:
        logger.warning(f'Extraction result missing fields, stored as null: {", ".join(absent)}')

    people = []
    for mention in raw.get('people_mentioned') or []:
        person = validate_person(mention)
        if person:
            people.append(person)

    title = sanitize_title(raw.get('title'))
    if title and is_prompt_leakage(title):
        logger.warning(f'Dropped leaked entry title: "{title}"')
        title = None

    is_task = raw.get('is_task') is True
    return ExtractedEntity(category=validate_entry_category(raw.get('category')),
                           title=title or raw_text.strip()[:50],
                           content=_optional_text(raw.get('content')) or raw_text.strip(),
                           mood_score=validate_mood_score(raw.get('mood_score')),
                           surface_emotion=_optional_text(raw.get('surface_emotion')),
                           deeper_emotion=_optional_text(raw.get('deeper_emotion')),
                           core_need=validate_choice(raw.get('core_need'), CORE_NEEDS),
                           triggers=validate_string_array(raw.get('triggers')),
                           defense_mechanism=validate_choice(raw.get('defense_mechanism'), DEFENSE_MECHANISMS),
                           self_talk_tone=validate_choice(raw.get('self_talk_tone'), SELF_TALK_TONES),
                           energy_level=validate_mood_score(raw.get('energy_level')),
                           cognitive_pattern=validate_choice(raw.get('cognitive_pattern'), COGNITIVE_PATTERNS),
                           beliefs_revealed=validate_string_array(raw.get('beliefs_revealed')),
                           avoidance_signal=_optional_text(raw.get('avoidance_signal')),
                           growth_edge=_optional_text(raw.get('growth_edge')),
                           identity_persona=validate_choice(raw.get('identity_persona'), IDENTITY_PERSONAS),
                           body_signals=validate_string_array(raw.get('body_signals')),
                           is_task=is_task,
                           task_status=validate_choice(raw.get('task_status'), TASK_STATUSES) if is_task else None,
                           task_due_date=validate_date_nullable(raw.get('task_due_date'), min_year, max_future_years),
                           people_mentioned=people,
                           ai_response=_optional_text(raw.get('ai_response')),
                           ai_persona_used=validate_choice(raw.get('ai_persona_used'), AI_PERSONAS),
                           follow_up_question=_optional_text(raw.get('follow_up_question')))
