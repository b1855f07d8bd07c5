"""
Card State Model

Entities shared by the scheduler, the due queue builder, the Anki importer and
the card store, plus the validation that guards every write boundary.

Timestamps are timezone-aware ``datetime`` objects everywhere. A naive or
non-datetime ``due_at`` never reaches storage.
"""

import math
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional

from errors import CorruptDataError, ValidationError


MIN_EASE = 1.3
MAX_EASE = 5.0
DEFAULT_EASE = 2.5

DECK_PATH_SEPARATOR = '::'


class CardState(str, Enum):
    NEW = 'new'
    LEARNING = 'learning'
    RELEARNING = 'relearning'
    REVIEW = 'review'

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(f"Invalid card state: {value!r}")


class Rating(str, Enum):
    AGAIN = 'again'
    HARD = 'hard'
    GOOD = 'good'
    EASY = 'easy'

    @classmethod
    def parse(cls, value):
        """
        Accepts a Rating, its name/value in any case, or the Anki button number
        (1=again, 2=hard, 3=good, 4=easy).
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            by_number = {1: cls.AGAIN, 2: cls.HARD, 3: cls.GOOD, 4: cls.EASY}
            if value in by_number:
                return by_number[value]
            raise ValidationError(f"Invalid rating: {value!r} (must be again, hard, good or easy)")
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ValidationError(f"Invalid rating: {value!r} (must be again, hard, good or easy)")


class CardType(str, Enum):
    BASIC = 'basic'
    REVERSIBLE = 'reversible'
    TYPED = 'typed'


# --- Date helpers ---

def utc_now():
    return datetime.now(timezone.utc)


def is_valid_instant(value):
    """True for a timezone-aware datetime."""
    return isinstance(value, datetime) and value.tzinfo is not None and value.utcoffset() is not None


def require_instant(value, name='now'):
    if not is_valid_instant(value):
        raise ValidationError(f"{name} must be a timezone-aware datetime, got {value!r}")
    return value


def from_epoch_seconds(seconds) -> Optional[datetime]:
    """Converts Unix seconds to an aware UTC datetime, or None if out of range."""
    try:
        return datetime.fromtimestamp(float(seconds), tz=timezone.utc)
    except (OverflowError, OSError, ValueError, TypeError):
        return None


def from_epoch_ms(milliseconds) -> Optional[datetime]:
    try:
        return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=float(milliseconds))
    except (OverflowError, ValueError, TypeError):
        return None


def to_epoch_ms(value):
    return int(round(value.timestamp() * 1000))


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def local_day_start(now, tz=None):
    """Midnight of ``now``'s day in ``tz`` (the system local zone by default)."""
    local = now.astimezone(tz)
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


# --- Entities ---

@dataclass
class Card:
    deck_id: str
    user_id: str
    front: str
    back: str
    due_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: CardState = CardState.NEW
    suspended: bool = False
    interval_days: float = 0
    ease: float = DEFAULT_EASE
    learning_step_index: int = 0
    reps: int = 0
    lapses: int = 0
    last_reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    card_type: CardType = CardType.BASIC
    version: int = 1

    @property
    def in_learning(self):
        return self.state in (CardState.LEARNING, CardState.RELEARNING)

    def to_dict(self):
        return {
            'id': self.id,
            'deckId': self.deck_id,
            'userId': self.user_id,
            'front': self.front,
            'back': self.back,
            'state': self.state.value,
            'suspended': self.suspended,
            'dueAt': to_iso(self.due_at),
            'intervalDays': self.interval_days,
            'ease': self.ease,
            'learningStepIndex': self.learning_step_index,
            'reps': self.reps,
            'lapses': self.lapses,
            'lastReviewedAt': to_iso(self.last_reviewed_at),
            'createdAt': to_iso(self.created_at),
            'cardType': self.card_type.value,
            'version': self.version,
        }


@dataclass
class Deck:
    user_id: str
    name: str
    parent_deck_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ReviewLogEntry:
    """Immutable record of one graded review."""

    card_id: str
    rating: Rating
    reviewed_at: datetime
    previous_state: CardState
    previous_interval: float
    new_interval: float
    new_due_at: datetime
    elapsed_ms: int = 0

    def to_dict(self):
        return {
            'cardId': self.card_id,
            'rating': self.rating.value,
            'reviewedAt': to_iso(self.reviewed_at),
            'previousState': self.previous_state.value,
            'previousInterval': self.previous_interval,
            'newInterval': self.new_interval,
            'newDueAt': to_iso(self.new_due_at),
            'elapsedMs': self.elapsed_ms,
        }


# --- Validation ---

def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)


def _is_utf8_encodable(text):
    try:
        text.encode('utf-8')
    except UnicodeEncodeError:
        return False
    return True


def _is_count(value):
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def card_problems(card: Card) -> List[str]:
    """Returns every Card State Model invariant the card violates."""
    problems = []
    for side in ('front', 'back'):
        content = getattr(card, side)
        if not isinstance(content, str) or not content.strip():
            problems.append(f"{side.capitalize()} content is empty")
        elif not _is_utf8_encodable(content):
            problems.append(f"{side.capitalize()} content contains unpaired surrogates")
    if not isinstance(card.state, CardState):
        problems.append(f"Invalid state: {card.state!r}")
    if not isinstance(card.suspended, bool):
        problems.append(f"Invalid suspended flag: {card.suspended!r}")
    if not is_valid_instant(card.due_at):
        problems.append(f"Invalid due date: {card.due_at!r}")
    if not _is_number(card.interval_days) or card.interval_days < 0:
        problems.append(f"Invalid interval: {card.interval_days!r}")
    if not _is_number(card.ease) or card.ease <= 0:
        problems.append(f"Invalid ease: {card.ease!r}")
    elif not MIN_EASE <= card.ease <= MAX_EASE:
        problems.append(f"Ease {card.ease} outside [{MIN_EASE}, {MAX_EASE}]")
    if not _is_count(card.learning_step_index):
        problems.append(f"Invalid learning step index: {card.learning_step_index!r}")
    if not _is_count(card.reps):
        problems.append(f"Invalid reps: {card.reps!r}")
    if not _is_count(card.lapses):
        problems.append(f"Invalid lapses: {card.lapses!r}")
    if card.last_reviewed_at is not None and not is_valid_instant(card.last_reviewed_at):
        problems.append(f"Invalid last reviewed date: {card.last_reviewed_at!r}")
    return problems


def validate_card(card: Card) -> Card:
    """Raises ValidationError unless the card satisfies every invariant."""
    problems = card_problems(card)
    if problems:
        raise ValidationError(f"Card {card.id} is invalid: {'; '.join(problems)}")
    return card


# --- Deck hierarchy ---

def split_deck_path(name):
    """'Parent:: Child' -> ['Parent', 'Child']; empty segments are dropped."""
    return [part.strip() for part in str(name).split(DECK_PATH_SEPARATOR) if part.strip()]


def _ancestor_chain(deck_id, decks_by_id):
    chain = []
    seen = set()
    current = decks_by_id.get(deck_id)
    while current is not None:
        if current.id in seen:
            raise CorruptDataError(f"Deck parent chain is cyclic at deck {current.id} ('{current.name}')")
        seen.add(current.id)
        chain.append(current)
        current = decks_by_id.get(current.parent_deck_id) if current.parent_deck_id else None
    return chain


def build_deck_paths(decks: Iterable[Deck]) -> Dict[str, str]:
    """
    Maps deck id to its full '::'-joined path.

    Parent chains are walked explicitly. A cycle raises CorruptDataError
    instead of recursing forever; a dangling parent id ends the chain.
    """
    decks_by_id = {deck.id: deck for deck in decks}
    return {
        deck_id: DECK_PATH_SEPARATOR.join(d.name for d in reversed(_ancestor_chain(deck_id, decks_by_id)))
        for deck_id in decks_by_id
    }


def descendant_deck_ids(decks: Iterable[Deck], root_id) -> List[str]:
    """Root id followed by every descendant id, breadth first. Cycle safe."""
    children = {}
    for deck in decks:
        children.setdefault(deck.parent_deck_id, []).append(deck.id)

    result = [root_id]
    seen = {root_id}
    index = 0
    while index < len(result):
        for child_id in children.get(result[index], []):
            if child_id not in seen:
                seen.add(child_id)
                result.append(child_id)
        index += 1
    return result


# --- Card types ---

def choose_orientation(card: Card, rng=None):
    """
    'front' shows front->back, 'back' shows back->front.

    Only reversible cards can flip; pass a seeded ``random.Random`` for
    deterministic sessions.
    """
    if card.card_type != CardType.REVERSIBLE:
        return 'front'
    rng = rng or random
    return 'front' if rng.random() >= 0.5 else 'back'


def normalize_answer(answer):
    return answer.strip().lower()


def is_answer_correct(user_answer, correct_answer):
    """Exact match after trimming and lowercasing (typed cards)."""
    return normalize_answer(user_answer) == normalize_answer(correct_answer)
