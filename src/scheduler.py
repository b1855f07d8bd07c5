"""
SM-2 Scheduler

Pure grading function for the card lifecycle:

    grade(card, rating, settings, now) -> GradedResult(card, log_entry)

States and transitions:
- New: enters the learning ladder at step 0 (graduates directly when the
  ladder is empty).
- Learning / Relearning: walk the step ladder (minute precision). 'again'
  restarts the ladder, 'hard' repeats the current step, 'good' advances or
  graduates, 'easy' graduates immediately.
- Review: interval grows by ease (day precision). 'again' is a lapse: ease
  drops, interval shrinks by the lapse multiplier, and the card relearns.

No I/O and no shared state: safe to call from any thread.
"""

import logging
import math
from dataclasses import dataclass, replace
from datetime import timedelta

from card_model import (
    MAX_EASE, MIN_EASE, Card, CardState, Rating, ReviewLogEntry,
    require_instant, to_iso, validate_card,
)
from config import SchedulerSettings
from errors import ValidationError

logger = logging.getLogger(__name__)


LAPSE_EASE_PENALTY = 0.20
EASY_EASE_BONUS = 0.15


@dataclass(frozen=True)
class GradedResult:
    card: Card
    log_entry: ReviewLogEntry


@dataclass(frozen=True)
class PreviewOption:
    due_at: object
    interval_days: float
    label: str

    def to_dict(self):
        return {'dueAt': to_iso(self.due_at), 'intervalDays': self.interval_days, 'label': self.label}


@dataclass(frozen=True)
class IntervalPreview:
    again: PreviewOption
    hard: PreviewOption
    good: PreviewOption
    easy: PreviewOption

    def to_dict(self):
        return {rating.value: getattr(self, rating.value).to_dict() for rating in Rating}


# --- Formatting ---

def format_interval(minutes):
    """Human-readable delay, e.g. '<1m', '10m', '3h', '1 day', '2 months'."""
    if minutes < 1:
        return '<1m'
    if minutes < 60:
        return f'{round(minutes)}m'
    if minutes < 1440:
        return f'{round(minutes / 60)}h'
    return format_interval_days(minutes / 1440)


def format_interval_days(days):
    if days < 1:
        return '<1 day'
    days = round(days)
    if days == 1:
        return '1 day'
    if days < 30:
        return f'{days} days'
    if days < 365:
        months = round(days / 30)
        return '1 month' if months == 1 else f'{months} months'
    years = round(days / 365)
    return '1 year' if years == 1 else f'{years} years'


# --- Interval math ---

def _round_days(value):
    # half-up, so 12.5 days becomes 13 rather than banker's 12
    return int(math.floor(value + 0.5))


def _clamp_interval(days, settings):
    return min(settings.maximum_interval_days, max(settings.minimum_interval_days, days))


def _clamp_ease(ease):
    return max(MIN_EASE, min(MAX_EASE, ease))


def _graduate(days, now):
    return {
        'state': CardState.REVIEW,
        'interval_days': days,
        'due_at': now + timedelta(days=days),
        'learning_step_index': 0,
    }


def _step(state, index, delay_minutes, now):
    return {
        'state': state,
        'learning_step_index': index,
        'due_at': now + timedelta(minutes=delay_minutes),
    }


# --- Per-state scheduling ---

def _schedule_new(card, rating, settings, now):
    steps = settings.learning_steps

    if rating == Rating.AGAIN:
        delay = min(steps) if steps else settings.again_delay_minutes
        changes = _step(CardState.LEARNING, 0, delay, now)
        changes['interval_days'] = 0
        return changes

    if not steps:
        days = settings.easy_interval_days if rating == Rating.EASY else settings.graduating_interval_days
        return _graduate(_clamp_interval(days, settings), now)

    changes = _step(CardState.LEARNING, 0, steps[0], now)
    changes['interval_days'] = 0
    return changes


def _schedule_ladder(card, rating, settings, now, steps, graduate_days, easy_days):
    index = card.learning_step_index

    if rating == Rating.AGAIN:
        return _step(card.state, 0, settings.again_delay_minutes, now)

    if rating == Rating.HARD:
        if steps:
            current = min(index, len(steps) - 1)
            return _step(card.state, current, steps[current], now)
        return _step(card.state, 0, settings.again_delay_minutes, now)

    if rating == Rating.GOOD:
        next_index = index + 1
        if next_index >= len(steps):
            return _graduate(graduate_days, now)
        return _step(card.state, next_index, steps[next_index], now)

    return _graduate(easy_days, now)


def _schedule_learning(card, rating, settings, now):
    return _schedule_ladder(
        card, rating, settings, now,
        steps=settings.learning_steps,
        graduate_days=_clamp_interval(settings.graduating_interval_days, settings),
        easy_days=_clamp_interval(settings.easy_interval_days, settings),
    )


def _schedule_relearning(card, rating, settings, now):
    # interval_days already holds the reduced post-lapse interval
    lapse_days = _clamp_interval(_round_days(card.interval_days), settings)
    return _schedule_ladder(
        card, rating, settings, now,
        steps=settings.relearning_steps,
        graduate_days=lapse_days,
        easy_days=lapse_days,
    )


def _schedule_review(card, rating, settings, now):
    old_interval = max(0, card.interval_days)
    ease = card.ease

    if rating == Rating.AGAIN:
        changes = _step(CardState.RELEARNING, 0, settings.again_delay_minutes, now)
        changes['interval_days'] = _clamp_interval(
            _round_days(old_interval * settings.new_interval_multiplier), settings
        )
        changes['ease'] = _clamp_ease(ease - LAPSE_EASE_PENALTY)
        changes['lapses'] = card.lapses + 1
        return changes

    if rating == Rating.HARD:
        days = old_interval * settings.hard_interval
    elif rating == Rating.GOOD:
        days = old_interval * ease * settings.interval_modifier
    else:
        days = old_interval * ease * settings.interval_modifier * settings.easy_bonus
        ease = _clamp_ease(ease + EASY_EASE_BONUS)

    changes = _graduate(_clamp_interval(_round_days(days), settings), now)
    changes['ease'] = ease
    return changes


_SCHEDULERS = {
    CardState.NEW: _schedule_new,
    CardState.LEARNING: _schedule_learning,
    CardState.RELEARNING: _schedule_relearning,
    CardState.REVIEW: _schedule_review,
}


# --- Public API ---

def grade(card: Card, rating, settings: SchedulerSettings, now, elapsed_ms=0) -> GradedResult:
    """
    Grades one review and returns the updated card plus its review-log entry.

    The input card is not modified. Suspended cards are the caller's
    responsibility to filter out.

    Raises:
        ValidationError: invalid rating, naive ``now``, unknown card state,
            or an output card that breaks the Card State Model invariants.
    """
    rating = Rating.parse(rating)
    require_instant(now)
    schedule = _SCHEDULERS.get(card.state)
    if schedule is None:
        raise ValidationError(f"Unknown card state: {card.state!r}")

    try:
        changes = schedule(card, rating, settings, now)
    except OverflowError as e:
        raise ValidationError(f"Card {card.id}: due date out of range after '{rating.value}': {e}")

    updated = replace(card, reps=card.reps + 1, last_reviewed_at=now, **changes)
    try:
        validate_card(updated)
    except ValidationError:
        logger.error(f"Scheduler produced an invalid card {card.id} from state {card.state.value} "
                     f"with rating {rating.value}; check scheduler settings")
        raise

    entry = ReviewLogEntry(
        card_id=card.id,
        rating=rating,
        reviewed_at=now,
        previous_state=card.state,
        previous_interval=card.interval_days,
        new_interval=updated.interval_days,
        new_due_at=updated.due_at,
        elapsed_ms=max(0, int(elapsed_ms or 0)),
    )
    logger.debug(f"Graded card {card.id} '{rating.value}': {card.state.value} -> {updated.state.value}, "
                 f"due {to_iso(updated.due_at)}")
    return GradedResult(card=updated, log_entry=entry)


def preview_intervals(card: Card, settings: SchedulerSettings, now) -> IntervalPreview:
    """What each of the four buttons would do. Pure and non-mutating."""
    options = {}
    for rating in Rating:
        result = grade(card, rating, settings, now).card
        if result.in_learning:
            label = format_interval((result.due_at - now).total_seconds() / 60)
        else:
            label = format_interval_days(result.interval_days)
        options[rating.value] = PreviewOption(
            due_at=result.due_at, interval_days=result.interval_days, label=label
        )
    return IntervalPreview(**options)
