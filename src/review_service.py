"""
Review service: glue between the pure scheduler/queue functions and the
card store.
"""

import logging

from card_model import CardState, local_day_start, require_instant, utc_now
from due_queue import DailyCounters, build_queue
from errors import ValidationError
from scheduler import GradedResult, grade

logger = logging.getLogger(__name__)


def daily_counters(store, user_id, now, tz=None):
    """Counters for the user's current local day."""
    since = local_day_start(now, tz)
    return DailyCounters(
        new_done=store.count_reviews_since(user_id, since, CardState.NEW),
        reviews_done=store.count_reviews_since(user_id, since, CardState.REVIEW),
    )


def review_card(store, user_id, card_id, rating, settings, now=None, elapsed_ms=0, expected_version=None):
    """
    Grades a stored card and persists the result with its review log entry.

    ``expected_version`` defaults to the version just read; a client passing
    the version it displayed gets a ConflictError if someone reviewed the
    card in between.

    Returns:
        GradedResult: with the stored card (new version)
    """
    now = require_instant(now or utc_now())
    card = store.get_card(user_id, card_id)
    if card.suspended:
        raise ValidationError(f"Card {card_id} is suspended and cannot be reviewed")

    version = card.version if expected_version is None else expected_version
    result = grade(card, rating, settings, now, elapsed_ms=elapsed_ms)
    stored = store.save_review(result.card, version, result.log_entry)
    logger.info(f"Reviewed card {card_id} for {user_id}: {result.log_entry.rating.value}, "
                f"{card.state.value} -> {stored.state.value}")
    return GradedResult(card=stored, log_entry=result.log_entry)


def build_study_queue(store, user_id, deck_id, settings, now=None, limit=None, tz=None):
    """Study queue for a deck and all of its sub-decks."""
    now = require_instant(now or utc_now())
    deck_ids = store.descendant_deck_ids(user_id, deck_id)
    candidates = store.find_cards(user_id, deck_ids=deck_ids, due_before=now)
    counters = daily_counters(store, user_id, now, tz)
    queue = build_queue(candidates, counters, settings, now=now, limit=limit)
    logger.info(f"Built queue for {user_id} deck {deck_id}: {len(queue)} cards "
                f"(new done today: {counters.new_done}, reviews done: {counters.reviews_done})")
    return queue
