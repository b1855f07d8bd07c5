"""
Due Queue Builder

Builds the ordered study queue for one sitting:

1. Learning/relearning cards due now (by due_at, never capped)
2. Review cards due now (by due_at, capped by the daily review quota)
3. New cards (oldest first, capped by the daily new-card quota)

Also defines the in-session requeue policy for cards that are still in
short-term learning: a card due again within the requeue horizon is
reinserted a few positions ahead, anything due later is parked.

Everything here is pure; the session controller in study_session.py owns the
mutable queue and parked set.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional

import config
from card_model import Card, CardState, ReviewLogEntry, require_instant, utc_now
from config import SchedulerSettings

REQUEUE_HORIZON = timedelta(seconds=config.REQUEUE_HORIZON_SECONDS)
REINSERT_AFTER = 3

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class DailyCounters:
    """Cards already studied today, partitioned by the state they were in."""

    new_done: int = 0
    reviews_done: int = 0

    @classmethod
    def from_log(cls, entries: Iterable[ReviewLogEntry], since):
        new_done = 0
        reviews_done = 0
        for entry in entries:
            if entry.reviewed_at < since:
                continue
            if entry.previous_state == CardState.NEW:
                new_done += 1
            elif entry.previous_state == CardState.REVIEW:
                reviews_done += 1
        return cls(new_done=new_done, reviews_done=reviews_done)

    def remaining_new(self, settings):
        return max(0, settings.new_cards_per_day - self.new_done)

    def remaining_reviews(self, settings):
        return max(0, settings.max_reviews_per_day - self.reviews_done)


def _by_due(card):
    return (card.due_at, card.id)


def _by_creation(card):
    return (card.created_at or _OLDEST, card.due_at, card.id)


def interleave(new_cards, reviews):
    """Strict alternation, new card first, remainder appended."""
    mixed = []
    for index in range(max(len(new_cards), len(reviews))):
        if index < len(new_cards):
            mixed.append(new_cards[index])
        if index < len(reviews):
            mixed.append(reviews[index])
    return mixed


def build_queue(candidates: Iterable[Card], counters: DailyCounters, settings: SchedulerSettings,
                now=None, limit: Optional[int] = None) -> List[Card]:
    """
    Orders candidate cards into a study queue.

    Suspended cards and cards not yet due are ignored. ``limit`` caps the
    total size; learning cards keep priority for the available slots.
    """
    now = require_instant(now or utc_now())
    counters = counters or DailyCounters()

    learning, reviews, new_cards = [], [], []
    for card in candidates:
        if card.suspended or card.due_at > now:
            continue
        if card.in_learning:
            learning.append(card)
        elif card.state == CardState.REVIEW:
            reviews.append(card)
        elif card.state == CardState.NEW:
            new_cards.append(card)

    learning.sort(key=_by_due)
    reviews = sorted(reviews, key=_by_due)[:counters.remaining_reviews(settings)]
    new_cards = sorted(new_cards, key=_by_creation)[:counters.remaining_new(settings)]

    if settings.review_order == 'newFirst':
        queue = learning + new_cards + reviews
    elif settings.review_order == 'mixed':
        queue = learning + interleave(new_cards, reviews)
    else:
        queue = learning + reviews + new_cards

    if limit is not None:
        queue = queue[:max(0, limit)]
    return queue


# --- Session requeue policy ---

class RequeueAction(str, Enum):
    IMMEDIATE = 'immediate'
    PARKED = 'parked'
    DONE = 'done'


def classify_requeue(card: Card, now, horizon=REQUEUE_HORIZON) -> RequeueAction:
    """
    Decides what a session does with a card it just graded.

    Learning/relearning cards due within ``horizon`` come back immediately;
    later ones are parked until due. Everything else leaves the session.
    """
    if card.suspended or not card.in_learning:
        return RequeueAction.DONE
    if card.due_at - now <= horizon:
        return RequeueAction.IMMEDIATE
    return RequeueAction.PARKED


def reinsert_position(current_index, remaining, offset=REINSERT_AFTER):
    """
    Index at which to reinsert a card into a queue of ``remaining`` other
    cards, ``offset`` places after the current position (fewer when the queue
    is shorter).
    """
    step = min(offset, remaining)
    return min(remaining, current_index + step)
