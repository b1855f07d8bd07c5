"""
Study Session Controller

Owns the mutable state of one sitting: the active queue, the current
position, and the parked set of learning cards that are not due yet.

Flow:
    session = StudySession(build_queue(...))
    card = session.current()
    graded = scheduler.grade(card, rating, settings, now)
    session.answer(graded.card, now)
    ...
    if session.active_empty and session.has_parked:
        session.wait_for_parked()   # cancellable, returns when a card is due

The wait is a timed ``threading.Event`` wait. ``cancel()`` (for example when
the user leaves) wakes it immediately.
"""

import logging
import threading
from typing import Callable, List, Optional

from card_model import Card, utc_now
from due_queue import REINSERT_AFTER, REQUEUE_HORIZON, RequeueAction, classify_requeue, reinsert_position

logger = logging.getLogger(__name__)


class ParkedSet:
    """Learning cards waiting for their due time, keyed by card id."""

    def __init__(self):
        self._cards = {}

    def __len__(self):
        return len(self._cards)

    def __contains__(self, card_id):
        return card_id in self._cards

    def park(self, card: Card):
        self._cards[card.id] = card

    def discard(self, card_id):
        self._cards.pop(card_id, None)

    def min_due_at(self):
        if not self._cards:
            return None
        return min(card.due_at for card in self._cards.values())

    def seconds_until_next(self, now):
        earliest = self.min_due_at()
        if earliest is None:
            return None
        return max(0.0, (earliest - now).total_seconds())

    def pop_due(self, now) -> List[Card]:
        """Removes and returns every parked card due at ``now``, earliest first."""
        due = sorted((c for c in self._cards.values() if c.due_at <= now), key=lambda c: (c.due_at, c.id))
        for card in due:
            del self._cards[card.id]
        return due


class StudySession:

    def __init__(self, cards: List[Card], clock: Optional[Callable] = None,
                 horizon=REQUEUE_HORIZON, reinsert_after=REINSERT_AFTER):
        self.queue = list(cards)
        self.index = 0
        self.parked = ParkedSet()
        self.clock = clock or utc_now
        self.horizon = horizon
        self.reinsert_after = reinsert_after
        self._cancelled = threading.Event()

    @property
    def active_empty(self):
        return not self.queue

    @property
    def has_parked(self):
        return len(self.parked) > 0

    @property
    def cancelled(self):
        return self._cancelled.is_set()

    @property
    def is_finished(self):
        return self.cancelled or (self.active_empty and not self.has_parked)

    def current(self) -> Optional[Card]:
        if not self.queue:
            return None
        return self.queue[min(self.index, len(self.queue) - 1)]

    def answer(self, updated: Card, now=None) -> RequeueAction:
        """
        Applies the outcome of grading the current card.

        ``updated`` is the card returned by the scheduler. Returns the
        requeue decision that was applied.
        """
        now = now or self.clock()
        position = next((i for i, c in enumerate(self.queue) if c.id == updated.id), None)
        if position is None:
            raise ValueError(f"Card {updated.id} is not in the active queue")

        del self.queue[position]
        action = classify_requeue(updated, now, self.horizon)

        if action == RequeueAction.IMMEDIATE:
            insert_at = reinsert_position(position, len(self.queue), self.reinsert_after)
            self.queue.insert(insert_at, updated)
            self.index = min(position, len(self.queue) - 1)
        else:
            if action == RequeueAction.PARKED:
                self.parked.park(updated)
            self.index = min(position, max(0, len(self.queue) - 1))

        logger.debug(f"Card {updated.id} -> {action.value} (active={len(self.queue)}, parked={len(self.parked)})")
        return action

    def remove(self, card_id):
        """Drops a card from the session entirely (suspended or deleted mid-session)."""
        self.queue = [c for c in self.queue if c.id != card_id]
        self.parked.discard(card_id)
        self.index = min(self.index, max(0, len(self.queue) - 1))

    def admit_due(self, now=None) -> List[Card]:
        """Moves parked cards whose due time has passed to the end of the active queue."""
        admitted = self.parked.pop_due(now or self.clock())
        self.queue.extend(admitted)
        return admitted

    def seconds_until_next(self, now=None):
        return self.parked.seconds_until_next(now or self.clock())

    def wait_for_parked(self, now=None, max_wait=None) -> List[Card]:
        """
        Blocks until the earliest parked card is due, then admits it.

        Returns the admitted cards, or an empty list when the session was
        cancelled or nothing is parked.
        """
        wait = self.seconds_until_next(now)
        if wait is None or self.cancelled:
            return []
        if max_wait is not None:
            wait = min(wait, max_wait)
        if wait > 0 and self._cancelled.wait(timeout=wait):
            logger.info("Study session cancelled while waiting for parked cards")
            return []
        return self.admit_due()

    def cancel(self):
        self._cancelled.set()
