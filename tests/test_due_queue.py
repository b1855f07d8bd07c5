"""
Due queue builder: tiers, quotas, ordering modes and the requeue policy.
"""

from datetime import timedelta

from card_model import CardState, Rating, ReviewLogEntry
from config import SchedulerSettings
from due_queue import (
    DailyCounters, RequeueAction, build_queue, classify_requeue, interleave, reinsert_position,
)


def _deck(make_card, now, learning=0, reviews=0, new=0):
    cards = []
    for i in range(learning):
        cards.append(make_card(state=CardState.LEARNING, id=f'l{i}', due_at=now - timedelta(minutes=learning - i)))
    for i in range(reviews):
        cards.append(make_card(state=CardState.REVIEW, id=f'r{i}', interval_days=3,
                               due_at=now - timedelta(days=reviews - i)))
    for i in range(new):
        cards.append(make_card(state=CardState.NEW, id=f'n{i}', created_at=now - timedelta(days=new - i)))
    return cards


def test_tiers_and_quotas(make_card, now):
    """5 learning + 3 reviews (quota 2) + 10 new (quota 4) = 11 cards, learning first."""
    settings = SchedulerSettings(max_reviews_per_day=2, new_cards_per_day=4)
    cards = _deck(make_card, now, learning=5, reviews=3, new=10)

    queue = build_queue(list(reversed(cards)), DailyCounters(), settings, now=now)

    assert len(queue) == 11
    assert [c.id for c in queue] == ['l0', 'l1', 'l2', 'l3', 'l4', 'r0', 'r1', 'n0', 'n1', 'n2', 'n3']


def test_counters_reduce_quotas(make_card, now):
    settings = SchedulerSettings(max_reviews_per_day=3, new_cards_per_day=4)
    cards = _deck(make_card, now, reviews=3, new=10)

    queue = build_queue(cards, DailyCounters(new_done=3, reviews_done=5), settings, now=now)

    assert [c.id for c in queue] == ['n0']


def test_learning_cards_are_never_capped(make_card, now):
    settings = SchedulerSettings(max_reviews_per_day=0, new_cards_per_day=0)
    cards = _deck(make_card, now, learning=30, reviews=2, new=2)

    queue = build_queue(cards, DailyCounters(), settings, now=now)

    assert len(queue) == 30
    assert all(c.state == CardState.LEARNING for c in queue)


def test_relearning_cards_share_the_learning_tier(make_card, now):
    cards = [
        make_card(state=CardState.REVIEW, id='review', interval_days=3, due_at=now - timedelta(days=1)),
        make_card(state=CardState.RELEARNING, id='relearn', interval_days=1, due_at=now - timedelta(minutes=1)),
    ]
    queue = build_queue(cards, DailyCounters(), SchedulerSettings(), now=now)
    assert [c.id for c in queue] == ['relearn', 'review']


def test_new_first_order(make_card, now):
    settings = SchedulerSettings(review_order='newFirst')
    cards = _deck(make_card, now, learning=1, reviews=2, new=2)

    queue = build_queue(cards, DailyCounters(), settings, now=now)

    assert [c.id for c in queue] == ['l0', 'n0', 'n1', 'r0', 'r1']


def test_mixed_order_alternates_new_first(make_card, now):
    settings = SchedulerSettings(review_order='mixed')
    cards = _deck(make_card, now, learning=1, reviews=3, new=1)

    queue = build_queue(cards, DailyCounters(), settings, now=now)

    assert [c.id for c in queue] == ['l0', 'n0', 'r0', 'r1', 'r2']


def test_interleave_appends_remainder():
    assert interleave(['n0', 'n1', 'n2'], ['r0']) == ['n0', 'r0', 'n1', 'n2']
    assert interleave([], ['r0', 'r1']) == ['r0', 'r1']


def test_suspended_and_future_cards_are_excluded(make_card, now):
    cards = [
        make_card(state=CardState.REVIEW, id='suspended', interval_days=2, suspended=True,
                  due_at=now - timedelta(days=1)),
        make_card(state=CardState.REVIEW, id='future', interval_days=2, due_at=now + timedelta(hours=1)),
        make_card(state=CardState.LEARNING, id='later', due_at=now + timedelta(minutes=5)),
        make_card(state=CardState.REVIEW, id='due', interval_days=2, due_at=now),
    ]
    queue = build_queue(cards, DailyCounters(), SchedulerSettings(), now=now)
    assert [c.id for c in queue] == ['due']


def test_new_cards_are_oldest_first(make_card, now):
    cards = [
        make_card(id='young', created_at=now - timedelta(days=1)),
        make_card(id='old', created_at=now - timedelta(days=9)),
        make_card(id='middle', created_at=now - timedelta(days=5)),
    ]
    queue = build_queue(cards, DailyCounters(), SchedulerSettings(), now=now)
    assert [c.id for c in queue] == ['old', 'middle', 'young']


def test_limit_keeps_learning_priority(make_card, now):
    cards = _deck(make_card, now, learning=2, reviews=2, new=2)
    queue = build_queue(cards, DailyCounters(), SchedulerSettings(), now=now, limit=3)
    assert [c.id for c in queue] == ['l0', 'l1', 'r0']


def test_daily_counters_from_log(now):
    midnight = now.replace(hour=0)

    def entry(state, at):
        return ReviewLogEntry(card_id='c', rating=Rating.GOOD, reviewed_at=at, previous_state=state,
                              previous_interval=0, new_interval=1, new_due_at=at)

    entries = [
        entry(CardState.NEW, now),
        entry(CardState.NEW, now - timedelta(hours=1)),
        entry(CardState.NEW, midnight - timedelta(minutes=1)),
        entry(CardState.REVIEW, now),
        entry(CardState.LEARNING, now),
        entry(CardState.RELEARNING, now),
    ]
    counters = DailyCounters.from_log(entries, since=midnight)

    assert counters.new_done == 2
    assert counters.reviews_done == 1
    assert counters.remaining_new(SchedulerSettings(new_cards_per_day=1)) == 0


# --- Requeue policy ---

def test_short_learning_step_requeues_immediately(make_card, now):
    card = make_card(state=CardState.LEARNING, due_at=now + timedelta(seconds=30))
    assert classify_requeue(card, now) == RequeueAction.IMMEDIATE


def test_horizon_boundary_is_immediate(make_card, now):
    card = make_card(state=CardState.RELEARNING, interval_days=1, due_at=now + timedelta(seconds=60))
    assert classify_requeue(card, now) == RequeueAction.IMMEDIATE


def test_longer_learning_step_is_parked(make_card, now):
    card = make_card(state=CardState.LEARNING, due_at=now + timedelta(minutes=10))
    assert classify_requeue(card, now) == RequeueAction.PARKED


def test_review_card_leaves_session(make_card, now):
    card = make_card(state=CardState.REVIEW, interval_days=1, due_at=now + timedelta(days=1))
    assert classify_requeue(card, now) == RequeueAction.DONE


def test_reinsert_position():
    assert reinsert_position(0, 10) == 3
    assert reinsert_position(4, 10) == 7
    assert reinsert_position(0, 2) == 2
    assert reinsert_position(5, 6) == 6
    assert reinsert_position(0, 0) == 0
