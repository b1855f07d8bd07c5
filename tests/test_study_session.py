"""
Study session: immediate requeue, parking and the cancellable wake.
"""

import threading
import time
from dataclasses import replace
from datetime import timedelta

import pytest

from card_model import CardState, utc_now
from due_queue import RequeueAction
from study_session import ParkedSet, StudySession


@pytest.fixture
def cards(make_card):
    return [make_card(id=name) for name in 'abcde']


def _learning(card, due_at):
    return replace(card, state=CardState.LEARNING, due_at=due_at)


def test_immediate_requeue_reinserts_three_ahead(cards, now):
    session = StudySession(cards, clock=lambda: now)
    current = session.current()
    assert current.id == 'a'

    action = session.answer(_learning(current, now + timedelta(seconds=30)), now)

    assert action == RequeueAction.IMMEDIATE
    assert [c.id for c in session.queue] == ['b', 'c', 'd', 'a', 'e']
    assert session.current().id == 'b'


def test_immediate_requeue_in_short_queue(make_card, now):
    session = StudySession([make_card(id='a'), make_card(id='b')], clock=lambda: now)

    session.answer(_learning(session.current(), now + timedelta(seconds=10)), now)

    assert [c.id for c in session.queue] == ['b', 'a']


def test_last_card_requeues_onto_itself(make_card, now):
    session = StudySession([make_card(id='a')], clock=lambda: now)

    session.answer(_learning(session.current(), now + timedelta(seconds=10)), now)

    assert [c.id for c in session.queue] == ['a']
    assert session.current().id == 'a'


def test_longer_step_is_parked(cards, now):
    session = StudySession(cards, clock=lambda: now)

    action = session.answer(_learning(session.current(), now + timedelta(minutes=10)), now)

    assert action == RequeueAction.PARKED
    assert [c.id for c in session.queue] == ['b', 'c', 'd', 'e']
    assert 'a' in session.parked
    assert session.seconds_until_next(now) == 600


def test_graduated_card_leaves_session(cards, now):
    session = StudySession(cards, clock=lambda: now)
    graduated = replace(session.current(), state=CardState.REVIEW, interval_days=1,
                        due_at=now + timedelta(days=1))

    assert session.answer(graduated, now) == RequeueAction.DONE
    assert len(session.queue) == 4
    assert not session.has_parked


def test_parked_cards_are_admitted_when_due(make_card, now):
    session = StudySession([make_card(id='a')], clock=lambda: now)
    session.answer(_learning(session.current(), now + timedelta(minutes=10)), now)

    assert session.active_empty
    assert not session.is_finished
    assert session.admit_due(now + timedelta(minutes=5)) == []

    admitted = session.admit_due(now + timedelta(minutes=10))
    assert [c.id for c in admitted] == ['a']
    assert session.current().id == 'a'
    assert not session.has_parked


def test_parked_set_orders_by_due(make_card, now):
    parked = ParkedSet()
    parked.park(make_card(id='late', due_at=now + timedelta(minutes=5)))
    parked.park(make_card(id='early', due_at=now + timedelta(minutes=1)))

    assert parked.min_due_at() == now + timedelta(minutes=1)
    assert [c.id for c in parked.pop_due(now + timedelta(minutes=10))] == ['early', 'late']
    assert len(parked) == 0
    assert parked.seconds_until_next(now) is None


def test_remove_drops_card_everywhere(cards, now):
    session = StudySession(cards, clock=lambda: now)
    session.answer(_learning(session.current(), now + timedelta(minutes=10)), now)

    session.remove('a')
    session.remove('c')

    assert 'a' not in session.parked
    assert [c.id for c in session.queue] == ['b', 'd', 'e']


def test_answer_unknown_card_raises(cards, make_card, now):
    session = StudySession(cards, clock=lambda: now)
    with pytest.raises(ValueError):
        session.answer(make_card(id='zzz'), now)


def test_wait_for_parked_admits_due_card(make_card):
    session = StudySession([])
    session.parked.park(make_card(id='a', state=CardState.LEARNING, due_at=utc_now() + timedelta(milliseconds=50)))

    admitted = session.wait_for_parked()

    assert [c.id for c in admitted] == ['a']
    assert session.current().id == 'a'


def test_wait_for_parked_respects_max_wait(make_card, now):
    session = StudySession([], clock=lambda: now)
    session.parked.park(make_card(id='a', state=CardState.LEARNING, due_at=now + timedelta(hours=1)))

    assert session.wait_for_parked(max_wait=0.01) == []
    assert session.has_parked


def test_cancel_wakes_waiting_session(make_card):
    session = StudySession([])
    session.parked.park(make_card(id='a', state=CardState.LEARNING, due_at=utc_now() + timedelta(minutes=30)))

    timer = threading.Timer(0.05, session.cancel)
    timer.start()
    started = time.monotonic()
    admitted = session.wait_for_parked()
    timer.join()

    assert admitted == []
    assert time.monotonic() - started < 5
    assert session.cancelled
    assert session.is_finished


def test_nothing_parked_returns_immediately(now):
    session = StudySession([], clock=lambda: now)
    assert session.wait_for_parked() == []
    assert session.is_finished
