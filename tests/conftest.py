"""
Shared fixtures: fixed clock, card factory, SQLite store, fake media store
and an in-memory .apkg builder.
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add src directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from anki_fixtures import add_card, add_note, collection_bytes, init_collection, package_apkg  # noqa: E402
from card_model import Card, CardState  # noqa: E402
from card_store import CardStore  # noqa: E402
from config import SchedulerSettings  # noqa: E402
from errors import ResourceError  # noqa: E402


NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class RecordingMedia:
    """Media collaborator that records uploads; filenames in ``fail`` raise ResourceError."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.uploads = []

    def upload(self, path, data, content_type):
        if os.path.basename(path) in self.fail:
            raise ResourceError(f"upload of {path} refused")
        self.uploads.append((path, data, content_type))
        return f'https://media.test/{path}'


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    return SchedulerSettings()


@pytest.fixture
def make_card():
    def factory(state=CardState.NEW, due_at=None, **fields):
        fields.setdefault('deck_id', 'deck-1')
        fields.setdefault('user_id', 'alice')
        fields.setdefault('front', 'hola')
        fields.setdefault('back', 'hello')
        fields.setdefault('created_at', NOW - timedelta(days=30))
        return Card(state=state, due_at=due_at or NOW, **fields)
    return factory


@pytest.fixture
def store(tmp_path):
    return CardStore(str(tmp_path / 'cards.db'))


@pytest.fixture
def media():
    return RecordingMedia()


@pytest.fixture
def build_apkg():
    """
    Builds .apkg bytes.

    cards: dicts with add_card keyword arguments (card_id, note_id, deck_id, queue, ...)
    notes: {note_id: [front, back]}; defaults to one note per card with 'Front N'/'Back N'
    """
    def builder(cards, notes=None, crt=1700000000, decks=None, media=None,
                collection_name='collection.anki21', extra_entries=None, after_build=None):
        decks = {2: 'Spanish'} if decks is None else decks
        if notes is None:
            notes = {c['note_id']: [f"Front {c['note_id']}", f"Back {c['note_id']}"] for c in cards}

        def build(conn):
            init_collection(conn, crt=crt, decks=decks)
            for note_id, fields in notes.items():
                add_note(conn, note_id, fields)
            for card in cards:
                add_card(conn, **card)
            if after_build:
                after_build(conn)

        return package_apkg(collection_bytes(build), media=media,
                            collection_name=collection_name, extra_entries=extra_entries)
    return builder
