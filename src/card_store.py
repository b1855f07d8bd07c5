"""
CardStore - SQLite persistence for decks, cards, review log and settings

Every public method opens its own connection, commits on success and rolls
back on error, so a store instance can be shared between requests.

Card updates are optimistic: ``update_card(card, expected_version)`` only
writes if the stored row still has ``expected_version`` and bumps it by one.
A mismatch means another review landed first and raises ConflictError.

Usage:
    store = CardStore('/tmp/lifecycle.db')
    deck = store.create_deck('alice', 'Spanish')
    store.insert_card(card)
    cards = store.find_cards('alice', deck_ids=[deck.id])

Instants are stored as integer epoch milliseconds so they sort in SQL.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterable, List, Optional

from card_model import (
    Card, CardState, CardType, Deck, Rating, ReviewLogEntry,
    build_deck_paths, descendant_deck_ids, from_epoch_ms, to_epoch_ms, utc_now, validate_card,
)
from config import SchedulerSettings
from errors import ConflictError, NotFoundError, ResourceError

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS decks (
        id              TEXT PRIMARY KEY,
        user_id         TEXT NOT NULL,
        name            TEXT NOT NULL,
        parent_deck_id  TEXT,
        created_at      INTEGER
    );
    CREATE TABLE IF NOT EXISTS cards (
        id                  TEXT PRIMARY KEY,
        deck_id             TEXT NOT NULL,
        user_id             TEXT NOT NULL,
        front               TEXT NOT NULL,
        back                TEXT NOT NULL,
        state               TEXT NOT NULL,
        suspended           INTEGER NOT NULL DEFAULT 0,
        due_at              INTEGER NOT NULL,
        interval_days       REAL NOT NULL DEFAULT 0,
        ease                REAL NOT NULL,
        learning_step_index INTEGER NOT NULL DEFAULT 0,
        reps                INTEGER NOT NULL DEFAULT 0,
        lapses              INTEGER NOT NULL DEFAULT 0,
        last_reviewed_at    INTEGER,
        created_at          INTEGER,
        card_type           TEXT NOT NULL DEFAULT 'basic',
        version             INTEGER NOT NULL DEFAULT 1
    );
    CREATE TABLE IF NOT EXISTS review_log (
        id                  INTEGER PRIMARY KEY AUTOINCREMENT,
        card_id             TEXT NOT NULL,
        user_id             TEXT NOT NULL,
        deck_id             TEXT NOT NULL,
        rating              TEXT NOT NULL,
        reviewed_at         INTEGER NOT NULL,
        previous_state      TEXT NOT NULL,
        previous_interval   REAL NOT NULL,
        new_interval        REAL NOT NULL,
        new_due_at          INTEGER NOT NULL,
        elapsed_ms          INTEGER NOT NULL DEFAULT 0
    );
    CREATE TABLE IF NOT EXISTS settings (
        user_id     TEXT PRIMARY KEY,
        data        TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS ix_decks_user ON decks (user_id, parent_deck_id, name);
    CREATE INDEX IF NOT EXISTS ix_cards_due ON cards (user_id, deck_id, due_at);
    CREATE INDEX IF NOT EXISTS ix_review_log_user ON review_log (user_id, reviewed_at);
"""

_CARD_COLUMNS = (
    'id', 'deck_id', 'user_id', 'front', 'back', 'state', 'suspended', 'due_at',
    'interval_days', 'ease', 'learning_step_index', 'reps', 'lapses',
    'last_reviewed_at', 'created_at', 'card_type', 'version',
)


def _ms(value):
    return to_epoch_ms(value) if value is not None else None


def _instant(value):
    return from_epoch_ms(value) if value is not None else None


def _card_to_row(card):
    return (
        card.id, card.deck_id, card.user_id, card.front, card.back, card.state.value,
        int(card.suspended), to_epoch_ms(card.due_at), card.interval_days, card.ease,
        card.learning_step_index, card.reps, card.lapses, _ms(card.last_reviewed_at),
        _ms(card.created_at), card.card_type.value, card.version,
    )


def _row_to_card(row):
    return Card(
        id=row['id'],
        deck_id=row['deck_id'],
        user_id=row['user_id'],
        front=row['front'],
        back=row['back'],
        state=CardState(row['state']),
        suspended=bool(row['suspended']),
        due_at=_instant(row['due_at']),
        interval_days=row['interval_days'],
        ease=row['ease'],
        learning_step_index=row['learning_step_index'],
        reps=row['reps'],
        lapses=row['lapses'],
        last_reviewed_at=_instant(row['last_reviewed_at']),
        created_at=_instant(row['created_at']),
        card_type=CardType(row['card_type']),
        version=row['version'],
    )


def _row_to_deck(row):
    return Deck(
        id=row['id'],
        user_id=row['user_id'],
        name=row['name'],
        parent_deck_id=row['parent_deck_id'],
        created_at=_instant(row['created_at']),
    )


def _row_to_log_entry(row):
    return ReviewLogEntry(
        card_id=row['card_id'],
        rating=Rating(row['rating']),
        reviewed_at=_instant(row['reviewed_at']),
        previous_state=CardState(row['previous_state']),
        previous_interval=row['previous_interval'],
        new_interval=row['new_interval'],
        new_due_at=_instant(row['new_due_at']),
        elapsed_ms=row['elapsed_ms'],
    )


class CardStore:

    def __init__(self, db_path):
        self.db_path = db_path
        with self._connect() as conn:
            conn.executescript(SCHEMA_SQL)
        logger.info(f"Card store ready at {db_path}")

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(self.db_path, timeout=10)
        except sqlite3.Error as e:
            raise ResourceError(f"Could not open card store {self.db_path}: {e}")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Card store error: {e}")
            raise ResourceError(f"Card store error: {e}")
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- Cards ---

    def insert_card(self, card: Card) -> Card:
        validate_card(card)
        if card.created_at is None:
            card = replace(card, created_at=utc_now())
        placeholders = ', '.join('?' for _ in _CARD_COLUMNS)
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO cards ({', '.join(_CARD_COLUMNS)}) VALUES ({placeholders})",
                _card_to_row(card),
            )
        return card

    def get_card(self, user_id, card_id) -> Card:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM cards WHERE id = ? AND user_id = ?", (card_id, user_id)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Card {card_id} not found")
        return _row_to_card(row)

    def find_cards(self, user_id, deck_ids: Optional[Iterable[str]] = None, states=None, due_before=None,
                   include_suspended=False) -> List[Card]:
        """Cards of one user, optionally limited to decks, states and to cards due at or before an instant."""
        query = "SELECT * FROM cards WHERE user_id = ?"
        params = [user_id]
        if deck_ids is not None:
            deck_ids = list(deck_ids)
            if not deck_ids:
                return []
            query += f" AND deck_id IN ({', '.join('?' for _ in deck_ids)})"
            params.extend(deck_ids)
        if states is not None:
            states = [CardState.parse(state).value for state in states]
            if not states:
                return []
            query += f" AND state IN ({', '.join('?' for _ in states)})"
            params.extend(states)
        if due_before is not None:
            query += " AND due_at <= ?"
            params.append(to_epoch_ms(due_before))
        if not include_suspended:
            query += " AND suspended = 0"
        query += " ORDER BY due_at, id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_card(row) for row in rows]

    def _update_card(self, conn, card, expected_version):
        row = _card_to_row(replace(card, version=expected_version + 1))
        assignments = ', '.join(f'{column} = ?' for column in _CARD_COLUMNS[1:])
        cursor = conn.execute(
            f"UPDATE cards SET {assignments} WHERE id = ? AND user_id = ? AND version = ?",
            row[1:] + (card.id, card.user_id, expected_version),
        )
        if cursor.rowcount == 0:
            exists = conn.execute(
                "SELECT version FROM cards WHERE id = ? AND user_id = ?", (card.id, card.user_id)
            ).fetchone()
            if exists is None:
                raise NotFoundError(f"Card {card.id} not found")
            logger.warning(f"Version conflict on card {card.id}: expected {expected_version}, "
                           f"found {exists['version']}")
            raise ConflictError(
                f"Card {card.id} was modified by another request (expected version "
                f"{expected_version}, found {exists['version']}). Reload the card and retry."
            )
        return replace(card, version=expected_version + 1)

    def update_card(self, card: Card, expected_version: int) -> Card:
        """
        Writes ``card`` if the stored version still equals ``expected_version``.

        Returns:
            Card: The stored card with its new version

        Raises:
            ConflictError: The card changed since it was read
            NotFoundError: The card does not exist
        """
        validate_card(card)
        with self._connect() as conn:
            return self._update_card(conn, card, expected_version)

    def save_review(self, card: Card, expected_version: int, entry: ReviewLogEntry) -> Card:
        """Updates the card and appends its review log entry in one transaction."""
        validate_card(card)
        with self._connect() as conn:
            stored = self._update_card(conn, card, expected_version)
            self._append_review_log(conn, entry, card.user_id, card.deck_id)
        return stored

    def set_suspended(self, user_id, card_id, suspended) -> Card:
        card = self.get_card(user_id, card_id)
        return self.update_card(replace(card, suspended=bool(suspended)), card.version)

    # --- Review log ---

    def _append_review_log(self, conn, entry, user_id, deck_id):
        conn.execute("""
            INSERT INTO review_log (card_id, user_id, deck_id, rating, reviewed_at, previous_state,
                                    previous_interval, new_interval, new_due_at, elapsed_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.card_id, user_id, deck_id, entry.rating.value, to_epoch_ms(entry.reviewed_at),
            entry.previous_state.value, entry.previous_interval, entry.new_interval,
            to_epoch_ms(entry.new_due_at), entry.elapsed_ms,
        ))

    def append_review_log(self, entry: ReviewLogEntry, user_id, deck_id):
        with self._connect() as conn:
            self._append_review_log(conn, entry, user_id, deck_id)

    def review_log_since(self, user_id, since) -> List[ReviewLogEntry]:
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM review_log
                WHERE user_id = ? AND reviewed_at >= ?
                ORDER BY reviewed_at, id
            """, (user_id, to_epoch_ms(since))).fetchall()
        return [_row_to_log_entry(row) for row in rows]

    def count_reviews_since(self, user_id, since, previous_state, deck_ids=None):
        """Reviews logged since ``since`` of cards that were in ``previous_state`` when graded."""
        query = "SELECT COUNT(*) FROM review_log WHERE user_id = ? AND reviewed_at >= ? AND previous_state = ?"
        params = [user_id, to_epoch_ms(since), CardState.parse(previous_state).value]
        if deck_ids is not None:
            deck_ids = list(deck_ids)
            if not deck_ids:
                return 0
            query += f" AND deck_id IN ({', '.join('?' for _ in deck_ids)})"
            params.extend(deck_ids)
        with self._connect() as conn:
            return conn.execute(query, params).fetchone()[0]

    # --- Decks ---

    def find_deck(self, user_id, name, parent_deck_id=None) -> Optional[Deck]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM decks WHERE user_id = ? AND name = ? AND parent_deck_id IS ?",
                (user_id, name, parent_deck_id),
            ).fetchone()
        return _row_to_deck(row) if row else None

    def create_deck(self, user_id, name, parent_deck_id=None) -> Deck:
        deck = Deck(user_id=user_id, name=name, parent_deck_id=parent_deck_id, created_at=utc_now())
        with self._connect() as conn:
            if parent_deck_id is not None:
                parent = conn.execute(
                    "SELECT id FROM decks WHERE id = ? AND user_id = ?", (parent_deck_id, user_id)
                ).fetchone()
                if parent is None:
                    raise NotFoundError(f"Parent deck {parent_deck_id} not found")
            conn.execute(
                "INSERT INTO decks (id, user_id, name, parent_deck_id, created_at) VALUES (?, ?, ?, ?, ?)",
                (deck.id, user_id, name, parent_deck_id, _ms(deck.created_at)),
            )
        return deck

    def get_deck(self, user_id, deck_id) -> Deck:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM decks WHERE id = ? AND user_id = ?", (deck_id, user_id)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Deck {deck_id} not found")
        return _row_to_deck(row)

    def list_decks(self, user_id) -> List[Deck]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM decks WHERE user_id = ? ORDER BY name, id", (user_id,)
            ).fetchall()
        return [_row_to_deck(row) for row in rows]

    def descendant_deck_ids(self, user_id, deck_id) -> List[str]:
        self.get_deck(user_id, deck_id)
        return descendant_deck_ids(self.list_decks(user_id), deck_id)

    def deck_paths(self, user_id):
        """{deck id: 'Parent::Child'}; raises CorruptDataError on a cyclic parent chain."""
        return build_deck_paths(self.list_decks(user_id))

    def count_cards(self, user_id, deck_ids):
        deck_ids = list(deck_ids)
        if not deck_ids:
            return 0
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM cards WHERE user_id = ? AND deck_id IN ({', '.join('?' for _ in deck_ids)})",
                [user_id] + deck_ids,
            ).fetchone()
        return row[0]

    def delete_deck(self, user_id, deck_id):
        """
        Deletes a deck, its sub-decks, their cards and review history.

        Returns:
            dict: Number of decks and cards removed
        """
        deck_ids = self.descendant_deck_ids(user_id, deck_id)
        marks = ', '.join('?' for _ in deck_ids)
        with self._connect() as conn:
            conn.execute(
                f"DELETE FROM review_log WHERE user_id = ? AND deck_id IN ({marks})", [user_id] + deck_ids
            )
            cards = conn.execute(
                f"DELETE FROM cards WHERE user_id = ? AND deck_id IN ({marks})", [user_id] + deck_ids
            ).rowcount
            decks = conn.execute(
                f"DELETE FROM decks WHERE user_id = ? AND id IN ({marks})", [user_id] + deck_ids
            ).rowcount
        logger.info(f"Deleted deck {deck_id} for {user_id}: {decks} decks, {cards} cards")
        return {'decks': decks, 'cards': cards}

    # --- Settings ---

    def load_settings(self, user_id) -> SchedulerSettings:
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM settings WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            return SchedulerSettings()
        try:
            data = json.loads(row['data'])
        except ValueError:
            logger.warning(f"Stored settings for {user_id} are not valid JSON, using defaults")
            return SchedulerSettings()
        return SchedulerSettings.from_dict(data)

    def save_settings(self, user_id, settings: SchedulerSettings):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (user_id, data) VALUES (?, ?)",
                (user_id, json.dumps(settings.to_dict())),
            )
        return settings
