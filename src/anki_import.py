"""
Anki Collection Import

Turns an .apkg archive into decks and cards that are valid inputs to the
scheduler.

Pipeline:
1. Archive inspection: find the collection database (newest name wins)
2. Collection metadata: validate the creation timestamp and the deck tree
3. Media extraction: upload images, map filename -> public URL
4. Deck hierarchy: find or create every 'Parent::Child' segment
5. Per-card normalization: state, due date, ease, interval, content
6. Aggregate quality gate: abort when too many cards failed
7. Cleanup: the temporary database file is removed on every exit path

Collaborators (duck-typed):
    decks.find_deck(user_id, name, parent_deck_id) -> Deck | None
    decks.create_deck(user_id, name, parent_deck_id) -> Deck
    media.upload(path, data, content_type) -> public URL (raises ResourceError)
    cards.insert_card(card)

Metadata is validated before any media is uploaded, so a corrupted export
aborts without side effects.
"""

import io
import json
import logging
import math
import os
import sqlite3
import zipfile
import zlib
from contextlib import closing
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from anki_content import decode_html_entities, rewrite_media_urls, split_fields
from anki_schema import (
    COLLECTION_ENTRY_NAMES, DEFAULT_DECK_ID, MEDIA_MANIFEST_NAME,
    QUEUE_DAY_LEARNING, QUEUE_LEARNING, QUEUE_NEW, QUEUE_REVIEW, QUEUE_SUSPENDED,
    QUEUE_SCHED_BURIED, QUEUE_USER_BURIED, TYPE_LEARNING, TYPE_NEW, TYPE_RELEARNING, TYPE_REVIEW,
)
from card_model import (
    DEFAULT_EASE, MAX_EASE, MIN_EASE, Card, CardState,
    from_epoch_ms, from_epoch_seconds, split_deck_path, to_epoch_ms, utc_now, validate_card,
)
from errors import CorruptDataError, InvalidArchiveError, ResourceError, ThresholdExceededError, ValidationError
from tmp_cleanup import temporary_collection

logger = logging.getLogger(__name__)


DEFAULT_FAILURE_THRESHOLD = 0.10

# Anything above this is later than year 3000 (seconds)
MAX_TIMESTAMP_SECONDS = 32503680000
# queue=1 'due' values below this are not epoch seconds (before 2001)
MIN_LEARNING_TIMESTAMP = 1000000000
# Anki card ids are creation times in epoch ms; below this they are not
MIN_CARD_ID_MS = 1000000000000

IMAGE_CONTENT_TYPES = {
    '.png': 'image/png',
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.gif': 'image/gif',
    '.svg': 'image/svg+xml',
    '.webp': 'image/webp',
    '.bmp': 'image/bmp',
    '.ico': 'image/x-icon',
}

SKIP_DEFAULT_DECK = 'default_deck'
SKIP_MISSING_NOTE = 'missing_note'
SKIP_MISSING_DECK = 'missing_deck'


@dataclass
class CardFailure:
    source_id: int
    reason: str


@dataclass
class ImportSummary:
    total_cards: int = 0
    imported: int = 0
    failed: int = 0
    skipped: Dict[str, int] = field(default_factory=dict)
    decks_touched: int = 0
    media_uploaded: int = 0
    media_failed: int = 0
    warnings: List[str] = field(default_factory=list)
    failures: List[CardFailure] = field(default_factory=list)

    def skip(self, reason):
        self.skipped[reason] = self.skipped.get(reason, 0) + 1

    @property
    def processed(self):
        """Cards that count towards the failure rate."""
        return self.total_cards - self.skipped.get(SKIP_DEFAULT_DECK, 0)

    @property
    def failure_rate(self):
        return self.failed / self.processed if self.processed > 0 else 0.0

    def to_dict(self):
        return {
            'success': True,
            'total': self.total_cards,
            'imported': self.imported,
            'failed': self.failed,
            'skipped': dict(self.skipped),
            'decks': self.decks_touched,
            'mediaUploaded': self.media_uploaded,
            'mediaFailed': self.media_failed,
            'warnings': list(self.warnings),
            'failures': [{'sourceId': f.source_id, 'reason': f.reason} for f in self.failures],
        }


# --- Value normalization ---

def validate_timestamp(value, field_name, allow_negative=False) -> Optional[float]:
    """
    Returns ``value`` as a number, or None if it is null, non-numeric,
    negative (unless allowed) or implausibly large.
    """
    if value is None:
        logger.warning(f"[ANKI IMPORT] {field_name} is null")
        return None
    if isinstance(value, bool):
        logger.warning(f"[ANKI IMPORT] {field_name} is not numeric: {value!r}")
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.warning(f"[ANKI IMPORT] {field_name} is not numeric: {value!r}")
        return None
    if math.isnan(number) or math.isinf(number):
        logger.warning(f"[ANKI IMPORT] {field_name} is not a finite number: {value!r}")
        return None
    if number < 0 and not allow_negative:
        logger.warning(f"[ANKI IMPORT] {field_name} is negative: {number}")
        return None
    if number > MAX_TIMESTAMP_SECONDS:
        logger.warning(f"[ANKI IMPORT] {field_name} is unreasonably large: {number}")
        return None
    return number


def _state_from_type(type_):
    if type_ == TYPE_NEW:
        return CardState.NEW
    if type_ in (TYPE_LEARNING, TYPE_RELEARNING):
        return CardState.LEARNING
    if type_ != TYPE_REVIEW:
        logger.warning(f"[ANKI IMPORT] Unknown card type {type_!r}, importing as review")
    return CardState.REVIEW


def map_state(queue, type_):
    """
    Maps Anki (queue, type) to (state, suspended).

    Suspended (-1) keeps the flag. Buried (-2, -3) is a same-day hide in
    Anki and is imported as not suspended, with the state taken from type.
    """
    if queue == QUEUE_SUSPENDED:
        return _state_from_type(type_), True
    if queue in (QUEUE_USER_BURIED, QUEUE_SCHED_BURIED):
        return _state_from_type(type_), False
    if queue == QUEUE_NEW:
        return CardState.NEW, False
    if queue in (QUEUE_LEARNING, QUEUE_DAY_LEARNING):
        return CardState.LEARNING, False
    if queue == QUEUE_REVIEW:
        return CardState.REVIEW, False
    logger.warning(f"[ANKI IMPORT] Unknown queue {queue!r}, importing as new")
    return CardState.NEW, False


def normalize_due(queue, due, collection_created, now):
    """
    Interprets Anki's overloaded 'due' field.

    - queue 0: sort position, not a date -> now
    - queue 1: epoch seconds (only when it looks like a post-2001 timestamp)
    - queue 2, 3 and negative queues: days since collection creation
    Anything that does not yield a valid instant falls back to now.
    """
    if queue == QUEUE_NEW:
        return now

    if queue == QUEUE_LEARNING:
        seconds = validate_timestamp(due, 'due (learning)')
        if seconds is not None and seconds > MIN_LEARNING_TIMESTAMP:
            due_at = from_epoch_seconds(seconds)
            if due_at is not None:
                return due_at
        logger.warning(f"[ANKI IMPORT] Learning card with invalid due timestamp: {due!r}, using now")
        return now

    if queue in (QUEUE_REVIEW, QUEUE_DAY_LEARNING) or (isinstance(queue, int) and queue < 0):
        days = validate_timestamp(due, 'due (day offset)', allow_negative=True)
        if days is not None:
            try:
                return collection_created + timedelta(days=days)
            except OverflowError:
                pass
        logger.warning(f"[ANKI IMPORT] Card in queue {queue} with invalid due day: {due!r}, using now")
        return now

    logger.warning(f"[ANKI IMPORT] Unknown queue state: {queue!r}, using now for due date")
    return now


def normalize_ease(factor):
    """2500 -> 2.5; missing or out-of-range values fall back to the default."""
    if isinstance(factor, (int, float)) and not isinstance(factor, bool) and factor > 0:
        ease = factor / 1000
        if MIN_EASE <= ease <= MAX_EASE:
            return ease
    return DEFAULT_EASE


def normalize_interval(ivl, state):
    # negative ivl is intraday learning (seconds) in Anki
    if state == CardState.NEW:
        return 0
    if isinstance(ivl, (int, float)) and not isinstance(ivl, bool) and ivl < 0:
        return 0
    return ivl


def source_creation_time(card_id, now):
    if isinstance(card_id, int) and MIN_CARD_ID_MS <= card_id <= to_epoch_ms(now):
        created = from_epoch_ms(card_id)
        if created is not None:
            return created
    return now


# --- Pipeline steps ---

def _open_archive(archive_bytes):
    try:
        return zipfile.ZipFile(io.BytesIO(archive_bytes))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, TypeError, ValueError) as e:
        raise InvalidArchiveError(f"Invalid .apkg file: not a readable zip archive ({e})")


def find_collection_entry(entries):
    for name in COLLECTION_ENTRY_NAMES:
        if name in entries:
            return name
    return None


def _read_entry(archive, name):
    try:
        return archive.read(name)
    except (zipfile.BadZipFile, RuntimeError, OSError, zlib.error) as e:
        raise InvalidArchiveError(f"Invalid .apkg file: entry '{name}' is unreadable ({e})")


def _check_tables(conn, entry_name):
    try:
        tables = [row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")]
    except sqlite3.DatabaseError as e:
        raise InvalidArchiveError(f"Invalid .apkg file: '{entry_name}' is not a SQLite database ({e})")
    logger.debug(f"[ANKI IMPORT] Tables in database: {tables}")
    if 'col' not in tables:
        raise InvalidArchiveError(f"Unsupported Anki format. Found tables: {', '.join(tables) or 'none'}")


def read_collection_metadata(conn):
    """
    Returns (collection creation instant, [(anki deck id, deck name), ...]).

    Raises:
        CorruptDataError: invalid creation timestamp or unparsable deck tree
    """
    try:
        row = conn.execute("SELECT decks, crt FROM col LIMIT 1").fetchone()
    except sqlite3.DatabaseError as e:
        raise CorruptDataError(f"Failed to read collection metadata from Anki database: {e}")
    if not row:
        raise CorruptDataError("Failed to read collection metadata from Anki database: col is empty")

    crt = validate_timestamp(row['crt'], 'collection.crt')
    created = from_epoch_seconds(crt) if crt is not None else None
    if created is None:
        raise CorruptDataError(f"Invalid collection creation timestamp in Anki database: {row['crt']!r}")

    try:
        deck_tree = json.loads(row['decks'])
    except (TypeError, ValueError) as e:
        raise CorruptDataError(f"Deck hierarchy is not valid JSON: {e}")
    if not isinstance(deck_tree, dict):
        raise CorruptDataError("Deck hierarchy is not a JSON object")

    decks = []
    for deck_key, deck_data in deck_tree.items():
        try:
            anki_id = int(deck_key)
        except ValueError:
            raise CorruptDataError(f"Deck hierarchy has a non-numeric deck id: {deck_key!r}")
        if not isinstance(deck_data, dict) or not isinstance(deck_data.get('name'), str):
            raise CorruptDataError(f"Deck {deck_key} has no name")
        decks.append((anki_id, deck_data['name']))

    logger.info(f"[ANKI IMPORT] Collection created: {created.isoformat()}, {len(decks)} decks")
    return created, decks


def _read_media_manifest(archive, entries):
    if MEDIA_MANIFEST_NAME not in entries:
        return {}
    try:
        manifest = json.loads(_read_entry(archive, MEDIA_MANIFEST_NAME).decode('utf-8'))
    except (UnicodeDecodeError, ValueError, InvalidArchiveError) as e:
        logger.warning(f"[ANKI IMPORT] Ignoring unreadable media manifest: {e}")
        return {}
    if not isinstance(manifest, dict):
        logger.warning("[ANKI IMPORT] Ignoring media manifest that is not a JSON object")
        return {}
    return {str(key): str(value) for key, value in manifest.items()}


def upload_media(archive, entries, owner_id, media, summary):
    """
    Uploads every image entry and returns {original filename: public URL}.

    A failed upload is counted and skipped; the cards referencing it keep
    their original reference.
    """
    manifest = _read_media_manifest(archive, entries)
    media_urls = {}

    for entry in entries:
        if entry in COLLECTION_ENTRY_NAMES or entry == MEDIA_MANIFEST_NAME:
            continue
        filename = manifest.get(entry, entry)
        content_type = IMAGE_CONTENT_TYPES.get(os.path.splitext(filename.lower())[1])
        if content_type is None:
            continue

        try:
            payload = _read_entry(archive, entry)
            public_url = media.upload(f"{owner_id}/anki-media/{filename}", payload, content_type)
        except (InvalidArchiveError, ResourceError) as e:
            summary.media_failed += 1
            logger.warning(f"[ANKI IMPORT] Failed to upload {filename}: {e}")
            continue

        if not public_url:
            summary.media_failed += 1
            logger.warning(f"[ANKI IMPORT] Upload of {filename} returned no public URL")
            continue
        media_urls[filename] = public_url
        logger.debug(f"[ANKI IMPORT] Uploaded {filename} -> {public_url}")

    summary.media_uploaded = len(media_urls)
    if summary.media_failed:
        summary.warnings.append(f"{summary.media_failed} media files could not be uploaded")
    logger.info(f"[ANKI IMPORT] Uploaded {summary.media_uploaded} media files ({summary.media_failed} failed)")
    return media_urls


class DeckResolver:
    """Finds or creates each segment of a deck path, caching by full path within one import."""

    def __init__(self, owner_id, decks):
        self.owner_id = owner_id
        self.decks = decks
        self.cache = {}

    def resolve(self, segments):
        parent_id = None
        for depth, name in enumerate(segments):
            full_path = '::'.join(segments[:depth + 1])
            if full_path in self.cache:
                parent_id = self.cache[full_path]
                continue

            deck = self.decks.find_deck(self.owner_id, name, parent_id)
            if deck is None:
                deck = self.decks.create_deck(self.owner_id, name, parent_id)
                logger.info(f"[ANKI IMPORT] Created deck '{full_path}' ({deck.id})")
            parent_id = deck.id
            self.cache[full_path] = parent_id
        return parent_id


def create_decks(deck_list, owner_id, decks):
    """Returns ({anki deck id: local deck id}, number of decks touched)."""
    resolver = DeckResolver(owner_id, decks)
    deck_map = {}
    for anki_id, name in sorted(deck_list, key=lambda item: item[1]):
        if anki_id == DEFAULT_DECK_ID:
            logger.info(f"[ANKI IMPORT] Skipping Anki default deck {anki_id} ('{name}')")
            continue
        segments = split_deck_path(name)
        if not segments:
            logger.warning(f"[ANKI IMPORT] Deck {anki_id} has an empty name, its cards will be skipped")
            continue
        deck_map[anki_id] = resolver.resolve(segments)
    return deck_map, len(resolver.cache)


def normalize_card(row, flds, deck_id, owner_id, collection_created, media_urls, now):
    """
    Builds a validated Card from one Anki cards row and its note fields.

    Raises:
        ValidationError: If the normalized card breaks the Card State Model
    """
    fields = split_fields(flds)
    unresolved = []
    front = rewrite_media_urls(decode_html_entities(fields[0]), media_urls, unresolved)
    back = rewrite_media_urls(decode_html_entities(fields[1] if len(fields) > 1 else ''), media_urls, unresolved)
    if unresolved:
        logger.warning(f"[ANKI IMPORT] Card {row['id']}: unresolved media {unresolved}")

    state, suspended = map_state(row['queue'], row['type'])
    card = Card(
        deck_id=deck_id,
        user_id=owner_id,
        front=front,
        back=back,
        state=state,
        suspended=suspended,
        due_at=normalize_due(row['queue'], row['due'], collection_created, now),
        interval_days=normalize_interval(row['ivl'], state),
        ease=normalize_ease(row['factor']),
        learning_step_index=0,
        reps=row['reps'],
        lapses=row['lapses'],
        created_at=source_creation_time(row['id'], now),
    )
    return validate_card(card)


def import_cards(conn, owner_id, deck_map, collection_created, media_urls, cards, summary, now):
    try:
        notes = {row['id']: row['flds'] for row in conn.execute("SELECT id, flds FROM notes")}
        card_rows = conn.execute("""
            SELECT id, nid, did, type, queue, ivl, factor, reps, lapses, due
            FROM cards
            ORDER BY id
        """).fetchall()
    except sqlite3.DatabaseError as e:
        raise CorruptDataError(f"Failed to read notes and cards from Anki database: {e}")

    summary.total_cards = len(card_rows)
    logger.info(f"[ANKI IMPORT] Read from Anki DB: {len(notes)} notes, {len(card_rows)} cards")

    for row in card_rows:
        flds = notes.get(row['nid'])
        if flds is None:
            summary.skip(SKIP_MISSING_NOTE)
            continue
        if row['did'] == DEFAULT_DECK_ID:
            summary.skip(SKIP_DEFAULT_DECK)
            continue
        deck_id = deck_map.get(row['did'])
        if deck_id is None:
            summary.skip(SKIP_MISSING_DECK)
            continue

        try:
            card = normalize_card(row, flds, deck_id, owner_id, collection_created, media_urls, now)
            cards.insert_card(card)
        except (ValidationError, ResourceError) as e:
            summary.failed += 1
            summary.failures.append(CardFailure(source_id=row['id'], reason=str(e)))
            logger.warning(f"[ANKI IMPORT] Card {row['id']} failed: {e}")
            continue
        except Exception as e:
            # one card's content must not abort the import; the failure gate decides
            summary.failed += 1
            summary.failures.append(CardFailure(source_id=row['id'], reason=f"{type(e).__name__}: {e}"))
            logger.exception(f"[ANKI IMPORT] Card {row['id']} failed unexpectedly: {e}")
            continue
        summary.imported += 1


def check_failure_rate(summary, threshold):
    if summary.failure_rate > threshold:
        error = ThresholdExceededError(summary.failed, summary.processed, threshold)
        logger.error(f"[ANKI IMPORT] CRITICAL: {error}")
        raise error
    if summary.failed:
        summary.warnings.append(f"{summary.failed} cards failed to import")
        logger.warning(f"[ANKI IMPORT] WARNING: {summary.failed} cards failed to import")


def import_collection(archive_bytes, owner_id, decks, media, cards, now=None,
                      failure_threshold=DEFAULT_FAILURE_THRESHOLD) -> ImportSummary:
    """
    Imports an .apkg archive for ``owner_id``.

    Returns:
        ImportSummary with imported/failed/skipped counts and warnings

    Raises:
        InvalidArchiveError: No recognizable collection database
        CorruptDataError: Unusable creation timestamp or deck tree
        ThresholdExceededError: Too many cards failed (after all were attempted)
        ResourceError: The collection could not be staged on disk
    """
    now = now or utc_now()
    summary = ImportSummary()

    with _open_archive(archive_bytes) as archive:
        entries = [info.filename for info in archive.infolist() if not info.is_dir()]
        logger.info(f"[ANKI IMPORT] Files in .apkg: {entries}")

        entry_name = find_collection_entry(entries)
        if entry_name is None:
            raise InvalidArchiveError("Invalid .apkg file: no collection file found", entries)
        logger.info(f"[ANKI IMPORT] Using collection file: {entry_name}")

        with temporary_collection(_read_entry(archive, entry_name)) as db_path:
            with closing(sqlite3.connect(db_path)) as conn:
                conn.row_factory = sqlite3.Row
                _check_tables(conn, entry_name)
                collection_created, deck_list = read_collection_metadata(conn)

                media_urls = upload_media(archive, entries, owner_id, media, summary)
                deck_map, summary.decks_touched = create_decks(deck_list, owner_id, decks)
                import_cards(conn, owner_id, deck_map, collection_created, media_urls, cards, summary, now)

    logger.info(f"[ANKI IMPORT] Import summary: total={summary.total_cards}, imported={summary.imported}, "
                f"skipped={summary.skipped}, failed={summary.failed}")
    check_failure_rate(summary, failure_threshold)
    return summary
