"""
Card Lifecycle Flask Application

Thin HTTP layer over the lifecycle engine:
- JWT authentication (identity = user id; tokens are issued elsewhere)
- SQLite card store (decks, cards, review log, settings)
- S3 media storage for imported images
- Anki .apkg import

Every error raised by the engine is a LifecycleError and is rendered as
{"error": message, "code": CODE} with the status the error class carries.
"""

import logging

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager, get_jwt_identity, jwt_required

import config
from anki_import import import_collection
from cache import TTLCache
from card_model import Rating, utc_now
from card_store import CardStore
from config import SchedulerSettings
from errors import InvalidArchiveError, LifecycleError, ThresholdExceededError, ValidationError
from media_storage import S3MediaStore
from review_service import build_study_queue, review_card
from scheduler import preview_intervals

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

# --- Configuration ---
app = Flask(__name__)
app.config['JWT_SECRET_KEY'] = config.JWT_SECRET_KEY
app.config['JWT_ACCESS_TOKEN_EXPIRES'] = config.JWT_ACCESS_TOKEN_EXPIRES
app.config['CARD_DB_PATH'] = config.CARD_DB_PATH
app.config['MAX_CONTENT_LENGTH'] = 100 * 1024 * 1024  # .apkg uploads

# Initialize JWT
jwt = JWTManager(app)

# CORS (allow requests from the web client)
CORS(app, supports_credentials=True)

# Per-user scheduler settings, shared by warm invocations
settings_cache = TTLCache(config.SETTINGS_CACHE_TTL)


# --- Collaborators ---

def get_store() -> CardStore:
    store = app.extensions.get('card_store')
    if store is None:
        store = CardStore(app.config['CARD_DB_PATH'])
        app.extensions['card_store'] = store
    return store


def get_media_store() -> S3MediaStore:
    media = app.extensions.get('media_store')
    if media is None:
        media = S3MediaStore(config.MEDIA_BUCKET, config.MEDIA_PUBLIC_BASE_URL)
        app.extensions['media_store'] = media
    return media


def get_settings(user_id) -> SchedulerSettings:
    settings = settings_cache.get(user_id)
    if settings is None:
        settings = get_store().load_settings(user_id)
        settings_cache.set(user_id, settings)
    return settings


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _optional_int(value, name):
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got {value!r}")


# --- Error handling ---

@app.errorhandler(LifecycleError)
def lifecycle_error(e):
    body = {"error": str(e), "code": e.code}
    if isinstance(e, ThresholdExceededError):
        body.update({"failed": e.failed, "processed": e.processed})
    if isinstance(e, InvalidArchiveError):
        body["entries"] = e.entries

    if e.status_code >= 500:
        app.logger.error(f"{e.code}: {e}")
    else:
        app.logger.warning(f"{e.code}: {e}")
    return jsonify(body), e.status_code


@app.errorhandler(500)
def internal_error(e):
    app.logger.exception(f"Internal error: {e}")
    return jsonify({"error": "Internal server error"}), 500


# --- Routes ---

@app.route('/api/health', methods=['GET'])
def health():
    return jsonify({"status": "ok"}), 200


@app.route('/api/decks', methods=['GET'])
@jwt_required()
def get_decks():
    """
    Lists the user's decks with their full 'Parent::Child' paths.

    Returns:
        200: {"decks": [{"id", "name", "path", "parentDeckId"}, ...]}
    """
    user_id = get_jwt_identity()
    store = get_store()
    decks = store.list_decks(user_id)
    paths = store.deck_paths(user_id)
    deck_list = [
        {"id": d.id, "name": d.name, "path": paths[d.id], "parentDeckId": d.parent_deck_id}
        for d in decks
    ]
    deck_list.sort(key=lambda d: d["path"].lower())
    return jsonify({"decks": deck_list}), 200


@app.route('/api/decks', methods=['POST'])
@jwt_required()
def create_deck():
    """
    Request body:
        {"name": str, "parentDeckId": str | null}

    Returns:
        201: {"id", "name", "parentDeckId"}
        400: empty name
        404: unknown parent
        409: a sibling deck with this name already exists
    """
    user_id = get_jwt_identity()
    data = _json_body()
    name = (data.get('name') or '').strip()
    parent_deck_id = data.get('parentDeckId')

    if not name:
        raise ValidationError("Deck name cannot be empty")

    store = get_store()
    if store.find_deck(user_id, name, parent_deck_id) is not None:
        app.logger.warning(f"[{user_id}] Duplicate deck name: {name}")
        return jsonify({"error": "A deck with this name already exists", "code": "DUPLICATE_DECK"}), 409

    deck = store.create_deck(user_id, name, parent_deck_id)
    app.logger.info(f"[{user_id}] Created deck '{name}' (ID: {deck.id})")
    return jsonify({"id": deck.id, "name": deck.name, "parentDeckId": deck.parent_deck_id}), 201


@app.route('/api/decks/<deck_id>', methods=['DELETE'])
@jwt_required()
def delete_deck(deck_id):
    """Deletes the deck, its sub-decks and all their cards."""
    user_id = get_jwt_identity()
    deleted = get_store().delete_deck(user_id, deck_id)
    app.logger.info(f"[{user_id}] Deleted deck {deck_id}: {deleted}")
    return jsonify({"message": "Deck deleted", "deleted": deleted}), 200


@app.route('/api/decks/<deck_id>/queue', methods=['GET'])
@jwt_required()
def get_queue(deck_id):
    """
    Study queue for a deck and its sub-decks.

    Query params:
        limit: optional cap on the number of cards

    Returns:
        200: {"cards": [...], "count": int}
    """
    user_id = get_jwt_identity()
    limit = _optional_int(request.args.get('limit'), 'limit')
    if limit is None:
        limit = config.MAX_QUEUE_SIZE

    queue = build_study_queue(get_store(), user_id, deck_id, get_settings(user_id), limit=limit)
    return jsonify({"cards": [card.to_dict() for card in queue], "count": len(queue)}), 200


@app.route('/api/cards/<card_id>/preview', methods=['GET'])
@jwt_required()
def preview_card(card_id):
    """What each answer button would schedule for this card right now."""
    user_id = get_jwt_identity()
    card = get_store().get_card(user_id, card_id)
    preview = preview_intervals(card, get_settings(user_id), utc_now())
    return jsonify({"cardId": card.id, "intervals": preview.to_dict()}), 200


@app.route('/api/review', methods=['POST'])
@jwt_required()
def submit_review():
    """
    Request body:
        {
            "cardId": str,
            "rating": "again" | "hard" | "good" | "easy" | 1-4,
            "timeTaken": int (ms, optional),
            "version": int (optional, version the client displayed)
        }

    Returns:
        200: {"card": {...}, "log": {...}}
        409: the card was reviewed concurrently
    """
    user_id = get_jwt_identity()
    data = _json_body()
    card_id = data.get('cardId')
    if not card_id:
        raise ValidationError("cardId is required")
    rating = Rating.parse(data.get('rating'))
    elapsed_ms = _optional_int(data.get('timeTaken'), 'timeTaken') or 0
    expected_version = _optional_int(data.get('version'), 'version')

    result = review_card(get_store(), user_id, card_id, rating, get_settings(user_id),
                         elapsed_ms=elapsed_ms, expected_version=expected_version)
    return jsonify({"card": result.card.to_dict(), "log": result.log_entry.to_dict()}), 200


@app.route('/api/import/anki', methods=['POST'])
@jwt_required()
def import_anki():
    """
    Imports an Anki .apkg upload (multipart field 'file').

    Returns:
        200: import summary
        400: not an .apkg, no collection inside, or too many failed cards
        422: corrupted collection metadata
        503: media storage or temp storage unavailable
    """
    user_id = get_jwt_identity()
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        raise ValidationError("No file uploaded")
    if not upload.filename.lower().endswith('.apkg'):
        raise ValidationError("Invalid file type. Please upload an .apkg file")

    archive_bytes = upload.read()
    app.logger.info(f"[{user_id}] [ANKI IMPORT] Processing {upload.filename} ({len(archive_bytes)} bytes)")

    store = get_store()
    summary = import_collection(
        archive_bytes,
        user_id,
        decks=store,
        media=get_media_store(),
        cards=store,
        failure_threshold=config.IMPORT_FAILURE_THRESHOLD,
    )
    app.logger.info(f"[{user_id}] [ANKI IMPORT] Imported {summary.imported} cards into {summary.decks_touched} decks")
    return jsonify(summary.to_dict()), 200


@app.route('/api/settings', methods=['GET'])
@jwt_required()
def get_user_settings():
    user_id = get_jwt_identity()
    return jsonify({"settings": get_settings(user_id).to_dict()}), 200


@app.route('/api/settings', methods=['PUT'])
@jwt_required()
def put_user_settings():
    """Replaces the user's scheduler settings; omitted fields take their defaults."""
    user_id = get_jwt_identity()
    settings = SchedulerSettings.from_dict(_json_body())
    get_store().save_settings(user_id, settings)
    settings_cache.invalidate(user_id)
    app.logger.info(f"[{user_id}] Updated scheduler settings")
    return jsonify({"settings": settings.to_dict()}), 200


# --- Local Development ---

if __name__ == '__main__':
    # For local testing only
    print("WARNING: Running Flask development server. NOT for production use.")
    app.run(host='0.0.0.0', port=8000, debug=True)
