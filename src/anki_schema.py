"""
Anki Collection Format

Constants describing the Anki collection database (the SQLite file inside an
.apkg archive) and its schema DDL.

.apkg layout:
- collection.anki2 / collection.anki21: SQLite database (col, notes, cards, revlog)
- media: JSON manifest mapping numbered entries ("0", "1", ...) to filenames
- 0, 1, ...: media file payloads
"""

# Newest first: the first one present in the archive wins.
COLLECTION_ENTRY_NAMES = ('collection.anki22', 'collection.anki21', 'collection.anki2')
MEDIA_MANIFEST_NAME = 'media'

DEFAULT_DECK_ID = 1

# cards.queue
QUEUE_SCHED_BURIED = -3
QUEUE_USER_BURIED = -2
QUEUE_SUSPENDED = -1
QUEUE_NEW = 0
QUEUE_LEARNING = 1
QUEUE_REVIEW = 2
QUEUE_DAY_LEARNING = 3

# cards.type
TYPE_NEW = 0
TYPE_LEARNING = 1
TYPE_REVIEW = 2
TYPE_RELEARNING = 3

FIELD_SEPARATOR = '\x1f'


def get_anki_schema_sql():
    """
    SQL DDL for the tables of an Anki collection.

    Tables created:
    - col: Collection metadata (creation time, deck tree JSON, configs)
    - notes: Note content (fields separated by \\x1f)
    - cards: Scheduling state of each card
    - revlog: Review history
    """
    return """
        CREATE TABLE col (
            id              integer primary key,
            crt             integer not null, /* collection creation time in seconds */
            mod             integer not null, /* modification time in ms */
            scm             integer not null, /* schema modification time in ms */
            ver             integer not null,
            dty             integer not null,
            usn             integer not null,
            ls              integer not null,
            conf            text not null,    /* JSON */
            models          text not null,    /* JSON note types */
            decks           text not null,    /* JSON {id: {id, name, ...}}, names use '::' */
            dconf           text not null,    /* JSON deck options */
            tags            text not null
        );
        CREATE TABLE notes (
            id              integer primary key, /* epoch ms */
            guid            text not null,
            mid             integer not null,
            mod             integer not null,
            usn             integer not null,
            tags            text not null,
            flds            text not null,       /* fields separated by \\x1f */
            sfld            text not null,
            csum            integer not null,
            flags           integer not null,
            data            text not null
        );
        CREATE TABLE cards (
            id              integer primary key, /* epoch ms of creation */
            nid             integer not null,
            did             integer not null,
            ord             integer not null,
            mod             integer not null,
            usn             integer not null,
            type            integer not null, /* 0=new, 1=learning, 2=review, 3=relearning */
            queue           integer not null, /* -3/-2=buried, -1=suspended, 0=new, 1=learning, 2=review, 3=day learning */
            due             integer not null, /* new: sort index, queue 1: epoch seconds, otherwise: day offset from crt */
            ivl             integer not null, /* days, negative = seconds for intraday learning */
            factor          integer not null, /* ease in permille (2500 = 2.5) */
            reps            integer not null,
            lapses          integer not null,
            left            integer not null,
            odue            integer not null,
            odid            integer not null,
            flags           integer not null,
            data            text not null
        );
        CREATE TABLE revlog (
            id              integer primary key,
            cid             integer not null,
            usn             integer not null,
            ease            integer not null,
            ivl             integer not null,
            lastIvl         integer not null,
            factor          integer not null,
            time            integer not null,
            type            integer not null
        );
        CREATE INDEX ix_cards_nid ON cards (nid);
        CREATE INDEX ix_cards_sched ON cards (did, queue, due);
    """
