# studio_ingest/repositories/db.py
# sqlite3 plumbing: connections, schema, transactions.

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS staged_images (
    id                   TEXT PRIMARY KEY,
    user_id              INTEGER NOT NULL,
    original_filename    TEXT NOT NULL,
    temp_path            TEXT NOT NULL,
    file_size            INTEGER,
    thumbnail_path       TEXT,
    preview_path         TEXT,
    preview_width        INTEGER,
    preview_status       TEXT NOT NULL DEFAULT 'pending'
                         CHECK (preview_status IN ('pending','processing','ready','failed')),
    preview_attempted_at TEXT,
    preview_attempt      INTEGER NOT NULL DEFAULT 0,
    preview_error        TEXT,
    enhancement_status   TEXT NOT NULL DEFAULT 'none'
                         CHECK (enhancement_status IN ('none','requested','processing','ready','failed')),
    enhancement_width    INTEGER,
    enhancement_error    TEXT,
    culled               INTEGER NOT NULL DEFAULT 0,
    starred              INTEGER NOT NULL DEFAULT 0,
    rating               INTEGER NOT NULL DEFAULT 0 CHECK (rating BETWEEN 0 AND 5),
    rotation             INTEGER NOT NULL DEFAULT 0
                         CHECK (rotation IN (0,90,180,270,-90,-180,-270)),
    order_index          INTEGER NOT NULL DEFAULT 0,
    metadata             TEXT,
    metadata_raw         TEXT,
    extraction_method    TEXT,
    metadata_error       TEXT,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_staged_user_order ON staged_images(user_id, order_index);
CREATE INDEX IF NOT EXISTS idx_staged_created ON staged_images(created_at);

CREATE TABLE IF NOT EXISTS tags (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    name       TEXT NOT NULL,
    slug       TEXT NOT NULL UNIQUE,
    color      TEXT,
    tag_type   TEXT NOT NULL DEFAULT 'normal' CHECK (tag_type IN ('normal','project','filename')),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS staged_image_tags (
    image_id TEXT NOT NULL REFERENCES staged_images(id) ON DELETE CASCADE,
    tag_id   INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    tag_type TEXT NOT NULL,
    PRIMARY KEY (image_id, tag_id)
);
-- at most one project / filename tag per staged image
CREATE UNIQUE INDEX IF NOT EXISTS uq_staged_single_valued_tag
    ON staged_image_tags(image_id, tag_type) WHERE tag_type IN ('project','filename');

CREATE TABLE IF NOT EXISTS ingest_batches (
    id             TEXT PRIMARY KEY,
    user_id        INTEGER NOT NULL,
    next_sequence  INTEGER NOT NULL,
    promoted_count INTEGER NOT NULL DEFAULT 0,
    created_at     TEXT NOT NULL,
    finished_at    TEXT
);

CREATE TABLE IF NOT EXISTS final_images (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id           INTEGER NOT NULL,
    batch_id          TEXT REFERENCES ingest_batches(id),
    sequence          INTEGER,
    staged_id         TEXT NOT NULL,
    disk              TEXT NOT NULL,
    file_path         TEXT NOT NULL,
    file_name         TEXT NOT NULL,
    original_filename TEXT,
    size              INTEGER,
    alt_text          TEXT,
    date_taken        TEXT,
    camera_make       TEXT,
    camera_model      TEXT,
    lens              TEXT,
    f_stop            REAL,
    iso               INTEGER,
    shutter_speed     REAL,
    focal_length      INTEGER,
    gps_lat           REAL,
    gps_lng           REAL,
    raw_metadata      TEXT,
    imageable_type    TEXT,
    imageable_id      TEXT,
    created_at        TEXT NOT NULL,
    UNIQUE (disk, file_path)
);
CREATE INDEX IF NOT EXISTS idx_final_date ON final_images(date_taken);
CREATE INDEX IF NOT EXISTS idx_final_assoc ON final_images(imageable_type, imageable_id);

CREATE TABLE IF NOT EXISTS final_image_tags (
    final_image_id INTEGER NOT NULL REFERENCES final_images(id) ON DELETE CASCADE,
    tag_id         INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    PRIMARY KEY (final_image_id, tag_id)
);

CREATE TABLE IF NOT EXISTS ingest_settings (
    key        TEXT PRIMARY KEY,
    value      TEXT,
    type       TEXT NOT NULL CHECK (type IN ('string','integer','float','boolean','json')),
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ingest_traces (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    image_id       TEXT NOT NULL,
    session_id     TEXT NOT NULL,
    trace_type     TEXT NOT NULL,
    method         TEXT NOT NULL,
    method_order   INTEGER NOT NULL,
    success        INTEGER NOT NULL,
    failure_reason TEXT,
    result_info    TEXT,
    created_at     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_traces_image ON ingest_traces(image_id, session_id);
CREATE INDEX IF NOT EXISTS idx_traces_created ON ingest_traces(created_at);
"""


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def get_conn(db_path: Path, *, busy_timeout_ms: int = 30000) -> sqlite3.Connection:
    """
    Create a connection with row access by column name.
    Autocommit mode: transactions are explicit (see transaction()).
    Caller is responsible for closing (use connect()).
    """
    conn = sqlite3.connect(
        str(db_path),
        timeout=busy_timeout_ms / 1000,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
    return conn


@contextmanager
def connect(db_path: Path, *, busy_timeout_ms: int = 30000) -> Iterator[sqlite3.Connection]:
    conn = get_conn(db_path, busy_timeout_ms=busy_timeout_ms)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection, *, immediate: bool = True) -> Iterator[sqlite3.Connection]:
    """
    BEGIN IMMEDIATE takes the write lock up front, so read-then-write
    sequences inside the block cannot interleave with other writers.
    """
    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


class Repository:
    """Base for the table gateways: owns the db path, hands out connections.

    Methods take an optional `conn`; when given, the caller owns the
    transaction and the method only issues statements on it.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 30000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _read(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with connect(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as c:
            yield c

    @contextmanager
    def _write(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with connect(self.db_path, busy_timeout_ms=self.busy_timeout_ms) as c, transaction(c):
            yield c


def ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    """Add a column if it doesn't exist. Safe to call every run."""
    cur = conn.execute(f"PRAGMA table_info({table});")
    cols = [r[1] for r in cur.fetchall()]
    if column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition};")


def init_db(db_path: Path) -> None:
    """Create the database file + schema if missing; apply core PRAGMAs."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    try:
        conn.executescript("""
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;
        """)
        conn.executescript(SCHEMA_SQL)
        # columns added after the first schema version
        ensure_column(conn, "staged_images", "enhancement_width", "INTEGER")
        ensure_column(conn, "staged_images", "enhancement_error", "TEXT")
        ensure_column(conn, "staged_images", "preview_attempt", "INTEGER NOT NULL DEFAULT 0")
        conn.commit()
    finally:
        conn.close()
