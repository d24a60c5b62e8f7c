from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

SCHEMA_VERSION = 2

MEDIA_TYPES: dict[str, int] = {
    "image": 1,
    "video": 2,
    "animated": 3,
    "card": 4,
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def initialize_sqlite(conn: sqlite3.Connection) -> None:
    """
    Initialize the archive database with a small migration system.

    This function is idempotent: it can be called on every startup.
    """
    _configure_connection(conn)
    _apply_migrations(conn)


def _configure_connection(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")

    # WAL is best-effort (e.g., in-memory DBs won't use it).
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
    except sqlite3.DatabaseError:
        pass


def fts_available(conn: sqlite3.Connection) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'post_fts'"
    ).fetchone()
    return row is not None


_MIGRATIONS: dict[int, str] = {
    1: """
CREATE TABLE IF NOT EXISTS post (
  post_id TEXT PRIMARY KEY,
  url TEXT,
  html TEXT NOT NULL DEFAULT '',
  text_content TEXT NOT NULL DEFAULT '',
  author_name TEXT,
  author_handle TEXT,
  authored_at TEXT,
  collection_rank INTEGER NOT NULL UNIQUE,
  reply_count INTEGER,
  repost_count INTEGER,
  like_count INTEGER,
  view_count INTEGER,
  bookmark_count INTEGER,
  has_media INTEGER NOT NULL DEFAULT 0,
  has_links INTEGER NOT NULL DEFAULT 0,
  is_quoted INTEGER NOT NULL DEFAULT 0,
  is_deleted INTEGER NOT NULL DEFAULT 0,
  card_json TEXT,
  conversation_id TEXT,
  is_thread_root INTEGER NOT NULL DEFAULT 0,
  thread_length INTEGER NOT NULL DEFAULT 0,
  anomalies_json TEXT NOT NULL DEFAULT '[]',
  first_seen_at TEXT NOT NULL,
  metrics_updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_post_conversation_id
  ON post(conversation_id);

CREATE INDEX IF NOT EXISTS idx_post_author_handle
  ON post(author_handle);

CREATE TABLE IF NOT EXISTS link (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  post_id TEXT NOT NULL,
  position INTEGER NOT NULL,
  url TEXT NOT NULL,
  resolved_url TEXT,
  FOREIGN KEY (post_id) REFERENCES post(post_id) ON DELETE CASCADE,
  UNIQUE (post_id, position)
);

CREATE INDEX IF NOT EXISTS idx_link_post_id
  ON link(post_id);

CREATE TABLE IF NOT EXISTS media_type (
  id INTEGER PRIMARY KEY,
  name TEXT NOT NULL UNIQUE
);

INSERT OR IGNORE INTO media_type(id, name) VALUES
  (1, 'image'),
  (2, 'video'),
  (3, 'animated'),
  (4, 'card');

CREATE TABLE IF NOT EXISTS media_item (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  post_id TEXT NOT NULL,
  type_id INTEGER NOT NULL,
  origin_url TEXT NOT NULL,
  local_path TEXT NOT NULL,
  fetched_at TEXT NOT NULL,
  FOREIGN KEY (post_id) REFERENCES post(post_id) ON DELETE CASCADE,
  FOREIGN KEY (type_id) REFERENCES media_type(id),
  UNIQUE (post_id, origin_url)
);

CREATE INDEX IF NOT EXISTS idx_media_item_post_id
  ON media_item(post_id);

CREATE TABLE IF NOT EXISTS thread_membership (
  root_id TEXT NOT NULL,
  member_id TEXT NOT NULL,
  position INTEGER NOT NULL CHECK (position >= 1),
  PRIMARY KEY (root_id, member_id),
  UNIQUE (root_id, position),
  FOREIGN KEY (root_id) REFERENCES post(post_id) ON DELETE CASCADE,
  FOREIGN KEY (member_id) REFERENCES post(post_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_thread_membership_member_id
  ON thread_membership(member_id);

-- The quoted post is often not archived itself, so it is not a foreign key.
CREATE TABLE IF NOT EXISTS quote_link (
  post_id TEXT NOT NULL,
  quoted_post_id TEXT NOT NULL,
  PRIMARY KEY (post_id, quoted_post_id),
  FOREIGN KEY (post_id) REFERENCES post(post_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS run_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  mode TEXT NOT NULL,
  status TEXT NOT NULL,
  started_at TEXT NOT NULL,
  ended_at TEXT NOT NULL,
  attempted INTEGER NOT NULL DEFAULT 0,
  inserted INTEGER NOT NULL DEFAULT 0,
  skipped INTEGER NOT NULL DEFAULT 0,
  failed INTEGER NOT NULL DEFAULT 0,
  media_saved INTEGER NOT NULL DEFAULT 0,
  media_failed INTEGER NOT NULL DEFAULT 0,
  threads_written INTEGER NOT NULL DEFAULT 0,
  threads_skipped INTEGER NOT NULL DEFAULT 0,
  last_error TEXT
);
""".strip(),
    2: """
CREATE VIRTUAL TABLE IF NOT EXISTS post_fts USING fts5(
  text_content,
  author_name,
  author_handle,
  content='post',
  content_rowid='rowid'
);

CREATE TRIGGER IF NOT EXISTS post_fts_after_insert AFTER INSERT ON post BEGIN
  INSERT INTO post_fts(rowid, text_content, author_name, author_handle)
  VALUES (new.rowid, new.text_content, new.author_name, new.author_handle);
END;

CREATE TRIGGER IF NOT EXISTS post_fts_after_delete AFTER DELETE ON post BEGIN
  INSERT INTO post_fts(post_fts, rowid, text_content, author_name, author_handle)
  VALUES ('delete', old.rowid, old.text_content, old.author_name, old.author_handle);
END;

INSERT INTO post_fts(post_fts) VALUES ('rebuild');
""".strip(),
}

# Migrations whose failure leaves the store usable (missing sqlite extensions).
_OPTIONAL_MIGRATIONS: frozenset[int] = frozenset({2})


def _apply_migrations(conn: sqlite3.Connection) -> None:
    with conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
        )

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    applied: set[int] = {int(r[0]) for r in rows}

    for version in range(1, SCHEMA_VERSION + 1):
        if version in applied:
            continue

        script = _MIGRATIONS.get(version)
        if not script:
            raise RuntimeError(f"Missing migration script for version={version}")

        try:
            with conn:
                conn.executescript(script)
        except sqlite3.OperationalError:
            # FTS5 is compiled out of some sqlite builds; search falls back to LIKE.
            if version not in _OPTIONAL_MIGRATIONS:
                raise

        with conn:
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES (?, ?)",
                (version, _utc_now_iso()),
            )
