from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Iterable, Sequence

from .errors import StorageError, ThreadIncomplete
from .post import (
    CardPayload,
    ExtractedLink,
    MediaItem,
    MediaKind,
    PostMetrics,
    RankedPost,
    StoredLink,
    StoredPost,
)
from .storage_schema import MEDIA_TYPES, fts_available, initialize_sqlite


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def _as_path(value: str | Path) -> str:
    return str(value)


def _fts_query(text: str) -> str:
    terms = [t for t in (text or "").split() if t.strip()]
    return " ".join('"' + t.replace('"', '""') + '"' for t in terms)


_MEDIA_KIND_BY_TYPE_ID = {type_id: MediaKind(name) for name, type_id in MEDIA_TYPES.items()}

_POST_COLUMNS = """
  post_id, url, text_content, author_name, author_handle, authored_at,
  collection_rank, reply_count, repost_count, like_count, view_count, bookmark_count,
  has_media, has_links, is_quoted, is_deleted, card_json, conversation_id,
  is_thread_root, thread_length, first_seen_at
""".strip()


@dataclass(frozen=True)
class RunSummary:
    mode: str
    status: str
    started_at: str
    ended_at: str
    attempted: int = 0
    inserted: int = 0
    skipped: int = 0
    failed: int = 0
    media_saved: int = 0
    media_failed: int = 0
    threads_written: int = 0
    threads_skipped: int = 0
    last_error: str | None = None


class ArchiveStore:
    """
    Durable state for the likes archive.

    Every multi-row write runs in one transaction. A single connection is shared
    across threads and serialized with a re-entrant lock, so media workers can
    record items concurrently.
    """

    def __init__(self, conn: sqlite3.Connection, *, recovered_from: str | None = None) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row
        self._lock = RLock()
        self.recovered_from = recovered_from

    @classmethod
    def open(cls, path: str | Path, *, recreate_if_corrupt: bool = True) -> "ArchiveStore":
        db_path = _as_path(path)
        recovered_from: str | None = None

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = _connect(db_path)

        if db_path != ":memory:" and not _passes_integrity_check(conn):
            conn.close()
            if not recreate_if_corrupt:
                raise StorageError(f"Archive database is corrupt: {db_path}")
            recovered_from = _move_aside(Path(db_path))
            conn = _connect(db_path)

        try:
            initialize_sqlite(conn)
        except Exception as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn, recovered_from=recovered_from)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "ArchiveStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @property
    def has_fts(self) -> bool:
        with self._lock:
            return fts_available(self._conn)

    # Posts

    def exists(self, post_id: str) -> bool:
        pid = (post_id or "").strip()
        if not pid:
            raise ValueError("post_id must be non-empty")

        with self._lock:
            row = self._conn.execute("SELECT 1 FROM post WHERE post_id = ?", (pid,)).fetchone()
        return row is not None

    def known_ids(self, post_ids: Iterable[str]) -> set[str]:
        ids = [p for p in {(x or "").strip() for x in post_ids} if p]
        if not ids:
            return set()

        out: set[str] = set()
        with self._lock:
            for start in range(0, len(ids), 500):
                chunk = ids[start : start + 500]
                marks = ",".join("?" for _ in chunk)
                rows = self._conn.execute(
                    f"SELECT post_id FROM post WHERE post_id IN ({marks})", chunk
                ).fetchall()
                out.update(str(r["post_id"]) for r in rows)
        return out

    def highest_rank(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT MAX(collection_rank) AS r FROM post").fetchone()
        if row is None or row["r"] is None:
            return 0
        return int(row["r"])

    def insert_post(
        self,
        ranked: RankedPost,
        links: Sequence[ExtractedLink] | None = None,
        *,
        first_seen_at: str | None = None,
    ) -> bool:
        """
        Insert a post with its links (and quote reference) in one transaction.

        Returns False without touching the store if the post id is already present:
        the first-seen content wins. Any row failure rolls the whole write back.
        """
        post = ranked.post
        pid = (post.post_id or "").strip()
        if not pid:
            raise ValueError("post_id must be non-empty")

        link_rows = list(post.links if links is None else links)
        seen_at = (first_seen_at or _utc_now_iso()).strip()
        card_json = _json_dumps(asdict(post.card)) if post.card is not None else None

        with self._lock:
            try:
                with self._conn:
                    cur = self._conn.execute(
                        """
                        INSERT OR IGNORE INTO post(
                          post_id, url, html, text_content, author_name, author_handle,
                          authored_at, collection_rank, reply_count, repost_count,
                          like_count, view_count, bookmark_count, has_media, has_links,
                          is_quoted, is_deleted, card_json, conversation_id,
                          anomalies_json, first_seen_at, metrics_updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                        """.strip(),
                        (
                            pid,
                            post.url,
                            post.html or "",
                            post.text or "",
                            post.author_name,
                            post.author_handle,
                            post.authored_at,
                            int(ranked.rank),
                            post.metrics.replies,
                            post.metrics.reposts,
                            post.metrics.likes,
                            post.metrics.views,
                            post.metrics.bookmarks,
                            1 if post.has_media else 0,
                            1 if link_rows else 0,
                            1 if post.is_quoted else 0,
                            card_json,
                            post.conversation_id,
                            _json_dumps(list(post.anomalies)),
                            seen_at,
                            seen_at,
                        ),
                    )
                    if cur.rowcount == 0:
                        return False

                    for position, link in enumerate(link_rows, start=1):
                        self._conn.execute(
                            "INSERT INTO link(post_id, position, url, resolved_url) VALUES (?, ?, ?, ?)",
                            (pid, position, link.url, link.resolved_url),
                        )

                    if post.quoted_post_id:
                        self._conn.execute(
                            "INSERT OR IGNORE INTO quote_link(post_id, quoted_post_id) VALUES (?, ?)",
                            (pid, post.quoted_post_id),
                        )
            except sqlite3.DatabaseError as e:
                raise StorageError(f"Failed to insert post {pid}: {e}") from e

        return True

    def refresh_post_metrics(self, post_id: str, metrics: PostMetrics) -> bool:
        """Update engagement counters of an archived post; absent counters keep their old value."""
        pid = (post_id or "").strip()
        if not pid:
            raise ValueError("post_id must be non-empty")
        if metrics == PostMetrics():
            return False

        with self._lock:
            try:
                with self._conn:
                    cur = self._conn.execute(
                        """
                        UPDATE post SET
                          reply_count = COALESCE(?, reply_count),
                          repost_count = COALESCE(?, repost_count),
                          like_count = COALESCE(?, like_count),
                          view_count = COALESCE(?, view_count),
                          bookmark_count = COALESCE(?, bookmark_count),
                          metrics_updated_at = ?
                        WHERE post_id = ?
                        """.strip(),
                        (
                            metrics.replies,
                            metrics.reposts,
                            metrics.likes,
                            metrics.views,
                            metrics.bookmarks,
                            _utc_now_iso(),
                            pid,
                        ),
                    )
            except sqlite3.DatabaseError as e:
                raise StorageError(f"Failed to refresh metrics for {pid}: {e}") from e
        return cur.rowcount > 0

    def get_post(self, post_id: str) -> StoredPost | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_POST_COLUMNS} FROM post WHERE post_id = ?",
                ((post_id or "").strip(),),
            ).fetchone()
        return _stored_post(row) if row is not None else None

    def get_links(self, post_id: str) -> list[StoredLink]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT post_id, url, resolved_url FROM link WHERE post_id = ? ORDER BY position",
                ((post_id or "").strip(),),
            ).fetchall()
        return [
            StoredLink(
                post_id=str(r["post_id"]),
                url=str(r["url"]),
                resolved_url=str(r["resolved_url"]) if r["resolved_url"] is not None else None,
            )
            for r in rows
        ]

    def record_quote(self, post_id: str, quoted_post_id: str) -> bool:
        pid = (post_id or "").strip()
        qid = (quoted_post_id or "").strip()
        if not pid or not qid:
            raise ValueError("post_id and quoted_post_id must be non-empty")

        with self._lock:
            try:
                with self._conn:
                    cur = self._conn.execute(
                        "INSERT OR IGNORE INTO quote_link(post_id, quoted_post_id) VALUES (?, ?)",
                        (pid, qid),
                    )
                    if cur.rowcount > 0:
                        self._conn.execute("UPDATE post SET is_quoted = 1 WHERE post_id = ?", (pid,))
            except sqlite3.DatabaseError as e:
                raise StorageError(f"Failed to record quote {pid} -> {qid}: {e}") from e
        return cur.rowcount > 0

    def quoted_posts(self, post_id: str) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT quoted_post_id FROM quote_link WHERE post_id = ? ORDER BY quoted_post_id",
                ((post_id or "").strip(),),
            ).fetchall()
        return [str(r["quoted_post_id"]) for r in rows]

    def posts_by_rank(self, *, limit: int | None = None) -> list[StoredPost]:
        sql = f"SELECT {_POST_COLUMNS} FROM post ORDER BY collection_rank DESC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            if limit <= 0:
                return []
            sql += " LIMIT ?"
            params = (int(limit),)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_stored_post(r) for r in rows]

    def search_posts(
        self,
        query: str = "",
        *,
        author: str | None = None,
        has_media: bool | None = None,
        has_links: bool | None = None,
        since: str | None = None,
        until: str | None = None,
        limit: int = 50,
    ) -> list[StoredPost]:
        """
        Full-text search over post text and author, newest collection first.

        Uses FTS5 when the sqlite build provides it and a LIKE scan otherwise.
        """
        if limit <= 0:
            return []

        conditions: list[str] = []
        params: list[Any] = []
        joins = ""

        q = (query or "").strip()
        if q:
            if self.has_fts:
                joins = "JOIN post_fts ON post_fts.rowid = post.rowid"
                conditions.append("post_fts MATCH ?")
                params.append(_fts_query(q))
            else:
                conditions.append(
                    "(post.text_content LIKE ? OR post.author_name LIKE ? OR post.author_handle LIKE ?)"
                )
                like = f"%{q}%"
                params.extend([like, like, like])

        if author:
            conditions.append("(post.author_handle = ? COLLATE NOCASE OR post.author_name = ?)")
            params.extend([author.lstrip("@"), author])
        if has_media is not None:
            conditions.append("post.has_media = ?")
            params.append(1 if has_media else 0)
        if has_links is not None:
            conditions.append("post.has_links = ?")
            params.append(1 if has_links else 0)
        if since:
            conditions.append("post.authored_at >= ?")
            params.append(since)
        if until:
            conditions.append("post.authored_at <= ?")
            params.append(until)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        columns = ", ".join(f"post.{c.strip()}" for c in _POST_COLUMNS.split(","))
        sql = f"SELECT {columns} FROM post {joins} {where} ORDER BY post.collection_rank DESC LIMIT ?"
        params.append(int(limit))

        with self._lock:
            try:
                rows = self._conn.execute(sql, params).fetchall()
            except sqlite3.DatabaseError as e:
                raise StorageError(f"Search failed: {e}") from e
        return [_stored_post(r) for r in rows]

    # Media

    def exists_media(self, post_id: str, origin_url: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM media_item WHERE post_id = ? AND origin_url = ?",
                ((post_id or "").strip(), (origin_url or "").strip()),
            ).fetchone()
        return row is not None

    def insert_media(self, item: MediaItem) -> bool:
        """Record a fetched asset. Returns False if (post, origin url) was already recorded."""
        pid = (item.post_id or "").strip()
        url = (item.origin_url or "").strip()
        if not pid or not url:
            raise ValueError("post_id and origin_url must be non-empty")

        with self._lock:
            try:
                with self._conn:
                    cur = self._conn.execute(
                        """
                        INSERT OR IGNORE INTO media_item(post_id, type_id, origin_url, local_path, fetched_at)
                        VALUES (?, ?, ?, ?, ?)
                        """.strip(),
                        (pid, MEDIA_TYPES[item.kind.value], url, item.local_path, item.fetched_at),
                    )
            except sqlite3.IntegrityError as e:
                raise StorageError(
                    f"Failed to record media for {pid}; ensure the post is archived first"
                ) from e
            except sqlite3.DatabaseError as e:
                raise StorageError(f"Failed to record media for {pid}: {e}") from e
        return cur.rowcount > 0

    def get_media_for_post(self, post_id: str) -> list[MediaItem]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT post_id, type_id, origin_url, local_path, fetched_at
                FROM media_item
                WHERE post_id = ?
                ORDER BY id
                """.strip(),
                ((post_id or "").strip(),),
            ).fetchall()
        return [
            MediaItem(
                post_id=str(r["post_id"]),
                kind=_MEDIA_KIND_BY_TYPE_ID[int(r["type_id"])],
                origin_url=str(r["origin_url"]),
                local_path=str(r["local_path"]),
                fetched_at=str(r["fetched_at"]),
            )
            for r in rows
        ]

    # Threads

    def insert_thread_membership(self, root_id: str, member_id: str, position: int) -> None:
        with self._lock:
            try:
                with self._conn:
                    self._insert_membership(root_id, member_id, position)
            except sqlite3.DatabaseError as e:
                raise StorageError(f"Failed to record thread member {member_id} of {root_id}: {e}") from e

    def set_thread_root(self, root_id: str, length: int) -> None:
        with self._lock:
            try:
                with self._conn:
                    self._set_root(root_id, length)
            except sqlite3.DatabaseError as e:
                raise StorageError(f"Failed to mark thread root {root_id}: {e}") from e

    def write_thread(self, member_ids: Sequence[str]) -> str:
        """
        Write a whole thread as one unit: the first member is the root.

        Raises ThreadIncomplete, leaving the store untouched, unless every member is
        archived. Existing membership for the root is replaced so positions stay
        contiguous from 1.
        """
        ordered: list[str] = []
        for m in member_ids:
            mid = (m or "").strip()
            if mid and mid not in ordered:
                ordered.append(mid)
        if len(ordered) < 2:
            raise ValueError("a thread needs at least two distinct members")

        root_id = ordered[0]
        with self._lock:
            missing = sorted(set(ordered) - self.known_ids(ordered))
            if missing:
                raise ThreadIncomplete(root_id, missing)

            try:
                with self._conn:
                    self._conn.execute("DELETE FROM thread_membership WHERE root_id = ?", (root_id,))
                    for position, mid in enumerate(ordered, start=1):
                        self._insert_membership(root_id, mid, position)
                    self._set_root(root_id, len(ordered))
            except sqlite3.DatabaseError as e:
                raise StorageError(f"Failed to write thread {root_id}: {e}") from e
        return root_id

    def thread_pending(self, post_id: str, conversation_id: str) -> bool:
        """
        True while the conversation of an archived post has not been resolved yet:
        the post belongs to no written thread and neither it nor the conversation
        root has been visited.
        """
        pid = (post_id or "").strip()
        cid = (conversation_id or "").strip()
        with self._lock:
            member = self._conn.execute(
                "SELECT 1 FROM thread_membership WHERE member_id = ? LIMIT 1", (pid,)
            ).fetchone()
            if member is not None:
                return False
            row = self._conn.execute(
                "SELECT MAX(thread_length) AS n FROM post WHERE post_id IN (?, ?)", (pid, cid)
            ).fetchone()
        return row is None or row["n"] is None or int(row["n"]) == 0

    def get_thread_members(self, root_id: str) -> list[StoredPost]:
        columns = ", ".join(f"p.{c.strip()}" for c in _POST_COLUMNS.split(","))
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {columns}
                FROM thread_membership t
                JOIN post p ON p.post_id = t.member_id
                WHERE t.root_id = ?
                ORDER BY t.position
                """.strip(),
                ((root_id or "").strip(),),
            ).fetchall()
        return [_stored_post(r) for r in rows]

    def _insert_membership(self, root_id: str, member_id: str, position: int) -> None:
        if int(position) < 1:
            raise ValueError("position must be >= 1")
        self._conn.execute(
            "INSERT INTO thread_membership(root_id, member_id, position) VALUES (?, ?, ?)",
            ((root_id or "").strip(), (member_id or "").strip(), int(position)),
        )

    def _set_root(self, root_id: str, length: int) -> None:
        cur = self._conn.execute(
            "UPDATE post SET is_thread_root = ?, thread_length = ? WHERE post_id = ?",
            (1 if int(length) > 1 else 0, int(length), (root_id or "").strip()),
        )
        if cur.rowcount == 0:
            raise sqlite3.IntegrityError(f"thread root {root_id} is not archived")

    # Run history

    def record_run(self, summary: RunSummary) -> None:
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        """
                        INSERT INTO run_history(
                          mode, status, started_at, ended_at, attempted, inserted, skipped,
                          failed, media_saved, media_failed, threads_written, threads_skipped,
                          last_error
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """.strip(),
                        (
                            summary.mode,
                            summary.status,
                            summary.started_at,
                            summary.ended_at,
                            int(summary.attempted),
                            int(summary.inserted),
                            int(summary.skipped),
                            int(summary.failed),
                            int(summary.media_saved),
                            int(summary.media_failed),
                            int(summary.threads_written),
                            int(summary.threads_skipped),
                            summary.last_error,
                        ),
                    )
            except sqlite3.DatabaseError as e:
                raise StorageError(f"Failed to record run summary: {e}") from e

    def last_run(self, *, status: str | None = None) -> RunSummary | None:
        sql = """
        SELECT mode, status, started_at, ended_at, attempted, inserted, skipped, failed,
               media_saved, media_failed, threads_written, threads_skipped, last_error
        FROM run_history
        """.strip()
        params: tuple[Any, ...] = ()
        if status is not None:
            sql += " WHERE status = ?"
            params = (status,)
        sql += " ORDER BY id DESC LIMIT 1"

        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        if row is None:
            return None
        return RunSummary(
            mode=str(row["mode"]),
            status=str(row["status"]),
            started_at=str(row["started_at"]),
            ended_at=str(row["ended_at"]),
            attempted=int(row["attempted"]),
            inserted=int(row["inserted"]),
            skipped=int(row["skipped"]),
            failed=int(row["failed"]),
            media_saved=int(row["media_saved"]),
            media_failed=int(row["media_failed"]),
            threads_written=int(row["threads_written"]),
            threads_skipped=int(row["threads_skipped"]),
            last_error=str(row["last_error"]) if row["last_error"] is not None else None,
        )

    # Counts

    def _count(self, table: str) -> int:
        with self._lock:
            row = self._conn.execute(f"SELECT COUNT(1) AS n FROM {table}").fetchone()
        return int(row["n"]) if row is not None else 0

    def post_count(self) -> int:
        return self._count("post")

    def link_count(self) -> int:
        return self._count("link")

    def media_count(self) -> int:
        return self._count("media_item")

    def membership_count(self) -> int:
        return self._count("thread_membership")


def _connect(db_path: str) -> sqlite3.Connection:
    try:
        return sqlite3.connect(db_path, check_same_thread=False)
    except sqlite3.DatabaseError as e:
        raise StorageError(f"Failed to open sqlite database: {db_path}: {e}") from e


def _passes_integrity_check(conn: sqlite3.Connection) -> bool:
    try:
        row = conn.execute("PRAGMA quick_check").fetchone()
    except sqlite3.DatabaseError:
        return False
    return row is not None and str(row[0]).strip().lower() == "ok"


def _move_aside(path: Path) -> str:
    suffix = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    target = path.with_name(f"{path.name}.corrupt-{suffix}")
    try:
        path.replace(target)
        for sibling in ("-wal", "-shm", "-journal"):
            extra = path.with_name(path.name + sibling)
            if extra.exists():
                extra.replace(path.with_name(target.name + sibling))
    except OSError as e:
        raise StorageError(f"Failed to move corrupt database aside: {path}: {e}") from e
    return str(target)


def _opt_int(value: Any) -> int | None:
    return int(value) if value is not None else None


def _stored_post(row: sqlite3.Row) -> StoredPost:
    card: CardPayload | None = None
    raw_card = row["card_json"]
    if raw_card:
        try:
            data = json.loads(raw_card)
        except ValueError:
            data = None
        if isinstance(data, dict):
            card = CardPayload(
                type=data.get("type"),
                url=data.get("url"),
                title=data.get("title"),
                description=data.get("description"),
            )

    return StoredPost(
        post_id=str(row["post_id"]),
        url=str(row["url"]) if row["url"] is not None else None,
        text=str(row["text_content"] or ""),
        author_name=str(row["author_name"]) if row["author_name"] is not None else None,
        author_handle=str(row["author_handle"]) if row["author_handle"] is not None else None,
        authored_at=str(row["authored_at"]) if row["authored_at"] is not None else None,
        collection_rank=int(row["collection_rank"]),
        has_media=bool(row["has_media"]),
        has_links=bool(row["has_links"]),
        is_quoted=bool(row["is_quoted"]),
        is_deleted=bool(row["is_deleted"]),
        conversation_id=str(row["conversation_id"]) if row["conversation_id"] is not None else None,
        is_thread_root=bool(row["is_thread_root"]),
        thread_length=int(row["thread_length"]),
        metrics=PostMetrics(
            replies=_opt_int(row["reply_count"]),
            reposts=_opt_int(row["repost_count"]),
            likes=_opt_int(row["like_count"]),
            views=_opt_int(row["view_count"]),
            bookmarks=_opt_int(row["bookmark_count"]),
        ),
        card=card,
        first_seen_at=str(row["first_seen_at"]),
    )
