from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from .browser import FeedBrowser
from .errors import NavigationFailed, StorageError, ThreadIncomplete
from .extract import assign_ranks, extract_post, extract_posts
from .post import ExtractedPost
from .run_log import RunLogger, StageLogger
from .storage import ArchiveStore


@dataclass(frozen=True)
class ThreadOutcome:
    written: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    single: tuple[str, ...] = ()
    inserted_members: tuple[ExtractedPost, ...] = ()
    stopped: bool = False


def thread_members(conversation_id: str, posts: Sequence[ExtractedPost]) -> list[ExtractedPost]:
    """
    Select the posts of a conversation page that belong to its author's thread.

    The author is taken from the post whose id is the conversation id, or from the
    first post on the page when the root is not rendered. Display order is kept.
    """
    if not posts:
        return []

    root = next((p for p in posts if p.post_id == conversation_id), posts[0])
    handle = (root.author_handle or "").casefold()
    if not handle:
        return [root]

    return [p for p in posts if (p.author_handle or "").casefold() == handle]


class ThreadReconstructor:
    """
    Two-pass thread reconstruction.

    Pass 1 visits each conversation, discovers the author's posts and archives
    the members that are not yet stored. Pass 2 visits each conversation again
    and writes the ordered membership only if every member is archived; a
    conversation with any missing member is skipped as a whole and picked up by a
    later run.
    """

    def __init__(
        self,
        browser: FeedBrowser,
        store: ArchiveStore,
        *,
        logger: RunLogger | StageLogger | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        self._browser = browser
        self._store = store
        self._log = logger
        self._should_stop = should_stop or (lambda: False)

    def run(self, conversation_ids: Iterable[str]) -> ThreadOutcome:
        ordered: list[str] = []
        for cid in conversation_ids:
            c = (cid or "").strip()
            if c and c not in ordered:
                ordered.append(c)

        if not ordered:
            return ThreadOutcome()

        discovered: list[str] = []
        inserted: list[ExtractedPost] = []
        skipped: list[str] = []
        attempted_members: set[str] = set()

        for cid in ordered:
            if self._should_stop():
                return ThreadOutcome(skipped=tuple(skipped), inserted_members=tuple(inserted), stopped=True)

            members = self._discover(cid)
            if members is None:
                skipped.append(cid)
                continue
            discovered.append(cid)

            for member in members:
                if member.post_id in attempted_members:
                    continue
                attempted_members.add(member.post_id)
                if self._store.exists(member.post_id):
                    continue
                post = self._fetch_member(cid, member.post_id)
                if post is not None:
                    inserted.append(post)

        written: list[str] = []
        single: list[str] = []
        for cid in discovered:
            if self._should_stop():
                return ThreadOutcome(
                    written=tuple(written),
                    skipped=tuple(skipped),
                    single=tuple(single),
                    inserted_members=tuple(inserted),
                    stopped=True,
                )

            members = self._discover(cid)
            if members is None:
                skipped.append(cid)
                continue

            ids = [m.post_id for m in members]
            if len(ids) < 2:
                self._mark_single(cid, ids)
                single.append(cid)
                continue

            try:
                root_id = self._store.write_thread(ids)
            except ThreadIncomplete as e:
                skipped.append(cid)
                if self._log is not None:
                    self._log.warning(
                        "thread_skipped_incomplete",
                        conversation_id=cid,
                        missing=e.missing,
                        members=len(ids),
                    )
                continue

            written.append(root_id)
            if self._log is not None:
                self._log.info("thread_written", conversation_id=cid, root_id=root_id, length=len(ids))

        return ThreadOutcome(
            written=tuple(written),
            skipped=tuple(skipped),
            single=tuple(single),
            inserted_members=tuple(inserted),
        )

    def _discover(self, conversation_id: str) -> list[ExtractedPost] | None:
        try:
            snapshots = self._browser.conversation_posts(conversation_id)
        except NavigationFailed as e:
            if self._log is not None:
                self._log.warning(
                    "conversation_unavailable",
                    url=e.url,
                    conversation_id=conversation_id,
                    reason=str(e),
                )
            return None

        posts, _ = extract_posts(snapshots)
        return thread_members(conversation_id, posts)

    def _fetch_member(self, conversation_id: str, post_id: str) -> ExtractedPost | None:
        try:
            snapshot = self._browser.single_post(post_id)
        except NavigationFailed as e:
            if self._log is not None:
                self._log.warning(
                    "thread_member_unavailable",
                    url=e.url,
                    conversation_id=conversation_id,
                    post_id=post_id,
                    reason=str(e),
                )
            return None

        post = extract_post(snapshot) if snapshot is not None else None
        if post is None or post.post_id != post_id:
            if self._log is not None:
                self._log.warning("thread_member_not_found", conversation_id=conversation_id, post_id=post_id)
            return None

        [ranked] = assign_ranks([post], base=self._store.highest_rank())
        try:
            if not self._store.insert_post(ranked):
                return None
        except StorageError as e:
            if self._log is not None:
                self._log.exception("thread_member_insert_failed", exc=e, post_id=post_id)
            return None

        if self._log is not None:
            self._log.info("thread_member_inserted", conversation_id=conversation_id, post_id=post_id, rank=ranked.rank)
        return post

    def _mark_single(self, conversation_id: str, ids: list[str]) -> None:
        # Records the visit so the conversation is not revisited on later runs.
        if not ids:
            return
        post = self._store.get_post(ids[0])
        if post is not None and post.thread_length == 0:
            self._store.set_thread_root(ids[0], 1)
