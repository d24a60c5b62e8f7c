from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Callable

from .browser import FeedBrowser
from .config_schema import AppConfig
from .errors import StorageError
from .extract import assign_ranks, extract_posts
from .links import LinkResolver
from .media import MediaBatchResult, MediaDownloader, MediaFetcher
from .paginate import STOP_REQUESTED, max_scrolls_for, paginate_feed
from .post import CollectionMode, ExtractedPost, MediaRef
from .run_log import RunLogger
from .storage import ArchiveStore
from .threads import ThreadOutcome, ThreadReconstructor

STATUS_COMPLETED = "completed"
STATUS_STOPPED = "stopped"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class RunCounts:
    attempted: int = 0
    inserted: int = 0
    skipped: int = 0
    failed: int = 0
    media_saved: int = 0
    media_failed: int = 0
    threads_written: int = 0
    threads_skipped: int = 0


@dataclass(frozen=True)
class CollectionResult:
    mode: CollectionMode
    status: str
    counts: RunCounts
    scrolls: int
    stop_reason: str
    unidentified: int
    degraded: int
    inserted_ids: tuple[str, ...]


ProgressFn = Callable[[RunCounts], None]


def _media_refs(posts: list[ExtractedPost]) -> list[MediaRef]:
    refs: list[MediaRef] = []
    for post in posts:
        refs.extend(post.media)
    return refs


def run_collection(
    mode: CollectionMode,
    *,
    config: AppConfig,
    store: ArchiveStore,
    browser: FeedBrowser,
    media_dir: str | Path,
    media_fetcher: MediaFetcher | None = None,
    link_resolver: LinkResolver | None = None,
    logger: RunLogger,
    should_stop: Callable[[], bool] | None = None,
    on_progress: ProgressFn | None = None,
) -> CollectionResult:
    """
    Run one collection: open the feed, paginate, extract, persist, rebuild
    threads, then drain media for every archived post seen on this run.

    The browser session is always released. Stage-local failures (one post, one
    thread, one media item) become counts and log entries; a session or storage
    failure is logged with its stage and re-raised.
    """
    stop = should_stop or (lambda: False)
    counts = RunCounts()
    stage = "session"

    def _progress(**changes: int) -> None:
        nonlocal counts
        counts = replace(counts, **changes)
        if on_progress is not None:
            on_progress(counts)

    try:
        logger.bind(stage).info("session_opening", mode=mode.value)
        browser.open_feed()

        stage = "pagination"
        page = paginate_feed(
            browser,
            max_scrolls=max_scrolls_for(mode, config.pagination),
            stall_limit=config.pagination.stall_limit,
            should_stop=stop,
            logger=logger.bind(stage, mode=mode.value),
        )

        stage = "extraction"
        posts, unidentified = extract_posts(page.snapshots)
        unidentified += page.unidentified
        degraded = sum(1 for p in posts if p.anomalies)
        _progress(attempted=len(posts))
        logger.bind(stage).info(
            "extraction_completed",
            posts=len(posts),
            unidentified=unidentified,
            degraded=degraded,
        )

        stage = "persistence"
        inserted, known, failed = _persist(posts, store=store, resolver=link_resolver, logger=logger)
        _progress(inserted=len(inserted), skipped=len(known), failed=failed)

        stage = "threads"
        conversations = _conversations_to_visit(posts, inserted, store)
        threads = ThreadReconstructor(
            browser,
            store,
            logger=logger.bind(stage),
            should_stop=stop,
        ).run(conversations)
        inserted.extend(threads.inserted_members)
        _progress(
            inserted=len(inserted),
            threads_written=len(threads.written),
            threads_skipped=len(threads.skipped),
        )
        _log_threads(logger, conversations, threads)

        stage = "media"
        # Known posts are queued too so media that failed on an earlier run is
        # fetched again; recorded pairs are skipped by the downloader.
        media = _download_media(
            inserted + known,
            config=config,
            store=store,
            media_dir=media_dir,
            fetcher=media_fetcher,
            logger=logger,
        )
        _progress(
            media_saved=media.saved,
            media_failed=media.failed,
            failed=counts.failed + media.failed,
        )

        stopped = page.stop_reason == STOP_REQUESTED or threads.stopped or stop()
        status = STATUS_STOPPED if stopped else STATUS_COMPLETED
        logger.bind("run").info("collection_completed", mode=mode.value, status=status, **asdict(counts))

        return CollectionResult(
            mode=mode,
            status=status,
            counts=counts,
            scrolls=page.scrolls,
            stop_reason=page.stop_reason,
            unidentified=unidentified,
            degraded=degraded,
            inserted_ids=tuple(p.post_id for p in inserted),
        )
    except Exception as e:
        logger.bind(stage).exception("collection_stage_failed", exc=e, mode=mode.value)
        raise
    finally:
        try:
            browser.close()
        except Exception as e:
            logger.bind("session").exception("session_release_failed", exc=e)


def _persist(
    posts: list[ExtractedPost],
    *,
    store: ArchiveStore,
    resolver: LinkResolver | None,
    logger: RunLogger,
) -> tuple[list[ExtractedPost], list[ExtractedPost], int]:
    log = logger.bind("persistence")
    known_ids = store.known_ids(p.post_id for p in posts)

    fresh: list[ExtractedPost] = []
    known: list[ExtractedPost] = []
    for post in posts:
        if post.post_id in known_ids:
            known.append(post)
            store.refresh_post_metrics(post.post_id, post.metrics)
            continue
        fresh.append(post)

    inserted: list[ExtractedPost] = []
    failed = 0
    for ranked in assign_ranks(fresh, base=store.highest_rank()):
        post = ranked.post
        links = resolver.resolve_links(post.links) if resolver is not None else post.links
        try:
            if store.insert_post(ranked, links):
                inserted.append(post)
            else:
                known.append(post)
        except StorageError as e:
            failed += 1
            log.exception("post_insert_failed", exc=e, post_id=post.post_id, url=post.url)
            continue

        if post.anomalies:
            log.warning("post_degraded", url=post.url, post_id=post.post_id, anomalies=list(post.anomalies))

    log.info("persistence_completed", inserted=len(inserted), skipped=len(known), failed=failed)
    return inserted, known, failed


def _conversations_to_visit(
    posts: list[ExtractedPost],
    inserted: list[ExtractedPost],
    store: ArchiveStore,
) -> list[str]:
    new_ids = {p.post_id for p in inserted}
    out: list[str] = []
    for post in posts:
        cid = post.conversation_id
        if not cid or cid in out:
            continue
        # Known posts whose thread was skipped earlier are retried.
        if post.post_id in new_ids or store.thread_pending(post.post_id, cid):
            out.append(cid)
    return out


def _log_threads(logger: RunLogger, conversations: list[str], outcome: ThreadOutcome) -> None:
    logger.bind("threads").info(
        "threads_completed",
        conversations=len(conversations),
        written=len(outcome.written),
        skipped=len(outcome.skipped),
        single=len(outcome.single),
        members_inserted=len(outcome.inserted_members),
        stopped=outcome.stopped,
    )


def _download_media(
    posts: list[ExtractedPost],
    *,
    config: AppConfig,
    store: ArchiveStore,
    media_dir: str | Path,
    fetcher: MediaFetcher | None,
    logger: RunLogger,
) -> MediaBatchResult:
    refs = _media_refs(posts)
    log = logger.bind("media")
    if not refs:
        log.info("media_completed", requested=0, saved=0, skipped=0, failed=0)
        return MediaBatchResult(requested=0, saved=0, skipped=0, failed=0)

    downloader = MediaDownloader.from_config(
        store,
        media_dir,
        config.media,
        fetcher=fetcher,
        logger=log,
    )
    try:
        result = downloader.download_all(refs)
    finally:
        downloader.close()
    log.info(
        "media_completed",
        requested=result.requested,
        saved=result.saved,
        skipped=result.skipped,
        failed=result.failed,
    )
    return result
