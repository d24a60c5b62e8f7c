from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Callable, Mapping

from .browser import FeedBrowser, Snapshot
from .config_schema import PaginationConfig
from .extract import snapshot_post_id
from .post import CollectionMode
from .run_log import RunLogger, StageLogger
from .stall import StallTracker

STOP_MAX_SCROLLS = "max_scrolls"
STOP_STALLED = "stalled"
STOP_REQUESTED = "stop_requested"


@dataclass(frozen=True)
class PaginationResult:
    snapshots: tuple[Snapshot, ...]
    scrolls: int
    stop_reason: str
    unidentified: int


def _fingerprint(snap: Snapshot) -> str:
    if isinstance(snap, Mapping):
        return json.dumps(dict(snap), sort_keys=True, default=str)
    return repr(snap)


def max_scrolls_for(mode: CollectionMode, config: PaginationConfig) -> int:
    if mode is CollectionMode.BACKFILL:
        return int(config.backfill_max_scrolls)
    return int(config.incremental_max_scrolls)


def paginate_feed(
    browser: FeedBrowser,
    *,
    max_scrolls: int,
    stall_limit: int,
    should_stop: Callable[[], bool] | None = None,
    logger: RunLogger | StageLogger | None = None,
) -> PaginationResult:
    """
    Scroll the open feed and collect a snapshot of every post seen.

    The feed is virtualised, so posts are captured after every scroll rather than
    once at the end. Snapshots are deduplicated by post id in first-seen display
    order. Stops after `max_scrolls` scrolls, after `stall_limit` consecutive
    scrolls with nothing new, or when a stop is requested.
    """
    if max_scrolls < 0:
        raise ValueError("max_scrolls must be >= 0")

    collected: list[Snapshot] = []
    seen: set[str] = set()
    # Id-less elements stay rendered across scrolls; count each distinct one once.
    seen_unidentified: set[str] = set()

    def _absorb(batch: list[Snapshot]) -> int:
        added = 0
        for snap in batch:
            pid = snapshot_post_id(snap)
            if pid is None:
                seen_unidentified.add(_fingerprint(snap))
                continue
            if pid in seen:
                continue
            seen.add(pid)
            collected.append(snap)
            added += 1
        return added

    _absorb(browser.visible_posts())

    tracker = StallTracker(limit=stall_limit)
    scrolls = 0
    reason = STOP_MAX_SCROLLS

    while scrolls < max_scrolls:
        if should_stop is not None and should_stop():
            reason = STOP_REQUESTED
            break

        browser.scroll()
        scrolls += 1
        added = _absorb(browser.visible_posts())

        if logger is not None:
            logger.debug("feed_scrolled", scroll=scrolls, new_posts=added, total_posts=len(collected))

        if tracker.push(added):
            reason = STOP_STALLED
            break

    if logger is not None:
        logger.info(
            "pagination_completed",
            scrolls=scrolls,
            stop_reason=reason,
            posts=len(collected),
            unidentified=len(seen_unidentified),
        )

    return PaginationResult(
        snapshots=tuple(collected),
        scrolls=scrolls,
        stop_reason=reason,
        unidentified=len(seen_unidentified),
    )
