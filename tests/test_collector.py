from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from typing import Any

from likes_archive.collector import STATUS_COMPLETED, STATUS_STOPPED, run_collection
from likes_archive.config_schema import AppConfig
from likes_archive.errors import NavigationFailed
from likes_archive.extract import extract_post
from likes_archive.media import FetchedAsset
from likes_archive.offline import FixtureFeedBrowser, FixtureMediaFetcher
from likes_archive.paginate import STOP_STALLED
from likes_archive.post import CollectionMode, RankedPost
from likes_archive.run_log import RunLogger
from likes_archive.storage import ArchiveStore

IMAGE_A = "https://pbs.twimg.com/media/IMGA?format=jpg"


def _snap(post_id: str, handle: str = "alice", **extra: Any) -> dict[str, Any]:
    snap: dict[str, Any] = {
        "timeHref": f"https://x.com/{handle}/status/{post_id}",
        "userNameText": f"{handle.title()}\n@{handle}",
        "datetime": f"2025-02-{int(post_id) % 28 + 1:02d}T00:00:00.000Z",
        "text": f"post {post_id}",
        "metrics": {"like": "4"},
    }
    snap.update(extra)
    return snap


def _fixture() -> dict[str, Any]:
    # A is new and opens a thread, B is already archived, C quotes A and
    # continues the thread, D is a thread member that was never liked.
    a = _snap("10", conversationId="10", images=[IMAGE_A + "&name=small"])
    b = _snap("11", handle="bob")
    c = _snap("12", conversationId="10", quotedHref="https://x.com/alice/status/10")
    d = _snap("13", conversationId="10")
    return {
        "feed": [[a, b, c]],
        "conversations": {"10": [a, d, c]},
        "posts": {"13": d},
        "media": {},
    }


def _seed_known(store: ArchiveStore) -> None:
    post = extract_post(_snap("11", handle="bob"))
    assert post is not None
    store.insert_post(RankedPost(post=post, rank=1))


class TestRunCollection(unittest.TestCase):
    def _run(
        self,
        store: ArchiveStore,
        media_dir: str,
        fixture: dict[str, Any],
        *,
        log: RunLogger | None = None,
        should_stop: Any = None,
        browser: FixtureFeedBrowser | None = None,
    ):
        return run_collection(
            CollectionMode.INCREMENTAL,
            config=AppConfig(),
            store=store,
            browser=browser or FixtureFeedBrowser(fixture),
            media_dir=media_dir,
            media_fetcher=FixtureMediaFetcher(fixture),
            logger=log or RunLogger.memory(),
            should_stop=should_stop,
        )

    def test_new_known_quote_and_thread(self) -> None:
        fixture = _fixture()
        log = RunLogger.memory()
        with tempfile.TemporaryDirectory() as td, ArchiveStore.open(":memory:") as store:
            _seed_known(store)
            browser = FixtureFeedBrowser(fixture)

            result = self._run(store, td, fixture, log=log, browser=browser)

            self.assertEqual(result.status, STATUS_COMPLETED)
            self.assertEqual(result.stop_reason, STOP_STALLED)
            self.assertEqual(result.counts.attempted, 3)
            self.assertEqual(result.counts.inserted, 3)
            self.assertEqual(result.counts.skipped, 1)
            self.assertEqual(result.counts.failed, 0)
            self.assertEqual(result.counts.threads_written, 1)
            self.assertEqual(result.counts.media_saved, 1)
            self.assertEqual(result.inserted_ids, ("12", "10", "13"))

            # The feed is newest-first, so the lower post gets the lower rank.
            ranks = {pid: store.get_post(pid).collection_rank for pid in ("11", "10", "12", "13")}  # type: ignore[union-attr]
            self.assertEqual(ranks, {"11": 1, "12": 2, "10": 3, "13": 4})

            self.assertEqual([p.post_id for p in store.get_thread_members("10")], ["10", "13", "12"])
            self.assertEqual(store.quoted_posts("12"), ["10"])
            a_post, c_post = store.get_post("10"), store.get_post("12")
            assert a_post is not None and c_post is not None
            self.assertTrue(a_post.has_media)
            self.assertFalse(c_post.has_media)
            self.assertTrue(c_post.is_quoted)

            [item] = store.get_media_for_post("10")
            self.assertEqual(item.origin_url, IMAGE_A)
            self.assertTrue(Path(item.local_path).is_file())

            self.assertTrue(browser.opened)
            self.assertTrue(browser.closed)
            events = log.events()
            for event in ("session_opening", "pagination_completed", "persistence_completed", "threads_completed", "media_completed", "collection_completed"):
                self.assertIn(event, events)

    def test_rerun_is_idempotent(self) -> None:
        fixture = _fixture()
        with tempfile.TemporaryDirectory() as td, ArchiveStore.open(":memory:") as store:
            _seed_known(store)
            self._run(store, td, fixture)
            browser = FixtureFeedBrowser(fixture)

            again = self._run(store, td, fixture, browser=browser)

            self.assertEqual(again.counts.inserted, 0)
            self.assertEqual(again.counts.skipped, 3)
            self.assertEqual(again.counts.threads_written, 0)
            self.assertEqual(again.counts.media_saved, 0)
            self.assertEqual(store.post_count(), 4)
            self.assertEqual(store.membership_count(), 3)
            self.assertEqual(store.media_count(), 1)
            # Resolved conversations are not visited again.
            self.assertEqual(browser.visited, [])

    def test_newer_likes_rank_above_older_ones(self) -> None:
        fixture = _fixture()
        with tempfile.TemporaryDirectory() as td, ArchiveStore.open(":memory:") as store:
            self._run(store, td, fixture)
            top = store.highest_rank()

            fixture["feed"] = [[_snap("20")] + fixture["feed"][0]]
            result = self._run(store, td, fixture)

            self.assertEqual(result.inserted_ids, ("20",))
            newest = store.get_post("20")
            assert newest is not None
            self.assertEqual(newest.collection_rank, top + 1)

    def test_media_failure_is_counted_not_fatal(self) -> None:
        fixture = _fixture()
        fixture["media"] = {IMAGE_A: {"error": "timeout"}}
        log = RunLogger.memory()
        with tempfile.TemporaryDirectory() as td, ArchiveStore.open(":memory:") as store:
            result = self._run(store, td, fixture, log=log)

            self.assertEqual(result.status, STATUS_COMPLETED)
            self.assertEqual(result.counts.media_failed, 1)
            self.assertEqual(result.counts.failed, 1)
            self.assertEqual(store.media_count(), 0)
            self.assertTrue(store.exists("10"))
            self.assertIn("media_item_failed", log.events())

    def test_one_of_five_media_times_out(self) -> None:
        images = [f"https://pbs.twimg.com/media/IMG{i}?format=jpg" for i in range(5)]
        fixture = {
            "feed": [[_snap("30", images=images[:3]), _snap("31", images=images[3:])]],
            "media": {images[1]: {"error": "timeout"}},
        }
        with tempfile.TemporaryDirectory() as td, ArchiveStore.open(":memory:") as store:
            result = self._run(store, td, fixture)

            self.assertEqual(result.status, STATUS_COMPLETED)
            self.assertEqual(result.counts.media_saved, 4)
            self.assertEqual(result.counts.media_failed, 1)
            self.assertEqual(result.counts.failed, 1)
            self.assertEqual(store.media_count(), 4)
            self.assertFalse(store.exists_media("30", images[1]))

    def test_failed_media_is_fetched_on_a_later_run(self) -> None:
        broken = _fixture()
        broken["media"] = {IMAGE_A: {"error": "timeout"}}
        with tempfile.TemporaryDirectory() as td, ArchiveStore.open(":memory:") as store:
            first = self._run(store, td, broken)
            self.assertEqual(first.counts.media_failed, 1)
            self.assertEqual(store.media_count(), 0)

            healthy = _fixture()
            fetcher = FixtureMediaFetcher(healthy)
            second = run_collection(
                CollectionMode.INCREMENTAL,
                config=AppConfig(),
                store=store,
                browser=FixtureFeedBrowser(healthy),
                media_dir=td,
                media_fetcher=fetcher,
                logger=RunLogger.memory(),
            )

            self.assertEqual(second.status, STATUS_COMPLETED)
            self.assertEqual(second.counts.inserted, 0)
            self.assertEqual(second.counts.media_saved, 1)
            self.assertEqual(second.counts.media_failed, 0)
            self.assertEqual(store.media_count(), 1)
            self.assertTrue(store.exists_media("10", IMAGE_A))
            self.assertEqual(len(fetcher.requested), 1)

            # Once recorded, the asset is not requested again.
            third_fetcher = FixtureMediaFetcher(healthy)
            run_collection(
                CollectionMode.INCREMENTAL,
                config=AppConfig(),
                store=store,
                browser=FixtureFeedBrowser(healthy),
                media_dir=td,
                media_fetcher=third_fetcher,
                logger=RunLogger.memory(),
            )
            self.assertEqual(third_fetcher.requested, [])

    def test_unexpected_fetcher_error_is_counted_not_fatal(self) -> None:
        images = [f"https://pbs.twimg.com/media/IMG{i}?format=jpg" for i in range(5)]
        fixture = {"feed": [[_snap("20", images=images)]]}

        class _Fetcher(FixtureMediaFetcher):
            def fetch(self, url: str, *, timeout: float) -> FetchedAsset:
                if "IMG3" in url:
                    raise RuntimeError("decoder failure")
                return super().fetch(url, timeout=timeout)

        log = RunLogger.memory()
        with tempfile.TemporaryDirectory() as td, ArchiveStore.open(":memory:") as store:
            result = run_collection(
                CollectionMode.INCREMENTAL,
                config=AppConfig(),
                store=store,
                browser=FixtureFeedBrowser(fixture),
                media_dir=td,
                media_fetcher=_Fetcher(fixture),
                logger=log,
            )

            self.assertEqual(result.status, STATUS_COMPLETED)
            self.assertEqual(result.counts.media_saved, 4)
            self.assertEqual(result.counts.media_failed, 1)
            self.assertEqual(store.media_count(), 4)
            self.assertFalse(store.exists_media("20", images[3]))
            self.assertIn("media_item_failed", log.events())

    def test_session_failure_releases_browser(self) -> None:
        fixture = _fixture()
        browser = FixtureFeedBrowser(fixture, logged_in=False)
        log = RunLogger.memory()
        with tempfile.TemporaryDirectory() as td, ArchiveStore.open(":memory:") as store:
            with self.assertRaises(NavigationFailed):
                self._run(store, td, fixture, log=log, browser=browser)

            self.assertTrue(browser.closed)
            self.assertEqual(store.post_count(), 0)
            failed = [r for r in log.records if r.get("event") == "collection_stage_failed"]
            self.assertEqual(len(failed), 1)
            self.assertEqual(failed[0].get("stage"), "session")

    def test_stop_request_ends_early(self) -> None:
        fixture = _fixture()
        browser = FixtureFeedBrowser(fixture)
        with tempfile.TemporaryDirectory() as td, ArchiveStore.open(":memory:") as store:
            result = self._run(store, td, fixture, should_stop=lambda: True, browser=browser)

            self.assertEqual(result.status, STATUS_STOPPED)
            self.assertEqual(result.scrolls, 0)
            # What was already visible is kept; thread work is left for the next run.
            self.assertEqual(store.post_count(), 3)
            self.assertEqual(store.membership_count(), 0)
            self.assertTrue(browser.closed)


if __name__ == "__main__":
    unittest.main()
