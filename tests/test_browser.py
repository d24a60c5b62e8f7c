from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from typing import Any

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from likes_archive.browser import (
    PROBE_SCRIPT,
    SNAPSHOT_SCRIPT,
    PlaywrightFeedBrowser,
    remove_profile_lock,
)
from likes_archive.config_schema import BrowserConfig, PaginationConfig
from likes_archive.errors import NavigationFailed
from likes_archive.retry import RetryPolicy
from likes_archive.run_log import RunLogger


def _snap(post_id: str, handle: str = "alice") -> dict[str, Any]:
    return {"timeHref": f"https://x.com/{handle}/status/{post_id}", "text": f"post {post_id}"}


class _FakePage:
    """Serves snapshot pages in order; each scroll reveals the next page."""

    def __init__(
        self,
        pages: list[list[dict[str, Any]]] | None = None,
        *,
        probes: list[dict[str, Any]] | None = None,
        goto_errors: list[BaseException] | None = None,
    ) -> None:
        self.pages = pages or [[]]
        self.index = 0
        self.probes = probes or [{"path": "/alice/likes", "articleCount": 1}]
        self.goto_errors = list(goto_errors or [])
        self.visited: list[str] = []
        self.waited: list[str] = []
        self.url = "https://x.com/home"

    def goto(self, url: str, **kwargs: Any) -> None:
        if self.goto_errors:
            raise self.goto_errors.pop(0)
        self.visited.append(url)
        self.url = url
        self.index = 0

    def wait_for_selector(self, selector: str, **kwargs: Any) -> None:
        self.waited.append(selector)

    def wait_for_timeout(self, ms: int) -> None:
        pass

    def get_attribute(self, selector: str, name: str, **kwargs: Any) -> str | None:
        return "/alice"

    def evaluate(self, script: str, arg: Any = None) -> Any:
        if script == SNAPSHOT_SCRIPT:
            return list(self.pages[self.index])
        if script == PROBE_SCRIPT:
            return self.probes[0] if len(self.probes) == 1 else self.probes.pop(0)
        self.index = min(self.index + 1, len(self.pages) - 1)
        return None


class _FakeContext:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


def _browser(page: _FakePage, *, log: RunLogger | None = None, **browser_overrides: Any) -> PlaywrightFeedBrowser:
    sleeps: list[float] = []
    b = PlaywrightFeedBrowser(
        "unused-profile",
        browser=BrowserConfig(**browser_overrides),
        pagination=PaginationConfig(settle_ms=0, conversation_max_scrolls=5),
        policy=RetryPolicy(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=4.0, jitter_ratio=0.0),
        logger=log,
        sleep_fn=sleeps.append,
    )
    # An attached page stands in for a launched persistent context.
    b._context = _FakeContext()  # type: ignore[assignment]
    b._page = page  # type: ignore[assignment]
    b.sleeps = sleeps  # type: ignore[attr-defined]
    return b


class TestRemoveProfileLock(unittest.TestCase):
    def test_removes_dangling_symlink(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock = Path(td) / "SingletonLock"
            os.symlink("host-12345", lock)
            self.assertTrue(remove_profile_lock(td))
            self.assertFalse(os.path.lexists(lock))
            self.assertFalse(remove_profile_lock(td))


class TestPlaywrightFeedBrowser(unittest.TestCase):
    def test_conversation_scrolls_until_nothing_new(self) -> None:
        page = _FakePage([[_snap("1"), _snap("2")], [_snap("2"), _snap("3", "bob")], [_snap("3", "bob")]])
        b = _browser(page)

        snaps = b.conversation_posts("1")

        self.assertEqual([s["timeHref"].rsplit("/", 1)[-1] for s in snaps], ["1", "2", "3"])
        self.assertEqual(page.visited, ["https://x.com/i/status/1"])

    def test_single_post_returns_matching_snapshot(self) -> None:
        page = _FakePage([[_snap("9"), _snap("10")]])
        b = _browser(page)

        snap = b.single_post("10")
        assert snap is not None
        self.assertEqual(snap["timeHref"], "https://x.com/alice/status/10")
        self.assertIsNone(b.single_post("11"))
        self.assertTrue(any("/status/11" in sel for sel in page.waited))

    def test_navigation_timeouts_are_retried_with_backoff(self) -> None:
        page = _FakePage(
            [[_snap("1")]],
            goto_errors=[PlaywrightTimeoutError("Timeout 30000ms exceeded"), PlaywrightError("net::ERR_CONNECTION_RESET")],
        )
        log = RunLogger.memory()
        b = _browser(page, log=log)

        b.conversation_posts("1")

        self.assertEqual(b.sleeps, [1.0, 2.0])  # type: ignore[attr-defined]
        self.assertEqual(log.events().count("navigation_retry"), 2)

    def test_exhausted_retries_raise_navigation_failed(self) -> None:
        errors = [PlaywrightTimeoutError("Timeout") for _ in range(3)]
        b = _browser(_FakePage(goto_errors=errors))

        with self.assertRaises(NavigationFailed) as ctx:
            b.conversation_posts("7")
        self.assertEqual(ctx.exception.url, "https://x.com/i/status/7")

    def test_closed_browser_is_not_retried(self) -> None:
        b = _browser(_FakePage(goto_errors=[PlaywrightError("Target page, context or browser has been closed")]))

        with self.assertRaises(NavigationFailed):
            b.single_post("7")
        self.assertEqual(b.sleeps, [])  # type: ignore[attr-defined]

    def test_open_feed_follows_profile_link_to_likes(self) -> None:
        page = _FakePage([[_snap("1")]])
        b = _browser(page)

        b.open_feed()

        self.assertEqual(page.visited, ["https://x.com/home", "https://x.com/alice/likes"])
        self.assertEqual(len(b.visible_posts()), 1)

    def test_open_feed_waits_for_manual_login(self) -> None:
        page = _FakePage(
            probes=[
                {"path": "/i/flow/login"},
                {"path": "/i/flow/login"},
                {"path": "/home", "articleCount": 3},
                {"path": "/bob/likes", "articleCount": 3},
            ]
        )
        log = RunLogger.memory()
        b = _browser(page, log=log, likes_path="bob/likes", login_timeout_ms=60000, login_poll_ms=1000)

        b.open_feed()

        self.assertEqual(b.sleeps, [1.0, 1.0])  # type: ignore[attr-defined]
        self.assertEqual(page.visited[-1], "https://x.com/bob/likes")
        self.assertIn("login_required", log.events())
        self.assertIn("login_detected", log.events())

    def test_login_timeout_raises(self) -> None:
        page = _FakePage(probes=[{"path": "/i/flow/login"}])
        b = _browser(page, login_timeout_ms=1, login_poll_ms=1)

        with self.assertRaises(NavigationFailed) as ctx:
            b.open_feed()
        self.assertIn("login", str(ctx.exception))

    def test_close_releases_context(self) -> None:
        b = _browser(_FakePage())
        context = b._context
        b.close()
        self.assertTrue(context.closed)  # type: ignore[union-attr]
        with self.assertRaises(NavigationFailed):
            b.visible_posts()


if __name__ == "__main__":
    unittest.main()
