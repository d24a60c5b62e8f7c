from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, TypeVar

from playwright.sync_api import BrowserContext, Page, Playwright, sync_playwright
from playwright.sync_api import Error as PlaywrightError

from .config_schema import BrowserConfig, PaginationConfig
from .errors import NavigationFailed
from .extract import snapshot_post_id
from .navigation_retry import is_retryable_navigation_exception
from .retry import RetryEvent, RetryPolicy, call_with_retries
from .run_log import RunLogger, StageLogger
from .session import SessionState, classify_session_state
from .stall import StallTracker
from .urls import conversation_url

T = TypeVar("T")

Snapshot = Mapping[str, Any]

ARTICLE_SELECTOR = 'article[data-testid="tweet"]'
FEED_READY_SELECTOR = f'{ARTICLE_SELECTOR}, [data-testid="emptyState"]'

STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
window.chrome = window.chrome || { runtime: {} };
const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) => (
  parameters.name === 'notifications'
    ? Promise.resolve({ state: Notification.permission })
    : originalQuery(parameters)
);
"""

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-default-browser-check",
    "--no-first-run",
]

PROBE_SCRIPT = """
() => ({
  path: window.location.pathname,
  loginButton: !!document.querySelector('[data-testid="loginButton"]'),
  loginLink: !!document.querySelector('a[href="/login"], a[href="/i/flow/login"]'),
  primaryColumn: !!document.querySelector('[data-testid="primaryColumn"]'),
  articleCount: document.querySelectorAll('article[data-testid="tweet"]').length,
  emptyState: !!document.querySelector('[data-testid="emptyState"]'),
})
"""

# Serializes every rendered post into a plain mapping; all markup matching stays here.
SNAPSHOT_SCRIPT = r"""
() => {
  const THREAD_RE = /show this thread|show more replies/i;
  const text = (el) => (el ? (el.innerText || el.textContent || '').trim() : null);
  const out = [];
  for (const el of document.querySelectorAll('article[data-testid="tweet"]')) {
    let quoted = null;
    for (const t of el.querySelectorAll('[role="link"] time')) {
      const box = t.closest('[role="link"]');
      if (box && el.contains(box)) { quoted = box; break; }
    }
    const own = (node) => !quoted || !quoted.contains(node);
    const all = (sel) => Array.from(el.querySelectorAll(sel)).filter(own);

    const time = all('time')[0] || null;
    const timeLink = time ? time.closest('a') : null;
    const quotedLink = quoted ? quoted.querySelector('a[href*="/status/"]') : null;
    const tweetText = all('[data-testid="tweetText"]')[0] || null;

    const links = [];
    for (const a of all('[data-testid="tweetText"] a[href], [data-testid="card.wrapper"] a[href]')) {
      if (/^https?:/i.test(a.href)) links.push({ href: a.href, expanded: text(a) });
    }

    const videos = all('video').map((v) => {
      const source = v.querySelector('source');
      return {
        src: v.currentSrc || v.src || (source ? source.src : '') || '',
        poster: v.getAttribute('poster') || '',
      };
    });

    const cardEl = all('[data-testid="card.wrapper"]')[0] || null;
    let card = null;
    if (cardEl) {
      const cardLink = cardEl.querySelector('a[href]');
      const cardImg = cardEl.querySelector('img');
      card = {
        type: cardEl.getAttribute('data-card-type'),
        url: cardLink ? cardLink.href : null,
        title: text(cardEl.querySelector('[data-testid="card.layoutLarge.title"], [data-testid="card.layoutSmall.detail"] > div:first-child')),
        description: text(cardEl.querySelector('[data-testid="card.layoutLarge.description"]')),
        image: cardImg ? cardImg.src : null,
      };
    }

    const label = (sel) => {
      const node = all(sel)[0];
      return node ? (node.getAttribute('aria-label') || text(node)) : null;
    };

    let conversationHref = null;
    let threadMarker = false;
    for (const a of all('a[href*="/status/"]')) {
      if (THREAD_RE.test(text(a) || '')) {
        conversationHref = a.href;
        threadMarker = true;
        break;
      }
    }

    out.push({
      timeHref: timeLink ? timeLink.href : null,
      statusHrefs: all('a[href*="/status/"]').map((a) => a.href),
      userNameText: text(all('[data-testid="User-Name"]')[0]),
      datetime: time ? time.getAttribute('datetime') : null,
      text: text(tweetText),
      textContent: text(el),
      html: el.outerHTML,
      links,
      images: all('img[src*="pbs.twimg.com/media"]').map((i) => i.src),
      videos,
      card,
      metrics: {
        reply: label('[data-testid="reply"]'),
        retweet: label('[data-testid="retweet"], [data-testid="unretweet"]'),
        like: label('[data-testid="like"], [data-testid="unlike"]'),
        bookmark: label('[data-testid="bookmark"], [data-testid="removeBookmark"]'),
        views: label('a[href$="/analytics"]'),
      },
      quotedHref: quotedLink ? quotedLink.href : null,
      conversationHref,
      threadMarker,
    });
  }
  return out;
}
"""


class FeedBrowser(Protocol):
    """The browser surface the pipeline depends on. One page, one navigation at a time."""

    def open_feed(self) -> None: ...

    def visible_posts(self) -> list[Snapshot]: ...

    def scroll(self) -> None: ...

    def conversation_posts(self, conversation_id: str) -> list[Snapshot]: ...

    def single_post(self, post_id: str) -> Snapshot | None: ...

    def close(self) -> None: ...


def remove_profile_lock(profile_dir: str | Path) -> bool:
    """Delete a stale Chromium SingletonLock left behind by a crashed session."""
    lock = Path(profile_dir) / "SingletonLock"
    try:
        lock.unlink()
    except FileNotFoundError:
        return False
    return True


class PlaywrightFeedBrowser:
    """
    Drives a persistent Chromium profile owned by the archive.

    Every navigation and selector wait goes through one RetryPolicy; when it is
    exhausted the call raises NavigationFailed instead of looping.
    """

    def __init__(
        self,
        profile_dir: str | Path,
        *,
        browser: BrowserConfig,
        pagination: PaginationConfig,
        policy: RetryPolicy,
        logger: RunLogger | StageLogger | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self._profile_dir = Path(profile_dir)
        self._cfg = browser
        self._pagination = pagination
        self._policy = policy
        self._log = logger
        self._sleep = sleep_fn or time.sleep
        self._playwright: Playwright | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None

    @property
    def page(self) -> Page:
        if self._page is None:
            raise NavigationFailed("browser session is not open")
        return self._page

    def open_feed(self) -> None:
        self._launch()
        self._navigate(f"{self._cfg.base_url}/home", operation="open_home")
        self._ensure_logged_in()
        self._open_likes()

    def visible_posts(self) -> list[Snapshot]:
        result = self._guard(lambda: self.page.evaluate(SNAPSHOT_SCRIPT), operation="snapshot")
        return [s for s in (result or []) if isinstance(s, Mapping)]

    def scroll(self) -> None:
        step = int(self._pagination.scroll_step_px)
        self._guard(
            lambda: self.page.evaluate("(step) => window.scrollBy(0, step || window.innerHeight)", step),
            operation="scroll",
        )
        if self._pagination.settle_ms > 0:
            self.page.wait_for_timeout(int(self._pagination.settle_ms))

    def conversation_posts(self, conversation_id: str) -> list[Snapshot]:
        url = conversation_url(conversation_id, origin=self._cfg.base_url)
        self._navigate(url, operation="open_conversation")
        self._wait_for(ARTICLE_SELECTOR, operation="conversation_articles", url=url)

        # Long threads render lazily; scroll until nothing new appears.
        collected: list[Snapshot] = []
        seen: set[str] = set()
        tracker = StallTracker(limit=2)
        for step in range(int(self._pagination.conversation_max_scrolls) + 1):
            added = 0
            for snap in self.visible_posts():
                pid = snapshot_post_id(snap)
                if pid is None or pid in seen:
                    continue
                seen.add(pid)
                collected.append(snap)
                added += 1
            if step > 0 and tracker.push(added):
                break
            if step < int(self._pagination.conversation_max_scrolls):
                self.scroll()
        return collected

    def single_post(self, post_id: str) -> Snapshot | None:
        url = conversation_url(post_id, origin=self._cfg.base_url)
        self._navigate(url, operation="open_post")
        self._wait_for(f'{ARTICLE_SELECTOR} a[href*="/status/{post_id}"]', operation="post_article", url=url)
        for snap in self.visible_posts():
            if snapshot_post_id(snap) == post_id:
                return snap
        return None

    def close(self) -> None:
        context, pw = self._context, self._playwright
        self._page = None
        self._context = None
        self._playwright = None
        try:
            if context is not None:
                context.close()
        except PlaywrightError as e:
            if self._log is not None:
                self._log.warning("browser_close_failed", reason=str(e))
        finally:
            if pw is not None:
                pw.stop()

    def __enter__(self) -> "PlaywrightFeedBrowser":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def _launch(self) -> None:
        if self._context is not None:
            return

        self._profile_dir.mkdir(parents=True, exist_ok=True)
        if remove_profile_lock(self._profile_dir) and self._log is not None:
            self._log.info("stale_profile_lock_removed", profile_dir=str(self._profile_dir))

        self._playwright = sync_playwright().start()
        kwargs: dict[str, Any] = {
            "headless": self._cfg.headless,
            "viewport": {"width": self._cfg.viewport_width, "height": self._cfg.viewport_height},
            "ignore_default_args": ["--enable-automation"],
            "args": list(LAUNCH_ARGS),
        }
        channel = (self._cfg.channel or "").strip()
        if channel:
            kwargs["channel"] = channel

        chromium = self._playwright.chromium
        try:
            try:
                self._context = chromium.launch_persistent_context(str(self._profile_dir), **kwargs)
            except PlaywrightError:
                if not channel:
                    raise
                kwargs.pop("channel", None)
                if self._log is not None:
                    self._log.warning("browser_channel_unavailable", channel=channel)
                self._context = chromium.launch_persistent_context(str(self._profile_dir), **kwargs)
        except PlaywrightError as e:
            self._playwright.stop()
            self._playwright = None
            raise NavigationFailed(f"Could not launch browser: {e}") from e

        self._context.add_init_script(STEALTH_SCRIPT)
        self._context.set_default_timeout(int(self._cfg.selector_timeout_ms))
        self._context.set_default_navigation_timeout(int(self._cfg.navigation_timeout_ms))
        pages = self._context.pages
        self._page = pages[0] if pages else self._context.new_page()

    def _probe(self) -> SessionState:
        probe = self._guard(lambda: self.page.evaluate(PROBE_SCRIPT), operation="probe_session")
        return classify_session_state(probe if isinstance(probe, Mapping) else {})

    def _ensure_logged_in(self) -> None:
        state = self._probe()
        if state is not SessionState.NOT_LOGGED_IN:
            return

        if self._log is not None:
            self._log.warning(
                "login_required",
                url=self.page.url,
                timeout_ms=self._cfg.login_timeout_ms,
            )

        deadline = time.monotonic() + self._cfg.login_timeout_ms / 1000.0
        while time.monotonic() < deadline:
            self._sleep(self._cfg.login_poll_ms / 1000.0)
            state = self._probe()
            if state is not SessionState.NOT_LOGGED_IN:
                if self._log is not None:
                    self._log.info("login_detected", state=state.value)
                return

        raise NavigationFailed("Timed out waiting for manual login", url=self.page.url)

    def _open_likes(self) -> None:
        likes_path = (self._cfg.likes_path or "").strip()
        if likes_path:
            url = f"{self._cfg.base_url}/{likes_path.lstrip('/')}"
        else:
            href = self._guard(
                lambda: self.page.get_attribute(
                    '[data-testid="AppTabBar_Profile_Link"]',
                    "href",
                    timeout=self._cfg.selector_timeout_ms,
                ),
                operation="find_profile_link",
            )
            if not href:
                raise NavigationFailed("Could not find the profile link to reach likes", url=self.page.url)
            url = f"{self._cfg.base_url}/{href.strip('/')}/likes"

        self._navigate(url, operation="open_likes")
        self._wait_for(FEED_READY_SELECTOR, operation="likes_articles", url=url)

        if self._probe() is not SessionState.FEED_LOADED:
            raise NavigationFailed("Likes feed did not load", url=url)

    def _navigate(self, url: str, *, operation: str) -> None:
        self._with_retries(
            lambda timeout_ms: self.page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms),
            operation=operation,
            url=url,
            policy=self._policy.with_timeout(self._cfg.navigation_timeout_ms),
        )

    def _wait_for(self, selector: str, *, operation: str, url: str | None = None) -> None:
        self._with_retries(
            lambda timeout_ms: self.page.wait_for_selector(selector, timeout=timeout_ms),
            operation=operation,
            url=url,
            policy=self._policy.with_timeout(self._cfg.selector_timeout_ms),
        )

    def _guard(self, fn: Callable[[], T], *, operation: str) -> T:
        return self._with_retries(lambda _timeout_ms: fn(), operation=operation, url=None, policy=self._policy)

    def _with_retries(
        self,
        fn: Callable[[int], T],
        *,
        operation: str,
        url: str | None,
        policy: RetryPolicy,
    ) -> T:
        def _on_retry(event: RetryEvent) -> None:
            if self._log is not None:
                self._log.warning(
                    "navigation_retry",
                    url=event.context_url,
                    operation=event.operation,
                    attempt=event.failure_attempt,
                    next_attempt=event.next_attempt,
                    delay_seconds=round(event.delay_seconds, 3),
                    reason=event.reason,
                    error_type=event.error_type,
                )

        try:
            return call_with_retries(
                fn,
                policy=policy,
                is_retryable=is_retryable_navigation_exception,
                operation=operation,
                on_retry=_on_retry,
                sleep_fn=self._sleep,
                context_url=url,
            )
        except PlaywrightError as e:
            raise NavigationFailed(f"{operation} failed: {e}", url=url) from e
