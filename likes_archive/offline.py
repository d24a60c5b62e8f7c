from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

import requests

from .browser import Snapshot
from .errors import ConfigError, NavigationFailed
from .extract import snapshot_post_id
from .media import FetchedAsset
from .urls import canonical_media_url


def load_fixture(path: str | Path) -> dict[str, Any]:
    """
    Load an offline feed fixture.

    Shape:
      feed: list of pages; each page is the list of post snapshots visible after
            that many scrolls (page 0 is the initial view)
      conversations: {conversation_id: [snapshots in display order]}
      posts: {post_id: snapshot} for single-post pages
      media: {url: {"content_type": str, "error": "timeout" | "connection"}}
    """
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Failed to read fixture: {p}") from e
    except ValueError as e:
        raise ConfigError(f"Fixture is not valid JSON: {p}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Fixture {p} must be a JSON object")
    if not isinstance(data.get("feed", []), list):
        raise ConfigError(f"Fixture {p}: 'feed' must be a list of pages")
    return data


class FixtureFeedBrowser:
    """A FeedBrowser that replays snapshots from a fixture instead of a live page."""

    def __init__(self, fixture: Mapping[str, Any], *, logged_in: bool = True) -> None:
        self._pages: list[list[Snapshot]] = [
            [s for s in page if isinstance(s, Mapping)]
            for page in fixture.get("feed", [])
            if isinstance(page, list)
        ]
        self._conversations: Mapping[str, Any] = fixture.get("conversations") or {}
        self._posts: Mapping[str, Any] = fixture.get("posts") or {}
        self._logged_in = logged_in
        self._page_index = 0
        self.opened = False
        self.closed = False
        self.scrolls = 0
        self.visited: list[str] = []

    def open_feed(self) -> None:
        if not self._logged_in:
            raise NavigationFailed("Timed out waiting for manual login")
        self.opened = True
        self._page_index = 0

    def visible_posts(self) -> list[Snapshot]:
        if not self._pages:
            return []
        return list(self._pages[self._page_index])

    def scroll(self) -> None:
        self.scrolls += 1
        if self._page_index < len(self._pages) - 1:
            self._page_index += 1

    def conversation_posts(self, conversation_id: str) -> list[Snapshot]:
        self.visited.append(f"conversation:{conversation_id}")
        page = self._conversations.get(conversation_id)
        if page is None:
            raise NavigationFailed(f"conversation {conversation_id} did not load")
        return [s for s in page if isinstance(s, Mapping)]

    def single_post(self, post_id: str) -> Snapshot | None:
        self.visited.append(f"post:{post_id}")
        snap = self._posts.get(post_id)
        if not isinstance(snap, Mapping):
            return None
        return snap if snapshot_post_id(snap) == post_id else None

    def close(self) -> None:
        self.closed = True


def _default_content_type(url: str) -> str:
    if "video.twimg.com" in url or url.endswith(".mp4"):
        return "video/mp4"
    return "image/jpeg"


class FixtureMediaFetcher:
    """Serve media bytes from the fixture; errors are raised as their requests equivalents."""

    def __init__(self, fixture: Mapping[str, Any] | None = None) -> None:
        self._media: Mapping[str, Any] = (fixture or {}).get("media") or {}
        self.requested: list[str] = []

    def fetch(self, url: str, *, timeout: float) -> FetchedAsset:
        self.requested.append(url)
        entry = self._lookup(url)

        error = str(entry.get("error") or "").strip().lower()
        if error == "timeout":
            raise requests.Timeout(f"fixture timeout after {timeout}s: {url}")
        if error:
            raise requests.ConnectionError(f"fixture connection error: {url}")

        content_type = entry.get("content_type") or _default_content_type(url)
        return FetchedAsset(content=f"fixture:{url}".encode("utf-8"), content_type=str(content_type))

    def _lookup(self, url: str) -> Mapping[str, Any]:
        entry = self._media.get(url)
        if entry is None:
            # Fetches use the upgraded URL; fixtures are keyed by the origin URL.
            entry = self._media.get(canonical_media_url(url))
        if entry is None:
            entry = self._media.get(url.split("?", 1)[0])
        return entry if isinstance(entry, Mapping) else {}
