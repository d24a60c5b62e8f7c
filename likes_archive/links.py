from __future__ import annotations

from dataclasses import replace
from threading import Lock
from typing import Sequence
from urllib.parse import urlsplit

import requests

from .config_schema import LinksConfig
from .post import ExtractedLink
from .run_log import RunLogger, StageLogger
from .urls import canonicalize_url

SHORTENER_HOSTS = frozenset(
    {
        "t.co",
        "bit.ly",
        "buff.ly",
        "ow.ly",
        "tinyurl.com",
        "goo.gl",
        "dlvr.it",
        "lnkd.in",
        "trib.al",
        "youtu.be",
    }
)


def is_shortened(url: str) -> bool:
    try:
        host = (urlsplit((url or "").strip()).netloc or "").lower()
    except ValueError:
        return False
    if host.startswith("www."):
        host = host[4:]
    return host in SHORTENER_HOSTS


class LinkResolver:
    """
    Follow redirects of shortened links to their final destination.

    Results are cached for the lifetime of the resolver. A link that cannot be
    resolved keeps its as-seen URL and no resolved URL.
    """

    def __init__(
        self,
        config: LinksConfig,
        *,
        session: requests.Session | None = None,
        user_agent: str | None = None,
        logger: RunLogger | StageLogger | None = None,
    ) -> None:
        self._timeout = float(config.timeout_seconds)
        self._session = session or requests.Session()
        if user_agent:
            self._session.headers.update({"User-Agent": user_agent})
        self._log = logger
        self._cache: dict[str, str | None] = {}
        self._lock = Lock()

    def close(self) -> None:
        self._session.close()

    def resolve(self, url: str) -> str | None:
        key = canonicalize_url(url)
        if not key:
            return None

        with self._lock:
            if key in self._cache:
                return self._cache[key]

        resolved = self._follow(url)

        with self._lock:
            self._cache[key] = resolved
        return resolved

    def resolve_links(self, links: Sequence[ExtractedLink]) -> tuple[ExtractedLink, ...]:
        out: list[ExtractedLink] = []
        for link in links:
            if link.resolved_url is None and is_shortened(link.url):
                out.append(replace(link, resolved_url=self.resolve(link.url)))
            else:
                out.append(link)
        return tuple(out)

    def _follow(self, url: str) -> str | None:
        try:
            resp = self._session.head(url, allow_redirects=True, timeout=self._timeout)
            if resp.status_code in (403, 405) or resp.status_code >= 500:
                resp.close()
                resp = self._session.get(url, allow_redirects=True, timeout=self._timeout, stream=True)
            try:
                final = (resp.url or "").strip()
            finally:
                resp.close()
        except requests.RequestException as e:
            if self._log is not None:
                self._log.warning("link_resolve_failed", url=url, reason=str(e))
            return None

        if not final or canonicalize_url(final) == canonicalize_url(url):
            return None
        return final
