from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

_STATUS_RE = re.compile(r"/([A-Za-z0-9_]{1,30})/status(?:es)?/(\d+)")
_STATUS_ID_RE = re.compile(r"/status(?:es)?/(\d+)")

_PLATFORM_HOSTS = frozenset(
    {
        "x.com",
        "twitter.com",
        "mobile.x.com",
        "mobile.twitter.com",
    }
)

SITE_ORIGIN = "https://x.com"


def canonicalize_url(url: str) -> str:
    value = (url or "").strip()
    if not value:
        return ""

    try:
        parts = urlsplit(value)
    except ValueError:
        return value.rstrip("/")

    if not parts.scheme or not parts.netloc:
        return value.rstrip("/")

    scheme = parts.scheme.lower()
    netloc = parts.netloc.lower()
    if netloc.startswith("www."):
        netloc = netloc[4:]

    path = (parts.path or "").rstrip("/")
    if not path:
        path = "/"

    return urlunsplit((scheme, netloc, path, parts.query, ""))


def is_platform_url(url: str) -> bool:
    try:
        host = (urlsplit((url or "").strip()).netloc or "").lower()
    except ValueError:
        return False
    if host.startswith("www."):
        host = host[4:]
    return host in _PLATFORM_HOSTS


def status_id_from_url(url: str | None) -> str | None:
    value = (url or "").strip()
    if not value:
        return None
    m = _STATUS_ID_RE.search(value)
    return m.group(1) if m else None


def canonical_status_url(href: str | None, *, origin: str = SITE_ORIGIN) -> str | None:
    """
    Normalize a status href to https://x.com/<handle>/status/<id>.

    Sub-paths such as /photo/1 or /analytics are dropped.
    """
    value = (href or "").strip()
    if not value:
        return None
    absolute = urljoin(origin + "/", value)
    m = _STATUS_RE.search(urlsplit(absolute).path or "")
    if not m:
        return None
    handle, status_id = m.group(1), m.group(2)
    return f"{origin.rstrip('/')}/{handle}/status/{status_id}"


def conversation_url(conversation_id: str, *, origin: str = SITE_ORIGIN) -> str:
    # The platform redirects /i/status/<id> to the canonical author path.
    return f"{origin.rstrip('/')}/i/status/{conversation_id}"


def is_media_host(url: str) -> bool:
    try:
        host = (urlsplit((url or "").strip()).netloc or "").lower()
    except ValueError:
        return False
    return host.endswith("twimg.com")


def canonical_media_url(url: str) -> str:
    """
    Strip size variants from a pbs.twimg.com media URL so every rendition of one
    asset maps to the same origin URL. The `format` parameter is kept.
    """
    value = (url or "").strip()
    if "pbs.twimg.com/" not in value:
        return value
    try:
        parts = urlsplit(value)
    except ValueError:
        return value
    params = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k.lower() == "format"
    ]
    path = parts.path
    if not params:
        # Legacy form: /media/<id>.jpg:large
        path = re.sub(r":(?:thumb|small|medium|large|orig)$", "", path)
    return urlunsplit((parts.scheme, parts.netloc, path, urlencode(params), ""))


def upgrade_media_url(url: str) -> str:
    """Rewrite a pbs.twimg.com media URL to request the original-resolution variant."""
    value = canonical_media_url(url)
    if "pbs.twimg.com/media/" not in value:
        return value
    parts = urlsplit(value)
    params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k.lower() != "name"]
    params.append(("name", "orig"))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(params), ""))


def animated_video_url(poster_url: str) -> str | None:
    """
    Map a tweet_video_thumb poster to its looping mp4.

    https://pbs.twimg.com/tweet_video_thumb/<id>.jpg -> https://video.twimg.com/tweet_video/<id>.mp4
    """
    m = re.search(r"pbs\.twimg\.com/tweet_video_thumb/([A-Za-z0-9_-]+)", poster_url or "")
    if not m:
        return None
    return f"https://video.twimg.com/tweet_video/{m.group(1)}.mp4"
