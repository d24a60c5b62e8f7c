from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Sequence

from .post import (
    CardPayload,
    ExtractedLink,
    ExtractedPost,
    MediaKind,
    MediaRef,
    PostMetrics,
    RankedPost,
)
from .urls import (
    animated_video_url,
    canonical_media_url,
    canonical_status_url,
    is_platform_url,
    status_id_from_url,
)

_COUNT_RE = re.compile(r"(\d[\d,.]*)(?:\s*([KkMmBb])(?![A-Za-z]))?")
_SUFFIX_MULTIPLIER = {"k": 1_000, "m": 1_000_000, "b": 1_000_000_000}


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def _coerce_bool(value: Any) -> bool:
    return value is True


def _coerce_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    return []


def parse_count(value: Any) -> int | None:
    """
    Parse an engagement counter label such as "1,234 Likes. Like", "12.5K" or "3M".
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None

    text = _coerce_str(value)
    if text is None:
        return None

    m = _COUNT_RE.search(text)
    if not m:
        return None

    digits, suffix = m.group(1).rstrip(".,"), m.group(2)
    if suffix:
        try:
            number = float(digits.replace(",", ""))
        except ValueError:
            return None
        return int(round(number * _SUFFIX_MULTIPLIER[suffix.lower()]))

    try:
        return int(digits.replace(",", "").replace(".", ""))
    except ValueError:
        return None


def _split_author(user_name_text: str | None) -> tuple[str | None, str | None]:
    name = None
    handle = None
    for line in (user_name_text or "").splitlines():
        s = line.strip()
        if not s or s == "·":
            continue
        if s.startswith("@"):
            if handle is None:
                handle = s[1:].strip() or None
            continue
        if name is None:
            name = s
    return name, handle


def _post_identity(snapshot: Mapping[str, Any]) -> tuple[str | None, str | None]:
    time_url = canonical_status_url(_coerce_str(snapshot.get("timeHref")))
    if time_url:
        return status_id_from_url(time_url), time_url

    quoted = status_id_from_url(_coerce_str(snapshot.get("quotedHref")))
    for href in _coerce_list(snapshot.get("statusHrefs")):
        url = canonical_status_url(_coerce_str(href))
        sid = status_id_from_url(url)
        if sid and sid != quoted:
            return sid, url

    sid = _coerce_str(snapshot.get("id"))
    if sid and sid.isdigit():
        return sid, None
    return None, None


def _extract_links(values: Iterable[Any]) -> tuple[ExtractedLink, ...]:
    out: list[ExtractedLink] = []
    seen: set[str] = set()
    for item in values:
        if isinstance(item, str):
            href, expanded = _coerce_str(item), None
        elif isinstance(item, Mapping):
            href = _coerce_str(item.get("href"))
            expanded = _coerce_str(item.get("expanded"))
        else:
            continue

        if not href or not href.startswith(("http://", "https://")):
            continue
        if is_platform_url(href):
            continue

        key = href.rstrip("/").casefold()
        if key in seen:
            continue
        seen.add(key)

        resolved = None
        if expanded:
            candidate = expanded.rstrip("…").strip()
            if candidate.startswith(("http://", "https://")) and not expanded.endswith("…"):
                resolved = candidate
        out.append(ExtractedLink(url=href, resolved_url=resolved))
    return tuple(out)


def _extract_media(post_id: str, snapshot: Mapping[str, Any], anomalies: list[str]) -> tuple[MediaRef, ...]:
    refs: list[MediaRef] = []
    seen: set[str] = set()

    def _add(url: str | None, kind: MediaKind) -> None:
        if not url or not url.startswith(("http://", "https://")):
            return
        canonical = canonical_media_url(url)
        if canonical in seen:
            return
        seen.add(canonical)
        refs.append(MediaRef(post_id=post_id, url=canonical, kind=kind))

    for src in _coerce_list(snapshot.get("images")):
        s = _coerce_str(src)
        if s and "pbs.twimg.com/media" in s:
            _add(s, MediaKind.IMAGE)

    for video in _coerce_list(snapshot.get("videos")):
        if not isinstance(video, Mapping):
            continue
        src = _coerce_str(video.get("src")) or ""
        poster = _coerce_str(video.get("poster")) or ""

        looping = animated_video_url(poster)
        if "tweet_video/" in src or looping:
            _add(src if src.startswith("http") else looping, MediaKind.ANIMATED)
            continue

        if src.startswith(("http://", "https://")):
            _add(src, MediaKind.VIDEO)
        elif poster:
            # Streamed (blob:) videos cannot be fetched directly; keep the poster frame.
            anomalies.append("video_stream_unavailable")
            _add(poster, MediaKind.VIDEO)

    card = snapshot.get("card")
    if isinstance(card, Mapping):
        _add(_coerce_str(card.get("image")), MediaKind.CARD)

    return tuple(refs)


def _extract_card(value: Any) -> CardPayload | None:
    if not isinstance(value, Mapping):
        return None
    card = CardPayload(
        type=_coerce_str(value.get("type")),
        url=_coerce_str(value.get("url")),
        title=_coerce_str(value.get("title")),
        description=_coerce_str(value.get("description")),
    )
    if card == CardPayload():
        return None
    return card


def _extract_metrics(value: Any, anomalies: list[str]) -> PostMetrics:
    if not isinstance(value, Mapping):
        anomalies.append("missing_metrics")
        return PostMetrics()

    metrics = PostMetrics(
        replies=parse_count(value.get("reply")),
        reposts=parse_count(value.get("retweet")),
        likes=parse_count(value.get("like")),
        views=parse_count(value.get("views")),
        bookmarks=parse_count(value.get("bookmark")),
    )
    if metrics == PostMetrics():
        anomalies.append("missing_metrics")
    return metrics


def _conversation_id(post_id: str, snapshot: Mapping[str, Any]) -> str | None:
    explicit = _coerce_str(snapshot.get("conversationId"))
    if explicit and explicit.isdigit():
        return explicit

    from_link = status_id_from_url(_coerce_str(snapshot.get("conversationHref")))
    if from_link:
        return from_link

    if _coerce_bool(snapshot.get("threadMarker")):
        return post_id
    return None


def extract_post(snapshot: Mapping[str, Any]) -> ExtractedPost | None:
    """
    Map one serialized feed element to a candidate post record.

    Never raises. Returns None only when no post id can be recovered; any other
    missing or malformed field degrades to a default and is noted in `anomalies`.
    """
    try:
        post_id, url = _post_identity(snapshot)
    except Exception:
        return None

    if not post_id:
        return None

    anomalies: list[str] = []
    try:
        name, handle = _split_author(_coerce_str(snapshot.get("userNameText")))
        if handle is None:
            handle = _coerce_str(snapshot.get("handle"))
            if handle:
                handle = handle.lstrip("@") or None
        if name is None:
            anomalies.append("missing_author_name")
        if handle is None:
            anomalies.append("missing_author_handle")

        authored_at = _coerce_str(snapshot.get("datetime"))
        if authored_at is None:
            anomalies.append("missing_timestamp")

        text = _coerce_str(snapshot.get("text"))
        if text is None:
            text = _coerce_str(snapshot.get("textContent")) or ""
            anomalies.append("missing_text")

        quoted = status_id_from_url(_coerce_str(snapshot.get("quotedHref")))
        if quoted == post_id:
            quoted = None

        media = _extract_media(post_id, snapshot, anomalies)

        return ExtractedPost(
            post_id=post_id,
            url=url,
            html=_coerce_str(snapshot.get("html")) or "",
            text=text,
            author_name=name,
            author_handle=handle,
            authored_at=authored_at,
            metrics=_extract_metrics(snapshot.get("metrics"), anomalies),
            links=_extract_links(_coerce_list(snapshot.get("links"))),
            media=media,
            card=_extract_card(snapshot.get("card")),
            quoted_post_id=quoted,
            conversation_id=_conversation_id(post_id, snapshot),
            anomalies=tuple(anomalies),
        )
    except Exception as e:
        return ExtractedPost(
            post_id=post_id,
            url=url,
            text=_coerce_str(snapshot.get("textContent")) or "",
            anomalies=tuple(anomalies) + (f"extraction_error:{type(e).__name__}",),
        )


def extract_posts(snapshots: Iterable[Mapping[str, Any]]) -> tuple[list[ExtractedPost], int]:
    """
    Extract a batch, dropping repeated ids (first occurrence wins).

    Returns the posts in display order and the number of snapshots without an id.
    """
    posts: list[ExtractedPost] = []
    seen: set[str] = set()
    unidentified = 0
    for snap in snapshots:
        if not isinstance(snap, Mapping):
            unidentified += 1
            continue
        post = extract_post(snap)
        if post is None:
            unidentified += 1
            continue
        if post.post_id in seen:
            continue
        seen.add(post.post_id)
        posts.append(post)
    return posts, unidentified


def assign_ranks(posts_newest_first: Sequence[ExtractedPost], *, base: int) -> list[RankedPost]:
    """
    Give each post a collection rank above `base`.

    The feed renders newest-first, so the batch is reversed: the oldest visible post
    gets base+1 and the newest gets base+len(batch). Ranks from later runs therefore
    always sort after everything already stored.
    """
    start = max(0, int(base))
    ordered = list(reversed(list(posts_newest_first)))
    return [RankedPost(post=p, rank=start + i + 1) for i, p in enumerate(ordered)]


def snapshot_post_id(snapshot: Mapping[str, Any]) -> str | None:
    """The post id a snapshot would extract to, or None."""
    if not isinstance(snapshot, Mapping):
        return None
    post_id, _ = _post_identity(snapshot)
    return post_id
