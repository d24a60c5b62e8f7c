from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    ANIMATED = "animated"
    CARD = "card"


class CollectionMode(str, Enum):
    INCREMENTAL = "incremental"
    BACKFILL = "backfill"


@dataclass(frozen=True)
class PostMetrics:
    replies: int | None = None
    reposts: int | None = None
    likes: int | None = None
    views: int | None = None
    bookmarks: int | None = None


@dataclass(frozen=True)
class CardPayload:
    type: str | None = None
    url: str | None = None
    title: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class ExtractedLink:
    url: str
    resolved_url: str | None = None


@dataclass(frozen=True)
class MediaRef:
    post_id: str
    url: str
    kind: MediaKind


@dataclass(frozen=True)
class ExtractedPost:
    """A best-effort post record produced from one feed element snapshot."""

    post_id: str
    url: str | None = None
    html: str = ""
    text: str = ""
    author_name: str | None = None
    author_handle: str | None = None
    authored_at: str | None = None
    metrics: PostMetrics = field(default_factory=PostMetrics)
    links: Sequence[ExtractedLink] = ()
    media: Sequence[MediaRef] = ()
    card: CardPayload | None = None
    quoted_post_id: str | None = None
    conversation_id: str | None = None
    anomalies: Sequence[str] = ()

    @property
    def has_media(self) -> bool:
        return len(self.media) > 0

    @property
    def has_links(self) -> bool:
        return len(self.links) > 0

    @property
    def is_quoted(self) -> bool:
        return self.quoted_post_id is not None


@dataclass(frozen=True)
class RankedPost:
    post: ExtractedPost
    rank: int


@dataclass(frozen=True)
class StoredPost:
    post_id: str
    url: str | None
    text: str
    author_name: str | None
    author_handle: str | None
    authored_at: str | None
    collection_rank: int
    has_media: bool
    has_links: bool
    is_quoted: bool
    is_deleted: bool
    conversation_id: str | None
    is_thread_root: bool
    thread_length: int
    metrics: PostMetrics
    card: CardPayload | None
    first_seen_at: str


@dataclass(frozen=True)
class StoredLink:
    post_id: str
    url: str
    resolved_url: str | None


@dataclass(frozen=True)
class MediaItem:
    post_id: str
    kind: MediaKind
    origin_url: str
    local_path: str
    fetched_at: str
