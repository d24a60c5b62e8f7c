from __future__ import annotations

import hashlib
import os
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Callable, Protocol, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config_schema import MediaConfig
from .errors import MediaFetchError, StorageError
from .post import MediaItem, MediaRef
from .run_log import RunLogger, StageLogger
from .storage import ArchiveStore
from .urls import upgrade_media_url

_EXTENSION_BY_CONTENT_TYPE: dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/pjpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/avif": ".avif",
    "image/heic": ".heic",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/quicktime": ".mov",
    "application/x-mpegurl": ".m3u8",
    "application/vnd.apple.mpegurl": ".m3u8",
    "application/octet-stream": ".bin",
}


@dataclass(frozen=True)
class FetchedAsset:
    content: bytes
    content_type: str | None


class MediaFetcher(Protocol):
    def fetch(self, url: str, *, timeout: float) -> FetchedAsset: ...


def classify_content_type(content_type: str | None) -> str:
    """
    Map a response Content-Type to a file extension.

    Text and markup responses (login walls, error pages) are rejected.
    """
    base = (content_type or "").split(";", 1)[0].strip().lower()
    if not base:
        raise ValueError("response has no content type")

    ext = _EXTENSION_BY_CONTENT_TYPE.get(base)
    if ext is not None:
        return ext

    major, _, minor = base.partition("/")
    if major in ("image", "video") and minor:
        cleaned = "".join(ch for ch in minor.split("+", 1)[0] if ch.isalnum())
        if cleaned:
            return f".{cleaned}"

    raise ValueError(f"unsupported content type: {base}")


def media_filename(post_id: str, origin_url: str, ext: str) -> str:
    digest = hashlib.md5((origin_url or "").encode("utf-8")).hexdigest()[:8]
    return f"{post_id}_{digest}{ext}"


def make_http_session(config: MediaConfig) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": config.user_agent})
    retry = Retry(
        total=int(config.http_retries),
        connect=int(config.http_retries),
        read=int(config.http_retries),
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=frozenset(["GET", "HEAD"]),
    )
    pool = max(int(config.concurrency), 10)
    adapter = HTTPAdapter(max_retries=retry, pool_connections=pool, pool_maxsize=pool)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class HttpMediaFetcher:
    """Fetch media over HTTP with a shared, retrying requests session."""

    def __init__(self, config: MediaConfig, *, session: requests.Session | None = None) -> None:
        self._session = session or make_http_session(config)

    def fetch(self, url: str, *, timeout: float) -> FetchedAsset:
        resp = self._session.get(url, timeout=timeout)
        try:
            resp.raise_for_status()
            return FetchedAsset(content=resp.content, content_type=resp.headers.get("Content-Type"))
        finally:
            resp.close()

    def close(self) -> None:
        self._session.close()


@dataclass(frozen=True)
class MediaFailure:
    post_id: str
    url: str
    reason: str


@dataclass(frozen=True)
class MediaBatchResult:
    requested: int
    saved: int
    skipped: int
    failed: int
    failures: tuple[MediaFailure, ...] = ()


class _Progress:
    def __init__(self) -> None:
        self._lock = Lock()
        self.saved = 0
        self.skipped = 0
        self.failed = 0
        self.failures: list[MediaFailure] = []

    def mark_saved(self) -> None:
        with self._lock:
            self.saved += 1

    def mark_skipped(self) -> None:
        with self._lock:
            self.skipped += 1

    def mark_failed(self, failure: MediaFailure) -> None:
        with self._lock:
            self.failed += 1
            self.failures.append(failure)


class MediaDownloader:
    """
    Bounded-concurrency media acquisition.

    Each (post id, origin url) pair is fetched at most once: already-recorded
    pairs are skipped and pairs in flight on another worker are claimed so a
    concurrent duplicate does not fetch again. A failed item is counted and
    logged; it never stops the rest of the batch.
    """

    def __init__(
        self,
        store: ArchiveStore,
        media_dir: str | Path,
        *,
        fetcher: MediaFetcher,
        concurrency: int = 5,
        timeout_seconds: float = 30.0,
        logger: RunLogger | StageLogger | None = None,
        clock: Callable[[], datetime] | None = None,
        owns_fetcher: bool = False,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        self._store = store
        self._media_dir = Path(media_dir)
        self._fetcher = fetcher
        self._owns_fetcher = bool(owns_fetcher)
        self._concurrency = int(concurrency)
        self._timeout = float(timeout_seconds)
        self._log = logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._claim_lock = Lock()
        self._claimed: set[tuple[str, str]] = set()

    @classmethod
    def from_config(
        cls,
        store: ArchiveStore,
        media_dir: str | Path,
        config: MediaConfig,
        *,
        fetcher: MediaFetcher | None = None,
        logger: RunLogger | StageLogger | None = None,
    ) -> "MediaDownloader":
        return cls(
            store,
            media_dir,
            fetcher=fetcher or HttpMediaFetcher(config),
            concurrency=config.concurrency,
            timeout_seconds=config.timeout_seconds,
            logger=logger,
            owns_fetcher=fetcher is None,
        )

    def close(self) -> None:
        """Close the fetcher if this downloader created it."""
        if self._owns_fetcher:
            close = getattr(self._fetcher, "close", None)
            if close is not None:
                close()

    def download_all(self, refs: Sequence[MediaRef]) -> MediaBatchResult:
        unique: list[MediaRef] = []
        seen: set[tuple[str, str]] = set()
        for ref in refs:
            key = (ref.post_id, ref.url)
            if not ref.post_id or not ref.url or key in seen:
                continue
            seen.add(key)
            unique.append(ref)

        progress = _Progress()
        if not unique:
            return MediaBatchResult(requested=0, saved=0, skipped=0, failed=0)

        workers = min(self._concurrency, len(unique))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="media") as pool:
            futures = {pool.submit(self.download_one, ref): ref for ref in unique}
            for fut in as_completed(futures):
                ref = futures[fut]
                try:
                    outcome = fut.result()
                except (MediaFetchError, StorageError) as e:
                    self._mark_failed(progress, ref, str(e))
                    continue
                except Exception as e:
                    # Unexpected worker errors count as item failures.
                    self._mark_failed(progress, ref, f"{type(e).__name__}: {e}")
                    if self._log is not None:
                        self._log.exception("media_item_error", exc=e, url=ref.url, post_id=ref.post_id)
                    continue

                if outcome:
                    progress.mark_saved()
                else:
                    progress.mark_skipped()

        return MediaBatchResult(
            requested=len(unique),
            saved=progress.saved,
            skipped=progress.skipped,
            failed=progress.failed,
            failures=tuple(progress.failures),
        )

    def _mark_failed(self, progress: _Progress, ref: MediaRef, reason: str) -> None:
        progress.mark_failed(MediaFailure(post_id=ref.post_id, url=ref.url, reason=reason))
        if self._log is not None:
            self._log.warning(
                "media_item_failed",
                url=ref.url,
                post_id=ref.post_id,
                kind=ref.kind.value,
                reason=reason,
            )

    def download_one(self, ref: MediaRef) -> bool:
        """
        Fetch, write and record one asset.

        Returns True when a new item was saved and False when it was already
        recorded or claimed by another worker. Raises MediaFetchError on failure.
        """
        key = (ref.post_id, ref.url)
        with self._claim_lock:
            if key in self._claimed:
                return False
            self._claimed.add(key)

        try:
            if self._store.exists_media(ref.post_id, ref.url):
                return False

            fetch_url = upgrade_media_url(ref.url)
            try:
                asset = self._fetcher.fetch(fetch_url, timeout=self._timeout)
            except requests.Timeout as e:
                raise MediaFetchError(f"timed out fetching {fetch_url}", url=ref.url, post_id=ref.post_id) from e
            except (requests.RequestException, OSError) as e:
                raise MediaFetchError(f"failed to fetch {fetch_url}: {e}", url=ref.url, post_id=ref.post_id) from e

            try:
                ext = classify_content_type(asset.content_type)
            except ValueError as e:
                raise MediaFetchError(str(e), url=ref.url, post_id=ref.post_id) from e

            if not asset.content:
                raise MediaFetchError("empty response body", url=ref.url, post_id=ref.post_id)

            target = self._media_dir / ref.post_id / media_filename(ref.post_id, ref.url, ext)
            self._write_file(target, asset.content, ref)

            return self._store.insert_media(
                MediaItem(
                    post_id=ref.post_id,
                    kind=ref.kind,
                    origin_url=ref.url,
                    local_path=str(target),
                    fetched_at=self._clock().isoformat(),
                )
            )
        finally:
            with self._claim_lock:
                self._claimed.discard(key)

    def _write_file(self, target: Path, content: bytes, ref: MediaRef) -> None:
        # Unique per attempt; concurrent writers of one target each replace atomically.
        tmp = target.with_name(f"{target.name}.{uuid.uuid4().hex}.part")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(content)
            os.replace(tmp, target)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise MediaFetchError(f"failed to write {target}: {e}", url=ref.url, post_id=ref.post_id) from e
