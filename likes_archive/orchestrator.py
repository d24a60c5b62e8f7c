from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable

from .browser import FeedBrowser
from .collector import STATUS_COMPLETED, STATUS_FAILED, CollectionResult, RunCounts, run_collection
from .config_schema import AppConfig
from .errors import StorageError
from .links import LinkResolver
from .media import MediaFetcher
from .post import CollectionMode
from .run_log import RunLogger
from .storage import ArchiveStore, RunSummary


class StartResult(str, Enum):
    ACCEPTED = "accepted"
    ALREADY_RUNNING = "already_running"


@dataclass(frozen=True)
class RunStats:
    running: bool
    mode: CollectionMode | None
    started_at: str | None
    last_run_at: str | None
    last_success_at: str | None
    last_status: str | None
    last_error: str | None
    counts: RunCounts


@dataclass(frozen=True)
class _Idle:
    pass


@dataclass(frozen=True)
class _Running:
    mode: CollectionMode
    started_at: str


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CollectionOrchestrator:
    """
    Owns the single-flight run state.

    The run state (Idle or Running) and the run statistics are guarded by one
    lock, so a status reader never sees a running flag without its counts. A run
    failure ends that run only: it is logged, surfaced as last_error and recorded
    in the run history.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        store: ArchiveStore,
        browser_factory: Callable[[], FeedBrowser],
        media_dir: str | Path,
        logger: RunLogger,
        media_fetcher: MediaFetcher | None = None,
        link_resolver: LinkResolver | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._browser_factory = browser_factory
        self._media_dir = Path(media_dir)
        self._log = logger
        self._media_fetcher = media_fetcher
        self._link_resolver = link_resolver

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._state: _Idle | _Running = _Idle()
        self._counts = RunCounts()
        self._last_run_at: str | None = None
        self._last_success_at: str | None = None
        self._last_status: str | None = None
        self._last_error: str | None = None
        self._last_result: CollectionResult | None = None
        self._last_exception: BaseException | None = None
        self._worker: threading.Thread | None = None

        previous = store.last_run()
        if previous is not None:
            self._last_run_at = previous.ended_at
            self._last_status = previous.status
            self._last_error = previous.last_error
        succeeded = store.last_run(status=STATUS_COMPLETED)
        if succeeded is not None:
            self._last_success_at = succeeded.ended_at

    def start_collection(self, mode: CollectionMode, *, block: bool = False) -> StartResult:
        with self._lock:
            if isinstance(self._state, _Running):
                self._log.warning("collection_rejected", mode=mode.value, running_mode=self._state.mode.value)
                return StartResult.ALREADY_RUNNING
            self._state = _Running(mode=mode, started_at=_utc_now_iso())
            self._counts = RunCounts()
            self._stop.clear()

        if block:
            self._run(mode)
        else:
            worker = threading.Thread(target=self._run, args=(mode,), name="collection", daemon=True)
            with self._lock:
                self._worker = worker
            worker.start()
        return StartResult.ACCEPTED

    def stop_collection(self) -> bool:
        """Request the active run to stop at its next pagination step or conversation."""
        with self._lock:
            running = isinstance(self._state, _Running)
        self._stop.set()
        if running:
            self._log.info("collection_stop_requested")
        return running

    def get_run_stats(self) -> RunStats:
        with self._lock:
            state = self._state
            running = isinstance(state, _Running)
            return RunStats(
                running=running,
                mode=state.mode if isinstance(state, _Running) else None,
                started_at=state.started_at if isinstance(state, _Running) else None,
                last_run_at=self._last_run_at,
                last_success_at=self._last_success_at,
                last_status=self._last_status,
                last_error=self._last_error,
                counts=self._counts,
            )

    @property
    def last_result(self) -> CollectionResult | None:
        with self._lock:
            return self._last_result

    @property
    def last_exception(self) -> BaseException | None:
        with self._lock:
            return self._last_exception

    def wait(self, timeout: float | None = None) -> bool:
        """Join the background run. Returns True when no run is active afterwards."""
        with self._lock:
            worker = self._worker
        if worker is not None:
            worker.join(timeout)
        with self._lock:
            return isinstance(self._state, _Idle)

    def _update_counts(self, counts: RunCounts) -> None:
        with self._lock:
            self._counts = counts

    def _run(self, mode: CollectionMode) -> None:
        with self._lock:
            state = self._state
        started_at = state.started_at if isinstance(state, _Running) else _utc_now_iso()
        run_id = f"{mode.value}-{started_at}"
        self._log.set_run_id(run_id)
        self._log.info("collection_started", mode=mode.value, started_at=started_at)

        result: CollectionResult | None = None
        error: str | None = None
        failure: BaseException | None = None
        try:
            browser = self._browser_factory()
            result = run_collection(
                mode,
                config=self._config,
                store=self._store,
                browser=browser,
                media_dir=self._media_dir,
                media_fetcher=self._media_fetcher,
                link_resolver=self._link_resolver,
                logger=self._log,
                should_stop=self._stop.is_set,
                on_progress=self._update_counts,
            )
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            failure = e
            self._log.exception("collection_failed", exc=e, mode=mode.value)
        finally:
            ended_at = _utc_now_iso()
            status = result.status if result is not None else STATUS_FAILED
            with self._lock:
                counts = result.counts if result is not None else self._counts
                self._counts = counts
                self._last_result = result
                self._last_run_at = ended_at
                if status == STATUS_COMPLETED:
                    self._last_success_at = ended_at
                self._last_status = status
                self._last_error = error
                self._last_exception = failure
                self._state = _Idle()

            self._record(
                RunSummary(
                    mode=mode.value,
                    status=status,
                    started_at=started_at,
                    ended_at=ended_at,
                    last_error=error,
                    **asdict(counts),
                )
            )
            self._log.info("collection_finished", mode=mode.value, status=status, error=error)
            self._log.set_run_id(None)

    def _record(self, summary: RunSummary) -> None:
        try:
            self._store.record_run(summary)
        except StorageError as e:
            self._log.exception("run_summary_not_recorded", exc=e)
