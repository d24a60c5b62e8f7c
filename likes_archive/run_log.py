from __future__ import annotations

import json
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, TextIO


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _truncate(text: str, *, limit: int) -> str:
    s = str(text or "")
    if limit <= 0:
        return ""
    if len(s) <= limit:
        return s
    return s[: max(0, limit - 1)] + "…"


def describe_exception(exc: BaseException, *, with_traceback: bool = True) -> dict[str, Any]:
    err: dict[str, Any] = {
        "type": type(exc).__name__,
        "message": _truncate(str(exc), limit=2000),
    }
    if with_traceback:
        err["traceback"] = _truncate(
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            limit=12000,
        )
    return err


class RunLogger:
    """
    JSON-lines logger for collection runs.

    Each line is a single JSON object. Writes are serialized with a lock so media
    workers can log from pool threads. A path of None keeps records in memory only.
    """

    def __init__(
        self,
        path: str | Path | None,
        *,
        overwrite: bool = False,
        session_id: str | None = None,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._overwrite = bool(overwrite)
        self._session_id = (session_id or "").strip() or uuid.uuid4().hex
        self._run_id: str | None = None
        self._fp: TextIO | None = None
        self._lock = Lock()
        self._opened = False
        self.records: list[dict[str, Any]] = []

    @classmethod
    def open(
        cls,
        path: str | Path | None,
        *,
        overwrite: bool = False,
        session_id: str | None = None,
    ) -> "RunLogger":
        logger = cls(path, overwrite=overwrite, session_id=session_id)
        logger._ensure_open()
        return logger

    @classmethod
    def memory(cls) -> "RunLogger":
        return cls(None)

    def close(self) -> None:
        with self._lock:
            if self._fp is not None:
                try:
                    self._fp.flush()
                finally:
                    self._fp.close()
                self._fp = None

    def __enter__(self) -> "RunLogger":
        self._ensure_open()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def set_run_id(self, run_id: str | None) -> None:
        self._run_id = (run_id or "").strip() or None

    def bind(self, stage: str, **context: Any) -> "StageLogger":
        return StageLogger(self, stage=stage, context=context)

    def events(self) -> list[str]:
        with self._lock:
            return [str(r.get("event")) for r in self.records]

    def debug(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self.log("DEBUG", event, url=url, **data)

    def info(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self.log("INFO", event, url=url, **data)

    def warning(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self.log("WARN", event, url=url, **data)

    def error(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self.log("ERROR", event, url=url, **data)

    def exception(
        self,
        event: str,
        *,
        exc: BaseException,
        url: str | None = None,
        **data: Any,
    ) -> None:
        self.log("ERROR", event, url=url, error=describe_exception(exc), **data)

    def log(
        self,
        level: str,
        event: str,
        *,
        url: str | None = None,
        stage: str | None = None,
        **data: Any,
    ) -> None:
        record: dict[str, Any] = {
            "ts": _utc_now_iso(),
            "level": (level or "").strip().upper() or "INFO",
            "event": (event or "").strip() or "event",
            "session_id": self._session_id,
        }

        if self._run_id:
            record["run_id"] = self._run_id

        st = (stage or "").strip()
        if st:
            record["stage"] = st

        u = (url or "").strip()
        if u:
            record["url"] = u

        if data:
            record["data"] = data

        self._write(record)

    def _ensure_open(self) -> None:
        if self._path is None or self._fp is not None:
            return

        with self._lock:
            if self._fp is not None:
                return

            self._path.parent.mkdir(parents=True, exist_ok=True)
            mode = "w" if self._overwrite and not self._opened else "a"

            self._fp = self._path.open(mode, encoding="utf-8", newline="\n")
            self._opened = True

    def _write(self, record: dict[str, Any]) -> None:
        self._ensure_open()

        payload = json.dumps(
            record,
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )

        with self._lock:
            if self._fp is None:
                self.records.append(record)
                return
            self._fp.write(payload + "\n")
            self._fp.flush()


class StageLogger:
    """A RunLogger view that stamps every record with a pipeline stage and entity context."""

    def __init__(self, parent: RunLogger, *, stage: str, context: dict[str, Any]) -> None:
        self._parent = parent
        self.stage = stage
        self._context = dict(context)

    def bind(self, **context: Any) -> "StageLogger":
        merged = dict(self._context)
        merged.update(context)
        return StageLogger(self._parent, stage=self.stage, context=merged)

    def debug(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self._emit("DEBUG", event, url=url, **data)

    def info(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self._emit("INFO", event, url=url, **data)

    def warning(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self._emit("WARN", event, url=url, **data)

    def error(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self._emit("ERROR", event, url=url, **data)

    def exception(self, event: str, *, exc: BaseException, url: str | None = None, **data: Any) -> None:
        self._emit("ERROR", event, url=url, error=describe_exception(exc), **data)

    def _emit(self, level: str, event: str, *, url: str | None = None, **data: Any) -> None:
        payload = dict(self._context)
        payload.update(data)
        self._parent.log(level, event, url=url, stage=self.stage, **payload)
