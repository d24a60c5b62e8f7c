from __future__ import annotations

from enum import Enum
from typing import Any, Mapping

_LOGIN_PATHS = ("/login", "/i/flow/login", "/i/flow/signup", "/account/access")


class SessionState(str, Enum):
    NOT_LOGGED_IN = "not_logged_in"
    FEED_NOT_LOADED = "feed_not_loaded"
    FEED_LOADED = "feed_loaded"


def classify_session_state(probe: Mapping[str, Any]) -> SessionState:
    """
    Classify a DOM probe taken from the current page.

    Probe keys: `path`, `loginButton`, `loginLink`, `primaryColumn`,
    `articleCount`, `emptyState`. Missing keys read as absent.
    """
    path = str(probe.get("path") or "").strip().lower()
    if any(path.startswith(p) for p in _LOGIN_PATHS):
        return SessionState.NOT_LOGGED_IN

    if bool(probe.get("loginButton")) or bool(probe.get("loginLink")):
        return SessionState.NOT_LOGGED_IN

    try:
        articles = int(probe.get("articleCount") or 0)
    except (TypeError, ValueError):
        articles = 0

    if articles > 0 or bool(probe.get("emptyState")):
        return SessionState.FEED_LOADED

    return SessionState.FEED_NOT_LOADED
