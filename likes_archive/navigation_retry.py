from __future__ import annotations

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

_CLOSED_MARKERS = (
    "target closed",
    "has been closed",
    "browser has disconnected",
    "connection closed",
)

_TRANSIENT_NET_MARKERS = (
    "net::err_timed_out",
    "net::err_connection_reset",
    "net::err_connection_closed",
    "net::err_connection_refused",
    "net::err_network_changed",
    "net::err_internet_disconnected",
    "net::err_name_not_resolved",
    "net::err_aborted",
)


def is_browser_closed_error(exc: BaseException) -> bool:
    msg = (str(exc) or "").casefold()
    return any(marker in msg for marker in _CLOSED_MARKERS)


def is_retryable_navigation_exception(exc: BaseException) -> tuple[bool, str | None]:
    """
    Navigation retry policy:
    - Playwright timeouts (goto, selector waits)
    - transient network errors reported as net::ERR_*
    A closed browser or page is never retried.
    """
    if is_browser_closed_error(exc):
        return False, "browser_closed"

    if isinstance(exc, PlaywrightTimeoutError):
        return True, "timeout"

    if isinstance(exc, PlaywrightError):
        msg = (str(exc) or "").casefold()
        for marker in _TRANSIENT_NET_MARKERS:
            if marker in msg:
                return True, marker.replace("net::", "")
        return False, "playwright_error"

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True, "network_error"

    return False, None
