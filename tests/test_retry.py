from __future__ import annotations

import unittest

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from likes_archive.config_schema import RetrySettings
from likes_archive.navigation_retry import is_retryable_navigation_exception
from likes_archive.retry import RetryEvent, RetryPolicy, backoff_seconds, call_with_retries


def _always_retryable(exc: BaseException) -> tuple[bool, str | None]:
    return True, "test"


def _never_retryable(exc: BaseException) -> tuple[bool, str | None]:
    return False, None


class TestRetryPolicy(unittest.TestCase):
    def test_validates_fields(self) -> None:
        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=0)
        with self.assertRaises(ValueError):
            RetryPolicy(timeout_ms=0)
        with self.assertRaises(ValueError):
            RetryPolicy(base_delay_seconds=5.0, max_delay_seconds=1.0)
        with self.assertRaises(ValueError):
            RetryPolicy(jitter_ratio=1.5)

    def test_from_settings_and_with_timeout(self) -> None:
        policy = RetryPolicy.from_settings(RetrySettings(max_attempts=4), timeout_ms=1234)
        self.assertEqual(policy.max_attempts, 4)
        self.assertEqual(policy.timeout_ms, 1234)
        self.assertEqual(policy.with_timeout(99).timeout_ms, 99)
        self.assertEqual(policy.with_timeout(99).max_attempts, 4)

    def test_backoff_doubles_and_caps(self) -> None:
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=3.0)
        self.assertEqual(backoff_seconds(1, policy), 1.0)
        self.assertEqual(backoff_seconds(2, policy), 2.0)
        self.assertEqual(backoff_seconds(3, policy), 3.0)
        self.assertEqual(backoff_seconds(10, policy), 3.0)


class TestCallWithRetries(unittest.TestCase):
    def test_retries_until_success_and_passes_timeout(self) -> None:
        policy = RetryPolicy(timeout_ms=500, max_attempts=3, jitter_ratio=0.0)
        seen_timeouts: list[int] = []
        events: list[RetryEvent] = []
        sleeps: list[float] = []

        def fn(timeout_ms: int) -> str:
            seen_timeouts.append(timeout_ms)
            if len(seen_timeouts) < 3:
                raise TimeoutError("slow")
            return "ok"

        out = call_with_retries(
            fn,
            policy=policy,
            is_retryable=_always_retryable,
            operation="goto",
            on_retry=events.append,
            sleep_fn=sleeps.append,
            context_url="https://x.com/home",
        )

        self.assertEqual(out, "ok")
        self.assertEqual(seen_timeouts, [500, 500, 500])
        self.assertEqual([e.failure_attempt for e in events], [1, 2])
        self.assertEqual(events[0].context_url, "https://x.com/home")
        self.assertEqual(sleeps, [1.0, 2.0])

    def test_fatal_error_is_not_retried(self) -> None:
        calls: list[int] = []

        def fn(timeout_ms: int) -> None:
            calls.append(timeout_ms)
            raise RuntimeError("fatal")

        with self.assertRaises(RuntimeError):
            call_with_retries(
                fn,
                policy=RetryPolicy(max_attempts=5),
                is_retryable=_never_retryable,
                operation="goto",
                sleep_fn=lambda _s: None,
            )
        self.assertEqual(len(calls), 1)

    def test_exhausted_attempts_reraise_last_error(self) -> None:
        calls: list[int] = []

        def fn(timeout_ms: int) -> None:
            calls.append(timeout_ms)
            raise TimeoutError(f"attempt {len(calls)}")

        with self.assertRaises(TimeoutError) as ctx:
            call_with_retries(
                fn,
                policy=RetryPolicy(max_attempts=2),
                is_retryable=_always_retryable,
                operation="wait",
                sleep_fn=lambda _s: None,
            )
        self.assertEqual(len(calls), 2)
        self.assertEqual(str(ctx.exception), "attempt 2")


class TestNavigationRetryClassification(unittest.TestCase):
    def test_timeouts_are_retryable(self) -> None:
        ok, reason = is_retryable_navigation_exception(PlaywrightTimeoutError("Timeout 30000ms exceeded"))
        self.assertTrue(ok)
        self.assertEqual(reason, "timeout")

    def test_transient_network_errors_are_retryable(self) -> None:
        ok, reason = is_retryable_navigation_exception(
            PlaywrightError("page.goto: net::ERR_CONNECTION_RESET at https://x.com/home")
        )
        self.assertTrue(ok)
        self.assertEqual(reason, "err_connection_reset")

    def test_closed_browser_is_fatal(self) -> None:
        ok, reason = is_retryable_navigation_exception(
            PlaywrightTimeoutError("Target page, context or browser has been closed")
        )
        self.assertFalse(ok)
        self.assertEqual(reason, "browser_closed")

    def test_other_errors_are_fatal(self) -> None:
        self.assertEqual(is_retryable_navigation_exception(ValueError("x")), (False, None))
        self.assertFalse(is_retryable_navigation_exception(PlaywrightError("Element is not attached"))[0])


if __name__ == "__main__":
    unittest.main()
