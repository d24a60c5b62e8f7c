from __future__ import annotations

import unittest

from likes_archive.session import SessionState, classify_session_state


class TestClassifySessionState(unittest.TestCase):
    def test_login_paths(self) -> None:
        for path in ("/login", "/i/flow/login", "/i/flow/login?redirect_after_login=%2Flikes", "/account/access"):
            with self.subTest(path=path):
                self.assertEqual(classify_session_state({"path": path, "articleCount": 3}), SessionState.NOT_LOGGED_IN)

    def test_login_controls(self) -> None:
        self.assertEqual(
            classify_session_state({"path": "/alice/likes", "loginButton": True}),
            SessionState.NOT_LOGGED_IN,
        )
        self.assertEqual(
            classify_session_state({"path": "/home", "loginLink": 1}),
            SessionState.NOT_LOGGED_IN,
        )

    def test_feed_loaded(self) -> None:
        self.assertEqual(
            classify_session_state({"path": "/alice/likes", "primaryColumn": True, "articleCount": 12}),
            SessionState.FEED_LOADED,
        )
        self.assertEqual(
            classify_session_state({"path": "/alice/likes", "primaryColumn": True, "emptyState": True}),
            SessionState.FEED_LOADED,
        )

    def test_feed_not_loaded(self) -> None:
        self.assertEqual(classify_session_state({"path": "/alice/likes", "primaryColumn": True}), SessionState.FEED_NOT_LOADED)
        self.assertEqual(classify_session_state({"articleCount": "many"}), SessionState.FEED_NOT_LOADED)
        self.assertEqual(classify_session_state({}), SessionState.FEED_NOT_LOADED)


if __name__ == "__main__":
    unittest.main()
