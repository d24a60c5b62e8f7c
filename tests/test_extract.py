from __future__ import annotations

import unittest
from typing import Any

from likes_archive.extract import assign_ranks, extract_post, extract_posts, parse_count, snapshot_post_id
from likes_archive.post import MediaKind


def _snapshot(post_id: str, *, handle: str = "alice", **overrides: Any) -> dict[str, Any]:
    snap: dict[str, Any] = {
        "timeHref": f"https://x.com/{handle}/status/{post_id}",
        "statusHrefs": [f"https://x.com/{handle}/status/{post_id}"],
        "userNameText": f"Alice Example\n@{handle}\n·\n2h",
        "datetime": "2025-01-02T03:04:05.000Z",
        "text": f"post {post_id}",
        "textContent": f"Alice Example @{handle} post {post_id}",
        "html": f"<article>{post_id}</article>",
        "links": [],
        "images": [],
        "videos": [],
        "card": None,
        "metrics": {"reply": "3", "retweet": "1,204", "like": "12.5K", "views": "2M", "bookmark": "7"},
        "quotedHref": None,
        "conversationHref": None,
        "threadMarker": False,
    }
    snap.update(overrides)
    return snap


class TestParseCount(unittest.TestCase):
    def test_labels(self) -> None:
        self.assertEqual(parse_count("1,234 Likes. Like"), 1234)
        self.assertEqual(parse_count("12.5K"), 12500)
        self.assertEqual(parse_count("3M views"), 3000000)
        self.assertEqual(parse_count("12 Bookmarks"), 12)
        self.assertEqual(parse_count(5), 5)
        self.assertIsNone(parse_count("Reply"))
        self.assertIsNone(parse_count(None))
        self.assertIsNone(parse_count(True))


class TestExtractPost(unittest.TestCase):
    def test_full_snapshot(self) -> None:
        post = extract_post(
            _snapshot(
                "100",
                links=[
                    {"href": "https://t.co/abc", "expanded": "https://example.com/article"},
                    {"href": "https://t.co/def", "expanded": "example.org/long/pa…"},
                    {"href": "https://x.com/alice/status/5", "expanded": "x.com"},
                ],
                images=[
                    "https://pbs.twimg.com/media/IMG1?format=jpg&name=small",
                    "https://pbs.twimg.com/media/IMG1?format=jpg&name=large",
                    "https://pbs.twimg.com/profile_images/1/me.jpg",
                ],
                card={
                    "type": "summary_large_image",
                    "url": "https://t.co/card",
                    "title": "Title",
                    "description": None,
                    "image": "https://pbs.twimg.com/card_img/9/x?format=jpg&name=600x314",
                },
                quotedHref="https://x.com/bob/status/55",
            )
        )
        assert post is not None

        self.assertEqual(post.post_id, "100")
        self.assertEqual(post.url, "https://x.com/alice/status/100")
        self.assertEqual(post.author_name, "Alice Example")
        self.assertEqual(post.author_handle, "alice")
        self.assertEqual(post.authored_at, "2025-01-02T03:04:05.000Z")
        self.assertEqual(post.text, "post 100")
        self.assertEqual(post.metrics.replies, 3)
        self.assertEqual(post.metrics.reposts, 1204)
        self.assertEqual(post.metrics.likes, 12500)
        self.assertEqual(post.metrics.views, 2000000)
        self.assertEqual(post.metrics.bookmarks, 7)

        self.assertEqual([link.url for link in post.links], ["https://t.co/abc", "https://t.co/def"])
        self.assertEqual(post.links[0].resolved_url, "https://example.com/article")
        self.assertIsNone(post.links[1].resolved_url)

        kinds = [(m.kind, m.url) for m in post.media]
        self.assertEqual(
            kinds,
            [
                (MediaKind.IMAGE, "https://pbs.twimg.com/media/IMG1?format=jpg"),
                (MediaKind.CARD, "https://pbs.twimg.com/card_img/9/x?format=jpg"),
            ],
        )
        self.assertTrue(post.has_media)
        self.assertTrue(post.has_links)
        self.assertEqual(post.quoted_post_id, "55")
        self.assertTrue(post.is_quoted)
        assert post.card is not None
        self.assertEqual(post.card.type, "summary_large_image")
        self.assertEqual(post.card.title, "Title")
        self.assertEqual(post.anomalies, ())

    def test_identity_ignores_quoted_status_link(self) -> None:
        snap = _snapshot(
            "200",
            timeHref=None,
            statusHrefs=["https://x.com/bob/status/55", "https://x.com/alice/status/200/analytics"],
            quotedHref="https://x.com/bob/status/55",
        )
        post = extract_post(snap)
        assert post is not None
        self.assertEqual(post.post_id, "200")
        self.assertEqual(snapshot_post_id(snap), "200")

    def test_missing_fields_degrade(self) -> None:
        post = extract_post(
            {
                "timeHref": "/carol/status/300",
                "textContent": "just text",
            }
        )
        assert post is not None
        self.assertEqual(post.post_id, "300")
        self.assertEqual(post.text, "just text")
        self.assertIsNone(post.author_handle)
        self.assertEqual(post.media, ())
        for anomaly in ("missing_author_name", "missing_author_handle", "missing_timestamp", "missing_text", "missing_metrics"):
            self.assertIn(anomaly, post.anomalies)

    def test_garbled_fields_never_raise(self) -> None:
        post = extract_post(
            _snapshot(
                "400",
                links=42,
                images={"not": "a list"},
                videos=["nonsense", None],
                metrics=["a", "b"],
                card="oops",
                userNameText=12345,
            )
        )
        assert post is not None
        self.assertEqual(post.post_id, "400")
        self.assertEqual(post.links, ())
        self.assertIsNone(post.card)
        self.assertIn("missing_metrics", post.anomalies)

    def test_no_id_returns_none(self) -> None:
        self.assertIsNone(extract_post({"text": "orphan"}))
        self.assertIsNone(extract_post(_snapshot("x", timeHref=None, statusHrefs=[], id="abc")))

    def test_videos(self) -> None:
        post = extract_post(
            _snapshot(
                "500",
                videos=[
                    {"src": "blob:https://x.com/1234", "poster": "https://pbs.twimg.com/ext_tw_video_thumb/1/pu/img/p.jpg"},
                    {"src": "", "poster": "https://pbs.twimg.com/tweet_video_thumb/GiF1.jpg"},
                    {"src": "https://video.twimg.com/amplify_video/2/vid/a.mp4", "poster": ""},
                ],
            )
        )
        assert post is not None
        self.assertEqual(
            [(m.kind, m.url) for m in post.media],
            [
                (MediaKind.VIDEO, "https://pbs.twimg.com/ext_tw_video_thumb/1/pu/img/p.jpg"),
                (MediaKind.ANIMATED, "https://video.twimg.com/tweet_video/GiF1.mp4"),
                (MediaKind.VIDEO, "https://video.twimg.com/amplify_video/2/vid/a.mp4"),
            ],
        )
        self.assertIn("video_stream_unavailable", post.anomalies)

    def test_conversation_id(self) -> None:
        root = extract_post(_snapshot("600", threadMarker=True))
        reply = extract_post(_snapshot("601", conversationHref="https://x.com/alice/status/600"))
        plain = extract_post(_snapshot("602"))
        assert root is not None and reply is not None and plain is not None
        self.assertEqual(root.conversation_id, "600")
        self.assertEqual(reply.conversation_id, "600")
        self.assertIsNone(plain.conversation_id)


class TestBatch(unittest.TestCase):
    def test_extract_posts_dedupes_and_counts_unidentified(self) -> None:
        posts, unidentified = extract_posts(
            [
                _snapshot("3", text="first"),
                {"text": "no id"},
                _snapshot("2"),
                _snapshot("3", text="second"),
                "not a mapping",  # type: ignore[list-item]
            ]
        )
        self.assertEqual([p.post_id for p in posts], ["3", "2"])
        self.assertEqual(posts[0].text, "first")
        self.assertEqual(unidentified, 2)

    def test_assign_ranks_reverses_display_order(self) -> None:
        posts, _ = extract_posts([_snapshot("30"), _snapshot("20"), _snapshot("10")])
        ranked = assign_ranks(posts, base=7)
        self.assertEqual([(r.post.post_id, r.rank) for r in ranked], [("10", 8), ("20", 9), ("30", 10)])


if __name__ == "__main__":
    unittest.main()
