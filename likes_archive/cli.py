from __future__ import annotations

import argparse
import sys
from typing import Sequence

from .browser import FeedBrowser, PlaywrightFeedBrowser
from .config import ArchivePaths, config_sha256, load_config, resolve_paths
from .config_schema import AppConfig
from .errors import ConfigError, NavigationFailed, StorageError
from .links import LinkResolver
from .media import HttpMediaFetcher, MediaFetcher
from .orchestrator import CollectionOrchestrator, StartResult
from .post import CollectionMode, StoredPost
from .report import build_run_report, format_run_report
from .retry import RetryPolicy
from .run_log import RunLogger
from .storage import ArchiveStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="likes-archive")

    subparsers = parser.add_subparsers(dest="command", required=True)

    collect = subparsers.add_parser(
        "collect",
        help="Collect liked posts into the local archive.",
    )
    collect.add_argument(
        "--mode",
        choices=[m.value for m in CollectionMode],
        default=CollectionMode.INCREMENTAL.value,
        help="incremental scrolls a little; backfill walks far back into the feed.",
    )
    _add_config_arg(collect)
    collect.add_argument(
        "--offline",
        metavar="FIXTURE",
        default=None,
        help="Replay a JSON fixture instead of driving a browser (no network).",
    )
    collect.set_defaults(_handler=_cmd_collect)

    stats = subparsers.add_parser("stats", help="Show the last recorded run and archive totals.")
    _add_config_arg(stats)
    stats.set_defaults(_handler=_cmd_stats)

    media = subparsers.add_parser("media", help="List archived media for a post.")
    media.add_argument("post_id")
    _add_config_arg(media)
    media.set_defaults(_handler=_cmd_media)

    thread = subparsers.add_parser("thread", help="List the members of a thread in order.")
    thread.add_argument("root_id")
    _add_config_arg(thread)
    thread.set_defaults(_handler=_cmd_thread)

    search = subparsers.add_parser("search", help="Search archived posts.")
    search.add_argument("query", nargs="?", default="")
    search.add_argument("--author", default=None, help="Filter by author handle or name.")
    search.add_argument("--has-media", action="store_true", default=None, help="Only posts with media.")
    search.add_argument("--has-links", action="store_true", default=None, help="Only posts with links.")
    search.add_argument("--since", default=None, help="Authored at or after (ISO date).")
    search.add_argument("--until", default=None, help="Authored at or before (ISO date).")
    search.add_argument("--limit", type=int, default=20)
    _add_config_arg(search)
    search.set_defaults(_handler=_cmd_search)

    return parser


def _add_config_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML config file (defaults apply when omitted).",
    )


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _open_store(cfg: AppConfig, paths: ArchivePaths) -> ArchiveStore:
    store = ArchiveStore.open(paths.database, recreate_if_corrupt=cfg.storage.recreate_if_corrupt)
    if store.recovered_from:
        _eprint(f"Archive was corrupt and has been recreated; old file moved to {store.recovered_from}")
    return store


def _one_line(text: str, *, limit: int = 80) -> str:
    s = " ".join((text or "").split())
    return s if len(s) <= limit else s[: limit - 1] + "…"


def _print_post(post: StoredPost, *, prefix: str = "") -> None:
    author = f"@{post.author_handle}" if post.author_handle else (post.author_name or "unknown")
    print(f"{prefix}{post.post_id} {author} rank={post.collection_rank} {_one_line(post.text)}")


def _cmd_collect(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    paths = resolve_paths(cfg)
    mode = CollectionMode(args.mode)

    with RunLogger.open(paths.run_log) as log:
        log.info(
            "collect_command_started",
            mode=mode.value,
            config_path=str(args.config) if args.config else None,
            config_sha256=config_sha256(cfg),
            data_root=str(paths.data_root),
            offline=bool(args.offline),
        )

        with _open_store(cfg, paths) as store:
            if store.recovered_from:
                log.warning("archive_recreated", moved_to=store.recovered_from)

            media_fetcher: MediaFetcher
            http_fetcher: HttpMediaFetcher | None = None
            link_resolver: LinkResolver | None = None
            if args.offline:
                from .offline import FixtureFeedBrowser, FixtureMediaFetcher, load_fixture

                fixture = load_fixture(args.offline)

                def browser_factory() -> FeedBrowser:
                    return FixtureFeedBrowser(fixture)

                media_fetcher = FixtureMediaFetcher(fixture)
            else:
                policy = RetryPolicy.from_settings(cfg.retry, timeout_ms=cfg.browser.navigation_timeout_ms)

                def browser_factory() -> FeedBrowser:
                    return PlaywrightFeedBrowser(
                        paths.profile_dir,
                        browser=cfg.browser,
                        pagination=cfg.pagination,
                        policy=policy,
                        logger=log.bind("session"),
                    )

                http_fetcher = HttpMediaFetcher(cfg.media)
                media_fetcher = http_fetcher
                if cfg.links.resolve_redirects:
                    link_resolver = LinkResolver(
                        cfg.links,
                        user_agent=cfg.media.user_agent,
                        logger=log.bind("links"),
                    )

            orchestrator = CollectionOrchestrator(
                config=cfg,
                store=store,
                browser_factory=browser_factory,
                media_dir=paths.media_dir,
                logger=log,
                media_fetcher=media_fetcher,
                link_resolver=link_resolver,
            )

            try:
                if orchestrator.start_collection(mode) is not StartResult.ACCEPTED:
                    _eprint("A collection is already running.")
                    return 1
                while not orchestrator.wait(0.5):
                    pass
            except KeyboardInterrupt:
                orchestrator.stop_collection()
                orchestrator.wait()
                raise
            finally:
                if link_resolver is not None:
                    link_resolver.close()
                if http_fetcher is not None:
                    http_fetcher.close()

            stats = orchestrator.get_run_stats()
            result = orchestrator.last_result
            report = build_run_report(
                status=stats.last_status or "unknown",
                mode=mode.value,
                config=cfg,
                counts=stats.counts,
                stop_reason=result.stop_reason if result is not None else None,
                last_error=stats.last_error,
            )

            print(f"status={stats.last_status}")
            print(f"mode={mode.value}")
            for key, value in report["details"].items():
                if key != "mode":
                    print(f"{key}={value}")
            print(f"run_log={paths.run_log}")
            print(format_run_report(report))

            failure = orchestrator.last_exception
            if failure is not None:
                raise failure
            return 0


def _cmd_stats(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    paths = resolve_paths(cfg)

    with _open_store(cfg, paths) as store:
        last = store.last_run()
        print(f"posts={store.post_count()}")
        print(f"links={store.link_count()}")
        print(f"media={store.media_count()}")
        print(f"thread_memberships={store.membership_count()}")
        print(f"full_text_search={'fts5' if store.has_fts else 'like'}")
        if last is None:
            print("last_run=none")
            return 0

        print(f"last_run_mode={last.mode}")
        print(f"last_run_status={last.status}")
        print(f"last_run_started_at={last.started_at}")
        print(f"last_run_ended_at={last.ended_at}")
        print(f"last_run_inserted={last.inserted}")
        print(f"last_run_skipped={last.skipped}")
        print(f"last_run_failed={last.failed}")
        if last.last_error:
            print(f"last_error={last.last_error}")
    return 0


def _cmd_media(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    paths = resolve_paths(cfg)

    with _open_store(cfg, paths) as store:
        items = store.get_media_for_post(args.post_id)
        for item in items:
            print(f"{item.kind.value} {item.local_path} {item.origin_url}")
        if not items:
            _eprint(f"No media archived for {args.post_id}")
    return 0


def _cmd_thread(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    paths = resolve_paths(cfg)

    with _open_store(cfg, paths) as store:
        members = store.get_thread_members(args.root_id)
        for position, post in enumerate(members, start=1):
            _print_post(post, prefix=f"{position}. ")
        if not members:
            _eprint(f"No thread recorded for {args.root_id}")
    return 0


def _cmd_search(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    paths = resolve_paths(cfg)

    with _open_store(cfg, paths) as store:
        posts = store.search_posts(
            args.query,
            author=args.author,
            has_media=args.has_media,
            has_links=args.has_links,
            since=args.since,
            until=args.until,
            limit=args.limit,
        )
        for post in posts:
            _print_post(post)
        print(f"results={len(posts)}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except (NavigationFailed, StorageError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
