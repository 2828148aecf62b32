"""
Command line entry point for the snapshot crawler.

  python main.py crawl https://example.com/ --depth 2
  python main.py list
  python main.py serve --static ./dist --port 8080

Configuration comes from PRERENDER_* environment variables (or a .env file).
"""

import argparse
import sys
from datetime import datetime
from pathlib import Path

from flask import Flask, send_from_directory
from tabulate import tabulate

from prerender.cache import SnapshotCache
from prerender.core import ConfigurationError, PrerenderConfig, logger
from prerender.processor import UrlNormalizer
from prerender.service import PrerenderService
from prerender.storage.db import SQLiteSnapshotStore


def _load_config(args, require_browser=True) -> PrerenderConfig:
    config = PrerenderConfig.from_env(args.env_file)
    if getattr(args, "depth", None) is not None:
        config.max_crawl_depth = args.depth
    return config.validate(require_browser=require_browser)


def _format_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def cmd_crawl(args) -> int:
    config = _load_config(args)
    service = PrerenderService(config, crawl_on_start=False)
    service.start()
    try:
        result = service.scheduler.enqueue(args.url, 0)
        logger.info(f"Crawl requested for {args.url}: {result.value}")
        finished = service.scheduler.wait_until_idle(timeout=args.timeout)
        stats = service.scheduler.get_stats()
    finally:
        service.stop()

    print("\n" + "=" * 60)
    print("CRAWL SESSION SUMMARY" if finished else "CRAWL SESSION SUMMARY (timed out)")
    print("=" * 60)
    print(tabulate(sorted(stats.items()), headers=["metric", "value"], tablefmt="github"))
    return 0 if finished else 2


def cmd_list(args) -> int:
    config = _load_config(args, require_browser=False)
    cache = SnapshotCache(
        SQLiteSnapshotStore(config.cache_path, encoding=config.encoding),
        ttl_seconds=config.ttl_seconds,
        normalizer=UrlNormalizer(sort_query=config.sort_query),
    )
    now = cache.clock()
    rows = [
        (e.url, _format_ts(e.rendered_at), _format_ts(e.expires_at),
         "fresh" if e.is_fresh(now) else "stale", len(e.html))
        for e in sorted(cache.entries(), key=lambda e: e.url)
    ]
    print(tabulate(rows, headers=["url", "rendered_at", "expires_at", "state", "chars"], tablefmt="github"))
    print(f"\n{len(rows)} snapshot(s) in {config.cache_path}")
    return 0


def create_static_app(static_dir: str, service: PrerenderService) -> Flask:
    """Serve a built single-page application, falling back to index.html for client-side routes."""
    root = Path(static_dir).resolve()
    app = Flask(__name__, static_folder=None)

    @app.route("/", defaults={"path": ""})
    @app.route("/<path:path>")
    def spa(path):
        if path and (root / path).is_file():
            return send_from_directory(root, path)
        return send_from_directory(root, "index.html")

    return service.init_app(app)


def cmd_serve(args) -> int:
    config = _load_config(args)
    if not (Path(args.static) / "index.html").is_file():
        raise ConfigurationError(f"No index.html found in {args.static}")
    service = PrerenderService(config)
    app = create_static_app(args.static, service)
    service.start()
    try:
        app.run(host=args.host, port=args.port, threaded=True)
    finally:
        service.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Pre-render single-page application snapshots for crawlers")
    parser.add_argument("--env-file", default=None, help="Path to a .env file (defaults to ./.env)")
    sub = parser.add_subparsers(dest="command", required=True)

    crawl = sub.add_parser("crawl", help="Render a URL and its linked pages into the cache")
    crawl.add_argument("url")
    crawl.add_argument("--depth", type=int, default=None, help="Override PRERENDER_CRAWL_DEPTH")
    crawl.add_argument("--timeout", type=float, default=600, help="Seconds to wait for the crawl to finish")
    crawl.set_defaults(func=cmd_crawl)

    listing = sub.add_parser("list", help="Show cached snapshots and their freshness")
    listing.set_defaults(func=cmd_list)

    serve = sub.add_parser("serve", help="Serve a static SPA with snapshot middleware")
    serve.add_argument("--static", required=True, help="Directory containing the built SPA (index.html)")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)
    serve.set_defaults(func=cmd_serve)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except ConfigurationError as e:
        print(f"CONFIGURATION_ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
