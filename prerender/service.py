"""
Wiring of cache, renderer, scheduler and middleware from a validated PrerenderConfig.
"""

import logging
from typing import Optional

from flask import Flask

from prerender.cache import SnapshotCache
from prerender.core import RENDER_GRACE_SECONDS, PrerenderConfig, setup_logger
from prerender.engine import CrawlScheduler
from prerender.middleware import SnapshotMiddleware
from prerender.policy import UserAgentClassifier
from prerender.processor import UrlNormalizer
from prerender.retry import parse_retry_policy
from prerender.storage.base import SnapshotStore
from prerender.storage.db import SQLiteSnapshotStore
from rendering.engine import RenderingBackend, RenderingEngine

logger = setup_logger("prerender.service")


class PrerenderService:
    """
    Explicitly constructed bundle of the components the request entry point needs.
    Nothing here is global: build one per application and pass it around.
    """

    def __init__(self, config: PrerenderConfig, backend: Optional[RenderingBackend] = None,
                 store: Optional[SnapshotStore] = None, crawl_on_start: bool = True):
        self.config = config
        if config.log_file:
            setup_logger("prerender", log_file=config.log_file, level=logging.INFO)

        if backend is None:
            # Imported lazily so tests and `list` never need Playwright browsers
            from prerender.js_engine import PlaywrightBackend
            backend = PlaywrightBackend(executable_path=config.browser_path, browsers=config.workers)

        self.engine = RenderingEngine(backend, grace_seconds=RENDER_GRACE_SECONDS + 5)
        self.cache = SnapshotCache(
            store or SQLiteSnapshotStore(config.cache_path, encoding=config.encoding),
            ttl_seconds=config.ttl_seconds,
            normalizer=UrlNormalizer(sort_query=config.sort_query),
        )
        self.scheduler = CrawlScheduler(
            self.engine,
            self.cache,
            max_crawl_depth=config.max_crawl_depth,
            workers=config.workers,
            page_load_wait=config.page_load_wait,
            root_url=config.root_url,
            refresh_interval=config.refresh_interval_seconds,
            watchdog_timeout=config.watchdog_timeout_seconds,
            retry_policy=parse_retry_policy(config.retry),
            queue_size=config.queue_size,
            crawl_on_start=crawl_on_start,
        )
        self.middleware = SnapshotMiddleware(
            self.cache,
            self.scheduler,
            classifier=UserAgentClassifier(config.robot_agents),
            encoding=config.encoding,
        )
        logger.info(
            f"Prerender service configured: cache={config.cache_path} ttl={config.cache_ttl_hours}h "
            f"wait={config.page_load_wait}s depth={config.max_crawl_depth} encoding={config.encoding}"
        )

    def init_app(self, app: Flask) -> Flask:
        self.middleware.init_app(app)
        return app

    def start(self) -> "PrerenderService":
        self.scheduler.start()
        return self

    def stop(self):
        self.scheduler.stop()
        self.engine.close()

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
