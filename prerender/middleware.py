"""
Flask integration: serves cached snapshots to search engine crawlers and
passes everyone else through to the live single-page application.
"""

from typing import Optional

from flask import Flask, Response, redirect, request

from prerender.cache import SnapshotCache
from prerender.core import DEFAULT_ENCODING, setup_logger
from prerender.engine import CrawlScheduler
from prerender.policy import URLPolicy, UserAgentClassifier
from prerender.processor import LinkUtility

logger = setup_logger("prerender.middleware")


class SnapshotMiddleware:
    """
    FLOW: Learns the site root from the first request -> Classifies the User-Agent ->
    Crawler asking for a page: serve the fresh snapshot, or enqueue a render and fall through ->
    Human on a crawler-friendly URL: redirect to the hashbang route -> Otherwise fall through.

    A crawler never gets an error from here; misses and cache failures serve the live page.
    """

    def __init__(self, cache: SnapshotCache, scheduler: CrawlScheduler,
                 classifier: Optional[UserAgentClassifier] = None, encoding: str = DEFAULT_ENCODING,
                 app: Optional[Flask] = None):
        self.cache = cache
        self.scheduler = scheduler
        self.classifier = classifier or UserAgentClassifier()
        self.encoding = encoding
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask):
        app.before_request(self.before_request)
        app.extensions["prerender"] = self

    def before_request(self):
        if not self.scheduler.root_url:
            self.scheduler.learn_root_url(LinkUtility.root_of(request.base_url))

        user_agent = request.headers.get("User-Agent", "")
        url = self._request_url()

        if self.classifier.is_robot(user_agent) and URLPolicy.is_text_request(request.path):
            logger.info(f"Search engine robot request: {user_agent}")
            html = self.cache.get(url)
            if html is None:
                result = self.scheduler.enqueue(url, 0)
                logger.info(f"Snapshot miss for {url}; serving live page ({result.value})")
                return None
            logger.info(f"Serving snapshot for {url}")
            return Response(html.encode(self.encoding, errors="xmlcharrefreplace"),
                            status=200,
                            content_type=f"text/html; charset={self.encoding}")

        if LinkUtility.is_crawler_friendly(request.base_url):
            target = LinkUtility.to_hash_bang(url)
            logger.debug(f"Redirecting crawler-friendly URL {url} to {target}")
            return redirect(target, code=302)

        return None

    @staticmethod
    def _request_url() -> str:
        query = request.query_string.decode("utf-8", errors="replace")
        return f"{request.base_url}?{query}" if query else request.base_url
