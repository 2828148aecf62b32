"""
Verification Scenarios for the request entry point: robots get snapshots, people get the live app.
"""

import unittest
from unittest.mock import MagicMock

from flask import Flask

from prerender.cache import SnapshotCache
from prerender.engine import CrawlScheduler
from prerender.middleware import SnapshotMiddleware
from prerender.models import EnqueueResult
from prerender.storage.memory import MemorySnapshotStore

GOOGLEBOT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"
BROWSER = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/605.1.15 Safari/605.1.15"


class TestSnapshotMiddleware(unittest.TestCase):
    def setUp(self):
        self.cache = SnapshotCache(MemorySnapshotStore(), ttl_seconds=3600)
        self.scheduler = MagicMock(spec=CrawlScheduler)
        self.scheduler.root_url = None
        self.scheduler.enqueue.return_value = EnqueueResult.ENQUEUED

        app = Flask(__name__)

        @app.route("/", defaults={"path": ""})
        @app.route("/<path:path>")
        def live(path):
            return "<html><body><div id='app'></div><script src='/app.js'></script></body></html>"

        SnapshotMiddleware(self.cache, self.scheduler, app=app)
        self.app = app
        self.client = app.test_client()

    def test_robot_miss_enqueues_and_serves_live_page(self):
        """Scenario: first crawler visit; a render is requested and the live page is served."""
        response = self.client.get("/about", headers={"User-Agent": GOOGLEBOT})

        self.assertEqual(response.status_code, 200)
        self.assertIn(b"<div id='app'></div>", response.data)
        self.scheduler.enqueue.assert_called_once_with("http://localhost/about", 0)

    def test_robot_hit_serves_snapshot(self):
        self.cache.put("http://localhost/about", "<html><body><h1>About us</h1></body></html>")

        response = self.client.get("/about", headers={"User-Agent": GOOGLEBOT})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, b"<html><body><h1>About us</h1></body></html>")
        self.assertEqual(response.headers["Content-Type"], "text/html; charset=UTF-8")
        self.scheduler.enqueue.assert_not_called()

    def test_stale_snapshot_counts_as_miss(self):
        self.cache.put("http://localhost/about", "<html>old</html>", now=0.0)

        response = self.client.get("/about", headers={"User-Agent": GOOGLEBOT})

        self.assertNotEqual(response.data, b"<html>old</html>")
        self.scheduler.enqueue.assert_called_once_with("http://localhost/about", 0)

    def test_query_string_is_part_of_the_page(self):
        self.client.get("/search?q=shoes&page=2", headers={"User-Agent": GOOGLEBOT})

        self.scheduler.enqueue.assert_called_once_with("http://localhost/search?q=shoes&page=2", 0)

    def test_people_get_the_live_app(self):
        self.cache.put("http://localhost/about", "<html>snapshot</html>")

        response = self.client.get("/about", headers={"User-Agent": BROWSER})

        self.assertIn(b"<div id='app'></div>", response.data)
        self.scheduler.enqueue.assert_not_called()

    def test_robot_asset_requests_pass_through(self):
        self.client.get("/app.js", headers={"User-Agent": GOOGLEBOT})

        self.scheduler.enqueue.assert_not_called()

    def test_crawler_friendly_url_redirects_people(self):
        response = self.client.get("/_23_21/pricing", headers={"User-Agent": BROWSER})

        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.headers["Location"].endswith("/#!/pricing"))

    def test_crawler_friendly_url_serves_robots(self):
        self.cache.put("http://localhost/#!/pricing", "<html>pricing</html>")

        response = self.client.get("/_23_21/pricing", headers={"User-Agent": GOOGLEBOT})

        self.assertEqual(response.data, b"<html>pricing</html>")

    def test_root_is_learned_from_first_request(self):
        self.client.get("/docs/intro", headers={"User-Agent": BROWSER})

        self.scheduler.learn_root_url.assert_called_once_with("http://localhost/docs/")

    def test_registered_as_extension(self):
        self.assertIsInstance(self.app.extensions["prerender"], SnapshotMiddleware)


if __name__ == "__main__":
    unittest.main()
