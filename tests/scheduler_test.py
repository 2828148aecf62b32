"""
Verification Scenarios for the Crawl Scheduler: depth bound, dedup, timeouts, watchdog and retries.
"""

import threading
import time
import unittest

from fakes import BlockingBackend, SiteBackend, page, wait_for
from prerender.cache import SnapshotCache
from prerender.engine import CrawlScheduler, Frontier
from prerender.models import CrawlRequest, EnqueueResult, TaskState
from prerender.retry import FixedRetry
from prerender.storage.memory import MemorySnapshotStore
from rendering.engine import RenderingEngine

SITE = "https://site.test/"


class SchedulerTestCase(unittest.TestCase):

    def make_scheduler(self, backend, grace=2.0, **options):
        self.cache = SnapshotCache(MemorySnapshotStore(), ttl_seconds=3600)
        engine = RenderingEngine(backend, grace_seconds=grace)
        settings = dict(max_crawl_depth=2, workers=2, page_load_wait=0.5, crawl_on_start=False)
        settings.update(options)
        scheduler = CrawlScheduler(engine, self.cache, **settings)
        self.addCleanup(scheduler.stop, 1.0)
        return scheduler


class TestCrawlDepth(SchedulerTestCase):

    def test_depth_bound_stops_discovery(self):
        """Scenario: / -> /a -> /b -> /terms with max depth 2; /terms is never rendered."""
        backend = SiteBackend({
            SITE: page("/a"),
            SITE + "a": page("/b"),
            SITE + "b": page("/terms"),
            SITE + "terms": page(),
        })
        scheduler = self.make_scheduler(backend).start()

        self.assertIs(scheduler.enqueue(SITE, 0), EnqueueResult.ENQUEUED)
        self.assertTrue(scheduler.wait_until_idle(timeout=5))

        for url in (SITE, SITE + "a", SITE + "b"):
            self.assertEqual(backend.render_count(url), 1, url)
            self.assertIsNotNone(self.cache.get(url), url)
        self.assertEqual(backend.render_count(SITE + "terms"), 0)
        self.assertIsNone(self.cache.get(SITE + "terms"))

    def test_too_deep_request_is_rejected(self):
        backend = SiteBackend({SITE + "x": page()})
        scheduler = self.make_scheduler(backend)

        self.assertIs(scheduler.enqueue(SITE + "x", 3), EnqueueResult.TOO_DEEP)
        self.assertEqual(scheduler.state_of(SITE + "x"), TaskState.IDLE)
        self.assertEqual(scheduler.get_stats()["too_deep"], 1)

    def test_depth_zero_only_renders_the_page(self):
        backend = SiteBackend({SITE: page("/a"), SITE + "a": page()})
        scheduler = self.make_scheduler(backend, max_crawl_depth=0).start()

        scheduler.enqueue(SITE, 0)
        self.assertTrue(scheduler.wait_until_idle(timeout=5))

        self.assertEqual(backend.calls, [SITE])

    def test_external_links_are_not_followed(self):
        backend = SiteBackend({SITE: page("https://other.test/", "/a"), SITE + "a": page()})
        scheduler = self.make_scheduler(backend).start()

        scheduler.enqueue(SITE, 0)
        self.assertTrue(scheduler.wait_until_idle(timeout=5))

        self.assertEqual(sorted(backend.calls), [SITE, SITE + "a"])

    def test_render_redirected_off_site_is_not_cached_or_followed(self):
        """Scenario: /login bounces to an external sign-in page; nothing from the other site is crawled."""
        backend = SiteBackend(
            {
                SITE: page("/login"),
                SITE + "login": page("/account", "https://auth.other.test/settings"),
            },
            redirects={SITE + "login": "https://auth.other.test/signin"},
        )
        scheduler = self.make_scheduler(backend).start()

        scheduler.enqueue(SITE, 0)
        self.assertTrue(scheduler.wait_until_idle(timeout=5))

        self.assertEqual(sorted(backend.calls), [SITE, SITE + "login"])
        self.assertFalse([url for url in backend.calls if "other.test" in url])
        self.assertIsNotNone(self.cache.get(SITE))
        self.assertIsNone(self.cache.lookup(SITE + "login"))
        self.assertEqual(scheduler.failure_count(SITE + "login"), 1)
        self.assertEqual(scheduler.get_stats()["left_site"], 1)

    def test_same_site_redirect_discovers_from_final_page(self):
        backend = SiteBackend(
            {SITE + "old": page("next"), SITE + "docs/next": page()},
            redirects={SITE + "old": SITE + "docs/start"},
        )
        scheduler = self.make_scheduler(backend).start()

        scheduler.enqueue(SITE + "old", 0)
        self.assertTrue(scheduler.wait_until_idle(timeout=5))

        self.assertEqual(sorted(backend.calls), [SITE + "docs/next", SITE + "old"])
        self.assertIsNotNone(self.cache.get(SITE + "old"))


class TestDeduplication(SchedulerTestCase):

    def test_concurrent_enqueues_render_once(self):
        """Scenario: many threads request the same page at once; exactly one render happens."""
        backend = BlockingBackend()
        self.addCleanup(backend.release.set)
        scheduler = self.make_scheduler(backend, workers=4).start()

        results = []
        results_lock = threading.Lock()

        def hit():
            result = scheduler.enqueue(SITE + "p", 0)
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=hit) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(results.count(EnqueueResult.ENQUEUED), 1)
        self.assertEqual(results.count(EnqueueResult.DUPLICATE), 7)

        self.assertTrue(backend.started.wait(2))
        self.assertEqual(scheduler.state_of(SITE + "p"), TaskState.RENDERING)
        self.assertIs(scheduler.enqueue(SITE + "p", 0), EnqueueResult.DUPLICATE)

        backend.release.set()
        self.assertTrue(scheduler.wait_until_idle(timeout=5))
        self.assertEqual(backend.calls, [SITE + "p"])
        self.assertEqual(self.cache.get(SITE + "p"), backend.html)
        self.assertEqual(scheduler.state_of(SITE + "p"), TaskState.IDLE)

    def test_equivalent_urls_share_one_slot(self):
        backend = SiteBackend({SITE: page()})
        scheduler = self.make_scheduler(backend)

        self.assertIs(scheduler.enqueue("HTTPS://Site.test:443", 0), EnqueueResult.ENQUEUED)
        self.assertIs(scheduler.enqueue("https://site.test/#top", 0), EnqueueResult.DUPLICATE)
        self.assertEqual(scheduler.state_of(SITE), TaskState.QUEUED)

    def test_url_can_be_enqueued_again_after_completion(self):
        backend = SiteBackend({SITE: page()})
        scheduler = self.make_scheduler(backend).start()

        scheduler.enqueue(SITE, 0)
        self.assertTrue(scheduler.wait_until_idle(timeout=5))
        self.assertIs(scheduler.enqueue(SITE, 0), EnqueueResult.ENQUEUED)
        self.assertTrue(scheduler.wait_until_idle(timeout=5))

        self.assertEqual(backend.render_count(SITE), 2)


class TestTimeoutsAndWatchdog(SchedulerTestCase):

    def test_render_timeout_leaves_no_entry(self):
        """Scenario: the renderer never finishes; the URL returns to IDLE and nothing is cached."""
        backend = BlockingBackend()
        self.addCleanup(backend.release.set)
        scheduler = self.make_scheduler(backend, grace=0.2, page_load_wait=0.1).start()

        scheduler.enqueue(SITE + "slow", 0)
        self.assertTrue(scheduler.wait_until_idle(timeout=5))

        self.assertIsNone(self.cache.lookup(SITE + "slow"))
        self.assertEqual(scheduler.state_of(SITE + "slow"), TaskState.IDLE)
        self.assertEqual(scheduler.get_stats()["failed"], 1)
        self.assertIs(scheduler.enqueue(SITE + "slow", 0), EnqueueResult.ENQUEUED)

    def test_reaped_render_completing_late_has_no_effect(self):
        backend = BlockingBackend(html=page("/child"))
        self.addCleanup(backend.release.set)
        scheduler = self.make_scheduler(backend, grace=10.0, workers=1, watchdog_timeout=0.05).start()

        scheduler.enqueue(SITE + "stuck", 0)
        self.assertTrue(backend.started.wait(2))
        time.sleep(0.1)
        scheduler.reap_stale()

        self.assertEqual(scheduler.state_of(SITE + "stuck"), TaskState.IDLE)
        self.assertTrue(scheduler.wait_until_idle(timeout=1))

        backend.release.set()
        self.assertTrue(wait_for(lambda: scheduler.get_stats().get("discarded_late") == 1))
        self.assertIsNone(self.cache.lookup(SITE + "stuck"))
        self.assertEqual(scheduler.get_stats()["reaped"], 1)
        self.assertTrue(scheduler.wait_until_idle(timeout=1))
        self.assertEqual(backend.calls, [SITE + "stuck"])
        self.assertEqual(scheduler.state_of(SITE + "child"), TaskState.IDLE)
        self.assertEqual(scheduler.get_stats()["enqueued"], 1)

    def test_reaper_ignores_queued_requests(self):
        frontier = Frontier(max_depth=2)
        frontier.admit(CrawlRequest(SITE))

        self.assertEqual(frontier.reap_stale(max_age=0), [])
        self.assertEqual(frontier.state_of(SITE), TaskState.QUEUED)


class TestRetries(SchedulerTestCase):

    def test_no_retry_by_default(self):
        backend = SiteBackend({SITE: page()}, fail_first=5)
        scheduler = self.make_scheduler(backend).start()

        scheduler.enqueue(SITE, 0)
        self.assertTrue(scheduler.wait_until_idle(timeout=5))

        self.assertEqual(backend.render_count(SITE), 1)
        self.assertEqual(scheduler.failure_count(SITE), 1)
        self.assertIsNone(self.cache.lookup(SITE))

    def test_fixed_retry_recovers(self):
        backend = SiteBackend({SITE: page()}, fail_first=1)
        scheduler = self.make_scheduler(backend, retry_policy=FixedRetry(2, delay=0.05)).start()

        scheduler.enqueue(SITE, 0)
        self.assertTrue(scheduler.wait_until_idle(timeout=5))

        self.assertEqual(backend.render_count(SITE), 2)
        self.assertIsNotNone(self.cache.get(SITE))
        self.assertEqual(scheduler.failure_count(SITE), 0)
        stats = scheduler.get_stats()
        self.assertEqual(stats["failed"], 1)
        self.assertEqual(stats["succeeded"], 1)

    def test_retries_are_bounded(self):
        backend = SiteBackend({SITE: page()}, fail_first=10)
        scheduler = self.make_scheduler(backend, retry_policy=FixedRetry(2, delay=0.01)).start()

        scheduler.enqueue(SITE, 0)
        self.assertTrue(scheduler.wait_until_idle(timeout=5))

        self.assertEqual(backend.render_count(SITE), 3)
        self.assertEqual(scheduler.failure_count(SITE), 3)
        self.assertIsNone(self.cache.lookup(SITE))

    def test_stop_cancels_pending_retries(self):
        backend = SiteBackend({SITE: page()}, fail_first=10)
        scheduler = self.make_scheduler(backend, retry_policy=FixedRetry(3, delay=30)).start()

        scheduler.enqueue(SITE, 0)
        self.assertTrue(wait_for(lambda: scheduler.get_stats()["deferred_retries"] == 1))
        self.assertFalse(scheduler.wait_until_idle(timeout=0.1))

        scheduler.stop(timeout=1.0)
        self.assertTrue(scheduler.wait_until_idle(timeout=1))
        self.assertEqual(backend.render_count(SITE), 1)


class TestRefreshAndRecentSnapshots(SchedulerTestCase):

    def test_refresh_timer_recrawls_root(self):
        backend = SiteBackend({SITE: page()})
        scheduler = self.make_scheduler(backend, root_url=SITE, refresh_interval=0.1, crawl_on_start=True)
        scheduler.start()

        self.assertTrue(wait_for(lambda: backend.render_count(SITE) >= 2))

    def test_refresh_without_root_does_nothing(self):
        backend = SiteBackend({})
        scheduler = self.make_scheduler(backend)

        scheduler.refresh()

        self.assertEqual(scheduler.get_stats()["in_flight"], 0)

    def test_root_is_learned_once(self):
        scheduler = self.make_scheduler(SiteBackend({}))

        self.assertTrue(scheduler.learn_root_url("HTTPS://Site.test"))
        self.assertFalse(scheduler.learn_root_url("https://other.test/"))
        self.assertEqual(scheduler.root_url, SITE)

    def test_recent_snapshot_used_for_discovery(self):
        """Scenario: / links to /a and /a links back; the root is not rendered twice in one sweep."""
        backend = SiteBackend({SITE: page("/a"), SITE + "a": page("/")})
        scheduler = self.make_scheduler(backend, workers=1).start()

        scheduler.enqueue(SITE, 0)
        self.assertTrue(scheduler.wait_until_idle(timeout=5))

        self.assertEqual(backend.render_count(SITE), 1)
        self.assertEqual(backend.render_count(SITE + "a"), 1)
        self.assertEqual(scheduler.get_stats()["skipped_recent"], 1)

    def test_recent_snapshot_skip_can_be_disabled(self):
        backend = SiteBackend({SITE: page("/a"), SITE + "a": page("/")})
        scheduler = self.make_scheduler(backend, workers=1, rerender_after=0).start()

        scheduler.enqueue(SITE, 0)
        self.assertTrue(scheduler.wait_until_idle(timeout=5))

        self.assertEqual(backend.render_count(SITE), 2)


class TestEnqueueAdmission(SchedulerTestCase):

    def test_invalid_urls_are_policy_skipped(self):
        scheduler = self.make_scheduler(SiteBackend({}))

        for url in ("", "not a url", "ftp://site.test/file", "/relative/path"):
            self.assertIs(scheduler.enqueue(url, 0), EnqueueResult.POLICY_SKIPPED, url)

    def test_queue_full(self):
        scheduler = self.make_scheduler(SiteBackend({}), queue_size=1)

        self.assertIs(scheduler.enqueue(SITE + "one", 0), EnqueueResult.ENQUEUED)
        self.assertIs(scheduler.enqueue(SITE + "two", 0), EnqueueResult.QUEUE_FULL)
        self.assertEqual(scheduler.state_of(SITE + "two"), TaskState.IDLE)

    def test_stopped_scheduler_rejects_work(self):
        scheduler = self.make_scheduler(SiteBackend({SITE: page()})).start()
        scheduler.stop(timeout=1.0)

        self.assertIs(scheduler.enqueue(SITE, 0), EnqueueResult.STOPPED)

    def test_stats_report_memory_and_workers(self):
        scheduler = self.make_scheduler(SiteBackend({}), workers=3).start()
        stats = scheduler.get_stats()

        self.assertEqual(stats["workers"], 3)
        self.assertIn("process_memory_mb", stats)
        self.assertEqual(stats["in_flight"], 0)


if __name__ == "__main__":
    unittest.main()
