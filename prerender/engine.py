"""
FILE DESCRIPTION: Crawl scheduling for rendered snapshots: frontier, render workers and periodic tasks.
KEY FUNCTIONS/CLASSES: Frontier, RenderWorker, PeriodicTask, CrawlScheduler
"""

import dataclasses
import itertools
import os
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from queue import Empty, Full, Queue
from typing import Callable, Dict, List, Optional, Union

import psutil

from prerender.cache import SnapshotCache
from prerender.core import DEFAULT_QUEUE_SIZE, RENDER_GRACE_SECONDS, setup_logger
from prerender.models import CrawlRequest, EnqueueResult, TaskState
from prerender.policy import URLPolicy
from prerender.processor import LinkExtractor, LinkUtility
from prerender.retry import NoRetry, RetryPolicy
from rendering.engine import RenderingEngine

logger = setup_logger("prerender.engine")


# === FRONTIER MANAGEMENT ===

@dataclass
class Lease:
    """In-flight membership of one URL. Mutated only under Frontier.lock."""
    token: int
    request: CrawlRequest
    state: TaskState
    since: float


class Frontier:
    """
    FLOW: Rejects requests beyond the depth bound -> Reserves the URL in the in-flight map under the lock ->
    Puts the lease on the FIFO work queue -> Workers move it to RENDERING -> finish() is the only release point
    besides the watchdog reaper.
    """

    def __init__(self, max_depth: int, maxsize: int = DEFAULT_QUEUE_SIZE,
                 clock: Callable[[], float] = time.monotonic):
        self.queue = Queue(maxsize=maxsize)
        self.max_depth = max_depth
        self.clock = clock
        self.lock = threading.Lock()
        self.idle = threading.Condition(self.lock)
        self.in_flight: Dict[str, Lease] = {}
        self.deferred = 0
        self._tokens = itertools.count(1)
        self.counters = defaultdict(int)

    def admit(self, request: CrawlRequest) -> EnqueueResult:
        if request.depth > self.max_depth:
            with self.lock:
                self.counters["too_deep"] += 1
            return EnqueueResult.TOO_DEEP

        with self.lock:
            if request.url in self.in_flight:
                self.counters["duplicates"] += 1
                return EnqueueResult.DUPLICATE

            lease = Lease(next(self._tokens), request, TaskState.QUEUED, self.clock())
            try:
                self.queue.put_nowait(lease)
            except Full:
                self.counters["queue_full"] += 1
                return EnqueueResult.QUEUE_FULL
            self.in_flight[request.url] = lease
            self.counters["enqueued"] += 1
        return EnqueueResult.ENQUEUED

    def dequeue(self, timeout: float = 0.5) -> Optional[Lease]:
        try:
            return self.queue.get(timeout=timeout)
        except Empty:
            return None

    def task_done(self):
        try:
            self.queue.task_done()
        except ValueError:
            logger.debug("queue.task_done() called more times than items were placed")

    def begin(self, lease: Lease) -> bool:
        """QUEUED -> RENDERING. False when the lease was reaped while waiting in the queue."""
        with self.lock:
            if self.in_flight.get(lease.request.url) is not lease:
                return False
            lease.state = TaskState.RENDERING
            lease.since = self.clock()
            return True

    def is_current(self, lease: Lease) -> bool:
        with self.lock:
            return self.in_flight.get(lease.request.url) is lease

    def finish(self, lease: Lease, succeeded: bool, hold: bool = False) -> bool:
        """
        RENDERING -> SUCCEEDED/FAILED -> IDLE.
        Only the lease holder may release; returns False for a lease the watchdog already reaped.
        hold=True also takes a deferred slot in the same step; the caller must undefer() it.
        """
        with self.lock:
            if self.in_flight.get(lease.request.url) is not lease:
                return False
            lease.state = TaskState.SUCCEEDED if succeeded else TaskState.FAILED
            del self.in_flight[lease.request.url]
            if hold:
                self.deferred += 1
            self.idle.notify_all()
            return True

    def reap_stale(self, max_age: float) -> List[str]:
        """Forcibly release RENDERING memberships older than max_age seconds."""
        now = self.clock()
        reaped = []
        with self.lock:
            for url, lease in list(self.in_flight.items()):
                if lease.state is TaskState.RENDERING and now - lease.since > max_age:
                    del self.in_flight[url]
                    reaped.append(url)
            if reaped:
                self.counters["reaped"] += len(reaped)
                self.idle.notify_all()
        return reaped

    def state_of(self, url: str) -> TaskState:
        with self.lock:
            lease = self.in_flight.get(url)
            return lease.state if lease else TaskState.IDLE

    def defer(self):
        """Count a retry that will re-enter the queue later."""
        with self.lock:
            self.deferred += 1

    def undefer(self):
        with self.lock:
            self.deferred = max(0, self.deferred - 1)
            self.idle.notify_all()

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        with self.idle:
            return self.idle.wait_for(lambda: not self.in_flight and self.deferred == 0, timeout=timeout)

    def get_stats(self):
        with self.lock:
            queued = sum(1 for lease in self.in_flight.values() if lease.state is TaskState.QUEUED)
            stats = {
                "queue_size": self.queue.qsize(),
                "in_flight": len(self.in_flight),
                "queued": queued,
                "rendering": len(self.in_flight) - queued,
                "deferred_retries": self.deferred,
            }
            stats.update(self.counters)
        return stats


# === PERIODIC TASKS ===

class PeriodicTask(threading.Thread):
    """
    FLOW: Sleeps on a stop event for one interval -> Runs the action -> Logs and survives action errors ->
    Exits promptly once stop() is called.
    """

    def __init__(self, name: str, interval: float, action: Callable[[], None]):
        super().__init__(name=name, daemon=True)
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.action = action
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.action()
            except Exception as e:
                logger.error(f"{self.name} action failed: {e}", extra={'context': self.name})

    def stop(self):
        self._stop_event.set()


# === RENDER WORKER ===

class RenderWorker(threading.Thread):
    """
    FLOW: Dequeues a lease -> Marks it RENDERING -> Renders with the page-load timeout ->
    Extracts same-origin links and enqueues them one level deeper -> Stores the snapshot -> Releases the URL.
    """

    def __init__(self, scheduler: "CrawlScheduler", name: str):
        super().__init__(name=name, daemon=True)
        self.scheduler = scheduler
        self.frontier = scheduler.frontier
        self.running = True

    def stop(self):
        self.running = False

    def log(self, level, msg):
        getattr(logger, level)(msg, extra={'context': self.name})

    def run(self):
        self.log("info", "started")
        while self.running:
            lease = self.frontier.dequeue(timeout=0.5)
            if lease is None:
                continue
            try:
                if not self.frontier.begin(lease):
                    self.log("info", f"Skipping reaped request for {lease.request.url}")
                    continue
                self.process(lease)
            except Exception as e:
                self.log("error", f"Process error for {lease.request.url}: {e}")
                self.fail(lease)
            finally:
                self.frontier.task_done()
        self.log("info", "stopped")

    def process(self, lease: Lease):
        scheduler = self.scheduler
        request = lease.request

        # Pages found again during the same sweep reuse their snapshot for discovery
        recent = scheduler.recent_snapshot(request)
        if recent is not None:
            scheduler.count("skipped_recent")
            self.log("info", f"Recently rendered, skipping render: {request.url} (depth={request.depth})")
            self.discover(request, recent, request.url)
            self.frontier.finish(lease, succeeded=True)
            return

        self.log("info", f"Rendering {request.url} (depth={request.depth}, attempt={request.attempt})")
        scheduler.count("renders")
        outcome = scheduler.engine.render(request.url, scheduler.page_load_wait)

        if not outcome.ok:
            self.log("warning", f"Render failed for {request.url}: {outcome.status.value} {outcome.error or ''}".rstrip())
            self.fail(lease)
            return

        if not self.frontier.is_current(lease):
            scheduler.count("discarded_late")
            self.log("warning", f"Lease for {request.url} was reaped by the watchdog; discarding late render")
            return

        final_url = outcome.final_url or request.url
        if not LinkUtility.same_origin(final_url, request.url):
            scheduler.count("left_site")
            self.log("warning", f"Render of {request.url} ended on another site ({final_url}); not cached")
            self.fail(lease)
            return

        self.discover(request, outcome.html, final_url)

        scheduler.cache.put(request.url, outcome.html, now=scheduler.clock())
        if self.frontier.finish(lease, succeeded=True):
            scheduler.record_success(request, outcome.render_duration_ms)

    def fail(self, lease: Lease):
        # The hold keeps wait_until_idle() from returning before a retry is scheduled
        if not self.frontier.finish(lease, succeeded=False, hold=True):
            return
        try:
            self.scheduler.record_failure(lease.request)
        finally:
            self.frontier.undefer()

    def discover(self, request: CrawlRequest, html: str, base_url: str):
        child_depth = request.depth + 1
        if child_depth > self.frontier.max_depth:
            return
        children = self.scheduler.extractor.extract(html, base_url, origin_url=request.url)
        enqueued = 0
        for child in sorted(children):
            if not self.running:
                break
            result = self.scheduler.enqueue(
                CrawlRequest(url=child, depth=child_depth, discovered_from=request.url))
            if result is EnqueueResult.ENQUEUED:
                enqueued += 1
        self.log("info", f"Discovered {len(children)} links on {request.url}, enqueued {enqueued}")


# === CRAWL SCHEDULER ===

class CrawlScheduler:
    """
    Explicitly constructed owner of the work queue, worker pool, in-flight set and periodic tasks.
    The request entry point holds a reference and only calls enqueue(); snapshots are read from the cache.
    """

    def __init__(self, engine: RenderingEngine, cache: SnapshotCache, *,
                 max_crawl_depth: int = 2,
                 workers: int = 4,
                 page_load_wait: float = 5,
                 root_url: Optional[str] = None,
                 refresh_interval: Optional[float] = None,
                 watchdog_timeout: Optional[float] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 rerender_after: Optional[float] = None,
                 queue_size: int = DEFAULT_QUEUE_SIZE,
                 crawl_on_start: bool = True,
                 extractor=LinkExtractor,
                 clock: Callable[[], float] = time.time):
        if max_crawl_depth < 0:
            raise ValueError("max_crawl_depth must not be negative")
        if workers < 1:
            raise ValueError("workers must be at least 1")

        self.engine = engine
        self.cache = cache
        self.normalizer = cache.normalizer
        self.extractor = extractor
        self.clock = clock
        self.page_load_wait = page_load_wait
        self.num_workers = workers
        self.refresh_interval = refresh_interval or cache.ttl_seconds
        self.watchdog_timeout = watchdog_timeout or 4 * (page_load_wait + RENDER_GRACE_SECONDS)
        self.retry_policy = retry_policy or NoRetry()
        self.rerender_after = cache.ttl_seconds / 2 if rerender_after is None else rerender_after
        self.crawl_on_start = crawl_on_start

        self.frontier = Frontier(max_depth=max_crawl_depth, maxsize=queue_size)
        self.workers: List[RenderWorker] = []
        self.refresher: Optional[PeriodicTask] = None
        self.watchdog: Optional[PeriodicTask] = None

        self._lock = threading.Lock()
        self._root_url = self._normalize(root_url) if root_url else None
        self._failures: Dict[str, int] = {}
        self._retry_timers = set()
        self._counters = defaultdict(int)
        self._started = False
        self._stopped = False

    # --- lifecycle ---

    def start(self) -> "CrawlScheduler":
        with self._lock:
            if self._started:
                return self
            self._started = True

        for i in range(self.num_workers):
            worker = RenderWorker(self, name=f"RenderWorker-{i}")
            worker.start()
            self.workers.append(worker)

        self.refresher = PeriodicTask("RefreshTimer", self.refresh_interval, self.refresh)
        self.refresher.start()
        self.watchdog = PeriodicTask("Watchdog", max(1.0, self.watchdog_timeout / 4), self.reap_stale)
        self.watchdog.start()

        logger.info(
            f"Scheduler started: workers={self.num_workers} max_depth={self.frontier.max_depth} "
            f"refresh_every={self.refresh_interval:.0f}s watchdog={self.watchdog_timeout:.0f}s "
            f"retry={self.retry_policy!r} root={self._root_url}"
        )
        if self.crawl_on_start and self._root_url:
            self.refresh()
        return self

    def stop(self, timeout: float = 5.0):
        """Stop periodic tasks, cancel pending retries and join the workers."""
        with self._lock:
            self._stopped = True
            timers = list(self._retry_timers)
            self._retry_timers.clear()
        for timer in timers:
            timer.cancel()
            self.frontier.undefer()

        for task in (self.refresher, self.watchdog):
            if task:
                task.stop()
        for worker in self.workers:
            worker.stop()
        for thread in [self.refresher, self.watchdog] + self.workers:
            if thread and thread.is_alive():
                thread.join(timeout)
        logger.info("Scheduler stopped")

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    # --- entry point API ---

    def enqueue(self, request: Union[CrawlRequest, str], depth: int = 0) -> EnqueueResult:
        """
        Fire-and-forget admission of a crawl request. Never blocks and never raises for bad URLs.
        At most one request per normalized URL is queued or rendering at any time.
        """
        if not isinstance(request, CrawlRequest):
            request = CrawlRequest(url=request, depth=depth)

        if self._stopped:
            return EnqueueResult.STOPPED

        try:
            url = self._normalize(request.url)
        except ValueError as e:
            logger.info(f"enqueue: rejected {request.url!r}: {e}")
            return EnqueueResult.POLICY_SKIPPED
        if not URLPolicy.is_http(url):
            logger.info(f"enqueue: rejected non-http url {url}")
            return EnqueueResult.POLICY_SKIPPED

        if url != request.url:
            request = dataclasses.replace(request, url=url)

        result = self.frontier.admit(request)
        if result is EnqueueResult.ENQUEUED:
            logger.info(f"enqueue: queued {url} (depth={request.depth}, attempt={request.attempt})")
        elif result is EnqueueResult.QUEUE_FULL:
            logger.warning(f"enqueue: queue full, dropped {url}")
        else:
            logger.debug(f"enqueue: {result.value} {url} (depth={request.depth})")
        return result

    @property
    def root_url(self) -> Optional[str]:
        return self._root_url

    def learn_root_url(self, url: str) -> bool:
        """Set the refresh root if none is configured yet. Returns True when it was set."""
        with self._lock:
            if self._root_url:
                return False
            try:
                self._root_url = self._normalize(url)
            except ValueError:
                return False
        logger.info(f"Root URL set to {self._root_url}")
        return True

    def state_of(self, url: str) -> TaskState:
        try:
            return self.frontier.state_of(self._normalize(url))
        except ValueError:
            return TaskState.IDLE

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        return self.frontier.wait_until_idle(timeout)

    # --- periodic actions ---

    def refresh(self):
        if not self._root_url:
            logger.debug("refresh: no root URL known yet")
            return
        logger.info(f"refresh: re-crawling from {self._root_url}")
        self.enqueue(CrawlRequest(url=self._root_url, depth=0))

    def reap_stale(self):
        reaped = self.frontier.reap_stale(self.watchdog_timeout)
        for url in reaped:
            logger.warning(f"watchdog: released stuck render for {url} after {self.watchdog_timeout:.0f}s",
                           extra={'context': 'Watchdog'})

    # --- worker callbacks ---

    def recent_snapshot(self, request: CrawlRequest) -> Optional[str]:
        """
        HTML of a snapshot rendered less than rerender_after seconds ago, for discovered pages only.
        Depth-0 requests (misses and refreshes) always render.
        """
        if request.depth == 0 or self.rerender_after <= 0:
            return None
        entry = self.cache.lookup(request.url)
        if entry is None:
            return None
        if self.clock() - entry.rendered_at < self.rerender_after:
            return entry.html
        return None

    def count(self, name: str, amount: int = 1):
        with self._lock:
            self._counters[name] += amount

    def record_success(self, request: CrawlRequest, duration_ms: int = 0):
        with self._lock:
            self._counters["succeeded"] += 1
            self._counters["render_ms_total"] += duration_ms
            self._failures.pop(request.url, None)

    def record_failure(self, request: CrawlRequest):
        with self._lock:
            self._counters["failed"] += 1
            failures = self._failures.get(request.url, 0) + 1
            self._failures[request.url] = failures
            if self._stopped:
                return
            delay = self.retry_policy.next_delay(failures)
            if delay is None:
                return
            retry = dataclasses.replace(request, attempt=request.attempt + 1)
            timer = threading.Timer(delay, self._fire_retry, args=(retry,))
            timer.daemon = True
            self._retry_timers.add(timer)
            self.frontier.defer()
        logger.info(f"retry: {request.url} failed {failures} time(s), retrying in {delay:.1f}s")
        timer.start()

    def _fire_retry(self, request: CrawlRequest):
        timer = threading.current_thread()
        with self._lock:
            if timer not in self._retry_timers:
                return
            self._retry_timers.discard(timer)
        try:
            self.enqueue(request)
        finally:
            self.frontier.undefer()

    # --- metrics ---

    def failure_count(self, url: str) -> int:
        with self._lock:
            return self._failures.get(self._normalize(url), 0)

    def get_stats(self):
        stats = self.frontier.get_stats()
        with self._lock:
            stats.update(self._counters)
            stats["failing_urls"] = len(self._failures)
        stats["workers"] = len(self.workers)
        stats.update(self.get_memory_stats())
        return stats

    @staticmethod
    def get_memory_stats():
        process = psutil.Process(os.getpid())
        return {"process_memory_mb": round(process.memory_info().rss / 1024 / 1024, 1)}

    def _normalize(self, url: str) -> str:
        return self.normalizer(url)
