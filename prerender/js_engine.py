"""
FILE DESCRIPTION: Headless Chromium rendering backend built on Playwright.
KEY FUNCTIONS/CLASSES: PlaywrightBackend, RenderRequest, RenderResult
"""

import queue
import threading
from typing import List, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from prerender.core import RENDER_GRACE_SECONDS, USER_AGENT, setup_logger
from prerender.processor import LinkUtility
from rendering.engine import RenderExecutionError, RenderingBackend, RenderTimeoutError
from rendering.models import RenderedPage

logger = setup_logger("prerender.js_engine")

BLOCKED_RESOURCE_TYPES = ("image", "font", "media")


class RenderRequest:
    def __init__(self, url: str, timeout: float):
        self.url = url
        self.timeout = timeout
        self.result_queue = queue.Queue(maxsize=1)
        self.abandoned = threading.Event()


class RenderResult:
    def __init__(self, page: Optional[RenderedPage] = None, error: Optional[Exception] = None):
        self.page = page
        self.error = error


class PlaywrightBackend(RenderingBackend):
    """
    FLOW: Spawns dedicated Playwright threads -> Each owns its own Chromium instance and context ->
    Pulls render requests from a shared queue -> Navigates, waits for the network to settle ->
    Returns the serialized DOM with the final URL, HTTP status and content type.

    Playwright's sync API is bound to the thread that created it, so callers never touch a browser directly.
    """

    def __init__(self, executable_path: Optional[str] = None, browsers: int = 2,
                 user_agent: str = USER_AGENT, navigation_timeout: float = RENDER_GRACE_SECONDS):
        self.executable_path = executable_path
        self.browsers = browsers
        self.user_agent = user_agent
        self.navigation_timeout = navigation_timeout
        self._request_queue = queue.Queue()
        self._init_lock = threading.Lock()
        self._worker_threads: List[threading.Thread] = []
        self._closed = False

    def _render_loop(self, worker_id: int):
        """
        Independent worker loop. Each thread gets its own Playwright/Browser instance for thread-safety.
        """
        name = f"BrowserWorker-{worker_id}"
        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(
                    headless=True,
                    executable_path=self.executable_path,
                    args=["--disable-gpu", "--no-sandbox", "--disable-dev-shm-usage"],
                )
                context = browser.new_context(
                    user_agent=self.user_agent,
                    viewport={"width": 1280, "height": 800},
                )
                logger.info("Browser ready", extra={'context': name})

                while True:
                    req = self._request_queue.get()
                    if req is None:
                        self._request_queue.put(None)  # Pass onto other workers
                        break
                    if req.abandoned.is_set():
                        continue
                    req.result_queue.put(self._render_page(context, req))

                browser.close()
        except PlaywrightError as e:
            logger.critical(f"Browser thread fatal error: {e}", extra={'context': name})

    def _render_page(self, context, req: RenderRequest) -> RenderResult:
        page = context.new_page()
        try:
            def route_intercept(route):
                if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
                    return route.abort()
                return route.continue_()
            page.route("**/*", route_intercept)

            # Crawler-friendly URLs are served to the SPA router in their hashbang form
            response = page.goto(
                LinkUtility.to_hash_bang(req.url),
                wait_until="load",
                timeout=self.navigation_timeout * 1000,
            )
            status_code = response.status if response else 0
            content_type = response.headers.get("content-type") if response else None

            # Let client-side scripts settle; whatever is in the DOM afterwards is the snapshot
            try:
                page.wait_for_load_state("networkidle", timeout=req.timeout * 1000)
            except PlaywrightTimeoutError:
                logger.debug(f"Network still busy after {req.timeout}s for {req.url}; taking snapshot anyway")

            return RenderResult(RenderedPage(
                html=page.content(),
                final_url=page.url,
                status_code=status_code,
                content_type=content_type,
            ))
        except PlaywrightTimeoutError as e:
            return RenderResult(error=RenderTimeoutError(f"navigation timed out for {req.url}: {e}"))
        except PlaywrightError as e:
            return RenderResult(error=RenderExecutionError(f"browser error for {req.url}: {e}"))
        finally:
            page.close()

    def _ensure_running(self):
        if self._worker_threads and all(t.is_alive() for t in self._worker_threads):
            return
        with self._init_lock:
            if self._closed:
                raise RenderExecutionError("renderer has been closed")
            if self._worker_threads and all(t.is_alive() for t in self._worker_threads):
                return
            self._worker_threads = [t for t in self._worker_threads if t.is_alive()]
            for i in range(len(self._worker_threads), self.browsers):
                t = threading.Thread(target=self._render_loop, args=(i,), daemon=True, name=f"BrowserWorker-{i}")
                t.start()
                self._worker_threads.append(t)

    def render(self, url: str, timeout: float) -> RenderedPage:
        self._ensure_running()
        req = RenderRequest(url, timeout)
        self._request_queue.put(req)
        try:
            result = req.result_queue.get(timeout=timeout + self.navigation_timeout)
        except queue.Empty:
            req.abandoned.set()
            raise RenderTimeoutError(f"no browser result for {url} within {timeout + self.navigation_timeout:.0f}s")
        if result.error:
            raise result.error
        return result.page

    def close(self):
        with self._init_lock:
            self._closed = True
            threads = list(self._worker_threads)
        self._request_queue.put(None)
        for t in threads:
            t.join(timeout=10)
