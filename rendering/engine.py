import threading
import time
from abc import ABC, abstractmethod
from typing import Optional

from rendering.models import RenderedPage, RenderOutcome, RenderStatus


class RenderError(Exception):
    """Base rendering exception."""
    pass


class RenderTimeoutError(RenderError):
    """Raised when page load or script settling exceeds time limits."""
    pass


class RenderExecutionError(RenderError):
    """Raised on critical browser/script execution failures."""
    pass


class RenderingBackend(ABC):
    """
    Abstraction for the underlying browser driver.
    Contractual Requirements for Implementers:
    - MUST return the serialized DOM after client-side scripts settle.
    - SHOULD honor the timeout itself; the engine only enforces a hard backstop.
    - MUST be safe to call from several worker threads at once.
    """
    @abstractmethod
    def render(self, url: str, timeout: float) -> RenderedPage:
        """
        Load url, wait up to timeout seconds for the page to settle, return the page.
        Raises RenderTimeoutError or RenderExecutionError.
        """
        pass

    def close(self) -> None:
        """Release browser resources. Optional for implementers."""
        pass


class RenderingEngine:
    """
    Renderer adapter consumed by the crawl scheduler.
    Invariants:
    - Bounded: a call never blocks its caller past timeout + grace seconds.
    - Contractual: failures surface as typed RenderStatus values, never as exceptions.
    - Eligibility: only 2xx text/html responses with a non-empty body count as success.
    """

    def __init__(self, backend: RenderingBackend, grace_seconds: float = 30.0, version: str = "v1"):
        self._backend = backend
        self._grace_seconds = grace_seconds
        self._version = version

    @property
    def backend(self) -> RenderingBackend:
        return self._backend

    def render(self, url: str, timeout: float) -> RenderOutcome:
        """
        FLOW: Runs the backend on a helper thread -> Waits up to the hard deadline ->
        Abandons the call on expiry (RENDER_TIMEOUT) -> Applies eligibility gates -> Returns the outcome.
        """
        start = time.monotonic()
        result = {"page": None, "error": None}
        done = threading.Event()

        def _call():
            try:
                result["page"] = self._backend.render(url, timeout)
            except Exception as e:
                result["error"] = e
            finally:
                done.set()

        threading.Thread(target=_call, daemon=True, name="RenderCall").start()

        if not done.wait(timeout=timeout + self._grace_seconds):
            return self._failure(url, RenderStatus.RENDER_TIMEOUT, start,
                                 f"render exceeded hard deadline of {timeout + self._grace_seconds:.1f}s")

        error = result["error"]
        if isinstance(error, RenderTimeoutError):
            return self._failure(url, RenderStatus.RENDER_TIMEOUT, start, str(error))
        if error is not None:
            return self._failure(url, RenderStatus.RENDER_FAILED, start, f"{type(error).__name__}: {error}")

        page: RenderedPage = result["page"]
        if page is None:
            return self._failure(url, RenderStatus.RENDER_FAILED, start, "backend returned no page")

        # ELIGIBILITY RULE: Status and Content-Type Gates
        if not (200 <= page.status_code < 300):
            return self._failure(url, RenderStatus.RENDER_FAILED, start,
                                 f"http status {page.status_code}", status_code=page.status_code)
        if page.content_type and "html" not in page.content_type.lower():
            return self._failure(url, RenderStatus.INELIGIBLE_TYPE, start,
                                 f"non-html content type {page.content_type}", status_code=page.status_code)
        if not page.html or not page.html.strip():
            return self._failure(url, RenderStatus.RENDER_FAILED, start, "empty document",
                                 status_code=page.status_code)

        return RenderOutcome(
            url=url,
            status=RenderStatus.SUCCESS,
            html=page.html,
            final_url=page.final_url or url,
            status_code=page.status_code,
            render_duration_ms=self._elapsed_ms(start),
            rendering_version=self._version,
        )

    def close(self) -> None:
        self._backend.close()

    def _failure(self, url: str, status: RenderStatus, start: float, error: str,
                 status_code: int = 0) -> RenderOutcome:
        return RenderOutcome(
            url=url,
            status=status,
            status_code=status_code,
            error=error,
            render_duration_ms=self._elapsed_ms(start),
            rendering_version=self._version,
        )

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
