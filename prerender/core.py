"""
FILE DESCRIPTION: Foundational module for configuration, logging and base exceptions.
KEY FUNCTIONS/CLASSES: PrerenderConfig, setup_logger, CompanyFormatter, ConfigurationError
"""

import codecs
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv


# === EXCEPTIONS ===

class PrerenderError(Exception):
    """Base exception for the snapshot crawler."""
    pass


class ConfigurationError(PrerenderError):
    """Raised at startup when a required option is missing or invalid."""
    pass


# === LOGGING SECTION ===

class CompanyFormatter(logging.Formatter):
    """
    FLOW: Receives a log record -> Extracts timestamp -> Formats according to company standard
    (e.g., [ Tue Jan 06 05:32:41 AM UTC 2026 ]) -> Prepends level and context -> Returns final string.
    """
    def format(self, record):
        dt = datetime.fromtimestamp(record.created)
        timestamp = dt.strftime("%a %b %d %I:%M:%S %p UTC %Y")
        context = getattr(record, 'context', 'root')
        message = f"[ {timestamp} ] : {record.levelname} : {context} : {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logger(name="prerender", log_file=None, level=logging.INFO):
    """
    FLOW: Initializes/Retrieves logger -> Checks for existing handlers to prevent duplicates ->
    Sets propagation for child loggers -> Attaches Console and optional File handlers with CompanyFormatter.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    # Child loggers (scheduler, worker) propagate to the root 'prerender' logger
    if name != "prerender":
        logger.propagate = True
        setup_logger("prerender", log_file=log_file, level=level)
        return logger

    formatter = CompanyFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Only the root 'prerender' logger gets a FileHandler
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


logger = setup_logger()


# === CONFIGURATION SECTION ===

DEFAULT_PAGE_LOAD_WAIT = 5
DEFAULT_CACHE_TTL_HOURS = 24
DEFAULT_CRAWL_DEPTH = 2
DEFAULT_WORKERS = 4
DEFAULT_QUEUE_SIZE = 10_000
DEFAULT_ENCODING = "UTF-8"

# Extra seconds granted on top of the page-load wait for navigation itself
RENDER_GRACE_SECONDS = 30

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
)


def _int_option(name: str, raw: Optional[str], default: int, minimum: int = 0) -> int:
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_option(name: str, raw: Optional[str], default: Optional[float]) -> Optional[float]:
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


def _bool_option(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class PrerenderConfig:
    """
    Startup configuration consumed by the scheduler, cache and middleware.
    Build it with from_env() and call validate() before wiring components.
    """
    browser_path: Optional[str]
    cache_path: Optional[str]
    page_load_wait: int = DEFAULT_PAGE_LOAD_WAIT
    cache_ttl_hours: float = DEFAULT_CACHE_TTL_HOURS
    encoding: str = DEFAULT_ENCODING
    max_crawl_depth: int = DEFAULT_CRAWL_DEPTH
    workers: int = DEFAULT_WORKERS
    root_url: Optional[str] = None
    refresh_interval_hours: Optional[float] = None
    watchdog_seconds: Optional[int] = None
    retry: str = "none"
    sort_query: bool = False
    robot_agents: Tuple[str, ...] = ()
    queue_size: int = DEFAULT_QUEUE_SIZE
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "PrerenderConfig":
        """Load .env (if present) and read PRERENDER_* variables."""
        load_dotenv(env_file)
        agents = os.getenv("PRERENDER_ROBOT_AGENTS", "")
        watchdog = os.getenv("PRERENDER_WATCHDOG_SECONDS")
        return cls(
            browser_path=os.getenv("PRERENDER_BROWSER_PATH"),
            cache_path=os.getenv("PRERENDER_CACHE_PATH"),
            page_load_wait=_int_option(
                "PRERENDER_PAGE_LOAD_WAIT", os.getenv("PRERENDER_PAGE_LOAD_WAIT"), DEFAULT_PAGE_LOAD_WAIT, minimum=1),
            cache_ttl_hours=_float_option(
                "PRERENDER_CACHE_TTL_HOURS", os.getenv("PRERENDER_CACHE_TTL_HOURS"), DEFAULT_CACHE_TTL_HOURS),
            encoding=os.getenv("PRERENDER_ENCODING") or DEFAULT_ENCODING,
            max_crawl_depth=_int_option(
                "PRERENDER_CRAWL_DEPTH", os.getenv("PRERENDER_CRAWL_DEPTH"), DEFAULT_CRAWL_DEPTH),
            workers=_int_option("PRERENDER_WORKERS", os.getenv("PRERENDER_WORKERS"), DEFAULT_WORKERS, minimum=1),
            root_url=os.getenv("PRERENDER_ROOT_URL") or None,
            refresh_interval_hours=_float_option(
                "PRERENDER_REFRESH_HOURS", os.getenv("PRERENDER_REFRESH_HOURS"), None),
            watchdog_seconds=_int_option("PRERENDER_WATCHDOG_SECONDS", watchdog, 0, minimum=1) if watchdog else None,
            retry=os.getenv("PRERENDER_RETRY") or "none",
            sort_query=_bool_option(os.getenv("PRERENDER_SORT_QUERY")),
            robot_agents=tuple(a.strip() for a in agents.split(",") if a.strip()),
            queue_size=_int_option("PRERENDER_QUEUE_SIZE", os.getenv("PRERENDER_QUEUE_SIZE"), DEFAULT_QUEUE_SIZE),
            log_file=os.getenv("PRERENDER_LOG_FILE") or None,
        )

    def validate(self, require_browser: bool = True) -> "PrerenderConfig":
        """
        FLOW: Checks required paths -> Checks numeric bounds -> Checks the codec and retry spec ->
        Raises ConfigurationError on the first problem, otherwise returns self.
        """
        if require_browser:
            if not self.browser_path:
                raise ConfigurationError("Please set PRERENDER_BROWSER_PATH to the headless browser executable")
            if not Path(self.browser_path).exists():
                raise ConfigurationError(f"Cannot find browser binary at PRERENDER_BROWSER_PATH {self.browser_path}")
        if not self.cache_path:
            raise ConfigurationError("Please set PRERENDER_CACHE_PATH for the snapshot cache")
        if self.page_load_wait < 1:
            raise ConfigurationError("page_load_wait must be at least 1 second")
        if self.cache_ttl_hours <= 0:
            raise ConfigurationError("cache_ttl_hours must be positive")
        if self.max_crawl_depth < 0:
            raise ConfigurationError("max_crawl_depth must not be negative")
        if self.workers < 1:
            raise ConfigurationError("workers must be at least 1")
        try:
            codecs.lookup(self.encoding)
        except LookupError:
            raise ConfigurationError(f"Unknown output encoding {self.encoding!r}")

        # Imported here: retry depends on this module for its exception type
        from prerender.retry import parse_retry_policy
        parse_retry_policy(self.retry)
        return self

    @property
    def ttl_seconds(self) -> float:
        return self.cache_ttl_hours * 3600

    @property
    def refresh_interval_seconds(self) -> float:
        hours = self.refresh_interval_hours or self.cache_ttl_hours
        return hours * 3600

    @property
    def render_deadline_seconds(self) -> float:
        return self.page_load_wait + RENDER_GRACE_SECONDS

    @property
    def watchdog_timeout_seconds(self) -> float:
        if self.watchdog_seconds:
            return float(self.watchdog_seconds)
        return 4 * self.render_deadline_seconds
