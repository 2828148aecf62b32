"""
Pre-rendered snapshots of JavaScript single-page applications for search engine crawlers.
"""

from prerender.core import ConfigurationError, PrerenderConfig, PrerenderError
from prerender.models import CrawlRequest, EnqueueResult, SnapshotEntry, TaskState
from prerender.cache import SnapshotCache
from prerender.engine import CrawlScheduler
from prerender.processor import LinkExtractor, UrlNormalizer

__version__ = "0.1.0"
