"""
FILE DESCRIPTION: URL handling and link discovery for rendered snapshots.
KEY FUNCTIONS/CLASSES: LinkUtility, UrlNormalizer, LinkExtractor
"""

from typing import Optional, Set
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

from prerender.core import setup_logger
from prerender.policy import URLPolicy

logger = setup_logger("prerender.processor")

DEFAULT_PORTS = {"http": 80, "https": 443}

# Escaped form of "#!" used in crawler-friendly URLs
HASHBANG_TOKEN = "_23_21"


# === LINK UTILITY ===

class LinkUtility:

    @staticmethod
    def is_crawler_friendly(url: str) -> bool:
        return HASHBANG_TOKEN in (url or "")

    @staticmethod
    def to_crawler_friendly(url: str) -> str:
        """
        Folds a hashbang route into the path so it survives fragment stripping:
        https://site/?x=1#!/about -> https://site/_23_21/about?x=1
        """
        parsed = urlparse(url)
        if not parsed.fragment.startswith("!"):
            return url
        path = (parsed.path or "/") + HASHBANG_TOKEN + parsed.fragment[1:]
        return urlunparse((parsed.scheme, parsed.netloc, path, parsed.params, parsed.query, ""))

    @staticmethod
    def to_hash_bang(url: str) -> str:
        """Inverse of to_crawler_friendly; used before handing a URL to a browser."""
        parsed = urlparse(url)
        if HASHBANG_TOKEN not in parsed.path:
            return url
        path, route = parsed.path.split(HASHBANG_TOKEN, 1)
        return urlunparse((parsed.scheme, parsed.netloc, path or "/", parsed.params, parsed.query, "!" + route))

    @staticmethod
    def origin(url: str):
        """(scheme, host, effective port) triple used for same-origin checks."""
        parsed = urlparse(url)
        scheme = (parsed.scheme or "").lower()
        host = (parsed.hostname or "").lower()
        port = parsed.port or DEFAULT_PORTS.get(scheme)
        return scheme, host, port

    @classmethod
    def same_origin(cls, url: str, other: str) -> bool:
        try:
            return cls.origin(url) == cls.origin(other)
        except ValueError:
            return False

    @staticmethod
    def root_of(request_url: str) -> str:
        """
        Root URL of a site as seen from a request URL: the last path segment is removed,
        so apps mounted below the host root keep their prefix.
        """
        parsed = urlparse(request_url)
        path = parsed.path.rsplit("/", 1)[0] + "/"
        return urlunparse((parsed.scheme, parsed.netloc, path, "", "", ""))


# === URL NORMALIZER (CACHE / DEDUP KEYS) ===

class UrlNormalizer:
    """
    FLOW: Folds hashbang fragments into crawler-friendly paths -> Lowercases scheme and host ->
    Drops default ports and plain fragments -> Optionally sorts query parameters -> Returns the key.

    The query string is kept verbatim unless sort_query is enabled, so by default
    ?a=1&b=2 and ?b=2&a=1 are distinct keys.
    """

    def __init__(self, sort_query: bool = False):
        self.sort_query = sort_query

    def __call__(self, url: str) -> str:
        return self.normalize(url)

    def normalize(self, url: str) -> str:
        if not url or not url.strip():
            raise ValueError("cannot normalize an empty URL")

        url = LinkUtility.to_crawler_friendly(url.strip())
        parsed = urlparse(url)
        scheme = parsed.scheme.lower()
        host = (parsed.hostname or "").lower()
        if not scheme or not host:
            raise ValueError(f"URL must be absolute: {url}")

        port = parsed.port
        if ":" in host:
            host = f"[{host}]"
        netloc = host if port in (None, DEFAULT_PORTS.get(scheme)) else f"{host}:{port}"

        path = parsed.path or "/"
        query = parsed.query
        if self.sort_query and query:
            query = urlencode(sorted(parse_qsl(query, keep_blank_values=True)))

        return urlunparse((scheme, netloc, path, parsed.params, query, ""))


# === LINK EXTRACTOR ===

class LinkExtractor:
    """
    FLOW: Parses rendered HTML using BeautifulSoup -> Honors <base href> -> Resolves every anchor ->
    Keeps same-origin http(s) pages only -> Strips fragments (hashbang routes become crawler-friendly) ->
    Returns the set of child URLs.
    """

    SKIP_PREFIXES = ("mailto:", "tel:", "javascript:", "data:")

    @classmethod
    def extract(cls, html: Optional[str], base_url: str, origin_url: Optional[str] = None) -> Set[str]:
        """Links on the page at base_url that stay on the site of origin_url (base_url when omitted)."""
        if not html:
            return set()
        try:
            soup = BeautifulSoup(html, "html.parser")
            resolve_base = base_url
            base_tag = soup.find("base", href=True)
            if base_tag and base_tag["href"].strip():
                resolve_base = urljoin(base_url, base_tag["href"].strip())

            urls = set()
            for a in soup.find_all("a", href=True):
                url = cls._resolve(a, resolve_base, origin_url or base_url)
                if url:
                    urls.add(url)
            return urls
        except Exception as e:
            logger.warning(f"Link extraction failed for {base_url}: {e}")
            return set()

    @classmethod
    def _resolve(cls, anchor, resolve_base: str, origin_url: str) -> Optional[str]:
        href = anchor["href"].strip()
        if not href or href.lower().startswith(cls.SKIP_PREFIXES):
            return None
        if href.startswith("#") and not href.startswith("#!"):
            return None
        rel = anchor.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        if "nofollow" in (r.lower() for r in rel):
            return None

        try:
            url = urljoin(resolve_base, href)
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https"):
                return None
            if not LinkUtility.same_origin(url, origin_url):
                return None
        except ValueError:
            return None

        if parsed.fragment.startswith("!"):
            url = LinkUtility.to_crawler_friendly(url)
        else:
            url = urlunparse((parsed.scheme, parsed.netloc, parsed.path or "/", parsed.params, parsed.query, ""))

        if URLPolicy.is_asset(url):
            return None
        return url
