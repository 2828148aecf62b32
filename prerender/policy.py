"""
Centralized request policy: crawler user-agent classification, text-request
detection and static asset filtering.

Other modules should import URLPolicy / UserAgentClassifier instead of
duplicating extension lists or ad-hoc user-agent checks.
"""

from typing import Iterable, Optional, Tuple
from urllib.parse import urlparse


class URLPolicy:
    """
    Central policy for URL filtering.

    Methods:
    - is_http(url): True for http/https
    - is_asset(url): True for asset/doc/media/script/style/font extensions
    - is_text_request(path): True when a request path most likely asks for an HTML page
    """

    ASSET_EXTENSIONS = {
        # Images
        ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico", ".bmp", ".tiff",
        # Video/Audio
        ".mp4", ".mp3", ".avi", ".mov", ".mkv", ".webm",
        # Archives
        ".zip", ".rar", ".tar", ".gz", ".7z",
        # Documents
        ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
        # Styles/Scripts
        ".css", ".js", ".mjs", ".map", ".json",
        # Fonts
        ".woff", ".woff2", ".ttf", ".eot",
        # Executables/Installers
        ".exe", ".msi",
    }

    TEXT_EXTENSIONS = {"html", "htm", "jsp"}

    @staticmethod
    def is_http(url: str) -> bool:
        try:
            return urlparse(url).scheme in ("http", "https")
        except ValueError:
            return False

    @classmethod
    def is_asset(cls, url: str) -> bool:
        try:
            path = urlparse(url).path.lower()
        except ValueError:
            return False
        return any(path.endswith(ext) for ext in cls.ASSET_EXTENSIONS)

    @classmethod
    def is_text_request(cls, path: Optional[str]) -> bool:
        """
        Check if the request is for an html page as far as possible:
        the site default page, a path without extension, or an html/htm/jsp file.
        """
        if not path:
            return True
        last = path.rsplit("/", 1)[-1]
        if "." not in last:
            return True
        ext = last.rsplit(".", 1)[1].lower()
        return ext in cls.TEXT_EXTENSIONS


class UserAgentClassifier:
    """
    FLOW: Lowercases the User-Agent header -> Matches it against known search engine and
    social preview crawlers plus site-specific tokens -> Returns True for robots.
    """

    DEFAULT_AGENTS: Tuple[str, ...] = (
        "googlebot",
        "bingbot",
        "yahoo! slurp",
        "baiduspider",
        "yandex",
        "duckduckbot",
        "sogou",
        "exabot",
        "facebot",
        "facebookexternalhit",
        "twitterbot",
        "linkedinbot",
        "slackbot",
        "whatsapp",
        "applebot",
        "embedly",
        "pinterest",
        "rogerbot",
        "showyoubot",
        "outbrain",
        "quora link preview",
        "developers.google.com/+/web/snippet",
    )

    def __init__(self, custom_agents: Iterable[str] = ()):
        extra = tuple(a.strip().lower() for a in custom_agents if a and a.strip())
        self.agents = self.DEFAULT_AGENTS + extra

    def is_robot(self, user_agent: Optional[str]) -> bool:
        if not user_agent:
            return False
        ua = user_agent.lower()
        return any(token in ua for token in self.agents)
