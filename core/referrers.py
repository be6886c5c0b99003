"""
Referrer parsing and canonicalisation.

Raw referrer URLs are reduced to a {type, name, domain} description using a
static registry of known referrers. Lookups use longest-suffix matching, so
"www.google.com" and "news.google.com" both resolve through "google.com"
unless a more specific entry exists.
"""

import logging
from typing import Mapping, Optional
from urllib.parse import parse_qs, urlsplit

from models import DIRECT_REFERRER, ReferrerInfo

logger = logging.getLogger(__name__)

DIRECT_KEY = "direct"

# domain -> (category, display name)
DEFAULT_REFERRERS: dict[str, tuple[str, str]] = {
    # search
    "google.com": ("search", "Google"),
    "google.co.uk": ("search", "Google"),
    "google.de": ("search", "Google"),
    "google.fr": ("search", "Google"),
    "google.ca": ("search", "Google"),
    "google.com.au": ("search", "Google"),
    "bing.com": ("search", "Bing"),
    "duckduckgo.com": ("search", "DuckDuckGo"),
    "yahoo.com": ("search", "Yahoo"),
    "search.yahoo.com": ("search", "Yahoo"),
    "yandex.ru": ("search", "Yandex"),
    "yandex.com": ("search", "Yandex"),
    "baidu.com": ("search", "Baidu"),
    "ecosia.org": ("search", "Ecosia"),
    "search.brave.com": ("search", "Brave Search"),
    "startpage.com": ("search", "Startpage"),
    "perplexity.ai": ("search", "Perplexity"),
    # social
    "facebook.com": ("social", "Facebook"),
    "m.facebook.com": ("social", "Facebook"),
    "l.facebook.com": ("social", "Facebook"),
    "instagram.com": ("social", "Instagram"),
    "twitter.com": ("social", "Twitter"),
    "x.com": ("social", "X"),
    "t.co": ("social", "Twitter"),
    "linkedin.com": ("social", "LinkedIn"),
    "lnkd.in": ("social", "LinkedIn"),
    "reddit.com": ("social", "Reddit"),
    "news.ycombinator.com": ("social", "Hacker News"),
    "pinterest.com": ("social", "Pinterest"),
    "tiktok.com": ("social", "TikTok"),
    "threads.net": ("social", "Threads"),
    "bsky.app": ("social", "Bluesky"),
    "mastodon.social": ("social", "Mastodon"),
    "discord.com": ("social", "Discord"),
    "producthunt.com": ("social", "Product Hunt"),
    # video
    "youtube.com": ("video", "YouTube"),
    "youtu.be": ("video", "YouTube"),
    "vimeo.com": ("video", "Vimeo"),
    "twitch.tv": ("video", "Twitch"),
    # email
    "mail.google.com": ("email", "Gmail"),
    "outlook.live.com": ("email", "Outlook"),
    "mail.yahoo.com": ("email", "Yahoo Mail"),
    # developer / community
    "github.com": ("community", "GitHub"),
    "stackoverflow.com": ("community", "Stack Overflow"),
    "dev.to": ("community", "DEV"),
    "medium.com": ("community", "Medium"),
    # ai assistants
    "chatgpt.com": ("ai", "ChatGPT"),
    "chat.openai.com": ("ai", "ChatGPT"),
    "claude.ai": ("ai", "Claude"),
    "gemini.google.com": ("ai", "Gemini"),
}


class ReferrerRegistry:
    """Static lookup from domain name to referrer category and display name"""

    def __init__(self, entries: Optional[Mapping[str, tuple[str, str]]] = None):
        source = DEFAULT_REFERRERS if entries is None else entries
        self._entries = {domain.lower(): value for domain, value in source.items()}

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, hostname: str) -> Optional[tuple[str, str, str]]:
        """
        Longest-suffix lookup.

        Tries the full hostname, then strips the leftmost label until an entry
        matches or no labels remain.

        Returns:
            (matched domain, category, display name) or None
        """
        labels = hostname.lower().strip(".").split(".")
        for i in range(len(labels)):
            candidate = ".".join(labels[i:])
            if candidate in self._entries:
                category, name = self._entries[candidate]
                return candidate, category, name
        return None


def split_referrer(raw: str) -> tuple[str, str]:
    """Return (hostname, query string); hostname is "" when nothing parses"""
    candidate = raw.strip()
    if "://" not in candidate and not candidate.startswith("//"):
        if " " in candidate or "." not in candidate.split("/")[0]:
            return "", ""
        candidate = f"http://{candidate}"
    try:
        parts = urlsplit(candidate)
        hostname = parts.hostname or ""
    except ValueError:
        return "", ""
    return hostname.lower(), parts.query


def _is_same_site(hostname: str, site_hostname: Optional[str]) -> bool:
    if not site_hostname:
        return False
    site = site_hostname.lower().strip(".")
    return hostname == site or hostname.endswith(f".{site}")


class ReferrerCanonicalizer:
    """Parses raw referrer URLs into ReferrerInfo and grouping keys"""

    def __init__(
        self,
        registry: Optional[ReferrerRegistry] = None,
        site_hostname: Optional[str] = None,
        search_query_params: tuple[str, ...] = ("q", "query", "search"),
    ):
        self.registry = registry if registry is not None else ReferrerRegistry()
        self.site_hostname = site_hostname
        self.search_query_params = search_query_params

    def parse(self, raw: Optional[str]) -> ReferrerInfo:
        if not raw or raw.strip().lower() == DIRECT_KEY:
            return DIRECT_REFERRER

        hostname, query = split_referrer(raw)
        if not hostname:
            logger.debug(f"Unparseable referrer treated as direct: {raw[:80]!r}")
            return DIRECT_REFERRER

        if _is_same_site(hostname, self.site_hostname):
            return DIRECT_REFERRER

        match = self.registry.lookup(hostname)
        if match is not None:
            domain, category, name = match
            return ReferrerInfo(type=category, name=name, domain=domain, url=raw)

        query_keys = parse_qs(query, keep_blank_values=True).keys()
        if any(param in query_keys for param in self.search_query_params):
            return ReferrerInfo(type="search", name=hostname, domain=hostname, url=raw)

        return ReferrerInfo(type="unknown", name=hostname, domain=hostname, url=raw)

    @staticmethod
    def group_key(info: ReferrerInfo) -> str:
        return info.domain.lower() if info.domain else DIRECT_KEY

    def canonical_key(self, raw: Optional[str]) -> str:
        return self.group_key(self.parse(raw))
