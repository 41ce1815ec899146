"""RSS/Atom feed fetching for podcast subscriptions.

Downloads feeds with httpx and parses them with feedparser, including the
iTunes namespace extensions most podcast feeds use.
"""

import calendar
import logging
import re
from email.utils import parsedate_to_datetime
from typing import Optional
from urllib.parse import urlparse

import feedparser
import httpx

from .config import settings
from .errors import NetworkError, ValidationError
from .models import ParsedEpisode, ParsedFeed

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = (".mp3", ".m4a", ".mp4", ".ogg", ".opus", ".wav", ".aac")

class FeedFetcher:
    """Fetches and parses podcast feeds.

    parse_feed() is safe to call repeatedly for the same URL: refreshes rely on
    stable GUIDs to avoid duplicating episodes.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.client = client or httpx.AsyncClient(
            headers={"User-Agent": settings.USER_AGENT},
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            follow_redirects=True,
        )

    async def close(self):
        await self.client.aclose()

    async def parse_feed(self, url: str) -> ParsedFeed:
        """Fetch and parse a feed.

        Raises:
            NetworkError: the feed could not be downloaded
            ValidationError: the response is not a usable podcast feed
        """
        try:
            resp = await self.client.get(url)
        except httpx.HTTPError as e:
            raise NetworkError(f"Feed unreachable: {url}: {e}") from e

        if resp.status_code >= 400:
            raise NetworkError(f"Feed unreachable: {url} returned {resp.status_code}", resp.status_code)

        return self.parse_content(resp.content, url)

    def parse_content(self, content, url: str = "") -> ParsedFeed:
        feed = feedparser.parse(content)

        if feed.bozo and feed.get("bozo_exception"):
            logger.warning(f"Feed parsing warning for {url}: {feed.bozo_exception}")

        if not feed.feed or (not feed.feed.get("title") and not feed.entries):
            raise ValidationError(f"Invalid feed: {url}")

        f = feed.feed
        parsed = ParsedFeed(
            title=f.get("title") or "Unknown Podcast",
            author=f.get("author") or f.get("itunes_author"),
            description=_clean_html(f.get("description") or f.get("subtitle")),
            artwork_url=_image_url(f),
        )

        seen = set()
        for entry in feed.entries:
            episode = _parse_entry(entry)
            if episode is None:
                continue
            # GUIDs are the episode identity; some feeds repeat them
            if episode.guid in seen:
                continue
            seen.add(episode.guid)
            parsed.episodes.append(episode)

        logger.debug(f"Parsed '{parsed.title}' with {len(parsed.episodes)} episodes from {url}")
        return parsed

def _parse_entry(entry) -> Optional[ParsedEpisode]:
    audio_url = _enclosure_url(entry)
    if not audio_url:
        logger.debug(f"Skipping entry without audio enclosure: {entry.get('title')}")
        return None

    publish_date = None
    if entry.get("published_parsed"):
        publish_date = float(calendar.timegm(entry.published_parsed))
    elif entry.get("published"):
        try:
            publish_date = parsedate_to_datetime(entry.published).timestamp()
        except (TypeError, ValueError):
            pass

    image = entry.get("image")
    return ParsedEpisode(
        guid=entry.get("id") or entry.get("guid") or audio_url,
        audio_url=audio_url,
        title=entry.get("title") or entry.get("itunes_title") or "Untitled Episode",
        description=_clean_html(entry.get("summary") or entry.get("description")),
        publish_date=publish_date,
        duration_s=_parse_duration(entry.get("itunes_duration")),
        artwork_url=image.get("href") if isinstance(image, dict) else None,
    )

def _enclosure_url(entry) -> Optional[str]:
    for enclosure in entry.get("enclosures", []):
        url = enclosure.get("href") or enclosure.get("url")
        if url and _is_audio(enclosure.get("type", ""), url):
            return url
    for link in entry.get("links", []):
        if link.get("rel") == "enclosure" and link.get("href") and _is_audio(link.get("type", ""), link["href"]):
            return link["href"]
    return None

def _is_audio(mime_type: str, url: str) -> bool:
    if mime_type and mime_type != "application/octet-stream":
        return mime_type.startswith("audio/")
    return urlparse(url).path.lower().endswith(AUDIO_EXTENSIONS)

def _image_url(feed) -> Optional[str]:
    for key in ("itunes_image", "image"):
        value = feed.get(key)
        if isinstance(value, dict):
            return value.get("href") or value.get("url")
        if value:
            return value
    return None

def _parse_duration(value) -> Optional[float]:
    """Accepts "3600", "60:00" and "1:00:00"."""
    if not value:
        return None
    parts = str(value).strip().split(":")
    try:
        seconds = 0.0
        for part in parts:
            seconds = seconds * 60 + float(part)
        return seconds if len(parts) <= 3 else None
    except ValueError:
        return None

def _clean_html(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    clean = re.sub(r"<[^>]+>", "", text)
    clean = re.sub(r"\s+", " ", clean).strip()
    return clean or None
