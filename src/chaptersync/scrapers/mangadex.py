from __future__ import annotations

import json
import logging
import socket
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from ..models import ScrapedChapter, ScrapedSeries
from ..resilience import ScraperError, classify_error
from ..utils import canonical_decimal, log_event, slugify
from .base import Scraper

API_BASE = "https://api.mangadex.org"
SITE_BASE = "https://mangadex.org"
FEED_PAGE_SIZE = 100
MAX_FEED_PAGES = 50

FetchJson = Callable[[str], Any]


class MangaDexScraper(Scraper):
    name = "mangadex"

    def __init__(
        self,
        timeout_seconds: int = 20,
        user_agent: str = "ChapterSync/0.1",
        languages: tuple[str, ...] = ("en",),
        fetch_json: FetchJson | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self.languages = languages
        self._fetch_json = fetch_json or self._http_get_json
        self._logger = logging.getLogger("chaptersync.scrapers.mangadex")

    def scrape_series(self, source_id: str) -> ScrapedSeries:
        manga = self._get(f"{API_BASE}/manga/{source_id}")
        data = _require_dict(manga.get("data"), "data")
        attributes = _require_dict(data.get("attributes"), "data.attributes")
        title = _pick_title(attributes.get("title"))

        chapters: list[ScrapedChapter] = []
        offset = 0
        for _ in range(MAX_FEED_PAGES):
            params: list[tuple[str, object]] = [
                ("limit", FEED_PAGE_SIZE),
                ("offset", offset),
                ("order[chapter]", "asc"),
            ]
            params.extend(("translatedLanguage[]", language) for language in self.languages)
            page = self._get(f"{API_BASE}/manga/{source_id}/feed?{urlencode(params)}")
            items = page.get("data")
            if not isinstance(items, list):
                raise ScraperError("feed response has no data list", self.name, False, "PARSE_ERROR")
            for item in items:
                chapter = self._parse_chapter(item)
                if chapter is not None:
                    chapters.append(chapter)
            offset += len(items)
            total = page.get("total")
            if not items or not isinstance(total, int) or offset >= total:
                break
        else:
            log_event(
                self._logger,
                logging.WARNING,
                "mangadex_feed_truncated",
                source_id=source_id,
                pages=MAX_FEED_PAGES,
            )
        log_event(
            self._logger,
            logging.DEBUG,
            "mangadex_series_scraped",
            source_id=source_id,
            chapters=len(chapters),
        )
        return ScrapedSeries(source_id=source_id, title=title, chapters=chapters)

    def _parse_chapter(self, item: Any) -> ScrapedChapter | None:
        if not isinstance(item, dict) or item.get("type", "chapter") != "chapter":
            return None
        chapter_id = item.get("id")
        attributes = item.get("attributes") or {}
        if not isinstance(chapter_id, str) or not isinstance(attributes, dict):
            return None
        if attributes.get("externalUrl") and not attributes.get("pages"):
            chapter_url = str(attributes["externalUrl"])
        else:
            chapter_url = f"{SITE_BASE}/chapter/{chapter_id}"
        title = attributes.get("title") or None
        number, slug = _chapter_key(attributes.get("chapter"), title, chapter_id)
        return ScrapedChapter(
            chapter_url=chapter_url,
            chapter_number=number,
            chapter_slug=slug,
            chapter_title=title,
            source_chapter_id=chapter_id,
            published_at=attributes.get("publishAt") or attributes.get("readableAt"),
        )

    def _get(self, url: str) -> dict[str, Any]:
        try:
            payload = self._fetch_json(url)
        except ScraperError:
            raise
        except (HTTPError, URLError, socket.timeout, TimeoutError, ConnectionError, ValueError) as exc:
            raise classify_error(exc, self.name) from exc
        if not isinstance(payload, dict):
            raise ScraperError("response is not a JSON object", self.name, False, "PARSE_ERROR")
        if payload.get("result") == "error":
            errors = payload.get("errors") or []
            detail = errors[0].get("detail") if errors and isinstance(errors[0], dict) else None
            raise ScraperError(detail or "upstream reported an error", self.name, False, "UPSTREAM_ERROR")
        return payload

    def _http_get_json(self, url: str) -> Any:
        request = Request(url, headers={"User-Agent": self.user_agent, "Accept": "application/json"})
        with urlopen(request, timeout=self.timeout_seconds) as response:
            body = response.read()
        return json.loads(body.decode("utf-8"))


def _require_dict(value: Any, path: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ScraperError(f"missing {path} in response", MangaDexScraper.name, False, "PARSE_ERROR")
    return value


def _pick_title(titles: Any) -> str:
    if isinstance(titles, dict) and titles:
        if titles.get("en"):
            return str(titles["en"])
        return str(next(iter(titles.values())))
    return ""


def _chapter_key(raw: Any, title: str | None, chapter_id: str) -> tuple[str | None, str | None]:
    """Split MangaDex's free-text ``chapter`` attribute into a number or a slug.

    Numberless chapters are oneshots, keyed by title when there is one so the
    same oneshot on two uploads still merges. Text that is not a number
    ("Extra", "10a") becomes a slug of itself.
    """
    text = "" if raw is None else str(raw).strip()
    if not text:
        suffix = slugify(str(title)) if title else ""
        if suffix in ("", "untitled"):
            suffix = slugify(chapter_id)
        return None, f"oneshot-{suffix}"
    try:
        canonical_decimal(text)
    except ValueError:
        return None, slugify(text)
    return text, None
