from __future__ import annotations

import threading

from .base import Scraper
from .mangadex import MangaDexScraper
from .placeholder import PLACEHOLDER_SOURCES, PlaceholderScraper


class ScraperRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._scrapers: dict[str, Scraper] = {}

    def register(self, scraper: Scraper) -> None:
        if not scraper.name:
            raise ValueError("scraper name is required")
        with self._lock:
            self._scrapers[scraper.name] = scraper

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._scrapers.pop(name, None) is not None

    def get(self, name: str) -> Scraper | None:
        with self._lock:
            return self._scrapers.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._scrapers)

    def is_supported(self, name: str) -> bool:
        scraper = self.get(name)
        return scraper is not None and scraper.supported


def build_default_registry(timeout_seconds: int = 20, user_agent: str = "ChapterSync/0.1") -> ScraperRegistry:
    registry = ScraperRegistry()
    registry.register(MangaDexScraper(timeout_seconds=timeout_seconds, user_agent=user_agent))
    for name, display_name in PLACEHOLDER_SOURCES.items():
        registry.register(PlaceholderScraper(name, display_name))
    return registry


__all__ = [
    "MangaDexScraper",
    "PlaceholderScraper",
    "Scraper",
    "ScraperRegistry",
    "build_default_registry",
]
