from __future__ import annotations

from ..models import ScrapedSeries
from ..resilience import ScraperError
from .base import Scraper

PLACEHOLDER_SOURCES = {
    "mangapark": "MangaPark",
    "mangasee": "MangaSee",
}


class PlaceholderScraper(Scraper):
    """Registered name without an integration; the poller deactivates its sources."""

    supported = False

    def __init__(self, name: str, display_name: str | None = None) -> None:
        self.name = name
        self.display_name = display_name or name

    def scrape_series(self, source_id: str) -> ScrapedSeries:
        raise ScraperError(
            f"{self.display_name} integration is not available",
            self.name,
            is_retryable=False,
            code="UNSUPPORTED_SOURCE",
        )
