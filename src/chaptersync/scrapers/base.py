from __future__ import annotations

from abc import ABC, abstractmethod

from ..models import ScrapedSeries


class Scraper(ABC):
    """One upstream source. ``name`` matches ``series_sources.source_name``."""

    name: str = ""
    supported: bool = True

    @abstractmethod
    def scrape_series(self, source_id: str) -> ScrapedSeries:
        raise NotImplementedError
