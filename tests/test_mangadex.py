from urllib.error import HTTPError, URLError

from chaptersync.poller import normalize_chapter
from chaptersync.resilience import RateLimitError, ScraperError
from chaptersync.scrapers import MangaDexScraper, PlaceholderScraper, build_default_registry


def _manga(title="One Piece"):
    return {"result": "ok", "data": {"id": "a1b2c3", "attributes": {"title": {"en": title}}}}


def _chapter(chapter_id, number, **attributes):
    return {
        "id": chapter_id,
        "type": "chapter",
        "attributes": {
            "chapter": number,
            "title": attributes.get("title"),
            "publishAt": attributes.get("publishAt", "2025-01-01T00:00:00+00:00"),
            "pages": attributes.get("pages", 20),
            "externalUrl": attributes.get("externalUrl"),
        },
    }


class FakeApi:
    def __init__(self, pages, manga=None, error=None):
        self.pages = pages
        self.manga = manga or _manga()
        self.error = error
        self.urls = []

    def __call__(self, url):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        if "/feed?" not in url:
            return self.manga
        offset = int(url.split("offset=")[1].split("&")[0])
        return self.pages[offset]


def test_scrape_series_pages_through_feed():
    api = FakeApi(
        {
            0: {"result": "ok", "data": [_chapter("c1", "1", title="Romance Dawn"), _chapter("c2", "2")], "total": 3},
            2: {"result": "ok", "data": [_chapter("c3", "2.5")], "total": 3},
        }
    )

    series = MangaDexScraper(fetch_json=api).scrape_series("a1b2c3")

    assert series.title == "One Piece"
    assert [chapter.chapter_number for chapter in series.chapters] == ["1", "2", "2.5"]
    assert series.chapters[0].chapter_title == "Romance Dawn"
    assert series.chapters[0].chapter_url == "https://mangadex.org/chapter/c1"
    assert series.chapters[0].source_chapter_id == "c1"
    assert len(api.urls) == 3
    assert "translatedLanguage%5B%5D=en" in api.urls[1]


def test_oneshot_and_external_chapters():
    api = FakeApi(
        {
            0: {
                "result": "ok",
                "data": [
                    _chapter("c1", None),
                    _chapter("c2", "3", pages=0, externalUrl="https://mangaplus.shueisha.co.jp/viewer/1"),
                    {"id": "r1", "type": "manga"},
                ],
                "total": 3,
            }
        }
    )

    chapters = MangaDexScraper(fetch_json=api).scrape_series("a1b2c3").chapters

    assert len(chapters) == 2
    assert chapters[0].chapter_number is None
    assert chapters[0].chapter_slug == "oneshot-c1"
    assert chapters[1].chapter_url == "https://mangaplus.shueisha.co.jp/viewer/1"


def test_non_numeric_chapters_become_slugs():
    api = FakeApi(
        {
            0: {
                "result": "ok",
                "data": [
                    _chapter("c1", "Extra", pages=3),
                    _chapter("c2", "10a"),
                    _chapter("c3", "12.50"),
                    _chapter("c4", None, title="Side Story: Strong World"),
                    _chapter("c5", "", title="Another Oneshot"),
                ],
                "total": 5,
            }
        }
    )

    chapters = MangaDexScraper(fetch_json=api).scrape_series("a1b2c3").chapters

    assert [(chapter.chapter_number, chapter.chapter_slug) for chapter in chapters] == [
        (None, "extra"),
        (None, "10a"),
        ("12.50", None),
        (None, "oneshot-side-story-strong-world"),
        (None, "oneshot-another-oneshot"),
    ]
    normalized = [normalize_chapter(chapter) for chapter in chapters]
    assert all(item is not None for item in normalized)
    assert normalized[0]["chapterSlug"] == "extra"
    assert normalized[2]["chapterNumber"] == "12.5"


def test_http_errors_are_classified():
    scraper = MangaDexScraper(
        fetch_json=FakeApi({}, error=HTTPError("https://api.mangadex.org", 404, "Not Found", None, None))
    )
    try:
        scraper.scrape_series("missing")
    except ScraperError as exc:
        assert exc.code == "NOT_FOUND"
        assert exc.is_retryable is False
    else:
        raise AssertionError("Expected ScraperError")

    scraper = MangaDexScraper(
        fetch_json=FakeApi({}, error=HTTPError("https://api.mangadex.org", 429, "Too Many", None, None))
    )
    try:
        scraper.scrape_series("a1b2c3")
    except RateLimitError:
        pass
    else:
        raise AssertionError("Expected RateLimitError")

    scraper = MangaDexScraper(fetch_json=FakeApi({}, error=URLError("timed out")))
    try:
        scraper.scrape_series("a1b2c3")
    except ScraperError as exc:
        assert exc.code == "NETWORK_ERROR"
        assert exc.is_retryable is True
    else:
        raise AssertionError("Expected ScraperError")


def test_upstream_error_and_malformed_responses():
    error_body = {"result": "error", "errors": [{"detail": "Manga not found"}]}
    try:
        MangaDexScraper(fetch_json=FakeApi({}, manga=error_body)).scrape_series("a1b2c3")
    except ScraperError as exc:
        assert exc.code == "UPSTREAM_ERROR"
        assert "Manga not found" in exc.message
    else:
        raise AssertionError("Expected ScraperError")

    try:
        MangaDexScraper(fetch_json=FakeApi({0: {"result": "ok"}})).scrape_series("a1b2c3")
    except ScraperError as exc:
        assert exc.code == "PARSE_ERROR"
    else:
        raise AssertionError("Expected ScraperError")


def test_default_registry_marks_placeholders_unsupported():
    registry = build_default_registry()

    assert registry.names() == ["mangadex", "mangapark", "mangasee"]
    assert registry.is_supported("mangadex") is True
    assert registry.is_supported("mangapark") is False
    assert registry.is_supported("unknown") is False

    try:
        PlaceholderScraper("mangapark", "MangaPark").scrape_series("x")
    except ScraperError as exc:
        assert exc.code == "UNSUPPORTED_SOURCE"
    else:
        raise AssertionError("Expected ScraperError")
