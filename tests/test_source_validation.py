from chaptersync.resilience import SOURCE_ID_MAX_LENGTH, validate_source_id, validate_source_url


def test_valid_source_ids():
    for source_id in (
        "a1b2c3",
        "0d2b7c3e-8f4a-4b1e-9c7d-2e5f6a7b8c9d",
        "one_piece",
        "X" * SOURCE_ID_MAX_LENGTH,
    ):
        assert validate_source_id(source_id) is True, source_id


def test_invalid_source_ids():
    for source_id in (
        "",
        None,
        123,
        "X" * (SOURCE_ID_MAX_LENGTH + 1),
        "../etc/passwd",
        "abc def",
        "abc?x=1",
        "<script>",
        "abc/def",
    ):
        assert validate_source_id(source_id) is False, source_id


def test_allowed_source_urls():
    assert validate_source_url("https://mangadex.org/title/a1b2c3") is True
    assert validate_source_url("https://api.mangadex.org/manga/a1b2c3") is True
    assert validate_source_url("http://MangaDex.org/title/a1b2c3") is True


def test_rejected_source_urls():
    for url in (
        "",
        None,
        "ftp://mangadex.org/title/a1b2c3",
        "javascript:alert(1)",
        "https://mangadex.org.evil.com/title/a1b2c3",
        "https://evil.com/?next=mangadex.org",
        "https://sub.mangadex.org/title/a1b2c3",
        "https://mangapark.net/title/a1b2c3",
        "https://fake-mangadex.org/title/a1b2c3",
        "https://evil.com/title/a1b2c3",
        "not-a-url",
        "not a url",
    ):
        assert validate_source_url(url) is False, url


def test_custom_allowed_hosts():
    assert validate_source_url("https://example.org/series/1", ["example.org"]) is True
    assert validate_source_url("https://mangadex.org/title/1", ["example.org"]) is False
