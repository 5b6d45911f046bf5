from unittest.mock import Mock

import pytest
import requests

from scraper_worker.errors import FetchError, PayloadTooSmallError, TransientFetchError
from scraper_worker.ingestion.fetcher import HtmlUnitFetcher
from scraper_worker.ingestion.templates import TemplateConfig, load_template
from scraper_worker.utils.retry import RetryPolicy


WORK_PAGE = """
<html><head><title> Solo Leveling - Asura </title></head><body>
<ul class="main">
  <li class="wp-manga-chapter"><a href="/manga/solo/chapter-10/">Chapter 10</a></li>
  <li class="wp-manga-chapter"><a href="/manga/solo/chapter-9.5/">Chapter 9.5 - Extra</a></li>
  <li class="wp-manga-chapter"><a href="https://example.com/manga/solo/chapter-0/">Prologue chapter 0</a></li>
  <li class="wp-manga-chapter"><a href="/manga/solo/chapter-10/">Chapter 10 (dup)</a></li>
  <li class="wp-manga-chapter"><a>No link</a></li>
</ul>
</body></html>
"""

CHAPTER_PAGE = """
<html><body>
<div class="reading-content">
  <img class="wp-manga-chapter-img" src=" https://cdn.example.com/solo/10/01.jpg ">
  <img class="wp-manga-chapter-img" src="data:image/gif;base64,R0lGOD" data-src="/uploads/solo/10/02.jpg">
  <img class="wp-manga-chapter-img" data-lazy-src="https://cdn.example.com/solo/10/03.webp">
  <img class="wp-manga-chapter-img">
</div>
</body></html>
"""


def _response(status=200, text="", content=b""):
    response = Mock()
    response.status_code = status
    response.text = text
    response.content = content
    return response


def _fetcher(session, **kwargs) -> HtmlUnitFetcher:
    return HtmlUnitFetcher(
        user_agent="TestBot/1.0",
        timeout=5,
        policy=RetryPolicy(max_attempts=3, base_delay=0.0, retry_on=(TransientFetchError,)),
        session=session,
        sleep=lambda _: None,
        **kwargs,
    )


def test_discover_units_sorted_and_deduplicated() -> None:
    session = Mock()
    session.get.return_value = _response(text=WORK_PAGE)
    fetcher = _fetcher(session)

    result = fetcher.discover_units("https://example.com/manga/solo/", load_template("wp-manga"))

    assert [unit.ordinal for unit in result.units] == [0.0, 9.5, 10.0]
    assert result.units[1].url == "https://example.com/manga/solo/chapter-9.5/"
    assert result.units[2].title == "Chapter 10"
    assert result.metadata == {"pageTitle": "Solo Leveling - Asura"}


def test_discover_units_falls_back_to_position() -> None:
    page = '<div class="list"><a href="/a">Prologue</a><a href="/b">Side story</a></div>'
    session = Mock()
    session.get.return_value = _response(text=page)
    template = TemplateConfig.from_dict({"name": "plain", "selectors": {"chapters": ".list a"}})

    result = _fetcher(session).discover_units("https://example.com/w/", template)

    assert [(unit.ordinal, unit.url) for unit in result.units] == [
        (1.0, "https://example.com/a"),
        (2.0, "https://example.com/b"),
    ]


def test_request_headers() -> None:
    session = Mock()
    session.get.return_value = _response(text=WORK_PAGE)

    _fetcher(session).discover_units("https://example.com/manga/solo/", load_template("wp-manga"))

    _, kwargs = session.get.call_args
    assert kwargs["headers"]["User-Agent"] == "TestBot/1.0"
    assert kwargs["headers"]["Referer"] == "https://example.com/"
    assert kwargs["timeout"] == 5


def test_fetch_unit_payloads_honours_lazy_attributes() -> None:
    session = Mock()
    session.get.return_value = _response(text=CHAPTER_PAGE)

    payloads = _fetcher(session).fetch_unit_payloads(
        "https://example.com/manga/solo/chapter-10/", load_template("wp-manga")
    )

    assert payloads.images == [
        "https://cdn.example.com/solo/10/01.jpg",
        "https://example.com/uploads/solo/10/02.jpg",
        "https://cdn.example.com/solo/10/03.webp",
    ]
    assert payloads.subtitles == []
    assert payloads.texts == []
    assert payloads.total == 3


def test_fetch_unit_payloads_subtitles_texts_and_url_filter() -> None:
    page = """
    <div class="chapter-content">
      <img src="/ads/banner.png"><img src="/pages/1.png">
      <p>First paragraph.</p><p>   </p><p>Second paragraph.</p>
    </div>
    <track src="/subs/en.vtt">
    """
    template = TemplateConfig.from_dict(
        {
            "name": "site",
            "selectors": {
                "image": ".chapter-content img",
                "subtitle": "track[src]",
                "textContainer": ".chapter-content p",
            },
            "patterns": {"imageUrlPattern": "/pages/"},
        }
    )
    session = Mock()
    session.get.return_value = _response(text=page)

    payloads = _fetcher(session).fetch_unit_payloads("https://example.com/ep/1", template)

    assert payloads.images == ["https://example.com/pages/1.png"]
    assert payloads.subtitles == ["https://example.com/subs/en.vtt"]
    assert payloads.texts == ["First paragraph.", "Second paragraph."]


def test_text_blocks_keep_spacing_around_inline_tags() -> None:
    page = (
        '<div class="chapter-content">'
        "<p>He said <em>hello</em> to <b>her</b>.\n  Then left.</p>"
        "</div>"
    )
    template = TemplateConfig.from_dict(
        {"name": "novel", "selectors": {"textContainer": ".chapter-content p"}}
    )
    session = Mock()
    session.get.return_value = _response(text=page)

    payloads = _fetcher(session).fetch_unit_payloads("https://example.com/novel/1", template)

    assert len(payloads.texts) == 1
    assert "hello to her" in payloads.texts[0]
    assert payloads.texts[0].startswith("He said hello")
    assert payloads.texts[0].endswith("Then left.")


def test_transient_errors_are_retried() -> None:
    session = Mock()
    session.get.side_effect = [
        requests.Timeout("read timed out"),
        _response(status=503),
        _response(content=b"x" * 200),
    ]

    assert _fetcher(session).fetch_bytes("https://cdn.example.com/1.jpg") == b"x" * 200
    assert session.get.call_count == 3


def test_client_error_is_not_retried() -> None:
    session = Mock()
    session.get.return_value = _response(status=404)

    with pytest.raises(FetchError) as excinfo:
        _fetcher(session).fetch_bytes("https://cdn.example.com/missing.jpg")

    assert not isinstance(excinfo.value, TransientFetchError)
    assert excinfo.value.status_code == 404
    assert session.get.call_count == 1


def test_rate_limited_until_budget_exhausted() -> None:
    session = Mock()
    session.get.return_value = _response(status=429)

    with pytest.raises(TransientFetchError):
        _fetcher(session).fetch_bytes("https://cdn.example.com/1.jpg")
    assert session.get.call_count == 3


def test_undersized_payload_counts_as_failed_attempt() -> None:
    session = Mock()
    session.get.side_effect = [_response(content=b"tiny"), _response(content=b"y" * 150)]

    data = _fetcher(session, min_asset_bytes=100).fetch_bytes("https://cdn.example.com/1.jpg")

    assert data == b"y" * 150
    assert session.get.call_count == 2


def test_undersized_payload_exhausts_budget() -> None:
    session = Mock()
    session.get.return_value = _response(content=b"tiny")

    with pytest.raises(PayloadTooSmallError):
        _fetcher(session, min_asset_bytes=100).fetch_bytes("https://cdn.example.com/1.jpg")


def test_from_config(worker_config) -> None:
    fetcher = HtmlUnitFetcher.from_config(worker_config, session=Mock())
    assert fetcher.policy.max_attempts == worker_config.fetch_max_attempts
    assert fetcher.min_asset_bytes == worker_config.min_asset_bytes
    assert fetcher.timeout == worker_config.request_timeout


SERIES_PAGE = """
<html><body><h1> Frieren: Beyond Journey's End </h1>
<ul id="accordion-list">
  <li class="panel">
    <a class="box-sub-season-link">Season 1</a>
    <ul class="list-subtitles-inside">
      <li class="box-sub"><span class="label-default">S01E01</span>
        <div class="box-sub-headline"><a href="/en/episodes/1001">The Journey's End</a></div></li>
      <li class="box-sub"><span class="label-default">S01E02</span>
        <div class="box-sub-headline"><a href="/en/episodes/1002">It Didn't Have to Be Magic</a></div></li>
    </ul>
  </li>
  <li class="panel">
    <a class="box-sub-season-link">Specials</a>
    <ul class="list-subtitles-inside">
      <li class="box-sub"><span class="label-default">S00E01</span>
        <div class="box-sub-headline"><a href="/en/episodes/9001">Recap</a></div></li>
    </ul>
  </li>
  <li class="panel">
    <a class="box-sub-season-link">Season 2</a>
    <ul class="list-subtitles-inside">
      <li class="box-sub"><span class="label-default">S02E01</span>
        <div class="box-sub-headline"><a href="https://www.opensubtitles.com/en/episodes/2001">Return</a></div></li>
      <li class="box-sub"><span class="label-default"></span>
        <div class="box-sub-headline"><a href="/en/episodes/2002">Unlabelled</a></div></li>
    </ul>
  </li>
</ul>
</body></html>
"""


def test_discover_opensubtitles_episodes() -> None:
    session = Mock()
    session.get.return_value = _response(text=SERIES_PAGE)

    result = _fetcher(session).discover_units(
        "https://www.opensubtitles.com/en/tvshows/frieren", load_template("opensubtitles")
    )

    assert [(unit.ordinal, unit.title) for unit in result.units] == [
        (1.0, "S01E01"),
        (2.0, "S01E02"),
        (3.0, "S02E01"),
    ]
    assert result.units[0].url == "https://www.opensubtitles.com/en/episodes/1001"
    assert result.metadata["seasons"] == {
        "https://www.opensubtitles.com/en/episodes/1001": 1,
        "https://www.opensubtitles.com/en/episodes/1002": 1,
        "https://www.opensubtitles.com/en/episodes/2001": 2,
    }
    assert result.metadata["pageTitle"] == "Frieren: Beyond Journey's End"


def test_opensubtitles_episode_page_lists_download_links() -> None:
    page = """
    <table>
      <tr><td><a class="download-link" href="/download/abc/subfile/frieren.s01e01.srt">Download</a></td></tr>
      <tr><td><a class="download-link" href="https://dl.opensubtitles.org/x/1.vtt">Download</a></td></tr>
      <tr><td><a href="/en/users/uploader">uploader</a></td></tr>
    </table>
    """
    session = Mock()
    session.get.return_value = _response(text=page)
    template = TemplateConfig.from_dict({"name": "os", "extractor": "opensubtitles", "selectors": {}})

    payloads = _fetcher(session).fetch_unit_payloads("https://www.opensubtitles.com/en/episodes/1001", template)

    assert payloads.subtitles == [
        "https://www.opensubtitles.com/download/abc/subfile/frieren.s01e01.srt",
        "https://dl.opensubtitles.org/x/1.vtt",
    ]
    assert payloads.images == []
