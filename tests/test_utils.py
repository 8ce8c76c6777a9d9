from datetime import datetime, timezone

from feedwarden.utils import (
    canonicalize_url,
    find_date_in_text,
    log_event,
    parse_date_value,
    strip_tracking_params,
)


def test_canonicalize_url_normalizes_identity():
    url = "HTTPS://News.Example.edu.cn:443/info/1024/5678.htm/?utm_source=wx&b=2&a=1#top"
    assert canonicalize_url(url) == "https://news.example.edu.cn/info/1024/5678.htm?a=1&b=2"


def test_canonicalize_url_is_idempotent():
    urls = [
        "http://example.com",
        "https://example.com:8443/a/b/?spm=1.2&z=&y=1",
        "https://example.com/path?utm_medium=x",
        "http://user:pw@Example.com:80/index.htm#frag",
        "https://example.com/%E9%80%9A%E7%9F%A5?id=%E5%85%AC",
    ]
    for url in urls:
        once = canonicalize_url(url)
        assert canonicalize_url(once) == once


def test_canonicalize_url_keeps_non_default_port():
    assert canonicalize_url("http://example.com:8080/a") == "http://example.com:8080/a"


def test_strip_tracking_params_keeps_order_of_other_params():
    url = "https://example.com/info?id=7&utm_source=feed&page_from=a&fbclid=x"
    assert strip_tracking_params(url) == "https://example.com/info?id=7&page_from=a"


def test_find_date_in_text_handles_chinese_dates():
    found = find_date_in_text("发布时间：2024年5月8日 浏览次数")
    assert found == datetime(2024, 5, 8, tzinfo=timezone.utc)
    assert find_date_in_text("编号 1234-56-78") is None


def test_parse_date_value_accepts_rfc822_and_iso():
    assert parse_date_value("Mon, 20 May 2024 08:00:00 GMT") == datetime(
        2024, 5, 20, 8, 0, tzinfo=timezone.utc
    )
    assert parse_date_value("2024-05-20T16:00:00+08:00") == datetime(
        2024, 5, 20, 8, 0, tzinfo=timezone.utc
    )
    assert parse_date_value("") is None


def test_log_event_formats_fields(caplog):
    import logging

    logger = logging.getLogger("feedwarden.test")
    with caplog.at_level(logging.INFO, logger="feedwarden.test"):
        log_event(logger, logging.INFO, "source_processed", source_id="news", fetched=3)
    assert "event=source_processed source_id=news fetched=3" in caplog.text
