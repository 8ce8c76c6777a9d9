from __future__ import annotations

import socketserver
import threading
from datetime import datetime, timezone

import pytest

from feedwarden.config import build_config, parse_source_definition
from feedwarden.db import connect_db
from feedwarden.errors import PushFailure
from feedwarden.fetcher import RawResponse
from feedwarden.storage import upsert_source

FIXED_NOW = datetime(2024, 5, 20, 8, 0, tzinfo=timezone.utc)


def make_config(tmp_path, **sections):
    overrides = {
        "paths": {"data_dir": str(tmp_path / "data"), "state_db": ""},
        "http": {"timeout_seconds": 5},
        "ingest": {"min_content_length": 50, "detail_workers": 2},
    }
    for section, values in sections.items():
        overrides.setdefault(section, {}).update(values)
    return build_config(overrides)


class FakeTransport:
    """Serves canned responses keyed by URL and records every request."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.calls = []

    def __call__(self, url, headers, timeout, extra_args=()):
        self.calls.append(url)
        page = self.pages.get(url)
        if page is None:
            return RawResponse(status=404, body=b"not found", final_url=url)
        if isinstance(page, BaseException):
            raise page
        if isinstance(page, RawResponse):
            return page
        status, body = page if isinstance(page, tuple) else (200, page)
        data = body.encode("utf-8") if isinstance(body, str) else body
        return RawResponse(status=status, body=data, final_url=url, charset="utf-8")


class RecordingSleep:
    """Stands in for time.sleep so host spacing is computed but never waited out."""

    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


class FakeNotifier:
    def __init__(self, fail_times=0):
        self.fail_times = fail_times
        self.sent = []
        self.markdown = []

    def send_document(self, document, source_name):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise PushFailure("errcode=45009 errmsg=api freq out of limit")
        self.sent.append((document.canonical_url, source_name))

    def send_markdown(self, content):
        self.markdown.append(content)


def add_source(conn, **fields):
    entry = {
        "id": "news",
        "name": "News Office",
        "kind": "HTML",
        "url": "https://news.example.edu.cn/tzgg/index.htm",
    }
    entry.update(fields)
    definition = parse_source_definition(entry)
    upsert_source(conn, definition)
    return definition


def listing_page(*anchors):
    items = "\n".join(f'<li><a href="{href}">{text}</a></li>' for href, text in anchors)
    return f"<html><body><ul class='list'>{items}</ul></body></html>"


def detail_page(title, body, date="2024-05-18"):
    return (
        f"<html><head><title>{title}</title></head><body>"
        f"<div class='nav'><a href='/'>首页</a></div>"
        f"<h1>{title}</h1><span class='date'>{date}</span>"
        f"<div class='content'><p>{body}</p></div>"
        f"</body></html>"
    )


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def conn(config):
    connection = connect_db(config.paths.state_db)
    yield connection
    connection.close()


class _DropConnectionHandler(socketserver.BaseRequestHandler):
    def handle(self):
        self.request.recv(65536)


@pytest.fixture
def dropping_webhook(monkeypatch):
    """URL of a local server that reads each request and hangs up without replying."""
    for name in ("http_proxy", "HTTP_PROXY"):
        monkeypatch.delenv(name, raising=False)
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _DropConnectionHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address
    yield f"http://{host}:{port}/send?key=abc"
    server.shutdown()
    server.server_close()
