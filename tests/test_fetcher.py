import http.client
import threading

import pytest

from conftest import FakeTransport, make_config
from feedwarden.errors import BudgetExceeded, FetchTimeout, NetworkError, WAFBlocked
from feedwarden.fetcher import (
    CurlTransport,
    Deadline,
    Fetcher,
    HostThrottle,
    RawResponse,
    decode_body,
    parse_curl_output,
    urllib_transport,
)

URL = "https://news.example.edu.cn/tzgg/index.htm"


class FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _fetcher(tmp_path, transport, throttle=None, **http):
    config = make_config(tmp_path, http=http) if http else make_config(tmp_path)
    return Fetcher(
        config.http,
        throttle=throttle or HostThrottle(0),
        semaphore=threading.BoundedSemaphore(2),
        waf_markers=config.ingest.waf_markers,
        transports={"default": transport},
    )


def test_fetch_returns_decoded_body(tmp_path):
    transport = FakeTransport({URL: "<html><body>通知公告</body></html>"})
    result = _fetcher(tmp_path, transport).fetch(URL, deadline=Deadline(30))
    assert result.status == 200
    assert "通知公告" in result.body
    assert transport.calls == [URL]


def test_status_412_is_waf_blocked(tmp_path):
    transport = FakeTransport({URL: (412, "")})
    with pytest.raises(WAFBlocked) as excinfo:
        _fetcher(tmp_path, transport).fetch(URL, deadline=Deadline(30))
    assert excinfo.value.classification == "WAFBlocked:HTTP 412"
    assert excinfo.value.status == 412


def test_waf_marker_in_body_is_waf_blocked(tmp_path):
    body = "<html><script>document.cookie='__jsl_clearance=1'</script></html>"
    transport = FakeTransport({URL: body})
    with pytest.raises(WAFBlocked, match="marker __jsl_clearance"):
        _fetcher(tmp_path, transport).fetch(URL, deadline=Deadline(30))


def test_server_error_is_network_error(tmp_path):
    transport = FakeTransport({URL: (500, "oops")})
    with pytest.raises(NetworkError) as excinfo:
        _fetcher(tmp_path, transport).fetch(URL, deadline=Deadline(30))
    assert excinfo.value.classification == "NetworkError:HTTP 500"


def test_transport_oserror_is_network_error(tmp_path):
    transport = FakeTransport({URL: ConnectionResetError("connection reset by peer")})
    with pytest.raises(NetworkError, match="connection reset"):
        _fetcher(tmp_path, transport).fetch(URL, deadline=Deadline(30))


def test_urllib_transport_reports_protocol_errors_as_oserror(monkeypatch):
    def fake_urlopen(request, timeout):
        raise http.client.IncompleteRead(b"<html>", 2048)

    monkeypatch.setattr("feedwarden.fetcher.urlopen", fake_urlopen)
    with pytest.raises(OSError, match="IncompleteRead"):
        urllib_transport(URL, {}, 5)


def test_protocol_error_is_network_error(tmp_path):
    transport = FakeTransport({URL: http.client.BadStatusLine("HTTP/1.1 ???")})
    with pytest.raises(NetworkError):
        _fetcher(tmp_path, transport).fetch(URL, deadline=Deadline(30))


def test_timeout_is_classified(tmp_path):
    transport = FakeTransport({URL: TimeoutError("timed out")})
    with pytest.raises(FetchTimeout) as excinfo:
        _fetcher(tmp_path, transport).fetch(URL, deadline=Deadline(30))
    assert excinfo.value.classification == "TimeoutError"


def test_expired_deadline_never_sends(tmp_path):
    transport = FakeTransport({URL: "<html></html>"})
    clock = FakeClock()
    deadline = Deadline(5, clock=clock)
    clock.now += 6
    with pytest.raises(BudgetExceeded):
        _fetcher(tmp_path, transport).fetch(URL, deadline=deadline)
    assert transport.calls == []


def test_timeout_is_capped_by_remaining_budget(tmp_path):
    seen = []

    def transport(url, headers, timeout, extra_args=()):
        seen.append((timeout, headers["User-Agent"], headers["Referer"]))
        return RawResponse(status=200, body=b"ok", final_url=url)

    clock = FakeClock()
    fetcher = _fetcher(tmp_path, transport, timeout_seconds=20, user_agent="feedwarden-test")
    fetcher.fetch(URL, deadline=Deadline(3, clock=clock), headers={"Referer": "https://news.example.edu.cn/"})
    assert seen == [(3, "feedwarden-test", "https://news.example.edu.cn/")]


def test_host_throttle_spaces_requests_per_host():
    clock = FakeClock()
    throttle = HostThrottle(0.5, clock=clock, sleep=clock.sleep)
    assert throttle.reserve("a.example.com") == 0
    assert throttle.reserve("a.example.com") == pytest.approx(0.5)
    assert throttle.reserve("b.example.com") == 0
    assert throttle.reserve("a.example.com") == pytest.approx(1.0)
    assert throttle.reserve("a.example.com", max_wait=1.0) is None


def test_fetcher_waits_between_same_host_requests(tmp_path):
    clock = FakeClock()
    throttle = HostThrottle(0.5, clock=clock, sleep=clock.sleep)
    transport = FakeTransport({URL: "a", URL + "?id=2": "b"})
    fetcher = _fetcher(tmp_path, transport, throttle=throttle)
    fetcher.fetch(URL, deadline=Deadline.unbounded())
    fetcher.fetch(URL + "?id=2", deadline=Deadline.unbounded())
    assert clock.sleeps == [pytest.approx(0.5)]


def test_throttle_wait_beyond_budget_is_budget_exceeded(tmp_path):
    clock = FakeClock()
    throttle = HostThrottle(10, clock=clock, sleep=clock.sleep)
    transport = FakeTransport({URL: "a"})
    fetcher = _fetcher(tmp_path, transport, throttle=throttle)
    fetcher.fetch(URL, deadline=Deadline(5, clock=clock))
    with pytest.raises(BudgetExceeded):
        fetcher.fetch(URL, deadline=Deadline(5, clock=clock))
    assert clock.sleeps == []
    assert transport.calls == [URL]


def test_decode_body_falls_back_to_gb18030():
    html = '<html><head><meta charset="gb2312"></head><body>教务处通知</body></html>'
    assert "教务处通知" in decode_body(html.encode("gb18030"))
    assert "教务处通知" in decode_body("教务处通知".encode("gbk"), "utf-8")


def test_parse_curl_output_reads_trailer():
    stdout = b"<html>body\nwith lines</html>\n200 https://example.com/final"
    raw = parse_curl_output(stdout, "https://example.com/start")
    assert raw.status == 200
    assert raw.final_url == "https://example.com/final"
    assert raw.body == b"<html>body\nwith lines</html>"


def test_curl_command_carries_args_and_headers():
    command = CurlTransport("curl").build_command(
        URL, {"User-Agent": "ua"}, 7.2, ("--tlsv1.2", "--ciphers", "DEFAULT@SECLEVEL=1")
    )
    assert command[0] == "curl"
    assert command[command.index("--max-time") + 1] == "8"
    assert "--tlsv1.2" in command
    assert command[command.index("-H") + 1] == "User-Agent: ua"
    assert command[-1] == URL
