from __future__ import annotations

import http.client
import logging
import math
import re
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping
from urllib.error import HTTPError, URLError
from urllib.parse import urlsplit
from urllib.request import Request, urlopen

from .config import HttpConfig
from .errors import BudgetExceeded, FetchTimeout, NetworkError, WAFBlocked
from .utils import log_event

WAF_STATUSES = frozenset({403, 412})
CURL_TIMEOUT_EXIT = 28

_META_CHARSET = re.compile(rb"<meta[^>]+charset\s*=\s*[\"']?\s*([A-Za-z0-9_\-]+)", re.IGNORECASE)
_GB_ALIASES = {"gb2312", "gbk", "gb_2312-80", "x-gbk"}


@dataclass(frozen=True)
class RawResponse:
    status: int
    body: bytes
    final_url: str
    charset: str | None = None


@dataclass(frozen=True)
class FetchResult:
    body: str
    final_url: str
    status: int


# A transport performs one request. It returns the response for any HTTP
# status and raises TimeoutError on timeouts and OSError on other failures.
Transport = Callable[[str, Mapping[str, str], float, tuple[str, ...]], RawResponse]


def urllib_transport(
    url: str,
    headers: Mapping[str, str],
    timeout: float,
    extra_args: tuple[str, ...] = (),
) -> RawResponse:
    request = Request(url, headers=dict(headers))
    try:
        with urlopen(request, timeout=timeout) as response:
            return RawResponse(
                status=response.getcode(),
                body=response.read(),
                final_url=response.geturl() or url,
                charset=response.headers.get_content_charset(),
            )
    except HTTPError as exc:
        charset = exc.headers.get_content_charset() if exc.headers else None
        return RawResponse(status=exc.code, body=exc.read() or b"", final_url=exc.geturl() or url, charset=charset)
    except URLError as exc:
        if isinstance(exc.reason, TimeoutError):
            raise TimeoutError(str(exc.reason)) from exc
        raise OSError(str(exc.reason)) from exc
    except http.client.HTTPException as exc:
        raise OSError(f"{type(exc).__name__}: {exc}") from exc


class CurlTransport:
    """Runs the curl binary so requests go out through a different TLS stack."""

    def __init__(self, binary: str = "curl") -> None:
        self.binary = binary

    def build_command(
        self,
        url: str,
        headers: Mapping[str, str],
        timeout: float,
        extra_args: Iterable[str] = (),
    ) -> list[str]:
        command = [
            self.binary,
            "-sS",
            "-L",
            "--compressed",
            "-w",
            "\n%{http_code} %{url_effective}",
            "--max-time",
            str(max(1, math.ceil(timeout))),
        ]
        command.extend(extra_args)
        for key, value in headers.items():
            command.extend(["-H", f"{key}: {value}"])
        command.append(url)
        return command

    def __call__(
        self,
        url: str,
        headers: Mapping[str, str],
        timeout: float,
        extra_args: tuple[str, ...] = (),
    ) -> RawResponse:
        command = self.build_command(url, headers, timeout, extra_args)
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                timeout=timeout + 1,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise TimeoutError(f"curl exceeded {timeout}s") from exc
        if completed.returncode == CURL_TIMEOUT_EXIT:
            raise TimeoutError("curl exit 28")
        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="replace").strip()
            raise OSError(f"curl exit {completed.returncode}: {stderr}")
        return parse_curl_output(completed.stdout, url)


def parse_curl_output(stdout: bytes, url: str) -> RawResponse:
    body, _, trailer = stdout.rpartition(b"\n")
    status_text, _, final_url = trailer.decode("utf-8", errors="replace").strip().partition(" ")
    try:
        status = int(status_text)
    except ValueError as exc:
        raise OSError(f"unexpected curl output trailer: {trailer[:80]!r}") from exc
    return RawResponse(status=status, body=body, final_url=final_url.strip() or url)


class Deadline:
    """Monotonic wall-clock budget for one source run."""

    def __init__(self, seconds: float | None, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return self._expires_at - self._clock()

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


class HostThrottle:
    """Enforces a minimum spacing between requests to the same host.

    Slots are reserved under the lock and waited for outside it, so workers
    targeting different hosts never block each other.
    """

    def __init__(
        self,
        min_interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._next_slot: dict[str, float] = {}
        self._lock = threading.Lock()

    def reserve(self, host: str, max_wait: float | None = None) -> float | None:
        """Reserve the next slot for ``host`` and return the wait in seconds.

        Returns None without reserving when the wait would exceed ``max_wait``.
        """
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(host, now))
            wait = slot - now
            if max_wait is not None and wait >= max_wait:
                return None
            self._next_slot[host] = slot + self.min_interval_seconds
            return wait

    def wait(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)


class Fetcher:
    def __init__(
        self,
        http: HttpConfig,
        *,
        throttle: HostThrottle,
        semaphore: threading.BoundedSemaphore,
        waf_markers: Iterable[str] = (),
        transports: Mapping[str, Transport] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.http = http
        self.throttle = throttle
        self.semaphore = semaphore
        self.waf_markers = tuple(marker for marker in waf_markers if marker)
        self.transports: dict[str, Transport] = {
            "default": urllib_transport,
            "curl": CurlTransport(http.curl_binary),
        }
        if transports:
            self.transports.update(transports)
        self.logger = logger or logging.getLogger("feedwarden.fetcher")

    def default_headers(self) -> dict[str, str]:
        return {
            "User-Agent": self.http.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": self.http.accept_language,
        }

    def fetch(
        self,
        url: str,
        *,
        deadline: Deadline,
        headers: Mapping[str, str] | None = None,
        transport: str = "default",
        curl_args: tuple[str, ...] = (),
    ) -> FetchResult:
        if deadline.expired():
            raise BudgetExceeded(url=url)
        transport_fn = self.transports.get(transport)
        if transport_fn is None:
            raise NetworkError(f"unknown transport {transport}", url=url)

        host = (urlsplit(url).hostname or "").lower()
        wait = self.throttle.reserve(host, max_wait=deadline.remaining())
        if wait is None:
            raise BudgetExceeded(url=url)
        self.throttle.wait(wait)

        timeout = float(self.http.timeout_seconds)
        remaining = deadline.remaining()
        if remaining is not None:
            if remaining <= 0:
                raise BudgetExceeded(url=url)
            timeout = min(timeout, remaining)

        request_headers = self.default_headers()
        request_headers.update(headers or {})
        started = time.monotonic()
        try:
            with self.semaphore:
                raw = transport_fn(url, request_headers, timeout, curl_args)
        except TimeoutError as exc:
            if deadline.expired():
                raise BudgetExceeded(url=url) from exc
            log_event(self.logger, logging.WARNING, "fetch_timeout", url=url, timeout=timeout)
            raise FetchTimeout(url=url) from exc
        except (OSError, http.client.HTTPException) as exc:
            log_event(self.logger, logging.WARNING, "fetch_failed", url=url, error=str(exc))
            raise NetworkError(_short_reason(exc), url=url) from exc

        text = decode_body(raw.body, raw.charset)
        log_event(
            self.logger,
            logging.DEBUG,
            "fetch_complete",
            url=url,
            status=raw.status,
            bytes=len(raw.body),
            transport=transport,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        if raw.status in WAF_STATUSES:
            raise WAFBlocked(f"HTTP {raw.status}", url=url, status=raw.status)
        marker = self.find_waf_marker(text)
        if marker:
            raise WAFBlocked(f"marker {marker}", url=url, status=raw.status)
        if not 200 <= raw.status < 300:
            raise NetworkError(f"HTTP {raw.status}", url=url, status=raw.status)
        return FetchResult(body=text, final_url=raw.final_url or url, status=raw.status)

    def find_waf_marker(self, text: str) -> str | None:
        for marker in self.waf_markers:
            if marker in text:
                return marker
        return None


def decode_body(body: bytes, declared: str | None = None) -> str:
    candidates: list[str] = []
    if declared:
        candidates.append(declared)
    match = _META_CHARSET.search(body[:4096])
    if match:
        candidates.append(match.group(1).decode("ascii", errors="ignore"))
    candidates.append("utf-8")
    for charset in candidates:
        name = charset.strip().lower()
        if name in _GB_ALIASES:
            name = "gb18030"
        try:
            return body.decode(name)
        except (LookupError, UnicodeDecodeError):
            continue
    return body.decode("gb18030", errors="replace")


def _short_reason(exc: BaseException) -> str:
    text = str(exc).strip() or type(exc).__name__
    return text[:200]
