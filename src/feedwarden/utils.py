from __future__ import annotations

import calendar
import dataclasses
import json
import logging
import os
import re
import sys
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


DEFAULT_TRACKING_PARAMS = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "gclid",
    "fbclid",
    "mc_cid",
    "mc_eid",
    "spm",
)

_DEFAULT_PORTS = {"http": "80", "https": "443"}
_WHITESPACE = re.compile(r"\s+")
_DATE_LIKE = re.compile(r"(\d{4})\s*[-年./]\s*(\d{1,2})\s*[-月./]\s*(\d{1,2})")


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    parts = [f"event={event}"]
    for key, value in fields.items():
        parts.append(f"{key}={value}")
    logger.log(level, " ".join(parts))


def configure_logging(logger_name: str, default_level: str = "INFO") -> logging.Logger:
    level_name = os.environ.get("FW_LOG_LEVEL", default_level).upper()
    root = logging.getLogger()
    if not root.handlers:
        root.setLevel(getattr(logging, level_name, logging.INFO))
    _ensure_stdout_handler(level_name)
    _maybe_add_file_handler(level_name)
    _apply_log_overrides()
    return logging.getLogger(logger_name)


def _apply_log_overrides() -> None:
    overrides = os.environ.get("FW_LOG_LEVELS", "")
    if not overrides:
        return
    for item in overrides.split(","):
        if not item.strip() or "=" not in item:
            continue
        name, level = item.split("=", 1)
        logger = logging.getLogger(name.strip())
        logger.setLevel(getattr(logging, level.strip().upper(), logging.INFO))


def _maybe_add_file_handler(level_name: str) -> None:
    log_path = os.environ.get("FW_LOG_FILE")
    if not log_path:
        return
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_path):
            return
    directory = os.path.dirname(log_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    handler = logging.FileHandler(log_path)
    handler.setLevel(getattr(logging, level_name, logging.INFO))
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)


def _ensure_stdout_handler(level_name: str) -> None:
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            continue
        if isinstance(handler, logging.StreamHandler) and handler.stream is sys.stdout:
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level_name, logging.INFO))
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)


def json_dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True, ensure_ascii=False)


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


def canonicalize_url(url: str, tracking_params: tuple[str, ...] | list[str] = DEFAULT_TRACKING_PARAMS) -> str:
    """Normalize a URL into the identity used for dedup.

    Lower-cases scheme and host, drops default ports, tracking parameters and
    the fragment, sorts the query and removes a trailing slash. Applying it to
    its own output returns the same string.
    """
    if not url:
        return ""
    split = urlsplit(url.strip())
    scheme = (split.scheme or "http").lower()
    host = (split.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    try:
        port = split.port
    except ValueError:
        port = None
    netloc = host
    if port is not None and str(port) != _DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{port}"
    if split.username:
        credentials = split.username
        if split.password:
            credentials = f"{credentials}:{split.password}"
        netloc = f"{credentials}@{netloc}"
    path = split.path or "/"
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"
    tracking = {param.lower() for param in tracking_params}
    query_pairs = [
        (key, value)
        for key, value in parse_qsl(split.query, keep_blank_values=True)
        if key and key.lower() not in tracking and not key.lower().startswith("utm_")
    ]
    query = urlencode(sorted(query_pairs)) if query_pairs else ""
    return urlunsplit((scheme, netloc, path, query, ""))


def strip_tracking_params(url: str, tracking_params: tuple[str, ...] | list[str] = DEFAULT_TRACKING_PARAMS) -> str:
    split = urlsplit(url)
    tracking = {param.lower() for param in tracking_params}
    query_pairs = [
        (key, value)
        for key, value in parse_qsl(split.query, keep_blank_values=True)
        if key.lower() not in tracking and not key.lower().startswith("utm_")
    ]
    query = urlencode(query_pairs) if query_pairs else ""
    return urlunsplit((split.scheme, split.netloc, split.path, query, ""))


def normalize_whitespace(text: str | None) -> str:
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text).strip()


def find_date_in_text(text: str | None) -> datetime | None:
    """Return the first plausible calendar date found in ``text`` (UTC midnight)."""
    if not text:
        return None
    for match in _DATE_LIKE.finditer(text):
        year, month, day = (int(part) for part in match.groups())
        if not 1990 <= year <= 2100:
            continue
        try:
            return datetime(year, month, day, tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def _normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date_value(value: Any) -> datetime | None:
    if value is None:
        return None
    if hasattr(value, "tm_year"):
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    if isinstance(value, datetime):
        return _normalize_datetime(value)
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            return _normalize_datetime(parsedate_to_datetime(value))
        except (TypeError, ValueError, IndexError):
            pass
        try:
            return _normalize_datetime(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return find_date_in_text(value)
    return None


def parse_iso(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return _normalize_datetime(datetime.fromisoformat(value))


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def isoformat_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _normalize_datetime(value).isoformat()
