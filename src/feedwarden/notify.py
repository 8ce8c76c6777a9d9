from __future__ import annotations

import http.client
import json
import logging
import re
import urllib.error
import urllib.request
from datetime import date, datetime, timezone
from typing import Any

from .errors import PushFailure
from .models import Document
from .utils import log_event, normalize_whitespace, parse_iso

MAX_MARKDOWN_BYTES = 3500
SUMMARY_MAX_CHARS = 80
MAX_KEY_POINTS = 3
DEADLINE_ALERT_DAYS = 3
TRUNCATION_NOTE = "(内容过长已截断)"

_SPACES = re.compile(r"\s+")


def document_digest(document: Document, source_name: str) -> dict[str, Any]:
    """Digest used for the push message; falls back to the raw document."""
    digest = dict(document.digest or {})
    digest.setdefault("title", document.title)
    digest.setdefault("source_name", source_name)
    if not digest.get("publish_date"):
        stamp = document.published_at or document.observed_at
        digest["publish_date"] = parse_iso(stamp).date().isoformat() if stamp else None
    if not digest.get("summary"):
        digest["summary"] = normalize_whitespace(document.raw_text)[:SUMMARY_MAX_CHARS]
    if not digest.get("attachments"):
        digest["attachments"] = [{"name": a.name, "url": a.url} for a in document.attachments]
    link = document.canonical_url if document.canonical_url.startswith("http") else document.url
    digest["url"] = link
    return digest


def build_push_markdown(digest: dict[str, Any], *, today: date | None = None) -> str:
    lines: list[str] = []
    label = digest.get("source_name") or "资讯"
    deadline = digest.get("deadline")
    alert = "⏰ " if _near_deadline(deadline, today) else ""
    lines.append(f"{alert}【{label}】{digest.get('title') or ''}")
    lines.append(f"📅 {digest.get('publish_date') or '日期未知'}  🏷️ {digest.get('category') or '通知'}")
    if deadline:
        lines.append(f"⏳ 截止：{deadline}")

    summary = _normalize_summary(digest.get("summary"))
    if summary:
        lines.append(f"\n{summary}")
    for point in _dedupe_key_points(summary, digest.get("key_points") or []):
        lines.append(f"- {point}")

    attachments = digest.get("attachments") or []
    if attachments:
        lines.append("\n📎 附件：")
        for attachment in attachments:
            name = re.sub(r"[\[\]]", "", str(attachment.get("name") or "Attachment"))
            url = str(attachment.get("url") or "")
            if url.startswith("http"):
                lines.append(f'- <a href="{url}">{name}</a>')
            else:
                lines.append(f"- {name}")

    link = str(digest.get("url") or "").strip()
    footer = f"\n🔗 [查看原文]({link})" if link.startswith("http") else ""
    markdown = "\n".join(lines) + footer
    if len(markdown.encode("utf-8")) <= MAX_MARKDOWN_BYTES:
        return markdown

    footer = f"\n\n{TRUNCATION_NOTE} \n🔗 [查看原文]({link})" if link.startswith("http") else f"\n\n{TRUNCATION_NOTE}"
    available = MAX_MARKDOWN_BYTES - len(footer.encode("utf-8"))
    body = "\n".join(lines).encode("utf-8")[: max(0, available)].decode("utf-8", errors="ignore")
    return body + footer


def _normalize_summary(summary: Any) -> str | None:
    if not summary:
        return None
    return str(summary).strip()[:SUMMARY_MAX_CHARS] or None


def _dedupe_key_points(summary: str | None, key_points: list[Any]) -> list[str]:
    compact_summary = _SPACES.sub("", summary or "")
    points: list[str] = []
    for raw in key_points:
        point = str(raw or "").strip()
        if not point:
            continue
        if compact_summary and _SPACES.sub("", point) in compact_summary:
            continue
        points.append(point)
        if len(points) >= MAX_KEY_POINTS:
            break
    return points


def _near_deadline(deadline: Any, today: date | None) -> bool:
    if not deadline:
        return False
    try:
        due = datetime.fromisoformat(str(deadline)).date()
    except ValueError:
        return False
    today = today or datetime.now(tz=timezone.utc).date()
    return 0 <= (due - today).days <= DEADLINE_ALERT_DAYS


class WebhookNotifier:
    """Posts markdown messages to a group-robot style webhook."""

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: int = 10,
        logger: logging.Logger | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger("feedwarden.notify")

    def send_document(self, document: Document, source_name: str) -> None:
        self.send_markdown(build_push_markdown(document_digest(document, source_name)))

    def send_markdown(self, content: str) -> None:
        if not self.webhook_url:
            raise PushFailure("webhook_not_configured")
        payload = {"msgtype": "markdown", "markdown": {"content": content}}
        body = _post_json(self.webhook_url, payload, self.timeout_seconds)
        errcode = body.get("errcode")
        if errcode != 0:
            log_event(
                self.logger,
                logging.ERROR,
                "webhook_rejected",
                errcode=errcode,
                errmsg=body.get("errmsg"),
            )
            raise PushFailure(f"errcode={errcode} errmsg={body.get('errmsg')}")
        log_event(self.logger, logging.INFO, "webhook_sent", bytes=len(content.encode("utf-8")))


def _post_json(url: str, payload: dict[str, Any], timeout: int) -> dict[str, Any]:
    request = urllib.request.Request(
        url,
        data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
        method="POST",
    )
    request.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="ignore")
        raise PushFailure(f"http_error {exc.code}: {detail[:200]}") from exc
    except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
        raise PushFailure(f"network_error: {type(exc).__name__}: {exc}") from exc
    try:
        body = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PushFailure(f"invalid_response: {raw[:200]}") from exc
    if not isinstance(body, dict):
        raise PushFailure(f"invalid_response: {raw[:200]}")
    return body
