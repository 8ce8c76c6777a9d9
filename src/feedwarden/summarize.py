from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import urllib.error
import urllib.request
from typing import Any, Callable

import jsonschema

from .config import LlmConfig
from .models import Document
from .storage import get_source, list_documents_missing_digest, update_document_digest
from .utils import log_event

DIGEST_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "summary", "key_points"],
    "properties": {
        "is_relevant": {"type": "boolean"},
        "title": {"type": ["string", "null"]},
        "category": {"type": ["string", "null"]},
        "publish_date": {"type": ["string", "null"]},
        "deadline": {"type": ["string", "null"]},
        "summary": {"type": ["string", "null"], "maxLength": 400},
        "key_points": {"type": "array", "items": {"type": "string"}, "maxItems": 10},
        "attachments": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name"],
                "properties": {"name": {"type": "string"}, "url": {"type": ["string", "null"]}},
            },
        },
        "confidence": {"type": ["number", "null"], "minimum": 0, "maximum": 1},
    },
}

SYSTEM_PROMPT = (
    "You turn announcements into structured digests. "
    "Return one JSON object only, with keys: is_relevant, title, category, publish_date "
    "(YYYY-MM-DD or null), deadline (YYYY-MM-DD or null), summary (at most 80 characters, "
    "state the core fact directly), key_points (0-3 short strings), attachments "
    "(list of {name, url}), confidence (0-1)."
)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

RequestFn = Callable[[str, dict[str, str], dict[str, Any], int], dict[str, Any]]


class Summarizer:
    def __init__(
        self,
        llm: LlmConfig,
        *,
        request_fn: RequestFn | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.llm = llm
        self.request_fn = request_fn or _http_request
        self.logger = logger or logging.getLogger("feedwarden.summarize")

    def summarize(self, document: Document, source_name: str) -> dict[str, Any]:
        api_key = os.environ.get(self.llm.api_key_env, "").strip()
        if not api_key:
            raise ValueError(f"{self.llm.api_key_env} not set")
        endpoint = f"{self.llm.base_url.rstrip('/')}/chat/completions"
        user = (
            f"Source: {source_name}\n"
            f"Title: {document.title}\n"
            f"Published: {document.published_at or 'unknown'}\n"
            f"URL: {document.url}\n\n"
            f"Content:\n{document.raw_text[: self.llm.max_input_chars]}\n\n"
            "Respond with JSON only."
        )
        payload = {
            "model": self.llm.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user},
            ],
            "temperature": 0.2,
        }
        headers = {"Authorization": f"Bearer {api_key}"}
        response = self.request_fn(endpoint, headers, payload, self.llm.timeout_seconds)
        digest = parse_digest(_read_openai(response))
        digest["attachments"] = _merge_attachments(digest.get("attachments"), document)
        return digest


def parse_digest(raw: str) -> dict[str, Any]:
    text = _FENCE.sub("", raw.strip())
    try:
        digest = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"llm_invalid_json: {text[:200]}") from exc
    try:
        jsonschema.validate(digest, DIGEST_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise ValueError(f"llm_schema_error: {exc.message}") from exc
    digest["key_points"] = [point for point in digest.get("key_points", []) if point.strip()][:3]
    return digest


def summarize_pending(conn: sqlite3.Connection, summarizer: Summarizer, limit: int = 20) -> dict[str, int]:
    """Attach digests to documents that lack one; failures are logged and skipped."""
    counts = {"summarized": 0, "failed": 0}
    names: dict[str, str] = {}
    for document in list_documents_missing_digest(conn, limit):
        if document.source_id not in names:
            source = get_source(conn, document.source_id)
            names[document.source_id] = source.name if source else document.source_id
        try:
            digest = summarizer.summarize(document, names[document.source_id])
        except ValueError as exc:
            counts["failed"] += 1
            log_event(
                summarizer.logger,
                logging.WARNING,
                "summarize_failed",
                document_id=document.id,
                error=str(exc),
            )
            continue
        update_document_digest(conn, int(document.id), digest)
        counts["summarized"] += 1
    log_event(summarizer.logger, logging.INFO, "summarize_complete", **counts)
    return counts


def _merge_attachments(returned: Any, document: Document) -> list[dict[str, Any]]:
    merged = [{"name": a.name, "url": a.url} for a in document.attachments]
    known = {item["url"] for item in merged}
    for item in returned or []:
        url = item.get("url")
        if url and url.startswith("http") and url not in known:
            merged.append({"name": item.get("name") or "Attachment", "url": url})
            known.add(url)
    return merged


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise ValueError("openai_missing_choices")
    message = choices[0].get("message") or {}
    content = message.get("content")
    if not content:
        raise ValueError("openai_missing_content")
    return content


def _http_request(url: str, headers: dict[str, str], payload: dict[str, Any], timeout: int) -> dict[str, Any]:
    request = urllib.request.Request(url, data=json.dumps(payload).encode("utf-8"), method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise ValueError(f"http_error {exc.code}: {raw[:500]}") from exc
    except (urllib.error.URLError, TimeoutError) as exc:
        raise ValueError(f"network_error: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid_response: {raw[:200]}") from exc
