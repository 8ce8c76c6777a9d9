import json
from datetime import timedelta

import pytest

from conftest import FIXED_NOW, add_source
from feedwarden.admission import admit
from feedwarden.config import build_config
from feedwarden.models import CandidateDocument
from feedwarden.storage import get_document, get_source, insert_document
from feedwarden.summarize import Summarizer, parse_digest, summarize_pending


def _reply(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


DIGEST = {
    "is_relevant": True,
    "title": "Course selection opens",
    "category": "Teaching",
    "publish_date": "2024-05-18",
    "deadline": "2024-05-25",
    "summary": "Autumn course selection opens on 25 May.",
    "key_points": ["Log in to the portal", "Late selection is not possible", "Call the office", "Extra point"],
    "attachments": [{"name": "Guide", "url": "https://news.example.edu.cn/files/guide.pdf"}],
    "confidence": 0.9,
}


def test_parse_digest_strips_fences_and_caps_key_points():
    digest = parse_digest("```json\n" + json.dumps(DIGEST) + "\n```")
    assert digest["title"] == "Course selection opens"
    assert len(digest["key_points"]) == 3


def test_parse_digest_rejects_invalid_output():
    with pytest.raises(ValueError, match="llm_invalid_json"):
        parse_digest("Sure! Here is the summary.")
    with pytest.raises(ValueError, match="llm_schema_error"):
        parse_digest(json.dumps({"title": "Missing fields"}))


def test_summarize_pending_stores_digest(conn, monkeypatch):
    monkeypatch.setenv("FW_LLM_API_KEY", "sk-test")
    definition = add_source(conn)
    source = get_source(conn, definition.id)
    candidate = CandidateDocument(
        url="https://news.example.edu.cn/info/1001.htm",
        title="Course selection",
        published_at=FIXED_NOW,
        observed_at=FIXED_NOW,
        raw_text="Autumn course selection opens on 25 May. " * 5,
    )
    document_id = insert_document(conn, source.id, admit(candidate, source, set(), timedelta(days=30), now=FIXED_NOW))

    requests = []

    def request_fn(url, headers, payload, timeout):
        requests.append((url, headers, payload))
        return _reply(json.dumps(DIGEST))

    llm = build_config({"llm": {"enabled": True, "base_url": "https://llm.example.com/v1/"}}).llm
    counts = summarize_pending(conn, Summarizer(llm, request_fn=request_fn))

    assert counts == {"summarized": 1, "failed": 0}
    url, headers, payload = requests[0]
    assert url == "https://llm.example.com/v1/chat/completions"
    assert headers["Authorization"] == "Bearer sk-test"
    assert "Source: News Office" in payload["messages"][1]["content"]
    stored = get_document(conn, document_id).digest
    assert stored["summary"] == "Autumn course selection opens on 25 May."
    assert stored["attachments"] == [{"name": "Guide", "url": "https://news.example.edu.cn/files/guide.pdf"}]


def test_summarize_pending_skips_failures(conn, monkeypatch):
    monkeypatch.delenv("FW_LLM_API_KEY", raising=False)
    definition = add_source(conn)
    source = get_source(conn, definition.id)
    candidate = CandidateDocument(
        url="https://news.example.edu.cn/info/1001.htm",
        title="Course selection",
        published_at=FIXED_NOW,
        observed_at=FIXED_NOW,
        raw_text="text",
    )
    document_id = insert_document(conn, source.id, admit(candidate, source, set(), timedelta(days=30), now=FIXED_NOW))

    llm = build_config({"llm": {"enabled": True}}).llm
    counts = summarize_pending(conn, Summarizer(llm, request_fn=lambda *args: _reply("{}")))
    assert counts == {"summarized": 0, "failed": 1}
    assert get_document(conn, document_id).digest is None
