import pytest
import yaml

from feedwarden.config import (
    ConfigError,
    build_config,
    load_config,
    load_sources_file,
    validate_crawl_config,
)
from feedwarden.models import LinkPolicy, SourceKind


def test_load_config_merges_over_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("FW_DATA_DIR", raising=False)
    monkeypatch.delenv("FW_WEBHOOK_URL", raising=False)
    cfg_path = tmp_path / "config.yml"
    cfg_path.write_text(
        yaml.safe_dump(
            {
                "paths": {"data_dir": str(tmp_path / "data")},
                "push": {"per_task_max": 3, "big_batch_mode": "sample"},
            }
        ),
        encoding="utf-8",
    )
    config = load_config(str(cfg_path))
    assert config.push.per_task_max == 3
    assert config.push.big_batch_mode == "sample"
    assert config.push.per_source_window_max == 10
    assert config.ingest.concurrency == 5
    assert config.paths.state_db == str(tmp_path / "data" / "state.sqlite3")


def test_env_overrides_data_dir_and_webhook(tmp_path, monkeypatch):
    monkeypatch.setenv("FW_DATA_DIR", str(tmp_path / "env-data"))
    monkeypatch.setenv("FW_WEBHOOK_URL", "https://hooks.example.com/send?key=abc")
    config = build_config({})
    assert config.paths.data_dir == str(tmp_path / "env-data")
    assert config.push.webhook_url == "https://hooks.example.com/send?key=abc"


def test_unknown_and_mistyped_keys_are_rejected():
    with pytest.raises(ConfigError) as excinfo:
        build_config({"push": {"per_task_max": "ten", "per_run_max": 5}})
    message = str(excinfo.value)
    assert "config.push.per_task_max must be an integer" in message
    assert "unknown config.push.per_run_max" in message


def test_range_checks():
    with pytest.raises(ConfigError, match="concurrency must be >= 1"):
        build_config({"ingest": {"concurrency": 0}})
    with pytest.raises(ConfigError, match="big_batch_mode"):
        build_config({"push": {"big_batch_mode": "drop"}})


def test_host_interval_has_a_floor():
    assert build_config({}).http.min_host_interval_ms == 500
    with pytest.raises(ConfigError, match="min_host_interval_ms must be >= 500"):
        build_config({"http": {"min_host_interval_ms": 0}})
    assert build_config({"http": {"min_host_interval_ms": 1500}}).http.min_host_interval_ms == 1500


def test_big_batch_threshold_must_be_reachable():
    config = build_config({})
    assert config.push.big_batch_threshold < config.ingest.max_candidates
    with pytest.raises(ConfigError, match="big_batch_threshold must be below config.ingest.max_candidates"):
        build_config({"ingest": {"max_candidates": 50}, "push": {"big_batch_threshold": 50}})


def test_explicit_missing_config_is_an_error(tmp_path):
    with pytest.raises(ConfigError, match="config file not found"):
        load_config(str(tmp_path / "missing.yml"))


def test_load_sources_file(tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "sources": [
                    {
                        "id": "jwc",
                        "name": "Academic Affairs",
                        "url": "https://jwc.example.edu.cn/",
                        "priority": 5,
                        "crawl": {
                            "list_urls": ["https://jwc.example.edu.cn/tzgg.htm"],
                            "detail_pattern": r"/info/\d+/\d+\.htm",
                            "selectors": {"content": "#vsb_content", "fallback_content": [".v_news_content"]},
                            "transport": "curl",
                            "link_policy": "force_canonical_to_root",
                        },
                    },
                    {"id": "feed", "name": "Feed", "kind": "rss", "url": "https://example.org/rss.xml"},
                ]
            },
            allow_unicode=True,
        ),
        encoding="utf-8",
    )
    definitions = load_sources_file(str(path))
    assert [definition.id for definition in definitions] == ["jwc", "feed"]
    jwc = definitions[0]
    assert jwc.kind == SourceKind.HTML
    assert jwc.priority == 5
    assert jwc.fetch_interval_minutes == 60
    assert jwc.crawl.transport == "curl"
    assert jwc.crawl.link_policy == LinkPolicy.FORCE_CANONICAL_TO_ROOT
    assert jwc.crawl.selectors.fallback_content == (".v_news_content",)
    assert definitions[1].kind == SourceKind.RSS


def test_load_sources_file_rejects_duplicates(tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "sources": [
                    {"id": "a", "name": "A", "url": "https://a.example.com/"},
                    {"id": "b", "name": "B", "url": "https://a.example.com/"},
                ]
            }
        ),
        encoding="utf-8",
    )
    with pytest.raises(ConfigError, match="url duplicates"):
        load_sources_file(str(path))


def test_validate_crawl_config_reports_path():
    with pytest.raises(ConfigError) as excinfo:
        validate_crawl_config({"selectors": {"body": "div"}}, "sources[0].crawl")
    assert str(excinfo.value).startswith("sources[0].crawl.selectors")
    with pytest.raises(ConfigError):
        validate_crawl_config({"transport": "playwright"})
