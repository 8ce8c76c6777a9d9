from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import jsonschema
import yaml

from .errors import ConfigError
from .models import CrawlConfig, SourceKind

DEFAULT_CONFIG_PATH = "/config/config.yml"
MIN_HOST_INTERVAL_MS = 500

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    accept_language: str
    min_host_interval_ms: int
    curl_binary: str


@dataclass(frozen=True)
class IngestConfig:
    concurrency: int
    detail_workers: int
    source_budget_seconds: int
    max_age_days: int
    min_content_length: int
    max_candidates: int
    waf_markers: list[str]
    tracking_params: list[str]


@dataclass(frozen=True)
class PushConfig:
    per_task_max: int
    per_source_window_minutes: int
    per_source_window_max: int
    big_batch_threshold: int
    big_batch_mode: str
    big_batch_sample_size: int
    webhook_url: str
    timeout_seconds: int


@dataclass(frozen=True)
class StopLossConfig:
    enabled: bool
    zero_fetch_disable_after: int


@dataclass(frozen=True)
class LlmConfig:
    enabled: bool
    base_url: str
    model: str
    api_key_env: str
    timeout_seconds: int
    max_input_chars: int


@dataclass(frozen=True)
class HealthConfig:
    top_n: int
    window_hours: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    http: HttpConfig
    ingest: IngestConfig
    push: PushConfig
    stop_loss: StopLossConfig
    llm: LlmConfig
    health: HealthConfig


@dataclass(frozen=True)
class SourceDefinition:
    id: str
    name: str
    kind: SourceKind
    url: str
    crawl: CrawlConfig
    is_active: bool
    priority: int
    fetch_interval_minutes: int


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "feedwarden",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "",
    },
    "http": {
        "timeout_seconds": 20,
        "user_agent": DEFAULT_USER_AGENT,
        "accept_language": "zh-CN,zh;q=0.9,en;q=0.8",
        "min_host_interval_ms": 500,
        "curl_binary": "curl",
    },
    "ingest": {
        "concurrency": 5,
        "detail_workers": 2,
        "source_budget_seconds": 300,
        "max_age_days": 30,
        "min_content_length": 300,
        "max_candidates": 100,
        "waf_markers": [
            "您的IP地址最近有可疑的攻击行为",
            "可疑攻击",
            "访问受限",
            "__jsl_clearance",
            "acw_sc__v2",
            "cf_chl_",
            "challenge-platform",
            "Just a moment...",
        ],
        "tracking_params": [
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
        ],
    },
    "push": {
        "per_task_max": 10,
        "per_source_window_minutes": 10,
        "per_source_window_max": 10,
        "big_batch_threshold": 50,
        "big_batch_mode": "suppress",
        "big_batch_sample_size": 3,
        "webhook_url": "",
        "timeout_seconds": 10,
    },
    "stop_loss": {
        "enabled": True,
        "zero_fetch_disable_after": 0,
    },
    "llm": {
        "enabled": False,
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
        "api_key_env": "FW_LLM_API_KEY",
        "timeout_seconds": 60,
        "max_input_chars": 6000,
    },
    "health": {
        "top_n": 5,
        "window_hours": 24,
    },
}

BIG_BATCH_MODES = ("suppress", "sample")

CRAWL_CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "list_urls": {"type": "array", "items": {"type": "string", "minLength": 1}},
        "detail_pattern": {"type": ["string", "null"]},
        "list_selectors": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "item": {"type": ["string", "null"]},
                "title": {"type": ["string", "null"]},
                "date": {"type": ["string", "null"]},
                "url": {"type": ["string", "null"]},
            },
        },
        "selectors": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "title": {"type": ["string", "null"]},
                "date": {"type": ["string", "null"]},
                "content": {"type": ["string", "null"]},
                "fallback_content": {"type": "array", "items": {"type": "string"}},
                "attachments": {"type": ["string", "null"]},
            },
        },
        "headers": {"type": "object", "additionalProperties": {"type": "string"}},
        "transport": {"enum": ["default", "curl"]},
        "curl_args": {"type": "array", "items": {"type": "string"}},
        "requires_js": {"type": "boolean"},
        "link_policy": {"enum": ["trust_discovered_links", "force_canonical_to_root"]},
        "fetch_detail": {"type": "boolean"},
    },
}


def resolve_config_path(path: str | None = None) -> str:
    return path or os.environ.get("FW_CONFIG_PATH") or DEFAULT_CONFIG_PATH


def load_config(path: str | None = None) -> Config:
    """Load the YAML config at ``path`` merged over ``DEFAULT_CONFIG``.

    A missing file at the default location yields the defaults; a missing
    file that was asked for explicitly is an error.
    """
    resolved = resolve_config_path(path)
    raw: dict[str, Any] = {}
    if os.path.exists(resolved):
        raw = _read_yaml(resolved)
    elif path or os.environ.get("FW_CONFIG_PATH"):
        raise ConfigError(f"config file not found: {resolved}")
    return build_config(raw)


def build_config(overrides: dict[str, Any] | None = None) -> Config:
    cfg = _merge(_deep_copy(DEFAULT_CONFIG), overrides or {})
    _apply_env_overrides(cfg)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if errors:
        return errors
    if cfg["push"]["big_batch_mode"] not in BIG_BATCH_MODES:
        errors.append("config.push.big_batch_mode must be one of suppress, sample")
    for key in ("concurrency", "detail_workers", "source_budget_seconds", "timeout_seconds"):
        section = "http" if key == "timeout_seconds" else "ingest"
        if cfg[section][key] < 1:
            errors.append(f"config.{section}.{key} must be >= 1")
    if cfg["http"]["min_host_interval_ms"] < MIN_HOST_INTERVAL_MS:
        errors.append(f"config.http.min_host_interval_ms must be >= {MIN_HOST_INTERVAL_MS}")
    if cfg["ingest"]["max_candidates"] < 1:
        errors.append("config.ingest.max_candidates must be >= 1")
    for key in ("per_task_max", "per_source_window_max", "big_batch_threshold", "big_batch_sample_size"):
        if cfg["push"][key] < 0:
            errors.append(f"config.push.{key} must be >= 0")
    if cfg["push"]["big_batch_threshold"] >= cfg["ingest"]["max_candidates"]:
        errors.append(
            "config.push.big_batch_threshold must be below config.ingest.max_candidates"
        )
    if cfg["stop_loss"]["zero_fetch_disable_after"] < 0:
        errors.append("config.stop_loss.zero_fetch_disable_after must be >= 0")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    paths = cfg.get("paths")
    if isinstance(paths, dict):
        data_dir = os.environ.get("FW_DATA_DIR")
        if data_dir:
            paths["data_dir"] = data_dir
    push = cfg.get("push")
    if isinstance(push, dict):
        webhook_url = os.environ.get("FW_WEBHOOK_URL")
        if webhook_url:
            push["webhook_url"] = webhook_url


def _build_config(cfg: dict[str, Any]) -> Config:
    paths_cfg = cfg["paths"]
    data_dir = str(paths_cfg["data_dir"])
    state_db = str(paths_cfg["state_db"]) or os.path.join(data_dir, "state.sqlite3")
    return Config(
        app=AppConfig(**cfg["app"]),
        paths=PathsConfig(data_dir=data_dir, state_db=state_db),
        http=HttpConfig(**cfg["http"]),
        ingest=IngestConfig(
            **{
                **cfg["ingest"],
                "waf_markers": list(cfg["ingest"]["waf_markers"]),
                "tracking_params": list(cfg["ingest"]["tracking_params"]),
            }
        ),
        push=PushConfig(**cfg["push"]),
        stop_loss=StopLossConfig(**cfg["stop_loss"]),
        llm=LlmConfig(**cfg["llm"]),
        health=HealthConfig(**cfg["health"]),
    )


def validate_crawl_config(data: dict[str, Any] | None, path: str = "crawl") -> CrawlConfig:
    data = data or {}
    try:
        jsonschema.validate(data, CRAWL_CONFIG_SCHEMA)
    except jsonschema.ValidationError as exc:
        location = ".".join(str(part) for part in exc.absolute_path)
        suffix = f".{location}" if location else ""
        raise ConfigError(f"{path}{suffix}: {exc.message}") from exc
    return CrawlConfig.from_dict(data)


def load_sources_file(path: str) -> list[SourceDefinition]:
    raw = _read_yaml(path)
    entries = raw.get("sources")
    if not isinstance(entries, list):
        raise ConfigError(f"{path}: expected a top-level 'sources' list")
    definitions: list[SourceDefinition] = []
    seen_ids: set[str] = set()
    seen_urls: set[str] = set()
    for index, entry in enumerate(entries):
        definition = parse_source_definition(entry, f"sources[{index}]")
        if definition.id in seen_ids:
            raise ConfigError(f"sources[{index}].id duplicates {definition.id}")
        if definition.url in seen_urls:
            raise ConfigError(f"sources[{index}].url duplicates {definition.url}")
        seen_ids.add(definition.id)
        seen_urls.add(definition.url)
        definitions.append(definition)
    return definitions


def parse_source_definition(entry: Any, path: str = "source") -> SourceDefinition:
    if not isinstance(entry, dict):
        raise ConfigError(f"{path} must be an object")
    for key in ("id", "name", "url"):
        value = entry.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{path}.{key} is required")
    kind_raw = str(entry.get("kind") or "HTML").upper()
    try:
        kind = SourceKind(kind_raw)
    except ValueError as exc:
        raise ConfigError(f"{path}.kind must be RSS or HTML") from exc
    priority = entry.get("priority", 0)
    interval = entry.get("fetch_interval_minutes", 60)
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise ConfigError(f"{path}.priority must be an integer")
    if not isinstance(interval, int) or isinstance(interval, bool) or interval < 1:
        raise ConfigError(f"{path}.fetch_interval_minutes must be a positive integer")
    is_active = entry.get("is_active", True)
    if not isinstance(is_active, bool):
        raise ConfigError(f"{path}.is_active must be a boolean")
    crawl = validate_crawl_config(entry.get("crawl"), f"{path}.crawl")
    return SourceDefinition(
        id=entry["id"].strip(),
        name=entry["name"].strip(),
        kind=kind,
        url=entry["url"].strip(),
        crawl=crawl,
        is_active=is_active,
        priority=priority,
        fetch_interval_minutes=interval,
    )


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: invalid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top-level YAML must be a mapping")
    return data


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
