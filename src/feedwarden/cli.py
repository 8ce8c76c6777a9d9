from __future__ import annotations

import argparse
import logging
import os

from .config import Config, ConfigError, load_config, load_sources_file
from .db import connect_db
from .errors import PushFailure
from .fetcher import Fetcher
from .health import build_health_summary, render_health_text
from .ingest import SourceContext, preview_source
from .migrations import applied_versions
from .notify import WebhookNotifier
from .orchestrator import Orchestrator, RunState
from .storage import get_source, list_source_runs, list_sources, load_canonical_urls, upsert_source
from .summarize import Summarizer, summarize_pending
from .utils import configure_logging, json_dumps, log_event, utc_now


def _setup_logging() -> logging.Logger:
    return configure_logging("feedwarden")


def _load(args: argparse.Namespace, logger: logging.Logger) -> Config | None:
    try:
        return load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def _cmd_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1

    conn = connect_db(config.paths.state_db)
    if not list_sources(conn):
        log_event(
            logger,
            logging.ERROR,
            "no_sources",
            hint="Import sources with `feedwarden sources import /config/sources.yml`",
        )
        return 1
    orchestrator = Orchestrator(conn, config, logger=logging.getLogger("feedwarden.orchestrator"))
    report = orchestrator.run(args.source_id or None, dry_run=args.dry_run)
    logger.info(json_dumps(report.to_dict()))
    return 0


def _cmd_test_source(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1

    conn = connect_db(config.paths.state_db)
    source = get_source(conn, args.source_id)
    if source is None:
        log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
        return 1

    state = RunState.create(config)
    fetcher = Fetcher(
        config.http,
        throttle=state.throttle,
        semaphore=state.semaphore,
        waf_markers=config.ingest.waf_markers,
        logger=logging.getLogger("feedwarden.fetcher"),
    )
    known = frozenset() if args.ignore_dedupe else frozenset(load_canonical_urls(conn, source.id))
    ctx = SourceContext(
        fetcher=fetcher,
        ingest=config.ingest,
        known_canonical_urls=known,
        now=utc_now(),
        logger=logging.getLogger("feedwarden.ingest"),
    )
    preview = preview_source(source, ctx, limit=args.limit)
    logger.info(json_dumps(preview))
    return 0 if preview["error"] is None else 1


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1

    sources_path = args.path
    if sources_path is None:
        if os.path.exists("/config/sources.yml"):
            sources_path = "/config/sources.yml"
        else:
            log_event(
                logger,
                logging.ERROR,
                "sources_import_error",
                error="no sources.yml found",
                hint="Pass a path: `feedwarden sources import <file>`",
            )
            return 1
    log_event(logger, logging.INFO, "sources_import_path", path=sources_path)
    try:
        definitions = load_sources_file(sources_path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "sources_import_error", error=str(exc))
        return 1
    if not definitions:
        log_event(logger, logging.ERROR, "sources_import_error", error="no sources found")
        return 1

    conn = connect_db(config.paths.state_db)
    counts = {"created": 0, "updated": 0}
    for definition in definitions:
        try:
            counts[upsert_source(conn, definition)] += 1
        except ValueError as exc:
            log_event(
                logger,
                logging.ERROR,
                "sources_import_error",
                source_id=definition.id,
                error=str(exc),
            )
            return 1

    log_event(logger, logging.INFO, "sources_imported", count=len(definitions), **counts)
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1

    conn = connect_db(config.paths.state_db)
    sources = list_sources(conn)
    if not sources:
        log_event(
            logger,
            logging.WARNING,
            "no_sources",
            hint="Import sources with `feedwarden sources import /config/sources.yml`",
        )
        return 1

    for source in sources:
        log_event(
            logger,
            logging.INFO,
            "source",
            source_id=source.id,
            kind=source.kind.value,
            active=source.is_active,
            priority=source.priority,
            interval_minutes=source.fetch_interval_minutes,
            needs_review=source.needs_review,
            url=source.url,
        )

    log_event(logger, logging.INFO, "sources_listed", count=len(sources))
    return 0


def _cmd_sources_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1

    conn = connect_db(config.paths.state_db)
    source = get_source(conn, args.source_id)
    if source is None:
        log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
        return 1

    logger.info(json_dumps({"source": source, "runs": list_source_runs(conn, source.id, limit=5)}))
    return 0


def _cmd_health(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1

    conn = connect_db(config.paths.state_db)
    summary = build_health_summary(
        conn,
        top_n=args.top or config.health.top_n,
        window_hours=config.health.window_hours,
    )
    text = render_health_text(summary)
    if not args.send:
        logger.info(text)
        return 0
    notifier = WebhookNotifier(config.push.webhook_url, config.push.timeout_seconds)
    try:
        notifier.send_markdown(text)
    except PushFailure as exc:
        log_event(logger, logging.ERROR, "health_send_failed", reason=exc.reason)
        return 1
    log_event(logger, logging.INFO, "health_sent", sources=summary["sources"]["total"])
    return 0


def _cmd_summarize(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    if not config.llm.enabled:
        log_event(logger, logging.WARNING, "summarize_disabled", hint="Set llm.enabled: true")
        return 1

    conn = connect_db(config.paths.state_db)
    counts = summarize_pending(conn, Summarizer(config.llm), limit=args.limit)
    return 0 if counts["failed"] == 0 else 1


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1

    conn = connect_db(config.paths.state_db)
    log_event(
        logger,
        logging.INFO,
        "db_migrated",
        path=config.paths.state_db,
        versions=",".join(applied_versions(conn)),
    )
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    if args.config:
        os.environ["FW_CONFIG_PATH"] = args.config
    log_event(logger, logging.INFO, "admin_serve", host=args.host, port=args.port)
    uvicorn.run("feedwarden.admin:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedwarden", description="feedwarden CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to FW_CONFIG_PATH or /config/config.yml)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Crawl due sources and push new documents")
    run_parser.add_argument(
        "--source-id",
        action="append",
        default=[],
        help="Only run this source, ignoring its fetch interval (repeatable)",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and gate without writing to the database or pushing",
    )
    run_parser.set_defaults(func=_cmd_run)

    test_parser = subparsers.add_parser(
        "test-source", help="Fetch/extract a single source with diagnostics"
    )
    test_parser.add_argument("source_id", help="Source id to test")
    test_parser.add_argument("--limit", type=int, default=10, help="Preview item limit")
    test_parser.add_argument(
        "--ignore-dedupe",
        action="store_true",
        help="Treat every discovered document as new",
    )
    test_parser.set_defaults(func=_cmd_test_source)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_import = sources_subparsers.add_parser("import", help="Import sources from YAML")
    sources_import.add_argument("path", nargs="?", help="Path to sources YAML file")
    sources_import.set_defaults(func=_cmd_sources_import)

    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.set_defaults(func=_cmd_sources_list)

    sources_show = sources_subparsers.add_parser("show", help="Show a source and its recent runs")
    sources_show.add_argument("source_id", help="Source id")
    sources_show.set_defaults(func=_cmd_sources_show)

    health_parser = subparsers.add_parser("health", help="Summarize source health")
    health_parser.add_argument("--top", type=int, default=None, help="Number of erroring sources")
    health_parser.add_argument(
        "--send", action="store_true", help="Post the summary through the webhook"
    )
    health_parser.set_defaults(func=_cmd_health)

    summarize_parser = subparsers.add_parser("summarize", help="Attach LLM digests to documents")
    summarize_parser.add_argument("--limit", type=int, default=20, help="Max documents")
    summarize_parser.set_defaults(func=_cmd_summarize)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply schema migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    serve_parser = subparsers.add_parser("serve", help="Run the admin API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8001)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
