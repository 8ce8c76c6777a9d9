from datetime import datetime, timedelta, timezone

from feedwarden.models import CrawlConfig, Document, DocumentStatus, PushOutcome, Source, SourceKind
from feedwarden.push_gate import PushLimits, RunPushBudget, SourceWindowBudget, gate, order_for_push

NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)


def _source(source_id):
    return Source(
        id=source_id,
        name=source_id.title(),
        kind=SourceKind.HTML,
        url=f"https://{source_id}.example.edu.cn/",
        crawl=CrawlConfig(),
        is_active=True,
        priority=0,
        fetch_interval_minutes=60,
        last_fetched_at=None,
        last_error=None,
        last_run_stats=None,
    )


def _docs(source_id, count, start_id=1):
    documents = []
    for offset in range(count):
        published = NOW - timedelta(hours=offset)
        url = f"https://{source_id}.example.edu.cn/info/{start_id + offset}.htm"
        documents.append(
            Document(
                id=start_id + offset,
                source_id=source_id,
                url=url,
                canonical_url=url,
                title=f"Notice {start_id + offset}",
                published_at=published.isoformat(),
                observed_at=NOW.isoformat(),
                raw_text="body",
                status=DocumentStatus.PENDING,
                digest=None,
                skip_reason=None,
                attachments=(),
                pushed_at=None,
            )
        )
    return documents


def _count(decisions, outcome):
    return sum(1 for decision in decisions if decision.outcome == outcome)


def test_per_task_limit_across_sources():
    limits = PushLimits(per_task_max=5, per_source_window_max=10, big_batch_threshold=50)
    run_budget = RunPushBudget(limits.per_task_max)
    window_budget = SourceWindowBudget(limits.per_source_window_max)
    recorded = []

    first = gate(_docs("jwc", 4), _source("jwc"), run_budget, window_budget, limits, record=recorded.append)
    second = gate(
        _docs("xsc", 4, start_id=100), _source("xsc"), run_budget, window_budget, limits, record=recorded.append
    )

    assert len(first.to_push) == 4
    assert len(second.to_push) == 1
    assert _count(second.skipped, PushOutcome.SKIP_PER_TASK_LIMIT) == 3
    assert len(recorded) == 8
    assert _count(recorded, PushOutcome.PUSH) == 5
    assert _count(recorded, PushOutcome.SKIP_PER_TASK_LIMIT) == 3
    assert run_budget.taken == 5


def test_window_limit_counts_prior_pushes_and_returns_run_slot():
    limits = PushLimits(per_task_max=10, per_source_window_max=3)
    run_budget = RunPushBudget(limits.per_task_max)
    window_budget = SourceWindowBudget(limits.per_source_window_max, seed_loader=lambda source_id: 2)

    result = gate(_docs("jwc", 4), _source("jwc"), run_budget, window_budget, limits)

    assert len(result.to_push) == 1
    assert _count(result.skipped, PushOutcome.SKIP_PER_SOURCE_WINDOW) == 3
    assert run_budget.taken == 1
    assert window_budget.count("jwc") == 3


def test_big_batch_suppress_downgrades_everything():
    limits = PushLimits(big_batch_threshold=5, big_batch_mode="suppress")
    result = gate(
        _docs("jwc", 6),
        _source("jwc"),
        RunPushBudget(limits.per_task_max),
        SourceWindowBudget(limits.per_source_window_max),
        limits,
    )
    assert result.to_push == []
    assert _count(result.skipped, PushOutcome.DOWNGRADED_BIG_BATCH) == 6


def test_big_batch_sample_pushes_newest_few():
    limits = PushLimits(big_batch_threshold=5, big_batch_mode="sample", big_batch_sample_size=2)
    documents = _docs("jwc", 8)
    result = gate(
        list(reversed(documents)),
        _source("jwc"),
        RunPushBudget(limits.per_task_max),
        SourceWindowBudget(limits.per_source_window_max),
        limits,
    )
    assert [document.id for document in result.to_push] == [1, 2]
    assert _count(result.skipped, PushOutcome.DOWNGRADED_BIG_BATCH) == 6


def test_retry_documents_do_not_count_towards_big_batch():
    limits = PushLimits(big_batch_threshold=5)
    result = gate(
        _docs("jwc", 7),
        _source("jwc"),
        RunPushBudget(limits.per_task_max),
        SourceWindowBudget(limits.per_source_window_max),
        limits,
        new_count=3,
    )
    assert len(result.to_push) == 7


def test_conservation_over_mixed_limits():
    limits = PushLimits(per_task_max=6, per_source_window_max=4, big_batch_threshold=5, big_batch_mode="sample")
    run_budget = RunPushBudget(limits.per_task_max)
    window_budget = SourceWindowBudget(limits.per_source_window_max, seed_loader=lambda source_id: 1)
    eligible = 0
    decisions = []
    for source_id, count in (("a", 8), ("b", 3), ("c", 5)):
        documents = _docs(source_id, count)
        eligible += len(documents)
        result = gate(documents, _source(source_id), run_budget, window_budget, limits)
        decisions.extend(result.decisions)

    assert len(decisions) == eligible
    total = sum(
        _count(decisions, outcome)
        for outcome in (
            PushOutcome.PUSH,
            PushOutcome.SKIP_PER_TASK_LIMIT,
            PushOutcome.SKIP_PER_SOURCE_WINDOW,
            PushOutcome.DOWNGRADED_BIG_BATCH,
        )
    )
    assert total == eligible
    assert _count(decisions, PushOutcome.PUSH) <= limits.per_task_max


def test_order_for_push_is_newest_first_and_stable():
    documents = _docs("jwc", 3)
    same_time = [
        Document(**{**vars(documents[0]), "id": 50}),
        Document(**{**vars(documents[0]), "id": 51}),
    ]
    ordered = order_for_push([documents[2], same_time[0], documents[1], same_time[1]])
    assert [document.id for document in ordered] == [50, 51, 2, 3]
