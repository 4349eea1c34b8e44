"""Tests for the command-line entry point and scheduler wiring."""

from listing_recon.main import build_parser, parse_sources
from listing_recon.worker.aggregator import Aggregator
from listing_recon.worker.run_lock import InMemoryRunLock
from listing_recon.worker.scheduler import setup_scheduler


def test_parse_sources():
    assert parse_sources(None) is None
    assert parse_sources("") is None
    assert parse_sources("reddit_avexchange, head_fi,,") == ["reddit_avexchange", "head_fi"]


def test_parser_flags():
    args = build_parser().parse_args(["--sources", "reverb", "--dry-run"])
    assert args.sources == "reverb"
    assert args.dry_run is True
    assert args.schedule is False


def test_scheduler_registers_single_interval_job():
    aggregator = Aggregator(repository=object(), run_lock=InMemoryRunLock())
    scheduler = setup_scheduler(aggregator, ["reverb"], interval_minutes=15)

    jobs = scheduler.get_jobs()
    assert [job.id for job in jobs] == ["listing_aggregation"]
    job = jobs[0]
    assert job.max_instances == 1
    assert job.coalesce is True
    assert job.kwargs == {"sources": ["reverb"], "dry_run": False, "trigger": "scheduled"}
    assert job.trigger.interval.total_seconds() == 15 * 60
