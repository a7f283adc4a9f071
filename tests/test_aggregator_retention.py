"""
Unit tests for the tiered retention downsampler.

Covers the daily-to-weekly example, pending periods, tier ordering across
runs, raw-event deletion safety and failure isolation.
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from usage_aggregator.aggregator_daily import DailyAggregator
from usage_aggregator.aggregator_retention import (
    DownsamplingResult,
    RetentionDownsampler,
    fold_summaries,
    group_for_rollup,
)
from usage_aggregator.directory import Project
from usage_aggregator.models import Identity, Tier
from usage_aggregator.periods import week_window

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def downsampler(standard_config, fake_store):
    return RetentionDownsampler(standard_config, fake_store)


def add(store, *summaries):
    for summary in summaries:
        store.summaries[summary.natural_key] = summary


def tiers(store):
    return sorted(s.tier.value for s in store.all_summaries())


class TestFoldSummaries:
    """Test folding of a summary group."""

    def test_fold_metrics(self, make_summary):
        window = week_window(date(2025, 2, 3))
        rows = [
            make_summary(day=date(2025, 2, 3), cpu_time_seconds=100, cpu_percent_avg=40, event_count=2,
                         identities=[("oidc_sub", "a")]),
            make_summary(day=date(2025, 2, 4), cpu_time_seconds=150, cpu_percent_avg=None, vcpus_allocated=4,
                         event_count=3, identities=[("oidc_sub", "a"), ("oidc_sub", "b")]),
            make_summary(day=date(2025, 2, 5), cpu_time_seconds=120, cpu_percent_avg=80, event_count=1),
        ]

        rollup = fold_summaries(rows, *window)

        assert rollup.cpu_time_seconds == 150
        assert rollup.cpu_percent_avg == 60
        assert rollup.vcpus_allocated == 4
        assert rollup.storage_bytes_allocated is None
        assert rollup.event_count == 6
        assert rollup.identities == [Identity("oidc_sub", "a"), Identity("oidc_sub", "b")]
        assert (rollup.time_window_start, rollup.time_window_end) == window
        assert rollup.tier is Tier.WEEKLY
        assert rollup.project_id == 10

    def test_empty_group_rejected(self):
        with pytest.raises(ValueError):
            fold_summaries([], NOW, NOW)

    def test_unmapped_groups_keep_scope(self, make_summary):
        rows = [
            make_summary(project_id=None, project_slug="x"),
            make_summary(project_id=None, project_slug="y"),
            make_summary(project_id=10, project_slug="x"),
            make_summary(project_id=10, project_slug="z", day=date(2025, 1, 7)),
        ]
        groups = group_for_rollup(rows, Tier.WEEKLY)
        assert sorted(len(g) for g in groups.values()) == [1, 1, 2]


class TestRetentionDownsampler:
    """Test downsampling runs against the in-memory store."""

    def test_forty_day_old_days_fold_into_week(self, downsampler, fake_store, make_summary):
        """Daily rows 40 days old become one weekly row carrying the last cumulative value."""
        add(
            fake_store,
            make_summary(day=date(2025, 2, 3), source="pbs_cumulative", cpu_time_seconds=100, event_count=1),
            make_summary(day=date(2025, 2, 4), source="pbs_cumulative", cpu_time_seconds=150, event_count=1),
            make_summary(day=date(2025, 2, 5), source="pbs_cumulative", cpu_time_seconds=175, event_count=1),
        )

        result = downsampler.run(NOW)

        (weekly,) = fake_store.all_summaries()
        assert weekly.tier is Tier.WEEKLY
        assert weekly.time_window_start == utc(2025, 2, 3)
        assert weekly.time_window_end == utc(2025, 2, 9, 23, 59, 59)
        assert weekly.cpu_time_seconds == 175
        assert weekly.event_count == 3
        assert result.weekly_aggregated == 1
        assert result.summaries_deleted == 3

    def test_incomplete_period_left_pending(self, downsampler, fake_store, make_summary):
        """A week ending after the threshold is not folded yet."""
        add(
            fake_store,
            make_summary(day=date(2025, 2, 12)),
            make_summary(day=date(2025, 3, 10)),
        )

        result = downsampler.run(NOW)

        assert tiers(fake_store) == ["daily", "daily"]
        assert result.groups_pending == 1
        assert result.weekly_aggregated == 0

    def test_tiers_advance_one_step_per_run(self, downsampler, fake_store, make_summary):
        """Freshly folded rows are not folded again in the same run."""
        add(
            fake_store,
            make_summary(day=date(2024, 8, 12), cpu_time_seconds=10),
            make_summary(day=date(2024, 8, 13), cpu_time_seconds=20),
            make_summary(day=date(2024, 8, 14), cpu_time_seconds=30),
        )

        downsampler.run(NOW)
        assert tiers(fake_store) == ["weekly"]

        downsampler.run(NOW)
        assert tiers(fake_store) == ["biweekly"]
        assert fake_store.all_summaries()[0].time_window_start == utc(2024, 8, 12)

        result = downsampler.run(NOW)
        (monthly,) = fake_store.all_summaries()
        assert monthly.tier is Tier.MONTHLY
        assert monthly.time_window_start == utc(2024, 8, 1)
        assert monthly.time_window_end == utc(2024, 8, 31, 23, 59, 59)
        assert monthly.cpu_time_seconds == 30
        assert monthly.event_count == 3
        assert result.monthly_aggregated == 1

        downsampler.run(NOW)
        assert tiers(fake_store) == ["monthly"]

    def test_unmapped_projects_not_merged(self, downsampler, fake_store, make_summary):
        add(
            fake_store,
            make_summary(day=date(2025, 2, 3), project_id=None, project_slug="x", cpu_time_seconds=1),
            make_summary(day=date(2025, 2, 4), project_id=None, project_slug="y", cpu_time_seconds=2),
        )

        downsampler.run(NOW)

        weekly = {s.project_slug: s.cpu_time_seconds for s in fake_store.all_summaries()}
        assert weekly == {"x": 1, "y": 2}
        assert tiers(fake_store) == ["weekly", "weekly"]

    def test_failed_group_left_in_place(self, downsampler, fake_store, make_summary):
        add(
            fake_store,
            make_summary(day=date(2025, 2, 3), project_id=11, project_slug="Beta"),
            make_summary(day=date(2025, 2, 3), project_id=10, project_slug="Alpha Project"),
        )
        fake_store.fail_rollup_for = {"Beta"}

        result = downsampler.run(NOW)

        remaining = {s.project_slug: s.tier for s in fake_store.all_summaries()}
        assert remaining == {"Beta": Tier.DAILY, "Alpha Project": Tier.WEEKLY}
        assert result.groups_failed == 1
        assert result.weekly_aggregated == 1

    def test_only_mapped_old_events_deleted(self, downsampler, fake_store, make_event):
        old_mapped = make_event(day=date(2025, 2, 1))
        old_mapped.project_id = 10
        old_unmapped = make_event(day=date(2025, 2, 1))
        recent = make_event(day=date(2025, 3, 1))
        recent.project_id = 10
        fake_store.insert_events([old_mapped, old_unmapped, recent])

        result = downsampler.run(NOW)

        assert result.events_deleted == 1
        assert fake_store.events == [old_unmapped, recent]

    def test_events_mapped_after_ingest_become_deletable(self, standard_config, fake_store, fake_directory,
                                                         make_event):
        aggregator = DailyAggregator(standard_config, fake_store, fake_directory)
        fake_store.insert_events([make_event(day=date(2025, 1, 6), project="Gamma")])
        aggregator.aggregate()

        fake_directory.projects.append(Project(id=14, title="Gamma", project_slug="gamma"))
        aggregator.aggregate()
        result = RetentionDownsampler(standard_config, fake_store).run(NOW)

        assert result.events_deleted == 1
        assert fake_store.events == []
        (weekly,) = fake_store.all_summaries()
        assert weekly.project_id == 14

    def test_thresholds_from_config(self, standard_config, fake_store):
        standard_config["retention"]["daily_to_weekly_days"] = "14"
        downsampler = RetentionDownsampler(standard_config, fake_store)

        cutoffs = downsampler.thresholds(NOW)

        assert cutoffs[Tier.WEEKLY] == NOW - timedelta(days=14)
        assert cutoffs[Tier.MONTHLY] == NOW - timedelta(days=180)

    def test_retention_stats(self, downsampler, fake_store, make_event, make_summary):
        fake_store.insert_events([make_event(day=date(2025, 1, 1)), make_event(day=date(2025, 3, 14))])
        add(fake_store, make_summary(day=date(2025, 3, 1)), make_summary(window=week_window(date(2025, 1, 6))))

        stats = downsampler.retention_stats(NOW)

        assert stats["raw_events"] == {"total": 2, "older_than_threshold": 1, "unmapped": 2}
        assert stats["summaries"] == {"daily": 1, "weekly": 1, "biweekly": 0, "monthly": 0}


class TestScheduledRun:
    """Test the scheduled entry point."""

    def test_failures_logged_not_raised(self, standard_config):
        store = MagicMock()
        store.fetch_summaries.side_effect = RuntimeError("connection lost")

        assert RetentionDownsampler(standard_config, store).run_scheduled(NOW) is None

    def test_success_returns_result(self, downsampler):
        result = downsampler.run_scheduled(NOW)
        assert isinstance(result, DownsamplingResult)
        assert result.to_dict()["events_deleted"] == 0


class TestCumulativeAcrossTiers:
    """Test cumulative continuity once daily rows have been folded."""

    def test_new_day_chains_onto_folded_total(self, standard_config, fake_store, fake_directory, make_event):
        aggregator = DailyAggregator(standard_config, fake_store, fake_directory)
        fake_store.insert_events(
            [make_event(source="pbs_cumulative", day=date(2025, 1, d), cpu=100) for d in (6, 7, 8)]
        )
        aggregator.aggregate()

        RetentionDownsampler(standard_config, fake_store).run(NOW)
        (weekly,) = fake_store.all_summaries()
        assert weekly.tier is Tier.WEEKLY
        assert weekly.cpu_time_seconds == 300

        fake_store.insert_events([make_event(source="pbs_cumulative", day=date(2025, 3, 14), cpu=50)])
        aggregator.aggregate(date(2025, 3, 14), date(2025, 3, 14))

        daily = [s for s in fake_store.all_summaries() if s.tier is Tier.DAILY]
        assert [s.cpu_time_seconds for s in daily] == [350]

