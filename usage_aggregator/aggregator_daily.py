"""Daily aggregator: fold raw usage events into daily summaries."""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional

import pandas as pd

from .customer_catalog import CustomerCatalog
from .models import (
    EVENT_AVG_METRICS,
    EVENT_SUM_METRICS,
    NON_ACCUMULATED_METRICS,
    NULLABLE_METRICS,
    SUMMARY_METRICS,
    UsageEvent,
    UsageSource,
    UsageSummary,
    merge_identities,
    strategy_for,
)
from .periods import day_window, start_of_day
from .resolver import ResolutionContext, resolve_summary_project
from .synchronizer import AssociationSynchronizer
from .utils import PerformanceTimer, get_logger, safe_sum, to_number

FRAME_COLUMNS = (
    ["event_id", "summary_date", "source", "project_slug", "is_personal", "user_identifier", "cumulative", "identities"]
    + list(EVENT_SUM_METRICS)
    + list(EVENT_AVG_METRICS)
)

PERSONAL_CUMULATIVE = "personal_cumulative"
PERSONAL_POINT = "personal_point"
GROUP = "group"


@dataclass
class AggregationResult:
    """Counters of one aggregation run."""

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    events: int = 0
    summaries_written: int = 0
    summaries_failed: int = 0
    summaries_backfilled: int = 0
    events_backfilled: int = 0


def events_to_frame(events: Iterable[UsageEvent]) -> pd.DataFrame:
    """Flatten events that name a project into one row each.

    ``user_identifier`` is only kept for personal events; group buckets are
    keyed by project alone.
    """
    rows = []
    for event in events:
        project_slug = event.project_name
        if not project_slug:
            continue
        row = {
            "event_id": event.id,
            "summary_date": event.summary_date,
            "source": UsageSource(event.source).value,
            "project_slug": project_slug,
            "is_personal": event.is_personal,
            "user_identifier": (event.user_identifier or "") if event.is_personal else "",
            "cumulative": event.strategy.is_cumulative,
            "identities": event.identities,
        }
        for metric in list(EVENT_SUM_METRICS) + list(EVENT_AVG_METRICS):
            row[metric] = getattr(event.metrics, metric)
        rows.append(row)

    df = pd.DataFrame(rows, columns=FRAME_COLUMNS)
    for metric in list(EVENT_SUM_METRICS) + list(EVENT_AVG_METRICS):
        df[metric] = pd.to_numeric(df[metric], errors="coerce")
    return df


def partition_events(df: pd.DataFrame) -> Dict[str, pd.DataFrame]:
    """Split event rows into personal-cumulative, personal-point and group rows."""
    personal = df["is_personal"].astype(bool)
    cumulative = df["cumulative"].astype(bool)
    return {
        PERSONAL_CUMULATIVE: df[personal & cumulative],
        PERSONAL_POINT: df[personal & ~cumulative],
        GROUP: df[~personal],
    }


def aggregate_frame(df: pd.DataFrame, personal: bool) -> List[UsageSummary]:
    """Group event rows into daily buckets.

    SUM the counter metrics, AVG ``used_cpu_percent``, COUNT events and
    union identities. Personal buckets are additionally keyed by user.
    """
    if df.empty:
        return []

    group_keys = list(strategy_for(df["source"].iloc[0]).grouping_keys(personal))
    grouped = df.groupby(group_keys, sort=True)

    sums = grouped[list(EVENT_SUM_METRICS)].sum(min_count=1).rename(columns=EVENT_SUM_METRICS)
    for event_metric, summary_metric in EVENT_AVG_METRICS.items():
        sums[summary_metric] = grouped[event_metric].mean()
    sums["event_count"] = grouped.size()
    identities = {key: merge_identities(*group["identities"]) for key, group in grouped}

    summaries = []
    for key, row in sums.iterrows():
        bucket = dict(zip(group_keys, key))
        metrics = {}
        for name in SUMMARY_METRICS:
            value = to_number(row[name])
            if value is None and name not in NULLABLE_METRICS:
                value = 0
            metrics[name] = value

        window_start, window_end = day_window(bucket["summary_date"])
        summaries.append(
            UsageSummary(
                time_window_start=window_start,
                time_window_end=window_end,
                source=UsageSource(bucket["source"]),
                project_slug=bucket["project_slug"],
                is_personal=bool(bucket["is_personal"]),
                user_identifier=bucket.get("user_identifier") or None,
                event_count=int(row["event_count"]),
                identities=identities[key],
                **metrics,
            )
        )
    return summaries


def accumulate(delta: UsageSummary, prior: Optional[UsageSummary]) -> UsageSummary:
    """Running total for a cumulative source: ``prior + delta``.

    Percentages and allocated storage are point-in-time values and take the
    day's own figure. Without a prior the day's delta is the baseline.
    """
    if prior is None:
        return delta
    changes = {}
    for name in SUMMARY_METRICS:
        if name in NON_ACCUMULATED_METRICS:
            continue
        current, previous = getattr(delta, name), getattr(prior, name)
        if current is None and previous is None:
            changes[name] = None
        else:
            changes[name] = safe_sum(current, previous)
    return delta.with_metrics(**changes)


def _write_order(summary: UsageSummary):
    return (
        summary.time_window_start,
        UsageSource(summary.source).value,
        summary.project_slug or "",
        summary.is_personal,
        summary.user_identifier or "",
    )


class DailyAggregator:
    """Build daily summaries from raw events and backfill their project ids."""

    def __init__(self, config: Dict, store, directory=None, catalog: Optional[CustomerCatalog] = None):
        """Initialize the daily aggregator.

        Args:
            config: Configuration dictionary
            store: Usage store (events and summaries)
            directory: Organizational directory used to backfill project ids (optional)
            catalog: OpenStack customer catalog (optional)
        """
        self.config = config
        self.store = store
        self.directory = directory
        self.catalog = catalog or CustomerCatalog()
        self.logger = get_logger("aggregator_daily")

    def aggregate(self, start_date: Optional[date] = None, end_date: Optional[date] = None) -> AggregationResult:
        """Aggregate events whose window starts within ``[start_date, end_date]`` (inclusive days).

        Re-running over the same range overwrites the same rows.
        """
        result = AggregationResult(start_date=start_date, end_date=end_date)
        start = start_of_day(start_date) if start_date else None
        end = start_of_day(end_date) + timedelta(days=1) if end_date else None

        with PerformanceTimer("Daily aggregation", self.logger):
            events = self.store.fetch_events(start=start, end=end)
            result.events = len(events)

            df = events_to_frame(events)
            self.logger.info(
                "Loaded events for aggregation",
                events=len(events),
                with_project=len(df),
                start_date=str(start_date) if start_date else None,
                end_date=str(end_date) if end_date else None,
            )

            if not df.empty:
                summaries = []
                for name, part in partition_events(df).items():
                    buckets = aggregate_frame(part, personal=name != GROUP)
                    self.logger.debug("Aggregated partition", partition=name, rows=len(part), buckets=len(buckets))
                    summaries.extend(buckets)

                # Oldest first so a cumulative day chains onto the previous day of this run.
                summaries.sort(key=_write_order)
                self._write(summaries, result)

            result.summaries_backfilled = self.backfill_project_ids(start, end)
            result.events_backfilled = self.backfill_event_project_ids(start, end)

        self.logger.info(
            "Daily aggregation completed",
            events=result.events,
            written=result.summaries_written,
            failed=result.summaries_failed,
            backfilled=result.summaries_backfilled,
            events_backfilled=result.events_backfilled,
        )
        return result

    def _write(self, summaries: List[UsageSummary], result: AggregationResult):
        carried: Dict[tuple, UsageSummary] = {}
        for summary in summaries:
            row = summary
            try:
                if strategy_for(summary.source).is_cumulative:
                    prior = carried.get(summary.scope_key)
                    if prior is None:
                        prior = self.store.latest_summary_before(summary, summary.time_window_start)
                    row = accumulate(summary, prior)
                    carried[summary.scope_key] = row
                self.store.upsert_summary(row)
                result.summaries_written += 1
            except Exception as e:
                result.summaries_failed += 1
                self.logger.error(
                    "Failed to write daily summary",
                    source=UsageSource(summary.source).value,
                    project_slug=summary.project_slug,
                    user_identifier=summary.user_identifier,
                    day=summary.time_window_start.date().isoformat(),
                    error=str(e),
                )

    def backfill_project_ids(self, start=None, end=None) -> int:
        """Resolve ``project_id`` for unmapped summaries in the range."""
        if self.directory is None:
            return 0

        unmapped = self.store.fetch_summaries(start=start, end=end, unmapped_only=True)
        if not unmapped:
            return 0

        context = ResolutionContext.build(self.directory, self.catalog)
        mapped = 0
        for summary in unmapped:
            project = resolve_summary_project(
                summary.project_slug,
                summary.source,
                summary.is_personal,
                summary.identities,
                context,
            )
            if project is None:
                continue
            self.store.set_summary_project(summary.id, project.id)
            summary.project_id = project.id
            mapped += 1

        self.logger.info("Backfilled summary project ids", candidates=len(unmapped), mapped=mapped)
        return mapped

    def backfill_event_project_ids(self, start=None, end=None) -> int:
        """Re-synchronize raw events in the range that still have no ``project_id``.

        Projects created after ingestion become resolvable here, which also
        makes those events eligible for retention deletion.
        """
        if self.directory is None:
            return 0

        unmapped = self.store.fetch_events(start=start, end=end, unmapped_only=True)
        if not unmapped:
            return 0

        AssociationSynchronizer(self.store, self.directory, self.catalog).synchronize(unmapped)
        mapped = sum(1 for event in unmapped if event.project_id is not None)
        self.logger.info("Backfilled event project ids", candidates=len(unmapped), mapped=mapped)
        return mapped

    def aggregate_for_dates(self, dates: Iterable[date]) -> AggregationResult:
        """Aggregate the range covering the given days."""
        dates = sorted(set(dates))
        if not dates:
            return AggregationResult()
        self.logger.info("Aggregating for specific dates", dates=len(dates))
        return self.aggregate(dates[0], dates[-1])
