"""Retention downsampler: fold aging summaries into coarser tiers.

Tiers, by age of the summary window start:
- daily (< 30 days): daily summaries and raw events
- weekly (30-90 days): ISO weeks, Monday to Sunday
- bi-weekly (90-180 days): paired ISO weeks (1-2, 3-4, ...)
- monthly (> 180 days): calendar months

Transitions run oldest tier first so a row is never folded twice in one run.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from .config_loader import lookup
from .models import (
    COUNTER_METRICS,
    NULLABLE_METRICS,
    PERCENT_METRICS,
    Tier,
    UsageSource,
    UsageSummary,
    merge_identities,
)
from .periods import period_key, period_window
from .utils import PerformanceTimer, ensure_utc, get_logger, safe_max, safe_mean, utcnow

DEFAULT_THRESHOLD_DAYS = {
    Tier.WEEKLY: 30,
    Tier.BIWEEKLY: 90,
    Tier.MONTHLY: 180,
}

THRESHOLD_CONFIG_KEYS = {
    Tier.WEEKLY: "retention.daily_to_weekly_days",
    Tier.BIWEEKLY: "retention.weekly_to_biweekly_days",
    Tier.MONTHLY: "retention.biweekly_to_monthly_days",
}

# (source tier, target tier), oldest first.
TRANSITIONS: Tuple[Tuple[Tier, Tier], ...] = (
    (Tier.BIWEEKLY, Tier.MONTHLY),
    (Tier.WEEKLY, Tier.BIWEEKLY),
    (Tier.DAILY, Tier.WEEKLY),
)


@dataclass
class DownsamplingResult:
    """Counters of one downsampling run."""

    weekly_aggregated: int = 0
    biweekly_aggregated: int = 0
    monthly_aggregated: int = 0
    summaries_deleted: int = 0
    events_deleted: int = 0
    groups_failed: int = 0
    groups_pending: int = 0

    def record(self, tier: Tier, aggregated: int):
        attribute = f"{tier.value}_aggregated"
        setattr(self, attribute, getattr(self, attribute) + aggregated)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def rollup_group_key(summary: UsageSummary, target: Tier) -> tuple:
    """Group key of a summary for the target tier.

    Mapped rows group by ``(project_id, source, period)``. Unmapped rows also
    keep their slug and personal scope so unrelated projects never merge.
    """
    key = (summary.project_id, UsageSource(summary.source).value, period_key(target, summary.time_window_start))
    if summary.project_id is None:
        key += (summary.project_slug or "", summary.is_personal, summary.user_identifier or "")
    return key


def group_for_rollup(summaries: List[UsageSummary], target: Tier) -> Dict[tuple, List[UsageSummary]]:
    groups: Dict[tuple, List[UsageSummary]] = {}
    for summary in sorted(summaries, key=lambda s: s.time_window_start):
        groups.setdefault(rollup_group_key(summary, target), []).append(summary)
    return groups


def fold_summaries(summaries: List[UsageSummary], window_start: datetime, window_end: datetime) -> UsageSummary:
    """Fold source-tier rows into one coarser row.

    MAX for counter metrics (already running totals as of each day), AVG of
    the non-null percentages, SUM of event counts, union of identities. Scope
    columns come from the oldest row.
    """
    if not summaries:
        raise ValueError("Cannot fold an empty summary group")

    first = summaries[0]
    metrics = {}
    for name in COUNTER_METRICS:
        value = safe_max([getattr(s, name) or 0 for s in summaries]) or 0
        if name in NULLABLE_METRICS and not value:
            value = None
        metrics[name] = value
    for name in PERCENT_METRICS:
        metrics[name] = safe_mean(getattr(s, name) for s in summaries)

    return UsageSummary(
        time_window_start=window_start,
        time_window_end=window_end,
        source=first.source,
        project_slug=first.project_slug,
        is_personal=first.is_personal,
        user_identifier=first.user_identifier,
        project_id=first.project_id,
        event_count=sum(int(s.event_count or 0) for s in summaries),
        identities=merge_identities(*(s.identities for s in summaries)),
        **metrics,
    )


class RetentionDownsampler:
    """Apply the tiered retention policy to the summary store."""

    def __init__(self, config: Dict, store):
        """Initialize the downsampler.

        Args:
            config: Configuration dictionary with retention section
            store: Usage store
        """
        self.config = config
        self.store = store
        self.logger = get_logger("aggregator_retention")
        self.threshold_days = {
            tier: int(lookup(config, key, DEFAULT_THRESHOLD_DAYS[tier]))
            for tier, key in THRESHOLD_CONFIG_KEYS.items()
        }

    def thresholds(self, now: datetime) -> Dict[Tier, datetime]:
        """Cutoff per target tier: rows starting before it are promoted."""
        return {tier: now - timedelta(days=days) for tier, days in self.threshold_days.items()}

    def run(self, now: Optional[datetime] = None) -> DownsamplingResult:
        """Run all tier transitions, then delete mapped raw events past the weekly threshold."""
        now = ensure_utc(now) if now else utcnow()
        cutoffs = self.thresholds(now)
        result = DownsamplingResult()

        self.logger.info(
            "Starting downsampling",
            now=now.isoformat(),
            weekly_threshold=cutoffs[Tier.WEEKLY].isoformat(),
            biweekly_threshold=cutoffs[Tier.BIWEEKLY].isoformat(),
            monthly_threshold=cutoffs[Tier.MONTHLY].isoformat(),
        )

        with PerformanceTimer("Downsampling", self.logger):
            for source_tier, target_tier in TRANSITIONS:
                self._transition(source_tier, target_tier, cutoffs[target_tier], result)

            result.events_deleted = self.store.delete_events_before(cutoffs[Tier.WEEKLY])

        self.logger.info("Downsampling completed", **result.to_dict())
        return result

    def _transition(self, source_tier: Tier, target_tier: Tier, cutoff: datetime, result: DownsamplingResult):
        # Upper age bound only: rows already past the next tier's threshold
        # still step through this tier rather than staying in the source tier.
        candidates = self.store.fetch_summaries(end=cutoff, tier=source_tier)
        if not candidates:
            self.logger.info("No summaries to promote", source_tier=source_tier.value, target_tier=target_tier.value)
            return

        groups = group_for_rollup(candidates, target_tier)
        aggregated = 0
        for key, summaries in groups.items():
            window_start, window_end = period_window(target_tier, summaries[0].time_window_start)
            if window_end > cutoff:
                # Period not complete relative to the threshold yet.
                result.groups_pending += 1
                continue

            rollup = fold_summaries(summaries, window_start, window_end)
            try:
                self.store.replace_with_rollup(rollup, [s.id for s in summaries])
            except Exception as e:
                result.groups_failed += 1
                self.logger.error(
                    "Failed to fold summary group",
                    target_tier=target_tier.value,
                    group=str(key),
                    rows=len(summaries),
                    error=str(e),
                )
                continue

            aggregated += 1
            result.summaries_deleted += len(summaries)

        result.record(target_tier, aggregated)
        self.logger.info(
            "Promoted summaries",
            source_tier=source_tier.value,
            target_tier=target_tier.value,
            candidates=len(candidates),
            groups=len(groups),
            aggregated=aggregated,
        )

    def retention_stats(self, now: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
        """Raw-event totals and summary counts per tier."""
        now = ensure_utc(now) if now else utcnow()
        return self.store.retention_stats(self.thresholds(now)[Tier.WEEKLY])

    def run_scheduled(self, now: Optional[datetime] = None) -> Optional[DownsamplingResult]:
        """Scheduled entry point: failures are logged, never raised."""
        self.logger.info("Starting scheduled downsampling job")
        try:
            result = self.run(now)
        except Exception as e:
            self.logger.error("Scheduled downsampling job failed", error=str(e))
            return None
        self.logger.info("Scheduled downsampling job completed")
        return result
