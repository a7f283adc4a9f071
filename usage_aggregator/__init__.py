"""
Resource Usage Aggregator

Ingests resource usage events from PBS and OpenStack collectors, links them
to users, projects and allocations, folds them into daily summaries and
downsamples aging summaries into weekly, bi-weekly and monthly tiers.

Usage:
    from usage_aggregator import DailyAggregator, RetentionDownsampler, UsageStore

    store = UsageStore(config)
    with store:
        DailyAggregator(config, store).aggregate(start_date, end_date)
        RetentionDownsampler(config, store).run()
"""

from .aggregator_daily import DailyAggregator
from .aggregator_retention import RetentionDownsampler
from .ingestion import IngestionService
from .summary_service import SummaryQueryService
from .usage_store import UsageStore

__all__ = [
    'DailyAggregator',
    'RetentionDownsampler',
    'IngestionService',
    'SummaryQueryService',
    'UsageStore',
]

__version__ = '1.0.0'
