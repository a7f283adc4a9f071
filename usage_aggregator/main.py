"""Main entry point for the resource usage aggregator."""

import argparse
import json
import sys
from datetime import datetime

from .aggregator_daily import DailyAggregator
from .aggregator_retention import RetentionDownsampler
from .config_loader import get_config, lookup
from .customer_catalog import CustomerCatalog
from .directory import PostgresDirectory
from .ingestion import IngestionService, InvalidPayloadError
from .scheduler import DEFAULT_SCHEDULE, run_forever
from .summary_service import SCOPE_ALLOCATION, SCOPE_PROJECT, SCOPE_USER, SummaryQueryService
from .synchronizer import AssociationSynchronizer
from .usage_store import UsageStore
from .utils import PerformanceTimer, format_duration, get_logger, parse_date, parse_timestamp, setup_logging


class Components:
    """Store, directory and catalog sharing one database connection."""

    def __init__(self, config):
        self.config = config
        self.store = UsageStore(config)
        self.directory = None
        self.catalog = CustomerCatalog.from_csv(lookup(config, "catalog.customers_csv"))

    def __enter__(self):
        self.store.connect()
        self.directory = PostgresDirectory(self.config, connection=self.store.connection)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.store.disconnect()

    def aggregator(self) -> DailyAggregator:
        return DailyAggregator(self.config, self.store, self.directory, self.catalog)

    def downsampler(self) -> RetentionDownsampler:
        return RetentionDownsampler(self.config, self.store)


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def cmd_init_db(components, args, logger):
    components.store.ensure_schema()
    logger.info("✓ Usage tables ready")
    return 0


def cmd_ingest(components, args, logger):
    with open(args.payload, "r") as f:
        payload = json.load(f)

    service = IngestionService(
        components.store,
        AssociationSynchronizer(components.store, components.directory, components.catalog),
        components.aggregator(),
    )
    try:
        response = service.ingest(payload)
    except InvalidPayloadError as e:
        logger.error("Payload rejected", error=str(e))
        _print_json({"detail": e.errors})
        return 1

    _print_json(response)
    return 0


def cmd_aggregate(components, args, logger):
    start_date = parse_date(args.start_date) if args.start_date else None
    end_date = parse_date(args.end_date) if args.end_date else None
    result = components.aggregator().aggregate(start_date, end_date)
    logger.info(
        "✓ Aggregation complete",
        events=result.events,
        written=result.summaries_written,
        failed=result.summaries_failed,
        backfilled=result.summaries_backfilled,
        events_backfilled=result.events_backfilled,
    )
    return 0 if result.summaries_failed == 0 else 1


def cmd_downsample(components, args, logger):
    now = parse_timestamp(args.now) if args.now else None
    result = components.downsampler().run(now)
    _print_json(result.to_dict())
    return 0 if result.groups_failed == 0 else 1


def cmd_schedule(components, args, logger):
    expr = args.cron or lookup(components.config, "retention.schedule_cron", DEFAULT_SCHEDULE)
    logger.info("Starting retention scheduler", cron=expr)
    runs = run_forever(components.downsampler(), expr, max_runs=args.max_runs)
    logger.info("Retention scheduler stopped", runs=runs)
    return 0


def cmd_retention_stats(components, args, logger):
    now = parse_timestamp(args.now) if args.now else None
    _print_json(components.downsampler().retention_stats(now))
    return 0


def cmd_summary(components, args, logger):
    service = SummaryQueryService(components.store, components.directory, components.catalog)
    _print_json(
        service.get_summary(
            scope_type=args.scope_type,
            scope_id=args.scope_id,
            source=args.source,
            allocation_id=args.allocation_id,
        )
    )
    return 0


COMMANDS = {
    "init-db": cmd_init_db,
    "ingest": cmd_ingest,
    "aggregate": cmd_aggregate,
    "downsample": cmd_downsample,
    "schedule": cmd_schedule,
    "retention-stats": cmd_retention_stats,
    "summary": cmd_summary,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Resource usage aggregator - daily summaries and tiered retention")

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: $USAGE_AGGREGATOR_CONFIG or config/config.yaml)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the usage tables if missing")

    ingest = subparsers.add_parser("ingest", help="Ingest a JSON batch of usage events")
    ingest.add_argument("payload", metavar="PAYLOAD_JSON", help="File with {'events': [...], 'is_last_batch': bool}")

    aggregate = subparsers.add_parser("aggregate", help="Build daily summaries from raw events")
    aggregate.add_argument("--start-date", type=str, default=None, help="First day (YYYY-MM-DD, inclusive)")
    aggregate.add_argument("--end-date", type=str, default=None, help="Last day (YYYY-MM-DD, inclusive)")

    downsample = subparsers.add_parser("downsample", help="Run the tiered retention downsampler once")
    downsample.add_argument("--now", type=str, default=None, help="Reference time (ISO 8601, default: now)")

    schedule = subparsers.add_parser("schedule", help="Run the downsampler on its cron schedule")
    schedule.add_argument("--cron", type=str, default=None, help="Cron expression (default: retention.schedule_cron)")
    schedule.add_argument("--max-runs", type=int, default=None, help="Stop after N runs")

    stats = subparsers.add_parser("retention-stats", help="Show raw event and summary tier counts")
    stats.add_argument("--now", type=str, default=None, help="Reference time (ISO 8601, default: now)")

    summary = subparsers.add_parser("summary", help="Query the usage time series for a scope")
    summary.add_argument(
        "--scope-type",
        choices=[SCOPE_PROJECT, SCOPE_USER, SCOPE_ALLOCATION],
        default=SCOPE_PROJECT,
    )
    summary.add_argument("--scope-id", type=str, default=None)
    summary.add_argument("--source", choices=["pbs", "pbs_cumulative", "openstack"], default=None)
    summary.add_argument("--allocation-id", type=str, default=None)

    return parser


def run(args) -> int:
    """Run one subcommand against the configured database.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    config = get_config(args.config)

    setup_logging(
        level=config.get("logging", {}).get("level", "INFO"),
        log_format=config.get("logging", {}).get("format", "console"),
    )

    logger = get_logger("main")
    started = datetime.now()
    logger.info("Resource usage aggregator", command=args.command)

    try:
        with Components(config) as components:
            if not components.store.test_connectivity():
                logger.error("Database connectivity test failed")
                return 1
            with PerformanceTimer(f"Command {args.command}", logger):
                exit_code = COMMANDS[args.command](components, args, logger)
    except Exception as e:
        logger.error("Command failed with error", command=args.command, error=str(e), exc_info=True)
        return 1

    logger.info(
        "Command finished",
        command=args.command,
        exit_code=exit_code,
        duration=format_duration((datetime.now() - started).total_seconds()),
    )
    return exit_code


def main():
    """Main entry point."""
    args = build_parser().parse_args()
    sys.exit(run(args))


if __name__ == "__main__":
    main()
