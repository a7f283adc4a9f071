"""Cron-driven loop firing the retention downsampler."""

import time
from datetime import datetime
from typing import Callable, Optional

from croniter import croniter

from .utils import ensure_utc, get_logger, utcnow

# Mondays 02:00 UTC, once the previous ISO week is complete.
DEFAULT_SCHEDULE = "0 2 * * 1"

logger = get_logger("scheduler")


def compute_next_run(now: datetime, expr: Optional[str] = None) -> datetime:
    """Next fire time after ``now`` for a cron expression.

    Falls back to the default weekly schedule when ``expr`` is empty or invalid.
    """
    now = ensure_utc(now)
    expr = (expr or "").strip() or DEFAULT_SCHEDULE
    try:
        return ensure_utc(croniter(expr, now).get_next(datetime))
    except (ValueError, KeyError) as e:
        logger.error("Invalid cron expression, using default", expr=expr, default=DEFAULT_SCHEDULE, error=str(e))
        return ensure_utc(croniter(DEFAULT_SCHEDULE, now).get_next(datetime))


def run_forever(
    downsampler,
    expr: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], datetime] = utcnow,
    max_runs: Optional[int] = None,
) -> int:
    """Sleep until each fire time and run the scheduled downsampling job.

    Args:
        downsampler: RetentionDownsampler
        expr: Cron expression (defaults to weekly on Monday 02:00)
        sleep: Sleep function (injectable for tests)
        clock: Current-time function (injectable for tests)
        max_runs: Stop after this many runs (None runs until interrupted)

    Returns:
        Number of runs performed
    """
    runs = 0
    while max_runs is None or runs < max_runs:
        now = clock()
        next_run = compute_next_run(now, expr)
        sleep_seconds = max((next_run - now).total_seconds(), 0)
        logger.info("Sleeping until next downsampling run", next_run=next_run.isoformat(), seconds=round(sleep_seconds))
        try:
            sleep(sleep_seconds)
        except KeyboardInterrupt:
            logger.info("Scheduler loop interrupted")
            break
        downsampler.run_scheduled()
        runs += 1
    return runs
