"""PostgreSQL persistence for usage events, event links and usage summaries."""

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from psycopg2.extras import Json, execute_values

from .config_loader import lookup
from .db import PostgresClient
from .models import (
    NULLABLE_METRICS,
    SUMMARY_METRICS,
    EventLink,
    Metrics,
    Tier,
    UsageEvent,
    UsageSource,
    UsageSummary,
    identities_from_json,
    tier_duration_bounds,
)
from .utils import PerformanceTimer, ensure_utc, to_number, utcnow

EVENTS_TABLE = "resource_usage_events"
LINKS_TABLE = "resource_usage_event_links"
SUMMARIES_TABLE = "resource_usage_summaries"

EVENT_COLUMNS = (
    "id",
    "schema_version",
    "source",
    "time_window_start",
    "time_window_end",
    "collected_at",
    "metrics",
    "identities",
    "context",
    "extra",
    "project_slug",
    "is_personal",
    "project_id",
)

SUMMARY_COLUMNS = (
    ("id", "time_window_start", "time_window_end", "source", "project_slug", "is_personal", "user_identifier", "project_id")
    + SUMMARY_METRICS
    + ("event_count", "identities", "created_at", "updated_at")
)

# Unique natural key of a summary; NULL slug/user compare equal through COALESCE.
SUMMARY_CONFLICT_TARGET = (
    "(time_window_start, time_window_end, source, (COALESCE(project_slug, '')), "
    "is_personal, (COALESCE(user_identifier, '')))"
)

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS {events} (
    id UUID PRIMARY KEY,
    schema_version TEXT NOT NULL DEFAULT '1.0',
    source TEXT NOT NULL,
    time_window_start TIMESTAMPTZ NOT NULL,
    time_window_end TIMESTAMPTZ NOT NULL,
    collected_at TIMESTAMPTZ NOT NULL,
    metrics JSONB NOT NULL,
    identities JSONB NOT NULL DEFAULT '[]'::jsonb,
    context JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    extra JSONB,
    project_slug TEXT,
    is_personal BOOLEAN NOT NULL DEFAULT false,
    project_id INTEGER,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_rue_window_start ON {events} (time_window_start);
CREATE INDEX IF NOT EXISTS idx_rue_project_source ON {events} (project_id, source, time_window_start);

CREATE TABLE IF NOT EXISTS {links} (
    id BIGSERIAL PRIMARY KEY,
    event_id UUID NOT NULL REFERENCES {events} (id) ON DELETE CASCADE,
    user_id INTEGER,
    project_id INTEGER,
    allocation_id INTEGER,
    user_match_scheme TEXT,
    project_match_strategy TEXT,
    allocation_match_strategy TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_ruel_event ON {links} (event_id);

CREATE TABLE IF NOT EXISTS {summaries} (
    id UUID PRIMARY KEY,
    time_window_start TIMESTAMPTZ NOT NULL,
    time_window_end TIMESTAMPTZ NOT NULL,
    source TEXT NOT NULL,
    project_slug TEXT,
    is_personal BOOLEAN NOT NULL DEFAULT false,
    user_identifier TEXT,
    project_id INTEGER,
    cpu_time_seconds NUMERIC NOT NULL DEFAULT 0,
    gpu_time_seconds NUMERIC NOT NULL DEFAULT 0,
    walltime_seconds NUMERIC NOT NULL DEFAULT 0,
    walltime_allocated NUMERIC NOT NULL DEFAULT 0,
    cpu_percent_avg DOUBLE PRECISION,
    ram_bytes_allocated NUMERIC NOT NULL DEFAULT 0,
    ram_bytes_used NUMERIC NOT NULL DEFAULT 0,
    storage_bytes_allocated NUMERIC,
    vcpus_allocated NUMERIC,
    event_count INTEGER NOT NULL DEFAULT 0,
    identities JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_rus_natural_key ON {summaries}
    (time_window_start, time_window_end, source, (COALESCE(project_slug, '')),
     is_personal, (COALESCE(user_identifier, '')));
CREATE INDEX IF NOT EXISTS idx_rus_project_source ON {summaries} (project_id, source, time_window_start);
"""


def _identities_json(identities) -> Json:
    return Json([identity.to_dict() for identity in identities or []])


def _claims_condition(claims: Sequence[Tuple[str, str]], column: str = "identities") -> Tuple[str, List[Any]]:
    """SQL matching rows whose identity array contains any of the (scheme, value) claims."""
    parts = []
    params: List[Any] = []
    for scheme, value in claims:
        parts.append(f"{column} @> %s::jsonb")
        params.append(Json([{"scheme": scheme, "value": value}]))
    return "(" + " OR ".join(parts) + ")", params


def _duration_condition(tier: Tier) -> str:
    lower, upper = tier_duration_bounds(tier)
    duration = "EXTRACT(EPOCH FROM (time_window_end - time_window_start))"
    parts = []
    if lower is not None:
        parts.append(f"{duration} >= {int(lower)}")
    if upper is not None:
        parts.append(f"{duration} < {int(upper)}")
    return " AND ".join(parts)


def event_from_row(row: Dict[str, Any]) -> UsageEvent:
    return UsageEvent(
        id=str(row["id"]),
        schema_version=row.get("schema_version") or "1.0",
        source=UsageSource(row["source"]),
        time_window_start=ensure_utc(row["time_window_start"]),
        time_window_end=ensure_utc(row["time_window_end"]),
        collected_at=ensure_utc(row["collected_at"]),
        metrics=Metrics.from_dict(row.get("metrics")),
        identities=identities_from_json(row.get("identities")),
        context=dict(row.get("context") or {}),
        extra=row.get("extra"),
        project_id=row.get("project_id"),
    )


def summary_from_row(row: Dict[str, Any]) -> UsageSummary:
    metrics = {name: to_number(row.get(name)) for name in SUMMARY_METRICS}
    for name, value in metrics.items():
        if value is None and name not in NULLABLE_METRICS:
            metrics[name] = 0
    return UsageSummary(
        id=str(row["id"]) if row.get("id") is not None else None,
        time_window_start=ensure_utc(row["time_window_start"]),
        time_window_end=ensure_utc(row["time_window_end"]),
        source=UsageSource(row["source"]),
        project_slug=row.get("project_slug"),
        is_personal=bool(row.get("is_personal")),
        user_identifier=row.get("user_identifier"),
        project_id=row.get("project_id"),
        event_count=int(row.get("event_count") or 0),
        identities=identities_from_json(row.get("identities")),
        created_at=ensure_utc(row["created_at"]) if row.get("created_at") else None,
        updated_at=ensure_utc(row["updated_at"]) if row.get("updated_at") else None,
        **metrics,
    )


class UsageStore(PostgresClient):
    """Read and write the usage tables."""

    logger_name = "usage_store"

    def __init__(self, config: Dict, connection=None):
        super().__init__(config, connection)
        self.batch_size = int(lookup(config, "performance.db_batch_size", 1000))

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def ensure_schema(self):
        """Create the usage tables and indexes if they do not exist."""
        ddl = SCHEMA_DDL.format(
            events=self.table(EVENTS_TABLE),
            links=self.table(LINKS_TABLE),
            summaries=self.table(SUMMARIES_TABLE),
        )
        with PerformanceTimer("Create usage schema", self.logger):
            with self.transaction() as cursor:
                cursor.execute(ddl)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def insert_events(self, events: List[UsageEvent]) -> int:
        """Insert a batch of events in one transaction.

        Events without an id get a fresh UUID assigned in place.

        Returns:
            Number of rows inserted
        """
        if not events:
            return 0

        for event in events:
            if event.id is None:
                event.id = str(uuid.uuid4())

        data = [
            (
                event.id,
                event.schema_version,
                UsageSource(event.source).value,
                event.time_window_start,
                event.time_window_end,
                event.collected_at,
                Json(event.metrics.to_dict()),
                _identities_json(event.identities),
                Json(event.context or {}),
                Json(event.extra) if event.extra is not None else None,
                event.project_name,
                event.is_personal,
                event.project_id,
            )
            for event in events
        ]
        query = f"INSERT INTO {self.table(EVENTS_TABLE)} ({', '.join(EVENT_COLUMNS)}) VALUES %s"

        with PerformanceTimer(f"Insert {len(data)} usage events", self.logger):
            try:
                with self.transaction() as cursor:
                    for i in range(0, len(data), self.batch_size):
                        batch = data[i:i + self.batch_size]
                        execute_values(cursor, query, batch, page_size=self.batch_size)
            except Exception as e:
                self.logger.error("Failed to insert usage events", error=str(e), rows=len(data))
                raise

        self.logger.info("Stored usage events", rows_inserted=len(data))
        return len(data)

    def fetch_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        project_id: Optional[int] = None,
        source: Optional[str] = None,
        identity_claims: Optional[Sequence[Tuple[str, str]]] = None,
        unmapped_only: bool = False,
    ) -> List[UsageEvent]:
        """Events with ``start <= time_window_start < end``, oldest first."""
        conditions = []
        params: List[Any] = []
        if start is not None:
            conditions.append("time_window_start >= %s")
            params.append(start)
        if end is not None:
            conditions.append("time_window_start < %s")
            params.append(end)
        if project_id is not None:
            conditions.append("project_id = %s")
            params.append(project_id)
        if source is not None:
            conditions.append("source = %s")
            params.append(UsageSource(source).value)
        if identity_claims is not None:
            if not identity_claims:
                return []
            clause, claim_params = _claims_condition(identity_claims)
            conditions.append(clause)
            params.extend(claim_params)
        if unmapped_only:
            conditions.append("project_id IS NULL")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        query = f"""
            SELECT {', '.join(EVENT_COLUMNS)}
            FROM {self.table(EVENTS_TABLE)}
            {where}
            ORDER BY time_window_start, id
        """
        with self.connection.cursor() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [event_from_row(dict(zip(EVENT_COLUMNS, row))) for row in rows]

    def set_event_project_ids(self, assignments: Dict[str, Optional[int]]) -> int:
        """Bind late-resolved project ids onto stored events; ``None`` clears a stale one."""
        if not assignments:
            return 0
        query = f"""
            UPDATE {self.table(EVENTS_TABLE)} AS e
            SET project_id = v.project_id::integer
            FROM (VALUES %s) AS v(id, project_id)
            WHERE e.id = v.id::uuid
        """
        with self.transaction() as cursor:
            execute_values(cursor, query, list(assignments.items()), page_size=self.batch_size)
        return len(assignments)

    def replace_event_links(self, event_ids: Sequence[str], links: List[EventLink]) -> int:
        """Delete the links of ``event_ids`` and insert ``links`` in one transaction."""
        if not event_ids:
            return 0
        insert_query = f"""
            INSERT INTO {self.table(LINKS_TABLE)}
                (event_id, user_id, project_id, allocation_id,
                 user_match_scheme, project_match_strategy, allocation_match_strategy)
            VALUES %s
        """
        data = [
            (
                link.event_id,
                link.user_id,
                link.project_id,
                link.allocation_id,
                link.user_match_scheme,
                link.project_match_strategy,
                link.allocation_match_strategy,
            )
            for link in links
        ]
        try:
            with self.transaction() as cursor:
                cursor.execute(
                    f"DELETE FROM {self.table(LINKS_TABLE)} WHERE event_id = ANY(%s::uuid[])",
                    (list(event_ids),),
                )
                if data:
                    execute_values(cursor, insert_query, data, page_size=self.batch_size)
        except Exception as e:
            self.logger.error("Failed to replace event links", error=str(e), events=len(event_ids))
            raise
        return len(data)

    def delete_events_before(self, cutoff: datetime) -> int:
        """Delete raw events older than ``cutoff`` that are already mapped to a project."""
        with self.transaction() as cursor:
            cursor.execute(
                f"""
                DELETE FROM {self.table(EVENTS_TABLE)}
                WHERE time_window_start < %s AND project_id IS NOT NULL
                """,
                (cutoff,),
            )
            deleted = cursor.rowcount
        self.logger.info("Deleted raw usage events", cutoff=cutoff.isoformat(), rows_deleted=deleted)
        return deleted

    def latest_event_vcpus(self, project_ids: Iterable[int], source: str) -> int:
        """Sum of ``vcpus_allocated`` over events at the latest event timestamp."""
        project_ids = sorted(set(project_ids))
        if not project_ids:
            return 0
        query = f"""
            SELECT COALESCE(SUM((metrics->>'vcpus_allocated')::numeric), 0)
            FROM {self.table(EVENTS_TABLE)}
            WHERE project_id = ANY(%s) AND source = %s
              AND time_window_start = (
                  SELECT MAX(time_window_start) FROM {self.table(EVENTS_TABLE)}
                  WHERE project_id = ANY(%s) AND source = %s
              )
        """
        source = UsageSource(source).value
        with self.connection.cursor() as cursor:
            cursor.execute(query, (project_ids, source, project_ids, source))
            row = cursor.fetchone()
        if not row:
            return 0
        return to_number(row[0]) or 0

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def _summary_values(self, summary: UsageSummary, summary_id: str, now: datetime) -> Tuple:
        return (
            summary_id,
            summary.time_window_start,
            summary.time_window_end,
            UsageSource(summary.source).value,
            summary.project_slug,
            summary.is_personal,
            summary.user_identifier,
            summary.project_id,
            *(summary.metric_values()[name] for name in SUMMARY_METRICS),
            summary.event_count,
            _identities_json(summary.identities),
            now,
            now,
        )

    def _upsert_summary(self, cursor, summary: UsageSummary, now: datetime):
        update_columns = SUMMARY_METRICS + ("event_count", "identities", "updated_at")
        # A re-run keeps an already bound project when the new row has none.
        assignments = ["project_id = COALESCE(EXCLUDED.project_id, s.project_id)"]
        assignments += [f"{column} = EXCLUDED.{column}" for column in update_columns]
        placeholders = ", ".join(["%s"] * len(SUMMARY_COLUMNS))
        query = f"""
            INSERT INTO {self.table(SUMMARIES_TABLE)} AS s ({', '.join(SUMMARY_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT {SUMMARY_CONFLICT_TARGET}
            DO UPDATE SET {', '.join(assignments)}
        """
        cursor.execute(query, self._summary_values(summary, summary.id or str(uuid.uuid4()), now))

    def upsert_summary(self, summary: UsageSummary):
        """Insert or overwrite the summary with the same natural key (one transaction)."""
        with self.transaction() as cursor:
            self._upsert_summary(cursor, summary, utcnow())

    def _select_summaries(self, conditions: List[str], params: List[Any], order: str = "time_window_start, id",
                          limit: Optional[int] = None) -> List[UsageSummary]:
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        limit_clause = f"LIMIT {int(limit)}" if limit else ""
        query = f"""
            SELECT {', '.join(SUMMARY_COLUMNS)}
            FROM {self.table(SUMMARIES_TABLE)}
            {where}
            ORDER BY {order}
            {limit_clause}
        """
        with self.connection.cursor() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [summary_from_row(dict(zip(SUMMARY_COLUMNS, row))) for row in rows]

    def fetch_summaries(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        tier: Optional[Tier] = None,
        project_id: Optional[int] = None,
        source: Optional[str] = None,
        identity_claims: Optional[Sequence[Tuple[str, str]]] = None,
        unmapped_only: bool = False,
    ) -> List[UsageSummary]:
        """Summaries with ``start <= time_window_start < end``, oldest first."""
        conditions: List[str] = []
        params: List[Any] = []
        if start is not None:
            conditions.append("time_window_start >= %s")
            params.append(start)
        if end is not None:
            conditions.append("time_window_start < %s")
            params.append(end)
        if tier is not None:
            conditions.append(_duration_condition(tier))
        if project_id is not None:
            conditions.append("project_id = %s")
            params.append(project_id)
        if source is not None:
            conditions.append("source = %s")
            params.append(UsageSource(source).value)
        if identity_claims is not None:
            if not identity_claims:
                return []
            clause, claim_params = _claims_condition(identity_claims)
            conditions.append(clause)
            params.extend(claim_params)
        if unmapped_only:
            conditions.append("project_id IS NULL")
        return self._select_summaries(conditions, params)

    def latest_summary_before(self, summary: UsageSummary, before: datetime) -> Optional[UsageSummary]:
        """Latest summary of the same scope as ``summary`` starting before ``before``.

        Any tier qualifies: once daily rows are folded, the coarser row holds
        the running total as of its period.
        """
        conditions = [
            "source = %s",
            "COALESCE(project_slug, '') = %s",
            "is_personal = %s",
            "COALESCE(user_identifier, '') = %s",
            "time_window_start < %s",
        ]
        params = [
            UsageSource(summary.source).value,
            summary.project_slug or "",
            summary.is_personal,
            summary.user_identifier or "",
            before,
        ]
        rows = self._select_summaries(
            conditions, params, order="time_window_start DESC, time_window_end DESC", limit=1
        )
        return rows[0] if rows else None

    def set_summary_project(self, summary_id: str, project_id: int):
        with self.transaction() as cursor:
            cursor.execute(
                f"UPDATE {self.table(SUMMARIES_TABLE)} SET project_id = %s, updated_at = now() WHERE id = %s::uuid",
                (project_id, summary_id),
            )

    def replace_with_rollup(self, rollup: UsageSummary, source_ids: Sequence[str]) -> str:
        """Write a coarser-tier row and delete the rows it replaces, atomically.

        An existing row for the same ``(project_id, source, time_window_start,
        time_window_end)`` is updated in place; otherwise a new row is inserted.
        Unmapped rows (no project) are additionally matched on their scope.

        Returns:
            "updated" or "inserted"
        """
        now = utcnow()
        find_params = [
            rollup.project_id,
            UsageSource(rollup.source).value,
            rollup.time_window_start,
            rollup.time_window_end,
        ]
        scope_clause = ""
        if rollup.project_id is None:
            scope_clause = """
              AND COALESCE(project_slug, '') = %s AND is_personal = %s
              AND COALESCE(user_identifier, '') = %s
            """
            find_params += [rollup.project_slug or "", rollup.is_personal, rollup.user_identifier or ""]
        find_query = f"""
            SELECT id FROM {self.table(SUMMARIES_TABLE)}
            WHERE project_id IS NOT DISTINCT FROM %s AND source = %s
              AND time_window_start = %s AND time_window_end = %s
              {scope_clause}
            LIMIT 1
            FOR UPDATE
        """
        update_columns = SUMMARY_METRICS + ("event_count", "identities")
        update_query = f"""
            UPDATE {self.table(SUMMARIES_TABLE)}
            SET {', '.join(f'{column} = %s' for column in update_columns)}, updated_at = %s
            WHERE id = %s
        """
        with self.transaction() as cursor:
            cursor.execute(find_query, find_params)
            existing = cursor.fetchone()
            if existing:
                values = [rollup.metric_values()[name] for name in SUMMARY_METRICS]
                values += [rollup.event_count, _identities_json(rollup.identities), now, existing[0]]
                cursor.execute(update_query, values)
                outcome = "updated"
            else:
                self._upsert_summary(cursor, rollup, now)
                outcome = "inserted"
            cursor.execute(
                f"DELETE FROM {self.table(SUMMARIES_TABLE)} WHERE id = ANY(%s::uuid[])",
                (list(source_ids),),
            )
        return outcome

    def summary_scopes(self) -> List[Tuple[int, str]]:
        """Distinct ``(project_id, source)`` pairs of mapped summaries."""
        query = f"""
            SELECT DISTINCT project_id, source
            FROM {self.table(SUMMARIES_TABLE)}
            WHERE project_id IS NOT NULL
            ORDER BY project_id, source
        """
        with self.connection.cursor() as cursor:
            cursor.execute(query)
            return [(row[0], row[1]) for row in cursor.fetchall()]

    def retention_stats(self, raw_cutoff: datetime) -> Dict[str, Dict[str, int]]:
        """Raw-event counts and summary counts per tier."""
        with self.connection.cursor() as cursor:
            cursor.execute(
                f"""
                SELECT COUNT(*),
                       COUNT(*) FILTER (WHERE time_window_start < %s),
                       COUNT(*) FILTER (WHERE project_id IS NULL)
                FROM {self.table(EVENTS_TABLE)}
                """,
                (raw_cutoff,),
            )
            total, older, unmapped = cursor.fetchone()

            tier_counts = ", ".join(f"COUNT(*) FILTER (WHERE {_duration_condition(tier)})" for tier in Tier)
            cursor.execute(f"SELECT {tier_counts} FROM {self.table(SUMMARIES_TABLE)}")
            counts = cursor.fetchone()

        return {
            "raw_events": {
                "total": int(total or 0),
                "older_than_threshold": int(older or 0),
                "unmapped": int(unmapped or 0),
            },
            "summaries": {tier.value: int(count or 0) for tier, count in zip(Tier, counts)},
        }
