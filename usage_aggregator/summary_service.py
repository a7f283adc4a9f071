"""Time-series queries over usage summaries, with a raw-event fallback."""

from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from .customer_catalog import CustomerCatalog
from .models import UsageEvent, UsageSource, UsageSummary, strategy_for
from .periods import start_of_day
from .resolver import allocation_identifier
from .utils import get_logger, to_number, utcnow

SCOPE_PROJECT = "project"
SCOPE_USER = "user"
SCOPE_ALLOCATION = "allocation"

PERSONAL_ALLOCATION_ID = "personal"

SOURCE_LABELS = {
    UsageSource.PBS: "PBS",
    UsageSource.PBS_CUMULATIVE: "PBS",
    UsageSource.OPENSTACK: "OpenStack",
}

SERIES_COLUMNS = ["timestamp", "cpuTimeSeconds", "cpuPercent", "walltimeSeconds", "ramBytesAllocated", "ramBytesUsed"]


def _parse_id(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def build_series(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    """Per-day series: SUM of usage metrics, AVG of the reported CPU percentages.

    ``frame`` has one row per summary or event with a ``day`` column and the
    series metric columns.
    """
    if frame.empty:
        return []

    grouped = frame.groupby("day", sort=True)
    sums = grouped[["cpuTimeSeconds", "walltimeSeconds", "ramBytesAllocated", "ramBytesUsed"]].sum()
    sums["cpuPercent"] = grouped["cpuPercent"].mean().fillna(0)

    series = []
    for day, row in sums.iterrows():
        point = {"timestamp": start_of_day(day).isoformat()}
        for column in SERIES_COLUMNS[1:]:
            point[column] = to_number(row[column]) or 0
        series.append(point)
    return series


def summaries_frame(summaries: List[UsageSummary]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "day": s.time_window_start.date(),
                "cpuTimeSeconds": s.cpu_time_seconds or 0,
                "cpuPercent": s.cpu_percent_avg,
                "walltimeSeconds": s.walltime_seconds or 0,
                "ramBytesAllocated": s.ram_bytes_allocated or 0,
                "ramBytesUsed": s.ram_bytes_used or 0,
            }
            for s in summaries
        ],
        columns=["day"] + SERIES_COLUMNS[1:],
    ).astype({"cpuPercent": "float64"})


def events_frame(events: List[UsageEvent]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "day": e.time_window_start.date(),
                "cpuTimeSeconds": e.metrics.cpu_time_seconds or 0,
                "cpuPercent": e.metrics.used_cpu_percent,
                "walltimeSeconds": e.metrics.walltime_used or 0,
                "ramBytesAllocated": e.metrics.ram_bytes_allocated or 0,
                "ramBytesUsed": e.metrics.ram_bytes_used or 0,
            }
            for e in events
        ],
        columns=["day"] + SERIES_COLUMNS[1:],
    ).astype({"cpuPercent": "float64"})


def empty_response(scope_type: str, scope_id: Optional[str]) -> Dict[str, Any]:
    return {
        "scope": {"id": scope_id or "unknown", "type": scope_type, "label": "Unknown scope"},
        "availableScopes": [],
        "availableSources": [],
        "availableAllocations": [],
        "totals": {"totalVcpus": 0, "storageBytesAllocated": 0, "lastUpdated": utcnow().isoformat()},
        "series": [],
    }


def _distinct_sources(rows) -> List[str]:
    seen = []
    for row in rows:
        value = UsageSource(row.source).value
        if value not in seen:
            seen.append(value)
    return seen


class SummaryQueryService:
    """Answer usage time-series queries for a project, user or allocation."""

    def __init__(self, store, directory, catalog: Optional[CustomerCatalog] = None):
        self.store = store
        self.directory = directory
        self.catalog = catalog or CustomerCatalog()
        self.logger = get_logger("summary_service")

    def get_summary(
        self,
        scope_type: str = SCOPE_PROJECT,
        scope_id: Optional[str] = None,
        source: Optional[str] = None,
        allocation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Series, totals and filter options for one scope.

        Args:
            scope_type: "project", "user" or "allocation"
            scope_id: Project or user id (project id for allocation scope)
            source: Optional source filter
            allocation_id: Optional allocation/job identifier filter

        Returns:
            Dictionary with scope, availableScopes, availableSources,
            availableAllocations, totals and series
        """
        source = UsageSource(source).value if source else None
        self.logger.info(
            "Summary query",
            scope_type=scope_type,
            scope_id=scope_id,
            source=source,
            allocation_id=allocation_id,
        )

        if allocation_id or scope_type == SCOPE_ALLOCATION:
            return self._allocation_summary(scope_type, scope_id, source, allocation_id)

        summaries = self._summaries_for_scope(scope_type, scope_id, source)
        if summaries:
            series = build_series(summaries_frame(summaries))
            totals = self._summary_totals(summaries)
            sources = _distinct_sources(summaries)
        else:
            events = self._events_for_scope(scope_type, scope_id, source)
            if not events:
                return empty_response(scope_type, scope_id)
            self.logger.info("No summaries for scope, using raw events", events=len(events))
            series = build_series(events_frame(events))
            totals = self._event_totals(events)
            sources = _distinct_sources(events)

        return {
            "scope": self._scope_details(scope_type, scope_id, source),
            "availableScopes": self.available_scopes(),
            "availableSources": sources,
            "availableAllocations": self.available_allocations(scope_type, scope_id, source),
            "totals": totals,
            "series": series,
        }

    # ------------------------------------------------------------------
    # Scope reads
    # ------------------------------------------------------------------

    def _user_claims(self, scope_id: Optional[str]):
        user_id = _parse_id(scope_id)
        if user_id is None:
            return None
        user = self.directory.get_user(user_id)
        if user is None:
            return None
        return user.identity_claims()

    def _summaries_for_scope(self, scope_type: str, scope_id: Optional[str], source: Optional[str]) -> List[UsageSummary]:
        if scope_type == SCOPE_PROJECT:
            project_id = _parse_id(scope_id)
            if project_id is None:
                return []
            return self.store.fetch_summaries(project_id=project_id, source=source)
        if scope_type == SCOPE_USER:
            claims = self._user_claims(scope_id)
            if not claims:
                return []
            return self.store.fetch_summaries(identity_claims=claims, source=source)
        return []

    def _events_for_scope(self, scope_type: str, scope_id: Optional[str], source: Optional[str]) -> List[UsageEvent]:
        if scope_type in (SCOPE_PROJECT, SCOPE_ALLOCATION):
            project_id = _parse_id(scope_id)
            if project_id is None:
                return []
            return self.store.fetch_events(project_id=project_id, source=source)
        if scope_type == SCOPE_USER:
            claims = self._user_claims(scope_id)
            if not claims:
                return []
            return self.store.fetch_events(identity_claims=claims, source=source)
        return []

    def _allocation_summary(
        self,
        scope_type: str,
        scope_id: Optional[str],
        source: Optional[str],
        allocation_id: Optional[str],
    ) -> Dict[str, Any]:
        events = self._events_for_scope(SCOPE_ALLOCATION, scope_id, source)
        if allocation_id and allocation_id != PERSONAL_ALLOCATION_ID:
            events = [e for e in events if allocation_identifier(e, self.catalog) == allocation_id]
        if not events:
            return empty_response(scope_type, scope_id)

        return {
            "scope": self._scope_details(scope_type, scope_id, source),
            "availableScopes": self.available_scopes(),
            "availableSources": _distinct_sources(events),
            "availableAllocations": self.available_allocations(scope_type, scope_id, source),
            "totals": self._event_totals(events),
            "series": build_series(events_frame(events)),
        }

    # ------------------------------------------------------------------
    # Totals
    # ------------------------------------------------------------------

    def _summary_totals(self, summaries: List[UsageSummary]) -> Dict[str, Any]:
        """Current vCPUs and storage from the latest time bucket only.

        vCPUs prefer live events at the latest event timestamp; once retention
        has deleted those events the summary values are used instead.
        """
        latest_start = max(s.time_window_start for s in summaries)
        latest = [s for s in summaries if s.time_window_start == latest_start]

        storage = sum(s.storage_bytes_allocated or 0 for s in latest)
        summary_vcpus = sum(s.vcpus_allocated or 0 for s in latest)

        project_ids = sorted({s.project_id for s in latest if s.project_id is not None})
        vcpus = 0
        if project_ids:
            vcpus = self.store.latest_event_vcpus(project_ids, latest[0].source)
        if not vcpus:
            vcpus = summary_vcpus

        updated = [s.updated_at for s in latest if s.updated_at is not None]
        return {
            "totalVcpus": to_number(vcpus) or 0,
            "storageBytesAllocated": to_number(storage) or 0,
            "lastUpdated": (max(updated) if updated else utcnow()).isoformat(),
        }

    @staticmethod
    def _event_totals(events: List[UsageEvent]) -> Dict[str, Any]:
        latest_start: datetime = max(e.time_window_start for e in events)
        latest = [e for e in events if e.time_window_start == latest_start]
        return {
            "totalVcpus": sum(e.metrics.vcpus_allocated or 0 for e in latest),
            "storageBytesAllocated": sum(e.metrics.storage_bytes_allocated or 0 for e in latest),
            "lastUpdated": latest_start.isoformat(),
        }

    # ------------------------------------------------------------------
    # Filter options
    # ------------------------------------------------------------------

    def _scope_details(self, scope_type: str, scope_id: Optional[str], source: Optional[str]) -> Dict[str, Any]:
        if scope_type in (SCOPE_PROJECT, SCOPE_ALLOCATION):
            project_id = _parse_id(scope_id)
            project = self.directory.get_project(project_id) if project_id is not None else None
            if project is not None:
                return {"id": str(project.id), "type": scope_type, "label": project.title, "source": source}
        elif scope_type == SCOPE_USER:
            user_id = _parse_id(scope_id)
            user = self.directory.get_user(user_id) if user_id is not None else None
            if user is not None:
                return {"id": str(user.id), "type": SCOPE_USER, "label": user.label, "source": source}
        return {"id": scope_id or "unknown", "type": scope_type, "label": "Unknown scope"}

    def available_scopes(self) -> List[Dict[str, Any]]:
        """Mapped projects that have summaries, one entry per project."""
        scopes: Dict[str, Dict[str, Any]] = {}
        for project_id, source in self.store.summary_scopes():
            key = str(project_id)
            if key in scopes:
                continue
            project = self.directory.get_project(project_id)
            if project is None:
                continue
            scopes[key] = {"id": key, "type": SCOPE_PROJECT, "label": project.title, "source": source}
        return list(scopes.values())

    def available_allocations(
        self, scope_type: str, scope_id: Optional[str], source: Optional[str]
    ) -> List[Dict[str, Any]]:
        """Selectable allocation/job identifiers for a project scope."""
        if scope_type not in (SCOPE_PROJECT, SCOPE_ALLOCATION):
            return []
        project_id = _parse_id(scope_id)
        if project_id is None:
            return []
        project = self.directory.get_project(project_id)
        if project is None:
            return []

        effective_source = UsageSource(source or UsageSource.PBS.value)
        label = SOURCE_LABELS[effective_source]
        if strategy_for(effective_source).prefixed_namespace and project.is_personal:
            return [{"id": PERSONAL_ALLOCATION_ID, "label": f"{label}: Personal Project", "source": effective_source.value}]

        identifiers = {
            allocation_identifier(event, self.catalog)
            for event in self.store.fetch_events(project_id=project_id, source=effective_source.value)
        }
        return [
            {"id": identifier, "label": f"{label}: {identifier}", "source": effective_source.value}
            for identifier in sorted(i for i in identifiers if i)
        ]
