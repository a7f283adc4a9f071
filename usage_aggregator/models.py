"""Data model for usage events, event links and usage summaries.

Metrics and identities are typed structures here; JSON is only their wire and
storage encoding (see ``to_dict``/``from_dict``).
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


class UsageSource(str, Enum):
    """Telemetry source reported by a collector."""

    PBS = "pbs"
    PBS_CUMULATIVE = "pbs_cumulative"
    OPENSTACK = "openstack"


class IdentityScheme(str, Enum):
    """Identity schemes understood by the resolver."""

    OIDC_SUB = "oidc_sub"
    USER_EMAIL = "user_email"
    PERUN_USERNAME = "perun_username"


# Resolution order: external subject id, then email, then username.
IDENTITY_PRIORITY: Tuple[IdentityScheme, ...] = (
    IdentityScheme.OIDC_SUB,
    IdentityScheme.USER_EMAIL,
    IdentityScheme.PERUN_USERNAME,
)

PERSONAL_PROJECT_SENTINEL = "_pbs_project_default"

PROJECT_CONTEXT_KEYS = ("project", "project_name", "project_slug", "projectTitle")


class Accumulation(Enum):
    """How daily deltas of a source turn into summary values."""

    POINT = "point"
    CUMULATIVE = "cumulative"


GROUP_KEYS: Tuple[str, ...] = ("summary_date", "source", "project_slug", "is_personal")
PERSONAL_KEYS: Tuple[str, ...] = GROUP_KEYS + ("user_identifier",)


@dataclass(frozen=True)
class AggregationStrategy:
    """Per-source aggregation behaviour.

    Attributes:
        accumulation: Point sums per day, or running totals carried forward
        prefixed_namespace: Project names carry a customer prefix
        allocation_context_key: Context key naming the allocation/job, if any
    """

    accumulation: Accumulation
    prefixed_namespace: bool = False
    allocation_context_key: Optional[str] = None

    @property
    def is_cumulative(self) -> bool:
        return self.accumulation is Accumulation.CUMULATIVE

    def grouping_keys(self, personal: bool) -> Tuple[str, ...]:
        """Columns a daily bucket is keyed by for the given scope."""
        return PERSONAL_KEYS if personal else GROUP_KEYS


SOURCE_STRATEGIES: Dict[UsageSource, AggregationStrategy] = {
    UsageSource.PBS: AggregationStrategy(Accumulation.POINT, allocation_context_key="jobname"),
    UsageSource.PBS_CUMULATIVE: AggregationStrategy(Accumulation.CUMULATIVE, allocation_context_key="jobname"),
    UsageSource.OPENSTACK: AggregationStrategy(Accumulation.POINT, prefixed_namespace=True),
}


def strategy_for(source: Any) -> AggregationStrategy:
    """Look up the aggregation strategy of a source (enum or wire value)."""
    return SOURCE_STRATEGIES[UsageSource(source)]


@dataclass(frozen=True)
class Identity:
    """A (scheme, value) claim identifying the user behind usage."""

    scheme: str
    value: str
    authority: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.scheme, self.value)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Identity":
        return cls(
            scheme=str(data["scheme"]),
            value=str(data["value"]),
            authority=data.get("authority"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {"scheme": self.scheme, "value": self.value}
        if self.authority is not None:
            result["authority"] = self.authority
        return result


def merge_identities(*identity_lists: Iterable[Identity]) -> List[Identity]:
    """Union identity lists, deduplicated by scheme+value, first one wins."""
    merged: Dict[Tuple[str, str], Identity] = {}
    for identities in identity_lists:
        for identity in identities or []:
            if identity.key not in merged:
                merged[identity.key] = identity
    return list(merged.values())


def identities_from_json(raw: Optional[Iterable[Dict[str, Any]]]) -> List[Identity]:
    """Decode a JSON identity array, skipping entries without scheme/value."""
    result = []
    for item in raw or []:
        if isinstance(item, dict) and item.get("scheme") and item.get("value") is not None:
            result.append(Identity.from_dict(item))
    return result


def preferred_identity_value(identities: Iterable[Identity]) -> Optional[str]:
    """First identity value by scheme priority (oidc_sub, email, username)."""
    identities = list(identities or [])
    for scheme in IDENTITY_PRIORITY:
        for identity in identities:
            if identity.scheme == scheme.value and identity.value:
                return identity.value
    return None


@dataclass(frozen=True)
class Metrics:
    """Numeric usage metrics reported for one event window."""

    cpu_time_seconds: int = 0
    gpu_time_seconds: Optional[int] = None
    ram_bytes_allocated: Optional[int] = None
    ram_bytes_used: Optional[int] = None
    storage_bytes_allocated: Optional[int] = None
    vcpus_allocated: Optional[int] = None
    used_cpu_percent: Optional[int] = None
    walltime_allocated: Optional[int] = None
    walltime_used: Optional[int] = None

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Metrics":
        data = data or {}
        known = {name: data.get(name) for name in cls.field_names() if data.get(name) is not None}
        known.setdefault("cpu_time_seconds", 0)
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.field_names() if getattr(self, name) is not None}


@dataclass
class UsageEvent:
    """One raw usage record as sent by a collector.

    Immutable except ``project_id``, which is bound late by resolution or
    backfill.
    """

    source: UsageSource
    time_window_start: datetime
    time_window_end: datetime
    collected_at: datetime
    metrics: Metrics = field(default_factory=Metrics)
    identities: List[Identity] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    project_id: Optional[int] = None
    extra: Optional[Dict[str, Any]] = None
    schema_version: str = "1.0"
    id: Optional[str] = None

    @property
    def strategy(self) -> AggregationStrategy:
        return strategy_for(self.source)

    @property
    def project_name(self) -> Optional[str]:
        """Project name claimed in the context, trimmed; None when absent."""
        for key in PROJECT_CONTEXT_KEYS:
            value = self.context.get(key)
            if value is None:
                continue
            normalized = str(value).strip()
            if normalized:
                return normalized
        return None

    @property
    def is_personal(self) -> bool:
        flag = self.context.get("is_personal")
        if flag is True or (isinstance(flag, str) and flag.lower() == "true"):
            return True
        return self.project_name == PERSONAL_PROJECT_SENTINEL

    @property
    def user_identifier(self) -> Optional[str]:
        return preferred_identity_value(self.identities)

    @property
    def summary_date(self):
        return self.time_window_start.date()


@dataclass(frozen=True)
class EventLink:
    """Resolution result for one event, with the strategy used per field."""

    event_id: str
    user_id: Optional[int] = None
    project_id: Optional[int] = None
    allocation_id: Optional[int] = None
    user_match_scheme: Optional[str] = None
    project_match_strategy: Optional[str] = None
    allocation_match_strategy: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.user_id is None and self.project_id is None and self.allocation_id is None


# Summary metric columns and how the tiers combine them.
SUMMARY_METRICS: Tuple[str, ...] = (
    "cpu_time_seconds",
    "gpu_time_seconds",
    "walltime_seconds",
    "walltime_allocated",
    "cpu_percent_avg",
    "ram_bytes_allocated",
    "ram_bytes_used",
    "storage_bytes_allocated",
    "vcpus_allocated",
)

# Event metric -> summary column, summed per day.
EVENT_SUM_METRICS: Dict[str, str] = {
    "cpu_time_seconds": "cpu_time_seconds",
    "gpu_time_seconds": "gpu_time_seconds",
    "walltime_used": "walltime_seconds",
    "walltime_allocated": "walltime_allocated",
    "ram_bytes_allocated": "ram_bytes_allocated",
    "ram_bytes_used": "ram_bytes_used",
    "storage_bytes_allocated": "storage_bytes_allocated",
    "vcpus_allocated": "vcpus_allocated",
}

# Event metric -> summary column, averaged per day.
EVENT_AVG_METRICS: Dict[str, str] = {
    "used_cpu_percent": "cpu_percent_avg",
}

PERCENT_METRICS: Tuple[str, ...] = ("cpu_percent_avg",)
COUNTER_METRICS: Tuple[str, ...] = tuple(m for m in SUMMARY_METRICS if m not in PERCENT_METRICS)

# Point-in-time quantities a cumulative summary does not carry forward.
NON_ACCUMULATED_METRICS: Tuple[str, ...] = ("cpu_percent_avg", "storage_bytes_allocated")

# Left NULL (rather than 0) when no event reported them.
NULLABLE_METRICS: Tuple[str, ...] = ("cpu_percent_avg", "storage_bytes_allocated", "vcpus_allocated")


class Tier(Enum):
    """Retention granularity, derived from a summary's window duration."""

    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


_DAY_SECONDS = 86400

_TIER_BOUNDS: Dict[Tier, Tuple[Optional[int], Optional[int]]] = {
    Tier.DAILY: (None, 2 * _DAY_SECONDS),
    Tier.WEEKLY: (5 * _DAY_SECONDS, 10 * _DAY_SECONDS),
    Tier.BIWEEKLY: (10 * _DAY_SECONDS, 20 * _DAY_SECONDS),
    Tier.MONTHLY: (20 * _DAY_SECONDS, None),
}


def tier_duration_bounds(tier: Tier) -> Tuple[Optional[int], Optional[int]]:
    """Duration band of a tier in seconds as ``(min_inclusive, max_exclusive)``."""
    return _TIER_BOUNDS[tier]


def classify_tier(duration: timedelta) -> Optional[Tier]:
    """Classify a summary window duration into its tier.

    Returns None for durations between the daily and weekly bands (2-5 days),
    which no writer produces.
    """
    seconds = duration.total_seconds()
    for tier, (lower, upper) in _TIER_BOUNDS.items():
        if lower is not None and seconds < lower:
            continue
        if upper is not None and seconds >= upper:
            continue
        return tier
    return None


@dataclass
class UsageSummary:
    """Aggregated usage bucket for one scope over one tier window."""

    time_window_start: datetime
    time_window_end: datetime
    source: UsageSource
    project_slug: Optional[str] = None
    is_personal: bool = False
    user_identifier: Optional[str] = None
    project_id: Optional[int] = None
    cpu_time_seconds: float = 0
    gpu_time_seconds: float = 0
    walltime_seconds: float = 0
    walltime_allocated: float = 0
    cpu_percent_avg: Optional[float] = None
    ram_bytes_allocated: float = 0
    ram_bytes_used: float = 0
    storage_bytes_allocated: Optional[float] = None
    vcpus_allocated: Optional[float] = None
    event_count: int = 0
    identities: List[Identity] = field(default_factory=list)
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def tier(self) -> Optional[Tier]:
        return classify_tier(self.time_window_end - self.time_window_start)

    @property
    def natural_key(self) -> Tuple[Any, ...]:
        return (
            self.time_window_start,
            self.time_window_end,
            UsageSource(self.source).value,
            self.project_slug,
            self.is_personal,
            self.user_identifier,
        )

    @property
    def scope_key(self) -> Tuple[Any, ...]:
        """Key identifying the same scope across days (used for cumulative carry)."""
        return (UsageSource(self.source).value, self.project_slug, self.is_personal, self.user_identifier)

    def metric_values(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in SUMMARY_METRICS}

    def with_metrics(self, **changes) -> "UsageSummary":
        return replace(self, **changes)
